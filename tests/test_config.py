import logging

import pytest
from rich.logging import RichHandler

from tool_harness.config import DEFAULT_BASE_URL, Settings, configure_logging
from tool_harness.run import default_agents


@pytest.fixture
def clean_env(monkeypatch):
    for name in (
        "HARNESS_MODEL",
        "HARNESS_BASE_URL",
        "HARNESS_PROJECT_ROOT",
        "HARNESS_SESSIONS_DIR",
        "HARNESS_MAX_TOOL_STEPS",
        "HARNESS_TOOL_TIMEOUT",
        "HARNESS_INFERENCE_TIMEOUT",
        "HARNESS_BACKEND_RETRIES",
        "HARNESS_CONTEXT_BUDGET",
        "HARNESS_NATIVE_TOOLS",
        "HARNESS_LOG_LEVEL",
        "HARNESS_TEMPERATURE",
        "HARNESS_TOP_P",
        "HARNESS_TOP_K",
        "HARNESS_MAX_TOKENS",
        "OPENAI_API_KEY",
        "OPENROUTER_API_KEY",
    ):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_defaults(clean_env):
    settings = Settings.from_env(dotenv=False)
    assert settings.base_url == DEFAULT_BASE_URL
    assert settings.max_tool_steps == 8
    assert settings.native_tools is True
    assert settings.api_key is None
    assert settings.sampling.temperature == 0.2


def test_environment_overrides(clean_env, tmp_path):
    clean_env.setenv("HARNESS_MODEL", "local/qwen")
    clean_env.setenv("HARNESS_PROJECT_ROOT", str(tmp_path))
    clean_env.setenv("HARNESS_MAX_TOOL_STEPS", "3")
    clean_env.setenv("HARNESS_NATIVE_TOOLS", "false")
    clean_env.setenv("HARNESS_TOP_K", "40")
    clean_env.setenv("HARNESS_TEMPERATURE", "0")
    clean_env.setenv("OPENROUTER_API_KEY", "sk-or-test")

    settings = Settings.from_env(dotenv=False)

    assert settings.model == "local/qwen"
    assert settings.project_root == tmp_path
    assert settings.max_tool_steps == 3
    assert settings.native_tools is False
    assert settings.sampling.top_k == 40
    assert settings.sampling.temperature == 0.0
    assert settings.api_key == "sk-or-test"
    assert settings.resolved_sessions_dir() == tmp_path / ".harness" / "sessions"


def test_invalid_step_budget_is_rejected(clean_env):
    clean_env.setenv("HARNESS_MAX_TOOL_STEPS", "0")
    with pytest.raises(ValueError):
        Settings.from_env(dotenv=False)


def test_absolute_sessions_dir_is_kept(tmp_path):
    settings = Settings(sessions_dir=tmp_path / "s")
    assert settings.resolved_sessions_dir() == tmp_path / "s"


def test_configure_logging_installs_rich_handler():
    root = logging.getLogger()
    saved = root.handlers[:], root.level
    try:
        configure_logging("debug")
        assert isinstance(root.handlers[0], RichHandler)
        assert root.level == logging.DEBUG
    finally:
        root.handlers[:] = saved[0]
        root.setLevel(saved[1])


def test_default_agents_share_the_step_budget():
    own, specialists = default_agents(5)
    assert own.capabilities == ()
    assert {a.name for a in specialists} == {"coder", "reviewer", "git"}
    assert all(a.max_tool_steps == 5 for a in specialists)
    assert "write_file" not in next(a for a in specialists if a.name == "reviewer").capabilities
