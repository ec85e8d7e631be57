# config.py
# Settings from the environment (and a local .env file).
#
# Swap HARNESS_MODEL for any OpenRouter-supported model, or point
# HARNESS_BASE_URL at a local llama.cpp / vLLM server.
# https://openrouter.ai/models

import logging
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic import BaseModel, Field
from rich.logging import RichHandler

from tool_harness.models import SamplingParams

DEFAULT_MODEL = "qwen/qwen-2.5-coder-32b-instruct"
DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

_TRUE = {"1", "true", "yes", "on"}


def _env(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    return value if value not in (None, "") else default


def _float(name: str) -> float | None:
    value = _env(name)
    return float(value) if value is not None else None


def _int(name: str) -> int | None:
    value = _env(name)
    return int(value) if value is not None else None


class Settings(BaseModel):
    model: str = DEFAULT_MODEL
    base_url: str = DEFAULT_BASE_URL
    api_key: str | None = None
    project_root: Path = Field(default_factory=Path.cwd)
    sessions_dir: Path = Path(".harness/sessions")
    max_tool_steps: int = Field(default=8, ge=1)
    tool_timeout: float = Field(default=60.0, gt=0)
    inference_timeout: float = Field(default=120.0, gt=0)
    backend_retries: int = Field(default=3, ge=0)
    context_budget: int | None = Field(default=None, ge=1)
    native_tools: bool = True
    log_level: str = "WARNING"
    sampling: SamplingParams = Field(default_factory=SamplingParams)

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """Build settings from HARNESS_* variables; unset ones keep their defaults."""
        if dotenv:
            load_dotenv()

        values: dict = {}
        for key, name, convert in (
            ("model", "HARNESS_MODEL", str),
            ("base_url", "HARNESS_BASE_URL", str),
            ("project_root", "HARNESS_PROJECT_ROOT", Path),
            ("sessions_dir", "HARNESS_SESSIONS_DIR", Path),
            ("max_tool_steps", "HARNESS_MAX_TOOL_STEPS", int),
            ("tool_timeout", "HARNESS_TOOL_TIMEOUT", float),
            ("inference_timeout", "HARNESS_INFERENCE_TIMEOUT", float),
            ("backend_retries", "HARNESS_BACKEND_RETRIES", int),
            ("context_budget", "HARNESS_CONTEXT_BUDGET", int),
            ("log_level", "HARNESS_LOG_LEVEL", str),
        ):
            raw = _env(name)
            if raw is not None:
                values[key] = convert(raw)

        native = _env("HARNESS_NATIVE_TOOLS")
        if native is not None:
            values["native_tools"] = native.lower() in _TRUE

        values["api_key"] = _env("OPENAI_API_KEY") or _env("OPENROUTER_API_KEY")

        defaults = SamplingParams()
        values["sampling"] = SamplingParams(
            temperature=_float("HARNESS_TEMPERATURE") if _env("HARNESS_TEMPERATURE") else defaults.temperature,
            top_p=_float("HARNESS_TOP_P"),
            top_k=_int("HARNESS_TOP_K"),
            max_tokens=_int("HARNESS_MAX_TOKENS") or defaults.max_tokens,
        )
        return cls(**values)

    def resolved_sessions_dir(self) -> Path:
        if self.sessions_dir.is_absolute():
            return self.sessions_dir
        return self.project_root / self.sessions_dir


def configure_logging(level: str = "WARNING") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(name)s: %(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
        force=True,
    )
