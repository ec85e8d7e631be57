from unittest.mock import MagicMock

import pytest
from conftest import ScriptedBackend, answer

from tool_harness.errors import BackendUnavailable
from tool_harness.models import AgentDescriptor, LoopState, RunOutcome
from tool_harness.router import Coordinator, ModelRouter, Router, project_allowlist

CODER = AgentDescriptor(
    name="coder",
    remit="Write and fix code.",
    keywords=("fix", "bug", "implement", "code", "tests"),
    capabilities=("read_file", "write_file"),
)
GIT = AgentDescriptor(
    name="git",
    remit="Version control.",
    keywords=("git", "commit", "diff", "status"),
    run_cmd_allowlist=("git status", "git log"),
)
OWN = AgentDescriptor(name="coordinator", remit="Everything else.")

# ---------------------------------------------------------------------------
# Keyword routing
# ---------------------------------------------------------------------------


def test_routes_to_best_match():
    decision = Router().route("please fix the bug in parser code", [CODER, GIT])
    assert decision.agent == "coder"
    assert decision.confidence >= 0.5


def test_below_threshold_is_self():
    decision = Router(threshold=0.5).route("what's the weather like in Lisbon today", [CODER, GIT])
    assert decision.is_self
    assert decision.agent is None


def test_routing_is_deterministic():
    router = Router()
    decisions = {router.route("commit the diff", [CODER, GIT]).model_dump_json() for _ in range(20)}
    assert len(decisions) == 1


def test_tie_at_the_top_resolves_to_self():
    twin = CODER.model_copy(update={"name": "coder-2"})
    decision = Router().route("fix code", [CODER, twin])
    assert decision.is_self
    assert "tie" in decision.reason


def test_remit_words_used_without_keywords():
    docs = AgentDescriptor(name="docs", remit="Documentation writer for README files")
    assert docs.matches("update the README documentation") == pytest.approx(2 / 3)
    assert docs.matches("") == 0.0


def test_empty_descriptor_list_is_self():
    assert Router().route("anything", []).is_self


# ---------------------------------------------------------------------------
# Model routing
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "reply, expected",
    [("coder", "coder"), ("  git\n", "git"), ("SELF", None), ("the coder agent", None)],
)
def test_model_router_answers(reply, expected):
    backend = ScriptedBackend([answer(reply)])
    decision = ModelRouter(backend).route("do it", [CODER, GIT])
    assert decision.agent == expected
    prompt = backend.calls[0][0].content
    assert "respond ONLY with one of:\ncoder, git" in prompt
    assert prompt.rstrip().endswith("do it")


def test_model_router_backend_failure_is_self():
    decision = ModelRouter(ScriptedBackend([BackendUnavailable("down")])).route("x", [CODER])
    assert decision.is_self


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


def _loop():
    loop = MagicMock()
    loop.run.side_effect = lambda session_id, request, agent, allowlist, cancel=None, plan=True: RunOutcome(
        session_id=session_id, agent=agent.name, state=LoopState.DONE, answer="ok"
    )
    return loop


def test_coordinator_hands_request_to_selected_specialist(tmp_path):
    loop = _loop()
    coordinator = Coordinator(Router(), [CODER, GIT], OWN, loop, project_allowlist(tmp_path))

    outcome = coordinator.handle("s1", "show git status and the diff")

    assert outcome.agent == "git"
    agent, allowlist = loop.run.call_args.args[2:4]
    assert agent is GIT
    assert allowlist.describe() == ["git status", "git log"]


def test_coordinator_handles_unmatched_requests_itself(tmp_path):
    (tmp_path / "go.mod").write_text("module demo\n")
    loop = _loop()
    coordinator = Coordinator(Router(), [CODER, GIT], OWN, loop, project_allowlist(tmp_path))

    outcome = coordinator.handle("s1", "hello there")

    assert outcome.agent == "coordinator"
    allowlist = loop.run.call_args.args[3]
    assert allowlist.technologies == ("go",)
    assert allowlist.permits(["go", "test", "./..."])
    assert not allowlist.permits(["cargo", "check"])


def test_coordinator_routes_once_per_request(tmp_path):
    router = MagicMock(wraps=Router())
    coordinator = Coordinator(router, [CODER], OWN, _loop(), project_allowlist(tmp_path))
    coordinator.handle("s1", "fix the bug")
    assert router.route.call_count == 1


def test_duplicate_specialist_names_are_rejected(tmp_path):
    with pytest.raises(ValueError):
        Coordinator(Router(), [CODER, CODER], OWN, _loop(), project_allowlist(tmp_path))
