import pytest

from tool_harness.context import ContextStore
from tool_harness.executor import ToolExecutor
from tool_harness.harness import SYSTEM_PROMPT
from tool_harness.models import AgentDescriptor, ModelResponse, ToolCall
from tool_harness.paths import PathGuard
from tool_harness.policy import build_allowlist
from tool_harness.storage import MemorySessionStore
from tool_harness.tools import TOOLS, build_registry


# ---------------------------------------------------------------------------
# Scripted backend
# ---------------------------------------------------------------------------


class ScriptedBackend:
    """
    Replays a fixed list of replies. An Exception in the list is raised,
    a callable is called with the messages. `default` is returned once the
    script runs out.
    """

    def __init__(self, replies=(), default=None):
        self.replies = list(replies)
        self.default = default
        self.calls = []
        self.tools_seen = []

    def complete(self, messages, tools, sampling):
        self.calls.append(list(messages))
        self.tools_seen.append([spec.name for spec in tools])
        if self.replies:
            reply = self.replies.pop(0)
        elif self.default is not None:
            reply = self.default
        else:
            raise AssertionError("backend called more often than scripted")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(messages)
        return reply


def answer(text):
    return ModelResponse(content=text)


def tool(name, call_id=None, **arguments):
    if call_id is None:
        return ModelResponse(tool_calls=[ToolCall(name=name, arguments=arguments)])
    return ModelResponse(tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def project(tmp_path):
    root = tmp_path / "project"
    root.mkdir()
    (root / "a.txt").write_text("alpha\nbeta\n")
    (root / "src").mkdir()
    (root / "src" / "main.py").write_text("def main():\n    return 42\n")
    return root


@pytest.fixture
def guard(project):
    return PathGuard(project)


@pytest.fixture
def registry():
    return build_registry()


@pytest.fixture
def executor(registry, guard):
    return ToolExecutor(registry, guard, TOOLS, default_timeout=10.0)


@pytest.fixture
def store():
    return ContextStore(MemorySessionStore())


@pytest.fixture
def session(store):
    return store.create("test", SYSTEM_PROMPT)


@pytest.fixture
def agent():
    return AgentDescriptor(name="generalist", remit="anything", max_tool_steps=4)


@pytest.fixture
def allowlist():
    return build_allowlist(())
