# models.py
# Data contracts for the agent execution core.
# No business logic lives here; pure schema and validation.

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


def _now() -> datetime:
    return datetime.now(timezone.utc)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:12]}"


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL_RESULT = "tool-result"


class ToolCall(BaseModel):
    """A structured request from the model to invoke a named tool."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_call_id)
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    """One entry of a session. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | None = None
    tool_calls: tuple[ToolCall, ...] = ()
    tool_call_id: str | None = Field(
        default=None, description="Set on tool-result messages; names the call answered."
    )
    created_at: datetime = Field(default_factory=_now)

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role=Role.SYSTEM, content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role=Role.USER, content=content)

    @classmethod
    def assistant(cls, content: str | None, tool_calls: list[ToolCall] | None = None) -> "Message":
        return cls(role=Role.ASSISTANT, content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool_result(cls, tool_call_id: str, content: str) -> "Message":
        return cls(role=Role.TOOL_RESULT, content=content, tool_call_id=tool_call_id)


class Session(BaseModel):
    """A persisted conversation. Owned exclusively by the ContextStore."""

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: str = ""
    created_at: datetime = Field(default_factory=_now)
    updated_at: datetime = Field(default_factory=_now)
    messages: list[Message] = Field(default_factory=list)

    @property
    def short_id(self) -> str:
        return self.id[:8]


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class Capability(str, Enum):
    FS_READ = "filesystem-read"
    FS_WRITE = "filesystem-write"
    SHELL = "shell-exec"
    VCS = "vcs"
    ANALYSIS = "static-analysis"


class ParamSpec(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str = Field(..., description="JSON-schema type name.")
    required: bool = True
    description: str = ""
    path: bool = Field(default=False, description="Value is a path checked by the PathGuard.")


class ToolSpec(BaseModel):
    """Declared tool. Registered once at startup; read-only thereafter."""

    model_config = ConfigDict(frozen=True)

    name: str
    description: str
    capability: Capability
    params: dict[str, ParamSpec] = Field(default_factory=dict)
    timeout: float | None = Field(default=None, description="Seconds; executor default if unset.")

    @property
    def path_params(self) -> list[str]:
        return [name for name, param in self.params.items() if param.path]

    def json_schema(self) -> dict[str, Any]:
        return {
            "type": "object",
            "properties": {
                name: {"type": param.type, "description": param.description}
                for name, param in self.params.items()
            },
            "required": [name for name, param in self.params.items() if param.required],
            "additionalProperties": False,
        }

    def to_schema(self) -> dict[str, Any]:
        """Function-calling definition sent to the inference backend."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.json_schema(),
            },
        }


class ToolFailure(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: str
    message: str


class ToolResult(BaseModel):
    """Outcome of one tool call, success payload or typed failure."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    tool: str
    output: str = ""
    failure: ToolFailure | None = None
    elapsed_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None

    def render(self) -> str:
        """Text folded into the context as the tool-result message."""
        if self.failure is None:
            return self.output
        text = f"Tool error [{self.failure.kind}]: {self.failure.message}"
        if self.output:
            text += f"\nPartial output:\n{self.output}"
        return text


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------


class PlanStep(BaseModel):
    """A single advisory intent in a plan."""

    id: int = Field(..., description="1-based step index.")
    intent: str = Field(..., description="Short natural-language intent.")
    tool: str | None = Field(default=None, description="Tool the step expects to use.")
    flagged: bool = Field(default=False, description="Tool is outside the capability set.")


class Plan(BaseModel):
    goal: str
    steps: list[PlanStep] = Field(..., min_length=1)
    defects: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------


class AllowlistRule(BaseModel):
    """Command-name prefix plus optional argument-prefix constraint."""

    model_config = ConfigDict(frozen=True)

    command: str
    args: tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "AllowlistRule":
        tokens = text.split()
        if not tokens:
            raise ValueError("Allowlist rule cannot be empty.")
        return cls(command=tokens[0], args=tuple(tokens[1:]))

    def matches(self, tokens: list[str]) -> bool:
        if not tokens or tokens[0] != self.command:
            return False
        rest = tokens[1:]
        return len(rest) >= len(self.args) and tuple(rest[: len(self.args)]) == self.args

    def __str__(self) -> str:
        return " ".join((self.command, *self.args))


class Allowlist(BaseModel):
    """Immutable rule set for one session; replaced wholesale on reload."""

    model_config = ConfigDict(frozen=True)

    rules: tuple[AllowlistRule, ...] = ()
    technologies: tuple[str, ...] = ()

    def permits(self, tokens: list[str]) -> bool:
        return any(rule.matches(tokens) for rule in self.rules)

    def describe(self) -> list[str]:
        return [str(rule) for rule in self.rules]


# ---------------------------------------------------------------------------
# Agents and routing
# ---------------------------------------------------------------------------

_WORD = re.compile(r"[a-z0-9_+#.-]+")

_STOPWORDS = frozenset(
    "a an and are as at be by for from has have in into is it its of on or "
    "that the this to was were will with any all can do does i me my you your "
    "please here there what which who how".split()
)


def keyword_set(text: str) -> set[str]:
    words = (w.strip(".-") for w in _WORD.findall(text.lower()))
    return {w for w in words if len(w) > 1 and w not in _STOPWORDS}


class AgentDescriptor(BaseModel):
    """A specialist (or the coordinator itself) the router may select."""

    model_config = ConfigDict(frozen=True)

    name: str
    remit: str = Field(..., description="Natural-language scope used for routing.")
    instruction: str = ""
    keywords: tuple[str, ...] = ()
    capabilities: tuple[str, ...] = Field(default=(), description="Tool names it may invoke.")
    max_tool_steps: int = Field(default=8, ge=1)
    run_cmd_allowlist: tuple[str, ...] = Field(
        default=(), description="Explicit rules; when set, stack detection is skipped."
    )

    def matches(self, request: str) -> float:
        """Confidence in [0, 1] that the request falls inside this remit."""
        vocabulary = {k.lower() for k in self.keywords} or keyword_set(self.remit)
        words = keyword_set(request)
        if not vocabulary or not words:
            return 0.0
        hits = len(words & vocabulary)
        return hits / min(len(words), len(vocabulary))


# ---------------------------------------------------------------------------
# Inference and outcomes
# ---------------------------------------------------------------------------


class SamplingParams(BaseModel):
    model_config = ConfigDict(frozen=True)

    temperature: float | None = 0.2
    top_p: float | None = None
    top_k: int | None = None
    max_tokens: int | None = 4096


class ModelResponse(BaseModel):
    content: str | None = None
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @property
    def is_answer(self) -> bool:
        return not self.tool_calls


class LoopState(str, Enum):
    PLANNING = "planning"
    AWAITING_MODEL = "awaiting_model"
    TOOL_REQUESTED = "tool_requested"
    ANSWER_READY = "answer_ready"
    FAILED = "failed"
    DONE = "done"


class RunOutcome(BaseModel):
    """What the caller gets back from one execution loop run."""

    session_id: str
    agent: str
    state: LoopState
    answer: str = ""
    steps: int = 0
    backend_calls: int = 0
    truncated: bool = False
    cancelled: bool = False
    error: str | None = None
    plan: Plan | None = None
    deviations: list[str] = Field(default_factory=list)
    results: list[ToolResult] = Field(default_factory=list)
