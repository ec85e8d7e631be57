# errors.py
# Exception taxonomy for the execution core.
#
# Local errors are caught by the executor and folded into context as a failed
# tool-result; the model sees them and adapts. Fatal errors end the loop.
# Each local error names the ToolFailure kind it is reported as.


class HarnessError(Exception):
    """Base class for every error raised by the harness."""

    kind = "io"


# ---------------------------------------------------------------------------
# Local: surfaced as a tool-result, loop continues
# ---------------------------------------------------------------------------


class SchemaError(HarnessError):
    """Tool-call arguments are missing, unexpected, or of the wrong type."""

    kind = "schema"


class PolicyDenied(HarnessError):
    """Capability or allowlist violation. Terminal for the call, never retried."""

    kind = "policy"


class PathEscape(HarnessError):
    """A path argument resolves outside the project root."""

    kind = "path_escape"


class ToolTimeout(HarnessError):
    """A tool did not finish within its time limit."""

    kind = "timeout"

    def __init__(self, message: str, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


class ToolIOError(HarnessError):
    """A tool failed against its external resource."""

    kind = "io"


class ToolNotFound(ToolIOError):
    kind = "not_found"


class ToolPermissionDenied(ToolIOError):
    kind = "permission_denied"


class NonZeroExit(ToolIOError):
    """A subprocess exited with a non-zero status."""

    kind = "non_zero_exit"

    def __init__(self, message: str, returncode: int, output: str = "") -> None:
        super().__init__(message)
        self.returncode = returncode
        self.output = output


class ToolCancelled(HarnessError):
    """The run was cancelled while the tool was in flight."""

    kind = "cancelled"

    def __init__(self, message: str, partial: str = "") -> None:
        super().__init__(message)
        self.partial = partial


# ---------------------------------------------------------------------------
# Fatal: end the loop in the FAILED state
# ---------------------------------------------------------------------------


class BackendUnavailable(HarnessError):
    """Transient inference backend failure. Retried with backoff, then fatal."""


class BackendProtocolError(HarnessError):
    """The backend returned a payload the harness cannot interpret."""


class ContextCorruption(HarnessError):
    """A tool-result references no known tool call."""


# ---------------------------------------------------------------------------
# Registry, session and store errors
# ---------------------------------------------------------------------------


class DuplicateTool(HarnessError):
    """A tool with the same name is already registered."""


class RegistryFrozen(HarnessError):
    """The registry is read-only once the harness has started."""


class SessionNotFound(HarnessError):
    """No stored or live session matches the requested key."""


class AmbiguousSession(HarnessError):
    """A session prefix matches more than one stored session."""


class SessionBusy(HarnessError):
    """Another execution loop already holds this session."""
