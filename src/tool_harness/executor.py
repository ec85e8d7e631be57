# executor.py
# Tool Executor: dispatch glue between a validated ToolCall and its handler.
#
# Order per call: validate -> authorize -> PathGuard on every path argument
# -> handler in a worker thread under the per-call timeout. Every local
# failure comes back as a typed ToolResult; nothing escapes into the loop.

import logging
import threading
import time
from collections.abc import Callable
from typing import Any, TypeVar

from tool_harness.errors import (
    PathEscape,
    PolicyDenied,
    SchemaError,
    ToolCancelled,
    ToolIOError,
    ToolNotFound,
    ToolTimeout,
)
from tool_harness.models import AgentDescriptor, Allowlist, ToolCall, ToolFailure, ToolResult
from tool_harness.paths import PathGuard
from tool_harness.registry import ToolRegistry
from tool_harness.tools import ToolContext

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Extra time a handler gets past its own timeout to report partial output.
GRACE_SECONDS = 1.0
POLL_SECONDS = 0.05

_LOCAL_ERRORS = (SchemaError, PolicyDenied, PathEscape, ToolTimeout, ToolIOError, ToolCancelled)


class WaitTimeout(Exception):
    """The worker did not finish before the deadline."""


class WaitCancelled(Exception):
    """The cancel event was set while waiting on the worker."""


def call_in_worker(
    fn: Callable[[], T],
    *,
    timeout: float | None,
    cancel: threading.Event | None = None,
    grace: float = GRACE_SECONDS,
    name: str = "harness-worker",
) -> T:
    """
    Run `fn` in a daemon thread and wait for it, observing `cancel`.

    On cancellation the worker gets `grace` seconds to finish on its own so a
    partial result can still be recorded; after that WaitCancelled is raised.
    """
    box: dict[str, Any] = {}
    done = threading.Event()

    def target() -> None:
        try:
            box["value"] = fn()
        except BaseException as exc:  # re-raised in the waiting thread
            box["error"] = exc
        finally:
            done.set()

    threading.Thread(target=target, name=name, daemon=True).start()
    deadline = None if timeout is None else time.monotonic() + timeout

    while not done.wait(POLL_SECONDS):
        if cancel is not None and cancel.is_set():
            if not done.wait(grace):
                raise WaitCancelled()
            break
        if deadline is not None and time.monotonic() >= deadline:
            raise WaitTimeout()

    if "error" in box:
        raise box["error"]
    return box["value"]


Handler = Callable[[ToolContext, dict[str, Any]], str]


class ToolExecutor:
    """Dispatches tool calls to their implementations."""

    def __init__(
        self,
        registry: ToolRegistry,
        guard: PathGuard,
        handlers: dict[str, Handler],
        default_timeout: float = 60.0,
    ) -> None:
        self._registry = registry
        self._guard = guard
        self._handlers = dict(handlers)
        self._default_timeout = default_timeout

    @property
    def guard(self) -> PathGuard:
        return self._guard

    def execute(
        self,
        call: ToolCall,
        agent: AgentDescriptor,
        allowlist: Allowlist,
        cancel: threading.Event | None = None,
    ) -> ToolResult:
        start = time.monotonic()

        def failed(kind: str, message: str, partial: str = "") -> ToolResult:
            logger.info("tool %s failed [%s]: %s", call.name, kind, message.splitlines()[0] if message else "")
            return ToolResult(
                tool_call_id=call.id,
                tool=call.name,
                output=partial,
                failure=ToolFailure(kind=kind, message=message),
                elapsed_ms=int((time.monotonic() - start) * 1000),
            )

        try:
            spec = self._registry.validate(call)
            self._registry.authorize(call, agent, allowlist)

            args = dict(call.arguments)
            for key in spec.path_params:
                if key in args:
                    args[key] = str(self._guard.resolve(args[key]))

            handler = self._handlers.get(spec.name)
            if handler is None:
                raise ToolNotFound(f"No implementation registered for '{spec.name}'.")

            timeout = spec.timeout or self._default_timeout
            ctx = ToolContext(guard=self._guard, timeout=timeout, cancel=cancel or threading.Event())
            output = call_in_worker(
                lambda: handler(ctx, args),
                timeout=timeout + GRACE_SECONDS,
                cancel=cancel,
                name=f"tool-{spec.name}",
            )
        except WaitTimeout:
            return failed("timeout", f"'{call.name}' did not finish within its time limit.")
        except WaitCancelled:
            return failed("cancelled", f"'{call.name}' was cancelled before it finished.")
        except (ToolTimeout, ToolCancelled) as exc:
            return failed(exc.kind, str(exc), exc.partial)
        except _LOCAL_ERRORS as exc:
            return failed(exc.kind, str(exc))
        except OSError as exc:
            return failed("io", f"{type(exc).__name__}: {exc}")
        except Exception as exc:
            logger.exception("tool %s raised unexpectedly", call.name)
            return failed("io", f"{type(exc).__name__}: {exc}")

        return ToolResult(
            tool_call_id=call.id,
            tool=call.name,
            output=str(output),
            elapsed_ms=int((time.monotonic() - start) * 1000),
        )
