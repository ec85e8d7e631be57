# harness.py
# Execution Loop
#
# The loop is the kernel. The model is a passive responder; this class owns
# control flow, state and bookkeeping.
#
# Control flow:
#   user request → plan? (advisory) → model ⇄ ordered tool queue
#   → answer | step budget exhausted | cancelled | fatal error
#
# Only backend exhaustion, undecodable backend payloads and context
# corruption are fatal. Every tool failure is folded back into context.
#
# All terminal output is delegated to display.py.

import logging
import threading
from collections import deque

from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from tool_harness import display
from tool_harness.backend import InferenceBackend
from tool_harness.context import ContextStore, estimate_tokens
from tool_harness.errors import BackendProtocolError, BackendUnavailable, ContextCorruption
from tool_harness.executor import ToolExecutor, WaitCancelled, WaitTimeout, call_in_worker
from tool_harness.models import (
    AgentDescriptor,
    Allowlist,
    LoopState,
    Message,
    ModelResponse,
    Role,
    RunOutcome,
    SamplingParams,
    ToolCall,
    ToolFailure,
    ToolResult,
    ToolSpec,
    new_call_id,
)
from tool_harness.planner import Planner, audit, render_plan
from tool_harness.registry import ToolRegistry

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Prompts
# ---------------------------------------------------------------------------

SYSTEM_PROMPT = """\
You are an autonomous coding agent working inside a single project directory.

Rules:
- All paths are relative to the project root. Never use paths outside it.
- Use tools before making claims about repository contents.
- To change a file, call write_file, append_to_file or replace_in_file.
  Never just print the new code and describe the change.
- replace_in_file matches text exactly. Read the file first and copy the
  text including whitespace.
- Shell commands must match the allowed command prefixes; others are refused.
- If a tool fails, read the error, adapt, and try another way or explain
  the failure to the user.
- When you are done, answer the user directly without calling a tool.\
"""

TRUNCATION_NOTICE = (
    "Stopped after {steps} tool step(s) without a final answer. "
    "The work so far is recorded above; ask me to continue if needed."
)

CANCELLED_NOTICE = "Cancelled by the user. Results recorded so far are kept."


def _agent_prompt(agent: AgentDescriptor) -> Message | None:
    if not agent.instruction:
        return None
    return Message.system(f"You are acting as '{agent.name}'. {agent.instruction}")


class ExecutionLoop:
    """
    Drives one session from a user request to a final answer.

    Example:
        loop = ExecutionLoop(backend, registry, executor, store, planner=Planner(backend))
        outcome = loop.run(session.id, "list files here", agent, allowlist)
    """

    def __init__(
        self,
        backend: InferenceBackend,
        registry: ToolRegistry,
        executor: ToolExecutor,
        store: ContextStore,
        planner: Planner | None = None,
        sampling: SamplingParams | None = None,
        max_backend_retries: int = 3,
        backoff_base: float = 0.5,
        inference_timeout: float | None = None,
        context_budget: int | None = None,
    ) -> None:
        self._backend = backend
        self._registry = registry
        self._executor = executor
        self._store = store
        self._planner = planner
        self._sampling = sampling or SamplingParams()
        self._max_retries = max(0, max_backend_retries)
        self._backoff_base = backoff_base
        self._inference_timeout = inference_timeout
        self._context_budget = context_budget

    @property
    def store(self) -> ContextStore:
        return self._store

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def run(
        self,
        session_id: str,
        request: str,
        agent: AgentDescriptor,
        allowlist: Allowlist,
        cancel: threading.Event | None = None,
        plan: bool = True,
    ) -> RunOutcome:
        """
        Run the loop to a terminal state. Returns a RunOutcome in all cases
        except when the session is unknown or already running.
        """
        cancel = cancel or threading.Event()
        with self._store.lease(session_id):
            outcome = self._drive(session_id, request, agent, allowlist, cancel, plan)
        if self._store.store is not None:
            self._store.save(session_id)
        return outcome

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    def _drive(
        self,
        session_id: str,
        request: str,
        agent: AgentDescriptor,
        allowlist: Allowlist,
        cancel: threading.Event,
        plan_first: bool,
    ) -> RunOutcome:
        tools = self._tools_for(agent)
        outcome = RunOutcome(session_id=session_id, agent=agent.name, state=LoopState.PLANNING)
        executed: list[str] = []

        display.run_start(agent.name, request, agent.max_tool_steps)
        self._store.append(session_id, Message.user(request))

        # ── Planning: advisory only, skipped for tool-free agents ──────
        if plan_first and self._planner is not None and tools:
            display.planning()
            outcome.plan = self._planner.try_plan(request, [spec.name for spec in tools])
            if outcome.plan is not None:
                display.plan_parsed(outcome.plan)
                self._store.append(session_id, Message.assistant(render_plan(outcome.plan)))

        budget = agent.max_tool_steps
        while True:
            if cancel.is_set():
                return self._cancelled(session_id, outcome, executed)

            # ── AwaitingModel ──────────────────────────────────────────
            outcome.state = LoopState.AWAITING_MODEL
            display.awaiting_model(outcome.steps, budget)
            try:
                response = self._infer(session_id, agent, tools, allowlist, cancel)
            except WaitCancelled:
                return self._cancelled(session_id, outcome, executed)
            except (BackendUnavailable, BackendProtocolError) as exc:
                return self._failed(session_id, outcome, executed, exc)
            outcome.backend_calls += 1

            # ── AnswerReady ───────────────────────────────────────────
            if response.is_answer:
                outcome.state = LoopState.ANSWER_READY
                answer = response.content or ""
                self._store.append(session_id, Message.assistant(answer))
                return self._done(outcome, executed, answer)

            # ── Step budget ───────────────────────────────────────────
            if outcome.steps >= budget:
                notice = TRUNCATION_NOTICE.format(steps=budget)
                logger.info("step budget of %d exhausted for %s", budget, agent.name)
                display.truncated(budget)
                self._store.append(session_id, Message.assistant(notice))
                outcome.truncated = True
                return self._done(outcome, executed, notice)

            # ── ToolRequested ─────────────────────────────────────────
            outcome.state = LoopState.TOOL_REQUESTED
            outcome.steps += 1
            batch = self._with_unique_ids(session_id, response.tool_calls)
            self._store.append(session_id, Message.assistant(response.content, batch))
            try:
                self._run_batch(session_id, batch, agent, allowlist, cancel, outcome, executed)
            except ContextCorruption as exc:
                return self._failed(session_id, outcome, executed, exc)

    def _run_batch(
        self,
        session_id: str,
        batch: list[ToolCall],
        agent: AgentDescriptor,
        allowlist: Allowlist,
        cancel: threading.Event,
        outcome: RunOutcome,
        executed: list[str],
    ) -> None:
        """
        Ordered queue, single worker. Each result is appended before the
        next call starts, so later calls observe earlier side effects.
        Rendering happens only after the result is recorded.
        """
        queue = deque(batch)
        while queue:
            call = queue.popleft()
            ran = not cancel.is_set()
            if ran:
                result = self._executor.execute(call, agent, allowlist, cancel)
                executed.append(call.name)
            else:
                result = ToolResult(
                    tool_call_id=call.id,
                    tool=call.name,
                    failure=ToolFailure(kind="cancelled", message="Not run: the request was cancelled."),
                )
            self._store.append(session_id, Message.tool_result(result.tool_call_id, result.render()))
            outcome.results.append(result)
            if ran:
                display.tool_call(call.name, call.arguments)
            display.tool_result(result)

    # ------------------------------------------------------------------
    # Inference with bounded retry
    # ------------------------------------------------------------------

    def _infer(
        self,
        session_id: str,
        agent: AgentDescriptor,
        tools: list[ToolSpec],
        allowlist: Allowlist,
        cancel: threading.Event,
    ) -> ModelResponse:
        if self._context_budget:
            self._store.trim(session_id, self._context_budget, estimate_tokens)

        messages = self._store.snapshot(session_id)
        at = 1 if messages and messages[0].role is Role.SYSTEM else 0
        for extra in (_agent_prompt(agent), self._tool_prompt(tools, allowlist)):
            if extra is not None:
                messages.insert(at, extra)
                at += 1

        def complete() -> ModelResponse:
            try:
                return call_in_worker(
                    lambda: self._backend.complete(messages, tools, self._sampling),
                    timeout=self._inference_timeout,
                    cancel=cancel,
                    grace=0.0,
                    name="inference",
                )
            except WaitTimeout:
                raise BackendUnavailable(
                    f"Inference call timed out after {self._inference_timeout}s."
                ) from None

        def sleep(delay: float) -> None:
            if cancel.wait(delay):
                raise WaitCancelled()

        def before_sleep(state: RetryCallState) -> None:
            delay = state.next_action.sleep
            logger.warning(
                "backend unavailable (%s); retry %d/%d in %.1fs",
                state.outcome.exception(),
                state.attempt_number,
                self._max_retries,
                delay,
            )
            display.backend_retry(state.attempt_number, self._max_retries, delay)

        retrying = Retrying(
            retry=retry_if_exception_type(BackendUnavailable),
            stop=stop_after_attempt(self._max_retries + 1),
            wait=wait_exponential(multiplier=self._backoff_base),
            sleep=sleep,
            before_sleep=before_sleep,
            reraise=True,
        )
        return retrying(complete)

    # ------------------------------------------------------------------
    # Terminal transitions
    # ------------------------------------------------------------------

    def _done(self, outcome: RunOutcome, executed: list[str], answer: str) -> RunOutcome:
        outcome.state = LoopState.DONE
        outcome.answer = answer
        outcome.deviations = audit(outcome.plan, executed)
        if outcome.deviations:
            display.deviations(outcome.deviations)
        display.final_result(answer)
        return outcome

    def _cancelled(self, session_id: str, outcome: RunOutcome, executed: list[str]) -> RunOutcome:
        logger.info("run cancelled for session %s", session_id[:8])
        display.cancelled()
        self._store.append(session_id, Message.assistant(CANCELLED_NOTICE))
        outcome.cancelled = True
        outcome.state = LoopState.DONE
        outcome.answer = CANCELLED_NOTICE
        outcome.deviations = audit(outcome.plan, executed)
        return outcome

    def _failed(
        self, session_id: str, outcome: RunOutcome, executed: list[str], error: Exception
    ) -> RunOutcome:
        message = f"Execution failed: {error}"
        logger.error("run failed for session %s: %s", session_id[:8], error)
        display.halt(message)
        # no tool calls, so never subject to the correlation check
        self._store.append(session_id, Message.assistant(message))
        outcome.state = LoopState.FAILED
        outcome.error = f"{type(error).__name__}: {error}"
        outcome.answer = message
        outcome.deviations = audit(outcome.plan, executed)
        return outcome

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _tools_for(self, agent: AgentDescriptor) -> list[ToolSpec]:
        specs = self._registry.specs()
        if not agent.capabilities:
            return specs
        return [spec for spec in specs if spec.name in agent.capabilities]

    def _tool_prompt(self, tools: list[ToolSpec], allowlist: Allowlist) -> Message | None:
        if not tools:
            return None
        reference = self._registry.help_text([spec.name for spec in tools], allowlist)
        return Message.system(f"Tool reference:\n{reference}")

    def _with_unique_ids(self, session_id: str, calls: list[ToolCall]) -> list[ToolCall]:
        """Models sometimes repeat or reuse call ids; results must correlate 1:1."""
        seen = {call.id for m in self._store.snapshot(session_id) for call in m.tool_calls}
        unique = []
        for call in calls:
            if call.id in seen:
                call = call.model_copy(update={"id": new_call_id()})
            seen.add(call.id)
            unique.append(call)
        return unique
