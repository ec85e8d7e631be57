# router.py
# Router / Coordinator
#
# One routing decision per user request, made before any execution starts.
# The selected specialist keeps the request until its loop terminates.
#
#   request → Router.route() → RouteDecision(agent | SELF)
#           → allowlist for that agent → ExecutionLoop.run()

import logging
import os
import threading
from collections.abc import Callable

from pydantic import BaseModel

from tool_harness import display
from tool_harness.backend import InferenceBackend
from tool_harness.errors import BackendProtocolError, BackendUnavailable
from tool_harness.harness import ExecutionLoop
from tool_harness.models import AgentDescriptor, Allowlist, Message, RunOutcome, SamplingParams
from tool_harness.policy import build_allowlist, detect_project_stack

logger = logging.getLogger(__name__)

SELF = "SELF"

ROUTING_PROMPT = """\
{instruction}

Specialists:
{roster}

If delegation is required, respond ONLY with one of:
{names}
Otherwise respond ONLY with: SELF

User request:
{request}\
"""


class RouteDecision(BaseModel):
    agent: str | None = None  # None means the coordinator handles it
    confidence: float = 0.0
    reason: str = ""

    @property
    def is_self(self) -> bool:
        return self.agent is None


# ---------------------------------------------------------------------------
# Routers
# ---------------------------------------------------------------------------


class Router:
    """
    Keyword-overlap routing. Deterministic: the same request and descriptors
    always produce the same decision.
    """

    def __init__(self, threshold: float = 0.5) -> None:
        self.threshold = threshold

    def route(self, request: str, descriptors: list[AgentDescriptor]) -> RouteDecision:
        scored = [(d.matches(request), d) for d in descriptors]
        eligible = [(score, d) for score, d in scored if score >= self.threshold]
        if not eligible:
            best = max((score for score, _ in scored), default=0.0)
            return RouteDecision(confidence=best, reason="no specialist above threshold")

        top = max(score for score, _ in eligible)
        leaders = [d.name for score, d in eligible if score == top]
        if len(leaders) > 1:
            logger.warning("routing ambiguous between %s at %.2f; handling as SELF", ", ".join(leaders), top)
            return RouteDecision(confidence=top, reason=f"tie between {', '.join(leaders)}")

        return RouteDecision(agent=leaders[0], confidence=top, reason="keyword match")


class ModelRouter:
    """Asks the model to name one specialist or SELF."""

    def __init__(
        self,
        backend: InferenceBackend,
        instruction: str = "You coordinate a team of specialists.",
        sampling: SamplingParams | None = None,
    ) -> None:
        self._backend = backend
        self._instruction = instruction
        self._sampling = sampling or SamplingParams(temperature=0.0, max_tokens=32)

    def route(self, request: str, descriptors: list[AgentDescriptor]) -> RouteDecision:
        if not descriptors:
            return RouteDecision(reason="no specialists")

        prompt = ROUTING_PROMPT.format(
            instruction=self._instruction,
            roster="\n".join(f"- {d.name}: {d.remit}" for d in descriptors),
            names=", ".join(d.name for d in descriptors),
            request=request,
        )
        try:
            response = self._backend.complete([Message.user(prompt)], [], self._sampling)
        except (BackendUnavailable, BackendProtocolError) as exc:
            logger.warning("model routing failed (%s); handling as SELF", exc)
            return RouteDecision(reason="routing call failed")

        answer = (response.content or "").strip().strip("`'\".")
        for descriptor in descriptors:
            if answer == descriptor.name:
                return RouteDecision(agent=descriptor.name, confidence=1.0, reason="model choice")
        if answer != SELF:
            logger.info("model routing answered %r; handling as SELF", answer[:60])
        return RouteDecision(reason="model chose SELF")


# ---------------------------------------------------------------------------
# Coordinator
# ---------------------------------------------------------------------------


AllowlistFactory = Callable[[AgentDescriptor], Allowlist]


def project_allowlist(root: str | os.PathLike) -> AllowlistFactory:
    """Explicit per-agent rules, else rules for the stack detected under root."""

    def factory(agent: AgentDescriptor) -> Allowlist:
        if agent.run_cmd_allowlist:
            return build_allowlist((), agent.run_cmd_allowlist)
        detected = detect_project_stack(root)
        logger.debug("detected stack for %s: %s", agent.name, ", ".join(detected) or "(none)")
        return build_allowlist(detected)

    return factory


class Coordinator:
    """
    Routes each request once and hands it to a single execution loop.

    Example:
        coordinator = Coordinator(Router(), specialists, own, loop, project_allowlist(root))
        outcome = coordinator.handle(session.id, "run the tests")
    """

    def __init__(
        self,
        router: Router | ModelRouter,
        descriptors: list[AgentDescriptor],
        own: AgentDescriptor,
        loop: ExecutionLoop,
        allowlist_factory: AllowlistFactory,
    ) -> None:
        names = [d.name for d in descriptors]
        if len(set(names)) != len(names):
            raise ValueError(f"Duplicate specialist names: {names}")
        self._router = router
        self._descriptors = list(descriptors)
        self._own = own
        self._loop = loop
        self._allowlist_factory = allowlist_factory

    @property
    def descriptors(self) -> list[AgentDescriptor]:
        return list(self._descriptors)

    def select(self, request: str) -> tuple[AgentDescriptor, RouteDecision]:
        decision = self._router.route(request, self._descriptors)
        if decision.is_self:
            return self._own, decision
        agent = next(d for d in self._descriptors if d.name == decision.agent)
        return agent, decision

    def handle(
        self,
        session_id: str,
        request: str,
        cancel: threading.Event | None = None,
        plan: bool = True,
    ) -> RunOutcome:
        agent, decision = self.select(request)
        logger.info("routed to %s (%.2f, %s)", agent.name, decision.confidence, decision.reason)
        display.routed(agent.name, decision.confidence, decision.reason, delegated=not decision.is_self)
        allowlist = self._allowlist_factory(agent)
        return self._loop.run(session_id, request, agent, allowlist, cancel=cancel, plan=plan)
