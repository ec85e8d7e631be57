# planner.py
# Advisory planning.
#
# The plan is context for the model, never a contract: the loop re-derives
# concrete tool calls from every response. Plan and execution are joined
# only by audit() for display.

import logging
import re

from tool_harness.backend import InferenceBackend
from tool_harness.errors import BackendProtocolError, BackendUnavailable
from tool_harness.models import Message, Plan, PlanStep, SamplingParams

logger = logging.getLogger(__name__)

PLAN_PROMPT = """\
Generate a short plan with numbered steps for the task below. Each step is
one high-level action in plain English.

If a step needs a tool, end the line with [tool: <name>] using exactly one
of these tools: {tools}
If the task needs no tools, answer with the single step:
1. Answer the user's question directly

Output format:
PLAN:
1. <action> [tool: <name>]
2. <action>\
"""

MAX_STEP_CHARS = 240

_INDEXED = re.compile(r"^\s*(\d+)\s*[.):]\s*(.+)$")
_BULLET = re.compile(r"^\s*[-*]\s+(.+)$")
_TOOL_HINT = re.compile(r"\[\s*tool\s*:\s*([A-Za-z0-9_.-]+)\s*\]", re.IGNORECASE)


def _split_hint(text: str) -> tuple[str, str | None]:
    match = _TOOL_HINT.search(text)
    if not match:
        return text.strip(), None
    intent = (text[: match.start()] + text[match.end():]).strip().rstrip(".,;:").strip()
    return intent or text.strip(), match.group(1)


def parse_plan_steps(content: str) -> list[tuple[str, str | None]]:
    """Extract (intent, tool) pairs from numbered or bulleted lines."""
    steps = []
    for raw in content.splitlines():
        line = raw.strip()
        lowered = line.lower()
        if not line or line == "```" or lowered == "plan:" or lowered.startswith("plan "):
            continue
        match = _INDEXED.match(line) or _BULLET.match(line)
        if match:
            body = match.group(match.lastindex)
            steps.append(_split_hint(body))
    return steps


class Planner:
    """Produces an ordered list of intents scoped to an agent's capabilities."""

    def __init__(self, backend: InferenceBackend, sampling: SamplingParams | None = None) -> None:
        self._backend = backend
        self._sampling = sampling or SamplingParams(temperature=0.1, max_tokens=512)

    def plan(self, task: str, capabilities: list[str] | tuple[str, ...]) -> Plan:
        allowed = list(capabilities)
        prompt = PLAN_PROMPT.format(tools=", ".join(allowed) or "(none)")
        response = self._backend.complete(
            [Message.system(prompt), Message.user(task)], [], self._sampling
        )
        return self.build(task, response.content or "", allowed)

    def try_plan(self, task: str, capabilities: list[str] | tuple[str, ...]) -> Plan | None:
        """plan(), but a backend failure only skips planning."""
        try:
            return self.plan(task, capabilities)
        except (BackendUnavailable, BackendProtocolError) as exc:
            logger.warning("planning skipped: %s", exc)
            return None

    @staticmethod
    def build(task: str, content: str, capabilities: list[str]) -> Plan:
        parsed = parse_plan_steps(content)
        if not parsed:
            fallback = next(
                (
                    line.strip()
                    for line in content.splitlines()
                    if line.strip() and line.strip() != "```" and line.strip().lower() != "plan:"
                ),
                "",
            )
            if fallback and len(fallback) <= MAX_STEP_CHARS:
                parsed = [_split_hint(fallback)]
            else:
                parsed = [(f"Answer the user's question directly: {task}", None)]

        steps: list[PlanStep] = []
        defects: list[str] = []
        for index, (intent, tool) in enumerate(parsed, start=1):
            flagged = tool is not None and tool not in capabilities
            if flagged:
                defects.append(f"Step {index} references '{tool}', which this agent cannot use.")
            steps.append(PlanStep(id=index, intent=intent[:MAX_STEP_CHARS], tool=tool, flagged=flagged))

        if defects:
            logger.warning("plan defects: %s", "; ".join(defects))
        return Plan(goal=task, steps=steps, defects=defects)


def render_plan(plan: Plan) -> str:
    """Text of the advisory message injected ahead of the execution loop."""
    lines = ["Plan (advisory, adapt as results come in):"]
    for step in plan.steps:
        hint = f" [tool: {step.tool}]" if step.tool else ""
        flag = " (not available to you, find another way)" if step.flagged else ""
        lines.append(f"{step.id}. {step.intent}{hint}{flag}")
    return "\n".join(lines)


def audit(plan: Plan | None, executed: list[str]) -> list[str]:
    """Plan-vs-execution deviations, for inspection only."""
    if plan is None:
        return []
    planned = [step.tool for step in plan.steps if step.tool]
    deviations = []
    for tool in dict.fromkeys(planned):
        if tool not in executed:
            deviations.append(f"planned tool '{tool}' was never called")
    for tool in dict.fromkeys(executed):
        if tool not in planned:
            deviations.append(f"'{tool}' was called without a planned step")
    return deviations
