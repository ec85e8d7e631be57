# registry.py
# Tool registry and policy gate.
#
# validate() and authorize() run before any side effect. The registry is
# filled at startup, frozen, and then shared read-only across sessions.

import logging
import shlex
from typing import Any

from jsonschema import Draft7Validator

from tool_harness.errors import DuplicateTool, PolicyDenied, RegistryFrozen, SchemaError
from tool_harness.models import AgentDescriptor, Allowlist, Capability, ToolCall, ToolSpec

logger = logging.getLogger(__name__)

# Argument a shell-exec tool carries its command line in.
COMMAND_ARG = "command"


class ToolRegistry:
    """
    Central registry of declared tools.

    Usage:
        registry = ToolRegistry()
        registry.register(spec)
        registry.freeze()
        registry.validate(call)
    """

    def __init__(self) -> None:
        self._specs: dict[str, ToolSpec] = {}
        self._validators: dict[str, Draft7Validator] = {}
        self._frozen = False

    # ------------------------------------------------------------------
    # Declaration
    # ------------------------------------------------------------------

    def register(self, spec: ToolSpec) -> None:
        if self._frozen:
            raise RegistryFrozen(f"Cannot register '{spec.name}': registry is frozen.")
        if spec.name in self._specs:
            raise DuplicateTool(f"Tool '{spec.name}' is already registered.")
        schema = spec.json_schema()
        Draft7Validator.check_schema(schema)
        self._specs[spec.name] = spec
        self._validators[spec.name] = Draft7Validator(schema)
        logger.debug("registered tool %s [%s]", spec.name, spec.capability.value)

    def freeze(self) -> "ToolRegistry":
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, name: str) -> ToolSpec | None:
        return self._specs.get(name)

    def names(self) -> list[str]:
        return list(self._specs)

    def specs(self) -> list[ToolSpec]:
        return list(self._specs.values())

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def schemas(self, names: list[str] | tuple[str, ...] | None = None) -> list[dict[str, Any]]:
        """Function-calling definitions, restricted to `names` when given."""
        wanted = self._specs if names is None else [n for n in names if n in self._specs]
        return [self._specs[name].to_schema() for name in wanted]

    def help_text(self, names: list[str] | tuple[str, ...], allowlist: Allowlist | None = None) -> str:
        """Plain-text tool reference sent alongside each inference, with allowed command prefixes."""
        lines = []
        for name in names:
            spec = self._specs.get(name)
            if spec is None:
                continue
            args = ", ".join(
                f"{arg}: {param.type}{'' if param.required else '?'}"
                for arg, param in spec.params.items()
            )
            lines.append(f"- {name}({args}): {spec.description}")
            if spec.capability is Capability.SHELL and allowlist is not None:
                lines.append(f"  allowed command prefixes: {', '.join(allowlist.describe())}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Gates
    # ------------------------------------------------------------------

    def validate(self, call: ToolCall) -> ToolSpec:
        """Check argument presence and types. Raises SchemaError."""
        spec = self._specs.get(call.name)
        if spec is None:
            raise SchemaError(f"Unknown tool '{call.name}'. Available: {', '.join(self._specs)}")

        if "_raw_arguments" in call.arguments:
            raise SchemaError(
                f"Arguments for '{call.name}' are not valid JSON: {call.arguments['_raw_arguments']!r}"
            )

        errors = sorted(self._validators[call.name].iter_errors(call.arguments), key=str)
        if errors:
            detail = "; ".join(_describe(error) for error in errors)
            raise SchemaError(f"Invalid arguments for '{call.name}': {detail}")
        return spec

    def authorize(self, call: ToolCall, agent: AgentDescriptor, allowlist: Allowlist) -> None:
        """Capability and allowlist check. Raises PolicyDenied; never retried."""
        spec = self._specs.get(call.name)
        if spec is None:
            raise SchemaError(f"Unknown tool '{call.name}'.")

        if agent.capabilities and call.name not in agent.capabilities:
            logger.warning("policy: %s may not use %s", agent.name, call.name)
            raise PolicyDenied(f"Agent '{agent.name}' is not permitted to use '{call.name}'.")

        if spec.capability is Capability.SHELL:
            command_tokens(call.arguments.get(COMMAND_ARG, ""), allowlist)


def command_tokens(command: str, allowlist: Allowlist) -> list[str]:
    """Tokenize a command line and check it against the allowlist."""
    try:
        tokens = shlex.split(command)
    except ValueError as exc:
        raise PolicyDenied(f"Unparsable command: {exc}") from exc

    if not tokens:
        raise PolicyDenied("Command is empty.")

    if "/" in tokens[0] or "\\" in tokens[0]:
        raise PolicyDenied("Only bare executable names are allowed.")

    if not allowlist.permits(tokens):
        logger.warning("policy: command blocked by allowlist: %r", command)
        raise PolicyDenied(
            f"Command blocked by allowlist. command={command!r}, "
            f"allowed prefixes={allowlist.describe()}"
        )
    return tokens


def _describe(error) -> str:
    where = ".".join(str(p) for p in error.path)
    return f"{where}: {error.message}" if where else error.message
