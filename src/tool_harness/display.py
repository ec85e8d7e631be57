# display.py
# All terminal output for the tool harness.
#
# This module owns presentation entirely. harness.py and router.py never
# format strings; they call named functions here. Swap this file to change
# the entire UI.
#
# Colour language:
#   cyan    routing and loop scaffolding
#   blue    model calls
#   magenta tool calls and their results
#   yellow  advisory plan, retries, truncation
#   green   success
#   red     failures, halts, cancellation

import json

from rich import box
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from tool_harness.models import Plan, Session, ToolResult

console = Console()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _label(tag: str, color: str) -> Text:
    t = Text()
    t.append(f" {tag} ", style=f"bold white on {color}")
    return t


def _mono(value: str, max_len: int = 120) -> str:
    value = value.replace("\n", " ⏎ ")
    if len(value) > max_len:
        value = value[:max_len] + "…"
    return escape(value)


# ---------------------------------------------------------------------------
# Session entry
# ---------------------------------------------------------------------------


def banner(model: str, root: str, agents: list[str]) -> None:
    console.print()
    console.print(
        Panel.fit(
            "[bold cyan]Tool Harness[/bold cyan]\n"
            "[dim]Routed agents, guarded tools, one loop per request[/dim]\n\n"
            f"[dim]Model   :[/dim] [white]{escape(model)}[/white]\n"
            f"[dim]Project :[/dim] [white]{escape(str(root))}[/white]\n"
            f"[dim]Agents  :[/dim] [white]{escape(', '.join(agents))}[/white]",
            border_style="cyan",
            padding=(1, 4),
        )
    )


def prompt_received(prompt: str) -> None:
    console.print()
    console.print(Rule("[cyan]NEW REQUEST[/cyan]", style="cyan"))
    console.print(
        Panel(
            f"[white]{escape(prompt)}[/white]",
            title=_label("USER PROMPT", "cyan"),
            border_style="cyan",
            padding=(0, 2),
        )
    )


def routed(agent: str, confidence: float, reason: str, delegated: bool) -> None:
    console.print()
    arrow = "Delegating →" if delegated else "Handling as SELF →"
    console.print(
        _label("ROUTER", "cyan"),
        f"[cyan] {arrow}[/cyan] [bold white]{escape(agent)}[/bold white]"
        f"  [dim]confidence={confidence:.2f} ({escape(reason)})[/dim]",
    )


# ---------------------------------------------------------------------------
# Execution loop
# ---------------------------------------------------------------------------


def run_start(agent: str, request: str, budget: int) -> None:
    console.print(Rule(f"[cyan]{escape(agent)}: up to {budget} tool step(s)[/cyan]", style="cyan"))


def planning() -> None:
    console.print(_label("PLANNER", "yellow"), "[yellow] Drafting an advisory plan…[/yellow]")


def plan_parsed(plan: Plan) -> None:
    console.print()
    table = Table(
        box=box.SIMPLE_HEAVY,
        border_style="yellow",
        show_header=True,
        header_style="bold yellow",
        padding=(0, 1),
    )
    table.add_column("ID", justify="center", width=4)
    table.add_column("Tool", style="bold white", width=24)
    table.add_column("Intent", style="white")

    for step in plan.steps:
        tool = escape(step.tool) if step.tool else "-"
        if step.flagged:
            tool = f"[red]{tool} ✗[/red]"
        table.add_row(str(step.id), tool, escape(step.intent))

    console.print(
        Panel(
            table,
            title=_label("PLAN (ADVISORY)", "yellow"),
            subtitle=f"[dim]Goal: {_mono(plan.goal, 80)}[/dim]",
            border_style="yellow",
            padding=(0, 1),
        )
    )
    for defect in plan.defects:
        console.print(f"  [red]✗ {escape(defect)}[/red]")


def awaiting_model(step: int, budget: int) -> None:
    console.print(f"  [blue]↳ Calling model[/blue] [dim](tool steps used {step}/{budget})[/dim]")


def backend_retry(attempt: int, limit: int, delay: float) -> None:
    console.print(
        f"  [yellow]↻ Backend unavailable, retry {attempt}/{limit} in {delay:.1f}s[/yellow]"
    )


def tool_call(tool: str, args: dict) -> None:
    console.print(
        f"  [magenta]Action[/magenta]   [bold white]{escape(tool)}[/bold white]"
        f"  [dim]{_mono(json.dumps(args, default=str), 160)}[/dim]"
    )


def tool_result(result: ToolResult) -> None:
    if result.ok:
        console.print(
            f"  [magenta]Observe[/magenta]  [white]{_mono(result.output, 140)}[/white]"
            f"  [dim]{result.elapsed_ms}ms[/dim]"
        )
    else:
        console.print(
            f"  [red]✗ {result.failure.kind}[/red]  [white]{_mono(result.failure.message, 140)}[/white]"
        )


def truncated(budget: int) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold yellow]Step budget of {budget} exhausted.[/bold yellow]\n"
            "[dim]The pending tool request was not executed.[/dim]",
            title=_label("TRUNCATED", "yellow"),
            border_style="yellow",
            padding=(0, 2),
        )
    )


def cancelled() -> None:
    console.print()
    console.print(_label("CANCELLED", "red"), "[red] Run cancelled; recorded results are kept.[/red]")


def deviations(items: list[str]) -> None:
    console.print()
    console.print("[dim yellow]  Plan vs execution:[/dim yellow]")
    for item in items:
        console.print(f"  [dim yellow]• {escape(item)}[/dim yellow]")


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


def sessions_table(sessions: list[Session]) -> None:
    table = Table(box=box.SIMPLE_HEAVY, show_header=True, header_style="bold cyan", padding=(0, 1))
    table.add_column("Name", style="bold white")
    table.add_column("ID", style="dim", width=10)
    table.add_column("Created")
    table.add_column("Messages", justify="right")
    for session in sessions:
        table.add_row(
            escape(session.name or "unnamed"),
            session.short_id,
            session.created_at.astimezone().strftime("%Y-%m-%d %H:%M"),
            str(len(session.messages)),
        )
    console.print(table)


# ---------------------------------------------------------------------------
# Final result
# ---------------------------------------------------------------------------


def final_result(result: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[white]{escape(result)}[/white]",
            title=_label("RESULT", "green"),
            border_style="green",
            padding=(1, 2),
        )
    )
    console.print()


def halt(reason: str) -> None:
    console.print()
    console.print(
        Panel(
            f"[bold white]{escape(reason)}[/bold white]",
            title=_label("HALT", "red"),
            border_style="red",
            padding=(0, 2),
        )
    )
    console.print()
