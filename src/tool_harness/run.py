# run.py
# Entry point. Config and wiring only; no logic lives here.
#
#   tool-harness "list the python files and summarize main.py"
#   tool-harness --session fix-tests "run the test suite"
#   tool-harness --list-sessions

import argparse
import threading

from tool_harness import display
from tool_harness.backend import OpenAIBackend
from tool_harness.config import Settings, configure_logging
from tool_harness.context import ContextStore
from tool_harness.errors import HarnessError
from tool_harness.executor import ToolExecutor
from tool_harness.harness import SYSTEM_PROMPT, ExecutionLoop
from tool_harness.models import AgentDescriptor, RunOutcome
from tool_harness.paths import PathGuard
from tool_harness.planner import Planner
from tool_harness.router import Coordinator, ModelRouter, Router, project_allowlist
from tool_harness.storage import JsonSessionStore
from tool_harness.tools import TOOLS, build_registry

READ_TOOLS = ("read_file", "list_directory", "get_directory_tree", "search_text", "find_file")
WRITE_TOOLS = ("write_file", "append_to_file", "replace_in_file")
GIT_TOOLS = ("git_status", "git_diff", "git_add", "git_commit")


def default_agents(max_tool_steps: int) -> tuple[AgentDescriptor, list[AgentDescriptor]]:
    """The coordinator's own descriptor plus the specialists it can route to."""
    own = AgentDescriptor(
        name="coordinator",
        remit="General questions and anything no specialist covers.",
        instruction="Answer directly when no tool is needed.",
        max_tool_steps=max_tool_steps,
    )
    specialists = [
        AgentDescriptor(
            name="coder",
            remit="Write, edit, fix, refactor and test code in the project.",
            instruction="Make the smallest change that solves the task, then verify it.",
            keywords=(
                "write", "edit", "fix", "implement", "refactor", "add", "change",
                "bug", "test", "tests", "build", "compile", "function", "code",
            ),
            capabilities=READ_TOOLS + WRITE_TOOLS + ("execute_shell_command", "lint_file"),
            max_tool_steps=max_tool_steps,
        ),
        AgentDescriptor(
            name="reviewer",
            remit="Read and review code, explain it, find problems without changing files.",
            instruction="Never modify files. Cite file paths and line numbers.",
            keywords=("review", "explain", "read", "summarize", "understand", "lint", "audit", "find", "where"),
            capabilities=READ_TOOLS + ("lint_file",),
            max_tool_steps=max_tool_steps,
        ),
        AgentDescriptor(
            name="git",
            remit="Version control: status, diffs, staging and commits.",
            instruction="Show the diff before committing and write short imperative commit messages.",
            keywords=("git", "commit", "diff", "stage", "status", "branch", "changes", "staged"),
            capabilities=GIT_TOOLS + ("read_file", "list_directory", "execute_shell_command"),
            max_tool_steps=max_tool_steps,
            run_cmd_allowlist=("git status", "git diff", "git log"),
        ),
    ]
    return own, specialists


def _run_cancellable(coordinator: Coordinator, session_id: str, prompt: str, plan: bool) -> RunOutcome | None:
    """Run in a worker so Ctrl-C sets the cancel event instead of unwinding the loop."""
    cancel = threading.Event()
    box: dict = {}

    def target() -> None:
        try:
            box["outcome"] = coordinator.handle(session_id, prompt, cancel=cancel, plan=plan)
        except HarnessError as exc:
            box["error"] = exc

    worker = threading.Thread(target=target, name="coordinator", daemon=True)
    worker.start()
    try:
        while worker.is_alive():
            worker.join(0.2)
    except KeyboardInterrupt:
        cancel.set()
        worker.join()

    if "error" in box:
        display.halt(str(box["error"]))
    return box.get("outcome")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(prog="tool-harness", description="Run requests through the agent harness.")
    parser.add_argument("prompts", nargs="*", help="One or more requests, run in order.")
    parser.add_argument("--session", help="Resume a saved session by name or id prefix.")
    parser.add_argument("--name", default="", help="Name for a new session.")
    parser.add_argument("--list-sessions", action="store_true")
    parser.add_argument("--delete-session", metavar="PREFIX")
    parser.add_argument("--no-plan", action="store_true", help="Skip the advisory planning call.")
    parser.add_argument("--model-routing", action="store_true", help="Let the model pick the specialist.")
    args = parser.parse_args(argv)

    settings = Settings.from_env()
    configure_logging(settings.log_level)

    store = ContextStore(JsonSessionStore(settings.resolved_sessions_dir()))

    if args.list_sessions:
        display.sessions_table(store.list_sessions())
        return
    if args.delete_session:
        try:
            deleted = store.delete(args.delete_session)
        except HarnessError as exc:
            display.halt(str(exc))
            return
        display.final_result(f"Deleted session {deleted.name or 'unnamed'} ({deleted.short_id}).")
        return

    guard = PathGuard(settings.project_root)
    registry = build_registry()
    executor = ToolExecutor(registry, guard, TOOLS, default_timeout=settings.tool_timeout)
    backend = OpenAIBackend(
        model=settings.model,
        base_url=settings.base_url,
        api_key=settings.api_key,
        timeout=settings.inference_timeout,
        native_tools=settings.native_tools,
    )
    loop = ExecutionLoop(
        backend,
        registry,
        executor,
        store,
        planner=Planner(backend),
        sampling=settings.sampling,
        max_backend_retries=settings.backend_retries,
        inference_timeout=settings.inference_timeout,
        context_budget=settings.context_budget,
    )
    own, specialists = default_agents(settings.max_tool_steps)
    router = ModelRouter(backend) if args.model_routing else Router()
    coordinator = Coordinator(router, specialists, own, loop, project_allowlist(guard.root))

    if args.session:
        try:
            session = store.load(args.session)
        except HarnessError as exc:
            display.halt(str(exc))
            return
    else:
        session = store.create(args.name or (args.prompts[0][:40] if args.prompts else ""), SYSTEM_PROMPT)

    display.banner(settings.model, str(guard.root), [own.name] + [d.name for d in specialists])
    for prompt in args.prompts:
        display.prompt_received(prompt)
        _run_cancellable(coordinator, session.id, prompt, plan=not args.no_plan)


if __name__ == "__main__":
    main()
