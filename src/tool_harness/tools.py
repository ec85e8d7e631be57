# tools.py
# Builtin tool declarations and implementations.
# The executor imports TOOLS and BUILTIN_SPECS; the loop never calls these
# functions directly.
#
# Every handler takes (ctx, args) and returns text. Failures are raised as
# typed HarnessErrors so the executor can fold them into context.

import fnmatch
import json
import os
import re
import shlex
import subprocess
import sys
import threading
import time
import tomllib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from tool_harness.errors import (
    NonZeroExit,
    ToolCancelled,
    ToolIOError,
    ToolNotFound,
    ToolPermissionDenied,
    ToolTimeout,
)
from tool_harness.models import Capability, ParamSpec, ToolSpec
from tool_harness.paths import PathGuard
from tool_harness.policy import SKIP_DIRS
from tool_harness.registry import ToolRegistry

MAX_OUTPUT_CHARS = 20000
POLL_SECONDS = 0.1


@dataclass
class ToolContext:
    """Per-call environment handed to a tool implementation."""

    guard: PathGuard
    timeout: float = 60.0
    cancel: threading.Event = field(default_factory=threading.Event)

    @property
    def root(self) -> Path:
        return self.guard.root


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _path(ctx: ToolContext, args: dict, key: str = "path", default: str | None = None) -> Path:
    raw = args.get(key, default)
    if raw is None:
        raise ToolIOError(f"Missing '{key}'.")
    return ctx.guard.resolve(raw)


def _truncate(text: str, limit: int = MAX_OUTPUT_CHARS) -> str:
    if len(text) <= limit:
        return text
    return text[:limit] + f"\n... (truncated, {len(text)} chars total)"


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError as exc:
        raise ToolNotFound(f"No such file: {path.name}") from exc
    except IsADirectoryError as exc:
        raise ToolIOError(f"Is a directory: {path.name}") from exc
    except PermissionError as exc:
        raise ToolPermissionDenied(f"Permission denied: {path.name}") from exc
    except UnicodeDecodeError as exc:
        raise ToolIOError(f"Not a UTF-8 text file: {path.name}") from exc


def _write_text(path: Path, content: str, mode: str = "w") -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, mode, encoding="utf-8") as fh:
            fh.write(content)
    except PermissionError as exc:
        raise ToolPermissionDenied(f"Permission denied: {path.name}") from exc
    except IsADirectoryError as exc:
        raise ToolIOError(f"Is a directory: {path.name}") from exc


def _walk(ctx: ToolContext, base: Path):
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS and not d.startswith("."))
        for filename in sorted(filenames):
            path = Path(dirpath) / filename
            # symlinks may point out of the project
            if ctx.guard.contains(path):
                yield path


def run_process(ctx: ToolContext, tokens: list[str], timeout: float | None = None) -> tuple[int, str]:
    """
    Run a tokenized command in the project root without a shell.

    Polls for cancellation and the deadline; on either the process is killed
    and whatever it printed so far is attached to the raised error.
    """
    limit = timeout if timeout is not None else ctx.timeout
    try:
        proc = subprocess.Popen(
            tokens,
            cwd=ctx.root,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )
    except FileNotFoundError as exc:
        raise ToolNotFound(f"Executable not found: {tokens[0]}") from exc
    except PermissionError as exc:
        raise ToolPermissionDenied(f"Cannot execute: {tokens[0]}") from exc

    deadline = time.monotonic() + limit
    while True:
        try:
            output, _ = proc.communicate(timeout=POLL_SECONDS)
            return proc.returncode, output or ""
        except subprocess.TimeoutExpired:
            if ctx.cancel.is_set():
                proc.kill()
                partial, _ = proc.communicate()
                raise ToolCancelled(f"Cancelled: {shlex.join(tokens)}", partial=_truncate(partial or ""))
            if time.monotonic() >= deadline:
                proc.kill()
                partial, _ = proc.communicate()
                raise ToolTimeout(
                    f"Command timed out after {limit:g}s: {shlex.join(tokens)}",
                    partial=_truncate(partial or ""),
                )


def _checked(ctx: ToolContext, tokens: list[str], timeout: float | None = None) -> str:
    code, output = run_process(ctx, tokens, timeout)
    if code != 0:
        raise NonZeroExit(
            f"{shlex.join(tokens)} failed with exit code {code}:\n{_truncate(output)}",
            returncode=code,
            output=output,
        )
    return output


# ---------------------------------------------------------------------------
# Filesystem
# ---------------------------------------------------------------------------


def _tool_read_file(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    lines = _read_text(path).splitlines()
    start = args.get("start_line", 1)
    end = args.get("end_line", max(len(lines), start))
    if start < 1 or end < start:
        raise ToolIOError(f"Invalid line range {start}-{end}.")
    selected = lines[start - 1 : end]
    body = "\n".join(f"{start + i:>5} | {line}" for i, line in enumerate(selected))
    return _truncate(body) if body else "(empty file)"


def _tool_write_file(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    content = args["content"]
    _write_text(path, content)
    return f"Wrote {len(content)} chars to {ctx.guard.relative(path)}."


def _tool_append_to_file(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    content = args["content"]
    _write_text(path, content, mode="a")
    return f"Appended {len(content)} chars to {ctx.guard.relative(path)}."


def _tool_replace_in_file(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    search, replace = args["search"], args["replace"]
    if not search:
        raise ToolIOError("Search string cannot be empty.")
    content = _read_text(path)
    count = content.count(search)
    if count == 0:
        raise ToolIOError(
            f"Search string not found in {ctx.guard.relative(path)}. "
            "Read the file again and copy the text exactly."
        )
    _write_text(path, content.replace(search, replace))
    return f"Replaced {count} occurrence(s) in {ctx.guard.relative(path)}."


def _tool_list_directory(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args, default=".")
    if not path.exists():
        raise ToolNotFound(f"No such directory: {ctx.guard.relative(path)}")
    if not path.is_dir():
        raise ToolIOError(f"Not a directory: {ctx.guard.relative(path)}")
    try:
        entries = sorted(
            f"{'dir' if entry.is_dir() else 'file'}\t{entry.name}" for entry in path.iterdir()
        )
    except PermissionError as exc:
        raise ToolPermissionDenied(f"Permission denied: {ctx.guard.relative(path)}") from exc
    return "\n".join(entries) if entries else "(empty directory)"


def _tool_get_directory_tree(ctx: ToolContext, args: dict) -> str:
    base = _path(ctx, args, default=".")
    max_depth = args.get("max_depth", 3)
    if not base.is_dir():
        raise ToolNotFound(f"No such directory: {ctx.guard.relative(base)}")

    lines = [ctx.guard.relative(base) + "/"]

    def walk(directory: Path, depth: int) -> None:
        if depth > max_depth:
            return
        children = sorted(
            (c for c in directory.iterdir() if c.name not in SKIP_DIRS and not c.name.startswith(".")),
            key=lambda c: (not c.is_dir(), c.name),
        )
        for child in children:
            suffix = "/" if child.is_dir() else ""
            lines.append(f"{'  ' * depth}{child.name}{suffix}")
            if child.is_dir() and not child.is_symlink():
                walk(child, depth + 1)

    walk(base, 1)
    return _truncate("\n".join(lines))


def _tool_search_text(ctx: ToolContext, args: dict) -> str:
    base = _path(ctx, args, default=".")
    max_results = args.get("max_results", 100)
    try:
        pattern = re.compile(args["pattern"])
    except re.error as exc:
        raise ToolIOError(f"Invalid regular expression: {exc}") from exc

    files = [base] if base.is_file() else _walk(ctx, base)
    hits: list[str] = []
    for file in files:
        if ctx.cancel.is_set():
            raise ToolCancelled("Search cancelled.", partial="\n".join(hits))
        try:
            text = file.read_text(encoding="utf-8")
        except (UnicodeDecodeError, OSError):
            continue
        for number, line in enumerate(text.splitlines(), start=1):
            if pattern.search(line):
                hits.append(f"{ctx.guard.relative(file)}:{number}: {line.strip()}")
                if len(hits) >= max_results:
                    return "\n".join(hits) + f"\n... (stopped at {max_results} matches)"
    return "\n".join(hits) if hits else "No matches found."


def _tool_find_file(ctx: ToolContext, args: dict) -> str:
    base = _path(ctx, args, default=".")
    pattern = args["pattern"]
    found = [
        ctx.guard.relative(file)
        for file in _walk(ctx, base)
        if fnmatch.fnmatch(file.name, pattern) or fnmatch.fnmatch(ctx.guard.relative(file), pattern)
    ]
    if not found:
        return "No matching files found."
    return _truncate(f"Found {len(found)} file(s):\n" + "\n".join(found))


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


def _looks_like_path(token: str) -> bool:
    return token.startswith(("/", "~")) or ".." in Path(token).parts


def _tool_execute_shell_command(ctx: ToolContext, args: dict) -> str:
    tokens = shlex.split(args["command"])
    for token in tokens[1:]:
        value = token.split("=", 1)[1] if token.startswith("-") and "=" in token else token
        if _looks_like_path(value):
            ctx.guard.resolve(value)

    code, output = run_process(ctx, tokens)
    if code != 0:
        raise NonZeroExit(
            f"Command failed with exit code {code}:\n{_truncate(output)}",
            returncode=code,
            output=output,
        )
    return "Command finished successfully\n\nOutput:\n" + (_truncate(output) or "(no output)")


# ---------------------------------------------------------------------------
# Version control
# ---------------------------------------------------------------------------


def _tool_git_status(ctx: ToolContext, args: dict) -> str:
    output = _checked(ctx, ["git", "status", "--short"])
    return f"Git status:\n{output}" if output.strip() else "Working tree clean. Nothing to commit."


def _tool_git_diff(ctx: ToolContext, args: dict) -> str:
    tokens = ["git", "diff"]
    if args.get("path"):
        tokens += ["--", str(_path(ctx, args))]
    output = _checked(ctx, tokens)
    return f"Git diff:\n{_truncate(output)}" if output.strip() else "No changes."


def _tool_git_add(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    _checked(ctx, ["git", "add", "--", str(path)])
    return f"Staged: {ctx.guard.relative(path)}"


def _tool_git_commit(ctx: ToolContext, args: dict) -> str:
    message = args["message"].strip()
    if not message:
        raise ToolIOError("Commit message cannot be empty.")
    output = _checked(ctx, ["git", "commit", "-m", message])
    return f"Commit created.\n{output}"


# ---------------------------------------------------------------------------
# Static analysis
# ---------------------------------------------------------------------------

LINTERS: dict[str, Callable[[Path], list[str]]] = {
    ".py": lambda p: [sys.executable, "-m", "py_compile", str(p)],
    ".rs": lambda p: ["rustfmt", "--check", str(p)],
    ".go": lambda p: ["gofmt", "-l", str(p)],
    ".js": lambda p: ["npx", "--no-install", "eslint", str(p)],
    ".ts": lambda p: ["npx", "--no-install", "eslint", str(p)],
}


def _tool_lint_file(ctx: ToolContext, args: dict) -> str:
    path = _path(ctx, args)
    if not path.is_file():
        raise ToolNotFound(f"No such file: {ctx.guard.relative(path)}")
    rel = ctx.guard.relative(path)
    suffix = path.suffix.lower()

    if suffix == ".json":
        try:
            json.loads(_read_text(path))
        except json.JSONDecodeError as exc:
            return f"{rel}: invalid JSON at line {exc.lineno}: {exc.msg}"
        return f"{rel}: no issues found."
    if suffix == ".toml":
        try:
            tomllib.loads(_read_text(path))
        except tomllib.TOMLDecodeError as exc:
            return f"{rel}: invalid TOML: {exc}"
        return f"{rel}: no issues found."

    linter = LINTERS.get(suffix)
    if linter is None:
        raise ToolIOError(f"No linter configured for '{suffix or path.name}' files.")
    code, output = run_process(ctx, linter(path))
    if code == 0 and not output.strip():
        return f"{rel}: no issues found."
    return f"{rel}: issues found (exit code {code}):\n{_truncate(output)}"


# ---------------------------------------------------------------------------
# Declarations
# ---------------------------------------------------------------------------


def _p(type_: str, description: str, required: bool = True, path: bool = False) -> ParamSpec:
    return ParamSpec(type=type_, description=description, required=required, path=path)


BUILTIN_SPECS: list[ToolSpec] = [
    ToolSpec(
        name="read_file",
        description="Read a text file, optionally a line range. Output is line-numbered.",
        capability=Capability.FS_READ,
        params={
            "path": _p("string", "File path relative to the project root.", path=True),
            "start_line": _p("integer", "First line, 1-based.", required=False),
            "end_line": _p("integer", "Last line, inclusive.", required=False),
        },
    ),
    ToolSpec(
        name="write_file",
        description="Create or overwrite a file with the given content.",
        capability=Capability.FS_WRITE,
        params={
            "path": _p("string", "File path relative to the project root.", path=True),
            "content": _p("string", "Full file content."),
        },
    ),
    ToolSpec(
        name="append_to_file",
        description="Append content to the end of a file, creating it if needed.",
        capability=Capability.FS_WRITE,
        params={
            "path": _p("string", "File path relative to the project root.", path=True),
            "content": _p("string", "Text to append."),
        },
    ),
    ToolSpec(
        name="replace_in_file",
        description="Replace every exact occurrence of `search` with `replace` in a file.",
        capability=Capability.FS_WRITE,
        params={
            "path": _p("string", "File path relative to the project root.", path=True),
            "search": _p("string", "Exact text to find, including whitespace."),
            "replace": _p("string", "Replacement text."),
        },
    ),
    ToolSpec(
        name="list_directory",
        description="List the entries of a directory.",
        capability=Capability.FS_READ,
        params={"path": _p("string", "Directory, defaults to the project root.", False, True)},
    ),
    ToolSpec(
        name="get_directory_tree",
        description="Show the directory tree below a path.",
        capability=Capability.FS_READ,
        params={
            "path": _p("string", "Directory, defaults to the project root.", False, True),
            "max_depth": _p("integer", "Maximum depth, default 3.", required=False),
        },
    ),
    ToolSpec(
        name="search_text",
        description="Search project files for a regular expression.",
        capability=Capability.FS_READ,
        params={
            "pattern": _p("string", "Python regular expression."),
            "path": _p("string", "File or directory to search.", False, True),
            "max_results": _p("integer", "Stop after this many matches.", required=False),
        },
    ),
    ToolSpec(
        name="find_file",
        description="Find files whose name or relative path matches a glob pattern.",
        capability=Capability.FS_READ,
        params={
            "pattern": _p("string", "Glob pattern, e.g. '*.toml'."),
            "path": _p("string", "Directory to search.", False, True),
        },
    ),
    ToolSpec(
        name="execute_shell_command",
        description="Run a command in the project root. Must match an allowlisted prefix.",
        capability=Capability.SHELL,
        params={"command": _p("string", "Command line, e.g. 'cargo check'.")},
        timeout=120.0,
    ),
    ToolSpec(
        name="git_status",
        description="Show the short git status of the working tree.",
        capability=Capability.VCS,
    ),
    ToolSpec(
        name="git_diff",
        description="Show unstaged changes, optionally for one path.",
        capability=Capability.VCS,
        params={"path": _p("string", "Limit the diff to this path.", False, True)},
    ),
    ToolSpec(
        name="git_add",
        description="Stage a path.",
        capability=Capability.VCS,
        params={"path": _p("string", "Path to stage.", path=True)},
    ),
    ToolSpec(
        name="git_commit",
        description="Commit staged changes with a message.",
        capability=Capability.VCS,
        params={"message": _p("string", "Commit message.")},
    ),
    ToolSpec(
        name="lint_file",
        description="Run static analysis on one file (Python, Rust, Go, JS/TS, JSON, TOML).",
        capability=Capability.ANALYSIS,
        params={"path": _p("string", "File to check.", path=True)},
        timeout=90.0,
    ),
]

TOOLS: dict[str, Callable[[ToolContext, dict[str, Any]], str]] = {
    "read_file":             _tool_read_file,
    "write_file":            _tool_write_file,
    "append_to_file":        _tool_append_to_file,
    "replace_in_file":       _tool_replace_in_file,
    "list_directory":        _tool_list_directory,
    "get_directory_tree":    _tool_get_directory_tree,
    "search_text":           _tool_search_text,
    "find_file":             _tool_find_file,
    "execute_shell_command": _tool_execute_shell_command,
    "git_status":            _tool_git_status,
    "git_diff":              _tool_git_diff,
    "git_add":               _tool_git_add,
    "git_commit":            _tool_git_commit,
    "lint_file":             _tool_lint_file,
}


def build_registry(specs: list[ToolSpec] | None = None) -> ToolRegistry:
    """Register the builtin tools and freeze the registry."""
    registry = ToolRegistry()
    for spec in specs if specs is not None else BUILTIN_SPECS:
        registry.register(spec)
    return registry.freeze()
