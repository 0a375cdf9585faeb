"""Unit tests for process execution and cancellation tokens."""

from __future__ import annotations

import os
import signal
import threading
import time
from pathlib import Path

from flux_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from flux_orchestrator.orchestrator.workflow.outcome import status_from_returncode
from flux_orchestrator.orchestrator.workflow.process import NOT_EXECUTABLE, NOT_FOUND, run_process


def _alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    # Orphans may linger as zombies until init reaps them.
    stat = Path(f"/proc/{pid}/stat")
    try:
        return stat.read_text().rsplit(")", 1)[1].split()[0] != "Z"
    except (FileNotFoundError, IndexError):
        return False


def test_run_process_captures_stdout_and_feeds_stdin() -> None:
    result = run_process(["tr", "a-z", "A-Z"], stdin=b"flux\n", capture=True)
    assert result.returncode == 0
    assert result.output == b"FLUX\n"
    assert not result.terminated


def test_run_process_passes_exit_status_through() -> None:
    result = run_process(["sh", "-c", "exit 7"], capture=True)
    assert result.returncode == 7


def test_missing_command_reports_not_found() -> None:
    result = run_process(["no-such-binary-flux"], capture=True)
    assert result.returncode == NOT_FOUND
    assert result.output == b""


def test_non_executable_command_reports_not_executable(tmp_path: Path) -> None:
    script = tmp_path / "script.sh"
    script.write_text("#!/bin/sh\nexit 0\n", encoding="utf-8")
    script.chmod(0o644)

    result = run_process([str(script)])
    assert result.returncode == NOT_EXECUTABLE
    assert result.output is None


def test_run_process_uses_the_given_environment() -> None:
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "FLUX_X": "y"}
    result = run_process(["sh", "-c", 'printf "%s" "$FLUX_X"'], env=env, capture=True)
    assert result.output == b"y"


def test_cancelling_terminates_the_whole_process_group(tmp_path: Path) -> None:
    pid_file = tmp_path / "grandchild.pid"
    token = CancellationToken()
    threading.Timer(0.5, token.cancel).start()

    started = time.monotonic()
    result = run_process(
        ["sh", "-c", f'sleep 30 & echo $! > "{pid_file}"; wait'],
        token=token,
        kill_grace=1.0,
    )

    assert time.monotonic() - started < 10
    assert result.terminated
    assert status_from_returncode(result.returncode) == 128 + signal.SIGTERM

    grandchild = int(pid_file.read_text(encoding="utf-8").strip())
    deadline = time.monotonic() + 5
    while _alive(grandchild) and time.monotonic() < deadline:
        time.sleep(0.05)
    assert not _alive(grandchild), "background sleep survived cancellation"


def test_stubborn_process_is_killed_after_grace() -> None:
    token = CancellationToken()
    threading.Timer(0.3, token.cancel).start()

    result = run_process(
        ["sh", "-c", "trap '' TERM; while :; do sleep 0.1; done"],
        token=token,
        kill_grace=0.3,
    )
    assert status_from_returncode(result.returncode) == 128 + signal.SIGKILL


def test_status_from_returncode() -> None:
    assert status_from_returncode(0) == 0
    assert status_from_returncode(3) == 3
    assert status_from_returncode(-signal.SIGTERM) == 143


def test_cancelling_a_parent_cancels_children() -> None:
    parent = CancellationToken()
    child = parent.child()
    grandchild = child.child()

    parent.cancel(sig=signal.SIGINT, reason="stop")

    assert child.cancelled
    assert grandchild.cancelled
    assert grandchild.signal is signal.SIGINT
    assert grandchild.reason == "stop"


def test_child_of_cancelled_token_starts_cancelled() -> None:
    parent = CancellationToken()
    parent.cancel()
    assert parent.child().cancelled


def test_cancelling_a_child_leaves_the_parent_alone() -> None:
    parent = CancellationToken()
    parent.child().cancel()
    assert not parent.cancelled


def test_sleep_wakes_on_cancel() -> None:
    token = CancellationToken()
    threading.Timer(0.1, token.cancel).start()

    started = time.monotonic()
    assert token.sleep(10) is False
    assert time.monotonic() - started < 5
    assert CancellationToken().sleep(0) is True
