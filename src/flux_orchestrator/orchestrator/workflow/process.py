"""One OS process per action invocation.

Every process is started in its own session so that it leads a fresh process
group. Cancellation (timeouts, the supervisor trap, sibling failure) is
delivered to the whole group: first the token's signal, then SIGKILL once the
grace period has elapsed.
"""

from __future__ import annotations

import contextlib
import logging
import os
import signal
import subprocess
import sys
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass

from .cancellation import CancellationToken

logger = logging.getLogger(__name__)

POLL_SECONDS = 0.05
NOT_EXECUTABLE = 126
NOT_FOUND = 127


def runner_argv(*extra: str) -> list[str]:
    """Command line that re-enters this runner in a child process."""

    return [sys.executable, "-m", "flux_orchestrator", *extra]


@dataclass(frozen=True, slots=True)
class ProcessResult:
    pid: int
    returncode: int
    output: bytes | None
    terminated: bool = False


def signal_process_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    if proc.poll() is not None:
        return
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        return
    except PermissionError:
        with contextlib.suppress(ProcessLookupError):
            proc.send_signal(sig)


def run_process(
    argv: Sequence[str],
    *,
    env: Mapping[str, str] | None = None,
    cwd: str | None = None,
    stdin: bytes | None = None,
    capture: bool = False,
    quiet_stderr: bool = False,
    token: CancellationToken | None = None,
    kill_grace: float = 2.0,
) -> ProcessResult:
    """Run `argv` to completion and return its exit status.

    A command that cannot be started reports 127 (not found) or 126 (not
    executable), the statuses a shell would give.

    Args:
        stdin: Bytes fed to the process; ``None`` inherits the caller's stdin.
        capture: Collect stdout instead of inheriting it.
        quiet_stderr: Discard stderr.
        token: Cancelling it terminates the process group.
        kill_grace: Seconds between the token's signal and SIGKILL.
    """

    try:
        proc = subprocess.Popen(
            list(argv),
            env=dict(env) if env is not None else None,
            cwd=cwd,
            stdin=subprocess.PIPE if stdin is not None else None,
            stdout=subprocess.PIPE if capture else None,
            stderr=subprocess.DEVNULL if quiet_stderr else None,
            start_new_session=True,
        )
    except OSError as e:
        returncode = NOT_EXECUTABLE if isinstance(e, PermissionError) else NOT_FOUND
        logger.warning(
            "Could not start process",
            extra={"argv": list(argv), "error": str(e), "returncode": returncode},
        )
        return ProcessResult(pid=0, returncode=returncode, output=b"" if capture else None)
    logger.debug("Process started", extra={"pid": proc.pid, "argv": list(argv)})

    pending = stdin
    signalled_at: float | None = None
    killed = False
    while True:
        try:
            output, _ = proc.communicate(pending, timeout=POLL_SECONDS)
            break
        except subprocess.TimeoutExpired:
            pending = None

        if token is None or not token.cancelled or killed:
            continue

        now = time.monotonic()
        if signalled_at is None:
            logger.info(
                "Terminating process group",
                extra={"pid": proc.pid, "signal": token.signal.name, "reason": token.reason},
            )
            signal_process_group(proc, token.signal)
            signalled_at = now
        elif now - signalled_at >= kill_grace:
            logger.warning("Process group ignored termination; killing", extra={"pid": proc.pid})
            signal_process_group(proc, signal.SIGKILL)
            killed = True

    return ProcessResult(
        pid=proc.pid,
        returncode=proc.returncode,
        output=output if capture else None,
        terminated=signalled_at is not None,
    )


def spawn_detached(
    argv: Sequence[str], *, env: Mapping[str, str] | None = None, cwd: str | None = None
) -> int:
    """Start `argv` in the background without waiting for it."""

    proc = subprocess.Popen(
        list(argv),
        env=dict(env) if env is not None else None,
        cwd=cwd,
        stdin=subprocess.DEVNULL,
        start_new_session=True,
    )
    logger.debug("Detached process started", extra={"pid": proc.pid, "argv": list(argv)})
    return proc.pid
