"""Top-level supervisor for a workflow run.

Lifecycle: ENTER -> RUNNING -> (TRAPPED | EXITING) -> EXIT.

- ENTER records this process id as the cancellation target, exports it to
  every child as `FLUX_SUPERVISOR_PID` and traps SIGINT.
- On SIGINT (TRAPPED) the root cancellation token is cancelled, which
  terminates every running process group. The configured interrupt action
  then runs with hooks disabled.
- EXITING always runs the at-exit hooks, whatever the outcome.
- On EXIT a child may have left its intended exit status in the side-channel
  file `.flux.super.<pid>` (see `yield_status`); it replaces the natural
  status and the file is deleted.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import signal
import threading
from collections.abc import Mapping, Sequence
from enum import Enum
from pathlib import Path
from types import FrameType
from typing import BinaryIO

from .config import FluxSettings
from .workflow.actions import ActionRegistry
from .workflow.cancellation import CancellationToken
from .workflow.evaluator import EvalContext, Evaluator
from .workflow.expression import ActionRef, Combinator, Kind, Node, parse
from .workflow.options import CombinatorOptions
from .workflow.outcome import FAILURE, INTERRUPTED, Outcome, status_from_returncode
from .workflow.process import run_process
from .workflow.stages import StageStore, current_stage

logger = logging.getLogger(__name__)

SUPERVISOR_PID_ENV = "FLUX_SUPERVISOR_PID"
STATUS_FILE_PREFIX = ".flux.super."


class SupervisorState(str, Enum):
    ENTER = "enter"
    RUNNING = "running"
    TRAPPED = "trapped"
    EXITING = "exiting"
    EXIT = "exit"


def status_file(state_dir: Path, pid: int) -> Path:
    return state_dir / f"{STATUS_FILE_PREFIX}{pid}"


def read_status_file(path: Path) -> int | None:
    """Read and delete a side-channel status file, if present."""

    if not path.exists():
        return None
    raw = path.read_text(encoding="utf-8").strip()
    path.unlink()
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring malformed status file", extra={"path": str(path), "content": raw})
        return None


def with_hooks(node: Node, registry: ActionRegistry) -> Node:
    """Wrap top-level actions with their `<name>.pre` / `<name>.post` hooks."""

    if isinstance(node, ActionRef):
        steps: list[Node] = []
        if f"{node.name}.pre" in registry:
            steps.append(ActionRef(f"{node.name}.pre"))
        steps.append(node)
        if f"{node.name}.post" in registry:
            steps.append(ActionRef(f"{node.name}.post"))
        return node if len(steps) == 1 else Combinator(Kind.AND, tuple(steps))
    if node.kind is Kind.AND:
        return dataclasses.replace(
            node, children=tuple(with_hooks(child, registry) for child in node.children)
        )
    return node


class Supervisor:
    def __init__(
        self,
        settings: FluxSettings,
        registry: ActionRegistry,
        stages: StageStore,
        *,
        stdin: bytes | None = None,
        stdout: BinaryIO | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        self.settings = settings
        self.registry = registry
        self.stages = stages
        self.options = CombinatorOptions.from_settings(settings)
        self.evaluator = Evaluator()
        self.token = CancellationToken()
        self.state = SupervisorState.ENTER
        self.pid = os.getpid()

        self._stdin = stdin
        self._stdout = stdout
        self._env = dict(env if env is not None else os.environ)
        self._previous_handler: object | None = None
        self._trapped = False

        # Fail fast on hook expressions before anything runs.
        self._at_exit = [parse(h, delimiter=settings.delimiter) for h in settings.at_exit_hooks]
        self._interrupt = (
            parse(settings.interrupt_action, delimiter=settings.delimiter)
            if settings.interrupt_action
            else None
        )

    @property
    def status_path(self) -> Path:
        return status_file(self.settings.stage_dir, self.pid)

    def context(self, token: CancellationToken | None = None) -> EvalContext:
        env = dict(self._env)
        env[SUPERVISOR_PID_ENV] = str(self.pid)
        return EvalContext(
            registry=self.registry,
            stages=self.stages,
            options=self.options,
            token=token or self.token,
            stdin=self._stdin,
            stdout=self._stdout,
            env=env,
            stage=current_stage(env),
        )

    def check(self, node: Node) -> None:
        for item in (node, *self._at_exit, *([self._interrupt] if self._interrupt else [])):
            self.evaluator.check(item, self.registry)

    def trap(self, signum: int, _frame: FrameType | None = None) -> None:
        """SIGINT handler: cancel everything that is running."""

        if self._trapped:
            return
        self._trapped = True
        self.state = SupervisorState.TRAPPED
        logger.warning("Interrupted; terminating children", extra={"signal": signum})
        self.token.cancel(sig=signal.SIGTERM, reason="interrupted")

    def _install(self) -> None:
        if not self.settings.supervisor_enabled:
            return
        if threading.current_thread() is not threading.main_thread():
            logger.debug("Not in the main thread; SIGINT trap not installed")
            return
        self._previous_handler = signal.signal(signal.SIGINT, self.trap)

    def _uninstall(self) -> None:
        if self._previous_handler is not None:
            signal.signal(signal.SIGINT, self._previous_handler)  # type: ignore[arg-type]
            self._previous_handler = None

    def run(self, node: Node) -> Outcome:
        self.check(node)
        logger.info("Supervisor started", extra={"pid": self.pid})
        self._install()
        try:
            self.state = SupervisorState.RUNNING
            target = node if self.settings.disable_hooks else with_hooks(node, self.registry)
            outcome = self.evaluator.evaluate(target, self.context())

            if self._trapped:
                outcome = dataclasses.replace(outcome, status=INTERRUPTED, cancelled=True)
                self._run_interrupt_action()
        finally:
            self.state = SupervisorState.EXITING
            self._run_at_exit()
            self._uninstall()

        self.state = SupervisorState.EXIT
        override = read_status_file(self.status_path)
        if override is not None:
            logger.info(
                "Exit status supplied by child",
                extra={"status": override, "natural_status": outcome.status},
            )
            outcome = dataclasses.replace(outcome, status=override)
        logger.info("Supervisor finished", extra={"status": outcome.status})
        return outcome

    def _run_interrupt_action(self) -> None:
        if self._interrupt is None:
            return
        logger.info("Running interrupt action", extra={"label": self._interrupt.label})
        outcome = self.evaluator.evaluate(self._interrupt, self.context(CancellationToken()))
        if not outcome.ok:
            logger.warning("Interrupt action failed", extra={"status": outcome.status})

    def _run_at_exit(self) -> None:
        for hook in self._at_exit:
            outcome = self.evaluator.evaluate(hook, self.context(CancellationToken()))
            if not outcome.ok:
                logger.warning(
                    "At-exit hook failed",
                    extra={"hook": hook.label, "status": outcome.status},
                )


def supervisor_pid(env: Mapping[str, str] | None = None) -> int | None:
    raw = (env if env is not None else os.environ).get(SUPERVISOR_PID_ENV, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring malformed supervisor pid", extra={"value": raw})
        return None


def interrupt(env: Mapping[str, str] | None = None) -> int:
    """Ask the supervisor to cancel the run.

    Without a supervisor there is nothing to interrupt; this reports failure.
    """

    pid = supervisor_pid(env)
    if pid is None:
        logger.error("No supervisor to interrupt", extra={"env": SUPERVISOR_PID_ENV})
        return FAILURE
    try:
        os.kill(pid, signal.SIGINT)
    except ProcessLookupError:
        logger.error("Supervisor is not running", extra={"pid": pid})
        return FAILURE
    logger.info("Interrupt sent", extra={"pid": pid})
    return INTERRUPTED


def yield_status(
    argv: Sequence[str], settings: FluxSettings, env: Mapping[str, str] | None = None
) -> int:
    """Run `argv`, hand its status to the supervisor, then interrupt the run."""

    result = run_process(argv, env=env)
    status = status_from_returncode(result.returncode)

    pid = supervisor_pid(env)
    if pid is None:
        logger.warning("No supervisor; returning status directly", extra={"status": status})
        return status

    path = status_file(settings.stage_dir, pid)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{status}\n", encoding="utf-8")
    logger.info("Status handed to supervisor", extra={"pid": pid, "status": status})
    interrupt(env)
    return status
