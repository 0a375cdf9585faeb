"""Evaluate combinator expressions.

Every evaluation receives an explicit `EvalContext`: the action registry, the
stage store, typed combinator options, a cancellation token and the I/O wiring
for the current position in the tree. Nothing is read from process globals
while a workflow runs.
"""

from __future__ import annotations

import dataclasses
import logging
import os
import sys
import threading
import time
from collections.abc import Callable, Mapping
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field
from typing import BinaryIO

from .actions import ActionRegistry
from .cancellation import CancellationToken
from .engine import run_concurrently, run_pipeline
from .expression import ActionRef, Combinator, Kind, Node, action_refs, render
from .options import CombinatorOptions
from .outcome import ExpressionError, Outcome, status_from_returncode
from .process import run_process, runner_argv, spawn_detached
from .stages import STAGE_ENV, StageStore, entered_marker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EvalContext:
    registry: ActionRegistry
    stages: StageStore
    options: CombinatorOptions = field(default_factory=CombinatorOptions)
    token: CancellationToken = field(default_factory=CancellationToken)
    stdin: bytes | None = None
    stdout: BinaryIO | None = None
    discard_stdout: bool = False
    quiet_stderr: bool = False
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))
    stage: str | None = None
    cwd: str | None = None
    output_lock: threading.Lock = field(default_factory=threading.Lock)

    def derive(self, **changes: object) -> EvalContext:
        return dataclasses.replace(self, **changes)  # type: ignore[arg-type]

    def child_env(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        env = dict(self.env)
        if self.stage is not None:
            env[STAGE_ENV] = self.stage
        if extra:
            env.update(extra)
        return env

    def write(self, data: bytes) -> None:
        if self.discard_stdout or not data:
            return
        with self.output_lock:
            if self.stdout is not None:
                self.stdout.write(data)
                return
            sys.stdout.flush()
            sys.stdout.buffer.write(data)
            sys.stdout.buffer.flush()

    def read_stdin(self) -> bytes | None:
        if self.stdin is not None:
            return self.stdin
        if sys.stdin is None or sys.stdin.isatty():
            return None
        return sys.stdin.buffer.read()

    def execute(
        self, argv: list[str], *, env: Mapping[str, str] | None = None, label: str = ""
    ) -> Outcome:
        """Run one process wired to this context's stdin/stdout and token."""

        if self.token.cancelled:
            return Outcome.interrupted(label)

        capture = self.stdout is not None or self.discard_stdout
        result = run_process(
            argv,
            env=self.child_env(env),
            cwd=self.cwd,
            stdin=self.stdin,
            capture=capture,
            quiet_stderr=self.quiet_stderr,
            token=self.token,
            kill_grace=self.options.timeout.kill_grace,
        )
        if result.output:
            self.write(result.output)

        status = status_from_returncode(result.returncode)
        if result.terminated:
            return Outcome(
                status=status,
                label=label,
                message=f"terminated ({self.token.reason or 'cancelled'})",
                cancelled=True,
            )
        return Outcome(status=status, label=label)


def _carry(node: Combinator, outcome: Outcome, children: tuple[Outcome, ...]) -> Outcome:
    """Report `outcome`'s status under `node`'s label."""

    return Outcome(
        status=outcome.status, label=node.label, cancelled=outcome.cancelled, children=children
    )


def _after_stage_step(child: Node, ctx: EvalContext, outer_stage: str | None) -> EvalContext:
    """Context for the siblings following `child` in a sequence.

    Entering a stage makes it current for the rest of the sequence; leaving
    the current stage restores the one that was current before.
    """

    if not isinstance(child, Combinator):
        return ctx
    if child.kind is Kind.STAGE_ENTER:
        return ctx.derive(stage=child.stage)
    if child.kind is Kind.STAGE_EXIT and child.stage == ctx.stage:
        return ctx.derive(stage=outer_stage if outer_stage != child.stage else None)
    return ctx


class Evaluator:
    """Walks an expression tree and applies each combinator's rule."""

    def __init__(self) -> None:
        self._rules: dict[Kind, Callable[[Combinator, EvalContext], Outcome]] = {
            Kind.AND: self._and,
            Kind.OR: self._or,
            Kind.NOT: self._not,
            Kind.IF_THEN: self._if_then,
            Kind.IF_THEN_ELSE: self._if_then_else,
            Kind.TRY_EXCEPT_FINALLY: self._try_except_finally,
            Kind.PARALLEL: self._parallel,
            Kind.JOIN: self._join,
            Kind.PIPELINE: self._pipeline,
            Kind.RETRY: self._retry,
            Kind.LOOP: self._loop,
            Kind.LOOP_UNTIL: self._loop_until,
            Kind.TIMEOUT: self._timeout,
            Kind.DELAY: self._delay,
            Kind.STAGE_ENTER: self._stage_enter,
            Kind.STAGE_EXIT: self._stage_exit,
            Kind.STAGE_WRAP: self._stage_wrap,
            Kind.TIMER: self._timer,
            Kind.MAP: self._map,
            Kind.EACH: self._each,
            Kind.FORK: self._fork,
            Kind.LOOP_FOREVER: self._loop_forever,
        }

    @staticmethod
    def check(node: Node, registry: ActionRegistry) -> None:
        """Resolve every action name up front; raises `ActionNotFound`."""

        for ref in action_refs(node):
            registry.resolve(ref.name, ref.args, ref.kwargs)

    def evaluate(self, node: Node, ctx: EvalContext) -> Outcome:
        if ctx.token.cancelled:
            return Outcome.interrupted(node.label)
        if isinstance(node, ActionRef):
            return self._action(node, ctx)
        return self._rules[node.kind](node, ctx)

    def _action(self, ref: ActionRef, ctx: EvalContext) -> Outcome:
        invocation = ctx.registry.resolve(ref.name, ref.args, ref.kwargs)
        logger.debug("Running action", extra={"action": ref.name, "args": list(ref.args)})
        return invocation.run(ctx)

    def _and(self, node: Combinator, ctx: EvalContext) -> Outcome:
        outcomes: list[Outcome] = []
        outer_stage = ctx.stage
        for child in node.children:
            outcome = self.evaluate(child, ctx)
            outcomes.append(outcome)
            if outcome.ok:
                ctx = _after_stage_step(child, ctx, outer_stage)
            else:
                logger.info(
                    "Stopping at first failure",
                    extra={
                        "combinator": node.label,
                        "target": child.label,
                        "status": outcome.status,
                    },
                )
                return Outcome(
                    status=outcome.status,
                    label=node.label,
                    cancelled=outcome.cancelled,
                    children=tuple(outcomes),
                )
        return Outcome(status=0, label=node.label, children=tuple(outcomes))

    def _or(self, node: Combinator, ctx: EvalContext) -> Outcome:
        outcomes: list[Outcome] = []
        for child in node.children:
            outcome = self.evaluate(child, ctx)
            outcomes.append(outcome)
            if outcome.ok:
                return Outcome(status=0, label=node.label, children=tuple(outcomes))
            if outcome.cancelled:
                break
        last = outcomes[-1]
        logger.info(
            "No alternative succeeded",
            extra={"combinator": node.label, "status": last.status},
        )
        return Outcome(
            status=last.status,
            label=node.label,
            cancelled=last.cancelled,
            children=tuple(outcomes),
        )

    def _not(self, node: Combinator, ctx: EvalContext) -> Outcome:
        outcome = self.evaluate(node.children[0], ctx)
        if outcome.cancelled:
            return outcome
        return Outcome(status=1 if outcome.ok else 0, label=node.label, children=(outcome,))

    def _if_then(self, node: Combinator, ctx: EvalContext) -> Outcome:
        cond, then = node.children
        quiet = ctx.quiet_stderr or ctx.options.quiet
        checked = self.evaluate(cond, ctx.derive(quiet_stderr=quiet))
        if checked.cancelled:
            return checked
        if not checked.ok:
            logger.debug(
                "Condition failed; skipping",
                extra={"combinator": node.label, "condition": cond.label, "status": checked.status},
            )
            return Outcome(
                status=0, label=node.label, message="condition failed", children=(checked,)
            )
        outcome = self.evaluate(then, ctx)
        return _carry(node, outcome, (checked, outcome))

    def _if_then_else(self, node: Combinator, ctx: EvalContext) -> Outcome:
        cond, then, otherwise = node.children
        checked = self.evaluate(cond, ctx.derive(discard_stdout=True))
        if checked.cancelled:
            return checked
        branch = then if checked.ok else otherwise
        logger.debug(
            "Dispatching branch",
            extra={"combinator": node.label, "branch": "then" if checked.ok else "else"},
        )
        outcome = self.evaluate(branch, ctx)
        return _carry(node, outcome, (checked, outcome))

    def _try_except_finally(self, node: Combinator, ctx: EvalContext) -> Outcome:
        body, handler, final = node.children
        outcomes: list[Outcome] = []

        result = self.evaluate(body, ctx)
        outcomes.append(result)
        if not result.ok and not result.cancelled:
            logger.info(
                "Body failed; running except",
                extra={"combinator": node.label, "status": result.status},
            )
            result = self.evaluate(handler, ctx)
            outcomes.append(result)

        # Cleanup still runs after cancellation, under a fresh token.
        final_ctx = ctx.derive(token=CancellationToken()) if ctx.token.cancelled else ctx
        cleanup = self.evaluate(final, final_ctx)
        outcomes.append(cleanup)
        message = None
        if not cleanup.ok:
            logger.warning(
                "Finally failed; keeping the recovered status",
                extra={"combinator": node.label, "status": cleanup.status},
            )
            message = f"finally failed with status {cleanup.status}"

        return Outcome(
            status=result.status,
            label=node.label,
            message=message,
            cancelled=result.cancelled,
            children=tuple(outcomes),
        )

    def _parallel(self, node: Combinator, ctx: EvalContext) -> Outcome:
        return run_concurrently(
            node.children, ctx, self.evaluate, ctx.options.join, bounded=True, label=node.label
        )

    def _join(self, node: Combinator, ctx: EvalContext) -> Outcome:
        return run_concurrently(
            node.children, ctx, self.evaluate, ctx.options.join, bounded=False, label=node.label
        )

    def _pipeline(self, node: Combinator, ctx: EvalContext) -> Outcome:
        return run_pipeline(
            node.children, ctx, self.evaluate, ctx.options.pipeline, label=node.label
        )

    def _retry(self, node: Combinator, ctx: EvalContext) -> Outcome:
        target = node.children[0]
        attempts = node.count or 1
        policy = ctx.options.retry

        outcome = Outcome.failure(node.label)
        for attempt in range(1, attempts + 1):
            outcome = self.evaluate(target, ctx)
            if outcome.ok:
                logger.info(
                    "Retry succeeded",
                    extra={"combinator": node.label, "attempt": attempt, "attempts": attempts},
                )
                return Outcome(
                    status=0, label=node.label, message=f"attempt {attempt}", children=(outcome,)
                )
            if outcome.cancelled or attempt == attempts:
                break
            delay = policy.delay_for_attempt(attempt)
            logger.info(
                "Attempt failed; retrying",
                extra={
                    "combinator": node.label,
                    "attempt": attempt,
                    "attempts": attempts,
                    "status": outcome.status,
                    "delay": delay,
                },
            )
            if not ctx.token.sleep(delay):
                return Outcome.interrupted(node.label)

        logger.warning(
            "Retries exhausted",
            extra={"combinator": node.label, "attempts": attempts, "status": outcome.status},
        )
        return Outcome(
            status=outcome.status,
            label=node.label,
            message=f"failed after {attempts} attempts",
            cancelled=outcome.cancelled,
            children=(outcome,),
        )

    def _loop(self, node: Combinator, ctx: EvalContext) -> Outcome:
        target = node.children[0]
        outcome = Outcome.success(node.label)
        for iteration in range(1, (node.count or 0) + 1):
            outcome = self.evaluate(target, ctx)
            logger.debug(
                "Loop iteration",
                extra={"combinator": node.label, "iteration": iteration, "status": outcome.status},
            )
            if outcome.cancelled:
                break
        return _carry(node, outcome, (outcome,))

    def _loop_until(self, node: Combinator, ctx: EvalContext) -> Outcome:
        target = node.children[0]
        attempt = 0
        while True:
            attempt += 1
            outcome = self.evaluate(target, ctx)
            if outcome.ok:
                logger.info(
                    "Loop condition met", extra={"combinator": node.label, "attempt": attempt}
                )
                return Outcome(
                    status=0, label=node.label, message=f"attempt {attempt}", children=(outcome,)
                )
            if outcome.cancelled or not ctx.token.sleep(ctx.options.loop.interval):
                return Outcome.interrupted(node.label)

    def _loop_forever(self, node: Combinator, ctx: EvalContext) -> Outcome:
        """Run the target at every loop interval until cancelled; failures do not stop it."""

        target = node.children[0]
        interval = ctx.options.loop.interval
        logger.info(
            "Looping forever",
            extra={"combinator": node.label, "target": target.label, "interval": interval},
        )
        iteration = 0
        while True:
            iteration += 1
            outcome = self.evaluate(target, ctx)
            if outcome.cancelled:
                break
            if not outcome.ok and not ctx.options.quiet:
                logger.warning(
                    "Loop iteration failed",
                    extra={
                        "combinator": node.label,
                        "iteration": iteration,
                        "status": outcome.status,
                    },
                )
            if not ctx.token.sleep(interval):
                break
        return Outcome.interrupted(node.label)

    def _fork(self, node: Combinator, ctx: EvalContext) -> Outcome:
        # Every target reads its own copy of the same input.
        data = ctx.read_stdin() or b""
        return run_concurrently(
            node.children,
            ctx.derive(stdin=data),
            self.evaluate,
            ctx.options.join,
            bounded=False,
            label=node.label,
        )

    def _timeout(self, node: Combinator, ctx: EvalContext) -> Outcome:
        target = node.children[0]
        policy = ctx.options.timeout
        seconds = node.seconds if node.seconds is not None else policy.seconds
        token = ctx.token.child()

        with ThreadPoolExecutor(max_workers=1, thread_name_prefix="flux-timeout") as pool:
            future = pool.submit(self.evaluate, target, ctx.derive(token=token))
            try:
                outcome = future.result(timeout=seconds)
            except FutureTimeout:
                logger.info(
                    "Timed out; terminating",
                    extra={
                        "combinator": node.label,
                        "seconds": seconds,
                        "signal": policy.signum.name,
                    },
                )
                token.cancel(sig=policy.signum, reason="timeout")
                outcome = future.result()
                return Outcome(
                    status=0,
                    label=node.label,
                    message=f"timed out after {seconds:g}s",
                    timed_out=True,
                    children=(outcome,),
                )
        return _carry(node, outcome, (outcome,))

    def _delay(self, node: Combinator, ctx: EvalContext) -> Outcome:
        seconds = node.seconds or 0.0
        expression = render(node.children[0], delimiter=ctx.options.delimiter)
        argv = runner_argv("run", "--no-supervisor", "--after", f"{seconds:g}", expression)
        pid = spawn_detached(argv, env=ctx.child_env(), cwd=ctx.cwd)
        logger.info(
            "Scheduled delayed run",
            extra={
                "combinator": node.label,
                "seconds": seconds,
                "expression": expression,
                "pid": pid,
            },
        )
        return Outcome(status=0, label=node.label, message=f"scheduled pid {pid}")

    def _stage_enter(self, node: Combinator, ctx: EvalContext) -> Outcome:
        name = node.stage or ""
        if ctx.stages.exists(name) and ctx.options.stage.force:
            logger.info("Discarding stale stage", extra={"stage": name})
            ctx.stages.clean(name)
        ctx.stages.push(name, entered_marker())
        logger.info("Entered stage", extra={"stage": name})
        return Outcome.success(node.label)

    def _stage_exit(self, node: Combinator, ctx: EvalContext) -> Outcome:
        name = node.stage or ""
        if not ctx.stages.exists(name):
            logger.warning("Stage was never entered", extra={"stage": name})
            return Outcome.success(node.label, message="no such stage")
        logger.info("Leaving stage", extra={"stage": name, "stack": ctx.stages.stack(name)})
        ctx.stages.clean(name)
        return Outcome.success(node.label)

    def _stage_wrap(self, node: Combinator, ctx: EvalContext) -> Outcome:
        name = node.stage or ""
        entered = self._stage_enter(Combinator(Kind.STAGE_ENTER, stage=name), ctx)
        body = self._and(Combinator(Kind.AND, node.children), ctx.derive(stage=name))
        if not body.ok:
            logger.warning(
                "Stage body failed; leaving stage file in place",
                extra={"stage": name, "status": body.status},
            )
            return _carry(node, body, (entered, body))
        exited = self._stage_exit(Combinator(Kind.STAGE_EXIT, stage=name), ctx)
        return Outcome(status=0, label=node.label, children=(entered, body, exited))

    def _timer(self, node: Combinator, ctx: EvalContext) -> Outcome:
        target = node.children[0]
        started = time.monotonic()
        outcome = self.evaluate(target, ctx)
        elapsed = time.monotonic() - started
        logger.info(
            "Timer",
            extra={
                "combinator": node.label,
                "target": target.label,
                "seconds": round(elapsed, 3),
                "status": outcome.status,
            },
        )
        return Outcome(
            status=outcome.status,
            label=node.label,
            message=f"{elapsed:.3f}s",
            cancelled=outcome.cancelled,
            children=(outcome,),
        )

    def _map(self, node: Combinator, ctx: EvalContext) -> Outcome:
        return self._apply_each(node, node.values, ctx)

    def _each(self, node: Combinator, ctx: EvalContext) -> Outcome:
        data = ctx.read_stdin() or b""
        values = tuple(data.decode("utf-8", errors="replace").split())
        logger.debug("Mapping input", extra={"combinator": node.label, "items": len(values)})
        # The items were consumed here; the target does not see them again.
        return self._apply_each(node, values, ctx.derive(stdin=b""))

    def _apply_each(
        self, node: Combinator, values: tuple[str, ...], ctx: EvalContext
    ) -> Outcome:
        target = node.children[0]
        if not isinstance(target, ActionRef):
            raise ExpressionError(f"{node.label} target must be an action, got {target.label!r}")
        outcomes: list[Outcome] = []
        for value in values:
            outcome = self.evaluate(target.with_args(value), ctx)
            outcomes.append(outcome)
            if not outcome.ok:
                return Outcome(
                    status=outcome.status,
                    label=node.label,
                    message=f"failed on {value!r}",
                    cancelled=outcome.cancelled,
                    children=tuple(outcomes),
                )
        return Outcome(status=0, label=node.label, children=tuple(outcomes))


def evaluate(node: Node, ctx: EvalContext) -> Outcome:
    return Evaluator().evaluate(node, ctx)

