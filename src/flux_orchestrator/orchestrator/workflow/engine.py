"""Pipeline and join engine.

`run_pipeline` buffers each stage's entire stdout in memory and feeds it to
the next stage only after the previous stage has exited. Output is not
streamed through an OS pipe, which keeps stage boundaries from interleaving
stdout with stderr.

`run_concurrently` launches every child at once (JOIN) or up to `jobs` at a
time (PARALLEL), then waits at a barrier for all of them. Child failures do
not cancel siblings and do not fail the join unless the corresponding
options ask for it.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Callable, Sequence
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING

from .expression import Node
from .options import JoinOptions, PipelineOptions
from .outcome import INTERRUPTED, Outcome

if TYPE_CHECKING:
    from .evaluator import EvalContext

logger = logging.getLogger(__name__)

Evaluate = Callable[[Node, "EvalContext"], Outcome]


def _preview(data: bytes, limit: int) -> str:
    text = data[:limit].decode("utf-8", errors="replace")
    if len(data) > limit:
        text += f"... ({len(data) - limit} more bytes)"
    return text


def run_pipeline(
    stages: Sequence[Node],
    ctx: EvalContext,
    evaluate: Evaluate,
    options: PipelineOptions,
    *,
    label: str = "flux.pipeline",
) -> Outcome:
    data = ctx.stdin
    outcomes: list[Outcome] = []

    for index, stage in enumerate(stages, start=1):
        if ctx.token.cancelled:
            return Outcome.interrupted(label)

        last = index == len(stages)
        buffer = None if last else io.BytesIO()
        stage_ctx = ctx.derive(stdin=data) if last else ctx.derive(stdin=data, stdout=buffer)

        outcome = evaluate(stage, stage_ctx)
        outcomes.append(outcome)
        if not outcome.ok:
            logger.info(
                "Pipeline stage failed; aborting",
                extra={"combinator": label, "stage": index, "status": outcome.status},
            )
            return Outcome(
                status=outcome.status,
                label=label,
                message=f"stage {index} ({stage.label}) failed",
                cancelled=outcome.cancelled,
                children=tuple(outcomes),
            )

        if buffer is not None:
            data = buffer.getvalue()
            if options.preview:
                logger.info(
                    "Pipeline buffer",
                    extra={
                        "combinator": label,
                        "stage": index,
                        "bytes": len(data),
                        "preview": _preview(data, options.preview_bytes),
                    },
                )

    return Outcome(status=0, label=label, children=tuple(outcomes))


def run_concurrently(
    children: Sequence[Node],
    ctx: EvalContext,
    evaluate: Evaluate,
    options: JoinOptions,
    *,
    bounded: bool,
    label: str,
) -> Outcome:
    """Run `children` concurrently and wait for all of them (join barrier)."""

    group = ctx.token.child()
    workers = options.jobs if bounded else max(1, len(children))

    def _run(child: Node) -> Outcome:
        if group.cancelled:
            return Outcome.interrupted(child.label)
        outcome = evaluate(child, ctx.derive(token=group.child()))
        if not outcome.ok and not outcome.cancelled and options.cancel_on_failure:
            logger.info(
                "Child failed; cancelling siblings",
                extra={"combinator": label, "child": child.label, "status": outcome.status},
            )
            group.cancel(reason=f"sibling {child.label} failed")
        return outcome

    logger.debug(
        "Launching children",
        extra={"combinator": label, "children": len(children), "workers": workers},
    )
    with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="flux-join") as pool:
        futures = [pool.submit(_run, child) for child in children]
        outcomes = tuple(future.result() for future in futures)

    failed = [o for o in outcomes if not o.ok]
    logger.info(
        "Join barrier reached",
        extra={
            "combinator": label,
            "children": len(outcomes),
            "failed": len(failed),
            "statuses": [o.status for o in outcomes],
        },
    )

    if ctx.token.cancelled:
        return Outcome(status=INTERRUPTED, label=label, cancelled=True, children=outcomes)
    if failed and options.propagate_failure:
        return Outcome(
            status=failed[0].status,
            label=label,
            message=f"{len(failed)} of {len(outcomes)} children failed",
            children=outcomes,
        )
    message = f"{len(failed)} of {len(outcomes)} children failed" if failed else None
    return Outcome(status=0, label=label, message=message, children=outcomes)
