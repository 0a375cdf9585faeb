"""Background runner for workflow runs submitted over the API."""

from __future__ import annotations

import io
import logging
import threading
import uuid
from dataclasses import dataclass, field

from flux_orchestrator.orchestrator.config import FluxSettings
from flux_orchestrator.orchestrator.workflow.actions import ActionRegistry
from flux_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from flux_orchestrator.orchestrator.workflow.evaluator import EvalContext, Evaluator
from flux_orchestrator.orchestrator.workflow.expression import Node, render
from flux_orchestrator.orchestrator.workflow.options import CombinatorOptions
from flux_orchestrator.orchestrator.workflow.stages import StageStore
from flux_orchestrator.server.run_store import RunStore

logger = logging.getLogger(__name__)


@dataclass
class ActiveRuns:
    """Cancellation tokens of runs that are still executing, by run id."""

    _tokens: dict[str, CancellationToken] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def add(self, run_id: str, token: CancellationToken) -> None:
        with self._lock:
            self._tokens[run_id] = token

    def discard(self, run_id: str) -> None:
        with self._lock:
            self._tokens.pop(run_id, None)

    def cancel(self, run_id: str) -> bool:
        with self._lock:
            token = self._tokens.get(run_id)
        if token is None:
            return False
        token.cancel(reason="cancelled via API")
        return True

    def __contains__(self, run_id: object) -> bool:
        with self._lock:
            return run_id in self._tokens


def start_run(
    *,
    node: Node,
    stdin: bytes,
    settings: FluxSettings,
    registry: ActionRegistry,
    stages: StageStore,
    run_store: RunStore,
    active: ActiveRuns,
    max_output_bytes: int,
) -> str:
    run_id = uuid.uuid4().hex
    run_store.create(run_id=run_id, expression=render(node, delimiter=settings.delimiter))

    token = CancellationToken()
    active.add(run_id, token)

    thread = threading.Thread(
        target=_run_job,
        name=f"flux-run-{run_id}",
        daemon=True,
        kwargs={
            "run_id": run_id,
            "node": node,
            "stdin": stdin,
            "token": token,
            "settings": settings,
            "registry": registry,
            "stages": stages,
            "run_store": run_store,
            "active": active,
            "max_output_bytes": max_output_bytes,
        },
    )
    thread.start()
    return run_id


def _run_job(
    *,
    run_id: str,
    node: Node,
    stdin: bytes,
    token: CancellationToken,
    settings: FluxSettings,
    registry: ActionRegistry,
    stages: StageStore,
    run_store: RunStore,
    active: ActiveRuns,
    max_output_bytes: int,
) -> None:
    run_store.update(run_id, status="running")

    buffer = io.BytesIO()
    ctx = EvalContext(
        registry=registry,
        stages=stages,
        options=CombinatorOptions.from_settings(settings),
        token=token,
        stdin=stdin,
        stdout=buffer,
    )
    try:
        outcome = Evaluator().evaluate(node, ctx)

        if token.cancelled:
            status = "cancelled"
        else:
            status = "succeeded" if outcome.ok else "failed"
        output = buffer.getvalue()
        if max_output_bytes and len(output) > max_output_bytes:
            output = output[-max_output_bytes:]
        run_store.update(
            run_id,
            status=status,
            exit_status=outcome.status,
            timed_out=outcome.timed_out,
            output=output.decode("utf-8", errors="replace"),
            outcome=outcome.to_json(),
        )

    except Exception as e:
        logger.exception("Run failed", extra={"run_id": run_id})
        run_store.update(run_id, status="failed", error=str(e))
    finally:
        active.discard(run_id)
