"""Test configuration and fixtures."""

from __future__ import annotations

import io
from collections.abc import Callable
from pathlib import Path

import pytest

from flux_orchestrator.orchestrator.workflow.actions import (
    ActionRegistry,
    ShellAction,
    build_registry,
)
from flux_orchestrator.orchestrator.workflow.evaluator import EvalContext, Evaluator
from flux_orchestrator.orchestrator.workflow.expression import parse
from flux_orchestrator.orchestrator.workflow.options import (
    CombinatorOptions,
    LoopOptions,
    RetryOptions,
    TimeoutOptions,
)
from flux_orchestrator.orchestrator.workflow.outcome import Outcome
from flux_orchestrator.orchestrator.workflow.stages import FileStageStore, MemoryStageStore

# Succeeds once it has been called `$2` times; the call count lives in file `$1`.
COUNTER_SCRIPT = 'n=$(cat "$1" 2>/dev/null || echo 0); n=$((n+1)); echo "$n" > "$1"; [ "$n" -ge "$2" ]'


@pytest.fixture
def stage_dir(tmp_path: Path) -> Path:
    """Provide a temporary stage directory."""
    path = tmp_path / "stages"
    path.mkdir()
    return path


@pytest.fixture
def file_stages(stage_dir: Path) -> FileStageStore:
    return FileStageStore(stage_dir)


@pytest.fixture
def memory_stages() -> MemoryStageStore:
    return MemoryStageStore()


@pytest.fixture
def registry() -> ActionRegistry:
    """Built-ins plus a handful of small shell actions."""
    reg = build_registry()
    reg.register(ShellAction("succeed", command=("true",)))
    reg.register(ShellAction("exit3", sh="exit 3"))
    reg.register(ShellAction("say", command=("echo",)))
    reg.register(ShellAction("upper", command=("tr", "a-z", "A-Z")))
    reg.register(ShellAction("nap", command=("sleep",)))
    reg.register(ShellAction("count", sh=COUNTER_SCRIPT))
    reg.register(ShellAction("show-stage", sh='echo "stage=${FLUX_STAGE:-none}"'))
    reg.register(ShellAction("show-env", sh='echo "$FLUX_TEST_VALUE"'))
    return reg


@pytest.fixture
def fast_options() -> CombinatorOptions:
    """Options with no waiting between attempts."""
    return CombinatorOptions(
        retry=RetryOptions(interval=0, max_interval=0),
        loop=LoopOptions(interval=0),
        timeout=TimeoutOptions(seconds=5, kill_grace=0.5),
    )


@pytest.fixture
def make_ctx(
    registry: ActionRegistry, memory_stages: MemoryStageStore, fast_options: CombinatorOptions
) -> Callable[..., EvalContext]:
    def _make(**changes: object) -> EvalContext:
        ctx = EvalContext(
            registry=registry,
            stages=memory_stages,
            options=fast_options,
            stdin=b"",
            stdout=io.BytesIO(),
        )
        return ctx.derive(**changes) if changes else ctx

    return _make


@pytest.fixture
def run_expr(
    make_ctx: Callable[..., EvalContext],
) -> Callable[..., tuple[Outcome, bytes]]:
    """Evaluate an expression and return its outcome and captured stdout."""

    def _run(text: str, **changes: object) -> tuple[Outcome, bytes]:
        ctx = make_ctx(**changes)
        outcome = Evaluator().evaluate(parse(text), ctx)
        assert isinstance(ctx.stdout, io.BytesIO)
        return outcome, ctx.stdout.getvalue()

    return _run
