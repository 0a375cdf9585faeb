#!/usr/bin/env python3
"""Programmatic workflow example.

This demonstrates using the evaluator components directly:

* load settings from `.env`
* register a shell action and an in-process action
* evaluate an expression with retries, a timeout and a stage stack

The expression is passed as an argument; the default polls a flaky check.
"""

from __future__ import annotations

import argparse
import random
from collections.abc import Mapping
from typing import Sequence

from flux_orchestrator.orchestrator.config import FluxSettings
from flux_orchestrator.orchestrator.logging import configure_logging
from flux_orchestrator.orchestrator.supervisor import Supervisor
from flux_orchestrator.orchestrator.workflow.actions import ShellAction, build_registry
from flux_orchestrator.orchestrator.workflow.evaluator import EvalContext
from flux_orchestrator.orchestrator.workflow.expression import parse
from flux_orchestrator.orchestrator.workflow.outcome import Outcome
from flux_orchestrator.orchestrator.workflow.stages import FileStageStore

DEFAULT_EXPRESSION = (
    "stage_wrap(demo, retry(5, flaky), timeout(2, and(greet(world), stage.stack(demo))))"
)


def _parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Evaluate a workflow (programmatic example).")
    parser.add_argument("--expression", default=DEFAULT_EXPRESSION, help="Combinator expression")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = _parse_args(argv)

    settings = FluxSettings()
    configure_logging(settings.effective_log_level)

    registry = build_registry(actions_file=settings.actions_file, delimiter=settings.delimiter)
    registry.register(ShellAction("greet", sh='echo "hello, $1"', description="Greet someone"))

    @registry.function("flaky", description="Fails about half of the time")
    def flaky(ctx: EvalContext, _args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
        if random.random() < 0.5:
            return Outcome.failure(message="unlucky")
        ctx.stages.push(ctx.stage or "demo", {"flaky": "passed"})
        return Outcome.success()

    supervisor = Supervisor(settings, registry, FileStageStore(settings.stage_dir))
    outcome = supervisor.run(parse(args.expression, delimiter=settings.delimiter))

    print(f"Finished with status {outcome.status}")
    return outcome.status


if __name__ == "__main__":
    raise SystemExit(main())
