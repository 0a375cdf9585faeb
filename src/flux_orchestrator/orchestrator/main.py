"""CLI entrypoint for the flux workflow runner."""

from __future__ import annotations

import argparse
import contextlib
import json
import logging
import os
import signal
import sys
import threading
from collections.abc import Iterator
from types import FrameType

from pydantic import ValidationError

from flux_orchestrator import __version__
from flux_orchestrator.orchestrator.config import FluxSettings
from flux_orchestrator.orchestrator.logging import configure_logging
from flux_orchestrator.orchestrator.supervisor import Supervisor, interrupt, yield_status
from flux_orchestrator.orchestrator.workflow.actions import build_registry
from flux_orchestrator.orchestrator.workflow.cancellation import CancellationToken
from flux_orchestrator.orchestrator.workflow.evaluator import EvalContext, Evaluator
from flux_orchestrator.orchestrator.workflow.expression import parse_all, render
from flux_orchestrator.orchestrator.workflow.options import CombinatorOptions
from flux_orchestrator.orchestrator.workflow.outcome import (
    FAILURE,
    USAGE_ERROR,
    ActionNotFound,
    ExpressionError,
)
from flux_orchestrator.orchestrator.workflow.stages import FileStageStore, current_stage

logger = logging.getLogger(__name__)

STAGE_COMMANDS = ("push", "pop", "peek", "stack", "clean", "file")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="flux",
        description="Run workflows composed from actions with control-flow combinators",
    )
    parser.add_argument("--version", action="version", version=f"flux-orchestrator {__version__}")

    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser(
        "run",
        help="Evaluate one or more expressions (several run in sequence, like and(...))",
    )
    run.add_argument("expressions", nargs="+", metavar="EXPR", help="Combinator expression")
    run.add_argument(
        "--no-supervisor",
        action="store_true",
        help="Evaluate directly without the supervisor (no SIGINT trap, hooks or at-exit)",
    )
    run.add_argument(
        "--after",
        type=float,
        default=0.0,
        metavar="SECONDS",
        help="Sleep before evaluating (used by delay)",
    )

    check = subparsers.add_parser(
        "check", help="Parse expressions and resolve every action name without running anything"
    )
    check.add_argument("expressions", nargs="+", metavar="EXPR")

    subparsers.add_parser("actions", help="List registered actions")

    stage = subparsers.add_parser("stage", help="Inspect or modify a stage stack")
    stage.add_argument("operation", choices=STAGE_COMMANDS)
    stage.add_argument("name", help="Stage name")

    subparsers.add_parser(
        "interrupt", help="Send SIGINT to the supervising process (FLUX_SUPERVISOR_PID)"
    )

    yield_cmd = subparsers.add_parser(
        "yield",
        help="Run a command, hand its exit status to the supervisor, then interrupt the run",
    )
    yield_cmd.add_argument("argv", nargs=argparse.REMAINDER, metavar="-- CMD")

    serve = subparsers.add_parser("serve", help="Start the REST API server")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=8000)

    return parser


@contextlib.contextmanager
def _forward_sigterm(token: CancellationToken) -> Iterator[None]:
    """Terminate our own children when we are terminated."""

    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _frame: FrameType | None) -> None:
        token.cancel(sig=signal.SIGTERM, reason=f"received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def _run(args: argparse.Namespace, settings: FluxSettings) -> int:
    registry = build_registry(actions_file=settings.actions_file, delimiter=settings.delimiter)
    stages = FileStageStore(settings.stage_dir, lock=settings.stage_lock)
    node = parse_all(args.expressions, delimiter=settings.delimiter)

    if args.no_supervisor:
        evaluator = Evaluator()
        evaluator.check(node, registry)
        ctx = EvalContext(
            registry=registry,
            stages=stages,
            options=CombinatorOptions.from_settings(settings),
            stage=current_stage(os.environ),
        )
        with _forward_sigterm(ctx.token):
            if args.after > 0 and not ctx.token.sleep(args.after):
                return 128 + signal.SIGTERM
            outcome = evaluator.evaluate(node, ctx)
    else:
        supervisor = Supervisor(settings, registry, stages)
        with _forward_sigterm(supervisor.token):
            if args.after > 0 and not supervisor.token.sleep(args.after):
                return 128 + signal.SIGTERM
            outcome = supervisor.run(node)

    logger.debug("Run finished", extra={"outcome": outcome.to_json()})
    if not outcome.ok and outcome.message:
        logger.info("Run failed", extra={"status": outcome.status, "reason": outcome.message})
    return outcome.status


def _stage(args: argparse.Namespace, settings: FluxSettings) -> int:
    store = FileStageStore(settings.stage_dir, lock=settings.stage_lock)
    name: str = args.name

    if args.operation == "file":
        print(store.file(name))
        return 0
    if args.operation == "clean":
        store.clean(name)
        return 0
    if args.operation == "push":
        data = sys.stdin.read()
        if not data.strip():
            logger.warning("Nothing to push: no data on stdin", extra={"stage": name})
            return 0
        try:
            record = json.loads(data)
        except json.JSONDecodeError as e:
            print(f"stdin is not JSON: {e}", file=sys.stderr)
            return FAILURE
        store.push(name, record)
        return 0

    if args.operation == "pop":
        value = store.pop(name)
    elif args.operation == "peek":
        value = store.peek(name)
    else:
        value = store.stack(name)
    print(json.dumps(value, ensure_ascii=False))
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = FluxSettings()
    except ValidationError as e:
        # Logging isn't configured yet; keep it simple and actionable.
        print("Configuration error (check your environment and .env):", file=sys.stderr)
        print(e, file=sys.stderr)
        return USAGE_ERROR

    configure_logging(settings.effective_log_level)

    try:
        if args.command == "run":
            return _run(args, settings)

        if args.command == "check":
            registry = build_registry(
                actions_file=settings.actions_file, delimiter=settings.delimiter
            )
            node = parse_all(args.expressions, delimiter=settings.delimiter)
            Evaluator.check(node, registry)
            print(render(node, delimiter=settings.delimiter))
            return 0

        if args.command == "actions":
            registry = build_registry(
                actions_file=settings.actions_file, delimiter=settings.delimiter
            )
            for action in registry:
                print(f"{action.name}\t{action.description}".rstrip())
            return 0

        if args.command == "stage":
            return _stage(args, settings)

        if args.command == "interrupt":
            return interrupt()

        if args.command == "yield":
            command = list(args.argv)
            if command and command[0] == "--":
                command = command[1:]
            if not command:
                parser.error("yield requires a command after --")
            return yield_status(command, settings)

        if args.command == "serve":
            import uvicorn

            uvicorn.run(
                "flux_orchestrator.server.app:create_app",
                factory=True,
                host=args.host,
                port=args.port,
                log_config=None,
            )
            return 0

        logger.error("Unknown command", extra={"command": args.command})
        return USAGE_ERROR

    except (ExpressionError, ActionNotFound) as e:
        logger.error(str(e))
        print(str(e), file=sys.stderr)
        return USAGE_ERROR

    except ValueError as e:
        # Invalid action file or stage name.
        logger.error(str(e))
        print(str(e), file=sys.stderr)
        return USAGE_ERROR

    except Exception:
        logger.exception("Command failed")
        return FAILURE


if __name__ == "__main__":
    raise SystemExit(main())
