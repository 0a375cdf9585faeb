"""Unit tests for the action registry and built-in actions."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path

import pytest

from flux_orchestrator.orchestrator.workflow.actions import (
    ActionRegistry,
    FunctionAction,
    RunnerAction,
    ShellAction,
    build_registry,
)
from flux_orchestrator.orchestrator.workflow.evaluator import EvalContext
from flux_orchestrator.orchestrator.workflow.outcome import ActionNotFound, Outcome
from flux_orchestrator.orchestrator.workflow.stages import MemoryStageStore


def test_builtins_are_registered() -> None:
    registry = build_registry()
    for name in ("ok", "fail", "noop", "echo", "wait", "stage.push", "stage.pop"):
        assert name in registry
    assert "flux.ok" in registry


def test_register_rejects_bad_names() -> None:
    registry = ActionRegistry()
    with pytest.raises(ValueError, match="Invalid action name"):
        registry.register(ShellAction("bad name", command=("true",)))
    with pytest.raises(ValueError, match="collides"):
        registry.register(ShellAction("retry", command=("true",)))


def test_register_rejects_duplicates_unless_replacing() -> None:
    registry = ActionRegistry()
    registry.register(ShellAction("x", command=("true",)))
    with pytest.raises(ValueError, match="already registered"):
        registry.register(ShellAction("x", command=("false",)))

    registry.register(ShellAction("x", command=("false",)), replace=True)
    action = registry.get("x")
    assert isinstance(action, ShellAction)
    assert action.command == ("false",)


def test_runner_action_expression_is_validated_on_registration() -> None:
    registry = ActionRegistry()
    with pytest.raises(ValueError, match="invalid expression"):
        registry.register(RunnerAction("broken", expression="and(a,"))


def test_resolve_unknown_name_raises() -> None:
    with pytest.raises(ActionNotFound) as exc:
        ActionRegistry().resolve("nope")
    assert "nope" in str(exc.value)


def test_function_decorator_registers_an_action() -> None:
    registry = ActionRegistry()

    @registry.function("hello", description="Say hello")
    def hello(ctx: EvalContext, args: tuple[str, ...], kwargs: object) -> Outcome:
        return Outcome.success(message="hi")

    action = registry.get("hello")
    assert isinstance(action, FunctionAction)
    assert action.description == "Say hello"


def test_registry_iterates_in_name_order() -> None:
    registry = ActionRegistry()
    registry.register(ShellAction("b", command=("true",)))
    registry.register(ShellAction("a", command=("true",)))
    assert [a.name for a in registry] == ["a", "b"]
    assert len(registry) == 2


def test_shell_action_argv() -> None:
    assert ShellAction("ls", command=("ls", "-l")).argv(("/tmp",)) == ["ls", "-l", "/tmp"]
    assert ShellAction("s", sh='echo "$1"').argv(("x",)) == ["sh", "-c", 'echo "$1"', "s", "x"]


def test_load_file_builds_typed_actions(tmp_path: Path) -> None:
    path = tmp_path / "flux.actions.json"
    path.write_text(
        json.dumps(
            {
                "list": {"command": ["ls", "-a"], "description": "List files"},
                "greet": {"sh": 'echo "hello $1"', "env": {"GREETING": "hi"}},
                "ci": {"expression": "and(list, greet)"},
            }
        ),
        encoding="utf-8",
    )
    registry = build_registry(actions_file=path)

    assert isinstance(registry.get("list"), ShellAction)
    assert isinstance(registry.get("greet"), ShellAction)
    assert isinstance(registry.get("ci"), RunnerAction)


@pytest.mark.parametrize(
    "body",
    [
        {},
        {"command": ["ls"], "sh": "ls"},
        {"command": []},
        {"sh": "ls", "unknown": 1},
    ],
)
def test_load_file_rejects_invalid_definitions(tmp_path: Path, body: dict[str, object]) -> None:
    path = tmp_path / "actions.json"
    path.write_text(json.dumps({"x": body}), encoding="utf-8")
    with pytest.raises(ValueError, match="Invalid action"):
        ActionRegistry().load_file(path)


def test_load_file_requires_an_object(tmp_path: Path) -> None:
    path = tmp_path / "actions.json"
    path.write_text("[]", encoding="utf-8")
    with pytest.raises(ValueError, match="JSON object"):
        ActionRegistry().load_file(path)


def test_missing_actions_file_is_ignored(tmp_path: Path) -> None:
    registry = build_registry(actions_file=tmp_path / "absent.json")
    assert "ok" in registry


def test_echo_joins_arguments(run_expr: Callable[..., tuple[Outcome, bytes]]) -> None:
    outcome, out = run_expr("echo(a, b)")
    assert outcome.ok
    assert out == b"a,b\n"


def test_fail_returns_one(run_expr: Callable[..., tuple[Outcome, bytes]]) -> None:
    outcome, _ = run_expr("fail")
    assert outcome.status == 1
    assert outcome.label == "fail"


def test_wait_rejects_bad_seconds(run_expr: Callable[..., tuple[Outcome, bytes]]) -> None:
    outcome, _ = run_expr("wait(soon)")
    assert outcome.status == 2


def test_stage_push_and_pop_through_actions(
    make_ctx: Callable[..., EvalContext],
    memory_stages: MemoryStageStore,
    run_expr: Callable[..., tuple[Outcome, bytes]],
) -> None:
    outcome, _ = run_expr("stage.push(build)", stdin=b'{"artifact": "app.tar"}')
    assert outcome.ok
    assert memory_stages.stack("build") == [{"artifact": "app.tar"}]

    outcome, out = run_expr("stage.pop(build)")
    assert outcome.ok
    assert json.loads(out) == {"artifact": "app.tar"}

    _, out = run_expr("stage.pop(build)")
    assert json.loads(out) is None


def test_stage_push_with_empty_stdin_is_not_an_error(
    memory_stages: MemoryStageStore, run_expr: Callable[..., tuple[Outcome, bytes]]
) -> None:
    outcome, _ = run_expr("stage.push(build)", stdin=b"  \n")
    assert outcome.ok
    assert memory_stages.stack("build") == []


def test_stage_push_rejects_non_json(run_expr: Callable[..., tuple[Outcome, bytes]]) -> None:
    outcome, _ = run_expr("stage.push(build)", stdin=b"not json")
    assert outcome.status == 1


def test_stage_actions_need_a_stage(run_expr: Callable[..., tuple[Outcome, bytes]]) -> None:
    outcome, _ = run_expr("stage.peek")
    assert outcome.status == 2


def test_stage_actions_default_to_the_entered_stage(
    memory_stages: MemoryStageStore, run_expr: Callable[..., tuple[Outcome, bytes]]
) -> None:
    memory_stages.push("current", {"n": 1})
    outcome, out = run_expr("stage.peek", stage="current")
    assert outcome.ok
    assert json.loads(out) == {"n": 1}
