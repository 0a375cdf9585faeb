"""Action registry.

An action is a named unit of work with an integer exit status. Names map to
typed handlers that are validated when they are registered, not when they
first run:

- `ShellAction`: an argv (`{"command": [...]}`) or a shell script
  (`{"sh": "..."}`), run as one OS process.
- `RunnerAction`: an expression (`{"expression": "..."}`) evaluated by
  re-entering the runner in a child process.
- `FunctionAction`: an in-process callable, used for the built-ins.

Keyword arguments reach shell and runner actions as environment variables;
positional arguments are appended to the argv (or passed as `$1..$n` to
shell scripts).
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .expression import ActionRef, is_combinator_name, parse
from .outcome import USAGE_ERROR, ActionNotFound, ExpressionError, Outcome
from .process import runner_argv

if TYPE_CHECKING:
    from .evaluator import EvalContext

logger = logging.getLogger(__name__)

_VALID_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.\-]*$")


class Action(Protocol):
    """A named unit of work yielding an exit status."""

    name: str
    description: str

    def run(
        self, ctx: EvalContext, args: tuple[str, ...], kwargs: Mapping[str, str]
    ) -> Outcome: ...


@dataclass(frozen=True, slots=True)
class ShellAction:
    name: str
    command: tuple[str, ...] = ()
    sh: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)
    description: str = ""

    def argv(self, args: tuple[str, ...]) -> list[str]:
        if self.sh is not None:
            # $0 is the action name, positional args become $1..$n.
            return ["sh", "-c", self.sh, self.name, *args]
        return [*self.command, *args]

    def run(self, ctx: EvalContext, args: tuple[str, ...], kwargs: Mapping[str, str]) -> Outcome:
        return ctx.execute(self.argv(args), env={**self.env, **kwargs}, label=self.name)


@dataclass(frozen=True, slots=True)
class RunnerAction:
    """Evaluate an expression in a fresh runner process."""

    name: str
    expression: str
    env: Mapping[str, str] = field(default_factory=dict)
    description: str = ""

    def argv(self) -> list[str]:
        return runner_argv("run", "--no-supervisor", self.expression)

    def run(self, ctx: EvalContext, args: tuple[str, ...], kwargs: Mapping[str, str]) -> Outcome:
        env = {**self.env, **kwargs}
        if args:
            env["FLUX_ARGS"] = ctx.options.delimiter.join(args)
        return ctx.execute(self.argv(), env=env, label=self.name)


ActionFunc = Callable[["EvalContext", tuple[str, ...], Mapping[str, str]], Outcome]


@dataclass(frozen=True, slots=True)
class FunctionAction:
    name: str
    func: ActionFunc
    description: str = ""

    def run(self, ctx: EvalContext, args: tuple[str, ...], kwargs: Mapping[str, str]) -> Outcome:
        return self.func(ctx, args, kwargs)


@dataclass(frozen=True, slots=True)
class Invocation:
    """A resolved action bound to its arguments. Nothing runs until `run`."""

    action: Action
    ref: ActionRef

    def run(self, ctx: EvalContext) -> Outcome:
        return self.action.run(ctx, self.ref.args, dict(self.ref.kwargs)).relabel(self.ref.name)


class ActionSpec(BaseModel):
    """One entry of an action file."""

    model_config = ConfigDict(extra="forbid")

    command: list[str] | None = None
    sh: str | None = None
    expression: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    description: str = ""

    @model_validator(mode="after")
    def _exactly_one_body(self) -> ActionSpec:
        bodies = [b for b in (self.command, self.sh, self.expression) if b is not None]
        if len(bodies) != 1:
            raise ValueError("exactly one of 'command', 'sh' or 'expression' is required")
        if self.command is not None and not self.command:
            raise ValueError("'command' must not be empty")
        return self

    def build(self, name: str) -> Action:
        if self.expression is not None:
            return RunnerAction(
                name=name, expression=self.expression, env=self.env, description=self.description
            )
        return ShellAction(
            name=name,
            command=tuple(self.command or ()),
            sh=self.sh,
            env=self.env,
            description=self.description,
        )


class ActionRegistry:
    """Map from action name to a typed handler."""

    def __init__(self, *, delimiter: str = ",") -> None:
        self._actions: dict[str, Action] = {}
        self._delimiter = delimiter

    def register(self, action: Action, *, replace: bool = False) -> Action:
        name = action.name
        if not _VALID_NAME.match(name):
            raise ValueError(f"Invalid action name: {name!r}")
        if is_combinator_name(name):
            raise ValueError(f"Action name {name!r} collides with a combinator")
        if name in self._actions and not replace:
            raise ValueError(f"Action already registered: {name!r}")
        if isinstance(action, RunnerAction):
            try:
                parse(action.expression, delimiter=self._delimiter)
            except ExpressionError as e:
                raise ValueError(f"Action {name!r} has an invalid expression: {e}") from e
        self._actions[name] = action
        return action

    def function(self, name: str, description: str = "") -> Callable[[ActionFunc], ActionFunc]:
        """Decorator registering `func` as an in-process action."""

        def decorator(func: ActionFunc) -> ActionFunc:
            self.register(FunctionAction(name=name, func=func, description=description))
            return func

        return decorator

    def get(self, name: str) -> Action | None:
        action = self._actions.get(name)
        if action is None and name.startswith("flux."):
            action = self._actions.get(name.removeprefix("flux."))
        return action

    def resolve(
        self,
        name: str,
        args: tuple[str, ...] = (),
        kwargs: tuple[tuple[str, str], ...] = (),
    ) -> Invocation:
        action = self.get(name)
        if action is None:
            raise ActionNotFound(name)
        return Invocation(action=action, ref=ActionRef(name=name, args=args, kwargs=kwargs))

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    def __iter__(self) -> Iterator[Action]:
        return iter(sorted(self._actions.values(), key=lambda a: a.name))

    def __len__(self) -> int:
        return len(self._actions)

    def load_file(self, path: Path, *, replace: bool = True) -> int:
        """Register every action defined in a JSON action file."""

        raw = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(raw, dict):
            raise ValueError(f"Action file must hold a JSON object: {path}")

        count = 0
        for name, body in raw.items():
            try:
                spec = ActionSpec.model_validate(body)
            except ValidationError as e:
                raise ValueError(f"Invalid action {name!r} in {path}: {e}") from e
            self.register(spec.build(name), replace=replace)
            count += 1
        logger.info("Loaded actions", extra={"path": str(path), "count": count})
        return count


def _ok(_ctx: EvalContext, _args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    return Outcome.success()


def _fail(_ctx: EvalContext, _args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    return Outcome.failure(message="fail")


def _echo(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    ctx.write((ctx.options.delimiter.join(args) + "\n").encode("utf-8"))
    return Outcome.success()


def _wait(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    seconds = args[0] if args else "1"
    try:
        if float(seconds) < 0:
            raise ValueError(seconds)
    except ValueError:
        return Outcome.failure(status=USAGE_ERROR, message=f"wait: invalid seconds {seconds!r}")
    return ctx.execute(["sleep", seconds], label="wait")


def _stage_name(ctx: EvalContext, args: tuple[str, ...]) -> str | None:
    return args[0] if args else ctx.stage


def _emit_json(ctx: EvalContext, value: Any) -> None:
    ctx.write((json.dumps(value, ensure_ascii=False) + "\n").encode("utf-8"))


def _stage_push(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    name = _stage_name(ctx, args)
    if name is None:
        return Outcome.failure(status=USAGE_ERROR, message="stage.push: no stage given or entered")

    data = ctx.read_stdin()
    if not data or not data.strip():
        logger.warning("Nothing to push: no data on stdin", extra={"stage": name})
        return Outcome.success(message="nothing to push")
    try:
        record = json.loads(data)
    except json.JSONDecodeError as e:
        return Outcome.failure(message=f"stage.push: stdin is not JSON: {e}")
    ctx.stages.push(name, record)
    return Outcome.success()


def _stage_pop(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    name = _stage_name(ctx, args)
    if name is None:
        return Outcome.failure(status=USAGE_ERROR, message="stage.pop: no stage given or entered")
    _emit_json(ctx, ctx.stages.pop(name))
    return Outcome.success()


def _stage_peek(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    name = _stage_name(ctx, args)
    if name is None:
        return Outcome.failure(status=USAGE_ERROR, message="stage.peek: no stage given or entered")
    _emit_json(ctx, ctx.stages.peek(name))
    return Outcome.success()


def _stage_stack(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    name = _stage_name(ctx, args)
    if name is None:
        return Outcome.failure(status=USAGE_ERROR, message="stage.stack: no stage given or entered")
    _emit_json(ctx, ctx.stages.stack(name))
    return Outcome.success()


def _stage_clean(ctx: EvalContext, args: tuple[str, ...], _kwargs: Mapping[str, str]) -> Outcome:
    name = _stage_name(ctx, args)
    if name is None:
        return Outcome.failure(status=USAGE_ERROR, message="stage.clean: no stage given or entered")
    ctx.stages.clean(name)
    return Outcome.success()


BUILTINS: tuple[FunctionAction, ...] = (
    FunctionAction("ok", _ok, "Always succeeds"),
    FunctionAction("fail", _fail, "Always fails with status 1"),
    FunctionAction("noop", _ok, "Does nothing"),
    FunctionAction("echo", _echo, "Print the arguments"),
    FunctionAction("wait", _wait, "Sleep for the given seconds in a child process"),
    FunctionAction("stage.push", _stage_push, "Push the JSON on stdin onto a stage"),
    FunctionAction("stage.pop", _stage_pop, "Pop and print the top of a stage"),
    FunctionAction("stage.peek", _stage_peek, "Print the top of a stage"),
    FunctionAction("stage.stack", _stage_stack, "Print a whole stage stack"),
    FunctionAction("stage.clean", _stage_clean, "Delete a stage stack"),
)


def build_registry(*, actions_file: Path | None = None, delimiter: str = ",") -> ActionRegistry:
    """Registry with the built-ins plus any actions defined in `actions_file`."""

    registry = ActionRegistry(delimiter=delimiter)
    for action in BUILTINS:
        registry.register(action)
    if actions_file is not None and actions_file.exists():
        registry.load_file(actions_file)
    return registry
