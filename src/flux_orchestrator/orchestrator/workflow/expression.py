"""Combinator expressions: AST, parser and renderer.

Two surface forms are accepted and may be mixed:

Slash form, the historical task-runner spelling::

    flux.and/lint,test
    flux.retry/3/deploy
    flux.timeout/2/wait/10
    flux.stage.wrap/build/compile,package
    flux.wrap/a:b           (AND with ':' separator)
    echo/hello

Call form, unambiguous for nesting::

    and(lint, retry(3, deploy(env=prod)))

Positional arguments are separated by the delimiter (``,`` by default).
Quoted arguments (``"..."`` or ``'...'``) may contain any reserved character.
``flux.`` prefixes are optional and ``.``/``_`` spellings of combinator names
are interchangeable.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from enum import Enum

from .outcome import ExpressionError
from .stages import validate_stage_name

DEFAULT_DELIMITER = ","
COLON = ":"

_NAME = re.compile(r"[A-Za-z0-9_.\-]+")
_NEEDS_QUOTES = re.compile(r"[\s,()/=:'\"]")


class Kind(str, Enum):
    AND = "and"
    OR = "or"
    NOT = "not"
    IF_THEN = "if_then"
    IF_THEN_ELSE = "if_then_else"
    TRY_EXCEPT_FINALLY = "try_except_finally"
    PARALLEL = "parallel"
    JOIN = "join"
    PIPELINE = "pipeline"
    RETRY = "retry"
    LOOP = "loop"
    LOOP_UNTIL = "loop_until"
    TIMEOUT = "timeout"
    DELAY = "delay"
    STAGE_ENTER = "stage_enter"
    STAGE_EXIT = "stage_exit"
    STAGE_WRAP = "stage_wrap"
    TIMER = "timer"
    MAP = "map"
    EACH = "each"
    FORK = "pipe_fork"
    LOOP_FOREVER = "loopf"


@dataclass(frozen=True, slots=True)
class ActionRef:
    name: str
    args: tuple[str, ...] = ()
    kwargs: tuple[tuple[str, str], ...] = ()

    @property
    def label(self) -> str:
        return self.name

    def with_args(self, *extra: str) -> ActionRef:
        return ActionRef(name=self.name, args=self.args + extra, kwargs=self.kwargs)


@dataclass(frozen=True, slots=True)
class Combinator:
    kind: Kind
    children: tuple[Node, ...] = ()
    count: int | None = None
    seconds: float | None = None
    stage: str | None = None
    values: tuple[str, ...] = field(default_factory=tuple)

    @property
    def label(self) -> str:
        return f"flux.{self.kind.value}"


Node = ActionRef | Combinator


# Surface name -> (kind, sugar). Sugar names rewrite into a core node.
_NAMES: dict[str, tuple[Kind, str | None]] = {
    "and": (Kind.AND, None),
    "all": (Kind.AND, None),
    "wrap": (Kind.AND, "colon"),
    "or": (Kind.OR, None),
    "any": (Kind.OR, None),
    "not": (Kind.NOT, None),
    "negate": (Kind.NOT, None),
    "if_then": (Kind.IF_THEN, None),
    "do_when": (Kind.IF_THEN, "do_when"),
    "do_unless": (Kind.IF_THEN, "do_unless"),
    "if_then_else": (Kind.IF_THEN_ELSE, None),
    "try_except_finally": (Kind.TRY_EXCEPT_FINALLY, None),
    "try_except": (Kind.TRY_EXCEPT_FINALLY, "try_except"),
    "try_finally": (Kind.TRY_EXCEPT_FINALLY, "try_finally"),
    "parallel": (Kind.PARALLEL, None),
    "join": (Kind.JOIN, None),
    "mux": (Kind.JOIN, None),
    "pipeline": (Kind.PIPELINE, None),
    "column": (Kind.PIPELINE, "colon"),
    "retry": (Kind.RETRY, None),
    "loop": (Kind.LOOP, None),
    "loop_until": (Kind.LOOP_UNTIL, None),
    "timeout": (Kind.TIMEOUT, None),
    "delay": (Kind.DELAY, None),
    "apply_later": (Kind.DELAY, None),
    "stage": (Kind.STAGE_ENTER, None),
    "stage_enter": (Kind.STAGE_ENTER, None),
    "stage_exit": (Kind.STAGE_EXIT, None),
    "stage_wrap": (Kind.STAGE_WRAP, None),
    "timer": (Kind.TIMER, None),
    "map": (Kind.MAP, None),
    "for_each": (Kind.MAP, None),
    "each": (Kind.EACH, None),
    "starmap": (Kind.PIPELINE, "starmap"),
    "pipe_fork": (Kind.FORK, None),
    "split": (Kind.FORK, None),
    "loopf": (Kind.LOOP_FOREVER, None),
    "loop_forever": (Kind.LOOP_FOREVER, None),
    "context_manager": (Kind.AND, "context_manager"),
    "with_ctx": (Kind.AND, "context_manager"),
    "apply": (Kind.AND, "apply"),
}

_FIXED_ARITY: dict[Kind, int] = {
    Kind.NOT: 1,
    Kind.TIMER: 1,
    Kind.LOOP_UNTIL: 1,
    Kind.LOOP_FOREVER: 1,
    Kind.EACH: 1,
    Kind.IF_THEN: 2,
    Kind.IF_THEN_ELSE: 3,
    Kind.TRY_EXCEPT_FINALLY: 3,
}

_SUGAR_ARITY: dict[str, int] = {
    "do_when": 2,
    "do_unless": 2,
    "try_except": 2,
    "try_finally": 2,
    "starmap": 2,
}

# Slash form: everything after the first '/' is the single argument.
_SINGLE_TARGET = {
    Kind.NOT,
    Kind.TIMER,
    Kind.LOOP_UNTIL,
    Kind.LOOP_FOREVER,
    Kind.EACH,
    Kind.STAGE_ENTER,
    Kind.STAGE_EXIT,
}

NOOP = ActionRef("noop")


def combinator_key(name: str) -> str:
    return name.removeprefix("flux.").replace(".", "_").replace("-", "_")


def is_combinator_name(name: str) -> bool:
    return combinator_key(name) in _NAMES


def split_top(text: str, sep: str, maxsplit: int = -1) -> list[str]:
    """Split on `sep` outside parentheses and quotes."""

    parts: list[str] = []
    depth = 0
    quote: str | None = None
    start = 0
    for i, ch in enumerate(text):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth < 0:
                raise ExpressionError(f"Unbalanced ')' in {text!r}")
        elif ch == sep and depth == 0 and (maxsplit < 0 or len(parts) < maxsplit):
            parts.append(text[start:i])
            start = i + 1
    if quote is not None:
        raise ExpressionError(f"Unterminated quote in {text!r}")
    if depth != 0:
        raise ExpressionError(f"Unbalanced '(' in {text!r}")
    parts.append(text[start:])
    return parts


def _unquote(item: str) -> tuple[str, bool]:
    if len(item) >= 2 and item[0] == item[-1] and item[0] in "\"'":
        return item[1:-1], True
    return item, False


def _parse_number(raw: str, *, what: str, integer: bool) -> float:
    text = _unquote(raw.strip())[0]
    try:
        value = int(text) if integer else float(text)
    except ValueError:
        raise ExpressionError(f"{what} must be a number, got {raw!r}") from None
    if not math.isfinite(value) or value < 0:
        raise ExpressionError(f"{what} must be a finite, non-negative number, got {raw!r}")
    return value


def _is_number(raw: str) -> bool:
    try:
        float(_unquote(raw.strip())[0])
    except ValueError:
        return False
    return True


class Parser:
    """Recursive-descent parser over both surface forms."""

    def __init__(self, *, delimiter: str = DEFAULT_DELIMITER) -> None:
        if len(delimiter) != 1 or delimiter in "()/\"'":
            raise ExpressionError(f"Invalid delimiter: {delimiter!r}")
        self.delimiter = delimiter

    def parse(self, text: str) -> Node:
        text = text.strip()
        if not text:
            raise ExpressionError("Empty expression")

        match = _NAME.match(text)
        if match is None:
            raise ExpressionError(f"Expected a name at the start of {text!r}")
        name = match.group(0)
        rest = text[match.end() :]

        if not rest:
            if is_combinator_name(name):
                raise ExpressionError(f"{name} requires arguments")
            return ActionRef(name)

        if rest.startswith("("):
            if not rest.endswith(")"):
                raise ExpressionError(f"Trailing text after call in {text!r}")
            # Reject `a(b)c(d)`: the closing paren must match the opening one.
            if _closes_early(rest):
                raise ExpressionError(f"Trailing text after call in {text!r}")
            inner = rest[1:-1]
            items = [] if not inner.strip() else split_top(inner, self.delimiter)
            return self._build(name, [i.strip() for i in items])

        if rest.startswith("/"):
            return self._build_slash(name, rest[1:])

        raise ExpressionError(f"Unexpected {rest[0]!r} after {name!r}")

    def _build_slash(self, name: str, rest: str) -> Node:
        if not is_combinator_name(name):
            items = [] if not rest else split_top(rest, self.delimiter)
            return self._action(name, items)

        kind, sugar = _NAMES[combinator_key(name)]
        sep = COLON if sugar == "colon" else self.delimiter

        if kind in {Kind.RETRY, Kind.LOOP, Kind.DELAY}:
            head, _, tail = rest.partition("/")
            return self._build(name, [head, tail])
        if kind is Kind.TIMEOUT:
            head, _, tail = rest.partition("/")
            if tail and _is_number(head):
                return self._build(name, [head, tail])
            return self._build(name, [rest])
        if kind is Kind.STAGE_WRAP:
            head, _, tail = rest.partition("/")
            return self._build(name, [head, *split_top(tail, sep)])
        if kind in _SINGLE_TARGET:
            return self._build(name, [rest])

        arity = _SUGAR_ARITY.get(sugar or "") or _FIXED_ARITY.get(kind)
        if arity is not None:
            # The last argument takes the remainder.
            return self._build(name, split_top(rest, sep, maxsplit=arity - 1))
        return self._build(name, split_top(rest, sep))

    def _action(self, name: str, items: list[str]) -> ActionRef:
        args: list[str] = []
        kwargs: list[tuple[str, str]] = []
        for raw in items:
            item = raw.strip()
            value, quoted = _unquote(item)
            if not quoted and "=" in item:
                key, _, val = item.partition("=")
                key = key.strip()
                if not key.isidentifier():
                    raise ExpressionError(f"Invalid keyword argument {item!r} for {name}")
                kwargs.append((key, _unquote(val.strip())[0]))
            else:
                args.append(value)
        return ActionRef(name=name, args=tuple(args), kwargs=tuple(kwargs))

    def _children(self, items: list[str]) -> tuple[Node, ...]:
        return tuple(self.parse(i) for i in items)

    def _build(self, name: str, items: list[str]) -> Node:
        if not is_combinator_name(name):
            return self._action(name, items)

        kind, sugar = _NAMES[combinator_key(name)]
        items = [i.strip() for i in items]
        if any(not i for i in items) and kind is not Kind.MAP:
            raise ExpressionError(f"{name}: empty argument")

        expected = _SUGAR_ARITY.get(sugar or "") or _FIXED_ARITY.get(kind)
        if expected is not None and len(items) != expected:
            raise ExpressionError(f"{name} takes {expected} arguments, got {len(items)}")

        if sugar == "try_except":
            t, x = self._children(items)
            return Combinator(Kind.TRY_EXCEPT_FINALLY, (t, x, NOOP))
        if sugar == "try_finally":
            t, f = self._children(items)
            return Combinator(Kind.TRY_EXCEPT_FINALLY, (t, NOOP, f))
        if sugar == "do_when":
            then, cond = self._children(items)
            return Combinator(Kind.IF_THEN, (cond, then))
        if sugar == "do_unless":
            then, cond = self._children(items)
            return Combinator(Kind.IF_THEN, (Combinator(Kind.NOT, (cond,)), then))
        if sugar == "starmap":
            fn, iterable = self._children(items)
            return Combinator(Kind.PIPELINE, (iterable, self._each(name, fn)))
        if sugar == "context_manager":
            return self._context_manager(name, items)
        if sugar == "apply":
            if not items:
                raise ExpressionError(f"{name} takes an action and its arguments")
            return self._unary(name, items[0]).with_args(*(_unquote(i)[0] for i in items[1:]))

        if kind is Kind.EACH:
            return self._each(name, self.parse(items[0]))

        if kind in {Kind.AND, Kind.OR, Kind.PARALLEL, Kind.JOIN, Kind.PIPELINE, Kind.FORK}:
            if not items:
                raise ExpressionError(f"{name} requires at least one argument")
            return Combinator(kind, self._children(items))

        if kind in _FIXED_ARITY:
            return Combinator(kind, self._children(items))

        if kind in {Kind.RETRY, Kind.LOOP}:
            if len(items) != 2:
                raise ExpressionError(f"{name} takes a count and a target")
            count = int(_parse_number(items[0], what=f"{name} count", integer=True))
            if kind is Kind.RETRY and count < 1:
                raise ExpressionError(f"{name} needs at least one attempt")
            return Combinator(kind, (self.parse(items[1]),), count=count)

        if kind is Kind.DELAY:
            if len(items) != 2:
                raise ExpressionError(f"{name} takes seconds and a target")
            seconds = _parse_number(items[0], what=f"{name} seconds", integer=False)
            return Combinator(kind, (self.parse(items[1]),), seconds=seconds)

        if kind is Kind.TIMEOUT:
            if len(items) == 1:
                return Combinator(kind, (self.parse(items[0]),))
            if len(items) != 2:
                raise ExpressionError(f"{name} takes seconds and a target")
            seconds = _parse_number(items[0], what=f"{name} seconds", integer=False)
            return Combinator(kind, (self.parse(items[1]),), seconds=seconds)

        if kind in {Kind.STAGE_ENTER, Kind.STAGE_EXIT}:
            if len(items) != 1:
                raise ExpressionError(f"{name} takes a stage name")
            return Combinator(kind, stage=_stage(name, items[0]))

        if kind is Kind.STAGE_WRAP:
            if len(items) < 2:
                raise ExpressionError(f"{name} takes a stage name and at least one target")
            return Combinator(kind, self._children(items[1:]), stage=_stage(name, items[0]))

        if kind is Kind.MAP:
            if not items or not items[0]:
                raise ExpressionError(f"{name} takes an action and its arguments")
            values = tuple(_unquote(i)[0] for i in items[1:] if i)
            return Combinator(kind, (self._unary(name, items[0]),), values=values)

        raise ExpressionError(f"Unsupported combinator {name!r}")

    def _unary(self, name: str, item: str) -> ActionRef:
        target = self.parse(item)
        if not isinstance(target, ActionRef):
            raise ExpressionError(f"{name} target must be an action, got {item!r}")
        return target

    def _each(self, name: str, target: Node) -> Combinator:
        if not isinstance(target, ActionRef):
            raise ExpressionError(f"{name} target must be an action, got {target.label!r}")
        return Combinator(Kind.EACH, (target,))

    def _context_manager(self, name: str, items: list[str]) -> Combinator:
        """`<manager>.enter`, then the target, then `<manager>.exit` even on failure."""

        if len(items) not in (2, 3):
            raise ExpressionError(f"{name} takes a target, a context name and optional arguments")
        target = self.parse(items[0])
        manager = _unquote(items[1])[0]
        if not _NAME.fullmatch(manager):
            raise ExpressionError(f"{name}: invalid context name {manager!r}")
        extra = (_unquote(items[2])[0],) if len(items) == 3 else ()
        enter = ActionRef(f"{manager}.enter", extra)
        leave = ActionRef(f"{manager}.exit", extra)
        return Combinator(
            Kind.AND, (enter, Combinator(Kind.TRY_EXCEPT_FINALLY, (target, NOOP, leave)))
        )


def _stage(name: str, item: str) -> str:
    try:
        return validate_stage_name(_unquote(item)[0])
    except ValueError as e:
        raise ExpressionError(f"{name}: {e}") from None


def _closes_early(call: str) -> bool:
    depth = 0
    quote: str | None = None
    for i, ch in enumerate(call):
        if quote is not None:
            if ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i != len(call) - 1
    return False


def parse(text: str, *, delimiter: str = DEFAULT_DELIMITER) -> Node:
    return Parser(delimiter=delimiter).parse(text)


def parse_all(texts: list[str], *, delimiter: str = DEFAULT_DELIMITER) -> Node:
    """Parse several top-level expressions; more than one runs them in sequence."""

    if not texts:
        raise ExpressionError("No expression given")
    parser = Parser(delimiter=delimiter)
    nodes = tuple(parser.parse(t) for t in texts)
    return nodes[0] if len(nodes) == 1 else Combinator(Kind.AND, nodes)


def _quote(value: str) -> str:
    if value and not _NEEDS_QUOTES.search(value):
        return value
    if '"' not in value:
        return f'"{value}"'
    if "'" not in value:
        return f"'{value}'"
    raise ExpressionError(f"Cannot quote argument containing both quote characters: {value!r}")


def _number(value: float) -> str:
    return str(int(value)) if float(value).is_integer() else repr(value)


def render(node: Node, *, delimiter: str = DEFAULT_DELIMITER) -> str:
    """Render `node` back to call-form text that `parse` accepts."""

    sep = f"{delimiter} "
    if isinstance(node, ActionRef):
        parts = [_quote(a) for a in node.args] + [f"{k}={_quote(v)}" for k, v in node.kwargs]
        return f"{node.name}({sep.join(parts)})" if parts else node.name

    parts: list[str] = []
    if node.count is not None:
        parts.append(str(node.count))
    if node.seconds is not None:
        parts.append(_number(node.seconds))
    if node.stage is not None:
        parts.append(_quote(node.stage))
    parts.extend(render(child, delimiter=delimiter) for child in node.children)
    parts.extend(_quote(v) for v in node.values)
    return f"{node.kind.value}({sep.join(parts)})"


def walk(node: Node) -> Iterator[Node]:
    yield node
    if isinstance(node, Combinator):
        for child in node.children:
            yield from walk(child)


def action_refs(node: Node) -> Iterator[ActionRef]:
    for item in walk(node):
        if isinstance(item, ActionRef):
            yield item
