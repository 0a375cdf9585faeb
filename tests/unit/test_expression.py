"""Unit tests for expression parsing and rendering."""

from __future__ import annotations

import pytest

from flux_orchestrator.orchestrator.workflow.expression import (
    NOOP,
    ActionRef,
    Combinator,
    Kind,
    action_refs,
    is_combinator_name,
    parse,
    parse_all,
    render,
    split_top,
)
from flux_orchestrator.orchestrator.workflow.outcome import ExpressionError


def test_bare_name_is_an_action() -> None:
    assert parse("lint") == ActionRef("lint")


def test_slash_form_and() -> None:
    node = parse("flux.and/lint,test")
    assert node == Combinator(Kind.AND, (ActionRef("lint"), ActionRef("test")))


def test_call_form_nesting_with_keywords() -> None:
    node = parse("and(lint, retry(3, deploy(env=prod)))")

    assert isinstance(node, Combinator)
    assert node.kind is Kind.AND
    retry = node.children[1]
    assert isinstance(retry, Combinator)
    assert retry.kind is Kind.RETRY
    assert retry.count == 3
    assert retry.children == (ActionRef("deploy", kwargs=(("env", "prod"),)),)


def test_slash_retry_and_timeout() -> None:
    assert parse("flux.retry/3/deploy") == Combinator(Kind.RETRY, (ActionRef("deploy"),), count=3)
    assert parse("flux.timeout/2/wait/10") == Combinator(
        Kind.TIMEOUT, (ActionRef("wait", ("10",)),), seconds=2.0
    )


def test_timeout_without_seconds_uses_default() -> None:
    node = parse("flux.timeout/deploy")
    assert isinstance(node, Combinator)
    assert node.seconds is None
    assert node.children == (ActionRef("deploy"),)


def test_duplicate_children_are_kept() -> None:
    node = parse("and(poll, poll, poll)")
    assert isinstance(node, Combinator)
    assert len(node.children) == 3


def test_quoted_arguments_may_hold_the_delimiter() -> None:
    assert parse('echo("a,b", c)') == ActionRef("echo", ("a,b", "c"))


def test_custom_delimiter() -> None:
    node = parse("and(a;b)", delimiter=";")
    assert node == Combinator(Kind.AND, (ActionRef("a"), ActionRef("b")))


def test_aliases_and_prefix_spellings() -> None:
    assert parse("all(a, b)").kind is Kind.AND  # type: ignore[union-attr]
    assert parse("any(a, b)").kind is Kind.OR  # type: ignore[union-attr]
    assert parse("mux(a, b)").kind is Kind.JOIN  # type: ignore[union-attr]
    assert parse("flux.if.then(a, b)").kind is Kind.IF_THEN  # type: ignore[union-attr]
    assert parse("flux.loop.until/check").kind is Kind.LOOP_UNTIL  # type: ignore[union-attr]


def test_sugar_rewrites_to_core_nodes() -> None:
    assert parse("try_except(t, x)") == Combinator(
        Kind.TRY_EXCEPT_FINALLY, (ActionRef("t"), ActionRef("x"), NOOP)
    )
    assert parse("try_finally(t, f)") == Combinator(
        Kind.TRY_EXCEPT_FINALLY, (ActionRef("t"), NOOP, ActionRef("f"))
    )
    assert parse("do_when(deploy, ready)") == Combinator(
        Kind.IF_THEN, (ActionRef("ready"), ActionRef("deploy"))
    )
    assert parse("do_unless(deploy, frozen)") == Combinator(
        Kind.IF_THEN, (Combinator(Kind.NOT, (ActionRef("frozen"),)), ActionRef("deploy"))
    )


def test_colon_forms() -> None:
    assert parse("flux.wrap/a:b") == Combinator(Kind.AND, (ActionRef("a"), ActionRef("b")))
    assert parse("flux.column/gen:upper") == Combinator(
        Kind.PIPELINE, (ActionRef("gen"), ActionRef("upper"))
    )


def test_slash_fixed_arity_keeps_the_remainder() -> None:
    node = parse("flux.if.then/check,and(a,b)")
    assert node == Combinator(
        Kind.IF_THEN,
        (ActionRef("check"), Combinator(Kind.AND, (ActionRef("a"), ActionRef("b")))),
    )


def test_stage_forms() -> None:
    assert parse("flux.stage.enter/build") == Combinator(Kind.STAGE_ENTER, stage="build")
    assert parse("stage(build)") == Combinator(Kind.STAGE_ENTER, stage="build")
    wrap = parse("flux.stage.wrap/build/compile,package")
    assert wrap == Combinator(
        Kind.STAGE_WRAP, (ActionRef("compile"), ActionRef("package")), stage="build"
    )


def test_map_collects_values() -> None:
    node = parse("map(deploy, eu, us)")
    assert node == Combinator(Kind.MAP, (ActionRef("deploy"),), values=("eu", "us"))


@pytest.mark.parametrize(
    "text",
    [
        "",
        "and(a, b",
        "and(a))",
        "and()",
        "and(a, , b)",
        "retry(0, a)",
        "retry(-1, a)",
        "retry(x, a)",
        "delay(inf, a)",
        "timeout(nan, a)",
        "not(a, b)",
        "if_then_else(a, b)",
        "flux.and",
        "echo(\"unterminated)",
        "a(b)c(d)",
        "map(and(a, b), x)",
        "each(and(a, b))",
        "starmap(or(a, b), list)",
        "context_manager(a)",
        "with_ctx(a, db, x, y)",
        "stage_enter(bad name)",
        "stage_wrap(../escape, a)",
        "flux.stage.exit/..",
    ],
)
def test_malformed_expressions_are_rejected(text: str) -> None:
    with pytest.raises(ExpressionError):
        parse(text)


def test_render_output_parses_back_to_the_same_tree() -> None:
    node = parse('and(retry(3, deploy(env=prod)), timeout(1.5, echo("a,b")), stage_wrap(s, x))')
    assert parse(render(node)) == node


def test_parse_all_sequences_several_expressions() -> None:
    assert parse_all(["a"]) == ActionRef("a")
    assert parse_all(["a", "b"]) == Combinator(Kind.AND, (ActionRef("a"), ActionRef("b")))
    with pytest.raises(ExpressionError):
        parse_all([])


def test_action_refs_walks_the_tree() -> None:
    node = parse("and(a, or(b, not(c)), retry(2, d))")
    assert [r.name for r in action_refs(node)] == ["a", "b", "c", "d"]


def test_is_combinator_name() -> None:
    assert is_combinator_name("flux.and")
    assert is_combinator_name("stage.wrap")
    assert not is_combinator_name("deploy")


def test_split_top_ignores_nested_and_quoted_separators() -> None:
    assert split_top('a, f(b, c), "d, e"', ",") == ["a", " f(b, c)", ' "d, e"']
    assert split_top("a,b,c", ",", maxsplit=1) == ["a", "b,c"]


def test_stream_and_fan_out_forms() -> None:
    assert parse("flux.each/flux.echo") == Combinator(Kind.EACH, (ActionRef("flux.echo"),))
    assert parse("starmap(deploy, regions)") == Combinator(
        Kind.PIPELINE, (ActionRef("regions"), Combinator(Kind.EACH, (ActionRef("deploy"),)))
    )
    fork = Combinator(Kind.FORK, (ActionRef("jq"), ActionRef("yq")))
    assert parse("flux.pipe.fork/jq,yq") == fork
    assert parse("split(jq, yq)") == fork


def test_loop_forever_forms() -> None:
    expected = Combinator(Kind.LOOP_FOREVER, (ActionRef("poll"),))
    assert parse("flux.loopf/poll") == expected
    assert parse("loop_forever(poll)") == expected


def test_context_manager_wraps_the_target_in_enter_and_exit() -> None:
    expected = Combinator(
        Kind.AND,
        (
            ActionRef("db.enter", ("prod",)),
            Combinator(
                Kind.TRY_EXCEPT_FINALLY,
                (ActionRef("migrate"), NOOP, ActionRef("db.exit", ("prod",))),
            ),
        ),
    )
    assert parse("context_manager(migrate, db, prod)") == expected
    assert parse("flux.with.ctx/migrate,db,prod") == expected


def test_apply_binds_arguments_to_an_action() -> None:
    assert parse("apply(deploy, eu)") == ActionRef("deploy", ("eu",))
    assert parse("flux.apply/deploy") == ActionRef("deploy")


def test_new_forms_render_back_to_the_same_tree() -> None:
    node = parse("and(each(say), pipe_fork(a, b), loopf(poll), starmap(say, list))")
    assert parse(render(node)) == node
