"""Tests for wpcheck.frontend: Python-syntax functions and Rust-syntax predicates."""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from wpcheck import syntax
from wpcheck.frontend import (
    ParseError,
    function_from_callable,
    function_from_source,
    functions_from_source,
    load_external_contracts,
    parse_expression,
    parse_external_contracts,
    parse_predicate,
)
from wpcheck.predicates import (
    FALSE,
    TRUE,
    And,
    BinOp,
    Call,
    Implies,
    IntConst,
    Neg,
    Not,
    Opaque,
    Or,
    Var,
)

x, y = Var("x"), Var("y")


# ---------------------------------------------------------------------------
# Predicates in Rust syntax
# ---------------------------------------------------------------------------


class TestParsePredicate:
    def test_comparison(self) -> None:
        assert parse_predicate("x > 0") == BinOp(">", x, IntConst(0))

    def test_rust_connectives(self) -> None:
        p = parse_predicate("x > 0 && !(y == 0) || false")
        assert p == Or((And((BinOp(">", x, IntConst(0)), Not(BinOp("==", y, IntConst(0))))), FALSE))

    def test_not_equal_is_not_negation(self) -> None:
        assert parse_predicate("x != 0") == BinOp("!=", x, IntConst(0))

    def test_leading_negation(self) -> None:
        assert parse_predicate("!(x < 0)") == Not(BinOp("<", x, IntConst(0)))
        assert parse_predicate("  !!(x < 0)") == Not(Not(BinOp("<", x, IntConst(0))))

    def test_negation_binds_tighter_than_comparison(self) -> None:
        a, b = Var("a"), Var("b")
        assert parse_predicate("a == !b") == BinOp("==", a, Not(b))
        assert parse_predicate("!a && b") == And((Not(a), b))

    def test_true_literal(self) -> None:
        assert parse_predicate("true") == TRUE

    def test_implication_is_right_associative(self) -> None:
        a, b, c = Var("a"), Var("b"), Var("c")
        assert parse_predicate("a ==> b ==> c") == Implies(a, Implies(b, c))

    def test_implication_binds_loosest(self) -> None:
        p = parse_predicate("x > 0 && y > 0 ==> x + y > 0")
        assert isinstance(p, Implies)
        assert isinstance(p.lhs, And)

    def test_nested_implication(self) -> None:
        p = parse_predicate("(x > 0 ==> y > 0) && y < 10")
        assert isinstance(p, And)
        assert isinstance(p.args[0], Implies)

    def test_chained_comparison(self) -> None:
        assert parse_predicate("0 <= x < 10") == And((
            BinOp("<=", IntConst(0), x),
            BinOp("<", x, IntConst(10)),
        ))

    def test_old_and_builtins(self) -> None:
        p = parse_predicate("x == old(x) + abs(y)")
        assert p == BinOp("==", x, BinOp("+", Call("old", (x,)), Call("abs", (y,))))

    def test_power_expands(self) -> None:
        assert parse_expression("x ** 2") == BinOp("*", x, x)
        assert parse_expression("x ** 0") == IntConst(1)

    def test_large_power_is_opaque(self) -> None:
        assert isinstance(parse_expression("x ** 10"), Opaque)

    def test_division(self) -> None:
        assert parse_expression("x / 2") == BinOp("/", x, IntConst(2))
        assert parse_expression("x // 2") == BinOp("/", x, IntConst(2))

    def test_negative_literal(self) -> None:
        assert parse_expression("-3") == IntConst(-3)
        assert parse_expression("-x") == Neg(x)

    def test_method_call_is_opaque(self) -> None:
        e = parse_expression("v.len() > 0")
        assert isinstance(e, BinOp)
        assert isinstance(e.left, Opaque)
        assert e.left.reads == {"v"}

    def test_float_literal_is_opaque(self) -> None:
        assert isinstance(parse_expression("1.5"), Opaque)

    def test_syntax_error(self) -> None:
        with pytest.raises(ParseError, match="cannot parse"):
            parse_predicate("x >")


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------


class TestFunctionFromSource:
    def test_signature_and_contracts(self) -> None:
        fn = function_from_source("""
            def inc(x: i32) -> i32:
                pre("x > 0")
                post("result > x")
                return x + 1
        """)
        assert fn.name == "inc"
        assert fn.params == (syntax.Param("x", "i32"),)
        assert fn.return_type == "i32"
        assert [c.predicate for c in fn.preconditions] == [BinOp(">", x, IntConst(0))]
        assert fn.postcondition is not None
        assert fn.postcondition.predicate == BinOp(">", Var("result"), x)
        assert fn.body == (syntax.Return(BinOp("+", x, IntConst(1)), fn.body[0].span),)  # type: ignore[attr-defined]

    def test_string_annotations(self) -> None:
        fn = function_from_source("""
            def f(n: "u32", flag: "bool") -> "u64":
                return n
        """)
        assert [p.type_name for p in fn.params] == ["u32", "bool"]
        assert fn.return_type == "u64"

    def test_python_expression_clauses(self) -> None:
        fn = function_from_source("""
            def f(x):
                pre(x >= 0 and x < 10)
                return x
        """)
        assert isinstance(fn.preconditions[0].predicate, And)

    def test_multiple_posts_are_conjoined(self) -> None:
        fn = function_from_source("""
            def f(x):
                post("result >= 0")
                post("result >= x")
                return x
        """)
        assert fn.postcondition is not None
        assert isinstance(fn.postcondition.predicate, And)
        assert len(fn.postcondition.predicate.args) == 2

    def test_spans(self) -> None:
        fn = function_from_source("def f(x):\n    pre('x > 0')\n    return x\n")
        assert fn.span is not None and fn.span.line == 1
        assert fn.preconditions[0].span is not None
        assert fn.preconditions[0].span.line == 2

    def test_docstring_is_skipped(self) -> None:
        fn = function_from_source('''
            def f(x):
                """Identity."""
                return x
        ''')
        assert len(fn.body) == 1
        assert isinstance(fn.body[0], syntax.Return)

    def test_assignments(self) -> None:
        fn = function_from_source("""
            def f(x):
                y = x + 1
                z: "u32" = 0
                y += 2
                w: "i64"
        """)
        a, b, c, d = fn.body
        assert isinstance(a, syntax.Assign) and a.target == "y" and a.type_name is None
        assert isinstance(b, syntax.Assign) and b.type_name == "u32"
        assert isinstance(c, syntax.Assign) and c.value == BinOp("+", Var("y"), IntConst(2))
        assert isinstance(d, syntax.Assign) and d.value is None and d.type_name == "i64"

    def test_if_elif_else(self) -> None:
        fn = function_from_source("""
            def f(x):
                if x > 0:
                    y = 1
                elif x < 0:
                    y = -1
                else:
                    y = 0
        """)
        (stmt,) = fn.body
        assert isinstance(stmt, syntax.If)
        (inner,) = stmt.else_body
        assert isinstance(inner, syntax.If)
        assert len(inner.else_body) == 1

    def test_while_with_leading_invariant(self) -> None:
        fn = function_from_source("""
            def f(n):
                i = 0
                while i < n:
                    invariant("i <= n")
                    i = i + 1
        """)
        loop = fn.body[1]
        assert isinstance(loop, syntax.While)
        assert loop.invariant is not None
        assert loop.invariant.predicate == BinOp("<=", Var("i"), Var("n"))
        assert len(loop.body) == 1

    def test_invariant_before_loop(self) -> None:
        fn = function_from_source("""
            def f(n):
                i = 0
                invariant("i <= n")
                invariant("i >= 0")
                while i < n:
                    i = i + 1
        """)
        loop = fn.body[1]
        assert isinstance(loop, syntax.While)
        assert loop.invariant is not None
        assert isinstance(loop.invariant.predicate, And)

    def test_for_range(self) -> None:
        fn = function_from_source("""
            def f(n):
                s = 0
                for i in range(n):
                    s = s + i
                for j in range(2, n):
                    s = s + j
        """)
        first, second = fn.body[1], fn.body[2]
        assert isinstance(first, syntax.ForRange)
        assert first.variable == "i"
        assert first.start == IntConst(0)
        assert first.stop == Var("n")
        assert isinstance(second, syntax.ForRange)
        assert second.start == IntConst(2)

    def test_for_over_non_range_is_unsupported(self) -> None:
        fn = function_from_source("""
            def f(v):
                for e in v:
                    pass
        """)
        assert isinstance(fn.body[0], syntax.Unsupported)

    def test_panics(self) -> None:
        fn = function_from_source("""
            def f(x):
                if x < 0:
                    panic("negative")
                if x > 100:
                    raise ValueError("too big")
                unreachable()
        """)
        first, second, third = fn.body
        assert isinstance(first, syntax.If) and isinstance(first.then_body[0], syntax.Panic)
        assert isinstance(second, syntax.If) and isinstance(second.then_body[0], syntax.Panic)
        assert isinstance(third, syntax.Panic)

    def test_calls(self) -> None:
        fn = function_from_source("""
            def f(x, v):
                log(x)
                y = g(x)
                v.push(y)
                z = min(x, y)
        """)
        a, b, c, d = fn.body
        assert a == syntax.CallStmt("log", (x,), None, None, a.span)  # type: ignore[attr-defined]
        assert isinstance(b, syntax.CallStmt) and b.result == "y" and b.function == "g"
        assert isinstance(c, syntax.CallStmt) and c.receiver == "v" and c.function == "push"
        # min is a logical function, so this is an ordinary assignment.
        assert isinstance(d, syntax.Assign) and d.value == Call("min", (x, Var("y")))

    def test_typed_call_result_is_declared_first(self) -> None:
        fn = function_from_source("""
            def f(x):
                y: "u32" = g(x)
        """)
        decl, call = fn.body
        assert isinstance(decl, syntax.Assign) and decl.value is None and decl.type_name == "u32"
        assert isinstance(call, syntax.CallStmt) and call.result == "y"

    def test_unsupported_statements(self) -> None:
        fn = function_from_source("""
            def f(x):
                with open(x) as fh:
                    pass
                while x > 0:
                    x = x - 1
                else:
                    x = 0
                if x > 0:
                    pre("x > 0")
                invariant("x > 0")
                x = 1
        """)
        kinds = [type(s).__name__ for s in fn.body]
        assert kinds[0] == "Unsupported"
        assert kinds[1] == "Unsupported"
        nested = fn.body[2]
        assert isinstance(nested, syntax.If)
        assert isinstance(nested.then_body[0], syntax.Unsupported)
        assert isinstance(fn.body[3], syntax.Unsupported)
        assert "not followed by a loop" in fn.body[3].description  # type: ignore[attr-defined]

    def test_malformed_clause(self) -> None:
        fn = function_from_source("""
            def f(x):
                pre("x > 0", "x < 2")
                return x
        """)
        assert fn.preconditions == ()
        first = fn.body[0]
        assert isinstance(first, syntax.Unsupported)
        assert "exactly one predicate" in first.description

    def test_bad_predicate_string_reports_location(self) -> None:
        fn = function_from_source("def f(x):\n    return x\n    post('x >')\n")
        assert fn.postcondition is None
        first = fn.body[0]
        assert isinstance(first, syntax.Unsupported)
        assert first.description.startswith("post(): cannot parse expression")
        assert first.span is not None
        assert first.span.line == 3

    def test_bad_invariant_is_local_to_its_function(self) -> None:
        fns = functions_from_source("""
            def bad(n):
                while n > 0:
                    invariant("n >")
                    n = n - 1

            def good(x):
                return x
        """)
        assert [f.name for f in fns] == ["bad", "good"]
        assert isinstance(fns[0].body[0], syntax.Unsupported)
        assert not any(isinstance(s, syntax.Unsupported) for s in fns[1].body)

    def test_invalid_source(self) -> None:
        with pytest.raises(ParseError, match="invalid source"):
            function_from_source("def f(:\n")

    def test_select_by_name(self) -> None:
        src = "def a(x):\n    return x\n\ndef b(y):\n    return y\n"
        assert function_from_source(src, "b").name == "b"
        assert [f.name for f in functions_from_source(src)] == ["a", "b"]

    def test_missing_function(self) -> None:
        with pytest.raises(ParseError, match="no function 'c'"):
            function_from_source("def a(x):\n    return x\n", "c")


class TestFunctionFromCallable:
    def test_live_function(self) -> None:
        def clamp_low(x: i32) -> i32:  # noqa: F821
            pre("x > -100")  # noqa: F821
            post("result >= 0")  # noqa: F821
            if x < 0:
                return 0
            return x

        fn = function_from_callable(clamp_low)
        assert fn.name == "clamp_low"
        assert fn.params == (syntax.Param("x", "i32"),)
        assert len(fn.preconditions) == 1

    def test_builtin_has_no_source(self) -> None:
        with pytest.raises(ParseError, match="cannot read source"):
            function_from_callable(len)


# ---------------------------------------------------------------------------
# External contracts
# ---------------------------------------------------------------------------


_CONTRACTS = {
    "externalMethods": [
        {
            "name": "push",
            "preconditions": ["self < 100"],
            "postconditions": ["self == old(self) + 1"],
        },
        {
            "name": "inc",
            "params": ["a"],
            "preconditions": ["a >= 0"],
            "postconditions": ["result == a + 1"],
        },
    ]
}


class TestExternalContracts:
    def test_from_mapping(self) -> None:
        contracts = parse_external_contracts(_CONTRACTS)
        assert set(contracts) == {"push", "inc"}
        push = contracts["push"]
        assert push.params == ()
        assert push.preconditions == (BinOp("<", Var("self"), IntConst(100)),)
        assert contracts["inc"].params == ("a",)

    def test_from_json_text(self) -> None:
        contracts = parse_external_contracts(json.dumps(_CONTRACTS))
        assert contracts["inc"].postconditions == (
            BinOp("==", Var("result"), BinOp("+", Var("a"), IntConst(1))),
        )

    def test_load_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "conditions.json"
        path.write_text(json.dumps(_CONTRACTS), encoding="utf-8")
        assert set(load_external_contracts(path)) == {"push", "inc"}

    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ParseError, match="cannot read"):
            load_external_contracts(tmp_path / "nope.json")

    @pytest.mark.parametrize(
        "doc",
        [
            "{not json",
            {"methods": []},
            {"externalMethods": [{"preconditions": []}]},
            {"externalMethods": ["push"]},
        ],
    )
    def test_malformed(self, doc: object) -> None:
        with pytest.raises(ParseError):
            parse_external_contracts(doc)  # type: ignore[arg-type]

    def test_bad_predicate_names_contract(self) -> None:
        doc = {"externalMethods": [{"name": "f", "preconditions": ["x >"]}]}
        with pytest.raises(ParseError, match="contract of 'f'"):
            parse_external_contracts(doc)
