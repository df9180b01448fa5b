"""Tests for wpcheck.wp: weakest preconditions and condition generation."""

from __future__ import annotations

from wpcheck.builder import ExternalContract, build_cfg
from wpcheck.cfg import Assert, Assign, Assume, Havoc
from wpcheck.conditions import ConditionKind
from wpcheck.frontend import function_from_source, parse_predicate
from wpcheck.predicates import (
    TRUE,
    And,
    BinOp,
    Implies,
    IntConst,
    Var,
    free_vars,
    mentions_old,
)
from wpcheck.simplifier import simplify
from wpcheck.wp import WPTransformer, generate_vcs

x, y = Var("x"), Var("y")
P = parse_predicate


def _transformer(source: str, panic_is_failure: bool = True, contracts=None) -> WPTransformer:  # type: ignore[no-untyped-def]
    return WPTransformer(build_cfg(function_from_source(source), contracts), panic_is_failure)


def _vcs(source: str, panic_is_failure: bool = True, contracts=None):  # type: ignore[no-untyped-def]
    return generate_vcs(build_cfg(function_from_source(source), contracts), panic_is_failure)


_SUM = """
    def sum_to(n: i32):
        pre("n >= 0")
        post("sum == n * (n - 1) / 2")
        i = 0
        sum = 0
        while i < n:
            invariant("sum == i * (i - 1) / 2 && i <= n")
            sum = sum + i
            i = i + 1
"""


# ---------------------------------------------------------------------------
# Statement rules
# ---------------------------------------------------------------------------


class TestStatementRules:
    def _wp(self, statements, post):  # type: ignore[no-untyped-def]
        return _transformer("def f(x):\n    return x\n").wp_statements(tuple(statements), post)

    def test_assign_substitutes(self) -> None:
        post = BinOp(">", y, IntConst(0))
        assert self._wp([Assign("y", BinOp("+", x, IntConst(1)))], post) == BinOp(
            ">", BinOp("+", x, IntConst(1)), IntConst(0)
        )

    def test_sequence_is_backward(self) -> None:
        stmts = [Assign("y", x), Assign("x", IntConst(3))]
        # x is overwritten after y reads it: y keeps the old x.
        assert self._wp(stmts, BinOp("==", y, x)) == BinOp("==", x, IntConst(3))

    def test_havoc_introduces_fresh_variable(self) -> None:
        out = self._wp([Havoc("y"), Havoc("y")], BinOp(">", y, IntConst(0)))
        (name,) = free_vars(out)
        assert name.startswith("y#")

    def test_havoc_names_are_distinct(self) -> None:
        t = _transformer("def f(x):\n    return x\n")
        a = t.wp_statements((Havoc("y"),), y)
        b = t.wp_statements((Havoc("y"),), y)
        assert a != b

    def test_assume_is_implication(self) -> None:
        out = self._wp([Assume(P("x > 0"))], P("x >= 0"))
        assert out == Implies(P("x > 0"), P("x >= 0"))

    def test_assert_is_conjunction(self) -> None:
        out = self._wp([Assert(P("x > 0"))], P("x >= 0"))
        assert out == And((P("x > 0"), P("x >= 0")))


# ---------------------------------------------------------------------------
# Whole functions
# ---------------------------------------------------------------------------


class TestStraightLine:
    SRC = """
        def inc(x: i32) -> i32:
            pre("x > 0")
            post("y > 0")
            y = x + 1
    """

    def test_single_postcondition_condition(self) -> None:
        (vc,) = _vcs(self.SRC)
        assert vc.kind is ConditionKind.POSTCONDITION
        assert vc.function_name == "inc"
        assert vc.formula == Implies(P("x > 0"), P("x + 1 > 0"))

    def test_matches_entry_obligation(self) -> None:
        t = _transformer(self.SRC)
        (vc,) = t.generate()
        assert vc.formula == t.entry_obligation()

    def test_sorts_cover_free_variables(self) -> None:
        (vc,) = _vcs(self.SRC)
        assert {name for name, _ in vc.sorts} == free_vars(vc.formula)

    def test_description_and_span(self) -> None:
        (vc,) = _vcs(self.SRC)
        assert "postcondition y > 0" in vc.description
        assert vc.span is not None

    def test_no_precondition_means_no_implication(self) -> None:
        (vc,) = _vcs("""
            def f(x):
                post("result == x")
                return x
        """)
        assert vc.formula == BinOp("==", x, x)


class TestBranches:
    def test_guards_become_implications(self) -> None:
        (vc,) = _vcs("""
            def my_abs(x: i32) -> i32:
                post("result >= 0")
                if x >= 0:
                    return x
                else:
                    return -x
        """)
        assert vc.formula == And((
            Implies(P("x >= 0"), P("x >= 0")),
            Implies(P("!(x >= 0)"), P("-x >= 0")),
        ))

    def test_old_resolved_at_entry(self) -> None:
        (vc,) = _vcs("""
            def bump(x: i32) -> i32:
                post("result == old(x) + 1")
                x = x + 1
                return x
        """)
        assert not mentions_old(vc.formula)
        assert simplify(vc.formula) == TRUE


class TestAssertionsAndPanics:
    SRC = """
        def f(x: i32) -> i32:
            post("result > 0")
            assert x > 0
            if x > 100:
                panic("too big")
            return x
    """

    def test_one_condition_per_obligation(self) -> None:
        kinds = [vc.kind for vc in _vcs(self.SRC)]
        assert sorted(k.value for k in kinds) == ["assertion", "panic-freedom", "postcondition"]

    def test_other_assertions_are_assumed(self) -> None:
        post = next(vc for vc in _vcs(self.SRC) if vc.kind is ConditionKind.POSTCONDITION)
        assert isinstance(post.formula, Implies)
        assert post.formula.lhs == P("x > 0")

    def test_panic_site_is_false(self) -> None:
        panic = next(vc for vc in _vcs(self.SRC) if vc.kind is ConditionKind.PANIC_FREEDOM)
        assert simplify(panic.formula) == P("x > 0 ==> x <= 100")
        assert panic.span is not None and panic.span.line == 6

    def test_panics_allowed(self) -> None:
        kinds = [vc.kind for vc in _vcs(self.SRC, panic_is_failure=False)]
        assert ConditionKind.PANIC_FREEDOM not in kinds

    def test_call_precondition(self) -> None:
        contract = ExternalContract("g", preconditions=(P("a > 0"),), params=("a",))
        vcs = _vcs("""
            def f(x: i32):
                pre("x > 1")
                g(x - 1)
        """, contracts={"g": contract})
        (call,) = [vc for vc in vcs if vc.kind is ConditionKind.CALL_PRECONDITION]
        assert simplify(call.formula) == Implies(P("x > 1"), P("x - 1 > 0"))
        assert "precondition a > 0 of 'g'" in call.description


class TestLoops:
    def test_three_loop_conditions(self) -> None:
        kinds = [vc.kind for vc in _vcs(_SUM)]
        assert kinds == [
            ConditionKind.LOOP_INITIATION,
            ConditionKind.LOOP_PRESERVATION,
            ConditionKind.LOOP_USE,
        ]

    def test_initiation(self) -> None:
        init = _vcs(_SUM)[0]
        assert init.formula == Implies(
            P("n >= 0"),
            P("0 == 0 * (0 - 1) / 2 && 0 <= n"),
        )

    def test_preservation(self) -> None:
        pres = _vcs(_SUM)[1]
        inv = P("sum == i * (i - 1) / 2 && i <= n")
        assert pres.formula == Implies(
            And((inv, P("i < n"))),
            P("sum + i == (i + 1) * ((i + 1) - 1) / 2 && i + 1 <= n"),
        )

    def test_use(self) -> None:
        use = _vcs(_SUM)[2]
        inv = P("sum == i * (i - 1) / 2 && i <= n")
        assert use.formula == Implies(And((inv, P("!(i < n)"))), P("sum == n * (n - 1) / 2"))

    def test_block_predicates_map_headers_to_invariants(self) -> None:
        t = _transformer(_SUM)
        table = t.block_predicates()
        (header,) = t.cfg.loop_headers
        assert table[header] == P("sum == i * (i - 1) / 2 && i <= n")
        assert set(table) == {b.id for b in t.cfg.blocks}

    def test_missing_invariant_flag(self) -> None:
        vcs = _vcs("""
            def f(n: i32):
                i = 0
                while i < n:
                    i = i + 1
        """)
        flags = [(vc.kind, vc.assumes_missing_invariant) for vc in vcs]
        assert flags == [
            (ConditionKind.LOOP_INITIATION, False),
            (ConditionKind.LOOP_PRESERVATION, True),
            (ConditionKind.LOOP_USE, True),
        ]

    def test_sequential_loops(self) -> None:
        vcs = _vcs("""
            def f(n: i32):
                post("j == n")
                i = 0
                while i < n:
                    invariant("i <= n || n < 0")
                    i = i + 1
                j = 0
                while j < n:
                    invariant("j <= n || n < 0")
                    j = j + 1
        """)
        kinds = [vc.kind for vc in vcs]
        # The second loop is entered from the first loop's exit.
        assert kinds.count(ConditionKind.LOOP_INITIATION) == 2
        assert kinds.count(ConditionKind.LOOP_PRESERVATION) == 2
        assert kinds.count(ConditionKind.LOOP_USE) == 1

    def test_nested_loops(self) -> None:
        vcs = _vcs("""
            def f(n: i32):
                i = 0
                while i < n:
                    invariant("i <= n")
                    j = 0
                    while j < i:
                        invariant("j <= i && i < n")
                        j = j + 1
                    i = i + 1
        """)
        kinds = [vc.kind for vc in vcs]
        assert kinds.count(ConditionKind.LOOP_INITIATION) == 2
        assert kinds.count(ConditionKind.LOOP_PRESERVATION) == 2
        # The outer loop exits to the end of the function: no postcondition,
        # so its exit yields a trivially true use condition.
        assert kinds.count(ConditionKind.LOOP_USE) == 1
