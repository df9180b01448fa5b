"""Bridge between wpcheck's solver-based checking and Hypothesis.

Install: pip install wpcheck[hypothesis]

This module provides:
- ``from_sort`` / ``from_type``: value strategies for sorts and Rust types
- ``expressions`` / ``predicates``: strategies drawing random predicate trees
- ``from_counterexample``: the input values of a refuted condition
- ``hypothesis_check``: search a condition for a concrete falsifying example
- ``hypothesis_fallback``: run that search on a condition the solver left
  unknown

All hypothesis imports are lazy so this module is importable without
hypothesis installed (raises ImportError with an install hint on use).
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from typing import Any

from .conditions import VCResult, VerificationCondition
from .predicates import (
    OLD,
    And,
    BinOp,
    BoolConst,
    Call,
    EvaluationError,
    Expr,
    Implies,
    IntConst,
    Neg,
    Not,
    Opaque,
    Or,
    Var,
    evaluate,
    free_vars,
    mentions_old,
    walk,
)
from .types import Sort, is_float, is_unsigned, sort_of_type

_EVALUABLE_CALLS = frozenset({OLD, "min", "max", "abs"})


def _require_hypothesis() -> Any:
    """Import and return hypothesis.strategies, raising a helpful error if missing."""
    try:
        from hypothesis import strategies

        return strategies
    except ImportError as exc:
        raise ImportError(
            "hypothesis is required for this feature. "
            "Install it with: pip install wpcheck[hypothesis]"
        ) from exc


# ---------------------------------------------------------------------------
# Value strategies
# ---------------------------------------------------------------------------


def from_sort(sort: Sort) -> Any:
    """Strategy drawing values of *sort* (unbounded ints or booleans)."""
    st = _require_hypothesis()
    if sort is Sort.BOOL:
        return st.booleans()
    return st.integers()


def from_type(type_name: str | None) -> Any:
    """Build a Hypothesis strategy from a Rust scalar type name.

    Unsigned types draw non-negative integers, matching the refinement a
    parameter of that type contributes at function entry.

    Args:
        type_name: ``"i32"``, ``"u64"``, ``"bool"``, ... (``None``: ``int``).

    Returns:
        A ``hypothesis.strategies`` strategy.

    Raises:
        TypeError: For floating-point and non-scalar types.
        ImportError: If hypothesis is not installed.

    Example::

        strategy = from_type("u32")
        # Draws integers >= 0
    """
    st = _require_hypothesis()
    sort = sort_of_type(type_name)
    if is_float(type_name) or sort is None:
        raise TypeError(f"Unsupported type for from_type: {type_name!r}. Supported: integer types and bool.")
    if is_unsigned(type_name):
        return st.integers(min_value=0)
    return from_sort(sort)


# ---------------------------------------------------------------------------
# Expression strategies
# ---------------------------------------------------------------------------


def expressions(variables: Sequence[str] = ("x", "y", "z"), max_leaves: int = 12) -> Any:
    """Strategy drawing integer-valued expression trees over *variables*.

    Divisors are always non-zero constants, so every drawn expression has a
    concrete value under every assignment.
    """
    st = _require_hypothesis()
    leaves = st.one_of(
        st.sampled_from(list(variables)).map(Var),
        st.integers(min_value=-8, max_value=8).map(IntConst),
    )
    divisors = st.one_of(
        st.integers(min_value=1, max_value=5),
        st.integers(min_value=-5, max_value=-1),
    ).map(IntConst)

    def extend(children: Any) -> Any:
        return st.one_of(
            st.builds(BinOp, st.sampled_from(["+", "-", "*"]), children, children),
            st.builds(BinOp, st.sampled_from(["/", "%"]), children, divisors),
            st.builds(Neg, children),
            st.builds(lambda f, a, b: Call(f, (a, b)), st.sampled_from(["min", "max"]), children, children),
            st.builds(lambda a: Call("abs", (a,)), children),
        )

    return st.recursive(leaves, extend, max_leaves=max_leaves)


def predicates(variables: Sequence[str] = ("x", "y", "z"), max_leaves: int = 10) -> Any:
    """Strategy drawing boolean formulas over integer *variables*.

    Atoms are comparisons between :func:`expressions` and boolean
    constants; the connectives are ``!``, ``&&``, ``||`` and ``==>``.  Drawn
    conjunctions and disjunctions always have at least two arguments.
    """
    st = _require_hypothesis()
    terms = expressions(variables, max_leaves=4)
    atoms = st.one_of(
        st.builds(BinOp, st.sampled_from(["<", "<=", ">", ">=", "==", "!="]), terms, terms),
        st.booleans().map(BoolConst),
    )

    def extend(children: Any) -> Any:
        return st.one_of(
            st.builds(Not, children),
            st.lists(children, min_size=2, max_size=3).map(lambda xs: And(tuple(xs))),
            st.lists(children, min_size=2, max_size=3).map(lambda xs: Or(tuple(xs))),
            st.builds(Implies, children, children),
        )

    return st.recursive(atoms, extend, max_leaves=max_leaves)


# ---------------------------------------------------------------------------
# from_counterexample
# ---------------------------------------------------------------------------


def _is_input(name: str) -> bool:
    return "#" not in name and not name.startswith(f"{OLD}(") and not name.endswith("()")


def from_counterexample(result: VCResult) -> dict[str, Any]:
    """Extract the program-variable values from a refuted condition.

    Args:
        result: A :class:`~wpcheck.conditions.VCResult` with
            ``outcome == Outcome.REFUTED``.

    Returns:
        The counterexample with solver-internal names removed: fresh havoc
        variables (``x#2``), pre-state constants (``old(x)``) and values of
        uninterpreted calls.

    Raises:
        ValueError: If the result has no counterexample.

    Example::

        ce = from_counterexample(report.failures[0])
        # ce == {"x": 0, "y": -1}
    """
    if result.counterexample is None:
        raise ValueError(
            f"Result for '{result.condition.function_name}' has no counterexample "
            f"(outcome: {result.outcome.value}). "
            "Pass a refuted result."
        )
    return {k: v for k, v in result.counterexample.items() if _is_input(k)}


# ---------------------------------------------------------------------------
# HypothesisResult + hypothesis_check
# ---------------------------------------------------------------------------


@dataclass
class HypothesisResult:
    """Result of a Hypothesis search for a falsifying assignment.

    Attributes:
        passed: ``True`` if no counterexample was found.
        counterexample: The falsifying assignment (``old(x)`` keys hold
            pre-state values), or ``None`` if the search passed.
        examples_run: Number of examples Hypothesis executed.
    """

    passed: bool
    counterexample: dict[str, Any] | None
    examples_run: int


def _check_evaluable(formula: Expr) -> None:
    for node in walk(formula):
        if isinstance(node, Opaque):
            raise ValueError(f"Cannot evaluate opaque expression: {node.text}")
        if isinstance(node, Call) and node.func not in _EVALUABLE_CALLS:
            raise ValueError(f"Cannot evaluate uninterpreted function: {node.func}")


def hypothesis_check(condition: VerificationCondition, max_examples: int = 1000) -> HypothesisResult:
    """Search for an assignment that falsifies *condition*.

    Values are drawn per variable from the condition's sort table; when the
    formula mentions ``old(...)`` the pre-state is drawn independently.
    Assignments that divide by zero are skipped.  A passing search is
    evidence, not proof.

    Args:
        condition: The condition to test.
        max_examples: Maximum number of Hypothesis examples to run (default 1000).

    Returns:
        :class:`HypothesisResult` with ``passed``, ``counterexample``, and
        ``examples_run``.

    Raises:
        ValueError: If the formula contains opaque expressions or
            uninterpreted functions.
        ImportError: If hypothesis is not installed.
    """
    st = _require_hypothesis()
    from hypothesis import HealthCheck, assume, given, settings

    formula = condition.formula
    _check_evaluable(formula)

    sorts = dict(condition.sorts)
    names = sorted(free_vars(formula))

    def strategy_for(name: str) -> Any:
        return from_sort(sorts.get(name, sorts.get(name.split("#", 1)[0], Sort.INT)))

    state = st.fixed_dictionaries({n: strategy_for(n) for n in names})
    pre_state = state if mentions_old(formula) else st.none()

    counter: dict[str, int] = {"n": 0}
    found: dict[str, Any | None] = {"ce": None}

    # suppress_health_check=list(HealthCheck) allows this to be called
    # from within a pytest test (suppresses nested_given, differing_executors).
    @settings(
        max_examples=max_examples,
        suppress_health_check=list(HealthCheck),
        deadline=None,
    )
    @given(env=state, pre_env=pre_state)
    def _test(env: dict[str, Any], pre_env: dict[str, Any] | None) -> None:
        counter["n"] += 1
        try:
            holds = evaluate(formula, env, pre_env)
        except EvaluationError:
            assume(False)
            return
        if not holds:
            ce = dict(env)
            for k, v in (pre_env or {}).items():
                ce[f"{OLD}({k})"] = v
            found["ce"] = ce
            raise AssertionError(f"Condition falsified: {ce}")

    try:
        _test()
    except AssertionError:
        pass

    ce = found["ce"]
    return HypothesisResult(
        passed=ce is None,
        counterexample=ce,
        examples_run=counter["n"],
    )


def hypothesis_fallback(result: VCResult, max_examples: int = 1000) -> HypothesisResult | None:
    """Search for a concrete counterexample to a condition the solver left unknown.

    Returns:
        The :class:`HypothesisResult`, or ``None`` when *result* is not
        unknown, when its formula cannot be evaluated concretely, or when
        the condition assumes a missing loop invariant (any assignment
        found there could be unreachable).
    """
    if not result.unknown or result.condition.assumes_missing_invariant:
        return None
    try:
        _check_evaluable(result.condition.formula)
    except ValueError:
        return None
    return hypothesis_check(result.condition, max_examples=max_examples)
