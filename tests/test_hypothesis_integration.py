"""Tests for wpcheck.hypothesis: strategies and concrete falsification."""

from __future__ import annotations

import pytest

from wpcheck.builder import build_cfg
from wpcheck.conditions import ConditionKind, Outcome, VCResult, VerificationCondition
from wpcheck.frontend import function_from_source, parse_predicate
from wpcheck.hypothesis import (
    HypothesisResult,
    from_counterexample,
    from_sort,
    from_type,
    hypothesis_check,
    hypothesis_fallback,
)
from wpcheck.predicates import BinOp, IntConst, Opaque
from wpcheck.types import Sort
from wpcheck.wp import generate_vcs

P = parse_predicate

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _draw_sample(strategy: object, n: int = 50) -> list[object]:
    """Draw *n* samples from a Hypothesis strategy."""
    from hypothesis import HealthCheck, given, settings

    results: list[object] = []

    @settings(max_examples=n, suppress_health_check=list(HealthCheck), deadline=None)
    @given(strategy)  # type: ignore[arg-type]
    def _collect(x: object) -> None:
        results.append(x)

    _collect()
    return results


def _vc(text: str, sorts: tuple[tuple[str, Sort], ...] = (("x", Sort.INT),), **kwargs) -> VerificationCondition:  # type: ignore[no-untyped-def]
    return VerificationCondition("f", ConditionKind.ASSERTION, P(text), sorts=sorts, **kwargs)


# ---------------------------------------------------------------------------
# Value strategies
# ---------------------------------------------------------------------------


class TestFromType:
    def test_unsigned_is_non_negative(self) -> None:
        samples = _draw_sample(from_type("u32"), 100)
        assert all(isinstance(x, int) for x in samples)
        assert all(x >= 0 for x in samples), samples  # type: ignore[operator]

    def test_signed_reaches_negatives(self) -> None:
        samples = _draw_sample(from_type("i64"), 200)
        assert any(x < 0 for x in samples)  # type: ignore[operator]

    def test_bool(self) -> None:
        samples = _draw_sample(from_type("bool"), 50)
        assert set(samples) <= {True, False}

    def test_reference_types_are_stripped(self) -> None:
        samples = _draw_sample(from_type("&u8"), 50)
        assert all(x >= 0 for x in samples)  # type: ignore[operator]

    @pytest.mark.parametrize("type_name", ["f64", "Vec<i32>"])
    def test_unsupported(self, type_name: str) -> None:
        with pytest.raises(TypeError, match="Unsupported type"):
            from_type(type_name)

    def test_from_sort(self) -> None:
        assert all(isinstance(x, bool) for x in _draw_sample(from_sort(Sort.BOOL), 20))
        assert all(type(x) is int for x in _draw_sample(from_sort(Sort.INT), 20))


# ---------------------------------------------------------------------------
# hypothesis_check
# ---------------------------------------------------------------------------


class TestHypothesisCheck:
    def test_valid_condition_passes(self) -> None:
        result = hypothesis_check(_vc("x > 0 ==> x >= 1"), max_examples=200)
        assert isinstance(result, HypothesisResult)
        assert result.passed
        assert result.counterexample is None
        assert result.examples_run > 0

    def test_invalid_condition_is_falsified(self) -> None:
        result = hypothesis_check(_vc("x != 0"), max_examples=200)
        assert not result.passed
        assert result.counterexample == {"x": 0}

    def test_pre_state_is_drawn_separately(self) -> None:
        result = hypothesis_check(_vc("x == old(x)"), max_examples=200)
        assert not result.passed
        assert result.counterexample is not None
        assert result.counterexample["x"] != result.counterexample["old(x)"]

    def test_boolean_variables(self) -> None:
        result = hypothesis_check(_vc("b || !b", sorts=(("b", Sort.BOOL),)), max_examples=50)
        assert result.passed

    def test_division_by_zero_is_skipped(self) -> None:
        result = hypothesis_check(_vc("x / y * y + x % y == x", sorts=()), max_examples=200)
        assert result.passed

    def test_generated_condition(self) -> None:
        cfg = build_cfg(function_from_source("""
            def dec(x: i32):
                post("y > x")
                y = x - 1
        """))
        (vc,) = generate_vcs(cfg)
        assert not hypothesis_check(vc, max_examples=50).passed

    def test_opaque_is_rejected(self) -> None:
        vc = VerificationCondition("f", ConditionKind.ASSERTION, BinOp(">", Opaque("v.len()"), IntConst(0)))
        with pytest.raises(ValueError, match="opaque"):
            hypothesis_check(vc)

    def test_uninterpreted_call_is_rejected(self) -> None:
        with pytest.raises(ValueError, match="uninterpreted"):
            hypothesis_check(_vc("f(x) > 0"))


# ---------------------------------------------------------------------------
# Counterexamples and fallback
# ---------------------------------------------------------------------------


class TestFromCounterexample:
    def test_keeps_program_variables_only(self) -> None:
        ce = {"x": 1, "y": -2, "x#2": 5, "old(x)": 0, "now()": 3}
        result = VCResult(_vc("x > 1"), Outcome.REFUTED, counterexample=ce)
        assert from_counterexample(result) == {"x": 1, "y": -2}

    def test_requires_counterexample(self) -> None:
        result = VCResult(_vc("x > 1"), Outcome.PROVED)
        with pytest.raises(ValueError, match="no counterexample"):
            from_counterexample(result)


class TestFallback:
    def test_runs_on_unknown(self) -> None:
        result = VCResult(_vc("x != 0"), Outcome.UNKNOWN, reason="timeout")
        fallback = hypothesis_fallback(result, max_examples=100)
        assert fallback is not None
        assert not fallback.passed

    def test_skips_decided_results(self) -> None:
        assert hypothesis_fallback(VCResult(_vc("x != 0"), Outcome.REFUTED)) is None
        assert hypothesis_fallback(VCResult(_vc("x == x"), Outcome.PROVED)) is None

    def test_skips_missing_invariant(self) -> None:
        result = VCResult(_vc("x != 0", assumes_missing_invariant=True), Outcome.UNKNOWN)
        assert hypothesis_fallback(result) is None

    def test_skips_unevaluable(self) -> None:
        vc = VerificationCondition("f", ConditionKind.ASSERTION, BinOp(">", Opaque("a[0]"), IntConst(0)))
        assert hypothesis_fallback(VCResult(vc, Outcome.UNKNOWN)) is None
