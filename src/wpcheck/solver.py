"""Solver adapter: discharge verification conditions.

A condition is *valid* when its negation is unsatisfiable:

  - ``unsat``   → :attr:`~wpcheck.conditions.Outcome.PROVED`
  - ``sat``     → :attr:`~wpcheck.conditions.Outcome.REFUTED` with the model as
    counterexample
  - ``unknown`` (timeout, incomplete theory) → ``UNKNOWN``

The backend is pluggable (:class:`SolverBackend`); :class:`Z3Backend` is the
default.  Each Z3 query builds its terms in a fresh ``z3.Context`` so queries
are isolated from one another and may run on worker threads.

Failures are scoped to one condition: a translation error, a solver
exception or a timeout resolves that condition to ``UNKNOWN`` and never
touches its siblings.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Any, Protocol

import z3

from .conditions import Outcome, VCResult, VerificationCondition, format_counterexample
from .predicates import TRUE, Expr
from .simplifier import GroupKey, group_conditions, simplify_condition
from .translator import TranslationError, Translator
from .types import Sort

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SolverAnswer:
    """A backend's answer for one formula.

    Attributes:
        outcome: Proved (valid), refuted (a counterexample exists) or unknown.
        counterexample: Variable values falsifying the formula (refuted only).
        reason: Why the answer is unknown.
        solver_time_ms: Wall-clock time of the query.
    """

    outcome: Outcome
    counterexample: dict[str, Any] | None = None
    reason: str = ""
    solver_time_ms: float = 0.0


class SolverBackend(Protocol):
    """Anything that can decide validity of a predicate."""

    def check_validity(self, formula: Expr, sorts: Mapping[str, Sort], timeout_ms: int) -> SolverAnswer:
        ...


# ---------------------------------------------------------------------------
# Z3
# ---------------------------------------------------------------------------

class Z3Backend:
    """Validity checking with Z3, one fresh context per query."""

    name = "z3"

    def check_validity(self, formula: Expr, sorts: Mapping[str, Sort], timeout_ms: int) -> SolverAnswer:
        ctx = z3.Context()
        translator = Translator(sorts, ctx)
        try:
            goal = translator.translate_formula(formula)
            s = z3.Solver(ctx=ctx)
            s.set("timeout", timeout_ms)
            s.add(z3.Not(goal, ctx))
        except TranslationError as e:
            return SolverAnswer(Outcome.UNKNOWN, reason=f"translation error: {e}")
        except z3.Z3Exception as e:
            return SolverAnswer(Outcome.UNKNOWN, reason=f"solver error: {e}")

        t0 = time.monotonic()
        try:
            check = s.check()
        except z3.Z3Exception as e:
            elapsed = (time.monotonic() - t0) * 1000
            return SolverAnswer(Outcome.UNKNOWN, reason=f"solver error: {e}", solver_time_ms=elapsed)
        elapsed = (time.monotonic() - t0) * 1000

        if check == z3.unsat:
            return SolverAnswer(Outcome.PROVED, solver_time_ms=elapsed)
        if check == z3.sat:
            ce = _extract_counterexample(s.model(), translator.variables)
            return SolverAnswer(Outcome.REFUTED, counterexample=ce, solver_time_ms=elapsed)
        reason = s.reason_unknown() or "unknown"
        if reason in ("timeout", "canceled"):
            reason = f"timeout after {timeout_ms}ms"
        return SolverAnswer(Outcome.UNKNOWN, reason=f"Z3 returned unknown ({reason})", solver_time_ms=elapsed)


def _extract_counterexample(model: Any, variables: Mapping[str, Any]) -> dict[str, Any]:
    """Extract human-readable counterexample from a Z3 model."""
    ce: dict[str, Any] = {}
    for name in sorted(variables):
        val = model.eval(variables[name], model_completion=True)
        ce[name] = _z3_val_to_python(val)
    return ce


def _z3_val_to_python(val: Any) -> int | bool | str:
    """Convert a Z3 value to a Python scalar."""
    try:
        if z3.is_int_value(val):
            return val.as_long()
        if z3.is_true(val):
            return True
        if z3.is_false(val):
            return False
    except (AttributeError, ValueError, ArithmeticError, OverflowError):
        pass
    return str(val)


# ---------------------------------------------------------------------------
# Discharging a batch
# ---------------------------------------------------------------------------

def _ask(backend: SolverBackend, formula: Expr, sorts: Mapping[str, Sort], timeout_ms: int) -> SolverAnswer:
    if formula == TRUE:
        return SolverAnswer(Outcome.PROVED)
    try:
        return backend.check_validity(formula, sorts, timeout_ms)
    except Exception as e:
        logger.warning("solver backend failed on %s: %s", formula, e)
        return SolverAnswer(Outcome.UNKNOWN, reason=f"solver error: {e}")


def _result(vc: VerificationCondition, simplified: Expr, answer: SolverAnswer, time_ms: float) -> VCResult:
    if answer.outcome is Outcome.REFUTED and vc.assumes_missing_invariant:
        ce = format_counterexample(answer.counterexample or {})
        return VCResult(
            vc, Outcome.UNKNOWN, simplified,
            reason=f"counterexample relies on a missing loop invariant ({ce})",
            solver_time_ms=time_ms,
        )
    return VCResult(vc, answer.outcome, simplified, answer.counterexample, answer.reason, time_ms)


def discharge(
    conditions: Sequence[VerificationCondition],
    backend: SolverBackend | None = None,
    timeout_ms: int = 5000,
    workers: int = 1,
    simplify: bool = True,
) -> list[VCResult]:
    """Decide every condition.

    Conditions are simplified first; conditions whose simplified formulas
    are identical are sent to the solver once and share the answer.

    Args:
        conditions: The conditions to discharge.
        backend: The solver (default: a :class:`Z3Backend`).
        timeout_ms: Per-query solver deadline.
        workers: Number of queries run concurrently (``1``: sequential).
        simplify: Whether to simplify formulas before solving.

    Returns:
        One :class:`~wpcheck.conditions.VCResult` per condition, in the same
        order as *conditions*.
    """
    backend = backend or Z3Backend()
    simplified = [simplify_condition(vc) if simplify else vc.formula for vc in conditions]
    results: list[VCResult | None] = [None] * len(conditions)

    for i, vc in enumerate(conditions):
        if vc.error is not None:
            results[i] = VCResult(vc, Outcome.UNKNOWN, None, reason=f"could not generate condition: {vc.error}")

    groups = group_conditions(conditions, simplified)
    if len(groups) < sum(len(v) for v in groups.values()):
        logger.debug("%d condition(s) share %d distinct formula(s)", sum(len(v) for v in groups.values()), len(groups))

    def fan_out(key: GroupKey, answer: SolverAnswer) -> None:
        for n, i in enumerate(groups[key]):
            res = _result(conditions[i], key[0], answer, answer.solver_time_ms if n == 0 else 0.0)
            results[i] = res
            logger.debug("%s: %s", conditions[i].function_name, res)

    if workers > 1 and len(groups) > 1:
        with ThreadPoolExecutor(max_workers=workers) as pool:
            futures = {
                pool.submit(_ask, backend, key[0], dict(key[1]), timeout_ms): key
                for key in groups
            }
            for future in as_completed(futures):
                fan_out(futures[future], future.result())
    else:
        for key in groups:
            fan_out(key, _ask(backend, key[0], dict(key[1]), timeout_ms))

    missing = [i for i, r in enumerate(results) if r is None]
    if missing:
        raise RuntimeError(f"conditions {missing} were not discharged")
    return [r for r in results if r is not None]
