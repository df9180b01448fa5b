"""Verification conditions and per-condition results."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .predicates import Expr
from .syntax import Span
from .types import Sort


class ConditionKind(Enum):
    """What a verification condition establishes."""

    POSTCONDITION = "postcondition"
    LOOP_INITIATION = "loop-initiation"
    LOOP_PRESERVATION = "loop-preservation"
    LOOP_USE = "loop-use"
    ASSERTION = "assertion"
    CALL_PRECONDITION = "call-precondition"
    PANIC_FREEDOM = "panic-freedom"


class Outcome(Enum):
    """Solver verdict for one condition."""

    PROVED = "proved"
    REFUTED = "refuted"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class VerificationCondition:
    """A formula whose validity discharges one proof obligation.

    Attributes:
        function_name: Function the condition was generated for.
        kind: The obligation it encodes.
        formula: Predicate that must be valid (true for all variable values).
        span: Source location of the construct the obligation belongs to.
        description: Human-readable statement of the obligation.
        sorts: Sorts of the variables the formula mentions.
        error: Set when the formula could not be produced faithfully; the
            condition then resolves to ``Unknown`` without a solver call.
        assumes_missing_invariant: Set when the condition starts from a loop
            whose invariant was not written; a counterexample to it is not
            conclusive and resolves to ``Unknown``.
    """

    function_name: str
    kind: ConditionKind
    formula: Expr
    span: Span | None = None
    description: str = ""
    sorts: tuple[tuple[str, Sort], ...] = ()
    error: str | None = None
    assumes_missing_invariant: bool = False

    def sort_env(self) -> dict[str, Sort]:
        return dict(self.sorts)

    def __str__(self) -> str:
        where = f" at {self.span}" if self.span else ""
        return f"{self.kind.value}{where}: {self.formula}"

    def to_json(self) -> dict[str, Any]:
        return {
            "function_name": self.function_name,
            "kind": self.kind.value,
            "formula": str(self.formula),
            "span": self.span.to_json() if self.span else None,
            "description": self.description,
            "error": self.error,
            "assumes_missing_invariant": self.assumes_missing_invariant,
        }


def sorts_for(names: frozenset[str] | set[str], env: Mapping[str, Sort]) -> tuple[tuple[str, Sort], ...]:
    """Sort table restricted to *names*, in a stable order.

    Fresh variables introduced for havocs (``x#3``) take the sort of ``x``.
    """
    table: list[tuple[str, Sort]] = []
    for name in sorted(names):
        base = name.split("#", 1)[0]
        table.append((name, env.get(name, env.get(base, Sort.INT))))
    return tuple(table)


@dataclass(frozen=True)
class VCResult:
    """Outcome of discharging one :class:`VerificationCondition`.

    Attributes:
        condition: The original condition (kept for provenance).
        outcome: Proved, refuted or unknown.
        simplified: The formula actually sent to the solver.
        counterexample: Variable values falsifying the condition
            (refuted only).
        reason: Why the outcome is unknown, or a note.
        solver_time_ms: Wall-clock time spent in the solver.
    """

    condition: VerificationCondition
    outcome: Outcome
    simplified: Expr | None = None
    counterexample: dict[str, Any] | None = None
    reason: str = ""
    solver_time_ms: float = 0.0

    @property
    def proved(self) -> bool:
        return self.outcome is Outcome.PROVED

    @property
    def refuted(self) -> bool:
        return self.outcome is Outcome.REFUTED

    @property
    def unknown(self) -> bool:
        return self.outcome is Outcome.UNKNOWN

    def __str__(self) -> str:
        tag = {"proved": "Q.E.D.", "refuted": "REFUTED", "unknown": "?"}[self.outcome.value]
        out = f"[{tag}] {self.condition.kind.value}"
        if self.condition.span:
            out += f" at {self.condition.span}"
        if self.counterexample:
            out += f" — counterexample: {format_counterexample(self.counterexample)}"
        if self.reason:
            out += f" ({self.reason})"
        return out

    def to_json(self) -> dict[str, Any]:
        ce: dict[str, Any] | None = None
        if self.counterexample is not None:
            ce = {}
            for k, v in self.counterexample.items():
                if isinstance(v, (int, float, bool, str, type(None))):
                    ce[k] = v
                else:
                    ce[k] = str(v)
        return {
            "condition": self.condition.to_json(),
            "outcome": self.outcome.value,
            "simplified": str(self.simplified) if self.simplified is not None else None,
            "counterexample": ce,
            "reason": self.reason,
            "solver_time_ms": self.solver_time_ms,
        }


def format_counterexample(ce: Mapping[str, Any]) -> str:
    return ", ".join(f"{k} = {_fmt(v)}" for k, v in sorted(ce.items()))


def _fmt(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)
