"""Diagnostics and the per-function verdict.

The reporter turns the results of all verification conditions of one
function into a single :class:`FunctionReport`:

  - ``verified``      every condition proved and every loop annotated
  - ``failed``        at least one condition refuted
  - ``inconclusive``  nothing refuted, but some condition is unknown, a loop
    invariant is missing, or the function could not be analysed at all

Every condition generated is accounted for: a report never has fewer (or
more) results than conditions.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

from .conditions import Outcome, VCResult, VerificationCondition, format_counterexample
from .syntax import Span


class Severity(Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class DiagnosticKind(Enum):
    MISSING_INVARIANT = "missing-invariant"
    MISSING_POSTCONDITION = "missing-postcondition"
    UNREACHABLE_CODE = "unreachable-code"
    STRUCTURAL_ERROR = "structural-error"


@dataclass(frozen=True)
class Diagnostic:
    """A non-VC finding about a function (builder warnings and errors)."""

    kind: DiagnosticKind
    severity: Severity
    message: str
    span: Span | None = None

    def __str__(self) -> str:
        where = f"{self.span}: " if self.span else ""
        return f"{where}{self.severity.value}: {self.message} [{self.kind.value}]"

    def to_json(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "severity": self.severity.value,
            "message": self.message,
            "span": self.span.to_json() if self.span else None,
        }


class Verdict(Enum):
    VERIFIED = "verified"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


class ReportError(Exception):
    """Raised when results do not line up with the conditions they answer."""


# Diagnostics that prevent a function from being reported as verified.
_BLOCKING = frozenset({DiagnosticKind.MISSING_INVARIANT, DiagnosticKind.STRUCTURAL_ERROR})


@dataclass(frozen=True)
class FunctionReport:
    """Aggregate verification result for one function.

    Attributes:
        function_name: The function.
        verdict: Verified, failed or inconclusive.
        results: One result per generated condition, in generation order.
        diagnostics: Builder diagnostics (missing invariants, ...).
        solver_time_ms: Total solver time over all conditions.
    """

    function_name: str
    verdict: Verdict
    results: tuple[VCResult, ...] = ()
    diagnostics: tuple[Diagnostic, ...] = ()
    solver_time_ms: float = 0.0

    @property
    def verified(self) -> bool:
        """``True`` iff the verdict is :attr:`Verdict.VERIFIED`."""
        return self.verdict is Verdict.VERIFIED

    @property
    def failures(self) -> tuple[VCResult, ...]:
        return tuple(r for r in self.results if r.refuted)

    @property
    def unknowns(self) -> tuple[VCResult, ...]:
        return tuple(r for r in self.results if r.unknown)

    def count(self, outcome: Outcome) -> int:
        return sum(1 for r in self.results if r.outcome is outcome)

    def has_diagnostic(self, kind: DiagnosticKind) -> bool:
        return any(d.kind is kind for d in self.diagnostics)

    def __str__(self) -> str:
        tag = {"verified": "Q.E.D.", "failed": "FAILED", "inconclusive": "?"}[self.verdict.value]
        proved = self.count(Outcome.PROVED)
        out = f"[{tag}] {self.function_name} ({proved}/{len(self.results)} conditions proved)"
        if self.failures:
            first = self.failures[0]
            out += f" — {restate(first)}"
        return out

    def explain(self) -> str:
        """Multi-line human-readable account of every failure, unknown and
        diagnostic."""
        lines = [str(self)]
        for r in self.failures:
            lines.append(f"  refuted: {restate(r)}")
        for r in self.unknowns:
            lines.append(f"  unknown: {restate(r)}")
        for d in self.diagnostics:
            lines.append(f"  {d}")
        return "\n".join(lines)

    def to_json(self) -> dict[str, Any]:
        """Serialize the report to a JSON-compatible dict.

        Returns:
            A dict that can be passed directly to ``json.dumps()``.
        """
        return {
            "function_name": self.function_name,
            "verdict": self.verdict.value,
            "results": [r.to_json() for r in self.results],
            "diagnostics": [d.to_json() for d in self.diagnostics],
            "solver_time_ms": self.solver_time_ms,
        }


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------

def aggregate(
    function_name: str,
    conditions: Sequence[VerificationCondition],
    results: Sequence[VCResult],
    diagnostics: Sequence[Diagnostic] = (),
) -> FunctionReport:
    """Combine per-condition results into a :class:`FunctionReport`.

    Args:
        function_name: The function the conditions belong to.
        conditions: Every condition generated for the function.
        results: The result for each condition, in the same order.
        diagnostics: Builder diagnostics for the function.

    Returns:
        The aggregate report.

    Raises:
        ReportError: If *results* does not answer exactly *conditions*.
    """
    if len(results) != len(conditions):
        raise ReportError(
            f"{function_name}: {len(conditions)} condition(s) generated but"
            f" {len(results)} result(s) received"
        )
    for i, (vc, r) in enumerate(zip(conditions, results)):
        if r.condition is not vc and r.condition != vc:
            raise ReportError(f"{function_name}: result {i} answers a different condition")

    if any(r.refuted for r in results):
        verdict = Verdict.FAILED
    elif any(r.unknown for r in results) or any(d.kind in _BLOCKING for d in diagnostics):
        verdict = Verdict.INCONCLUSIVE
    else:
        verdict = Verdict.VERIFIED

    return FunctionReport(
        function_name=function_name,
        verdict=verdict,
        results=tuple(results),
        diagnostics=tuple(diagnostics),
        solver_time_ms=sum(r.solver_time_ms for r in results),
    )


def restate(result: VCResult) -> str:
    """One-line restatement of a result: where, what, and why."""
    vc = result.condition
    where = f"{vc.span}: " if vc.span else ""
    what = vc.description or f"{vc.kind.value} condition {vc.formula}"
    out = f"{where}{what}"
    if result.counterexample:
        out += f"; counterexample: {format_counterexample(result.counterexample)}"
    elif result.reason:
        out += f" ({result.reason})"
    return out
