"""Typed function AST: the input contract of the verifier.

Whatever parses the source language hands the core one :class:`Function` per
function to verify.  Statements use the same :mod:`~wpcheck.predicates`
expressions as the contracts, so ``pre``/``post``/``invariant`` clauses and
ordinary code share one representation.

Constructs:

  - ``Assign``: ``let x: T = e`` / ``x = e`` (``value=None``: declared, unset)
  - ``Assert``: ``assert!(p)``
  - ``CallStmt``: a call evaluated for its effect, ``f(a)`` or ``v.push(a)``,
    optionally binding its result (``x = f(a)``)
  - ``If``, ``While``, ``ForRange`` (``for v in a..b``)
  - ``Return``, ``Panic``
  - ``Unsupported``: a statement the parser could not map; the CFG builder
    rejects the function with a structural error
"""

from __future__ import annotations

from dataclasses import dataclass

from .predicates import Expr


@dataclass(frozen=True)
class Span:
    """Source location (1-based line, 0-based column)."""

    line: int
    column: int = 0
    end_line: int | None = None
    end_column: int | None = None

    def __str__(self) -> str:
        return f"{self.line}:{self.column}"

    def to_json(self) -> dict[str, int | None]:
        return {
            "line": self.line,
            "column": self.column,
            "end_line": self.end_line,
            "end_column": self.end_column,
        }


@dataclass(frozen=True)
class Clause:
    """A specification predicate together with where it was written."""

    predicate: Expr
    span: Span | None = None


@dataclass(frozen=True)
class Param:
    name: str
    type_name: str | None = None


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

class Stmt:
    """Base class of all statements."""

    __slots__ = ()


@dataclass(frozen=True)
class Assign(Stmt):
    target: str
    value: Expr | None
    type_name: str | None = None
    span: Span | None = None


@dataclass(frozen=True)
class Assert(Stmt):
    condition: Expr
    span: Span | None = None


@dataclass(frozen=True)
class CallStmt(Stmt):
    """A call executed for its effect.

    Attributes:
        function: Callee name (method name for method calls).
        args: Argument expressions.
        receiver: Variable the method is called on; it may be modified.
        result: Variable the call's result is bound to, if any.
    """

    function: str
    args: tuple[Expr, ...] = ()
    receiver: str | None = None
    result: str | None = None
    span: Span | None = None


@dataclass(frozen=True)
class If(Stmt):
    condition: Expr
    then_body: tuple[Stmt, ...]
    else_body: tuple[Stmt, ...] = ()
    span: Span | None = None


@dataclass(frozen=True)
class While(Stmt):
    condition: Expr
    body: tuple[Stmt, ...]
    invariant: Clause | None = None
    span: Span | None = None


@dataclass(frozen=True)
class ForRange(Stmt):
    """``for variable in start..stop { body }``."""

    variable: str
    start: Expr
    stop: Expr
    body: tuple[Stmt, ...]
    invariant: Clause | None = None
    span: Span | None = None


@dataclass(frozen=True)
class Return(Stmt):
    value: Expr | None = None
    span: Span | None = None


@dataclass(frozen=True)
class Panic(Stmt):
    message: str = ""
    span: Span | None = None


@dataclass(frozen=True)
class Unsupported(Stmt):
    description: str
    span: Span | None = None


# ---------------------------------------------------------------------------
# Functions
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Function:
    """One function to verify.

    Attributes:
        name: Function name.
        params: Parameters with their declared types.
        body: Top-level statements.
        preconditions: Zero or more ``pre`` clauses (conjoined).
        postcondition: Optional ``post`` clause; may mention ``result`` and
            ``old(x)``.
        return_type: Declared return type (sort of ``result``).
        span: Location of the function header.
    """

    name: str
    params: tuple[Param, ...] = ()
    body: tuple[Stmt, ...] = ()
    preconditions: tuple[Clause, ...] = ()
    postcondition: Clause | None = None
    return_type: str | None = None
    span: Span | None = None
