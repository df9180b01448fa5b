"""VC simplifier: satisfiability-preserving rewriting of predicates.

Rules (applied bottom-up, repeated to a fixpoint so :func:`simplify` is
idempotent):

  - constant folding for arithmetic, comparisons and ``min``/``max``/``abs``
    (``/`` and ``%`` truncate toward zero; division by zero is never
    folded)
  - ``true && P → P``, ``false || P → P``, absorbing ``false``/``true``
  - flattening of nested ``&&``/``||``, duplicate removal, ``P && !P → false``
  - ``!!P → P``, ``!(a < b) → a >= b`` (and the other comparisons)
  - ``A ==> (B ==> C) → (A && B) ==> C``, ``true ==> P → P``
  - ``x + 0``, ``x - 0``, ``x * 1``, ``x * 0``, ``x / 1``, ``x % 1``
  - reflexive comparisons (``x == x → true``, ``x < x → false``)

The simplifier never decides validity: anything beyond these local rewrites
is the solver's job.
"""

from __future__ import annotations

from collections.abc import Sequence

from .conditions import VerificationCondition
from .predicates import (
    FALSE,
    OLD,
    TRUE,
    And,
    BinOp,
    BoolConst,
    Call,
    Expr,
    Implies,
    IntConst,
    Neg,
    Not,
    Opaque,
    Or,
    Var,
    is_opaque,
    trunc_div,
    trunc_mod,
)
from .types import Sort

_MAX_ROUNDS = 64

_NEGATED = {"<": ">=", "<=": ">", ">": "<=", ">=": "<", "==": "!=", "!=": "=="}
_REFLEXIVE_TRUE = frozenset({"==", "<=", ">="})


def _fold_arith(op: str, a: int, b: int) -> int | None:
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        return None
    if op == "/":
        return trunc_div(a, b)
    if op == "%":
        return trunc_mod(a, b)
    return None


def _fold_compare(op: str, a: int | bool, b: int | bool) -> bool:
    if op == "<":
        return a < b
    if op == "<=":
        return a <= b
    if op == ">":
        return a > b
    if op == ">=":
        return a >= b
    if op == "==":
        return a == b
    return a != b


# ---------------------------------------------------------------------------
# Rewriting
# ---------------------------------------------------------------------------

def simplify(e: Expr) -> Expr:
    """Simplify *e* to a fixpoint.

    The result is logically equivalent to *e* (for every assignment of its
    variables) and ``simplify(simplify(e)) == simplify(e)``.
    """
    for _ in range(_MAX_ROUNDS):
        nxt = _step(e)
        if nxt == e:
            return nxt
        e = nxt
    return e


def _step(e: Expr) -> Expr:
    if isinstance(e, (Var, IntConst, BoolConst, Opaque)):
        return e
    if isinstance(e, BinOp):
        return _binop(e.op, _step(e.left), _step(e.right))
    if isinstance(e, Neg):
        return _neg(_step(e.operand))
    if isinstance(e, Not):
        return _not(_step(e.arg))
    if isinstance(e, And):
        return _and([_step(a) for a in e.args])
    if isinstance(e, Or):
        return _or([_step(a) for a in e.args])
    if isinstance(e, Implies):
        return _implies(_step(e.lhs), _step(e.rhs))
    if isinstance(e, Call):
        return _call(e.func, tuple(_step(a) for a in e.args))
    raise TypeError(f"Not an expression: {e!r}")


def _binop(op: str, left: Expr, right: Expr) -> Expr:
    if isinstance(left, IntConst) and isinstance(right, IntConst):
        if op in _NEGATED:
            return BoolConst(_fold_compare(op, left.value, right.value))
        folded = _fold_arith(op, left.value, right.value)
        if folded is not None:
            return IntConst(folded)
        return BinOp(op, left, right)

    if op in _NEGATED:
        if isinstance(left, BoolConst) and isinstance(right, BoolConst) and op in ("==", "!="):
            return BoolConst(_fold_compare(op, left.value, right.value))
        if left == right and not is_opaque(left):
            return BoolConst(op in _REFLEXIVE_TRUE)
        if op in ("==", "!=") and isinstance(right, BoolConst):
            return left if right.value == (op == "==") else _not(left)
        if op in ("==", "!=") and isinstance(left, BoolConst):
            return right if left.value == (op == "==") else _not(right)
        return BinOp(op, left, right)

    if op == "+":
        if right == IntConst(0):
            return left
        if left == IntConst(0):
            return right
    elif op == "-":
        if right == IntConst(0):
            return left
        if left == right and not is_opaque(left):
            return IntConst(0)
    elif op == "*":
        if right == IntConst(1):
            return left
        if left == IntConst(1):
            return right
        if IntConst(0) in (left, right):
            return IntConst(0)
    elif op == "/":
        if right == IntConst(1):
            return left
    elif op == "%":
        if right == IntConst(1):
            return IntConst(0)
    return BinOp(op, left, right)


def _neg(operand: Expr) -> Expr:
    if isinstance(operand, IntConst):
        return IntConst(-operand.value)
    if isinstance(operand, Neg):
        return operand.operand
    return Neg(operand)


def _not(arg: Expr) -> Expr:
    if isinstance(arg, BoolConst):
        return BoolConst(not arg.value)
    if isinstance(arg, Not):
        return arg.arg
    if isinstance(arg, BinOp) and arg.op in _NEGATED:
        return BinOp(_NEGATED[arg.op], arg.left, arg.right)
    return Not(arg)


def _complementary(args: Sequence[Expr]) -> bool:
    present = set(args)
    return any(isinstance(a, Not) and a.arg in present for a in args)


def _and(args: list[Expr]) -> Expr:
    flat: list[Expr] = []
    for a in args:
        parts = a.args if isinstance(a, And) else (a,)
        for p in parts:
            if p == FALSE:
                return FALSE
            if p == TRUE or p in flat:
                continue
            flat.append(p)
    if _complementary(flat):
        return FALSE
    if not flat:
        return TRUE
    if len(flat) == 1:
        return flat[0]
    return And(tuple(flat))


def _or(args: list[Expr]) -> Expr:
    flat: list[Expr] = []
    for a in args:
        parts = a.args if isinstance(a, Or) else (a,)
        for p in parts:
            if p == TRUE:
                return TRUE
            if p == FALSE or p in flat:
                continue
            flat.append(p)
    if _complementary(flat):
        return TRUE
    if not flat:
        return FALSE
    if len(flat) == 1:
        return flat[0]
    return Or(tuple(flat))


def _implies(lhs: Expr, rhs: Expr) -> Expr:
    if lhs == TRUE:
        return rhs
    if lhs == FALSE or rhs == TRUE:
        return TRUE
    if rhs == FALSE:
        return _not(lhs)
    if isinstance(rhs, Implies):
        return _implies(_and([lhs, rhs.lhs]), rhs.rhs)
    if lhs == rhs:
        return TRUE
    if isinstance(lhs, And) and rhs in lhs.args:
        return TRUE
    return Implies(lhs, rhs)


def _call(func: str, args: tuple[Expr, ...]) -> Expr:
    if func == OLD and len(args) == 1 and isinstance(args[0], (IntConst, BoolConst)):
        return args[0]
    values = [a.value for a in args if isinstance(a, IntConst)]
    if args and len(values) == len(args):
        if func == "min" and len(values) >= 2:
            return IntConst(min(values))
        if func == "max" and len(values) >= 2:
            return IntConst(max(values))
        if func == "abs" and len(values) == 1:
            return IntConst(abs(values[0]))
    return Call(func, args)


# ---------------------------------------------------------------------------
# Conditions
# ---------------------------------------------------------------------------

def simplify_condition(vc: VerificationCondition) -> Expr:
    """Simplified formula of *vc*; the condition itself is left untouched."""
    return simplify(vc.formula)


GroupKey = tuple[Expr, tuple[tuple[str, Sort], ...]]


def group_conditions(
    conditions: Sequence[VerificationCondition],
    simplified: Sequence[Expr] | None = None,
) -> dict[GroupKey, list[int]]:
    """Group conditions whose simplified formulas are structurally identical.

    Args:
        conditions: The conditions to group.
        simplified: Their simplified formulas (computed when omitted).

    Returns:
        ``{(formula, sorts): [indices into conditions]}`` in order of first
        appearance.  Conditions with ``error`` set are left out; they never
        reach the solver.
    """
    if simplified is None:
        simplified = [simplify_condition(vc) for vc in conditions]
    groups: dict[GroupKey, list[int]] = {}
    for i, (vc, formula) in enumerate(zip(conditions, simplified)):
        if vc.error is not None:
            continue
        groups.setdefault((formula, vc.sorts), []).append(i)
    return groups
