"""Expression / predicate model.

Program expressions and specification formulas share one representation:
the right-hand side of ``y = x + 1`` and the postcondition ``y > 0`` are both
:class:`Expr` trees.  Nodes are frozen dataclasses, so trees are immutable,
hashable and compared structurally; a predicate can be shared by any number
of verification conditions.

Supported fragment (quantifier-free integer arithmetic + booleans):

  - literals and variables:  ``IntConst``, ``BoolConst``, ``Var``
  - arithmetic:              ``+ - * / %`` (``BinOp``), unary ``-`` (``Neg``)
  - comparisons:             ``< <= > >= == !=`` (``BinOp``)
  - connectives:             ``And``, ``Or``, ``Not``, ``Implies``
  - pure logical functions:  ``Call``; ``old(e)`` is the pre-state value of
    ``e``; ``min``/``max``/``abs`` are interpreted; anything else is an
    uninterpreted function
  - ``Opaque``: a source expression the model cannot represent.  It survives
    every transformation and makes the enclosing condition unprovable
    (``Unknown``) instead of crashing anything.

The constructors :func:`conj`, :func:`disj`, :func:`negate` and
:func:`implies` are purely structural; all normalisation is the simplifier's
job.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass

from .types import Sort

OLD = "old"
INTERPRETED_FUNCTIONS = frozenset({"min", "max", "abs"})

ARITH_OPS = frozenset({"+", "-", "*", "/", "%"})
COMPARE_OPS = frozenset({"<", "<=", ">", ">=", "==", "!="})


class Expr:
    """Base class of all expression nodes."""

    __slots__ = ()

    def __str__(self) -> str:
        return _render(self, 0)


@dataclass(frozen=True)
class Var(Expr):
    name: str


@dataclass(frozen=True)
class IntConst(Expr):
    value: int


@dataclass(frozen=True)
class BoolConst(Expr):
    value: bool


@dataclass(frozen=True)
class BinOp(Expr):
    """Binary arithmetic operation or comparison."""

    op: str
    left: Expr
    right: Expr


@dataclass(frozen=True)
class Neg(Expr):
    operand: Expr


@dataclass(frozen=True)
class Not(Expr):
    arg: Expr


@dataclass(frozen=True)
class And(Expr):
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Or(Expr):
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Implies(Expr):
    lhs: Expr
    rhs: Expr


@dataclass(frozen=True)
class Call(Expr):
    """Application of a pure logical function."""

    func: str
    args: tuple[Expr, ...]


@dataclass(frozen=True)
class Opaque(Expr):
    """An expression outside the model.

    Attributes:
        text: Source rendering, kept for diagnostics.
        reads: Variables the expression depends on.  Substituting one of
            them records the substitution in ``text`` but keeps the node
            opaque.
    """

    text: str
    reads: frozenset[str] = frozenset()


#: Alias used where an expression is read as a logical formula.
Predicate = Expr

TRUE = BoolConst(True)
FALSE = BoolConst(False)


# ---------------------------------------------------------------------------
# Structural constructors
# ---------------------------------------------------------------------------

def const(value: int | bool) -> Expr:
    if isinstance(value, bool):
        return BoolConst(value)
    return IntConst(value)


def conj(*parts: Expr) -> Expr:
    """Conjunction of *parts*; ``true`` when empty, the part itself when single."""
    if not parts:
        return TRUE
    if len(parts) == 1:
        return parts[0]
    return And(tuple(parts))


def disj(*parts: Expr) -> Expr:
    """Disjunction of *parts*; ``false`` when empty, the part itself when single."""
    if not parts:
        return FALSE
    if len(parts) == 1:
        return parts[0]
    return Or(tuple(parts))


def negate(p: Expr) -> Expr:
    return Not(p)


def implies(lhs: Expr, rhs: Expr) -> Expr:
    return Implies(lhs, rhs)


def old(e: Expr) -> Expr:
    return Call(OLD, (e,))


# ---------------------------------------------------------------------------
# Traversal
# ---------------------------------------------------------------------------

def children(e: Expr) -> tuple[Expr, ...]:
    """Direct sub-expressions of *e*, left to right."""
    if isinstance(e, BinOp):
        return (e.left, e.right)
    if isinstance(e, Neg):
        return (e.operand,)
    if isinstance(e, Not):
        return (e.arg,)
    if isinstance(e, (And, Or)):
        return e.args
    if isinstance(e, Implies):
        return (e.lhs, e.rhs)
    if isinstance(e, Call):
        return e.args
    return ()


def walk(e: Expr) -> Iterator[Expr]:
    """Yield *e* and all its sub-expressions in pre-order."""
    stack = [e]
    while stack:
        node = stack.pop()
        yield node
        stack.extend(reversed(children(node)))


def free_vars(e: Expr) -> frozenset[str]:
    """Names of all variables occurring in *e*, including inside ``old(...)``
    and those read by opaque sub-expressions."""
    names: set[str] = set()
    for node in walk(e):
        if isinstance(node, Var):
            names.add(node.name)
        elif isinstance(node, Opaque):
            names.update(node.reads)
    return frozenset(names)


def is_opaque(e: Expr) -> bool:
    return any(isinstance(node, Opaque) for node in walk(e))


def mentions_old(e: Expr) -> bool:
    return any(isinstance(node, Call) and node.func == OLD for node in walk(e))


# ---------------------------------------------------------------------------
# Substitution
# ---------------------------------------------------------------------------

def substitute(e: Expr, mapping: Mapping[str, Expr]) -> Expr:
    """Simultaneously replace variables by expressions: ``e[x ↦ mapping[x]]``.

    ``old(...)`` terms denote the pre-state and are never rewritten.
    Unchanged sub-trees are returned as-is (shared, not copied).
    """
    if not mapping:
        return e
    return _subst(e, mapping)


def _subst(e: Expr, m: Mapping[str, Expr]) -> Expr:
    if isinstance(e, Var):
        return m.get(e.name, e)
    if isinstance(e, (IntConst, BoolConst)):
        return e
    if isinstance(e, BinOp):
        left, right = _subst(e.left, m), _subst(e.right, m)
        if left is e.left and right is e.right:
            return e
        return BinOp(e.op, left, right)
    if isinstance(e, Neg):
        operand = _subst(e.operand, m)
        return e if operand is e.operand else Neg(operand)
    if isinstance(e, Not):
        arg = _subst(e.arg, m)
        return e if arg is e.arg else Not(arg)
    if isinstance(e, (And, Or)):
        args = tuple(_subst(a, m) for a in e.args)
        if all(a is b for a, b in zip(args, e.args)):
            return e
        return type(e)(args)
    if isinstance(e, Implies):
        lhs, rhs = _subst(e.lhs, m), _subst(e.rhs, m)
        if lhs is e.lhs and rhs is e.rhs:
            return e
        return Implies(lhs, rhs)
    if isinstance(e, Call):
        if e.func == OLD:
            return e
        args = tuple(_subst(a, m) for a in e.args)
        if all(a is b for a, b in zip(args, e.args)):
            return e
        return Call(e.func, args)
    if isinstance(e, Opaque):
        hit = sorted(e.reads & m.keys())
        if not hit:
            return e
        reads = set(e.reads - set(hit))
        for name in hit:
            reads |= free_vars(m[name])
        bindings = ", ".join(f"{name} := {m[name]}" for name in hit)
        return Opaque(f"{e.text}[{bindings}]", frozenset(reads))
    raise TypeError(f"Not an expression: {e!r}")


def resolve_old(e: Expr) -> Expr:
    """Replace every ``old(x)`` by ``x``.

    Valid at function entry, where the pre-state is the current state.
    """
    if isinstance(e, Call) and e.func == OLD:
        return resolve_old(e.args[0]) if e.args else e
    kids = children(e)
    if not kids:
        return e
    new = tuple(resolve_old(k) for k in kids)
    if all(a is b for a, b in zip(new, kids)):
        return e
    return rebuild(e, new)


def rebuild(e: Expr, kids: tuple[Expr, ...]) -> Expr:
    """Return a node of the same shape as *e* with children *kids*."""
    if isinstance(e, BinOp):
        return BinOp(e.op, kids[0], kids[1])
    if isinstance(e, Neg):
        return Neg(kids[0])
    if isinstance(e, Not):
        return Not(kids[0])
    if isinstance(e, (And, Or)):
        return type(e)(tuple(kids))
    if isinstance(e, Implies):
        return Implies(kids[0], kids[1])
    if isinstance(e, Call):
        return Call(e.func, tuple(kids))
    return e


def replace_calls(e: Expr, func: str, fn: Callable[[Call], Expr]) -> Expr:
    """Rewrite every ``Call`` to *func* with ``fn(call)``."""
    if isinstance(e, Call) and e.func == func:
        return fn(e)
    kids = children(e)
    if not kids:
        return e
    new = tuple(replace_calls(k, func, fn) for k in kids)
    if all(a is b for a, b in zip(new, kids)):
        return e
    return rebuild(e, new)


# ---------------------------------------------------------------------------
# Concrete evaluation
# ---------------------------------------------------------------------------

class EvaluationError(Exception):
    """Raised when an expression has no concrete value (opaque or
    uninterpreted parts, unbound variables, division by zero)."""


def trunc_div(a: int, b: int) -> int:
    """Integer division rounding toward zero, as Rust's ``/`` does.

    ``trunc_div(-7, 2) == -3``, where Python's ``-7 // 2`` is ``-4``.

    Raises:
        ZeroDivisionError: If *b* is zero.
    """
    q = abs(a) // abs(b)
    return q if (a >= 0) == (b > 0) else -q


def trunc_mod(a: int, b: int) -> int:
    """Remainder of :func:`trunc_div`; it takes the sign of *a*."""
    return a - b * trunc_div(a, b)


def evaluate(
    e: Expr,
    env: Mapping[str, int | bool],
    pre_env: Mapping[str, int | bool] | None = None,
) -> int | bool:
    """Evaluate *e* under a variable assignment.

    Args:
        e: The expression.
        env: Values of the variables in the current state.
        pre_env: Values in the pre-state, read by ``old(...)`` (defaults to
            *env*).

    Raises:
        EvaluationError: If *e* has no concrete value.
    """
    if isinstance(e, Var):
        if e.name not in env:
            raise EvaluationError(f"unbound variable {e.name}")
        return env[e.name]
    if isinstance(e, (IntConst, BoolConst)):
        return e.value
    if isinstance(e, BinOp):
        a = evaluate(e.left, env, pre_env)
        b = evaluate(e.right, env, pre_env)
        if e.op == "+":
            return a + b
        if e.op == "-":
            return a - b
        if e.op == "*":
            return a * b
        if e.op in ("/", "%"):
            if b == 0:
                raise EvaluationError(f"division by zero in {e}")
            return trunc_div(a, b) if e.op == "/" else trunc_mod(a, b)
        if e.op == "<":
            return a < b
        if e.op == "<=":
            return a <= b
        if e.op == ">":
            return a > b
        if e.op == ">=":
            return a >= b
        if e.op == "==":
            return a == b
        if e.op == "!=":
            return a != b
        raise EvaluationError(f"unknown operator {e.op}")
    if isinstance(e, Neg):
        return -evaluate(e.operand, env, pre_env)
    if isinstance(e, Not):
        return not evaluate(e.arg, env, pre_env)
    if isinstance(e, And):
        return all(evaluate(a, env, pre_env) for a in e.args)
    if isinstance(e, Or):
        return any(evaluate(a, env, pre_env) for a in e.args)
    if isinstance(e, Implies):
        return (not evaluate(e.lhs, env, pre_env)) or bool(evaluate(e.rhs, env, pre_env))
    if isinstance(e, Call):
        if e.func == OLD and len(e.args) == 1:
            state = env if pre_env is None else pre_env
            return evaluate(e.args[0], state, state)
        values = [evaluate(a, env, pre_env) for a in e.args]
        if e.func == "min" and len(values) >= 2:
            return min(values)
        if e.func == "max" and len(values) >= 2:
            return max(values)
        if e.func == "abs" and len(values) == 1:
            return abs(values[0])
        raise EvaluationError(f"uninterpreted function {e.func}")
    raise EvaluationError(f"no concrete value for {e}")


# ---------------------------------------------------------------------------
# Sorts
# ---------------------------------------------------------------------------

def infer_sort(e: Expr, env: Mapping[str, Sort]) -> Sort:
    """Infer the sort of *e*; variables default to :attr:`Sort.INT`."""
    if isinstance(e, Var):
        return env.get(e.name, Sort.INT)
    if isinstance(e, (BoolConst, Not, And, Or, Implies)):
        return Sort.BOOL
    if isinstance(e, BinOp):
        return Sort.BOOL if e.op in COMPARE_OPS else Sort.INT
    if isinstance(e, Call) and e.func == OLD and e.args:
        return infer_sort(e.args[0], env)
    return Sort.INT


def is_boolean(e: Expr, env: Mapping[str, Sort] | None = None) -> bool:
    return infer_sort(e, env or {}) is Sort.BOOL


# ---------------------------------------------------------------------------
# Rendering (Rust-flavoured)
# ---------------------------------------------------------------------------

_PREC_IMPLIES = 1
_PREC_OR = 2
_PREC_AND = 3
_PREC_CMP = 4
_PREC_ADD = 5
_PREC_MUL = 6
_PREC_UNARY = 7
_PREC_ATOM = 8

_BINOP_PREC = {
    "+": _PREC_ADD, "-": _PREC_ADD,
    "*": _PREC_MUL, "/": _PREC_MUL, "%": _PREC_MUL,
}


def _paren(text: str, prec: int, parent: int) -> str:
    return f"({text})" if prec < parent else text


def _render(e: Expr, parent: int) -> str:
    if isinstance(e, Var):
        return e.name
    if isinstance(e, IntConst):
        return str(e.value) if e.value >= 0 else _paren(str(e.value), _PREC_UNARY, parent)
    if isinstance(e, BoolConst):
        return "true" if e.value else "false"
    if isinstance(e, BinOp):
        prec = _BINOP_PREC.get(e.op, _PREC_CMP)
        # Left-associative: the right operand needs parens at equal precedence.
        text = f"{_render(e.left, prec)} {e.op} {_render(e.right, prec + 1)}"
        return _paren(text, prec, parent)
    if isinstance(e, Neg):
        return _paren(f"-{_render(e.operand, _PREC_UNARY + 1)}", _PREC_UNARY, parent)
    if isinstance(e, Not):
        return _paren(f"!{_render(e.arg, _PREC_UNARY + 1)}", _PREC_UNARY, parent)
    if isinstance(e, And):
        text = " && ".join(_render(a, _PREC_AND + 1) for a in e.args)
        return _paren(text, _PREC_AND, parent)
    if isinstance(e, Or):
        text = " || ".join(_render(a, _PREC_OR + 1) for a in e.args)
        return _paren(text, _PREC_OR, parent)
    if isinstance(e, Implies):
        text = f"{_render(e.lhs, _PREC_IMPLIES + 1)} ==> {_render(e.rhs, _PREC_IMPLIES)}"
        return _paren(text, _PREC_IMPLIES, parent)
    if isinstance(e, Call):
        return f"{e.func}({', '.join(_render(a, 0) for a in e.args)})"
    if isinstance(e, Opaque):
        return f"<{e.text}>"
    return repr(e)


def render_all(parts: Iterable[Expr], sep: str = ", ") -> str:
    return sep.join(str(p) for p in parts)
