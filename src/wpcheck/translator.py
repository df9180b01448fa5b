"""Predicate → Z3 translator.

This module is the Trusted Computing Base (TCB) of wpcheck: a verification
condition is only as sound as its translation into the solver's theory.
Keep it small, and review and test it with care.

Theory mapping:

  - variables of sort ``int`` → ``z3.Int``, sort ``bool`` → ``z3.Bool``
    (unbounded integers; overflow is not modelled)
  - ``+ - *`` → integer arithmetic; ``/`` and ``%`` truncate toward zero
    (built from ``div`` on absolute values; the remainder takes the sign
    of the dividend)
  - comparisons and connectives → their Z3 counterparts
  - ``min``, ``max``, ``abs`` → ``z3.If`` terms
  - ``old(e)`` → ``e`` over a separate set of pre-state constants
    (``old(x)`` is the constant named ``"old(x)"``)
  - any other call ``f(a, ...)`` → an uninterpreted function ``Int^n → Int``

Raises :class:`TranslationError` for anything else, most notably
:class:`~wpcheck.predicates.Opaque` sub-expressions.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

import z3

from .predicates import (
    OLD,
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
)
from .types import Sort, make_z3_var


class TranslationError(Exception):
    """Raised when a predicate falls outside the solver theory."""


# ---------------------------------------------------------------------------
# Built-in function translations
# ---------------------------------------------------------------------------


def _z3_min(a: Any, b: Any) -> Any:
    return z3.If(a <= b, a, b)


def _z3_max(a: Any, b: Any) -> Any:
    return z3.If(a >= b, a, b)


def _z3_abs(x: Any) -> Any:
    return z3.If(x >= 0, x, -x)


def _z3_trunc_div(a: Any, b: Any) -> Any:
    if z3.is_int_value(b) and b.as_long() != 0:
        n = b.as_long()
        q = z3.If(a >= 0, a / abs(n), -((-a) / abs(n)))
        return q if n > 0 else -q
    q = _z3_abs(a) / _z3_abs(b)
    return z3.If((a >= 0) == (b >= 0), q, -q)


_BUILTINS: dict[str, Any] = {
    "min": _z3_min,
    "max": _z3_max,
    "abs": _z3_abs,
}


# ---------------------------------------------------------------------------
# Translator
# ---------------------------------------------------------------------------


def old_name(name: str) -> str:
    """Solver symbol of the pre-state value of variable *name*."""
    return f"{OLD}({name})"


class Translator:
    """Translates predicates into Z3 expressions of one context.

    Constants are created on first use and shared, so the same variable
    always maps to the same Z3 constant.  :attr:`variables` lists them for
    counterexample extraction.

    Args:
        sorts: Sort of every variable (missing names default to ``int``;
            ``x#3`` takes the sort of ``x``).
        ctx: The Z3 context to build terms in (``None``: the global one).
    """

    def __init__(self, sorts: Mapping[str, Sort] | None = None, ctx: z3.Context | None = None) -> None:
        self.sorts = dict(sorts or {})
        self.ctx = ctx
        self.variables: dict[str, Any] = {}
        self._functions: dict[tuple[str, int], Any] = {}

    def sort_of(self, name: str) -> Sort:
        if name in self.sorts:
            return self.sorts[name]
        return self.sorts.get(name.split("#", 1)[0], Sort.INT)

    def var(self, name: str, pre_state: bool = False) -> Any:
        key = old_name(name) if pre_state else name
        if key not in self.variables:
            self.variables[key] = make_z3_var(key, self.sort_of(name), self.ctx)
        return self.variables[key]

    def translate(self, e: Expr) -> Any:
        """Translate *e* into a Z3 expression.

        Raises:
            TranslationError: If *e* contains an opaque expression, an
                unknown operator, or operands of mismatched sorts.
        """
        return self._expr(e, False)

    def translate_formula(self, e: Expr) -> Any:
        """Translate *e* and check that it is boolean."""
        z = self.translate(e)
        if not z3.is_bool(z):
            raise TranslationError(f"Not a boolean formula: {e}")
        return z

    # ------------------------------------------------------------------
    # Expressions
    # ------------------------------------------------------------------

    def _expr(self, e: Expr, pre: bool) -> Any:
        if isinstance(e, Var):
            return self.var(e.name, pre)
        if isinstance(e, BoolConst):
            return z3.BoolVal(e.value, self.ctx)
        if isinstance(e, IntConst):
            return z3.IntVal(e.value, self.ctx)
        if isinstance(e, BinOp):
            return self._binop(e, pre)
        if isinstance(e, Neg):
            return -self._int(self._expr(e.operand, pre), e)
        if isinstance(e, Not):
            return z3.Not(self._bool(self._expr(e.arg, pre), e), self.ctx)
        if isinstance(e, And):
            return z3.And(*[self._bool(self._expr(a, pre), e) for a in e.args])
        if isinstance(e, Or):
            return z3.Or(*[self._bool(self._expr(a, pre), e) for a in e.args])
        if isinstance(e, Implies):
            lhs = self._bool(self._expr(e.lhs, pre), e)
            rhs = self._bool(self._expr(e.rhs, pre), e)
            return z3.Implies(lhs, rhs, self.ctx)
        if isinstance(e, Call):
            return self._call(e, pre)
        if isinstance(e, Opaque):
            raise TranslationError(f"Expression outside the supported fragment: {e.text}")
        raise TranslationError(f"Unsupported expression node: {type(e).__name__}")

    def _binop(self, e: BinOp, pre: bool) -> Any:
        left = self._expr(e.left, pre)
        right = self._expr(e.right, pre)
        op = e.op
        if op in ("==", "!="):
            if left.sort() != right.sort():
                left, right = self._coerce(left, right)
            return left == right if op == "==" else left != right
        left, right = self._int(left, e), self._int(right, e)
        if op == "+":
            return left + right
        if op == "-":
            return left - right
        if op == "*":
            return left * right
        if op == "/":
            return _z3_trunc_div(left, right)
        if op == "%":
            return left - right * _z3_trunc_div(left, right)
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        if op == ">=":
            return left >= right
        raise TranslationError(f"Unsupported operator: {op}")

    def _call(self, e: Call, pre: bool) -> Any:
        if e.func == OLD:
            if len(e.args) != 1:
                raise TranslationError(f"old() takes exactly one argument: {e}")
            return self._expr(e.args[0], True)
        args = [self._int(self._expr(a, pre), e) for a in e.args]
        if e.func in _BUILTINS:
            if e.func == "abs":
                if len(args) != 1:
                    raise TranslationError(f"abs() takes exactly one argument: {e}")
                return _z3_abs(args[0])
            if len(args) < 2:
                raise TranslationError(f"{e.func}() needs at least two arguments: {e}")
            acc = args[0]
            for a in args[1:]:
                acc = _BUILTINS[e.func](acc, a)
            return acc
        return self._function(e.func, len(args))(*args) if args else self._function(e.func, 0)

    def _function(self, name: str, arity: int) -> Any:
        key = (name, arity)
        if key not in self._functions:
            int_sort = z3.IntSort(self.ctx)
            if arity == 0:
                self._functions[key] = z3.Const(f"{name}()", int_sort)
            else:
                self._functions[key] = z3.Function(name, *([int_sort] * arity), int_sort)
        return self._functions[key]

    # ------------------------------------------------------------------
    # Sorts
    # ------------------------------------------------------------------

    def _int(self, z: Any, e: Expr) -> Any:
        if z3.is_bool(z):
            return z3.If(z, z3.IntVal(1, self.ctx), z3.IntVal(0, self.ctx))
        if not z3.is_int(z):
            raise TranslationError(f"Expected an integer operand in {e}")
        return z

    def _bool(self, z: Any, e: Expr) -> Any:
        if not z3.is_bool(z):
            raise TranslationError(f"Expected a boolean operand in {e}")
        return z

    def _coerce(self, a: Any, b: Any) -> tuple[Any, Any]:
        """Promote a boolean operand to an integer (``true`` → 1)."""
        if z3.is_bool(a):
            a = z3.If(a, z3.IntVal(1, self.ctx), z3.IntVal(0, self.ctx))
        if z3.is_bool(b):
            b = z3.If(b, z3.IntVal(1, self.ctx), z3.IntVal(0, self.ctx))
        return a, b


def translate(e: Expr, sorts: Mapping[str, Sort] | None = None, ctx: z3.Context | None = None) -> Any:
    """Translate one predicate; see :class:`Translator`."""
    return Translator(sorts, ctx).translate(e)
