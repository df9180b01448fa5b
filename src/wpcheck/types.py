"""Rust scalar types, solver sorts, and type refinements.

Maps the type names carried by the typed AST (``i32``, ``u64``, ``bool``, ...)
to the two sorts the predicate model reasons about, and derives the
refinements a type implies for a parameter at function entry.

Integers are mathematical (unbounded) integers: overflow is not modelled.
Unsigned types contribute the refinement ``x >= 0``::

    extract_refinements("u32", Var("n"))   # [n >= 0]
"""

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Any

import z3

if TYPE_CHECKING:
    from .predicates import Expr


class Sort(Enum):
    """Logical sort of a variable or expression."""

    INT = "int"
    BOOL = "bool"


# ---------------------------------------------------------------------------
# Rust type name → Sort
# ---------------------------------------------------------------------------

_SIGNED = frozenset({"i8", "i16", "i32", "i64", "i128", "isize", "int"})
_UNSIGNED = frozenset({"u8", "u16", "u32", "u64", "u128", "usize"})
_FLOATS = frozenset({"f32", "f64", "float"})


def _strip_reference(type_name: str) -> str:
    name = type_name.strip()
    while name.startswith("&"):
        name = name[1:].strip()
        if name.startswith("mut "):
            name = name[4:].strip()
    return name


def sort_of_type(type_name: str | None) -> Sort | None:
    """Map a Rust type name to a :class:`Sort`.

    ``None`` (no annotation) defaults to :attr:`Sort.INT`.  References are
    looked through (``&mut u32`` is ``u32``).

    Returns:
        The sort, or ``None`` when the type has no scalar sort (``Vec<i32>``,
        structs, ...).  Values of such types can still flow through the
        program but any expression that inspects them is opaque.
    """
    if type_name is None:
        return Sort.INT
    name = _strip_reference(type_name)
    if name in _SIGNED or name in _UNSIGNED:
        return Sort.INT
    if name == "bool":
        return Sort.BOOL
    return None


def is_unsigned(type_name: str | None) -> bool:
    return type_name is not None and _strip_reference(type_name) in _UNSIGNED


def is_float(type_name: str | None) -> bool:
    return type_name is not None and _strip_reference(type_name) in _FLOATS


def extract_refinements(type_name: str | None, var: Expr) -> list[Expr]:
    """Predicates implied by a value of *type_name* bound to *var*.

    Args:
        type_name: The declared Rust type of the value.
        var: The expression denoting the value (usually a ``Var``).

    Returns:
        A list of predicates assumed to hold at function entry.  Empty for
        signed and non-scalar types.
    """
    from .predicates import BinOp, IntConst

    if is_unsigned(type_name):
        return [BinOp(">=", var, IntConst(0))]
    return []


# ---------------------------------------------------------------------------
# Sort → Z3
# ---------------------------------------------------------------------------

def sort_to_z3(sort: Sort, ctx: z3.Context | None = None) -> Any:
    """Return the Z3 sort for *sort* in context *ctx*."""
    if sort is Sort.BOOL:
        return z3.BoolSort(ctx)
    return z3.IntSort(ctx)


def make_z3_var(name: str, sort: Sort, ctx: z3.Context | None = None) -> Any:
    """Create a Z3 constant named *name* of the given sort.

    Args:
        name: The variable name (used as the Z3 symbol name).
        sort: The logical sort.
        ctx: The Z3 context the constant belongs to.

    Returns:
        A Z3 ``Int`` or ``Bool`` constant.
    """
    if sort is Sort.BOOL:
        return z3.Bool(name, ctx)
    return z3.Int(name, ctx)
