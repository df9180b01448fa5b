"""Python-syntax frontend: source text → typed function AST.

The verifier core consumes :class:`~wpcheck.syntax.Function` objects and does
not care where they come from.  This module builds them from ordinary Python
function definitions written in a Rust-like style, so functions can be
verified without a Rust parser::

    def abs_diff(a: i32, b: i32) -> i32:
        pre("a >= b")
        post("result >= 0")
        return a - b

Specification calls (mirroring the ``pre!``/``post!``/``invariant!`` macros):

  - ``pre(p)``, ``post(p)`` at the top level of the body
  - ``invariant(p)`` directly before a loop, or as the first statement of its
    body

``p`` is either a Python expression or a string in Rust syntax (``&&``,
``||``, ``!``, ``==>``, ``true``/``false``).

Statements:

  - ``x = e``, ``x: "u32" = e``, ``x += e``, ``x: T`` (declared, unset)
  - ``assert p``
  - ``if``/``elif``/``else``, ``while``, ``for v in range(a, b)``
  - ``return e``, ``panic(...)`` or ``raise ...``
  - ``f(a)``, ``x = f(a)``, ``v.push(a)``: calls to non-logical functions
    (see :mod:`wpcheck.builder` for how contracts apply)

Expressions the predicate model cannot represent (attribute access,
indexing, floats, ...) become :class:`~wpcheck.predicates.Opaque`; statements
that cannot be mapped become :class:`~wpcheck.syntax.Unsupported` and make
the function inconclusive.
"""

from __future__ import annotations

import ast
import inspect
import json
import re
import textwrap
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any

from . import syntax
from .builder import ExternalContract
from .predicates import (
    INTERPRETED_FUNCTIONS,
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
    conj,
)


class ParseError(Exception):
    """Raised when source text or a predicate cannot be parsed."""

    def __init__(self, message: str, span: syntax.Span | None = None) -> None:
        self.message = message
        self.span = span
        super().__init__(f"{span}: {message}" if span else message)


_IMPLIES = "__implies__"
_PANIC_CALLS = frozenset({"panic", "unreachable", "todo", "unimplemented"})

# Exponents up to this value are expanded into repeated multiplication.
_MAX_POW = 3

_ARITH = {
    ast.Add: "+",
    ast.Sub: "-",
    ast.Mult: "*",
    ast.Div: "/",
    ast.FloorDiv: "/",
    ast.Mod: "%",
}

_COMPARE = {
    ast.Lt: "<",
    ast.LtE: "<=",
    ast.Gt: ">",
    ast.GtE: ">=",
    ast.Eq: "==",
    ast.NotEq: "!=",
}


def _span(node: ast.AST) -> syntax.Span | None:
    line = getattr(node, "lineno", None)
    if line is None:
        return None
    return syntax.Span(
        line,
        getattr(node, "col_offset", 0),
        getattr(node, "end_lineno", None),
        getattr(node, "end_col_offset", None),
    )


# ---------------------------------------------------------------------------
# Rust-syntax predicate strings
# ---------------------------------------------------------------------------

def _split_top_level(text: str, sep: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    start = 0
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "([{":
            depth += 1
        elif ch in ")]}":
            depth -= 1
        elif depth == 0 and text.startswith(sep, i):
            parts.append(text[start:i])
            i += len(sep)
            start = i
            continue
        i += 1
    parts.append(text[start:])
    return parts


def _desugar_implication(text: str) -> str:
    """Rewrite ``a ==> b`` (right-associative, loosest binding) into
    ``__implies__((a), (b))`` at every nesting level."""
    out: list[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "([{":
            close = {"(": ")", "[": "]", "{": "}"}[ch]
            depth = 1
            j = i + 1
            while j < len(text) and depth:
                if text[j] in "([{":
                    depth += 1
                elif text[j] in ")]}":
                    depth -= 1
                j += 1
            inner = text[i + 1:j - 1]
            args = ", ".join(_desugar_implication(a) for a in _split_top_level(inner, ","))
            out.append(f"{ch}{args}{close}")
            i = j
            continue
        out.append(ch)
        i += 1
    flat = "".join(out)
    parts = _split_top_level(flat, "==>")
    if len(parts) == 1:
        return flat
    rhs = parts[-1]
    for lhs in reversed(parts[:-1]):
        rhs = f"{_IMPLIES}(({lhs}), ({rhs}))"
    return rhs


class _InvertToNot(ast.NodeTransformer):
    """Turn the ``~`` standing in for Rust's ``!`` into ``not``."""

    def visit_UnaryOp(self, node: ast.UnaryOp) -> ast.AST:
        self.generic_visit(node)
        if isinstance(node.op, ast.Invert):
            return ast.copy_location(ast.UnaryOp(ast.Not(), node.operand), node)
        return node


def _rust_to_python(text: str) -> str:
    # `!` becomes `~`, which binds as tightly as Rust's unary `!`.
    text = text.replace("&&", " and ").replace("||", " or ")
    text = re.sub(r"!(?!=)", "~", text)
    text = re.sub(r"\btrue\b", "True", text)
    text = re.sub(r"\bfalse\b", "False", text)
    return _desugar_implication(text)


def parse_expression(text: str) -> Expr:
    """Parse an expression written in Rust syntax.

    Example::

        parse_expression("x > 0 && !(y == 0) ==> x / y >= 0")

    Raises:
        ParseError: If *text* is not a well-formed expression.
    """
    source = _rust_to_python(text).strip()
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ParseError(f"cannot parse expression {text!r}: {e.msg}") from e
    return convert_expression(_InvertToNot().visit(tree).body)


def parse_predicate(text: str) -> Expr:
    """Parse a predicate (a boolean expression) written in Rust syntax."""
    return parse_expression(text)


# ---------------------------------------------------------------------------
# Python expressions → predicates
# ---------------------------------------------------------------------------

def _names(node: ast.AST) -> frozenset[str]:
    return frozenset(n.id for n in ast.walk(node) if isinstance(n, ast.Name))


def _opaque(node: ast.AST) -> Opaque:
    return Opaque(ast.unparse(node), _names(node))


def convert_expression(node: ast.expr) -> Expr:
    """Map a Python expression node onto the predicate model.

    Anything outside the model becomes an :class:`Opaque` node.
    """
    if isinstance(node, ast.Name):
        return Var(node.id)
    if isinstance(node, ast.Constant):
        if isinstance(node.value, bool):
            return BoolConst(node.value)
        if isinstance(node.value, int):
            return IntConst(node.value)
        return _opaque(node)
    if isinstance(node, ast.BinOp):
        op = _ARITH.get(type(node.op))
        if op is not None:
            return BinOp(op, convert_expression(node.left), convert_expression(node.right))
        if isinstance(node.op, ast.Pow) and isinstance(node.right, ast.Constant):
            exp = node.right.value
            if isinstance(exp, int) and not isinstance(exp, bool) and 0 <= exp <= _MAX_POW:
                if exp == 0:
                    return IntConst(1)
                base = convert_expression(node.left)
                acc = base
                for _ in range(exp - 1):
                    acc = BinOp("*", acc, base)
                return acc
        return _opaque(node)
    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.USub):
            operand = convert_expression(node.operand)
            if isinstance(operand, IntConst):
                return IntConst(-operand.value)
            return Neg(operand)
        if isinstance(node.op, ast.UAdd):
            return convert_expression(node.operand)
        if isinstance(node.op, ast.Not):
            return Not(convert_expression(node.operand))
        return _opaque(node)
    if isinstance(node, ast.BoolOp):
        args = tuple(convert_expression(v) for v in node.values)
        return And(args) if isinstance(node.op, ast.And) else Or(args)
    if isinstance(node, ast.Compare):
        parts: list[Expr] = []
        left = node.left
        for op, right in zip(node.ops, node.comparators):
            sym = _COMPARE.get(type(op))
            if sym is None:
                return _opaque(node)
            parts.append(BinOp(sym, convert_expression(left), convert_expression(right)))
            left = right
        return conj(*parts)
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name) and not node.keywords:
        if any(isinstance(a, ast.Starred) for a in node.args):
            return _opaque(node)
        args = tuple(convert_expression(a) for a in node.args)
        if node.func.id == _IMPLIES and len(args) == 2:
            return Implies(args[0], args[1])
        return Call(node.func.id, args)
    return _opaque(node)


def _is_logical_call(node: ast.expr) -> bool:
    return (
        isinstance(node, ast.Call)
        and isinstance(node.func, ast.Name)
        and (node.func.id in INTERPRETED_FUNCTIONS or node.func.id == OLD)
    )


# ---------------------------------------------------------------------------
# Statements
# ---------------------------------------------------------------------------

def _type_name(node: ast.expr | None) -> str | None:
    if node is None:
        return None
    if isinstance(node, ast.Constant) and isinstance(node.value, str):
        return node.value.strip()
    if isinstance(node, ast.Name):
        return node.id
    return ast.unparse(node)


def _call_name(node: ast.AST) -> str | None:
    if isinstance(node, ast.Expr):
        node = node.value
    if isinstance(node, ast.Call) and isinstance(node.func, ast.Name):
        return node.func.id
    return None


class _FunctionReader:
    """Converts one ``ast.FunctionDef`` into a :class:`~wpcheck.syntax.Function`."""

    def __init__(self, node: ast.FunctionDef) -> None:
        self.node = node
        self.preconditions: list[syntax.Clause] = []
        self.postconditions: list[syntax.Clause] = []
        self.malformed: list[syntax.Unsupported] = []

    def read(self) -> syntax.Function:
        node = self.node
        params = tuple(syntax.Param(a.arg, _type_name(a.annotation)) for a in node.args.args)
        body = self._block(node.body, top_level=True)
        if self.malformed:
            body = tuple(self.malformed) + body
        post = None
        if self.postconditions:
            post = syntax.Clause(
                conj(*(c.predicate for c in self.postconditions)),
                self.postconditions[0].span,
            )
        return syntax.Function(
            name=node.name,
            params=params,
            body=body,
            preconditions=tuple(self.preconditions),
            postcondition=post,
            return_type=_type_name(node.returns),
            span=_span(node),
        )

    # -- specification calls -------------------------------------------------

    def _clause(self, call: ast.Call) -> syntax.Clause:
        span = _span(call)
        if len(call.args) != 1 or call.keywords:
            raise ParseError(f"{_call_name(call)}() takes exactly one predicate", span)
        arg = call.args[0]
        if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
            try:
                predicate = parse_predicate(arg.value)
            except ParseError as e:
                raise ParseError(str(e), span) from e
        else:
            predicate = convert_expression(arg)
        return syntax.Clause(predicate, span)

    def _try_clause(self, call: ast.Call) -> syntax.Clause | None:
        try:
            return self._clause(call)
        except ParseError as e:
            self.malformed.append(syntax.Unsupported(f"{_call_name(call)}(): {e.message}", e.span or _span(call)))
            return None

    def _invariants(self, stmts: list[ast.stmt]) -> tuple[list[syntax.Clause], list[ast.stmt]]:
        clauses: list[syntax.Clause] = []
        rest = list(stmts)
        while rest and _call_name(rest[0]) == "invariant":
            clause = self._try_clause(rest.pop(0).value)  # type: ignore[attr-defined]
            if clause is not None:
                clauses.append(clause)
        return clauses, rest

    # -- blocks --------------------------------------------------------------

    def _block(self, stmts: list[ast.stmt], top_level: bool = False) -> tuple[syntax.Stmt, ...]:
        out: list[syntax.Stmt] = []
        pending: list[syntax.Clause] = []
        for i, stmt in enumerate(stmts):
            name = _call_name(stmt)
            if name in ("pre", "post"):
                if not top_level:
                    out.append(syntax.Unsupported(f"{name}() inside a nested block", _span(stmt)))
                    continue
                clause = self._try_clause(stmt.value)  # type: ignore[attr-defined]
                if clause is not None:
                    (self.preconditions if name == "pre" else self.postconditions).append(clause)
                continue
            if name == "invariant":
                clause = self._try_clause(stmt.value)  # type: ignore[attr-defined]
                if clause is not None:
                    pending.append(clause)
                continue
            if pending and not isinstance(stmt, (ast.While, ast.For)):
                out.append(syntax.Unsupported("invariant() not followed by a loop", pending[0].span))
                pending = []
            if (
                i == 0
                and isinstance(stmt, ast.Expr)
                and isinstance(stmt.value, ast.Constant)
                and isinstance(stmt.value.value, str)
            ):
                continue  # docstring
            out.extend(self._stmt(stmt, pending))
            pending = []
        if pending:
            out.append(syntax.Unsupported("invariant() not followed by a loop", pending[0].span))
        return tuple(out)

    def _stmt(self, stmt: ast.stmt, invariants: list[syntax.Clause]) -> list[syntax.Stmt]:
        span = _span(stmt)
        if isinstance(stmt, ast.Pass):
            return []
        if isinstance(stmt, ast.Assign):
            if len(stmt.targets) != 1 or not isinstance(stmt.targets[0], ast.Name):
                return [syntax.Unsupported(f"assignment target {ast.unparse(stmt.targets[0])}", span)]
            return self._assign(stmt.targets[0].id, stmt.value, None, span)
        if isinstance(stmt, ast.AnnAssign):
            if not isinstance(stmt.target, ast.Name):
                return [syntax.Unsupported(f"assignment target {ast.unparse(stmt.target)}", span)]
            return self._assign(stmt.target.id, stmt.value, _type_name(stmt.annotation), span)
        if isinstance(stmt, ast.AugAssign):
            op = _ARITH.get(type(stmt.op))
            if op is None or not isinstance(stmt.target, ast.Name):
                return [syntax.Unsupported(ast.unparse(stmt), span)]
            name = stmt.target.id
            return [syntax.Assign(name, BinOp(op, Var(name), convert_expression(stmt.value)), None, span)]
        if isinstance(stmt, ast.Assert):
            return [syntax.Assert(convert_expression(stmt.test), span)]
        if isinstance(stmt, ast.Return):
            value = convert_expression(stmt.value) if stmt.value is not None else None
            return [syntax.Return(value, span)]
        if isinstance(stmt, ast.Raise):
            return [syntax.Panic(ast.unparse(stmt.exc) if stmt.exc is not None else "", span)]
        if isinstance(stmt, ast.If):
            return [syntax.If(
                convert_expression(stmt.test),
                self._block(stmt.body),
                self._block(stmt.orelse),
                span,
            )]
        if isinstance(stmt, ast.While):
            if stmt.orelse:
                return [syntax.Unsupported("while ... else", span)]
            inner, body = self._invariants(stmt.body)
            return [syntax.While(
                convert_expression(stmt.test),
                self._block(body),
                self._merge_invariants(invariants + inner),
                span,
            )]
        if isinstance(stmt, ast.For):
            return [self._for(stmt, invariants, span)]
        if isinstance(stmt, ast.Expr) and isinstance(stmt.value, ast.Call):
            return [self._call(stmt.value, None, span)]
        return [syntax.Unsupported(f"{type(stmt).__name__} statement", span)]

    def _assign(
        self,
        target: str,
        value: ast.expr | None,
        type_name: str | None,
        span: syntax.Span | None,
    ) -> list[syntax.Stmt]:
        if value is None:
            return [syntax.Assign(target, None, type_name, span)]
        if isinstance(value, ast.Call) and not _is_logical_call(value):
            call = self._call(value, target, span)
            if isinstance(call, syntax.CallStmt) and type_name is not None:
                # Declare first so the call result gets the declared sort.
                return [syntax.Assign(target, None, type_name, span), call]
            return [call]
        return [syntax.Assign(target, convert_expression(value), type_name, span)]

    def _call(self, call: ast.Call, result: str | None, span: syntax.Span | None) -> syntax.Stmt:
        func = call.func
        if call.keywords or any(isinstance(a, ast.Starred) for a in call.args):
            return syntax.Unsupported(f"call {ast.unparse(call)}", span)
        args = tuple(convert_expression(a) for a in call.args)
        if isinstance(func, ast.Name):
            if func.id in _PANIC_CALLS:
                message = ast.unparse(call.args[0]) if call.args else ""
                return syntax.Panic(message, span)
            return syntax.CallStmt(func.id, args, None, result, span)
        if isinstance(func, ast.Attribute) and isinstance(func.value, ast.Name):
            return syntax.CallStmt(func.attr, args, func.value.id, result, span)
        return syntax.Unsupported(f"call {ast.unparse(call)}", span)

    def _for(self, stmt: ast.For, invariants: list[syntax.Clause], span: syntax.Span | None) -> syntax.Stmt:
        it = stmt.iter
        if (
            stmt.orelse
            or not isinstance(stmt.target, ast.Name)
            or not isinstance(it, ast.Call)
            or not isinstance(it.func, ast.Name)
            or it.func.id != "range"
            or it.keywords
            or not 1 <= len(it.args) <= 2
        ):
            return syntax.Unsupported(f"for loop over {ast.unparse(it)}", span)
        if len(it.args) == 1:
            start: Expr = IntConst(0)
            stop = convert_expression(it.args[0])
        else:
            start = convert_expression(it.args[0])
            stop = convert_expression(it.args[1])
        inner, body = self._invariants(stmt.body)
        return syntax.ForRange(
            stmt.target.id, start, stop, self._block(body),
            self._merge_invariants(invariants + inner), span,
        )

    @staticmethod
    def _merge_invariants(clauses: list[syntax.Clause]) -> syntax.Clause | None:
        if not clauses:
            return None
        return syntax.Clause(conj(*(c.predicate for c in clauses)), clauses[0].span)


# ---------------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------------

def _parse_module(source: str) -> ast.Module:
    try:
        return ast.parse(textwrap.dedent(source))
    except SyntaxError as e:
        raise ParseError(f"invalid source: {e.msg}", syntax.Span(e.lineno or 0, e.offset or 0)) from e


def function_from_node(node: ast.FunctionDef) -> syntax.Function:
    """Convert a parsed function definition."""
    return _FunctionReader(node).read()


def functions_from_source(source: str) -> list[syntax.Function]:
    """Convert every top-level function definition in *source*.

    A malformed specification call becomes an
    :class:`~wpcheck.syntax.Unsupported` statement of its own function.

    Raises:
        ParseError: If *source* is not valid Python.
    """
    tree = _parse_module(source)
    return [function_from_node(n) for n in tree.body if isinstance(n, ast.FunctionDef)]


def function_from_source(source: str, name: str | None = None) -> syntax.Function:
    """Convert the function called *name* (default: the first one) in *source*.

    Raises:
        ParseError: If no such function exists.
    """
    tree = _parse_module(source)
    for node in tree.body:
        if isinstance(node, ast.FunctionDef) and (name is None or node.name == name):
            return function_from_node(node)
    raise ParseError(f"no function {name!r} in source" if name else "no function definition in source")


def function_from_callable(func: Callable[..., Any]) -> syntax.Function:
    """Convert a live Python function by reading its source.

    Raises:
        ParseError: If the source is not available.
    """
    fname = getattr(func, "__name__", str(func))
    try:
        source = textwrap.dedent(inspect.getsource(func))
    except (OSError, TypeError) as e:
        raise ParseError(f"cannot read source of {fname}: {e}") from e
    return function_from_source(source, fname)


# ---------------------------------------------------------------------------
# External contracts
# ---------------------------------------------------------------------------

def parse_external_contracts(data: Mapping[str, Any] | str) -> dict[str, ExternalContract]:
    """Read external method contracts.

    Format (``conditions.json``)::

        {"externalMethods": [
            {"name": "push",
             "params": ["value"],
             "preconditions": ["self.len() < 100"],
             "postconditions": ["self.len() == old(self.len()) + 1"]}
        ]}

    ``params`` is optional.

    Args:
        data: The decoded document, or its JSON text.

    Returns:
        ``{name: ExternalContract}``.

    Raises:
        ParseError: If the document is malformed.
    """
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except json.JSONDecodeError as e:
            raise ParseError(f"invalid contracts JSON: {e}") from e
    if not isinstance(data, Mapping) or not isinstance(data.get("externalMethods"), list):
        raise ParseError("contracts document needs an 'externalMethods' list")
    contracts: dict[str, ExternalContract] = {}
    for entry in data["externalMethods"]:
        if not isinstance(entry, Mapping) or not isinstance(entry.get("name"), str):
            raise ParseError(f"malformed external method entry: {entry!r}")
        name = entry["name"]
        try:
            contracts[name] = ExternalContract(
                name=name,
                preconditions=tuple(parse_predicate(p) for p in entry.get("preconditions", [])),
                postconditions=tuple(parse_predicate(p) for p in entry.get("postconditions", [])),
                params=tuple(entry.get("params", [])),
            )
        except ParseError as e:
            raise ParseError(f"in contract of '{name}': {e}") from e
    return contracts


def load_external_contracts(path: str | Path) -> dict[str, ExternalContract]:
    """Read external method contracts from a JSON file.

    Raises:
        ParseError: If the file cannot be read or is malformed.
    """
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ParseError(f"cannot read {path}: {e}") from e
    return parse_external_contracts(text)
