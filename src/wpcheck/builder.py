"""CFG builder: typed function AST → :class:`~wpcheck.cfg.ControlFlowGraph`.

Lowering rules:

  - consecutive straight-line statements share one block
  - ``if C {A} else {B}``: ``conditional-true`` edge (guard ``C``) and
    ``conditional-false`` edge (guard ``!C``) into the two arms, both arms
    falling through to a join block; without ``else`` the false edge goes
    straight to the join block
  - ``while C {B}``: a header block carrying the invariant, a
    ``conditional-true`` edge into the body, a ``loop-back`` edge from the end
    of the body and a ``conditional-false`` edge out of the loop
  - ``for v in a..b {B}``: ``v = a; while v < b { B; v = v + 1 }``
  - ``return e``: ``result = e`` and an ``early-exit`` edge to the normal exit
  - ``panic!``: an ``early-exit`` edge to the abort exit
  - calls with an external contract: ``assert pre; havoc modified; assume post``

After lowering, empty join blocks with a single unguarded successor are
spliced out.  When the normal exit is empty and reached only by one
``return`` outside any loop, the returning block becomes the exit, so a
straight-line function is a single block even if it ends in ``return``.
Unreachable blocks are dropped, and block ids are renumbered so that
``blocks[i].id == i``.

Usage::

    from wpcheck.builder import build_cfg
    cfg = build_cfg(function)
    print(cfg.to_lines())
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from . import syntax
from .cfg import (
    Annotation,
    AnnotationKind,
    Assert,
    Assign,
    Assume,
    BasicBlock,
    ControlFlowGraph,
    Edge,
    EdgeKind,
    Havoc,
    Instr,
)
from .conditions import ConditionKind
from .diagnostics import Diagnostic, DiagnosticKind, Severity
from .predicates import (
    OLD,
    TRUE,
    BinOp,
    Call,
    Expr,
    IntConst,
    Not,
    Var,
    free_vars,
    infer_sort,
    replace_calls,
    substitute,
)
from .types import Sort, extract_refinements, is_float, sort_of_type

logger = logging.getLogger(__name__)

#: Name of the variable holding a function's return value.
RESULT = "result"
#: Name a contract uses for the receiver of a method call.
SELF = "self"


class StructuralError(Exception):
    """Raised when a function cannot be lowered into a well-formed CFG."""


# ---------------------------------------------------------------------------
# External contracts
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ExternalContract:
    """Pre/postconditions of a function whose body is not analysed.

    Attributes:
        name: Callee name (method name for method calls).
        preconditions: Must hold before the call; checked at every call site.
        postconditions: Assumed after the call.  ``result`` is the returned
            value, ``self`` the receiver after the call and ``old(e)`` the
            value of ``e`` before the call.
        params: Formal parameter names, bound positionally to the call's
            arguments.  Without them the contract speaks about the caller's
            variables directly.
    """

    name: str
    preconditions: tuple[Expr, ...] = ()
    postconditions: tuple[Expr, ...] = ()
    params: tuple[str, ...] = ()


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------

@dataclass
class _Block:
    statements: list[Instr] = field(default_factory=list)
    annotation: Annotation | None = None
    span: syntax.Span | None = None


class CfgBuilder:
    """Lower one :class:`~wpcheck.syntax.Function` into a CFG.

    Args:
        function: The function to lower.
        contracts: External contracts by callee name.
    """

    def __init__(
        self,
        function: syntax.Function,
        contracts: Mapping[str, ExternalContract] | None = None,
    ) -> None:
        self.function = function
        self.contracts = dict(contracts or {})
        self._blocks: list[_Block] = []
        self._edges: list[Edge] = []
        self._current: int | None = None
        self._normal_exit: int | None = None
        self._abort_exit: int | None = None
        self._sorts: dict[str, Sort] = {}
        self._diagnostics: list[Diagnostic] = []
        self._calls = 0
        self._loop_depth = 0
        self._top_level_returns: set[int] = set()

    # -- public ------------------------------------------------------------

    def build(self) -> ControlFlowGraph:
        """Lower the function.

        Returns:
            The control-flow graph.

        Raises:
            StructuralError: If the function uses a construct that cannot be
                lowered (unsupported statement, float arithmetic, a ``for``
                loop whose bound is modified by its body, ...).
        """
        fn = self.function
        preconditions = self._declare_params()
        postcondition = self._postcondition()

        self._current = self._new_block(fn.span)
        self._lower_body(fn.body)
        if self._current is not None:
            if self._normal_exit is None:
                self._normal_exit = self._current
            else:
                self._edge(self._current, self._normal_exit, EdgeKind.FALLTHROUGH)
            self._current = None

        cfg = self._finish(tuple(preconditions), postcondition)
        problems = cfg.validate()
        if problems:
            raise StructuralError(f"{fn.name}: malformed control-flow graph: {'; '.join(problems)}")
        logger.debug(
            "built CFG for %s: %d block(s), %d edge(s), %d loop header(s)",
            fn.name, len(cfg.blocks), len(cfg.edges), len(cfg.loop_headers),
        )
        return cfg

    # -- declarations ------------------------------------------------------

    def _declare(self, name: str, type_name: str | None, span: syntax.Span | None) -> None:
        if is_float(type_name):
            raise StructuralError(f"{_at(span)}floating-point variable '{name}: {type_name}' is not supported")
        self._sorts[name] = sort_of_type(type_name) or Sort.INT

    def _declare_params(self) -> list[Annotation]:
        fn = self.function
        annotations = [
            Annotation(AnnotationKind.PRECONDITION, clause.predicate, clause.span)
            for clause in fn.preconditions
        ]
        for p in fn.params:
            self._declare(p.name, p.type_name, fn.span)
            for refinement in extract_refinements(p.type_name, Var(p.name)):
                annotations.append(
                    Annotation(AnnotationKind.PRECONDITION, refinement, fn.span, implicit=True)
                )
        if fn.return_type is not None:
            self._declare(RESULT, fn.return_type, fn.span)
        return annotations

    def _postcondition(self) -> Annotation:
        fn = self.function
        if fn.postcondition is not None:
            return Annotation(AnnotationKind.POSTCONDITION, fn.postcondition.predicate, fn.postcondition.span)
        self._diagnose(
            DiagnosticKind.MISSING_POSTCONDITION, Severity.WARNING,
            f"function '{fn.name}' has no postcondition; assuming true", fn.span,
        )
        return Annotation(AnnotationKind.POSTCONDITION, TRUE, fn.span, implicit=True)

    # -- graph primitives --------------------------------------------------

    def _new_block(self, span: syntax.Span | None = None) -> int:
        self._blocks.append(_Block(span=span))
        return len(self._blocks) - 1

    def _edge(
        self,
        source: int,
        target: int,
        kind: EdgeKind,
        guard: Expr | None = None,
        span: syntax.Span | None = None,
    ) -> None:
        self._edges.append(Edge(source, target, kind, guard, span))

    def _emit(self, instr: Instr) -> None:
        assert self._current is not None
        self._blocks[self._current].statements.append(instr)

    def _diagnose(self, kind: DiagnosticKind, severity: Severity, message: str, span: syntax.Span | None) -> None:
        self._diagnostics.append(Diagnostic(kind, severity, message, span))

    def _exit_block(self, abort: bool) -> int:
        if abort:
            if self._abort_exit is None:
                self._abort_exit = self._new_block()
            return self._abort_exit
        if self._normal_exit is None:
            self._normal_exit = self._new_block()
        return self._normal_exit

    # -- statements --------------------------------------------------------

    def _lower_body(self, body: Sequence[syntax.Stmt]) -> None:
        for i, stmt in enumerate(body):
            if self._current is None:
                self._diagnose(
                    DiagnosticKind.UNREACHABLE_CODE, Severity.INFO,
                    f"{len(body) - i} statement(s) after an unconditional exit are never executed",
                    getattr(stmt, "span", None),
                )
                return
            self._lower(stmt)

    def _lower(self, stmt: syntax.Stmt) -> None:
        if isinstance(stmt, syntax.Assign):
            self._lower_assign(stmt)
        elif isinstance(stmt, syntax.Assert):
            self._emit(Assert(
                stmt.condition, ConditionKind.ASSERTION, stmt.span,
                f"assertion {stmt.condition} may fail",
            ))
        elif isinstance(stmt, syntax.CallStmt):
            self._lower_call(stmt)
        elif isinstance(stmt, syntax.If):
            self._lower_if(stmt)
        elif isinstance(stmt, syntax.While):
            self._lower_loop(stmt.condition, stmt.body, stmt.invariant, stmt.span)
        elif isinstance(stmt, syntax.ForRange):
            self._lower_for(stmt)
        elif isinstance(stmt, syntax.Return):
            if stmt.value is not None:
                self._sorts.setdefault(RESULT, infer_sort(stmt.value, self._sorts))
                self._emit(Assign(RESULT, stmt.value, stmt.span))
            if self._loop_depth == 0:
                self._top_level_returns.add(self._current)
            self._edge(self._current, self._exit_block(abort=False), EdgeKind.EARLY_EXIT, span=stmt.span)
            self._current = None
        elif isinstance(stmt, syntax.Panic):
            self._edge(self._current, self._exit_block(abort=True), EdgeKind.EARLY_EXIT, span=stmt.span)
            self._current = None
        elif isinstance(stmt, syntax.Unsupported):
            raise StructuralError(f"{_at(stmt.span)}unsupported statement: {stmt.description}")
        else:
            raise StructuralError(f"unsupported statement: {type(stmt).__name__}")

    def _lower_assign(self, stmt: syntax.Assign) -> None:
        if stmt.type_name is not None:
            self._declare(stmt.target, stmt.type_name, stmt.span)
        elif stmt.target not in self._sorts and stmt.value is not None:
            self._sorts[stmt.target] = infer_sort(stmt.value, self._sorts)
        if stmt.value is None:
            self._emit(Havoc(stmt.target, stmt.span))
        else:
            self._emit(Assign(stmt.target, stmt.value, stmt.span))

    def _lower_if(self, stmt: syntax.If) -> None:
        cond_block = self._current
        assert cond_block is not None
        then_block = self._new_block(stmt.span)
        join = self._new_block(stmt.span)
        reaches_join = False

        self._edge(cond_block, then_block, EdgeKind.CONDITIONAL_TRUE, stmt.condition, stmt.span)
        self._current = then_block
        self._lower_body(stmt.then_body)
        if self._current is not None:
            self._edge(self._current, join, EdgeKind.FALLTHROUGH)
            reaches_join = True

        if stmt.else_body:
            else_block = self._new_block(stmt.span)
            self._edge(cond_block, else_block, EdgeKind.CONDITIONAL_FALSE, Not(stmt.condition), stmt.span)
            self._current = else_block
            self._lower_body(stmt.else_body)
            if self._current is not None:
                self._edge(self._current, join, EdgeKind.FALLTHROUGH)
                reaches_join = True
        else:
            self._edge(cond_block, join, EdgeKind.CONDITIONAL_FALSE, Not(stmt.condition), stmt.span)
            reaches_join = True

        self._current = join if reaches_join else None

    def _lower_loop(
        self,
        condition: Expr,
        body: Sequence[syntax.Stmt],
        invariant: syntax.Clause | None,
        span: syntax.Span | None,
        step: Instr | None = None,
    ) -> None:
        assert self._current is not None
        if invariant is None:
            self._diagnose(
                DiagnosticKind.MISSING_INVARIANT, Severity.WARNING,
                f"loop has no invariant; assuming true (loop condition: {condition})", span,
            )
            annotation = Annotation(AnnotationKind.INVARIANT, TRUE, span, implicit=True)
        else:
            annotation = Annotation(AnnotationKind.INVARIANT, invariant.predicate, invariant.span or span)

        header = self._new_block(span)
        self._blocks[header].annotation = annotation
        self._edge(self._current, header, EdgeKind.FALLTHROUGH)

        body_block = self._new_block(span)
        exit_block = self._new_block(span)
        self._edge(header, body_block, EdgeKind.CONDITIONAL_TRUE, condition, span)
        self._edge(header, exit_block, EdgeKind.CONDITIONAL_FALSE, Not(condition), span)

        self._current = body_block
        self._loop_depth += 1
        self._lower_body(body)
        self._loop_depth -= 1
        if self._current is not None:
            if step is not None:
                self._emit(step)
            self._edge(self._current, header, EdgeKind.LOOP_BACK, span=span)
        self._current = exit_block

    def _lower_for(self, stmt: syntax.ForRange) -> None:
        modified = assigned_variables(stmt.body)
        if stmt.variable in modified:
            raise StructuralError(f"{_at(stmt.span)}loop variable '{stmt.variable}' is assigned in the loop body")
        clobbered = sorted(free_vars(stmt.stop) & modified)
        if clobbered:
            raise StructuralError(
                f"{_at(stmt.span)}range bound {stmt.stop} is modified in the loop body ({', '.join(clobbered)})"
            )
        self._sorts[stmt.variable] = Sort.INT
        self._emit(Assign(stmt.variable, stmt.start, stmt.span))
        v = Var(stmt.variable)
        step = Assign(stmt.variable, BinOp("+", v, IntConst(1)), stmt.span)
        self._lower_loop(BinOp("<", v, stmt.stop), stmt.body, stmt.invariant, stmt.span, step)

    def _lower_call(self, stmt: syntax.CallStmt) -> None:
        modified = [name for name in (stmt.result, stmt.receiver) if name is not None]
        for name in modified:
            self._sorts.setdefault(name, Sort.INT)
        contract = self.contracts.get(stmt.function)
        if contract is None:
            logger.debug("call to %s has no contract; havocking %s", stmt.function, modified or "nothing")
            for name in modified:
                self._emit(Havoc(name, stmt.span))
            return

        self._calls += 1
        k = self._calls
        if contract.params and len(contract.params) != len(stmt.args):
            raise StructuralError(
                f"{_at(stmt.span)}call to '{stmt.function}' passes {len(stmt.args)} argument(s),"
                f" its contract declares {len(contract.params)}"
            )

        # Pre-state snapshots of everything the call may overwrite.
        snapshot: dict[str, Expr] = {}
        for name in modified:
            snap = f"{name}#pre{k}"
            self._emit(Assign(snap, Var(name), stmt.span))
            snapshot[name] = Var(snap)

        actuals = dict(zip(contract.params, stmt.args))
        before: dict[str, Expr] = dict(actuals)
        if stmt.receiver is not None:
            before[SELF] = Var(stmt.receiver)
        for pre in contract.preconditions:
            self._emit(Assert(
                substitute(pre, before), ConditionKind.CALL_PRECONDITION, stmt.span,
                f"precondition {pre} of '{stmt.function}' may not hold",
            ))

        result = stmt.result or f"{stmt.function}#ret{k}"
        after: dict[str, Expr] = {p: substitute(a, snapshot) for p, a in actuals.items()}
        after[RESULT] = Var(result)
        if stmt.receiver is not None:
            after[SELF] = Var(stmt.receiver)
        pre_state = {p: substitute(e, snapshot) for p, e in before.items()}

        def old_value(call: Call) -> Expr:
            return substitute(call.args[0], pre_state) if call.args else call

        for name in modified:
            self._emit(Havoc(name, stmt.span))
        if stmt.result is None:
            self._emit(Havoc(result, stmt.span))
        for post in contract.postconditions:
            fact = replace_calls(substitute(post, after), OLD, old_value)
            self._emit(Assume(fact, stmt.span))

    # -- finishing ---------------------------------------------------------

    def _splice_empty_joins(self) -> set[int]:
        """Remove empty pass-through blocks; returns the ids removed."""
        protected = {0, self._normal_exit, self._abort_exit}
        removed: set[int] = set()
        changed = True
        while changed:
            changed = False
            for bid, block in enumerate(self._blocks):
                if bid in removed or bid in protected or block.statements or block.annotation:
                    continue
                out = [e for e in self._edges if e.source == bid]
                if len(out) != 1 or out[0].kind is not EdgeKind.FALLTHROUGH or out[0].guard is not None:
                    continue
                target = out[0].target
                if target == bid:
                    continue
                self._edges = [
                    Edge(e.source, target, e.kind, e.guard, e.span) if e.target == bid else e
                    for e in self._edges
                    if e is not out[0]
                ]
                removed.add(bid)
                changed = True
        return removed

    def _absorb_normal_exit(self) -> int | None:
        """Make the single block returning into an empty normal exit the exit
        itself; returns the id of the dropped exit block, if any."""
        exit_id = self._normal_exit
        if exit_id is None or self._blocks[exit_id].statements or self._blocks[exit_id].annotation:
            return None
        into = [e for e in self._edges if e.target == exit_id]
        if len(into) != 1 or into[0].guard is not None:
            return None
        source = into[0].source
        if source not in self._top_level_returns:
            return None
        if any(e.source == source and e is not into[0] for e in self._edges):
            return None
        self._edges = [e for e in self._edges if e is not into[0]]
        self._normal_exit = source
        return exit_id

    def _finish(self, preconditions: tuple[Annotation, ...], postcondition: Annotation) -> ControlFlowGraph:
        removed = self._splice_empty_joins()
        absorbed = self._absorb_normal_exit()
        if absorbed is not None:
            removed.add(absorbed)

        # Reachability over the remaining graph.
        succ: dict[int, list[int]] = {}
        for e in self._edges:
            succ.setdefault(e.source, []).append(e.target)
        live = {0}
        stack = [0]
        while stack:
            for t in succ.get(stack.pop(), ()):
                if t not in live and t not in removed:
                    live.add(t)
                    stack.append(t)

        renumber = {old: new for new, old in enumerate(sorted(live))}
        blocks = tuple(
            BasicBlock(
                renumber[old],
                tuple(self._blocks[old].statements),
                self._blocks[old].annotation,
                self._blocks[old].span,
            )
            for old in sorted(live)
        )
        edges = tuple(
            Edge(renumber[e.source], renumber[e.target], e.kind, e.guard, e.span)
            for e in self._edges
            if e.source in live and e.target in live
        )
        return ControlFlowGraph(
            function_name=self.function.name,
            blocks=blocks,
            edges=edges,
            entry=0,
            normal_exit=renumber.get(self._normal_exit) if self._normal_exit is not None else None,
            abort_exit=renumber.get(self._abort_exit) if self._abort_exit is not None else None,
            preconditions=preconditions,
            postcondition=postcondition,
            sorts=dict(self._sorts),
            diagnostics=tuple(self._diagnostics),
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def assigned_variables(body: Iterable[syntax.Stmt]) -> set[str]:
    """Variables a statement list may assign, at any nesting depth."""
    names: set[str] = set()
    for stmt in body:
        if isinstance(stmt, syntax.Assign):
            names.add(stmt.target)
        elif isinstance(stmt, syntax.CallStmt):
            names.update(n for n in (stmt.result, stmt.receiver) if n is not None)
        elif isinstance(stmt, syntax.If):
            names |= assigned_variables(stmt.then_body)
            names |= assigned_variables(stmt.else_body)
        elif isinstance(stmt, syntax.While):
            names |= assigned_variables(stmt.body)
        elif isinstance(stmt, syntax.ForRange):
            names.add(stmt.variable)
            names |= assigned_variables(stmt.body)
        elif isinstance(stmt, syntax.Return) and stmt.value is not None:
            names.add(RESULT)
    return names


def _at(span: syntax.Span | None) -> str:
    return f"{span}: " if span else ""


def build_cfg(
    function: syntax.Function,
    contracts: Mapping[str, ExternalContract] | None = None,
) -> ControlFlowGraph:
    """Build the control-flow graph of *function*.

    Args:
        function: The typed function AST.
        contracts: External contracts for called functions, by name.

    Returns:
        The validated :class:`~wpcheck.cfg.ControlFlowGraph`.

    Raises:
        StructuralError: If the function cannot be lowered.
    """
    return CfgBuilder(function, contracts).build()
