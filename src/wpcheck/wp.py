"""Weakest-precondition transformer: CFG → verification conditions.

Backward rules for one block (``Q`` is the predicate after the block):

  - ``x = e``      ``Q[x ↦ e]``
  - ``havoc x``    ``Q[x ↦ x#k]`` for a fresh ``x#k``
  - ``assert P``   ``P && Q``
  - ``assume P``   ``P ==> Q``
  - branches       ``(g1 ==> wp(t1)) && ... && (gn ==> wp(tn))``

Loop headers are cut points.  A header's predicate, as seen by every edge
entering it, is its invariant ``I``; the graph between cut points is acyclic
once loop-back edges are dropped, so every region is processed in reverse
topological order with each block's successors resolved first.

Conditions are produced per *start* and *target*.  The starts are the
function entry (assuming the precondition), every loop body (assuming
``I && C``) and every loop exit (assuming ``I && !C``).  From each start,
one condition is generated for every target the start can reach without
crossing another cut point:

  - the normal exit          ``postcondition``, or ``loop-use`` from a loop exit
  - a loop header            ``loop-initiation`` (entering edge) or
    ``loop-preservation`` (loop-back edge)
  - a panic site             ``panic-freedom``
  - an ``assert``            ``assertion`` or ``call-precondition``

Within one condition every other target contributes ``true`` and every other
assertion is assumed, so each failure is reported exactly once, at its own
location.  For a loop-free function without assertions or panics this is the
single condition ``pre ==> wp(entry)``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .cfg import Assert, Assign, Assume, ControlFlowGraph, Edge, EdgeKind, Havoc, Instr
from .conditions import ConditionKind, VerificationCondition, sorts_for
from .predicates import (
    FALSE,
    TRUE,
    Expr,
    Var,
    conj,
    free_vars,
    implies,
    resolve_old,
    substitute,
)
from .syntax import Span

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Start:
    """A cut point from which conditions are generated."""

    origin: str                   # "entry", "loop-body" or "loop-exit"
    assumption: Expr | None
    block: int                    # first block of the region
    edge: Edge | None = None      # header edge leading to ``block``
    header: int | None = None     # owning loop header (loop starts)


@dataclass(frozen=True)
class _Target:
    kind: ConditionKind
    block: int | None = None      # header id, or block holding an assertion
    index: int | None = None      # instruction index, or edge index for panics


_ASSERTION_KINDS = frozenset({ConditionKind.ASSERTION, ConditionKind.CALL_PRECONDITION})


class WPTransformer:
    """Compute weakest preconditions and verification conditions for a CFG.

    Args:
        cfg: A validated control-flow graph.
        panic_is_failure: When ``True`` (the default) every reachable
            ``panic!`` is a failure; when ``False`` panicking is an acceptable
            outcome and panic sites generate no conditions.
    """

    def __init__(self, cfg: ControlFlowGraph, panic_is_failure: bool = True) -> None:
        self.cfg = cfg
        self.panic_is_failure = panic_is_failure
        self._order = cfg.dag_order()
        self._position = {b: i for i, b in enumerate(self._order)}
        self._edge_index = {id(e): i for i, e in enumerate(cfg.edges)}
        self._fresh = 0

    # -- helpers -----------------------------------------------------------

    @property
    def postcondition(self) -> Expr:
        ann = self.cfg.postcondition
        return ann.predicate if ann is not None else TRUE

    @property
    def precondition(self) -> Expr:
        return conj(*(a.predicate for a in self.cfg.preconditions))

    def invariant(self, header: int) -> Expr:
        ann = self.cfg.block(header).annotation
        return ann.predicate if ann is not None else TRUE

    def _fresh_var(self, name: str) -> Var:
        self._fresh += 1
        return Var(f"{name}#{self._fresh}")

    def wp_statements(
        self,
        statements: tuple[Instr, ...],
        post: Expr,
        target: _Target | None = None,
        block: int | None = None,
    ) -> Expr:
        """Push *post* backwards through straight-line *statements*.

        With *target* ``None`` every assertion is an obligation; otherwise
        only the targeted assertion is, and the others are assumed.
        """
        q = post
        for i in range(len(statements) - 1, -1, -1):
            s = statements[i]
            if isinstance(s, Assign):
                q = substitute(q, {s.target: s.value})
            elif isinstance(s, Havoc):
                q = substitute(q, {s.target: self._fresh_var(s.target)})
            elif isinstance(s, Assume):
                q = implies(s.predicate, q)
            elif isinstance(s, Assert):
                targeted = target is None or (
                    target.kind in _ASSERTION_KINDS and target.block == block and target.index == i
                )
                if targeted:
                    q = conj(s.predicate, q)
                else:
                    q = implies(s.predicate, q)
            else:
                raise TypeError(f"Unknown instruction: {s!r}")
        return q

    @staticmethod
    def _guarded(guard: Expr | None, goal: Expr) -> Expr:
        return goal if guard is None else implies(guard, goal)

    # -- classic block table -----------------------------------------------

    def block_predicates(self) -> dict[int, Expr]:
        """Weakest precondition of every block with all obligations active.

        Loop headers map to their invariant; the normal exit is seeded with
        the postcondition, the abort exit with ``true``; an edge into the
        abort exit carries ``false`` when panics are failures.

        Returns:
            ``{block_id: predicate}`` for every block.
        """
        cfg = self.cfg
        table: dict[int, Expr] = {}
        for b in reversed(self._order):
            block = cfg.block(b)
            if block.is_loop_header:
                table[b] = self.invariant(b)
                continue
            if b == cfg.normal_exit:
                post = self.postcondition
            elif b == cfg.abort_exit:
                post = TRUE
            else:
                parts = []
                for e in cfg.out_edges(b):
                    if cfg.block(e.target).is_loop_header:
                        goal = self.invariant(e.target)
                    elif e.target == cfg.abort_exit:
                        goal = FALSE if self.panic_is_failure else TRUE
                    else:
                        goal = table[e.target]
                    parts.append(self._guarded(e.guard, goal))
                post = conj(*parts)
            table[b] = self.wp_statements(block.statements, post)
        return table

    def entry_obligation(self) -> Expr:
        """``pre ==> wp(entry)`` over the classic block table, pre-state
        references resolved."""
        return resolve_old(implies(self.precondition, self.block_predicates()[self.cfg.entry]))

    # -- starts and targets ------------------------------------------------

    def _starts(self) -> list[_Start]:
        cfg = self.cfg
        pre = self.precondition if cfg.preconditions else None
        starts = [_Start("entry", pre, cfg.entry)]
        for h in cfg.loop_headers:
            inv = self.invariant(h)
            for e in cfg.out_edges(h):
                origin = "loop-exit" if e.kind is EdgeKind.CONDITIONAL_FALSE else "loop-body"
                starts.append(_Start(origin, conj(inv, e.guard) if e.guard is not None else inv, e.target, e, h))
        return starts

    def _region(self, start: _Start) -> list[int]:
        """Blocks reachable from *start* without crossing a loop header, in
        topological order."""
        cfg = self.cfg
        if cfg.block(start.block).is_loop_header:
            return []
        seen = {start.block}
        stack = [start.block]
        while stack:
            for e in cfg.out_edges(stack.pop()):
                t = e.target
                if t in seen or cfg.block(t).is_loop_header or t == cfg.abort_exit:
                    continue
                seen.add(t)
                stack.append(t)
        seen.discard(cfg.abort_exit)
        return sorted(seen, key=self._position.__getitem__)

    def _edge_target(self, e: Edge) -> _Target | None:
        cfg = self.cfg
        if cfg.block(e.target).is_loop_header:
            kind = ConditionKind.LOOP_PRESERVATION if e.kind is EdgeKind.LOOP_BACK else ConditionKind.LOOP_INITIATION
            return _Target(kind, e.target)
        if e.target == cfg.abort_exit and self.panic_is_failure:
            return _Target(ConditionKind.PANIC_FREEDOM, index=self._edge_index[id(e)])
        return None

    def _targets(self, start: _Start, region: list[int]) -> list[_Target]:
        cfg = self.cfg
        found: list[_Target] = []

        def add(t: _Target | None) -> None:
            if t is not None and t not in found:
                found.append(t)

        if start.edge is not None:
            add(self._edge_target(start.edge))
        for b in region:
            for i, s in enumerate(cfg.block(b).statements):
                if isinstance(s, Assert):
                    add(_Target(s.kind, b, i))
            if b == cfg.normal_exit:
                kind = ConditionKind.LOOP_USE if start.origin == "loop-exit" else ConditionKind.POSTCONDITION
                add(_Target(kind))
            for e in cfg.out_edges(b):
                add(self._edge_target(e))
        return found

    # -- one pass ----------------------------------------------------------

    def _edge_goal(self, e: Edge, target: _Target, table: dict[int, Expr]) -> Expr:
        cfg = self.cfg
        if cfg.block(e.target).is_loop_header:
            if target.block == e.target and (
                (target.kind is ConditionKind.LOOP_PRESERVATION and e.kind is EdgeKind.LOOP_BACK)
                or (target.kind is ConditionKind.LOOP_INITIATION and e.kind is not EdgeKind.LOOP_BACK)
            ):
                return self.invariant(e.target)
            return TRUE
        if e.target == cfg.abort_exit:
            if target.kind is ConditionKind.PANIC_FREEDOM and target.index == self._edge_index[id(e)]:
                return FALSE
            return TRUE
        return table[e.target]

    def _pass(self, start: _Start, region: list[int], target: _Target) -> Expr:
        cfg = self.cfg
        table: dict[int, Expr] = {}
        for b in reversed(region):
            block = cfg.block(b)
            if b == cfg.normal_exit:
                post = self.postcondition if target.kind in (ConditionKind.POSTCONDITION, ConditionKind.LOOP_USE) else TRUE
            else:
                post = conj(*(self._guarded(e.guard, self._edge_goal(e, target, table)) for e in cfg.out_edges(b)))
            table[b] = self.wp_statements(block.statements, post, target, b)
        if start.edge is not None and not region:
            return self._edge_goal(start.edge, target, table)
        return table[start.block]

    def _condition(self, start: _Start, target: _Target, region: list[int]) -> VerificationCondition:
        span, description = self._describe(start, target)
        name = self.cfg.function_name
        try:
            goal = self._pass(start, region, target)
            formula = goal if start.assumption is None else implies(start.assumption, goal)
            if start.origin == "entry":
                formula = resolve_old(formula)
        except Exception as e:
            logger.warning("%s: could not compute %s condition: %s", name, target.kind.value, e)
            return VerificationCondition(
                name, target.kind, TRUE, span, description, error=str(e),
                assumes_missing_invariant=self._assumes_missing_invariant(start),
            )
        return VerificationCondition(
            name, target.kind, formula, span, description, sorts_for(free_vars(formula), self.cfg.sorts),
            assumes_missing_invariant=self._assumes_missing_invariant(start),
        )

    def _assumes_missing_invariant(self, start: _Start) -> bool:
        if start.header is None:
            return False
        ann = self.cfg.block(start.header).annotation
        return ann is not None and ann.implicit

    def _describe(self, start: _Start, target: _Target) -> tuple[Span | None, str]:
        cfg = self.cfg
        kind = target.kind
        if kind is ConditionKind.POSTCONDITION:
            ann = cfg.postcondition
            return (ann.span if ann else None), f"postcondition {self.postcondition} may not hold"
        if kind is ConditionKind.LOOP_USE:
            ann = cfg.postcondition
            span = ann.span if ann and ann.span else cfg.block(start.header).span
            return span, (
                f"postcondition {self.postcondition} may not follow from loop invariant"
                f" {self.invariant(start.header)} on loop exit"
            )
        if kind is ConditionKind.LOOP_INITIATION:
            ann = cfg.block(target.block).annotation
            return (ann.span if ann else None), f"loop invariant {self.invariant(target.block)} may not hold on loop entry"
        if kind is ConditionKind.LOOP_PRESERVATION:
            ann = cfg.block(target.block).annotation
            return (ann.span if ann else None), (
                f"loop invariant {self.invariant(target.block)} may not be preserved by the loop body"
            )
        if kind is ConditionKind.PANIC_FREEDOM:
            return cfg.edges[target.index].span, "panic may be reachable"
        instr = cfg.block(target.block).statements[target.index]
        return instr.span, instr.description or f"assertion {instr.predicate} may fail"

    # -- public ------------------------------------------------------------

    def generate(self) -> list[VerificationCondition]:
        """Generate every verification condition of the graph, in a stable
        order (starts first, then targets in topological order)."""
        conditions: list[VerificationCondition] = []
        for start in self._starts():
            region = self._region(start)
            for target in self._targets(start, region):
                conditions.append(self._condition(start, target, region))
        logger.debug("%s: %d verification condition(s)", self.cfg.function_name, len(conditions))
        return conditions


def generate_vcs(cfg: ControlFlowGraph, panic_is_failure: bool = True) -> list[VerificationCondition]:
    """Generate the verification conditions of *cfg*.

    Args:
        cfg: The control-flow graph of one function.
        panic_is_failure: Whether reaching ``panic!`` is a failure.

    Returns:
        The conditions, in generation order.
    """
    return WPTransformer(cfg, panic_is_failure).generate()
