"""Control-flow graph data model and export.

A :class:`ControlFlowGraph` is a flat table of :class:`BasicBlock` objects
plus a list of :class:`Edge` records that refer to blocks by index.  Loops are
plain data (an edge of kind ``loop-back``), never a cycle of object
references, so the graph is immutable and trivially shareable.

Blocks hold straight-line instructions only:

  - ``Assign``  ``x = e``
  - ``Havoc``   ``x`` takes an arbitrary value (calls, unset declarations)
  - ``Assert``  a proof obligation (user assertion or callee precondition)
  - ``Assume``  a fact that may be relied upon (callee postcondition, type
    refinement)

Export formats (for renderers that know nothing about WP):

  - :meth:`ControlFlowGraph.to_lines`: one ``node``/``edge`` declaration per line
  - :meth:`ControlFlowGraph.to_json`: JSON-compatible dict
  - :meth:`ControlFlowGraph.to_dot`: Graphviz ``digraph``
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any

from .conditions import ConditionKind
from .diagnostics import Diagnostic
from .predicates import Expr
from .syntax import Span
from .types import Sort


class EdgeKind(Enum):
    FALLTHROUGH = "fallthrough"
    CONDITIONAL_TRUE = "conditional-true"
    CONDITIONAL_FALSE = "conditional-false"
    LOOP_BACK = "loop-back"
    EARLY_EXIT = "early-exit"


class AnnotationKind(Enum):
    PRECONDITION = "precondition"
    POSTCONDITION = "postcondition"
    INVARIANT = "invariant"


@dataclass(frozen=True)
class Annotation:
    """A predicate attached to a program point.

    Attributes:
        kind: Precondition (entry), postcondition (exit) or invariant
            (loop header).
        predicate: The annotated formula.
        span: Where the annotation was written (or the construct it
            decorates, for implicit annotations).
        implicit: ``True`` when the annotation was not written in the source:
            a missing annotation replaced by ``true``, or a refinement
            derived from a parameter type.
    """

    kind: AnnotationKind
    predicate: Expr
    span: Span | None = None
    implicit: bool = False

    def to_json(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "predicate": str(self.predicate),
            "span": self.span.to_json() if self.span else None,
            "implicit": self.implicit,
        }


# ---------------------------------------------------------------------------
# Instructions
# ---------------------------------------------------------------------------

class Instr:
    """Base class of straight-line block instructions."""

    __slots__ = ()


@dataclass(frozen=True)
class Assign(Instr):
    target: str
    value: Expr
    span: Span | None = None

    def __str__(self) -> str:
        return f"{self.target} = {self.value}"


@dataclass(frozen=True)
class Havoc(Instr):
    target: str
    span: Span | None = None

    def __str__(self) -> str:
        return f"havoc {self.target}"


@dataclass(frozen=True)
class Assert(Instr):
    predicate: Expr
    kind: ConditionKind = ConditionKind.ASSERTION
    span: Span | None = None
    description: str = ""

    def __str__(self) -> str:
        return f"assert {self.predicate}"


@dataclass(frozen=True)
class Assume(Instr):
    predicate: Expr
    span: Span | None = None

    def __str__(self) -> str:
        return f"assume {self.predicate}"


# ---------------------------------------------------------------------------
# Blocks and edges
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BasicBlock:
    """Straight-line code with a unique id.

    ``annotation`` is set (kind ``invariant``) exactly on loop headers.
    """

    id: int
    statements: tuple[Instr, ...] = ()
    annotation: Annotation | None = None
    span: Span | None = None

    @property
    def is_loop_header(self) -> bool:
        return self.annotation is not None and self.annotation.kind is AnnotationKind.INVARIANT


@dataclass(frozen=True)
class Edge:
    """Directed edge between two blocks (by id).

    Attributes:
        guard: Branch condition that must hold to take the edge, or ``None``.
        span: Source construct responsible for the edge (branch, loop,
            ``return`` or ``panic!``).
    """

    source: int
    target: int
    kind: EdgeKind
    guard: Expr | None = None
    span: Span | None = None


# ---------------------------------------------------------------------------
# Graph
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ControlFlowGraph:
    """CFG of one function.

    Attributes:
        function_name: Name of the function.
        blocks: Block table; ``blocks[i].id == i``.
        edges: All edges.
        entry: Id of the entry block.
        normal_exit: Id of the block where the function returns normally
            (``None`` when every path panics).
        abort_exit: Id of the block reached by ``panic!`` (``None`` when the
            function never panics).
        preconditions: Entry annotations (declared clauses and parameter
            type refinements).
        postcondition: Exit annotation (implicit ``true`` if none declared).
        sorts: Sort of every program variable.
        diagnostics: Warnings recorded while building the graph.
    """

    function_name: str
    blocks: tuple[BasicBlock, ...]
    edges: tuple[Edge, ...]
    entry: int
    normal_exit: int | None
    abort_exit: int | None
    preconditions: tuple[Annotation, ...] = ()
    postcondition: Annotation | None = None
    sorts: Mapping[str, Sort] = field(default_factory=dict, compare=False, hash=False)
    diagnostics: tuple[Diagnostic, ...] = ()

    # -- queries -----------------------------------------------------------

    @cached_property
    def _out(self) -> dict[int, tuple[Edge, ...]]:
        out: dict[int, list[Edge]] = {b.id: [] for b in self.blocks}
        for e in self.edges:
            out[e.source].append(e)
        return {k: tuple(v) for k, v in out.items()}

    @cached_property
    def _in(self) -> dict[int, tuple[Edge, ...]]:
        inc: dict[int, list[Edge]] = {b.id: [] for b in self.blocks}
        for e in self.edges:
            inc[e.target].append(e)
        return {k: tuple(v) for k, v in inc.items()}

    def block(self, block_id: int) -> BasicBlock:
        return self.blocks[block_id]

    def out_edges(self, block_id: int) -> tuple[Edge, ...]:
        return self._out.get(block_id, ())

    def in_edges(self, block_id: int) -> tuple[Edge, ...]:
        return self._in.get(block_id, ())

    def successors(self, block_id: int) -> list[int]:
        return [e.target for e in self.out_edges(block_id)]

    def predecessors(self, block_id: int) -> list[int]:
        return [e.source for e in self.in_edges(block_id)]

    @property
    def exits(self) -> tuple[int, ...]:
        return tuple(b for b in (self.normal_exit, self.abort_exit) if b is not None)

    def is_exit(self, block_id: int) -> bool:
        return block_id in self.exits

    @property
    def loop_headers(self) -> tuple[int, ...]:
        return tuple(b.id for b in self.blocks if b.is_loop_header)

    def roles(self, block_id: int) -> tuple[str, ...]:
        """Human-readable roles of a block (``entry``, ``loop-header``, ...)."""
        roles: list[str] = []
        if block_id == self.entry:
            roles.append("entry")
        if self.blocks[block_id].is_loop_header:
            roles.append("loop-header")
        if block_id == self.normal_exit:
            roles.append("normal-exit")
        if block_id == self.abort_exit:
            roles.append("abort-exit")
        return tuple(roles) or ("plain",)

    def reachable(self) -> set[int]:
        seen = {self.entry}
        stack = [self.entry]
        while stack:
            for succ in self.successors(stack.pop()):
                if succ not in seen:
                    seen.add(succ)
                    stack.append(succ)
        return seen

    def dag_order(self) -> list[int]:
        """Topological order of the blocks with loop-back edges removed.

        Ties are broken by block id, so the order is deterministic.

        Raises:
            ValueError: If the graph minus its loop-back edges has a cycle.
        """
        indegree = {b.id: 0 for b in self.blocks}
        for e in self.edges:
            if e.kind is not EdgeKind.LOOP_BACK:
                indegree[e.target] += 1
        ready = sorted(b for b, d in indegree.items() if d == 0)
        order: list[int] = []
        while ready:
            node = ready.pop(0)
            order.append(node)
            for e in self.out_edges(node):
                if e.kind is EdgeKind.LOOP_BACK:
                    continue
                indegree[e.target] -= 1
                if indegree[e.target] == 0:
                    ready.append(e.target)
                    ready.sort()
        if len(order) != len(self.blocks):
            raise ValueError(f"CFG of '{self.function_name}' has a cycle without a loop-back edge")
        return order

    def validate(self) -> list[str]:
        """Check the structural invariants.

        Returns:
            A list of problems; empty when the graph is well formed.
        """
        problems: list[str] = []
        ids = {b.id for b in self.blocks}
        for i, b in enumerate(self.blocks):
            if b.id != i:
                problems.append(f"block at index {i} has id {b.id}")
        for e in self.edges:
            if e.source not in ids or e.target not in ids:
                problems.append(f"edge {e.source} -> {e.target} references a missing block")
        if problems:
            return problems
        if self.entry not in ids:
            problems.append(f"entry block {self.entry} does not exist")
            return problems
        unreachable = ids - self.reachable()
        if unreachable:
            problems.append(f"unreachable blocks: {sorted(unreachable)}")
        for b in self.blocks:
            if not self.is_exit(b.id) and not self.out_edges(b.id):
                problems.append(f"block {b.id} is not an exit and has no successor")
        for x in self.exits:
            if self.out_edges(x):
                problems.append(f"exit block {x} has outgoing edges")
        for e in self.edges:
            if e.kind is EdgeKind.LOOP_BACK and not self.blocks[e.target].is_loop_header:
                problems.append(f"loop-back edge {e.source} -> {e.target} does not target a loop header")
        try:
            self.dag_order()
        except ValueError as exc:
            problems.append(str(exc))
        return problems

    def cutpoint_paths(self) -> list[tuple[int, ...]]:
        """Enumerate the basic paths between cut points.

        Cut points are the entry, every loop header and every exit.  Each
        path starts at the entry or a loop header and follows edges until
        it reaches the next cut point, so the number of paths is finite
        even for loops.
        """
        headers = set(self.loop_headers)
        stops = headers | set(self.exits)
        paths: list[tuple[int, ...]] = []

        def extend(path: list[int]) -> None:
            last = path[-1]
            out = self.out_edges(last)
            if len(path) > 1 and last in stops or not out:
                paths.append(tuple(path))
                return
            for e in out:
                if e.target in path and e.target not in headers:
                    continue
                path.append(e.target)
                extend(path)
                path.pop()

        for start in [self.entry, *sorted(headers - {self.entry})]:
            extend([start])
        return paths

    # -- export ------------------------------------------------------------

    def iter_lines(self) -> Iterator[str]:
        for b in self.blocks:
            ann = str(b.annotation.predicate) if b.annotation else "-"
            stmts = "; ".join(str(s) for s in b.statements) or "-"
            yield f"node\t{b.id}\t{','.join(self.roles(b.id))}\t{ann}\t{stmts}"
        for e in self.edges:
            guard = str(e.guard) if e.guard is not None else "-"
            yield f"edge\t{e.source}\t{e.target}\t{e.kind.value}\t{guard}"

    def to_lines(self) -> str:
        """Tab-separated ``node``/``edge`` declarations, one per line.

        ``node  <id>  <roles>  <annotation|->  <statements|->``
        ``edge  <source>  <target>  <kind>  <guard|->``
        """
        return "\n".join(self.iter_lines()) + "\n"

    def to_json(self) -> dict[str, Any]:
        return {
            "function": self.function_name,
            "entry": self.entry,
            "normal_exit": self.normal_exit,
            "abort_exit": self.abort_exit,
            "blocks": [
                {
                    "id": b.id,
                    "roles": list(self.roles(b.id)),
                    "statements": [str(s) for s in b.statements],
                    "annotation": b.annotation.to_json() if b.annotation else None,
                }
                for b in self.blocks
            ],
            "edges": [
                {
                    "source": e.source,
                    "target": e.target,
                    "kind": e.kind.value,
                    "guard": str(e.guard) if e.guard is not None else None,
                }
                for e in self.edges
            ],
        }

    def to_dot(self) -> str:
        """Render the graph in Graphviz ``dot`` syntax."""
        lines = [f"digraph {_dot_id(self.function_name)} {{"]
        for b in self.blocks:
            label_lines = [f"B{b.id}"]
            if b.annotation is not None:
                label_lines.append(f"@Inv: {b.annotation.predicate}")
            label_lines.extend(str(s) for s in b.statements)
            label = _escape("\\l".join(label_lines) + "\\l")
            lines.append(f'  {b.id} [label="{label}", shape={_shape(self, b)}];')
        for e in self.edges:
            label = e.kind.value if e.guard is None else f"{e.kind.value}: {e.guard}"
            lines.append(f'  {e.source} -> {e.target} [label="{_escape(label)}"];')
        lines.append("}")
        return "\n".join(lines) + "\n"


def _shape(cfg: ControlFlowGraph, b: BasicBlock) -> str:
    if b.id == cfg.entry:
        return "Mdiamond"
    if b.is_loop_header:
        return "diamond"
    if b.id == cfg.abort_exit:
        return "octagon"
    if b.id == cfg.normal_exit:
        return "ellipse"
    return "box"


def _escape(text: str) -> str:
    return text.replace('"', '\\"')


def _dot_id(name: str) -> str:
    return '"' + _escape(name) + '"'
