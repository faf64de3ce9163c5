"""
binsig/graph.py
===============

Interprocedural control-flow graph (supergraph) of a lifted program.

Construction
------------
*  Every block ``b`` becomes two nodes, ``BlkStart(b)`` and ``BlkEnd(b)``,
   joined by a ``BLOCK`` edge (the defs of ``b``).
*  Intraprocedural jumps become ``JUMP`` edges ``BlkEnd → BlkStart``.  The
   edge of an unconditional jump that follows a conditional one remembers
   the conditional as ``untaken``.
*  A direct call to a function ``f`` of the program gains

   - a ``CALL`` edge to the entry of ``f``,
   - for every returning block ``r`` of ``f`` a ``CallReturn(call, r)``
     node fed by a ``CR_CALL_STUB`` edge (the caller state before the call)
     and a ``CALL_COMBINE`` edge (the callee state at ``r``),
   - a ``RETURN_COMBINE`` edge from the ``CallReturn`` node to the return
     site of the call.

*  Every other call (extern symbols, unresolved or indirect targets,
   ``CallOther``) gets an ``EXTERN_CALL_STUB`` edge straight to its return
   site.

The graph is a :class:`networkx.MultiDiGraph`; nodes carry the ``block``
and ``sub`` terms they belong to, edges carry ``kind`` and the jump terms
the fixpoint driver passes to the transfer functions.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import networkx

from binsig.ir import (
    Blk,
    Branch,
    BranchInd,
    Call,
    CallInd,
    CallOther,
    CBranch,
    Jmp,
    Return,
    Sub,
    Term,
    Tid,
)
from binsig.project import Project

logger = logging.getLogger(__name__)


class EdgeKind(enum.Enum):
    BLOCK = "block"
    JUMP = "jump"
    CALL = "call"
    EXTERN_CALL_STUB = "extern_call_stub"
    CR_CALL_STUB = "cr_call_stub"
    CALL_COMBINE = "call_combine"
    RETURN_COMBINE = "return_combine"


@dataclass(frozen=True, order=True)
class BlkStart:
    block: Tid
    sub: Tid

    def __repr__(self) -> str:
        return f"BlkStart({self.block} @ {self.sub})"


@dataclass(frozen=True, order=True)
class BlkEnd:
    block: Tid
    sub: Tid

    def __repr__(self) -> str:
        return f"BlkEnd({self.block} @ {self.sub})"


@dataclass(frozen=True, order=True)
class CallReturn:
    """Joins the caller state before a call with the callee state at one return."""
    call_block: Tid
    call_sub: Tid
    return_block: Tid
    return_sub: Tid

    def __repr__(self) -> str:
        return (
            f"CallReturn({self.call_block} @ {self.call_sub} <- "
            f"{self.return_block} @ {self.return_sub})"
        )


class GraphBuilder:
    """Assembles the supergraph of ``project.program``."""

    def __init__(self, project: Project) -> None:
        self.project = project
        self.graph = networkx.MultiDiGraph()
        self._blocks: Dict[Tid, Tuple[Term[Blk], Term[Sub]]] = {}
        self._returns: Dict[Tid, List[Tuple[Term[Blk], Term[Jmp]]]] = {}

    def build(self) -> networkx.MultiDiGraph:
        for sub in self.project.program.subs.values():
            self._add_sub(sub)
        for block, sub in list(self._blocks.values()):
            self._add_jumps(block, sub)
        logger.debug(
            "Built supergraph with %d nodes and %d edges",
            self.graph.number_of_nodes(),
            self.graph.number_of_edges(),
        )
        return self.graph

    # ------------------------------------------------------------------

    def _add_sub(self, sub: Term[Sub]) -> None:
        returns: List[Tuple[Term[Blk], Term[Jmp]]] = []
        for block in sub.term.blocks:
            start = BlkStart(block.tid, sub.tid)
            end = BlkEnd(block.tid, sub.tid)
            self.graph.add_node(start, block=block, sub=sub)
            self.graph.add_node(end, block=block, sub=sub)
            self.graph.add_edge(start, end, kind=EdgeKind.BLOCK)
            self._blocks[block.tid] = (block, sub)
            for jmp in block.term.jmps:
                if isinstance(jmp.term, Return):
                    returns.append((block, jmp))
        self._returns[sub.tid] = returns

    def _start_of(self, block_tid: Optional[Tid]) -> Optional[BlkStart]:
        if block_tid is None or block_tid not in self._blocks:
            return None
        _, sub = self._blocks[block_tid]
        return BlkStart(block_tid, sub.tid)

    def _add_jumps(self, block: Term[Blk], sub: Term[Sub]) -> None:
        source = BlkEnd(block.tid, sub.tid)
        untaken: Optional[Term[Jmp]] = None
        for jmp in block.term.jmps:
            term = jmp.term
            if isinstance(term, CBranch):
                self._add_jump_edge(source, self._start_of(term.target), jmp, None)
                untaken = jmp
            elif isinstance(term, Branch):
                self._add_jump_edge(source, self._start_of(term.target), jmp, untaken)
            elif isinstance(term, BranchInd):
                for target in block.term.indirect_jmp_targets:
                    self._add_jump_edge(source, self._start_of(target), jmp, untaken)
            elif isinstance(term, Call):
                self._add_call(source, block, sub, jmp, term)
            elif isinstance(term, (CallInd, CallOther)):
                self._add_call_stub(source, jmp, term.return_)
            elif isinstance(term, Return):
                continue
            else:
                raise TypeError(f"Not a jump: {type(term).__name__}")

    def _add_jump_edge(
        self,
        source: BlkEnd,
        target: Optional[BlkStart],
        jmp: Term[Jmp],
        untaken: Optional[Term[Jmp]],
    ) -> None:
        if target is None:
            logger.debug("Jump %s has no target block in the program", jmp.tid)
            return
        self.graph.add_edge(source, target, kind=EdgeKind.JUMP, jump=jmp, untaken=untaken)

    def _add_call_stub(
        self, source: BlkEnd, jmp: Term[Jmp], return_tid: Optional[Tid]
    ) -> None:
        target = self._start_of(return_tid)
        if target is None:
            return
        self.graph.add_edge(source, target, kind=EdgeKind.EXTERN_CALL_STUB, jump=jmp)

    def _add_call(
        self,
        source: BlkEnd,
        block: Term[Blk],
        sub: Term[Sub],
        jmp: Term[Jmp],
        call: Call,
    ) -> None:
        callee = self.project.program.subs.get(call.target)
        if callee is None or not callee.term.blocks:
            self._add_call_stub(source, jmp, call.return_)
            return
        entry = callee.term.blocks[0]
        self.graph.add_edge(
            source, BlkStart(entry.tid, callee.tid), kind=EdgeKind.CALL, jump=jmp
        )
        return_site = self._start_of(call.return_)
        if return_site is None:
            return
        for return_block, return_jmp in self._returns.get(callee.tid, []):
            combinator = CallReturn(block.tid, sub.tid, return_block.tid, callee.tid)
            self.graph.add_node(combinator, block=block, sub=sub)
            self.graph.add_edge(source, combinator, kind=EdgeKind.CR_CALL_STUB, jump=jmp)
            self.graph.add_edge(
                BlkEnd(return_block.tid, callee.tid),
                combinator,
                kind=EdgeKind.CALL_COMBINE,
                jump=return_jmp,
            )
            self.graph.add_edge(
                combinator,
                return_site,
                kind=EdgeKind.RETURN_COMBINE,
                jump=jmp,
                return_jump=return_jmp,
                calling_convention=callee.term.calling_convention,
            )


def build_graph(project: Project) -> networkx.MultiDiGraph:
    """Build the supergraph of ``project.program``."""
    return GraphBuilder(project).build()


__all__ = [
    "EdgeKind",
    "BlkStart",
    "BlkEnd",
    "CallReturn",
    "GraphBuilder",
    "build_graph",
]
