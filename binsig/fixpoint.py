"""
binsig/fixpoint.py
==================

Forward interprocedural fixpoint over the supergraph of
:mod:`binsig.graph`.

The driver knows nothing about the abstract domain; every edge kind is
mapped to one transfer function of the context object
(:class:`binsig.context.Context`):

    BLOCK             update_def (once per def of the block)
    JUMP              specialize_conditional, then update_jump
    CALL              update_call
    EXTERN_CALL_STUB  update_call_stub
    CR_CALL_STUB      caller state     → CallFlowCombinator.call_stub
    CALL_COMBINE      callee state     → CallFlowCombinator.interprocedural_flow
    RETURN_COMBINE    update_return(interprocedural_flow, call_stub, ...)

A transfer function returning ``None`` stops propagation along that edge.

Algorithm
---------
Worklist iteration (FIFO).  Whenever the value at a node grows, the node
is queued again and all its outgoing edges are re-evaluated.  The values
form a lattice of finite height for a fixed program, so the loop
terminates; ``max_iterations`` is a safety net against runaway programs.
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Any, Deque, Dict, Hashable, Optional, Set, Union

import networkx

from binsig.graph import EdgeKind
from binsig.ir import CBranch
from binsig.state import State

logger = logging.getLogger(__name__)

DEFAULT_MAX_ITERATIONS = 100_000


@dataclass(frozen=True)
class CallFlowCombinator:
    """
    Value of a ``CallReturn`` node: the caller state before the call and the
    callee state at one of its returns.  Either side may still be missing.
    """
    call_stub: Optional[State] = None
    interprocedural_flow: Optional[State] = None


NodeValue = Union[State, CallFlowCombinator]


def _merge_optional(context: Any, left: Optional[State], right: Optional[State]) -> Optional[State]:
    if left is None:
        return right
    if right is None:
        return left
    return context.merge(left, right)


class InterproceduralFixpoint:
    """
    Worklist solver for a context with the transfer functions listed in the
    module docstring.

    Usage::

        solver = InterproceduralFixpoint(graph, context)
        solver.set_node_value(entry_node, initial_state)
        converged = solver.compute()
        state = solver.get_node_value(some_node)
    """

    def __init__(
        self,
        graph: networkx.MultiDiGraph,
        context: Any,
        max_iterations: int = DEFAULT_MAX_ITERATIONS,
    ) -> None:
        self.graph = graph
        self.context = context
        self.max_iterations = max_iterations
        self.iterations = 0
        self._values: Dict[Hashable, NodeValue] = {}
        self._worklist: Deque[Hashable] = deque()
        self._queued: Set[Hashable] = set()

    # ------------------------------------------------------------------
    # Node values
    # ------------------------------------------------------------------

    def get_node_value(self, node: Hashable) -> Optional[NodeValue]:
        return self._values.get(node)

    def set_node_value(self, node: Hashable, value: NodeValue) -> None:
        """Overwrite the value at *node* and schedule it."""
        self._values[node] = value
        self._enqueue(node)

    def node_values(self) -> Dict[Hashable, NodeValue]:
        return dict(self._values)

    def _enqueue(self, node: Hashable) -> None:
        if node not in self._queued:
            self._queued.add(node)
            self._worklist.append(node)

    def _merge_into(self, node: Hashable, value: NodeValue) -> None:
        old = self._values.get(node)
        if old is None:
            self.set_node_value(node, value)
            return
        merged = self._merge_values(old, value)
        if merged != old:
            self.set_node_value(node, merged)

    def _merge_values(self, left: NodeValue, right: NodeValue) -> NodeValue:
        if isinstance(left, CallFlowCombinator) and isinstance(right, CallFlowCombinator):
            return CallFlowCombinator(
                _merge_optional(self.context, left.call_stub, right.call_stub),
                _merge_optional(
                    self.context, left.interprocedural_flow, right.interprocedural_flow
                ),
            )
        if isinstance(left, State) and isinstance(right, State):
            return self.context.merge(left, right)
        raise TypeError(
            f"Cannot merge {type(left).__name__} with {type(right).__name__}"
        )

    # ------------------------------------------------------------------
    # Iteration
    # ------------------------------------------------------------------

    def compute(self) -> bool:
        """Iterate until no value changes.  Returns ``False`` if the cap was hit."""
        while self._worklist and self.iterations < self.max_iterations:
            self.iterations += 1
            node = self._worklist.popleft()
            self._queued.discard(node)
            value = self._values.get(node)
            if value is None:
                continue
            for _, target, data in self.graph.out_edges(node, data=True):
                new_value = self._update_edge(node, target, value, data)
                if new_value is not None:
                    self._merge_into(target, new_value)

        converged = not self._worklist
        if not converged:
            logger.warning(
                "Fixpoint computation did not converge after %d iterations "
                "(%d nodes still queued)",
                self.iterations,
                len(self._worklist),
            )
        return converged

    def _update_edge(
        self,
        source: Hashable,
        target: Hashable,
        value: NodeValue,
        data: Dict[str, Any],
    ) -> Optional[NodeValue]:
        kind = data["kind"]
        if kind is EdgeKind.BLOCK:
            state: Optional[State] = value
            for def_term in self.graph.nodes[source]["block"].term.defs:
                state = self.context.update_def(state, def_term)
                if state is None:
                    return None
            return state

        if kind is EdgeKind.JUMP:
            jump = data["jump"]
            untaken = data.get("untaken")
            block = self.graph.nodes[source]["block"]
            state = value
            if isinstance(jump.term, CBranch):
                state = self.context.specialize_conditional(
                    state, jump.term.condition, block, True
                )
            elif untaken is not None:
                state = self.context.specialize_conditional(
                    state, untaken.term.condition, block, False
                )
            if state is None:
                return None
            return self.context.update_jump(
                state, jump, untaken, self.graph.nodes[target]["block"]
            )

        if kind is EdgeKind.CALL:
            callee = self.graph.nodes[target]["sub"]
            return self.context.update_call(
                value, data["jump"], target, callee.term.calling_convention
            )

        if kind is EdgeKind.EXTERN_CALL_STUB:
            return self.context.update_call_stub(value, data["jump"])

        if kind is EdgeKind.CR_CALL_STUB:
            return CallFlowCombinator(call_stub=value)

        if kind is EdgeKind.CALL_COMBINE:
            return CallFlowCombinator(interprocedural_flow=value)

        if kind is EdgeKind.RETURN_COMBINE:
            return self.context.update_return(
                value.interprocedural_flow,
                value.call_stub,
                data["jump"],
                data["return_jump"],
                data.get("calling_convention"),
            )

        raise ValueError(f"Unknown edge kind: {kind!r}")


__all__ = [
    "DEFAULT_MAX_ITERATIONS",
    "CallFlowCombinator",
    "InterproceduralFixpoint",
]
