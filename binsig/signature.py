"""
binsig/signature.py
===================

Function signatures recovered from the fixpoint states.

:func:`compute_function_signatures` is the entry point of the analysis:

    1. build the supergraph of the program
    2. seed the entry block of every function with a fresh :class:`State`
    3. run :class:`~binsig.fixpoint.InterproceduralFixpoint` with a
       :class:`~binsig.context.Context`
    4. merge the access patterns of all states of a function into its
       :class:`FunctionSignature`

Only parameters that are actually accessed end up in a signature.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Dict, Mapping, Optional, Sequence

from binsig.config import AnalysisConfig
from binsig.context import Context
from binsig.fixpoint import CallFlowCombinator, InterproceduralFixpoint
from binsig.graph import BlkStart, build_graph
from binsig.ir import Tid
from binsig.project import Arg, Project
from binsig.state import AccessPattern, State

logger = logging.getLogger(__name__)


@dataclass
class FunctionSignature:
    """The parameters of a function together with how they are accessed."""
    parameters: Dict[Arg, AccessPattern] = field(default_factory=dict)

    @classmethod
    def from_state(cls, state: State) -> FunctionSignature:
        signature = cls()
        signature.merge_with_fn_sig_of_state(state)
        return signature

    def merge_with_fn_sig_of_state(self, state: State) -> None:
        for arg, pattern in state.get_params_of_current_function():
            if not pattern.is_accessed():
                continue
            known = self.parameters.get(arg)
            self.parameters[arg] = pattern if known is None else known.merge(pattern)

    def __len__(self) -> int:
        return len(self.parameters)


@dataclass
class SignatureAnalysisResult:
    signatures: Dict[Tid, FunctionSignature] = field(default_factory=dict)
    converged: bool = True
    iterations: int = 0

    def get(self, sub_tid: Tid) -> Optional[FunctionSignature]:
        return self.signatures.get(sub_tid)


def compute_function_signatures(
    project: Project,
    config: Optional[AnalysisConfig] = None,
    variadic_args: Optional[Mapping[Tid, Sequence[Arg]]] = None,
) -> SignatureAnalysisResult:
    """
    Compute the signature of every function of ``project.program``.

    Parameters
    ----------
    project : Project
    config : AnalysisConfig, optional
        Defaults to ``AnalysisConfig()``.
    variadic_args : Mapping[Tid, Sequence[Arg]], optional
        Variadic argument locations per call site, as returned by
        :func:`binsig.arguments.collect_variadic_arguments`.
    """
    config = config or AnalysisConfig()
    if config.default_calling_convention is not None:
        project = replace(project, default_calling_convention=config.default_calling_convention)

    graph = build_graph(project)
    context = Context(project, graph, variadic_args)
    solver = InterproceduralFixpoint(graph, context, config.max_fixpoint_iterations)

    for sub in project.program.subs.values():
        if not sub.term.blocks:
            continue
        cconv = None
        if sub.term.calling_convention is not None:
            cconv = project.calling_conventions.get(sub.term.calling_convention)
        if cconv is None:
            cconv = project.get_standard_calling_convention()
        if cconv is None:
            logger.warning(
                "No calling convention for function %s, skipping it", sub.term.name
            )
            continue
        entry = BlkStart(sub.term.blocks[0].tid, sub.tid)
        solver.set_node_value(
            entry, State.new(sub.tid, project.stack_pointer_register, cconv)
        )

    converged = solver.compute()

    signatures: Dict[Tid, FunctionSignature] = {}
    for node, value in solver.node_values().items():
        if isinstance(value, CallFlowCombinator):
            continue
        sub = graph.nodes[node]["sub"]
        signature = signatures.setdefault(sub.tid, FunctionSignature())
        signature.merge_with_fn_sig_of_state(value)

    logger.info(
        "Computed signatures of %d functions (%d iterations%s)",
        len(signatures),
        solver.iterations,
        "" if converged else ", not converged",
    )
    return SignatureAnalysisResult(signatures, converged, solver.iterations)


__all__ = [
    "FunctionSignature",
    "SignatureAnalysisResult",
    "compute_function_signatures",
]
