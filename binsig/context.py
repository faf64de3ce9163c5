"""
binsig/context.py
=================

Transfer functions of the function signature analysis.

:class:`Context` is what :class:`binsig.fixpoint.InterproceduralFixpoint`
calls while it walks the supergraph.  Every transfer works on a copy of
the incoming :class:`~binsig.state.State`; a return value of ``None`` means
"no information flows along this edge" and turns the edge into a dead end.

Call handling in a nutshell
---------------------------
``update_call``
    Never passes anything to the callee.  Each function is analysed from
    a fresh state, so its access patterns summarise the function itself
    and can be reused at every call site.
``update_call_stub``
    Calls that cannot be followed: indirect calls, extern symbols and
    calls to functions missing from the program.
``update_return``
    Combines the callee state at a return with the caller state before the
    call: parameter accesses are pushed up to the caller, return values
    are translated into identifiers the caller knows.
"""

from __future__ import annotations

import logging
from typing import List, Mapping, Optional, Sequence, Tuple

import networkx

from binsig.abstract_domain import AbstractIdentifier, DataDomain
from binsig.ir import (
    Assign,
    Blk,
    BranchInd,
    Call,
    CallInd,
    CBranch,
    Def,
    Expression,
    Jmp,
    Load,
    Return,
    Store,
    Term,
    Tid,
    Variable,
    input_vars,
)
from binsig.project import Arg, CallingConvention, Project
from binsig.state import State

logger = logging.getLogger(__name__)


class Context:
    """
    Transfer functions for the forward interprocedural fixpoint.

    Parameters
    ----------
    project : Project
        Calling conventions, extern symbols and the program.
    graph : networkx.MultiDiGraph
        The supergraph built by :func:`binsig.graph.build_graph`.
    variadic_args : Mapping[Tid, Sequence[Arg]], optional
        Locations of the variadic arguments of individual call sites
        (see :func:`binsig.arguments.collect_variadic_arguments`).  They
        are flagged as read when the extern call is applied.
    """

    def __init__(
        self,
        project: Project,
        graph: networkx.MultiDiGraph,
        variadic_args: Optional[Mapping[Tid, Sequence[Arg]]] = None,
    ) -> None:
        self.project = project
        self.graph = graph
        self.variadic_args: Mapping[Tid, Sequence[Arg]] = variadic_args or {}

    def get_graph(self) -> networkx.MultiDiGraph:
        return self.graph

    # ------------------------------------------------------------------
    # Return values
    # ------------------------------------------------------------------

    def compute_return_values_of_call(
        self,
        caller_state: State,
        callee_state: State,
        calling_convention: CallingConvention,
        call: Term[Jmp],
    ) -> List[Tuple[Variable, DataDomain]]:
        """
        Return values of *call* expressed in identifiers known to the caller.

        The values are not written into *caller_state*; the caller still has
        to clear the caller-saved registers before installing them.
        """
        return_registers: List[Variable] = list(calling_convention.integer_return_register)
        for expr in calling_convention.float_return_register:
            return_registers.extend(input_vars(expr))
        return [
            (
                register,
                self.compute_return_register_value_of_call(
                    caller_state, callee_state, register, call
                ),
            )
            for register in return_registers
        ]

    def compute_return_register_value_of_call(
        self,
        caller_state: State,
        callee_state: State,
        return_register: Variable,
        call: Term[Jmp],
    ) -> DataDomain:
        """
        Translate the callee value of *return_register* into the caller frame.

        Targets relative to a callee parameter are rebased onto whatever the
        caller passed for that parameter, adding the offsets.  Anything that
        cannot be expressed that way is replaced by the identifier
        ``(call.tid, return_register)``, which is not tracked by the caller.
        """
        callee_value = callee_state.get_register(return_register)
        return_value = DataDomain.new_empty(return_register.size)
        if callee_value.contains_top() or callee_value.get_absolute_value() is not None:
            return_value = return_value.with_top_flag()

        for callee_id, callee_offset in callee_value.get_relative_values().items():
            param_arg = callee_state.get_arg_corresponding_to_id(callee_id)
            if param_arg is None:
                return_value = return_value.with_top_flag()
                continue
            param_value = caller_state.eval_parameter_arg(param_arg)
            if param_value.contains_top() or param_value.get_absolute_value() is not None:
                return_value = return_value.with_top_flag()
            for param_id, param_offset in param_value.get_relative_values().items():
                return_value = return_value.merge(
                    DataDomain.from_target(
                        param_id, param_offset.add(callee_offset), return_register.size
                    )
                )

        if return_value.contains_top():
            return_id = AbstractIdentifier.from_var(call.tid, return_register)
            return_value = return_value.merge(
                DataDomain.from_target(return_id, 0, return_register.size)
            ).without_top_flag()
        return return_value

    # ------------------------------------------------------------------
    # Transfer functions
    # ------------------------------------------------------------------

    def merge(self, state_left: State, state_right: State) -> State:
        return state_left.merge(state_right)

    def update_def(self, state: State, def_term: Term[Def]) -> Optional[State]:
        new_state = state.copy()
        definition = def_term.term
        if isinstance(definition, Assign):
            new_state.set_read_flag_for_input_ids_of_expression(definition.value)
            new_state.set_register(definition.var, state.eval(definition.value))
        elif isinstance(definition, Load):
            new_state.set_deref_flag_for_input_ids_of_expression(definition.address)
            value = new_state.load_value(new_state.eval(definition.address), definition.var.size)
            new_state.set_register(definition.var, value)
        elif isinstance(definition, Store):
            new_state.set_mutable_deref_flag_for_input_ids_of_expression(definition.address)
            address = state.eval(definition.address)
            if state.get_offset_if_exact_stack_pointer(address) is not None:
                # Register spills to the own stack frame are not parameter reads.
                new_state.set_read_flag_for_input_ids_of_nontrivial_expression(definition.value)
            else:
                new_state.set_read_flag_for_input_ids_of_expression(definition.value)
            new_state.write_value(
                new_state.eval(definition.address), new_state.eval(definition.value)
            )
        else:
            raise TypeError(f"Not a def: {type(definition).__name__}")
        return new_state

    def update_jump(
        self,
        state: State,
        jump: Term[Jmp],
        untaken_conditional: Optional[Term[Jmp]],
        target: Term[Blk],
    ) -> Optional[State]:
        new_state = state.copy()
        term = jump.term
        if isinstance(term, BranchInd):
            new_state.set_read_flag_for_input_ids_of_expression(term.target)
        elif isinstance(term, Return):
            new_state.set_read_flag_for_input_ids_of_expression(term.expression)
        elif isinstance(term, CBranch):
            new_state.set_read_flag_for_input_ids_of_expression(term.condition)
        return new_state

    def update_call(
        self,
        state: State,
        call: Term[Jmp],
        target: object,
        calling_convention: Optional[str],
    ) -> Optional[State]:
        # Callees start from their own fresh state.
        return None

    def update_call_stub(self, state: State, call: Term[Jmp]) -> Optional[State]:
        new_state = state.copy()
        term = call.term
        if isinstance(term, CallInd):
            new_state.set_read_flag_for_input_ids_of_expression(term.target)
            cconv = self.project.get_standard_calling_convention()
            if cconv is not None:
                new_state.handle_unknown_function_stub(call, cconv)
                return new_state
            logger.debug("No standard calling convention for indirect call %s", call.tid)
        elif isinstance(term, Call):
            extern_symbol = self.project.get_extern_symbol(term.target)
            if extern_symbol is not None:
                cconv = self.project.get_calling_convention(extern_symbol)
                if cconv is None:
                    logger.debug(
                        "No calling convention for extern symbol %s at %s",
                        extern_symbol.name,
                        call.tid,
                    )
                    return None
                new_state.handle_extern_symbol(
                    call, extern_symbol, cconv, self.variadic_args.get(call.tid, ())
                )
                if not extern_symbol.no_return:
                    return new_state
                logger.debug("Call %s to %s does not return", call.tid, extern_symbol.name)
            else:
                cconv = self.project.get_standard_calling_convention()
                if cconv is not None:
                    new_state.handle_unknown_function_stub(call, cconv)
                    return new_state
                logger.debug("No standard calling convention for call %s", call.tid)
        return None

    def update_return(
        self,
        state: Optional[State],
        state_before_call: Optional[State],
        call_term: Term[Jmp],
        return_term: Term[Jmp],
        calling_convention: Optional[str],
    ) -> Optional[State]:
        if state is None or state_before_call is None:
            return None
        cconv = self.project.get_standard_calling_convention()
        if cconv is None:
            logger.debug("No standard calling convention for return to %s", call_term.tid)
            return None
        new_state = state_before_call.copy()
        new_state.merge_parameter_access(state.get_params_of_current_function())
        # computed before the registers are cleared
        return_values = self.compute_return_values_of_call(new_state, state, cconv, call_term)
        new_state.clear_non_callee_saved_register(cconv.callee_saved_register)
        for register, value in return_values:
            new_state.set_register(register, value)
        return new_state

    def specialize_conditional(
        self,
        state: State,
        condition: Expression,
        block_before_condition: Term[Blk],
        is_true: bool,
    ) -> Optional[State]:
        new_state = state.copy()
        new_state.set_read_flag_for_input_ids_of_expression(condition)
        return new_state


__all__ = ["Context"]
