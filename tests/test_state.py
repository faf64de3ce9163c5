# tests/test_state.py
"""Tests for the abstract state and parameter access patterns."""

from itertools import product

import pytest

from binsig.abstract_domain import AbstractIdentifier, AbstractLocation, DataDomain
from binsig.ir import Tid, Var
from binsig.project import Datatype, ExternSymbol, RegisterArg, StackArg
from binsig.state import AccessPattern, State
from tests.conftest import (
    RAX,
    RBX,
    RCX,
    RDI,
    RSI,
    RSP,
    X64_CCONV,
    add,
    jmp,
    make_state,
    param_id,
    target,
)


class TestAccessPattern:

    def test_default_is_unaccessed(self):
        assert not AccessPattern().is_accessed()

    def test_flags(self):
        pattern = AccessPattern().with_read_flag().with_mutably_dereferenced_flag()
        assert pattern.read
        assert pattern.is_dereferenced()
        assert pattern.is_mutably_dereferenced()

    def test_merge_ors_flags(self):
        merged = AccessPattern(read=True).merge(AccessPattern(dereferenced=True))
        assert merged == AccessPattern(True, True, False)

    def test_unknown_access(self):
        assert AccessPattern.new_unknown_access() == AccessPattern(True, True, True)


class TestStateNew:

    def test_parameter_registers_are_tracked(self, state):
        assert param_id("func", RDI) in state.tracked_ids
        assert state.get_register(RDI) == target(param_id("func", RDI))

    def test_float_parameter_registers_are_tracked(self, state):
        xmm0 = X64_CCONV.float_parameter_register[0].var
        assert param_id("func", xmm0) in state.tracked_ids

    def test_stack_id_is_not_tracked(self, state):
        assert state.stack_id not in state.tracked_ids
        assert state.get_register(RSP) == target(state.stack_id)

    def test_unknown_register_is_top(self, state):
        assert state.get_register(RAX).is_top()

    def test_current_function(self, state):
        assert state.current_function_tid == Tid("func")


class TestStackModel:

    def _sp(self, state, offset):
        return state.eval(add(Var(RSP), offset))

    def test_write_then_read(self, state):
        state.write_value(self._sp(state, -8), DataDomain.from_const(7, 8))
        assert state.load_value(self._sp(state, -8), 8) == DataDomain.from_const(7, 8)

    def test_positive_offset_creates_stack_parameter(self, state):
        value = state.load_value(self._sp(state, 8), 8)
        stack_param = AbstractIdentifier(
            Tid("func"), AbstractLocation.from_stack_position(RSP, 8, 8)
        )
        assert value == target(stack_param)
        assert stack_param in state.tracked_ids

    def test_negative_untouched_offset_is_top(self, state):
        assert state.load_value(self._sp(state, -16), 8).is_top()

    def test_non_stack_address_is_top(self, state):
        assert state.load_value(state.get_register(RDI), 8).is_top()

    def test_overlapping_write_replaces_slot(self, state):
        state.write_value(self._sp(state, -8), DataDomain.from_const(1, 8))
        state.write_value(self._sp(state, -4), DataDomain.from_const(2, 4))
        assert -8 not in state.stack
        assert state.stack[-4] == DataDomain.from_const(2, 4)

    def test_inexact_stack_write_invalidates_slots(self, state):
        state.write_value(self._sp(state, -8), DataDomain.from_const(1, 8))
        state.write_value(self._sp(state, -20), DataDomain.from_const(3, 4))
        inexact = target(state.stack_id).merge(target(state.stack_id, 8))
        state.write_value(inexact, DataDomain.from_const(2, 8))
        assert state.stack[-8].is_top()
        assert state.stack[-20] == DataDomain.new_top(4)
        assert state.load_value(self._sp(state, -8), 8).is_top()

    def test_inexact_stack_write_keeps_caller_frame_parameters(self, state):
        inexact = target(state.stack_id, -8).merge(target(state.stack_id, -16))
        state.write_value(inexact, DataDomain.from_const(2, 8))
        value = state.load_value(self._sp(state, 16), 8)
        assert value.get_if_unique_target() is not None

    def test_stack_param_arg_round_trip(self, state):
        state.load_value(self._sp(state, 16), 4)
        stack_param = AbstractIdentifier(
            Tid("func"), AbstractLocation.from_stack_position(RSP, 16, 4)
        )
        arg = state.get_arg_corresponding_to_id(stack_param)
        assert arg == StackArg(address=add(Var(RSP), 16), size=4)


class TestAccessFlags:

    def test_read_flag(self, state):
        state.set_read_flag_for_input_ids_of_expression(add(Var(RDI), 4))
        assert state.tracked_ids[param_id("func", RDI)].read

    def test_nontrivial_read_skips_bare_register(self, state):
        state.set_read_flag_for_input_ids_of_nontrivial_expression(Var(RDI))
        assert not state.tracked_ids[param_id("func", RDI)].is_accessed()

    def test_nontrivial_read_flags_compound_expression(self, state):
        state.set_read_flag_for_input_ids_of_nontrivial_expression(add(Var(RDI), 1))
        assert state.tracked_ids[param_id("func", RDI)].read

    def test_deref_flags(self, state):
        state.set_deref_flag_for_input_ids_of_expression(Var(RSI))
        state.set_mutable_deref_flag_for_input_ids_of_expression(Var(RDI))
        assert state.tracked_ids[param_id("func", RSI)] == AccessPattern(dereferenced=True)
        assert state.tracked_ids[param_id("func", RDI)].is_mutably_dereferenced()

    def test_untracked_ids_are_ignored(self, state):
        before = dict(state.tracked_ids)
        state.set_read_flag_for_input_ids_of_expression(Var(RSP))
        assert state.tracked_ids == before


class TestParameters:

    def test_params_of_current_function_sorted(self, state):
        args = [arg for arg, _ in state.get_params_of_current_function()]
        assert RegisterArg(Var(RDI)) in args
        assert len(args) == len(state.tracked_ids)

    def test_foreign_ids_have_no_arg(self, state):
        assert state.get_arg_corresponding_to_id(param_id("other", RDI)) is None

    def test_merge_parameter_access(self, state):
        state.set_register(RDI, state.get_register(RSI))
        state.merge_parameter_access([(RegisterArg(Var(RDI)), AccessPattern(True, True, False))])
        assert state.tracked_ids[param_id("func", RSI)] == AccessPattern(True, True, False)
        assert not state.tracked_ids[param_id("func", RDI)].is_accessed()


class TestCallHandling:

    def test_clear_non_callee_saved(self, state):
        state.set_register(RBX, DataDomain.from_const(1, 8))
        state.clear_non_callee_saved_register(X64_CCONV.callee_saved_register)
        assert state.get_register(RDI).is_top()
        assert state.get_register(RBX) == DataDomain.from_const(1, 8)

    def test_unknown_stub(self, state):
        call = jmp("call_1", None)
        state.handle_unknown_function_stub(call, X64_CCONV)
        assert state.tracked_ids[param_id("func", RSI)].read
        assert state.get_register(RAX) == target(param_id("call_1", RAX))
        assert param_id("call_1", RAX) not in state.tracked_ids

    def test_extern_symbol_pointer_param_is_dereferenced(self, state):
        symbol = ExternSymbol(
            tid=Tid("puts"),
            name="puts",
            parameters=(RegisterArg(Var(RDI), Datatype.POINTER),),
        )
        state.handle_extern_symbol(jmp("call_1", None), symbol, X64_CCONV)
        assert state.tracked_ids[param_id("func", RDI)] == AccessPattern(True, True, False)
        assert not state.tracked_ids[param_id("func", RSI)].is_accessed()

    def test_extern_symbol_variadic_args_are_read(self, state):
        symbol = ExternSymbol(
            tid=Tid("printf"),
            name="printf",
            parameters=(RegisterArg(Var(RDI), Datatype.POINTER),),
            has_var_args=True,
        )
        state.handle_extern_symbol(
            jmp("call_1", None), symbol, X64_CCONV,
            variadic_args=[RegisterArg(Var(RSI), Datatype.INTEGER)],
        )
        assert state.tracked_ids[param_id("func", RSI)] == AccessPattern(read=True)


class TestStateMerge:

    def _pair(self):
        left, right = make_state(), make_state()
        left.set_register(RAX, DataDomain.from_const(1, 8))
        right.set_register(RAX, DataDomain.from_const(2, 8))
        left.set_read_flag_for_input_ids_of_expression(Var(RDI))
        right.set_deref_flag_for_input_ids_of_expression(Var(RSI))
        return left, right

    def test_idempotent(self):
        left, _ = self._pair()
        assert left.merge(left) == left

    def test_commutative(self):
        left, right = self._pair()
        assert left.merge(right) == right.merge(left)

    def test_flags_are_ored(self):
        left, right = self._pair()
        merged = left.merge(right)
        assert merged.tracked_ids[param_id("func", RDI)].read
        assert merged.tracked_ids[param_id("func", RSI)].dereferenced

    def test_register_values_join(self):
        left, right = self._pair()
        merged = left.merge(right)
        assert merged.get_register(RAX).get_absolute_value().is_top()

    def test_states_of_different_functions(self):
        with pytest.raises(ValueError):
            make_state("f").merge(make_state("g"))

    def test_copy_is_independent(self, state):
        clone = state.copy()
        clone.set_read_flag_for_input_ids_of_expression(Var(RDI))
        assert not state.tracked_ids[param_id("func", RDI)].is_accessed()

    def test_state_is_unhashable(self, state):
        assert State.__hash__ is None


def _slot(state, offset, value):
    state.write_value(state.eval(add(Var(RSP), offset)), value)


def _empty():
    return make_state()


def _rax_one_with_local():
    state = make_state()
    state.set_register(RAX, DataDomain.from_const(1, 8))
    _slot(state, -8, DataDomain.from_const(5, 8))
    state.set_read_flag_for_input_ids_of_expression(Var(RDI))
    return state


def _rax_two_with_two_locals():
    state = make_state()
    state.set_register(RAX, DataDomain.from_const(2, 8))
    _slot(state, -8, DataDomain.from_const(6, 8))
    _slot(state, -16, DataDomain.from_const(1, 8))
    state.set_deref_flag_for_input_ids_of_expression(Var(RSI))
    return state


def _narrow_local_and_pointer():
    state = make_state()
    state.set_register(RAX, state.get_register(RDI))
    state.set_register(RBX, DataDomain.from_const(3, 8))
    _slot(state, -8, DataDomain.from_const(7, 4))
    state.set_mutable_deref_flag_for_input_ids_of_expression(Var(RDI))
    return state


def _stack_param_loaded():
    state = make_state()
    state.set_register(RCX, state.load_value(state.eval(add(Var(RSP), 8)), 8))
    state.set_register(RBX, DataDomain.from_const(0xFFFFFFFFFFFFFFFF, 8))
    _slot(state, -16, DataDomain.from_const(1, 8))
    return state


STATE_BUILDERS = [
    _empty,
    _rax_one_with_local,
    _rax_two_with_two_locals,
    _narrow_local_and_pointer,
    _stack_param_loaded,
]


class TestStateMergeLaws:

    @pytest.mark.parametrize("build_a", STATE_BUILDERS)
    def test_idempotent(self, build_a):
        assert build_a().merge(build_a()) == build_a()

    @pytest.mark.parametrize("build_a, build_b", list(product(STATE_BUILDERS, repeat=2)))
    def test_commutative(self, build_a, build_b):
        assert build_a().merge(build_b()) == build_b().merge(build_a())

    @pytest.mark.parametrize(
        "build_a, build_b, build_c", list(product(STATE_BUILDERS, repeat=3))
    )
    def test_associative(self, build_a, build_b, build_c):
        left = build_a().merge(build_b()).merge(build_c())
        right = build_a().merge(build_b().merge(build_c()))
        assert left == right

    @pytest.mark.parametrize("build_a, build_b", list(product(STATE_BUILDERS, repeat=2)))
    def test_merge_is_upper_bound(self, build_a, build_b):
        merged = build_a().merge(build_b())
        assert build_a().leq(merged)
        assert build_b().leq(merged)

    @pytest.mark.parametrize("build_a", STATE_BUILDERS)
    def test_leq_is_reflexive(self, build_a):
        assert build_a().leq(build_a())

    def test_leq_rejects_lost_flags(self):
        assert not _rax_one_with_local().leq(_empty())
        assert _empty().leq(_rax_one_with_local().merge(_empty()))

    def test_size_mismatch_drops_slot(self):
        merged = _rax_one_with_local().merge(_narrow_local_and_pointer())
        assert -8 not in merged.stack

    def test_leq_other_function(self):
        assert not make_state("f").leq(make_state("g"))
