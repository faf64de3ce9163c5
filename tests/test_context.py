# tests/test_context.py
"""Tests for the transfer functions of the signature analysis."""

import pytest

from binsig.abstract_domain import DataDomain
from binsig.context import Context
from binsig.graph import build_graph
from binsig.ir import (
    Blk,
    Branch,
    BranchInd,
    Call,
    CallInd,
    CallOther,
    CBranch,
    Program,
    Return,
    Term,
    Tid,
    Unknown,
    Var,
)
from binsig.project import Datatype, ExternSymbol, Project, RegisterArg
from binsig.state import AccessPattern
from tests.conftest import (
    RAX,
    RBX,
    RCX,
    RDI,
    RDX,
    RSI,
    RSP,
    R8,
    X64_CCONV,
    add,
    assign,
    const,
    jmp,
    load,
    make_context,
    make_project,
    make_state,
    param_id,
    store,
    sub_,
    target,
)

EMPTY_BLOCK = Term(Tid("blk"), Blk())


def _pattern(state, register, func="func"):
    return state.tracked_ids[param_id(func, register)]


# ── Defs ─────────────────────────────────────────────────────────

class TestUpdateDef:

    def test_assign_flags_read_and_sets_register(self, context, state):
        new = context.update_def(state, assign("d1", RAX, add(Var(RDI), 8)))
        assert _pattern(new, RDI).read
        assert new.get_register(RAX) == target(param_id("func", RDI), 8)

    def test_update_def_does_not_touch_input_state(self, context, state):
        context.update_def(state, assign("d1", RAX, Var(RDI)))
        assert not _pattern(state, RDI).is_accessed()
        assert state.get_register(RAX).is_top()

    def test_load_flags_dereferenced(self, context, state):
        new = context.update_def(state, load("d1", RAX, Var(RDI)))
        assert _pattern(new, RDI) == AccessPattern(dereferenced=True)
        assert new.get_register(RAX).is_top()

    def test_trivial_stack_store_of_bare_register(self, context, state):
        new = context.update_def(state, store("d1", sub_(Var(RSP), 8), Var(RDI)))
        assert not _pattern(new, RDI).is_accessed()
        assert new.stack[-8] == target(param_id("func", RDI))

    def test_trivial_stack_store_of_compound_value(self, context, state):
        new = context.update_def(state, store("d1", sub_(Var(RSP), 8), add(Var(RDI), 1)))
        assert _pattern(new, RDI).read

    def test_trivial_stack_store_through_wrapped_displacement(self, context, state):
        address = add(Var(RSP), const(0xFFFFFFFFFFFFFFF8))
        new = context.update_def(state, store("d1", address, Var(RDI)))
        assert not _pattern(new, RDI).is_accessed()
        assert new.stack[-8] == target(param_id("func", RDI))

    def test_store_through_pointer(self, context, state):
        new = context.update_def(state, store("d1", Var(RDI), Var(RSI)))
        assert _pattern(new, RDI) == AccessPattern(mutably_dereferenced=True)
        assert _pattern(new, RSI) == AccessPattern(read=True)

    def test_spilled_value_reloads(self, context, state):
        spilled = context.update_def(state, store("d1", sub_(Var(RSP), 8), Var(RDI)))
        reloaded = context.update_def(spilled, load("d2", RAX, sub_(Var(RSP), 8)))
        assert reloaded.get_register(RAX) == target(param_id("func", RDI))


# ── Jumps ────────────────────────────────────────────────────────

class TestUpdateJump:

    def test_indirect_branch_flags_target(self, context, state):
        new = context.update_jump(state, jmp("j", BranchInd(Var(RDX))), None, EMPTY_BLOCK)
        assert _pattern(new, RDX).read

    def test_return_flags_expression(self, context, state):
        new = context.update_jump(state, jmp("j", Return(Var(RCX))), None, EMPTY_BLOCK)
        assert _pattern(new, RCX).read

    def test_conditional_flags_condition(self, context, state):
        new = context.update_jump(
            state, jmp("j", CBranch(Tid("blk"), Var(RSI))), None, EMPTY_BLOCK
        )
        assert _pattern(new, RSI).read

    def test_direct_branch_is_noop(self, context, state):
        new = context.update_jump(state, jmp("j", Branch(Tid("blk"))), None, EMPTY_BLOCK)
        assert new == state
        assert new is not state

    def test_specialize_conditional_flags_both_branches(self, context, state):
        for is_true in (True, False):
            new = context.specialize_conditional(state, Var(RDI), EMPTY_BLOCK, is_true)
            assert _pattern(new, RDI).read
            assert new.get_register(RDI) == state.get_register(RDI)


# ── Calls ────────────────────────────────────────────────────────

class TestUpdateCall:

    def test_no_information_reaches_callee(self, context, state):
        call = jmp("c", Call(Tid("callee"), Tid("ret")))
        assert context.update_call(state, call, None, None) is None
        state.set_read_flag_for_input_ids_of_expression(Var(RDI))
        assert context.update_call(state, call, None, "__stdcall") is None


class TestUpdateCallStub:

    def _extern(self, name="puts", no_return=False, params=None):
        return ExternSymbol(
            tid=Tid(name),
            name=name,
            parameters=params if params is not None else (RegisterArg(Var(RDI), Datatype.POINTER),),
            no_return=no_return,
        )

    def test_indirect_call_uses_unknown_stub(self, context, state):
        call = jmp("c1", CallInd(Var(R8), Tid("ret")))
        new = context.update_call_stub(state, call)
        assert _pattern(new, R8).read
        assert _pattern(new, RDI).read
        assert new.get_register(RAX) == target(param_id("c1", RAX))
        assert new.get_register(RDI).is_top()

    def test_indirect_call_without_standard_convention(self, state):
        project = Project(Program(), "x86_64", RSP, calling_conventions={})
        context = Context(project, build_graph(project))
        assert context.update_call_stub(state, jmp("c1", CallInd(Var(R8)))) is None

    def test_extern_symbol(self, state):
        symbol = self._extern()
        context = make_context(make_project(extern_symbols=[symbol]))
        new = context.update_call_stub(state, jmp("c1", Call(symbol.tid, Tid("ret"))))
        assert _pattern(new, RDI) == AccessPattern(True, True, False)
        assert not _pattern(new, RSI).is_accessed()
        assert new.get_register(RAX) == target(param_id("c1", RAX))

    def test_no_return_extern_is_dead_end(self, state):
        symbol = self._extern("exit", no_return=True, params=(RegisterArg(Var(RDI)),))
        context = make_context(make_project(extern_symbols=[symbol]))
        assert context.update_call_stub(state, jmp("c1", Call(symbol.tid))) is None

    def test_variadic_args_are_flagged(self, state):
        symbol = self._extern("printf")
        call = jmp("c1", Call(symbol.tid, Tid("ret")))
        context = make_context(
            make_project(extern_symbols=[symbol]),
            variadic_args={call.tid: [RegisterArg(Var(RSI), Datatype.INTEGER)]},
        )
        new = context.update_call_stub(state, call)
        assert _pattern(new, RSI) == AccessPattern(read=True)

    def test_unknown_direct_target_uses_unknown_stub(self, context, state):
        new = context.update_call_stub(state, jmp("c1", Call(Tid("nowhere"), Tid("ret"))))
        assert new is not None
        assert _pattern(new, RSI).read

    def test_call_other_is_dead_end(self, context, state):
        assert context.update_call_stub(state, jmp("c1", CallOther("syscall"))) is None


# ── Returns ──────────────────────────────────────────────────────

class TestReturnValues:
    """Return values are rebased from callee parameters onto caller values."""

    def _callee_returning(self, value):
        callee = make_state("callee")
        callee.set_register(RAX, value)
        return callee

    def _caller_passing(self, value):
        caller = make_state("caller")
        caller.set_register(RDI, value)
        return caller

    BASE = param_id("caller", RSI)

    def test_unmodified_parameter(self, context):
        callee = self._callee_returning(target(param_id("callee", RDI)))
        caller = self._caller_passing(target(self.BASE, 8))
        value = context.compute_return_register_value_of_call(
            caller, callee, RAX, jmp("c1", None)
        )
        assert value == target(self.BASE, 8)

    @pytest.mark.parametrize("k", [-16, 4, 24])
    def test_offsets_compose(self, context, k):
        callee = self._callee_returning(target(param_id("callee", RDI), k))
        caller = self._caller_passing(target(self.BASE, 8))
        value = context.compute_return_register_value_of_call(
            caller, callee, RAX, jmp("c1", None)
        )
        assert value == target(self.BASE, 8 + k)

    def test_local_allocation_gets_fresh_identifier(self, context):
        callee = make_state("callee")
        callee.set_register(RAX, target(callee.stack_id, -32))
        caller = make_state("caller")
        first = context.compute_return_register_value_of_call(caller, callee, RAX, jmp("c1", None))
        second = context.compute_return_register_value_of_call(caller, callee, RAX, jmp("c2", None))
        assert first == target(param_id("c1", RAX))
        assert second == target(param_id("c2", RAX))
        assert first != second
        assert param_id("c1", RAX) not in caller.tracked_ids

    def test_fresh_identifier_is_deterministic(self, context):
        callee = self._callee_returning(DataDomain.from_const(0, 8))
        caller = make_state("caller")
        results = [
            context.compute_return_register_value_of_call(caller, callee, RAX, jmp("c1", None))
            for _ in range(2)
        ]
        assert results[0] == results[1] == target(param_id("c1", RAX))

    def test_absolute_argument_adds_fresh_identifier(self, context):
        callee = self._callee_returning(target(param_id("callee", RDI)))
        caller = self._caller_passing(
            target(self.BASE, 0).merge(DataDomain.from_const(0x1000, 8))
        )
        value = context.compute_return_register_value_of_call(caller, callee, RAX, jmp("c1", None))
        assert set(value.referenced_ids()) == {self.BASE, param_id("c1", RAX)}
        assert not value.contains_top()

    def test_values_for_every_return_register(self, context):
        callee = make_state("callee")
        caller = make_state("caller")
        registers = [
            register for register, _ in
            context.compute_return_values_of_call(caller, callee, X64_CCONV, jmp("c1", None))
        ]
        xmm0 = X64_CCONV.float_return_register[0].var
        assert registers == [RAX, RDX, xmm0]


class TestUpdateReturn:

    def _states(self):
        caller = make_state("caller")
        caller.set_register(RBX, DataDomain.from_const(7, 8))
        caller.set_register(RDI, caller.get_register(RSI))
        callee = make_state("callee")
        callee.set_deref_flag_for_input_ids_of_expression(Var(RDI))
        callee.set_register(RAX, target(param_id("callee", RDI), 4))
        return caller, callee

    def test_missing_states_give_no_information(self, context):
        caller, callee = self._states()
        call = jmp("c1", Call(Tid("callee"), Tid("ret")))
        ret = jmp("r", Return(Unknown("ret", 8)))
        assert context.update_return(None, caller, call, ret, None) is None
        assert context.update_return(callee, None, call, ret, None) is None

    def test_return_combines_states(self, context):
        caller, callee = self._states()
        call = jmp("c1", Call(Tid("callee"), Tid("ret")))
        ret = jmp("r", Return(Unknown("ret", 8)))
        new = context.update_return(callee, caller, call, ret, None)

        # callee accesses are attributed to what the caller passed
        assert _pattern(new, RSI, "caller") == AccessPattern(dereferenced=True)
        # return value is computed against the pre-call RDI
        assert new.get_register(RAX) == target(param_id("caller", RSI), 4)
        # caller-saved registers are gone, callee-saved survive
        assert new.get_register(RDI).is_top()
        assert new.get_register(RBX) == DataDomain.from_const(7, 8)
        assert new.get_register(RSP) == caller.get_register(RSP)

    def test_return_does_not_touch_inputs(self, context):
        caller, callee = self._states()
        call = jmp("c1", Call(Tid("callee"), Tid("ret")))
        context.update_return(callee, caller, call, jmp("r", Return(const(0))), None)
        assert not _pattern(caller, RSI, "caller").is_accessed()
        assert caller.get_register(RDI) == target(param_id("caller", RSI))


class TestMerge:

    def test_merge_delegates_to_state(self, context):
        left, right = make_state(), make_state()
        right.set_read_flag_for_input_ids_of_expression(Var(RDI))
        assert context.merge(left, right) == left.merge(right)
