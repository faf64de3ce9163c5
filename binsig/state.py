"""
binsig/state.py
===============

Per-program-point abstract state of the function signature analysis.

A :class:`State` maps

  * registers → :class:`~binsig.abstract_domain.DataDomain`
  * stack offsets (relative to the stack pointer at function entry)
    → :class:`~binsig.abstract_domain.DataDomain`
  * tracked identifiers (the parameters of the current function)
    → :class:`AccessPattern`

The access patterns are the durable output of the analysis: they record
whether a parameter was read, dereferenced or written through.

States are updated in place by the methods below; callers that need the
old state afterwards work on :meth:`State.copy`.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from binsig.abstract_domain import (
    AbstractIdentifier,
    AbstractLocation,
    DataDomain,
)
from binsig.ir import (
    BinOp,
    Cast,
    Const,
    Expression,
    Jmp,
    Subpiece,
    Term,
    Tid,
    UnOp,
    Unknown,
    Var,
    Variable,
    input_vars,
    plus_const,
)
from binsig.project import (
    Arg,
    CallingConvention,
    Datatype,
    ExternSymbol,
    RegisterArg,
    StackArg,
)


# ═══════════════════════════════════════════════════════════════════════════
#  ACCESS PATTERNS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class AccessPattern:
    """How a parameter is used by a function (and, transitively, its callees)."""
    read: bool = False
    dereferenced: bool = False
    mutably_dereferenced: bool = False

    @classmethod
    def new_unknown_access(cls) -> AccessPattern:
        return cls(True, True, True)

    def with_read_flag(self) -> AccessPattern:
        return replace(self, read=True)

    def with_dereference_flag(self) -> AccessPattern:
        return replace(self, dereferenced=True)

    def with_mutably_dereferenced_flag(self) -> AccessPattern:
        return replace(self, mutably_dereferenced=True)

    def merge(self, other: AccessPattern) -> AccessPattern:
        return AccessPattern(
            self.read or other.read,
            self.dereferenced or other.dereferenced,
            self.mutably_dereferenced or other.mutably_dereferenced,
        )

    def is_accessed(self) -> bool:
        return self.read or self.dereferenced or self.mutably_dereferenced

    def is_dereferenced(self) -> bool:
        return self.dereferenced or self.mutably_dereferenced

    def is_mutably_dereferenced(self) -> bool:
        return self.mutably_dereferenced

    def __repr__(self) -> str:
        flags = "".join((
            "r" if self.read else "-",
            "d" if self.dereferenced else "-",
            "w" if self.mutably_dereferenced else "-",
        ))
        return f"Access({flags})"


# ═══════════════════════════════════════════════════════════════════════════
#  STATE
# ═══════════════════════════════════════════════════════════════════════════

class State:
    """Abstract state at one program point of one function."""

    __slots__ = ("register", "stack", "stack_id", "stack_register", "tracked_ids")

    def __init__(
        self,
        register: Dict[Variable, DataDomain],
        stack: Dict[int, DataDomain],
        stack_id: AbstractIdentifier,
        stack_register: Variable,
        tracked_ids: Dict[AbstractIdentifier, AccessPattern],
    ) -> None:
        self.register = register
        self.stack = stack
        self.stack_id = stack_id
        self.stack_register = stack_register
        self.tracked_ids = tracked_ids

    @classmethod
    def new(
        cls,
        func_tid: Tid,
        stack_register: Variable,
        calling_convention: CallingConvention,
    ) -> State:
        """
        Fresh state at the start of a function.

        Every parameter register holds its own tracked identifier; the stack
        register points to offset zero of the (untracked) stack identifier.
        """
        register: Dict[Variable, DataDomain] = {}
        tracked_ids: Dict[AbstractIdentifier, AccessPattern] = {}
        for var in calling_convention.get_all_parameter_register():
            param_id = AbstractIdentifier.from_var(func_tid, var)
            register[var] = DataDomain.from_target(param_id, 0, var.size)
            if var != stack_register:
                tracked_ids[param_id] = AccessPattern()
        stack_id = AbstractIdentifier.from_var(func_tid, stack_register)
        register[stack_register] = DataDomain.from_target(stack_id, 0, stack_register.size)
        return cls(register, {}, stack_id, stack_register, tracked_ids)

    def copy(self) -> State:
        # Values and access patterns are immutable, shallow copies suffice.
        return State(
            dict(self.register),
            dict(self.stack),
            self.stack_id,
            self.stack_register,
            dict(self.tracked_ids),
        )

    @property
    def current_function_tid(self) -> Tid:
        return self.stack_id.get_tid()

    # ------------------------------------------------------------------
    # Registers and expressions
    # ------------------------------------------------------------------

    def get_register(self, var: Variable) -> DataDomain:
        value = self.register.get(var)
        return value if value is not None else DataDomain.new_top(var.size)

    def set_register(self, var: Variable, value: DataDomain) -> None:
        if value.is_top():
            self.register.pop(var, None)
        else:
            self.register[var] = value

    def eval(self, expr: Expression) -> DataDomain:
        """Evaluate *expr* in this state."""
        if isinstance(expr, Var):
            return self.get_register(expr.var)
        if isinstance(expr, Const):
            return DataDomain.from_const(expr.value, expr.size)
        if isinstance(expr, BinOp):
            return self.eval(expr.lhs).bin_op(expr.op, self.eval(expr.rhs))
        if isinstance(expr, UnOp):
            return self.eval(expr.arg).un_op(expr.op)
        if isinstance(expr, Cast):
            return self.eval(expr.arg).cast(expr.op, expr.size)
        if isinstance(expr, Subpiece):
            return self.eval(expr.arg).subpiece(expr.low_byte, expr.size)
        if isinstance(expr, Unknown):
            return DataDomain.new_top(expr.size)
        raise TypeError(f"Not an expression: {type(expr).__name__}")

    def eval_parameter_arg(self, arg: Arg, memory_image: object = None) -> DataDomain:
        """
        Value of a parameter at a call site.

        ``memory_image`` is accepted for compatibility with pointer-state
        snapshots; the stack model does not need it.
        """
        if isinstance(arg, RegisterArg):
            return self.eval(arg.expr)
        if isinstance(arg, StackArg):
            return self.load_value(self.eval(arg.address), arg.size)
        raise TypeError(f"Not an argument: {type(arg).__name__}")

    # ------------------------------------------------------------------
    # Stack memory
    # ------------------------------------------------------------------

    def get_offset_if_exact_stack_pointer(self, address: DataDomain) -> Optional[int]:
        """Offset ``c`` if *address* is exactly ``stack pointer at entry + c``."""
        target = address.get_if_unique_target()
        if target is None:
            return None
        target_id, offset = target
        if target_id != self.stack_id or offset.is_top():
            return None
        return offset.value

    def load_value(self, address: DataDomain, size: int) -> DataDomain:
        """
        Load *size* bytes from *address*.

        Non-negative offsets of the entry stack pointer belong to the caller's
        frame: an untouched slot there is a stack parameter, which gets a
        tracked identifier on first access.
        """
        offset = self.get_offset_if_exact_stack_pointer(address)
        if offset is None:
            return DataDomain.new_top(size)
        stored = self.stack.get(offset)
        if stored is not None and stored.size == size:
            return stored
        if stored is not None or self._overlapping_stack_offsets(offset, size):
            return DataDomain.new_top(size)
        if offset < 0:
            return DataDomain.new_top(size)
        param_id = AbstractIdentifier(
            self.stack_id.get_tid(),
            AbstractLocation.from_stack_position(self.stack_register, offset, size),
        )
        self.tracked_ids.setdefault(param_id, AccessPattern())
        return DataDomain.from_target(param_id, 0, size)

    def write_value(self, address: DataDomain, value: DataDomain) -> None:
        """
        Store *value* at *address*.

        Writes through non-exact stack addresses may hit any stack slot, so
        every slot written so far becomes Top.  Caller-frame slots that were
        never written still load as stack parameters.  Writes to other
        memory are not modeled.
        """
        offset = self.get_offset_if_exact_stack_pointer(address)
        if offset is not None:
            for overlapping in self._overlapping_stack_offsets(offset, value.size):
                del self.stack[overlapping]
            self.stack[offset] = value
        elif self.stack_id in set(address.referenced_ids()):
            self.stack = {
                slot: DataDomain.new_top(stored.size) for slot, stored in self.stack.items()
            }

    def _overlapping_stack_offsets(self, offset: int, size: int) -> List[int]:
        return [
            slot for slot, stored in self.stack.items()
            if slot < offset + size and offset < slot + stored.size
        ]

    # ------------------------------------------------------------------
    # Access flags
    # ------------------------------------------------------------------

    def _flag_input_ids(
        self,
        expr: Expression,
        update: Callable[[AccessPattern], AccessPattern],
    ) -> None:
        for var in input_vars(expr):
            self._flag_ids(self.get_register(var).referenced_ids(), update)

    def _flag_ids(
        self,
        ids: Iterable[AbstractIdentifier],
        update: Callable[[AccessPattern], AccessPattern],
    ) -> None:
        for ident in ids:
            pattern = self.tracked_ids.get(ident)
            if pattern is not None:
                self.tracked_ids[ident] = update(pattern)

    def set_read_flag_for_input_ids_of_expression(self, expr: Expression) -> None:
        self._flag_input_ids(expr, AccessPattern.with_read_flag)

    def set_read_flag_for_input_ids_of_nontrivial_expression(self, expr: Expression) -> None:
        """Like the read flagging above, but a bare register is not a read."""
        if isinstance(expr, Var):
            return
        self.set_read_flag_for_input_ids_of_expression(expr)

    def set_deref_flag_for_input_ids_of_expression(self, expr: Expression) -> None:
        self._flag_input_ids(expr, AccessPattern.with_dereference_flag)

    def set_mutable_deref_flag_for_input_ids_of_expression(self, expr: Expression) -> None:
        self._flag_input_ids(expr, AccessPattern.with_mutably_dereferenced_flag)

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def get_arg_corresponding_to_id(self, ident: AbstractIdentifier) -> Optional[Arg]:
        """The parameter location *ident* stands for, if it is a parameter of this function."""
        if ident.get_tid() != self.current_function_tid or ident not in self.tracked_ids:
            return None
        location = ident.location
        if location.is_register():
            return RegisterArg(Var(location.register))
        return StackArg(
            address=plus_const(Var(self.stack_register), location.offset),
            size=location.size,
        )

    def get_params_of_current_function(self) -> List[Tuple[Arg, AccessPattern]]:
        params: List[Tuple[Arg, AccessPattern]] = []
        for ident in sorted(self.tracked_ids):
            arg = self.get_arg_corresponding_to_id(ident)
            if arg is not None:
                params.append((arg, self.tracked_ids[ident]))
        return params

    def merge_parameter_access(self, params: Sequence[Tuple[Arg, AccessPattern]]) -> None:
        """Propagate a callee's parameter accesses to the caller values passed in."""
        for arg, callee_pattern in params:
            value = self.eval_parameter_arg(arg)
            self._flag_ids(value.referenced_ids(), callee_pattern.merge)

    # ------------------------------------------------------------------
    # Calls
    # ------------------------------------------------------------------

    def clear_non_callee_saved_register(self, callee_saved: Iterable[Variable]) -> None:
        keep = set(callee_saved)
        self.register = {var: value for var, value in self.register.items() if var in keep}

    def _set_return_registers(
        self, call: Term[Jmp], calling_convention: CallingConvention
    ) -> None:
        for var in calling_convention.get_all_return_register():
            return_id = AbstractIdentifier.from_var(call.tid, var)
            self.set_register(var, DataDomain.from_target(return_id, 0, var.size))

    def handle_unknown_function_stub(
        self, call: Term[Jmp], calling_convention: CallingConvention
    ) -> None:
        """
        Assume the unknown callee reads all parameter registers, clobbers the
        caller-saved registers and returns values of unknown origin.
        """
        for var in calling_convention.get_all_parameter_register():
            self._flag_ids(self.get_register(var).referenced_ids(), AccessPattern.with_read_flag)
        self.clear_non_callee_saved_register(calling_convention.callee_saved_register)
        self._set_return_registers(call, calling_convention)

    def handle_extern_symbol(
        self,
        call: Term[Jmp],
        extern_symbol: ExternSymbol,
        calling_convention: CallingConvention,
        variadic_args: Sequence[Arg] = (),
    ) -> None:
        """Apply the declared signature of *extern_symbol* at *call*."""
        for arg in (*extern_symbol.parameters, *variadic_args):
            ids = list(self.eval_parameter_arg(arg).referenced_ids())
            self._flag_ids(ids, AccessPattern.with_read_flag)
            if arg.data_type is Datatype.POINTER:
                self._flag_ids(ids, AccessPattern.with_dereference_flag)
        self.clear_non_callee_saved_register(calling_convention.callee_saved_register)
        self._set_return_registers(call, calling_convention)

    # ------------------------------------------------------------------
    # Lattice
    # ------------------------------------------------------------------

    def merge(self, other: State) -> State:
        """Pointwise join of two states of the same function."""
        if self.stack_id != other.stack_id:
            raise ValueError(
                f"Cannot merge states of different functions: "
                f"{self.stack_id!r} and {other.stack_id!r}"
            )
        register: Dict[Variable, DataDomain] = {}
        for var, value in self.register.items():
            if var in other.register:
                merged = value.merge(other.register[var])
                if not merged.is_top():
                    register[var] = merged
        stack: Dict[int, DataDomain] = {}
        for offset, value in self.stack.items():
            other_value = other.stack.get(offset)
            if other_value is not None and other_value.size == value.size:
                stack[offset] = value.merge(other_value)
        tracked_ids = dict(self.tracked_ids)
        for ident, pattern in other.tracked_ids.items():
            if ident in tracked_ids:
                tracked_ids[ident] = tracked_ids[ident].merge(pattern)
            else:
                tracked_ids[ident] = pattern
        return State(register, stack, self.stack_id, self.stack_register, tracked_ids)

    def leq(self, other: State) -> bool:
        """
        Partial order: ``self ⊑ other``.

        A register or stack slot missing from *other* is unknown there and
        bounds anything.  Access flags only grow.
        """
        if self.stack_id != other.stack_id:
            return False
        for var, value in other.register.items():
            if var not in self.register or not self.register[var].leq(value):
                return False
        for offset, value in other.stack.items():
            mine = self.stack.get(offset)
            if mine is None or mine.size != value.size or not mine.leq(value):
                return False
        for ident, pattern in self.tracked_ids.items():
            other_pattern = other.tracked_ids.get(ident)
            if other_pattern is None or pattern.merge(other_pattern) != other_pattern:
                return False
        return True

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, State):
            return NotImplemented
        return (
            self.stack_id == other.stack_id
            and self.register == other.register
            and self.stack == other.stack
            and self.tracked_ids == other.tracked_ids
        )

    __hash__ = None  # type: ignore[assignment]

    def __repr__(self) -> str:
        registers = ", ".join(
            f"{var.name}={value!r}" for var, value in sorted(self.register.items())
        )
        accessed = sum(1 for pattern in self.tracked_ids.values() if pattern.is_accessed())
        return (
            f"State({self.current_function_tid}, registers=[{registers}], "
            f"stack_slots={len(self.stack)}, tracked={len(self.tracked_ids)}, "
            f"accessed={accessed})"
        )


__all__ = ["AccessPattern", "State"]
