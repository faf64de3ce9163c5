"""
binsig/abstract_domain.py
═════════════════════════

Abstract values expressed relative to abstract origin identifiers.

    ┌─────────────────────────────────────────────────────────────┐
    │  Offset               exact integer or ⊤                    │
    │  AbstractLocation     register | stack slot                 │
    │  AbstractIdentifier   (Tid, AbstractLocation)               │
    │  DataDomain           {id ↦ Offset} ∪ absolute ∪ ⊤-flag     │
    └─────────────────────────────────────────────────────────────┘

A :class:`DataDomain` describes the possible values of a register or memory
cell as a set of targets *relative* to identifiers ("the value of RDI at
the start of function f, plus 8"), an optional *absolute* component, and a
flag for values whose origin is not representable at all.

Lattice structure (join = :meth:`DataDomain.merge`):

    1. relative parts: union of identifiers; an identifier with differing
       offsets on both sides gets the offset ⊤
    2. absolute parts: equal constants stay, differing constants become ⊤,
       a missing side is the identity
    3. top flags: OR

For a fixed program the identifiers are finite and every offset can only
grow to ⊤ once, so ascending chains stabilise without widening.

Arithmetic wraps at the byte size of the value.  Relative offsets are kept
as two's-complement signed numbers, so `RSP + 0xfffffffffffffff8` is the
stack slot -8.  Absolute constants are kept unsigned.
"""

from __future__ import annotations

import operator as op
from dataclasses import dataclass, replace
from typing import Callable, ClassVar, Dict, Iterator, Mapping, Optional, Tuple, Union

from binsig.ir import BinOpType, CastOpType, Tid, UnOpType, Variable


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — OFFSETS  (flat lattice over ℤ)
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class Offset:
    """
    An exact offset or ⊤.

    >>> Offset.lift(8).add(Offset.lift(4))
    Offset(12)
    >>> Offset.lift(8).join(Offset.lift(4))
    Offset(⊤)
    """
    value: Optional[int]

    TOP: ClassVar[Offset]

    @classmethod
    def lift(cls, n: int) -> Offset:
        return cls(n)

    @classmethod
    def top(cls) -> Offset:
        return cls(None)

    def is_top(self) -> bool:
        return self.value is None

    def is_exact(self) -> bool:
        return self.value is not None

    def join(self, other: Offset) -> Offset:
        if self.value == other.value:
            return self
        return Offset.TOP

    def leq(self, other: Offset) -> bool:
        return other.is_top() or self.value == other.value

    def _binop(self, other: Offset, f: Callable[[int, int], int]) -> Offset:
        if self.value is None or other.value is None:
            return Offset.TOP
        return Offset(f(self.value, other.value))

    def add(self, other: Offset) -> Offset:
        return self._binop(other, op.add)

    def sub(self, other: Offset) -> Offset:
        return self._binop(other, op.sub)

    def __repr__(self) -> str:
        return f"Offset({'⊤' if self.value is None else self.value})"


Offset.TOP = Offset(None)


def _as_offset(value: Union[int, Offset]) -> Offset:
    return value if isinstance(value, Offset) else Offset(value)


def to_unsigned(value: int, size: int) -> int:
    """*value* reduced to *size* bytes, read as unsigned."""
    return value & ((1 << (8 * size)) - 1)


def to_signed(value: int, size: int) -> int:
    """*value* reduced to *size* bytes, read as two's complement."""
    value = to_unsigned(value, size)
    if value >= 1 << (8 * size - 1):
        value -= 1 << (8 * size)
    return value


def _wrap(offset: Offset, size: int, signed: bool) -> Offset:
    if offset.value is None:
        return offset
    wrapped = to_signed(offset.value, size) if signed else to_unsigned(offset.value, size)
    return offset if wrapped == offset.value else Offset(wrapped)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — ABSTRACT ORIGIN IDENTIFIERS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, order=True, slots=True)
class AbstractLocation:
    """
    Where a value lives: a register, or a stack slot at ``offset`` from the
    stack register's value at function entry.
    """
    kind: str
    register: Variable
    offset: int = 0
    size: int = 0

    REGISTER: ClassVar[str] = "register"
    STACK: ClassVar[str] = "stack"

    @classmethod
    def from_var(cls, var: Variable) -> AbstractLocation:
        return cls(cls.REGISTER, var, 0, var.size)

    @classmethod
    def from_stack_position(
        cls, stack_register: Variable, offset: int, size: int
    ) -> AbstractLocation:
        return cls(cls.STACK, stack_register, offset, size)

    def is_register(self) -> bool:
        return self.kind == self.REGISTER

    def is_stack(self) -> bool:
        return self.kind == self.STACK

    def __repr__(self) -> str:
        if self.is_register():
            return self.register.name
        return f"[{self.register.name}{self.offset:+d}]:{self.size}"


@dataclass(frozen=True, order=True, slots=True)
class AbstractIdentifier:
    """
    Names the origin of a value: a location at a specific point, namely a
    function start (parameters) or a call site (return values).

    Identifiers are pure functions of their components, so analysing the
    same binary twice produces the same identifiers.
    """
    tid: Tid
    location: AbstractLocation

    @classmethod
    def from_var(cls, tid: Tid, var: Variable) -> AbstractIdentifier:
        return cls(tid, AbstractLocation.from_var(var))

    def get_tid(self) -> Tid:
        return self.tid

    def __repr__(self) -> str:
        return f"{self.tid} @ {self.location!r}"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — DATA DOMAIN
# ═══════════════════════════════════════════════════════════════════════════

RelativeMap = Tuple[Tuple[AbstractIdentifier, Offset], ...]


def _freeze(relative: Mapping[AbstractIdentifier, Offset]) -> RelativeMap:
    return tuple(sorted(relative.items(), key=lambda item: item[0]))


@dataclass(frozen=True)
class DataDomain:
    """
    Abstract value of a register or memory cell.

    Examples
    --------
    >>> rdi = AbstractIdentifier.from_var(Tid("f"), Variable("RDI", 8))
    >>> v = DataDomain.from_target(rdi, 8, 8)
    >>> v.add_offset(Offset.lift(4)).get_relative_values()
    {f @ RDI: Offset(12)}
    >>> DataDomain.from_const(16, 8).get_if_absolute_value()
    16
    """
    size: int
    relative: RelativeMap = ()
    absolute: Optional[Offset] = None
    top_flag: bool = False

    # ---- Constructors -----------------------------------------------------

    @classmethod
    def new_top(cls, size: int) -> DataDomain:
        return cls(size, (), None, True)

    @classmethod
    def new_empty(cls, size: int) -> DataDomain:
        return cls(size)

    @classmethod
    def from_target(
        cls, target: AbstractIdentifier, offset: Union[int, Offset], size: int
    ) -> DataDomain:
        return cls(size, ((target, _wrap(_as_offset(offset), size, True)),))

    @classmethod
    def from_const(cls, value: Union[int, Offset], size: int) -> DataDomain:
        return cls(size, (), _wrap(_as_offset(value), size, False), False)

    # ---- Queries ----------------------------------------------------------

    def is_top(self) -> bool:
        """No information at all: only the top flag is set."""
        return self.top_flag and not self.relative and self.absolute is None

    def is_empty(self) -> bool:
        return not self.top_flag and not self.relative and self.absolute is None

    def contains_top(self) -> bool:
        return self.top_flag

    def get_relative_values(self) -> Dict[AbstractIdentifier, Offset]:
        return dict(self.relative)

    def get_absolute_value(self) -> Optional[Offset]:
        return self.absolute

    def get_if_absolute_value(self) -> Optional[int]:
        """The constant, if this value is exactly one known absolute value."""
        if self.relative or self.top_flag or self.absolute is None:
            return None
        return self.absolute.value

    def get_if_unique_target(self) -> Optional[Tuple[AbstractIdentifier, Offset]]:
        """The single ``(id, offset)`` pair, if the value has no other component."""
        if len(self.relative) != 1 or self.top_flag or self.absolute is not None:
            return None
        return self.relative[0]

    def referenced_ids(self) -> Iterator[AbstractIdentifier]:
        for target, _ in self.relative:
            yield target

    # ---- Flag manipulation (returns new values) ---------------------------

    def with_top_flag(self) -> DataDomain:
        return replace(self, top_flag=True)

    def without_top_flag(self) -> DataDomain:
        return replace(self, top_flag=False)

    # ---- Lattice ----------------------------------------------------------

    def merge(self, other: DataDomain) -> DataDomain:
        """Join: union of targets, offsets joined per identifier, flags OR-ed."""
        if self == other:
            return self
        relative = dict(self.relative)
        for target, offset in other.relative:
            if target in relative:
                relative[target] = relative[target].join(offset)
            else:
                relative[target] = offset
        if self.absolute is None:
            absolute = other.absolute
        elif other.absolute is None:
            absolute = self.absolute
        else:
            absolute = self.absolute.join(other.absolute)
        return DataDomain(
            max(self.size, other.size),
            _freeze(relative),
            absolute,
            self.top_flag or other.top_flag,
        )

    def leq(self, other: DataDomain) -> bool:
        """Partial order: ``self ⊑ other``."""
        if self.top_flag and not other.top_flag:
            return False
        if self.absolute is not None:
            if other.absolute is None or not self.absolute.leq(other.absolute):
                return False
        other_relative = dict(other.relative)
        for target, offset in self.relative:
            if target not in other_relative or not offset.leq(other_relative[target]):
                return False
        return True

    # ---- Abstract arithmetic ----------------------------------------------

    def add_offset(self, offset: Offset) -> DataDomain:
        """Shift every relative target and the absolute part by *offset*."""
        return DataDomain(
            self.size,
            tuple(
                (target, _wrap(value.add(offset), self.size, True))
                for target, value in self.relative
            ),
            _wrap(self.absolute.add(offset), self.size, False)
            if self.absolute is not None else None,
            self.top_flag,
        )

    def bin_op(self, op_type: BinOpType, rhs: DataDomain) -> DataDomain:
        size = 1 if op_type.is_comparison else self.size
        if op_type is BinOpType.INT_ADD:
            rhs_const = rhs.get_if_absolute_value()
            if rhs_const is not None:
                return self.add_offset(Offset(rhs_const))
            lhs_const = self.get_if_absolute_value()
            if lhs_const is not None:
                return replace(rhs, size=self.size).add_offset(Offset(lhs_const))
            return DataDomain.new_top(size)
        if op_type is BinOpType.INT_SUB:
            rhs_const = rhs.get_if_absolute_value()
            if rhs_const is not None:
                return self.add_offset(Offset(-rhs_const))
            lhs_target = self.get_if_unique_target()
            rhs_target = rhs.get_if_unique_target()
            if lhs_target and rhs_target and lhs_target[0] == rhs_target[0]:
                # difference of two pointers into the same object
                difference = lhs_target[1].sub(rhs_target[1])
                return DataDomain(size, (), _wrap(difference, size, False), False)
            return DataDomain.new_top(size)
        lhs_const = self.get_if_absolute_value()
        rhs_const = rhs.get_if_absolute_value()
        if lhs_const is not None and rhs_const is not None:
            folded = _fold_constant(op_type, lhs_const, rhs_const, self.size)
            if folded is not None:
                return DataDomain.from_const(folded, size)
        return DataDomain.new_top(size)

    def un_op(self, op_type: UnOpType) -> DataDomain:
        size = 1 if op_type is UnOpType.BOOL_NEGATE else self.size
        value = self.get_if_absolute_value()
        if value is None:
            return DataDomain.new_top(size)
        if op_type is UnOpType.INT_2COMP:
            return DataDomain.from_const(-value, size)
        if op_type is UnOpType.INT_NEGATE:
            return DataDomain.from_const(~value, size)
        if op_type is UnOpType.BOOL_NEGATE:
            return DataDomain.from_const(int(value == 0), size)
        return DataDomain.new_top(size)

    def cast(self, op_type: CastOpType, size: int) -> DataDomain:
        value = self.get_if_absolute_value()
        if value is None:
            return DataDomain.new_top(size)
        if op_type is CastOpType.INT_ZEXT:
            return DataDomain.from_const(value, size)
        if op_type is CastOpType.INT_SEXT:
            return DataDomain.from_const(to_signed(value, self.size), size)
        return DataDomain.new_top(size)

    def subpiece(self, low_byte: int, size: int) -> DataDomain:
        if low_byte == 0 and size == self.size:
            return self
        value = self.get_if_absolute_value()
        if value is not None:
            return DataDomain.from_const(value >> (8 * low_byte), size)
        return DataDomain.new_top(size)

    def __repr__(self) -> str:
        parts = [f"{target!r}{offset.value:+d}" if offset.is_exact()
                 else f"{target!r}+⊤" for target, offset in self.relative]
        if self.absolute is not None:
            parts.append(repr(self.absolute))
        if self.top_flag:
            parts.append("⊤")
        return f"Data({', '.join(parts) or '∅'}):{self.size}"


# Operands are unsigned; the signed variants reinterpret them at operand size.
_FOLDABLE: Dict[BinOpType, Callable[[int, int], int]] = {
    BinOpType.INT_MULT: op.mul,
    BinOpType.INT_AND: op.and_,
    BinOpType.INT_OR: op.or_,
    BinOpType.INT_XOR: op.xor,
    BinOpType.INT_EQUAL: lambda a, b: int(a == b),
    BinOpType.INT_NOTEQUAL: lambda a, b: int(a != b),
    BinOpType.INT_LESS: lambda a, b: int(a < b),
    BinOpType.INT_LESSEQUAL: lambda a, b: int(a <= b),
}

_SIGNED_COMPARISONS: Dict[BinOpType, Callable[[int, int], int]] = {
    BinOpType.INT_SLESS: lambda a, b: int(a < b),
    BinOpType.INT_SLESSEQUAL: lambda a, b: int(a <= b),
}


def _fold_constant(op_type: BinOpType, lhs: int, rhs: int, size: int) -> Optional[int]:
    if op_type in _FOLDABLE:
        return _FOLDABLE[op_type](lhs, rhs)
    if op_type in _SIGNED_COMPARISONS:
        return _SIGNED_COMPARISONS[op_type](to_signed(lhs, size), to_signed(rhs, size))
    if op_type is BinOpType.INT_LEFT and rhs < 128:
        return lhs << rhs
    if op_type is BinOpType.INT_RIGHT and rhs < 128:
        return lhs >> rhs
    if op_type is BinOpType.INT_SRIGHT and rhs < 128:
        return to_signed(lhs, size) >> rhs
    return None


__all__ = [
    "Offset",
    "AbstractLocation",
    "AbstractIdentifier",
    "DataDomain",
    "to_signed",
    "to_unsigned",
]
