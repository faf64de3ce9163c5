"""
binsig/ir.py
============

Intermediate representation of lifted binary code.

The lifter that produces this IR is not part of binsig; this module only
defines the term structure the analyses walk over:

    Program
      ├── subs            Tid → Term[Sub]
      │     └── blocks    [Term[Blk]]
      │           ├── defs  [Term[Def]]    Assign | Load | Store
      │           └── jmps  [Term[Jmp]]    Branch | BranchInd | CBranch |
      │                                    Call | CallInd | Return | CallOther
      └── extern_symbols  Tid → ExternSymbol   (see :mod:`binsig.project`)

Every term carries a stable :class:`Tid`.  Expressions are immutable and
hashable so that they can be used inside argument descriptions that serve
as dictionary keys.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, Generic, Iterator, List, Optional, TypeVar, Union

T = TypeVar("T")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — IDENTIFIERS AND VARIABLES
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, order=True, slots=True)
class Tid:
    """Term identifier: a unique name plus the address the term was lifted from."""
    id: str
    address: str = "UNKNOWN"

    def __str__(self) -> str:
        return self.id


@dataclass(frozen=True, order=True, slots=True)
class Variable:
    """A register (or temporary) of a given byte size."""
    name: str
    size: int
    is_temp: bool = False

    def __str__(self) -> str:
        return f"{self.name}:{self.size}"


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — EXPRESSIONS
# ═══════════════════════════════════════════════════════════════════════════

class BinOpType(enum.Enum):
    INT_ADD = "IntAdd"
    INT_SUB = "IntSub"
    INT_MULT = "IntMult"
    INT_DIV = "IntDiv"
    INT_SDIV = "IntSDiv"
    INT_REM = "IntRem"
    INT_AND = "IntAnd"
    INT_OR = "IntOr"
    INT_XOR = "IntXOr"
    INT_LEFT = "IntLeft"
    INT_RIGHT = "IntRight"
    INT_SRIGHT = "IntSRight"
    INT_EQUAL = "IntEqual"
    INT_NOTEQUAL = "IntNotEqual"
    INT_LESS = "IntLess"
    INT_SLESS = "IntSLess"
    INT_LESSEQUAL = "IntLessEqual"
    INT_SLESSEQUAL = "IntSLessEqual"
    INT_CARRY = "IntCarry"
    BOOL_AND = "BoolAnd"
    BOOL_OR = "BoolOr"
    PIECE = "Piece"
    FLOAT_ADD = "FloatAdd"
    FLOAT_SUB = "FloatSub"
    FLOAT_MULT = "FloatMult"
    FLOAT_DIV = "FloatDiv"

    @property
    def is_comparison(self) -> bool:
        return self in _COMPARISON_OPS


_COMPARISON_OPS = frozenset({
    BinOpType.INT_EQUAL,
    BinOpType.INT_NOTEQUAL,
    BinOpType.INT_LESS,
    BinOpType.INT_SLESS,
    BinOpType.INT_LESSEQUAL,
    BinOpType.INT_SLESSEQUAL,
    BinOpType.INT_CARRY,
    BinOpType.BOOL_AND,
    BinOpType.BOOL_OR,
})


class UnOpType(enum.Enum):
    INT_NEGATE = "IntNegate"
    INT_2COMP = "Int2Comp"
    BOOL_NEGATE = "BoolNegate"
    FLOAT_NEGATE = "FloatNegate"


class CastOpType(enum.Enum):
    INT_ZEXT = "IntZExt"
    INT_SEXT = "IntSExt"
    INT2FLOAT = "Int2Float"
    FLOAT2FLOAT = "Float2Float"
    TRUNC = "Trunc"
    POPCOUNT = "PopCount"


@dataclass(frozen=True, slots=True)
class Var:
    var: Variable

    def bytesize(self) -> int:
        return self.var.size


@dataclass(frozen=True, slots=True)
class Const:
    value: int
    size: int

    def bytesize(self) -> int:
        return self.size


@dataclass(frozen=True, slots=True)
class BinOp:
    op: BinOpType
    lhs: Expression
    rhs: Expression

    def bytesize(self) -> int:
        if self.op.is_comparison:
            return 1
        if self.op is BinOpType.PIECE:
            return self.lhs.bytesize() + self.rhs.bytesize()
        return self.lhs.bytesize()


@dataclass(frozen=True, slots=True)
class UnOp:
    op: UnOpType
    arg: Expression

    def bytesize(self) -> int:
        if self.op is UnOpType.BOOL_NEGATE:
            return 1
        return self.arg.bytesize()


@dataclass(frozen=True, slots=True)
class Cast:
    op: CastOpType
    size: int
    arg: Expression

    def bytesize(self) -> int:
        return self.size


@dataclass(frozen=True, slots=True)
class Unknown:
    description: str
    size: int

    def bytesize(self) -> int:
        return self.size


@dataclass(frozen=True, slots=True)
class Subpiece:
    low_byte: int
    size: int
    arg: Expression

    def bytesize(self) -> int:
        return self.size


Expression = Union[Var, Const, BinOp, UnOp, Cast, Unknown, Subpiece]


def input_vars(expr: Expression) -> List[Variable]:
    """Return all variables occurring in *expr* (in evaluation order, with duplicates)."""
    return list(_iter_vars(expr))


def _iter_vars(expr: Expression) -> Iterator[Variable]:
    if isinstance(expr, Var):
        yield expr.var
    elif isinstance(expr, BinOp):
        yield from _iter_vars(expr.lhs)
        yield from _iter_vars(expr.rhs)
    elif isinstance(expr, (UnOp, Cast, Subpiece)):
        yield from _iter_vars(expr.arg)
    elif isinstance(expr, (Const, Unknown)):
        return
    else:
        raise TypeError(f"Not an expression: {type(expr).__name__}")


def plus_const(expr: Expression, value: int) -> Expression:
    """Return ``expr + value`` (``expr`` itself for a zero offset)."""
    if value == 0:
        return expr
    return BinOp(BinOpType.INT_ADD, expr, Const(value, expr.bytesize()))


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — DEFS AND JUMPS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class Assign:
    var: Variable
    value: Expression


@dataclass(frozen=True, slots=True)
class Load:
    var: Variable
    address: Expression


@dataclass(frozen=True, slots=True)
class Store:
    address: Expression
    value: Expression


Def = Union[Assign, Load, Store]


@dataclass(frozen=True, slots=True)
class Branch:
    target: Tid


@dataclass(frozen=True, slots=True)
class BranchInd:
    target: Expression


@dataclass(frozen=True, slots=True)
class CBranch:
    target: Tid
    condition: Expression


@dataclass(frozen=True, slots=True)
class Call:
    target: Tid
    return_: Optional[Tid] = None


@dataclass(frozen=True, slots=True)
class CallInd:
    target: Expression
    return_: Optional[Tid] = None


@dataclass(frozen=True, slots=True)
class Return:
    expression: Expression


@dataclass(frozen=True, slots=True)
class CallOther:
    description: str
    return_: Optional[Tid] = None


Jmp = Union[Branch, BranchInd, CBranch, Call, CallInd, Return, CallOther]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — TERMS, BLOCKS, FUNCTIONS, PROGRAM
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class Term(Generic[T]):
    """A term of the IR together with its identifier."""
    tid: Tid
    term: T


@dataclass
class Blk:
    defs: List[Term[Def]] = field(default_factory=list)
    jmps: List[Term[Jmp]] = field(default_factory=list)
    indirect_jmp_targets: List[Tid] = field(default_factory=list)


@dataclass
class Sub:
    name: str
    blocks: List[Term[Blk]] = field(default_factory=list)
    calling_convention: Optional[str] = None


@dataclass
class Program:
    subs: Dict[Tid, Term[Sub]] = field(default_factory=dict)
    # Tid → ExternSymbol; typed loosely to keep ir independent of project.
    extern_symbols: Dict[Tid, object] = field(default_factory=dict)
    entry_points: List[Tid] = field(default_factory=list)

    def find_block(self, tid: Tid) -> Optional[tuple]:
        """Return ``(block_term, sub_term)`` for a block tid, if it exists."""
        for sub in self.subs.values():
            for blk in sub.term.blocks:
                if blk.tid == tid:
                    return blk, sub
        return None


__all__ = [
    "Tid",
    "Variable",
    "BinOpType",
    "UnOpType",
    "CastOpType",
    "Var",
    "Const",
    "BinOp",
    "UnOp",
    "Cast",
    "Unknown",
    "Subpiece",
    "Expression",
    "input_vars",
    "plus_const",
    "Assign",
    "Load",
    "Store",
    "Def",
    "Branch",
    "BranchInd",
    "CBranch",
    "Call",
    "CallInd",
    "Return",
    "CallOther",
    "Jmp",
    "Term",
    "Blk",
    "Sub",
    "Program",
]
