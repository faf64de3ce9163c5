"""
binsig/project.py
=================

Binary-level facts the analyses consult but never modify: datatypes and
their sizes, argument locations, calling conventions, extern symbols and
the :class:`Project` that bundles them with the lifted program.

Built-in tables
---------------
``CALLING_CONVENTIONS``      architecture → {name: CallingConvention}
``DATATYPE_PROPERTIES``      architecture → DatatypeProperties
``STACK_POINTERS``           architecture → stack pointer Variable

``Project.for_architecture(arch, program)`` assembles a project from these
tables; callers with lifter-provided conventions construct ``Project``
directly.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple, Union

from binsig.ir import Expression, Program, Tid, Var, Variable, input_vars, plus_const

logger = logging.getLogger(__name__)


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — DATATYPES
# ═══════════════════════════════════════════════════════════════════════════

class Datatype(enum.Enum):
    """C datatypes that variadic arguments are classified into."""
    CHAR = "char"
    DOUBLE = "double"
    INTEGER = "integer"
    LONG = "long"
    LONG_DOUBLE = "long_double"
    LONG_LONG = "long_long"
    POINTER = "pointer"
    SHORT = "short"


@dataclass(frozen=True, slots=True)
class DatatypeProperties:
    """Byte sizes of the C datatypes on one target."""
    char_size: int
    double_size: int
    float_size: int
    integer_size: int
    long_double_size: int
    long_long_size: int
    long_size: int
    pointer_size: int
    short_size: int

    def get_size_from_data_type(self, data_type: Datatype) -> int:
        return {
            Datatype.CHAR: self.char_size,
            Datatype.DOUBLE: self.double_size,
            Datatype.INTEGER: self.integer_size,
            Datatype.LONG: self.long_size,
            Datatype.LONG_DOUBLE: self.long_double_size,
            Datatype.LONG_LONG: self.long_long_size,
            Datatype.POINTER: self.pointer_size,
            Datatype.SHORT: self.short_size,
        }[data_type]


_ILP32 = DatatypeProperties(
    char_size=1, double_size=8, float_size=4, integer_size=4,
    long_double_size=8, long_long_size=8, long_size=4, pointer_size=4,
    short_size=2,
)
_LP64 = DatatypeProperties(
    char_size=1, double_size=8, float_size=4, integer_size=4,
    long_double_size=16, long_long_size=8, long_size=8, pointer_size=8,
    short_size=2,
)

DATATYPE_PROPERTIES: Dict[str, DatatypeProperties] = {
    "x86_32": DatatypeProperties(
        char_size=1, double_size=8, float_size=4, integer_size=4,
        long_double_size=12, long_long_size=8, long_size=4, pointer_size=4,
        short_size=2,
    ),
    "x86_64": _LP64,
    "arm32": _ILP32,
    "aarch64": _LP64,
    "mips32": _ILP32,
    "mips64": _LP64,
    "ppc32": _ILP32,
    "ppc64": _LP64,
}
DATATYPE_PROPERTIES["x86"] = DATATYPE_PROPERTIES["x86_32"]


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — ARGUMENT LOCATIONS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, slots=True)
class RegisterArg:
    """An argument passed in a register (or a register sub-expression)."""
    expr: Expression
    data_type: Optional[Datatype] = None

    def bytesize(self) -> int:
        return self.expr.bytesize()


@dataclass(frozen=True, slots=True)
class StackArg:
    """An argument passed in memory at ``address`` (relative to the stack pointer)."""
    address: Expression
    size: int
    data_type: Optional[Datatype] = None

    def bytesize(self) -> int:
        return self.size


Arg = Union[RegisterArg, StackArg]


def create_register_arg(expr: Expression, data_type: Optional[Datatype] = None) -> RegisterArg:
    """Creates a register parameter given a register expression and data type."""
    return RegisterArg(expr=expr, data_type=data_type)


def create_stack_arg(
    size: int,
    stack_offset: int,
    data_type: Optional[Datatype],
    stack_register: Variable,
) -> StackArg:
    """Creates a stack parameter given a size, stack offset and data type."""
    return StackArg(
        address=plus_const(Var(stack_register), stack_offset),
        size=size,
        data_type=data_type,
    )


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — CALLING CONVENTIONS AND EXTERN SYMBOLS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class CallingConvention:
    """Register usage contract of a calling convention."""
    name: str
    integer_parameter_register: Tuple[Variable, ...] = ()
    float_parameter_register: Tuple[Expression, ...] = ()
    integer_return_register: Tuple[Variable, ...] = ()
    float_return_register: Tuple[Expression, ...] = ()
    callee_saved_register: Tuple[Variable, ...] = ()

    def get_all_parameter_register(self) -> List[Variable]:
        """Integer parameter registers plus the input registers of float parameters."""
        registers: List[Variable] = list(self.integer_parameter_register)
        for expr in self.float_parameter_register:
            for var in input_vars(expr):
                if var not in registers:
                    registers.append(var)
        return registers

    def get_all_return_register(self) -> List[Variable]:
        registers: List[Variable] = list(self.integer_return_register)
        for expr in self.float_return_register:
            for var in input_vars(expr):
                if var not in registers:
                    registers.append(var)
        return registers


@dataclass(frozen=True)
class ExternSymbol:
    """A function imported from a library, with its declared signature."""
    tid: Tid
    name: str
    calling_convention: Optional[str] = None
    parameters: Tuple[Arg, ...] = ()
    return_values: Tuple[Arg, ...] = ()
    no_return: bool = False
    has_var_args: bool = False


# ═══════════════════════════════════════════════════════════════════════════
#  PART 4 — BUILT-IN ARCHITECTURE TABLES
# ═══════════════════════════════════════════════════════════════════════════

def _regs(size: int, *names: str) -> Tuple[Variable, ...]:
    return tuple(Variable(name, size) for name in names)


def _float_regs(size: int, *names: str) -> Tuple[Expression, ...]:
    return tuple(Var(Variable(name, size)) for name in names)


STACK_POINTERS: Dict[str, Variable] = {
    "x86_32": Variable("ESP", 4),
    "x86_64": Variable("RSP", 8),
    "arm32": Variable("sp", 4),
    "aarch64": Variable("sp", 8),
    "mips32": Variable("sp", 4),
    "mips64": Variable("sp", 8),
    "ppc32": Variable("r1", 4),
    "ppc64": Variable("r1", 8),
}
STACK_POINTERS["x86"] = STACK_POINTERS["x86_32"]

CALLING_CONVENTIONS: Dict[str, Dict[str, CallingConvention]] = {
    "x86_64": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(8, "RDI", "RSI", "RDX", "RCX", "R8", "R9"),
            float_parameter_register=_float_regs(
                16, "XMM0", "XMM1", "XMM2", "XMM3", "XMM4", "XMM5", "XMM6", "XMM7",
            ),
            integer_return_register=_regs(8, "RAX", "RDX"),
            float_return_register=_float_regs(16, "XMM0"),
            callee_saved_register=_regs(8, "RBX", "RBP", "RSP", "R12", "R13", "R14", "R15"),
        ),
    },
    "x86_32": {
        "__cdecl": CallingConvention(
            name="__cdecl",
            integer_return_register=_regs(4, "EAX", "EDX"),
            float_return_register=_float_regs(10, "ST0"),
            callee_saved_register=_regs(4, "EBX", "ESI", "EDI", "EBP", "ESP"),
        ),
    },
    "arm32": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(4, "r0", "r1", "r2", "r3"),
            float_parameter_register=_float_regs(8, "d0", "d1", "d2", "d3", "d4", "d5", "d6", "d7"),
            integer_return_register=_regs(4, "r0", "r1"),
            float_return_register=_float_regs(8, "d0"),
            callee_saved_register=_regs(
                4, "r4", "r5", "r6", "r7", "r8", "r9", "r10", "r11", "sp",
            ),
        ),
    },
    "aarch64": {
        "__cdecl": CallingConvention(
            name="__cdecl",
            integer_parameter_register=_regs(8, "x0", "x1", "x2", "x3", "x4", "x5", "x6", "x7"),
            float_parameter_register=_float_regs(8, "d0", "d1", "d2", "d3", "d4", "d5", "d6", "d7"),
            integer_return_register=_regs(8, "x0", "x1"),
            float_return_register=_float_regs(8, "d0"),
            callee_saved_register=_regs(
                8, "x19", "x20", "x21", "x22", "x23", "x24", "x25", "x26",
                "x27", "x28", "x29", "sp",
            ),
        ),
    },
    "mips32": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(4, "a0", "a1", "a2", "a3"),
            float_parameter_register=_float_regs(4, "f12", "f14"),
            integer_return_register=_regs(4, "v0", "v1"),
            float_return_register=_float_regs(4, "f0"),
            callee_saved_register=_regs(
                4, "s0", "s1", "s2", "s3", "s4", "s5", "s6", "s7", "s8", "sp",
            ),
        ),
    },
    "mips64": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(
                8, "a0", "a1", "a2", "a3", "a4", "a5", "a6", "a7",
            ),
            float_parameter_register=_float_regs(
                8, "f12", "f13", "f14", "f15", "f16", "f17", "f18", "f19",
            ),
            integer_return_register=_regs(8, "v0", "v1"),
            float_return_register=_float_regs(8, "f0"),
            callee_saved_register=_regs(
                8, "s0", "s1", "s2", "s3", "s4", "s5", "s6", "s7", "s8", "sp",
            ),
        ),
    },
    "ppc32": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(
                4, "r3", "r4", "r5", "r6", "r7", "r8", "r9", "r10",
            ),
            float_parameter_register=_float_regs(
                8, "f1", "f2", "f3", "f4", "f5", "f6", "f7", "f8",
            ),
            integer_return_register=_regs(4, "r3", "r4"),
            float_return_register=_float_regs(8, "f1"),
            callee_saved_register=_regs(4, *(f"r{i}" for i in range(14, 32)), "r1"),
        ),
    },
    "ppc64": {
        "__stdcall": CallingConvention(
            name="__stdcall",
            integer_parameter_register=_regs(
                8, "r3", "r4", "r5", "r6", "r7", "r8", "r9", "r10",
            ),
            float_parameter_register=_float_regs(
                8, "f1", "f2", "f3", "f4", "f5", "f6", "f7", "f8",
            ),
            integer_return_register=_regs(8, "r3", "r4"),
            float_return_register=_float_regs(8, "f1"),
            callee_saved_register=_regs(8, *(f"r{i}" for i in range(14, 32)), "r1"),
        ),
    },
}
CALLING_CONVENTIONS["x86"] = CALLING_CONVENTIONS["x86_32"]

# Tried in order by Project.get_standard_calling_convention()
STANDARD_CALLING_CONVENTION_NAMES: Tuple[str, ...] = ("__stdcall", "__cdecl")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 5 — PROJECT
# ═══════════════════════════════════════════════════════════════════════════

@dataclass
class Project:
    """The lifted program together with the target description."""
    program: Program
    cpu_architecture: str
    stack_pointer_register: Variable
    calling_conventions: Dict[str, CallingConvention] = field(default_factory=dict)
    datatype_properties: DatatypeProperties = _LP64
    default_calling_convention: Optional[str] = None

    @classmethod
    def for_architecture(
        cls,
        cpu_architecture: str,
        program: Optional[Program] = None,
    ) -> Project:
        """Build a project from the built-in tables for *cpu_architecture*."""
        try:
            stack_pointer = STACK_POINTERS[cpu_architecture]
        except KeyError:
            raise ValueError(f"Unsupported architecture: {cpu_architecture}") from None
        return cls(
            program=program if program is not None else Program(),
            cpu_architecture=cpu_architecture,
            stack_pointer_register=stack_pointer,
            calling_conventions=dict(CALLING_CONVENTIONS.get(cpu_architecture, {})),
            datatype_properties=DATATYPE_PROPERTIES[cpu_architecture],
        )

    def get_standard_calling_convention(self) -> Optional[CallingConvention]:
        """The calling convention assumed for calls whose target is unknown."""
        if self.default_calling_convention is not None:
            return self.calling_conventions.get(self.default_calling_convention)
        for name in STANDARD_CALLING_CONVENTION_NAMES:
            cconv = self.calling_conventions.get(name)
            if cconv is not None:
                return cconv
        return None

    def get_calling_convention(self, extern_symbol: ExternSymbol) -> Optional[CallingConvention]:
        """The symbol's declared calling convention, else the standard one."""
        if extern_symbol.calling_convention is not None:
            cconv = self.calling_conventions.get(extern_symbol.calling_convention)
            if cconv is not None:
                return cconv
            logger.debug(
                "Unknown calling convention %s of %s, using the standard one",
                extern_symbol.calling_convention,
                extern_symbol.name,
            )
        return self.get_standard_calling_convention()

    def get_extern_symbol(self, tid: Tid) -> Optional[ExternSymbol]:
        symbol = self.program.extern_symbols.get(tid)
        return symbol if isinstance(symbol, ExternSymbol) else None


__all__ = [
    "Datatype",
    "DatatypeProperties",
    "DATATYPE_PROPERTIES",
    "RegisterArg",
    "StackArg",
    "Arg",
    "create_register_arg",
    "create_stack_arg",
    "CallingConvention",
    "ExternSymbol",
    "STACK_POINTERS",
    "CALLING_CONVENTIONS",
    "STANDARD_CALLING_CONVENTION_NAMES",
    "Project",
]
