"""
binsig/arguments.py
===================

Locations of the variadic arguments of printf/scanf style calls.

For a call to a variadic extern symbol with a format string parameter:

    1. find the format string parameter of the symbol
    2. evaluate it in the pointer state at the call site; it has to be a
       single global address
    3. read the C string at that address from the memory image
    4. classify the specifiers (:mod:`binsig.format_string`)
    5. assign registers and stack slots following the calling convention

Recoverable failures raise subclasses of :class:`VariadicArgumentError`;
only that call site loses its variadic arguments.  A symbol without a
configured format string index or an unexpected datatype is an
:class:`InternalError`.

Pointer states
--------------
Any object with ``eval_parameter_arg(arg, memory_image)`` returning a
:class:`~binsig.abstract_domain.DataDomain` can serve as the call site
state, :class:`binsig.state.State` included.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from binsig.config import AnalysisConfig
from binsig.errors import (
    FormatStringNotFoundError,
    FormatStringNotGlobalError,
    InvalidDatatypeError,
    MissingFormatStringIndexError,
    VariadicArgumentError,
)
from binsig.format_string import parse_format_string_parameters
from binsig.ir import Call, Tid, Var, Variable
from binsig.memory_image import DEFAULT_MAX_STRING_LENGTH, RuntimeMemoryImage
from binsig.project import (
    Arg,
    CallingConvention,
    Datatype,
    ExternSymbol,
    Project,
    create_register_arg,
    create_stack_arg,
)

logger = logging.getLogger(__name__)

# Targets where the call instruction pushes the return address.
RETURN_ADDRESS_ON_STACK_ARCHITECTURES = frozenset({"x86", "x86_32", "x86_64"})

_INTEGER_CLASS = (Datatype.INTEGER, Datatype.POINTER, Datatype.CHAR)


def get_input_format_string(
    pi_state: Any,
    extern_symbol: ExternSymbol,
    format_string_index: int,
    memory_image: RuntimeMemoryImage,
    max_length: int = DEFAULT_MAX_STRING_LENGTH,
) -> str:
    """Read the format string passed to *extern_symbol* at the call site."""
    if not 0 <= format_string_index < len(extern_symbol.parameters):
        raise FormatStringNotFoundError(extern_symbol.name, format_string_index)
    format_string_param = extern_symbol.parameters[format_string_index]
    address = pi_state.eval_parameter_arg(
        format_string_param, memory_image
    ).get_if_absolute_value()
    if address is None:
        raise FormatStringNotGlobalError()
    return memory_image.read_string_until_null_terminator(address, max_length)


def calculate_parameter_locations(
    parameters: Sequence[Tuple[Datatype, int]],
    calling_convention: CallingConvention,
    format_string_index: int,
    stack_register: Variable,
    cpu_architecture: str,
) -> List[Arg]:
    """
    Register and stack locations of the variadic *parameters*.

    The format string is the last fixed argument, so the variadic integer
    arguments start with the integer register after it.  Float arguments
    use the float registers from the first one on.  Arguments that do not
    fit into registers share one running stack offset.  Fixed arguments
    that were themselves passed on the stack are skipped first.
    """
    integer_registers = calling_convention.integer_parameter_register
    float_registers = calling_convention.float_parameter_register
    fixed_argument_count = format_string_index + 1

    integer_register_count = max(0, len(integer_registers) - fixed_argument_count)
    float_register_count = len(float_registers)

    stack_offset = 0
    if cpu_architecture in RETURN_ADDRESS_ON_STACK_ARCHITECTURES:
        stack_offset = stack_register.size
    # fixed arguments that were passed on the stack themselves
    stack_offset += max(0, fixed_argument_count - len(integer_registers)) * stack_register.size

    var_args: List[Arg] = []
    for data_type, size in parameters:
        if data_type in _INTEGER_CLASS:
            if integer_register_count > 0:
                register = integer_registers[len(integer_registers) - integer_register_count]
                var_args.append(create_register_arg(Var(register), data_type))
                integer_register_count -= 1
                continue
        elif data_type is Datatype.DOUBLE:
            if float_register_count > 0:
                expr = float_registers[len(float_registers) - float_register_count]
                var_args.append(create_register_arg(expr, data_type))
                float_register_count -= 1
                continue
        else:
            raise InvalidDatatypeError(data_type)
        var_args.append(create_stack_arg(size, stack_offset, data_type, stack_register))
        stack_offset += size
    return var_args


def get_variable_parameters(
    project: Project,
    pi_state: Any,
    extern_symbol: ExternSymbol,
    format_string_index_map: Mapping[str, int],
    memory_image: RuntimeMemoryImage,
    max_length: int = DEFAULT_MAX_STRING_LENGTH,
) -> List[Arg]:
    """Locations of the variadic arguments of one call to *extern_symbol*."""
    format_string_index = format_string_index_map.get(extern_symbol.name)
    if format_string_index is None:
        raise MissingFormatStringIndexError(extern_symbol.name)

    try:
        format_string = get_input_format_string(
            pi_state, extern_symbol, format_string_index, memory_image, max_length
        )
        parameters = parse_format_string_parameters(
            format_string, project.datatype_properties
        )
    except VariadicArgumentError as exc:
        raise VariadicArgumentError(
            f"Could not parse variable parameters: {exc.message}",
            code=exc.code,
            cause=exc,
        ) from exc

    calling_convention = project.get_calling_convention(extern_symbol)
    if calling_convention is None:
        raise VariadicArgumentError(
            f"Could not parse variable parameters: no calling convention for {extern_symbol.name}"
        )
    return calculate_parameter_locations(
        parameters,
        calling_convention,
        format_string_index,
        project.stack_pointer_register,
        project.cpu_architecture,
    )


def collect_variadic_arguments(
    project: Project,
    pi_states: Mapping[Tid, Any],
    memory_image: RuntimeMemoryImage,
    config: Optional[AnalysisConfig] = None,
) -> Dict[Tid, List[Arg]]:
    """
    Variadic argument locations of every call to a format string function.

    *pi_states* maps the tid of a call jump to the pointer state right
    before the call.  Calls without a state or whose arguments cannot be
    computed are skipped.
    """
    config = config or AnalysisConfig()
    result: Dict[Tid, List[Arg]] = {}
    for sub in project.program.subs.values():
        for block in sub.term.blocks:
            for jmp in block.term.jmps:
                if not isinstance(jmp.term, Call):
                    continue
                extern_symbol = project.get_extern_symbol(jmp.term.target)
                if extern_symbol is None or extern_symbol.name not in config.format_string_symbols:
                    continue
                pi_state = pi_states.get(jmp.tid)
                if pi_state is None:
                    logger.debug("No pointer state for call %s to %s", jmp.tid, extern_symbol.name)
                    continue
                try:
                    result[jmp.tid] = get_variable_parameters(
                        project,
                        pi_state,
                        extern_symbol,
                        config.format_string_symbols,
                        memory_image,
                        config.max_format_string_length,
                    )
                except VariadicArgumentError as exc:
                    logger.debug("Skipping call %s to %s: %s", jmp.tid, extern_symbol.name, exc)
    logger.debug("Located variadic arguments of %d call sites", len(result))
    return result


__all__ = [
    "RETURN_ADDRESS_ON_STACK_ARCHITECTURES",
    "get_input_format_string",
    "calculate_parameter_locations",
    "get_variable_parameters",
    "collect_variadic_arguments",
]
