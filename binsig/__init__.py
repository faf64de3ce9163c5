"""
binsig — Function Signature Recovery for Lifted Binaries
========================================================

Interprocedural abstract interpretation that recovers, for every function
of a lifted binary, which registers and stack slots are genuine parameters
and how they are used (read, dereferenced, written through), together with
the locations of the variadic arguments of printf/scanf style calls.

Core modules
------------
abstract_domain
    Abstract identifiers, offsets and the relative value domain.
state
    Per-program-point abstract state and parameter access patterns.
graph
    Interprocedural supergraph of a program (networkx).
fixpoint
    Forward interprocedural worklist solver.
context
    Transfer functions of the signature analysis.
signature
    ``compute_function_signatures`` and ``FunctionSignature``.
format_string / arguments
    Format string recognizer (PEG grammar) and variadic argument locator.

Quick start
-----------
>>> from binsig import Project, compute_function_signatures
>>> project = Project.for_architecture("x86_64", program)      # doctest: +SKIP
>>> result = compute_function_signatures(project)              # doctest: +SKIP
>>> result.signatures[main_tid].parameters                     # doctest: +SKIP
{RegisterArg(expr=Var(var=Variable(name='RDI', ...)), ...): Access(r--)}

Package layout
--------------
::

    binsig/
    ├── __init__.py            ← this file
    ├── errors.py
    ├── config.py
    ├── ir.py
    ├── project.py
    ├── abstract_domain.py
    ├── memory_image.py
    ├── state.py
    ├── graph.py
    ├── fixpoint.py
    ├── context.py
    ├── signature.py
    ├── format_string.py
    └── arguments.py
"""

from __future__ import annotations

import logging

__version__ = "0.1.0"

logger = logging.getLogger(__name__)
logger.addHandler(logging.NullHandler())

from binsig.abstract_domain import (  # noqa: E402
    AbstractIdentifier,
    AbstractLocation,
    DataDomain,
    Offset,
)
from binsig.arguments import (  # noqa: E402
    calculate_parameter_locations,
    collect_variadic_arguments,
    get_input_format_string,
    get_variable_parameters,
)
from binsig.config import AnalysisConfig  # noqa: E402
from binsig.context import Context  # noqa: E402
from binsig.errors import (  # noqa: E402
    BinsigError,
    ConfigError,
    InternalError,
    VariadicArgumentError,
)
from binsig.fixpoint import CallFlowCombinator, InterproceduralFixpoint  # noqa: E402
from binsig.format_string import parse_format_string_parameters  # noqa: E402
from binsig.graph import build_graph  # noqa: E402
from binsig.memory_image import MemorySegment, RuntimeMemoryImage  # noqa: E402
from binsig.project import (  # noqa: E402
    Arg,
    CallingConvention,
    Datatype,
    DatatypeProperties,
    ExternSymbol,
    Project,
    RegisterArg,
    StackArg,
)
from binsig.signature import (  # noqa: E402
    FunctionSignature,
    SignatureAnalysisResult,
    compute_function_signatures,
)
from binsig.state import AccessPattern, State  # noqa: E402

__all__ = [
    "__version__",
    "AbstractIdentifier",
    "AbstractLocation",
    "DataDomain",
    "Offset",
    "AccessPattern",
    "State",
    "Arg",
    "RegisterArg",
    "StackArg",
    "CallingConvention",
    "Datatype",
    "DatatypeProperties",
    "ExternSymbol",
    "Project",
    "MemorySegment",
    "RuntimeMemoryImage",
    "build_graph",
    "CallFlowCombinator",
    "InterproceduralFixpoint",
    "Context",
    "AnalysisConfig",
    "FunctionSignature",
    "SignatureAnalysisResult",
    "compute_function_signatures",
    "parse_format_string_parameters",
    "get_input_format_string",
    "calculate_parameter_locations",
    "get_variable_parameters",
    "collect_variadic_arguments",
    "BinsigError",
    "VariadicArgumentError",
    "InternalError",
    "ConfigError",
]
