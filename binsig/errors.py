# binsig/errors.py
"""
binsig Error Types
==================

Error hierarchy for the signature-recovery engine and the variadic
argument locator.

Architecture Overview:
─────────────────────
┌─────────────────────────────────────────────────────────────────────────────┐
│                          Error Hierarchy                                     │
├─────────────────────────────────────────────────────────────────────────────┤
│  BinsigError (base)                                                         │
│  ├── VariadicArgumentError        - recoverable, per call site              │
│  │   ├── FormatStringNotFoundError                                          │
│  │   ├── FormatStringNotGlobalError                                         │
│  │   ├── MemoryReadError                                                    │
│  │   └── UnsupportedDatatypeError                                           │
│  ├── ConfigError                  - bad configuration input                 │
│  └── InternalError                - invariant violations (should never      │
│      ├── MissingFormatStringIndexError               happen)                │
│      └── InvalidDatatypeError                                               │
└─────────────────────────────────────────────────────────────────────────────┘

Error Codes:
────────────
Each error has a code of the form BSIG-XXXX:
  - 1000-1999: variadic argument recovery
  - 2000-2999: configuration
  - 9000-9999: internal errors

Recoverable errors abort only the variadic-argument computation of one call
site.  Internal errors abort the enclosing computation.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCategory(Enum):
    """Broad classification of an error."""
    FORMAT_STRING = "format_string"
    MEMORY = "memory"
    DATATYPE = "datatype"
    CONFIG = "config"
    INTERNAL = "internal"


class ErrorCode:
    """
    Structured error code.

    Codes follow the pattern PREFIX-NNNN where NNNN is a 4-digit number.
    """

    __slots__ = ("prefix", "number", "category", "recoverable")

    def __init__(
        self,
        prefix: str,
        number: int,
        category: ErrorCategory,
        recoverable: bool = True,
    ) -> None:
        self.prefix = prefix
        self.number = number
        self.category = category
        self.recoverable = recoverable

    @property
    def code(self) -> str:
        """Get the full error code string."""
        return f"{self.prefix}-{self.number:04d}"

    def __repr__(self) -> str:
        return f"ErrorCode({self.code}, {self.category.value})"


class BinsigErrorCodes:
    """Predefined error codes."""

    # ═══════════════════════════════════════════════════════════════════════
    # VARIADIC ARGUMENT RECOVERY (1000-1999)
    # ═══════════════════════════════════════════════════════════════════════

    FORMAT_STRING_PARAMETER_MISSING = ErrorCode(
        "BSIG", 1000, ErrorCategory.FORMAT_STRING
    )
    FORMAT_STRING_NOT_GLOBAL = ErrorCode(
        "BSIG", 1001, ErrorCategory.FORMAT_STRING
    )
    MEMORY_READ_FAILED = ErrorCode(
        "BSIG", 1100, ErrorCategory.MEMORY
    )
    UNSUPPORTED_DATATYPE = ErrorCode(
        "BSIG", 1200, ErrorCategory.DATATYPE
    )
    VARIADIC_PARSE_FAILED = ErrorCode(
        "BSIG", 1900, ErrorCategory.FORMAT_STRING
    )

    # ═══════════════════════════════════════════════════════════════════════
    # CONFIGURATION (2000-2999)
    # ═══════════════════════════════════════════════════════════════════════

    INVALID_CONFIG = ErrorCode("BSIG", 2000, ErrorCategory.CONFIG)

    # ═══════════════════════════════════════════════════════════════════════
    # INTERNAL (9000-9999)
    # ═══════════════════════════════════════════════════════════════════════

    INTERNAL_ERROR = ErrorCode(
        "BSIG", 9000, ErrorCategory.INTERNAL, recoverable=False
    )
    MISSING_FORMAT_STRING_INDEX = ErrorCode(
        "BSIG", 9001, ErrorCategory.INTERNAL, recoverable=False
    )
    INVALID_DATATYPE = ErrorCode(
        "BSIG", 9002, ErrorCategory.INTERNAL, recoverable=False
    )


class BinsigError(Exception):
    """
    Base exception for all binsig errors.

    Carries a structured :class:`ErrorCode` and, when the error wraps
    another failure, the original exception as ``cause``.
    """

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or BinsigErrorCodes.INTERNAL_ERROR
        self.cause = cause

    @property
    def recoverable(self) -> bool:
        return self.code.recoverable

    def __str__(self) -> str:
        return f"[{self.code.code}] {self.message}"


# ───────────────────────────────────────────────────────────────────────────
# RECOVERABLE: VARIADIC ARGUMENT RECOVERY
# ───────────────────────────────────────────────────────────────────────────

class VariadicArgumentError(BinsigError):
    """The variadic arguments of one call site could not be computed."""

    def __init__(
        self,
        message: str,
        code: Optional[ErrorCode] = None,
        cause: Optional[Exception] = None,
    ) -> None:
        super().__init__(
            message,
            code=code or BinsigErrorCodes.VARIADIC_PARSE_FAILED,
            cause=cause,
        )


class FormatStringNotFoundError(VariadicArgumentError):
    """The extern symbol has no parameter at the format-string index."""

    def __init__(self, symbol_name: str, index: int) -> None:
        super().__init__(
            f"No format string parameter at specified index {index} "
            f"for function {symbol_name}",
            code=BinsigErrorCodes.FORMAT_STRING_PARAMETER_MISSING,
        )
        self.symbol_name = symbol_name
        self.index = index


class FormatStringNotGlobalError(VariadicArgumentError):
    """The format-string pointer is not a single absolute address."""

    def __init__(self, message: str = "Format string not in global memory.") -> None:
        super().__init__(message, code=BinsigErrorCodes.FORMAT_STRING_NOT_GLOBAL)


class MemoryReadError(VariadicArgumentError):
    """Reading from the memory image failed."""

    def __init__(self, message: str, address: Optional[int] = None) -> None:
        super().__init__(message, code=BinsigErrorCodes.MEMORY_READ_FAILED)
        self.address = address


class UnsupportedDatatypeError(VariadicArgumentError):
    """The format string uses a datatype whose location cannot be computed yet."""

    def __init__(self, message: str = (
        "Data types: long, long long and long double, cannot be parsed yet."
    )) -> None:
        super().__init__(message, code=BinsigErrorCodes.UNSUPPORTED_DATATYPE)


# ───────────────────────────────────────────────────────────────────────────
# CONFIGURATION
# ───────────────────────────────────────────────────────────────────────────

class ConfigError(BinsigError):
    """Invalid configuration input."""

    def __init__(self, message: str, cause: Optional[Exception] = None) -> None:
        super().__init__(message, code=BinsigErrorCodes.INVALID_CONFIG, cause=cause)


# ───────────────────────────────────────────────────────────────────────────
# INTERNAL ERRORS
# ───────────────────────────────────────────────────────────────────────────

class InternalError(BinsigError):
    """Invariant violation caused by inconsistent upstream setup."""

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message, code=code or BinsigErrorCodes.INTERNAL_ERROR)


class MissingFormatStringIndexError(InternalError):
    """Variadic locations were requested for a symbol with no format-string index."""

    def __init__(self, symbol_name: str) -> None:
        super().__init__(
            f"External symbol {symbol_name} does not contain a format string parameter.",
            code=BinsigErrorCodes.MISSING_FORMAT_STRING_INDEX,
        )
        self.symbol_name = symbol_name


class InvalidDatatypeError(InternalError):
    """A datatype outside the location-assignment cases reached the locator."""

    def __init__(self, data_type: object) -> None:
        super().__init__(
            f"Invalid data type specifier from format string: {data_type}",
            code=BinsigErrorCodes.INVALID_DATATYPE,
        )
        self.data_type = data_type


__all__ = [
    "ErrorCategory",
    "ErrorCode",
    "BinsigErrorCodes",
    "BinsigError",
    "VariadicArgumentError",
    "FormatStringNotFoundError",
    "FormatStringNotGlobalError",
    "MemoryReadError",
    "UnsupportedDatatypeError",
    "ConfigError",
    "InternalError",
    "MissingFormatStringIndexError",
    "InvalidDatatypeError",
]
