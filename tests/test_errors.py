# tests/test_errors.py
"""Tests for the error hierarchy."""

from binsig.errors import (
    BinsigError,
    BinsigErrorCodes,
    FormatStringNotGlobalError,
    InternalError,
    InvalidDatatypeError,
    MissingFormatStringIndexError,
    VariadicArgumentError,
)
from binsig.project import Datatype


class TestErrorCodes:

    def test_code_format(self):
        assert BinsigErrorCodes.FORMAT_STRING_NOT_GLOBAL.code == "BSIG-1001"
        assert BinsigErrorCodes.INVALID_CONFIG.code == "BSIG-2000"

    def test_str_includes_code(self):
        assert str(FormatStringNotGlobalError()).startswith("[BSIG-1001] ")

    def test_default_code_is_internal(self):
        error = BinsigError("boom")
        assert error.code is BinsigErrorCodes.INTERNAL_ERROR
        assert not error.recoverable


class TestHierarchy:

    def test_variadic_errors_are_recoverable(self):
        error = FormatStringNotGlobalError()
        assert isinstance(error, VariadicArgumentError)
        assert error.recoverable

    def test_internal_errors_are_not_recoverable(self):
        for error in (MissingFormatStringIndexError("printf"), InvalidDatatypeError(Datatype.SHORT)):
            assert isinstance(error, InternalError)
            assert not error.recoverable

    def test_missing_index_names_symbol(self):
        assert "printf" in str(MissingFormatStringIndexError("printf"))
