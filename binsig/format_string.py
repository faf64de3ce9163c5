"""
binsig/format_string.py
=======================

Recognizer for the conversion specifiers of printf/scanf style format
strings.

Grammar of a specifier (``%%`` is a literal percent sign)::

    %  [flags -+ #0]  [width]  [.precision]  [length]  conversion

    length      hh h l ll L q j z t
    conversion  c C d i o u x X e E f F g G a A n p s S

Each specifier is classified into a :class:`~binsig.project.Datatype`:

    ====================  ======================================
    conversion            datatype
    ====================  ======================================
    c C                   CHAR (``%lc``: INTEGER, it is a wint_t)
    d i o u x X           INTEGER; LONG with l j z t;
                          LONG_LONG with ll q L
    e E f F g G a A       DOUBLE (also with l); LONG_DOUBLE with L
    n p s S               POINTER
    ====================  ======================================

Variadic ``char`` arguments are promoted to ``int``, so CHAR is sized like
INTEGER.  Star widths and precisions (``%*d``) are not recognized; a ``%``
that does not start a specifier is plain text.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, List, Optional, Tuple

from parsimonious.grammar import Grammar
from parsimonious.nodes import NodeVisitor

from binsig.errors import UnsupportedDatatypeError
from binsig.project import Datatype, DatatypeProperties


# ═══════════════════════════════════════════════════════════════════════════
#  PART 1 — GRAMMAR (Parsimonious PEG)
# ═══════════════════════════════════════════════════════════════════════════

FORMAT_STRING_GRAMMAR = Grammar(r'''
    format      = item*
    item        = literal / specifier / stray / text

    literal     = "%%"
    specifier   = "%" flags width precision? length? conversion
    flags       = ~"[-+ #0]*"
    width       = ~"[0-9]*"
    precision   = ~"[.][0-9]*"
    length      = "hh" / "h" / "ll" / "l" / "L" / "q" / "j" / "z" / "t"
    conversion  = ~"[cCdiouxXeEfFgGaAnpsS]"

    stray       = "%"
    text        = ~"[^%]+"
''')

_INTEGER_CONVERSIONS = frozenset("diouxX")
_FLOAT_CONVERSIONS = frozenset("eEfFgGaA")
_POINTER_CONVERSIONS = frozenset("npsS")

# Variadic calls cannot pass these yet.
UNSUPPORTED_DATATYPES = frozenset({Datatype.LONG, Datatype.LONG_LONG, Datatype.LONG_DOUBLE})


# ═══════════════════════════════════════════════════════════════════════════
#  PART 2 — SPECIFIERS
# ═══════════════════════════════════════════════════════════════════════════

@dataclass(frozen=True)
class FormatSpecifier:
    """One conversion specifier of a format string."""
    text: str
    start: int
    flags: str
    width: Optional[int]
    precision: Optional[int]
    length: Optional[str]
    conversion: str

    @property
    def data_type(self) -> Datatype:
        return datatype_of_specifier(self.length, self.conversion)


def datatype_of_specifier(length: Optional[str], conversion: str) -> Datatype:
    if conversion in "cC":
        return Datatype.INTEGER if length == "l" else Datatype.CHAR
    if conversion in _POINTER_CONVERSIONS:
        return Datatype.POINTER
    if conversion in _FLOAT_CONVERSIONS:
        return Datatype.LONG_DOUBLE if length == "L" else Datatype.DOUBLE
    if conversion in _INTEGER_CONVERSIONS:
        if length in ("l", "j", "z", "t"):
            return Datatype.LONG
        if length in ("ll", "q", "L"):
            return Datatype.LONG_LONG
        return Datatype.INTEGER
    raise ValueError(f"Not a conversion specifier: {conversion!r}")


# ═══════════════════════════════════════════════════════════════════════════
#  PART 3 — VISITOR (Parse Tree → FormatSpecifier list)
# ═══════════════════════════════════════════════════════════════════════════

class FormatSpecifierCollector(NodeVisitor):
    """Collects the conversion specifiers of a parsed format string."""

    grammar = FORMAT_STRING_GRAMMAR

    def generic_visit(self, node, visited_children):
        return visited_children or node

    def visit_format(self, node, visited_children):
        return [child for child in visited_children if isinstance(child, FormatSpecifier)]

    def visit_item(self, node, visited_children):
        return visited_children[0]

    def visit_specifier(self, node, visited_children):
        # absent optional parts match the empty string
        _, flags, width, precision, length, conversion = node.children
        return FormatSpecifier(
            text=node.text,
            start=node.start,
            flags=flags.text,
            width=int(width.text) if width.text else None,
            precision=int(precision.text[1:] or "0") if precision.text else None,
            length=length.text or None,
            conversion=conversion.text,
        )


def iter_format_specifiers(format_string: str) -> Iterator[FormatSpecifier]:
    """Yield the conversion specifiers of *format_string* in order."""
    yield from FormatSpecifierCollector().parse(format_string)


def parse_format_string_parameters(
    format_string: str,
    datatype_properties: DatatypeProperties,
) -> List[Tuple[Datatype, int]]:
    """
    Datatype and byte size of every argument *format_string* consumes.

    Raises :class:`UnsupportedDatatypeError` if any specifier needs a long,
    long long or long double argument.
    """
    parameters: List[Tuple[Datatype, int]] = []
    for specifier in iter_format_specifiers(format_string):
        data_type = specifier.data_type
        size_type = Datatype.INTEGER if data_type is Datatype.CHAR else data_type
        parameters.append((data_type, datatype_properties.get_size_from_data_type(size_type)))

    if any(data_type in UNSUPPORTED_DATATYPES for data_type, _ in parameters):
        raise UnsupportedDatatypeError()
    return parameters


__all__ = [
    "FORMAT_STRING_GRAMMAR",
    "UNSUPPORTED_DATATYPES",
    "FormatSpecifier",
    "FormatSpecifierCollector",
    "datatype_of_specifier",
    "iter_format_specifiers",
    "parse_format_string_parameters",
]
