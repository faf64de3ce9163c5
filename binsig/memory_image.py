"""
binsig/memory_image.py
======================

Read-only view of the loaded binary's memory segments.

Only the operation the variadic argument locator needs is provided:
reading a NUL-terminated string from a global address.  The scan is
bounded, since the image may come from an attacker-controlled binary.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

from binsig.errors import MemoryReadError


DEFAULT_MAX_STRING_LENGTH = 4096


@dataclass(frozen=True)
class MemorySegment:
    """A contiguous block of the memory image."""
    base_address: int
    data: bytes
    read_flag: bool = True
    write_flag: bool = False
    execute_flag: bool = False

    @property
    def end_address(self) -> int:
        return self.base_address + len(self.data)

    def contains(self, address: int) -> bool:
        return self.base_address <= address < self.end_address


@dataclass
class RuntimeMemoryImage:
    """The memory segments of a binary as they are mapped at runtime."""
    memory_segments: List[MemorySegment] = field(default_factory=list)

    def find_segment(self, address: int) -> Optional[MemorySegment]:
        for segment in self.memory_segments:
            if segment.contains(address):
                return segment
        return None

    def is_address_writeable(self, address: int) -> bool:
        segment = self.find_segment(address)
        return segment is not None and segment.write_flag

    def read_string_until_null_terminator(
        self,
        address: int,
        max_length: int = DEFAULT_MAX_STRING_LENGTH,
    ) -> str:
        """
        Read the C string at *address*.

        Raises :class:`MemoryReadError` if the address is unmapped or
        writeable, if no terminator is found within the segment or within
        *max_length* bytes, or if the bytes are not valid UTF-8.
        """
        segment = self.find_segment(address)
        if segment is None:
            raise MemoryReadError(
                f"Address {address:#x} is not contained in any memory segment.",
                address=address,
            )
        if segment.write_flag:
            raise MemoryReadError(
                f"Address {address:#x} points to writeable memory.",
                address=address,
            )
        start = address - segment.base_address
        end = min(len(segment.data), start + max_length)
        terminator = segment.data.find(b"\x00", start, end)
        if terminator < 0:
            if end - start >= max_length:
                raise MemoryReadError(
                    f"No null terminator within {max_length} bytes of {address:#x}.",
                    address=address,
                )
            raise MemoryReadError(
                f"String at {address:#x} is not terminated inside its segment.",
                address=address,
            )
        raw = segment.data[start:terminator]
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MemoryReadError(
                f"String at {address:#x} is not valid UTF-8: {exc}",
                address=address,
            ) from exc


__all__ = [
    "DEFAULT_MAX_STRING_LENGTH",
    "MemorySegment",
    "RuntimeMemoryImage",
]
