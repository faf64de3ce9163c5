# tests/test_memory_image.py
"""Tests for string reads from the runtime memory image."""

import pytest

from binsig.errors import MemoryReadError
from binsig.memory_image import MemorySegment, RuntimeMemoryImage


def _image(data, base=0x1000, write_flag=False):
    return RuntimeMemoryImage([MemorySegment(base, data, write_flag=write_flag)])


class TestSegments:

    def test_find_segment(self):
        image = RuntimeMemoryImage([
            MemorySegment(0x1000, b"abc"),
            MemorySegment(0x2000, b"xyz", write_flag=True),
        ])
        assert image.find_segment(0x1002).base_address == 0x1000
        assert image.find_segment(0x1003) is None
        assert image.is_address_writeable(0x2001)
        assert not image.is_address_writeable(0x1001)


class TestReadString:

    def test_reads_until_terminator(self):
        image = _image(b"junk\x00%s: %d\n\x00tail")
        assert image.read_string_until_null_terminator(0x1005) == "%s: %d\n"

    def test_empty_string(self):
        assert _image(b"\x00").read_string_until_null_terminator(0x1000) == ""

    def test_unmapped_address(self):
        with pytest.raises(MemoryReadError) as excinfo:
            _image(b"abc\x00").read_string_until_null_terminator(0x4000)
        assert excinfo.value.address == 0x4000
        assert excinfo.value.recoverable

    def test_writeable_segment(self):
        with pytest.raises(MemoryReadError, match="writeable"):
            _image(b"abc\x00", write_flag=True).read_string_until_null_terminator(0x1000)

    def test_missing_terminator(self):
        with pytest.raises(MemoryReadError, match="not terminated"):
            _image(b"abc").read_string_until_null_terminator(0x1000)

    def test_max_length(self):
        image = _image(b"abcdefgh\x00")
        assert image.read_string_until_null_terminator(0x1000, max_length=9) == "abcdefgh"
        with pytest.raises(MemoryReadError, match="within 8 bytes"):
            image.read_string_until_null_terminator(0x1000, max_length=8)

    def test_invalid_utf8(self):
        with pytest.raises(MemoryReadError, match="UTF-8"):
            _image(b"\xff\xfe\x00").read_string_until_null_terminator(0x1000)
