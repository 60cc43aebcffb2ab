"""Tests for chdbg.trace.decoder: primitive reads and offset tracking."""

from __future__ import annotations

import io

import pytest

from chdbg.core.errors import EndOfTrace, TruncatedInput
from chdbg.trace.decoder import TraceReader


class _Trickle(io.RawIOBase):
    """Returns at most one byte per read, like a slow pipe."""

    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def readable(self) -> bool:
        return True

    def read(self, size: int = -1) -> bytes:
        if self._pos >= len(self._data):
            return b""
        chunk = self._data[self._pos:self._pos + 1]
        self._pos += 1
        return chunk


class TestIntegers:
    """Fixed-width integer reads."""

    def test_big_endian_u32(self):
        reader = TraceReader(b"\x00\x00\x10\xa2")
        assert reader.read_u32() == 4258
        assert reader.offset == 4

    def test_little_endian_u16(self):
        reader = TraceReader(b"\x34\x12", byte_order="little")
        assert reader.read_u16() == 0x1234

    def test_unsigned_and_signed(self):
        assert TraceReader(b"\xff\xff").read_u16() == 0xFFFF
        assert TraceReader(b"\xff\xff").read_int(2) == -1

    def test_u8(self):
        reader = TraceReader(b"\x07\x08")
        assert reader.read_u8() == 7
        assert reader.read_u8() == 8
        assert reader.offset == 2

    def test_eight_byte_width(self):
        assert TraceReader(b"\x00" * 7 + b"\x01").read_uint(8) == 1

    def test_invalid_width_rejected(self):
        with pytest.raises(ValueError):
            TraceReader(b"\x00\x00\x00").read_uint(3)

    def test_short_reads_are_reassembled(self):
        reader = TraceReader(_Trickle(b"\x00\x00\x10\xa4"))
        assert reader.read_u32() == 4260


class TestStrings:
    """Null-terminated string reads."""

    def test_reads_up_to_terminator(self):
        reader = TraceReader(b"abc\x00def\x00")
        assert reader.read_string() == "abc"
        assert reader.offset == 4
        assert reader.read_string() == "def"

    def test_empty_string(self):
        reader = TraceReader(b"\x00")
        assert reader.read_string() == ""
        assert reader.offset == 1

    def test_invalid_utf8_is_replaced(self):
        assert TraceReader(b"a\xffb\x00").read_string() == "a�b"

    def test_missing_terminator_is_truncation(self):
        reader = TraceReader(b"abc")
        with pytest.raises(TruncatedInput) as exc_info:
            reader.read_string("label")
        assert exc_info.value.offset == 3
        assert "label" in str(exc_info.value)


class TestEndOfInput:
    """Clean end versus truncation."""

    def test_clean_end_at_boundary(self):
        reader = TraceReader(b"")
        with pytest.raises(EndOfTrace) as exc_info:
            reader.read_string("source file", at_boundary=True)
        assert exc_info.value.offset == 0

    def test_empty_input_off_boundary_is_truncation(self):
        with pytest.raises(TruncatedInput):
            TraceReader(b"").read_u32()

    def test_partial_integer_is_truncation(self):
        reader = TraceReader(b"\x00\x01")
        with pytest.raises(TruncatedInput) as exc_info:
            reader.read_u32("line")
        assert exc_info.value.offset == 2
        assert str(exc_info.value).endswith("before byte 2")

    def test_partial_integer_at_boundary_is_still_truncation(self):
        with pytest.raises(TruncatedInput):
            TraceReader(b"\x00").read_uint(4, at_boundary=True)

    def test_string_truncated_after_first_byte(self):
        with pytest.raises(TruncatedInput):
            TraceReader(b"x").read_string(at_boundary=True)
