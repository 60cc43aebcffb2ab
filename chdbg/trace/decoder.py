"""Primitive decoder over a byte-oriented input source.

Reads null-terminated strings and fixed-width integers while counting the
bytes consumed, so every decode error can name the offset it stopped at.

Only the first read of a record may hit a clean end of input; pass
``at_boundary=True`` there and the reader raises ``EndOfTrace`` instead of
``TruncatedInput`` when no byte at all is available.
"""

from __future__ import annotations

import io
from typing import BinaryIO, Literal

from chdbg.core.errors import EndOfTrace, TruncatedInput

ByteOrder = Literal["big", "little"]

VALID_WIDTHS = (1, 2, 4, 8)


class TraceReader:
    """Sequential reader with a running byte offset."""

    def __init__(self, source: BinaryIO | bytes, byte_order: ByteOrder = "big") -> None:
        if isinstance(source, (bytes, bytearray, memoryview)):
            source = io.BytesIO(bytes(source))
        self._source = source
        self.byte_order: ByteOrder = byte_order
        self.offset = 0

    def _read(self, size: int, wanted: str, at_boundary: bool = False) -> bytes:
        data = self._source.read(size)
        # Short reads are legal on pipes; keep pulling until EOF
        while data is not None and 0 < len(data) < size:
            more = self._source.read(size - len(data))
            if not more:
                break
            data += more
        if not data:
            if at_boundary:
                raise EndOfTrace(self.offset)
            raise TruncatedInput(wanted, self.offset)
        self.offset += len(data)
        if len(data) < size:
            raise TruncatedInput(wanted, self.offset)
        return data

    def read_uint(self, width: int, wanted: str = "integer", at_boundary: bool = False) -> int:
        if width not in VALID_WIDTHS:
            raise ValueError(f"Unsupported integer width {width}")
        data = self._read(width, wanted, at_boundary)
        return int.from_bytes(data, self.byte_order, signed=False)

    def read_int(self, width: int, wanted: str = "integer") -> int:
        if width not in VALID_WIDTHS:
            raise ValueError(f"Unsupported integer width {width}")
        data = self._read(width, wanted)
        return int.from_bytes(data, self.byte_order, signed=True)

    def read_u8(self, wanted: str = "byte") -> int:
        return self.read_uint(1, wanted)

    def read_u16(self, wanted: str = "short") -> int:
        return self.read_uint(2, wanted)

    def read_u32(self, wanted: str = "int") -> int:
        return self.read_uint(4, wanted)

    def read_string(self, wanted: str = "string", at_boundary: bool = False) -> str:
        """Read a null-terminated string and decode it."""
        raw = bytearray()
        first = True
        while True:
            byte = self._read(1, wanted, at_boundary and first)
            first = False
            if byte == b"\x00":
                break
            raw += byte
        return raw.decode("utf-8", errors="replace")
