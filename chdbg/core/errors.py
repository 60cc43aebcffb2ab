"""Error taxonomy for trace decoding and replay.

Decode errors (``TraceError`` subclasses) describe malformed or unsupported
input. They carry the byte offset at which decoding stopped and, once the
Debugger attaches it, the number of opcodes decoded successfully before the
failure:

    TraceError
      ├── TruncatedInput
      ├── UnexpectedModule / UnexpectedOpcode / UnexpectedName
      ├── UnexpectedParameter / MissingParameter
      └── UnsupportedStreamRevision

Replay errors (``ReplayError`` subclasses) are invariant violations raised
while applying opcodes to a SystemState. They indicate a corrupt trace or a
bug and abort the replay in progress.
"""

from __future__ import annotations

from enum import Enum


# ── Error Codes ──────────────────────────────────────────────────────────────


class ErrorCode(str, Enum):
    """Stable codes attached to every decode error."""

    TRUNCATED_INPUT = "TRUNCATED_INPUT"
    UNEXPECTED_MODULE = "UNEXPECTED_MODULE"
    UNEXPECTED_OPCODE = "UNEXPECTED_OPCODE"
    UNEXPECTED_NAME = "UNEXPECTED_NAME"
    UNEXPECTED_PARAMETER = "UNEXPECTED_PARAMETER"
    MISSING_PARAMETER = "MISSING_PARAMETER"
    UNSUPPORTED_REVISION = "UNSUPPORTED_REVISION"


# ── End of trace ─────────────────────────────────────────────────────────────


class EndOfTrace(Exception):
    """Input ended cleanly on a record boundary. Not an error."""

    def __init__(self, offset: int) -> None:
        super().__init__(f"End of trace at byte {offset}")
        self.offset = offset


# ── Decode errors ────────────────────────────────────────────────────────────


class TraceError(Exception):
    """Malformed or unsupported trace input."""

    code: ErrorCode = ErrorCode.TRUNCATED_INPUT

    def __init__(self, message: str, offset: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.offset = offset
        self.decoded: int | None = None

    def __str__(self) -> str:
        if self.offset is None:
            return self.message
        return f"{self.message} before byte {self.offset}"


class TruncatedInput(TraceError):
    """Input ended in the middle of a header entry or opcode record."""

    code = ErrorCode.TRUNCATED_INPUT

    def __init__(self, wanted: str, offset: int | None = None) -> None:
        super().__init__(f"Unexpected end of input while reading {wanted}", offset)
        self.wanted = wanted


class UnexpectedModule(TraceError):
    code = ErrorCode.UNEXPECTED_MODULE

    def __init__(self, module: int, offset: int | None = None) -> None:
        super().__init__(f"Unexpected module 0x{module:04x}", offset)
        self.module = module


class UnexpectedOpcode(TraceError):
    code = ErrorCode.UNEXPECTED_OPCODE

    def __init__(self, opcode: int, offset: int | None = None) -> None:
        super().__init__(f"Unexpected opcode 0x{opcode:04x}", offset)
        self.opcode = opcode


class UnexpectedName(TraceError):
    code = ErrorCode.UNEXPECTED_NAME

    def __init__(self, name: str, offset: int | None = None) -> None:
        super().__init__(f"Unexpected opcode name {name!r}", offset)
        self.name = name


class UnexpectedParameter(TraceError):
    code = ErrorCode.UNEXPECTED_PARAMETER

    def __init__(self, name: str, size: int, offset: int | None = None) -> None:
        super().__init__(f"Unexpected parameter {name!r} (size {size})", offset)
        self.name = name
        self.size = size


class MissingParameter(TraceError):
    code = ErrorCode.MISSING_PARAMETER

    def __init__(self, name: str, size: int, offset: int | None = None) -> None:
        super().__init__(f"Missing parameter {name!r} (size {size})", offset)
        self.name = name
        self.size = size


class UnsupportedStreamRevision(TraceError):
    """The stream's revision pair is known not to be readable by this tool.

    ``remediation`` is the debugger revision to use instead: 0 means "a newer
    one", -1 means no version of this tool can read the stream.
    """

    code = ErrorCode.UNSUPPORTED_REVISION

    def __init__(self, tool_revision: int, opcode_revision: int, remediation: int) -> None:
        self.tool_revision = tool_revision
        self.opcode_revision = opcode_revision
        self.remediation = remediation
        super().__init__(
            f"Unsupported stream revision (tool {tool_revision}, opcodes {opcode_revision}); {self.advice}"
        )

    @property
    def advice(self) -> str:
        if self.remediation == 0:
            return "use a newer version of the debugger"
        if self.remediation < 0:
            return "no version of the debugger can read this stream"
        return f"use debugger revision {self.remediation}"


# ── Replay errors ────────────────────────────────────────────────────────────


class ReplayError(RuntimeError):
    """Invariant violation while applying an opcode."""


class ChdescStateError(ReplayError):
    """A field was queried or mutated on a chdesc in the wrong state."""


class DuplicateRegistration(ReplayError):
    """A strict registry received a second object under the same key."""

    def __init__(self, kind: str, key: int) -> None:
        super().__init__(f"Duplicate {kind} registered: 0x{key:08x}")
        self.kind = kind
        self.key = key
