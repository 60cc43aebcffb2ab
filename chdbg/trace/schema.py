"""Opcode schemas and the (module, opcode) registry.

Each opcode kind declares its module id, opcode id, wire name and an ordered
parameter schema. The same schema is checked three times while decoding:

  1. the stream header lists every registered opcode, in registry order,
     with its name and parameter self-description;
  2. every record repeats the parameter self-description, which must match
     exactly and in order before any value is read;
  3. the values themselves are read at the declared widths.

Parameter self-descriptions on the wire are ``[u8 size][cstring name]``
pairs closed by a zero size. Size 0xFF marks a null-terminated string.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, IntEnum
from typing import Iterator

from chdbg.core.errors import (
    MissingParameter,
    UnexpectedModule,
    UnexpectedName,
    UnexpectedOpcode,
    UnexpectedParameter,
)
from chdbg.trace.decoder import TraceReader

STRING_SIZE = 0xFF


class Module(IntEnum):
    INFO = 1
    BDESC = 100
    CHDESC_ALTER = 200
    CHDESC_INFO = 300


class ParamKind(str, Enum):
    """How a parameter value is shown in listings."""

    HEX = "hex"
    HEX16 = "hex16"
    UINT = "uint"
    FLAGS = "flags"
    BOOL = "bool"
    STRING = "string"


# ── Schema types ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Param:
    name: str
    size: int = 4
    kind: ParamKind = ParamKind.HEX

    @property
    def is_string(self) -> bool:
        return self.size == STRING_SIZE


@dataclass(frozen=True)
class OpcodeSpec:
    """Static description of one opcode kind."""

    module: Module
    number: int
    name: str
    params: tuple[Param, ...]
    has_effect: bool = True
    skippable: bool = False

    @property
    def key(self) -> tuple[int, int]:
        return (int(self.module), self.number)

    @property
    def param_names(self) -> tuple[str, ...]:
        return tuple(param.name for param in self.params)

    def index_of(self, name: str) -> int:
        for i, param in enumerate(self.params):
            if param.name == name:
                return i
        raise KeyError(f"{self.name} has no parameter {name!r}")

    def __repr__(self) -> str:
        return f"OpcodeSpec({self.name}, [{self.module.value:04x}:{self.number:04x}])"


# ── Registry ─────────────────────────────────────────────────────────────────


class OpcodeRegistry:
    """Registered opcode kinds, grouped by module in registration order."""

    def __init__(self, specs: list[OpcodeSpec] | tuple[OpcodeSpec, ...] = ()) -> None:
        self._modules: dict[int, dict[int, OpcodeSpec]] = {}
        for spec in specs:
            self.register(spec)

    def register(self, spec: OpcodeSpec) -> None:
        opcodes = self._modules.setdefault(int(spec.module), {})
        if spec.number in opcodes:
            raise ValueError(f"Duplicate opcode registered: {spec.name}")
        opcodes[spec.number] = spec

    @property
    def modules(self) -> list[int]:
        return list(self._modules)

    def __iter__(self) -> Iterator[OpcodeSpec]:
        for opcodes in self._modules.values():
            yield from opcodes.values()

    def __len__(self) -> int:
        return sum(len(opcodes) for opcodes in self._modules.values())

    def lookup(self, module: int, number: int, offset: int | None = None) -> OpcodeSpec:
        opcodes = self._modules.get(module)
        if opcodes is None:
            raise UnexpectedModule(module, offset)
        spec = opcodes.get(number)
        if spec is None:
            raise UnexpectedOpcode(number, offset)
        return spec

    def by_name(self, name: str) -> OpcodeSpec:
        for spec in self:
            if spec.name == name:
                return spec
        raise KeyError(name)

    # ── Header verification ──────────────────────────────────────────────

    def verify_header(self, reader: TraceReader) -> None:
        """Check the stream's schema table against this registry, entry by entry."""
        for spec in self:
            module = reader.read_u16("header module")
            if module != spec.module:
                raise UnexpectedModule(module, reader.offset)
            number = reader.read_u16("header opcode")
            if number != spec.number:
                raise UnexpectedOpcode(number, reader.offset)
            verify_name(reader, spec)
            verify_params(reader, spec)
        terminator = reader.read_u16("header terminator")
        if terminator != 0:
            raise UnexpectedModule(terminator, reader.offset)


def verify_name(reader: TraceReader, spec: OpcodeSpec) -> None:
    name = reader.read_string("opcode name")
    if name != spec.name:
        raise UnexpectedName(name, reader.offset)


def verify_params(reader: TraceReader, spec: OpcodeSpec) -> None:
    """Match a ``[size][name]...0`` self-description against ``spec``."""
    index = 0
    count = len(spec.params)
    size = reader.read_u8("parameter size")
    while size != 0 and index < count:
        name = reader.read_string("parameter name")
        expected = spec.params[index]
        if name != expected.name or size != expected.size:
            raise UnexpectedParameter(name, size, reader.offset)
        index += 1
        size = reader.read_u8("parameter size")
    if size != 0:
        raise UnexpectedParameter(reader.read_string("parameter name"), size, reader.offset)
    if index < count:
        missing = spec.params[index]
        raise MissingParameter(missing.name, missing.size, reader.offset)


def read_values(reader: TraceReader, spec: OpcodeSpec) -> tuple[int | str, ...]:
    values: list[int | str] = []
    for param in spec.params:
        if param.is_string:
            values.append(reader.read_string(param.name))
        else:
            values.append(reader.read_uint(param.size, param.name))
    return tuple(values)
