"""Tests for chdbg.trace.schema and chdbg.trace.opcodes: schemas, header, listings."""

from __future__ import annotations

import pytest

from chdbg.core.errors import (
    ErrorCode,
    MissingParameter,
    TruncatedInput,
    UnexpectedModule,
    UnexpectedName,
    UnexpectedOpcode,
    UnexpectedParameter,
)
from chdbg.trace import opcodes as op
from chdbg.trace.decoder import TraceReader
from chdbg.trace.opcodes import ALL_OPCODES, ModuleOpcode, build_registry
from chdbg.trace.schema import (
    STRING_SIZE,
    Module,
    OpcodeRegistry,
    OpcodeSpec,
    Param,
    verify_params,
)
from chdbg.trace.stack import StackTable
from chdbg.trace.writer import TraceWriter


def _params_bytes(*pairs: tuple[int, str]) -> bytes:
    w = TraceWriter()
    for size, name in pairs:
        w.u8(size).string(name)
    return w.u8(0).getvalue()


class TestOpcodeTable:
    """The static table of opcode kinds."""

    def test_every_kind_registered(self):
        registry = build_registry()
        assert len(registry) == len(ALL_OPCODES) == 44

    def test_module_grouping(self):
        assert build_registry().modules == [1, 100, 200, 300]

    def test_registry_order_is_header_order(self):
        assert list(build_registry()) == list(ALL_OPCODES)

    def test_info_opcodes_are_skippable_and_inert(self):
        for spec in ALL_OPCODES:
            if spec.module == Module.INFO:
                assert spec.skippable and not spec.has_effect

    def test_chdesc_info_opcodes_are_inert_but_not_skippable(self):
        for spec in ALL_OPCODES:
            if spec.module == Module.CHDESC_INFO:
                assert not spec.skippable and not spec.has_effect

    def test_state_changing_kinds_have_effect(self):
        assert op.CHDESC_CREATE_NOOP.has_effect
        assert op.CHDESC_ADD_BEFORE.has_effect
        assert not op.BDESC_RETAIN.has_effect
        assert not op.CHDESC_REWRITE_BYTE.has_effect

    def test_string_params(self):
        assert op.INFO_BD_NAME.params[1].size == STRING_SIZE
        assert op.INFO_BD_NAME.params[1].is_string

    def test_duplicate_registration_rejected(self):
        registry = OpcodeRegistry([op.INFO_MARK])
        with pytest.raises(ValueError):
            registry.register(OpcodeSpec(Module.INFO, 0, "OTHER", ()))


class TestLookup:
    """Resolving (module, opcode) pairs."""

    def test_known(self):
        assert build_registry().lookup(200, 213) is op.CHDESC_ADD_BEFORE

    def test_unknown_module(self):
        with pytest.raises(UnexpectedModule) as exc_info:
            build_registry().lookup(999, 1, 42)
        assert exc_info.value.offset == 42
        assert exc_info.value.code == ErrorCode.UNEXPECTED_MODULE

    def test_unknown_opcode(self):
        with pytest.raises(UnexpectedOpcode):
            build_registry().lookup(200, 299)

    def test_by_name(self):
        assert build_registry().by_name("KDB_CHDESC_DESTROY") is op.CHDESC_DESTROY
        with pytest.raises(KeyError):
            build_registry().by_name("KDB_NOPE")


class TestParameterVerification:
    """Self-description matching, entry by entry."""

    spec = OpcodeSpec(Module.CHDESC_ALTER, 250, "T", (Param("a"), Param("b", 2)))

    def test_exact_match(self):
        reader = TraceReader(_params_bytes((4, "a"), (2, "b")))
        verify_params(reader, self.spec)
        assert reader.offset == len(_params_bytes((4, "a"), (2, "b")))

    def test_wrong_name(self):
        with pytest.raises(UnexpectedParameter) as exc_info:
            verify_params(TraceReader(_params_bytes((4, "a"), (2, "c"))), self.spec)
        assert exc_info.value.name == "c"

    def test_wrong_size(self):
        with pytest.raises(UnexpectedParameter) as exc_info:
            verify_params(TraceReader(_params_bytes((4, "a"), (4, "b"))), self.spec)
        assert exc_info.value.size == 4

    def test_missing(self):
        with pytest.raises(MissingParameter) as exc_info:
            verify_params(TraceReader(_params_bytes((4, "a"))), self.spec)
        assert exc_info.value.name == "b"

    def test_extra(self):
        data = _params_bytes((4, "a"), (2, "b"), (4, "z"))
        with pytest.raises(UnexpectedParameter) as exc_info:
            verify_params(TraceReader(data), self.spec)
        assert exc_info.value.name == "z"

    def test_truncated(self):
        with pytest.raises(TruncatedInput):
            verify_params(TraceReader(b"\x04a"), self.spec)


class TestHeader:
    """Whole-header verification."""

    def test_writer_header_verifies(self, header_bytes):
        reader = TraceReader(header_bytes)
        reader.read_u32()
        reader.read_u32()
        build_registry().verify_header(reader)
        assert reader.offset == len(header_bytes)

    def test_missing_terminator(self, header_bytes):
        reader = TraceReader(header_bytes[8:-2])
        with pytest.raises(TruncatedInput):
            build_registry().verify_header(reader)

    def test_extra_entry_after_table(self, header_bytes):
        data = header_bytes[8:-2] + b"\x01\x90"
        with pytest.raises(UnexpectedModule):
            build_registry().verify_header(TraceReader(data))

    def test_renamed_opcode(self):
        registry = OpcodeRegistry([op.INFO_MARK])
        w = TraceWriter(registry=OpcodeRegistry([OpcodeSpec(Module.INFO, 0, "RENAMED", op.INFO_MARK.params)]))
        data = w.write_header().getvalue()[8:]
        with pytest.raises(UnexpectedName) as exc_info:
            registry.verify_header(TraceReader(data))
        assert exc_info.value.name == "RENAMED"

    def test_reordered_table(self):
        registry = OpcodeRegistry([op.INFO_MARK, op.INFO_BD_NAME])
        data = TraceWriter(registry=OpcodeRegistry([op.INFO_BD_NAME, op.INFO_MARK])).write_header().getvalue()[8:]
        with pytest.raises(UnexpectedOpcode):
            registry.verify_header(TraceReader(data))


class TestModuleOpcode:
    """Decoded opcode values and listings."""

    def test_named_access(self):
        opcode = ModuleOpcode(op.CHDESC_ADD_BEFORE, (0x10, 0x20))
        assert opcode["source"] == 0x10
        assert opcode["target"] == 0x20
        assert opcode.args == {"source": 0x10, "target": 0x20}

    def test_wrong_arity_rejected(self):
        with pytest.raises(ValueError):
            ModuleOpcode(op.CHDESC_ADD_BEFORE, (0x10,))

    def test_listing(self):
        opcode = ModuleOpcode(op.CHDESC_SET_FLAGS, (0x10, 0x03))
        assert str(opcode) == (
            "KDB_CHDESC_SET_FLAGS: chdesc = 0x00000010, flags = MARKED | ROLLBACK = 0x00000003"
        )

    def test_listing_strings_and_numbers(self):
        opcode = ModuleOpcode(op.INFO_BDESC_NUMBER, (0xB0, 12, 1))
        assert str(opcode) == "KDB_INFO_BDESC_NUMBER: block = 0x000000b0, number = 12, count = 1"
        named = ModuleOpcode(op.INFO_BD_NAME, (0xD0, "sda"))
        assert "name = 'sda'" in str(named)

    def test_describe(self):
        stack = StackTable().intern([0xC0DE, 0xBEEF])
        opcode = ModuleOpcode(op.CHDESC_DESTROY, (0x10,), "chdesc.c", 88, "chdesc_destroy", stack)
        lines = opcode.describe().splitlines()
        assert lines[1] == "    from chdesc_destroy() at chdesc.c:88"
        assert lines[2] == "    [0] 0x0000c0de"
        assert len(opcode.describe(show_stack=False).splitlines()) == 2
