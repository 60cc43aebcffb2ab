"""Tests for chdbg.core.chdesc: lifecycle, guarded fields, flags."""

from __future__ import annotations

import pytest

from chdbg.core.chdesc import Chdesc, ChdescFlag, ChdescType, hex32, render_flags
from chdbg.core.errors import ChdescStateError


class TestLifecycle:
    """DANGLING -> NOOP/BIT/BYTE -> DESTROY."""

    def test_starts_dangling(self):
        chdesc = Chdesc(0x10)
        assert chdesc.type == ChdescType.DANGLING
        assert chdesc.is_dangling and not chdesc.is_valid

    def test_realize_upgrades_in_place(self):
        chdesc = Chdesc(0x10, created_at=3)
        chdesc.realize(0xB0, 0xD0, created_at=7)
        assert chdesc.type == ChdescType.NOOP
        assert (chdesc.block, chdesc.owner, chdesc.flags) == (0xB0, 0xD0, 0)
        assert chdesc.created_at == 7

    def test_realize_twice_fails(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        with pytest.raises(ChdescStateError):
            chdesc.realize(0xB0, 0xD0)

    def test_bit_starts_rolled_back(self):
        chdesc = Chdesc.bit(0x10, 0xB0, 0xD0, offset=8, xor=0xF0)
        assert chdesc.type == ChdescType.BIT
        assert (chdesc.offset, chdesc.xor) == (8, 0xF0)
        assert chdesc.has_flag(ChdescFlag.ROLLBACK)

    def test_byte_starts_rolled_back(self):
        chdesc = Chdesc.byte(0x10, 0xB0, 0xD0, offset=16, length=512)
        assert (chdesc.offset, chdesc.length) == (16, 512)
        assert chdesc.flags == ChdescFlag.ROLLBACK

    def test_conversions(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.convert_byte(4, 8)
        assert chdesc.type == ChdescType.BYTE and chdesc.length == 8
        chdesc.convert_bit(2, 0x1)
        assert chdesc.type == ChdescType.BIT and chdesc.xor == 0x1
        chdesc.convert_noop()
        assert chdesc.type == ChdescType.NOOP

    def test_destroy_is_terminal(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.destroy()
        assert chdesc.is_destroyed
        with pytest.raises(ChdescStateError):
            chdesc.destroy()
        with pytest.raises(ChdescStateError):
            chdesc.convert_noop()


class TestGuards:
    """Fields are only readable in the right states."""

    def test_dangling_hides_block_owner_flags(self):
        chdesc = Chdesc(0x10)
        for attribute in ("block", "owner", "flags"):
            with pytest.raises(ChdescStateError):
                getattr(chdesc, attribute)

    def test_destroyed_hides_fields(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.destroy()
        with pytest.raises(ChdescStateError):
            chdesc.block

    def test_dangling_rejects_flag_mutation(self):
        with pytest.raises(ChdescStateError):
            Chdesc(0x10).set_flags(ChdescFlag.MARKED)

    def test_payload_depends_on_type(self):
        noop = Chdesc.noop(0x10, 0xB0, 0xD0)
        with pytest.raises(ChdescStateError):
            noop.offset
        byte = Chdesc.byte(0x20, 0xB0, 0xD0, 0, 4)
        with pytest.raises(ChdescStateError):
            byte.xor
        bit = Chdesc.bit(0x30, 0xB0, 0xD0, 0, 1)
        with pytest.raises(ChdescStateError):
            bit.length

    def test_setters(self):
        chdesc = Chdesc.byte(0x10, 0xB0, 0xD0, 0, 4)
        chdesc.block = 0xB1
        chdesc.owner = 0xD1
        chdesc.offset = 12
        chdesc.length = 64
        assert (chdesc.block, chdesc.owner, chdesc.offset, chdesc.length) == (0xB1, 0xD1, 12, 64)


class TestFlags:
    """Flag words."""

    def test_set_and_clear(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.set_flags(ChdescFlag.MARKED | ChdescFlag.WRITTEN)
        chdesc.clear_flags(ChdescFlag.MARKED)
        assert chdesc.flags == ChdescFlag.WRITTEN

    def test_wire_values(self):
        assert ChdescFlag.MARKED == 0x01
        assert ChdescFlag.FREEING == 0x08
        assert ChdescFlag.DBWAIT == 0x8000

    def test_render(self):
        assert render_flags(0x03) == "MARKED | ROLLBACK = 0x00000003"
        assert render_flags(0) == "0x00000000"
        assert render_flags(0x10000) == "0x00010000 = 0x00010000"


class TestEdges:
    """Dependency edges and weak references."""

    def test_edges_are_refcounted(self):
        source = Chdesc.noop(0x10, 0xB0, 0xD0)
        target = Chdesc.noop(0x20, 0xB0, 0xD0)
        source.add_before(target)
        source.add_before(target)
        assert list(source.befores) == [target, target]
        assert source.rem_before(0x20) is target
        assert source.befores.count(0x20) == 1

    def test_dangling_accepts_edges(self):
        placeholder = Chdesc(0x20)
        placeholder.add_after(Chdesc.noop(0x10, 0xB0, 0xD0))
        assert len(placeholder.afters) == 1

    def test_destroyed_rejects_edges(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.destroy()
        with pytest.raises(ChdescStateError):
            chdesc.add_before(Chdesc(0x20))

    def test_weak_references(self):
        chdesc = Chdesc.noop(0x10, 0xB0, 0xD0)
        chdesc.weak_retain(0xCAFE)
        chdesc.weak_retain(0xCAFE)
        assert chdesc.locations == {0xCAFE}
        chdesc.weak_forget(0xCAFE)
        assert not chdesc.locations

    def test_free_pointers_need_valid_chdesc(self):
        with pytest.raises(ChdescStateError):
            Chdesc(0x10).free_next = None


class TestDisplay:
    """String forms."""

    def test_hex32(self):
        assert hex32(0x10) == "0x00000010"
        assert hex32(-1) == "0xffffffff"

    def test_str(self):
        assert str(Chdesc.noop(0x10, 0xB0, 0xD0)) == (
            "[chdesc 0x00000010: block 0x000000b0, owner 0x000000d0, NOOP]"
        )
        assert str(Chdesc(0x20)) == "[chdesc 0x00000020: DANGLING]"

    def test_snapshot_is_plain_data(self):
        chdesc = Chdesc.bit(0x10, 0xB0, 0xD0, 1, 2, created_at=4)
        snap = chdesc.snapshot()
        assert snap["type"] == "BIT"
        assert snap["created_at"] == 4
        assert snap["befores"] == []
