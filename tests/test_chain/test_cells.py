"""Tests for bit-level cells, slices and bag-of-cells serialisation."""

import pytest

from xp_ledger.chain.cells import (
    MAX_BITS,
    Cell,
    begin_cell,
    from_boc,
    from_boc_base64,
    to_boc,
    to_boc_base64,
)
from xp_ledger.chain.errors import DecodeError, EncodeError

# =============================================================================
# BUILDER / SLICE
# =============================================================================


@pytest.mark.unit
class TestBuilderAndSlice:
    def test_fields_read_back_in_order(self):
        cell = (
            begin_cell()
            .store_uint(0x1234, 32)
            .store_int(-5, 8)
            .store_bit(True)
            .store_bytes(b"\xab\xcd")
            .end_cell()
        )
        source = cell.begin_parse()

        assert source.load_uint(32) == 0x1234
        assert source.load_int(8) == -5
        assert source.load_bit() is True
        assert source.load_bytes(2) == b"\xab\xcd"
        source.end_parse()

    def test_uint_out_of_range_rejected(self):
        with pytest.raises(EncodeError):
            begin_cell().store_uint(256, 8)

    def test_negative_uint_rejected(self):
        with pytest.raises(EncodeError):
            begin_cell().store_uint(-1, 8)

    def test_signed_out_of_range_rejected(self):
        with pytest.raises(EncodeError):
            begin_cell().store_int(128, 8)

    def test_bit_overflow_rejected(self):
        builder = begin_cell().store_uint(0, MAX_BITS)
        with pytest.raises(EncodeError):
            builder.store_bit(True)

    def test_ref_overflow_rejected(self):
        builder = begin_cell()
        for _ in range(4):
            builder.store_ref(Cell())
        with pytest.raises(EncodeError):
            builder.store_ref(Cell())

    def test_read_past_end_raises_decode_error(self):
        source = begin_cell().store_uint(1, 4).end_cell().begin_parse()
        with pytest.raises(DecodeError):
            source.load_uint(8)

    def test_missing_ref_raises_decode_error(self):
        with pytest.raises(DecodeError):
            Cell().begin_parse().load_ref()

    def test_end_parse_rejects_leftover_bits(self):
        source = begin_cell().store_uint(3, 2).end_cell().begin_parse()
        with pytest.raises(DecodeError):
            source.end_parse()

    def test_maybe_ref_roundtrip(self):
        child = begin_cell().store_uint(7, 3).end_cell()
        cell = begin_cell().store_maybe_ref(None).store_maybe_ref(child).end_cell()
        source = cell.begin_parse()

        assert source.load_maybe_ref() is None
        assert source.load_maybe_ref() == child


# =============================================================================
# IDENTITY
# =============================================================================


@pytest.mark.unit
class TestCellIdentity:
    def test_equal_content_equal_hash(self):
        a = begin_cell().store_uint(42, 16).end_cell()
        b = begin_cell().store_uint(42, 16).end_cell()

        assert a == b
        assert a.hash() == b.hash()
        assert len({a, b}) == 1

    def test_bit_length_is_part_of_identity(self):
        a = begin_cell().store_uint(1, 8).end_cell()
        b = begin_cell().store_uint(1, 9).end_cell()

        assert a != b

    def test_child_content_changes_parent_hash(self):
        parent_a = begin_cell().store_ref(begin_cell().store_uint(1, 8).end_cell()).end_cell()
        parent_b = begin_cell().store_ref(begin_cell().store_uint(2, 8).end_cell()).end_cell()

        assert parent_a.hash() != parent_b.hash()

    def test_empty_cell(self):
        assert Cell().is_empty
        assert not begin_cell().store_bit(False).end_cell().is_empty

    def test_data_bytes_left_aligned(self):
        cell = begin_cell().store_uint(0b101, 3).end_cell()
        assert cell.data_bytes() == bytes([0b10100000])


# =============================================================================
# BAG OF CELLS
# =============================================================================


@pytest.mark.unit
class TestBagOfCells:
    def test_nested_dag_survives_serialisation(self):
        leaf = begin_cell().store_uint(0xFF, 8).end_cell()
        shared = begin_cell().store_ref(leaf).end_cell()
        root = begin_cell().store_uint(9, 12).store_ref(shared).store_ref(shared).end_cell()

        restored = from_boc(to_boc(root))

        assert restored == root
        assert restored.refs[0] == restored.refs[1] == shared

    def test_base64_wrapper(self):
        root = begin_cell().store_bytes(b"xp").end_cell()
        assert from_boc_base64(to_boc_base64(root)) == root

    def test_long_reference_chain_does_not_recurse(self):
        cell = Cell()
        for i in range(5000):
            cell = begin_cell().store_uint(i, 16).store_ref(cell).end_cell()

        assert from_boc(to_boc(cell)).hash() == cell.hash()

    def test_bad_magic_rejected(self):
        with pytest.raises(DecodeError):
            from_boc(b"\x00\x00\x00\x00" + b"\x00" * 8)

    def test_truncated_payload_rejected(self):
        data = to_boc(begin_cell().store_uint(1, 64).end_cell())
        with pytest.raises(DecodeError):
            from_boc(data[:-3])

    def test_invalid_base64_rejected(self):
        with pytest.raises(DecodeError):
            from_boc_base64("not base64!!")
