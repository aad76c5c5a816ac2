"""Tests for the 64-byte record codec."""

import struct

import pytest

from common import records
from common.constants import MAGIC_CATALOG_ENTRY, MAGIC_CHUNK, MAGIC_HEADER
from common.exceptions import MalformedRecordError
from common.records import (
    CatalogEntry,
    Chunk,
    Header,
    SemVer,
    decode_catalog_entry,
    decode_chunk,
    decode_header,
    encode_catalog_entry,
    encode_chunk,
    encode_header,
    expected_chunk_count,
    split_chunks,
)


def _header():
    return Header(cartridge_id=42, total_size=130, checksum=bytes(range(32)), chunk_size=51, platform=1)


def _entry(**overrides):
    values = dict(
        app_id=7,
        semver=SemVer(1, 2, 3),
        cartridge_ref=bytes(range(20)),
        title="Tetris",
        platform=3,
        flags=0,
    )
    values.update(overrides)
    return CatalogEntry(**values)


class TestRoundTrip:
    """decode(encode(r)) == r for every record kind."""

    def test_header(self):
        encoded = encode_header(_header())
        assert len(encoded) == 64
        assert encoded[:4] == b"CART"
        assert decode_header(encoded) == _header()

    def test_header_layout(self):
        encoded = encode_header(_header())
        assert encoded[4:8] == bytes([1, 1, 51, 0])
        assert struct.unpack_from("<I", encoded, 8)[0] == 42
        assert struct.unpack_from("<Q", encoded, 12)[0] == 130
        assert encoded[20:52] == bytes(range(32))
        assert encoded[52:] == bytes(12)

    def test_chunk(self):
        chunk = Chunk(cartridge_id=9, chunk_index=3, data=b"hello")
        encoded = encode_chunk(chunk)
        assert len(encoded) == 64
        assert encoded[12] == 5
        assert decode_chunk(encoded) == chunk

    def test_full_chunk(self):
        chunk = Chunk(cartridge_id=1, chunk_index=0, data=bytes(range(51)))
        assert decode_chunk(encode_chunk(chunk)) == chunk

    def test_catalog_entry(self):
        entry = _entry(flags=1)
        encoded = encode_catalog_entry(entry)
        assert len(encoded) == 64
        assert encoded[:4] == b"CENT"
        assert decode_catalog_entry(encoded) == entry
        assert decode_catalog_entry(encoded).retired

    def test_catalog_title_fills_field(self):
        entry = _entry(title="ABCDEFGHIJKLMNO")
        encoded = encode_catalog_entry(entry)
        assert encoded[34:50] == b"ABCDEFGHIJKLMNO\x00"
        assert decode_catalog_entry(encoded).title == "ABCDEFGHIJKLMNO"


class TestMalformedInput:
    """Decoders return None instead of raising."""

    def test_short_buffer(self):
        assert decode_header(encode_header(_header())[:63]) is None
        assert decode_chunk(b"DATA") is None
        assert decode_catalog_entry(b"") is None
        assert decode_chunk(None) is None

    def test_wrong_magic(self):
        encoded = encode_chunk(Chunk(1, 0, b"x"))
        assert decode_header(encoded) is None
        assert decode_catalog_entry(encoded) is None
        assert decode_chunk(b"JUNK" + encoded[4:]) is None

    def test_chunk_length_over_limit(self):
        buffer = b"DATA" + struct.pack("<IIB", 1, 0, 52) + bytes(51)
        assert len(buffer) == 64
        assert decode_chunk(buffer) is None

    def test_strict_decode_raises(self):
        with pytest.raises(MalformedRecordError):
            records.decode_strict(b"JUNK" + bytes(60))
        assert records.decode_strict(encode_header(_header())) == _header()


class TestEncodeValidation:
    def test_title_too_long(self):
        with pytest.raises(ValueError):
            encode_catalog_entry(_entry(title="ABCDEFGHIJKLMNOP"))

    def test_ref_wrong_size(self):
        with pytest.raises(ValueError):
            encode_catalog_entry(_entry(cartridge_ref=bytes(32)))

    def test_chunk_data_too_long(self):
        with pytest.raises(ValueError):
            encode_chunk(Chunk(1, 0, bytes(52)))

    def test_checksum_wrong_size(self):
        with pytest.raises(ValueError):
            encode_header(Header(cartridge_id=1, total_size=1, checksum=bytes(31)))

    def test_semver_component_out_of_range(self):
        with pytest.raises(ValueError):
            encode_catalog_entry(_entry(semver=SemVer(256, 0, 0)))


class TestMagic:
    def test_has_magic(self):
        assert records.has_magic(encode_header(_header()), MAGIC_HEADER)
        assert not records.has_magic(encode_header(_header()), MAGIC_CHUNK)
        assert not records.has_magic(None, MAGIC_CHUNK)

    def test_has_magic_hex(self):
        assert records.has_magic_hex("44415441" + "00" * 60, MAGIC_CHUNK)
        assert records.has_magic_hex("0x43415254ff", MAGIC_HEADER)
        assert records.has_magic_hex("43454E54", MAGIC_CATALOG_ENTRY)
        assert records.has_magic_hex("43454e54", MAGIC_CATALOG_ENTRY)
        assert not records.has_magic_hex("", MAGIC_CHUNK)
        assert not records.has_magic_hex("deadbeef", MAGIC_CHUNK)

    def test_record_kind(self):
        assert records.record_kind(encode_header(_header())) == records.KIND_HEADER
        assert records.record_kind(encode_catalog_entry(_entry())) == records.KIND_CATALOG_ENTRY
        assert records.record_kind(b"JUNK") is None


class TestChunking:
    def test_expected_chunk_count(self):
        assert expected_chunk_count(130, 51) == 3
        assert expected_chunk_count(102, 51) == 2
        assert expected_chunk_count(0, 51) == 0

    def test_split_130_bytes(self):
        chunks = split_chunks(5, bytes(range(130)), 51)
        assert [c.length for c in chunks] == [51, 51, 28]
        assert [c.chunk_index for c in chunks] == [0, 1, 2]
        assert all(c.cartridge_id == 5 for c in chunks)
        assert b"".join(c.data for c in chunks) == bytes(range(130))

    def test_split_rejects_bad_chunk_size(self):
        with pytest.raises(ValueError):
            split_chunks(1, b"abc", 52)


def test_semver_parse_and_str():
    assert SemVer.parse("v1.2.3") == SemVer(1, 2, 3)
    assert str(SemVer(0, 10, 2)) == "0.10.2"
    with pytest.raises(ValueError):
        SemVer.parse("1.2")
