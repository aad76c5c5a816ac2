"""Tests for checksum helpers."""

import hashlib

from common.checksum import checksums_equal, compute_checksum, compute_digest, verify_checksum


def test_compute_checksum():
    data = b'test data for checksum'

    assert compute_checksum(data) == hashlib.sha256(data).hexdigest()
    assert compute_digest(data) == hashlib.sha256(data).digest()
    assert len(compute_checksum(data)) == 64


def test_verify_checksum_case_insensitive():
    data = b'test data'
    expected = compute_checksum(data)

    assert verify_checksum(data, expected)
    assert verify_checksum(data, expected.upper())
    assert not verify_checksum(b'other data', expected)


def test_checksums_equal_strips_whitespace():
    assert checksums_equal(' ABCD ', 'abcd')
    assert not checksums_equal('abcd', 'abce')
