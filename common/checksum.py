"""Provides SHA-256 checksum calculation and verification helpers."""

import hashlib


def compute_checksum(data: bytes) -> str:
    """
    Compute SHA-256 checksum for given data.

    Args:
        data: Bytes to compute checksum for

    Returns:
        Lower-case hexadecimal SHA-256 digest
    """
    return hashlib.sha256(data).hexdigest()


def compute_digest(data: bytes) -> bytes:
    """Raw 32-byte SHA-256 digest."""
    return hashlib.sha256(data).digest()


def checksums_equal(left: str, right: str) -> bool:
    """Compare two hex digests case-insensitively."""
    return left.strip().lower() == right.strip().lower()


def verify_checksum(data: bytes, expected: str) -> bool:
    """
    Verify that data matches expected checksum.

    Args:
        data: Bytes to verify
        expected: Expected SHA-256 checksum (hex string, any case)

    Returns:
        True if checksum matches, False otherwise
    """
    return checksums_equal(compute_checksum(data), expected)

