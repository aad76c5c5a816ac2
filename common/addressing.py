"""Address and identifier codecs (NQ user-friendly addresses, base58)."""

from typing import Optional

from common.constants import CARTRIDGE_REF_SIZE

ADDRESS_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVXY"
ADDRESS_PREFIX = "NQ"
BASE58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"

_ADDRESS_BODY_LENGTH = 32
_ADDRESS_LENGTH = len(ADDRESS_PREFIX) + 2 + _ADDRESS_BODY_LENGTH
_BASE58_INDEX = {char: index for index, char in enumerate(BASE58_ALPHABET)}


def _iban_remainder(text: str) -> int:
    """Mod-97 remainder of an alphanumeric string with letters mapped A=10 .. Z=35."""
    digits = "".join(str(ord(c) - 55) if c.isalpha() else c for c in text)
    remainder = 0
    for start in range(0, len(digits), 6):
        remainder = int(str(remainder) + digits[start:start + 6]) % 97
    return remainder


def check_digits(body: str) -> str:
    """Compute the two check digits for a 32-symbol address body."""
    return f"{98 - _iban_remainder(body + ADDRESS_PREFIX + '00'):02d}"


def normalize_address(address: str) -> str:
    """Remove whitespace and upper-case an address."""
    return "".join(address.split()).upper()


def format_address(address: str) -> str:
    """Render an address in groups of four symbols."""
    compact = normalize_address(address)
    return " ".join(compact[i:i + 4] for i in range(0, len(compact), 4))


def encode_address(value: bytes) -> str:
    """
    Encode a 20-byte value as a grouped NQ address.

    Args:
        value: 20 raw bytes

    Returns:
        Address such as "NQ15 NXMP 11A0 ..."

    Raises:
        ValueError: If the value is not 20 bytes
    """
    if len(value) != CARTRIDGE_REF_SIZE:
        raise ValueError(f"address value must be {CARTRIDGE_REF_SIZE} bytes, got {len(value)}")
    number = int.from_bytes(value, "big")
    body = "".join(
        ADDRESS_ALPHABET[(number >> shift) & 0x1F]
        for shift in range(5 * (_ADDRESS_BODY_LENGTH - 1), -1, -5)
    )
    return format_address(ADDRESS_PREFIX + check_digits(body) + body)


def decode_address(address: str, validate: bool = False) -> bytes:
    """
    Decode an NQ address back to its 20-byte value.

    Check digits are only verified when `validate` is set.

    Raises:
        ValueError: If the address is malformed or (when validating) its
            check digits do not match
    """
    compact = normalize_address(address)
    if len(compact) != _ADDRESS_LENGTH or not compact.startswith(ADDRESS_PREFIX):
        raise ValueError(f"Invalid address: {address!r}")
    body = compact[4:]
    number = 0
    for char in body:
        index = ADDRESS_ALPHABET.find(char)
        if index < 0:
            raise ValueError(f"Invalid address symbol {char!r} in {address!r}")
        number = (number << 5) | index
    if validate and compact[2:4] != check_digits(body):
        raise ValueError(f"Invalid address check digits: {address!r}")
    return number.to_bytes(CARTRIDGE_REF_SIZE, "big")


def is_valid_address(address: Optional[str]) -> bool:
    """True when the address decodes and its check digits match."""
    if not address:
        return False
    try:
        decode_address(address, validate=True)
    except ValueError:
        return False
    return True


def b58encode(data: bytes) -> str:
    """Encode bytes as base58, one leading '1' per leading zero byte."""
    zeros = len(data) - len(data.lstrip(b"\x00"))
    number = int.from_bytes(data, "big")
    encoded = []
    while number > 0:
        number, rem = divmod(number, 58)
        encoded.append(BASE58_ALPHABET[rem])
    return "1" * zeros + "".join(reversed(encoded))


def b58decode(text: str) -> bytes:
    """
    Decode a base58 string.

    Raises:
        ValueError: On a character outside the alphabet
    """
    zeros = len(text) - len(text.lstrip("1"))
    number = 0
    for char in text[zeros:]:
        if char not in _BASE58_INDEX:
            raise ValueError(f"Invalid base58 character {char!r}")
        number = number * 58 + _BASE58_INDEX[char]
    body = number.to_bytes((number.bit_length() + 7) // 8, "big") if number else b""
    return b"\x00" * zeros + body
