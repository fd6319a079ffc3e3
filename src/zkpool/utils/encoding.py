"""Field element encoding and decoding utilities."""

import string
from typing import Union

from zkpool.exceptions import ValidationError

# BN254 scalar field, shared with the proving circuit.
FIELD_PRIME = 21888242871839275222246405745257275088548364400416034343698204186575808495617

FIELD_BYTES = 32
MAX_WIDTH = 1 << (8 * FIELD_BYTES)

_HEX_DIGITS = frozenset(string.hexdigits)
_DEC_DIGITS = frozenset(string.digits)

FieldLike = Union[int, str, bytes, bytearray]


class FieldCodec:
    """
    Normalizes hex, decimal and raw byte encodings into field elements.

    Every value that enters the pool passes through here exactly once. Input
    that could be read two ways, or that would need truncating, is rejected
    with ValidationError instead of being guessed at.

    Canonical storage form is ``0x`` followed by 64 lowercase hex digits,
    big-endian.
    """

    PRIME = FIELD_PRIME

    @staticmethod
    def to_field(value: FieldLike) -> int:
        """
        Convert a value to a field element reduced mod the prime.

        Args:
            value: Non-negative int, big-endian bytes (1..32), ``0x`` hex
                string or bare decimal string

        Returns:
            int: Value reduced modulo FIELD_PRIME

        Raises:
            ValidationError: If the value is malformed, ambiguous or wider
                than 32 bytes
        """
        return FieldCodec.to_int(value) % FIELD_PRIME

    @staticmethod
    def to_int(value: FieldLike) -> int:
        """
        Parse a value into a 256-bit unsigned integer without reducing it.

        Raises:
            ValidationError: If the value is malformed or out of range
        """
        if isinstance(value, bool):
            raise ValidationError("Booleans are not field elements")

        if isinstance(value, int):
            if value < 0:
                raise ValidationError(f"Field elements must be non-negative, got {value}")
            if value >= MAX_WIDTH:
                raise ValidationError("Integer is wider than 32 bytes")
            return value

        if isinstance(value, (bytes, bytearray)):
            if len(value) == 0:
                raise ValidationError("Empty byte string")
            if len(value) > FIELD_BYTES:
                raise ValidationError(f"Byte string is {len(value)} bytes, max {FIELD_BYTES}")
            return int.from_bytes(bytes(value), "big")

        if isinstance(value, str):
            text = value.strip()
            if not text:
                raise ValidationError("Empty string is not a field element")

            if text[:2] in ("0x", "0X"):
                return FieldCodec._parse_hex_digits(text[2:])

            if all(ch in _DEC_DIGITS for ch in text):
                parsed = int(text, 10)
                if parsed >= MAX_WIDTH:
                    raise ValidationError("Decimal value is wider than 32 bytes")
                return parsed

            if all(ch in _HEX_DIGITS for ch in text):
                raise ValidationError(
                    f"Ambiguous value {text[:16]!r}: hex strings need a 0x prefix"
                )
            raise ValidationError(f"Malformed numeric string {text[:16]!r}")

        raise ValidationError(f"Unsupported field element type {type(value).__name__}")

    @staticmethod
    def from_hex(value: str) -> int:
        """
        Parse a stored hex value; the ``0x`` marker is optional.

        Args:
            value: Hex string, at most 64 digits

        Returns:
            int: Parsed value (not reduced)

        Raises:
            ValidationError: If the string is not hex or too wide
        """
        if not isinstance(value, str):
            raise ValidationError(f"Expected hex string, got {type(value).__name__}")
        text = value.strip()
        if text[:2] in ("0x", "0X"):
            text = text[2:]
        return FieldCodec._parse_hex_digits(text)

    @staticmethod
    def _parse_hex_digits(digits: str) -> int:
        if not digits:
            raise ValidationError("Hex string has no digits")
        if len(digits) > 2 * FIELD_BYTES:
            raise ValidationError(f"Hex string has {len(digits)} digits, max {2 * FIELD_BYTES}")
        if not all(ch in _HEX_DIGITS for ch in digits):
            raise ValidationError(f"Invalid hex digits in {digits[:16]!r}")
        return int(digits, 16)

    @staticmethod
    def canonical_hex(value: FieldLike) -> str:
        """Canonicalize any accepted encoding of a stored hex key."""
        if isinstance(value, str):
            return FieldCodec.to_hex(FieldCodec.from_hex(value))
        return FieldCodec.to_hex(FieldCodec.to_int(value))

    @staticmethod
    def to_hex(value: int) -> str:
        """
        Encode an integer in canonical storage form.

        Returns:
            str: ``0x`` + 64 lowercase hex digits
        """
        return "0x" + FieldCodec.to_be_bytes(value).hex()

    @staticmethod
    def to_decimal(value: FieldLike) -> str:
        """Decimal string used for witnesses and public signals."""
        return str(FieldCodec.to_field(value))

    @staticmethod
    def to_be_bytes(value: int) -> bytes:
        """32-byte big-endian encoding."""
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError(f"Expected int, got {type(value).__name__}")
        if value < 0 or value >= MAX_WIDTH:
            raise ValidationError("Value does not fit in 32 bytes")
        return value.to_bytes(FIELD_BYTES, "big")

    @staticmethod
    def to_le_bytes(value: int) -> bytes:
        """32-byte little-endian encoding, the ledger's wire order."""
        return FieldCodec.to_be_bytes(value)[::-1]

    @staticmethod
    def from_le_bytes(data: bytes) -> int:
        """Decode a 32-byte little-endian wire field."""
        if len(data) != FIELD_BYTES:
            raise ValidationError(f"Wire field must be {FIELD_BYTES} bytes, got {len(data)}")
        return int.from_bytes(data, "little")

    @staticmethod
    def le_to_hex(data: bytes) -> str:
        """Byte-reverse a little-endian wire field into canonical hex."""
        return FieldCodec.to_hex(FieldCodec.from_le_bytes(data))

    @staticmethod
    def hex_to_le(value: str) -> bytes:
        """Inverse of le_to_hex."""
        return FieldCodec.to_le_bytes(FieldCodec.from_hex(value))


def short_hex(value: str, width: int = 10) -> str:
    """Truncate a hex value for log lines."""
    if len(value) <= width + 3:
        return value
    return f"{value[:width]}..."
