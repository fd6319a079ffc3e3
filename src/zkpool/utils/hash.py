"""Hash utilities: the field hasher handle and byte digests."""

import hashlib
from pathlib import Path
from typing import Union

from cryptography.hazmat.primitives import hashes

from zkpool.utils.encoding import FIELD_PRIME, FieldCodec, FieldLike


def sha256(data: Union[bytes, str]) -> bytes:
    """
    Compute SHA-256 hash of data.

    Args:
        data: Bytes or string to hash

    Returns:
        bytes: 32-byte SHA-256 hash
    """
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def file_sha256(path: Union[str, Path], chunk_size: int = 1 << 16) -> str:
    """
    Hex SHA-256 digest of a file's contents.

    Args:
        path: File to hash
        chunk_size: Read size in bytes

    Returns:
        str: 64 lowercase hex digits
    """
    digest = hashes.Hash(hashes.SHA256())
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(chunk_size), b""):
            digest.update(chunk)
    return digest.finalize().hex()


class FieldHasher:
    """
    Hash handle mapping field elements to a field element.

    Built once at startup and handed to every component that hashes (notes,
    the accumulator, the relayer client). The default function is SHA-256
    over the 32-byte big-endian encodings of the reduced operands, reduced
    mod the field prime. A circuit-friendly hash such as Poseidon is wired in
    by subclassing and overriding ``_compress``; callers never change.
    """

    name = "sha256"

    def hash(self, *inputs: FieldLike) -> int:
        """
        Hash any number of field-like operands.

        Args:
            *inputs: Values accepted by FieldCodec.to_field

        Returns:
            int: Digest as a field element

        Raises:
            ValidationError: If an operand is malformed
        """
        if not inputs:
            raise ValueError("hash() needs at least one operand")
        return self._compress([FieldCodec.to_field(value) for value in inputs])

    def hash_pair(self, left: int, right: int) -> int:
        """Merkle node hash of two already-reduced children."""
        return self._compress([left, right])

    def _compress(self, elements: list) -> int:
        digest = hashes.Hash(hashes.SHA256())
        for element in elements:
            digest.update(element.to_bytes(32, "big"))
        return int.from_bytes(digest.finalize(), "big") % FIELD_PRIME

    def __repr__(self) -> str:
        return f"FieldHasher(name={self.name!r})"
