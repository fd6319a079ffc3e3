"""Note encryption for recipient delivery.

A transfer output is useless to its recipient until they learn the note
preimage. The sender seals the note to the recipient's X25519 key and posts
the envelope to the relayer's message box; the recipient fetches and opens it.

Envelope layout (all binary, base64 on the wire):

    version (1) | ephemeral public key (32) | nonce (12) | ChaCha20-Poly1305 ciphertext

The symmetric key is HKDF-SHA256 over the X25519 shared secret, salted with
both public keys. The recipient key is also bound as associated data.
"""

import base64
import binascii
import json
import os
from dataclasses import dataclass
from typing import Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.x25519 import X25519PrivateKey, X25519PublicKey
from cryptography.hazmat.primitives.ciphers.aead import ChaCha20Poly1305
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from zkpool.core.commitment import Note
from zkpool.exceptions import DecryptionError, ValidationError
from zkpool.utils.encoding import FieldCodec

ENVELOPE_VERSION = 1
KEY_BYTES = 32
NONCE_BYTES = 12
HEADER_BYTES = 1 + KEY_BYTES + NONCE_BYTES

SEED_INFO = b"zkpool/note-key/v1"
ENVELOPE_INFO = b"zkpool/note-envelope/v1"

PublicKeyLike = Union[bytes, str, X25519PublicKey]


def _raw_public(key: X25519PublicKey) -> bytes:
    return key.public_bytes(encoding=serialization.Encoding.Raw, format=serialization.PublicFormat.Raw)


def load_public_key(value: PublicKeyLike) -> X25519PublicKey:
    """
    Load a recipient key from raw bytes or its ``0x`` hex form.

    Raises:
        ValidationError: If the key is not 32 bytes
    """
    if isinstance(value, X25519PublicKey):
        return value
    if isinstance(value, str):
        value = FieldCodec.to_be_bytes(FieldCodec.from_hex(value))
    if not isinstance(value, bytes) or len(value) != KEY_BYTES:
        raise ValidationError("Note encryption keys are 32 bytes")
    return X25519PublicKey.from_public_bytes(value)


def _derive_key(shared: bytes, ephemeral_public: bytes, recipient_public: bytes) -> bytes:
    return HKDF(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=ephemeral_public + recipient_public,
        info=ENVELOPE_INFO,
    ).derive(shared)


class NoteKeyPair:
    """
    X25519 key pair a recipient publishes for note delivery.

    Wallets derive it from a signature over a fixed message so the same
    wallet always recovers the same key; ``generate`` is for throwaway keys.
    """

    def __init__(self, private_key: X25519PrivateKey):
        self._private_key = private_key

    @classmethod
    def generate(cls) -> "NoteKeyPair":
        return cls(X25519PrivateKey.generate())

    @classmethod
    def from_seed(cls, seed: bytes) -> "NoteKeyPair":
        """
        Deterministic key pair from wallet-held seed material.

        Args:
            seed: At least 32 bytes, e.g. a wallet signature

        Raises:
            ValidationError: If the seed is too short
        """
        if not isinstance(seed, bytes) or len(seed) < KEY_BYTES:
            raise ValidationError(f"Seed must be at least {KEY_BYTES} bytes")
        scalar = HKDF(algorithm=hashes.SHA256(), length=KEY_BYTES, salt=None, info=SEED_INFO).derive(seed)
        return cls(X25519PrivateKey.from_private_bytes(scalar))

    @property
    def public_key(self) -> bytes:
        """Raw 32-byte public key."""
        return _raw_public(self._private_key.public_key())

    @property
    def public_key_hex(self) -> str:
        """Public key in the ``0x`` + 64 hex form used as a recipient key."""
        return "0x" + self.public_key.hex()

    def exchange(self, peer_public: bytes) -> bytes:
        """X25519 shared secret with a peer's raw public key."""
        return self._private_key.exchange(X25519PublicKey.from_public_bytes(peer_public))

    def open(self, envelope: Union[bytes, str]) -> Note:
        """Decrypt an envelope addressed to this key pair."""
        return decrypt_note(envelope, self)


@dataclass(frozen=True)
class NoteEnvelope:
    """Sealed note as posted to the message box."""

    ephemeral_public: bytes
    nonce: bytes
    ciphertext: bytes

    def to_bytes(self) -> bytes:
        return bytes([ENVELOPE_VERSION]) + self.ephemeral_public + self.nonce + self.ciphertext

    def to_b64(self) -> str:
        return base64.b64encode(self.to_bytes()).decode("ascii")

    @classmethod
    def from_bytes(cls, data: bytes) -> "NoteEnvelope":
        """
        Split a serialized envelope.

        Raises:
            DecryptionError: If the version or length is wrong
        """
        if len(data) <= HEADER_BYTES:
            raise DecryptionError("Envelope is too short")
        if data[0] != ENVELOPE_VERSION:
            raise DecryptionError(f"Unsupported envelope version {data[0]}")
        return cls(
            ephemeral_public=data[1:1 + KEY_BYTES],
            nonce=data[1 + KEY_BYTES:HEADER_BYTES],
            ciphertext=data[HEADER_BYTES:],
        )

    @classmethod
    def from_b64(cls, text: str) -> "NoteEnvelope":
        try:
            data = base64.b64decode(text, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecryptionError(f"Envelope is not base64: {e}") from e
        return cls.from_bytes(data)


def encrypt_note(note: Note, recipient: PublicKeyLike, nonce: Optional[bytes] = None) -> NoteEnvelope:
    """
    Seal a note to a recipient key.

    A fresh ephemeral key is drawn for every call, so the same note sealed
    twice gives unrelated envelopes.

    Args:
        note: Note to deliver
        recipient: Recipient's X25519 public key
        nonce: Fixed nonce (tests only); random when omitted

    Returns:
        NoteEnvelope: Sealed note

    Raises:
        ValidationError: If the recipient key is malformed
    """
    recipient_key = load_public_key(recipient)
    recipient_public = _raw_public(recipient_key)
    ephemeral = X25519PrivateKey.generate()
    ephemeral_public = _raw_public(ephemeral.public_key())
    key = _derive_key(ephemeral.exchange(recipient_key), ephemeral_public, recipient_public)

    nonce = nonce if nonce is not None else os.urandom(NONCE_BYTES)
    plaintext = json.dumps(note.to_dict(), sort_keys=True, separators=(",", ":")).encode("utf-8")
    ciphertext = ChaCha20Poly1305(key).encrypt(nonce, plaintext, recipient_public)
    return NoteEnvelope(ephemeral_public=ephemeral_public, nonce=nonce, ciphertext=ciphertext)


def decrypt_note(envelope: Union[NoteEnvelope, bytes, str], keys: NoteKeyPair) -> Note:
    """
    Open an envelope with the recipient's key pair.

    Args:
        envelope: Envelope object, its bytes, or its base64 text
        keys: Recipient key pair

    Returns:
        Note: The sealed note

    Raises:
        DecryptionError: If the envelope is malformed, addressed to another
            key, or was tampered with
    """
    if isinstance(envelope, str):
        envelope = NoteEnvelope.from_b64(envelope)
    elif isinstance(envelope, bytes):
        envelope = NoteEnvelope.from_bytes(envelope)

    recipient_public = keys.public_key
    try:
        shared = keys.exchange(envelope.ephemeral_public)
    except ValueError as e:
        raise DecryptionError(f"Bad ephemeral key: {e}") from e
    key = _derive_key(shared, envelope.ephemeral_public, recipient_public)
    try:
        plaintext = ChaCha20Poly1305(key).decrypt(envelope.nonce, envelope.ciphertext, recipient_public)
    except InvalidTag as e:
        raise DecryptionError("Envelope does not open with this key") from e

    try:
        return Note.from_dict(json.loads(plaintext.decode("utf-8")))
    except (ValueError, ValidationError) as e:
        raise DecryptionError(f"Envelope holds no note: {e}") from e
