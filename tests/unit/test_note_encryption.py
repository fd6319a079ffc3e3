"""Tests for sealing notes to recipient keys."""

import pytest

from zkpool.core.commitment import Note, Randomness
from zkpool.core.note_encryption import (
    HEADER_BYTES,
    NoteEnvelope,
    NoteKeyPair,
    decrypt_note,
    encrypt_note,
    load_public_key,
)
from zkpool.exceptions import DecryptionError, ValidationError


@pytest.fixture
def note():
    return Note(amount=40, token_id=7, owner_key=0xB0B, randomness=Randomness(r=12345, s=6), memo=9)


@pytest.fixture
def bob():
    return NoteKeyPair.from_seed(b"bob wallet signature".ljust(64, b"\x01"))


class TestKeyPairs:
    """Tests for recipient key pairs."""

    def test_seed_is_deterministic(self):
        """The same seed always gives the same key."""
        seed = bytes(range(64))
        assert NoteKeyPair.from_seed(seed).public_key == NoteKeyPair.from_seed(seed).public_key
        assert NoteKeyPair.from_seed(seed).public_key != NoteKeyPair.from_seed(bytes(64)).public_key

    def test_short_seed_rejected(self):
        with pytest.raises(ValidationError):
            NoteKeyPair.from_seed(b"short")

    def test_public_key_hex(self, bob):
        """Hex form is 0x plus 64 digits and loads back."""
        assert len(bob.public_key_hex) == 66
        assert load_public_key(bob.public_key_hex).public_bytes_raw() == bob.public_key

    def test_load_rejects_wrong_length(self):
        with pytest.raises(ValidationError):
            load_public_key(b"\x01" * 31)


class TestSealing:
    """Tests for encrypt_note and decrypt_note."""

    def test_recipient_opens(self, note, bob):
        """The recipient recovers the exact note."""
        envelope = encrypt_note(note, bob.public_key)
        assert decrypt_note(envelope, bob) == note
        assert bob.open(envelope.to_b64()) == note
        assert bob.open(envelope.to_bytes()) == note

    def test_envelopes_unlinkable(self, note, bob):
        """Sealing twice uses fresh ephemeral keys."""
        a = encrypt_note(note, bob.public_key_hex)
        b = encrypt_note(note, bob.public_key_hex)
        assert a.ephemeral_public != b.ephemeral_public
        assert a.ciphertext != b.ciphertext

    def test_other_key_cannot_open(self, note, bob):
        envelope = encrypt_note(note, bob.public_key)
        with pytest.raises(DecryptionError):
            NoteKeyPair.generate().open(envelope.to_bytes())

    def test_tampering_detected(self, note, bob):
        """Any flipped ciphertext bit fails authentication."""
        data = bytearray(encrypt_note(note, bob.public_key).to_bytes())
        data[HEADER_BYTES + 3] ^= 0x01
        with pytest.raises(DecryptionError):
            bob.open(bytes(data))

    @pytest.mark.parametrize("payload", [b"", b"\x01" * HEADER_BYTES, b"\x02" + b"\x00" * 80])
    def test_malformed_envelopes(self, bob, payload):
        """Short or wrong-version envelopes are rejected before decryption."""
        with pytest.raises(DecryptionError):
            bob.open(payload)

    def test_bad_base64(self, bob):
        with pytest.raises(DecryptionError):
            NoteEnvelope.from_b64("not base64!")

    def test_layout(self, note, bob):
        """Version byte, then the ephemeral key and nonce."""
        envelope = encrypt_note(note, bob.public_key, nonce=b"\x07" * 12)
        data = envelope.to_bytes()
        assert data[0] == 1
        assert data[1:33] == envelope.ephemeral_public
        assert data[33:45] == b"\x07" * 12
        assert NoteEnvelope.from_bytes(data) == envelope
