"""Message box for encrypted note delivery.

The relayer stores envelopes it cannot read. Recipients page through their
inbox by id; a transfer output can also be looked up by the encrypted-note
tag its Transfer event carries.
"""

import logging
import re
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Tuple

from cryptography.hazmat.primitives import hashes

from zkpool.exceptions import DuplicateMessageError, NotFoundError, ValidationError
from zkpool.utils.encoding import FieldCodec, short_hex

logger = logging.getLogger(__name__)

MESSAGE_KINDS = ("note-deposit", "note-transfer", "note-withdraw", "note-message")
MAX_CIPHERTEXT_BYTES = 16 * 1024

_KEY_PATTERN = re.compile(r"^0x[0-9a-fA-F]+$")


def content_hash(recipient_key: str, ciphertext: bytes) -> str:
    """Hex SHA-256 over the recipient key and ciphertext; one message per value."""
    digest = hashes.Hash(hashes.SHA256())
    digest.update(recipient_key.encode("ascii"))
    digest.update(ciphertext)
    return "0x" + digest.finalize().hex()


@dataclass(frozen=True)
class NoteMessage:
    """One stored envelope."""

    recipient_key: str
    ciphertext: bytes
    kind: str = "note-transfer"
    sender_key: Optional[str] = None
    commitment: Optional[str] = None
    enc_tag: Optional[str] = None
    content_hash: str = ""
    message_id: Optional[int] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "id": self.message_id,
            "recipient_key": self.recipient_key,
            "sender_key": self.sender_key,
            "kind": self.kind,
            "commitment": self.commitment,
            "enc_tag": self.enc_tag,
            "content_hash": self.content_hash,
            "created_at": self.created_at,
        }


class MessageStore(Protocol):
    def add(self, message: NoteMessage) -> NoteMessage: ...

    def get(self, message_id: int) -> Optional[NoteMessage]: ...

    def for_recipient(self, recipient_key: str, after_id: Optional[int], limit: int) -> List[NoteMessage]: ...

    def by_tag(self, enc_tag: str) -> List[NoteMessage]: ...


class InMemoryMessageStore:
    """Dict-backed store; ids are assigned in insertion order from 1."""

    def __init__(self):
        self._messages: Dict[int, NoteMessage] = {}
        self._hashes: Dict[str, int] = {}
        self._lock = threading.Lock()

    def add(self, message: NoteMessage) -> NoteMessage:
        with self._lock:
            if message.content_hash in self._hashes:
                raise DuplicateMessageError(f"Message {short_hex(message.content_hash)} already stored")
            stored = replace(
                message,
                message_id=len(self._messages) + 1,
                created_at=message.created_at or datetime.now(timezone.utc),
            )
            self._messages[stored.message_id] = stored
            self._hashes[stored.content_hash] = stored.message_id
            return stored

    def get(self, message_id: int) -> Optional[NoteMessage]:
        return self._messages.get(message_id)

    def for_recipient(self, recipient_key: str, after_id: Optional[int], limit: int) -> List[NoteMessage]:
        with self._lock:
            matches = [
                m for m in self._messages.values()
                if m.recipient_key == recipient_key and (after_id is None or m.message_id > after_id)
            ]
        return sorted(matches, key=lambda m: m.message_id)[:limit]

    def by_tag(self, enc_tag: str) -> List[NoteMessage]:
        with self._lock:
            return sorted((m for m in self._messages.values() if m.enc_tag == enc_tag), key=lambda m: m.message_id)


@dataclass
class InboxPage:
    messages: List[NoteMessage] = field(default_factory=list)
    next_cursor: Optional[int] = None


class MessageBox:
    """
    Accepts and serves sealed notes.

    Example:
        >>> box = MessageBox(InMemoryMessageStore())
        >>> stored = box.post(keys.public_key_hex, envelope.to_bytes(), enc_tag=tag)
        >>> page = box.inbox(keys.public_key_hex)
    """

    def __init__(self, store: Optional[MessageStore] = None):
        self.store = store or InMemoryMessageStore()

    @staticmethod
    def normalize_key(value: str, name: str = "recipient_key") -> str:
        """
        Canonical ``0x`` + 64 lowercase hex form of a public key.

        Raises:
            ValidationError: If the key is not 0x-prefixed hex of at most 32 bytes
        """
        if not isinstance(value, str) or not _KEY_PATTERN.match(value):
            raise ValidationError(f"{name} must be 0x-prefixed hex")
        return FieldCodec.canonical_hex(value)

    def post(
        self,
        recipient_key: str,
        ciphertext: bytes,
        kind: str = "note-transfer",
        sender_key: Optional[str] = None,
        commitment: Optional[str] = None,
        enc_tag: Optional[str] = None,
    ) -> NoteMessage:
        """
        Store one envelope for a recipient.

        Args:
            recipient_key: Recipient's note encryption key (0x hex)
            ciphertext: Opaque envelope bytes
            kind: One of MESSAGE_KINDS
            sender_key: Sender's key, if they want a copy attributed
            commitment: Commitment of the sealed note
            enc_tag: Encrypted-note tag carried by the Transfer event

        Returns:
            NoteMessage: Stored message with id and content hash

        Raises:
            ValidationError: If a field is malformed
            DuplicateMessageError: If this ciphertext was already posted to
                this recipient
        """
        if kind not in MESSAGE_KINDS:
            raise ValidationError(f"Unknown message kind: {kind}")
        if not ciphertext:
            raise ValidationError("Ciphertext is empty")
        if len(ciphertext) > MAX_CIPHERTEXT_BYTES:
            raise ValidationError(f"Ciphertext exceeds {MAX_CIPHERTEXT_BYTES} bytes")

        recipient = self.normalize_key(recipient_key)
        message = NoteMessage(
            recipient_key=recipient,
            ciphertext=bytes(ciphertext),
            kind=kind,
            sender_key=self.normalize_key(sender_key, "sender_key") if sender_key is not None else None,
            commitment=FieldCodec.canonical_hex(commitment) if commitment is not None else None,
            enc_tag=FieldCodec.canonical_hex(enc_tag) if enc_tag is not None else None,
            content_hash=content_hash(recipient, ciphertext),
        )
        stored = self.store.add(message)
        logger.info("Stored %s message %d for %s", kind, stored.message_id, short_hex(recipient))
        return stored

    def get(self, message_id: int) -> NoteMessage:
        """
        Raises:
            NotFoundError: If no message has this id
        """
        message = self.store.get(message_id)
        if message is None:
            raise NotFoundError(f"Unknown message {message_id}")
        return message

    def inbox(self, recipient_key: str, cursor: Optional[int] = None, limit: int = 50) -> InboxPage:
        """
        Messages for a recipient, oldest first.

        Args:
            recipient_key: Recipient's key (0x hex)
            cursor: ``next_cursor`` of the previous page
            limit: Page size, at least 1

        Returns:
            InboxPage: Messages and the cursor of the next page, None on the
            last one
        """
        if limit < 1:
            raise ValidationError("limit must be at least 1")
        recipient = self.normalize_key(recipient_key)
        # One extra row tells whether another page exists.
        rows = self.store.for_recipient(recipient, cursor, limit + 1)
        page = rows[:limit]
        next_cursor = page[-1].message_id if len(rows) > limit else None
        return InboxPage(messages=page, next_cursor=next_cursor)

    def by_tag(self, enc_tag: str) -> List[NoteMessage]:
        """Messages posted under an encrypted-note tag."""
        return self.store.by_tag(FieldCodec.canonical_hex(enc_tag))

    def find(
        self,
        recipient_key: Optional[str] = None,
        enc_tag: Optional[str] = None,
        cursor: Optional[int] = None,
        limit: int = 50,
    ) -> Tuple[List[NoteMessage], Optional[int]]:
        """
        Inbox page or tag lookup; exactly one selector must be given.

        Raises:
            ValidationError: If neither or both selectors are given
        """
        if (recipient_key is None) == (enc_tag is None):
            raise ValidationError("Give exactly one of recipient_key and enc_tag")
        if enc_tag is not None:
            return self.by_tag(enc_tag), None
        page = self.inbox(recipient_key, cursor=cursor, limit=limit)
        return page.messages, page.next_cursor
