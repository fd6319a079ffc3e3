"""Tests for the sealed-note message box."""

import pytest

from zkpool.core.messages import InMemoryMessageStore, MessageBox, content_hash
from zkpool.exceptions import DuplicateMessageError, NotFoundError, ValidationError
from zkpool.storage.database import MessageRow, SqlMessageStore
from zkpool.utils.encoding import FieldCodec

BOB = "0x" + "b0" * 32
CAROL = "0x" + "ca" * 32


@pytest.fixture(params=["memory", "sql"])
def box(request, temp_db):
    if request.param == "memory":
        return MessageBox(InMemoryMessageStore())
    return MessageBox(SqlMessageStore(temp_db))


class TestPost:
    """Tests for storing messages."""

    def test_post_and_get(self, box):
        """Stored messages get ids and keep their envelope."""
        stored = box.post(BOB, b"sealed", commitment=5, enc_tag="0x09")
        again = box.get(stored.message_id)
        assert again.ciphertext == b"sealed"
        assert again.recipient_key == BOB
        assert again.commitment == FieldCodec.to_hex(5)
        assert again.enc_tag == FieldCodec.to_hex(9)
        assert again.content_hash == content_hash(BOB, b"sealed")
        assert again.created_at.tzinfo is not None

    def test_keys_canonicalized(self, box):
        """Short or uppercase keys are stored in canonical form."""
        stored = box.post("0xB0", b"x", sender_key="0xCA")
        assert stored.recipient_key == FieldCodec.to_hex(0xB0)
        assert stored.sender_key == FieldCodec.to_hex(0xCA)

    def test_duplicate_rejected(self, box):
        """The same ciphertext reaches one recipient once."""
        box.post(BOB, b"sealed")
        with pytest.raises(DuplicateMessageError):
            box.post(BOB, b"sealed")
        box.post(CAROL, b"sealed")

    @pytest.mark.parametrize(
        "recipient, ciphertext, kind",
        [
            ("b0b", b"x", "note-transfer"),
            ("0xzz", b"x", "note-transfer"),
            (BOB, b"", "note-transfer"),
            (BOB, b"x", "chat"),
            (BOB, b"x" * (16 * 1024 + 1), "note-transfer"),
        ],
    )
    def test_rejects_malformed(self, box, recipient, ciphertext, kind):
        with pytest.raises(ValidationError):
            box.post(recipient, ciphertext, kind=kind)

    def test_unknown_id(self, box):
        with pytest.raises(NotFoundError):
            box.get(42)


class TestInbox:
    """Tests for inbox paging and tag lookup."""

    def test_paged_oldest_first(self, box):
        """Pages follow id order and only hold the recipient's messages."""
        ids = [box.post(BOB, bytes([i + 1])).message_id for i in range(5)]
        box.post(CAROL, b"other")

        first = box.inbox(BOB, limit=2)
        assert [m.message_id for m in first.messages] == ids[:2]
        second = box.inbox(BOB, cursor=first.next_cursor, limit=2)
        assert [m.message_id for m in second.messages] == ids[2:4]
        last = box.inbox(BOB, cursor=second.next_cursor, limit=2)
        assert [m.message_id for m in last.messages] == ids[4:]
        assert last.next_cursor is None

    def test_exact_page_has_no_cursor(self, box):
        box.post(BOB, b"a")
        box.post(BOB, b"b")
        assert box.inbox(BOB, limit=2).next_cursor is None

    def test_by_tag(self, box):
        """A Transfer's tag finds the message sealed for that output."""
        box.post(BOB, b"a", enc_tag=7)
        box.post(CAROL, b"b", enc_tag=8)
        (found,) = box.by_tag("0x07")
        assert found.ciphertext == b"a"

    def test_find_needs_one_selector(self, box):
        with pytest.raises(ValidationError):
            box.find()
        with pytest.raises(ValidationError):
            box.find(BOB, "0x07")
        with pytest.raises(ValidationError):
            box.inbox(BOB, limit=0)


def test_message_row_repr():
    assert "note-transfer" in repr(MessageRow(id=1, kind="note-transfer", recipient_key=BOB))
