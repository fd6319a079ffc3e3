"""Tests for the spent-nullifier registry."""

import threading
from datetime import datetime, timezone

import pytest

from zkpool.core.nullifier import (
    InMemoryNullifierStore,
    NullifierRecord,
    NullifierRegistry,
    SpendMeta,
)
from zkpool.exceptions import DoubleSpendError
from zkpool.utils.encoding import FieldCodec


@pytest.fixture
def registry():
    return NullifierRegistry()


class TestNullifierUpsert:
    """Tests for merge semantics."""

    def test_new_nullifier_unspent(self, registry):
        """Unknown nullifiers are unspent."""
        assert not registry.is_spent(123)
        assert registry.get_record(123) is None

    def test_insert_spent(self, registry):
        """An upsert creates a record and fills spent_at."""
        assert registry.upsert(7, SpendMeta(settlement_ref="sig1", kind="transfer"))
        record = registry.get_record(7)
        assert record.spent
        assert record.settlement_ref == "sig1"
        assert record.spent_at is not None
        assert record.kind == "transfer"

    def test_keys_canonicalized(self, registry):
        """Every encoding of one nullifier addresses the same record."""
        registry.upsert("0xABC", SpendMeta())
        assert registry.is_spent(0xABC)
        assert registry.is_spent("abc")
        assert registry.is_spent(FieldCodec.to_hex(0xABC))

    def test_spent_never_reverts(self, registry):
        """A later spent=False upsert cannot unspend."""
        registry.upsert(1, SpendMeta(settlement_ref="sig1"))
        registry.upsert(1, SpendMeta(spent=False))
        assert registry.is_spent(1)

    def test_unknown_fields_keep_stored(self, registry):
        """None fields keep the stored values."""
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        registry.upsert(1, SpendMeta(settlement_ref="sig1", spent_at=when, kind="withdraw"))
        registry.upsert(1, SpendMeta())
        record = registry.get_record(1)
        assert record.settlement_ref == "sig1"
        assert record.spent_at == when
        assert record.kind == "withdraw"

    def test_known_fields_overwrite(self, registry):
        """Supplied fields replace stored ones."""
        registry.upsert(1, SpendMeta(spent=False))
        registry.upsert(1, SpendMeta(settlement_ref="sig2"))
        assert registry.get_record(1).settlement_ref == "sig2"
        assert registry.is_spent(1)

    def test_replay_is_noop(self, registry):
        """Repeating an upsert reports no change."""
        when = datetime(2024, 1, 1, tzinfo=timezone.utc)
        meta = SpendMeta(settlement_ref="sig1", spent_at=when)
        assert registry.upsert(1, meta)
        assert not registry.upsert(1, meta)


class TestMarkSpent:
    """Tests for double-spend detection."""

    def test_same_settlement_is_idempotent(self, registry):
        """A replayed confirmation does not raise."""
        assert registry.mark_spent(9, "sig1", kind="transfer")
        registry.mark_spent(9, "sig1")
        assert registry.get_record(9).settlement_ref == "sig1"

    def test_second_settlement_rejected(self, registry):
        """A different settlement of a spent nullifier is a double spend."""
        registry.mark_spent(9, "sig1")
        with pytest.raises(DoubleSpendError):
            registry.mark_spent(9, "sig2")

    def test_ensure_unspent(self, registry):
        """ensure_unspent raises once spent."""
        registry.ensure_unspent(5)
        registry.mark_spent(5, "sig")
        with pytest.raises(DoubleSpendError):
            registry.ensure_unspent(5)

    def test_concurrent_spends(self, registry):
        """Of many racing settlements exactly one wins."""
        errors = []
        start = threading.Barrier(8)

        def spend(ref):
            start.wait()
            try:
                registry.mark_spent(42, ref)
            except DoubleSpendError as e:
                errors.append(e)

        threads = [threading.Thread(target=spend, args=(f"sig{i}",)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(errors) == 7
        assert registry.is_spent(42)


class TestRecordSerialization:
    """Tests for stored records."""

    def test_to_dict(self):
        """Records serialize timestamps as ISO strings."""
        when = datetime(2024, 5, 6, 7, 8, 9, tzinfo=timezone.utc)
        record = NullifierRecord(nullifier="0x01", spent=True, settlement_ref="s", spent_at=when)
        data = record.to_dict()
        assert data["spent_at"] == when.isoformat()
        assert data["kind"] is None

    def test_custom_store(self):
        """The registry writes through to its store."""
        store = InMemoryNullifierStore()
        NullifierRegistry(store).mark_spent(3, "sig")
        assert [r.nullifier for r in store.all()] == [FieldCodec.to_hex(3)]
