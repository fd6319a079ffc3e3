"""Spent-nullifier registry.

A nullifier is published when a note is spent. Once recorded as spent it
stays spent: no upsert can turn ``spent`` back to False, and a second spend
under a different settlement reference is a double spend.

Storage is a keyed collaborator (``get``/``put``) so the same registry runs
on the in-memory store and on the SQLAlchemy row store.
"""

import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Dict, List, Optional, Protocol, Union

from zkpool.exceptions import DoubleSpendError
from zkpool.utils.encoding import FieldCodec, short_hex


@dataclass(frozen=True)
class SpendMeta:
    """Metadata supplied with a nullifier upsert; None means unknown."""

    spent: bool = True
    settlement_ref: Optional[str] = None
    spent_at: Optional[datetime] = None
    kind: Optional[str] = None


@dataclass(frozen=True)
class NullifierRecord:
    """
    Record of a nullifier.

    Tracks when and by which settlement it was spent.
    """

    nullifier: str
    spent: bool
    settlement_ref: Optional[str] = None
    spent_at: Optional[datetime] = None
    kind: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "nullifier": self.nullifier,
            "spent": self.spent,
            "settlement_ref": self.settlement_ref,
            "spent_at": self.spent_at.isoformat() if self.spent_at else None,
            "kind": self.kind,
        }


class NullifierStore(Protocol):
    """Keyed storage used by the registry."""

    def get(self, nullifier: str) -> Optional[NullifierRecord]:
        ...

    def put(self, record: NullifierRecord) -> None:
        ...


class InMemoryNullifierStore:
    """Dictionary-backed store for tests and single-process use."""

    def __init__(self):
        self.records: Dict[str, NullifierRecord] = {}

    def get(self, nullifier: str) -> Optional[NullifierRecord]:
        return self.records.get(nullifier)

    def put(self, record: NullifierRecord) -> None:
        self.records[record.nullifier] = record

    def all(self) -> List[NullifierRecord]:
        return list(self.records.values())


class NullifierRegistry:
    """
    Durable record of spent nullifiers.

    Upserts for one nullifier are serialized by a per-key lock; different
    nullifiers proceed independently.
    """

    def __init__(self, store: Optional[NullifierStore] = None):
        self.store = store if store is not None else InMemoryNullifierStore()
        self._locks: Dict[str, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def key(nullifier: Union[int, str, bytes]) -> str:
        """Canonical hex key of a nullifier."""
        return FieldCodec.canonical_hex(nullifier)

    def _lock_for(self, key: str) -> threading.RLock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.RLock()
            return lock

    def upsert(self, nullifier: Union[int, str, bytes], meta: SpendMeta) -> bool:
        """
        Insert or merge a nullifier record.

        Known fields in ``meta`` overwrite stored ones, unknown (None) fields
        keep the stored value, and ``spent`` only ever moves to True.

        Args:
            nullifier: Nullifier in any accepted encoding
            meta: Spend metadata

        Returns:
            bool: True if the stored record changed, False for a no-op replay
        """
        key = self.key(nullifier)
        with self._lock_for(key):
            existing = self.store.get(key)
            spent_at = meta.spent_at
            if meta.spent and spent_at is None and (existing is None or existing.spent_at is None):
                spent_at = datetime.now(timezone.utc)

            if existing is None:
                self.store.put(
                    NullifierRecord(
                        nullifier=key,
                        spent=meta.spent,
                        settlement_ref=meta.settlement_ref,
                        spent_at=spent_at,
                        kind=meta.kind,
                    )
                )
                return True

            merged = replace(
                existing,
                spent=existing.spent or meta.spent,
                settlement_ref=meta.settlement_ref if meta.settlement_ref is not None else existing.settlement_ref,
                spent_at=spent_at if spent_at is not None else existing.spent_at,
                kind=meta.kind if meta.kind is not None else existing.kind,
            )
            if merged == existing:
                return False
            self.store.put(merged)
            return True

    def mark_spent(
        self,
        nullifier: Union[int, str, bytes],
        settlement_ref: Optional[str],
        kind: Optional[str] = None,
        spent_at: Optional[datetime] = None,
    ) -> bool:
        """
        Record a spend, rejecting a conflicting second settlement.

        Returns:
            bool: True if this call changed the registry

        Raises:
            DoubleSpendError: If already spent under another settlement reference
        """
        key = self.key(nullifier)
        with self._lock_for(key):
            existing = self.store.get(key)
            if (
                existing is not None
                and existing.spent
                and settlement_ref is not None
                and existing.settlement_ref is not None
                and existing.settlement_ref != settlement_ref
            ):
                raise DoubleSpendError(
                    f"Nullifier {short_hex(key)} already spent by {existing.settlement_ref}"
                )
            return self.upsert(key, SpendMeta(spent=True, settlement_ref=settlement_ref, spent_at=spent_at, kind=kind))

    def is_spent(self, nullifier: Union[int, str, bytes]) -> bool:
        """Check if a nullifier has been spent."""
        record = self.store.get(self.key(nullifier))
        return record is not None and record.spent

    def ensure_unspent(self, nullifier: Union[int, str, bytes]) -> None:
        """
        Reject a nullifier that is already spent.

        Raises:
            DoubleSpendError: If the nullifier is spent
        """
        key = self.key(nullifier)
        record = self.store.get(key)
        if record is not None and record.spent:
            raise DoubleSpendError(f"Nullifier {short_hex(key)} already spent")

    def get_record(self, nullifier: Union[int, str, bytes]) -> Optional[NullifierRecord]:
        """Get the record for a nullifier."""
        return self.store.get(self.key(nullifier))
