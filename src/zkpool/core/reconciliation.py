"""Reconciliation of pending intents with confirmed ledger records.

Two sides feed the history:

- PendingIntents, written by clients while preparing an operation, before
  any proof exists. They carry attribution (sender, recipient, amount).
- TxRecords, written only after a decoded on-chain event was observed. They
  carry the ledger facts (commitment, nullifier, leaf index, root,
  settlement reference).

``merge`` joins them: deposits by commitment, transfers and withdrawals by
nullifier. A transfer's nullifier is shared by two outputs, and each output
claims its own intent, so the two never collapse into one entry. Confirmed
records without an intent are still listed, unattributed.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol, Set

from zkpool.core.events import DepositCompleted, PoolEvent, TransferCompleted, WithdrawCompleted
from zkpool.exceptions import ValidationError
from zkpool.utils.encoding import FieldCodec, short_hex

logger = logging.getLogger(__name__)


class OperationKind(str, Enum):
    """Kind of pool operation."""
    DEPOSIT = "deposit"
    TRANSFER = "transfer"
    WITHDRAW = "withdraw"


class EntryStatus(str, Enum):
    """Status of a history entry."""
    PENDING = "pending"
    CONFIRMED = "confirmed"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _hex_or_none(value: Optional[str]) -> Optional[str]:
    return FieldCodec.canonical_hex(value) if value is not None else None


@dataclass(frozen=True)
class PendingIntent:
    """A client-prepared operation that has not been confirmed yet."""

    intent_id: str
    kind: OperationKind
    recipient_key: Optional[str] = None
    sender_key: Optional[str] = None
    amount: Optional[int] = None
    commitment: Optional[str] = None
    nullifier: Optional[str] = None
    created_at: Optional[datetime] = None
    settlement_ref: Optional[str] = None

    def canonical(self) -> "PendingIntent":
        """
        Copy with canonical hex keys and a creation time.

        Raises:
            ValidationError: If a key is malformed, or the intent has no
                commitment (deposit) or nullifier (transfer, withdraw)
        """
        kind = OperationKind(self.kind)
        if kind == OperationKind.DEPOSIT and self.commitment is None:
            raise ValidationError("Deposit intents are keyed by commitment")
        if kind != OperationKind.DEPOSIT and self.nullifier is None:
            raise ValidationError(f"{kind.value} intents are keyed by nullifier")
        return replace(
            self,
            kind=kind,
            recipient_key=_hex_or_none(self.recipient_key),
            sender_key=_hex_or_none(self.sender_key),
            commitment=_hex_or_none(self.commitment),
            nullifier=_hex_or_none(self.nullifier),
            created_at=self.created_at or _utcnow(),
        )


@dataclass(frozen=True)
class TxRecord:
    """
    Ledger-confirmed outcome of one accumulator transition.

    Deposits and transfer outputs are keyed by commitment, withdrawals by
    nullifier. ``output`` is 1 or 2 for the two outputs of a transfer.
    """

    kind: OperationKind
    merkle_root: str
    settlement_ref: str
    commitment: Optional[str] = None
    nullifier: Optional[str] = None
    leaf_index: Optional[int] = None
    output: Optional[int] = None
    owner_key: Optional[str] = None
    amount: Optional[int] = None
    recipient: Optional[str] = None
    asset_id: Optional[str] = None
    record_id: Optional[int] = None
    confirmed_at: Optional[datetime] = None

    @property
    def record_key(self) -> str:
        if self.kind == OperationKind.WITHDRAW:
            return f"nullifier:{self.nullifier}"
        return f"commitment:{self.commitment}"

    def canonical(self) -> "TxRecord":
        kind = OperationKind(self.kind)
        if kind == OperationKind.WITHDRAW and self.nullifier is None:
            raise ValidationError("Withdraw records are keyed by nullifier")
        if kind != OperationKind.WITHDRAW and self.commitment is None:
            raise ValidationError(f"{kind.value} records are keyed by commitment")
        return replace(
            self,
            kind=kind,
            merkle_root=FieldCodec.canonical_hex(self.merkle_root),
            commitment=_hex_or_none(self.commitment),
            nullifier=_hex_or_none(self.nullifier),
            owner_key=_hex_or_none(self.owner_key),
            recipient=_hex_or_none(self.recipient),
            asset_id=_hex_or_none(self.asset_id),
        )


@dataclass(frozen=True)
class HistoryEntry:
    """One line of reconciled history."""

    entry_id: str
    kind: OperationKind
    status: EntryStatus
    timestamp: datetime
    commitment: Optional[str] = None
    nullifier: Optional[str] = None
    leaf_index: Optional[int] = None
    merkle_root: Optional[str] = None
    settlement_ref: Optional[str] = None
    amount: Optional[int] = None
    sender_key: Optional[str] = None
    recipient_key: Optional[str] = None
    destination: Optional[str] = None
    asset_id: Optional[str] = None
    intent_id: Optional[str] = None

    @property
    def attributed(self) -> bool:
        return self.intent_id is not None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.entry_id,
            "kind": self.kind.value,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
            "commitment": self.commitment,
            "nullifier": self.nullifier,
            "leaf_index": self.leaf_index,
            "merkle_root": self.merkle_root,
            "settlement_ref": self.settlement_ref,
            "amount": self.amount,
            "sender_key": self.sender_key,
            "recipient_key": self.recipient_key,
            "destination": self.destination,
            "asset_id": self.asset_id,
            "intent_id": self.intent_id,
            "attributed": self.attributed,
        }


@dataclass(frozen=True)
class HistoryPage:
    """A page of history plus the cursor for the next one."""

    entries: List[HistoryEntry]
    next_cursor: Optional[str]


class LedgerStore(Protocol):
    """Keyed storage for intents and confirmed records."""

    def put_intent(self, intent: PendingIntent) -> PendingIntent:
        ...

    def intents(self) -> List[PendingIntent]:
        ...

    def upsert_record(self, record: TxRecord) -> TxRecord:
        ...

    def get_record(self, record_key: str) -> Optional[TxRecord]:
        ...

    def records(self) -> List[TxRecord]:
        ...


class InMemoryLedgerStore:
    """Dictionary-backed LedgerStore with per-call atomic upserts."""

    def __init__(self, clock: Callable[[], datetime] = _utcnow):
        self._intents: Dict[str, PendingIntent] = {}
        self._records: Dict[str, TxRecord] = {}
        self._ids = itertools.count(1)
        self._clock = clock
        self._lock = threading.Lock()

    def put_intent(self, intent: PendingIntent) -> PendingIntent:
        with self._lock:
            self._intents[intent.intent_id] = intent
            return intent

    def intents(self) -> List[PendingIntent]:
        with self._lock:
            return list(self._intents.values())

    def upsert_record(self, record: TxRecord) -> TxRecord:
        with self._lock:
            existing = self._records.get(record.record_key)
            if existing is None:
                stored = replace(record, record_id=next(self._ids), confirmed_at=record.confirmed_at or self._clock())
            else:
                stored = replace(record, record_id=existing.record_id, confirmed_at=existing.confirmed_at)
            self._records[record.record_key] = stored
            return stored

    def get_record(self, record_key: str) -> Optional[TxRecord]:
        with self._lock:
            return self._records.get(record_key)

    def records(self) -> List[TxRecord]:
        with self._lock:
            return list(self._records.values())


def records_from_event(event: PoolEvent, settlement_ref: str) -> List[TxRecord]:
    """
    Ledger records implied by one decoded event.

    A deposit yields one record, a transfer two (out1 at ``next_leaf_index``
    with ``new_root1``, out2 at ``next_leaf_index + 1`` with ``new_root2``),
    a withdrawal one record keyed by its nullifier.
    """
    if isinstance(event, DepositCompleted):
        return [
            TxRecord(
                kind=OperationKind.DEPOSIT,
                commitment=event.commitment,
                leaf_index=event.next_leaf_index,
                merkle_root=event.new_root,
                settlement_ref=settlement_ref,
                owner_key=event.owner_key,
                asset_id=event.asset_id,
            )
        ]
    if isinstance(event, TransferCompleted):
        return [
            TxRecord(
                kind=OperationKind.TRANSFER,
                commitment=event.out1_commitment,
                nullifier=event.nullifier,
                leaf_index=event.next_leaf_index,
                output=1,
                merkle_root=event.new_root1,
                settlement_ref=settlement_ref,
                asset_id=event.asset_id,
            ),
            TxRecord(
                kind=OperationKind.TRANSFER,
                commitment=event.out2_commitment,
                nullifier=event.nullifier,
                leaf_index=event.next_leaf_index + 1,
                output=2,
                merkle_root=event.new_root2,
                settlement_ref=settlement_ref,
                asset_id=event.asset_id,
            ),
        ]
    if isinstance(event, WithdrawCompleted):
        return [
            TxRecord(
                kind=OperationKind.WITHDRAW,
                nullifier=event.nullifier,
                merkle_root=event.root_used,
                settlement_ref=settlement_ref,
                amount=event.amount,
                recipient=event.recipient,
                asset_id=event.asset_id,
            )
        ]
    raise ValidationError(f"Not a pool event: {type(event).__name__}")


class ReconciliationLedger:
    """
    Joins pending intents and confirmed records into one history.

    All writes are single-record upserts on the store; no global lock is
    taken here.
    """

    def __init__(self, store: Optional[LedgerStore] = None):
        self.store = store if store is not None else InMemoryLedgerStore()

    def record_intent(self, intent: PendingIntent) -> PendingIntent:
        """
        Store a client-prepared intent.

        Raises:
            ValidationError: If the intent is malformed
        """
        stored = self.store.put_intent(intent.canonical())
        logger.debug("Recorded %s intent %s", stored.kind.value, stored.intent_id)
        return stored

    def record_confirmed(self, record: TxRecord) -> TxRecord:
        """
        Upsert a confirmed record; replays keep the original id and time.

        Raises:
            ValidationError: If the record is malformed
        """
        stored = self.store.upsert_record(record.canonical())
        logger.debug("Recorded confirmed %s %s (id %s)", stored.kind.value, stored.record_key, stored.record_id)
        return stored

    def mark_submitted(
        self,
        settlement_ref: str,
        commitment: Optional[str] = None,
        nullifier: Optional[str] = None,
    ) -> int:
        """
        Attach a settlement reference to the intents of a submitted operation.

        Returns:
            int: Number of intents updated
        """
        commitment = _hex_or_none(commitment)
        nullifier = _hex_or_none(nullifier)
        updated = 0
        for intent in self.store.intents():
            if intent.settlement_ref is not None:
                continue
            if (commitment is not None and intent.commitment == commitment) or (
                nullifier is not None and intent.nullifier == nullifier
            ):
                self.store.put_intent(replace(intent, settlement_ref=settlement_ref))
                updated += 1
        return updated

    def apply_event(self, event: PoolEvent, settlement_ref: str) -> List[TxRecord]:
        """Record every ledger record a decoded event implies."""
        return [self.record_confirmed(r) for r in records_from_event(event, settlement_ref)]

    def merge(self) -> List[HistoryEntry]:
        """
        Full reconciled history, newest first.

        Confirmed entries come first ordered by (confirmed_at, record_id)
        descending, then still-pending intents by creation time descending.
        """
        intents = sorted(self.store.intents(), key=lambda i: (i.created_at, i.intent_id))
        records = sorted(self.store.records(), key=lambda r: r.record_id)

        by_commitment: Dict[str, List[PendingIntent]] = {}
        by_nullifier: Dict[str, List[PendingIntent]] = {}
        for intent in intents:
            if intent.commitment is not None:
                by_commitment.setdefault(intent.commitment, []).append(intent)
            if intent.nullifier is not None:
                by_nullifier.setdefault(intent.nullifier, []).append(intent)

        consumed: Set[str] = set()
        confirmed = []
        for record in records:
            intent = self._match(record, by_commitment, by_nullifier, consumed)
            if intent is not None:
                consumed.add(intent.intent_id)
            confirmed.append(self._confirmed_entry(record, intent))

        pending = [self._pending_entry(i) for i in intents if i.intent_id not in consumed]

        confirmed.sort(key=lambda e: (e.timestamp, int(e.entry_id.split(":", 1)[1])), reverse=True)
        pending.sort(key=lambda e: (e.timestamp, e.entry_id), reverse=True)
        return confirmed + pending

    def _match(
        self,
        record: TxRecord,
        by_commitment: Dict[str, List[PendingIntent]],
        by_nullifier: Dict[str, List[PendingIntent]],
        consumed: Set[str],
    ) -> Optional[PendingIntent]:
        if record.kind == OperationKind.DEPOSIT:
            candidates = [
                i for i in by_commitment.get(record.commitment, [])
                if i.kind == OperationKind.DEPOSIT and i.intent_id not in consumed
            ]
            if record.owner_key is not None:
                candidates = [i for i in candidates if i.recipient_key in (None, record.owner_key)]
            return candidates[0] if candidates else None

        candidates = [
            i for i in by_nullifier.get(record.nullifier, [])
            if i.kind == record.kind and i.intent_id not in consumed
        ]
        if not candidates:
            return None
        if record.kind == OperationKind.WITHDRAW:
            return candidates[0]

        for intent in candidates:
            if intent.commitment is not None and intent.commitment == record.commitment:
                return intent
        # Intents carrying a different output's commitment are not ours.
        candidates = [i for i in candidates if i.commitment is None]
        if not candidates:
            return None

        # out1 pays the recipient, out2 returns change to the sender.
        for intent in candidates:
            is_change = intent.sender_key is not None and intent.sender_key == intent.recipient_key
            if (record.output == 2) == is_change:
                return intent
        return None

    @staticmethod
    def _confirmed_entry(record: TxRecord, intent: Optional[PendingIntent]) -> HistoryEntry:
        return HistoryEntry(
            entry_id=f"tx:{record.record_id}",
            kind=record.kind,
            status=EntryStatus.CONFIRMED,
            timestamp=record.confirmed_at,
            commitment=record.commitment,
            nullifier=record.nullifier,
            leaf_index=record.leaf_index,
            merkle_root=record.merkle_root,
            settlement_ref=record.settlement_ref,
            amount=record.amount if record.amount is not None else (intent.amount if intent else None),
            sender_key=intent.sender_key if intent else None,
            recipient_key=record.owner_key or (intent.recipient_key if intent else None),
            destination=record.recipient,
            asset_id=record.asset_id,
            intent_id=intent.intent_id if intent else None,
        )

    @staticmethod
    def _pending_entry(intent: PendingIntent) -> HistoryEntry:
        return HistoryEntry(
            entry_id=f"intent:{intent.intent_id}",
            kind=intent.kind,
            status=EntryStatus.PENDING,
            timestamp=intent.created_at,
            commitment=intent.commitment,
            nullifier=intent.nullifier,
            settlement_ref=intent.settlement_ref,
            amount=intent.amount,
            sender_key=intent.sender_key,
            recipient_key=intent.recipient_key,
            intent_id=intent.intent_id,
        )

    def history(
        self,
        owner: Optional[str] = None,
        kind: Optional[OperationKind] = None,
        cursor: Optional[str] = None,
        limit: int = 20,
    ) -> HistoryPage:
        """
        One page of history.

        Args:
            owner: Only entries where this key is sender or recipient
            kind: Only entries of this kind
            cursor: ``next_cursor`` of the previous page
            limit: Maximum entries in the page

        Returns:
            HistoryPage: Entries and the cursor of the last one, or None at the end

        Raises:
            ValidationError: If the limit is not positive or the cursor is unknown
        """
        if limit < 1:
            raise ValidationError("limit must be positive")

        entries = self.merge()
        if owner is not None:
            owner_key = FieldCodec.canonical_hex(owner)
            entries = [e for e in entries if owner_key in (e.sender_key, e.recipient_key)]
        if kind is not None:
            kind = OperationKind(kind)
            entries = [e for e in entries if e.kind == kind]

        start = 0
        if cursor is not None:
            start = self._resume_position(entries, cursor)

        page = entries[start:start + limit]
        has_more = start + limit < len(entries)
        next_cursor = page[-1].entry_id if page and has_more else None
        logger.debug("History page of %d entries for owner %s", len(page), short_hex(owner) if owner else "*")
        return HistoryPage(entries=page, next_cursor=next_cursor)

    def _resume_position(self, entries: List[HistoryEntry], cursor: str) -> int:
        for pos, entry in enumerate(entries):
            if entry.entry_id == cursor:
                return pos + 1

        # The intent has confirmed since; continue with older pending intents.
        if cursor.startswith("intent:"):
            intent_id = cursor.split(":", 1)[1]
            absorbed = next((i for i in self.store.intents() if i.intent_id == intent_id), None)
            if absorbed is not None:
                mark = (absorbed.created_at, cursor)
                for pos, entry in enumerate(entries):
                    if entry.status == EntryStatus.PENDING and (entry.timestamp, entry.entry_id) < mark:
                        return pos
                return len(entries)

        raise ValidationError(f"Unknown cursor {cursor!r}")
