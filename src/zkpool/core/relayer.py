"""Relayer: server side of the prepare/submit protocol.

prepare hands out proof material from the authoritative accumulator.
submit checks a proof's public signals against local state, settles it
through the ledger gateway and applies the resulting appends.

Request lifecycle:

    PREPARED -> PROVING -> SUBMITTED -> CONFIRMED
                                     -> FAILED

PROVING happens on the client. FAILED is terminal; the caller prepares
again because the root may have moved in the meantime.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple

from zkpool.core.events import (
    DepositCompleted,
    LogNotification,
    OnChainEventDecoder,
    PoolEvent,
    TransferCompleted,
    WithdrawCompleted,
)
from zkpool.core.merkle_tree import MerkleAccumulator
from zkpool.core.nullifier import NullifierRegistry
from zkpool.core.prover import ProofService, PublicSignals, layout_for, normalize_public_signals
from zkpool.core.reconciliation import ReconciliationLedger
from zkpool.exceptions import (
    DuplicateCommitmentError,
    InvalidTransitionError,
    NotFoundError,
    RootMismatchError,
    TransientTransportError,
    ValidationError,
)
from zkpool.utils.encoding import FieldCodec, short_hex
from zkpool.utils.hash import sha256

logger = logging.getLogger(__name__)


class SubmissionState(str, Enum):
    """Lifecycle state of one prepare/submit request."""
    PREPARED = "prepared"
    PROVING = "proving"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FAILED = "failed"


TRANSITIONS = {
    SubmissionState.PREPARED: {SubmissionState.PROVING, SubmissionState.FAILED},
    SubmissionState.PROVING: {SubmissionState.SUBMITTED, SubmissionState.FAILED},
    SubmissionState.SUBMITTED: {SubmissionState.CONFIRMED, SubmissionState.FAILED},
    SubmissionState.CONFIRMED: set(),
    SubmissionState.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Submission:
    """Tracked request."""

    submission_id: str
    kind: str
    state: SubmissionState = SubmissionState.PREPARED
    root: Optional[int] = None
    settlement_ref: Optional[str] = None
    result: Optional["SubmitResult"] = None
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)
    in_flight: bool = False

    def advance(self, new_state: SubmissionState) -> None:
        """
        Move to a new state.

        Raises:
            InvalidTransitionError: If the lifecycle does not allow it
        """
        if new_state not in TRANSITIONS[self.state]:
            raise InvalidTransitionError(
                f"Submission {self.submission_id} cannot go from {self.state.value} to {new_state.value}"
            )
        self.state = new_state
        self.updated_at = _utcnow()

    def to_dict(self) -> dict:
        return {
            "submission_id": self.submission_id,
            "kind": self.kind,
            "state": self.state.value,
            "root": FieldCodec.to_hex(self.root) if self.root is not None else None,
            "settlement_ref": self.settlement_ref,
            "result": self.result.to_dict() if self.result else None,
            "error": self.error,
        }


class SubmissionTracker:
    """Thread-safe registry of submissions by id."""

    def __init__(self):
        self._items: Dict[str, Submission] = {}
        self._lock = threading.Lock()

    def create(self, kind: str, root: Optional[int] = None, submission_id: Optional[str] = None) -> Submission:
        with self._lock:
            sid = submission_id or uuid.uuid4().hex
            if sid in self._items:
                raise ValidationError(f"Submission id {sid} already in use")
            item = Submission(submission_id=sid, kind=kind, root=root)
            self._items[sid] = item
            return item

    def get(self, submission_id: str) -> Submission:
        """
        Raises:
            NotFoundError: If the id is unknown
        """
        with self._lock:
            item = self._items.get(submission_id)
        if item is None:
            raise NotFoundError(f"Unknown submission {submission_id}")
        return item

    def find(self, submission_id: str) -> Optional[Submission]:
        with self._lock:
            return self._items.get(submission_id)

    def claim(self, kind: str, submission_id: Optional[str] = None) -> Tuple[Submission, Optional["SubmitResult"]]:
        """
        Take a submission for processing, creating it if the id is new.

        Only one caller holds a claim at a time; ``release`` gives it back.

        Returns:
            tuple: The submission, and its stored result if it already
            confirmed (nothing is claimed then)

        Raises:
            ValidationError: If the id was prepared for another kind
            InvalidTransitionError: If the submission already failed
            TransientTransportError: If another request is processing it
        """
        with self._lock:
            sid = submission_id or uuid.uuid4().hex
            item = self._items.get(sid)
            if item is None:
                item = self._items[sid] = Submission(submission_id=sid, kind=kind)
            elif item.kind != kind:
                raise ValidationError(f"Submission {sid} was prepared for {item.kind}")
            elif item.state == SubmissionState.CONFIRMED:
                return item, item.result
            elif item.state == SubmissionState.FAILED:
                raise InvalidTransitionError(f"Submission {sid} failed; prepare again")
            elif item.in_flight:
                raise TransientTransportError(f"Submission {sid} is already being processed")
            item.in_flight = True
            return item, None

    def release(self, item: Submission) -> None:
        with self._lock:
            item.in_flight = False


@dataclass(frozen=True)
class PrepareResult:
    """Proof material for one operation."""

    kind: str
    submission_id: str
    root: int
    next_leaf_index: int
    path_elements: List[int]
    leaf_index: Optional[int] = None
    leaf: Optional[int] = None
    out1_path_elements: Optional[List[int]] = None
    out2_path_elements: Optional[List[int]] = None

    @property
    def path_indices(self) -> List[int]:
        index = self.leaf_index if self.leaf_index is not None else self.next_leaf_index
        return [(index >> k) & 1 for k in range(len(self.path_elements))]

    def to_dict(self) -> dict:
        """Convert to the JSON shape served over HTTP."""
        data = {
            "kind": self.kind,
            "submission_id": self.submission_id,
            "root": FieldCodec.to_hex(self.root),
            "leaf": FieldCodec.to_hex(self.leaf) if self.leaf is not None else None,
            "leaf_index": self.leaf_index,
            "next_leaf_index": self.next_leaf_index,
            "path_elements": [FieldCodec.to_hex(p) for p in self.path_elements],
            "path_indices": self.path_indices,
            "extra": None,
        }
        if self.out1_path_elements is not None:
            data["extra"] = {
                "out1_path_elements": [FieldCodec.to_hex(p) for p in self.out1_path_elements],
                "out2_path_elements": [FieldCodec.to_hex(p) for p in self.out2_path_elements],
            }
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PrepareResult":
        """
        Parse the HTTP shape back into field elements.

        Raises:
            ValidationError: If a value is malformed
        """
        to_field = FieldCodec.to_field
        extra = data.get("extra") or {}
        try:
            return cls(
                kind=data["kind"],
                submission_id=data["submission_id"],
                root=to_field(data["root"]),
                next_leaf_index=int(data["next_leaf_index"]),
                path_elements=[to_field(p) for p in data["path_elements"]],
                leaf_index=data.get("leaf_index"),
                leaf=to_field(data["leaf"]) if data.get("leaf") is not None else None,
                out1_path_elements=[to_field(p) for p in extra["out1_path_elements"]] if extra else None,
                out2_path_elements=[to_field(p) for p in extra["out2_path_elements"]] if extra else None,
            )
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed prepare response: {e}") from e


@dataclass(frozen=True)
class SubmitResult:
    """Outcome of a settled submission."""

    submission_id: str
    kind: str
    settlement_ref: str
    roots: List[int]
    indices: List[int]

    def to_dict(self) -> dict:
        return {
            "submission_id": self.submission_id,
            "kind": self.kind,
            "settlement_ref": self.settlement_ref,
            "roots": [FieldCodec.to_hex(r) for r in self.roots],
            "indices": self.indices,
            "state": SubmissionState.CONFIRMED.value,
        }


class SettlementGateway(Protocol):
    """Submits a verified operation to the ledger and returns its reference."""

    def settle(self, kind: str, signals: PublicSignals, proof: Dict[str, Any], asset_id: int) -> str:
        ...


class LocalSettlementGateway:
    """
    In-process ledger stand-in.

    Each settlement yields a signature and the log notification the ledger
    program would emit, encoded with the real wire format. Notifications
    are kept in ``outbox`` and handed to ``on_notification`` if set.
    """

    def __init__(self, decoder: Optional[OnChainEventDecoder] = None, on_notification=None):
        self.decoder = decoder or OnChainEventDecoder()
        self.on_notification = on_notification
        self.outbox: List[LogNotification] = []
        self._counter = 0
        self._lock = threading.Lock()

    def settle(self, kind: str, signals: PublicSignals, proof: Dict[str, Any], asset_id: int) -> str:
        event = self.event_for(kind, signals, asset_id)
        payload = self.decoder.encode(event)
        with self._lock:
            self._counter += 1
            signature = sha256(payload + self._counter.to_bytes(8, "big")).hex()
            notification = LogNotification(
                signature=signature,
                logs=(
                    "Program invoke [1]",
                    self.decoder.to_log_line(payload),
                    "Program success",
                ),
                slot=self._counter,
            )
            self.outbox.append(notification)
        if self.on_notification is not None:
            self.on_notification(notification)
        return signature

    @staticmethod
    def event_for(kind: str, signals: PublicSignals, asset_id: int) -> PoolEvent:
        """Event the ledger program emits for a settled operation."""
        h = FieldCodec.to_hex
        s = signals.named()
        if kind == "deposit":
            return DepositCompleted(
                deposit_hash=h(s["deposit_hash"]),
                owner_key=h(s["owner_key"]),
                commitment=h(s["commitment"]),
                old_root=h(s["old_root"]),
                new_root=h(s["new_root"]),
                next_leaf_index=s["next_leaf_index"],
                asset_id=h(asset_id),
            )
        if kind == "transfer":
            return TransferCompleted(
                nullifier=h(s["nullifier"]),
                out1_commitment=h(s["out1"]),
                out2_commitment=h(s["out2"]),
                enc_note_tag1=h(s["enc_tag1"]),
                enc_note_tag2=h(s["enc_tag2"]),
                root_before=h(s["root"]),
                new_root1=h(s["new_root1"]),
                new_root2=h(s["new_root2"]),
                next_leaf_index=s["new_next_leaf_index"] - 2,
                asset_id=h(asset_id),
            )
        return WithdrawCompleted(
            nullifier=h(s["nullifier"]),
            root_used=h(s["root"]),
            amount=s["amount"],
            asset_id=h(asset_id),
            recipient=h(s["recipient"]),
        )


class RelayerService:
    """
    Authoritative prepare/submit handler.

    The accumulator lock is held from the root checks through settlement
    and the appends, so every submission sees and leaves a consistent tree.
    """

    def __init__(
        self,
        tree: MerkleAccumulator,
        nullifiers: NullifierRegistry,
        ledger: ReconciliationLedger,
        proofs: ProofService,
        gateway: SettlementGateway,
        tracker: Optional[SubmissionTracker] = None,
        leaf_store=None,
    ):
        self.tree = tree
        self.nullifiers = nullifiers
        self.ledger = ledger
        self.proofs = proofs
        self.gateway = gateway
        self.tracker = tracker or SubmissionTracker()
        self.leaf_store = leaf_store

    @classmethod
    def from_context(cls, context) -> "RelayerService":
        """Build a service over a PoolContext's shared components."""
        return cls(
            tree=context.tree,
            nullifiers=context.nullifiers,
            ledger=context.ledger,
            proofs=context.proofs,
            gateway=context.gateway,
            leaf_store=context.leaf_store,
        )

    # Prepare

    def prepare_deposit(self, commitment: Optional[Any] = None) -> PrepareResult:
        """
        Proof material for appending at the next free index.

        Args:
            commitment: Commitment about to be deposited, if already known

        Raises:
            DuplicateCommitmentError: If that commitment is already a leaf
        """
        with self.tree.lock:
            if commitment is not None and self.tree.index_of(FieldCodec.to_field(commitment)) is not None:
                raise DuplicateCommitmentError("Commitment is already in the tree")
            n = self.tree.size
            result = PrepareResult(
                kind="deposit",
                submission_id="",
                root=self.tree.root,
                next_leaf_index=n,
                path_elements=self.tree.insertion_path(n),
            )
            return self._track(result)

    def prepare_transfer(self, in_commitment: Any) -> PrepareResult:
        """
        Material to spend one note and append two outputs.

        Raises:
            NotFoundError: If the input commitment is not in the tree
        """
        commitment = FieldCodec.to_field(in_commitment)
        with self.tree.lock:
            proof = self.tree.proof_for(commitment)
            n = self.tree.size
            result = PrepareResult(
                kind="transfer",
                submission_id="",
                root=proof.root,
                leaf=proof.leaf,
                leaf_index=proof.index,
                next_leaf_index=n,
                path_elements=list(proof.siblings),
                out1_path_elements=self.tree.insertion_path(n),
                out2_path_elements=self.tree.insertion_path(n + 1),
            )
            return self._track(result)

    def prepare_withdraw(self, spend_commitment: Any) -> PrepareResult:
        """
        Material to spend one note to a transparent account.

        Raises:
            NotFoundError: If the commitment is not in the tree
        """
        commitment = FieldCodec.to_field(spend_commitment)
        with self.tree.lock:
            proof = self.tree.proof_for(commitment)
            result = PrepareResult(
                kind="withdraw",
                submission_id="",
                root=proof.root,
                leaf=proof.leaf,
                leaf_index=proof.index,
                next_leaf_index=self.tree.size,
                path_elements=list(proof.siblings),
            )
            return self._track(result)

    def prepare(self, kind: str, selector: Optional[Any] = None) -> PrepareResult:
        """
        Dispatch on kind.

        Raises:
            ValidationError: If the kind is unknown or a selector is missing
        """
        if kind == "deposit":
            return self.prepare_deposit(selector)
        if selector is None:
            raise ValidationError(f"{kind} prepare needs the commitment being spent")
        if kind == "transfer":
            return self.prepare_transfer(selector)
        if kind == "withdraw":
            return self.prepare_withdraw(selector)
        raise ValidationError(f"Unknown operation kind: {kind}")

    def _track(self, result: PrepareResult) -> PrepareResult:
        item = self.tracker.create(result.kind, root=result.root)
        return replace(result, submission_id=item.submission_id)

    # Submit

    def status(self, submission_id: str) -> Submission:
        return self.tracker.get(submission_id)

    def submit(
        self,
        kind: str,
        proof: Dict[str, Any],
        public_signals: Any,
        canonical_fields: Optional[Mapping[str, Any]] = None,
        submission_id: Optional[str] = None,
        asset_id: Any = 0,
    ) -> SubmitResult:
        """
        Verify, settle and apply one operation.

        Args:
            kind: ``deposit``, ``transfer`` or ``withdraw``
            proof: Opaque proof object from the backend
            public_signals: Signals in verifier order (or a keyed mapping)
            canonical_fields: Named values that must equal their signals
            submission_id: Id from prepare; replays of a confirmed id return
                the original result
            asset_id: Asset the ledger records for the operation

        Returns:
            SubmitResult: Settlement reference plus resulting roots and indices

        Raises:
            ValidationError: If signals are malformed, disagree with
                canonical_fields, or the proof does not verify
            RootMismatchError: If the signals' roots do not match the tree
            DoubleSpendError: If the nullifier is already spent
            InvalidTransitionError: If the submission already failed
            DuplicateCommitmentError: If an appended commitment is already a leaf
            TransientTransportError: If the same id is still being processed
        """
        layout_for(kind)
        item, stored = self.tracker.claim(kind, submission_id)
        if stored is not None:
            logger.info("Replayed submission %s, returning stored result", item.submission_id)
            return stored

        try:
            return self._submit_claimed(item, kind, proof, public_signals, canonical_fields, asset_id)
        finally:
            self.tracker.release(item)

    def _submit_claimed(self, item, kind, proof, public_signals, canonical_fields, asset_id) -> SubmitResult:
        if item.state == SubmissionState.PREPARED:
            item.advance(SubmissionState.PROVING)

        try:
            signals = normalize_public_signals(public_signals, kind)
            self._check_canonical(signals, canonical_fields or {})
            nullifier = signals["nullifier"] if kind != "deposit" else None
            if nullifier is not None:
                self.nullifiers.ensure_unspent(nullifier)
            if not self.proofs.verify(kind, signals, proof):
                raise ValidationError(f"{kind} proof failed verification")

            with self.tree.lock:
                # A concurrent spend may have settled while this proof verified.
                if nullifier is not None:
                    self.nullifiers.ensure_unspent(nullifier)
                roots, indices = self._check_roots(kind, signals)
                item.advance(SubmissionState.SUBMITTED)
                settlement_ref = self.gateway.settle(kind, signals, proof, FieldCodec.to_field(asset_id))
                item.settlement_ref = settlement_ref
                self._apply(kind, signals, settlement_ref)
        except Exception as e:
            if item.state != SubmissionState.FAILED:
                item.error = str(e)
                item.advance(SubmissionState.FAILED)
            logger.warning("Submission %s (%s) failed: %s", item.submission_id, kind, e)
            raise

        result = SubmitResult(
            submission_id=item.submission_id,
            kind=kind,
            settlement_ref=settlement_ref,
            roots=roots,
            indices=indices,
        )
        item.result = result
        item.advance(SubmissionState.CONFIRMED)
        logger.info("Settled %s %s as %s", kind, item.submission_id, short_hex(settlement_ref))
        return result

    @staticmethod
    def _check_canonical(signals: PublicSignals, canonical: Mapping[str, Any]) -> None:
        named = signals.named()
        for name, value in canonical.items():
            if name not in named:
                raise ValidationError(f"{signals.kind} has no public signal named {name!r}")
            if FieldCodec.to_field(value) != named[name]:
                raise ValidationError(f"Field {name!r} does not match its public signal")

    def _check_roots(self, kind: str, signals: PublicSignals):
        n = self.tree.size
        if kind == "deposit":
            self.tree.ensure_new(signals["commitment"])
            if signals["old_root"] != self.tree.root:
                raise RootMismatchError("Deposit was proven against a stale root")
            if signals["next_leaf_index"] != n:
                raise RootMismatchError(f"Deposit targets index {signals['next_leaf_index']}, next free is {n}")
            expected = self.tree.preview_roots([signals["commitment"]])
            if signals["new_root"] != expected[0]:
                raise RootMismatchError("Deposit new root does not match the accumulator")
            return expected, [n]

        if not self.tree.known_root(signals["root"]):
            raise RootMismatchError(f"Unknown root {short_hex(FieldCodec.to_hex(signals['root']))}")

        if kind == "transfer":
            self.tree.ensure_new(signals["out1"], signals["out2"])
            if signals["new_next_leaf_index"] != n + 2:
                raise RootMismatchError(
                    f"Transfer expects next index {signals['new_next_leaf_index']}, tree would reach {n + 2}"
                )
            expected = self.tree.preview_roots([signals["out1"], signals["out2"]])
            if [signals["new_root1"], signals["new_root2"]] != expected:
                raise RootMismatchError("Transfer new roots do not match the accumulator")
            return expected, [n, n + 1]

        return [signals["root"]], []

    def _apply(self, kind: str, signals: PublicSignals, settlement_ref: str) -> None:
        if kind == "deposit":
            appended = self.tree.append(signals["commitment"])
            self._persist_leaf(appended.index, signals["commitment"])
            self.ledger.mark_submitted(settlement_ref, commitment=FieldCodec.to_hex(signals["commitment"]))
            return

        nullifier_hex = FieldCodec.to_hex(signals["nullifier"])
        if kind == "transfer":
            pair = self.tree.append_pair(signals["out1"], signals["out2"])
            self._persist_leaf(pair.index1, signals["out1"])
            self._persist_leaf(pair.index2, signals["out2"])
        self.nullifiers.mark_spent(nullifier_hex, settlement_ref, kind=kind)
        self.ledger.mark_submitted(settlement_ref, nullifier=nullifier_hex)

    def _persist_leaf(self, index: int, commitment: int) -> None:
        if self.leaf_store is not None:
            self.leaf_store.append(index, commitment)
