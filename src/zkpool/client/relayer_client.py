"""HTTP client for the relayer, plus local witness assembly.

The client never trusts prepare material blindly: every returned path is
folded locally and must reach the returned root. Read-only calls are
retried on timeouts; submit is retried only after a status query shows
the previous attempt did not land.
"""

import logging
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

import httpx

from zkpool.config.settings import PoolSettings, get_settings
from zkpool.core.commitment import Note, NoteCommitmentScheme
from zkpool.core.merkle_tree import ZERO_VALUE, fold_path, path_nodes, synthesize_out2_siblings
from zkpool.core.note_encryption import NoteKeyPair, encrypt_note
from zkpool.core.relayer import PrepareResult, SubmissionState, SubmissionTracker
from zkpool.exceptions import (
    DecodeError,
    DecryptionError,
    DoubleSpendError,
    DuplicateMessageError,
    IntegrityError,
    NotFoundError,
    RootMismatchError,
    StorageError,
    TransientTransportError,
    ValidationError,
    ZKPoolException,
)
from zkpool.utils.encoding import FieldCodec, FieldLike
from zkpool.utils.hash import FieldHasher
from zkpool.utils.retry import backoff_delay, with_retry

logger = logging.getLogger(__name__)

ERROR_CODES = {
    "VALIDATION_ERROR": ValidationError,
    "DECODE_ERROR": DecodeError,
    "DECRYPTION_ERROR": DecryptionError,
    "DUPLICATE_MESSAGE": DuplicateMessageError,
    "NOT_FOUND": NotFoundError,
    "DOUBLE_SPEND": DoubleSpendError,
    "ROOT_MISMATCH": RootMismatchError,
    "TRANSIENT": TransientTransportError,
    "INTEGRITY_ERROR": IntegrityError,
    "STORAGE_ERROR": StorageError,
}


def synthesize_out2_path(hasher: FieldHasher, material: PrepareResult, out1: int) -> List[int]:
    """
    Siblings of out2 after a transfer's two appends, from prepare material.

    Args:
        hasher: Field hasher
        material: Transfer prepare result carrying both pre-insertion paths
        out1: First output commitment

    Returns:
        List[int]: out2's sibling set against the post-insertion root

    Raises:
        ValidationError: If the material has no output paths
    """
    if material.out1_path_elements is None or material.out2_path_elements is None:
        raise ValidationError("Prepare material has no output paths")
    n = material.next_leaf_index
    out1_nodes = path_nodes(hasher, out1, n, material.out1_path_elements)
    return synthesize_out2_siblings(n, out1_nodes, material.out2_path_elements)


class RelayerClient:
    """
    Client side of the prepare/submit protocol.

    Example:
        Depositing a note::

            client = RelayerClient("http://127.0.0.1:8000")
            material = client.prepare("deposit")
            witness = client.deposit_witness(material, note, nonce=1)
            proof = proofs.prove("deposit", witness)
            client.submit("deposit", proof.proof, list(proof.public_signals),
                          submission_id=material.submission_id)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        hasher: Optional[FieldHasher] = None,
        http: Optional[httpx.Client] = None,
        settings: Optional[PoolSettings] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        settings = settings or get_settings()
        self.hasher = hasher or FieldHasher()
        self.scheme = NoteCommitmentScheme(self.hasher)
        if http is None:
            headers = {}
            if settings.relayer_token:
                headers["Authorization"] = f"Bearer {settings.relayer_token}"
            http = httpx.Client(
                base_url=base_url or settings.relayer_url,
                timeout=settings.http_timeout_seconds,
                headers=headers,
            )
        self.http = http
        self.attempts = settings.prepare_retries
        self.retry_base = settings.retry_base_seconds
        self.tracker = SubmissionTracker()
        self._sleep = sleep

    def close(self) -> None:
        self.http.close()

    def __enter__(self) -> "RelayerClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # Transport

    def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = self.http.request(method, path, **kwargs)
        except httpx.TimeoutException as e:
            raise TransientTransportError(f"{method} {path} timed out") from e
        except httpx.TransportError as e:
            raise TransientTransportError(f"{method} {path} failed: {e}") from e

        if response.status_code >= 400:
            self._raise_for(response)
        return response.json()

    @staticmethod
    def _raise_for(response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or body.get("detail") or response.text
        exc_type = ERROR_CODES.get(body.get("code"))
        if exc_type is None:
            exc_type = TransientTransportError if response.status_code in (502, 503, 504) else ZKPoolException
        raise exc_type(f"{response.status_code}: {message}")

    def _get(self, path: str, **kwargs) -> Any:
        return with_retry(
            lambda: self._request("GET", path, **kwargs),
            attempts=self.attempts,
            base=self.retry_base,
            sleep=self._sleep,
        )

    # Prepare

    def prepare(self, kind: str, selector: Optional[FieldLike] = None, leaf: Optional[FieldLike] = None) -> PrepareResult:
        """
        Fetch proof material and check it against the returned root.

        Args:
            kind: ``deposit``, ``transfer`` or ``withdraw``
            selector: Commitment being spent (transfer, withdraw) or
                deposited (deposit, optional)
            leaf: Leaf expected at the proven position; defaults to the
                selector, or the zero leaf for a deposit

        Returns:
            PrepareResult: Verified material

        Raises:
            RootMismatchError: If a path does not fold to the returned root
            TransientTransportError: If every attempt timed out
        """
        body = {"commitment": FieldCodec.to_hex(FieldCodec.to_field(selector))} if selector is not None else {}
        data = with_retry(
            lambda: self._request("POST", f"/api/v1/prepare/{kind}", json=body),
            attempts=self.attempts,
            base=self.retry_base,
            sleep=self._sleep,
        )
        material = PrepareResult.from_dict(data)
        if leaf is None and kind != "deposit":
            leaf = selector
        self.verify_material(material, leaf)
        self.tracker.create(kind, root=material.root, submission_id=material.submission_id)
        return material

    def verify_material(self, material: PrepareResult, leaf: Optional[FieldLike] = None) -> None:
        """
        Re-fold every path in the material.

        Raises:
            RootMismatchError: If a folded root differs from ``material.root``
        """
        expected_leaf = FieldCodec.to_field(leaf) if leaf is not None else ZERO_VALUE
        if material.leaf is not None and material.leaf != expected_leaf:
            raise RootMismatchError("Relayer returned a path for a different leaf")

        index = material.leaf_index if material.leaf_index is not None else material.next_leaf_index
        if fold_path(self.hasher, expected_leaf, index, material.path_elements) != material.root:
            raise RootMismatchError(f"Path for leaf {index} does not fold to the returned root")

        if material.out1_path_elements is not None:
            n = material.next_leaf_index
            for offset, path in ((0, material.out1_path_elements), (1, material.out2_path_elements)):
                if fold_path(self.hasher, ZERO_VALUE, n + offset, path) != material.root:
                    raise RootMismatchError(f"Insertion path for leaf {n + offset} does not fold to the returned root")

    def begin_proving(self, submission_id: str) -> None:
        """Record locally that proving has started for prepared material."""
        self.tracker.get(submission_id).advance(SubmissionState.PROVING)

    # Submit

    def submit(
        self,
        kind: str,
        proof: Dict[str, Any],
        public_signals: Any,
        canonical_fields: Optional[Mapping[str, Any]] = None,
        submission_id: Optional[str] = None,
        asset_id: FieldLike = 0,
    ) -> Dict[str, Any]:
        """
        Submit a proven operation.

        A timed-out attempt is followed by a status query; the request is
        sent again only if the previous attempt did not land.

        Returns:
            dict: Settlement reference, roots and indices

        Raises:
            TransientTransportError: If no attempt could be confirmed
            ZKPoolException: The relayer's rejection, mapped to its type
        """
        submission_id = submission_id or uuid.uuid4().hex
        local = self.tracker.find(submission_id) or self.tracker.create(kind, submission_id=submission_id)
        if local.state == SubmissionState.PREPARED:
            local.advance(SubmissionState.PROVING)
        local.advance(SubmissionState.SUBMITTED)

        payload = {
            "proof": proof,
            "public_signals": self._jsonable_signals(public_signals),
            "canonical_fields": {k: FieldCodec.to_decimal(v) for k, v in (canonical_fields or {}).items()},
            "submission_id": submission_id,
            "asset_id": FieldCodec.to_decimal(asset_id),
        }

        last_error: Optional[TransientTransportError] = None
        for attempt in range(self.attempts):
            try:
                result = self._request("POST", f"/api/v1/submit/{kind}", json=payload)
                break
            except TransientTransportError as e:
                last_error = e
                landed = self._landed(submission_id)
                if landed is not None:
                    logger.info("Submission %s landed despite %s", submission_id, e)
                    result = landed
                    break
                if attempt < self.attempts - 1:
                    delay = backoff_delay(attempt, self.retry_base)
                    logger.warning("Submit %s did not land, resending in %.2fs", submission_id, delay)
                    self._sleep(delay)
            except ZKPoolException as e:
                local.error = str(e)
                local.advance(SubmissionState.FAILED)
                raise
        else:
            local.error = str(last_error)
            local.advance(SubmissionState.FAILED)
            raise last_error

        local.settlement_ref = result["settlement_ref"]
        local.advance(SubmissionState.CONFIRMED)
        return result

    def _landed(self, submission_id: str) -> Optional[Dict[str, Any]]:
        try:
            status = self.status(submission_id)
        except (NotFoundError, TransientTransportError):
            return None
        if status["state"] == SubmissionState.CONFIRMED.value:
            return status["result"]
        return None

    @staticmethod
    def _jsonable_signals(public_signals: Any) -> Any:
        if isinstance(public_signals, Mapping):
            return {str(k): FieldCodec.to_decimal(v) for k, v in public_signals.items()}
        return [FieldCodec.to_decimal(v) for v in public_signals]

    # Queries

    def status(self, submission_id: str) -> Dict[str, Any]:
        return self._get(f"/api/v1/submissions/{submission_id}")

    def merkle_root(self) -> int:
        return FieldCodec.from_hex(self._get("/merkle/root")["root"])

    def merkle_proof(self, index: Optional[int] = None, commitment: Optional[FieldLike] = None) -> Dict[str, Any]:
        params = {}
        if index is not None:
            params["index"] = index
        if commitment is not None:
            params["commitment"] = FieldCodec.to_hex(FieldCodec.to_field(commitment))
        return self._get("/merkle-proof", params=params)

    def is_spent(self, nullifier: FieldLike) -> bool:
        key = FieldCodec.canonical_hex(nullifier)
        return self._get(f"/api/v1/nullifiers/check/{key}")["spent"]

    def history(
        self,
        owner: Optional[FieldLike] = None,
        kind: Optional[str] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if owner is not None:
            params["owner"] = FieldCodec.canonical_hex(owner)
        if kind is not None:
            params["kind"] = kind
        if cursor is not None:
            params["cursor"] = cursor
        if limit is not None:
            params["limit"] = limit
        return self._get("/transactions", params=params)

    def record_intent(self, kind: str, **fields) -> Dict[str, Any]:
        """Record a pending intent; key fields are canonicalized first."""
        body: Dict[str, Any] = {"kind": kind}
        for name, value in fields.items():
            if value is None:
                continue
            if name in ("recipient_key", "sender_key", "commitment", "nullifier"):
                value = FieldCodec.canonical_hex(value)
            body[name] = value
        return self._request("POST", "/api/v1/intents", json=body)

    # Note delivery

    def send_note(
        self,
        note: Note,
        recipient_public: str,
        kind: str = "note-transfer",
        sender_public: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Seal a note to its recipient and post it to the message box.

        The message carries the note's commitment and the encrypted-note tag
        a Transfer event will show for it, so the recipient can find it from
        either side.
        """
        commitment = self.scheme.commitment_of(note)
        body: Dict[str, Any] = {
            "recipient_key": recipient_public,
            "ciphertext_b64": encrypt_note(note, recipient_public).to_b64(),
            "kind": kind,
            "commitment": FieldCodec.to_hex(commitment),
            "enc_tag": FieldCodec.to_hex(self.scheme.enc_note_tag_of(commitment, note.owner_key)),
        }
        if sender_public is not None:
            body["sender_key"] = sender_public
        return self._request("POST", "/api/v1/messages", json=body)

    def fetch_notes(self, keys: NoteKeyPair, cursor: Optional[int] = None, limit: int = 50) -> Tuple[List[Note], Optional[int]]:
        """
        Fetch and open one inbox page.

        Envelopes that do not open with ``keys`` are logged and skipped;
        anyone can post to any recipient key.

        Returns:
            Opened notes and the cursor of the next page
        """
        params: Dict[str, Any] = {"recipient_key": keys.public_key_hex, "limit": limit}
        if cursor is not None:
            params["cursor"] = cursor
        page = self._get("/api/v1/messages/inbox", params=params)

        notes = []
        for message in page["messages"]:
            try:
                notes.append(keys.open(message["ciphertext_b64"]))
            except DecryptionError as e:
                logger.warning("Skipping message %s: %s", message["id"], e)
        return notes, page["next_cursor"]

    # Witnesses

    def deposit_witness(self, material: PrepareResult, note: Note, nonce: FieldLike) -> Dict[str, Any]:
        """Witness inputs for depositing a note at the prepared index."""
        commitment = self.scheme.commitment_of(note)
        n = material.next_leaf_index
        return {
            "commitment": commitment,
            "owner_key": note.owner_key,
            "new_root": fold_path(self.hasher, commitment, n, material.path_elements),
            "old_root": material.root,
            "next_leaf_index": n,
            "deposit_hash": self.scheme.deposit_hash_of(note.owner_key, note.amount, nonce),
            "amount": note.amount,
            "token_id": note.token_id,
            "r": note.randomness.r,
            "path_elements": list(material.path_elements),
            "path_indices": material.path_indices,
        }

    def transfer_roots(self, material: PrepareResult, out1: int, out2: int) -> Tuple[int, int]:
        """Roots after appending out1 and then out2 at the prepared indices."""
        n = material.next_leaf_index
        root1 = fold_path(self.hasher, out1, n, material.out1_path_elements)
        root2 = fold_path(self.hasher, out2, n + 1, synthesize_out2_path(self.hasher, material, out1))
        return root1, root2

    def transfer_witness(self, material: PrepareResult, in_note: Note, out1_note: Note, out2_note: Note) -> Dict[str, Any]:
        """
        Witness inputs for spending ``in_note`` into two outputs.

        Raises:
            ValidationError: If the outputs do not conserve the input amount
        """
        if out1_note.amount + out2_note.amount != in_note.amount:
            raise ValidationError("Transfer outputs must add up to the input amount")
        out1 = self.scheme.commitment_of(out1_note)
        out2 = self.scheme.commitment_of(out2_note)
        root1, root2 = self.transfer_roots(material, out1, out2)
        return {
            "out1": out1,
            "out2": out2,
            "nullifier": self.scheme.nullifier_of_note(in_note),
            "root": material.root,
            "new_root1": root1,
            "new_root2": root2,
            "new_next_leaf_index": material.next_leaf_index + 2,
            "enc_tag1": self.scheme.enc_note_tag_of(out1, out1_note.owner_key),
            "enc_tag2": self.scheme.enc_note_tag_of(out2, out2_note.owner_key),
            "in_amount": in_note.amount,
            "in_r": in_note.randomness.r,
            "path_elements": list(material.path_elements),
            "path_indices": material.path_indices,
        }

    def withdraw_witness(self, material: PrepareResult, note: Note, recipient: FieldLike) -> Dict[str, Any]:
        """Witness inputs for withdrawing a note to a transparent recipient."""
        return {
            "nullifier": self.scheme.nullifier_of_note(note),
            "root": material.root,
            "amount": note.amount,
            "token_id": note.token_id,
            "recipient": FieldCodec.to_field(recipient),
            "owner_key": note.owner_key,
            "r": note.randomness.r,
            "path_elements": list(material.path_elements),
            "path_indices": material.path_indices,
        }
