"""
End-to-end tests: client, HTTP relayer, settlement, listener and storage.

Workflow:
1. Alice deposits a note
2. Alice transfers part of it to Bob, keeping change
3. Bob withdraws his output to a transparent account
4. History reconciles every step
"""

from dataclasses import replace

import httpx
import pytest
from fastapi.testclient import TestClient

from zkpool.api.routes import create_app
from zkpool.client.relayer_client import RelayerClient, synthesize_out2_path
from zkpool.core.context import PoolContext
from zkpool.core.note_encryption import NoteKeyPair
from zkpool.core.relayer import SubmissionState
from zkpool.exceptions import (
    DoubleSpendError,
    NotFoundError,
    RootMismatchError,
    TransientTransportError,
    ValidationError,
)
from zkpool.storage.database import DatabaseManager
from zkpool.utils.encoding import FieldCodec

ALICE = 0xA11CE
BOB = 0xB0B
TOKEN = 0


class FlakyHttp:
    """Wraps a TestClient and drops planned requests with a timeout."""

    def __init__(self, inner):
        self.inner = inner
        self.plan = []

    def fail(self, method, prefix, after_send=False, times=1):
        self.plan.extend([(method, prefix, after_send)] * times)

    def request(self, method, url, **kwargs):
        for i, (planned_method, prefix, after_send) in enumerate(self.plan):
            if planned_method == method and url.startswith(prefix):
                del self.plan[i]
                if after_send:
                    self.inner.request(method, url, **kwargs)
                raise httpx.ReadTimeout("simulated timeout")
        return self.inner.request(method, url, **kwargs)

    def close(self):
        self.inner.close()


def make_client(pool, settings):
    http = FlakyHttp(TestClient(create_app(pool)))
    return RelayerClient(http=http, hasher=pool.hasher, settings=settings, sleep=lambda _: None), http


@pytest.fixture
def client_and_http(pool, settings):
    return make_client(pool, settings)


@pytest.fixture
def client(client_and_http):
    return client_and_http[0]


def deposit(client, pool, note, nonce=1):
    material = client.prepare("deposit")
    client.begin_proving(material.submission_id)
    witness = client.deposit_witness(material, note, nonce)
    proven = pool.proofs.prove("deposit", witness)
    result = client.submit(
        "deposit",
        proven.proof,
        proven.public_signals,
        canonical_fields={"amount": note.amount},
        submission_id=material.submission_id,
    )
    return witness["commitment"], result


def transfer(client, pool, in_note, in_commitment, out1_note, out2_note):
    material = client.prepare("transfer", in_commitment)
    witness = client.transfer_witness(material, in_note, out1_note, out2_note)
    proven = pool.proofs.prove("transfer", witness)
    result = client.submit("transfer", proven.proof, proven.public_signals, submission_id=material.submission_id)
    return material, witness, result


def withdraw(client, pool, note, commitment, recipient=0xDE57):
    material = client.prepare("withdraw", commitment)
    witness = client.withdraw_witness(material, note, recipient)
    proven = pool.proofs.prove("withdraw", witness)
    result = client.submit(
        "withdraw",
        proven.proof,
        proven.public_signals,
        canonical_fields={"amount": note.amount},
        submission_id=material.submission_id,
    )
    return witness, result


class TestCompleteWorkflow:
    """Deposit, transfer and withdraw through the HTTP relayer."""

    def test_full_lifecycle(self, client, pool):
        """Every step settles and history reconciles all of them."""
        scheme = client.scheme
        note = scheme.build_note(100, TOKEN, ALICE)
        client.record_intent("deposit", recipient_key=ALICE, amount=100, commitment=scheme.commitment_of(note))
        c0, result = deposit(client, pool, note)
        assert result["indices"] == [0]
        assert client.merkle_root() == pool.tree.root

        # Transfer 30 to Bob, 70 back to Alice
        to_bob = scheme.build_note(30, TOKEN, BOB)
        change = scheme.build_note(70, TOKEN, ALICE)
        spend = scheme.nullifier_of_note(note)
        client.record_intent("transfer", sender_key=ALICE, recipient_key=BOB, amount=30, nullifier=spend)
        client.record_intent("transfer", sender_key=ALICE, recipient_key=ALICE, amount=70, nullifier=spend)
        material, witness, result = transfer(client, pool, note, c0, to_bob, change)

        assert result["indices"] == [1, 2]
        assert [FieldCodec.from_hex(r) for r in result["roots"]] == [witness["new_root1"], witness["new_root2"]]
        assert client.merkle_root() == witness["new_root2"]
        assert client.is_spent(spend)

        served = client.merkle_proof(index=2)["path_elements"]
        synthesized = synthesize_out2_path(client.hasher, material, witness["out1"])
        assert served == [FieldCodec.to_hex(s) for s in synthesized]

        # Bob withdraws his output
        bob_commitment = witness["out1"]
        client.record_intent("withdraw", sender_key=BOB, amount=30, nullifier=scheme.nullifier_of_note(to_bob))
        withdrawn, result = withdraw(client, pool, to_bob, bob_commitment)
        assert result["indices"] == []
        assert client.is_spent(withdrawn["nullifier"])
        assert pool.tree.size == 3

        history = client.history()
        entries = history["entries"]
        assert len(entries) == 4
        assert all(e["status"] == "confirmed" for e in entries)
        assert all(e["attributed"] for e in entries)

        bob_entries = client.history(owner=BOB)["entries"]
        assert sorted(e["kind"] for e in bob_entries) == ["transfer", "withdraw"]
        alice_entries = client.history(owner=ALICE)["entries"]
        assert sorted(e["amount"] for e in alice_entries) == [30, 70, 100]

    def test_double_spend_rejected(self, client, pool):
        """A spent note cannot be withdrawn again."""
        note = client.scheme.build_note(50, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        withdraw(client, pool, note, c0)

        material = client.prepare("withdraw", c0)
        witness = client.withdraw_witness(material, note, 0xDE57)
        proven = pool.proofs.prove("withdraw", witness)
        with pytest.raises(DoubleSpendError):
            client.submit("withdraw", proven.proof, proven.public_signals, submission_id=material.submission_id)
        assert client.tracker.get(material.submission_id).state == SubmissionState.FAILED

    def test_unbalanced_transfer(self, client, pool):
        """Outputs must add up to the input."""
        note = client.scheme.build_note(10, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        material = client.prepare("transfer", c0)
        with pytest.raises(ValidationError):
            client.transfer_witness(
                material,
                note,
                client.scheme.build_note(6, TOKEN, BOB),
                client.scheme.build_note(5, TOKEN, ALICE),
            )

    def test_output_note_delivered(self, client, pool):
        """Bob learns his transfer output from the message box and can spend it."""
        bob_keys = NoteKeyPair.from_seed(b"bob signs the key message".ljust(64, b"\x00"))
        events = []
        pool.listener.subscribe(lambda event, ref: events.append(event))

        note = client.scheme.build_note(20, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        to_bob = client.scheme.build_note(8, TOKEN, BOB)
        change = client.scheme.build_note(12, TOKEN, ALICE)
        _, witness, _ = transfer(client, pool, note, c0, to_bob, change)
        sent = client.send_note(to_bob, bob_keys.public_key_hex)

        notes, cursor = client.fetch_notes(bob_keys)
        assert notes == [to_bob]
        assert cursor is None

        # The tag on the settled Transfer event points at the message.
        tag = events[-1].enc_note_tag1
        assert FieldCodec.from_hex(tag) == witness["enc_tag1"]
        (message,) = pool.messages.by_tag(tag)
        assert message.message_id == sent["id"]

        withdrawn, _ = withdraw(client, pool, notes[0], witness["out1"])
        assert client.is_spent(withdrawn["nullifier"])

    def test_foreign_envelopes_skipped(self, client):
        """Envelopes sealed to another key are not returned as notes."""
        bob_keys = NoteKeyPair.generate()
        note = client.scheme.build_note(5, TOKEN, BOB)
        client.send_note(note, NoteKeyPair.generate().public_key_hex)
        body = {"recipient_key": bob_keys.public_key_hex, "ciphertext_b64": "AQ=="}
        client._request("POST", "/api/v1/messages", json=body)
        notes, _ = client.fetch_notes(bob_keys)
        assert notes == []

    def test_errors_mapped(self, client):
        """Relayer rejections arrive as pool exceptions."""
        with pytest.raises(NotFoundError):
            client.prepare("withdraw", 12345)
        with pytest.raises(NotFoundError):
            client.status("nope")


class TestMaterialVerification:
    """The client folds every path it is given."""

    def test_tampered_path(self, client, pool):
        """A wrong sibling is detected before proving."""
        note = client.scheme.build_note(10, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        material = client.prepare("withdraw", c0)
        bad = list(material.path_elements)
        bad[3] += 1
        with pytest.raises(RootMismatchError):
            client.verify_material(replace(material, path_elements=bad), c0)

    def test_wrong_leaf(self, client, pool):
        """Material for a different leaf is rejected."""
        note = client.scheme.build_note(10, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        material = client.prepare("withdraw", c0)
        with pytest.raises(RootMismatchError):
            client.verify_material(material, c0 + 1)

    def test_tampered_output_path(self, client, pool):
        """Output insertion paths are checked too."""
        note = client.scheme.build_note(10, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        material = client.prepare("transfer", c0)
        bad = list(material.out2_path_elements)
        bad[0] = 7
        with pytest.raises(RootMismatchError):
            client.verify_material(replace(material, out2_path_elements=bad), c0)


class TestTransportFailures:
    """Timeouts are retried without settling anything twice."""

    def test_prepare_retried(self, client_and_http, pool):
        """A timed-out prepare is simply asked again."""
        client, http = client_and_http
        http.fail("POST", "/api/v1/prepare/")
        material = client.prepare("deposit")
        assert material.next_leaf_index == 0

    def test_submit_landed_despite_timeout(self, client_and_http, pool):
        """A lost response is recovered from the status endpoint."""
        client, http = client_and_http
        note = client.scheme.build_note(10, TOKEN, ALICE)
        http.fail("POST", "/api/v1/submit/", after_send=True)
        _, result = deposit(client, pool, note)
        assert result["state"] == "confirmed"
        assert pool.tree.size == 1
        assert len(pool.gateway.outbox) == 1

    def test_submit_resent_when_not_landed(self, client_and_http, pool):
        """A request that never arrived is sent again."""
        client, http = client_and_http
        note = client.scheme.build_note(10, TOKEN, ALICE)
        http.fail("POST", "/api/v1/submit/")
        _, result = deposit(client, pool, note)
        assert result["indices"] == [0]
        assert pool.tree.size == 1

    def test_submit_gives_up(self, client_and_http, pool):
        """When every attempt times out the submission fails locally."""
        client, http = client_and_http
        note = client.scheme.build_note(10, TOKEN, ALICE)
        material = client.prepare("deposit")
        proven = pool.proofs.prove("deposit", client.deposit_witness(material, note, 1))
        http.fail("POST", "/api/v1/submit/", times=client.attempts)
        with pytest.raises(TransientTransportError):
            client.submit("deposit", proven.proof, proven.public_signals, submission_id=material.submission_id)
        assert client.tracker.get(material.submission_id).state == SubmissionState.FAILED
        assert pool.tree.size == 0


class TestPersistence:
    """State survives a restart on the row store."""

    def test_rebuild_from_database(self, settings):
        """A new context over the same database sees the same pool."""
        db = DatabaseManager(settings.database_url)
        pool = PoolContext.build(settings, db=db, depth=8, bootstrap_artifacts=True)
        client, _ = make_client(pool, settings)

        note = client.scheme.build_note(100, TOKEN, ALICE)
        c0, _ = deposit(client, pool, note)
        transfer(
            client,
            pool,
            note,
            c0,
            client.scheme.build_note(40, TOKEN, BOB),
            client.scheme.build_note(60, TOKEN, ALICE),
        )

        db2 = DatabaseManager(settings.database_url)
        rebuilt = PoolContext.build(settings, db=db2, depth=8)
        try:
            assert rebuilt.tree.size == 3
            assert rebuilt.tree.root == pool.tree.root
            assert rebuilt.nullifiers.is_spent(client.scheme.nullifier_of_note(note))
            assert len(rebuilt.ledger.merge()) == 3
        finally:
            db.engine.dispose()
            db2.engine.dispose()
