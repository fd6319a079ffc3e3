"""Tests for the relayer's prepare/submit protocol."""

import threading

import pytest

from zkpool.core.merkle_tree import fold_path
from zkpool.core.relayer import (
    PrepareResult,
    Submission,
    SubmissionState,
    SubmissionTracker,
)
from zkpool.exceptions import (
    DoubleSpendError,
    DuplicateCommitmentError,
    InvalidTransitionError,
    NotFoundError,
    RootMismatchError,
    TransientTransportError,
    ValidationError,
)
from zkpool.utils.encoding import FieldCodec

OWNER = 0xA11CE


def prove_deposit(ctx, commitment, amount=10):
    prep = ctx.relayer.prepare_deposit()
    witness = {
        "commitment": commitment,
        "owner_key": OWNER,
        "new_root": ctx.tree.preview_roots([commitment])[0],
        "old_root": prep.root,
        "next_leaf_index": prep.next_leaf_index,
        "deposit_hash": ctx.scheme.deposit_hash_of(OWNER, amount, 1),
        "amount": amount,
    }
    return prep, ctx.proofs.prove("deposit", witness)


def prove_transfer(ctx, spent, nullifier, out1, out2):
    prep = ctx.relayer.prepare_transfer(spent)
    root1, root2 = ctx.tree.preview_roots([out1, out2])
    witness = {
        "out1": out1,
        "out2": out2,
        "nullifier": nullifier,
        "root": prep.root,
        "new_root1": root1,
        "new_root2": root2,
        "new_next_leaf_index": prep.next_leaf_index + 2,
        "enc_tag1": ctx.scheme.enc_note_tag_of(out1, OWNER),
        "enc_tag2": ctx.scheme.enc_note_tag_of(out2, OWNER),
    }
    return prep, ctx.proofs.prove("transfer", witness)


def prove_withdraw(ctx, spent, nullifier, amount=10, root=None):
    prep = ctx.relayer.prepare_withdraw(spent)
    witness = {
        "nullifier": nullifier,
        "root": prep.root if root is None else root,
        "amount": amount,
        "token_id": 0,
        "recipient": 0xDE57,
    }
    return prep, ctx.proofs.prove("withdraw", witness)


def submit(ctx, kind, prep, result, **kwargs):
    return ctx.relayer.submit(
        kind,
        result.proof,
        result.public_signals.as_strings(),
        submission_id=prep.submission_id,
        **kwargs,
    )


def deposit(ctx, commitment, amount=10):
    prep, result = prove_deposit(ctx, commitment, amount)
    return submit(ctx, "deposit", prep, result)


class TestSubmissionLifecycle:
    """Tests for submission states."""

    def test_happy_path(self):
        """PREPARED -> PROVING -> SUBMITTED -> CONFIRMED."""
        item = Submission("s1", "deposit")
        for state in (SubmissionState.PROVING, SubmissionState.SUBMITTED, SubmissionState.CONFIRMED):
            item.advance(state)
        assert item.state == SubmissionState.CONFIRMED

    def test_cannot_skip(self):
        """States cannot be skipped."""
        with pytest.raises(InvalidTransitionError):
            Submission("s1", "deposit").advance(SubmissionState.CONFIRMED)

    def test_failed_is_terminal(self):
        """Nothing leaves FAILED."""
        item = Submission("s1", "deposit")
        item.advance(SubmissionState.FAILED)
        for state in SubmissionState:
            with pytest.raises(InvalidTransitionError):
                item.advance(state)

    def test_tracker(self):
        """Ids are unique and unknown ids raise NotFoundError."""
        tracker = SubmissionTracker()
        item = tracker.create("deposit", submission_id="abc")
        assert tracker.get("abc") is item
        with pytest.raises(ValidationError):
            tracker.create("deposit", submission_id="abc")
        with pytest.raises(NotFoundError):
            tracker.get("missing")
        assert tracker.find("missing") is None


class TestPrepare:
    """Tests for proof material."""

    def test_deposit_material(self, pool):
        """Deposit material is the insertion path of the next index."""
        deposit(pool, 101)
        prep = pool.relayer.prepare_deposit()
        assert prep.next_leaf_index == 1
        assert prep.root == pool.tree.root
        assert fold_path(pool.hasher, 0, 1, prep.path_elements) == prep.root
        assert pool.relayer.status(prep.submission_id).state == SubmissionState.PREPARED

    def test_transfer_material(self, pool):
        """Transfer material carries the spent note's path and both output paths."""
        deposit(pool, 101)
        deposit(pool, 102)
        prep = pool.relayer.prepare_transfer(FieldCodec.to_hex(101))
        assert (prep.leaf, prep.leaf_index, prep.next_leaf_index) == (101, 0, 2)
        assert fold_path(pool.hasher, 101, 0, prep.path_elements) == pool.tree.root
        assert fold_path(pool.hasher, 0, 2, prep.out1_path_elements) == pool.tree.root
        assert fold_path(pool.hasher, 0, 3, prep.out2_path_elements) == pool.tree.root

    def test_deposit_of_known_commitment(self, pool):
        """A commitment already in the tree cannot be deposited again."""
        deposit(pool, 101)
        with pytest.raises(DuplicateCommitmentError):
            pool.relayer.prepare("deposit", FieldCodec.to_hex(101))
        assert pool.relayer.prepare("deposit", 102).next_leaf_index == 1

    def test_unknown_commitment(self, pool):
        """Spending an unknown note fails at prepare."""
        with pytest.raises(NotFoundError):
            pool.relayer.prepare("withdraw", 999)

    def test_selector_required(self, pool):
        """Spends need the commitment being spent."""
        with pytest.raises(ValidationError):
            pool.relayer.prepare("transfer")
        with pytest.raises(ValidationError):
            pool.relayer.prepare("mint", 1)

    def test_dict_round_trip(self, pool):
        """Prepare results survive the HTTP shape."""
        deposit(pool, 101)
        prep = pool.relayer.prepare("transfer", 101)
        data = prep.to_dict()
        assert data["extra"]["out1_path_elements"][0].startswith("0x")
        assert PrepareResult.from_dict(data) == prep
        assert prep.path_indices == [0] * 8

    def test_from_dict_malformed(self):
        """Missing keys raise ValidationError."""
        with pytest.raises(ValidationError):
            PrepareResult.from_dict({"kind": "deposit"})


class TestSubmitDeposit:
    """Tests for deposit submission."""

    def test_deposit_applied(self, pool):
        """A deposit appends, persists and confirms."""
        result = deposit(pool, 101)
        assert result.indices == [0]
        assert result.roots == [pool.tree.root]
        assert pool.leaf_store.load() == [101]
        assert pool.relayer.status(result.submission_id).state == SubmissionState.CONFIRMED
        assert len(pool.gateway.outbox) == 1
        (entry,) = pool.ledger.merge()
        assert entry.leaf_index == 0
        assert entry.settlement_ref == result.settlement_ref

    def test_replay_returns_stored_result(self, pool):
        """Resubmitting a confirmed id is idempotent."""
        prep, proven = prove_deposit(pool, 101)
        first = submit(pool, "deposit", prep, proven)
        again = submit(pool, "deposit", prep, proven)
        assert again == first
        assert pool.tree.size == 1
        assert len(pool.gateway.outbox) == 1

    def test_stale_root(self, pool):
        """A deposit proven before another landed is rejected and fails for good."""
        prep, proven = prove_deposit(pool, 101)
        deposit(pool, 102)
        with pytest.raises(RootMismatchError):
            submit(pool, "deposit", prep, proven)
        assert pool.relayer.status(prep.submission_id).state == SubmissionState.FAILED
        with pytest.raises(InvalidTransitionError):
            submit(pool, "deposit", prep, proven)
        assert pool.tree.size == 1

    def test_tampered_signal(self, pool):
        """Changed signals fail verification."""
        prep, proven = prove_deposit(pool, 101)
        signals = proven.public_signals.as_strings()
        signals[6] = "11"
        with pytest.raises(ValidationError):
            pool.relayer.submit("deposit", proven.proof, signals, submission_id=prep.submission_id)
        assert pool.tree.size == 0

    def test_canonical_fields(self, pool):
        """Named fields must match their signals."""
        prep, proven = prove_deposit(pool, 101)
        with pytest.raises(ValidationError):
            submit(pool, "deposit", prep, proven, canonical_fields={"amount": 11})

        prep, proven = prove_deposit(pool, 102)
        with pytest.raises(ValidationError):
            submit(pool, "deposit", prep, proven, canonical_fields={"bogus": 1})

        prep, proven = prove_deposit(pool, 103)
        result = submit(pool, "deposit", prep, proven, canonical_fields={"amount": "0xa"})
        assert result.indices == [0]

    def test_kind_mismatch(self, pool):
        """A prepared id cannot be submitted as another kind."""
        prep, proven = prove_deposit(pool, 101)
        with pytest.raises(ValidationError):
            pool.relayer.submit("withdraw", proven.proof, [1, 2, 3, 4, 5], submission_id=prep.submission_id)

    def test_named_signals(self, pool):
        """Signals may arrive keyed by name."""
        prep, proven = prove_deposit(pool, 101)
        named = {k: str(v) for k, v in proven.public_signals.named().items()}
        result = pool.relayer.submit("deposit", proven.proof, named, submission_id=prep.submission_id)
        assert result.indices == [0]


class TestSubmitSpends:
    """Tests for transfer and withdraw submission."""

    def test_transfer(self, pool):
        """A transfer appends both outputs and spends its nullifier."""
        deposit(pool, 101)
        prep, proven = prove_transfer(pool, 101, 0x4E, 201, 202)
        result = submit(pool, "transfer", prep, proven)

        assert result.indices == [1, 2]
        assert result.roots[1] == pool.tree.root
        assert pool.nullifiers.is_spent(0x4E)
        assert pool.nullifiers.get_record(0x4E).settlement_ref == result.settlement_ref
        assert pool.leaf_store.load() == [101, 201, 202]
        assert pool.tree.proof(2).compute_root(pool.hasher) == pool.tree.root
        assert {e.leaf_index for e in pool.ledger.merge()} == {0, 1, 2}

    def test_double_spend(self, pool):
        """The same nullifier cannot settle twice."""
        deposit(pool, 101)
        prep, proven = prove_transfer(pool, 101, 0x4E, 201, 202)
        submit(pool, "transfer", prep, proven)

        prep, proven = prove_transfer(pool, 101, 0x4E, 301, 302)
        with pytest.raises(DoubleSpendError):
            submit(pool, "transfer", prep, proven)
        assert pool.relayer.status(prep.submission_id).state == SubmissionState.FAILED
        assert pool.tree.size == 3

    def test_transfer_index_moved(self, pool):
        """A deposit landing between prepare and submit invalidates a transfer."""
        deposit(pool, 101)
        prep, proven = prove_transfer(pool, 101, 0x4E, 201, 202)
        deposit(pool, 102)
        with pytest.raises(RootMismatchError):
            submit(pool, "transfer", prep, proven)
        assert not pool.nullifiers.is_spent(0x4E)

    def test_withdraw(self, pool):
        """A withdrawal spends without appending."""
        deposit(pool, 101)
        prep, proven = prove_withdraw(pool, 101, 0x77)
        result = submit(pool, "withdraw", prep, proven)
        assert result.indices == []
        assert result.roots == [prep.root]
        assert pool.tree.size == 1
        assert pool.nullifiers.get_record(0x77).kind == "withdraw"
        (withdrawal,) = [e for e in pool.ledger.merge() if e.kind.value == "withdraw"]
        assert withdrawal.amount == 10
        assert withdrawal.destination == FieldCodec.to_hex(0xDE57)

    def test_withdraw_recent_root(self, pool):
        """Withdrawals may prove against a recent root."""
        deposit(pool, 101)
        prep, proven = prove_withdraw(pool, 101, 0x77)
        deposit(pool, 102)
        assert submit(pool, "withdraw", prep, proven).roots == [prep.root]

    def test_withdraw_unknown_root(self, pool):
        """Roots the accumulator never had are rejected."""
        deposit(pool, 101)
        prep, proven = prove_withdraw(pool, 101, 0x77, root=12345)
        with pytest.raises(RootMismatchError):
            submit(pool, "withdraw", prep, proven)
        assert not pool.nullifiers.is_spent(0x77)


class TestSubmitGuards:
    """Checks that must hold before anything is settled."""

    def test_duplicate_deposit_not_settled(self, pool):
        """Depositing a known commitment is rejected before settlement."""
        deposit(pool, 0x1234)
        prep, proven = prove_deposit(pool, 0x1234)
        with pytest.raises(DuplicateCommitmentError):
            submit(pool, "deposit", prep, proven)

        assert len(pool.gateway.outbox) == 1
        assert pool.tree.size == 1
        assert pool.relayer.status(prep.submission_id).state == SubmissionState.FAILED
        record = pool.ledger.store.get_record(f"commitment:{FieldCodec.to_hex(0x1234)}")
        assert record.leaf_index == 0
        assert [e.leaf_index for e in pool.ledger.merge()] == [0]

    def test_transfer_output_already_a_leaf(self, pool):
        """A transfer may not append an existing commitment."""
        deposit(pool, 101)
        deposit(pool, 102)
        prep, proven = prove_transfer(pool, 101, 0x4E, 102, 202)
        with pytest.raises(DuplicateCommitmentError):
            submit(pool, "transfer", prep, proven)
        assert len(pool.gateway.outbox) == 2
        assert not pool.nullifiers.is_spent(0x4E)
        assert pool.tree.size == 2

    def test_concurrent_spends_settle_once(self, pool, monkeypatch):
        """Two spends of one nullifier racing past verification settle once."""
        deposit(pool, 101)
        attempts = [prove_withdraw(pool, 101, 0xBEEF) for _ in range(2)]

        barrier = threading.Barrier(2)
        verify = pool.proofs.verify

        def verify_then_wait(*args, **kwargs):
            ok = verify(*args, **kwargs)
            barrier.wait(timeout=5)
            return ok

        monkeypatch.setattr(pool.proofs, "verify", verify_then_wait)

        results, errors = [], []

        def run(prep, proven):
            try:
                results.append(submit(pool, "withdraw", prep, proven))
            except Exception as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=attempt) for attempt in attempts]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)

        assert len(results) == 1
        assert [type(e) for e in errors] == [DoubleSpendError]
        assert len(pool.gateway.outbox) == 2
        assert pool.nullifiers.get_record(0xBEEF).settlement_ref == results[0].settlement_ref

    def test_same_id_in_flight(self, pool, monkeypatch):
        """A resend of a submission still being processed is turned away."""
        prep, proven = prove_deposit(pool, 101)
        entered, proceed = threading.Event(), threading.Event()
        settle = pool.gateway.settle

        def slow_settle(*args):
            entered.set()
            proceed.wait(timeout=5)
            return settle(*args)

        monkeypatch.setattr(pool.gateway, "settle", slow_settle)

        outcome = {}
        worker = threading.Thread(target=lambda: outcome.update(result=submit(pool, "deposit", prep, proven)))
        worker.start()
        assert entered.wait(timeout=5)
        with pytest.raises(TransientTransportError):
            submit(pool, "deposit", prep, proven)
        proceed.set()
        worker.join(timeout=10)

        assert outcome["result"].indices == [0]
        assert pool.relayer.status(prep.submission_id).state == SubmissionState.CONFIRMED
        assert submit(pool, "deposit", prep, proven) == outcome["result"]
        assert len(pool.gateway.outbox) == 1

    def test_claim_and_release(self):
        """The tracker hands a submission to one caller at a time."""
        tracker = SubmissionTracker()
        item, stored = tracker.claim("deposit", "s1")
        assert stored is None
        with pytest.raises(TransientTransportError):
            tracker.claim("deposit", "s1")
        with pytest.raises(ValidationError):
            tracker.claim("withdraw", "s1")
        tracker.release(item)
        again, _ = tracker.claim("deposit", "s1")
        assert again is item
