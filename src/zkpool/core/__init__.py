"""Core pool components."""

from zkpool.core.commitment import Note, NoteCommitmentScheme, Randomness, TokenDescriptor
from zkpool.core.events import OnChainEventDecoder
from zkpool.core.merkle_tree import TREE_DEPTH, MerkleAccumulator, MerkleProof
from zkpool.core.messages import MessageBox
from zkpool.core.note_encryption import NoteKeyPair, decrypt_note, encrypt_note
from zkpool.core.nullifier import NullifierRegistry
from zkpool.core.reconciliation import ReconciliationLedger

__all__ = [
    "Note",
    "NoteCommitmentScheme",
    "Randomness",
    "TokenDescriptor",
    "OnChainEventDecoder",
    "TREE_DEPTH",
    "MerkleAccumulator",
    "MerkleProof",
    "MessageBox",
    "NoteKeyPair",
    "encrypt_note",
    "decrypt_note",
    "NullifierRegistry",
    "ReconciliationLedger",
]
