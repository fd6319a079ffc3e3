"""Append-only Merkle accumulator over note commitments.

The tree has a fixed depth shared with the proving circuit and the ledger
program. Empty positions hold the zero leaf; an empty subtree at level k has
the precomputed root ``zeros[k]``, so padding a level with ``zeros[k]`` is the
same as padding the leaf sequence to 2^depth with zero leaves.

Tree Structure:
    - Leaves: commitments, appended left to right, never removed
    - Nodes: ``H(left, right)`` using the shared FieldHasher
    - Proofs: siblings bottom-to-top; bit k of the index says whether the
      node at level k is a right child

Dual-leaf insertion:
    A transfer appends out1 at n and out2 at n + 1 as one unit. The out2
    proof against the post-insertion root is synthesized while out1 is
    inserted: walking up from level 0, out2's sibling becomes out1's
    freshly computed node exactly where a carry out of n's low bits stops,
    i.e. at level k when bits 0..k-1 of n are all 1 and bit k of n is 0.
    Every other sibling is unchanged from the pre-insertion tree. Level 0
    is the case k = 0 (empty carry, bit 0 of n is 0: out1 is out2's sibling).

Example:
    Appending and proving::

        from zkpool.core.merkle_tree import MerkleAccumulator
        from zkpool.utils.hash import FieldHasher

        tree = MerkleAccumulator(FieldHasher())
        result = tree.append(commitment)
        proof = tree.proof(result.index)
        assert tree.verify(proof)
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from zkpool.exceptions import (
    DuplicateCommitmentError,
    NotFoundError,
    RootMismatchError,
    TreeFullError,
    ValidationError,
)
from zkpool.utils.encoding import FIELD_PRIME, FieldCodec
from zkpool.utils.hash import FieldHasher

logger = logging.getLogger(__name__)

# Shared with the circuit and the on-chain program; change all three together.
TREE_DEPTH = 20
ZERO_VALUE = 0
ROOT_HISTORY_SIZE = 100


def zero_hashes(hasher: FieldHasher, depth: int) -> List[int]:
    """
    Roots of empty subtrees per level.

    Args:
        hasher: Field hasher
        depth: Tree depth

    Returns:
        List[int]: ``zeros[0..depth]``, ``zeros[depth]`` is the empty root
    """
    zeros = [ZERO_VALUE]
    for _ in range(depth):
        zeros.append(hasher.hash_pair(zeros[-1], zeros[-1]))
    return zeros


def compute_root(hasher: FieldHasher, leaves: Sequence[int], depth: int = TREE_DEPTH) -> int:
    """
    Root of a full leaf list, computed from scratch level by level.

    Args:
        hasher: Field hasher
        leaves: Leaves in index order
        depth: Tree depth

    Returns:
        int: Root of the zero-padded tree

    Raises:
        TreeFullError: If there are more than 2^depth leaves
    """
    if len(leaves) > (1 << depth):
        raise TreeFullError(f"{len(leaves)} leaves do not fit a depth-{depth} tree")

    zeros = zero_hashes(hasher, depth)
    level = list(leaves)
    for k in range(depth):
        if len(level) % 2 == 1:
            level.append(zeros[k])
        level = [hasher.hash_pair(level[i], level[i + 1]) for i in range(0, len(level), 2)]
    return level[0] if level else zeros[depth]


def path_nodes(hasher: FieldHasher, leaf: int, index: int, siblings: Sequence[int]) -> List[int]:
    """
    Nodes on the path from a leaf to the root.

    Returns:
        List[int]: ``len(siblings) + 1`` nodes; the first is the leaf and the
        last is the root the path folds to
    """
    nodes = [leaf]
    current = leaf
    position = index
    for sibling in siblings:
        if position & 1:
            current = hasher.hash_pair(sibling, current)
        else:
            current = hasher.hash_pair(current, sibling)
        nodes.append(current)
        position >>= 1
    return nodes


def fold_path(hasher: FieldHasher, leaf: int, index: int, siblings: Sequence[int]) -> int:
    """Fold siblings against a leaf and return the resulting root."""
    return path_nodes(hasher, leaf, index, siblings)[-1]


def synthesize_out2_siblings(
    next_leaf_index: int,
    out1_nodes: Sequence[int],
    out2_pre_siblings: Sequence[int],
) -> List[int]:
    """
    Siblings proving out2 at ``next_leaf_index + 1`` after both appends.

    Args:
        next_leaf_index: Index out1 is inserted at
        out1_nodes: Path nodes of out1 after its insertion (``out1_nodes[0]``
            is the out1 commitment)
        out2_pre_siblings: Siblings of index ``next_leaf_index + 1`` in the
            tree before either insertion

    Returns:
        List[int]: Sibling set for out2
    """
    depth = len(out2_pre_siblings)
    if len(out1_nodes) < depth:
        raise ValidationError("out1 path is shorter than the tree depth")

    siblings = []
    carry = True
    for k in range(depth):
        bit = (next_leaf_index >> k) & 1
        if carry and bit == 0:
            siblings.append(out1_nodes[k])
        else:
            siblings.append(out2_pre_siblings[k])
        carry = carry and bit == 1
    return siblings


@dataclass(frozen=True)
class MerkleProof:
    """Merkle tree inclusion proof."""

    root: int
    leaf: int
    index: int
    siblings: Tuple[int, ...]

    @property
    def path_indices(self) -> List[int]:
        """Direction bits bottom-to-top (1 means the node is a right child)."""
        return [(self.index >> k) & 1 for k in range(len(self.siblings))]

    def compute_root(self, hasher: FieldHasher) -> int:
        return fold_path(hasher, self.leaf, self.index, self.siblings)

    def to_dict(self) -> dict:
        """Convert to dictionary with hex field elements."""
        return {
            "root": FieldCodec.to_hex(self.root),
            "leaf": FieldCodec.to_hex(self.leaf),
            "leaf_index": self.index,
            "path_elements": [FieldCodec.to_hex(s) for s in self.siblings],
            "path_indices": self.path_indices,
        }


@dataclass(frozen=True)
class AppendResult:
    """Outcome of a single append."""

    index: int
    root: int


@dataclass(frozen=True)
class PairAppendResult:
    """Outcome of a transfer's two appends."""

    index1: int
    index2: int
    root1: int
    root2: int
    out1_proof: MerkleProof
    out2_proof: MerkleProof


@dataclass(frozen=True)
class TreeSnapshot:
    """Immutable view of the accumulator for concurrent readers."""

    root: int
    size: int
    depth: int


class MerkleAccumulator:
    """
    Single-writer Merkle accumulator.

    All mutation goes through ``append`` and ``append_pair``, serialized by
    the accumulator's own lock. Nodes are kept in a sparse
    ``(level, position) -> node`` map; absent entries are empty subtrees.
    """

    def __init__(
        self,
        hasher: FieldHasher,
        depth: int = TREE_DEPTH,
        leaves: Optional[Iterable[int]] = None,
    ):
        """
        Initialize the accumulator.

        Args:
            hasher: Field hasher shared with the rest of the pool
            depth: Tree depth; only tests use a value other than TREE_DEPTH
            leaves: Leaves to replay, e.g. when rebuilding from storage

        Raises:
            ValueError: If depth is invalid
        """
        if depth < 1 or depth > 32:
            raise ValueError("Tree depth must be between 1 and 32")

        self.hasher = hasher
        self.depth = depth
        self.max_leaves = 2 ** depth
        self.zeros = zero_hashes(hasher, depth)

        self.leaves: List[int] = []
        self.nodes: Dict[Tuple[int, int], int] = {}
        self._positions: Dict[int, int] = {}
        self._root = self.zeros[depth]
        self._recent_roots = deque([self._root], maxlen=ROOT_HISTORY_SIZE)
        self._lock = threading.RLock()

        for leaf in leaves or ():
            self.append(leaf)

    @property
    def lock(self) -> threading.RLock:
        """Writer lock; hold it to read a consistent multi-step view."""
        return self._lock

    @property
    def root(self) -> int:
        """Get the current root."""
        return self._root

    @property
    def size(self) -> int:
        return len(self.leaves)

    def append(self, commitment: int) -> AppendResult:
        """
        Append a commitment at the next index.

        Args:
            commitment: Leaf value (field element)

        Returns:
            AppendResult: Assigned index and the new root

        Raises:
            TreeFullError: If the tree is full
            DuplicateCommitmentError: If the commitment is already a leaf
        """
        with self._lock:
            self._check_room(1)
            self._check_new(commitment)
            return self._insert(commitment)

    def append_pair(self, out1: int, out2: int) -> PairAppendResult:
        """
        Append a transfer's two outputs in one critical section.

        The out2 proof is synthesized from out2's pre-insertion siblings and
        out1's freshly computed path, then checked against the final root.

        Args:
            out1: First output commitment, appended at index n
            out2: Second output commitment, appended at index n + 1

        Returns:
            PairAppendResult: Indices, both roots and both proofs

        Raises:
            TreeFullError: If fewer than two leaves are free
            DuplicateCommitmentError: If either output is already a leaf
            RootMismatchError: If the synthesized proof does not fold to the
                final root
        """
        if out1 == out2:
            raise DuplicateCommitmentError("Transfer outputs must be distinct commitments")

        with self._lock:
            self._check_room(2)
            self._check_new(out1)
            self._check_new(out2)

            n = len(self.leaves)
            out2_pre = self._siblings(n + 1)

            first = self._insert(out1)
            out1_siblings = self._siblings(n)
            out1_nodes = path_nodes(self.hasher, out1, n, out1_siblings)
            synthesized = synthesize_out2_siblings(n, out1_nodes, out2_pre)

            second = self._insert(out2)

            out2_proof = MerkleProof(second.root, out2, n + 1, tuple(synthesized))
            if out2_proof.compute_root(self.hasher) != second.root:
                logger.error("Synthesized out2 path does not fold to root at index %d", n + 1)
                raise RootMismatchError(f"Synthesized path for leaf {n + 1} does not reach the new root")

            return PairAppendResult(
                index1=first.index,
                index2=second.index,
                root1=first.root,
                root2=second.root,
                out1_proof=MerkleProof(first.root, out1, n, tuple(out1_siblings)),
                out2_proof=out2_proof,
            )

    def preview_roots(self, commitments: Sequence[int]) -> List[int]:
        """
        Roots that appending one or two commitments would produce.

        Nothing is mutated. Two commitments are previewed the way a transfer
        appends them, with out2's siblings synthesized from out1's path.

        Raises:
            ValidationError: If not given one or two commitments
            TreeFullError: If they do not fit
        """
        if len(commitments) not in (1, 2):
            raise ValidationError("Preview takes one or two commitments")

        with self._lock:
            self._check_room(len(commitments))
            n = len(self.leaves)
            out1_nodes = path_nodes(self.hasher, commitments[0], n, self._siblings(n))
            if len(commitments) == 1:
                return [out1_nodes[-1]]
            synthesized = synthesize_out2_siblings(n, out1_nodes, self._siblings(n + 1))
            return [out1_nodes[-1], fold_path(self.hasher, commitments[1], n + 1, synthesized)]

    def _check_room(self, count: int) -> None:
        if len(self.leaves) + count > self.max_leaves:
            raise TreeFullError(f"Tree is full (max {self.max_leaves} commitments)")

    def ensure_new(self, *commitments: int) -> None:
        """
        Check that commitments can be appended, without appending them.

        Raises:
            ValidationError: If a value is not a field element
            DuplicateCommitmentError: If a value repeats or is already a leaf
        """
        with self._lock:
            for commitment in commitments:
                self._check_new(commitment)
        if len(set(commitments)) != len(commitments):
            raise DuplicateCommitmentError("Commitments appended together must be distinct")

    def _check_new(self, commitment: int) -> None:
        if not isinstance(commitment, int) or isinstance(commitment, bool):
            raise ValidationError("Commitment must be a field element")
        if not 0 <= commitment < FIELD_PRIME:
            raise ValidationError("Commitment is outside the scalar field")
        if commitment in self._positions:
            raise DuplicateCommitmentError(
                f"Commitment {FieldCodec.to_hex(commitment)[:18]}... already at index "
                f"{self._positions[commitment]}"
            )

    def _insert(self, commitment: int) -> AppendResult:
        leaf_index = len(self.leaves)
        updates = {(0, leaf_index): commitment}

        position = leaf_index
        current = commitment
        for level in range(self.depth):
            sibling = self._node(level, position ^ 1)
            if position & 1:
                current = self.hasher.hash_pair(sibling, current)
            else:
                current = self.hasher.hash_pair(current, sibling)
            position >>= 1
            updates[(level + 1, position)] = current

        # Nothing is mutated until the whole path hashed.
        self.leaves.append(commitment)
        self._positions[commitment] = leaf_index
        self.nodes.update(updates)
        self._root = current
        self._recent_roots.append(current)
        return AppendResult(index=leaf_index, root=current)

    def _node(self, level: int, position: int) -> int:
        return self.nodes.get((level, position), self.zeros[level])

    def _siblings(self, index: int) -> List[int]:
        siblings = []
        position = index
        for level in range(self.depth):
            siblings.append(self._node(level, position ^ 1))
            position >>= 1
        return siblings

    def proof(self, index: int) -> MerkleProof:
        """
        Inclusion proof for the leaf at an index.

        Raises:
            NotFoundError: If no leaf exists at that index
        """
        with self._lock:
            if index < 0 or index >= len(self.leaves):
                raise NotFoundError(f"No leaf at index {index}")
            return MerkleProof(
                root=self._root,
                leaf=self.leaves[index],
                index=index,
                siblings=tuple(self._siblings(index)),
            )

    def proof_for(self, commitment: int) -> MerkleProof:
        """
        Inclusion proof for a commitment.

        Raises:
            NotFoundError: If the commitment is not a leaf
        """
        with self._lock:
            index = self._positions.get(commitment)
            if index is None:
                raise NotFoundError(f"Unknown commitment {FieldCodec.to_hex(commitment)[:18]}...")
            return self.proof(index)

    def insertion_path(self, index: int) -> List[int]:
        """
        Current siblings of a position that may still be empty.

        Used to hand out pre-insertion material for the next free indices.

        Raises:
            ValidationError: If the index is outside the tree
        """
        if index < 0 or index >= self.max_leaves:
            raise ValidationError(f"Index {index} outside tree of {self.max_leaves} leaves")
        with self._lock:
            return self._siblings(index)

    def index_of(self, commitment: int) -> Optional[int]:
        return self._positions.get(commitment)

    def verify(self, proof: MerkleProof) -> bool:
        """
        Check that a proof's siblings fold its leaf to its root.

        Returns:
            bool: True if the folded root equals ``proof.root``
        """
        if len(proof.siblings) != self.depth:
            return False
        if proof.index < 0 or proof.index >= self.max_leaves:
            return False
        return proof.compute_root(self.hasher) == proof.root

    def check_root(self, proof: MerkleProof) -> int:
        """
        Compare a caller-supplied proof with local state.

        Returns:
            int: The local root

        Raises:
            RootMismatchError: If the leaf, the folded root or the claimed
                root differs from what this accumulator holds
        """
        with self._lock:
            try:
                local = self.proof(proof.index)
            except NotFoundError as e:
                raise RootMismatchError(str(e)) from e
            if local.leaf != proof.leaf:
                raise RootMismatchError(f"Leaf at index {proof.index} differs from local tree")
            if proof.root != local.root or not self.verify(proof):
                raise RootMismatchError(
                    f"Root {FieldCodec.to_hex(proof.root)[:18]}... does not match local root "
                    f"{FieldCodec.to_hex(local.root)[:18]}..."
                )
            return local.root

    def known_root(self, root: int) -> bool:
        """Whether a root is current or among the recent roots."""
        with self._lock:
            return root in self._recent_roots

    def snapshot(self) -> TreeSnapshot:
        with self._lock:
            return TreeSnapshot(root=self._root, size=len(self.leaves), depth=self.depth)

    def get_state(self) -> dict:
        """
        Get the current state of the tree for serialization.

        Returns:
            dict: Depth, leaf count and root (hex)
        """
        with self._lock:
            return {
                "depth": self.depth,
                "max_leaves": self.max_leaves,
                "num_leaves": len(self.leaves),
                "root": FieldCodec.to_hex(self._root),
            }

    def __len__(self) -> int:
        """Return the number of leaves in the tree."""
        return len(self.leaves)

    def __repr__(self) -> str:
        """String representation of the tree."""
        return (
            f"MerkleAccumulator(depth={self.depth}, "
            f"leaves={len(self.leaves)}/{self.max_leaves}, "
            f"root={FieldCodec.to_hex(self._root)[:18]}...)"
        )
