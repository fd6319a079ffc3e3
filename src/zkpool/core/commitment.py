"""Notes, commitments and nullifiers."""

import os
from dataclasses import dataclass
from typing import Optional

from zkpool.exceptions import ValidationError
from zkpool.utils.encoding import FIELD_PRIME, FieldCodec, FieldLike
from zkpool.utils.hash import FieldHasher, sha256


@dataclass(frozen=True)
class Randomness:
    """Blinding values of a note. Only ``r`` enters the commitment."""

    r: int
    s: Optional[int] = None

    @classmethod
    def generate(cls) -> "Randomness":
        """Draw fresh randomness from the OS CSPRNG."""
        return cls(r=int.from_bytes(os.urandom(32), "big") % FIELD_PRIME)


@dataclass(frozen=True)
class Note:
    """A shielded note; whoever knows this preimage can spend it."""

    amount: int
    token_id: int
    owner_key: int
    randomness: Randomness
    memo: Optional[int] = None

    def to_dict(self) -> dict:
        """Convert to dictionary (hex fields)."""
        return {
            "amount": self.amount,
            "token_id": FieldCodec.to_hex(self.token_id),
            "owner_key": FieldCodec.to_hex(self.owner_key),
            "randomness": {
                "r": FieldCodec.to_hex(self.randomness.r),
                "s": FieldCodec.to_hex(self.randomness.s) if self.randomness.s is not None else None,
            },
            "memo": FieldCodec.to_hex(self.memo) if self.memo is not None else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Note":
        """
        Rebuild a note from its ``to_dict`` form.

        Raises:
            ValidationError: If a field is missing or malformed
        """
        try:
            randomness = data["randomness"]
            return cls(
                amount=FieldCodec.to_field(data["amount"]),
                token_id=FieldCodec.from_hex(data["token_id"]),
                owner_key=FieldCodec.from_hex(data["owner_key"]),
                randomness=Randomness(
                    r=FieldCodec.from_hex(randomness["r"]),
                    s=FieldCodec.from_hex(randomness["s"]) if randomness.get("s") is not None else None,
                ),
                memo=FieldCodec.from_hex(data["memo"]) if data.get("memo") is not None else None,
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValidationError(f"Malformed note: {e}") from e


@dataclass(frozen=True)
class TokenDescriptor:
    """Identifies a fungible asset independent of chain formatting."""

    chain: str
    symbol: str
    decimals: int
    address: str = ""
    chain_id: int = 0


class NoteCommitmentScheme:
    """
    Derives commitments, nullifiers and related tags for notes.

    Operand order matches the proving circuit and must not change:

    - commitment = H(amount, owner_key, r, token_id, memo or 0)
    - nullifier  = H(owner_key, r, token_id)
    - enc tag    = H(commitment, recipient_key)
    - deposit    = H(owner_key, amount, nonce)

    Every operand is reduced mod the field prime before hashing.
    """

    CHAIN_TAGS = {"solana": 1, "evm": 2}

    def __init__(self, hasher: FieldHasher):
        self.hasher = hasher

    def build_note(
        self,
        amount: FieldLike,
        token_id: FieldLike,
        owner_key: FieldLike,
        memo: Optional[FieldLike] = None,
    ) -> Note:
        """
        Build a note with fresh randomness.

        Raises:
            ValidationError: If any operand is malformed
        """
        return Note(
            amount=FieldCodec.to_field(amount),
            token_id=FieldCodec.to_field(token_id),
            owner_key=FieldCodec.to_field(owner_key),
            randomness=Randomness.generate(),
            memo=FieldCodec.to_field(memo) if memo is not None else None,
        )

    def commitment_of(self, note: Note) -> int:
        """
        Compute a note's commitment.

        Args:
            note: Note to commit to

        Returns:
            int: Commitment field element
        """
        return self.hasher.hash(
            note.amount,
            note.owner_key,
            note.randomness.r,
            note.token_id,
            note.memo if note.memo is not None else 0,
        )

    def nullifier_of(self, owner_key: FieldLike, r: FieldLike, token_id: FieldLike) -> int:
        """
        Compute the nullifier that spends a note.

        Args:
            owner_key: Owner's secret-derived key
            r: The note's randomness ``r``
            token_id: The note's token id

        Returns:
            int: Nullifier field element
        """
        return self.hasher.hash(owner_key, r, token_id)

    def nullifier_of_note(self, note: Note) -> int:
        return self.nullifier_of(note.owner_key, note.randomness.r, note.token_id)

    def owner_key_of(self, wallet_pub: FieldLike, wallet_priv: FieldLike) -> int:
        """Derive the pool owner key from a wallet key pair."""
        return self.hasher.hash(wallet_pub, wallet_priv)

    def deposit_hash_of(self, owner_key: FieldLike, amount: FieldLike, nonce: FieldLike) -> int:
        """Bind a deposit to its owner, amount and nonce."""
        return self.hasher.hash(owner_key, amount, nonce)

    def enc_note_tag_of(self, commitment: FieldLike, recipient_key: FieldLike) -> int:
        """Tag carried on-chain next to each encrypted transfer output."""
        return self.hasher.hash(commitment, recipient_key)

    def token_id_of(self, token: TokenDescriptor) -> int:
        """
        Field id of a token descriptor.

        Layout: [chain tag, decimals, H(symbol), H(lowercase address), chain id].

        Raises:
            ValidationError: If the chain is not known
        """
        if token.chain not in self.CHAIN_TAGS:
            raise ValidationError(f"Unknown chain: {token.chain}")
        return self.hasher.hash(
            self.CHAIN_TAGS[token.chain],
            token.decimals,
            _string_to_field(token.symbol),
            _string_to_field(token.address.lower()),
            token.chain_id if token.chain == "evm" else 0,
        )


def _string_to_field(text: str) -> int:
    # 248 bits always fits below the prime.
    return int.from_bytes(sha256(text)[:31], "big")
