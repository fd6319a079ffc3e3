"""Decoder for the pool program's on-chain events.

Wire format of one event payload:

    [8-byte discriminator][fixed-width fields, little-endian]

The discriminator is the first 8 bytes of ``sha256("event:" + EventName)``.
Payloads reach us base64-encoded on ``Program data: `` log lines.

Every 32-byte field is byte-reversed into big-endian canonical hex here, at
the boundary. Everything downstream (tree lookups, nullifier keys,
reconciliation joins) assumes big-endian hex, so the reversal must never be
skipped or repeated.
"""

import base64
import binascii
import logging
import struct
from dataclasses import dataclass, fields
from typing import Dict, Iterable, List, Optional, Tuple, Type, Union

from zkpool.exceptions import DecodeError
from zkpool.utils.encoding import FieldCodec
from zkpool.utils.hash import sha256

logger = logging.getLogger(__name__)

LOG_PREFIX = "Program data: "
DISCRIMINATOR_SIZE = 8

# Field kinds: 32-byte little-endian value, u32 LE, u64 LE.
H32 = "h32"
U32 = "u32"
U64 = "u64"

_WIDTHS = {H32: 32, U32: 4, U64: 8}
_STRUCT = {U32: "<I", U64: "<Q"}


def event_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("event:<name>")."""
    return sha256(f"event:{name}")[:DISCRIMINATOR_SIZE]


@dataclass(frozen=True)
class DepositCompleted:
    """A deposit appended one commitment."""

    deposit_hash: str
    owner_key: str
    commitment: str
    old_root: str
    new_root: str
    next_leaf_index: int
    asset_id: str

    kind = "deposit"


@dataclass(frozen=True)
class TransferCompleted:
    """A transfer spent one note and appended two outputs."""

    nullifier: str
    out1_commitment: str
    out2_commitment: str
    enc_note_tag1: str
    enc_note_tag2: str
    root_before: str
    new_root1: str
    new_root2: str
    next_leaf_index: int
    asset_id: str

    kind = "transfer"


@dataclass(frozen=True)
class WithdrawCompleted:
    """A withdrawal spent one note to a transparent account."""

    nullifier: str
    root_used: str
    amount: int
    asset_id: str
    recipient: str

    kind = "withdraw"


PoolEvent = Union[DepositCompleted, TransferCompleted, WithdrawCompleted]

EVENT_LAYOUTS: Dict[str, Tuple[Type, Tuple[str, ...]]] = {
    "DepositCompleted": (
        DepositCompleted,
        (H32, H32, H32, H32, H32, U32, H32),
    ),
    "TransferCompleted": (
        TransferCompleted,
        (H32, H32, H32, H32, H32, H32, H32, H32, U32, H32),
    ),
    "WithdrawCompleted": (
        WithdrawCompleted,
        (H32, H32, U64, H32, H32),
    ),
}


def payload_size(layout: Tuple[str, ...]) -> int:
    """Total payload width including the discriminator."""
    return DISCRIMINATOR_SIZE + sum(_WIDTHS[kind] for kind in layout)


@dataclass(frozen=True)
class LogNotification:
    """One transaction's log lines as delivered by the ledger subscription."""

    signature: str
    logs: Tuple[str, ...]
    err: Optional[object] = None
    slot: Optional[int] = None


class OnChainEventDecoder:
    """
    Turns event payloads into typed pool events and back.

    Decoding is strict about width: a payload shorter than its layout raises
    DecodeError. Bytes past the layout are ignored. Unknown discriminators
    are logged and skipped.
    """

    def __init__(self):
        self._by_discriminator: Dict[bytes, Tuple[str, Type, Tuple[str, ...]]] = {}
        self._by_class: Dict[Type, Tuple[bytes, Tuple[str, ...]]] = {}
        for name, (event_cls, layout) in EVENT_LAYOUTS.items():
            disc = event_discriminator(name)
            self._by_discriminator[disc] = (name, event_cls, layout)
            self._by_class[event_cls] = (disc, layout)

    def decode(self, payload: bytes) -> Optional[PoolEvent]:
        """
        Decode one payload.

        Args:
            payload: Discriminator followed by the event's fields

        Returns:
            The typed event, or None for an unknown discriminator

        Raises:
            DecodeError: If the payload is too short for its layout
        """
        if len(payload) < DISCRIMINATOR_SIZE:
            raise DecodeError(f"Payload of {len(payload)} bytes has no discriminator")

        disc = bytes(payload[:DISCRIMINATOR_SIZE])
        entry = self._by_discriminator.get(disc)
        if entry is None:
            logger.info("Ignoring unknown event discriminator %s", disc.hex())
            return None

        name, event_cls, layout = entry
        expected = payload_size(layout)
        if len(payload) < expected:
            raise DecodeError(f"{name} payload is {len(payload)} bytes, expected {expected}")

        values = []
        offset = DISCRIMINATOR_SIZE
        for kind in layout:
            width = _WIDTHS[kind]
            chunk = bytes(payload[offset:offset + width])
            if kind == H32:
                values.append(FieldCodec.le_to_hex(chunk))
            else:
                values.append(struct.unpack(_STRUCT[kind], chunk)[0])
            offset += width

        return event_cls(*values)

    def encode(self, event: PoolEvent) -> bytes:
        """
        Encode an event back to wire bytes.

        Raises:
            DecodeError: If the event type is not a pool event
        """
        entry = self._by_class.get(type(event))
        if entry is None:
            raise DecodeError(f"Cannot encode {type(event).__name__}")

        disc, layout = entry
        parts = [disc]
        for kind, f in zip(layout, fields(event)):
            value = getattr(event, f.name)
            if kind == H32:
                parts.append(FieldCodec.hex_to_le(value))
            else:
                parts.append(struct.pack(_STRUCT[kind], value))
        return b"".join(parts)

    @staticmethod
    def extract_payloads(logs: Iterable[str]) -> List[str]:
        """Base64 bodies of the ``Program data:`` lines, in order."""
        return [line[len(LOG_PREFIX):].strip() for line in logs if line.startswith(LOG_PREFIX)]

    @staticmethod
    def b64decode(body: str) -> bytes:
        """
        Decode one base64 log body.

        Raises:
            DecodeError: If the body is not valid base64
        """
        try:
            return base64.b64decode(body, validate=True)
        except (binascii.Error, ValueError) as e:
            raise DecodeError(f"Invalid base64 event data: {e}") from e

    def decode_log_line(self, body: str) -> Optional[PoolEvent]:
        return self.decode(self.b64decode(body))

    @staticmethod
    def to_log_line(payload: bytes) -> str:
        """Render a payload the way the ledger logs it."""
        return LOG_PREFIX + base64.b64encode(payload).decode("ascii")


# Nullifier account: [8-byte account discriminator][used u8][bump u8]
NULLIFIER_ACCOUNT_SIZE = DISCRIMINATOR_SIZE + 2


def decode_nullifier_account(data: bytes) -> bool:
    """
    Read the ``used`` flag of an on-chain nullifier account.

    Raises:
        DecodeError: If the account data is too short
    """
    if len(data) < NULLIFIER_ACCOUNT_SIZE:
        raise DecodeError(f"Nullifier account is {len(data)} bytes, expected {NULLIFIER_ACCOUNT_SIZE}")
    return data[DISCRIMINATOR_SIZE] != 0
