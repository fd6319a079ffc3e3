"""Pydantic data models for the relayer HTTP API."""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from zkpool.core.reconciliation import EntryStatus, OperationKind

FieldValue = Union[int, str]


class PrepareRequest(BaseModel):
    """Request model for prepare operations."""
    commitment: Optional[str] = Field(
        default=None,
        description="Commitment being spent (hex); required for transfer and withdraw",
    )


class PrepareExtra(BaseModel):
    """Pre-insertion siblings of a transfer's two output positions."""
    out1_path_elements: List[str]
    out2_path_elements: List[str]


class PrepareResponse(BaseModel):
    """Proof material returned by prepare."""
    kind: OperationKind
    submission_id: str = Field(..., description="Key for submit and status")
    root: str = Field(..., description="Merkle root the path folds to (hex)")
    leaf: Optional[str] = Field(default=None, description="Leaf being spent (hex)")
    leaf_index: Optional[int] = None
    next_leaf_index: int = Field(..., description="Next free leaf index")
    path_elements: List[str]
    path_indices: List[int]
    extra: Optional[PrepareExtra] = None


class SubmitRequest(BaseModel):
    """Request model for submit operations."""
    proof: Dict[str, Any] = Field(..., description="Opaque proof object")
    public_signals: Union[List[FieldValue], Dict[str, FieldValue]] = Field(
        ..., description="Public signals in verifier order, or keyed by name or position"
    )
    canonical_fields: Dict[str, FieldValue] = Field(
        default_factory=dict,
        description="Named values that must equal their public signals",
    )
    submission_id: Optional[str] = Field(default=None, description="Id returned by prepare")
    asset_id: FieldValue = Field(default=0, description="Asset recorded with the operation")


class SubmitResponse(BaseModel):
    """Response model for submit operations."""
    submission_id: str
    kind: OperationKind
    settlement_ref: str = Field(..., description="Ledger transaction signature")
    roots: List[str]
    indices: List[int]
    state: str


class SubmissionStatusResponse(BaseModel):
    """Current state of a submission."""
    submission_id: str
    kind: OperationKind
    state: str
    root: Optional[str] = None
    settlement_ref: Optional[str] = None
    result: Optional[SubmitResponse] = None
    error: Optional[str] = None


class IntentRequest(BaseModel):
    """Request model for recording a pending intent."""
    intent_id: Optional[str] = Field(default=None, description="Generated when omitted")
    kind: OperationKind
    recipient_key: Optional[str] = None
    sender_key: Optional[str] = None
    amount: Optional[int] = Field(default=None, ge=0)
    commitment: Optional[str] = None
    nullifier: Optional[str] = None


class IntentResponse(BaseModel):
    """Stored intent."""
    intent_id: str
    kind: OperationKind
    recipient_key: Optional[str] = None
    sender_key: Optional[str] = None
    amount: Optional[int] = None
    commitment: Optional[str] = None
    nullifier: Optional[str] = None
    created_at: datetime
    settlement_ref: Optional[str] = None

    class Config:
        from_attributes = True


class MerkleRootResponse(BaseModel):
    """Response model for accumulator state."""
    root: str = Field(..., description="Current Merkle root (hex)")
    num_leaves: int
    depth: int


class MerkleProofResponse(BaseModel):
    """Inclusion proof of one leaf."""
    root: str
    leaf: str
    leaf_index: int
    path_elements: List[str]
    path_indices: List[int]


class HistoryEntryModel(BaseModel):
    """One line of reconciled history."""
    id: str
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
    attributed: bool = False


class HistoryResponse(BaseModel):
    """A page of history."""
    entries: List[HistoryEntryModel]
    next_cursor: Optional[str] = Field(default=None, description="Pass back as cursor for the next page")


class NullifierCheckResponse(BaseModel):
    """Spent status of a nullifier."""
    nullifier: str
    spent: bool
    settlement_ref: Optional[str] = None
    spent_at: Optional[datetime] = None
    kind: Optional[str] = None


class HealthResponse(BaseModel):
    """Health check response."""
    status: str = Field(..., description="Service status")
    root: str
    num_leaves: int
    events_applied: int = 0
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())
    version: str


class ErrorResponse(BaseModel):
    """Error response."""
    error: str = Field(..., description="Error message")
    code: str = Field(..., description="Error code")
    timestamp: str = Field(default_factory=lambda: datetime.now().isoformat())


class MessageRequest(BaseModel):
    """Request model for posting a sealed note."""
    recipient_key: str = Field(..., description="Recipient's note encryption key (0x hex)")
    ciphertext_b64: str = Field(..., min_length=1, description="Base64 envelope, opaque to the relayer")
    kind: str = Field(default="note-transfer", description="note-deposit, note-transfer, note-withdraw or note-message")
    sender_key: Optional[str] = None
    commitment: Optional[str] = Field(default=None, description="Commitment of the sealed note (hex)")
    enc_tag: Optional[str] = Field(default=None, description="Encrypted-note tag from the Transfer event (hex)")


class MessageCreatedResponse(BaseModel):
    """Id and content hash of a stored message."""
    id: int
    content_hash: str


class MessageModel(BaseModel):
    """A stored message with its envelope."""
    id: int
    recipient_key: str
    sender_key: Optional[str] = None
    kind: str
    commitment: Optional[str] = None
    enc_tag: Optional[str] = None
    content_hash: str
    ciphertext_b64: str
    created_at: datetime


class InboxResponse(BaseModel):
    """A page of messages, oldest first."""
    messages: List[MessageModel]
    next_cursor: Optional[int] = Field(default=None, description="Pass back as cursor for the next page")
