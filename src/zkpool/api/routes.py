"""REST API endpoints for the shielded pool relayer."""

import base64
import binascii
import logging
import uuid
from typing import Optional

from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from zkpool import __version__
from zkpool.core.context import PoolContext
from zkpool.core.messages import NoteMessage
from zkpool.core.reconciliation import OperationKind, PendingIntent
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
from zkpool.models.schemas import (
    ErrorResponse,
    HealthResponse,
    HistoryResponse,
    InboxResponse,
    IntentRequest,
    IntentResponse,
    MerkleProofResponse,
    MerkleRootResponse,
    MessageCreatedResponse,
    MessageModel,
    MessageRequest,
    NullifierCheckResponse,
    PrepareRequest,
    PrepareResponse,
    SubmissionStatusResponse,
    SubmitRequest,
    SubmitResponse,
)
from zkpool.utils.encoding import FieldCodec

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

# First match wins; subclasses come before their bases.
ERROR_STATUS = (
    (ValidationError, 400, "VALIDATION_ERROR"),
    (DecodeError, 400, "DECODE_ERROR"),
    (DecryptionError, 400, "DECRYPTION_ERROR"),
    (NotFoundError, 404, "NOT_FOUND"),
    (DoubleSpendError, 409, "DOUBLE_SPEND"),
    (RootMismatchError, 409, "ROOT_MISMATCH"),
    (DuplicateMessageError, 409, "DUPLICATE_MESSAGE"),
    (TransientTransportError, 503, "TRANSIENT"),
    (IntegrityError, 500, "INTEGRITY_ERROR"),
    (StorageError, 500, "STORAGE_ERROR"),
)


def configure_logging(level: str = "INFO") -> None:
    """Set a basic log format for the service process."""
    logging.basicConfig(level=level.upper(), format=LOG_FORMAT)


def status_for(exc: ZKPoolException):
    """HTTP status and error code for a pool exception."""
    for exc_type, status, code in ERROR_STATUS:
        if isinstance(exc, exc_type):
            return status, code
    return 500, "INTERNAL_ERROR"


def get_context(request: Request) -> PoolContext:
    """Dependency returning the app's PoolContext."""
    return request.app.state.context


def message_model(message: NoteMessage) -> MessageModel:
    return MessageModel(
        **message.to_dict(),
        ciphertext_b64=base64.b64encode(message.ciphertext).decode("ascii"),
    )


def create_app(context: Optional[PoolContext] = None) -> FastAPI:
    """
    Build the relayer application.

    Args:
        context: Components to serve; built from settings when omitted

    Returns:
        FastAPI: Application with routes and error handlers registered
    """
    if context is None:
        context = PoolContext.build()
    configure_logging(context.settings.log_level)

    app = FastAPI(
        title="ZK Pool Relayer API",
        description="Prepare and submit shielded pool operations",
        version=__version__,
    )
    app.state.context = context

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Custom exception handler for validation errors - convert 422 to 400
    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Convert Pydantic validation errors (422) to 400 Bad Request."""
        messages = []
        for error in exc.errors():
            field = " -> ".join(str(loc) for loc in error["loc"])
            messages.append(f"{field}: {error['msg']}")
        return JSONResponse(
            status_code=400,
            content=ErrorResponse(error="; ".join(messages), code="VALIDATION_ERROR").model_dump(),
        )

    @app.exception_handler(ZKPoolException)
    async def pool_exception_handler(request: Request, exc: ZKPoolException):
        """Map pool errors to HTTP statuses."""
        status, code = status_for(exc)
        if status >= 500:
            logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        else:
            logger.info("%s %s rejected (%s): %s", request.method, request.url.path, code, exc)
        return JSONResponse(
            status_code=status,
            content=ErrorResponse(error=str(exc), code=code).model_dump(),
        )

    # ========================================================================
    # System
    # ========================================================================

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    def health_check(ctx: PoolContext = Depends(get_context)):
        """Check service health and accumulator state."""
        snapshot = ctx.tree.snapshot()
        return HealthResponse(
            status="operational",
            root=FieldCodec.to_hex(snapshot.root),
            num_leaves=snapshot.size,
            events_applied=ctx.listener.stats["events"],
            version=__version__,
        )

    # ========================================================================
    # Merkle
    # ========================================================================

    @app.get("/merkle/root", response_model=MerkleRootResponse, tags=["Merkle"])
    def merkle_root(ctx: PoolContext = Depends(get_context)):
        """Current accumulator root."""
        snapshot = ctx.tree.snapshot()
        return MerkleRootResponse(root=FieldCodec.to_hex(snapshot.root), num_leaves=snapshot.size, depth=snapshot.depth)

    @app.get("/merkle-proof", response_model=MerkleProofResponse, tags=["Merkle"])
    def merkle_proof(
        index: Optional[int] = Query(default=None, ge=0),
        commitment: Optional[str] = Query(default=None),
        ctx: PoolContext = Depends(get_context),
    ):
        """
        Inclusion proof by leaf index or by commitment.

        Exactly one of **index** and **commitment** must be given.
        """
        if (index is None) == (commitment is None):
            raise ValidationError("Give exactly one of index and commitment")
        if index is not None:
            proof = ctx.tree.proof(index)
        else:
            proof = ctx.tree.proof_for(FieldCodec.to_field(commitment))
        return MerkleProofResponse(**proof.to_dict())

    # ========================================================================
    # Relayer
    # ========================================================================

    @app.post("/api/v1/prepare/{kind}", response_model=PrepareResponse, tags=["Relayer"])
    def prepare(kind: OperationKind, request: PrepareRequest, ctx: PoolContext = Depends(get_context)):
        """
        Proof material for an operation.

        - **deposit**: insertion path of the next free index
        - **transfer**: path of the spent note plus both output positions
        - **withdraw**: path of the spent note
        """
        result = ctx.relayer.prepare(kind.value, request.commitment)
        return PrepareResponse(**result.to_dict())

    @app.post("/api/v1/submit/{kind}", response_model=SubmitResponse, tags=["Relayer"])
    def submit(kind: OperationKind, request: SubmitRequest, ctx: PoolContext = Depends(get_context)):
        """Verify and settle a proven operation."""
        result = ctx.relayer.submit(
            kind.value,
            request.proof,
            request.public_signals,
            canonical_fields=request.canonical_fields,
            submission_id=request.submission_id,
            asset_id=request.asset_id,
        )
        return SubmitResponse(**result.to_dict())

    @app.get("/api/v1/submissions/{submission_id}", response_model=SubmissionStatusResponse, tags=["Relayer"])
    def submission_status(submission_id: str, ctx: PoolContext = Depends(get_context)):
        """Current state of a prepared or submitted operation."""
        return SubmissionStatusResponse(**ctx.relayer.status(submission_id).to_dict())

    @app.post("/api/v1/intents", response_model=IntentResponse, tags=["Relayer"])
    def record_intent(request: IntentRequest, ctx: PoolContext = Depends(get_context)):
        """Record a client-prepared intent for history attribution."""
        stored = ctx.ledger.record_intent(
            PendingIntent(
                intent_id=request.intent_id or uuid.uuid4().hex,
                kind=request.kind,
                recipient_key=request.recipient_key,
                sender_key=request.sender_key,
                amount=request.amount,
                commitment=request.commitment,
                nullifier=request.nullifier,
            )
        )
        return IntentResponse.model_validate(stored)

    @app.get("/api/v1/nullifiers/check/{nullifier}", response_model=NullifierCheckResponse, tags=["Relayer"])
    def check_nullifier(nullifier: str, ctx: PoolContext = Depends(get_context)):
        """Whether a nullifier has been spent."""
        record = ctx.nullifiers.get_record(nullifier)
        if record is None:
            return NullifierCheckResponse(nullifier=ctx.nullifiers.key(nullifier), spent=False)
        return NullifierCheckResponse(**record.to_dict())

    # ========================================================================
    # History
    # ========================================================================

    @app.get("/transactions", response_model=HistoryResponse, tags=["History"])
    def transactions(
        owner: Optional[str] = None,
        kind: Optional[OperationKind] = None,
        cursor: Optional[str] = None,
        limit: Optional[int] = Query(default=None, ge=1, le=500),
        ctx: PoolContext = Depends(get_context),
    ):
        """Reconciled history, newest first, paged by cursor."""
        page = ctx.ledger.history(
            owner=owner,
            kind=kind,
            cursor=cursor,
            limit=limit or ctx.settings.history_page_limit,
        )
        return HistoryResponse(entries=[e.to_dict() for e in page.entries], next_cursor=page.next_cursor)

    # ========================================================================
    # Messages
    # ========================================================================

    @app.post("/api/v1/messages", response_model=MessageCreatedResponse, tags=["Messages"])
    def post_message(request: MessageRequest, ctx: PoolContext = Depends(get_context)):
        """Store a sealed note for its recipient."""
        try:
            ciphertext = base64.b64decode(request.ciphertext_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"ciphertext_b64 is not base64: {e}") from e
        stored = ctx.messages.post(
            request.recipient_key,
            ciphertext,
            kind=request.kind,
            sender_key=request.sender_key,
            commitment=request.commitment,
            enc_tag=request.enc_tag,
        )
        return MessageCreatedResponse(id=stored.message_id, content_hash=stored.content_hash)

    @app.get("/api/v1/messages/inbox", response_model=InboxResponse, tags=["Messages"])
    def message_inbox(
        recipient_key: Optional[str] = None,
        enc_tag: Optional[str] = None,
        cursor: Optional[int] = Query(default=None, ge=0),
        limit: int = Query(default=50, ge=1, le=100),
        ctx: PoolContext = Depends(get_context),
    ):
        """
        Messages for a recipient, oldest first, or every message under a tag.

        Exactly one of **recipient_key** and **enc_tag** must be given.
        """
        messages, next_cursor = ctx.messages.find(recipient_key, enc_tag, cursor=cursor, limit=limit)
        return InboxResponse(messages=[message_model(m) for m in messages], next_cursor=next_cursor)

    @app.get("/api/v1/messages/{message_id}", response_model=MessageModel, tags=["Messages"])
    def get_message(message_id: int, ctx: PoolContext = Depends(get_context)):
        """One message by id."""
        return message_model(ctx.messages.get(message_id))

    return app
