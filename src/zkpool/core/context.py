"""Wiring of the pool's shared components."""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from zkpool.config.settings import PoolSettings, get_settings
from zkpool.core.commitment import NoteCommitmentScheme
from zkpool.core.events import OnChainEventDecoder
from zkpool.core.listener import EventListener
from zkpool.core.merkle_tree import TREE_DEPTH, MerkleAccumulator
from zkpool.core.messages import InMemoryMessageStore, MessageBox
from zkpool.core.nullifier import InMemoryNullifierStore, NullifierRegistry
from zkpool.core.prover import (
    CIRCUIT_KINDS,
    ArtifactStore,
    ProofService,
    ProvingBackend,
    TransparentBackend,
    write_artifacts,
)
from zkpool.core.reconciliation import InMemoryLedgerStore, ReconciliationLedger
from zkpool.core.relayer import LocalSettlementGateway, RelayerService, SettlementGateway
from zkpool.storage.database import (
    DatabaseManager,
    InMemoryLeafStore,
    SqlLeafStore,
    SqlLedgerStore,
    SqlMessageStore,
    SqlNullifierStore,
)
from zkpool.utils.hash import FieldHasher

logger = logging.getLogger(__name__)


@dataclass
class PoolContext:
    """
    Every long-lived component, built once and passed explicitly.

    Nothing in the package reaches for module-level singletons; routes,
    the relayer and the listener all read from the context they are given.
    """

    settings: PoolSettings
    hasher: FieldHasher
    scheme: NoteCommitmentScheme
    tree: MerkleAccumulator
    nullifiers: NullifierRegistry
    ledger: ReconciliationLedger
    decoder: OnChainEventDecoder
    proofs: ProofService
    listener: EventListener
    gateway: SettlementGateway
    leaf_store: object
    messages: MessageBox
    db: Optional[DatabaseManager] = None
    relayer: Optional[RelayerService] = None

    @classmethod
    def build(
        cls,
        settings: Optional[PoolSettings] = None,
        db: Optional[DatabaseManager] = None,
        backend: Optional[ProvingBackend] = None,
        hasher: Optional[FieldHasher] = None,
        gateway: Optional[SettlementGateway] = None,
        depth: int = TREE_DEPTH,
        bootstrap_artifacts: bool = False,
    ) -> "PoolContext":
        """
        Build a context.

        Args:
            settings: Defaults to get_settings()
            db: Row store; in-memory stores are used when omitted
            backend: Proving backend; defaults to TransparentBackend
            hasher: Field hasher; defaults to the SHA-256 FieldHasher
            gateway: Settlement gateway; defaults to the in-process ledger,
                whose notifications feed the listener directly
            depth: Accumulator depth
            bootstrap_artifacts: Write development artifacts for circuits
                that have none

        Returns:
            PoolContext: Wired components with the accumulator rebuilt from
            stored leaves
        """
        settings = settings or get_settings()
        hasher = hasher or FieldHasher()

        if db is not None:
            db.create_tables()
            nullifier_store = SqlNullifierStore(db)
            ledger_store = SqlLedgerStore(db)
            leaf_store = SqlLeafStore(db)
            message_store = SqlMessageStore(db)
        else:
            nullifier_store = InMemoryNullifierStore()
            ledger_store = InMemoryLedgerStore()
            leaf_store = InMemoryLeafStore()
            message_store = InMemoryMessageStore()

        leaves = leaf_store.load()
        tree = MerkleAccumulator(hasher, depth=depth, leaves=leaves)
        if leaves:
            logger.info("Rebuilt accumulator from %d stored leaves", len(leaves))

        nullifiers = NullifierRegistry(nullifier_store)
        ledger = ReconciliationLedger(ledger_store)
        decoder = OnChainEventDecoder()
        listener = EventListener(
            nullifiers,
            ledger,
            decoder,
            reconnect_base=settings.reconnect_base_seconds,
            reconnect_max=settings.reconnect_max_seconds,
        )

        artifacts_dir = Path(settings.artifacts_dir)
        if bootstrap_artifacts:
            for kind in CIRCUIT_KINDS:
                if not (artifacts_dir / kind / ArtifactStore.MANIFEST).is_file():
                    write_artifacts(artifacts_dir, kind)
                    logger.warning("Wrote development artifacts for %s circuit", kind)

        context = cls(
            settings=settings,
            hasher=hasher,
            scheme=NoteCommitmentScheme(hasher),
            tree=tree,
            nullifiers=nullifiers,
            ledger=ledger,
            decoder=decoder,
            proofs=ProofService(backend or TransparentBackend(), ArtifactStore(artifacts_dir)),
            listener=listener,
            gateway=gateway or LocalSettlementGateway(decoder, on_notification=listener.handle_notification),
            leaf_store=leaf_store,
            messages=MessageBox(message_store),
            db=db,
        )
        context.relayer = RelayerService.from_context(context)
        return context
