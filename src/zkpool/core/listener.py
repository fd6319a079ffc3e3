"""Ledger log listener.

Consumes log notifications from the ledger subscription, decodes pool
events and applies them to the nullifier registry and the reconciliation
ledger. A bad payload or a failing store write costs one event, never the
listener.
"""

import asyncio
import logging
import threading
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

from zkpool.core.events import (
    DepositCompleted,
    LogNotification,
    OnChainEventDecoder,
    PoolEvent,
    TransferCompleted,
    decode_nullifier_account,
)
from zkpool.core.nullifier import NullifierRegistry, SpendMeta
from zkpool.core.reconciliation import ReconciliationLedger
from zkpool.exceptions import DecodeError, TransientTransportError
from zkpool.utils.encoding import short_hex
from zkpool.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

Subscriber = Callable[[PoolEvent, str], None]
SubscriptionFactory = Callable[[], AsyncIterator[LogNotification]]


class EventListener:
    """
    Applies decoded pool events to local state.

    Events of one notification are applied in log order. Replays are safe:
    records are upserted by key and nullifier spends under the same
    settlement reference are no-ops.
    """

    def __init__(
        self,
        nullifiers: NullifierRegistry,
        ledger: ReconciliationLedger,
        decoder: Optional[OnChainEventDecoder] = None,
        reconnect_base: float = 1.0,
        reconnect_max: float = 30.0,
        sleep: Callable[[float], "asyncio.Future"] = asyncio.sleep,
    ):
        self.nullifiers = nullifiers
        self.ledger = ledger
        self.decoder = decoder or OnChainEventDecoder()
        self.reconnect_base = reconnect_base
        self.reconnect_max = reconnect_max
        self._sleep = sleep
        self._subscribers: List[Subscriber] = []
        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._stopped = False
        self.stats = {
            "notifications": 0,
            "events": 0,
            "skipped_failed": 0,
            "decode_errors": 0,
            "apply_errors": 0,
            "reconnects": 0,
        }

    def subscribe(self, callback: Subscriber) -> Callable[[], None]:
        """
        Register a callback for every applied event.

        Returns:
            A function that removes the callback
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    def handle_notification(self, notification: LogNotification) -> List[PoolEvent]:
        """
        Decode and apply every pool event in one transaction's logs.

        Returns:
            List of events that were applied
        """
        self.stats["notifications"] += 1
        if notification.err is not None:
            self.stats["skipped_failed"] += 1
            logger.debug("Skipping failed transaction %s", short_hex(notification.signature))
            return []

        applied = []
        for body in self.decoder.extract_payloads(notification.logs):
            try:
                event = self.decoder.decode_log_line(body)
            except DecodeError as e:
                self.stats["decode_errors"] += 1
                logger.warning("Undecodable event in %s: %s", short_hex(notification.signature), e)
                continue
            if event is None:
                continue

            try:
                self.apply(event, notification.signature)
            except Exception:
                self.stats["apply_errors"] += 1
                logger.error(
                    "Failed to apply %s event from %s",
                    event.kind,
                    short_hex(notification.signature),
                    exc_info=True,
                )
                continue

            self.stats["events"] += 1
            applied.append(event)
            self._publish(event, notification.signature)
        return applied

    def apply(self, event: PoolEvent, settlement_ref: str) -> None:
        """
        Apply one event.

        Raises:
            DoubleSpendError: If the nullifier was spent by another settlement
        """
        if isinstance(event, DepositCompleted):
            with self._lock_for(f"commitment:{event.commitment}"):
                self.ledger.apply_event(event, settlement_ref)
            logger.info("Deposit %s at leaf %d", short_hex(event.commitment), event.next_leaf_index)
            return

        with self._lock_for(f"nullifier:{event.nullifier}"):
            self.nullifiers.mark_spent(event.nullifier, settlement_ref, kind=event.kind)
            self.ledger.apply_event(event, settlement_ref)
        if isinstance(event, TransferCompleted):
            logger.info("Transfer spent %s, outputs at %d and %d",
                        short_hex(event.nullifier), event.next_leaf_index, event.next_leaf_index + 1)
        else:
            logger.info("Withdraw spent %s for %d", short_hex(event.nullifier), event.amount)

    def _publish(self, event: PoolEvent, settlement_ref: str) -> None:
        for callback in list(self._subscribers):
            try:
                callback(event, settlement_ref)
            except Exception:
                logger.error("Subscriber %r failed on %s event", callback, event.kind, exc_info=True)

    def sync_nullifier_account(
        self,
        nullifier: Union[int, str, bytes],
        account_data: bytes,
        settlement_ref: Optional[str] = None,
    ) -> bool:
        """
        Reconcile a nullifier with its on-chain account.

        Returns:
            bool: The account's ``used`` flag

        Raises:
            DecodeError: If the account data is malformed
        """
        used = decode_nullifier_account(account_data)
        if used:
            self.nullifiers.upsert(nullifier, SpendMeta(spent=True, settlement_ref=settlement_ref))
        return used

    async def run(self, subscribe: SubscriptionFactory, max_reconnects: Optional[int] = None) -> None:
        """
        Consume the subscription until stopped.

        A dropped or finished stream is reopened after a bounded
        exponential delay; the delay resets once a notification arrives.

        Args:
            subscribe: Opens a new notification stream
            max_reconnects: Give up after this many reconnects (None: never)
        """
        self._stopped = False
        attempt = 0
        while not self._stopped:
            try:
                async for notification in subscribe():
                    attempt = 0
                    self.handle_notification(notification)
                    if self._stopped:
                        break
            except (TransientTransportError, ConnectionError) as e:
                logger.warning("Log subscription dropped: %s", e)

            if self._stopped:
                break
            if max_reconnects is not None and self.stats["reconnects"] >= max_reconnects:
                logger.error("Giving up after %d reconnects", self.stats["reconnects"])
                break

            delay = backoff_delay(attempt, self.reconnect_base, self.reconnect_max)
            attempt += 1
            self.stats["reconnects"] += 1
            logger.info("Reconnecting log subscription in %.1fs", delay)
            await self._sleep(delay)

    def stop(self) -> None:
        self._stopped = True
