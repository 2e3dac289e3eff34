"""Broadcast signed transactions through the indexer."""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable

from bitcoinutils.transactions import Transaction

from .config import DEFAULT_RETRY_DELAY
from .indexer import IndexerError, IndexerHTTPError

logger = logging.getLogger(__name__)

DESCENDANT_LIMIT_MARKER = "descendant"

# One broadcast in flight per process; the indexer's rate limits are unknown.
_BROADCAST_GATE = threading.BoundedSemaphore(1)


class BroadcastRejected(RuntimeError):
    """Raised when the indexer refuses a transaction."""

    def __init__(self, txid: str, message: str) -> None:
        super().__init__(f"Broadcast of {txid} rejected: {message}")
        self.txid = txid
        self.message = message


class DescendantLimitExceeded(BroadcastRejected):
    """The transaction would exceed the unconfirmed descendant limit of its parent."""


def is_descendant_limit(message: str) -> bool:
    return DESCENDANT_LIMIT_MARKER in message.lower()


class Broadcaster:
    """Submit transactions, retrying on a fixed delay until they are accepted.

    A descendant-limit rejection is raised as ``DescendantLimitExceeded`` so
    the caller can wait for confirmations instead. Every other failure is
    retried; with ``max_attempts=None`` there is no ceiling.
    """

    def __init__(
        self,
        indexer: Any,
        retry_delay: float = DEFAULT_RETRY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
        max_attempts: int | None = None,
        gate: threading.BoundedSemaphore | None = None,
    ) -> None:
        self.indexer = indexer
        self.retry_delay = retry_delay
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._gate = gate or _BROADCAST_GATE

    def broadcast(self, tx: Transaction) -> str:
        txid = tx.get_txid()
        raw_hex = tx.to_hex()
        attempt = 0
        while True:
            attempt += 1
            try:
                return self._submit(txid, raw_hex)
            except DescendantLimitExceeded:
                raise
            except (BroadcastRejected, IndexerError) as exc:
                logger.warning("Broadcast attempt %d for %s failed: %s", attempt, txid, exc)
                if self._already_known(txid):
                    logger.info("Indexer already knows %s; treating it as broadcast", txid)
                    return txid
                if self.max_attempts is not None and attempt >= self.max_attempts:
                    raise
            self._sleep(self.retry_delay)

    def _submit(self, txid: str, raw_hex: str) -> str:
        with self._gate:
            try:
                reported = self.indexer.post_transaction(raw_hex)
            except IndexerHTTPError as exc:
                if is_descendant_limit(exc.body):
                    raise DescendantLimitExceeded(txid, exc.body) from exc
                raise BroadcastRejected(txid, exc.body) from exc
        if reported and reported != txid:
            logger.warning("Indexer reported txid %s for locally computed %s", reported, txid)
        logger.info("Broadcast %s", txid)
        return reported or txid

    def _already_known(self, txid: str) -> bool:
        try:
            return bool(self.indexer.has_transaction(txid))
        except IndexerError as exc:
            logger.debug("Could not look up %s: %s", txid, exc)
            return False
