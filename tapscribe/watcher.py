"""Funding watcher polling the indexer until an address has been paid."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List

from .config import DEFAULT_POLL_INTERVAL
from .indexer import IndexerError

logger = logging.getLogger(__name__)


class WatchState(str, Enum):
    WAITING = "waiting"
    FUNDED = "funded"


class JobAbandoned(RuntimeError):
    """Raised when a funding wait is stopped because its job was removed."""


class FundingTimeout(RuntimeError):
    """Raised when a bounded funding wait runs out of polls."""


@dataclass(frozen=True)
class FundingEvent:
    """The output that paid a watched address."""

    txid: str
    vout: int
    amount: int
    confirmed: bool = False


def _chronological(transactions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    # Esplora lists newest first; confirmed by height, then mempool.
    ordered = list(reversed(transactions))

    def sort_key(tx: Dict[str, Any]) -> tuple[int, int]:
        status = tx.get("status") or {}
        if status.get("confirmed"):
            return (0, int(status.get("block_height") or 0))
        return (1, 0)

    return sorted(ordered, key=sort_key)


class FundingWatcher:
    """Poll an address until it has received a spendable output.

    Each poll first checks the address summary for any confirmed (or, when
    ``include_mempool`` is set, unconfirmed) transaction. Once one appears,
    the address history is scanned oldest first and the first output paying
    the address with at least ``min_amount`` sats wins. Indexer failures
    during a poll count as "not funded yet".
    """

    def __init__(
        self,
        indexer: Any,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        max_polls: int | None = None,
    ) -> None:
        self.indexer = indexer
        self.poll_interval = poll_interval
        self.max_polls = max_polls
        self._sleep = sleep
        self.state = WatchState.WAITING

    def wait_for_funding(
        self,
        address: str,
        *,
        include_mempool: bool = True,
        min_amount: int = 0,
        should_continue: Callable[[], bool] | None = None,
    ) -> FundingEvent:
        self.state = WatchState.WAITING
        logger.info(
            "Waiting for %s to receive %d sats (unconfirmed %s)",
            address,
            min_amount,
            "accepted" if include_mempool else "ignored",
        )
        polls = 0
        while True:
            if should_continue is not None and not should_continue():
                raise JobAbandoned(f"Stopped waiting for {address}: job was removed")
            event = self.poll_once(address, include_mempool=include_mempool, min_amount=min_amount)
            if event is not None:
                self.state = WatchState.FUNDED
                logger.info("%s funded by %s:%d (%d sats)", address, event.txid, event.vout, event.amount)
                return event
            polls += 1
            if self.max_polls is not None and polls >= self.max_polls:
                raise FundingTimeout(f"{address} was not funded after {polls} polls")
            self._sleep(self.poll_interval)

    def poll_once(
        self, address: str, *, include_mempool: bool = True, min_amount: int = 0
    ) -> FundingEvent | None:
        try:
            if not self._has_received(address, include_mempool):
                return None
            return self._locate_output(address, include_mempool, min_amount)
        except (IndexerError, KeyError, TypeError, ValueError) as exc:
            logger.debug("Funding poll for %s failed: %s", address, exc)
            return None

    def _has_received(self, address: str, include_mempool: bool) -> bool:
        summary = self.indexer.address_summary(address)
        if int(summary["chain_stats"]["tx_count"]) > 0:
            return True
        return include_mempool and int(summary["mempool_stats"]["tx_count"]) > 0

    def _locate_output(
        self, address: str, include_mempool: bool, min_amount: int
    ) -> FundingEvent | None:
        for tx in _chronological(self.indexer.address_transactions(address)):
            confirmed = bool((tx.get("status") or {}).get("confirmed"))
            if not confirmed and not include_mempool:
                continue
            for index, output in enumerate(tx.get("vout") or []):
                if output.get("scriptpubkey_address") != address:
                    continue
                amount = int(output.get("value", 0))
                if amount < min_amount:
                    logger.debug(
                        "Output %s:%d pays %s only %d sats; %d required",
                        tx["txid"],
                        index,
                        address,
                        amount,
                        min_amount,
                    )
                    continue
                return FundingEvent(txid=tx["txid"], vout=index, amount=amount, confirmed=confirmed)
        return None
