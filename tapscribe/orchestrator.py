"""End-to-end commit/reveal workflow.

``Inscriber.run`` validates a request, persists it, waits for the funding
address to be paid, broadcasts the commit transaction and then reveals every
item in order. ``Inscriber.resume`` picks a persisted job back up after an
interruption; the steps already recorded on the job are not repeated.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Sequence

from bitcoinutils.script import Script
from bitcoinutils.transactions import TxOutput

from .broadcaster import Broadcaster, DescendantLimitExceeded
from .config import DEFAULT_PADDING, TapscribeConfig
from .fees import FeeOracle, FundingAccountant, FundingRequirement, format_btc, tip_enabled
from .inscription import ContentItem, Inscription, check_payload_size, derive_inscription, resolve_items
from .job_store import FundingMode, InscriptionJob, JobStore
from .keys import EphemeralKey
from .scripts import TapLeaf, derive_init_leaf
from .taproot import decode_taproot_address, hrp_for_network, p2tr_script_pubkey
from .transaction import build_commit_transaction, build_reveal_transaction, self_test
from .watcher import FundingEvent, FundingWatcher

logger = logging.getLogger(__name__)


class RunState(str, Enum):
    VALIDATING = "validating"
    DERIVING_KEYS = "deriving_keys"
    FUNDING = "funding"
    BROADCASTING_COMMIT = "broadcasting_commit"
    FUNDING_REVEAL = "funding_reveal"
    BROADCASTING_REVEAL = "broadcasting_reveal"
    DONE = "done"
    FAILED = "failed"


class PendingJobExists(RuntimeError):
    """Raised when a new run would overwrite a job that has not finished."""


@dataclass
class InscribeRequest:
    """Parameters for a new run, as supplied by the caller."""

    address: str
    items: Sequence[ContentItem] = ()
    text: str | None = None
    media_type: str | None = None
    padding: int = DEFAULT_PADDING
    tip: int = 0
    tipping_address: str | None = None
    key: str | None = None
    network: str = "mainnet"


@dataclass
class PreparedJob:
    job: InscriptionJob
    key: EphemeralKey
    init_leaf: TapLeaf
    inscriptions: List[Inscription]
    requirement: FundingRequirement

    @property
    def funding_address(self) -> str:
        return self.init_leaf.address


@dataclass
class InscriptionResult:
    funding_address: str
    commit_txid: str
    reveal_txids: List[str] = field(default_factory=list)

    @property
    def inscription_ids(self) -> List[str]:
        return [f"{txid}i0" for txid in self.reveal_txids]


class Inscriber:
    """Sequence derivation, funding, commit and reveals for one job at a time."""

    def __init__(
        self,
        indexer: Any,
        job_store: JobStore,
        *,
        fee_oracle: FeeOracle | None = None,
        watcher: FundingWatcher | None = None,
        broadcaster: Broadcaster | None = None,
        log: Callable[[str], None] | None = None,
    ) -> None:
        self.indexer = indexer
        self.job_store = job_store
        self.fee_oracle = fee_oracle or FeeOracle(indexer)
        self.watcher = watcher or FundingWatcher(indexer)
        self.broadcaster = broadcaster or Broadcaster(indexer)
        self._log_callback = log
        self.state = RunState.VALIDATING

    @classmethod
    def from_config(
        cls,
        config: TapscribeConfig,
        indexer: Any,
        job_store: JobStore,
        log: Callable[[str], None] | None = None,
    ) -> "Inscriber":
        return cls(
            indexer,
            job_store,
            fee_oracle=FeeOracle(indexer, min_fee_rate=config.min_fee_rate),
            watcher=FundingWatcher(indexer, poll_interval=config.poll_interval),
            broadcaster=Broadcaster(indexer, retry_delay=config.retry_delay),
            log=log,
        )

    # Public API -----------------------------------------------------------

    def run(self, request: InscribeRequest, *, replace: bool = False) -> InscriptionResult:
        """Start a new job and drive it to completion.

        Raises:
            PendingJobExists: If the store still holds an unfinished job and
                ``replace`` is not set.
        """

        try:
            if not replace and self.job_store.exists():
                raise PendingJobExists(
                    "An inscription job is still pending; resume or abandon it first"
                )
            job = self._job_from_request(request)
            key, init_leaf = self._unlock(job)
            self.indexer.check_address(job.address)
            self.job_store.save(job)
            return self._execute(job, key, init_leaf)
        except Exception:
            self.state = RunState.FAILED
            raise

    def resume(self) -> InscriptionResult | None:
        """Continue the persisted job, if there is one."""

        job = self.job_store.load()
        if job is None:
            return None
        self._log(f"Resuming pending inscription job for {job.address}")
        try:
            key, init_leaf = self._unlock(job)
            self.indexer.check_address(job.address)
            return self._execute(job, key, init_leaf)
        except Exception:
            self.state = RunState.FAILED
            raise

    def abandon(self) -> bool:
        """Drop the persisted job; a running wait notices and stops."""

        if not self.job_store.exists():
            return False
        self.job_store.clear()
        self._log("Old transaction is removed")
        return True

    def prepare(self, request: InscribeRequest, fee_rate: int | None = None) -> PreparedJob:
        """Derive leaves, fees and the funding requirement without waiting or persisting."""

        job = self._job_from_request(request)
        key, init_leaf = self._unlock(job)
        job.fee_rate = fee_rate if fee_rate is not None else self.fee_oracle.fee_rate()
        return self._derive(job, key, init_leaf)

    # Steps ----------------------------------------------------------------

    def _job_from_request(self, request: InscribeRequest) -> InscriptionJob:
        self.state = RunState.VALIDATING
        hrp_for_network(request.network)
        decode_taproot_address(request.address, request.network)
        items = resolve_items(request.items, request.text, request.media_type)
        return InscriptionJob(
            items=items,
            address=request.address.strip(),
            key=request.key or EphemeralKey.generate().hex(),
            network=request.network,
            padding=request.padding,
            tip=request.tip,
            tipping_address=request.tipping_address,
            media_type=request.media_type,
            text=request.text,
        )

    def _unlock(self, job: InscriptionJob) -> tuple[EphemeralKey, TapLeaf]:
        self.state = RunState.VALIDATING
        decode_taproot_address(job.address, job.network)
        if tip_enabled(job.tip, job.tipping_address):
            decode_taproot_address(job.tipping_address, job.network)
        if not job.items:
            raise ValueError("Nothing to inscribe: the job has no content items")
        for item in job.items:
            check_payload_size(item)

        self.state = RunState.DERIVING_KEYS
        key = EphemeralKey.from_hex(job.key)
        init_leaf = derive_init_leaf(key.xonly, job.network)
        self_test(key, init_leaf)
        return key, init_leaf

    def _derive(self, job: InscriptionJob, key: EphemeralKey, init_leaf: TapLeaf) -> PreparedJob:
        if job.fee_rate is None:
            job.fee_rate = self.fee_oracle.fee_rate()
            self.job_store.save(job)
        inscriptions = [
            derive_inscription(key, item, job.fee_rate, job.network) for item in job.items
        ]
        accountant = FundingAccountant(
            padding=job.padding, tip=job.tip, tipping_address=job.tipping_address
        )
        requirement = accountant.compute(init_leaf, inscriptions, job.fee_rate)
        return PreparedJob(
            job=job,
            key=key,
            init_leaf=init_leaf,
            inscriptions=inscriptions,
            requirement=requirement,
        )

    def _execute(self, job: InscriptionJob, key: EphemeralKey, init_leaf: TapLeaf) -> InscriptionResult:
        prepared = self._derive(job, key, init_leaf)
        destination_script = p2tr_script_pubkey(decode_taproot_address(job.address, job.network))

        if job.commit_txid is None:
            self._commit(prepared)
        else:
            logger.info("Commit %s already broadcast; skipping funding", job.commit_txid)

        for index in range(len(job.reveal_txids), len(prepared.inscriptions)):
            self._reveal(prepared, index, destination_script)

        self.job_store.clear()
        self.state = RunState.DONE
        return InscriptionResult(
            funding_address=prepared.funding_address,
            commit_txid=job.commit_txid or "",
            reveal_txids=list(job.reveal_txids),
        )

    def _commit(self, prepared: PreparedJob) -> None:
        job = prepared.job
        tip_output = None
        if tip_enabled(job.tip, job.tipping_address):
            tip_output = TxOutput(
                job.tip,
                p2tr_script_pubkey(decode_taproot_address(job.tipping_address, job.network)),
            )

        self._log(
            f"Please send {format_btc(prepared.requirement.rounded_total)} BTC to "
            f"{prepared.funding_address} to fund the inscription"
        )
        while True:
            self.state = RunState.FUNDING
            funding = self._wait(job, prepared.funding_address, prepared.requirement.total)
            self._log(
                f"Funding '{funding.txid}' received, do not close the process while the "
                "inscriptions are broadcast..."
            )
            self.state = RunState.BROADCASTING_COMMIT
            commit = build_commit_transaction(
                prepared.key,
                prepared.init_leaf,
                funding,
                prepared.inscriptions,
                job.padding,
                tip_output,
            )
            try:
                job.commit_txid = self.broadcaster.broadcast(commit)
            except DescendantLimitExceeded:
                self._require_confirmed(job)
                continue
            break
        self.job_store.save(job)
        self._log(f"Commit transaction {job.commit_txid} broadcast")

    def _reveal(self, prepared: PreparedJob, index: int, destination_script: Script) -> None:
        job = prepared.job
        inscription = prepared.inscriptions[index]
        amount = inscription.commit_value(job.padding)
        while True:
            self.state = RunState.FUNDING_REVEAL
            seen = self._wait(job, inscription.address, amount)
            if seen.txid != job.commit_txid:
                logger.debug(
                    "%s was paid by %s; revealing from commit output %s:%d",
                    inscription.address,
                    seen.txid,
                    job.commit_txid,
                    index,
                )
            # commit output i funds inscription i, even when two items share an address
            funding = FundingEvent(
                txid=job.commit_txid, vout=index, amount=amount, confirmed=seen.confirmed
            )
            self.state = RunState.BROADCASTING_REVEAL
            reveal = build_reveal_transaction(prepared.key, inscription, funding, destination_script)
            try:
                txid = self.broadcaster.broadcast(reveal)
            except DescendantLimitExceeded:
                self._require_confirmed(job)
                continue
            break
        job.reveal_txids.append(txid)
        self.job_store.save(job)
        self._log(f"{txid}i0")

    def _wait(self, job: InscriptionJob, address: str, min_amount: int) -> FundingEvent:
        return self.watcher.wait_for_funding(
            address,
            include_mempool=job.funding_mode is FundingMode.ALLOW_UNCONFIRMED,
            min_amount=min_amount,
            should_continue=self.job_store.exists,
        )

    def _require_confirmed(self, job: InscriptionJob) -> None:
        job.funding_mode = FundingMode.CONFIRMED_ONLY
        self.job_store.save(job)
        self._log("Descendant transaction detected. Waiting for parent to confirm.")

    def _log(self, message: str) -> None:
        if self._log_callback is None:
            logger.info(message)
        else:
            self._log_callback(message)
