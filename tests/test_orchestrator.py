from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Callable, Dict, List

import pytest
from bitcoinutils.transactions import Transaction

from tapscribe.broadcaster import Broadcaster, BroadcastRejected
from tapscribe.fees import format_btc
from tapscribe.indexer import IndexerHTTPError
from tapscribe.inscription import ContentItem, PayloadTooLarge
from tapscribe.job_store import FileJobStore, FundingMode, InscriptionJob, MemoryJobStore
from tapscribe.keys import EphemeralKey, KeyValidationFailed
from tapscribe.orchestrator import (
    InscribeRequest,
    Inscriber,
    PendingJobExists,
    PreparedJob,
    RunState,
)
from tapscribe.taproot import InvalidAddress, create_taproot_address, p2tr_script_pubkey
from tapscribe.watcher import FundingTimeout, FundingWatcher, JobAbandoned

DESTINATION_KEY = bytes(range(32))
DESTINATION = create_taproot_address(DESTINATION_KEY, "mainnet")
TIPPING_ADDRESS = "bc1p0xlxvlhemja6c4dqv22uapctqupfhlxm9h8z3k2e72q4k9hcz7vqzk5jj0"
TIPPING_ADDRESS_KEY_HEX = "79be667ef9dcbbac55a06295ce870b07029bfcdb2dce28d959f2815b16f81798"


class StubIndexer:
    """In-memory indexer: addresses are paid explicitly, posts are recorded."""

    def __init__(self, half_hour_fee: float = 5) -> None:
        self.fees: Dict[str, Any] = {"halfHourFee": half_hour_fee}
        self.txs: Dict[str, List[Dict[str, Any]]] = {}
        self.posted: List[str] = []
        self.reject_on: Dict[int, Exception] = {}
        self.calls: List[str] = []
        self.spent: set[tuple[str, int]] = set()
        self._counter = 0

    def pay(self, address: str, amount: int, confirmed: bool = True) -> str:
        self._counter += 1
        txid = f"{self._counter:064x}"
        self.txs.setdefault(address, []).insert(
            0,
            {
                "txid": txid,
                "status": {"confirmed": confirmed, "block_height": 800_000 + self._counter},
                "vout": [{"scriptpubkey_address": address, "value": amount}],
            },
        )
        return txid

    def confirm_all(self) -> None:
        for txs in self.txs.values():
            for tx in txs:
                tx["status"]["confirmed"] = True

    def recommended_fees(self) -> Dict[str, Any]:
        self.calls.append("fees")
        return dict(self.fees)

    def check_address(self, address: str) -> None:
        self.calls.append("check")

    def address_summary(self, address: str) -> Dict[str, Any]:
        self.calls.append("summary")
        txs = self.txs.get(address, [])
        confirmed = sum(1 for tx in txs if tx["status"]["confirmed"])
        return {
            "chain_stats": {"tx_count": confirmed},
            "mempool_stats": {"tx_count": len(txs) - confirmed},
        }

    def address_transactions(self, address: str) -> List[Dict[str, Any]]:
        self.calls.append("txs")
        return list(self.txs.get(address, []))

    def post_transaction(self, raw_hex: str) -> str:
        self.calls.append("post")
        self.posted.append(raw_hex)
        error = self.reject_on.pop(len(self.posted), None)
        if error is not None:
            raise error
        outpoints = {(txin.txid, txin.txout_index) for txin in Transaction.from_raw(raw_hex).inputs}
        if outpoints & self.spent:
            raise IndexerHTTPError(400, "bad-txns-inputs-missingorspent")
        self.spent |= outpoints
        return ""

    def has_transaction(self, txid: str) -> bool:
        return False


class RecordingStore(MemoryJobStore):
    def __init__(self) -> None:
        super().__init__()
        self.modes: List[FundingMode] = []

    def save(self, job: InscriptionJob) -> None:
        self.modes.append(job.funding_mode)
        super().save(job)


def _inscriber(
    indexer: StubIndexer,
    store,
    messages: List[str],
    *,
    sleep: Callable[[float], None] | None = None,
    max_polls: int = 3,
) -> Inscriber:
    sleep = sleep or (lambda _: None)
    return Inscriber(
        indexer,
        store,
        watcher=FundingWatcher(indexer, sleep=sleep, max_polls=max_polls),
        broadcaster=Broadcaster(
            indexer, sleep=lambda _: None, max_attempts=2, gate=threading.BoundedSemaphore(1)
        ),
        log=messages.append,
    )


def _request(**kwargs: Any) -> InscribeRequest:
    params: Dict[str, Any] = {
        "address": DESTINATION,
        "text": "hello",
        "media_type": "text/plain",
        "key": "01" * 32,
    }
    params.update(kwargs)
    return InscribeRequest(**params)


def _fund(indexer: StubIndexer, prepared: PreparedJob, confirmed: bool = True) -> None:
    indexer.pay(prepared.funding_address, prepared.requirement.rounded_total, confirmed)
    for inscription in prepared.inscriptions:
        indexer.pay(inscription.address, inscription.commit_value(prepared.job.padding), confirmed)


def test_hello_end_to_end() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    messages: List[str] = []
    inscriber = _inscriber(indexer, store, messages)
    prepared = inscriber.prepare(_request(), fee_rate=6)
    _fund(indexer, prepared)

    result = inscriber.run(_request())

    assert result.funding_address == prepared.funding_address
    assert len(indexer.posted) == 2
    commit_hex, reveal_hex = indexer.posted
    assert prepared.inscriptions[0].leaf.script_pubkey.to_hex() in commit_hex
    assert p2tr_script_pubkey(DESTINATION_KEY).to_hex() in reveal_hex

    commit = Transaction.from_raw(commit_hex)
    reveal = Transaction.from_raw(reveal_hex)
    inscription = prepared.inscriptions[0]
    assert [out.amount for out in commit.outputs] == [546 + inscription.fee]
    assert (reveal.inputs[0].txid, reveal.inputs[0].txout_index) == (result.commit_txid, 0)
    assert [out.amount for out in reveal.outputs] == [546]
    assert commit.get_txid() == result.commit_txid
    assert reveal.get_txid() == result.reveal_txids[0]
    assert result.inscription_ids == [f"{result.reveal_txids[0]}i0"]
    assert len(result.commit_txid) == 64
    assert inscriber.state is RunState.DONE
    assert not store.exists()
    assert (
        f"Please send {format_btc(prepared.requirement.rounded_total)} BTC to "
        f"{prepared.funding_address} to fund the inscription"
    ) in messages
    assert result.inscription_ids[0] in messages


def test_prepare_is_deterministic_and_offline() -> None:
    indexer = StubIndexer()
    inscriber = _inscriber(indexer, MemoryJobStore(), [])
    first = inscriber.prepare(_request(), fee_rate=6)
    second = inscriber.prepare(_request(), fee_rate=6)

    assert first.funding_address == second.funding_address
    assert [i.address for i in first.inscriptions] == [i.address for i in second.inscriptions]
    assert first.requirement == second.requirement
    assert indexer.calls == []

    quoted = inscriber.prepare(_request())
    assert quoted.requirement.fee_rate == 6
    assert indexer.calls == ["fees"]


def test_tip_output_added_to_commit() -> None:
    indexer = StubIndexer()
    inscriber = _inscriber(indexer, MemoryJobStore(), [])
    request = _request(tip=1_000, tipping_address=TIPPING_ADDRESS)
    prepared = inscriber.prepare(request, fee_rate=6)
    assert prepared.requirement.tip_total > 1_000
    _fund(indexer, prepared)

    inscriber.run(request)

    tip_script = "e803000000000000" + "2251" + "20" + TIPPING_ADDRESS_KEY_HEX
    assert tip_script in indexer.posted[0]


def test_oversized_item_rejected_before_network() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    inscriber = _inscriber(indexer, store, [])
    big = ContentItem.from_bytes(b"\x00" * 350_000, "image/png", name="big.png")

    with pytest.raises(PayloadTooLarge):
        inscriber.run(_request(text=None, media_type=None, items=[big]))

    assert indexer.calls == []
    assert not store.exists()
    assert inscriber.state is RunState.FAILED


def test_corrupted_key_fails_before_network(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(EphemeralKey, "sign", lambda self, digest: b"\x01" * 64)
    indexer = StubIndexer()
    store = MemoryJobStore()

    with pytest.raises(KeyValidationFailed):
        _inscriber(indexer, store, []).run(_request(key=None))

    assert indexer.calls == []
    assert not store.exists()


def test_destination_must_match_network() -> None:
    indexer = StubIndexer()
    testnet_address = create_taproot_address(DESTINATION_KEY, "testnet")
    with pytest.raises(InvalidAddress):
        _inscriber(indexer, MemoryJobStore(), []).run(_request(address=testnet_address))
    assert indexer.calls == []


def test_pending_job_blocks_new_run() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    store.save(
        InscriptionJob(items=[ContentItem.from_text("old")], address=DESTINATION, key="02" * 32)
    )

    with pytest.raises(PendingJobExists):
        _inscriber(indexer, store, []).run(_request())

    assert indexer.calls == []
    assert store.load().key == "02" * 32


def test_resume_reuses_key_and_fee_rate(tmp_path: Path) -> None:
    path = tmp_path / "job.json"
    indexer = StubIndexer()
    with pytest.raises(FundingTimeout):
        _inscriber(indexer, FileJobStore(path), [], max_polls=2).run(_request(key=None))

    saved = FileJobStore(path).load()
    assert saved is not None
    assert saved.fee_rate == 6
    assert saved.commit_txid is None

    # a later quote must not change the amount already requested
    indexer.fees = {"halfHourFee": 50}
    prepared = _inscriber(indexer, MemoryJobStore(), []).prepare(_request(key=saved.key), fee_rate=6)
    _fund(indexer, prepared)

    messages: List[str] = []
    result = _inscriber(indexer, FileJobStore(path), messages).resume()

    assert result is not None
    assert result.funding_address == prepared.funding_address
    assert len(result.reveal_txids) == 1
    assert not path.exists()
    assert f"Resuming pending inscription job for {DESTINATION}" in messages


def test_resume_skips_completed_steps() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    items = [ContentItem.from_text("first"), ContentItem.from_text("second")]
    inscriber = _inscriber(indexer, store, [])
    prepared = inscriber.prepare(_request(text=None, media_type=None, items=items), fee_rate=6)
    second = prepared.inscriptions[1]
    indexer.pay(second.address, second.commit_value(546))

    store.save(
        InscriptionJob(
            items=items,
            address=DESTINATION,
            key="01" * 32,
            fee_rate=6,
            commit_txid="ab" * 32,
            reveal_txids=["cd" * 32],
        )
    )
    result = inscriber.resume()

    assert result is not None
    assert len(indexer.posted) == 1
    assert result.commit_txid == "ab" * 32
    assert result.reveal_txids[0] == "cd" * 32
    assert len(result.reveal_txids) == 2
    assert "fees" not in indexer.calls


def test_resume_without_job_returns_none() -> None:
    assert _inscriber(StubIndexer(), MemoryJobStore(), []).resume() is None


def test_descendant_limit_retries_same_reveal_on_confirmed_funding() -> None:
    indexer = StubIndexer()
    store = RecordingStore()
    messages: List[str] = []
    inscriber = _inscriber(indexer, store, messages, sleep=lambda _: indexer.confirm_all())
    prepared = inscriber.prepare(_request(), fee_rate=6)
    _fund(indexer, prepared, confirmed=False)
    indexer.reject_on[2] = IndexerHTTPError(400, "too-long-mempool-chain, too many descendants")

    result = inscriber.run(_request())

    assert len(indexer.posted) == 3
    first_attempt, retry = indexer.posted[1], indexer.posted[2]
    # version, segwit marker/flag and input count precede the outpoint
    assert first_attempt[14:86] == retry[14:86]
    assert FundingMode.CONFIRMED_ONLY in store.modes
    assert "Descendant transaction detected. Waiting for parent to confirm." in messages
    assert len(result.reveal_txids) == 1


def test_descendant_limit_on_commit_waits_for_confirmed_funding() -> None:
    indexer = StubIndexer()
    store = RecordingStore()
    messages: List[str] = []
    inscriber = _inscriber(indexer, store, messages, sleep=lambda _: indexer.confirm_all())
    prepared = inscriber.prepare(_request(), fee_rate=6)
    _fund(indexer, prepared, confirmed=False)
    indexer.reject_on[1] = IndexerHTTPError(400, "too-long-mempool-chain, too many descendants")

    result = inscriber.run(_request())

    assert len(indexer.posted) == 3
    rejected, retried = (Transaction.from_raw(raw) for raw in indexer.posted[:2])
    assert rejected.get_txid() == retried.get_txid() == result.commit_txid
    assert store.modes[-1] is FundingMode.CONFIRMED_ONLY
    assert FundingMode.CONFIRMED_ONLY in store.modes
    assert "Descendant transaction detected. Waiting for parent to confirm." in messages
    assert len(result.reveal_txids) == 1


def test_duplicate_items_reveal_distinct_commit_outputs() -> None:
    indexer = StubIndexer()
    items = [ContentItem.from_text("same")] * 2
    inscriber = _inscriber(indexer, MemoryJobStore(), [])
    request = _request(text=None, media_type=None, items=items)
    prepared = inscriber.prepare(request, fee_rate=6)
    assert prepared.inscriptions[0].address == prepared.inscriptions[1].address
    _fund(indexer, prepared)

    result = inscriber.run(request)

    reveals = [Transaction.from_raw(raw) for raw in indexer.posted[1:]]
    assert [(tx.inputs[0].txid, tx.inputs[0].txout_index) for tx in reveals] == [
        (result.commit_txid, 0),
        (result.commit_txid, 1),
    ]
    assert len(set(result.reveal_txids)) == 2
    assert inscriber.state is RunState.DONE


def test_spent_funding_output_fails_the_commit() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    inscriber = _inscriber(indexer, store, [])
    prepared = inscriber.prepare(_request(), fee_rate=6)
    _fund(indexer, prepared)
    first_funding = indexer.txs[prepared.funding_address][0]["txid"]
    indexer.spent.add((first_funding, 0))

    with pytest.raises(BroadcastRejected):
        inscriber.run(_request())

    assert len(indexer.posted) == 2
    assert store.exists()
    assert inscriber.state is RunState.FAILED


def test_abandon_clears_pending_job() -> None:
    store = MemoryJobStore()
    messages: List[str] = []
    inscriber = _inscriber(StubIndexer(), store, messages)
    assert inscriber.abandon() is False

    store.save(InscriptionJob(items=[ContentItem.from_text("x")], address=DESTINATION, key="02" * 32))
    assert inscriber.abandon() is True
    assert not store.exists()
    assert messages == ["Old transaction is removed"]


def test_abandon_stops_running_wait() -> None:
    indexer = StubIndexer()
    store = MemoryJobStore()
    inscriber = _inscriber(indexer, store, [], sleep=lambda _: store.clear(), max_polls=5)

    with pytest.raises(JobAbandoned):
        inscriber.run(_request())
    assert inscriber.state is RunState.FAILED
