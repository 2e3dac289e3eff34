"""Persistence for the single in-flight inscription job."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List

from .config import DEFAULT_JOB_PATH
from .inscription import ContentItem

logger = logging.getLogger(__name__)


class FundingMode(str, Enum):
    """Which funding a watcher accepts before the next spend."""

    ALLOW_UNCONFIRMED = "allow_unconfirmed"
    CONFIRMED_ONLY = "confirmed_only"


@dataclass
class InscriptionJob:
    """Resolved parameters of a run plus how far it has progressed.

    ``fee_rate``, ``funding_mode``, ``commit_txid`` and ``reveal_txids`` are
    filled in as the job advances so a resumed job neither re-quotes fees
    nor repeats a broadcast.
    """

    items: List[ContentItem]
    address: str
    key: str = field(repr=False)
    network: str = "mainnet"
    padding: int = 546
    tip: int = 0
    tipping_address: str | None = None
    media_type: str | None = None
    text: str | None = None
    fee_rate: int | None = None
    funding_mode: FundingMode = FundingMode.ALLOW_UNCONFIRMED
    commit_txid: str | None = None
    reveal_txids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": [item.to_dict() for item in self.items],
            "address": self.address,
            "media_type": self.media_type,
            "text": self.text,
            "padding": self.padding,
            "tip": self.tip,
            "tipping_address": self.tipping_address,
            "key": self.key,
            "network": self.network,
            "fee_rate": self.fee_rate,
            "funding_mode": self.funding_mode.value,
            "commit_txid": self.commit_txid,
            "reveal_txids": list(self.reveal_txids),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InscriptionJob":
        return cls(
            items=[ContentItem.from_dict(item) for item in data.get("items", [])],
            address=data["address"],
            key=data["key"],
            network=data.get("network") or "mainnet",
            padding=int(data["padding"]) if data.get("padding") is not None else 546,
            tip=int(data.get("tip") or 0),
            tipping_address=data.get("tipping_address"),
            media_type=data.get("media_type"),
            text=data.get("text"),
            fee_rate=data.get("fee_rate"),
            funding_mode=FundingMode(data.get("funding_mode") or FundingMode.ALLOW_UNCONFIRMED.value),
            commit_txid=data.get("commit_txid"),
            reveal_txids=list(data.get("reveal_txids") or []),
        )


class JobStore:
    """Interface for a single-slot job repository."""

    def save(self, job: InscriptionJob) -> None:
        raise NotImplementedError

    def load(self) -> InscriptionJob | None:
        raise NotImplementedError

    def clear(self) -> None:
        raise NotImplementedError

    def exists(self) -> bool:
        return self.load() is not None


class MemoryJobStore(JobStore):
    """Keep the job in process memory; nothing survives a restart."""

    def __init__(self) -> None:
        self._record: Dict[str, Any] | None = None

    def save(self, job: InscriptionJob) -> None:
        self._record = job.to_dict()

    def load(self) -> InscriptionJob | None:
        if self._record is None:
            return None
        return InscriptionJob.from_dict(self._record)

    def clear(self) -> None:
        self._record = None

    def exists(self) -> bool:
        return self._record is not None


class FileJobStore(JobStore):
    """Persist the job as JSON at ``path``, replacing any previous job."""

    def __init__(self, path: str | Path | None = None) -> None:
        self.path = Path(path).expanduser() if path else DEFAULT_JOB_PATH

    def save(self, job: InscriptionJob) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        staging = self.path.with_name(self.path.name + ".tmp")
        staging.write_text(json.dumps(job.to_dict(), indent=2))
        os.replace(staging, self.path)
        logger.debug("Saved pending job to %s", self.path)

    def load(self) -> InscriptionJob | None:
        if not self.path.exists():
            return None
        try:
            return InscriptionJob.from_dict(json.loads(self.path.read_text()))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
            raise ValueError(f"Pending job at {self.path} is unreadable: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return
        logger.debug("Cleared pending job at %s", self.path)

    def exists(self) -> bool:
        return self.path.exists()
