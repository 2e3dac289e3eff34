"""Commit/reveal ordinal inscriptions through a block indexer."""

from .broadcaster import Broadcaster, BroadcastRejected, DescendantLimitExceeded
from .config import ConfigurationError, TapscribeConfig, load_config
from .fees import FeeOracle, FeeOracleUnavailable, FundingAccountant, FundingRequirement
from .indexer import IndexerClient, IndexerError, IndexerUnavailable
from .inscription import ContentItem, Inscription, PayloadTooLarge
from .job_store import FileJobStore, FundingMode, InscriptionJob, JobStore, MemoryJobStore
from .keys import EphemeralKey, KeyValidationFailed
from .orchestrator import (
    InscribeRequest,
    Inscriber,
    InscriptionResult,
    PendingJobExists,
    PreparedJob,
    RunState,
)
from .scripts import TapLeaf
from .taproot import InvalidAddress, create_taproot_address, decode_taproot_address
from .watcher import FundingEvent, FundingTimeout, FundingWatcher, JobAbandoned

__all__ = [
    "Broadcaster",
    "BroadcastRejected",
    "ConfigurationError",
    "ContentItem",
    "DescendantLimitExceeded",
    "EphemeralKey",
    "FeeOracle",
    "FeeOracleUnavailable",
    "FileJobStore",
    "FundingAccountant",
    "FundingEvent",
    "FundingMode",
    "FundingRequirement",
    "FundingTimeout",
    "FundingWatcher",
    "IndexerClient",
    "IndexerError",
    "IndexerUnavailable",
    "InscribeRequest",
    "Inscriber",
    "Inscription",
    "InscriptionJob",
    "InscriptionResult",
    "InvalidAddress",
    "JobAbandoned",
    "JobStore",
    "KeyValidationFailed",
    "MemoryJobStore",
    "PayloadTooLarge",
    "PendingJobExists",
    "PreparedJob",
    "RunState",
    "TapLeaf",
    "TapscribeConfig",
    "create_taproot_address",
    "decode_taproot_address",
    "load_config",
]
