"""Fee rate lookup and funding accounting for commit/reveal jobs."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Sequence, Tuple

from bitcoinutils.transactions import TxOutput

from .config import DEFAULT_MIN_FEE_RATE, DEFAULT_PADDING
from .indexer import IndexerError, IndexerUnavailable
from .taproot import p2tr_script_pubkey
from .transaction import estimate_commit_vsize

if TYPE_CHECKING:
    from .inscription import Inscription
    from .scripts import TapLeaf

logger = logging.getLogger(__name__)

SATS_PER_BTC = 100_000_000
# Per-reveal slack in sats, left to the commit transaction as extra fee.
BASE_SIZE = 160
MIN_TIP = 500
ROUNDING_UNIT = 1000
P2TR_OUTPUT_VBYTES = len(TxOutput(0, p2tr_script_pubkey(b"\x00" * 32)).to_bytes())


class FeeOracleUnavailable(IndexerUnavailable):
    """Raised when no fee rate can be obtained from the indexer."""


def calculate_fee_sats(fee_rate_sat_vb: float, vsize: int) -> int:
    """Return the ceil'd fee in satoshis for the provided vsize."""

    return int(math.ceil(fee_rate_sat_vb * vsize))


def round_up(amount: int, unit: int = ROUNDING_UNIT) -> int:
    return int(math.ceil(amount / unit) * unit)


def format_btc(sats: int) -> str:
    """Render a satoshi amount as a BTC string with 8 decimals."""

    return f"{Decimal(sats) / Decimal(SATS_PER_BTC):.8f}"


def tip_enabled(tip: int | None, tipping_address: str | None) -> bool:
    return bool(tipping_address) and tip is not None and tip >= MIN_TIP


class FeeOracle:
    """Current fee rate from the indexer's recommended-fees endpoint."""

    def __init__(self, indexer: Any, min_fee_rate: int = DEFAULT_MIN_FEE_RATE) -> None:
        self.indexer = indexer
        self.min_fee_rate = min_fee_rate

    def fee_rate(self) -> int:
        """Return the half-hour fee rate in sat/vB, never below ``min_fee_rate``.

        Raises:
            FeeOracleUnavailable: If the indexer cannot be reached or answers
                without a usable ``halfHourFee``.
        """

        try:
            recommended = self.indexer.recommended_fees()
            quoted = float(recommended["halfHourFee"])
        except IndexerError as exc:
            raise FeeOracleUnavailable(f"Fee lookup failed: {exc}") from exc
        except (KeyError, TypeError, ValueError) as exc:
            raise FeeOracleUnavailable(f"Fee lookup returned an unusable payload: {exc}") from exc

        rate = max(self.min_fee_rate, int(math.ceil(quoted)))
        if rate != quoted:
            logger.debug("Quoted fee rate %s sat/vB adjusted to %s", quoted, rate)
        return rate


@dataclass(frozen=True)
class FundingRequirement:
    """Breakdown of what the funding address must receive."""

    fee_rate: int
    reveal_fees: Tuple[int, ...]
    commit_overhead: int
    base_total: int
    padding_total: int
    tip_total: int = 0

    @property
    def total(self) -> int:
        return (
            sum(self.reveal_fees)
            + self.commit_overhead
            + self.base_total
            + self.padding_total
            + self.tip_total
        )

    @property
    def rounded_total(self) -> int:
        return round_up(self.total)


class FundingAccountant:
    """Compute the funding needed to commit and reveal a set of inscriptions.

    ``commit_overhead`` is the fee for the commit transaction itself, measured
    on a skeleton with one init-leaf input and one P2TR output per
    inscription. A tip adds one more P2TR output plus the tip amount.
    """

    def __init__(
        self,
        padding: int = DEFAULT_PADDING,
        tip: int = 0,
        tipping_address: str | None = None,
        base_size: int = BASE_SIZE,
    ) -> None:
        if padding < 0:
            raise ValueError(f"Padding must not be negative, got {padding}")
        self.padding = padding
        self.tip = tip
        self.tipping_address = tipping_address
        self.base_size = base_size

    @property
    def tip_enabled(self) -> bool:
        return tip_enabled(self.tip, self.tipping_address)

    def commit_overhead(self, init_leaf: "TapLeaf", fee_rate: int, count: int) -> int:
        return calculate_fee_sats(fee_rate, estimate_commit_vsize(init_leaf, count))

    def tip_overhead(self, fee_rate: int) -> int:
        if not self.tip_enabled:
            return 0
        return calculate_fee_sats(fee_rate, P2TR_OUTPUT_VBYTES) + self.tip

    def compute(
        self, init_leaf: "TapLeaf", inscriptions: Sequence["Inscription"], fee_rate: int
    ) -> FundingRequirement:
        count = len(inscriptions)
        return FundingRequirement(
            fee_rate=fee_rate,
            reveal_fees=tuple(inscription.fee for inscription in inscriptions),
            commit_overhead=self.commit_overhead(init_leaf, fee_rate, count),
            base_total=self.base_size * count,
            padding_total=self.padding * count,
            tip_total=self.tip_overhead(fee_rate),
        )
