"""REST client for mempool.space / Esplora style block indexers.

The client is intentionally thin: each helper maps to one endpoint and
returns the parsed response. Higher layers decide which failures are fatal
(fee lookups, reachability checks) and which are absorbed (funding polls,
broadcast retries).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List

import requests
from requests import RequestException, Response

from .config import TapscribeConfig

logger = logging.getLogger(__name__)


class IndexerError(RuntimeError):
    """Base class for indexer failures."""


class IndexerTransportError(IndexerError):
    """Raised when the indexer is unreachable or returns malformed data."""


class IndexerHTTPError(IndexerError):
    """Raised when the indexer answers with a non-success status."""

    def __init__(self, status_code: int, body: str) -> None:
        super().__init__(f"Indexer returned HTTP {status_code}: {body}")
        self.status_code = status_code
        self.body = body


class IndexerUnavailable(IndexerError):
    """Raised when a required indexer lookup fails before a run starts."""


class IndexerClient:
    """Typed client for the indexer endpoints used by the inscription flow."""

    def __init__(self, base_url: str, timeout: float = 30.0, session: requests.Session | None = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    @classmethod
    def from_config(cls, config: TapscribeConfig) -> "IndexerClient":
        return cls(config.indexer_url, timeout=config.request_timeout)

    def _request(self, method: str, path: str, **kwargs: Any) -> Response:
        url = f"{self.base_url}{path}"
        logger.debug("Indexer %s %s", method, url)
        try:
            response = self._session.request(method, url, timeout=self.timeout, **kwargs)
        except RequestException as exc:
            logger.warning(
                "Indexer request %s %s failed: %s",
                method,
                url,
                exc,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise IndexerTransportError(f"Indexer request to {url} failed: {exc}") from exc
        if not response.ok:
            body = response.text.strip()
            logger.debug("Indexer HTTP %s from %s: %s", response.status_code, url, body)
            raise IndexerHTTPError(response.status_code, body)
        return response

    def _get_json(self, path: str) -> Any:
        response = self._request("GET", path)
        try:
            return response.json()
        except ValueError as exc:
            logger.debug("Indexer JSON parse error: %s", response.text, exc_info=True)
            raise IndexerTransportError(f"Indexer returned malformed JSON for {path}") from exc

    # Endpoints ------------------------------------------------------------

    def recommended_fees(self) -> Dict[str, Any]:
        return self._get_json("/v1/fees/recommended")

    def address_summary(self, address: str) -> Dict[str, Any]:
        return self._get_json(f"/address/{address}")

    def address_transactions(self, address: str) -> List[Dict[str, Any]]:
        return self._get_json(f"/address/{address}/txs")

    def transaction(self, txid: str) -> Dict[str, Any]:
        return self._get_json(f"/tx/{txid}")

    def has_transaction(self, txid: str) -> bool:
        try:
            self.transaction(txid)
        except IndexerHTTPError as exc:
            if exc.status_code in (400, 404):
                return False
            raise
        return True

    def post_transaction(self, raw_hex: str) -> str:
        """Submit a raw transaction and return the txid reported by the indexer."""

        response = self._request(
            "POST", "/tx", data=raw_hex, headers={"content-type": "text/plain"}
        )
        return response.text.strip()

    def check_address(self, address: str) -> None:
        """Confirm the indexer answers for ``address``.

        Raises:
            IndexerUnavailable: If the lookup fails for any reason.
        """

        try:
            self.address_summary(address)
        except IndexerError as exc:
            raise IndexerUnavailable(f"Indexer connection failed for address {address}: {exc}") from exc
