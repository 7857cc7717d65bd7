"""
Chain-data provider used to resolve UTXOs whose value or script is unknown.

The builder only needs one operation, ``get_raw_transaction(txid)``. Any
object providing it can be injected; ``MempoolProvider`` implements it on top
of a mempool.space-compatible REST API. Failures surface immediately as
UtxoResolutionFailed and are never retried here.
"""

from __future__ import annotations

import logging
from typing import Protocol

import requests

from spell_config import DEFAULT_MEMPOOL_HOST, BTCNetwork, SpellConfig
from spell_errors import UtxoResolutionFailed

logger = logging.getLogger(__name__)


class ChainDataProvider(Protocol):
    def get_raw_transaction(self, txid: str) -> str:
        """Return the raw transaction hex for ``txid`` (display order)."""
        ...


class MempoolProvider:
    """Fetch raw transactions from mempool.space (or a compatible host)."""

    def __init__(
        self,
        network: BTCNetwork = "mainnet",
        host: str = DEFAULT_MEMPOOL_HOST,
        timeout: float = 10.0,
    ) -> None:
        self.network = network
        self.host = host
        self.timeout = timeout

    @classmethod
    def from_config(cls, cfg: SpellConfig) -> MempoolProvider:
        return cls(network=cfg.network, host=cfg.mempool_host, timeout=cfg.http_timeout)

    def _api_url(self) -> str:
        if self.network == "mainnet":
            return f"https://{self.host}/api"
        return f"https://{self.host}/testnet/api"

    def get_raw_transaction(self, txid: str) -> str:
        url = f"{self._api_url()}/tx/{txid}/hex"
        logger.debug("Fetching raw transaction %s from %s", txid, self.host)
        try:
            resp = requests.get(url, timeout=self.timeout)
            resp.raise_for_status()
        except requests.RequestException as exc:
            raise UtxoResolutionFailed(
                f"Failed to fetch transaction {txid}: {exc}", txid=txid
            ) from exc

        raw_hex = resp.text.strip()
        try:
            bytes.fromhex(raw_hex)
        except ValueError as exc:
            raise UtxoResolutionFailed(
                f"Provider returned a non-hex body for transaction {txid}.", txid=txid
            ) from exc
        if not raw_hex:
            raise UtxoResolutionFailed(
                f"Provider returned an empty body for transaction {txid}.", txid=txid
            )
        return raw_hex
