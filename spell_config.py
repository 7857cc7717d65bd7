from __future__ import annotations

import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv

# Load .env from project root
PROJECT_ROOT = Path(__file__).parent
load_dotenv(PROJECT_ROOT / ".env")

BTCNetwork = Literal["mainnet", "testnet"]

DEFAULT_MEMPOOL_HOST = "mempool.space"


class SpellConfigError(Exception):
    """Configuration error for the spell toolkit."""

    pass


@dataclass
class SpellConfig:
    """
    Configuration for the spell toolkit and its MCP server.

    Values are sourced from environment variables or a .env file.

    - SPELL_NETWORK: "mainnet" or "testnet" (defaults to "mainnet").
    - SPELL_MEMPOOL_HOST: mempool.space-compatible host used to fetch raw
      transactions for UTXOs whose value or script is unknown.
    - SPELL_HTTP_TIMEOUT: request timeout in seconds (default 10).
    - SPELL_FEE_RATE_SAT_PER_VB: default fee rate for unsigned PSBTs (sat/vB,
      may be fractional).
    - SPELL_PRIVATE_KEY: optional hex private key used by signing tools when
      no key is passed explicitly. Never logged.
    """

    network: BTCNetwork = "mainnet"
    mempool_host: str = DEFAULT_MEMPOOL_HOST
    http_timeout: float = 10.0
    fee_rate_sat_per_vb: Decimal = Decimal("1")
    private_key_hex: str | None = None

    @classmethod
    def from_env(cls) -> SpellConfig:
        raw_network = os.getenv("SPELL_NETWORK", "mainnet").strip().lower()
        if raw_network not in {"mainnet", "testnet"}:
            raise SpellConfigError(
                f"Invalid SPELL_NETWORK={raw_network!r}. Expected 'mainnet' or 'testnet'."
            )
        network: BTCNetwork = "mainnet" if raw_network == "mainnet" else "testnet"

        mempool_host = os.getenv("SPELL_MEMPOOL_HOST", "").strip() or DEFAULT_MEMPOOL_HOST

        timeout_raw = os.getenv("SPELL_HTTP_TIMEOUT", "10").strip()
        try:
            http_timeout = float(timeout_raw)
        except ValueError as exc:
            raise SpellConfigError(
                f"Invalid SPELL_HTTP_TIMEOUT={timeout_raw!r}. Must be a number of seconds."
            ) from exc
        if http_timeout <= 0:
            raise SpellConfigError("SPELL_HTTP_TIMEOUT must be greater than zero.")

        fee_rate_raw = os.getenv("SPELL_FEE_RATE_SAT_PER_VB", "1").strip()
        try:
            fee_rate = Decimal(fee_rate_raw)
        except InvalidOperation as exc:
            raise SpellConfigError(
                f"Invalid SPELL_FEE_RATE_SAT_PER_VB={fee_rate_raw!r}."
            ) from exc
        if fee_rate <= 0:
            raise SpellConfigError("SPELL_FEE_RATE_SAT_PER_VB must be greater than zero.")

        private_key_hex = os.getenv("SPELL_PRIVATE_KEY") or None

        return cls(
            network=network,
            mempool_host=mempool_host,
            http_timeout=http_timeout,
            fee_rate_sat_per_vb=fee_rate,
            private_key_hex=private_key_hex,
        )
