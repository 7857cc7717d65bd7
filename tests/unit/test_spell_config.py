import sys
from decimal import Decimal
from pathlib import Path

import pytest

REPO_ROOT = Path(__file__).resolve().parents[2]
sys.path.insert(0, str(REPO_ROOT))

from spell_config import DEFAULT_MEMPOOL_HOST, SpellConfig, SpellConfigError  # noqa: E402

ENV_VARS = (
    "SPELL_NETWORK",
    "SPELL_MEMPOOL_HOST",
    "SPELL_HTTP_TIMEOUT",
    "SPELL_FEE_RATE_SAT_PER_VB",
    "SPELL_PRIVATE_KEY",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults():
    cfg = SpellConfig.from_env()
    assert cfg.network == "mainnet"
    assert cfg.mempool_host == DEFAULT_MEMPOOL_HOST
    assert cfg.http_timeout == 10.0
    assert cfg.fee_rate_sat_per_vb == Decimal("1")
    assert cfg.private_key_hex is None


def test_values_from_env(monkeypatch):
    monkeypatch.setenv("SPELL_NETWORK", " Testnet ")
    monkeypatch.setenv("SPELL_MEMPOOL_HOST", "mempool.example")
    monkeypatch.setenv("SPELL_HTTP_TIMEOUT", "2.5")
    monkeypatch.setenv("SPELL_FEE_RATE_SAT_PER_VB", "0.3")
    monkeypatch.setenv("SPELL_PRIVATE_KEY", "11" * 32)

    cfg = SpellConfig.from_env()

    assert cfg.network == "testnet"
    assert cfg.mempool_host == "mempool.example"
    assert cfg.http_timeout == 2.5
    assert cfg.fee_rate_sat_per_vb == Decimal("0.3")
    assert cfg.private_key_hex == "11" * 32


@pytest.mark.parametrize(
    "name, value",
    [
        ("SPELL_NETWORK", "regtest"),
        ("SPELL_HTTP_TIMEOUT", "soon"),
        ("SPELL_HTTP_TIMEOUT", "0"),
        ("SPELL_FEE_RATE_SAT_PER_VB", "cheap"),
        ("SPELL_FEE_RATE_SAT_PER_VB", "-1"),
    ],
)
def test_invalid_values(monkeypatch, name, value):
    monkeypatch.setenv(name, value)
    with pytest.raises(SpellConfigError):
        SpellConfig.from_env()
