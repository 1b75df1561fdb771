from decimal import Decimal

import pytest

from ratchet.config import config
from ratchet.errors import ValidationError
from ratchet.wallets import list_wallets


def test_wallets_are_read_from_config(monkeypatch):
    monkeypatch.setattr(config, "WALLETS", [
        {"name": "alice", "api_key": "a", "api_secret": "a", "balance": 25, "leverage": 5},
        {"api_key": "b", "api_secret": "b"},
    ])
    alice, second = list_wallets()
    assert alice.name == "alice"
    assert alice.balance == Decimal("25")
    assert alice.leverage == 5
    assert second.name == "wallet-2"
    assert second.leverage == config.WALLET_LEVERAGE


def test_invalid_wallet_entries_are_skipped(monkeypatch):
    monkeypatch.setattr(config, "WALLETS", [
        {"name": "broke", "api_key": "a", "api_secret": "a", "balance": 0},
        {"name": "ok", "api_key": "b", "api_secret": "b", "balance": 5},
    ])
    assert [w.name for w in list_wallets()] == ["ok"]


def test_single_wallet_fallback(monkeypatch):
    monkeypatch.setattr(config, "WALLETS", [])
    monkeypatch.setattr(config, "MODE", "SIMULATION")
    monkeypatch.setattr(config, "API_KEY", None)
    monkeypatch.setattr(config, "API_SECRET", None)
    [wallet] = list_wallets()
    assert wallet.name == "default"


def test_live_mode_requires_credentials(monkeypatch):
    monkeypatch.setattr(config, "WALLETS", [])
    monkeypatch.setattr(config, "MODE", "LIVE")
    monkeypatch.setattr(config, "API_KEY", None)
    monkeypatch.setattr(config, "API_SECRET", None)
    with pytest.raises(ValidationError):
        list_wallets()
