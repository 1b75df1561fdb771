import dataclasses
from decimal import Decimal

import pytest

from conftest import make_signal
from ratchet.datastructures import CloseSignal, TradeSignal, WalletContext, signal_from_dict
from ratchet.errors import ValidationError


def test_trade_signal_normalizes_fields():
    signal = TradeSignal(pair="abc/usdt", direction="long", entry=[100, 102.5],
                         targets=[110, 120.25], stop_loss="95")
    assert signal.pair == "ABCUSDT"
    assert signal.direction == "LONG"
    assert signal.entry == (Decimal("100"), Decimal("102.5"))
    assert signal.targets == (Decimal("110"), Decimal("120.25"))
    assert signal.stop_loss == Decimal("95")
    assert signal.entry_price == Decimal("100")
    assert signal.side == "BUY"


def test_trade_signal_is_immutable():
    signal = make_signal()
    with pytest.raises(dataclasses.FrozenInstanceError):
        signal.stop_loss = Decimal("1")


def test_short_signal_is_valid():
    signal = make_signal(direction="SHORT", entry=(100, 102), targets=(90, 80), stop_loss=110)
    assert signal.side == "SELL"


@pytest.mark.parametrize("kwargs", [
    dict(targets=()),
    dict(stop_loss=101),                              # stop inside the entry range
    dict(targets=(110, 105)),                         # not moving away from entry
    dict(targets=(90, 80)),                           # SHORT targets on a LONG
    dict(entry=(100,)),
    dict(direction="SIDEWAYS"),
    dict(stop_loss=-1),
    dict(direction="SHORT", entry=(100, 102), targets=(90, 80), stop_loss=101),
])
def test_inconsistent_signals_are_rejected(kwargs):
    with pytest.raises(ValidationError):
        make_signal(**kwargs)


def test_signal_from_dict_builds_trade_signal():
    parsed = signal_from_dict({
        "type": "TRADE_SIGNAL", "pair": "ABCUSDT", "direction": "LONG",
        "entry": [100, 102], "targets": [110, 120, 130], "stopLoss": 95,
    })
    assert isinstance(parsed, TradeSignal)
    assert parsed.targets[-1] == Decimal("130")


def test_signal_from_dict_builds_close_signal():
    parsed = signal_from_dict({"type": "CLOSE_SIGNAL", "pair": "abcusdt"})
    assert parsed == CloseSignal(pair="ABCUSDT")
    assert signal_from_dict({"pair": "ABCUSDT", "direction": "short"}).direction == "SHORT"


@pytest.mark.parametrize("payload", [
    None,
    [],
    {"type": "NOPE", "pair": "ABCUSDT"},
    {"pair": "ABCUSDT", "direction": "LONG", "entry": [100, 102], "targets": [110]},
    {"pair": "ABCUSDT", "direction": "LONG", "entry": [100, 102], "targets": ["x"], "stopLoss": 95},
    {"type": "CLOSE_SIGNAL"},
])
def test_signal_from_dict_rejects_malformed_payloads(payload):
    with pytest.raises(ValidationError):
        signal_from_dict(payload)


def test_wallet_repr_hides_credentials():
    wallet = WalletContext(name="w1", api_key="KEY123", api_secret="SECRET456", balance=8, leverage=20)
    assert "KEY123" not in repr(wallet)
    assert "SECRET456" not in repr(wallet)
    assert wallet.balance == Decimal("8")


def test_wallet_requires_positive_risk_parameters():
    with pytest.raises(ValidationError):
        WalletContext(name="w1", api_key="k", api_secret="s", balance=0, leverage=10)
    with pytest.raises(ValidationError):
        WalletContext(name="w1", api_key="k", api_secret="s", balance=10, leverage=0)
