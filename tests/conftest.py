import asyncio
from decimal import Decimal

import pytest

from ratchet.datastructures import SymbolFilters, TradeSignal, WalletContext
from ratchet.fill_dispatcher import FillDispatcher
from ratchet.order_executor import ExecutionCoordinator
from ratchet.paper_exchange import PaperExchange

PAIR = "ABCUSDT"


def make_signal(targets=(110, 120, 130), direction="LONG", entry=(100, 102), stop_loss=95, pair=PAIR):
    return TradeSignal(pair=pair, direction=direction, entry=entry, targets=targets, stop_loss=stop_loss)


@pytest.fixture
def wallet():
    return WalletContext(name="test", api_key="key", api_secret="secret", balance=10, leverage=10)


@pytest.fixture
def filters():
    return SymbolFilters(PAIR, Decimal("0.001"), Decimal("0.01"), max_leverage=50)


@pytest.fixture
def signal():
    return make_signal()


@pytest.fixture
def fill_queue():
    return asyncio.Queue()


@pytest.fixture
def exchange(wallet, fill_queue, filters):
    return PaperExchange(wallet, fill_queue, filters={PAIR: filters}, prices={PAIR: 101})


@pytest.fixture
def dispatcher(fill_queue):
    return FillDispatcher(fill_queue, "test")


@pytest.fixture
def coordinator(wallet, exchange, dispatcher):
    return ExecutionCoordinator(wallet, exchange, dispatcher, callback_rate=Decimal("0.2"))


def open_stops(exchange, pair=PAIR):
    return [o for o in exchange.open_orders.values()
            if o.request.symbol == pair and o.request.order_type == "STOP_MARKET"]
