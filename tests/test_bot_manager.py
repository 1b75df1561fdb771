from decimal import Decimal

from conftest import PAIR
from ratchet.bot_manager import BotManager
from ratchet.datastructures import CloseSignal, WalletContext
from ratchet.paper_exchange import PaperExchange


def make_manager(filters, rejects=None):
    wallets = [
        WalletContext(name="alice", api_key="a", api_secret="a", balance=10, leverage=10),
        WalletContext(name="bob", api_key="b", api_secret="b", balance=20, leverage=5),
    ]
    rejects = rejects or {}

    def factory(wallet, queue):
        exchange = PaperExchange(wallet, queue, filters={PAIR: filters}, prices={PAIR: 101})
        exchange.reject_tags = set(rejects.get(wallet.name, ()))
        return exchange

    return BotManager(wallets, exchange_factory=factory, callback_rate=Decimal("0.2"))


async def drain(manager):
    for runtime in manager.runtimes.values():
        await runtime.dispatcher.drain()


async def test_signal_runs_on_every_wallet_independently(filters, signal):
    manager = make_manager(filters)
    reports = await manager.handle_signal(signal)

    assert [r.status for r in reports] == ["COMPLETE", "COMPLETE"]
    alice = manager.runtimes["alice"].exchange
    bob = manager.runtimes["bob"].exchange
    assert alice is not bob
    assert alice.positions[PAIR] == Decimal("0.990")
    assert bob.positions[PAIR] == Decimal("0.990")
    assert len(manager.positions()) == 2
    assert {p["wallet"] for p in manager.positions()} == {"alice", "bob"}


async def test_one_wallet_failing_does_not_affect_another(filters, signal):
    manager = make_manager(filters, rejects={"alice": {"ENTRY"}})
    reports = await manager.handle_signal(signal)

    assert [r.status for r in reports] == ["REJECTED", "COMPLETE"]
    assert [p["wallet"] for p in manager.positions()] == ["bob"]


async def test_close_signal_flattens_every_wallet(filters, signal):
    manager = make_manager(filters)
    await manager.handle_signal(signal)
    await drain(manager)

    results = await manager.handle_signal(CloseSignal(pair=PAIR))
    await drain(manager)

    assert results == [True, True]
    for runtime in manager.runtimes.values():
        assert runtime.exchange.positions[PAIR] == 0
        assert runtime.exchange.open_orders == {}
    assert manager.positions() == []


async def test_unknown_message_is_ignored(filters):
    manager = make_manager(filters)
    assert await manager.handle_signal("not a signal") == []


async def test_stop_abandons_live_monitors(filters, signal):
    manager = make_manager(filters)
    reports = await manager.handle_signal(signal)

    await manager.stop()

    assert all(r.monitor.status == "ABANDONED" for r in reports)
    assert manager.positions() == []
