from decimal import Decimal

from conftest import PAIR, make_signal
from ratchet.datastructures import SymbolFilters, WalletContext
from ratchet.order_executor import ExecutionCoordinator
from ratchet.paper_exchange import PaperExchange


def submitted_tags(exchange):
    return [o.request.tag for o in exchange.open_orders.values()]


async def test_complete_ladder_is_submitted_in_order(coordinator, exchange, dispatcher, signal):
    report = await coordinator.execute(signal)

    assert report.status == "COMPLETE"
    assert [p.kind for p in report.placed] == ["ENTRY", "STOP_LOSS", "TAKE_PROFIT", "TAKE_PROFIT", "TRAILING_STOP"]
    assert [p.target_index for p in report.placed[2:]] == [0, 1, 2]
    assert [p.orig_price for p in report.placed[2:]] == [Decimal("110.00"), Decimal("120.00"), Decimal("130.00")]
    assert all(p.client_order_id and p.order_id for p in report.placed)

    methods = [method for method, _ in exchange.call_log]
    assert methods.index("set_leverage") < methods.index("submit_order")
    assert methods.count("submit_order") == 5
    assert submitted_tags(exchange) == ["STOP_LOSS", "TP1", "TP2", "TRAILING"]
    assert exchange.positions[PAIR] == Decimal("0.990")
    assert dispatcher.active_monitors() == [report.monitor]


async def test_missing_filters_abort_before_any_order(wallet, fill_queue, dispatcher, signal):
    exchange = PaperExchange(wallet, fill_queue, filters={}, prices={PAIR: 101})
    report = await ExecutionCoordinator(wallet, exchange, dispatcher).execute(signal)

    assert report.status == "INVALID"
    assert exchange.call_log == [("get_symbol_filters", PAIR)]
    assert dispatcher.active_monitors() == []


async def test_zero_quantity_aborts_before_any_order(fill_queue, dispatcher, filters, signal):
    wallet = WalletContext(name="tiny", api_key="k", api_secret="s", balance="0.0001", leverage=1)
    exchange = PaperExchange(wallet, fill_queue, filters={PAIR: filters}, prices={PAIR: 101})
    report = await ExecutionCoordinator(wallet, exchange, dispatcher).execute(signal)

    assert report.status == "INVALID"
    assert ("submit_order", PAIR) not in exchange.call_log


async def test_rejected_leverage_retries_with_bracket_maximum(fill_queue, dispatcher, filters, signal):
    wallet = WalletContext(name="greedy", api_key="k", api_secret="s", balance=10, leverage=75)
    exchange = PaperExchange(wallet, fill_queue, filters={PAIR: filters}, prices={PAIR: 101})
    report = await ExecutionCoordinator(wallet, exchange, dispatcher).execute(signal)

    assert report.status == "COMPLETE"
    assert exchange.leverage[PAIR] == 50
    assert [m for m, _ in exchange.call_log].count("set_leverage") == 2
    # sized with the leverage that was accepted: 10 * 50 / 101
    assert report.placed[0].quantity == Decimal("4.950")


async def test_leverage_gives_up_after_one_retry(fill_queue, dispatcher, signal):
    wallet = WalletContext(name="greedy", api_key="k", api_secret="s", balance=10, leverage=75)
    filters = SymbolFilters(PAIR, Decimal("0.001"), Decimal("0.01"), max_leverage=20)
    exchange = PaperExchange(wallet, fill_queue, filters={PAIR: filters}, prices={PAIR: 101})
    report = await ExecutionCoordinator(wallet, exchange, dispatcher).execute(signal)

    assert report.status == "REJECTED"
    assert [m for m, _ in exchange.call_log].count("set_leverage") == 2
    assert ("submit_order", PAIR) not in exchange.call_log


async def test_rejected_order_stops_the_sequence_without_rollback(coordinator, exchange, dispatcher, signal):
    exchange.reject_tags = {"TP2"}
    report = await coordinator.execute(signal)

    assert report.status == "PARTIAL"
    assert "TP2" in report.error
    assert [p.kind for p in report.placed] == ["ENTRY", "STOP_LOSS", "TAKE_PROFIT"]
    # trailing stop never sent; what was accepted stays live
    assert submitted_tags(exchange) == ["STOP_LOSS", "TP1"]
    assert report.monitor in dispatcher.active_monitors()


async def test_rejected_entry_places_nothing(coordinator, exchange, dispatcher, signal):
    exchange.reject_tags = {"ENTRY"}
    report = await coordinator.execute(signal)

    assert report.status == "REJECTED"
    assert report.placed == []
    assert exchange.open_orders == {}
    assert dispatcher.active_monitors() == []


async def test_unknown_mark_price_is_rejected(wallet, fill_queue, dispatcher, filters):
    exchange = PaperExchange(wallet, fill_queue, filters={PAIR: filters}, prices={})
    report = await ExecutionCoordinator(wallet, exchange, dispatcher).execute(make_signal())

    assert report.status == "REJECTED"
    assert ("submit_order", PAIR) not in exchange.call_log
