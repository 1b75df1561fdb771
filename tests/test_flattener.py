from decimal import Decimal

from conftest import PAIR
from ratchet.datastructures import CloseSignal, OrderRequest
from ratchet.flattener import flatten


async def test_no_position_only_looks_up_the_position(exchange):
    assert await flatten(CloseSignal(pair=PAIR), exchange, "test") is False
    assert exchange.call_log == [("get_open_positions", PAIR)]


async def test_long_position_is_sold_and_orders_cancelled(exchange):
    await exchange.submit_order(OrderRequest(PAIR, "BUY", "MARKET", quantity=Decimal("2.5")))
    await exchange.submit_order(OrderRequest(PAIR, "SELL", "STOP_MARKET", quantity=Decimal("2.5"),
                                             stop_price=Decimal("90"), close_position=True))

    assert await flatten(CloseSignal(pair=PAIR, direction="LONG"), exchange, "test") is True

    assert exchange.positions[PAIR] == 0
    assert exchange.open_orders == {}
    methods = [m for m, _ in exchange.call_log]
    assert methods[-3:] == ["get_open_positions", "submit_order", "cancel_all_orders"]


async def test_short_position_is_bought_back(exchange, fill_queue):
    await exchange.submit_order(OrderRequest(PAIR, "SELL", "MARKET", quantity=Decimal("1.2")))
    while not fill_queue.empty():
        fill_queue.get_nowait()

    assert await flatten(CloseSignal(pair=PAIR), exchange, "test") is True

    assert exchange.positions[PAIR] == 0
    close_fill = fill_queue.get_nowait()
    assert close_fill.side == "BUY"
    assert close_fill.status == "FILLED"
