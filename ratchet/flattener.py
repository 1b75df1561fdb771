# ratchet/flattener.py
import logging

from ratchet.datastructures import CloseSignal, OrderRequest
from ratchet.ladder_builder import new_client_order_id


async def flatten(signal: CloseSignal, exchange, wallet_name: str = "") -> bool:
    """
    Closes the live position on `signal.pair` with one opposing market order,
    then cancels every open order left on the symbol. Returns False when there
    was nothing to close. Monitors notice the cancels on the order stream.
    """
    pair = signal.pair
    logging.info(f"[{wallet_name}] Handling close signal for pair: {pair}")

    positions = await exchange.get_open_positions(pair)
    if not positions:
        logging.info(f"[{wallet_name}] No open positions found for {pair}.")
        return False

    position = positions[0]
    if signal.direction and (position.quantity > 0) != (signal.direction == 'LONG'):
        logging.warning(f"[{wallet_name}] Close signal says {signal.direction} but {pair} position is {position.quantity}; closing anyway.")

    side = 'SELL' if position.quantity > 0 else 'BUY'
    quantity = abs(position.quantity)
    logging.info(f"[{wallet_name}] Closing position for {pair}: {quantity} {side}")

    response = await exchange.submit_order(OrderRequest(
        symbol=pair, side=side, order_type='MARKET', quantity=quantity, reduce_only=True,
        client_order_id=new_client_order_id('cl'), tag='CLOSE',
    ))
    logging.info(f"[{wallet_name}] Market order placed to close position: {response.get('orderId')}")

    await exchange.cancel_all_orders(pair)
    logging.info(f"[{wallet_name}] Cancelled open orders for {pair}.")
    return True
