# ratchet/ladder_builder.py
import logging
import uuid
from decimal import Decimal

from ratchet.config import config
from ratchet.datastructures import (
    OrderLadder, OrderRequest, SymbolFilters, TakeProfitLeg, TradeSignal, opposite, to_decimal,
)
from ratchet.errors import ValidationError
from ratchet.quantizer import Quantizer


def new_client_order_id(tag: str) -> str:
    """Client order ids stay under the 36 characters venues accept."""
    return f"rt-{tag.lower()}-{uuid.uuid4().hex[:20]}"


def build_ladder(
    signal: TradeSignal,
    mark_price,
    balance,
    leverage: int,
    filters: SymbolFilters,
    callback_rate=None,
) -> OrderLadder:
    """
    Turns a signal into the concrete, grid-aligned order set:
    1 market entry, 1 close-position stop-loss, N-1 take-profits and a
    trailing stop on the last target that absorbs the rounding remainder.
    """
    quantizer = Quantizer(filters)
    n_targets = len(signal.targets)
    if n_targets < 1:
        raise ValidationError(f"[{signal.pair}] Cannot build a ladder without targets.")

    mark = quantizer.price(mark_price)
    if mark <= 0:
        raise ValidationError(f"[{signal.pair}] Mark price {mark_price} quantizes to zero.")

    notional = to_decimal(balance, "balance") * int(leverage)
    entry_qty = quantizer.qty(notional / mark)
    if entry_qty <= 0:
        raise ValidationError(
            f"[{signal.pair}] Entry quantity quantizes to zero (notional {notional} @ {mark}, step {quantizer.step})."
        )
    if filters.min_qty and entry_qty < filters.min_qty:
        raise ValidationError(f"[{signal.pair}] Entry quantity {entry_qty} is below the minimum {filters.min_qty}.")

    side = signal.side
    close_side = opposite(side)

    # --- Take-profit sizing: equal legs, remainder goes to the trailing stop ---
    k = n_targets - 1
    tp_qty = quantizer.qty(entry_qty / n_targets) if k else Decimal('0')
    if k and tp_qty <= 0:
        raise ValidationError(
            f"[{signal.pair}] {entry_qty} split over {n_targets} targets leaves take-profit legs of zero size."
        )
    trailing_qty = entry_qty - tp_qty * k

    entry = OrderRequest(
        symbol=signal.pair, side=side, order_type='MARKET', quantity=entry_qty,
        client_order_id=new_client_order_id('en'), tag='ENTRY',
    )
    stop_loss = OrderRequest(
        symbol=signal.pair, side=close_side, order_type='STOP_MARKET', quantity=entry_qty,
        stop_price=quantizer.price(signal.stop_loss), close_position=True, reduce_only=True,
        client_order_id=new_client_order_id('sl'), tag='STOP_LOSS',
    )

    take_profits = []
    for i, target in enumerate(signal.targets[:k]):
        tp_price = quantizer.price(target)
        take_profits.append(TakeProfitLeg(
            target_index=i,
            order=OrderRequest(
                symbol=signal.pair, side=close_side, order_type='TAKE_PROFIT', quantity=tp_qty,
                price=tp_price, stop_price=tp_price, reduce_only=True, time_in_force='GTC',
                client_order_id=new_client_order_id(f'tp{i + 1}'), tag=f'TP{i + 1}',
            ),
        ))

    rate = to_decimal(callback_rate if callback_rate is not None else config.TRAILING_CALLBACK_RATE, "callback rate")
    trailing_stop = OrderRequest(
        symbol=signal.pair, side=close_side, order_type='TRAILING_STOP_MARKET', quantity=trailing_qty,
        activation_price=quantizer.price(signal.targets[-1]), callback_rate=rate, reduce_only=True,
        client_order_id=new_client_order_id('ts'), tag='TRAILING',
    )

    ladder = OrderLadder(
        symbol=signal.pair, side=side, close_side=close_side, entry_qty=entry_qty,
        entry=entry, stop_loss=stop_loss, take_profits=take_profits,
        trailing_stop=trailing_stop, trailing_index=n_targets - 1,
    )
    logging.info(
        f"[{signal.pair}] Ladder: {side} {entry_qty} @ ~{mark}, SL {stop_loss.stop_price}, "
        f"{k} TP x {tp_qty}, trailing {trailing_qty} from {trailing_stop.activation_price} ({rate}%)"
    )
    return ladder
