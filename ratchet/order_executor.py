# ratchet/order_executor.py
import logging
from decimal import Decimal
from typing import Optional

from ratchet.datastructures import (
    ExecutionReport, OrderRequest, PlacedOrder, TradeSignal, WalletContext,
)
from ratchet.errors import SubmissionError, ValidationError
from ratchet.fill_dispatcher import FillDispatcher
from ratchet.ladder_builder import build_ladder
from ratchet.position_monitor import PositionMonitor
from ratchet.quantizer import Quantizer


class ExecutionCoordinator:
    """
    Takes a TradeSignal to a live ladder for one wallet.
    Submission order is fixed: leverage, entry, stop-loss, take-profits in
    target order, trailing stop. Each order gets a single attempt; the first
    rejection stops the sequence and what was already accepted stays live.
    """
    def __init__(self, wallet: WalletContext, exchange, dispatcher: FillDispatcher, callback_rate=None):
        self.wallet = wallet
        self.exchange = exchange
        self.dispatcher = dispatcher
        self.callback_rate = callback_rate

    async def _apply_leverage(self, pair: str, notional: Decimal) -> int:
        """Sets the wallet's leverage, retrying once with the bracket maximum."""
        leverage = self.wallet.leverage
        try:
            await self.exchange.set_leverage(pair, leverage)
            logging.info(f"[{self.wallet.name}] Leverage set correctly for {pair} x{leverage}")
            return leverage
        except SubmissionError as e:
            logging.warning(f"[{self.wallet.name}] Leverage x{leverage} rejected for {pair}: {e}")

        max_leverage = await self.exchange.get_max_leverage(pair, notional)
        if not max_leverage:
            raise SubmissionError(f"No valid leverage bracket for {pair} at notional {notional}.")
        await self.exchange.set_leverage(pair, max_leverage)
        logging.info(f"[{self.wallet.name}] Leverage for {pair} fell back to bracket maximum x{max_leverage}")
        return max_leverage

    async def _submit(self, request: OrderRequest, kind: str, orig_price: Optional[Decimal],
                      target_index: Optional[int] = None) -> PlacedOrder:
        response = await self.exchange.submit_order(request)
        placed = PlacedOrder(
            client_order_id=response.get('clientOrderId') or request.client_order_id or '',
            kind=kind,
            orig_price=orig_price,
            quantity=request.quantity,
            order_id=response.get('orderId', ''),
            target_index=target_index,
        )
        logging.info(f"[{self.wallet.name}] {request.tag} order placed: {placed.order_id} ({placed.client_order_id})")
        return placed

    async def execute(self, signal: TradeSignal) -> ExecutionReport:
        pair = signal.pair
        name = self.wallet.name

        # --- Preflight: nothing is sent unless the ladder can be built ---
        try:
            filters = await self.exchange.get_symbol_filters(pair)
            if filters is None:
                raise ValidationError(f"Missing filters for symbol {pair}.")
            quantizer = Quantizer(filters)
            mark_price = await self.exchange.get_mark_price(pair)
            notional = self.wallet.balance * self.wallet.leverage
            leverage = await self._apply_leverage(pair, notional)
            ladder = build_ladder(signal, mark_price, self.wallet.balance, leverage, filters, self.callback_rate)
        except ValidationError as e:
            logging.error(f"[{name}] Signal for {pair} not executed: {e}")
            return ExecutionReport(name, pair, 'INVALID', error=str(e))
        except SubmissionError as e:
            logging.error(f"[{name}] Preflight for {pair} failed: {e}")
            return ExecutionReport(name, pair, 'REJECTED', error=str(e))

        steps = [(ladder.stop_loss, 'STOP_LOSS', ladder.stop_loss.stop_price, None)]
        steps += [(leg.order, 'TAKE_PROFIT', leg.order.price, leg.target_index) for leg in ladder.take_profits]
        steps.append((ladder.trailing_stop, 'TRAILING_STOP', ladder.trailing_stop.activation_price, ladder.trailing_index))

        logging.info(f"[{name}] Placing Futures Orders for {pair}...")
        try:
            entry = await self._submit(ladder.entry, 'ENTRY', quantizer.price(mark_price))
        except SubmissionError as e:
            logging.error(f"[{name}] Entry order for {pair} rejected: {e}")
            return ExecutionReport(name, pair, 'REJECTED', error=str(e))

        # Registered before the exits go out so no early fill is missed
        monitor = PositionMonitor(signal, [entry], self.exchange, self.dispatcher, quantizer, name)
        self.dispatcher.register(monitor)

        error = None
        for position, (request, kind, price, index) in enumerate(steps):
            try:
                monitor.track(await self._submit(request, kind, price, index))
            except SubmissionError as e:
                error = str(e)
                logging.critical(
                    f"[{name}] PARTIAL execution on {pair}: {request.tag} rejected ({e}); "
                    f"{len(steps) - position - 1} remaining orders not sent. Placed orders stay live: "
                    f"{[p.client_order_id for p in monitor.placed]}"
                )
                break

        status = 'COMPLETE' if error is None else 'PARTIAL'
        if status == 'COMPLETE':
            logging.info(f"[{name}] All orders placed successfully for {pair}. Monitoring fills...")
        return ExecutionReport(name, pair, status, placed=list(monitor.placed), error=error, monitor=monitor)
