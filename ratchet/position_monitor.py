# ratchet/position_monitor.py
import asyncio
import logging
from decimal import Decimal
from typing import List, Literal, Optional

from ratchet.datastructures import (
    FillNotification, OrderRequest, PlacedOrder, PositionState, TradeSignal, opposite,
)
from ratchet.errors import NotificationHandlingError, SubmissionError
from ratchet.ladder_builder import new_client_order_id
from ratchet.quantizer import Quantizer

MonitorStatus = Literal['ARMED', 'ADVANCING', 'CLOSED', 'ABANDONED']
TERMINAL = ('CLOSED', 'ABANDONED')

# Fills of any other order type never concern a ladder
LADDER_ORDER_TYPES = {'STOP_MARKET', 'TAKE_PROFIT', 'TRAILING_STOP_MARKET'}


class PositionMonitor:
    """
    State machine for one placed ladder, fed by the wallet's FillDispatcher.

    ARMED -> ADVANCING on each take-profit fill: the stop-loss is replaced at
    the entry price (first target) or at the previous target, never backwards.
    Any -> CLOSED when the stop-loss or the trailing stop fills: every other
    open order on the symbol is cancelled and the monitor unregisters itself.
    Any -> ABANDONED when torn down without a confirmed close.
    """
    def __init__(self, signal: TradeSignal, placed_orders: List[PlacedOrder], exchange,
                 dispatcher=None, quantizer: Optional[Quantizer] = None, wallet_name: str = ""):
        self.signal = signal
        self.symbol = signal.pair
        self.exchange = exchange
        self.dispatcher = dispatcher
        self.quantizer = quantizer
        self.wallet_name = wallet_name
        self.placed: List[PlacedOrder] = []
        self.status: MonitorStatus = 'ARMED'
        self.finished = asyncio.Event()
        self._lock = asyncio.Lock()
        self._filled_targets = set()
        self._current_stop: Optional[PlacedOrder] = None
        self._stop_qty = None
        # set once the stop is cancelled externally with no position left
        self._flat = False
        self.close_side = opposite(signal.side)
        self.state = PositionState(
            symbol=self.symbol,
            side=signal.side,
            remaining_targets=list(signal.targets),
            current_stop_price=signal.stop_loss,
        )
        for placed in placed_orders:
            self.track(placed)

    def track(self, placed: PlacedOrder):
        """Adds an order accepted by the exchange to this ladder."""
        self.placed.append(placed)
        if placed.kind == 'ENTRY':
            self._stop_qty = self._stop_qty or placed.quantity
            return
        if placed.order_id:
            self.state.open_order_ids.add(placed.order_id)
        if placed.kind == 'STOP_LOSS' and self._current_stop is None:
            self._current_stop = placed
            self._stop_qty = placed.quantity
            self.state.current_stop_price = placed.orig_price

    def __repr__(self):
        return f"PositionMonitor({self.wallet_name}:{self.symbol} {self.status} stop={self.state.current_stop_price})"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL

    def _log(self, level, message, **kwargs):
        logging.log(level, f"[{self.wallet_name}][{self.symbol}] {message}", **kwargs)

    def _first_of_kind(self, kind: str) -> Optional[PlacedOrder]:
        return next((p for p in self.placed if p.kind == kind), None)

    def _match(self, notification: FillNotification) -> Optional[PlacedOrder]:
        for placed in self.placed:
            if placed.matches(notification.order_id, notification.client_order_id):
                return placed
        if notification.order_type == 'TRAILING_STOP_MARKET':
            # position-level trailing stops may not have been visible at placement time
            trailing = self._first_of_kind('TRAILING_STOP')
            if trailing and not trailing.order_id:
                return trailing
        return None

    # --- Event handling ---

    async def handle(self, notification: FillNotification):
        """Entry point for the dispatcher. Serialized per monitor."""
        if notification.symbol != self.symbol or self.is_terminal:
            return
        async with self._lock:
            if self.is_terminal:
                return
            try:
                await self._process(notification)
            except NotificationHandlingError as e:
                self._log(logging.WARNING, f"Non-fatal while handling {notification.order_type}: {e}")
            except SubmissionError as e:
                self._log(logging.CRITICAL, f"Stop-loss replacement rejected, position may be unprotected: {e}")
            except Exception:
                self._log(logging.ERROR, f"Unexpected error handling {notification}", exc_info=True)

    async def _process(self, notification: FillNotification):
        if notification.order_type not in LADDER_ORDER_TYPES:
            return
        placed = self._match(notification)
        if placed is None:
            self._log(logging.DEBUG, f"Ignoring {notification.order_type} {notification.client_order_id}: not ours.")
            return

        if notification.status == 'FILLED':
            if placed.kind in ('STOP_LOSS', 'TRAILING_STOP'):
                await self._close(placed)
                return
            if placed.kind == 'TAKE_PROFIT':
                if self._flat:
                    self.state.open_order_ids.discard(placed.order_id)
                else:
                    await self._ratchet(placed)
        elif notification.status in ('CANCELED', 'EXPIRED', 'REJECTED'):
            self.state.open_order_ids.discard(placed.order_id)
            if placed is self._current_stop:
                await self._stop_lost()

        if self._flat and not self.state.open_order_ids:
            self._finish('ABANDONED')

    # --- Transitions ---

    async def _ratchet(self, placed: PlacedOrder):
        index = placed.target_index
        self.state.open_order_ids.discard(placed.order_id)
        self._filled_targets.add(index)
        self.state.remaining_targets = [
            t for i, t in enumerate(self.signal.targets) if i not in self._filled_targets
        ]
        self._log(logging.INFO, f"Take profit {index + 1} filled @ {placed.orig_price}.")

        if index <= self.state.ratchet_level:
            self._log(logging.INFO, f"Stale fill for target {index + 1}; stop stays at {self.state.current_stop_price}.")
            return

        new_stop = self.signal.entry_price if index == 0 else self.signal.targets[index - 1]
        if self.quantizer:
            new_stop = self.quantizer.price(new_stop)
        if self._current_stop is not None and not self._improves(new_stop):
            self.state.ratchet_level = index
            self.status = 'ADVANCING'
            return

        if await self._replace_stop(new_stop):
            self.state.ratchet_level = index
            self.status = 'ADVANCING'
            self._log(logging.INFO, f"Stop-loss ratcheted to {new_stop}.")

    def _improves(self, price: Decimal) -> bool:
        if self.signal.direction == 'LONG':
            return price > self.state.current_stop_price
        return price < self.state.current_stop_price

    async def _replace_stop(self, price: Decimal) -> bool:
        """Cancel-then-submit of the stop-loss; False when the position is already gone."""
        old = self._current_stop
        if old is not None:
            try:
                await self.exchange.cancel_order(self.symbol, old.order_id)
            except NotificationHandlingError as e:
                self._log(logging.WARNING, f"Old stop-loss already gone ({e}).")
                if not await self.exchange.get_open_positions(self.symbol):
                    return False
            self.state.open_order_ids.discard(old.order_id)
            self._current_stop = None

        request = OrderRequest(
            symbol=self.symbol, side=self.close_side, order_type='STOP_MARKET', quantity=self._stop_qty,
            stop_price=price, close_position=True, reduce_only=True,
            client_order_id=new_client_order_id('sl'), tag='STOP_LOSS',
        )
        response = await self.exchange.submit_order(request)
        placed = PlacedOrder(
            client_order_id=response.get('clientOrderId') or request.client_order_id,
            kind='STOP_LOSS', orig_price=price, quantity=self._stop_qty, order_id=response.get('orderId', ''),
        )
        self.placed.append(placed)
        self._current_stop = placed
        self.state.current_stop_price = price
        if placed.order_id:
            self.state.open_order_ids.add(placed.order_id)
        return True

    async def _close(self, filled: PlacedOrder):
        self._log(logging.INFO, f"{filled.kind} filled. Cancelling all open orders.")
        await self._cancel_remaining(filled.order_id)
        self._finish('CLOSED')

    async def _cancel_remaining(self, skip_order_id: str = None) -> set:
        """Cancels every open order left on the symbol; returns the ids it cancelled."""
        cancelled = set()
        try:
            open_orders = await self.exchange.get_open_orders(self.symbol)
        except SubmissionError as e:
            self._log(logging.ERROR, f"Could not list open orders ({e}); cancelling everything.")
            try:
                await self.exchange.cancel_all_orders(self.symbol)
            except SubmissionError as e2:
                self._log(logging.ERROR, f"cancel_all_orders failed: {e2}")
            open_orders = []

        for order in open_orders:
            if skip_order_id and order['order_id'] == skip_order_id:
                continue
            try:
                await self.exchange.cancel_order(self.symbol, order['order_id'])
                cancelled.add(order['order_id'])
                self._log(logging.INFO, f"Cancelled order ID: {order['order_id']}")
            except NotificationHandlingError as e:
                self._log(logging.INFO, f"Order {order['order_id']} was already closed: {e}")
            except SubmissionError as e:
                self._log(logging.ERROR, f"Error cancelling order ID {order['order_id']}: {e}")
        return cancelled

    async def _stop_lost(self):
        """
        Our stop-loss was cancelled by someone else: a manual close, or the venue
        itself after a trailing fill whose notice has not arrived yet. With the
        position flat the rest of the ladder is pulled, and the monitor waits for
        the outstanding notices: a stop/trailing fill still closes it, otherwise
        it ends ABANDONED.
        """
        self._current_stop = None
        if await self.exchange.get_open_positions(self.symbol):
            self._log(logging.WARNING, "Stop-loss cancelled externally while the position is still open.")
            return
        self._log(logging.WARNING, "Stop-loss cancelled and position is flat. Tearing down the ladder.")
        self._flat = True
        pending = await self._cancel_remaining()
        trailing = self._first_of_kind('TRAILING_STOP')
        if trailing and trailing.order_id:
            pending.add(trailing.order_id)
        self.state.open_order_ids &= pending

    def _finish(self, status: MonitorStatus):
        """Terminal transition. Idempotent."""
        if self.is_terminal:
            return
        self.status = status
        if status == 'CLOSED':
            self.state.open_order_ids.clear()
        if self.dispatcher is not None:
            self.dispatcher.unregister(self)
        self.finished.set()
        self._log(logging.INFO, f"Monitor {status}.")

    def abandon(self, reason: str = ""):
        """Tears the monitor down without a confirmed close."""
        if self.is_terminal:
            return
        self._log(logging.WARNING, f"Abandoning monitor: {reason}")
        self._finish('ABANDONED')

    def describe(self) -> dict:
        return {
            'wallet': self.wallet_name,
            'symbol': self.symbol,
            'direction': self.signal.direction,
            'status': self.status,
            'stop_price': str(self.state.current_stop_price),
            'ratchet_level': self.state.ratchet_level,
            'remaining_targets': [str(t) for t in self.state.remaining_targets],
            'open_orders': sorted(self.state.open_order_ids),
        }
