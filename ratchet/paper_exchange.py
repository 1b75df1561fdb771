# ratchet/paper_exchange.py
import asyncio
import itertools
import logging
import random
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional, Set, Tuple

from ratchet.config import config
from ratchet.datastructures import (
    FillNotification, OrderRequest, PositionSnapshot, SymbolFilters, WalletContext, to_decimal,
)
from ratchet.errors import NotificationHandlingError, SubmissionError
from ratchet.quantizer import Quantizer

DEFAULT_BRACKETS: Tuple[Tuple[Decimal, int], ...] = (
    (Decimal('50000'), 50),
    (Decimal('250000'), 20),
    (Decimal('1000000'), 10),
)


@dataclass
class _RestingOrder:
    order_id: str
    request: OrderRequest
    activated: bool = False
    extreme: Optional[Decimal] = None  # best price seen since a trailing stop activated


class PaperExchange:
    """
    In-memory venue with the same async surface as ExchangeConnector.
    - Market orders fill immediately at the mark price.
    - Stop, take-profit and trailing-stop orders rest until the mark price
      crosses them (see set_mark_price).
    - Every fill/cancel is pushed to `output_queue` as a FillNotification.
    """
    def __init__(self, wallet: WalletContext, output_queue: asyncio.Queue,
                 filters: Dict[str, SymbolFilters] = None, default_filters: SymbolFilters = None,
                 prices: Dict[str, object] = None, brackets=DEFAULT_BRACKETS):
        self.wallet = wallet
        self.output_queue = output_queue
        self.filters = dict(filters or {})
        if default_filters is None and filters is None:
            default_filters = SymbolFilters('*', Decimal('0.001'), Decimal('0.01'), max_leverage=50)
        self.default_filters = default_filters
        start = prices if prices is not None else config.SIM_START_PRICES
        self.mark_prices: Dict[str, Decimal] = {k: to_decimal(v) for k, v in start.items()}
        self.brackets = tuple(brackets)
        self.positions: Dict[str, Decimal] = {}
        self.entry_prices: Dict[str, Decimal] = {}
        self.leverage: Dict[str, int] = {}
        self.open_orders: Dict[str, _RestingOrder] = {}
        # Orders whose tag is listed here are rejected on submission
        self.reject_tags: Set[str] = set()
        # (method, symbol) of every call, in order
        self.call_log: List[Tuple[str, str]] = []
        self._ids = itertools.count(1)

    def _record(self, method: str, pair: str):
        self.call_log.append((method, pair))

    def _emit(self, request: OrderRequest, order_id: str, status: str, price: Decimal = None):
        self.output_queue.put_nowait(FillNotification(
            symbol=request.symbol, order_type=request.order_type, order_id=order_id,
            client_order_id=request.client_order_id or '', status=status, side=request.side, price=price,
        ))

    def seed_price(self, pair: str, price) -> None:
        """Starts quoting `pair` at `price` unless it is already quoted."""
        self.mark_prices.setdefault(pair, to_decimal(price))

    # --- Market metadata ---

    async def get_symbol_filters(self, pair: str) -> Optional[SymbolFilters]:
        self._record('get_symbol_filters', pair)
        filters = self.filters.get(pair)
        if filters is None and self.default_filters is not None:
            d = self.default_filters
            filters = SymbolFilters(pair, d.step_size, d.tick_size, d.min_qty, d.max_leverage)
        return filters

    async def get_mark_price(self, pair: str) -> Decimal:
        self._record('get_mark_price', pair)
        if pair not in self.mark_prices:
            raise SubmissionError(f"[SIMULATION] No mark price for {pair}.")
        return self.mark_prices[pair]

    # --- Account ---

    async def get_max_leverage(self, pair: str, notional) -> Optional[int]:
        self._record('get_max_leverage', pair)
        notional = to_decimal(notional)
        for cap, max_leverage in self.brackets:
            if notional <= cap:
                return max_leverage
        return None

    async def set_leverage(self, pair: str, leverage: int) -> None:
        self._record('set_leverage', pair)
        filters = await self.get_symbol_filters(pair)
        cap = filters.max_leverage if filters else None
        if cap is not None and leverage > cap:
            raise SubmissionError(f"[SIMULATION] Leverage {leverage} exceeds {cap} for {pair}.", code=110013)
        self.leverage[pair] = leverage

    async def get_open_positions(self, pair: str) -> List[PositionSnapshot]:
        self._record('get_open_positions', pair)
        qty = self.positions.get(pair, Decimal('0'))
        if qty == 0:
            return []
        return [PositionSnapshot(pair, qty, self.entry_prices.get(pair))]

    # --- Orders ---

    async def submit_order(self, request: OrderRequest) -> dict:
        self._record('submit_order', request.symbol)
        if request.tag in self.reject_tags or request.order_type in self.reject_tags:
            raise SubmissionError(f"[SIMULATION] Rejected {request.tag or request.order_type} on {request.symbol}.",
                                  request=request)
        if not request.close_position and (request.quantity is None or request.quantity <= 0):
            raise SubmissionError(f"[SIMULATION] Order without quantity: {request}", request=request)

        order_id = f"paper-{next(self._ids)}"
        logging.info(f"[SIMULATION] Placing order {order_id}: {request}")
        if request.order_type == 'MARKET':
            price = self.mark_prices.get(request.symbol)
            if price is None:
                raise SubmissionError(f"[SIMULATION] No mark price for {request.symbol}.", request=request)
            self._fill(_RestingOrder(order_id, request), price)
        else:
            self.open_orders[order_id] = _RestingOrder(order_id, request)
        return {'orderId': order_id, 'clientOrderId': request.client_order_id or ''}

    async def cancel_order(self, pair: str, order_id: str) -> None:
        self._record('cancel_order', pair)
        resting = self.open_orders.get(order_id)
        if resting is None or resting.request.symbol != pair:
            raise NotificationHandlingError(f"[SIMULATION] Order {order_id} on {pair} does not exist or is already closed.")
        del self.open_orders[order_id]
        self._emit(resting.request, order_id, 'CANCELED')

    async def get_open_orders(self, pair: str) -> List[dict]:
        self._record('get_open_orders', pair)
        return [
            {
                'order_id': o.order_id,
                'client_order_id': o.request.client_order_id or '',
                'order_type': o.request.order_type,
                'side': o.request.side,
                'stop_price': o.request.stop_price,
                'status': 'NEW',
            }
            for o in self.open_orders.values() if o.request.symbol == pair
        ]

    async def cancel_all_orders(self, pair: str) -> None:
        self._record('cancel_all_orders', pair)
        for order_id in [oid for oid, o in self.open_orders.items() if o.request.symbol == pair]:
            resting = self.open_orders.pop(order_id)
            self._emit(resting.request, order_id, 'CANCELED')

    # --- Matching ---

    def _fill(self, resting: _RestingOrder, price: Decimal):
        request = resting.request
        position = self.positions.get(request.symbol, Decimal('0'))
        qty = request.quantity or Decimal('0')
        if request.close_position or request.reduce_only:
            # Reduce-only fills never flip the position
            closing = (position > 0 and request.side == 'SELL') or (position < 0 and request.side == 'BUY')
            qty = abs(position) if request.close_position else min(qty, abs(position))
            if not closing or qty == 0:
                self._emit(request, resting.order_id, 'CANCELED')
                return
        signed = qty if request.side == 'BUY' else -qty
        if position == 0 or (position > 0) == (signed > 0):
            self.entry_prices[request.symbol] = price
        self.positions[request.symbol] = position + signed
        logging.info(f"[SIMULATION] Filled {request.tag or request.order_type} {request.side} {qty} "
                     f"{request.symbol} @ {price}; position now {self.positions[request.symbol]}")
        self._emit(request, resting.order_id, 'FILLED', price)

    def _triggered(self, resting: _RestingOrder, price: Decimal) -> bool:
        request = resting.request
        selling = request.side == 'SELL'
        if request.order_type == 'STOP_MARKET':
            return price <= request.stop_price if selling else price >= request.stop_price
        if request.order_type == 'TAKE_PROFIT':
            return price >= request.stop_price if selling else price <= request.stop_price
        if request.order_type == 'TRAILING_STOP_MARKET':
            if not resting.activated:
                reached = price >= request.activation_price if selling else price <= request.activation_price
                if not reached:
                    return False
                resting.activated = True
                resting.extreme = price
            resting.extreme = max(resting.extreme, price) if selling else min(resting.extreme, price)
            offset = resting.extreme * request.callback_rate / 100
            return price <= resting.extreme - offset if selling else price >= resting.extreme + offset
        return False

    async def set_mark_price(self, pair: str, price) -> None:
        """Moves the mark and fills every resting order the move crosses."""
        price = to_decimal(price)
        filters = await self.get_symbol_filters(pair)
        if filters is not None:
            price = Quantizer(filters).price(price)
        self.mark_prices[pair] = price
        for order_id, resting in list(self.open_orders.items()):
            if resting.request.symbol != pair or order_id not in self.open_orders:
                continue
            if self._triggered(resting, price):
                del self.open_orders[order_id]
                fill_price = resting.request.price if resting.request.order_type == 'TAKE_PROFIT' else price
                self._fill(resting, fill_price)

    async def run(self, tick_seconds: float = None, volatility: float = None):
        """Random-walk mark prices, like a live feed would move them."""
        tick_seconds = config.SIM_TICK_SECONDS if tick_seconds is None else tick_seconds
        volatility = config.SIM_VOLATILITY if volatility is None else volatility
        logging.info(f"[{self.wallet.name}] Starting SIMULATED price feed.")
        while True:
            for pair, price in list(self.mark_prices.items()):
                change = to_decimal(random.uniform(-volatility, volatility))
                await self.set_mark_price(pair, price * (1 + change))
            await asyncio.sleep(tick_seconds)
