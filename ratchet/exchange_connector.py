# ratchet/exchange_connector.py
import asyncio
import hashlib
import hmac
import json
import logging
import time
from decimal import Decimal
from typing import Dict, List, Optional

from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed

from ratchet.config import config
from ratchet.datastructures import (
    FillNotification, OrderRequest, PositionSnapshot, SymbolFilters, WalletContext, to_decimal,
)
from ratchet.errors import NotificationHandlingError, SubmissionError, SubscriptionError, ValidationError
from ratchet.quantizer import Quantizer

# Import the synchronous HTTP client from pybit
from pybit.unified_trading import HTTP
from pybit.exceptions import FailedRequestError, InvalidRequestError

# Order already filled, cancelled or unknown: a cancel that lost the race
BENIGN_CANCEL_CODES = {110001, 110008, 110010}
LEVERAGE_NOT_MODIFIED = 110043

_STATUS_MAP = {
    'New': 'NEW',
    'Untriggered': 'NEW',
    'Triggered': 'NEW',
    'Active': 'NEW',
    'PartiallyFilled': 'PARTIALLY_FILLED',
    'Filled': 'FILLED',
    'Cancelled': 'CANCELED',
    'PartiallyFilledCanceled': 'CANCELED',
    'Deactivated': 'CANCELED',
    'Rejected': 'REJECTED',
}


def normalize_order_type(order_type: str, stop_order_type: str = '') -> str:
    """Maps Bybit orderType/stopOrderType onto this bot's order types."""
    if stop_order_type == 'TrailingStop':
        return 'TRAILING_STOP_MARKET'
    if stop_order_type in ('StopLoss', 'PartialStopLoss'):
        return 'STOP_MARKET'
    if stop_order_type in ('TakeProfit', 'PartialTakeProfit'):
        return 'TAKE_PROFIT'
    if stop_order_type == 'Stop':
        return 'TAKE_PROFIT' if order_type == 'Limit' else 'STOP_MARKET'
    if stop_order_type:
        return stop_order_type.upper()
    return (order_type or '').upper()


def normalize_status(status: str) -> str:
    return _STATUS_MAP.get(status, (status or '').upper())


def normalize_order(item: dict) -> dict:
    """Open-order entry in the shape the monitor and flattener use."""
    return {
        'order_id': item.get('orderId', ''),
        'client_order_id': item.get('orderLinkId', ''),
        'order_type': normalize_order_type(item.get('orderType', ''), item.get('stopOrderType', '')),
        'side': (item.get('side') or '').upper(),
        'stop_price': item.get('triggerPrice') or None,
        'status': normalize_status(item.get('orderStatus', '')),
    }


def parse_order_message(message: dict) -> List[FillNotification]:
    """Extracts FillNotifications from one private-stream frame; other frames yield nothing."""
    if not isinstance(message, dict) or message.get('topic') != 'order':
        return []
    notifications = []
    for item in message.get('data', []):
        try:
            price = item.get('avgPrice') or item.get('price')
            notifications.append(FillNotification(
                symbol=item.get('symbol', ''),
                order_type=normalize_order_type(item.get('orderType', ''), item.get('stopOrderType', '')),
                order_id=item.get('orderId', ''),
                client_order_id=item.get('orderLinkId', ''),
                status=normalize_status(item.get('orderStatus', '')),
                side=(item.get('side') or '').upper() or None,
                price=to_decimal(price) if price not in (None, '', '0') else None,
            ))
        except (AttributeError, ValidationError) as e:
            logging.warning(f"Skipping malformed order update {item!r}: {e}")
    return notifications


def order_params(request: OrderRequest, category: str = 'linear') -> dict:
    """Translates an OrderRequest into pybit place_order() keyword arguments."""
    params = {
        'category': category,
        'symbol': request.symbol,
        'side': 'Buy' if request.side == 'BUY' else 'Sell',
        'positionIdx': 0,
    }
    if request.client_order_id:
        params['orderLinkId'] = request.client_order_id
    if request.order_type == 'MARKET':
        params.update(orderType='Market', qty=str(request.quantity))
        if request.reduce_only:
            params['reduceOnly'] = True
    elif request.order_type == 'STOP_MARKET':
        # Closing a long sells into a falling price; closing a short buys into a rising one
        params.update(
            orderType='Market', qty=str(request.quantity), triggerPrice=str(request.stop_price),
            triggerDirection=2 if request.side == 'SELL' else 1, triggerBy='LastPrice',
            reduceOnly=True, closeOnTrigger=request.close_position,
        )
    elif request.order_type == 'TAKE_PROFIT':
        params.update(
            orderType='Limit', qty=str(request.quantity), price=str(request.price),
            triggerPrice=str(request.stop_price), triggerDirection=1 if request.side == 'SELL' else 2,
            triggerBy='LastPrice', reduceOnly=True, timeInForce=request.time_in_force or 'GTC',
        )
    else:
        raise ValueError(f"order_params() cannot express {request.order_type}")
    return params


class ExchangeConnector:
    """
    Handles all network I/O with the exchange for one wallet.
    - Authenticated REST API calls via pybit, run in the default executor.
    - The wallet's private order stream over WebSocket, pushed to `output_queue`
      as FillNotifications.
    """
    def __init__(self, wallet: WalletContext, output_queue: asyncio.Queue,
                 testnet: bool = None, category: str = None, ws_url: str = None):
        self.wallet = wallet
        self.output_queue = output_queue
        self.category = category or config.CATEGORY
        self.ws_url = ws_url or config.PRIVATE_WS_URL
        self._filters: Dict[str, SymbolFilters] = {}
        # seconds to wait before reconnecting after a dropped or failed stream
        self.reconnect_delay = 5
        self.retry_delay = 15

        # --- PYBIT INTEGRATION ---
        self.session = HTTP(
            testnet=config.TESTNET if testnet is None else testnet,
            api_key=wallet.api_key,
            api_secret=wallet.api_secret
        )
        logging.info(f"[{wallet.name}] Initialized LIVE pybit HTTP session ({self.category}).")

    async def _call(self, method: str, **params) -> dict:
        """Runs a synchronous pybit call in the executor and returns its `result`."""
        loop = asyncio.get_running_loop()
        try:
            response = await loop.run_in_executor(
                None,  # Use default thread pool executor
                lambda: getattr(self.session, method)(**params)
            )
        except (InvalidRequestError, FailedRequestError) as e:
            raise SubmissionError(f"{method} rejected: {e.message}", code=e.status_code)
        except Exception as e:
            logging.error(f"[{self.wallet.name}] Exception during {method}: {e}", exc_info=True)
            raise SubmissionError(f"{method} failed: {e}")
        return response.get('result') or {}

    # --- Market metadata ---

    async def get_symbol_filters(self, pair: str) -> Optional[SymbolFilters]:
        result = await self._call('get_instruments_info', category=self.category, symbol=pair)
        items = result.get('list') or []
        if not items:
            return None
        info = items[0]
        step = (info.get('lotSizeFilter') or {}).get('qtyStep')
        tick = (info.get('priceFilter') or {}).get('tickSize')
        if not step or not tick:
            return None
        min_qty = (info.get('lotSizeFilter') or {}).get('minOrderQty')
        max_lev = (info.get('leverageFilter') or {}).get('maxLeverage')
        filters = SymbolFilters(
            symbol=pair,
            step_size=to_decimal(step),
            tick_size=to_decimal(tick),
            min_qty=to_decimal(min_qty) if min_qty else None,
            max_leverage=int(Decimal(max_lev)) if max_lev else None,
        )
        self._filters[pair] = filters
        return filters

    async def get_mark_price(self, pair: str) -> Decimal:
        result = await self._call('get_tickers', category=self.category, symbol=pair)
        items = result.get('list') or []
        if not items:
            raise SubmissionError(f"No ticker for {pair}.")
        return to_decimal(items[0]['markPrice'], "markPrice")

    # --- Account ---

    async def set_leverage(self, pair: str, leverage: int) -> None:
        try:
            await self._call('set_leverage', category=self.category, symbol=pair,
                             buyLeverage=str(leverage), sellLeverage=str(leverage))
        except SubmissionError as e:
            if e.code != LEVERAGE_NOT_MODIFIED:
                raise

    async def get_max_leverage(self, pair: str, notional) -> Optional[int]:
        """Max leverage of the first risk-limit bracket that fits `notional`."""
        result = await self._call('get_risk_limit', category=self.category, symbol=pair)
        brackets = sorted(result.get('list') or [], key=lambda b: Decimal(b['riskLimitValue']))
        notional = to_decimal(notional)
        for bracket in brackets:
            if Decimal(bracket['riskLimitValue']) >= notional:
                return int(Decimal(bracket['maxLeverage']))
        return None

    async def get_open_positions(self, pair: str) -> List[PositionSnapshot]:
        result = await self._call('get_positions', category=self.category, symbol=pair)
        positions = []
        for item in result.get('list') or []:
            size = to_decimal(item.get('size') or '0')
            if size == 0:
                continue
            signed = size if item.get('side') == 'Buy' else -size
            avg = item.get('avgPrice')
            positions.append(PositionSnapshot(pair, signed, to_decimal(avg) if avg else None))
        return positions

    # --- Orders ---

    async def submit_order(self, request: OrderRequest) -> dict:
        logging.info(f"[{self.wallet.name}] Placing LIVE order: {request}")
        if request.order_type == 'TRAILING_STOP_MARKET':
            return await self._submit_trailing_stop(request)
        result = await self._call('place_order', **order_params(request, self.category))
        return {'orderId': result.get('orderId', ''), 'clientOrderId': result.get('orderLinkId', request.client_order_id)}

    async def _submit_trailing_stop(self, request: OrderRequest) -> dict:
        """
        Bybit has no standalone trailing order: it is a position-level stop set
        through set_trading_stop with a price distance. The resulting conditional
        order is looked up afterwards so its id can be correlated.
        """
        filters = self._filters.get(request.symbol) or await self.get_symbol_filters(request.symbol)
        quantizer = Quantizer(filters)
        distance = max(quantizer.price(request.activation_price * request.callback_rate / 100), quantizer.tick)
        # Full mode trails whatever is left of the position, not request.quantity
        await self._call(
            'set_trading_stop', category=self.category, symbol=request.symbol, tpslMode='Full',
            positionIdx=0, trailingStop=str(distance), activePrice=str(request.activation_price),
        )
        result = await self._call('get_open_orders', category=self.category, symbol=request.symbol,
                                  orderFilter='StopOrder')
        for item in result.get('list') or []:
            if item.get('stopOrderType') == 'TrailingStop':
                return {'orderId': item.get('orderId', ''), 'clientOrderId': item.get('orderLinkId', '')}
        logging.warning(f"[{self.wallet.name}] Trailing stop for {request.symbol} set but not visible in open orders yet.")
        return {'orderId': '', 'clientOrderId': ''}

    async def cancel_order(self, pair: str, order_id: str) -> None:
        try:
            await self._call('cancel_order', category=self.category, symbol=pair, orderId=order_id)
        except SubmissionError as e:
            if e.code in BENIGN_CANCEL_CODES:
                raise NotificationHandlingError(f"Order {order_id} on {pair} already gone: {e}")
            raise

    async def get_open_orders(self, pair: str) -> List[dict]:
        result = await self._call('get_open_orders', category=self.category, symbol=pair)
        return [normalize_order(item) for item in result.get('list') or []]

    async def cancel_all_orders(self, pair: str) -> None:
        await self._call('cancel_all_orders', category=self.category, symbol=pair)

    # --- Private order stream ---

    async def _authenticate(self, websocket):
        expires = int((time.time() + 10) * 1000)
        signature = hmac.new(
            self.wallet.api_secret.encode(), f"GET/realtime{expires}".encode(), hashlib.sha256
        ).hexdigest()
        await websocket.send(json.dumps({"op": "auth", "args": [self.wallet.api_key, expires, signature]}))
        reply = json.loads(await websocket.recv())
        if not reply.get('success'):
            raise SubscriptionError(f"Private stream auth rejected: {reply.get('ret_msg')}")

    async def _heartbeat(self, websocket):
        while True:
            await asyncio.sleep(20)
            await websocket.send(json.dumps({"op": "ping"}))

    async def run(self):
        """Keeps the wallet's order stream alive and feeds the output queue."""
        async for websocket in connect(self.ws_url, ping_interval=20):
            logging.info(f"[{self.wallet.name}] Connected to private stream at {self.ws_url}")
            heartbeat = None
            try:
                await self._authenticate(websocket)
                await websocket.send(json.dumps({"op": "subscribe", "args": ["order"]}))
                heartbeat = asyncio.create_task(self._heartbeat(websocket))
                async for message in websocket:
                    try:
                        frame = json.loads(message)
                    except ValueError:
                        logging.warning(f"[{self.wallet.name}] Ignoring non-JSON frame: {message!r}")
                        continue
                    for notification in parse_order_message(frame):
                        await self.output_queue.put(notification)
            except ConnectionClosed as e:
                logging.error(f"[{self.wallet.name}] Private stream closed: {e}. Reconnecting...")
                await asyncio.sleep(self.reconnect_delay)
            except SubscriptionError as e:
                logging.error(f"[{self.wallet.name}] {e}. Retrying in {self.retry_delay}s.")
                await asyncio.sleep(self.retry_delay)
            except Exception:
                logging.critical(f"[{self.wallet.name}] Unexpected private stream error", exc_info=True)
                await asyncio.sleep(self.retry_delay)
            finally:
                if heartbeat:
                    heartbeat.cancel()


def create_exchange(wallet: WalletContext, output_queue: asyncio.Queue):
    """Live connector in LIVE mode, the in-memory paper venue otherwise."""
    if config.MODE == 'LIVE':
        return ExchangeConnector(wallet, output_queue)
    from ratchet.paper_exchange import PaperExchange
    logging.info(f"[{wallet.name}] Running in SIMULATION mode on the paper exchange.")
    return PaperExchange(wallet, output_queue)
