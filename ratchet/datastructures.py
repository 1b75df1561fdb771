# ratchet/datastructures.py
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import List, Literal, Optional, Set, Tuple

from ratchet.errors import ValidationError

Direction = Literal['LONG', 'SHORT']
Side = Literal['BUY', 'SELL']
OrderType = Literal['MARKET', 'LIMIT', 'STOP_MARKET', 'TAKE_PROFIT', 'TRAILING_STOP_MARKET']
OrderKind = Literal['ENTRY', 'STOP_LOSS', 'TAKE_PROFIT', 'TRAILING_STOP']


def to_decimal(value, name: str = "value") -> Decimal:
    """Converts floats/ints/strings to Decimal through their str() form."""
    if isinstance(value, Decimal):
        return value
    try:
        result = Decimal(str(value).strip())
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{name} is not a number: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"{name} is not finite: {value!r}")
    return result


def opposite(side: Side) -> Side:
    return 'SELL' if side == 'BUY' else 'BUY'


@dataclass(frozen=True)
class TradeSignal:
    """A parsed, immutable trade instruction."""
    pair: str
    direction: Direction
    entry: Tuple[Decimal, Decimal]
    targets: Tuple[Decimal, ...]
    stop_loss: Decimal

    def __post_init__(self):
        if not self.pair:
            raise ValidationError("Signal has no pair.")
        direction = str(self.direction).upper()
        if direction not in ('LONG', 'SHORT'):
            raise ValidationError(f"Unknown direction {self.direction!r}.")
        entry = tuple(to_decimal(p, "entry") for p in self.entry)
        targets = tuple(to_decimal(p, "target") for p in self.targets)
        stop_loss = to_decimal(self.stop_loss, "stopLoss")

        object.__setattr__(self, 'pair', self.pair.upper().replace('/', ''))
        object.__setattr__(self, 'direction', direction)
        object.__setattr__(self, 'entry', entry)
        object.__setattr__(self, 'targets', targets)
        object.__setattr__(self, 'stop_loss', stop_loss)
        self._validate()

    def _validate(self):
        if len(self.entry) != 2:
            raise ValidationError(f"[{self.pair}] Entry must be a low/high pair, got {len(self.entry)} values.")
        if not self.targets:
            raise ValidationError(f"[{self.pair}] Signal has no targets.")
        if any(p <= 0 for p in (*self.entry, *self.targets, self.stop_loss)):
            raise ValidationError(f"[{self.pair}] All prices must be positive.")

        sign = 1 if self.direction == 'LONG' else -1
        anchor = self.entry_price
        # stop sits beyond the whole entry range on the losing side
        worst_entry = min(self.entry) if sign > 0 else max(self.entry)
        if sign * (worst_entry - self.stop_loss) <= 0:
            raise ValidationError(f"[{self.pair}] Stop {self.stop_loss} is not below/above entry for {self.direction}.")
        previous = anchor
        for target in self.targets:
            if sign * (target - previous) <= 0:
                raise ValidationError(
                    f"[{self.pair}] Targets must move away from entry in favor of {self.direction}: {list(self.targets)}"
                )
            previous = target

    @property
    def entry_price(self) -> Decimal:
        """Breakeven level the stop moves to after the first target."""
        return self.entry[0]

    @property
    def side(self) -> Side:
        return 'BUY' if self.direction == 'LONG' else 'SELL'


@dataclass(frozen=True)
class CloseSignal:
    """Flatten whatever is open on `pair`."""
    pair: str
    direction: Optional[Direction] = None

    def __post_init__(self):
        if not self.pair:
            raise ValidationError("Close signal has no pair.")
        object.__setattr__(self, 'pair', self.pair.upper().replace('/', ''))
        if self.direction is not None:
            direction = str(self.direction).upper()
            if direction not in ('LONG', 'SHORT'):
                raise ValidationError(f"Unknown direction {self.direction!r}.")
            object.__setattr__(self, 'direction', direction)


@dataclass(frozen=True)
class WalletContext:
    """Credentials plus the risk parameters of one account."""
    name: str
    api_key: str = field(repr=False)
    api_secret: str = field(repr=False)
    balance: Decimal = Decimal('0')
    leverage: int = 1

    def __post_init__(self):
        object.__setattr__(self, 'balance', to_decimal(self.balance, "balance"))
        object.__setattr__(self, 'leverage', int(self.leverage))
        if self.balance <= 0:
            raise ValidationError(f"[{self.name}] Wallet balance must be positive.")
        if self.leverage < 1:
            raise ValidationError(f"[{self.name}] Wallet leverage must be >= 1.")


@dataclass(frozen=True)
class SymbolFilters:
    """Exchange-declared quantity/price grid for one symbol."""
    symbol: str
    step_size: Decimal
    tick_size: Decimal
    min_qty: Optional[Decimal] = None
    max_leverage: Optional[int] = None


@dataclass
class OrderRequest:
    """Represents a concrete order to be submitted."""
    symbol: str
    side: Side
    order_type: OrderType
    quantity: Optional[Decimal] = None
    price: Optional[Decimal] = None            # limit price (TAKE_PROFIT)
    stop_price: Optional[Decimal] = None       # trigger price (STOP_MARKET, TAKE_PROFIT)
    activation_price: Optional[Decimal] = None # TRAILING_STOP_MARKET
    callback_rate: Optional[Decimal] = None    # percent of price
    close_position: bool = False
    reduce_only: bool = False
    time_in_force: Optional[str] = None
    client_order_id: Optional[str] = None
    # Distinguishes order intent (ENTRY, STOP_LOSS, TP1...)
    tag: Optional[str] = None


@dataclass(frozen=True)
class TakeProfitLeg:
    target_index: int
    order: OrderRequest


@dataclass
class OrderLadder:
    """Everything the coordinator submits for one signal, in submission order."""
    symbol: str
    side: Side
    close_side: Side
    entry_qty: Decimal
    entry: OrderRequest
    stop_loss: OrderRequest
    take_profits: List[TakeProfitLeg]
    trailing_stop: OrderRequest
    trailing_index: int

    def exit_quantity(self) -> Decimal:
        return sum((leg.order.quantity for leg in self.take_profits), Decimal('0')) + self.trailing_stop.quantity


@dataclass(frozen=True)
class PlacedOrder:
    """What the monitor needs to recognise a later notification for this order."""
    client_order_id: str
    kind: OrderKind
    orig_price: Optional[Decimal]
    quantity: Optional[Decimal]
    order_id: str = ""
    target_index: Optional[int] = None

    def matches(self, order_id: str, client_order_id: str) -> bool:
        if client_order_id and client_order_id == self.client_order_id:
            return True
        return bool(order_id) and order_id == self.order_id


@dataclass
class PositionState:
    """Live, monitor-owned view of one position."""
    symbol: str
    side: Side
    remaining_targets: List[Decimal]
    current_stop_price: Decimal
    open_order_ids: Set[str] = field(default_factory=set)
    # Index of the most advanced target secured so far; -1 before any
    ratchet_level: int = -1


@dataclass(frozen=True)
class FillNotification:
    """An order update from the wallet's private stream, venue-neutral."""
    symbol: str
    order_type: str
    order_id: str
    client_order_id: str
    status: str
    side: Optional[Side] = None
    price: Optional[Decimal] = None


@dataclass(frozen=True)
class PositionSnapshot:
    symbol: str
    quantity: Decimal  # signed: > 0 long, < 0 short
    entry_price: Optional[Decimal] = None


@dataclass
class ExecutionReport:
    """Outcome of one (signal, wallet) execution."""
    wallet: str
    symbol: str
    status: Literal['COMPLETE', 'PARTIAL', 'REJECTED', 'INVALID']
    placed: List[PlacedOrder] = field(default_factory=list)
    error: Optional[str] = None
    monitor: Optional[object] = None


def signal_from_dict(payload: dict):
    """Builds a TradeSignal or CloseSignal from an already-structured payload."""
    if not isinstance(payload, dict):
        raise ValidationError("Signal payload must be a JSON object.")
    kind = str(payload.get('type', '')).upper()
    if kind == 'CLOSE_SIGNAL' or (not kind and 'targets' not in payload):
        return CloseSignal(pair=payload.get('pair', ''), direction=payload.get('direction'))
    if kind not in ('', 'TRADE_SIGNAL'):
        raise ValidationError(f"Unknown signal type {payload.get('type')!r}.")

    stop = payload.get('stopLoss', payload.get('stop_loss'))
    if stop is None:
        raise ValidationError("Trade signal has no stopLoss.")
    try:
        return TradeSignal(
            pair=payload.get('pair', ''),
            direction=payload.get('direction', ''),
            entry=tuple(payload.get('entry') or ()),
            targets=tuple(payload.get('targets') or ()),
            stop_loss=stop,
        )
    except TypeError as e:
        raise ValidationError(f"Malformed trade signal: {e}")
