# ratchet/quantizer.py
from decimal import Decimal, ROUND_DOWN, ROUND_FLOOR, ROUND_HALF_UP

from ratchet.datastructures import SymbolFilters, to_decimal
from ratchet.errors import ValidationError


def precision_of(filter_value) -> int:
    """
    Number of decimals of an exchange grid value such as '0.00010000' or 0.5.
    Read from the exponent of the grid's last significant digit, so trailing
    zeros and float repr noise do not matter.
    """
    step = to_decimal(filter_value, "filter value")
    if step <= 0:
        raise ValidationError(f"Grid value must be positive, got {filter_value!r}.")
    exponent = step.normalize().as_tuple().exponent
    return max(0, -exponent)


def quantize(value, precision: int, rounding=ROUND_DOWN) -> Decimal:
    """Rounds to `precision` decimals. Down by default (quantities)."""
    exp = Decimal(1).scaleb(-precision)
    return to_decimal(value).quantize(exp, rounding=rounding)


def quantize_price(value, precision: int) -> Decimal:
    return quantize(value, precision, rounding=ROUND_HALF_UP)


class Quantizer:
    """
    Snaps quantities and prices of one symbol onto its exchange grid.
    - Quantities: floored to a whole number of steps (never exceeds balance).
    - Prices: nearest tick.
    """
    def __init__(self, filters: SymbolFilters):
        if filters is None or not filters.step_size or not filters.tick_size:
            raise ValidationError("Missing LOT_SIZE/PRICE filters; refusing to size orders.")
        self.filters = filters
        self.step = to_decimal(filters.step_size)
        self.tick = to_decimal(filters.tick_size)
        self.qty_precision = precision_of(self.step)
        self.price_precision = precision_of(self.tick)

    def qty(self, value) -> Decimal:
        steps = (to_decimal(value) / self.step).to_integral_value(rounding=ROUND_FLOOR)
        return quantize(steps * self.step, self.qty_precision)

    def price(self, value) -> Decimal:
        ticks = (to_decimal(value) / self.tick).to_integral_value(rounding=ROUND_HALF_UP)
        return quantize_price(ticks * self.tick, self.price_precision)
