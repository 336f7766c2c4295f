from __future__ import annotations

from decimal import ROUND_DOWN, Decimal, InvalidOperation

from openbook_cli.core.types import MarketAccount


def _decimal(value: float | int | str | Decimal, *, name: str) -> Decimal:
    try:
        result = Decimal(str(value))
    except InvalidOperation as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if not result.is_finite():
        raise ValueError(f"{name} must be finite")
    return result


def positive_amount(value: float | int | str | Decimal, *, name: str) -> Decimal:
    result = _decimal(value, name=name)
    if result <= 0:
        raise ValueError(f"{name} must be positive")
    return result


def non_negative_amount(value: float | int | str | Decimal, *, name: str) -> Decimal:
    result = _decimal(value, name=name)
    if result < 0:
        raise ValueError(f"{name} must be >= 0")
    return result


def _floor(value: Decimal) -> int:
    return int(value.to_integral_value(rounding=ROUND_DOWN))


def price_ui_to_lots(market: MarketAccount, price: float | str | Decimal) -> int:
    value = positive_amount(price, name="price")
    lots = _floor(
        value
        * Decimal(10) ** market.quote_decimals
        * market.base_lot_size
        / (Decimal(10) ** market.base_decimals * market.quote_lot_size)
    )
    if lots <= 0:
        raise ValueError("price_below_one_lot")
    return lots


def base_ui_to_lots(market: MarketAccount, size: float | str | Decimal) -> int:
    value = positive_amount(size, name="size")
    lots = _floor(value * Decimal(10) ** market.base_decimals / market.base_lot_size)
    if lots <= 0:
        raise ValueError("size_below_one_lot")
    return lots


def quote_ui_to_lots(market: MarketAccount, amount: float | str | Decimal) -> int:
    value = non_negative_amount(amount, name="amount")
    return _floor(value * Decimal(10) ** market.quote_decimals / market.quote_lot_size)


def ui_to_native(amount: float | str | Decimal, decimals: int) -> int:
    value = non_negative_amount(amount, name="amount")
    return _floor(value * Decimal(10) ** decimals)


def native_to_ui(amount: int, decimals: int) -> float:
    return float(Decimal(amount) / Decimal(10) ** decimals)


def price_lots_to_ui(market: MarketAccount, price_lots: int) -> float:
    return float(
        Decimal(price_lots)
        * market.quote_lot_size
        * Decimal(10) ** market.base_decimals
        / (market.base_lot_size * Decimal(10) ** market.quote_decimals)
    )


def base_lots_to_ui(market: MarketAccount, base_lots: int) -> float:
    return float(Decimal(base_lots) * market.base_lot_size / Decimal(10) ** market.base_decimals)
