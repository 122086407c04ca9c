from __future__ import annotations

import json
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from syncdesk.models.view_state import (
    AccountMetrics,
    OptionChain,
    OptionQuote,
    OptionSide,
    OrderBook,
    OrderEntry,
    normalize_strike,
)

REFETCH_ORDER_EVENTS = frozenset(
    {
        "OrderFill",
        "OrderPartialFill",
        "OrderBroken",
        "OrderManualExecution",
        "OrderEntry",
        "OrderTooLateToCancel",
        "OrderOut",
    }
)
IGNORED_ORDER_EVENTS = frozenset(
    {
        "OrderEventInvalid",
        "OrderEventNil",
        "OrderActivation",
        "OrderCancelReplace",
        "OrderCancel",
        "OrderRejection",
    }
)


class DecodeError(ValueError):
    """Raised when a feed message or response body cannot be decoded."""


def _to_float(value: Any) -> float:
    if value is None or isinstance(value, bool):
        msg = "Expected a numeric value"
        raise ValueError(msg)
    if isinstance(value, str):
        value = value.strip().replace(",", "")
    return float(value)


def load_json(raw: Any) -> Any:
    if isinstance(raw, (bytes, bytearray)):
        try:
            raw = raw.decode()
        except UnicodeDecodeError as exc:
            raise DecodeError("Message is not valid UTF-8") from exc
    if isinstance(raw, str):
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise DecodeError(f"Message not JSON: {exc}") from exc
    return raw


class _WireModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class OrderUpdateMessage(_WireModel):
    order_id: str = Field(alias="OrderID")
    order_event: str = Field(alias="OrderEvent")

    @property
    def requires_refetch(self) -> bool:
        return self.order_event in REFETCH_ORDER_EVENTS


class PortfolioUpdateMessage(_WireModel):
    net_liquidity: float = Field(alias="NetLiquidity")
    option_buying_power: float = Field(alias="OptionBuyingPower")

    @field_validator("net_liquidity", "option_buying_power", mode="before")
    def coerce_amount(cls, value: Any) -> float:  # noqa: N805
        return _to_float(value)

    def to_metrics(self) -> AccountMetrics:
        return AccountMetrics(
            net_liquidity=self.net_liquidity,
            option_buying_power=self.option_buying_power,
        )


class OptionUpdateMessage(_WireModel):
    expiration: str = Field(alias="Expiration")
    strike: Decimal = Field(alias="Strike")
    option_type: OptionSide = Field(alias="OptionType")
    bid: float = Field(alias="Bid")
    ask: float = Field(alias="Ask")
    ticker_symbol: Optional[str] = Field(default=None, alias="TickerSymbol")

    @field_validator("expiration", mode="before")
    def strip_expiration(cls, value: Any) -> str:  # noqa: N805
        if not isinstance(value, str) or not value.strip():
            msg = "Expiration must be provided"
            raise ValueError(msg)
        return value.strip()

    @field_validator("strike", mode="before")
    def coerce_strike(cls, value: Any) -> Decimal:  # noqa: N805
        return normalize_strike(value)

    @field_validator("option_type", mode="before")
    def coerce_side(cls, value: Any) -> OptionSide:  # noqa: N805
        return OptionSide.parse(value)

    @field_validator("bid", "ask", mode="before")
    def coerce_price(cls, value: Any) -> float:  # noqa: N805
        return _to_float(value)


def _validate(model: type[BaseModel], raw: Any) -> Any:
    payload = load_json(raw)
    if not isinstance(payload, dict):
        raise DecodeError(f"{model.__name__} payload must be an object")
    try:
        return model.model_validate(payload)
    except ValidationError as exc:
        raise DecodeError(f"Invalid {model.__name__}: {exc.error_count()} error(s)") from exc


def decode_order_update(raw: Any) -> OrderUpdateMessage:
    return _validate(OrderUpdateMessage, raw)


def decode_portfolio_update(raw: Any) -> PortfolioUpdateMessage:
    return _validate(PortfolioUpdateMessage, raw)


def decode_option_update(raw: Any) -> OptionUpdateMessage:
    return _validate(OptionUpdateMessage, raw)


def _optional_float(value: Any) -> float:
    try:
        return _to_float(value)
    except (TypeError, ValueError):
        return 0.0


def decode_order_book(raw: Any) -> OrderBook:
    """Decode a ``/reqOrderBook`` body keyed by order id."""
    payload = load_json(raw)
    if not isinstance(payload, dict):
        raise DecodeError("Order book payload must be an object")
    statuses = payload.get("UiOrderStatuses") or {}
    if isinstance(statuses, dict):
        rows = list(statuses.values())
    elif isinstance(statuses, list):
        rows = statuses
    else:
        raise DecodeError("UiOrderStatuses must be an object or list")
    entries: list[OrderEntry] = []
    try:
        for row in rows:
            if not isinstance(row, dict):
                raise DecodeError("Order status rows must be objects")
            price = row.get("Price")
            entries.append(
                OrderEntry(
                    order_id=row.get("OrderID"),
                    symbol=row.get("Symbol") or "",
                    status=row.get("Status") or "",
                    quantity=_optional_float(row.get("Quantity")),
                    filled_quantity=_optional_float(row.get("FilledQuantity")),
                    action=row.get("Action") or "",
                    order_type=row.get("OrderType") or "",
                    price=Decimal(str(price).strip()) if price not in (None, "") else None,
                    expire=row.get("Expire") or "",
                    routing=row.get("Routing") or "",
                    event=row.get("Event") or "",
                )
            )
        return OrderBook(entries=entries)
    except (ValidationError, ArithmeticError) as exc:
        raise DecodeError(f"Invalid order book: {exc}") from exc


def decode_option_chain(raw: Any, symbol: str = "") -> OptionChain:
    """Decode a ``/reqOptChain`` body into a keyed chain."""
    payload = load_json(raw)
    if not isinstance(payload, dict):
        raise DecodeError("Option chain payload must be an object")
    expirations_raw = payload.get("Expirations") or {}
    if not isinstance(expirations_raw, dict):
        raise DecodeError("Expirations must be an object")
    expirations: dict[str, dict[Decimal, dict[OptionSide, OptionQuote]]] = {}
    try:
        for expiration, expiration_block in expirations_raw.items():
            strikes_raw = (expiration_block or {}).get("Strikes") or {}
            strikes: dict[Decimal, dict[OptionSide, OptionQuote]] = {}
            for strike_label, strike_block in strikes_raw.items():
                strike_block = strike_block or {}
                strike = normalize_strike(strike_block.get("Strike") or strike_label)
                sides: dict[OptionSide, OptionQuote] = {}
                for side_label, option in (strike_block.get("Option") or {}).items():
                    option = option or {}
                    ticker = str(option.get("Ticker") or "").strip()
                    if not ticker:
                        raise DecodeError(f"Missing ticker at {expiration}/{strike}/{side_label}")
                    sides[OptionSide.parse(side_label)] = OptionQuote(
                        ticker=ticker,
                        bid=_optional_float(option.get("Bid")),
                        ask=_optional_float(option.get("Ask")),
                    )
                strikes[strike] = sides
            expirations[str(expiration)] = strikes
    except DecodeError:
        raise
    except (AttributeError, ValidationError, ValueError) as exc:
        raise DecodeError(f"Invalid option chain: {exc}") from exc
    ordered = dict(sorted(expirations.items()))
    return OptionChain(symbol=symbol, expirations=ordered)


def decode_tracked_set(raw: Any) -> frozenset[str]:
    payload = load_json(raw)
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        items = payload.get("tracked")
        if items is None:
            items = payload.get("Instrument")
        items = items or []
    else:
        raise DecodeError("Tracked set payload must be an object or list")
    if not isinstance(items, list):
        raise DecodeError("Tracked set must be a list")
    return frozenset(str(item) for item in items if item)


__all__ = [
    "DecodeError",
    "IGNORED_ORDER_EVENTS",
    "OptionUpdateMessage",
    "OrderUpdateMessage",
    "PortfolioUpdateMessage",
    "REFETCH_ORDER_EVENTS",
    "decode_option_chain",
    "decode_option_update",
    "decode_order_book",
    "decode_order_update",
    "decode_portfolio_update",
    "decode_tracked_set",
    "load_json",
]
