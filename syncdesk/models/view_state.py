from __future__ import annotations

import logging
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

CommitListener = Callable[[str, "ViewState"], None]


class OptionSide(str, Enum):
    CALL = "call"
    PUT = "put"

    @classmethod
    def parse(cls, value: Any) -> "OptionSide":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            candidate = value.strip().lower()
            for member in cls:
                if member.value == candidate:
                    return member
        msg = f"Unknown option side: {value!r}"
        raise ValueError(msg)


def normalize_strike(value: Any) -> Decimal:
    """Coerce wire strikes (100, 100.0, "100.00") onto one comparable key."""
    if isinstance(value, bool):
        msg = "Strike must be numeric"
        raise ValueError(msg)
    try:
        strike = Decimal(str(value).strip())
    except (InvalidOperation, TypeError) as exc:
        msg = f"Invalid strike: {value!r}"
        raise ValueError(msg) from exc
    if not strike.is_finite():
        msg = f"Invalid strike: {value!r}"
        raise ValueError(msg)
    return strike


class OptionQuote(BaseModel):
    ticker: str
    bid: float = 0.0
    ask: float = 0.0
    tracked: bool = False


StrikeMap = dict[Decimal, dict[OptionSide, OptionQuote]]


class OptionChain(BaseModel):
    """Expiration -> strike -> side -> quote, as loaded from one chain request."""

    symbol: str = ""
    expirations: dict[str, StrikeMap] = Field(default_factory=dict)

    def quote(self, expiration: str, strike: Any, side: Any) -> Optional[OptionQuote]:
        try:
            strike_key = normalize_strike(strike)
            side_key = OptionSide.parse(side)
        except ValueError:
            return None
        strikes = self.expirations.get(expiration)
        if not strikes:
            return None
        sides = strikes.get(strike_key)
        if not sides:
            return None
        return sides.get(side_key)

    def iter_quotes(self) -> Iterator[tuple[str, Decimal, OptionSide, OptionQuote]]:
        for expiration, strikes in self.expirations.items():
            for strike, sides in strikes.items():
                for side, quote in sides.items():
                    yield expiration, strike, side, quote

    def find(self, ticker: str) -> Optional[tuple[str, Decimal, OptionSide]]:
        for expiration, strike, side, quote in self.iter_quotes():
            if quote.ticker == ticker:
                return expiration, strike, side
        return None


class OrderEntry(BaseModel):
    order_id: str
    symbol: str = ""
    status: str = ""
    quantity: float = 0.0
    filled_quantity: float = 0.0
    action: str = ""
    order_type: str = ""
    price: Optional[Decimal] = None
    expire: str = ""
    routing: str = ""
    event: str = ""

    @field_validator("order_id", mode="before")
    def require_order_id(cls, value: Any) -> str:  # noqa: N805
        if value is None or not str(value).strip():
            msg = "Order id must be provided"
            raise ValueError(msg)
        return str(value).strip()


class OrderBook(BaseModel):
    entries: list[OrderEntry] = Field(default_factory=list)

    @field_validator("entries")
    def unique_order_ids(cls, value: list[OrderEntry]) -> list[OrderEntry]:  # noqa: N805
        seen: set[str] = set()
        for entry in value:
            if entry.order_id in seen:
                msg = f"Duplicate order id in snapshot: {entry.order_id}"
                raise ValueError(msg)
            seen.add(entry.order_id)
        return value

    def get(self, order_id: str) -> Optional[OrderEntry]:
        for entry in self.entries:
            if entry.order_id == order_id:
                return entry
        return None

    def __len__(self) -> int:
        return len(self.entries)


class AccountMetrics(BaseModel):
    net_liquidity: float = 0.0
    option_buying_power: float = 0.0


class ViewState:
    """Shared mutable view of orders, chain, account and tracking.

    Every write goes through a setter. Setters that address a chain coordinate
    check it against the currently loaded chain and quietly return ``False``
    when it is absent. Each applied write emits a commit to subscribers.
    """

    def __init__(self) -> None:
        self.order_book = OrderBook()
        self.option_chain: Optional[OptionChain] = None
        self.account_metrics: Optional[AccountMetrics] = None
        self.tracked_set: frozenset[str] = frozenset()
        self.chain_generation = 0
        self.session_epoch = 0
        self._listeners: list[CommitListener] = []

    def subscribe(self, listener: CommitListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _commit(self, reason: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(reason, self)
            except Exception:
                logger.exception("Commit listener failed for %s", reason)

    def get_quote(self, expiration: str, strike: Any, side: Any) -> Optional[OptionQuote]:
        if self.option_chain is None:
            return None
        return self.option_chain.quote(expiration, strike, side)

    def find_coordinate(self, ticker: str) -> Optional[tuple[str, Decimal, OptionSide]]:
        if self.option_chain is None:
            return None
        return self.option_chain.find(ticker)

    def set_quote(self, expiration: str, strike: Any, side: Any, bid: float, ask: float) -> bool:
        quote = self.get_quote(expiration, strike, side)
        if quote is None:
            logger.debug("Dropping quote for unknown coordinate %s/%s/%s", expiration, strike, side)
            return False
        quote.bid = bid
        quote.ask = ask
        self._commit("quote")
        return True

    def replace_order_book(self, snapshot: OrderBook) -> None:
        self.order_book = snapshot
        self._commit("order_book")

    def replace_account_metrics(self, metrics: AccountMetrics) -> None:
        self.account_metrics = metrics
        self._commit("account")

    def set_chain(self, chain: OptionChain) -> None:
        for _, _, _, quote in chain.iter_quotes():
            quote.tracked = False
        self.option_chain = chain
        self.tracked_set = frozenset()
        self.chain_generation += 1
        self._commit("chain")

    def set_tracked(self, ticker: str, is_tracked: bool) -> bool:
        coordinate = self.find_coordinate(ticker)
        if coordinate is None:
            return False
        quote = self.get_quote(*coordinate)
        if quote is None:  # pragma: no cover - find_coordinate guarantees presence
            return False
        quote.tracked = bool(is_tracked)
        self._commit("tracked")
        return True

    def replace_tracked_set(self, tickers: Iterable[str]) -> None:
        self.tracked_set = frozenset(tickers)
        self._commit("tracked_set")

    def reset(self) -> None:
        self.order_book = OrderBook()
        self.option_chain = None
        self.account_metrics = None
        self.tracked_set = frozenset()
        self.chain_generation += 1
        self.session_epoch += 1
        self._commit("reset")

    def snapshot(self) -> dict[str, Any]:
        chain_payload: Optional[dict[str, Any]] = None
        if self.option_chain is not None:
            expirations: dict[str, Any] = {}
            for expiration, strikes in self.option_chain.expirations.items():
                expirations[expiration] = {
                    f"{strike:.2f}": {side.value: quote.model_dump() for side, quote in sides.items()}
                    for strike, sides in strikes.items()
                }
            chain_payload = {"symbol": self.option_chain.symbol, "expirations": expirations}
        return {
            "order_book": [entry.model_dump(mode="json") for entry in self.order_book.entries],
            "option_chain": chain_payload,
            "account": self.account_metrics.model_dump() if self.account_metrics else None,
            "tracked": sorted(self.tracked_set),
            "chain_generation": self.chain_generation,
            "session_epoch": self.session_epoch,
        }


__all__ = [
    "AccountMetrics",
    "OptionChain",
    "OptionQuote",
    "OptionSide",
    "OrderBook",
    "OrderEntry",
    "ViewState",
    "normalize_strike",
]
