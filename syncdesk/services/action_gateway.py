from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, TypeVar

from syncdesk.models.messages import (
    DecodeError,
    decode_option_chain,
    decode_order_book,
    decode_tracked_set,
)
from syncdesk.models.view_state import OptionChain, OrderBook, ViewState
from syncdesk.services.session_gate import Credentials, LoginResult, SessionGate

logger = logging.getLogger(__name__)

T = TypeVar("T")

ORDER_BOOK_PATH = "/reqOrderBook"
TEST_ORDER_PATH = "/testOrderHandler"
CANCEL_ORDER_PATH = "/testCancelOrderHandler"
OPTION_CHAIN_PATH = "/reqOptChain"
RELEASE_OPTION_UPDATES_PATH = "/releaseOptionUpdatesEvents"
TRACK_OPTION_PATH = "/trackOption"
UNTRACK_OPTION_PATH = "/untrackOption"


class SingleFlight:
    """Collapse concurrent calls sharing a key onto one in-flight task.

    The key is released as soon as the task finishes, whether it succeeded
    or raised, so the next call starts a fresh request.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[Any]] = {}

    def in_flight(self, key: str) -> bool:
        return key in self._inflight

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.debug("Joining in-flight %s", key)
            return await asyncio.shield(existing)
        task = asyncio.ensure_future(factory())
        self._inflight[key] = task

        def _release(done: asyncio.Future[Any]) -> None:
            if self._inflight.get(key) is done:
                del self._inflight[key]

        task.add_done_callback(_release)
        return await asyncio.shield(task)


class ActionGateway:
    """Request/response commands against the backend.

    Only the order book, option chain and tracked-set calls write their result
    into the view; order submission and cancellation surface later through
    the order feed. Results that arrive after the session ended are dropped.
    """

    def __init__(
        self,
        transport: Any,
        view: ViewState,
        session_gate: SessionGate,
        *,
        single_flight: SingleFlight | None = None,
    ) -> None:
        self._transport = transport
        self._view = view
        self._session = session_gate
        self._flights = single_flight or SingleFlight()

    @property
    def flights(self) -> SingleFlight:
        return self._flights

    def _is_current(self, epoch: int, action: str) -> bool:
        if epoch != self._view.session_epoch:
            logger.info("Discarding %s response from a previous session", action)
            return False
        return True

    async def _post(self, path: str, payload: dict[str, Any] | None = None) -> Any:
        logger.debug("POST %s", path)
        return await self._transport.send(path, payload or {})

    async def login(self, credentials: Credentials) -> LoginResult:
        return await self._flights.run("login", lambda: self._login(credentials))

    async def _login(self, credentials: Credentials) -> LoginResult:
        result = await self._session.login(credentials)
        if result.ok:
            await self.fetch_order_book()
        return result

    async def logout(self) -> None:
        await self._flights.run("logout", self._session.logout)

    async def fetch_order_book(self) -> Optional[OrderBook]:
        epoch = self._view.session_epoch
        try:
            book = decode_order_book(await self._post(ORDER_BOOK_PATH))
        except DecodeError as exc:
            logger.warning("Dropping undecodable order book: %s", exc)
            return None
        if not self._is_current(epoch, "order book"):
            return None
        self._view.replace_order_book(book)
        logger.debug("Order book replaced with %d entries", len(book))
        return book

    async def submit_test_order(self) -> None:
        try:
            await self._post(TEST_ORDER_PATH)
        except DecodeError:
            logger.debug("Ignoring test order response body")
        logger.info("Test order submitted")

    async def cancel_order(self, order_id: str) -> None:
        order_id = (order_id or "").strip()
        if not order_id:
            msg = "Order id must be provided"
            raise ValueError(msg)
        try:
            await self._post(CANCEL_ORDER_PATH, {"orderid": order_id})
        except DecodeError:
            logger.debug("Ignoring cancel response body")
        logger.info("Cancel requested for order %s", order_id)

    async def fetch_option_chain(self, symbol: str) -> Optional[OptionChain]:
        symbol = (symbol or "").strip().upper()
        if not symbol:
            msg = "Symbol must be provided"
            raise ValueError(msg)
        epoch = self._view.session_epoch
        try:
            chain = decode_option_chain(await self._post(OPTION_CHAIN_PATH, {"symbol": symbol}), symbol)
        except DecodeError as exc:
            logger.warning("Dropping undecodable option chain for %s: %s", symbol, exc)
            return None
        if not self._is_current(epoch, "option chain"):
            return None
        self._view.set_chain(chain)
        logger.info("Loaded option chain for %s (%d expirations)", symbol, len(chain.expirations))
        await self.resume_option_updates()
        return chain

    async def resume_option_updates(self) -> None:
        try:
            await self._post(RELEASE_OPTION_UPDATES_PATH)
        except DecodeError:
            logger.debug("Ignoring release response body")

    async def track_option(self, ticker: str) -> Optional[frozenset[str]]:
        return await self._tracking_call(TRACK_OPTION_PATH, ticker)

    async def untrack_option(self, ticker: str) -> Optional[frozenset[str]]:
        return await self._tracking_call(UNTRACK_OPTION_PATH, ticker)

    async def _tracking_call(self, path: str, ticker: str) -> Optional[frozenset[str]]:
        try:
            return decode_tracked_set(await self._post(path, {"symbol": ticker}))
        except DecodeError as exc:
            logger.warning("Dropping undecodable tracked set from %s: %s", path, exc)
            return None


__all__ = ["ActionGateway", "SingleFlight"]
