from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, Callable, Optional

from syncdesk.core.config import get_settings
from syncdesk.models.messages import (
    DecodeError,
    decode_option_update,
    decode_order_update,
    decode_portfolio_update,
)
from syncdesk.models.view_state import ViewState
from syncdesk.services.transport import TransportError

logger = logging.getLogger(__name__)

ORDER_FEED_PATH = "/orderUpdateEvent"
PORTFOLIO_FEED_PATH = "/portfolioUpdateEvent"
OPTION_FEED_PATH = "/optionUpdateEvent"


class FeedChannel:
    """One long-lived push subscription that decodes events into the view.

    Messages are applied in arrival order. A message that fails to decode is
    dropped on its own; the subscription keeps running. When the stream
    ends or fails the channel reconnects with capped exponential backoff and
    resumes from whatever the backend sends next.
    """

    kind = "feed"
    path = ""

    def __init__(
        self,
        transport: Any,
        view: ViewState,
        *,
        initial_delay: float | None = None,
        max_delay: float | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self._transport = transport
        self._view = view
        self._initial_delay = initial_delay or settings.feed_reconnect_initial_delay
        self._max_delay = max(self._initial_delay, max_delay or settings.feed_reconnect_max_delay)
        self._sleep = sleep or asyncio.sleep
        self._task: Optional[asyncio.Task] = None
        self.received = 0
        self.applied = 0
        self.dropped = 0
        self.connects = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self.run(), name=f"feed-{self.kind}")
        logger.info("%s feed started", self.kind)

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
            logger.info("%s feed stopped", self.kind)

    async def run(self) -> None:
        delay = self._initial_delay
        while True:
            try:
                self.connects += 1
                async for data in self._transport.stream(self.path):
                    delay = self._initial_delay
                    self.handle_message(data)
                logger.info("%s feed closed by backend; reconnecting in %.1fs", self.kind, delay)
            except asyncio.CancelledError:
                raise
            except TransportError as exc:
                logger.warning("%s feed disconnected: %s; reconnecting in %.1fs", self.kind, exc, delay)
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("%s feed crashed: %s", self.kind, exc)
            await self._sleep(delay)
            delay = min(delay * 2, self._max_delay)

    def handle_message(self, raw: Any) -> bool:
        """Decode and apply one message; return whether it changed the view."""
        self.received += 1
        try:
            applied = self._apply(raw)
        except DecodeError as exc:
            self.dropped += 1
            logger.debug("Dropping malformed %s message: %s", self.kind, exc)
            return False
        except Exception as exc:  # pragma: no cover - defensive logging
            self.dropped += 1
            logger.exception("Failed to apply %s message: %s", self.kind, exc)
            return False
        if applied:
            self.applied += 1
        return applied

    def _apply(self, raw: Any) -> bool:
        raise NotImplementedError


class OrderBookRefetcher:
    """Runs order-book re-fetches triggered by order events.

    By default every trigger starts its own request and the last response to
    resolve wins. With ``coalesce`` enabled at most one request is in flight
    and any triggers arriving meanwhile collapse into a single follow-up.
    """

    def __init__(self, gateway: Any, *, coalesce: bool = False) -> None:
        self._gateway = gateway
        self._coalesce = coalesce
        self._tasks: set[asyncio.Task] = set()
        self._active: Optional[asyncio.Task] = None
        self._queued = False
        self.triggered = 0
        self.issued = 0

    def trigger(self) -> None:
        self.triggered += 1
        if not self._coalesce:
            self._spawn(self._refetch())
            return
        if self._active is not None and not self._active.done():
            self._queued = True
            return
        self._active = self._spawn(self._drain())

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _drain(self) -> None:
        while True:
            self._queued = False
            await self._refetch()
            if not self._queued:
                return

    async def _refetch(self) -> None:
        self.issued += 1
        try:
            await self._gateway.fetch_order_book()
        except TransportError as exc:
            logger.warning("Order book re-fetch failed: %s", exc)
        except Exception as exc:  # pragma: no cover - defensive logging
            logger.exception("Order book re-fetch crashed: %s", exc)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def cancel(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._queued = False


class OrderFeedChannel(FeedChannel):
    kind = "order"
    path = ORDER_FEED_PATH

    def __init__(
        self,
        transport: Any,
        view: ViewState,
        gateway: Any,
        *,
        coalesce: bool | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(transport, view, **kwargs)
        if coalesce is None:
            coalesce = get_settings().order_refetch_coalesce
        self.refetcher = OrderBookRefetcher(gateway, coalesce=coalesce)

    def _apply(self, raw: Any) -> bool:
        message = decode_order_update(raw)
        if not message.requires_refetch:
            logger.debug("Ignoring %s for order %s", message.order_event, message.order_id)
            return False
        logger.info("%s for order %s; refreshing order book", message.order_event, message.order_id)
        self.refetcher.trigger()
        return True


class PortfolioFeedChannel(FeedChannel):
    kind = "portfolio"
    path = PORTFOLIO_FEED_PATH

    def _apply(self, raw: Any) -> bool:
        message = decode_portfolio_update(raw)
        self._view.replace_account_metrics(message.to_metrics())
        return True


class OptionQuoteFeedChannel(FeedChannel):
    kind = "option"
    path = OPTION_FEED_PATH

    def _apply(self, raw: Any) -> bool:
        message = decode_option_update(raw)
        return self._view.set_quote(
            message.expiration,
            message.strike,
            message.option_type,
            message.bid,
            message.ask,
        )


__all__ = [
    "FeedChannel",
    "OptionQuoteFeedChannel",
    "OrderBookRefetcher",
    "OrderFeedChannel",
    "PortfolioFeedChannel",
]
