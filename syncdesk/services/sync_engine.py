from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional

from syncdesk.core.config import get_settings
from syncdesk.models.view_state import OptionChain, ViewState
from syncdesk.services.action_gateway import ActionGateway
from syncdesk.services.feed_channel import (
    FeedChannel,
    OptionQuoteFeedChannel,
    OrderFeedChannel,
    PortfolioFeedChannel,
)
from syncdesk.services.session_gate import Credentials, LoginResult, SessionGate
from syncdesk.services.tracking_controller import TrackingController
from syncdesk.services.transport import HttpTransport

logger = logging.getLogger(__name__)


class SyncEngine:
    """Wires one view, its session, the action gateway and the three feeds."""

    def __init__(
        self,
        transport: Any | None = None,
        *,
        view: ViewState | None = None,
        coalesce_order_refetch: bool | None = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        settings = get_settings()
        self.view = view or ViewState()
        self._owns_transport = transport is None
        self.transport = transport or HttpTransport()
        self.session = SessionGate(self.transport)
        self.gateway = ActionGateway(self.transport, self.view, self.session)
        self.tracking = TrackingController(self.view, self.gateway)
        if coalesce_order_refetch is None:
            coalesce_order_refetch = settings.order_refetch_coalesce
        self.order_feed = OrderFeedChannel(
            self.transport,
            self.view,
            self.gateway,
            coalesce=coalesce_order_refetch,
            sleep=sleep,
        )
        self.portfolio_feed = PortfolioFeedChannel(self.transport, self.view, sleep=sleep)
        self.option_feed = OptionQuoteFeedChannel(self.transport, self.view, sleep=sleep)
        self.channels: tuple[FeedChannel, ...] = (self.order_feed, self.portfolio_feed, self.option_feed)

    def is_authenticated(self) -> bool:
        return self.session.is_authenticated()

    async def login(self, credentials: Credentials) -> LoginResult:
        if self.is_authenticated():
            self.start_feeds()
            return LoginResult(token=self.session.token)
        epoch = self.view.session_epoch
        try:
            result = await self.gateway.login(credentials)
        finally:
            # feeds follow the token, even when the initial snapshot failed
            if self.is_authenticated() and epoch == self.view.session_epoch:
                self.start_feeds()
        return result

    async def logout(self) -> None:
        if not self.is_authenticated():
            return
        await self.gateway.flights.run("logout", self._logout)

    async def _logout(self) -> None:
        await self.session.logout()
        await self.stop_feeds()
        self.view.reset()

    def start_feeds(self) -> None:
        for channel in self.channels:
            channel.start()

    async def stop_feeds(self) -> None:
        for channel in self.channels:
            await channel.stop()

    async def submit_test_order(self) -> None:
        await self.gateway.submit_test_order()

    async def cancel_order(self, order_id: str) -> None:
        await self.gateway.cancel_order(order_id)

    async def load_chain(self, symbol: str) -> Optional[OptionChain]:
        return await self.gateway.fetch_option_chain(symbol)

    async def toggle_tracking(self, expiration: str, strike: Any, side: Any) -> Optional[bool]:
        return await self.tracking.toggle(expiration, strike, side)

    async def close(self) -> None:
        await self.stop_feeds()
        await self.order_feed.refetcher.cancel()
        if self._owns_transport:
            await self.transport.aclose()
        logger.info("Sync engine closed")


__all__ = ["SyncEngine"]
