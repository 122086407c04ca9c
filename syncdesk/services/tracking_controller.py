from __future__ import annotations

import logging
from typing import Any, Optional

from syncdesk.models.view_state import OptionSide, ViewState, normalize_strike

logger = logging.getLogger(__name__)


class TrackingController:
    """Toggle an option between tracked and untracked from a chain cell click.

    The current state is read from the quote's visible ``tracked`` flag at the
    time of the click. The backend's reply is authoritative for the tracked
    set. A click on a coordinate missing from the loaded chain does nothing,
    and so does a reply that lands after the chain was reloaded.
    """

    def __init__(self, view: ViewState, gateway: Any) -> None:
        self._view = view
        self._gateway = gateway

    async def toggle(self, expiration: str, strike: Any, side: Any) -> Optional[bool]:
        try:
            strike_key = normalize_strike(strike)
            side_key = OptionSide.parse(side)
        except ValueError:
            logger.debug("Ignoring click on unresolved cell %s/%s/%s", expiration, strike, side)
            return None
        quote = self._view.get_quote(expiration, strike_key, side_key)
        if quote is None:
            logger.debug("Ignoring click on %s/%s/%s: not in current chain", expiration, strike, side)
            return None

        ticker = quote.ticker
        target = not quote.tracked
        generation = self._view.chain_generation
        if target:
            tracked = await self._gateway.track_option(ticker)
        else:
            tracked = await self._gateway.untrack_option(ticker)

        if tracked is None:
            return None
        if generation != self._view.chain_generation:
            logger.info("Chain reloaded while toggling %s; discarding reply", ticker)
            return None
        self._view.set_tracked(ticker, target)
        self._view.replace_tracked_set(tracked)
        logger.info("%s %s", "Tracking" if target else "Untracked", ticker)
        return target


__all__ = ["TrackingController"]
