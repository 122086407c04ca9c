from __future__ import annotations

import asyncio
import json

import pytest

from fakes import XYZ_TICKER, FakeTransport, chain_payload, order_book_payload
from syncdesk.models.messages import DecodeError
from syncdesk.services.feed_channel import OPTION_FEED_PATH, ORDER_FEED_PATH, PORTFOLIO_FEED_PATH
from syncdesk.services.session_gate import Credentials, SessionGate
from syncdesk.services.sync_engine import SyncEngine
from syncdesk.services.transport import TransportError


def _logged_in_transport(transport: FakeTransport) -> FakeTransport:
    transport.respond("/login", {"token": "abc", "error": ""})
    transport.respond("/reqOrderBook", order_book_payload("1"))
    return transport


def test_login_snapshots_then_opens_feeds(transport: FakeTransport, no_sleep) -> None:
    _logged_in_transport(transport)
    transport.respond("/reqOptChain", chain_payload())
    transport.streams[PORTFOLIO_FEED_PATH] = [json.dumps({"NetLiquidity": "5000", "OptionBuyingPower": "1200"})]
    transport.streams[ORDER_FEED_PATH] = [json.dumps({"OrderID": "1", "OrderEvent": "OrderFill"})]

    async def scenario():
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        result = await engine.login(Credentials("trader", "secret"))
        assert all(channel.running for channel in engine.channels)
        await engine.load_chain("XYZ")
        transport.streams[OPTION_FEED_PATH] = [
            json.dumps({"Expiration": "2024-06-21", "Strike": "100.00", "OptionType": "CALL", "Bid": "1.05", "Ask": "1.10"})
        ]
        await engine.option_feed.stop()
        engine.option_feed.start()
        for _ in range(10):
            await asyncio.sleep(0)
        await engine.order_feed.refetcher.wait_idle()
        snapshot = engine.view.snapshot()
        await engine.close()
        return result, snapshot

    result, snapshot = asyncio.run(scenario())

    assert result.ok is True
    assert transport.paths()[:2] == ["/login", "/reqOrderBook"]
    assert transport.paths("/reqOrderBook") == ["/reqOrderBook", "/reqOrderBook"]
    assert snapshot["account"] == {"net_liquidity": 5000.0, "option_buying_power": 1200.0}
    cell = snapshot["option_chain"]["expirations"]["2024-06-21"]["100.00"]["call"]
    assert (cell["bid"], cell["ask"]) == (1.05, 1.10)
    assert transport.closed is False


def test_failed_login_keeps_feeds_closed(transport: FakeTransport) -> None:
    transport.respond("/login", {"token": "", "error": "Not enough params to login"})

    async def scenario():
        engine = SyncEngine(transport)
        result = await engine.login(Credentials("", ""))
        return engine, result

    engine, result = asyncio.run(scenario())

    assert result.error == "Not enough params to login"
    assert not any(channel.running for channel in engine.channels)
    assert engine.is_authenticated() is False


def test_logout_tears_down_feeds_and_resets_view(transport: FakeTransport) -> None:
    _logged_in_transport(transport)

    async def scenario():
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        await engine.login(Credentials("trader", "secret"))
        assert len(engine.view.order_book) == 1
        await engine.logout()
        return engine

    engine = asyncio.run(scenario())

    assert engine.is_authenticated() is False
    assert not any(channel.running for channel in engine.channels)
    assert len(engine.view.order_book) == 0
    assert engine.view.session_epoch == 1
    assert transport.paths()[-1] == "/logout"


def test_login_when_authenticated_does_not_resubmit(transport: FakeTransport) -> None:
    _logged_in_transport(transport)

    async def scenario():
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        await engine.login(Credentials("trader", "secret"))
        again = await engine.login(Credentials("trader", "secret"))
        await engine.close()
        return again

    again = asyncio.run(scenario())

    assert again.ok is True
    assert transport.paths("/login") == ["/login"]


def test_logout_without_session_is_noop(transport: FakeTransport) -> None:
    asyncio.run(SyncEngine(transport).logout())

    assert transport.calls == []


def test_toggle_tracking_through_engine(transport: FakeTransport) -> None:
    transport.respond("/reqOptChain", chain_payload())
    transport.respond("/trackOption", {"tracked": [XYZ_TICKER]})

    async def scenario():
        engine = SyncEngine(transport)
        await engine.load_chain("XYZ")
        return engine, await engine.toggle_tracking("2024-06-21", 100, "call")

    engine, tracked = asyncio.run(scenario())

    assert tracked is True
    assert engine.view.tracked_set == frozenset({XYZ_TICKER})


def test_session_gate_handles_unreadable_login_response() -> None:
    class BrokenTransport(FakeTransport):
        async def send(self, path, payload=None):
            raise DecodeError("login response not JSON")

    gate = SessionGate(BrokenTransport())

    result = asyncio.run(gate.login(Credentials("trader", "secret")))

    assert result.ok is False
    assert result.error
    assert gate.is_authenticated() is False


def test_login_opens_feeds_even_when_snapshot_fails(transport: FakeTransport) -> None:
    transport.respond("/login", {"token": "abc", "error": ""})
    transport.respond("/reqOrderBook", TransportError("/reqOrderBook", "connection reset"))

    async def scenario():
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        with pytest.raises(TransportError):
            await engine.login(Credentials("trader", "secret"))
        after_failure = [channel.running for channel in engine.channels]
        await engine.stop_feeds()
        retry = await engine.login(Credentials("trader", "secret"))
        after_retry = [channel.running for channel in engine.channels]
        await engine.close()
        return engine, after_failure, retry, after_retry

    engine, after_failure, retry, after_retry = asyncio.run(scenario())

    assert engine.is_authenticated() is True
    assert after_failure == [True, True, True]
    assert retry.ok is True
    assert after_retry == [True, True, True]
    assert transport.paths("/login") == ["/login"]


def test_logout_during_login_snapshot_keeps_feeds_closed(transport: FakeTransport) -> None:
    async def scenario():
        release = asyncio.get_running_loop().create_future()

        async def delayed_book(_: dict) -> dict:
            await release
            return order_book_payload("1")

        transport.respond("/login", {"token": "abc", "error": ""})
        transport.respond("/reqOrderBook", delayed_book)
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        login = asyncio.create_task(engine.login(Credentials("trader", "secret")))
        while "/reqOrderBook" not in transport.paths():
            await asyncio.sleep(0)
        await engine.logout()
        release.set_result(None)
        await login
        state = (
            engine.is_authenticated(),
            [channel.running for channel in engine.channels],
            len(engine.view.order_book),
        )
        await engine.close()
        return state

    authenticated, running, orders = asyncio.run(scenario())

    assert authenticated is False
    assert running == [False, False, False]
    assert orders == 0


def test_concurrent_logouts_reset_the_view_once(transport: FakeTransport) -> None:
    _logged_in_transport(transport)

    async def scenario():
        engine = SyncEngine(transport, sleep=lambda _: asyncio.sleep(3600))
        await engine.login(Credentials("trader", "secret"))
        reasons: list[str] = []
        engine.view.subscribe(lambda reason, _: reasons.append(reason))
        await asyncio.gather(engine.logout(), engine.logout())
        return engine, reasons

    engine, reasons = asyncio.run(scenario())

    assert transport.paths("/logout") == ["/logout"]
    assert reasons.count("reset") == 1
    assert engine.view.session_epoch == 1
    assert not any(channel.running for channel in engine.channels)
