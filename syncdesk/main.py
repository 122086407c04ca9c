import asyncio
import contextlib
import logging
import os
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from redis.exceptions import RedisError

from syncdesk.core.config import get_settings
from syncdesk.services.commit_stream import CommitBroadcaster
from syncdesk.services.session_gate import Credentials
from syncdesk.services.state_service import StateService, close_redis_client
from syncdesk.services.sync_engine import SyncEngine
from syncdesk.services.transport import TransportError

logger = logging.getLogger(__name__)


class DebugEventBuffer(logging.Handler):
    """Keeps the most recent package log records for ``/debug/events``."""

    def __init__(self, maxlen: int = 2000) -> None:
        super().__init__(level=logging.INFO)
        self.events: deque[dict[str, str]] = deque(maxlen=maxlen)
        self.setFormatter(logging.Formatter("%(message)s"))

    def emit(self, record: logging.LogRecord) -> None:
        try:
            created = datetime.fromtimestamp(record.created, timezone.utc)
            self.events.append(
                {
                    "timestamp": created.isoformat(timespec="seconds").replace("+00:00", "Z"),
                    "level": record.levelname.lower(),
                    "source": record.name,
                    "message": self.format(record),
                }
            )
        except Exception:
            self.handleError(record)


class LoginRequest(BaseModel):
    login: str
    password: str


class ToggleRequest(BaseModel):
    expiration: str
    strike: str | float
    side: str


def _create_lifespan(enable_background_services: bool, engine: Optional[SyncEngine]):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        settings = get_settings()
        event_buffer = DebugEventBuffer()
        app.state.backend_events = event_buffer.events
        package_logger = logging.getLogger("syncdesk")
        package_logger.setLevel((settings.log_level or "INFO").upper())
        package_logger.addHandler(event_buffer)

        app.state.engine = engine or SyncEngine()
        app.state.broadcaster = CommitBroadcaster(app.state.engine.view)
        app.state.state_service = None
        app.state.mirror_task = None

        if not enable_background_services:
            logger.info("Background services disabled; skipping state mirror")
        elif not settings.redis_url:
            logger.info("REDIS_URL not configured; skipping state mirror")
        else:
            state_service = StateService()
            try:
                await state_service.redis.ping()
            except RedisError as exc:  # pragma: no cover - requires Redis
                logger.error("Redis unavailable, state mirror disabled: %s", exc)
            else:
                app.state.state_service = state_service
                app.state.mirror_task = asyncio.create_task(
                    state_service.mirror(app.state.broadcaster),
                    name="redis-state-mirror",
                )

        try:
            yield
        finally:
            package_logger.removeHandler(event_buffer)
            if app.state.mirror_task:
                app.state.mirror_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await app.state.mirror_task
            app.state.broadcaster.close()
            await app.state.engine.close()
            await close_redis_client()

    return lifespan


def _transport_failure(exc: TransportError) -> JSONResponse:
    logger.error("Backend request failed: %s", exc)
    return JSONResponse({"detail": "backend unavailable", "endpoint": exc.endpoint}, status_code=502)


def create_app(
    enable_background_services: bool | None = None,
    *,
    engine: Optional[SyncEngine] = None,
) -> FastAPI:
    if enable_background_services is None:
        enable_background_services = os.environ.get("PYTEST_CURRENT_TEST") is None
    app = FastAPI(
        title="syncdesk",
        version="0.1.0",
        lifespan=_create_lifespan(enable_background_services, engine),
    )

    def _engine() -> Optional[SyncEngine]:
        return getattr(app.state, "engine", None)

    def _unavailable() -> JSONResponse:
        return JSONResponse({"detail": "sync engine unavailable"}, status_code=503)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        current = _engine()
        return {
            "status": "ok",
            "authenticated": bool(current and current.is_authenticated()),
            "feeds": {channel.kind: channel.running for channel in current.channels} if current else {},
        }

    @app.get("/state/latest")
    async def latest_state() -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        return JSONResponse(current.view.snapshot(), status_code=200)

    @app.post("/session/login")
    async def login(request: LoginRequest) -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            result = await current.login(Credentials(login=request.login, password=request.password))
        except TransportError as exc:
            return _transport_failure(exc)
        status = 200 if result.ok else 401
        return JSONResponse({"authenticated": result.ok, "error": result.error}, status_code=status)

    @app.post("/session/logout")
    async def logout() -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            await current.logout()
        except TransportError as exc:
            return _transport_failure(exc)
        return JSONResponse({"authenticated": current.is_authenticated()}, status_code=200)

    @app.post("/orders/test")
    async def submit_test_order() -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            await current.submit_test_order()
        except TransportError as exc:
            return _transport_failure(exc)
        return JSONResponse({"status": "submitted"}, status_code=202)

    @app.post("/orders/{order_id}/cancel")
    async def cancel_order(order_id: str) -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            await current.cancel_order(order_id)
        except ValueError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=400)
        except TransportError as exc:
            return _transport_failure(exc)
        return JSONResponse({"status": "cancel requested", "order_id": order_id}, status_code=202)

    @app.post("/chain/{symbol}")
    async def load_chain(symbol: str) -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            chain = await current.load_chain(symbol)
        except ValueError as exc:
            return JSONResponse({"detail": str(exc)}, status_code=400)
        except TransportError as exc:
            return _transport_failure(exc)
        if chain is None:
            return JSONResponse({"detail": "option chain unavailable"}, status_code=502)
        return JSONResponse(current.view.snapshot()["option_chain"], status_code=200)

    @app.post("/tracking/toggle")
    async def toggle_tracking(request: ToggleRequest) -> JSONResponse:
        current = _engine()
        if not current:
            return _unavailable()
        try:
            tracked = await current.toggle_tracking(request.expiration, request.strike, request.side)
        except TransportError as exc:
            return _transport_failure(exc)
        return JSONResponse(
            {"tracked": tracked, "applied": tracked is not None, "tracked_set": sorted(current.view.tracked_set)},
            status_code=200,
        )

    @app.get("/debug/events")
    async def debug_events(limit: int = 200) -> JSONResponse:
        events = list(getattr(app.state, "backend_events", []) or [])
        return JSONResponse({"items": events[-max(1, limit):]}, status_code=200)

    @app.websocket("/ws/state")
    async def state_stream(ws: WebSocket) -> None:
        current = _engine()
        broadcaster: Optional[CommitBroadcaster] = getattr(app.state, "broadcaster", None)
        if not current or not broadcaster:
            await ws.close(code=1013)
            return
        await ws.accept()
        queue = broadcaster.open()

        async def pump() -> None:
            while True:
                snapshot = await queue.get()
                await ws.send_json(snapshot)

        await ws.send_json(current.view.snapshot())
        sender = asyncio.create_task(pump(), name="ws-state-pump")
        try:
            while True:
                await ws.receive_text()
        except WebSocketDisconnect:
            logger.debug("State websocket client disconnected")
        finally:
            sender.cancel()
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await sender
            broadcaster.release(queue)

    return app


app = create_app()
