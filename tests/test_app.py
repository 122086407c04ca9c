import logging

from fastapi.testclient import TestClient

from fakes import XYZ_TICKER, FakeTransport, chain_payload, order_book_payload
from syncdesk.core import config
from syncdesk.main import DebugEventBuffer, create_app
from syncdesk.services.sync_engine import SyncEngine
from syncdesk.services.transport import TransportError


def _client(transport: FakeTransport) -> tuple[TestClient, SyncEngine]:
    engine = SyncEngine(transport)
    app = create_app(enable_background_services=False, engine=engine)
    return TestClient(app), engine


def test_settings_reads_environment_variables(monkeypatch) -> None:
    monkeypatch.setenv("BACKEND_URL", "http://broker.local:9000/")
    monkeypatch.setenv("ORDER_REFETCH_COALESCE", "true")
    monkeypatch.setenv("REQUEST_TIMEOUT", "2.5")
    config.get_settings.cache_clear()

    settings = config.get_settings()

    assert settings.normalized_backend_url == "http://broker.local:9000"
    assert settings.order_refetch_coalesce is True
    assert settings.request_timeout == 2.5


def test_fastapi_app_health_endpoint() -> None:
    app = create_app(enable_background_services=False)
    with TestClient(app) as client:
        response = client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "ok"
    assert response.json()["authenticated"] is False


def test_login_flow_reports_auth_errors(transport: FakeTransport) -> None:
    transport.respond("/login", {"token": "", "error": "Error logging in: locked"})
    client, _ = _client(transport)

    with client:
        response = client.post("/session/login", json={"login": "trader", "password": "x"})

    assert response.status_code == 401
    assert response.json() == {"authenticated": False, "error": "Error logging in: locked"}


def test_login_and_state_endpoint(transport: FakeTransport) -> None:
    transport.respond("/login", {"token": "abc", "error": ""})
    transport.respond("/reqOrderBook", order_book_payload("11"))
    client, engine = _client(transport)

    with client:
        login = client.post("/session/login", json={"login": "trader", "password": "secret"})
        state = client.get("/state/latest")
        logout = client.post("/session/logout")

    assert login.json()["authenticated"] is True
    assert [entry["order_id"] for entry in state.json()["order_book"]] == ["11"]
    assert logout.json() == {"authenticated": False}
    assert engine.view.session_epoch == 1


def test_chain_and_tracking_endpoints(transport: FakeTransport) -> None:
    transport.respond("/reqOptChain", chain_payload())
    transport.respond("/trackOption", {"tracked": [XYZ_TICKER]})
    client, _ = _client(transport)

    with client:
        chain = client.post("/chain/xyz")
        toggle = client.post(
            "/tracking/toggle",
            json={"expiration": "2024-06-21", "strike": 100, "side": "call"},
        )
        missing = client.post(
            "/tracking/toggle",
            json={"expiration": "2024-06-21", "strike": 250, "side": "call"},
        )

    assert chain.status_code == 200
    assert chain.json()["expirations"]["2024-06-21"]["100.00"]["call"]["ticker"] == XYZ_TICKER
    assert toggle.json() == {"tracked": True, "applied": True, "tracked_set": [XYZ_TICKER]}
    assert missing.json()["applied"] is False
    assert transport.paths("/trackOption") == ["/trackOption"]


def test_order_endpoints_and_transport_failures(transport: FakeTransport) -> None:
    transport.respond("/testOrderHandler", TransportError("/testOrderHandler", "connection refused"))
    client, _ = _client(transport)

    with client:
        submitted = client.post("/orders/test")
        cancelled = client.post("/orders/42/cancel")
        blank = client.post("/orders/%20/cancel")

    assert submitted.status_code == 502
    assert cancelled.status_code == 202
    assert blank.status_code == 400
    assert ("/testCancelOrderHandler", {"orderid": "42"}) in transport.calls


def test_debug_events_capture_engine_logs(transport: FakeTransport) -> None:
    transport.respond("/reqOptChain", chain_payload())
    client, _ = _client(transport)

    with client:
        client.post("/chain/XYZ")
        events = client.get("/debug/events").json()["items"]

    assert any("Loaded option chain for XYZ" in entry["message"] for entry in events)


def test_state_websocket_streams_commits(transport: FakeTransport) -> None:
    transport.respond("/reqOptChain", chain_payload())
    client, _ = _client(transport)

    with client:
        with client.websocket_connect("/ws/state") as ws:
            initial = ws.receive_json()
            client.post("/chain/XYZ")
            update = ws.receive_json()

    assert initial["option_chain"] is None
    assert update["reason"] == "chain"
    assert update["option_chain"]["symbol"] == "XYZ"


def test_debug_event_buffer_keeps_most_recent_records() -> None:
    buffer = DebugEventBuffer(maxlen=2)
    log = logging.getLogger("syncdesk.tests.buffer")
    log.propagate = False
    log.setLevel(logging.DEBUG)
    log.addHandler(buffer)
    try:
        log.info("first %s", 1)
        log.debug("too quiet")
        log.warning("second")
        log.error("third")
    finally:
        log.removeHandler(buffer)

    assert [entry["message"] for entry in buffer.events] == ["second", "third"]
    assert buffer.events[0]["level"] == "warning"
    assert buffer.events[0]["source"] == "syncdesk.tests.buffer"
    assert buffer.events[0]["timestamp"].endswith("Z")
