import pytest
from starlette.websockets import WebSocketDisconnect

WS_AUTH_HEADERS = {"sec-websocket-protocol": "apikey.test-api-key"}


def test_websocket_connect_success(test_client, connection_registry):
    """Successfully connects with valid API key via protocol header."""
    with test_client.websocket_connect("/ws/cust_1", headers=WS_AUTH_HEADERS) as websocket:
        data = websocket.receive_json()
        assert data == {"type": "connected", "data": {"user_id": "cust_1"}}
        assert connection_registry.is_connected("cust_1")


def test_websocket_echoes_accepted_subprotocol(test_client):
    with test_client.websocket_connect("/ws/cust_1", headers=WS_AUTH_HEADERS) as websocket:
        websocket.receive_json()
        assert websocket.accepted_subprotocol == "apikey.test-api-key"


def test_websocket_connect_invalid_key(test_client):
    """Rejects connection with invalid API key."""
    with (
        pytest.raises(WebSocketDisconnect) as exc_info,
        test_client.websocket_connect(
            "/ws/cust_1", headers={"sec-websocket-protocol": "apikey.wrong"}
        ),
    ):
        pass
    assert exc_info.value.code == 1008


def test_websocket_connect_missing_key(test_client):
    """Rejects connection with missing API key."""
    with pytest.raises(WebSocketDisconnect), test_client.websocket_connect("/ws/cust_1"):
        pass


def test_websocket_rate_limited(test_client):
    for _ in range(5):
        with test_client.websocket_connect("/ws/drv_1", headers=WS_AUTH_HEADERS) as websocket:
            websocket.receive_json()

    with (
        pytest.raises(WebSocketDisconnect),
        test_client.websocket_connect("/ws/drv_1", headers=WS_AUTH_HEADERS),
    ):
        pass


def test_health_counts_connections(test_client):
    with test_client.websocket_connect("/ws/cust_1", headers=WS_AUTH_HEADERS) as websocket:
        websocket.receive_json()
        assert test_client.get("/health").json()["websocket_connections"] == 1
