import logging

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from cargo_dispatch.api.rate_limit import ws_limiter
from cargo_dispatch.settings import APISettings

logger = logging.getLogger(__name__)

router = APIRouter()


def extract_api_key_and_protocol(websocket: WebSocket) -> tuple[str | None, str | None]:
    """Extract API key and full protocol from Sec-WebSocket-Protocol header.

    Expected format: apikey.<key>
    Returns: (api_key, full_protocol) - both needed for proper handshake
    """
    protocol_header = websocket.headers.get("sec-websocket-protocol")
    if protocol_header:
        protocols = [p.strip() for p in protocol_header.split(",")]
        for protocol in protocols:
            if protocol.startswith("apikey."):
                return protocol.split(".", 1)[1], protocol
    return None, None


@router.websocket("/ws/{user_id}")
async def websocket_endpoint(websocket: WebSocket, user_id: str) -> None:
    """Push channel for one customer or driver.

    Booking offers, status changes and driver locations addressed to
    ``user_id`` arrive here as ``{"type": ..., "data": ...}`` messages.
    """
    api_key, subprotocol = extract_api_key_and_protocol(websocket)

    if not api_key or api_key != APISettings().key:
        await websocket.close(code=1008)
        return

    client_key = f"key:{api_key}:{user_id}"
    if ws_limiter.is_limited(client_key):
        await websocket.close(code=1008)
        return

    registry = websocket.app.state.connection_registry
    await registry.connect(user_id, websocket, subprotocol=subprotocol)
    logger.info(f"WebSocket connected for {user_id}")

    try:
        await websocket.send_json({"type": "connected", "data": {"user_id": user_id}})
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        registry.disconnect(user_id, websocket)
        logger.info(f"WebSocket disconnected for {user_id}")
