import asyncio
import json
from typing import Any, Dict, Iterable, Optional

from fastapi import WebSocket
from starlette.websockets import WebSocketState

from logging_config import get_logger

logger = get_logger(__name__)


class WebSocketTransport:
    """Adapts a FastAPI WebSocket to the duplex channel the relay talks to.

    Protocol-level ping frames are sent by uvicorn itself (``ws_ping_interval``),
    so this wrapper only deals with text frames and closing.
    """

    def __init__(self, websocket: WebSocket):
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (
            self.websocket.client_state == WebSocketState.CONNECTED
            and self.websocket.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, payload: Dict[str, Any]):
        await self.websocket.send_text(json.dumps(payload))

    async def close(self, code: int = 1000, reason: Optional[str] = None):
        # Idempotent: an eviction may already have closed this socket
        if WebSocketState.DISCONNECTED in (self.websocket.application_state, self.websocket.client_state):
            return
        try:
            await self.websocket.close(code=code, reason=reason)
        except RuntimeError as e:
            logger.debug(f"WebSocket already closed: {e}")


async def safe_send(conn, payload: Dict[str, Any]) -> bool:
    """Send one message to a connection. Failures are logged, never raised."""
    if not conn.transport.is_open:
        logger.debug(f"Skipping send of {payload.get('type')} to closed connection {conn.id}")
        return False
    try:
        await conn.transport.send_json(payload)
        return True
    except Exception as e:
        logger.warning(f"Error sending {payload.get('type')} to connection {conn.id}: {e}")
        return False


async def broadcast(recipients: Iterable, payload: Dict[str, Any], exclude=None) -> int:
    """Fan a message out to a snapshot of recipients; returns how many sends succeeded."""
    targets = [conn for conn in list(recipients) if conn is not exclude]
    if not targets:
        return 0
    results = await asyncio.gather(*(safe_send(conn, payload) for conn in targets))
    delivered = sum(1 for ok in results if ok)
    logger.debug(f"Broadcast {payload.get('type')} to {delivered}/{len(targets)} connections")
    return delivered
