import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from logging_config import get_logger
from message_types import (
    DEVICE_ANDROID,
    DEVICE_IOS,
    DEVICE_TYPES,
    DEVICE_UNKNOWN,
    DEVICE_WEB,
    STATE_CONNECTED,
)

logger = get_logger(__name__)

IOS_USER_AGENT_MARKERS = ("iPhone", "iPad", "iPod")
ANDROID_USER_AGENT_MARKERS = ("Android",)


def classify(headers: Optional[Mapping[str, str]]) -> str:
    """Infer the device type from request headers."""
    if headers is None:
        return DEVICE_UNKNOWN

    user_agent = headers.get("user-agent") or ""
    if any(marker in user_agent for marker in IOS_USER_AGENT_MARKERS):
        return DEVICE_IOS
    if any(marker in user_agent for marker in ANDROID_USER_AGENT_MARKERS):
        return DEVICE_ANDROID
    return DEVICE_WEB


@dataclass(eq=False)
class Connection:
    id: str
    transport: Any
    device_type: str = DEVICE_UNKNOWN
    user_agent: str = ""
    remote_address: str = ""
    forwarded_for: str = ""
    device_id: Optional[str] = None
    fingerprint: Optional[str] = None
    capabilities: Optional[Dict[str, Any]] = None
    connection_stats: Optional[Dict[str, Any]] = None
    room_id: Optional[str] = None
    state: str = STATE_CONNECTED
    connected_at: float = 0.0
    last_ping_sent: float = 0.0
    last_pong_received: float = 0.0


class ConnectionRegistry:
    """Live connections keyed by identity, plus a device id index."""

    def __init__(self):
        self._connections: Dict[str, Connection] = {}
        self._device_index: Dict[str, str] = {}

    def accept(self, transport, headers: Optional[Mapping[str, str]] = None,
               client_host: Optional[str] = None, now: float = 0.0) -> Connection:
        """Build a Connection for a freshly accepted transport and register it."""
        conn = Connection(
            id=uuid.uuid4().hex,
            transport=transport,
            device_type=classify(headers),
            user_agent=(headers or {}).get("user-agent") or "",
            remote_address=client_host or "",
            forwarded_for=(headers or {}).get("x-forwarded-for") or "",
            connected_at=now,
            # Start the clock at accept time so new connections are not instantly stale
            last_pong_received=now,
        )
        self.register(conn)
        return conn

    def register(self, conn: Connection) -> str:
        self._connections[conn.id] = conn
        logger.info(f"Connection {conn.id} registered ({conn.device_type}), total: {len(self._connections)}")
        return conn.id

    def unregister(self, identity: str):
        conn = self._connections.pop(identity, None)
        if conn is None:
            return
        if conn.device_id and self._device_index.get(conn.device_id) == identity:
            del self._device_index[conn.device_id]
        logger.debug(f"Connection {identity} unregistered, remaining: {len(self._connections)}")

    def lookup(self, identity: str) -> Optional[Connection]:
        return self._connections.get(identity)

    def bind_device(self, device_id: str, conn: Connection):
        conn.device_id = device_id
        self._device_index[device_id] = conn.id

    def unbind_device(self, conn: Connection):
        """Forget conn's device id; the index entry is only dropped if it still points at conn."""
        if conn.device_id and self._device_index.get(conn.device_id) == conn.id:
            del self._device_index[conn.device_id]
        conn.device_id = None

    def find_by_device_id(self, device_id: str) -> Optional[Connection]:
        identity = self._device_index.get(device_id)
        if identity is None:
            return None
        return self._connections.get(identity)

    def snapshot(self) -> List[Connection]:
        return list(self._connections.values())

    def device_counts(self) -> Dict[str, int]:
        counts = {device_type: 0 for device_type in DEVICE_TYPES}
        for conn in self._connections.values():
            counts[conn.device_type] = counts.get(conn.device_type, 0) + 1
        return counts

    def __len__(self):
        return len(self._connections)

    def __contains__(self, identity):
        return identity in self._connections
