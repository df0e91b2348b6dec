import hashlib
from collections import defaultdict
from typing import Dict, List, Optional

from backend import RoomStore
from logging_config import get_logger
from message_types import REASON_RECONNECTED, STATE_CLOSED, USER_LEFT
from registry import Connection, ConnectionRegistry
from transport import broadcast

logger = get_logger(__name__)


def fingerprint(user_agent: str, address: str, forwarded_for: str = "", device_id: Optional[str] = None) -> str:
    """Stable key for a physical device.

    A client-supplied device id survives page reloads, so when present it wins;
    otherwise user agent, address and forwarding header approximate the device.
    """
    if device_id:
        source = f"{device_id}-{address}"
    else:
        source = f"{user_agent}-{address}-{forwarded_for}"
    return hashlib.sha256(source.encode("utf-8")).hexdigest()


class DeviceIdentityResolver:
    def __init__(self, registry: ConnectionRegistry, store: RoomStore):
        self.registry = registry
        self.store = store
        self.reconnect_counts: Dict[str, int] = defaultdict(int)

    def identify(self, conn: Connection, device_id: Optional[str] = None) -> str:
        device_id = device_id or None
        if conn.device_id and conn.device_id != device_id:
            self.registry.unbind_device(conn)
        conn.device_id = device_id
        conn.fingerprint = fingerprint(conn.user_agent, conn.remote_address, conn.forwarded_for, conn.device_id)
        return conn.fingerprint

    def find_stale(self, room_id: str, new_conn: Connection) -> List[Connection]:
        """Other live connections that belong to the same device as new_conn."""
        stale: Dict[str, Connection] = {}
        if new_conn.device_id:
            indexed = self.registry.find_by_device_id(new_conn.device_id)
            if indexed is not None:
                stale[indexed.id] = indexed
            for conn in self.registry.snapshot():
                if conn.device_id == new_conn.device_id:
                    stale[conn.id] = conn
        for conn in self.store.members(room_id):
            if conn.fingerprint == new_conn.fingerprint:
                stale[conn.id] = conn
        stale.pop(new_conn.id, None)
        return [conn for conn in stale.values() if conn.state != STATE_CLOSED]

    async def reconcile(self, room_id: str, new_conn: Connection) -> int:
        """Evict connections superseded by new_conn; must run before new_conn is admitted."""
        evicted = 0
        for old in self.find_stale(room_id, new_conn):
            await self.evict(old, new_conn)
            evicted += 1

        if new_conn.device_id:
            self.registry.bind_device(new_conn.device_id, new_conn)

        if evicted:
            self.reconnect_counts[new_conn.fingerprint] += 1
            logger.info(
                f"Device reconnect for {new_conn.id}: evicted {evicted} stale connection(s), "
                f"reconnects for this device: {self.reconnect_counts[new_conn.fingerprint]}"
            )
        return evicted

    async def evict(self, old: Connection, new_conn: Connection):
        old_room = old.room_id
        if old_room:
            self.store.leave(old_room, old)
        self.registry.unregister(old.id)
        old.room_id = None
        old.state = STATE_CLOSED
        logger.info(f"Evicting stale connection {old.id} (deviceId: {old.device_id or 'N/A'}) replaced by {new_conn.id}")

        if old_room:
            await broadcast(
                self.store.members(old_room),
                {"type": USER_LEFT, "userId": old.id, "reason": REASON_RECONNECTED, "deviceType": old.device_type},
                exclude=new_conn,
            )

        try:
            await old.transport.close(code=1000, reason=REASON_RECONNECTED)
        except Exception as e:
            logger.warning(f"Error closing stale connection {old.id}: {e}")
