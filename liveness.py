import asyncio
from typing import Dict, List

from constants import (
    DEAD_CONNECTION_CHECK_INTERVAL,
    DEAD_CONNECTION_TIMEOUT,
    DEVICE_POLICIES,
    EVICTION_GRACE_SECONDS,
    KEEP_ALIVE_INTERVAL,
    ROOM_CLEANUP_INTERVAL,
)
from logging_config import get_logger
from message_types import BYE, DEVICE_UNKNOWN, PING, REASON_TIMEOUT
from relay import SignalingRelay, now_ms
from transport import safe_send

logger = get_logger(__name__)

DEFAULT_POLICY = {"ping_multiplier": 1.0, "timeout_multiplier": 1.0}


class LivenessMonitor:
    """Background sweeps: heartbeat pings, dead connection eviction and empty room cleanup.

    Each sweep walks a snapshot of the registries, so joins and leaves can
    happen while it runs.
    """

    def __init__(self, relay: SignalingRelay,
                 heartbeat_interval: float = KEEP_ALIVE_INTERVAL,
                 dead_check_interval: float = DEAD_CONNECTION_CHECK_INTERVAL,
                 cleanup_interval: float = ROOM_CLEANUP_INTERVAL,
                 dead_timeout: float = DEAD_CONNECTION_TIMEOUT,
                 grace_seconds: float = EVICTION_GRACE_SECONDS,
                 policies: Dict[str, Dict[str, float]] = DEVICE_POLICIES):
        self.relay = relay
        self.heartbeat_interval = heartbeat_interval
        self.dead_check_interval = dead_check_interval
        self.cleanup_interval = cleanup_interval
        self.dead_timeout = dead_timeout
        self.grace_seconds = grace_seconds
        self.policies = policies
        self._tasks: List[asyncio.Task] = []
        self._pending_closes: Dict[str, asyncio.Task] = {}

    def _policy(self, device_type: str) -> Dict[str, float]:
        return self.policies.get(device_type) or self.policies.get(DEVICE_UNKNOWN) or DEFAULT_POLICY

    def ping_interval_for(self, device_type: str) -> float:
        return self.heartbeat_interval * self._policy(device_type)["ping_multiplier"]

    def timeout_for(self, device_type: str) -> float:
        return self.dead_timeout * self._policy(device_type)["timeout_multiplier"]

    @property
    def pending_closes(self) -> List[asyncio.Task]:
        return list(self._pending_closes.values())

    async def send_heartbeats(self) -> int:
        now = self.relay.clock()
        due = [
            conn for conn in self.relay.registry.snapshot()
            if conn.transport.is_open and now - conn.last_ping_sent >= self.ping_interval_for(conn.device_type)
        ]
        if not due:
            return 0

        payload = {"type": PING, "timestamp": now_ms(), "keepAlive": True}
        results = await asyncio.gather(*(safe_send(conn, payload) for conn in due))
        for conn, ok in zip(due, results):
            if ok:
                conn.last_ping_sent = now
        sent = sum(1 for ok in results if ok)
        logger.debug(f"Heartbeat sent to {sent}/{len(due)} connections")
        return sent

    async def check_dead_connections(self) -> List[str]:
        """Evict connections silent for longer than their device's timeout. Returns their ids."""
        now = self.relay.clock()
        expired = []
        for conn in self.relay.registry.snapshot():
            if conn.id in self._pending_closes:
                continue
            elapsed = now - conn.last_pong_received
            if elapsed <= self.timeout_for(conn.device_type):
                continue

            logger.info(f"Connection {conn.id} ({conn.device_type}) inactive for {elapsed:.1f}s, closing")
            expired.append(conn.id)
            if conn.transport.is_open:
                await safe_send(conn, {"type": BYE, "reason": REASON_TIMEOUT})
                self._schedule_close(conn)
            else:
                await self.relay.close_connection(conn, REASON_TIMEOUT)
        return expired

    def _schedule_close(self, conn):
        task = asyncio.create_task(self._close_after_grace(conn))
        self._pending_closes[conn.id] = task
        task.add_done_callback(lambda _: self._pending_closes.pop(conn.id, None))

    async def _close_after_grace(self, conn):
        # Give the bye notice a moment to reach the client
        await asyncio.sleep(self.grace_seconds)
        await self.relay.close_connection(conn, REASON_TIMEOUT)

    async def cleanup_rooms(self) -> int:
        """Delete empty rooms and drop members whose transport already closed. Returns rooms deleted."""
        store = self.relay.store
        deleted = 0
        for room_id in store.room_names():
            # a join holding the lock may be about to add the first member
            if store.is_locked(room_id):
                continue
            members = store.members(room_id)
            if not members:
                if store.delete_room(room_id):
                    deleted += 1
                continue
            for conn in members:
                if not conn.transport.is_open:
                    logger.info(f"Removing inactive connection {conn.id} from room {room_id}")
                    store.leave(room_id, conn)
        if deleted:
            logger.info(f"Room cleanup removed {deleted} empty room(s), {len(store)} remaining")
        return deleted

    async def _run_periodic(self, name: str, interval: float, sweep):
        while True:
            await asyncio.sleep(interval)
            try:
                await sweep()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"{name} sweep failed: {e}", exc_info=True)

    def start(self):
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._run_periodic("heartbeat", self.heartbeat_interval, self.send_heartbeats)),
            asyncio.create_task(self._run_periodic("dead-connection", self.dead_check_interval, self.check_dead_connections)),
            asyncio.create_task(self._run_periodic("room-cleanup", self.cleanup_interval, self.cleanup_rooms)),
        ]
        logger.info(
            f"Liveness monitor started: heartbeat {self.heartbeat_interval}s, "
            f"dead check {self.dead_check_interval}s, cleanup {self.cleanup_interval}s"
        )

    async def stop(self):
        tasks = self._tasks + self.pending_closes
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Liveness monitor stopped")
