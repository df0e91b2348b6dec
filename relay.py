import asyncio
import json
import time
from typing import Any, Dict, Mapping, Optional

from pydantic import ValidationError

from backend import REJECT_CAPACITY, RoomStore
from constants import (
    ADAPTIVE_INITIAL_BITRATE,
    ADAPTIVE_MAX_BITRATE,
    ADAPTIVE_MIN_BITRATE,
    BITRATE_DECREASE_FACTOR,
    BITRATE_INCREASE_FACTOR,
    CANDIDATE_REPLAY_COUNT,
    DEFAULT_ROOM_ID,
    HIGH_PACKET_LOSS,
    LOW_PACKET_LOSS,
)
from identity import DeviceIdentityResolver
from logging_config import get_logger
from message_types import (
    ANSWER,
    BYE,
    DECREASE_BITRATE,
    ERROR,
    ICE_CANDIDATE,
    INCREASE_BITRATE,
    IOS_CAPABILITIES,
    IOS_CAPABILITIES_UPDATE,
    JOIN,
    OFFER,
    PEER_DISCONNECTED,
    PING,
    PONG,
    QUALITY_RECOMMENDATION,
    ROOM_INFO,
    STATE_CLOSED,
    STATE_CONNECTED,
    STATE_JOINED,
    STATS,
    USER_JOINED,
    USER_LEFT,
)
from payload_adapter import adapt
from registry import Connection, ConnectionRegistry
from schemas.signaling import CapabilitiesMessage, IceCandidateMessage, JoinMessage, SdpMessage, StatsMessage
from sdp import analyze
from transport import broadcast, safe_send

logger = get_logger(__name__)

INVALID_MESSAGE = "Invalid message format"


def now_ms() -> int:
    return int(time.time() * 1000)


class SignalingRelay:
    """Owns the connection registry and room store and routes signaling between room members.

    Per connection the state moves connected -> joined -> closed. Membership
    changes are synchronous so they are atomic on the event loop; the only
    multi-step critical section (reconnect eviction, then capacity check, then
    admission) runs under the room's lock.
    """

    def __init__(self, registry: Optional[ConnectionRegistry] = None, store: Optional[RoomStore] = None,
                 resolver: Optional[DeviceIdentityResolver] = None, default_room: str = DEFAULT_ROOM_ID,
                 candidate_replay: int = CANDIDATE_REPLAY_COUNT, clock=time.monotonic):
        self.registry = registry if registry is not None else ConnectionRegistry()
        self.store = store if store is not None else RoomStore()
        self.resolver = resolver if resolver is not None else DeviceIdentityResolver(self.registry, self.store)
        self.default_room = default_room
        self.candidate_replay = candidate_replay
        self.clock = clock
        self.started_at = time.time()
        self._handlers = {
            JOIN: self.handle_join,
            OFFER: self.handle_offer,
            ANSWER: self.handle_answer,
            ICE_CANDIDATE: self.handle_ice_candidate,
            BYE: self.handle_bye,
            PING: self.handle_ping,
            PONG: self.handle_pong,
            IOS_CAPABILITIES: self.handle_capabilities,
            STATS: self.handle_stats,
        }

    def connect(self, transport, headers: Optional[Mapping[str, str]] = None,
                client_host: Optional[str] = None) -> Connection:
        conn = self.registry.accept(transport, headers, client_host, now=self.clock())
        logger.info(f"New connection {conn.id} ({conn.device_type}) from {client_host or 'unknown'}")
        return conn

    async def handle_message(self, conn: Connection, raw: str):
        try:
            data = json.loads(raw)
        except (json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Unparseable message from {conn.id}: {e}; payload: {str(raw)[:100]}")
            await self.send_error(conn, INVALID_MESSAGE)
            return

        if not isinstance(data, dict) or not isinstance(data.get("type"), str):
            logger.warning(f"Message without a type from {conn.id}: {str(raw)[:100]}")
            await self.send_error(conn, INVALID_MESSAGE)
            return

        handler = self._handlers.get(data["type"], self.handle_generic)
        try:
            await handler(conn, data, raw)
        except ValidationError as e:
            logger.warning(f"Invalid {data['type']} message from {conn.id}: {e.errors()}")
            await self.send_error(conn, INVALID_MESSAGE)
        except Exception as e:
            logger.error(f"Error handling {data['type']} message from {conn.id}: {e}", exc_info=True)
            await self.send_error(conn, INVALID_MESSAGE)

    async def send_error(self, conn: Connection, message: str):
        await safe_send(conn, {"type": ERROR, "message": message})

    def _active_room(self, conn: Connection, data: Dict[str, Any]) -> Optional[str]:
        """The sender's room if the message may be relayed there, else None (silently dropped)."""
        room_id = conn.room_id
        if conn.state != STATE_JOINED or room_id is None:
            logger.debug(f"Dropping {data.get('type')} from {conn.id}: not in a room")
            return None
        requested = data.get("roomId")
        if requested is not None and requested != room_id:
            logger.debug(f"Dropping {data.get('type')} from {conn.id}: room {requested} is not its room {room_id}")
            return None
        room = self.store.get_room(room_id)
        if room is None or conn.id not in room.members:
            logger.debug(f"Dropping {data.get('type')} from {conn.id}: room {room_id} no longer holds it")
            return None
        return room_id

    def _stamp(self, conn: Connection, data: Dict[str, Any]) -> Dict[str, Any]:
        stamped = dict(data)
        stamped["senderId"] = conn.id
        stamped["senderDeviceType"] = conn.device_type
        stamped["timestamp"] = now_ms()
        return stamped

    def _peers(self, room_id: str, conn: Connection):
        return [member for member in self.store.members(room_id) if member is not conn]

    def room_info(self, room_id: str) -> Dict[str, Any]:
        members = self.store.members(room_id)
        return {
            "type": ROOM_INFO,
            "clients": len(members),
            "room": room_id,
            "deviceTypes": list(dict.fromkeys(member.device_type for member in members)),
        }

    async def handle_join(self, conn: Connection, data: Dict[str, Any], raw: str):
        message = JoinMessage.model_validate(data)
        room_id = message.roomId or self.default_room

        if conn.state == STATE_CLOSED:
            return
        room = self.store.get_room(room_id)
        if conn.room_id == room_id and room is not None and conn.id in room.members:
            logger.info(f"Connection {conn.id} already in room {room_id}, ignoring duplicate join")
            return
        if conn.room_id is not None:
            await self._leave_current_room(conn)

        conn.capabilities = message.capabilities

        async with self.store.lock(room_id):
            # A competing join for the same device may have evicted this one while it waited
            if conn.state == STATE_CLOSED:
                logger.info(f"Connection {conn.id} closed while waiting to join {room_id}")
                return
            self.resolver.identify(conn, message.deviceId)
            evicted = await self.resolver.reconcile(room_id, conn)
            self.store.ensure_room(room_id)
            result = self.store.join(room_id, conn)
            if not result.rejected:
                conn.room_id = room_id
                conn.state = STATE_JOINED

        if result.rejected:
            if result.reason == REJECT_CAPACITY:
                await self.send_error(conn, f"Room full, maximum {self.store.max_members} connections allowed")
            return

        notice = {"type": USER_JOINED, "userId": conn.id, "deviceType": conn.device_type}
        if message.reconnect or evicted:
            notice["isReconnect"] = True
        await broadcast(self._peers(room_id, conn), notice)

        latest = self.store.latest_offer(room_id)
        if latest is not None:
            replay = dict(latest)
            if latest.get("sdp"):
                replay["sdp"] = adapt(latest["sdp"], conn.device_type, analyze(latest["sdp"]).resolution)
            await safe_send(conn, replay)
            logger.info(f"Replayed latest offer to new member {conn.id}")

        candidates = self.store.recent_candidates(room_id, self.candidate_replay)
        for candidate in candidates:
            await safe_send(conn, candidate)
        if candidates:
            logger.info(f"Replayed {len(candidates)} ICE candidates to new member {conn.id}")

        await safe_send(conn, self.room_info(room_id))

    async def handle_offer(self, conn: Connection, data: Dict[str, Any], raw: str):
        message = SdpMessage.model_validate(data)
        room_id = self._active_room(conn, data)
        if room_id is None:
            return

        resolution = None
        if message.sdp:
            analysis = analyze(message.sdp)
            logger.info(
                f"Offer from {conn.id} ({conn.device_type}) in room {room_id}: video={analysis.has_video}, "
                f"audio={analysis.has_audio}, codec={analysis.codec}, resolution={analysis.resolution}, "
                f"fps={analysis.fps}, bitrate={analysis.bitrate_kbps}, pixelFormat={analysis.pixel_format}"
            )
            self.store.update_quality(room_id, analysis)
            resolution = analysis.resolution

        stamped = self._stamp(conn, data)
        self.store.record_offer(room_id, stamped)

        adapted: Dict[str, Optional[str]] = {}
        sends = []
        for peer in self._peers(room_id, conn):
            payload = dict(stamped)
            if message.sdp:
                if peer.device_type not in adapted:
                    adapted[peer.device_type] = adapt(message.sdp, peer.device_type, resolution)
                payload["sdp"] = adapted[peer.device_type]
            sends.append(safe_send(peer, payload))
        await asyncio.gather(*sends)

        self.store.touch(room_id, len(raw))

    async def handle_answer(self, conn: Connection, data: Dict[str, Any], raw: str):
        message = SdpMessage.model_validate(data)
        room_id = self._active_room(conn, data)
        if room_id is None:
            return

        if message.sdp:
            analysis = analyze(message.sdp)
            logger.info(
                f"Answer from {conn.id} ({conn.device_type}) in room {room_id}: codec={analysis.codec}, "
                f"resolution={analysis.resolution}, fps={analysis.fps}, pixelFormat={analysis.pixel_format}, "
                f"h264Profile={analysis.h264_profile}"
            )

        stamped = self._stamp(conn, data)
        self.store.record_answer(room_id, stamped)
        await broadcast(self._peers(room_id, conn), stamped)
        self.store.touch(room_id, len(raw))

    async def handle_ice_candidate(self, conn: Connection, data: Dict[str, Any], raw: str):
        IceCandidateMessage.model_validate(data)
        room_id = self._active_room(conn, data)
        if room_id is None:
            return

        stamped = self._stamp(conn, data)
        if self.store.record_candidate(room_id, stamped):
            logger.debug(f"ICE candidate from {conn.id} in room {room_id}")
            await broadcast(self._peers(room_id, conn), stamped)
        self.store.touch(room_id, len(raw))

    async def handle_bye(self, conn: Connection, data: Dict[str, Any], raw: str):
        room_id = self._active_room(conn, data)
        if room_id is None:
            return
        logger.info(f"Bye from {conn.id} in room {room_id}")
        await broadcast(
            self._peers(room_id, conn),
            {"type": PEER_DISCONNECTED, "userId": conn.id, "deviceType": conn.device_type},
        )
        self.store.touch(room_id)

    async def handle_ping(self, conn: Connection, data: Dict[str, Any], raw: str):
        await safe_send(conn, {"type": PONG, "timestamp": now_ms()})
        conn.last_pong_received = self.clock()
        if conn.room_id:
            self.store.touch(conn.room_id)

    async def handle_pong(self, conn: Connection, data: Dict[str, Any], raw: str):
        conn.last_pong_received = self.clock()
        if conn.room_id:
            self.store.touch(conn.room_id)

    async def handle_capabilities(self, conn: Connection, data: Dict[str, Any], raw: str):
        message = CapabilitiesMessage.model_validate(data)
        room_id = self._active_room(conn, data)
        if room_id is None:
            return
        logger.info(f"Device capabilities from {conn.id}: {message.capabilities}")
        conn.capabilities = message.capabilities
        self.store.set_capabilities(room_id, message.capabilities)
        await broadcast(
            self._peers(room_id, conn),
            {"type": IOS_CAPABILITIES_UPDATE, "userId": conn.id, "capabilities": message.capabilities},
        )
        self.store.touch(room_id)

    async def handle_stats(self, conn: Connection, data: Dict[str, Any], raw: str):
        """Record client-reported link stats and answer with a bitrate recommendation.

        Stats are private to the sender and never relayed. High packet loss
        asks for 70% of the reported bandwidth (floored at the minimum); a
        clean link with spare bandwidth may go to 120% (capped at the maximum).
        """
        message = StatsMessage.model_validate(data)
        stats = message.stats
        if stats is None or stats.video is None:
            return
        if not stats.bandwidth or stats.packetLoss is None:
            return

        conn.connection_stats = {
            "bandwidth": stats.bandwidth,
            "packetLoss": stats.packetLoss,
            "rtt": stats.rtt or 0,
            "timestamp": now_ms(),
        }

        if stats.packetLoss > HIGH_PACKET_LOSS:
            action = DECREASE_BITRATE
            target = max(stats.bandwidth * BITRATE_DECREASE_FACTOR, ADAPTIVE_MIN_BITRATE)
        elif stats.packetLoss < LOW_PACKET_LOSS and stats.bandwidth > ADAPTIVE_INITIAL_BITRATE * BITRATE_INCREASE_FACTOR:
            action = INCREASE_BITRATE
            target = min(stats.bandwidth * BITRATE_INCREASE_FACTOR, ADAPTIVE_MAX_BITRATE)
        else:
            return

        logger.info(
            f"Recommending {action} to {round(target)}kbps for {conn.id} "
            f"(bandwidth {stats.bandwidth}kbps, loss {stats.packetLoss}%)"
        )
        await safe_send(conn, {"type": QUALITY_RECOMMENDATION, "action": action, "targetBitrate": round(target)})

    async def handle_generic(self, conn: Connection, data: Dict[str, Any], raw: str):
        room_id = self._active_room(conn, data)
        if room_id is None:
            return
        logger.debug(f"Relaying {data['type']} message from {conn.id} in room {room_id}")
        await broadcast(self._peers(room_id, conn), data)
        self.store.touch(room_id, len(raw))

    async def _leave_current_room(self, conn: Connection):
        room_id = conn.room_id
        self.store.leave(room_id, conn)
        conn.room_id = None
        conn.state = STATE_CONNECTED
        await broadcast(
            self.store.members(room_id),
            {"type": USER_LEFT, "userId": conn.id, "deviceType": conn.device_type},
        )

    def detach(self, conn: Connection) -> Optional[str]:
        """Drop a connection from its room and the registry. Returns the room it was in."""
        room_id = conn.room_id
        if room_id:
            self.store.leave(room_id, conn)
        self.registry.unregister(conn.id)
        conn.room_id = None
        conn.state = STATE_CLOSED
        return room_id

    async def disconnect(self, conn: Connection):
        """Transport closed: deregister first, then tell the remaining members. Idempotent."""
        if conn.state == STATE_CLOSED:
            return
        room_id = self.detach(conn)
        logger.info(f"Connection {conn.id} closed")
        if room_id:
            remaining = self.store.members(room_id)
            if remaining:
                await broadcast(remaining, {"type": USER_LEFT, "userId": conn.id, "deviceType": conn.device_type})

    async def close_connection(self, conn: Connection, reason: Optional[str] = None):
        try:
            await conn.transport.close(code=1000, reason=reason)
        except Exception as e:
            logger.warning(f"Error closing connection {conn.id}: {e}")
        await self.disconnect(conn)
