import asyncio
from collections import deque
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional

from constants import (
    ANSWER_HISTORY_SIZE,
    CANDIDATE_HISTORY_SIZE,
    MAX_CONNECTIONS,
    OFFER_HISTORY_SIZE,
)
from logging_config import get_logger

logger = get_logger(__name__)

REJECT_CAPACITY = "capacity-exceeded"
REJECT_ALREADY_MEMBER = "already-member"

BANDWIDTH_DECAY = 0.8
BANDWIDTH_WEIGHT = 0.2


@dataclass
class RoomStats:
    created_at: datetime = field(default_factory=datetime.now)
    connections: int = 0
    total_connections: int = 0
    peak_connections: int = 0
    messages_exchanged: int = 0
    bandwidth: float = 0.0
    resolution: str = "unknown"
    fps: str = "unknown"
    codec: str = "unknown"
    pixel_format: str = "unknown"
    h264_profile: str = "unknown"
    last_activity: datetime = field(default_factory=datetime.now)
    active_clients: int = 0
    capabilities: Optional[Dict[str, Any]] = None


@dataclass
class Room:
    name: str
    members: Dict[str, Any]
    offers: Deque[dict]
    answers: Deque[dict]
    candidates: Deque[dict]
    stats: RoomStats = field(default_factory=RoomStats)


@dataclass
class JoinResult:
    rejected: bool
    reason: Optional[str] = None


def candidate_key(message: dict):
    return (message.get("candidate"), message.get("sdpMid"), message.get("sdpMLineIndex"))


class RoomStore:
    """In-memory rooms: membership, bounded signaling history and statistics.

    Every operation on a room that does not exist is a no-op, since the
    cleanup sweep may delete a room while messages for it are still in flight.
    """

    def __init__(self, max_members: int = MAX_CONNECTIONS,
                 offer_history: int = OFFER_HISTORY_SIZE,
                 answer_history: int = ANSWER_HISTORY_SIZE,
                 candidate_history: int = CANDIDATE_HISTORY_SIZE):
        self.max_members = max_members
        self.offer_history = offer_history
        self.answer_history = answer_history
        self.candidate_history = candidate_history
        self._rooms: Dict[str, Room] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def ensure_room(self, room_id: str) -> Room:
        room = self._rooms.get(room_id)
        if room is None:
            room = Room(
                name=room_id,
                members={},
                offers=deque(maxlen=self.offer_history),
                answers=deque(maxlen=self.answer_history),
                candidates=deque(maxlen=self.candidate_history),
            )
            self._rooms[room_id] = room
            logger.info(f"Room {room_id} created")
        return room

    def get_room(self, room_id: str) -> Optional[Room]:
        return self._rooms.get(room_id)

    def lock(self, room_id: str) -> asyncio.Lock:
        """Per-room lock serializing reconnect reconciliation and admission."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[room_id] = lock
        return lock

    def is_locked(self, room_id: str) -> bool:
        lock = self._locks.get(room_id)
        return lock is not None and lock.locked()

    def delete_room(self, room_id: str) -> bool:
        room = self._rooms.pop(room_id, None)
        if room is None:
            return False
        lock = self._locks.get(room_id)
        if lock is not None and not lock.locked():
            del self._locks[room_id]
        logger.info(f"Room {room_id} deleted (history and stats dropped)")
        return True

    def room_names(self) -> List[str]:
        return list(self._rooms.keys())

    def members(self, room_id: str) -> list:
        room = self._rooms.get(room_id)
        if room is None:
            return []
        return list(room.members.values())

    def join(self, room_id: str, conn) -> Optional[JoinResult]:
        room = self._rooms.get(room_id)
        if room is None:
            return None

        if conn.id in room.members:
            logger.info(f"Connection {conn.id} already in room {room_id}, ignoring duplicate join")
            return JoinResult(rejected=True, reason=REJECT_ALREADY_MEMBER)

        if len(room.members) >= self.max_members:
            logger.warning(f"Join rejected: room {room_id} is full ({len(room.members)}/{self.max_members})")
            return JoinResult(rejected=True, reason=REJECT_CAPACITY)

        room.members[conn.id] = conn
        stats = room.stats
        stats.connections += 1
        stats.total_connections += 1
        stats.peak_connections = max(stats.peak_connections, len(room.members))
        logger.info(f"Connection {conn.id} ({conn.device_type}) joined room {room_id}, members: {len(room.members)}")
        return JoinResult(rejected=False)

    def leave(self, room_id: str, conn) -> bool:
        room = self._rooms.get(room_id)
        if room is None or conn.id not in room.members:
            return False
        del room.members[conn.id]
        room.stats.connections = max(0, room.stats.connections - 1)
        if not room.members:
            logger.info(f"Room {room_id} is empty, leaving it for the cleanup sweep")
        else:
            logger.info(f"Connection {conn.id} left room {room_id}, remaining: {len(room.members)}")
        return True

    def record_offer(self, room_id: str, message: dict):
        room = self._rooms.get(room_id)
        if room is not None:
            room.offers.append(message)

    def record_answer(self, room_id: str, message: dict):
        room = self._rooms.get(room_id)
        if room is not None:
            room.answers.append(message)

    def record_candidate(self, room_id: str, message: dict) -> bool:
        """Store a candidate unless the same (candidate, sdpMid, sdpMLineIndex) is already held."""
        room = self._rooms.get(room_id)
        if room is None:
            return False
        key = candidate_key(message)
        if any(candidate_key(existing) == key for existing in room.candidates):
            logger.debug(f"Duplicate ICE candidate dropped in room {room_id}")
            return False
        room.candidates.append(message)
        return True

    def latest_offer(self, room_id: str) -> Optional[dict]:
        room = self._rooms.get(room_id)
        if room is None or not room.offers:
            return None
        return room.offers[-1]

    def offers(self, room_id: str) -> List[dict]:
        room = self._rooms.get(room_id)
        return list(room.offers) if room is not None else []

    def answers(self, room_id: str) -> List[dict]:
        room = self._rooms.get(room_id)
        return list(room.answers) if room is not None else []

    def recent_candidates(self, room_id: str, n: int) -> List[dict]:
        room = self._rooms.get(room_id)
        if room is None or n <= 0:
            return []
        return list(room.candidates)[-n:]

    def stats(self, room_id: str) -> Optional[RoomStats]:
        room = self._rooms.get(room_id)
        if room is None:
            return None
        snapshot = replace(room.stats)
        snapshot.active_clients = sum(1 for conn in room.members.values() if conn.transport.is_open)
        return snapshot

    def touch(self, room_id: str, message_size: int = 0):
        room = self._rooms.get(room_id)
        if room is None:
            return
        stats = room.stats
        stats.messages_exchanged += 1
        stats.last_activity = datetime.now()
        if message_size > 0:
            stats.bandwidth = stats.bandwidth * BANDWIDTH_DECAY + message_size * BANDWIDTH_WEIGHT

    def update_quality(self, room_id: str, analysis):
        room = self._rooms.get(room_id)
        if room is None:
            return
        stats = room.stats
        stats.resolution = analysis.resolution
        stats.fps = analysis.fps
        stats.codec = analysis.codec
        stats.pixel_format = analysis.pixel_format
        stats.h264_profile = analysis.h264_profile

    def set_capabilities(self, room_id: str, capabilities: Optional[Dict[str, Any]]):
        room = self._rooms.get(room_id)
        if room is not None:
            room.stats.capabilities = capabilities

    def __len__(self):
        return len(self._rooms)

    def __contains__(self, room_id):
        return room_id in self._rooms
