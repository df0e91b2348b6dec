from pydantic import BaseModel
from typing import Any, Dict, Optional


class RoomSummary(BaseModel):
    room_id: str
    clients: int
    active_clients: int
    messages_exchanged: int

class RoomListResponse(BaseModel):
    rooms: list[RoomSummary]
    count: int

class RoomDetailsResponse(BaseModel):
    room_id: str
    clients: int
    active_clients: int
    device_types: Dict[str, int]
    connections: int
    total_connections: int
    peak_connections: int
    messages_exchanged: int
    bandwidth: float
    resolution: str
    fps: str
    codec: str
    pixel_format: str
    h264_profile: str
    capabilities: Optional[Dict[str, Any]] = None
    created_at: str
    last_activity: str

class HealthResponse(BaseModel):
    status: str
    connections: int
    rooms: int
    timestamp: str
    uptime: float

class ServerInfoResponse(BaseModel):
    clients: int
    rooms: int
    device_types: Dict[str, int]
    rooms_info: Dict[str, RoomSummary]
    uptime: float
    start_time: str
