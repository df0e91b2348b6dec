from fastapi import APIRouter, HTTPException, Request
from schemas.rooms import RoomDetailsResponse, RoomListResponse, RoomSummary
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def room_summary(relay, room_id: str) -> RoomSummary:
    stats = relay.store.stats(room_id)
    return RoomSummary(
        room_id=room_id,
        clients=len(relay.store.members(room_id)),
        active_clients=stats.active_clients,
        messages_exchanged=stats.messages_exchanged,
    )


@rooms_router.get("/", response_model=RoomListResponse)
async def list_rooms(request: Request):
    relay = request.app.state.relay
    summaries = [room_summary(relay, room_id) for room_id in relay.store.room_names()]
    return RoomListResponse(rooms=summaries, count=len(summaries))


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, request: Request):
    """
    Statistics snapshot for one room.

    Returns member counts (all and with an open transport), members per
    device type, connection counters, message count, the bandwidth
    estimate, and the last media quality seen in an offer.
    """
    relay = request.app.state.relay
    stats = relay.store.stats(room_id)
    if stats is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")

    members = relay.store.members(room_id)
    device_types = {}
    for conn in members:
        device_types[conn.device_type] = device_types.get(conn.device_type, 0) + 1

    logger.info(f"Room details retrieved for {room_id}: {len(members)} clients")

    return RoomDetailsResponse(
        room_id=room_id,
        clients=len(members),
        active_clients=stats.active_clients,
        device_types=device_types,
        connections=stats.connections,
        total_connections=stats.total_connections,
        peak_connections=stats.peak_connections,
        messages_exchanged=stats.messages_exchanged,
        bandwidth=stats.bandwidth,
        resolution=stats.resolution,
        fps=stats.fps,
        codec=stats.codec,
        pixel_format=stats.pixel_format,
        h264_profile=stats.h264_profile,
        capabilities=stats.capabilities,
        created_at=stats.created_at.isoformat(),
        last_activity=stats.last_activity.isoformat(),
    )
