import time
from datetime import datetime

from fastapi import APIRouter, Request
from routers.rooms import room_summary
from schemas.rooms import HealthResponse, ServerInfoResponse

status_router = APIRouter(tags=["status"])


@status_router.get("/health", response_model=HealthResponse)
async def health(request: Request):
    relay = request.app.state.relay
    return HealthResponse(
        status="ok",
        connections=len(relay.registry),
        rooms=len(relay.store),
        timestamp=datetime.now().isoformat(),
        uptime=time.time() - relay.started_at,
    )


@status_router.get("/info", response_model=ServerInfoResponse)
async def info(request: Request):
    relay = request.app.state.relay
    rooms_info = {room_id: room_summary(relay, room_id) for room_id in relay.store.room_names()}
    return ServerInfoResponse(
        clients=len(relay.registry),
        rooms=len(relay.store),
        device_types=relay.registry.device_counts(),
        rooms_info=rooms_info,
        uptime=time.time() - relay.started_at,
        start_time=datetime.fromtimestamp(relay.started_at).isoformat(),
    )
