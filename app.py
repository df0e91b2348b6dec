from contextlib import asynccontextmanager

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from liveness import LivenessMonitor
from logging_config import get_logger, setup_logging
from relay import SignalingRelay
from routers.rooms import rooms_router
from routers.status import status_router
from transport import WebSocketTransport
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


def create_app(relay: SignalingRelay = None, monitor: LivenessMonitor = None) -> FastAPI:
    relay = relay if relay is not None else SignalingRelay()
    monitor = monitor if monitor is not None else LivenessMonitor(relay)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        monitor.start()
        try:
            yield
        finally:
            await monitor.stop()

    app = FastAPI(lifespan=lifespan)
    app.state.relay = relay
    app.state.monitor = monitor

    # Configure CORS to allow all origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(rooms_router)
    app.include_router(status_router)

    @app.websocket("/")
    @app.websocket("/ws")
    async def websocket_endpoint(websocket: WebSocket):
        """Signaling channel: one connection per client, JSON envelopes with a `type` field."""
        await websocket.accept()
        client_host = websocket.client.host if websocket.client else None
        conn = relay.connect(WebSocketTransport(websocket), headers=websocket.headers, client_host=client_host)

        message_count = 0
        try:
            while True:
                data = await websocket.receive_text()
                message_count += 1
                logger.debug(f"Received message #{message_count} from connection {conn.id}")
                await relay.handle_message(conn, data)
        except WebSocketDisconnect:
            logger.info(f"WebSocket disconnected for connection {conn.id} after {message_count} messages")
        except Exception as e:
            logger.error(f"WebSocket error for connection {conn.id}: {e}", exc_info=True)
        finally:
            await relay.disconnect(conn)
            try:
                await conn.transport.close()
            except Exception as e:
                logger.debug(f"Error closing WebSocket: {e}")

    logger.info("FastAPI application initialized")
    return app


app = create_app()
