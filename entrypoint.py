import uvicorn
import os
from logging_config import setup_logging

# Setup logging before importing app
log_level = os.getenv("LOG_LEVEL", "DEBUG")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

from app import app
from constants import HOST, KEEP_ALIVE_INTERVAL, PORT, RELOAD
from logging_config import get_logger

logger = get_logger(__name__)

if __name__ == "__main__":
    logger.info(f"Starting signaling relay on {HOST}:{PORT}")
    # Protocol-level ping frames; the JSON heartbeat runs in the liveness monitor
    uvicorn.run(
        "app:app",
        host=HOST,
        port=PORT,
        reload=RELOAD,
        ws_ping_interval=KEEP_ALIVE_INTERVAL,
        ws_ping_timeout=KEEP_ALIVE_INTERVAL * 4,
    )
