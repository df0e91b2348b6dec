import os

HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", 8080))
RELOAD = os.getenv("RELOAD", "false").lower() in ("1", "true", "yes")

# Room limits
MAX_CONNECTIONS = int(os.getenv("MAX_CONNECTIONS", 10))  # broadcaster + viewers
DEFAULT_ROOM_ID = os.getenv("DEFAULT_ROOM_ID", "ios-camera")

# Signaling history kept per room
OFFER_HISTORY_SIZE = int(os.getenv("OFFER_HISTORY_SIZE", 5))
ANSWER_HISTORY_SIZE = int(os.getenv("ANSWER_HISTORY_SIZE", 5))
CANDIDATE_HISTORY_SIZE = int(os.getenv("CANDIDATE_HISTORY_SIZE", 30))
CANDIDATE_REPLAY_COUNT = int(os.getenv("CANDIDATE_REPLAY_COUNT", 10))

# Liveness (seconds)
KEEP_ALIVE_INTERVAL = float(os.getenv("KEEP_ALIVE_INTERVAL", 5))
DEAD_CONNECTION_TIMEOUT = float(os.getenv("DEAD_CONNECTION_TIMEOUT", 60))
DEAD_CONNECTION_CHECK_INTERVAL = float(os.getenv("DEAD_CONNECTION_CHECK_INTERVAL", 15))
ROOM_CLEANUP_INTERVAL = float(os.getenv("ROOM_CLEANUP_INTERVAL", 30))
EVICTION_GRACE_SECONDS = float(os.getenv("EVICTION_GRACE_SECONDS", 2))

# Per-device liveness policy: multipliers over the base ping interval and timeout.
# Mobile OSes suspend sockets in the background, so they get far more slack.
DEVICE_POLICIES = {
    "ios": {"ping_multiplier": 1.2, "timeout_multiplier": 5.0},
    "android": {"ping_multiplier": 1.2, "timeout_multiplier": 5.0},
    "web": {"ping_multiplier": 1.0, "timeout_multiplier": 1.0},
    "unknown": {"ping_multiplier": 1.0, "timeout_multiplier": 1.0},
}

# Target video bitrate (kbps) per resolution tier
QUALITY_PRESETS = {
    "2160p": {"bitrate": 20000, "width": 3840, "height": 2160},
    "1440p": {"bitrate": 12000, "width": 2560, "height": 1440},
    "1080p": {"bitrate": 8000, "width": 1920, "height": 1080},
    "720p": {"bitrate": 5000, "width": 1280, "height": 720},
}
DEFAULT_QUALITY_TIER = "1080p"

# H264 parameters iOS decoders accept, in order of preference
IOS_H264_PROFILES = ["42e01f", "42001f", "640c1f"]
IOS_H264_PACKETIZATION_MODE = 1
IOS_PIXEL_FORMATS = ["420f", "420v", "BGRA"]

# Destinations whose offers get H264 reordered and its fmtp made decoder-safe
H264_COMPAT_DEVICE_TYPES = ("ios",)

# Bitrate recommendations from client-reported connection stats (kbps, packet loss in %)
ADAPTIVE_INITIAL_BITRATE = int(os.getenv("ADAPTIVE_INITIAL_BITRATE", 12000))
ADAPTIVE_MIN_BITRATE = int(os.getenv("ADAPTIVE_MIN_BITRATE", 2000))
ADAPTIVE_MAX_BITRATE = int(os.getenv("ADAPTIVE_MAX_BITRATE", 15000))
HIGH_PACKET_LOSS = 5
LOW_PACKET_LOSS = 1
BITRATE_DECREASE_FACTOR = 0.7
BITRATE_INCREASE_FACTOR = 1.2
