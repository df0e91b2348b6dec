# Inbound envelope types
JOIN = "join"
OFFER = "offer"
ANSWER = "answer"
ICE_CANDIDATE = "ice-candidate"
BYE = "bye"
PING = "ping"
PONG = "pong"
IOS_CAPABILITIES = "ios-capabilities"
STATS = "stats"

# Outbound envelope types
USER_JOINED = "user-joined"
USER_LEFT = "user-left"
ROOM_INFO = "room-info"
ERROR = "error"
PEER_DISCONNECTED = "peer-disconnected"
IOS_CAPABILITIES_UPDATE = "ios-capabilities-update"
QUALITY_RECOMMENDATION = "quality-recommendation"

# quality-recommendation actions
DECREASE_BITRATE = "decrease-bitrate"
INCREASE_BITRATE = "increase-bitrate"

# user-left reasons
REASON_RECONNECTED = "reconnected"
REASON_TIMEOUT = "timeout"

# Device classification
DEVICE_IOS = "ios"
DEVICE_ANDROID = "android"
DEVICE_WEB = "web"
DEVICE_UNKNOWN = "unknown"
DEVICE_TYPES = (DEVICE_IOS, DEVICE_ANDROID, DEVICE_WEB, DEVICE_UNKNOWN)

# Per-connection signaling state
STATE_CONNECTED = "connected"
STATE_JOINED = "joined"
STATE_CLOSED = "closed"
