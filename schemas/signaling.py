from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, Optional


class SignalMessage(BaseModel):
    # Unknown fields ride along untouched; the relay forwards the raw envelope
    model_config = ConfigDict(extra="allow")

    type: str
    roomId: Optional[str] = None

class JoinMessage(SignalMessage):
    deviceId: Optional[str] = None
    reconnect: bool = False
    capabilities: Optional[Dict[str, Any]] = None

class SdpMessage(SignalMessage):
    sdp: Optional[str] = None

class IceCandidateMessage(SignalMessage):
    candidate: Optional[Any] = None
    sdpMid: Optional[str] = None
    sdpMLineIndex: Optional[int] = None

class CapabilitiesMessage(SignalMessage):
    capabilities: Optional[Dict[str, Any]] = None

class ConnectionStats(BaseModel):
    model_config = ConfigDict(extra="allow")

    video: Optional[Dict[str, Any]] = None
    bandwidth: Optional[float] = None  # kbps
    packetLoss: Optional[float] = None  # percent
    rtt: Optional[float] = None  # ms

class StatsMessage(SignalMessage):
    stats: Optional[ConnectionStats] = None
