"""Line-oriented session description model.

The parser keeps every line it does not understand verbatim, so
``parse(text).serialize() == text`` for any input. Rewrites operate on the
structured model (session lines plus one ``MediaSection`` per ``m=`` line).
"""
import re
from dataclasses import dataclass, field
from typing import List, Optional

from constants import IOS_PIXEL_FORMATS


@dataclass
class SdpLine:
    text: str

    @property
    def kind(self) -> Optional[str]:
        """Single-letter field type (``m``, ``a``, ``b`` ...) or None for odd lines."""
        if len(self.text) >= 2 and self.text[1] == "=":
            return self.text[0]
        return None

    @property
    def value(self) -> str:
        return self.text[2:] if self.kind else self.text

    def attribute(self):
        """Split an ``a=name:value`` line into (name, value)."""
        if self.kind != "a":
            return None, None
        name, _, rest = self.value.partition(":")
        return name, rest


@dataclass
class MediaSection:
    lines: List[SdpLine] = field(default_factory=list)

    @property
    def media_line(self) -> SdpLine:
        return self.lines[0]

    @property
    def media(self) -> str:
        return self.media_line.value.split(" ", 1)[0]

    @property
    def formats(self) -> List[str]:
        return self.media_line.value.split(" ")[3:]

    def set_formats(self, formats: List[str]):
        head = self.media_line.value.split(" ")[:3]
        self.lines[0] = SdpLine("m=" + " ".join(head + formats))

    def find(self, kind: str, prefix: str = "") -> List[int]:
        return [
            index for index, line in enumerate(self.lines)
            if line.kind == kind and line.value.startswith(prefix)
        ]

    def rtpmap(self, payload_type: str) -> Optional[int]:
        indexes = self.find("a", f"rtpmap:{payload_type} ")
        return indexes[0] if indexes else None

    def fmtp(self, payload_type: str) -> Optional[int]:
        indexes = self.find("a", f"fmtp:{payload_type} ")
        return indexes[0] if indexes else None

    def payload_types_for(self, codec: str) -> List[str]:
        """Payload types whose rtpmap encoding name matches codec, in m= line order."""
        found = []
        for line in self.lines:
            name, rest = line.attribute()
            if name != "rtpmap":
                continue
            payload_type, _, encoding = rest.partition(" ")
            if encoding.split("/", 1)[0].upper() == codec.upper():
                found.append(payload_type)
        order = {pt: i for i, pt in enumerate(self.formats)}
        return sorted(found, key=lambda pt: order.get(pt, len(order)))

    def header_end(self) -> int:
        """Index just past the m=/i=/c= lines, where a b= line belongs."""
        index = 1
        while index < len(self.lines) and self.lines[index].kind in ("i", "c"):
            index += 1
        return index


@dataclass
class SessionDescription:
    session: List[SdpLine] = field(default_factory=list)
    media: List[MediaSection] = field(default_factory=list)
    line_ending: str = "\r\n"

    def sections(self, media: str) -> List[MediaSection]:
        return [section for section in self.media if section.media == media]

    def serialize(self) -> str:
        lines = [line.text for line in self.session]
        for section in self.media:
            lines.extend(line.text for line in section.lines)
        return self.line_ending.join(lines)


def parse(text: str) -> SessionDescription:
    line_ending = "\r\n" if "\r\n" in text else "\n"
    description = SessionDescription(line_ending=line_ending)
    current = None
    for raw in text.split(line_ending):
        line = SdpLine(raw)
        if line.kind == "m":
            current = MediaSection(lines=[line])
            description.media.append(current)
        elif current is not None:
            current.lines.append(line)
        else:
            description.session.append(line)
    return description


@dataclass
class SdpAnalysis:
    has_video: bool = False
    has_audio: bool = False
    has_h264: bool = False
    has_vp8: bool = False
    has_vp9: bool = False
    codec: str = "unknown"
    resolution: str = "unknown"
    fps: str = "unknown"
    bitrate: Optional[int] = None
    h264_profile: str = "unknown"
    pixel_format: str = "unknown"

    @property
    def bitrate_kbps(self) -> str:
        return f"{self.bitrate}kbps" if self.bitrate is not None else "unknown"


IMAGEATTR_RE = re.compile(
    r"a=imageattr:[^\r\n]*?send[^\r\n]*?\[x=([0-9]+)-?([0-9]*),\s*y=([0-9]+)-?([0-9]*)\]", re.IGNORECASE
)
FRAMERATE_RE = re.compile(r"a=framerate:([0-9]+)", re.IGNORECASE)
BANDWIDTH_RE = re.compile(r"b=AS:([0-9]+)", re.IGNORECASE)
PROFILE_RE = re.compile(r"profile-level-id=([0-9a-fA-F]+)", re.IGNORECASE)


def analyze(sdp: Optional[str]) -> SdpAnalysis:
    """Pull media presence, codec and quality hints out of a session description."""
    result = SdpAnalysis()
    if not sdp:
        return result

    result.has_video = "m=video" in sdp
    result.has_audio = "m=audio" in sdp
    result.has_h264 = "H264" in sdp
    result.has_vp8 = "VP8" in sdp
    result.has_vp9 = "VP9" in sdp
    if result.has_h264:
        result.codec = "H264"
    elif result.has_vp9:
        result.codec = "VP9"
    elif result.has_vp8:
        result.codec = "VP8"

    match = IMAGEATTR_RE.search(sdp)
    if match:
        # a range like x=640-1920 means the upper bound is what the sender can do
        width = match.group(2) or match.group(1)
        height = match.group(4) or match.group(3)
        result.resolution = f"{width}x{height}"

    match = FRAMERATE_RE.search(sdp)
    if match:
        result.fps = f"{match.group(1)}fps"

    match = BANDWIDTH_RE.search(sdp)
    if match:
        result.bitrate = int(match.group(1))

    if result.has_h264:
        match = PROFILE_RE.search(sdp)
        if match:
            result.h264_profile = match.group(1)
        for pixel_format in IOS_PIXEL_FORMATS:
            if pixel_format in sdp:
                result.pixel_format = pixel_format
                break

    return result
