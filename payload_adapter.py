import re
from typing import List, Optional

from constants import (
    DEFAULT_QUALITY_TIER,
    H264_COMPAT_DEVICE_TYPES,
    IOS_H264_PACKETIZATION_MODE,
    IOS_H264_PROFILES,
    QUALITY_PRESETS,
)
from sdp import MediaSection, SdpLine, parse

DIMENSIONS_RE = re.compile(r"^\s*(\d+)\s*x\s*(\d+)\s*$")


def target_bitrate(resolution: Optional[str] = None) -> int:
    """Target kbps for a resolution hint: a tier name ("720p") or "WIDTHxHEIGHT"."""
    if resolution:
        for tier, preset in QUALITY_PRESETS.items():
            if tier in resolution:
                return preset["bitrate"]

        match = DIMENSIONS_RE.match(resolution)
        if match:
            # portrait video reports 1080x1920, so tier on the short side
            short_side = min(int(match.group(1)), int(match.group(2)))
            tiers = sorted(QUALITY_PRESETS.values(), key=lambda preset: preset["height"], reverse=True)
            for preset in tiers:
                if short_side >= preset["height"]:
                    return preset["bitrate"]
            return tiers[-1]["bitrate"]

    return QUALITY_PRESETS[DEFAULT_QUALITY_TIER]["bitrate"]


def _ensure_bandwidth(section: MediaSection, bitrate: int):
    existing = section.find("b", "AS:")
    if not existing:
        section.lines.insert(section.header_end(), SdpLine(f"b=AS:{bitrate}"))
        return
    for index in existing:
        try:
            current = int(section.lines[index].value[3:])
        except ValueError:
            continue
        if current < bitrate:
            section.lines[index] = SdpLine(f"b=AS:{bitrate}")


def _param_key(token: str) -> str:
    return token.split("=", 1)[0].strip().lower()


def _param_value(token: str) -> str:
    return token.split("=", 1)[1].strip() if "=" in token else ""


def _fmtp_tokens(section: MediaSection, payload_type: str) -> List[str]:
    index = section.fmtp(payload_type)
    if index is None:
        return []
    return section.lines[index].text.split(" ", 1)[1].split(";")


def _h264_score(section: MediaSection, payload_type: str):
    tokens = {_param_key(token): _param_value(token) for token in _fmtp_tokens(section, payload_type)}
    return (
        tokens.get("packetization-mode") == str(IOS_H264_PACKETIZATION_MODE),
        tokens.get("profile-level-id", "").lower() in IOS_H264_PROFILES,
    )


def _compatible_params(params: str) -> str:
    tokens = params.split(";")
    changed = False

    profile_index = next((i for i, t in enumerate(tokens) if _param_key(t) == "profile-level-id"), None)
    if profile_index is None:
        tokens.append(f"profile-level-id={IOS_H264_PROFILES[0]}")
        changed = True
    elif _param_value(tokens[profile_index]).lower() not in IOS_H264_PROFILES:
        tokens[profile_index] = f"profile-level-id={IOS_H264_PROFILES[0]}"
        changed = True

    mode = str(IOS_H264_PACKETIZATION_MODE)
    mode_index = next((i for i, t in enumerate(tokens) if _param_key(t) == "packetization-mode"), None)
    if mode_index is None:
        tokens.append(f"packetization-mode={mode}")
        changed = True
    elif _param_value(tokens[mode_index]) != mode:
        tokens[mode_index] = f"packetization-mode={mode}"
        changed = True

    if not changed:
        return params
    return ";".join(token for token in tokens if token.strip())


def _prefer_h264(section: MediaSection):
    candidates = section.payload_types_for("H264")
    if not candidates:
        return
    # max() keeps the first of equals, so m= line order breaks ties
    chosen = max(candidates, key=lambda pt: _h264_score(section, pt))

    formats = section.formats
    if chosen in formats and formats[0] != chosen:
        section.set_formats([chosen] + [pt for pt in formats if pt != chosen])

    index = section.fmtp(chosen)
    if index is None:
        params = _compatible_params("")
        section.lines.insert(section.rtpmap(chosen) + 1, SdpLine(f"a=fmtp:{chosen} {params}"))
        return
    head, params = section.lines[index].text.split(" ", 1)
    section.lines[index] = SdpLine(f"{head} {_compatible_params(params)}")


def adapt(sdp: Optional[str], device_type: str, resolution: Optional[str] = None) -> Optional[str]:
    """Rewrite an offer for one destination device type.

    Raises the video bandwidth hint to the resolution tier's bitrate (never
    lowers it) and, for H264-only decoders, puts H264 first with a profile
    and packetization mode they accept. Payload types are never renumbered
    or removed. Pure: same input gives the same output.
    """
    if not sdp or "m=video" not in sdp:
        return sdp

    description = parse(sdp)
    bitrate = target_bitrate(resolution)
    for section in description.sections("video"):
        _ensure_bandwidth(section, bitrate)
        if device_type in H264_COMPAT_DEVICE_TYPES:
            _prefer_h264(section)
    return description.serialize()
