from conftest import WEB_OFFER_SDP
from sdp import analyze, parse


def test_parse_serialize_preserves_text():
    assert parse(WEB_OFFER_SDP).serialize() == WEB_OFFER_SDP


def test_parse_preserves_lf_only_and_odd_lines():
    text = "v=0\nsome junk line\nm=video 9 RTP/AVP 96\na=rtpmap:96 VP8/90000\n"
    description = parse(text)
    assert description.line_ending == "\n"
    assert description.serialize() == text


def test_parse_splits_media_sections():
    description = parse(WEB_OFFER_SDP)
    assert [section.media for section in description.media] == ["audio", "video"]
    video = description.sections("video")[0]
    assert video.formats == ["96", "97"]
    assert video.payload_types_for("H264") == ["97"]
    assert video.header_end() == 2


def test_analyze_extracts_quality_hints():
    sdp = "\r\n".join([
        "v=0",
        "m=video 9 UDP/TLS/RTP/SAVPF 102",
        "c=IN IP4 0.0.0.0",
        "b=AS:3000",
        "a=rtpmap:102 H264/90000",
        "a=fmtp:102 packetization-mode=1;profile-level-id=42e01f",
        "a=framerate:60",
        "a=imageattr:102 send [x=1920,y=1080] recv [x=1280,y=720]",
        "",
    ])
    analysis = analyze(sdp)
    assert analysis.has_video
    assert not analysis.has_audio
    assert analysis.codec == "H264"
    assert analysis.resolution == "1920x1080"
    assert analysis.fps == "60fps"
    assert analysis.bitrate == 3000
    assert analysis.bitrate_kbps == "3000kbps"
    assert analysis.h264_profile == "42e01f"
    assert analysis.pixel_format == "unknown"


def test_analyze_codec_preference_and_defaults():
    vp8_only = "m=video 9 RTP/AVP 96\r\na=rtpmap:96 VP8/90000\r\n"
    analysis = analyze(vp8_only)
    assert analysis.codec == "VP8"
    assert analysis.resolution == "unknown"
    assert analysis.bitrate is None
    assert analysis.bitrate_kbps == "unknown"

    assert analyze(None).has_video is False
    assert analyze("").codec == "unknown"


def test_analyze_pixel_format_follows_preference_order():
    sdp = "m=video 9 RTP/AVP 97\r\na=rtpmap:97 H264/90000\r\na=x-pixel-formats:BGRA,420v\r\n"
    assert analyze(sdp).pixel_format == "420v"
