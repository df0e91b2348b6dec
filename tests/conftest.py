import itertools
import json

import pytest

from backend import RoomStore
from relay import SignalingRelay

WEB_UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
IOS_UA = "Mozilla/5.0 (iPhone; CPU iPhone OS 17_0 like Mac OS X) AppleWebKit/605.1.15 Mobile/15E148"
ANDROID_UA = "Mozilla/5.0 (Linux; Android 14; Pixel 8) AppleWebKit/537.36 Chrome/120.0 Mobile Safari/537.36"

CRLF = "\r\n"

# Browser offer: VP8 first, H264 without profile-level-id, no bandwidth line
WEB_OFFER_SDP = CRLF.join([
    "v=0",
    "o=- 4611731400430051336 2 IN IP4 127.0.0.1",
    "s=-",
    "t=0 0",
    "a=group:BUNDLE 0 1",
    "m=audio 9 UDP/TLS/RTP/SAVPF 111",
    "c=IN IP4 0.0.0.0",
    "a=mid:0",
    "a=rtpmap:111 opus/48000/2",
    "m=video 9 UDP/TLS/RTP/SAVPF 96 97",
    "c=IN IP4 0.0.0.0",
    "a=mid:1",
    "a=rtpmap:96 VP8/90000",
    "a=rtpmap:97 H264/90000",
    "a=fmtp:97 level-asymmetry-allowed=1",
]) + CRLF


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.closed = False
        self.close_calls = 0
        self.fail = False

    @property
    def is_open(self):
        return not self.closed

    async def send_json(self, payload):
        if self.fail:
            raise ConnectionResetError("peer went away")
        self.sent.append(payload)

    async def close(self, code=1000, reason=None):
        self.close_calls += 1
        self.closed = True

    def of_type(self, message_type):
        return [message for message in self.sent if message["type"] == message_type]

    def types(self):
        return [message["type"] for message in self.sent]


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def relay(clock):
    return SignalingRelay(store=RoomStore(max_members=3), clock=clock)


@pytest.fixture
def connect(relay):
    hosts = itertools.count(1)

    def _connect(user_agent=WEB_UA, host=None):
        address = host or f"10.0.0.{next(hosts)}"
        return relay.connect(FakeTransport(), headers={"user-agent": user_agent}, client_host=address)

    return _connect


async def send(relay, conn, **message):
    await relay.handle_message(conn, json.dumps(message))
