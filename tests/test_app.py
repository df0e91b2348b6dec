import pytest
from fastapi.testclient import TestClient

from app import create_app
from backend import RoomStore
from conftest import ANDROID_UA, IOS_UA, WEB_OFFER_SDP
from liveness import LivenessMonitor
from relay import SignalingRelay

# TestClient reports every socket from the same host, so peers need distinct agents
CHROME_UA = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0 Safari/537.36"
SAFARI_UA = "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_0) AppleWebKit/605.1.15 (KHTML, like Gecko) Version/17.0 Safari/605.1.15"


@pytest.fixture
def client():
    relay = SignalingRelay(store=RoomStore(max_members=2))
    monitor = LivenessMonitor(relay, heartbeat_interval=3600, dead_check_interval=3600, cleanup_interval=3600)
    with TestClient(create_app(relay, monitor)) as client:
        yield client


def open_socket(client, user_agent, path="/ws"):
    return client.websocket_connect(path, headers={"user-agent": user_agent})


def test_viewer_receives_offer_after_broadcaster_joins(client):
    with open_socket(client, CHROME_UA) as viewer:
        viewer.send_json({"type": "join", "roomId": "studio"})
        assert viewer.receive_json()["type"] == "room-info"

        with open_socket(client, SAFARI_UA, path="/") as broadcaster:
            broadcaster.send_json({"type": "join", "roomId": "studio"})
            info = broadcaster.receive_json()
            assert info == {"type": "room-info", "clients": 2, "room": "studio", "deviceTypes": ["web"]}

            broadcaster.send_json({"type": "offer", "roomId": "studio", "sdp": WEB_OFFER_SDP})

            joined = viewer.receive_json()
            assert joined["type"] == "user-joined"
            offer = viewer.receive_json()
            assert offer["type"] == "offer"
            assert offer["senderId"] == joined["userId"]
            assert "b=AS:8000" in offer["sdp"]


def test_health_counts_open_connections(client):
    with open_socket(client, CHROME_UA) as ws:
        ws.send_json({"type": "join", "roomId": "studio"})
        ws.receive_json()

        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["connections"] == 1
        assert body["rooms"] == 1


def test_room_details_and_listing(client):
    with open_socket(client, CHROME_UA) as first, open_socket(client, IOS_UA) as second:
        first.send_json({"type": "join", "roomId": "studio"})
        first.receive_json()
        second.send_json({"type": "join", "roomId": "studio"})
        second.receive_json()

        details = client.get("/rooms/studio").json()
        assert details["device_types"] == {"web": 1, "ios": 1}
        assert details["clients"] == 2
        assert details["peak_connections"] == 2

        listing = client.get("/rooms").json()
        assert listing["count"] == 1
        assert listing["rooms"][0]["room_id"] == "studio"

        info = client.get("/info").json()
        assert info["clients"] == 2
        assert info["device_types"]["ios"] == 1
        assert "studio" in info["rooms_info"]


def test_unknown_room_is_404(client):
    response = client.get("/rooms/nope")
    assert response.status_code == 404
    assert response.json()["detail"] == "Room not found"


def test_third_member_is_turned_away(client):
    with open_socket(client, CHROME_UA) as first, open_socket(client, SAFARI_UA) as second, \
            open_socket(client, ANDROID_UA) as third:
        for ws in (first, second):
            ws.send_json({"type": "join", "roomId": "studio"})
            ws.receive_json()

        third.send_json({"type": "join", "roomId": "studio"})
        error = third.receive_json()
        assert error["type"] == "error"
        assert "maximum 2" in error["message"]


def test_garbage_does_not_close_the_socket(client):
    with open_socket(client, CHROME_UA) as ws:
        ws.send_text("this is not json")
        assert ws.receive_json() == {"type": "error", "message": "Invalid message format"}

        ws.send_json({"type": "ping"})
        assert ws.receive_json()["type"] == "pong"
