import pytest

from backend import REJECT_ALREADY_MEMBER, REJECT_CAPACITY, RoomStore
from conftest import WEB_UA, FakeTransport
from registry import ConnectionRegistry


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def make_conn(registry):
    def _make_conn():
        return registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.1")
    return _make_conn


def test_ensure_room_is_idempotent():
    store = RoomStore()
    room = store.ensure_room("studio")
    assert store.ensure_room("studio") is room
    assert store.room_names() == ["studio"]


def test_capacity_is_never_exceeded(make_conn):
    store = RoomStore(max_members=2)
    store.ensure_room("studio")
    assert not store.join("studio", make_conn()).rejected
    assert not store.join("studio", make_conn()).rejected

    result = store.join("studio", make_conn())

    assert result.rejected
    assert result.reason == REJECT_CAPACITY
    assert len(store.members("studio")) == 2


def test_duplicate_join_counts_once(make_conn):
    store = RoomStore()
    store.ensure_room("studio")
    conn = make_conn()

    store.join("studio", conn)
    result = store.join("studio", conn)

    assert result.rejected
    assert result.reason == REJECT_ALREADY_MEMBER
    assert len(store.members("studio")) == 1
    assert store.stats("studio").total_connections == 1


def test_leave_keeps_empty_room(make_conn):
    store = RoomStore()
    store.ensure_room("studio")
    conn = make_conn()
    store.join("studio", conn)

    assert store.leave("studio", conn)
    assert not store.leave("studio", conn)
    assert "studio" in store
    assert store.members("studio") == []
    assert store.stats("studio").connections == 0


def test_join_statistics(make_conn):
    store = RoomStore()
    store.ensure_room("studio")
    first, second = make_conn(), make_conn()
    store.join("studio", first)
    store.join("studio", second)
    store.leave("studio", first)

    stats = store.stats("studio")
    assert stats.connections == 1
    assert stats.total_connections == 2
    assert stats.peak_connections == 2
    assert stats.active_clients == 1


def test_offer_history_keeps_most_recent():
    store = RoomStore(offer_history=5)
    store.ensure_room("studio")
    for n in range(8):
        store.record_offer("studio", {"type": "offer", "n": n})

    assert [offer["n"] for offer in store.offers("studio")] == [3, 4, 5, 6, 7]
    assert store.latest_offer("studio")["n"] == 7


def test_answer_history_is_bounded():
    store = RoomStore(answer_history=2)
    store.ensure_room("studio")
    for n in range(3):
        store.record_answer("studio", {"type": "answer", "n": n})
    assert [answer["n"] for answer in store.answers("studio")] == [1, 2]


def test_candidate_dedup():
    store = RoomStore()
    store.ensure_room("studio")
    candidate = {"type": "ice-candidate", "candidate": "candidate:1 1 udp 2122260223 10.0.0.1 54400 typ host",
                 "sdpMid": "0", "sdpMLineIndex": 0}

    assert store.record_candidate("studio", dict(candidate))
    assert not store.record_candidate("studio", dict(candidate, senderId="other"))
    assert store.record_candidate("studio", dict(candidate, sdpMLineIndex=1))
    assert len(store.recent_candidates("studio", 10)) == 2


def test_recent_candidates_returns_tail():
    store = RoomStore(candidate_history=30)
    store.ensure_room("studio")
    for n in range(15):
        store.record_candidate("studio", {"candidate": f"c{n}", "sdpMid": "0", "sdpMLineIndex": 0})
    assert [c["candidate"] for c in store.recent_candidates("studio", 3)] == ["c12", "c13", "c14"]
    assert store.recent_candidates("studio", 0) == []


def test_touch_folds_message_size_into_bandwidth():
    store = RoomStore()
    store.ensure_room("studio")
    store.touch("studio", 1000)
    store.touch("studio", 500)
    store.touch("studio")

    stats = store.stats("studio")
    assert stats.messages_exchanged == 3
    assert stats.bandwidth == pytest.approx((1000 * 0.2) * 0.8 + 500 * 0.2)


def test_stats_is_a_snapshot():
    store = RoomStore()
    store.ensure_room("studio")
    snapshot = store.stats("studio")
    store.touch("studio", 100)
    assert snapshot.messages_exchanged == 0


def test_missing_room_operations_are_noops(make_conn):
    store = RoomStore()
    conn = make_conn()
    assert store.join("ghost", conn) is None
    assert store.leave("ghost", conn) is False
    store.record_offer("ghost", {"type": "offer"})
    store.record_answer("ghost", {"type": "answer"})
    assert store.record_candidate("ghost", {"candidate": "x"}) is False
    store.touch("ghost", 10)
    store.set_capabilities("ghost", {"h264": True})
    assert store.latest_offer("ghost") is None
    assert store.recent_candidates("ghost", 10) == []
    assert store.stats("ghost") is None
    assert store.members("ghost") == []
    assert store.delete_room("ghost") is False
    assert len(store) == 0


def test_delete_room_drops_history_and_stats():
    store = RoomStore()
    store.ensure_room("studio")
    store.record_offer("studio", {"type": "offer"})
    assert store.delete_room("studio")
    assert store.latest_offer("studio") is None
    assert store.stats("studio") is None

    # a new room with the same name starts clean
    store.ensure_room("studio")
    assert store.latest_offer("studio") is None
    assert store.stats("studio").messages_exchanged == 0
