import pytest

from conftest import ANDROID_UA, IOS_UA, WEB_UA, FakeTransport
from registry import ConnectionRegistry, classify


@pytest.mark.parametrize("headers, expected", [
    ({"user-agent": IOS_UA}, "ios"),
    ({"user-agent": "Mozilla/5.0 (iPad; CPU OS 16_0 like Mac OS X)"}, "ios"),
    ({"user-agent": ANDROID_UA}, "android"),
    ({"user-agent": WEB_UA}, "web"),
    ({}, "web"),
    (None, "unknown"),
])
def test_classify(headers, expected):
    assert classify(headers) == expected


def test_accept_registers_with_unique_identity():
    registry = ConnectionRegistry()
    first = registry.accept(FakeTransport(), {"user-agent": IOS_UA}, "10.0.0.1", now=50.0)
    second = registry.accept(FakeTransport(), {"user-agent": WEB_UA, "x-forwarded-for": "1.2.3.4"}, "10.0.0.2")

    assert first.id != second.id
    assert registry.lookup(first.id) is first
    assert first.device_type == "ios"
    assert first.last_pong_received == 50.0
    assert second.forwarded_for == "1.2.3.4"
    assert len(registry) == 2


def test_unregister_drops_device_index_and_is_idempotent():
    registry = ConnectionRegistry()
    conn = registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.1")
    registry.bind_device("device-1", conn)
    assert registry.find_by_device_id("device-1") is conn

    registry.unregister(conn.id)
    registry.unregister(conn.id)

    assert registry.lookup(conn.id) is None
    assert registry.find_by_device_id("device-1") is None
    assert conn.id not in registry


def test_unregister_keeps_device_index_owned_by_newer_connection():
    registry = ConnectionRegistry()
    old = registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.1")
    new = registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.1")
    registry.bind_device("device-1", old)
    registry.bind_device("device-1", new)

    registry.unregister(old.id)

    assert registry.find_by_device_id("device-1") is new


def test_device_counts():
    registry = ConnectionRegistry()
    registry.accept(FakeTransport(), {"user-agent": IOS_UA}, "10.0.0.1")
    registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.2")
    registry.accept(FakeTransport(), {"user-agent": WEB_UA}, "10.0.0.3")
    assert registry.device_counts() == {"ios": 1, "android": 0, "web": 2, "unknown": 0}
