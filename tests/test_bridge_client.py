"""
Tests for the bridge client payloads and the state feed.
"""

import time

import pytest

from bridge.client import BridgeClient
from bridge.state_feed import BridgeStateFeed
from control.vehicle_state import VehicleStateHolder


def test_build_control_command_includes_throttle():
    client = BridgeClient("http://localhost:8000")
    command = client._build_control_command(steering=0.42, throttle=0.3)
    assert command["steering"] == 0.42
    assert command["throttle"] == 0.3
    assert "timestamp" in command


def test_build_control_command_omits_throttle_when_none():
    client = BridgeClient("http://localhost:8000")
    command = client._build_control_command(steering=0.5)
    assert "throttle" not in command


def test_base_url_trailing_slash_stripped():
    client = BridgeClient("http://localhost:8000/")
    assert client.base_url == "http://localhost:8000"


def _client_with_responses(monkeypatch, responses):
    client = BridgeClient("http://localhost:8000")
    monkeypatch.setattr(client, "_get_json", lambda endpoint: responses.get(endpoint))
    return client


def test_parse_pose(monkeypatch):
    client = _client_with_responses(monkeypatch, {
        "/api/pose/latest": {
            "position": {"x": 1.0, "y": -2.0, "z": 0.0},
            "orientation": {"w": 1.0, "x": 0.0, "y": 0.0, "z": 0.0},
        },
    })
    assert client.get_latest_pose() == (1.0, -2.0, (1.0, 0.0, 0.0, 0.0))


def test_parse_malformed_pose_returns_none(monkeypatch):
    client = _client_with_responses(monkeypatch, {
        "/api/pose/latest": {"position": {"x": 1.0}},
    })
    assert client.get_latest_pose() is None


def test_parse_path_and_speed(monkeypatch):
    client = _client_with_responses(monkeypatch, {
        "/api/path/latest": {"points": [[0, 0], [1, 0.5]]},
        "/api/speed/latest": {"speed": "1.25"},
    })
    assert client.get_latest_path() == [(0.0, 0.0), (1.0, 0.5)]
    assert client.get_latest_speed() == pytest.approx(1.25)


def test_unavailable_feeds_return_none(monkeypatch):
    client = _client_with_responses(monkeypatch, {})
    assert client.get_latest_path() is None
    assert client.get_latest_pose() is None
    assert client.get_latest_speed() is None


class FakeClient:
    def __init__(self, path=None, pose=None, speed=None):
        self.path = path
        self.pose = pose
        self.speed = speed

    def get_latest_path(self):
        return self.path

    def get_latest_pose(self):
        return self.pose

    def get_latest_speed(self):
        return self.speed


def test_state_feed_applies_updates():
    holder = VehicleStateHolder()
    feed = BridgeStateFeed(
        FakeClient(path=[(0.0, 0.0), (1.0, 0.0)], pose=(0.5, 0.0, (1.0, 0.0, 0.0, 0.0)), speed=0.7),
        holder,
    )
    feed.poll_once()
    assert holder.ready
    assert holder.snapshot().speed == 0.7


def test_state_feed_partial_updates_leave_holder_waiting():
    holder = VehicleStateHolder()
    BridgeStateFeed(FakeClient(speed=1.0), holder).poll_once()
    assert holder.missing_inputs() == ["path", "position", "heading"]


def test_state_feed_ignores_invalid_path(caplog):
    holder = VehicleStateHolder()
    BridgeStateFeed(FakeClient(path=[(0.0, 0.0, 1.0)]), holder).poll_once()
    assert "path" in holder.missing_inputs()
    assert "[FEED_BAD_PATH]" in caplog.text


def test_state_feed_thread_start_stop():
    holder = VehicleStateHolder()
    feed = BridgeStateFeed(FakeClient(speed=1.0), holder, poll_interval=0.001)
    feed.start()
    deadline = time.monotonic() + 2.0
    while "speed" in holder.missing_inputs() and time.monotonic() < deadline:
        time.sleep(0.005)
    feed.stop()
    assert feed._thread is None
    assert "speed" not in holder.missing_inputs()
