"""
Tests for the shared vehicle state holder.
"""

import math
import threading
import time

import pytest

from control.vehicle_state import StateNotReadyError, VehicleStateHolder, quaternion_to_yaw


def _yaw_quaternion(yaw: float):
    return (math.cos(yaw / 2.0), 0.0, 0.0, math.sin(yaw / 2.0))


def test_quaternion_to_yaw_identity():
    assert quaternion_to_yaw(1.0, 0.0, 0.0, 0.0) == pytest.approx(0.0)


@pytest.mark.parametrize("yaw", [0.3, math.pi / 2, -2.5, 3.0])
def test_quaternion_to_yaw_recovers_rotation_about_z(yaw):
    assert quaternion_to_yaw(*_yaw_quaternion(yaw)) == pytest.approx(yaw)


def test_holder_reports_missing_inputs_in_order():
    holder = VehicleStateHolder()
    assert not holder.ready
    assert holder.missing_inputs() == ["path", "position", "heading", "speed"]

    holder.set_speed(1.0)
    assert holder.missing_inputs() == ["path", "position", "heading"]

    holder.set_pose(0.0, 0.0, (1.0, 0.0, 0.0, 0.0))
    assert holder.missing_inputs() == ["path"]
    assert not holder.ready


def test_snapshot_before_ready_raises():
    holder = VehicleStateHolder()
    holder.set_pose(1.0, 2.0, (1.0, 0.0, 0.0, 0.0))
    with pytest.raises(StateNotReadyError, match="path"):
        holder.snapshot()


def test_snapshot_returns_latest_values():
    holder = VehicleStateHolder()
    holder.set_path([(0.0, 0.0), (1.0, 0.0), (2.0, 0.0)])
    holder.set_pose(1.5, -0.5, _yaw_quaternion(0.25))
    holder.set_speed(0.8)
    holder.set_speed(1.2)

    snapshot = holder.snapshot()
    assert holder.ready
    assert snapshot.x == 1.5
    assert snapshot.y == -0.5
    assert snapshot.psi == pytest.approx(0.25)
    assert snapshot.speed == 1.2
    assert len(snapshot.path) == 3


def test_path_replacement_keeps_old_snapshot_intact():
    holder = VehicleStateHolder()
    holder.set_path([(0.0, 0.0), (1.0, 0.0)])
    holder.set_pose(0.0, 0.0, (1.0, 0.0, 0.0, 0.0))
    holder.set_speed(0.0)
    first = holder.snapshot()

    holder.set_path([(5.0, 5.0), (6.0, 5.0), (7.0, 5.0)])
    second = holder.snapshot()

    assert len(first.path) == 2
    assert len(second.path) == 3
    assert first.path.points[0, 0] == 0.0


def test_invalid_path_is_rejected_and_readiness_unchanged():
    holder = VehicleStateHolder()
    with pytest.raises(ValueError):
        holder.set_path([])
    with pytest.raises(ValueError):
        holder.set_path([(0.0, 1.0, 2.0)])
    assert "path" in holder.missing_inputs()


def test_snapshot_is_consistent_under_concurrent_pose_updates():
    holder = VehicleStateHolder()
    holder.set_path([(0.0, 0.0), (1.0, 0.0)])
    holder.set_speed(1.0)
    holder.set_pose(0.0, 0.0, _yaw_quaternion(0.0))

    stop = threading.Event()

    def writer():
        k = 0
        while not stop.is_set():
            k = (k + 1) % 2000
            holder.set_pose(float(k), float(k), _yaw_quaternion(k * 1e-3))

    thread = threading.Thread(target=writer, daemon=True)
    thread.start()
    try:
        snapshots = []
        deadline = time.monotonic() + 0.1
        while time.monotonic() < deadline:
            snapshots.append(holder.snapshot())
    finally:
        stop.set()
        thread.join(timeout=2.0)

    torn = [
        (s.x, s.y, s.psi) for s in snapshots
        if s.x != s.y or abs(s.psi - s.x * 1e-3) > 1e-9
    ]
    assert torn == []
    assert len({s.x for s in snapshots}) > 1
