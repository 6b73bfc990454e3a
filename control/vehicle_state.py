"""
Vehicle state holder shared between the input feeds and the control loop.

Path, pose and speed arrive asynchronously and each carries its own
readiness flag. The control loop reads everything it needs through a single
lock-protected snapshot so a cycle never mixes an old position with a new
heading.
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple

from trajectory.path_localizer import CircularPath


class StateNotReadyError(RuntimeError):
    """Raised when a snapshot is requested before every input has arrived."""


def quaternion_to_yaw(w: float, x: float, y: float, z: float) -> float:
    """Yaw (rotation about z) from a unit quaternion given as (w, x, y, z)."""
    siny_cosp = 2.0 * (w * z + x * y)
    cosy_cosp = 1.0 - 2.0 * (y * y + z * z)
    return math.atan2(siny_cosp, cosy_cosp)


@dataclass(frozen=True)
class VehicleSnapshot:
    """Consistent view of the vehicle state for one control cycle."""
    x: float
    y: float
    psi: float  # radians
    speed: float  # m/s
    path: CircularPath


class VehicleStateHolder:
    """
    Holds the latest path, pose and speed.

    Readiness is monotonic: once a field has been set its flag stays true.
    Source disconnection is not detected, so a stalled feed keeps serving its
    last value.
    """

    FLAGS = ("path", "position", "heading", "speed")

    def __init__(self):
        self._lock = threading.Lock()
        self._path: Optional[CircularPath] = None
        self._x = 0.0
        self._y = 0.0
        self._psi = 0.0
        self._speed = 0.0
        self._ready = {flag: False for flag in self.FLAGS}

    def set_path(self, points: Iterable[Sequence[float]]) -> None:
        """
        Replace the reference path.

        Args:
            points: Ordered (x, y) points; the path is treated as circular.

        Raises:
            ValueError: If the path is empty or not made of 2D points.
        """
        path = CircularPath(points)
        with self._lock:
            self._path = path
            self._ready["path"] = True

    def set_pose(self, x: float, y: float,
                 orientation: Tuple[float, float, float, float]) -> None:
        """
        Update position and heading.

        Args:
            x: Global x position (meters)
            y: Global y position (meters)
            orientation: Quaternion as (w, x, y, z)
        """
        w, qx, qy, qz = orientation
        psi = quaternion_to_yaw(w, qx, qy, qz)
        with self._lock:
            self._x = float(x)
            self._y = float(y)
            self._psi = psi
            self._ready["position"] = True
            self._ready["heading"] = True

    def set_speed(self, speed: float) -> None:
        """Update forward speed (m/s)."""
        with self._lock:
            self._speed = float(speed)
            self._ready["speed"] = True

    @property
    def ready(self) -> bool:
        with self._lock:
            return all(self._ready.values())

    def missing_inputs(self) -> List[str]:
        """Names of the readiness flags that are still false."""
        with self._lock:
            return [flag for flag in self.FLAGS if not self._ready[flag]]

    def snapshot(self) -> VehicleSnapshot:
        """
        Read every field under one lock acquisition.

        Raises:
            StateNotReadyError: If any input has not arrived yet.
        """
        with self._lock:
            missing = [flag for flag in self.FLAGS if not self._ready[flag]]
            if missing:
                raise StateNotReadyError(f"missing inputs: {', '.join(missing)}")
            return VehicleSnapshot(
                x=self._x,
                y=self._y,
                psi=self._psi,
                speed=self._speed,
                path=self._path,
            )

