"""
Python client helper for the vehicle bridge.
Reads path, pose and speed updates and sends actuator commands.
"""

import requests
from typing import Optional, Dict, List, Tuple
import time


class BridgeClient:
    """Client for communicating with the vehicle bridge server."""

    def __init__(self, base_url: str = "http://localhost:8000", timeout: float = 0.5):
        """
        Initialize bridge client.

        Args:
            base_url: Base URL of the bridge server
            timeout: Per-request timeout (seconds)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = requests.Session()

    def _get_json(self, endpoint: str) -> Optional[Dict]:
        try:
            response = self.session.get(f"{self.base_url}{endpoint}", timeout=self.timeout)
            response.raise_for_status()
            data = response.json()
            return data if data else None
        except requests.exceptions.Timeout:
            # Timeout is expected when no update is available yet
            return None
        except requests.exceptions.HTTPError:
            # 404 until the first update arrives
            return None
        except (requests.RequestException, ValueError):
            return None

    def get_latest_path(self) -> Optional[List[Tuple[float, float]]]:
        """
        Get the latest reference path.

        Returns:
            List of (x, y) points or None if not available
        """
        data = self._get_json("/api/path/latest")
        if data is None or "points" not in data:
            return None
        try:
            return [(float(p[0]), float(p[1])) for p in data["points"]]
        except (TypeError, ValueError, IndexError):
            return None

    def get_latest_pose(self) -> Optional[Tuple[float, float, Tuple[float, float, float, float]]]:
        """
        Get the latest pose.

        Returns:
            (x, y, (qw, qx, qy, qz)) or None if not available
        """
        data = self._get_json("/api/pose/latest")
        if data is None:
            return None
        try:
            position = data["position"]
            orientation = data["orientation"]
            quaternion = (
                float(orientation["w"]),
                float(orientation["x"]),
                float(orientation["y"]),
                float(orientation["z"]),
            )
            return float(position["x"]), float(position["y"]), quaternion
        except (KeyError, TypeError, ValueError):
            return None

    def get_latest_speed(self) -> Optional[float]:
        """
        Get the latest forward speed.

        Returns:
            Speed in m/s or None if not available
        """
        data = self._get_json("/api/speed/latest")
        if data is None:
            return None
        try:
            return float(data["speed"])
        except (KeyError, TypeError, ValueError):
            return None

    def _build_control_command(self, steering: float, throttle: Optional[float] = None) -> dict:
        command = {
            "steering": float(steering),
            "timestamp": time.time(),
        }
        if throttle is not None:
            command["throttle"] = float(throttle)
        return command

    def set_control_command(self, steering: float, throttle: Optional[float] = None) -> bool:
        """
        Send an actuator command.

        Args:
            steering: Steering command in actuator units
            throttle: Acceleration command (m/s^2); omitted when None

        Returns:
            True if successful, False otherwise
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/vehicle/control",
                json=self._build_control_command(steering, throttle),
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False

    def set_debug_markers(self, markers: Dict[str, list]) -> bool:
        """
        Send debug geometry (global-frame polylines) for visualization.

        Args:
            markers: Mapping of marker name to list of [x, y] points

        Returns:
            True if successful, False otherwise
        """
        try:
            response = self.session.post(
                f"{self.base_url}/api/debug/markers",
                json={"markers": markers, "timestamp": time.time()},
                timeout=self.timeout,
            )
            response.raise_for_status()
            return True
        except requests.RequestException:
            # Visualization is optional
            return False

    def health_check(self) -> bool:
        """
        Check if bridge server is healthy.

        Returns:
            True if healthy, False otherwise
        """
        try:
            response = self.session.get(f"{self.base_url}/api/health", timeout=1.0)
            response.raise_for_status()
            return True
        except requests.RequestException:
            return False

    def close(self):
        self.session.close()
