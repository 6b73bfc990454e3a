"""
Background feed that copies bridge updates into the vehicle state holder.
"""

import logging
import threading
from typing import Optional

from bridge.client import BridgeClient
from control.vehicle_state import VehicleStateHolder

logger = logging.getLogger(__name__)


class BridgeStateFeed:
    """Polls the bridge on its own thread and writes into a VehicleStateHolder."""

    def __init__(self, client: BridgeClient, holder: VehicleStateHolder,
                 poll_interval: float = 0.01):
        self.client = client
        self.holder = holder
        self.poll_interval = poll_interval
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def poll_once(self) -> None:
        """Fetch each feed once and apply whatever arrived."""
        path = self.client.get_latest_path()
        if path:
            try:
                self.holder.set_path(path)
            except ValueError as e:
                logger.warning(f"[FEED_BAD_PATH] ignoring path update: {e}")

        pose = self.client.get_latest_pose()
        if pose is not None:
            x, y, quaternion = pose
            self.holder.set_pose(x, y, quaternion)

        speed = self.client.get_latest_speed()
        if speed is not None:
            self.holder.set_speed(speed)

    def _run(self):
        while not self._stop_event.is_set():
            self.poll_once()
            self._stop_event.wait(self.poll_interval)

    def start(self):
        if self._thread is not None:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="BridgeStateFeed", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            self._thread = None
