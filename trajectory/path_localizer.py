"""
Path localization on a closed-loop reference path.

Finds the path point nearest to the (latency-projected) vehicle position and
extracts a fixed-size window of points around it. All indexing wraps modulo
the path length, so windows that run past the end continue from the start.
"""

from __future__ import annotations

from typing import Iterable, Sequence

import numpy as np


def find_closest(points: np.ndarray, x: float, y: float) -> int:
    """
    Index of the path point nearest to (x, y).

    Uses squared Euclidean distance and a strict less-than comparison, so on
    ties the lowest index wins.

    Args:
        points: Path points, shape (N, 2)
        x: Query x position
        y: Query y position

    Returns:
        Index of the nearest point

    Raises:
        ValueError: If the path is empty
    """
    if len(points) == 0:
        raise ValueError("cannot search an empty path")

    closest_idx = -1
    closest_dist = float("inf")
    for i, (px, py) in enumerate(points):
        diff_x = px - x
        diff_y = py - y
        dist = diff_x * diff_x + diff_y * diff_y
        if dist < closest_dist:
            closest_idx = i
            closest_dist = dist
    return closest_idx


class CircularPath:
    """Owned, immutable buffer of reference path points with circular indexing."""

    def __init__(self, points: Iterable[Sequence[float]]):
        arr = np.array(points, dtype=float)
        if arr.ndim != 2 or arr.shape[1] != 2:
            raise ValueError(f"path must be a sequence of (x, y) points, got shape {arr.shape}")
        if arr.shape[0] == 0:
            raise ValueError("path must contain at least one point")
        if not np.all(np.isfinite(arr)):
            raise ValueError("path contains non-finite coordinates")
        arr.setflags(write=False)
        self._points = arr

    def __len__(self) -> int:
        return self._points.shape[0]

    @property
    def points(self) -> np.ndarray:
        return self._points

    def wrap(self, index: int) -> int:
        """Map any integer index (negative included) onto [0, len)."""
        return int(index) % len(self)

    def window_indices(self, start: int, count: int, stride: int = 1) -> np.ndarray:
        """
        Indices (start + k * stride) mod N for k = 0 .. count - 1.

        Args:
            start: First index, may be negative or past the end
            count: Number of indices
            stride: Step between consecutive indices
        """
        if count < 0:
            raise ValueError(f"window size must be non-negative, got {count}")
        k = np.arange(count, dtype=int)
        return (int(start) + k * int(stride)) % len(self)

    def closest_index(self, x: float, y: float) -> int:
        return find_closest(self._points, x, y)

    def extract_window(self, closest_idx: int, back_offset: int,
                       count: int, stride: int) -> np.ndarray:
        """
        Global-frame window starting back_offset points before closest_idx.

        Starting slightly behind the vehicle gives the downstream fit support
        on both sides of x = 0.

        Returns:
            Array of shape (count, 2), ordered along the path
        """
        indices = self.window_indices(closest_idx - back_offset, count, stride)
        return self._points[indices]
