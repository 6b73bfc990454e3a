"""
Local path preparation in the vehicle frame.

Pipeline for one control cycle:
  1. Frame transform: global window -> vehicle frame (origin at the predicted
     position, x-axis along the predicted heading)
  2. Stability guard: truncate once x stops increasing by at least min_x_delta
  3. Least-squares polynomial fit y = c0 + c1*x + ... + cD*x^D
  4. Tracking errors from the fitted coefficients
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

logger = logging.getLogger(__name__)


class PathFitError(ValueError):
    """Raised when too few points survive for a well-posed polynomial fit."""


@dataclass(frozen=True)
class TrackingError:
    """Cross-track and heading error relative to the fitted local path."""
    cte: float  # meters, lateral offset of the path at the vehicle
    epsi: float  # radians


def to_vehicle_frame(points: np.ndarray, pos_x: float, pos_y: float, psi: float) -> np.ndarray:
    """
    Express global points in the vehicle frame.

    Args:
        points: Global points, shape (N, 2)
        pos_x: Vehicle x in the global frame
        pos_y: Vehicle y in the global frame
        psi: Vehicle heading (radians)

    Returns:
        Vehicle-frame points, shape (N, 2), same order as the input
    """
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    cos_psi = math.cos(psi)
    sin_psi = math.sin(psi)
    dx = pts[:, 0] - pos_x
    dy = pts[:, 1] - pos_y
    x_rot = dx * cos_psi + dy * sin_psi
    y_rot = -dx * sin_psi + dy * cos_psi
    return np.column_stack((x_rot, y_rot))


def to_global_frame(points: np.ndarray, pos_x: float, pos_y: float, psi: float) -> np.ndarray:
    """Inverse of to_vehicle_frame."""
    pts = np.asarray(points, dtype=float).reshape(-1, 2)
    cos_psi = math.cos(psi)
    sin_psi = math.sin(psi)
    x_rot = pts[:, 0] * cos_psi - pts[:, 1] * sin_psi
    y_rot = pts[:, 0] * sin_psi + pts[:, 1] * cos_psi
    return np.column_stack((x_rot + pos_x, y_rot + pos_y))


def apply_stability_guard(local_points: np.ndarray, degree: int, min_x_delta: float) -> np.ndarray:
    """
    Keep the leading run of points with usable longitudinal spacing.

    The first degree + 1 points are always kept. After that a point is kept
    only if its x exceeds the previously kept x by at least min_x_delta; the
    first violation ends the window (later points are dropped even if they
    would pass).

    Args:
        local_points: Vehicle-frame window, shape (N, 2)
        degree: Polynomial degree of the downstream fit
        min_x_delta: Minimum x increment between consecutive kept points

    Returns:
        Prefix of local_points
    """
    pts = np.asarray(local_points, dtype=float).reshape(-1, 2)
    accepted = len(pts)
    for i in range(degree + 1, len(pts)):
        if pts[i, 0] - pts[i - 1, 0] < min_x_delta:
            logger.warning("[GUARD_TRUNCATE] x delta too low, breaking at %d", i)
            accepted = i
            break
    return pts[:accepted]


def fit_polynomial(xvals: Sequence[float], yvals: Sequence[float], degree: int) -> np.ndarray:
    """
    Least-squares polynomial fit of y against x.

    Uses the design matrix [1, x, x^2, ..., x^D]; the same solve covers the
    exact (D + 1 points) and over-determined cases.

    Args:
        xvals: Sample x values
        yvals: Sample y values
        degree: Polynomial degree D

    Returns:
        Coefficients, lowest order first, length D + 1

    Raises:
        PathFitError: If fewer than D + 1 samples or distinct x values are given
    """
    x = np.asarray(xvals, dtype=float)
    y = np.asarray(yvals, dtype=float)
    if x.shape != y.shape:
        raise ValueError(f"x and y must have the same shape, got {x.shape} and {y.shape}")
    if degree < 0:
        raise ValueError(f"degree must be non-negative, got {degree}")
    if x.size < degree + 1:
        raise PathFitError(
            f"need at least {degree + 1} points for a degree {degree} fit, got {x.size}"
        )

    design = np.vander(x, degree + 1, increasing=True)
    coeffs, _, rank, _ = np.linalg.lstsq(design, y, rcond=None)
    if rank < degree + 1:
        raise PathFitError(
            f"degenerate window: design matrix rank {rank} < {degree + 1} (repeated x values)"
        )
    return coeffs


def evaluate_polynomial(coeffs: Sequence[float], x):
    """Evaluate the polynomial (lowest order first) at x (scalar or array)."""
    result = np.zeros_like(np.asarray(x, dtype=float))
    for c in reversed(list(coeffs)):
        result = result * x + c
    return result


def evaluate_polynomial_derivative(coeffs: Sequence[float], x, order: int = 1):
    """Derivative of the given order of the polynomial at x."""
    derivative = list(coeffs)
    for _ in range(order):
        derivative = [i * c for i, c in enumerate(derivative)][1:]
    if not derivative:
        return np.zeros_like(np.asarray(x, dtype=float))
    return evaluate_polynomial(derivative, x)


def extract_tracking_error(coeffs: Sequence[float]) -> TrackingError:
    """
    Tracking errors from a vehicle-frame fit.

    The window is already centered on the vehicle, so the cross-track error is
    the polynomial at x = 0 (the constant term) and the heading error is the
    negated slope angle there.
    """
    if len(coeffs) < 2:
        raise PathFitError("need a fit of degree >= 1 to extract heading error")
    cte = float(coeffs[0])
    epsi = -math.atan(float(coeffs[1]))
    return TrackingError(cte=cte, epsi=epsi)


def fit_local_path(local_points: np.ndarray, degree: int, min_x_delta: float):
    """
    Guard and fit a vehicle-frame window.

    Returns:
        (stabilized_points, coeffs, tracking_error)

    Raises:
        PathFitError: If fewer than degree + 1 points survive the guard
    """
    stable = apply_stability_guard(local_points, degree, min_x_delta)
    coeffs = fit_polynomial(stable[:, 0], stable[:, 1], degree)
    return stable, coeffs, extract_tracking_error(coeffs)
