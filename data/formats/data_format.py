"""
Data format definitions for MPC stack recordings.
"""

from dataclasses import dataclass
from typing import Optional
import numpy as np


@dataclass
class VehicleState:
    """Measured and latency-projected vehicle state."""
    timestamp: float
    x: float
    y: float
    psi: float  # radians
    speed: float  # m/s
    # State after latency compensation
    predicted_x: float = 0.0
    predicted_y: float = 0.0
    predicted_psi: float = 0.0
    predicted_speed: float = 0.0


@dataclass
class ControlCommand:
    """Control command data."""
    timestamp: float
    steering: float  # actuator units, after the steering remap
    throttle: float  # m/s^2
    raw_steering: Optional[float] = None  # solver steering angle (radians) before remap
    fallback_reason: Optional[str] = None  # "timeout", "no_convergence", "solver_busy", "solver_fault"


@dataclass
class TrajectoryOutput:
    """Local path fit for one cycle."""
    timestamp: float
    closest_idx: int
    accepted_points: int  # window size after the stability guard
    poly_coeffs: Optional[np.ndarray] = None  # lowest order first
    cte: Optional[float] = None
    epsi: Optional[float] = None


@dataclass
class RecordingFrame:
    """Complete record of one control cycle."""
    timestamp: float
    frame_id: int
    vehicle_state: Optional[VehicleState] = None
    control_command: Optional[ControlCommand] = None
    trajectory_output: Optional[TrajectoryOutput] = None
    cycle_duration: Optional[float] = None  # seconds
    solver_duration: Optional[float] = None  # seconds
