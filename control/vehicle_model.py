"""
Vehicle kinematics model (bicycle model).
Used for latency compensation and for the MPC prediction rollout.
"""

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np


@dataclass(frozen=True)
class PredictedState:
    """Vehicle state projected forward by the actuation latency."""
    x: float
    y: float
    psi: float  # radians
    v: float  # m/s


class BicycleModel:
    """
    Kinematic bicycle model.

    Sign convention follows the steering actuator: a positive steering angle
    decreases heading (turns clockwise).
    """

    def __init__(self, lf: float = 0.325, max_steering_angle: float = 0.43):
        """
        Initialize bicycle model.

        Args:
            lf: Distance from the center of gravity to the front axle (meters)
            max_steering_angle: Maximum steering angle (radians)
        """
        if lf <= 0.0:
            raise ValueError(f"lf must be positive, got {lf}")
        self.lf = lf
        self.max_steering_angle = max_steering_angle

    def step(self, x: float, y: float, psi: float, v: float,
             steering_angle: float, acceleration: float,
             dt: float) -> Tuple[float, float, float, float]:
        """
        Advance the state by one explicit Euler step.

        Speed is updated first and the new speed and heading drive the
        position update.

        Args:
            x: Current x position
            y: Current y position
            psi: Current heading (radians)
            v: Current speed (m/s)
            steering_angle: Steering angle (radians)
            acceleration: Longitudinal acceleration (m/s^2)
            dt: Time step (seconds)

        Returns:
            New (x, y, psi, v)
        """
        new_v = v + dt * acceleration
        new_psi = psi - dt * (new_v * steering_angle / self.lf)
        new_x = x + dt * (new_v * math.cos(new_psi))
        new_y = y + dt * (new_v * math.sin(new_psi))
        return float(new_x), float(new_y), float(new_psi), float(new_v)

    def predict_latency(self, x: float, y: float, psi: float, v: float,
                        steering_angle: float, acceleration: float,
                        latency: float) -> PredictedState:
        """Project the measured state over the actuation latency."""
        new_x, new_y, new_psi, new_v = self.step(
            x, y, psi, v, steering_angle, acceleration, latency
        )
        return PredictedState(x=new_x, y=new_y, psi=new_psi, v=new_v)

    def clip_steering(self, steering_angle: float) -> float:
        return float(np.clip(steering_angle, -self.max_steering_angle, self.max_steering_angle))


def predict_latency_state(x: float, y: float, psi: float, v: float,
                          steering: float, throttle: float,
                          latency: float, lf: float) -> PredictedState:
    """Functional form of BicycleModel.predict_latency."""
    return BicycleModel(lf=lf).predict_latency(x, y, psi, v, steering, throttle, latency)
