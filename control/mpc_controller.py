"""
MPC (Model Predictive Control) controller.

Tracks a cubic (or any degree) reference polynomial given in the vehicle
frame. The optimizer rolls the kinematic bicycle model over the horizon and
minimizes a weighted sum of tracking errors, actuator magnitudes and
actuator changes with scipy's bounded L-BFGS-B.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

import numpy as np
from scipy.optimize import minimize

from control.vehicle_model import BicycleModel
from trajectory.local_path import evaluate_polynomial, evaluate_polynomial_derivative

logger = logging.getLogger(__name__)


class SolverConvergenceError(RuntimeError):
    """The optimizer did not reach a usable solution this cycle (recoverable)."""


class SolverFault(RuntimeError):
    """The solver failed in a way the control loop cannot recover from."""


@dataclass
class MPCParams:
    """Horizon and cost weights for the MPC problem."""
    steps_ahead: int
    dt: float
    cte_coeff: float
    epsi_coeff: float
    speed_coeff: float
    acc_coeff: float
    steer_coeff: float
    consec_acc_coeff: float
    consec_steer_coeff: float
    ref_speed: float = 1.0
    lf: float = 0.325
    max_steering: float = 0.43
    max_acceleration: float = 1.0
    max_iterations: int = 60


STATE_SIZE = 6  # x, y, psi, v, cte, epsi


class MPCController:
    """
    Model Predictive Control for path tracking.

    solve() takes the vehicle-frame state (x, y, psi, v, cte, epsi) and the
    reference polynomial coefficients and returns
    [steering, acceleration, x1, y1, x2, y2, ...], where the trailing pairs
    are the predicted trajectory in the vehicle frame.
    """

    def __init__(self, params: MPCParams):
        """
        Initialize MPC controller.

        Args:
            params: Horizon, time step and cost weights
        """
        if params.steps_ahead < 1:
            raise ValueError(f"steps_ahead must be >= 1, got {params.steps_ahead}")
        if params.dt <= 0.0:
            raise ValueError(f"dt must be positive, got {params.dt}")
        self.params = params
        self.horizon = int(params.steps_ahead)
        self.dt = float(params.dt)
        self.model = BicycleModel(lf=params.lf, max_steering_angle=params.max_steering)
        self._warm_start: Optional[np.ndarray] = None

    def reset(self):
        """Drop the warm start."""
        self._warm_start = None

    def _rollout(self, state: np.ndarray, controls: np.ndarray) -> np.ndarray:
        """States x, y, psi, v after each of the horizon steps, shape (H, 4)."""
        x, y, psi, v = (float(s) for s in state[:4])
        steer = controls[:self.horizon]
        accel = controls[self.horizon:]
        states = np.empty((self.horizon, 4))
        for k in range(self.horizon):
            x, y, psi, v = self.model.step(x, y, psi, v, steer[k], accel[k], self.dt)
            states[k] = (x, y, psi, v)
        return states

    def _cost_and_gradient(self, controls: np.ndarray, state: np.ndarray,
                           coeffs: np.ndarray) -> Tuple[float, np.ndarray]:
        """
        Cost of a control sequence and its exact gradient.

        The gradient is propagated backwards through the rollout (adjoint
        method).
        """
        p = self.params
        dt = self.dt
        lf = self.model.lf
        states = self._rollout(state, controls)
        xs, ys, psis, vs = states[:, 0], states[:, 1], states[:, 2], states[:, 3]

        slope = evaluate_polynomial_derivative(coeffs, xs)
        curvature = evaluate_polynomial_derivative(coeffs, xs, order=2)
        cte = evaluate_polynomial(coeffs, xs) - ys
        epsi = psis - np.arctan(slope)
        speed_error = vs - p.ref_speed

        steer = controls[:self.horizon]
        accel = controls[self.horizon:]

        cost = p.cte_coeff * np.sum(cte ** 2)
        cost += p.epsi_coeff * np.sum(epsi ** 2)
        cost += p.speed_coeff * np.sum(speed_error ** 2)
        cost += p.steer_coeff * np.sum(steer ** 2)
        cost += p.acc_coeff * np.sum(accel ** 2)

        grad_steer = 2.0 * p.steer_coeff * steer
        grad_accel = 2.0 * p.acc_coeff * accel
        if self.horizon > 1:
            steer_diff = np.diff(steer)
            accel_diff = np.diff(accel)
            cost += p.consec_steer_coeff * np.sum(steer_diff ** 2)
            cost += p.consec_acc_coeff * np.sum(accel_diff ** 2)
            grad_steer[:-1] -= 2.0 * p.consec_steer_coeff * steer_diff
            grad_steer[1:] += 2.0 * p.consec_steer_coeff * steer_diff
            grad_accel[:-1] -= 2.0 * p.consec_acc_coeff * accel_diff
            grad_accel[1:] += 2.0 * p.consec_acc_coeff * accel_diff

        # Partial derivatives of the stage costs w.r.t. each predicted state
        d_x = (2.0 * p.cte_coeff * cte * slope
               - 2.0 * p.epsi_coeff * epsi * curvature / (1.0 + slope ** 2))
        d_y = -2.0 * p.cte_coeff * cte
        d_psi = 2.0 * p.epsi_coeff * epsi
        d_v = 2.0 * p.speed_coeff * speed_error

        adj_x = adj_y = adj_psi = adj_v = 0.0
        for k in range(self.horizon - 1, -1, -1):
            adj_x += d_x[k]
            adj_y += d_y[k]
            adj_psi += d_psi[k]
            adj_v += d_v[k]
            v = vs[k]
            cos_psi = math.cos(psis[k])
            sin_psi = math.sin(psis[k])
            # Step k: v' = v + dt*a, psi' = psi - dt*v'*delta/lf, then x', y' from v', psi'
            adj_psi += dt * v * (adj_y * cos_psi - adj_x * sin_psi)
            adj_v += dt * (adj_x * cos_psi + adj_y * sin_psi) - adj_psi * dt * steer[k] / lf
            grad_steer[k] += -adj_psi * dt * v / lf
            grad_accel[k] += adj_v * dt

        return float(cost), np.concatenate((grad_steer, grad_accel))

    def _cost(self, controls: np.ndarray, state: np.ndarray, coeffs: np.ndarray) -> float:
        return self._cost_and_gradient(controls, state, coeffs)[0]

    def _initial_guess(self) -> np.ndarray:
        if self._warm_start is None:
            return np.zeros(2 * self.horizon)
        # Shift the previous solution one step forward, repeat the tail
        steer = self._warm_start[:self.horizon]
        accel = self._warm_start[self.horizon:]
        steer = np.append(steer[1:], steer[-1])
        accel = np.append(accel[1:], accel[-1])
        return np.concatenate((steer, accel))

    def solve(self, state: Sequence[float], coeffs: Sequence[float]) -> np.ndarray:
        """
        Solve the MPC problem for one cycle.

        Args:
            state: Vehicle-frame state (x, y, psi, v, cte, epsi)
            coeffs: Reference polynomial coefficients, lowest order first

        Returns:
            Array [steering, acceleration, x1, y1, ..., xH, yH]

        Raises:
            SolverConvergenceError: If no finite improving solution was found
            SolverFault: If the inputs cannot be solved at all
        """
        state = np.asarray(state, dtype=float)
        coeffs = np.asarray(coeffs, dtype=float)
        if state.shape != (STATE_SIZE,):
            raise SolverFault(f"state must have {STATE_SIZE} elements, got shape {state.shape}")
        if coeffs.ndim != 1 or coeffs.size < 2:
            raise SolverFault(f"need at least 2 polynomial coefficients, got {coeffs.size}")
        if not (np.all(np.isfinite(state)) and np.all(np.isfinite(coeffs))):
            raise SolverFault("non-finite state or coefficients")

        p = self.params
        bounds = ([(-p.max_steering, p.max_steering)] * self.horizon
                  + [(-p.max_acceleration, p.max_acceleration)] * self.horizon)
        init = np.clip(
            self._initial_guess(),
            [b[0] for b in bounds],
            [b[1] for b in bounds],
        )
        init_cost = self._cost(init, state, coeffs)

        result = minimize(
            self._cost_and_gradient, init, args=(state, coeffs), method="L-BFGS-B",
            jac=True, bounds=bounds, options={"maxiter": int(p.max_iterations)},
        )

        if not np.all(np.isfinite(result.x)) or not math.isfinite(result.fun):
            self._warm_start = None
            raise SolverConvergenceError("optimizer returned non-finite values")
        if not result.success and result.fun > init_cost:
            raise SolverConvergenceError(f"optimizer did not improve: {result.message}")
        if not result.success:
            logger.debug("[MPC_SOLVE] accepted non-converged improving solution: %s", result.message)

        self._warm_start = result.x.copy()
        trajectory = self._rollout(state, result.x)[:, :2]
        steering = self.model.clip_steering(result.x[0])
        acceleration = float(result.x[self.horizon])
        return np.concatenate(([steering, acceleration], trajectory.ravel()))
