"""
Tests for the reference MPC solver.
"""

import numpy as np
import pytest

import control.mpc_controller as mpc_module
from control.mpc_controller import MPCController, MPCParams, SolverFault


def _make_params(**overrides) -> MPCParams:
    """Helper to build MPCParams with the default tuning."""
    values = dict(
        steps_ahead=10,
        dt=0.1,
        cte_coeff=100.0,
        epsi_coeff=100.0,
        speed_coeff=0.4,
        acc_coeff=1.0,
        steer_coeff=0.1,
        consec_acc_coeff=50.0,
        consec_steer_coeff=50.0,
    )
    values.update(overrides)
    return MPCParams(**values)


def test_output_layout():
    controller = MPCController(_make_params(steps_ahead=6))
    output = controller.solve([0.0, 0.0, 0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])
    assert output.shape == (2 + 2 * 6,)
    assert np.all(np.isfinite(output))


def test_on_path_gives_straight_steering():
    controller = MPCController(_make_params())
    output = controller.solve([0.0, 0.0, 0.0, 1.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])
    assert output[0] == pytest.approx(0.0, abs=1e-3)
    # Predicted trajectory runs straight ahead
    trajectory = output[2:].reshape(-1, 2)
    assert np.all(np.diff(trajectory[:, 0]) > 0.0)
    np.testing.assert_allclose(trajectory[:, 1], 0.0, atol=1e-3)


def test_path_to_the_left_steers_negative():
    controller = MPCController(_make_params())
    output = controller.solve([0.0, 0.0, 0.0, 1.0, 0.5, 0.0], [0.5, 0.0, 0.0, 0.0])
    assert output[0] < 0.0
    assert output[0] >= -0.43


def test_path_to_the_right_steers_positive():
    controller = MPCController(_make_params())
    output = controller.solve([0.0, 0.0, 0.0, 1.0, -0.5, 0.0], [-0.5, 0.0, 0.0, 0.0])
    assert output[0] > 0.0


def test_below_reference_speed_accelerates():
    controller = MPCController(_make_params(speed_coeff=10.0, ref_speed=2.0))
    output = controller.solve([0.0, 0.0, 0.0, 0.5, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])
    assert output[1] > 0.0
    assert output[1] <= 1.0


def test_warm_start_reset():
    controller = MPCController(_make_params())
    controller.solve([0.0, 0.0, 0.0, 1.0, 0.5, 0.0], [0.5, 0.0, 0.0, 0.0])
    assert controller._warm_start is not None
    controller.reset()
    assert controller._warm_start is None
    np.testing.assert_array_equal(controller._initial_guess(), np.zeros(20))


def test_next_solve_starts_from_shifted_solution(monkeypatch):
    starts = []
    real_minimize = mpc_module.minimize

    def recording_minimize(fun, x0, *args, **kwargs):
        starts.append(np.array(x0, copy=True))
        return real_minimize(fun, x0, *args, **kwargs)

    monkeypatch.setattr(mpc_module, "minimize", recording_minimize)
    horizon = 10
    controller = MPCController(_make_params(steps_ahead=horizon))
    state = [0.0, 0.0, 0.0, 1.0, 0.5, 0.0]
    coeffs = [0.5, 0.0, 0.0, 0.0]

    controller.solve(state, coeffs)
    previous = controller._warm_start.copy()
    controller.solve(state, coeffs)

    np.testing.assert_array_equal(starts[0], np.zeros(2 * horizon))
    steer, accel = previous[:horizon], previous[horizon:]
    expected = np.concatenate((steer[1:], steer[-1:], accel[1:], accel[-1:]))
    np.testing.assert_allclose(starts[1], expected)


def test_gradient_matches_finite_differences():
    controller = MPCController(_make_params(steps_ahead=8, ref_speed=1.5))
    rng = np.random.default_rng(7)
    controls = np.concatenate((rng.uniform(-0.3, 0.3, 8), rng.uniform(-0.8, 0.8, 8)))
    state = np.array([0.0, 0.0, 0.05, 0.9, 0.2, -0.1])
    coeffs = np.array([0.2, -0.1, 0.3, -0.05])

    _, grad = controller._cost_and_gradient(controls, state, coeffs)
    eps = 1e-6
    numeric = np.empty_like(controls)
    for i in range(controls.size):
        step = np.zeros_like(controls)
        step[i] = eps
        numeric[i] = (controller._cost(controls + step, state, coeffs)
                      - controller._cost(controls - step, state, coeffs)) / (2.0 * eps)
    np.testing.assert_allclose(grad, numeric, rtol=1e-4, atol=1e-4)


def test_bad_state_is_a_fault():
    controller = MPCController(_make_params())
    with pytest.raises(SolverFault):
        controller.solve([0.0, 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])
    with pytest.raises(SolverFault):
        controller.solve([0.0, 0.0, 0.0, float("nan"), 0.0, 0.0], [0.0, 0.0, 0.0, 0.0])
    with pytest.raises(SolverFault):
        controller.solve([0.0, 0.0, 0.0, 1.0, 0.0, 0.0], [0.0])


def test_invalid_horizon():
    with pytest.raises(ValueError):
        MPCController(_make_params(steps_ahead=0))
    with pytest.raises(ValueError):
        MPCController(_make_params(dt=0.0))
