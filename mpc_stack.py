"""
Main MPC stack integration script.
Connects all components: state holder, local path fitting, MPC solver and
actuator output.
"""

import time
import math
import sys
import logging
from collections import deque
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field, fields
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, Optional

import numpy as np
import yaml

# Add paths
sys.path.insert(0, str(Path(__file__).parent))

from bridge.client import BridgeClient
from bridge.state_feed import BridgeStateFeed
from control.mpc_controller import MPCController, MPCParams, SolverConvergenceError, SolverFault
from control.vehicle_model import BicycleModel, PredictedState
from control.vehicle_state import VehicleStateHolder
from data.recorder import DataRecorder
from data.formats.data_format import ControlCommand, RecordingFrame, TrajectoryOutput, VehicleState
from trajectory.local_path import (
    PathFitError,
    TrackingError,
    evaluate_polynomial,
    fit_local_path,
    to_global_frame,
    to_vehicle_frame,
)

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).parent / "config" / "mpc_stack_config.yaml"
LATENCY_SANITY_LIMIT_S = 1.0
DEBUG_POLY_SAMPLES_X = np.linspace(0.0, 2.0, 11)


class ConfigError(ValueError):
    """Missing or malformed configuration."""


@dataclass
class PathConfig:
    """Local path window and fit parameters."""
    poly_degree: int = 3
    window_size: int = 10
    window_stride: int = 2
    back_offset: int = 2
    min_x_delta: float = 0.1


@dataclass
class VehicleConfig:
    """Vehicle geometry and actuator limits."""
    lf: float = 0.325
    ref_speed: float = 1.0
    max_steering: float = 0.43
    max_acceleration: float = 1.0


@dataclass
class ActuatorConfig:
    """Mapping from solver outputs to actuator commands."""
    steering_center: float = 0.5
    steering_sign: float = -1.0
    publish_throttle: bool = True


@dataclass
class LoopConfig:
    """Control loop cadence and fallback behaviour."""
    rate_hz: float = 100.0
    solver_deadline_s: float = 0.1
    solver_max_iterations: int = 60
    fallback: str = "hold"  # "hold" or "stop"
    stop_acceleration: float = -1.0
    missing_inputs_log_interval_s: float = 1.0


@dataclass
class BridgeConfig:
    url: str = "http://localhost:8000"
    poll_interval_s: float = 0.01


@dataclass
class RecordingConfig:
    enabled: bool = False
    dir: str = "data/recordings"


@dataclass
class StackConfig:
    """Complete, validated configuration of the MPC stack."""
    mpc: MPCParams
    latency: float
    debug: bool
    path: PathConfig = field(default_factory=PathConfig)
    vehicle: VehicleConfig = field(default_factory=VehicleConfig)
    actuator: ActuatorConfig = field(default_factory=ActuatorConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)
    bridge: BridgeConfig = field(default_factory=BridgeConfig)
    recording: RecordingConfig = field(default_factory=RecordingConfig)


# Required `mpc` keys and their types
REQUIRED_MPC_KEYS = {
    "steps_ahead": int,
    "dt": float,
    "latency": float,
    "cte_coeff": float,
    "epsi_coeff": float,
    "speed_coeff": float,
    "acc_coeff": float,
    "steer_coeff": float,
    "consec_acc_coeff": float,
    "consec_steer_coeff": float,
    "debug": bool,
}


def _coerce(value, expected_type, name: str):
    """Convert a raw YAML value to expected_type or raise ConfigError."""
    if expected_type is bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in ("true", "false"):
            return value.strip().lower() == "true"
        raise ConfigError(f"{name} should either be true or false, got {value!r}")
    if expected_type is str:
        if isinstance(value, str):
            return value
        raise ConfigError(f"{name} must be a string, got {value!r}")
    if isinstance(value, bool):
        raise ConfigError(f"{name} must be a number, got {value!r}")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number, got {value!r}") from None
    if not math.isfinite(number):
        raise ConfigError(f"{name} must be finite, got {value!r}")
    if expected_type is int:
        if not number.is_integer():
            raise ConfigError(f"{name} must be an integer, got {value!r}")
        return int(number)
    return number


def _build_section(section_cls, raw: Optional[dict], section_name: str):
    if raw is None:
        return section_cls()
    if not isinstance(raw, dict):
        raise ConfigError(f"section '{section_name}' must be a mapping")
    known = {f.name: f for f in fields(section_cls)}
    unknown = set(raw) - set(known)
    if unknown:
        raise ConfigError(f"unknown keys in '{section_name}': {', '.join(sorted(unknown))}")
    kwargs = {}
    for key, value in raw.items():
        default = known[key].default
        kwargs[key] = _coerce(value, type(default), f"{section_name}.{key}")
    return section_cls(**kwargs)


def _check(condition: bool, message: str):
    if not condition:
        raise ConfigError(message)


def build_stack_config(raw: dict) -> StackConfig:
    """
    Validate a raw configuration mapping.

    Args:
        raw: Parsed YAML content

    Returns:
        StackConfig

    Raises:
        ConfigError: If a required key is missing or any value is malformed
    """
    if not isinstance(raw, dict):
        raise ConfigError("configuration must be a mapping")
    mpc_raw = raw.get("mpc")
    if not isinstance(mpc_raw, dict):
        raise ConfigError("missing required section 'mpc'")

    missing = [key for key in REQUIRED_MPC_KEYS if key not in mpc_raw]
    if missing:
        raise ConfigError(f"missing required mpc keys: {', '.join(missing)}")
    unknown = set(mpc_raw) - set(REQUIRED_MPC_KEYS)
    if unknown:
        raise ConfigError(f"unknown keys in 'mpc': {', '.join(sorted(unknown))}")
    mpc_values = {
        key: _coerce(mpc_raw[key], expected, f"mpc.{key}")
        for key, expected in REQUIRED_MPC_KEYS.items()
    }

    path = _build_section(PathConfig, raw.get("path"), "path")
    vehicle = _build_section(VehicleConfig, raw.get("vehicle"), "vehicle")
    actuator = _build_section(ActuatorConfig, raw.get("actuator"), "actuator")
    loop = _build_section(LoopConfig, raw.get("loop"), "loop")
    bridge = _build_section(BridgeConfig, raw.get("bridge"), "bridge")
    recording = _build_section(RecordingConfig, raw.get("recording"), "recording")

    _check(mpc_values["steps_ahead"] >= 1, "mpc.steps_ahead must be >= 1")
    _check(mpc_values["dt"] > 0.0, "mpc.dt must be positive")
    _check(mpc_values["latency"] >= 0.0, "mpc.latency must be non-negative")
    _check(path.poly_degree >= 1, "path.poly_degree must be >= 1")
    _check(path.window_size >= path.poly_degree + 1,
           "path.window_size must be at least poly_degree + 1")
    _check(path.window_stride >= 1, "path.window_stride must be >= 1")
    _check(path.back_offset >= 0, "path.back_offset must be non-negative")
    _check(path.min_x_delta >= 0.0, "path.min_x_delta must be non-negative")
    _check(vehicle.lf > 0.0, "vehicle.lf must be positive")
    _check(vehicle.max_steering > 0.0, "vehicle.max_steering must be positive")
    _check(vehicle.max_acceleration > 0.0, "vehicle.max_acceleration must be positive")
    _check(actuator.steering_sign in (-1.0, 1.0), "actuator.steering_sign must be 1 or -1")
    _check(loop.rate_hz > 0.0, "loop.rate_hz must be positive")
    _check(loop.solver_deadline_s > 0.0, "loop.solver_deadline_s must be positive")
    _check(loop.solver_max_iterations >= 1, "loop.solver_max_iterations must be >= 1")
    _check(loop.fallback in ("hold", "stop"), "loop.fallback must be 'hold' or 'stop'")

    if mpc_values["latency"] > LATENCY_SANITY_LIMIT_S:
        logger.warning(
            "Latency is %.3f > %.1f. It should be in seconds, isn't it too high?",
            mpc_values["latency"], LATENCY_SANITY_LIMIT_S,
        )

    mpc = MPCParams(
        steps_ahead=mpc_values["steps_ahead"],
        dt=mpc_values["dt"],
        cte_coeff=mpc_values["cte_coeff"],
        epsi_coeff=mpc_values["epsi_coeff"],
        speed_coeff=mpc_values["speed_coeff"],
        acc_coeff=mpc_values["acc_coeff"],
        steer_coeff=mpc_values["steer_coeff"],
        consec_acc_coeff=mpc_values["consec_acc_coeff"],
        consec_steer_coeff=mpc_values["consec_steer_coeff"],
        ref_speed=vehicle.ref_speed,
        lf=vehicle.lf,
        max_steering=vehicle.max_steering,
        max_acceleration=vehicle.max_acceleration,
        max_iterations=loop.solver_max_iterations,
    )
    return StackConfig(
        mpc=mpc,
        latency=mpc_values["latency"],
        debug=mpc_values["debug"],
        path=path,
        vehicle=vehicle,
        actuator=actuator,
        loop=loop,
        bridge=bridge,
        recording=recording,
    )


def load_config(config_path: Optional[str] = None) -> StackConfig:
    """Load and validate configuration from a YAML file."""
    if config_path is None:
        config_path = DEFAULT_CONFIG_PATH
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise ConfigError(f"config file not found: {config_path}")
    try:
        with open(config_path, 'r') as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {config_path}: {e}") from e
    config = build_stack_config(raw)
    logger.info(f"Loaded configuration from {config_path}")
    return config


class LoopState(Enum):
    AWAITING_INPUTS = "awaiting_inputs"
    READY = "ready"


@dataclass(frozen=True)
class ActuatorCommand:
    """Command sent to the actuators."""
    steering: float  # actuator units
    acceleration: Optional[float]  # m/s^2, None when throttle output is disabled


@dataclass
class CycleOutput:
    """Everything one control cycle produced."""
    timestamp: float
    predicted: PredictedState
    closest_idx: int
    local_window: np.ndarray  # stabilized, vehicle frame
    coeffs: Optional[np.ndarray] = None
    tracking_error: Optional[TrackingError] = None
    solver_output: Optional[np.ndarray] = None
    raw_steering: Optional[float] = None
    raw_acceleration: Optional[float] = None
    command: Optional[ActuatorCommand] = None
    fallback_reason: Optional[str] = None
    cycle_duration: float = 0.0
    solver_duration: float = 0.0


class LoopMetrics:
    """Rolling cycle timing statistics."""

    def __init__(self, window: int = 200):
        self.durations = deque(maxlen=window)
        self.overruns = 0
        self.cycles = 0
        self.skipped = 0
        self.fallbacks = 0

    def add(self, duration: float, period: float):
        self.durations.append(duration)
        self.cycles += 1
        if duration > period:
            self.overruns += 1

    @property
    def last(self) -> float:
        return self.durations[-1] if self.durations else 0.0

    @property
    def mean(self) -> float:
        return float(np.mean(self.durations)) if self.durations else 0.0

    @property
    def max(self) -> float:
        return float(np.max(self.durations)) if self.durations else 0.0


def build_debug_geometry(predicted: PredictedState, local_window: np.ndarray,
                         solver_output: Optional[np.ndarray],
                         coeffs: Optional[np.ndarray]) -> Dict[str, list]:
    """
    Global-frame polylines for visualization.

    Returns:
        Mapping with "closest" (stabilized window), "next_pos" (solver
        predicted trajectory) and "poly" (fit sampled at x = 0 .. 2 m)
    """
    def _to_global(points):
        pts = np.asarray(points, dtype=float).reshape(-1, 2)
        return to_global_frame(pts, predicted.x, predicted.y, predicted.psi).tolist()

    markers = {"closest": _to_global(local_window)}
    if solver_output is not None and len(solver_output) > 2:
        markers["next_pos"] = _to_global(np.asarray(solver_output[2:]))
    if coeffs is not None:
        poly = np.column_stack((DEBUG_POLY_SAMPLES_X, evaluate_polynomial(coeffs, DEBUG_POLY_SAMPLES_X)))
        markers["poly"] = _to_global(poly)
    return markers


class MPCPathTracker:
    """
    Fixed-cadence control loop.

    Waits until path, pose and speed have all arrived, then every cycle
    projects the state over the actuation latency, fits the local path,
    solves the MPC problem and emits the actuator command.
    """

    def __init__(self, config: StackConfig, holder: VehicleStateHolder, solver,
                 command_sink: Optional[Callable[[ActuatorCommand], None]] = None,
                 debug_sink: Optional[Callable[[Dict[str, list]], None]] = None,
                 recorder: Optional[DataRecorder] = None,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        """
        Initialize the control loop.

        Args:
            config: Validated stack configuration
            holder: Shared vehicle state
            solver: Object with solve(state, coeffs) -> [steering, accel, x1, y1, ...]
            command_sink: Receives every emitted ActuatorCommand
            debug_sink: Receives debug geometry when config.debug is set
            recorder: Optional cycle recorder
            clock: Monotonic time source (seconds)
            sleep: Sleep function used for pacing
        """
        self.config = config
        self.holder = holder
        self.solver = solver
        self.command_sink = command_sink
        self.debug_sink = debug_sink
        self.recorder = recorder
        self.clock = clock
        self.sleep = sleep

        self.model = BicycleModel(lf=config.vehicle.lf, max_steering_angle=config.vehicle.max_steering)
        self.period = 1.0 / config.loop.rate_hz
        self.state = LoopState.AWAITING_INPUTS
        self.metrics = LoopMetrics()
        self.running = False
        self.cycle_count = 0

        # Last commanded actuator values (solver units), fed to latency compensation
        self.last_steering = 0.0
        self.last_acceleration = 0.0
        self.last_command: Optional[ActuatorCommand] = None

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="mpc_solver")
        self._pending_solve = None
        self._last_missing_log: Optional[float] = None

    def _update_state(self):
        if self.state is LoopState.READY:
            return
        if self.holder.ready:
            self.state = LoopState.READY
            logger.info("[LOOP_READY] all inputs received, starting optimization")

    def _log_missing_inputs(self, now: float):
        interval = self.config.loop.missing_inputs_log_interval_s
        if self._last_missing_log is not None and now - self._last_missing_log < interval:
            return
        self._last_missing_log = now
        logger.debug(
            "No optimization, waiting for: %s", ", ".join(self.holder.missing_inputs())
        )

    def map_command(self, steering: float, acceleration: float) -> ActuatorCommand:
        """Apply the actuator convention to solver outputs."""
        act = self.config.actuator
        mapped_steering = act.steering_center + act.steering_sign * steering
        return ActuatorCommand(
            steering=float(mapped_steering),
            acceleration=float(acceleration) if act.publish_throttle else None,
        )

    def _stop_command(self) -> ActuatorCommand:
        return self.map_command(0.0, self.config.loop.stop_acceleration)

    def _fallback(self, reason: str) -> ActuatorCommand:
        """Command to emit when the solver produced nothing usable this cycle."""
        self.metrics.fallbacks += 1
        if self.config.loop.fallback == "hold" and self.last_command is not None:
            return self.last_command
        if self.config.loop.fallback == "hold":
            return self.map_command(0.0, 0.0)
        self.last_steering = 0.0
        self.last_acceleration = self.config.loop.stop_acceleration
        return self._stop_command()

    def _emit(self, command: ActuatorCommand):
        self.last_command = command
        if self.command_sink is not None:
            self.command_sink(command)

    def _check_late_solve(self, future):
        """Classify the outcome of a solve that missed its deadline."""
        self._pending_solve = None
        error = future.exception()
        if error is None:
            logger.debug("[SOLVER_LATE] discarding result of a timed-out solve")
        elif isinstance(error, SolverConvergenceError):
            logger.warning(f"[SOLVER_LATE_NO_CONVERGENCE] {error}")
        else:
            raise SolverFault(f"timed-out solve failed: {error}") from error

    def _solve(self, state: np.ndarray, coeffs: np.ndarray):
        """
        Run the solver under the configured deadline.

        Returns:
            (solver_output or None, fallback_reason or None)

        Raises:
            SolverFault: On any solver error other than non-convergence,
                including errors of a solve that finished after its deadline
        """
        if self._pending_solve is not None:
            if not self._pending_solve.done():
                logger.warning("[SOLVER_BUSY] previous solve still running, skipping solve")
                return None, "solver_busy"
            self._check_late_solve(self._pending_solve)

        future = self._executor.submit(self.solver.solve, state, coeffs)
        try:
            output = future.result(timeout=self.config.loop.solver_deadline_s)
        except FutureTimeoutError:
            self._pending_solve = future
            logger.warning(
                "[SOLVER_TIMEOUT] no solution within %.3fs", self.config.loop.solver_deadline_s
            )
            return None, "timeout"
        except SolverConvergenceError as e:
            logger.warning(f"[SOLVER_NO_CONVERGENCE] {e}")
            return None, "no_convergence"
        except Exception as e:
            raise SolverFault(f"solver failed: {e}") from e

        output = np.asarray(output, dtype=float).ravel()
        if output.size < 2:
            raise SolverFault(f"solver returned {output.size} values, expected at least 2")
        if not np.all(np.isfinite(output[:2])):
            logger.warning("[SOLVER_NO_CONVERGENCE] non-finite actuator values")
            return None, "no_convergence"
        return output, None

    def run_cycle(self) -> Optional[CycleOutput]:
        """
        Execute one control cycle.

        Returns:
            CycleOutput, or None while waiting for inputs

        Raises:
            SolverFault: After emitting a stop command, if the solver faulted
        """
        cycle_start = self.clock()
        self._update_state()
        if self.state is LoopState.AWAITING_INPUTS:
            self._log_missing_inputs(cycle_start)
            return None

        snapshot = self.holder.snapshot()
        predicted = self.model.predict_latency(
            snapshot.x, snapshot.y, snapshot.psi, snapshot.speed,
            self.last_steering, self.last_acceleration, self.config.latency,
        )

        path_cfg = self.config.path
        closest_idx = snapshot.path.closest_index(predicted.x, predicted.y)
        window = snapshot.path.extract_window(
            closest_idx, path_cfg.back_offset, path_cfg.window_size, path_cfg.window_stride
        )
        local_window = to_vehicle_frame(window, predicted.x, predicted.y, predicted.psi)

        output = CycleOutput(
            timestamp=time.time(),
            predicted=predicted,
            closest_idx=closest_idx,
            local_window=local_window,
        )

        try:
            stable, coeffs, tracking_error = fit_local_path(
                local_window, path_cfg.poly_degree, path_cfg.min_x_delta
            )
        except PathFitError as e:
            logger.warning(f"[FIT_DEGENERATE] skipping cycle: {e}")
            self.metrics.skipped += 1
            output.fallback_reason = "fit_degenerate"
            self._finish_cycle(output, snapshot, cycle_start)
            return output

        output.local_window = stable
        output.coeffs = coeffs
        output.tracking_error = tracking_error
        logger.debug(
            "CTE: %.3f, ePsi: %.3f, psi: %.3f", tracking_error.cte, tracking_error.epsi, snapshot.psi
        )

        state = np.array([0.0, 0.0, 0.0, predicted.v, tracking_error.cte, tracking_error.epsi])
        solve_start = self.clock()
        try:
            solver_output, fallback_reason = self._solve(state, coeffs)
        except SolverFault:
            logger.error("[SOLVER_FAULT] emitting stop command", exc_info=True)
            self._emit(self._stop_command())
            raise
        output.solver_duration = self.clock() - solve_start

        if solver_output is not None:
            steering = float(solver_output[0])
            acceleration = float(solver_output[1])
            logger.debug("Steer: %.3f [rad], throttle: %.3f [m/s/s]", steering, acceleration)
            command = self.map_command(steering, acceleration)
            self.last_steering = steering
            self.last_acceleration = acceleration
            output.solver_output = solver_output
            output.raw_steering = steering
            output.raw_acceleration = acceleration
        else:
            command = self._fallback(fallback_reason)
            output.fallback_reason = fallback_reason

        self._emit(command)
        output.command = command

        if self.config.debug and self.debug_sink is not None:
            self.debug_sink(build_debug_geometry(predicted, stable, output.solver_output, coeffs))

        self._finish_cycle(output, snapshot, cycle_start)
        return output

    def _finish_cycle(self, output: CycleOutput, snapshot, cycle_start: float):
        output.cycle_duration = self.clock() - cycle_start
        self.metrics.add(output.cycle_duration, self.period)
        if output.cycle_duration > self.period:
            logger.warning(
                "[LOOP_SLOW] duration=%.3fs period=%.3fs solver=%.3fs cycle=%d",
                output.cycle_duration, self.period, output.solver_duration, self.cycle_count,
            )
        if self.recorder is not None:
            self.recorder.record_frame(self._to_recording_frame(output, snapshot))
        self.cycle_count += 1

    def _to_recording_frame(self, output: CycleOutput, snapshot) -> RecordingFrame:
        vehicle_state = VehicleState(
            timestamp=output.timestamp,
            x=snapshot.x,
            y=snapshot.y,
            psi=snapshot.psi,
            speed=snapshot.speed,
            predicted_x=output.predicted.x,
            predicted_y=output.predicted.y,
            predicted_psi=output.predicted.psi,
            predicted_speed=output.predicted.v,
        )
        trajectory_output = TrajectoryOutput(
            timestamp=output.timestamp,
            closest_idx=output.closest_idx,
            accepted_points=len(output.local_window) if output.coeffs is not None else 0,
            poly_coeffs=output.coeffs,
            cte=output.tracking_error.cte if output.tracking_error else None,
            epsi=output.tracking_error.epsi if output.tracking_error else None,
        )
        control_command = None
        if output.command is not None:
            throttle = output.command.acceleration
            control_command = ControlCommand(
                timestamp=output.timestamp,
                steering=output.command.steering,
                throttle=float("nan") if throttle is None else throttle,
                raw_steering=output.raw_steering,
                fallback_reason=output.fallback_reason,
            )
        return RecordingFrame(
            timestamp=output.timestamp,
            frame_id=self.cycle_count,
            vehicle_state=vehicle_state,
            control_command=control_command,
            trajectory_output=trajectory_output,
            cycle_duration=output.cycle_duration,
            solver_duration=output.solver_duration,
        )

    def run(self, max_cycles: Optional[int] = None, duration: Optional[float] = None):
        """
        Run the control loop.

        The loop sleeps only for the part of the period the cycle did not use,
        so the achieved rate is bounded by the cycle (mostly solver) duration.

        Args:
            max_cycles: Maximum number of cycles (None for infinite)
            duration: Maximum duration in seconds (None for infinite)
        """
        logger.info(f"Starting MPC loop at {self.config.loop.rate_hz:.1f} Hz")
        self.running = True
        start_time = self.clock()
        cycles = 0
        last_report = start_time

        try:
            while self.running:
                if max_cycles is not None and cycles >= max_cycles:
                    logger.info(f"Reached cycle limit: {max_cycles}")
                    break
                if duration is not None and self.clock() - start_time >= duration:
                    logger.info(f"Reached duration limit: {duration}s")
                    break

                cycle_start = self.clock()
                self.run_cycle()
                cycles += 1

                now = self.clock()
                if now - last_report >= 5.0 and self.metrics.cycles:
                    logger.info(
                        "[LOOP_STATS] cycles=%d mean=%.4fs max=%.4fs overruns=%d skipped=%d fallbacks=%d",
                        self.metrics.cycles, self.metrics.mean, self.metrics.max,
                        self.metrics.overruns, self.metrics.skipped, self.metrics.fallbacks,
                    )
                    last_report = now

                remaining = self.period - (now - cycle_start)
                if remaining > 0:
                    self.sleep(remaining)
        except KeyboardInterrupt:
            logger.info("Stopping MPC loop...")
        finally:
            self.stop()

    def stop(self):
        """Stop the loop and release resources."""
        self.running = False
        self._executor.shutdown(wait=False)
        if self.recorder is not None:
            logger.info(f"Closing data recorder: {self.recorder.output_file}")
            self.recorder.close()
            self.recorder = None
        logger.info(f"MPC loop stopped (processed {self.cycle_count} cycles)")


def _configure_logging(level: str = "INFO"):
    log_dir = Path(__file__).parent / 'tmp' / 'logs'
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / 'mpc_stack.log'
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(str(log_file))
        ]
    )


def _wait_for_bridge(client: BridgeClient, max_retries: int = 10, initial_delay: float = 1.0) -> bool:
    """Wait for bridge server to be available with exponential backoff."""
    delay = initial_delay
    for attempt in range(max_retries):
        if client.health_check():
            return True
        logger.info(f"Waiting for bridge server... (attempt {attempt + 1}/{max_retries})")
        time.sleep(delay)
        delay = min(delay * 1.5, 5.0)
    return False


def main(argv=None) -> int:
    """Main entry point."""
    import argparse

    parser = argparse.ArgumentParser(description='Run MPC path tracker')
    parser.add_argument('--config', type=str, default=None,
                        help='Path to configuration YAML file (default: config/mpc_stack_config.yaml)')
    parser.add_argument('--bridge_url', type=str, default=None,
                        help='Bridge server URL (overrides bridge.url)')
    parser.add_argument('--max_cycles', type=int, default=None,
                        help='Maximum number of control cycles')
    parser.add_argument('--duration', type=float, default=None,
                        help='Maximum duration in seconds')
    parser.add_argument('--record', dest='record', action='store_true', default=None,
                        help='Record cycles to HDF5 (overrides recording.enabled)')
    parser.add_argument('--no-record', dest='record', action='store_false',
                        help='Disable recording')
    parser.add_argument('--log_level', type=str, default='INFO',
                        help='Logging level (default: INFO)')
    args = parser.parse_args(argv)

    _configure_logging(args.log_level)

    try:
        config = load_config(args.config)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    bridge_url = args.bridge_url or config.bridge.url
    client = BridgeClient(bridge_url)
    if not _wait_for_bridge(client):
        logger.error("Bridge server is not available after retries!")
        return 1

    holder = VehicleStateHolder()
    # The feed polls from its own thread, so it gets its own session
    feed_client = BridgeClient(bridge_url)
    feed = BridgeStateFeed(feed_client, holder, poll_interval=config.bridge.poll_interval_s)

    record = config.recording.enabled if args.record is None else args.record
    recorder = None
    if record:
        recorder = DataRecorder(config.recording.dir, poly_degree=config.path.poly_degree)

    def send_command(command: ActuatorCommand):
        if not client.set_control_command(command.steering, command.acceleration):
            logger.warning("[COMMAND_SEND_FAILED] steering=%.3f", command.steering)

    tracker = MPCPathTracker(
        config,
        holder,
        MPCController(config.mpc),
        command_sink=send_command,
        debug_sink=client.set_debug_markers,
        recorder=recorder,
    )

    feed.start()
    try:
        tracker.run(max_cycles=args.max_cycles, duration=args.duration)
    except SolverFault as e:
        logger.error(f"Stopping on solver fault: {e}")
        return 1
    finally:
        feed.stop()
        feed_client.close()
        client.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
