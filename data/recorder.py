"""
Data recorder for the MPC stack.
Records per-cycle vehicle state, local path fit, control commands and timing.
"""

import h5py
import numpy as np
import json
import time
import threading
import queue
import logging
from pathlib import Path
from typing import Optional, List
from datetime import datetime

logger = logging.getLogger(__name__)

CYCLE_GAP_WARN_SECONDS = 0.2

from .formats.data_format import RecordingFrame


class DataRecorder:
    """Records MPC stack cycles to HDF5 format."""

    def __init__(self, output_dir: str, recording_name: Optional[str] = None,
                 poly_degree: int = 3, flush_every: int = 50):
        """
        Initialize data recorder.

        Args:
            output_dir: Directory to save recordings
            recording_name: Name for this recording (default: timestamp)
            poly_degree: Degree of the recorded polynomial fits
            flush_every: Number of buffered cycles that triggers an async flush
        """
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

        if recording_name is None:
            recording_name = f"recording_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

        self.recording_name = recording_name
        self.output_file = self.output_dir / f"{recording_name}.h5"
        self.poly_degree = int(poly_degree)

        self.h5_file = h5py.File(self.output_file, 'w')
        self._create_datasets()

        self.frame_buffer: List[RecordingFrame] = []
        self.frame_buffer_lock = threading.Lock()
        self.h5_lock = threading.Lock()
        self.flush_queue: "queue.Queue[List[RecordingFrame]]" = queue.Queue()
        self.flush_stop_event = threading.Event()
        self.frame_count = 0
        self.last_record_wall_time: Optional[float] = None
        self.last_record_frame_id: Optional[int] = None
        self.flush_every = flush_every
        self.flush_queue_warn_threshold = 5
        self.flush_thread = threading.Thread(
            target=self._flush_worker,
            name="DataRecorderFlushWorker",
            daemon=True,
        )
        self.flush_thread.start()

        self.metadata = {
            "recording_start_time": datetime.now().isoformat(),
            "recording_name": recording_name,
            "poly_degree": self.poly_degree,
        }

    def _create_datasets(self):
        """Create HDF5 datasets for data storage."""
        max_shape = (None,)
        float_names = [
            "vehicle/timestamps", "vehicle/x", "vehicle/y", "vehicle/psi", "vehicle/speed",
            "vehicle/predicted_x", "vehicle/predicted_y", "vehicle/predicted_psi",
            "vehicle/predicted_speed",
            "control/timestamps", "control/steering", "control/throttle", "control/raw_steering",
            "trajectory/timestamps", "trajectory/cte", "trajectory/epsi",
            "timing/cycle_duration", "timing/solver_duration",
        ]
        for name in float_names:
            self.h5_file.create_dataset(name, shape=(0,), maxshape=max_shape, dtype=np.float64)

        for name in ("trajectory/closest_idx", "trajectory/accepted_points", "timing/frame_id"):
            self.h5_file.create_dataset(name, shape=(0,), maxshape=max_shape, dtype=np.int64)

        self.h5_file.create_dataset(
            "trajectory/poly_coeffs",
            shape=(0, self.poly_degree + 1),
            maxshape=(None, self.poly_degree + 1),
            dtype=np.float64,
        )
        self.h5_file.create_dataset(
            "control/fallback_reason",
            shape=(0,),
            maxshape=max_shape,
            dtype=h5py.string_dtype(encoding="utf-8"),
        )

    def _append(self, name: str, values):
        dataset = self.h5_file[name]
        if dataset.dtype.kind == "O":
            values = np.array(values, dtype=object)
        else:
            values = np.asarray(values, dtype=dataset.dtype)
        if len(values) == 0:
            return
        start = dataset.shape[0]
        dataset.resize(start + len(values), axis=0)
        dataset[start:] = values

    def record_frame(self, frame: RecordingFrame):
        """
        Record a complete control cycle.

        Args:
            frame: RecordingFrame containing the cycle's data
        """
        now = time.time()
        if self.last_record_wall_time is not None:
            gap = now - self.last_record_wall_time
            if gap > CYCLE_GAP_WARN_SECONDS:
                logger.warning(
                    "[RECORDER_ARRIVAL_GAP] gap=%.3fs frame_id=%s prev_frame_id=%s",
                    gap,
                    frame.frame_id,
                    self.last_record_frame_id,
                )
        self.last_record_wall_time = now
        self.last_record_frame_id = frame.frame_id

        with self.frame_buffer_lock:
            self.frame_buffer.append(frame)
            self.frame_count += 1

            if len(self.frame_buffer) >= self.flush_every:
                frames = self.frame_buffer
                self.frame_buffer = []
                self.flush_queue.put(frames)

    def flush(self):
        """Queue buffered frames for writing."""
        with self.frame_buffer_lock:
            if not self.frame_buffer:
                return
            frames = self.frame_buffer
            self.frame_buffer = []
        self.flush_queue.put(frames)

    def _flush_worker(self):
        while not self.flush_stop_event.is_set() or not self.flush_queue.empty():
            try:
                frames = self.flush_queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if self.flush_queue.qsize() > self.flush_queue_warn_threshold:
                logger.warning(
                    "[RECORDER_QUEUE_BACKLOG] size=%d threshold=%d",
                    self.flush_queue.qsize(),
                    self.flush_queue_warn_threshold,
                )
            try:
                self._flush_frames(frames)
            except Exception as e:
                logger.error(f"Error writing {len(frames)} frames: {e}", exc_info=True)
            finally:
                self.flush_queue.task_done()

    def _flush_frames(self, frames: List[RecordingFrame]):
        if not frames:
            return
        with self.h5_lock:
            self._write_vehicle_states([f for f in frames if f.vehicle_state])
            self._write_control_commands([f for f in frames if f.control_command])
            self._write_trajectory_outputs([f for f in frames if f.trajectory_output])
            self._write_timing(frames)
            self.h5_file.flush()

    def _write_vehicle_states(self, frames: List[RecordingFrame]):
        """Write vehicle states to HDF5."""
        states = [f.vehicle_state for f in frames]
        for field in ("timestamp", "x", "y", "psi", "speed", "predicted_x",
                      "predicted_y", "predicted_psi", "predicted_speed"):
            name = "vehicle/timestamps" if field == "timestamp" else f"vehicle/{field}"
            self._append(name, [getattr(s, field) for s in states])

    def _write_control_commands(self, frames: List[RecordingFrame]):
        """Write control commands to HDF5."""
        commands = [f.control_command for f in frames]
        self._append("control/timestamps", [c.timestamp for c in commands])
        self._append("control/steering", [c.steering for c in commands])
        self._append("control/throttle", [c.throttle for c in commands])
        self._append("control/raw_steering",
                     [np.nan if c.raw_steering is None else c.raw_steering for c in commands])
        self._append("control/fallback_reason", [c.fallback_reason or "" for c in commands])

    def _write_trajectory_outputs(self, frames: List[RecordingFrame]):
        """Write local path fits to HDF5."""
        outputs = [f.trajectory_output for f in frames]
        width = self.poly_degree + 1
        coeffs = np.full((len(outputs), width), np.nan)
        for i, out in enumerate(outputs):
            if out.poly_coeffs is not None:
                values = np.asarray(out.poly_coeffs, dtype=float)[:width]
                coeffs[i, :values.size] = values
        self._append("trajectory/timestamps", [o.timestamp for o in outputs])
        self._append("trajectory/closest_idx", [o.closest_idx for o in outputs])
        self._append("trajectory/accepted_points", [o.accepted_points for o in outputs])
        self._append("trajectory/cte", [np.nan if o.cte is None else o.cte for o in outputs])
        self._append("trajectory/epsi", [np.nan if o.epsi is None else o.epsi for o in outputs])
        self._append("trajectory/poly_coeffs", coeffs)

    def _write_timing(self, frames: List[RecordingFrame]):
        """Write cycle timing to HDF5."""
        self._append("timing/frame_id", [f.frame_id for f in frames])
        self._append("timing/cycle_duration",
                     [np.nan if f.cycle_duration is None else f.cycle_duration for f in frames])
        self._append("timing/solver_duration",
                     [np.nan if f.solver_duration is None else f.solver_duration for f in frames])

    def close(self):
        """Close the recording file."""
        try:
            self.flush()
            self.flush_stop_event.set()
            self.flush_thread.join(timeout=5.0)
        except Exception as e:
            logger.error(f"Error during final flush: {e}", exc_info=True)

        self.metadata["recording_end_time"] = datetime.now().isoformat()
        self.metadata["total_frames"] = self.frame_count

        with self.h5_lock:
            try:
                self.h5_file.attrs["metadata"] = json.dumps(self.metadata, indent=2)
            except Exception as e:
                logger.warning(f"Failed to save metadata: {e}")

            try:
                self.h5_file.close()
                logger.info(f"Recording saved to: {self.output_file}")
            except Exception as e:
                logger.error(f"Error closing HDF5 file: {e}", exc_info=True)
                raise

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
