"""
Tests for HDF5 cycle recording.
"""

import json

import h5py
import numpy as np

from data.formats.data_format import ControlCommand, RecordingFrame, TrajectoryOutput, VehicleState
from data.recorder import DataRecorder


def _make_frame(frame_id: int, with_fit: bool = True, fallback_reason=None) -> RecordingFrame:
    ts = 100.0 + frame_id * 0.01
    return RecordingFrame(
        timestamp=ts,
        frame_id=frame_id,
        vehicle_state=VehicleState(
            timestamp=ts, x=float(frame_id), y=0.0, psi=0.1, speed=1.0,
            predicted_x=float(frame_id) + 0.1, predicted_speed=1.0,
        ),
        control_command=ControlCommand(
            timestamp=ts, steering=0.45, throttle=0.2, raw_steering=0.05,
            fallback_reason=fallback_reason,
        ),
        trajectory_output=TrajectoryOutput(
            timestamp=ts,
            closest_idx=frame_id,
            accepted_points=10 if with_fit else 0,
            poly_coeffs=np.array([0.1, 0.0, 0.0, 0.0]) if with_fit else None,
            cte=0.1 if with_fit else None,
            epsi=0.0 if with_fit else None,
        ),
        cycle_duration=0.004,
        solver_duration=0.003,
    )


def test_records_all_groups(tmp_path):
    recorder = DataRecorder(str(tmp_path), recording_name="run")
    for i in range(5):
        recorder.record_frame(_make_frame(i))
    recorder.close()

    with h5py.File(tmp_path / "run.h5", "r") as f:
        assert f["vehicle/x"].shape == (5,)
        np.testing.assert_allclose(f["vehicle/predicted_x"][:], np.arange(5) + 0.1)
        np.testing.assert_allclose(f["control/steering"][:], 0.45)
        np.testing.assert_allclose(f["trajectory/cte"][:], 0.1)
        assert f["trajectory/poly_coeffs"].shape == (5, 4)
        assert f["timing/frame_id"][:].tolist() == [0, 1, 2, 3, 4]
        metadata = json.loads(f.attrs["metadata"])
        assert metadata["total_frames"] == 5
        assert metadata["poly_degree"] == 3


def test_missing_fit_is_stored_as_nan(tmp_path):
    with DataRecorder(str(tmp_path), recording_name="skip") as recorder:
        recorder.record_frame(_make_frame(0, with_fit=False))

    with h5py.File(tmp_path / "skip.h5", "r") as f:
        assert np.isnan(f["trajectory/cte"][0])
        assert np.all(np.isnan(f["trajectory/poly_coeffs"][0]))
        assert f["trajectory/accepted_points"][0] == 0


def test_fallback_reason_strings(tmp_path):
    with DataRecorder(str(tmp_path), recording_name="fallback") as recorder:
        recorder.record_frame(_make_frame(0))
        recorder.record_frame(_make_frame(1, fallback_reason="timeout"))

    with h5py.File(tmp_path / "fallback.h5", "r") as f:
        reasons = [r.decode("utf-8") if isinstance(r, bytes) else r
                   for r in f["control/fallback_reason"][:]]
        assert reasons == ["", "timeout"]


def test_flush_threshold_writes_in_batches(tmp_path):
    recorder = DataRecorder(str(tmp_path), recording_name="batch", flush_every=2)
    for i in range(5):
        recorder.record_frame(_make_frame(i))
    recorder.close()

    with h5py.File(tmp_path / "batch.h5", "r") as f:
        assert f["control/timestamps"].shape == (5,)
        assert np.all(np.diff(f["control/timestamps"][:]) > 0)
