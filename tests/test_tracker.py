"""Tests for RabitTrackerSession with the native tracker mocked out."""

import threading
from unittest import mock

import pytest
from xgboost.core import XGBoostError

from shardboost import RabitTrackerSession, TrackerConf, TrackerError
from shardboost._tracker import TIMEOUT_CODE


@pytest.fixture
def native():
    with mock.patch("shardboost._tracker.RabitTracker") as tracker_cls:
        yield tracker_cls


class TestRabitTrackerSession:
    def test_start_and_success(self, native):
        """A started tracker hands out worker args and frees itself on stop."""
        native.return_value.worker_args.return_value = {
            "dmlc_tracker_uri": "10.0.0.1", "dmlc_tracker_port": 9091,
        }
        conf = TrackerConf(worker_connection_timeout=30, host_ip="10.0.0.1")
        session = RabitTrackerSession(2, conf)
        assert session.start(30)
        native.assert_called_once_with(n_workers=2, host_ip="10.0.0.1", timeout=30)
        assert session.worker_environment() == {
            "dmlc_tracker_uri": "10.0.0.1", "dmlc_tracker_port": 9091,
        }
        assert session.wait_for(10) == 0
        session.stop()
        native.return_value.free.assert_called_once()

    def test_host_ip_left_to_native_detection(self, native):
        """Without a configured address the native tracker picks one."""
        session = RabitTrackerSession(3)
        assert session.start(0)
        native.assert_called_once_with(n_workers=3, host_ip=None, timeout=0)
        session.wait_for(10)
        session.stop()

    def test_start_failure(self, native):
        """A tracker that cannot bind reports False and has no environment."""
        native.return_value.start.side_effect = OSError("address in use")
        session = RabitTrackerSession(2)
        assert not session.start(0)
        with pytest.raises(TrackerError, match="not started"):
            session.worker_environment()

    def test_native_failure(self, native):
        """A native wait error becomes return code 1."""
        native.return_value.wait_for.side_effect = XGBoostError("worker lost")
        session = RabitTrackerSession(2)
        assert session.start(0)
        assert session.wait_for(10) == 1

    def test_job_failure_ends_wait(self, native):
        """A failed job ends the wait even while the native tracker still waits."""
        release = threading.Event()
        native.return_value.wait_for.side_effect = lambda: release.wait(10)
        session = RabitTrackerSession(2)
        session.start(0)
        session.uncaught_exception(RuntimeError("boom"))
        assert session.wait_for(10) == 1

        # The native wait is still running, so the tracker is not freed
        session.stop()
        native.return_value.free.assert_not_called()
        release.set()

    def test_wait_timeout(self, native):
        """Waiting past the timeout returns the timeout code."""
        release = threading.Event()
        native.return_value.wait_for.side_effect = lambda: release.wait(10)
        session = RabitTrackerSession(2)
        session.start(0)
        assert session.wait_for(0.05) == TIMEOUT_CODE
        release.set()

    def test_first_code_wins(self, native):
        """A failure reported after success does not change the code."""
        session = RabitTrackerSession(1)
        session.start(0)
        assert session.wait_for(10) == 0
        session.uncaught_exception(RuntimeError("late"))
        assert session.wait_for(10) == 0
