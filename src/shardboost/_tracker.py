"""Rendezvous tracker sessions.

Workers of one round find each other through a tracker: it hands every
worker the address it must connect to and waits until all of them have
shut down. A session is used for exactly one round.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Protocol

from xgboost.core import XGBoostError
from xgboost.tracker import RabitTracker

from ._errors import TrackerError
from ._params import TrackerConf

logger = logging.getLogger(__name__)

# Return code of `wait_for` when the wait itself timed out
TIMEOUT_CODE = 2


class TrackerSession(Protocol):
    """One round's rendezvous handle."""

    def start(self, timeout: float) -> bool:
        """Bind and start listening; False if the tracker could not start."""
        ...

    def worker_environment(self) -> dict[str, Any]:
        """Settings each worker needs to join the collective."""
        ...

    def wait_for(self, timeout: float) -> int:
        """Block until all workers finished; 0 on success. ``timeout <= 0`` waits forever."""
        ...

    def uncaught_exception(self, exc: BaseException) -> None:
        """Report a failure of the job driving the workers."""
        ...

    def stop(self) -> None: ...


class RabitTrackerSession:
    """`TrackerSession` over xgboost's ``RabitTracker``.

    The native wait runs on a daemon thread so that a failure reported
    through `uncaught_exception` can end `wait_for` even while the native
    tracker still waits for workers that will never connect.

    Args:
        n_workers: Number of workers joining the round.
        conf: Tracker settings.
    """

    def __init__(self, n_workers: int, conf: TrackerConf | None = None):
        self.n_workers = n_workers
        self.conf = conf if conf is not None else TrackerConf()
        self._tracker: RabitTracker | None = None
        self._waiter: threading.Thread | None = None
        self._finished = threading.Event()
        self._native_done = threading.Event()
        self._lock = threading.Lock()
        self._code: int | None = None

    def start(self, timeout: float) -> bool:
        try:
            tracker = RabitTracker(
                n_workers=self.n_workers,
                host_ip=self.conf.host_ip,
                timeout=int(timeout),
            )
            tracker.start()
        except (OSError, XGBoostError) as exc:
            logger.error("failed to start tracker for %d workers: %s", self.n_workers, exc)
            return False

        self._tracker = tracker
        self._waiter = threading.Thread(
            target=self._wait_native, args=(tracker,), name="shardboost-tracker-wait", daemon=True,
        )
        self._waiter.start()
        return True

    def _wait_native(self, tracker: RabitTracker) -> None:
        try:
            tracker.wait_for()
        except XGBoostError as exc:
            logger.error("tracker failed: %s", exc)
            code = 1
        else:
            code = 0
        self._native_done.set()
        self._finish(code)

    def _finish(self, code: int) -> None:
        with self._lock:
            if self._code is None:
                self._code = code
        self._finished.set()

    def worker_environment(self) -> dict[str, Any]:
        if self._tracker is None:
            raise TrackerError("tracker is not started")
        return dict(self._tracker.worker_args())

    def wait_for(self, timeout: float) -> int:
        if not self._finished.wait(timeout if timeout > 0 else None):
            logger.error("timed out after %.1fs waiting for %d workers", timeout, self.n_workers)
            return TIMEOUT_CODE
        return self._code

    def uncaught_exception(self, exc: BaseException) -> None:
        logger.error("training job failed: %r", exc)
        self._finish(1)

    def stop(self) -> None:
        if self._tracker is None:
            return
        tracker, self._tracker = self._tracker, None
        if self._waiter is not None and not self._native_done.is_set():
            # Freeing blocks on the native wait, which may never return
            logger.warning("tracker still waiting for workers; leaving it to the daemon thread")
            return
        tracker.free()

    def __repr__(self) -> str:
        return f"RabitTrackerSession(n_workers={self.n_workers}, code={self._code})"
