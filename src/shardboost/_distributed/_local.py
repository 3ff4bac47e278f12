"""In-process executor running partitions with joblib."""

from __future__ import annotations

import threading
from typing import Any, Callable, Iterable, Iterator, Sequence

from joblib import Parallel, delayed

from .._errors import JobCancelledError

PREFER_CHOICES = ("threads", "processes")


class _InMemoryPartition:
    """Rows kept in this process."""

    def __init__(self, rows: list[Any]):
        self.rows: list[Any] | None = rows

    def __call__(self) -> Iterator[Any]:
        if self.rows is None:
            raise RuntimeError("partition was released by unpersist()")
        return iter(self.rows)


def _compute_partition(partition: Callable[[], Iterable[Any]]) -> list[Any]:
    return list(partition())


class LocalExecutor:
    """Run every partition on its own joblib worker.

    Args:
        n_jobs: Number of workers. Defaults to one per partition, which is
            required when partitions take part in collective communication.
        prefer: 'threads' or 'processes'. Native libraries that keep one
            collective communicator per process (xgboost) need 'processes'
            for multi-worker training.
    """

    def __init__(self, n_jobs: int | None = None, prefer: str = "threads"):
        if prefer not in PREFER_CHOICES:
            raise ValueError(f"prefer must be one of {PREFER_CHOICES}, got '{prefer}'")
        self.n_jobs = n_jobs
        self.prefer = prefer

    def run(
        self,
        partitions: Sequence[Callable[[], Iterable[Any]]],
        cancel_event: threading.Event | None = None,
    ) -> list[list[Any]]:
        if not partitions:
            return []

        n_jobs = self.n_jobs or len(partitions)
        if self.prefer == "processes":
            # Events cannot cross the process boundary; check before dispatch
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError("job cancelled before it started")
            return Parallel(n_jobs=n_jobs, prefer="processes")(
                delayed(_compute_partition)(p) for p in partitions
            )

        def compute(index: int, partition) -> list[Any]:
            if cancel_event is not None and cancel_event.is_set():
                raise JobCancelledError(f"partition {index} cancelled before it started")
            return list(partition())

        return Parallel(n_jobs=n_jobs, prefer="threads")(
            delayed(compute)(i, p) for i, p in enumerate(partitions)
        )

    def wait_for_slots(self, n_tasks: int, timeout: float) -> bool:
        # joblib starts one worker per task on demand
        return True

    def store(self, rows: list[Any]) -> _InMemoryPartition:
        return _InMemoryPartition(rows)

    def release(self, partition) -> None:
        if isinstance(partition, _InMemoryPartition):
            partition.rows = None

    def __repr__(self) -> str:
        return f"LocalExecutor(n_jobs={self.n_jobs}, prefer='{self.prefer}')"
