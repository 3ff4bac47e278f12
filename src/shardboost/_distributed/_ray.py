"""Ray executor: partitions run as Ray tasks across a cluster.

Requires ``ray`` (``pip install shardboost[distributed]``).
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Sequence

from .._errors import JobCancelledError

try:
    import ray
except ImportError:
    ray = None

logger = logging.getLogger(__name__)


def _compute_partition(partition: Callable[[], Iterable[Any]]) -> list[Any]:
    return list(partition())


class _RayPartition:
    """Rows held in the Ray object store."""

    def __init__(self, ref):
        self.ref = ref

    def __call__(self) -> Iterator[Any]:
        if self.ref is None:
            raise RuntimeError("partition was released by unpersist()")
        return iter(ray.get(self.ref))


class RayExecutor:
    """Run every partition as a Ray task.

    All tasks of one `run` are submitted together, so the cluster needs
    enough free slots (``num_cpus_per_task`` each) to host every partition
    at once when training collectively.

    Args:
        num_cpus_per_task: CPUs reserved per partition task.
        poll_interval: Seconds between cancellation checks while waiting.
        init_kwargs: Passed to ``ray.init`` if Ray is not initialized yet.
    """

    def __init__(
        self,
        num_cpus_per_task: float = 1,
        poll_interval: float = 1.0,
        **init_kwargs,
    ):
        if ray is None:
            raise ImportError(
                "RayExecutor requires 'ray'. Install with 'pip install shardboost[distributed]'."
            )
        if not ray.is_initialized():
            ray.init(**init_kwargs)
        self.num_cpus_per_task = num_cpus_per_task
        self.poll_interval = poll_interval
        self._remote = ray.remote(_compute_partition)

    def run(
        self,
        partitions: Sequence[Callable[[], Iterable[Any]]],
        cancel_event: threading.Event | None = None,
    ) -> list[list[Any]]:
        refs = [
            self._remote.options(num_cpus=self.num_cpus_per_task).remote(p)
            for p in partitions
        ]
        pending = list(refs)
        while pending:
            _, pending = ray.wait(pending, num_returns=len(pending), timeout=self.poll_interval)
            if pending and cancel_event is not None and cancel_event.is_set():
                # Tasks already running may still finish
                for ref in pending:
                    ray.cancel(ref)
                raise JobCancelledError(f"{len(pending)} partition task(s) cancelled")
        return ray.get(refs)

    def wait_for_slots(self, n_tasks: int, timeout: float) -> bool:
        """Poll the cluster until it has free CPUs for ``n_tasks`` tasks.

        Returns False if the CPUs are still missing after ``timeout`` seconds.
        """
        needed = n_tasks * self.num_cpus_per_task
        deadline = time.monotonic() + timeout
        while True:
            available = ray.available_resources().get("CPU", 0.0)
            if available >= needed:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.error(
                    "cluster has %s free CPUs, %d tasks need %s", available, n_tasks, needed,
                )
                return False
            time.sleep(min(self.poll_interval, remaining))

    def store(self, rows: list[Any]) -> _RayPartition:
        return _RayPartition(ray.put(rows))

    def release(self, partition) -> None:
        if isinstance(partition, _RayPartition):
            partition.ref = None

    def __repr__(self) -> str:
        return f"RayExecutor(num_cpus_per_task={self.num_cpus_per_task})"
