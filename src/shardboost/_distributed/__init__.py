"""Partitioned datasets for distributed training.

A `PartitionedDataset` is a lazy collection split into a fixed number of
partitions. Each partition is a picklable zero-argument callable that
yields the partition's rows, so transformations only compose callables
and nothing runs until `collect()` or a shuffle stage (`repartition`,
`group_by`, `persist`).

Where rows are computed is decided by an executor:

- `LocalExecutor`: threads or processes on this machine (joblib).
- `RayExecutor`: Ray tasks (requires the ``distributed`` extra).

Every partition of a `collect()` runs concurrently, which collective
training requires: a worker blocks in allreduce until all ranks join.
"""

from __future__ import annotations

import itertools
import logging
import random
import threading
from typing import Any, Callable, Hashable, Iterable, Iterator, Protocol, Sequence, TypeVar

from ._local import LocalExecutor
from ._ray import RayExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")
Partition = Callable[[], Iterable[Any]]


class Executor(Protocol):
    """Runs partitions and stores materialized rows."""

    def run(
        self,
        partitions: Sequence[Partition],
        cancel_event: threading.Event | None = None,
    ) -> list[list[Any]]:
        """Compute all partitions concurrently, returning their rows."""
        ...

    def store(self, rows: list[Any]) -> Partition:
        """Keep ``rows`` and return a partition reading them back."""
        ...

    def release(self, partition: Partition) -> None:
        """Drop rows kept by `store`."""
        ...

    def wait_for_slots(self, n_tasks: int, timeout: float) -> bool:
        """Wait up to ``timeout`` seconds until ``n_tasks`` tasks can run at once."""
        ...


# =============================================================================
# Partition Callables
# =============================================================================

class _EmptyPartition:
    def __call__(self) -> Iterator[Any]:
        return iter(())


class _MappedPartition:
    def __init__(self, parent: Partition, index: int, fn: Callable):
        self.parent = parent
        self.index = index
        self.fn = fn

    def __call__(self) -> Iterable[Any]:
        return self.fn(self.index, iter(self.parent()))


class _ZippedPartition:
    def __init__(self, left: Partition, right: Partition, index: int, fn: Callable):
        self.left = left
        self.right = right
        self.index = index
        self.fn = fn

    def __call__(self) -> Iterable[Any]:
        return self.fn(self.index, iter(self.left()), iter(self.right()))


def _round_robin(rows_per_partition: list[list[Any]], num_partitions: int) -> list[list[Any]]:
    """Distribute rows over ``num_partitions`` buckets, ignoring their content.

    Each source partition starts at an offset seeded by its index, so small
    partitions do not all pile into bucket 0.
    """
    buckets: list[list[Any]] = [[] for _ in range(num_partitions)]
    for source_index, rows in enumerate(rows_per_partition):
        start = random.Random(source_index).randrange(num_partitions)
        for offset, row in enumerate(rows):
            buckets[(start + offset) % num_partitions].append(row)
    return buckets


def _hash_group(
    rows_per_partition: list[list[Any]],
    key: Callable[[Any], Hashable],
    num_partitions: int,
) -> list[list[tuple[Hashable, list[Any]]]]:
    buckets: list[dict[Hashable, list[Any]]] = [{} for _ in range(num_partitions)]
    for rows in rows_per_partition:
        for row in rows:
            k = key(row)
            buckets[hash(k) % num_partitions].setdefault(k, []).append(row)
    return [list(bucket.items()) for bucket in buckets]


# =============================================================================
# Partitioned Dataset
# =============================================================================

class PartitionedDataset:
    """Lazy partitioned collection.

    Args:
        partitions: One zero-argument callable per partition.
        executor: Executor used by `collect()` and shuffle stages.
            Defaults to a `LocalExecutor`.

    Example:
        >>> data = PartitionedDataset.from_sequence(range(10), num_partitions=3)
        >>> doubled = data.map_partitions(lambda i, rows: (2 * r for r in rows))
        >>> doubled.collect()
        [[0, 2, 4, 6], [8, 10, 12], [14, 16, 18]]
    """

    def __init__(self, partitions: Sequence[Partition], executor: Executor | None = None):
        self._partitions = list(partitions)
        self.executor = executor if executor is not None else LocalExecutor()
        self._stored = False

    # -------------------------------------------------------------------------
    # Construction
    # -------------------------------------------------------------------------

    @classmethod
    def from_partitions(
        cls,
        partitions: Sequence[Iterable[Any]],
        executor: Executor | None = None,
    ) -> PartitionedDataset:
        """Create a dataset from already partitioned rows."""
        executor = executor if executor is not None else LocalExecutor()
        dataset = cls([executor.store(list(rows)) for rows in partitions], executor)
        dataset._stored = True
        return dataset

    @classmethod
    def from_sequence(
        cls,
        rows: Iterable[Any],
        num_partitions: int,
        executor: Executor | None = None,
    ) -> PartitionedDataset:
        """Split ``rows`` into contiguous, near-equal partitions, keeping order."""
        if num_partitions <= 0:
            raise ValueError(f"num_partitions must be > 0, got {num_partitions}")
        rows = list(rows)
        base, extra = divmod(len(rows), num_partitions)
        chunks, start = [], 0
        for i in range(num_partitions):
            stop = start + base + (1 if i < extra else 0)
            chunks.append(rows[start:stop])
            start = stop
        return cls.from_partitions(chunks, executor)

    @classmethod
    def empty(cls, num_partitions: int, executor: Executor | None = None) -> PartitionedDataset:
        """Dataset of ``num_partitions`` partitions without rows."""
        return cls([_EmptyPartition() for _ in range(num_partitions)], executor)

    # -------------------------------------------------------------------------
    # Transformations
    # -------------------------------------------------------------------------

    @property
    def num_partitions(self) -> int:
        return len(self._partitions)

    @property
    def partitions(self) -> list[Partition]:
        return list(self._partitions)

    def map_partitions(self, fn: Callable[[int, Iterator[Any]], Iterable[Any]]) -> PartitionedDataset:
        """Apply ``fn(partition_id, rows)`` once per partition (lazy)."""
        return PartitionedDataset(
            [_MappedPartition(p, i, fn) for i, p in enumerate(self._partitions)],
            self.executor,
        )

    def zip_partitions(
        self,
        other: PartitionedDataset,
        fn: Callable[[int, Iterator[Any], Iterator[Any]], Iterable[Any]],
    ) -> PartitionedDataset:
        """Combine partition ``i`` of both datasets with ``fn(i, left, right)``."""
        if other.num_partitions != self.num_partitions:
            raise ValueError(
                "can only zip datasets with the same number of partitions, "
                f"got {self.num_partitions} and {other.num_partitions}"
            )
        return PartitionedDataset(
            [
                _ZippedPartition(left, right, i, fn)
                for i, (left, right) in enumerate(zip(self._partitions, other._partitions))
            ],
            self.executor,
        )

    def union(self, other: PartitionedDataset) -> PartitionedDataset:
        """Partitions of this dataset followed by the partitions of ``other``."""
        return PartitionedDataset(self._partitions + other._partitions, self.executor)

    def repartition(self, num_partitions: int) -> PartitionedDataset:
        """Shuffle rows into exactly ``num_partitions`` partitions.

        Row order is not preserved. Returns ``self`` if the partition count
        already matches.
        """
        if num_partitions <= 0:
            raise ValueError(f"num_partitions must be > 0, got {num_partitions}")
        if num_partitions == self.num_partitions:
            return self
        logger.debug("shuffling %d partitions into %d", self.num_partitions, num_partitions)
        rows = self.executor.run(self._partitions)
        buckets = _round_robin(rows, num_partitions)
        return PartitionedDataset.from_partitions(buckets, self.executor)

    def group_by(
        self,
        key: Callable[[Any], Hashable],
        num_partitions: int | None = None,
    ) -> PartitionedDataset:
        """Shuffle rows so each partition yields ``(key, rows_with_key)`` pairs."""
        num_partitions = num_partitions or self.num_partitions
        rows = self.executor.run(self._partitions)
        return PartitionedDataset.from_partitions(
            _hash_group(rows, key, num_partitions), self.executor,
        )

    # -------------------------------------------------------------------------
    # Actions
    # -------------------------------------------------------------------------

    def persist(self) -> PartitionedDataset:
        """Materialize all partitions once; later reads reuse the rows."""
        if self._stored:
            return self
        return PartitionedDataset.from_partitions(self.executor.run(self._partitions), self.executor)

    def unpersist(self) -> None:
        """Release rows kept by `persist` or `from_partitions`."""
        if not self._stored:
            return
        for partition in self._partitions:
            self.executor.release(partition)
        self._stored = False

    def collect(self, cancel_event: threading.Event | None = None) -> list[list[Any]]:
        """Compute every partition concurrently and return the rows per partition."""
        return self.executor.run(self._partitions, cancel_event)

    def count(self) -> int:
        return sum(len(rows) for rows in self.collect())

    def __repr__(self) -> str:
        return (
            f"PartitionedDataset(num_partitions={self.num_partitions}, "
            f"executor={type(self.executor).__name__})"
        )


def chain_first(first: T, rest: Iterator[T]) -> Iterator[T]:
    """Put back an element taken from ``rest``."""
    return itertools.chain((first,), rest)


__all__ = [
    "Executor",
    "LocalExecutor",
    "PartitionedDataset",
    "RayExecutor",
    "chain_first",
]
