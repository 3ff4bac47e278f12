"""Aligning training and evaluation data on the worker partitions."""

from __future__ import annotations

import logging
from typing import Any, Iterator, Mapping

from ._distributed import PartitionedDataset, chain_first
from ._errors import PartitionContractError
from ._grouping import aggregate_by_group

logger = logging.getLogger(__name__)

TRAIN_NAME = "train"

_NO_ROW = object()


def repartition_for_training(data: PartitionedDataset, n_workers: int) -> PartitionedDataset:
    """Resize ``data`` to ``n_workers`` partitions (no-op if it already matches)."""
    if data.num_partitions != n_workers:
        logger.info("repartitioning training set to %d partitions", n_workers)
        return data.repartition(n_workers)
    return data


def repartition_for_training_group(
    data: PartitionedDataset,
    n_workers: int,
) -> PartitionedDataset:
    """Stitch ranking groups, then resize to ``n_workers`` partitions.

    Returns a dataset of `LabeledPointGroup`.
    """
    groups = aggregate_by_group(data)
    logger.info("repartitioning training group set to %d partitions", n_workers)
    return groups.repartition(n_workers)


class _AppendNamed:
    """Zip function adding one named dataset to the per-partition pairs."""

    def __init__(self, name: str):
        self.name = name

    def __call__(
        self,
        partition_id: int,
        named: Iterator[tuple[str, Iterator[Any]]],
        rows: Iterator[Any],
    ) -> Iterator[tuple[str, Iterator[Any]]]:
        first = next(rows, _NO_ROW)
        if first is _NO_ROW:
            logger.error(
                "dataset '%s' has no rows on partition %d; every dataset needs at "
                "least as many rows as there are workers",
                self.name, partition_id,
            )
            raise PartitionContractError(
                f"too few elements in dataset '{self.name}': partition {partition_id} is empty"
            )
        yield from named
        yield self.name, chain_first(first, rows)


def _co_partition(
    datasets: Mapping[str, PartitionedDataset],
    n_workers: int,
) -> PartitionedDataset:
    executor = next(iter(datasets.values())).executor
    zipped = PartitionedDataset.empty(n_workers, executor)
    for name, data in datasets.items():
        if data.num_partitions != n_workers:
            data = data.repartition(n_workers)
        zipped = zipped.zip_partitions(data, _AppendNamed(name))
    return zipped


def co_partition(
    training_data: PartitionedDataset,
    eval_sets: Mapping[str, PartitionedDataset],
    n_workers: int,
) -> PartitionedDataset:
    """Align the training set and named eval sets on ``n_workers`` partitions.

    Partition ``i`` of the result yields ``(name, rows)`` pairs, training
    set first, then eval sets in insertion order. An empty dataset on any
    partition raises `PartitionContractError` when that partition is
    consumed.

    Args:
        training_data: Dataset of points (or groups).
        eval_sets: Named eval datasets of the same row type.
        n_workers: Number of worker partitions.
    """
    if TRAIN_NAME in eval_sets:
        raise ValueError(f"'{TRAIN_NAME}' is reserved for the training set")
    return _co_partition({TRAIN_NAME: training_data, **eval_sets}, n_workers)


def co_partition_group_sets(
    grouped_training_data: PartitionedDataset,
    eval_sets: Mapping[str, PartitionedDataset],
    n_workers: int,
) -> PartitionedDataset:
    """`co_partition` for ranking: eval point sets are stitched into groups first.

    Args:
        grouped_training_data: Training set already aggregated into
            `LabeledPointGroup` values (see `repartition_for_training_group`).
        eval_sets: Named eval sets of points.
        n_workers: Number of worker partitions.
    """
    grouped_evals: dict[str, PartitionedDataset] = {
        name: aggregate_by_group(data) for name, data in eval_sets.items()
    }
    return co_partition(grouped_training_data, grouped_evals, n_workers)

