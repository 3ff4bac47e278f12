"""Ranking groups across partition boundaries.

Ranking objectives need all instances of a group on the same worker, but
input partitions are cut without regard to groups. Within a partition the
first and last group may be fragments of a group that continues in the
neighbouring partition; these "edge groups" are shuffled by group id and
their fragments concatenated in partition order. Groups strictly inside a
partition are complete and pass through untouched.

The input must be globally ordered so that the instances of each group are
contiguous; this module relies on that ordering and does not establish it.
"""

from __future__ import annotations

import itertools
from operator import attrgetter, itemgetter
from typing import TYPE_CHECKING, Iterable, Iterator

from ._point import LabeledPoint, LabeledPointGroup

if TYPE_CHECKING:
    from ._distributed import PartitionedDataset


def iter_point_groups(points: Iterable[LabeledPoint]) -> Iterator[LabeledPointGroup]:
    """Group consecutive points sharing a group id.

    The first and the last group of the stream are marked as edge groups.
    A stream holding a single group yields it once, as an edge group.
    """
    pending: LabeledPointGroup | None = None
    is_first = True
    for group_id, run in itertools.groupby(points, key=attrgetter("group")):
        if pending is not None:
            yield pending
        pending = LabeledPointGroup(group_id, tuple(run), is_edge_group=is_first)
        is_first = False
    if pending is not None:
        yield LabeledPointGroup(pending.group_id, pending.points, is_edge_group=True)


def stitch_group_fragments(
    fragments: Iterable[tuple[int, LabeledPointGroup]],
) -> LabeledPointGroup:
    """Concatenate fragments of one group in ascending partition order.

    Args:
        fragments: ``(partition_id, group)`` pairs, in any order.

    Returns:
        The complete group, with ``partitions`` recording the fragment origins.
    """
    ordered = sorted(fragments, key=itemgetter(0))
    if not ordered:
        raise ValueError("cannot stitch an empty set of fragments")
    group_id = ordered[0][1].group_id
    points = itertools.chain.from_iterable(group.points for _, group in ordered)
    return LabeledPointGroup(
        group_id,
        tuple(points),
        is_edge_group=False,
        partitions=tuple(partition_id for partition_id, _ in ordered),
    )


def _complete_groups(partition_id: int, points: Iterator[LabeledPoint]) -> Iterator[LabeledPointGroup]:
    for group in iter_point_groups(points):
        if not group.is_edge_group:
            yield LabeledPointGroup(group.group_id, group.points, partitions=(partition_id,))


def _edge_groups(
    partition_id: int,
    points: Iterator[LabeledPoint],
) -> Iterator[tuple[int, LabeledPointGroup]]:
    for group in iter_point_groups(points):
        if group.is_edge_group:
            yield partition_id, group


def _edge_group_id(item: tuple[int, LabeledPointGroup]) -> int:
    return item[1].group_id


def _stitch_partition(
    partition_id: int,
    keyed_fragments: Iterator[tuple[int, list[tuple[int, LabeledPointGroup]]]],
) -> Iterator[LabeledPointGroup]:
    for _, fragments in keyed_fragments:
        yield stitch_group_fragments(fragments)


def aggregate_by_group(points: PartitionedDataset) -> PartitionedDataset:
    """Turn a partitioned point dataset into a dataset of complete groups.

    Complete groups stay in their partition; edge groups are shuffled by
    group id and stitched. The result holds the complete groups followed by
    the stitched ones, as separate partitions.
    """
    complete = points.map_partitions(_complete_groups)
    stitched = (
        points.map_partitions(_edge_groups)
        .group_by(_edge_group_id)
        .map_partitions(_stitch_partition)
    )
    return complete.union(stitched)
