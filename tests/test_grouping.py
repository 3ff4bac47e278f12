"""Tests for stitching ranking groups across partition boundaries."""

import pytest

from shardboost import (
    LabeledPoint,
    LabeledPointGroup,
    PartitionedDataset,
    aggregate_by_group,
    iter_point_groups,
    stitch_group_fragments,
)

from conftest import make_group_points


def _point(group, label):
    return LabeledPoint.dense(float(label), [float(label)], group=group)


def _labels(group):
    return [p.label for p in group.points]


class TestIterPointGroups:
    """Tests for iter_point_groups()."""

    def test_first_and_last_are_edge_groups(self):
        """Only the first and last group of a partition may continue elsewhere."""
        points = [_point(g, i) for i, g in enumerate([1, 1, 2, 3, 3, 4])]
        groups = list(iter_point_groups(points))
        assert [g.group_id for g in groups] == [1, 2, 3, 4]
        assert [g.is_edge_group for g in groups] == [True, False, False, True]
        assert [len(g) for g in groups] == [2, 1, 2, 1]

    def test_single_group_yielded_once(self):
        """A partition holding one group yields it once, as an edge."""
        groups = list(iter_point_groups([_point(5, 0), _point(5, 1)]))
        assert len(groups) == 1
        assert groups[0].is_edge_group
        assert _labels(groups[0]) == [0.0, 1.0]

    def test_two_groups_are_both_edges(self):
        """With two groups each one touches a partition boundary."""
        groups = list(iter_point_groups([_point(1, 0), _point(2, 1)]))
        assert [g.is_edge_group for g in groups] == [True, True]

    def test_empty(self):
        """An empty partition has no groups."""
        assert list(iter_point_groups([])) == []


class TestStitchGroupFragments:
    """Tests for stitch_group_fragments()."""

    def test_concatenates_in_partition_order(self):
        """Fragments are joined by partition id, not arrival order."""
        fragments = [
            (2, LabeledPointGroup(9, [_point(9, 5)], is_edge_group=True)),
            (0, LabeledPointGroup(9, [_point(9, 0), _point(9, 1)], is_edge_group=True)),
            (1, LabeledPointGroup(9, [_point(9, 2), _point(9, 3), _point(9, 4)], is_edge_group=True)),
        ]
        group = stitch_group_fragments(fragments)
        assert group.group_id == 9
        assert _labels(group) == [0.0, 1.0, 2.0, 3.0, 4.0, 5.0]
        assert group.partitions == (0, 1, 2)
        assert not group.is_edge_group

    def test_empty_raises(self):
        """There is nothing to stitch without fragments."""
        with pytest.raises(ValueError):
            stitch_group_fragments([])


class TestAggregateByGroup:
    """Tests for aggregate_by_group()."""

    def test_group_split_three_ways(self):
        """A group spanning partitions 0, 1 and 2 comes out as one group, in order."""
        partitions = [
            [_point(0, 0), _point(0, 1), _point(1, 2), _point(1, 3)],
            [_point(1, 4), _point(1, 5)],
            [_point(1, 6), _point(2, 7), _point(3, 8), _point(3, 9)],
        ]
        data = PartitionedDataset.from_partitions(partitions)
        groups = [g for rows in aggregate_by_group(data).collect() for g in rows]

        by_id = {g.group_id: g for g in groups}
        assert sorted(by_id) == [0, 1, 2, 3]
        assert len(groups) == 4
        assert _labels(by_id[1]) == [2.0, 3.0, 4.0, 5.0, 6.0]
        assert by_id[1].partitions == (0, 1, 2)
        assert _labels(by_id[2]) == [7.0]
        assert by_id[2].partitions == (2,)

    @pytest.mark.parametrize("order", [[0, 1, 2], [2, 1, 0], [1, 2, 0]])
    def test_stitch_order_independent_of_observation(self, order):
        """Any arrival order gives the same stitched group."""
        fragments = {
            0: LabeledPointGroup(4, [_point(4, 0)], is_edge_group=True),
            1: LabeledPointGroup(4, [_point(4, 1), _point(4, 2)], is_edge_group=True),
            2: LabeledPointGroup(4, [_point(4, 3)], is_edge_group=True),
        }
        group = stitch_group_fragments([(pid, fragments[pid]) for pid in order])
        assert _labels(group) == [0.0, 1.0, 2.0, 3.0]

    def test_every_point_kept_once(self):
        """Random partitioning neither drops nor duplicates points."""
        points = make_group_points([3, 1, 4, 1, 5, 9, 2, 6])
        data = PartitionedDataset.from_sequence(points, num_partitions=5)
        groups = [g for rows in aggregate_by_group(data).collect() for g in rows]

        assert sorted(g.group_id for g in groups) == list(range(8))
        assert sorted(len(g) for g in groups) == sorted([3, 1, 4, 1, 5, 9, 2, 6])
        for g in groups:
            assert all(p.group == g.group_id for p in g.points)
            assert [p.label for p in g.points] == [float(j) for j in range(len(g))]

    def test_inner_groups_stay_in_partition(self):
        """Inner groups are complete where they are and are not shuffled."""
        data = PartitionedDataset.from_partitions([
            [_point(0, 0), _point(1, 1), _point(2, 2)],
        ])
        complete = aggregate_by_group(data).collect()[0]
        assert [g.group_id for g in complete] == [1]
        assert complete[0].partitions == (0,)
