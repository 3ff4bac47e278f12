"""Tests for repartitioning and co-partitioning of training data."""

import pytest

from shardboost import (
    PartitionContractError,
    PartitionedDataset,
    co_partition,
    co_partition_group_sets,
    repartition_for_training,
    repartition_for_training_group,
)

from conftest import make_group_points, make_points


def _materialize(pairs_per_partition):
    return [[(name, list(rows)) for name, rows in pairs] for pairs in pairs_per_partition]


class TestRepartitionForTraining:
    """Tests for repartition_for_training() and the group variant."""

    def test_resizes_to_workers(self):
        """The training set gets one partition per worker."""
        data = PartitionedDataset.from_sequence(make_points(20), num_partitions=5)
        assert repartition_for_training(data, 2).num_partitions == 2

    def test_noop_when_matching(self):
        """A dataset that already matches is used as is."""
        data = PartitionedDataset.from_sequence(make_points(20), num_partitions=2)
        assert repartition_for_training(data, 2) is data

    def test_group_variant_keeps_groups_whole(self):
        """No group is split between training partitions."""
        points = make_group_points([4, 4, 4, 4, 4, 4])
        data = PartitionedDataset.from_sequence(points, num_partitions=5)
        groups = repartition_for_training_group(data, 3)
        assert groups.num_partitions == 3
        flat = [g for rows in groups.collect() for g in rows]
        assert sorted(g.group_id for g in flat) == list(range(6))
        assert all(len(g) == 4 for g in flat)


class TestCoPartition:
    """Tests for co_partition()."""

    def test_train_first_then_evals_in_order(self):
        """Each partition yields the training block first, then the eval sets in order."""
        train = PartitionedDataset.from_sequence(make_points(6), num_partitions=2)
        evals = {
            "valid": PartitionedDataset.from_sequence(make_points(4), num_partitions=2),
            "holdout": PartitionedDataset.from_sequence(make_points(2), num_partitions=2),
        }
        shards = _materialize(co_partition(train, evals, 2).collect())
        assert len(shards) == 2
        for shard in shards:
            assert [name for name, _ in shard] == ["train", "valid", "holdout"]
        assert [len(rows) for _, rows in shards[0]] == [3, 2, 1]

    def test_eval_set_smaller_than_workers(self):
        """Two eval rows cannot cover three workers."""
        train = PartitionedDataset.from_sequence(make_points(30), num_partitions=3)
        evals = {"valid": PartitionedDataset.from_sequence(make_points(2), num_partitions=1)}
        with pytest.raises(PartitionContractError, match="too few elements in dataset 'valid'"):
            _materialize(co_partition(train, evals, 3).collect())

    def test_empty_training_partition(self):
        """An empty training partition fails the contract."""
        train = PartitionedDataset.from_partitions([[*make_points(3)], []])
        with pytest.raises(PartitionContractError, match="partition 1 is empty"):
            _materialize(co_partition(train, {}, 2).collect())

    def test_train_name_reserved(self):
        """An eval set cannot be called 'train'."""
        train = PartitionedDataset.from_sequence(make_points(4), num_partitions=2)
        with pytest.raises(ValueError, match="reserved"):
            co_partition(train, {"train": train}, 2)

    def test_group_sets_stitched(self):
        """Eval groups split across partitions are put back together."""
        train = repartition_for_training_group(
            PartitionedDataset.from_sequence(make_group_points([3, 3, 3, 3]), num_partitions=2), 2,
        )
        evals = {
            "valid": PartitionedDataset.from_sequence(make_group_points([2, 5, 2, 3, 3, 2, 4]), num_partitions=3),
        }
        shards = _materialize(co_partition_group_sets(train, evals, 2).collect())
        valid_groups = [g for shard in shards for name, rows in shard if name == "valid" for g in rows]
        assert sorted(len(g) for g in valid_groups) == [2, 2, 2, 3, 3, 4, 5]
