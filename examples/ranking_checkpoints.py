#!/usr/bin/env python
"""Learning to rank on partitioned data, with checkpoints.

This example demonstrates:
- Building LabeledPoint rows with query groups
- Query groups that straddle partition boundaries (stitched automatically)
- Training in checkpoint rounds and resuming from the latest checkpoint
"""

import tempfile

import numpy as np

import shardboost as sb


def make_queries(n_queries: int = 200, docs_per_query: int = 10, seed: int = 0):
    """Rows ordered by query id, as ranking training requires."""
    rng = np.random.default_rng(seed)
    points = []
    for query in range(n_queries):
        X = rng.standard_normal((docs_per_query, 5)).astype(np.float32)
        relevance = np.clip(np.round(X[:, 0] + X[:, 1]), 0, 3)
        for features, label in zip(X, relevance):
            points.append(sb.LabeledPoint.dense(float(label), features, group=query))
    return points


def main():
    print("=" * 60)
    print("shardboost Ranking Example")
    print("=" * 60)

    # Each worker joins the collective from its own process
    executor = sb.LocalExecutor(prefer="processes")

    # 7 partitions of 2000 rows: many queries are split across two partitions
    data = sb.PartitionedDataset.from_sequence(make_queries(), num_partitions=7, executor=executor)
    valid = sb.PartitionedDataset.from_sequence(make_queries(50, seed=1), num_partitions=2, executor=executor)

    with tempfile.TemporaryDirectory() as ckpt:
        params = sb.TrainingParams(
            num_workers=2,
            num_round=30,
            booster_params={"objective": "rank:pairwise", "eval_metric": "ndcg@5"},
            checkpoint_path=ckpt,
            checkpoint_interval=10,
        )
        model, metrics = sb.train_distributed(
            data, params, has_group=True, eval_sets={"valid": valid},
        )
        print(f"\nCheckpoints kept: {sb.CheckpointManager(ckpt).versions()}")
        print(f"valid ndcg@5 after {params.num_round} rounds: {metrics['valid'][-1]:.4f}")


if __name__ == "__main__":
    main()
