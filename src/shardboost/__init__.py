"""shardboost: distributed gradient boosting over partitioned data.

Every worker owns one shard of the training set; workers train one shared
model, synchronizing through collective communication after each round.
shardboost prepares the shards (missing values, ranking groups split across
partition boundaries, evaluation sets aligned on the same partitions) and
drives the rounds, with checkpoints between them.

Quick Start:
    >>> import shardboost as sb
    >>>
    >>> model = sb.DistributedGradientBoosting(n_workers=4, n_rounds=100)
    >>> model.fit(X_train, y_train, eval_set={"valid": (X_val, y_val)})
    >>> predictions = model.predict(X_test)

Low-Level API (Partitioned Data):
    >>> points = [sb.LabeledPoint.dense(label, row) for label, row in zip(y, X)]
    >>> data = sb.PartitionedDataset.from_sequence(points, num_partitions=8)
    >>> params = sb.TrainingParams(
    ...     num_workers=4,
    ...     num_round=100,
    ...     booster_params={"objective": "binary:logistic", "eval_metric": "auc"},
    ...     checkpoint_path="/tmp/ckpt",
    ...     checkpoint_interval=20,
    ... )
    >>> model, metrics = sb.train_distributed(data, params, eval_sets={"valid": valid})
"""

import logging

__version__ = "0.1.0"

# Data
from ._point import LabeledPoint, LabeledPointGroup
from ._distributed import LocalExecutor, PartitionedDataset, RayExecutor

# Configuration and errors
from ._params import TrackerConf, TrainingParams
from ._errors import JobCancelledError, PartitionContractError, TrackerError, TrainingError

# Data preparation
from ._missing import process_missing_values, process_missing_values_with_group
from ._grouping import aggregate_by_group, iter_point_groups, stitch_group_fragments
from ._partition import (
    co_partition,
    co_partition_group_sets,
    repartition_for_training,
    repartition_for_training_group,
)
from ._watches import (
    ColumnarSource,
    GroupedRowSource,
    RowSource,
    Watches,
    build_grouped_watches_with_split,
    build_watches,
    build_watches_with_split,
)

# Training
from ._checkpoint import CheckpointManager
from ._tracker import RabitTrackerSession, TrackerSession
from ._training import RoundJob, train_distributed, train_distributed_columnar

# High-level API (scikit-learn-like)
from ._models import DistributedGradientBoosting

# Backend control
from ._backends import get_backend, set_backend

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Version
    "__version__",
    # Data
    "LabeledPoint",
    "LabeledPointGroup",
    "PartitionedDataset",
    "LocalExecutor",
    "RayExecutor",
    # Configuration
    "TrainingParams",
    "TrackerConf",
    # Errors
    "TrainingError",
    "PartitionContractError",
    "TrackerError",
    "JobCancelledError",
    # Data preparation
    "process_missing_values",
    "process_missing_values_with_group",
    "iter_point_groups",
    "stitch_group_fragments",
    "aggregate_by_group",
    "repartition_for_training",
    "repartition_for_training_group",
    "co_partition",
    "co_partition_group_sets",
    # Watches
    "Watches",
    "RowSource",
    "GroupedRowSource",
    "ColumnarSource",
    "build_watches",
    "build_watches_with_split",
    "build_grouped_watches_with_split",
    # Training
    "train_distributed",
    "train_distributed_columnar",
    "RoundJob",
    "CheckpointManager",
    "TrackerSession",
    "RabitTrackerSession",
    # High-level API
    "DistributedGradientBoosting",
    # Backend control
    "get_backend",
    "set_backend",
]
