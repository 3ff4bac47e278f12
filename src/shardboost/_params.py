"""Configuration for distributed training.

All validation happens when the dataclasses are created, so a bad
combination fails before any tracker starts or any worker is launched.
"""

from __future__ import annotations

import os
import warnings
from dataclasses import dataclass, field
from typing import Any, Callable

SUPPORTED_TREE_METHODS = ("auto", "exact", "approx", "hist")
OBJECTIVE_TYPES = ("classification", "regression")


@dataclass(frozen=True)
class TrackerConf:
    """Rendezvous tracker settings.

    Args:
        worker_connection_timeout: Seconds to wait for all workers to
            connect to the tracker. 0 disables the timeout; a finite value
            keeps the tracker from hanging forever on a lost worker.
        host_ip: Address workers use to reach the tracker. Auto-detected
            when None.
    """
    worker_connection_timeout: float = 0.0
    host_ip: str | None = None

    def __post_init__(self):
        if self.worker_connection_timeout < 0:
            raise ValueError(
                f"worker_connection_timeout must be >= 0, got {self.worker_connection_timeout}"
            )


@dataclass
class TrainingParams:
    """Parameters of one distributed training run.

    Args:
        num_workers: Number of worker partitions (one training task each).
        num_round: Total number of boosting rounds.
        booster_params: Parameters passed through to the booster
            (objective, max_depth, eta, eval_metric, ...).
        use_external_memory: Back training matrices by an on-disk cache in a
            per-partition temp directory.
        missing: Feature value treated as missing (NaN by default).
        custom_obj: Custom objective ``(preds, matrix) -> (grad, hess)``.
        custom_eval: Custom evaluation metric.
        objective_type: 'classification' or 'regression'; required with
            ``custom_obj``.
        tracker_conf: Rendezvous tracker settings.
        checkpoint_path: Directory for checkpoints. None disables them.
        checkpoint_interval: Rounds between checkpoints (0 disables them).
        train_test_ratio: Deprecated. Fraction of each partition's rows used
            for training; the rest forms a "test" watch.
        seed: Seed of the train/test split.
        num_early_stopping_rounds: Stop when the last eval metric has not
            improved for this many rounds (0 disables).
        maximize_evaluation_metrics: Whether larger metric values are better.
            Required when early stopping is enabled.
        cache_training_set: Materialize the repartitioned training set once
            and reuse it across checkpoint rounds.
        nthread: Threads per worker. Defaults to ``cores_per_task``.
        cores_per_task: Cores available to each worker task.
        tree_method: One of ``SUPPORTED_TREE_METHODS``.
        verify_worker_consistency: After each round, check that every
            worker returned an identical model.
        timeout_request_workers: Seconds to wait, before each round, for the
            executor to have room for all ``num_workers`` tasks at once. 0
            skips the check.
    """
    num_workers: int
    num_round: int
    booster_params: dict[str, Any] = field(default_factory=dict)
    use_external_memory: bool = False
    missing: float = float("nan")
    custom_obj: Callable | None = None
    custom_eval: Callable | None = None
    objective_type: str | None = None
    tracker_conf: TrackerConf = field(default_factory=TrackerConf)
    checkpoint_path: str | os.PathLike | None = None
    checkpoint_interval: int = 0
    train_test_ratio: float | None = None
    seed: int | None = None
    num_early_stopping_rounds: int = 0
    maximize_evaluation_metrics: bool | None = None
    cache_training_set: bool = False
    nthread: int | None = None
    cores_per_task: int = 1
    tree_method: str | None = None
    verify_worker_consistency: bool = False
    timeout_request_workers: float = 1800.0

    def __post_init__(self):
        if self.num_workers <= 0:
            raise ValueError(f"you must specify more than 0 workers, got {self.num_workers}")
        if self.num_round <= 0:
            raise ValueError(f"num_round must be > 0, got {self.num_round}")
        if not isinstance(self.tracker_conf, TrackerConf):
            raise TypeError(
                f"tracker_conf must be a TrackerConf, got {type(self.tracker_conf).__name__}"
            )
        if self.tree_method is not None and self.tree_method not in SUPPORTED_TREE_METHODS:
            raise ValueError(
                f"tree_method must be one of {', '.join(SUPPORTED_TREE_METHODS)}, "
                f"got '{self.tree_method}'"
            )
        if self.custom_obj is not None and self.objective_type not in OBJECTIVE_TYPES:
            raise ValueError(
                "objective_type must be 'classification' or 'regression' when a "
                "custom objective is given"
            )
        if self.train_test_ratio is not None:
            warnings.warn(
                "train_test_ratio is deprecated; pass explicit eval_sets instead",
                DeprecationWarning,
                stacklevel=3,
            )
            if not 0.0 < self.train_test_ratio <= 1.0:
                raise ValueError(
                    f"train_test_ratio must be in (0, 1], got {self.train_test_ratio}"
                )
        if self.num_early_stopping_rounds < 0:
            raise ValueError(
                f"num_early_stopping_rounds must be >= 0, got {self.num_early_stopping_rounds}"
            )
        if self.num_early_stopping_rounds > 0 and self.maximize_evaluation_metrics is None:
            raise ValueError(
                "maximize_evaluation_metrics has to be specified with early stopping"
            )
        if self.checkpoint_interval < 0:
            raise ValueError(f"checkpoint_interval must be >= 0, got {self.checkpoint_interval}")
        if self.checkpoint_interval > 0 and self.checkpoint_path is None:
            raise ValueError("checkpoint_interval > 0 requires a checkpoint_path")
        if self.timeout_request_workers < 0:
            raise ValueError(
                f"timeout_request_workers must be >= 0, got {self.timeout_request_workers}"
            )
        if self.cores_per_task <= 0:
            raise ValueError(f"cores_per_task must be > 0, got {self.cores_per_task}")
        if self.nthread is not None and self.nthread > self.cores_per_task:
            raise ValueError(
                f"the nthread configuration ({self.nthread}) must be no larger than "
                f"cores_per_task ({self.cores_per_task})"
            )
        self.missing = float(self.missing)

    def booster_params_for_task(self) -> dict[str, Any]:
        """Booster parameters with per-task overrides applied."""
        params = dict(self.booster_params)
        params["nthread"] = self.nthread if self.nthread is not None else self.cores_per_task
        if self.tree_method is not None:
            params["tree_method"] = self.tree_method
        if self.seed is not None:
            params.setdefault("seed", self.seed)
        return params

    def describe(self) -> str:
        """One ``name: value`` line per parameter, for logging."""
        lines = []
        for name in self.__dataclass_fields__:
            value = getattr(self, name)
            if callable(value):
                value = getattr(value, "__name__", type(value).__name__)
            lines.append(f"{name}: {value}")
        return "\n".join(lines)
