"""Distributed gradient boosting estimator.

Wraps `train_distributed` behind a scikit-learn-like ``fit`` / ``predict``
API for data that fits in the driver's memory. Rows are split into one
partition per worker; every worker trains on its own shard and the workers
synchronize through the native library's collective after each round.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Mapping

import numpy as np

from .._backends import get_backend
from .._distributed import LocalExecutor, PartitionedDataset
from .._params import TrackerConf, TrainingParams
from .._point import LabeledPoint
from .._training import train_distributed, train_distributed_columnar
from .._watches import ColumnarSource

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._backends import NativeBackend
    from .._distributed import Executor


def _split_rows(n_samples: int, n_parts: int) -> list[slice]:
    base, extra = divmod(n_samples, n_parts)
    slices, start = [], 0
    for i in range(n_parts):
        stop = start + base + (1 if i < extra else 0)
        slices.append(slice(start, stop))
        start = stop
    return slices


def _optional(values: NDArray | None, rows) -> NDArray | None:
    return None if values is None else values[rows]


@dataclass
class DistributedGradientBoosting:
    """Gradient boosting trained by ``n_workers`` cooperating workers.

    Args:
        n_workers: Number of workers (and data partitions).
        n_rounds: Number of boosting rounds.
        objective: Booster objective, e.g. 'reg:squarederror',
            'binary:logistic' or 'rank:pairwise'.
        max_depth: Maximum depth of each tree.
        learning_rate: Shrinkage factor applied to each tree.
        eval_metric: Metric reported for the watches. None uses the
            objective's default.
        missing: Feature value treated as missing.
        booster_params: Extra booster parameters; override the fields above.
        checkpoint_path: Directory for checkpoints (None disables them).
        checkpoint_interval: Rounds between checkpoints.
        num_early_stopping_rounds: Early stopping patience (0 disables).
        maximize_evaluation_metrics: Whether larger metric values are better.
        use_external_memory: Back training matrices by an on-disk cache.
        tracker_conf: Rendezvous tracker settings.
        seed: Random seed.
        executor: Executor running the workers. Defaults to a process based
            `LocalExecutor`.
        backend: Native backend. Defaults to `get_backend()`.
        tracker_factory: ``(n_workers, tracker_conf) -> TrackerSession``.
            Defaults to xgboost's rabit tracker.

    Example:
        >>> import shardboost as sb
        >>> model = sb.DistributedGradientBoosting(n_workers=2, n_rounds=50)
        >>> model.fit(X_train, y_train, eval_set={"valid": (X_val, y_val)})
        >>> predictions = model.predict(X_test)
        >>> model.training_summary_["valid"][-1]

        # Ranking: group ids per row
        >>> ranker = sb.DistributedGradientBoosting(objective='rank:pairwise')
        >>> ranker.fit(X, relevance, group=query_ids)
    """

    n_workers: int = 2
    n_rounds: int = 100
    objective: str = 'reg:squarederror'
    max_depth: int = 6
    learning_rate: float = 0.3
    eval_metric: str | None = None
    missing: float = float("nan")
    booster_params: dict[str, Any] = field(default_factory=dict)
    checkpoint_path: str | None = None
    checkpoint_interval: int = 0
    num_early_stopping_rounds: int = 0
    maximize_evaluation_metrics: bool | None = None
    use_external_memory: bool = False
    tracker_conf: TrackerConf = field(default_factory=TrackerConf)
    seed: int | None = None
    executor: Executor | None = field(default=None, repr=False)
    backend: NativeBackend | None = field(default=None, repr=False)
    tracker_factory: Callable | None = field(default=None, repr=False)

    # Fitted attributes (not init)
    booster_: Any = field(default=None, init=False, repr=False)
    training_summary_: dict[str, NDArray] = field(default_factory=dict, init=False, repr=False)

    def _training_params(self, custom_obj: Callable | None) -> TrainingParams:
        params = {
            "objective": self.objective,
            "max_depth": self.max_depth,
            "eta": self.learning_rate,
        }
        if self.eval_metric is not None:
            params["eval_metric"] = self.eval_metric
        params.update(self.booster_params)
        return TrainingParams(
            num_workers=self.n_workers,
            num_round=self.n_rounds,
            booster_params=params,
            use_external_memory=self.use_external_memory,
            missing=self.missing,
            custom_obj=custom_obj,
            objective_type=self._objective_type() if custom_obj is not None else None,
            tracker_conf=self.tracker_conf,
            checkpoint_path=self.checkpoint_path,
            checkpoint_interval=self.checkpoint_interval,
            seed=self.seed,
            num_early_stopping_rounds=self.num_early_stopping_rounds,
            maximize_evaluation_metrics=self.maximize_evaluation_metrics,
        )

    def _objective_type(self) -> str:
        if self.objective.startswith(("binary:", "multi:")):
            return "classification"
        return "regression"

    def _executor(self) -> Executor:
        if self.executor is not None:
            return self.executor
        return LocalExecutor(prefer="processes")

    def fit(
        self,
        X: NDArray,
        y: NDArray,
        group: NDArray | None = None,
        sample_weight: NDArray | None = None,
        base_margin: NDArray | None = None,
        eval_set: Mapping[str, tuple] | None = None,
        obj: Callable | None = None,
    ) -> DistributedGradientBoosting:
        """Fit the model.

        Args:
            X: Training features, shape (n_samples, n_features).
            y: Training targets, shape (n_samples,).
            group: Group id per row, for ranking objectives.
            sample_weight: Weight per row. For ranking, rows of one group
                must share their weight.
            base_margin: Initial prediction per row.
            eval_set: Named evaluation sets, ``name -> (X, y)``, or
                ``name -> (X, y, group)`` for ranking.
            obj: Custom objective ``(preds, matrix) -> (grad, hess)``.

        Returns:
            self: The fitted model.
        """
        X = np.asarray(X, dtype=np.float32)
        y = np.asarray(y, dtype=np.float32).ravel()
        if X.ndim != 2:
            raise ValueError(f"X must be 2-D, got shape {X.shape}")
        if X.shape[0] != y.shape[0]:
            raise ValueError(f"X has {X.shape[0]} rows but y has {y.shape[0]}")
        if X.shape[0] < self.n_workers:
            raise ValueError(
                f"need at least one row per worker, got {X.shape[0]} rows for "
                f"{self.n_workers} workers"
            )

        params = self._training_params(obj)
        executor = self._executor()
        backend = self.backend if self.backend is not None else get_backend()
        eval_set = dict(eval_set or {})

        if group is None:
            train = self._columnar_dataset(X, y, sample_weight, base_margin, executor)
            evals = {
                name: self._columnar_dataset(data[0], data[1], None, None, executor)
                for name, data in eval_set.items()
            }
            model, metrics = train_distributed_columnar(
                train, params, eval_sets=evals, backend=backend,
                tracker_factory=self.tracker_factory,
            )
        else:
            train = self._point_dataset(X, y, group, sample_weight, base_margin, executor)
            evals = {}
            for name, data in eval_set.items():
                if len(data) != 3:
                    raise ValueError(f"eval set '{name}' must be (X, y, group) for ranking")
                evals[name] = self._point_dataset(*data, None, None, executor)
            model, metrics = train_distributed(
                train, params, has_group=True, eval_sets=evals, backend=backend,
                tracker_factory=self.tracker_factory,
            )

        self.booster_ = model
        self.training_summary_ = metrics
        return self

    def _columnar_dataset(self, X, y, weight, base_margin, executor) -> PartitionedDataset:
        X = np.asarray(X, dtype=np.float32)
        y = np.asarray(y, dtype=np.float32).ravel()
        weight = None if weight is None else np.asarray(weight, dtype=np.float32)
        base_margin = None if base_margin is None else np.asarray(base_margin, dtype=np.float32)
        # Fewer rows than workers leaves some partitions without a block
        blocks = [
            [ColumnarSource(X[rows], y[rows], _optional(weight, rows), _optional(base_margin, rows))]
            if rows.stop > rows.start else []
            for rows in _split_rows(X.shape[0], self.n_workers)
        ]
        return PartitionedDataset.from_partitions(blocks, executor)

    def _point_dataset(self, X, y, group, weight, base_margin, executor) -> PartitionedDataset:
        X = np.asarray(X, dtype=np.float32)
        y = np.asarray(y, dtype=np.float32).ravel()
        group = np.asarray(group).ravel()
        n_samples = X.shape[0]
        weight = np.ones(n_samples) if weight is None else np.asarray(weight, dtype=np.float64)
        base_margin = (
            np.full(n_samples, np.nan) if base_margin is None
            else np.asarray(base_margin, dtype=np.float64)
        )

        # Stable sort keeps the row order within each group
        order = np.argsort(group, kind="stable")
        points = [
            LabeledPoint.dense(
                float(y[i]), X[i],
                weight=float(weight[i]),
                group=int(group[i]),
                base_margin=float(base_margin[i]),
            )
            for i in order
        ]
        return PartitionedDataset.from_sequence(points, self.n_workers, executor)

    def predict(self, X: NDArray) -> NDArray:
        """Predict with the trained model.

        Args:
            X: Features, shape (n_samples, n_features).

        Returns:
            predictions: Shape (n_samples,).
        """
        if self.booster_ is None:
            raise RuntimeError("Model not fitted. Call fit() first.")
        backend = self.backend if self.backend is not None else get_backend()
        return backend.predict(self.booster_, X, self.missing)
