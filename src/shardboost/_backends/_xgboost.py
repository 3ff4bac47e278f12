"""xgboost backend.

Points are converted to CSR batches (scipy.sparse) and handed to
``xgboost.DMatrix``. In external memory mode the batches are spilled as
``.npz`` files next to the matrix cache prefix and streamed back through an
``xgboost.DataIter``, so the partition never has to fit in memory twice.
"""

from __future__ import annotations

import glob
from typing import TYPE_CHECKING, Any, Callable, Iterable, Mapping

import numpy as np
import xgboost as xgb
from scipy import sparse

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from .._point import LabeledPoint

# Rows per CSR batch in external memory mode
BATCH_ROWS = 65536


class XGBoostMatrix:
    """`NativeMatrix` over an ``xgboost.DMatrix``."""

    def __init__(self, dmatrix: xgb.DMatrix):
        self._dmatrix: xgb.DMatrix | None = dmatrix

    @property
    def dmatrix(self) -> xgb.DMatrix:
        if self._dmatrix is None:
            raise RuntimeError("matrix was already deleted")
        return self._dmatrix

    def row_count(self) -> int:
        return self.dmatrix.num_row()

    def set_base_margin(self, margin: NDArray) -> None:
        self.dmatrix.set_base_margin(np.asarray(margin, dtype=np.float32))

    def set_group(self, group_sizes: NDArray) -> None:
        self.dmatrix.set_group(np.asarray(group_sizes, dtype=np.uint32))

    def set_weight(self, weights: NDArray) -> None:
        self.dmatrix.set_weight(np.asarray(weights, dtype=np.float32))

    def delete(self) -> None:
        if self._dmatrix is None:
            return
        dmatrix, self._dmatrix = self._dmatrix, None
        # Frees the native handle now; the later finalizer sees no handle
        dmatrix.__del__()

    def __repr__(self) -> str:
        if self._dmatrix is None:
            return "XGBoostMatrix(deleted)"
        return f"XGBoostMatrix(rows={self._dmatrix.num_row()}, cols={self._dmatrix.num_col()})"


# =============================================================================
# Point Batches
# =============================================================================

class _CSRBatch:
    """Accumulates points as CSR arrays."""

    def __init__(self):
        self.data: list[np.ndarray] = []
        self.indices: list[np.ndarray] = []
        self.indptr = [0]
        self.labels: list[float] = []
        self.weights: list[float] = []
        self.n_features = 0

    def add(self, point: LabeledPoint) -> None:
        if point.indices is None:
            indices = np.arange(point.values.shape[0], dtype=np.int32)
        else:
            indices = point.indices
        self.data.append(point.values)
        self.indices.append(indices)
        self.indptr.append(self.indptr[-1] + point.values.shape[0])
        self.labels.append(point.label)
        self.weights.append(point.weight)
        self.n_features = max(self.n_features, point.size)

    def __len__(self) -> int:
        return len(self.labels)

    def arrays(self) -> dict[str, np.ndarray]:
        return {
            "data": np.concatenate(self.data) if self.data else np.empty(0, np.float32),
            "indices": np.concatenate(self.indices) if self.indices else np.empty(0, np.int32),
            "indptr": np.asarray(self.indptr, dtype=np.int64),
            "label": np.asarray(self.labels, dtype=np.float32),
            "weight": np.asarray(self.weights, dtype=np.float32),
        }


def _to_csr(arrays: Mapping[str, np.ndarray], n_features: int) -> sparse.csr_matrix:
    n_rows = arrays["label"].shape[0]
    return sparse.csr_matrix(
        (arrays["data"], arrays["indices"], arrays["indptr"]),
        shape=(n_rows, n_features),
    )


class _SpilledBatchIter(xgb.DataIter):
    """Streams spilled CSR batches back into xgboost."""

    def __init__(self, files: list[str], n_features: int, cache_prefix: str):
        self._files = files
        self._n_features = n_features
        self._position = 0
        super().__init__(cache_prefix=cache_prefix)

    def next(self, input_data: Callable) -> bool:
        if self._position == len(self._files):
            return False
        with np.load(self._files[self._position]) as batch:
            input_data(
                data=_to_csr(batch, self._n_features),
                label=batch["label"],
                weight=batch["weight"],
            )
        self._position += 1
        return True

    def reset(self) -> None:
        self._position = 0


class _SingleBatchIter(xgb.DataIter):
    """One in-memory block, exposed as an external memory source."""

    def __init__(self, features: NDArray, label: NDArray, cache_prefix: str):
        self._features = features
        self._label = label
        self._done = False
        super().__init__(cache_prefix=cache_prefix)

    def next(self, input_data: Callable) -> bool:
        if self._done:
            return False
        input_data(data=self._features, label=self._label)
        self._done = True
        return True

    def reset(self) -> None:
        self._done = False


def _empty_dmatrix(n_features: int, missing: float) -> xgb.DMatrix:
    return xgb.DMatrix(
        np.empty((0, max(n_features, 1)), dtype=np.float32),
        label=np.empty(0, dtype=np.float32),
        missing=missing,
    )


# =============================================================================
# Backend
# =============================================================================

class XGBoostBackend:
    """`NativeBackend` implemented with xgboost."""

    def matrix_from_points(
        self,
        points: Iterable[LabeledPoint],
        missing: float,
        cache_prefix: str | None = None,
    ) -> XGBoostMatrix:
        if cache_prefix is not None:
            return self._external_matrix_from_points(points, missing, cache_prefix)

        batch = _CSRBatch()
        for point in points:
            batch.add(point)
        if not len(batch):
            return XGBoostMatrix(_empty_dmatrix(batch.n_features, missing))
        arrays = batch.arrays()
        dmatrix = xgb.DMatrix(
            _to_csr(arrays, batch.n_features),
            label=arrays["label"],
            weight=arrays["weight"],
            missing=missing,
        )
        return XGBoostMatrix(dmatrix)

    def _external_matrix_from_points(
        self,
        points: Iterable[LabeledPoint],
        missing: float,
        cache_prefix: str,
    ) -> XGBoostMatrix:
        files: list[str] = []
        n_features = 0
        batch = _CSRBatch()

        def spill() -> None:
            path = f"{cache_prefix}-batch-{len(files)}.npz"
            np.savez(path, **batch.arrays())
            files.append(path)

        for point in points:
            batch.add(point)
            if len(batch) == BATCH_ROWS:
                n_features = max(n_features, batch.n_features)
                spill()
                batch = _CSRBatch()
        n_features = max(n_features, batch.n_features)
        if len(batch):
            spill()
        if not files:
            return XGBoostMatrix(_empty_dmatrix(n_features, missing))
        batches = _SpilledBatchIter(files, n_features, cache_prefix)
        return XGBoostMatrix(xgb.DMatrix(batches, missing=missing))

    def matrix_from_columns(
        self,
        features: NDArray,
        label: NDArray,
        missing: float,
        cache_prefix: str | None = None,
    ) -> XGBoostMatrix:
        features = np.asarray(features, dtype=np.float32)
        label = np.asarray(label, dtype=np.float32)
        if features.shape[0] == 0:
            return XGBoostMatrix(_empty_dmatrix(features.shape[1] if features.ndim == 2 else 0, missing))
        if cache_prefix is not None:
            batches = _SingleBatchIter(features, label, cache_prefix)
            return XGBoostMatrix(xgb.DMatrix(batches, missing=missing))
        return XGBoostMatrix(xgb.DMatrix(features, label=label, missing=missing))

    def train(
        self,
        matrix: XGBoostMatrix,
        params: Mapping[str, Any],
        rounds: int,
        evals: Mapping[str, XGBoostMatrix],
        metrics_out: Mapping[str, NDArray],
        objective: Callable | None = None,
        eval_fn: Callable | None = None,
        early_stopping_rounds: int = 0,
        maximize: bool | None = None,
        previous_model: xgb.Booster | None = None,
    ) -> xgb.Booster:
        start = previous_model.num_boosted_rounds() if previous_model is not None else 0
        evals_result: dict[str, dict[str, list[float]]] = {}
        booster = xgb.train(
            dict(params),
            matrix.dmatrix,
            num_boost_round=max(rounds - start, 0),
            evals=[(m.dmatrix, name) for name, m in evals.items()],
            obj=objective,
            custom_metric=eval_fn,
            maximize=maximize,
            early_stopping_rounds=early_stopping_rounds or None,
            evals_result=evals_result,
            verbose_eval=False,
            xgb_model=previous_model,
        )

        # First metric reported for each watch, placed at its absolute round
        for name, history in evals_result.items():
            if name not in metrics_out or not history:
                continue
            out = metrics_out[name]
            values = np.asarray(next(iter(history.values())), dtype=np.float32)
            values = values[: max(out.shape[0] - start, 0)]
            out[start:start + values.shape[0]] = values
        return booster

    def communicator(self, env: Mapping[str, Any]) -> xgb.collective.CommunicatorContext:
        return xgb.collective.CommunicatorContext(**env)

    def num_rounds(self, model: xgb.Booster) -> int:
        return model.num_boosted_rounds()

    def model_fingerprint(self, model: xgb.Booster) -> bytes:
        return bytes(model.save_raw(raw_format="ubj"))

    def save_model(self, model: xgb.Booster, path: str) -> None:
        model.save_model(path)

    def load_model(self, path: str) -> xgb.Booster:
        booster = xgb.Booster()
        booster.load_model(path)
        return booster

    def predict(self, model: xgb.Booster, features: NDArray, missing: float) -> NDArray:
        return model.predict(xgb.DMatrix(np.asarray(features, dtype=np.float32), missing=missing))

    def __repr__(self) -> str:
        return f"XGBoostBackend(xgboost={xgb.__version__})"


def spilled_batches(cache_prefix: str) -> list[str]:
    """Batch files written for ``cache_prefix`` in external memory mode."""
    return sorted(glob.glob(f"{cache_prefix}-batch-*.npz"))
