"""Tests for the xgboost backend and rabit tracker session."""

import os

import numpy as np
import pytest

xgb = pytest.importorskip("xgboost")

import shardboost as sb
from shardboost import LabeledPoint, TrackerConf, TrainingParams
from shardboost._backends._xgboost import XGBoostBackend, spilled_batches


@pytest.fixture
def xgb_backend():
    return XGBoostBackend()


def _points(n=64, seed=0):
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n, 3)).astype(np.float32)
    y = (X[:, 0] > 0).astype(np.float32)
    return [LabeledPoint.dense(float(y[i]), X[i]) for i in range(n)]


class TestXGBoostMatrix:
    def test_from_points(self, xgb_backend):
        """Sparse and dense points build one matrix with their weights."""
        points = [
            LabeledPoint.sparse(1.0, 5, [0, 4], [1.0, 2.0], weight=2.0),
            LabeledPoint.dense(0.0, [1.0, 2.0, 3.0]),
        ]
        matrix = xgb_backend.matrix_from_points(points, np.nan)
        assert matrix.row_count() == 2
        assert matrix.dmatrix.num_col() == 5
        np.testing.assert_array_equal(matrix.dmatrix.get_weight(), [2.0, 1.0])
        np.testing.assert_array_equal(matrix.dmatrix.get_label(), [1.0, 0.0])
        matrix.delete()

    def test_empty(self, xgb_backend):
        """A matrix can hold no rows."""
        matrix = xgb_backend.matrix_from_points([], np.nan)
        assert matrix.row_count() == 0
        matrix.delete()

    def test_delete_twice(self, xgb_backend):
        """Deleting a released matrix again does nothing."""
        matrix = xgb_backend.matrix_from_points(_points(4), np.nan)
        matrix.delete()
        matrix.delete()
        assert repr(matrix) == "XGBoostMatrix(deleted)"
        with pytest.raises(RuntimeError, match="already deleted"):
            matrix.row_count()

    def test_metadata(self, xgb_backend):
        """Group sizes and base margins are set on the matrix."""
        matrix = xgb_backend.matrix_from_points(_points(6), np.nan)
        matrix.set_group(np.array([2, 4]))
        matrix.set_base_margin(np.zeros(6))
        np.testing.assert_array_equal(matrix.dmatrix.get_base_margin(), np.zeros(6))
        matrix.delete()

    def test_external_memory_spills_batches(self, xgb_backend, tmp_path):
        """External memory writes its cache under the prefix."""
        prefix = os.path.join(tmp_path, "train")
        matrix = xgb_backend.matrix_from_points(_points(32), np.nan, cache_prefix=prefix)
        assert matrix.row_count() == 32
        assert len(spilled_batches(prefix)) == 1
        matrix.delete()

    def test_from_columns(self, xgb_backend):
        """A matrix can be built from a feature array and labels."""
        matrix = xgb_backend.matrix_from_columns(np.ones((4, 2)), np.zeros(4), np.nan)
        assert matrix.row_count() == 4
        matrix.delete()


class TestXGBoostTraining:
    def test_train_fills_metrics(self, xgb_backend):
        """Training writes one metric value per round."""
        matrix = xgb_backend.matrix_from_points(_points(), np.nan)
        metrics = {"train": np.full(5, np.nan, dtype=np.float32)}
        params = {"objective": "binary:logistic", "eval_metric": "logloss", "max_depth": 2}
        model = xgb_backend.train(matrix, params, 3, {"train": matrix}, metrics)
        assert xgb_backend.num_rounds(model) == 3
        assert not np.isnan(metrics["train"][:3]).any()
        assert np.isnan(metrics["train"][3:]).all()

        # Continue from the previous model up to round 5
        more = xgb_backend.train(matrix, params, 5, {"train": matrix}, metrics, previous_model=model)
        assert xgb_backend.num_rounds(more) == 5
        assert not np.isnan(metrics["train"]).any()
        matrix.delete()

    def test_save_load_roundtrip(self, xgb_backend, tmp_path):
        """A saved booster loads back with the same rounds."""
        matrix = xgb_backend.matrix_from_points(_points(), np.nan)
        model = xgb_backend.train(matrix, {"max_depth": 2}, 2, {}, {})
        path = os.path.join(tmp_path, "2.ubj")
        xgb_backend.save_model(model, path)
        loaded = xgb_backend.load_model(path)
        assert xgb_backend.num_rounds(loaded) == 2
        assert isinstance(xgb_backend.model_fingerprint(loaded), bytes)
        X = np.stack([p.values for p in _points()])
        np.testing.assert_allclose(
            xgb_backend.predict(loaded, X, np.nan), xgb_backend.predict(model, X, np.nan),
        )
        matrix.delete()


class TestEndToEnd:
    """Single-worker run through the real tracker and communicator."""

    def test_single_worker(self, xgb_backend, tmp_path):
        """One worker trains a model through the real tracker."""
        data = sb.PartitionedDataset.from_sequence(_points(200), num_partitions=2)
        params = TrainingParams(
            num_workers=1,
            num_round=4,
            booster_params={"objective": "binary:logistic", "eval_metric": "logloss"},
            tracker_conf=TrackerConf(worker_connection_timeout=60, host_ip="127.0.0.1"),
            checkpoint_path=str(tmp_path),
            checkpoint_interval=2,
        )
        model, metrics = sb.train_distributed(data, params, backend=xgb_backend)
        assert xgb_backend.num_rounds(model) == 4
        assert metrics["train"].shape == (4,)
        assert not np.isnan(metrics["train"]).any()
        assert sb.CheckpointManager(tmp_path, xgb_backend).versions() == [2]
