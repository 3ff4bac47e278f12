"""Shared fixtures: in-memory stand-ins for the native backend and tracker."""

import itertools
import json
import os
import threading
from contextlib import contextmanager

import numpy as np
import pytest

from shardboost import LabeledPoint, LocalExecutor


# =============================================================================
# Fake Backend
# =============================================================================


class FakeMatrix:
    """Records what the watches builder attaches to a matrix."""

    def __init__(self, n_rows, points=None, features=None, label=None, cache_prefix=None):
        self.n_rows = n_rows
        self.points = points
        self.features = features
        self.label = label
        self.cache_prefix = cache_prefix
        self.base_margin = None
        self.group = None
        self.weight = None
        self.deleted = False
        self.row_count_calls = 0

    def row_count(self):
        if self.deleted:
            raise AssertionError("row_count() called on a deleted matrix")
        self.row_count_calls += 1
        return self.n_rows

    def set_base_margin(self, margin):
        self.base_margin = np.asarray(margin)

    def set_group(self, group_sizes):
        self.group = np.asarray(group_sizes)

    def set_weight(self, weights):
        self.weight = np.asarray(weights)

    def delete(self):
        self.deleted = True


class FakeModel:
    def __init__(self, rounds, fingerprint):
        self.rounds = rounds
        self.fingerprint = fingerprint


class FakeBackend:
    """Backend that trains nothing but records every call.

    Metrics after round ``r`` are ``r``, so tests can check which rounds a
    call filled. With ``diverge=True`` every trained model has a different
    fingerprint.
    """

    def __init__(self, diverge=False, fail_on_train=None):
        self.diverge = diverge
        self.fail_on_train = fail_on_train
        self.matrices = []
        self.train_calls = []
        self.envs = []
        self._lock = threading.Lock()
        self._counter = itertools.count()

    def _record(self, matrix):
        with self._lock:
            self.matrices.append(matrix)
        return matrix

    def matrix_from_points(self, points, missing, cache_prefix=None):
        points = list(points)
        if cache_prefix is not None:
            with open(cache_prefix + ".cache", "w") as f:
                f.write(str(len(points)))
        return self._record(FakeMatrix(len(points), points=points, cache_prefix=cache_prefix))

    def matrix_from_columns(self, features, label, missing, cache_prefix=None):
        if cache_prefix is not None:
            with open(cache_prefix + ".cache", "w") as f:
                f.write(str(len(label)))
        return self._record(
            FakeMatrix(len(label), features=features, label=label, cache_prefix=cache_prefix)
        )

    def train(self, matrix, params, rounds, evals, metrics_out, objective=None, eval_fn=None,
              early_stopping_rounds=0, maximize=None, previous_model=None):
        if self.fail_on_train is not None:
            raise self.fail_on_train
        start = previous_model.rounds if previous_model is not None else 0
        with self._lock:
            self.train_calls.append({
                "rows": matrix.row_count(),
                "params": dict(params),
                "rounds": rounds,
                "evals": sorted(evals),
                "start": start,
            })
            seq = next(self._counter)
        for out in metrics_out.values():
            out[start:rounds] = np.arange(start, rounds)
        fingerprint = f"{rounds}-{seq}" if self.diverge else f"{rounds}"
        return FakeModel(rounds, fingerprint.encode())

    @contextmanager
    def communicator(self, env):
        with self._lock:
            self.envs.append(dict(env))
        yield

    def num_rounds(self, model):
        return model.rounds

    def model_fingerprint(self, model):
        return model.fingerprint

    def save_model(self, model, path):
        with open(path, "w") as f:
            json.dump({"rounds": model.rounds, "fingerprint": model.fingerprint.decode()}, f)

    def load_model(self, path):
        with open(path) as f:
            data = json.load(f)
        return FakeModel(data["rounds"], data["fingerprint"].encode())

    def predict(self, model, features, missing):
        return np.full(len(features), float(model.rounds), dtype=np.float32)


# =============================================================================
# Fake Tracker
# =============================================================================


class FakeTracker:
    """Tracker returning a fixed code.

    With ``code=None`` the tracker waits for a job failure and returns 1,
    or returns 0 after ``grace`` seconds without one.
    """

    def __init__(self, n_workers, conf, code=0, start_ok=True, grace=5.0):
        self.n_workers = n_workers
        self.conf = conf
        self.code = code
        self.start_ok = start_ok
        self.grace = grace
        self.started = False
        self.stopped = False
        self.exceptions = []
        self._failed = threading.Event()

    def start(self, timeout):
        self.started = True
        return self.start_ok

    def worker_environment(self):
        return {"dmlc_tracker_uri": "127.0.0.1", "dmlc_tracker_port": 9091}

    def wait_for(self, timeout):
        if self.code is not None:
            return self.code
        return 1 if self._failed.wait(self.grace) else 0

    def uncaught_exception(self, exc):
        self.exceptions.append(exc)
        self._failed.set()

    def stop(self):
        self.stopped = True


class FakeTrackerFactory:
    """Creates one `FakeTracker` per round; ``codes`` are used in order."""

    def __init__(self, codes=(), start_ok=True, default_code=0):
        self.codes = list(codes)
        self.start_ok = start_ok
        self.default_code = default_code
        self.created = []

    def __call__(self, n_workers, conf):
        code = self.codes.pop(0) if self.codes else self.default_code
        tracker = FakeTracker(n_workers, conf, code=code, start_ok=self.start_ok)
        self.created.append(tracker)
        return tracker


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def trackers():
    return FakeTrackerFactory()


@pytest.fixture
def executor():
    return LocalExecutor()


def make_points(n, n_features=4, seed=0, **kwargs):
    """Dense points with labels 0..n-1."""
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n, n_features)).astype(np.float32)
    return [LabeledPoint.dense(float(i), X[i], **kwargs) for i in range(n)]


def make_group_points(sizes, weights=None):
    """Points for consecutive groups 0..len(sizes)-1 of the given sizes."""
    points = []
    for group_id, size in enumerate(sizes):
        weight = 1.0 if weights is None else weights[group_id]
        for j in range(size):
            points.append(LabeledPoint.dense(
                float(j), [float(group_id), float(j)], group=group_id, weight=weight,
            ))
    return points


@pytest.fixture
def points():
    return make_points(40)


def cache_files(matrices):
    """Cache files written by the fake backend for ``matrices``."""
    return [m.cache_prefix + ".cache" for m in matrices if m.cache_prefix is not None]
