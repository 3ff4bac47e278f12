#!/usr/bin/env python
"""Distributed regression with shardboost.

This example demonstrates:
- Training DistributedGradientBoosting on several local worker processes
- Watching a validation set during training
- Making predictions and evaluating performance
"""

import numpy as np

import shardboost as sb


def generate_synthetic_data(n_samples: int = 4000, n_features: int = 8, seed: int = 42):
    """Non-linear regression data."""
    rng = np.random.default_rng(seed)
    X = rng.standard_normal((n_samples, n_features)).astype(np.float32)
    y = (
        2 * X[:, 0]
        + X[:, 1] ** 2
        - 0.5 * X[:, 2] * X[:, 3]
        + np.sin(X[:, 4])
        + rng.standard_normal(n_samples).astype(np.float32) * 0.5
    )
    return X, y.astype(np.float32)


def main():
    print("=" * 60)
    print("shardboost Distributed Regression Example")
    print("=" * 60)

    X, y = generate_synthetic_data()
    X_train, X_val, X_test = X[:2800], X[2800:3400], X[3400:]
    y_train, y_val, y_test = y[:2800], y[2800:3400], y[3400:]
    print(f"\nTrain: {len(X_train)}, Val: {len(X_val)}, Test: {len(X_test)}")

    model = sb.DistributedGradientBoosting(
        n_workers=2,
        n_rounds=100,
        max_depth=4,
        learning_rate=0.1,
        eval_metric="rmse",
    )
    model.fit(X_train, y_train, eval_set={"valid": (X_val, y_val)})

    history = model.training_summary_["valid"]
    print(f"\nValidation RMSE: round 1 = {history[0]:.4f}, round {len(history)} = {history[-1]:.4f}")

    pred = model.predict(X_test)
    rmse = float(np.sqrt(np.mean((pred - y_test) ** 2)))
    print(f"Test RMSE: {rmse:.4f}")


if __name__ == "__main__":
    main()
