"""CPU kernels using Numba JIT."""

from __future__ import annotations

import numpy as np
from numba import jit


# =============================================================================
# Missing Value Compaction
# =============================================================================

@jit(nopython=True, cache=True)
def _compact_features_kernel(
    values: np.ndarray,       # (nnz,) float32
    indices: np.ndarray,      # (nnz,) int32
    missing: float,
    missing_is_nan: bool,
    out_values: np.ndarray,   # (nnz,) float32
    out_indices: np.ndarray,  # (nnz,) int32
) -> int:
    """Copy entries that are not missing to the output arrays.

    Returns the number of entries kept.
    """
    n_kept = 0
    for i in range(values.shape[0]):
        v = values[i]
        if missing_is_nan:
            if np.isnan(v):
                continue
        elif v == missing:
            continue
        out_values[n_kept] = v
        out_indices[n_kept] = indices[i]
        n_kept += 1
    return n_kept


def compact_features(
    values: np.ndarray,
    indices: np.ndarray | None,
    missing: float,
) -> tuple[np.ndarray, np.ndarray]:
    """Drop feature entries equal to ``missing`` (or NaN when missing is NaN).

    Args:
        values: Feature values, float32.
        indices: Feature indices, or None for a dense row (positions are used).
        missing: Missing value sentinel.

    Returns:
        values: Surviving values, float32.
        indices: Indices of the surviving values, int32.
    """
    values = np.ascontiguousarray(values, dtype=np.float32)
    if indices is None:
        indices = np.arange(values.shape[0], dtype=np.int32)
    else:
        indices = np.ascontiguousarray(indices, dtype=np.int32)

    # Compare in float32 so the sentinel matches stored values exactly
    missing32 = float(np.float32(missing))
    out_values = np.empty_like(values)
    out_indices = np.empty_like(indices)
    n_kept = _compact_features_kernel(
        values, indices, missing32, bool(np.isnan(missing32)), out_values, out_indices,
    )
    return out_values[:n_kept], out_indices[:n_kept]


# =============================================================================
# Group Boundaries
# =============================================================================

@jit(nopython=True, cache=True)
def _group_sizes_kernel(
    group_ids: np.ndarray,      # (n_samples,) int64
    weights: np.ndarray,        # (n_samples,) float32
    sizes: np.ndarray,          # (n_samples,) int32, output
    group_weights: np.ndarray,  # (n_samples,) float32, output
):
    """Compute run lengths of consecutive group ids and one weight per group.

    Returns (n_groups, first_bad_row) where first_bad_row is the first row
    whose weight differs from its group's weight, or -1.
    """
    n_groups = 0
    first_bad = -1
    for i in range(group_ids.shape[0]):
        if i == 0 or group_ids[i] != group_ids[i - 1]:
            sizes[n_groups] = 1
            group_weights[n_groups] = weights[i]
            n_groups += 1
        else:
            sizes[n_groups - 1] += 1
            if first_bad < 0 and weights[i] != group_weights[n_groups - 1]:
                first_bad = i
    return n_groups, first_bad


def group_sizes_and_weights(
    group_ids: np.ndarray,
    weights: np.ndarray | None = None,
) -> tuple[np.ndarray, np.ndarray, int]:
    """Group sizes and per-group weights for a column of contiguous group ids.

    Args:
        group_ids: Group id per row; rows of one group must be contiguous.
        weights: Weight per row (all ones if None).

    Returns:
        sizes: Number of rows per group, int32.
        group_weights: Weight of each group, float32.
        first_bad_row: First row whose weight disagrees with its group, or -1.
    """
    group_ids = np.ascontiguousarray(group_ids, dtype=np.int64)
    n_samples = group_ids.shape[0]
    if weights is None:
        weights = np.ones(n_samples, dtype=np.float32)
    else:
        weights = np.ascontiguousarray(weights, dtype=np.float32)
    if weights.shape[0] != n_samples:
        raise ValueError(
            f"weights must have one entry per row, got {weights.shape[0]} for {n_samples} rows"
        )

    sizes = np.zeros(n_samples, dtype=np.int32)
    group_weights = np.zeros(n_samples, dtype=np.float32)
    n_groups, first_bad = _group_sizes_kernel(group_ids, weights, sizes, group_weights)
    return sizes[:n_groups], group_weights[:n_groups], int(first_bad)
