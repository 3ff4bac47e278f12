"""Missing value handling for point streams.

Every point leaving these filters is sparse: the entries equal to the
missing value sentinel are removed and the index array only lists the
surviving features.
"""

from __future__ import annotations

from typing import Iterable, Iterator

import numpy as np

from ._backends._cpu import compact_features
from ._point import LabeledPoint, LabeledPointGroup


def _check_sparse(points: Iterable[LabeledPoint]) -> Iterator[LabeledPoint]:
    for point in points:
        if point.indices is None:
            raise ValueError(
                "missing value 0.0 requires sparse features: a dense row cannot "
                "tell explicit zeros from missing entries"
            )
        yield point


def _remove_missing(points: Iterable[LabeledPoint], missing: float) -> Iterator[LabeledPoint]:
    for point in points:
        values, indices = compact_features(point.values, point.indices, missing)
        yield point.copy(values=values, indices=indices)


def process_missing_values(
    points: Iterable[LabeledPoint],
    missing: float,
) -> Iterator[LabeledPoint]:
    """Strip missing entries from every point of a stream.

    Lazy, one output point per input point, order preserving. Filtering an
    already filtered stream with the same sentinel yields the same stream.

    Args:
        points: Input points.
        missing: Missing value sentinel. With NaN only NaN entries are
            removed (zeros are kept). With 0.0 all points must be sparse.

    Returns:
        Iterator of sparse points.
    """
    if not np.isnan(missing) and missing == 0.0:
        points = _check_sparse(points)
    return _remove_missing(points, missing)


def process_missing_values_with_group(
    groups: Iterable[LabeledPointGroup],
    missing: float,
) -> Iterator[LabeledPointGroup]:
    """Apply `process_missing_values` within each group."""
    for group in groups:
        yield group.with_points(process_missing_values(group.points, missing))
