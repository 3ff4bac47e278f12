"""Per-partition construction of the named training matrices ("watches").

Every partition task turns its local iterators into native matrices: the
training matrix first, then one matrix per evaluation set (or a "test"
matrix split off the training rows). Ranking workloads additionally attach
group boundaries and one weight per group.

The `Watches` object owns the native handles and, in external memory mode,
a private cache directory. Both are released by `Watches.delete()`, which
callers invoke in a ``finally`` block.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from typing import TYPE_CHECKING, Iterable, Iterator, Mapping, Sequence, Union

import numpy as np

from ._backends._cpu import group_sizes_and_weights
from ._errors import PartitionContractError
from ._partition import TRAIN_NAME

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray

    from ._backends import NativeBackend, NativeMatrix
    from ._point import LabeledPoint, LabeledPointGroup

logger = logging.getLogger(__name__)

TEST_NAME = "test"


class Watches:
    """Named native matrices of one partition.

    Row counts are read once, when the watches are assembled; `delete()`
    never queries a matrix again.

    Args:
        matrices: ``(name, matrix)`` pairs, training matrix first.
        cache_dir: External memory cache directory owned by these watches.
    """

    def __init__(self, matrices: Sequence[tuple[str, NativeMatrix]], cache_dir: str | None = None):
        self._matrices = list(matrices)
        self._row_counts = {name: matrix.row_count() for name, matrix in self._matrices}
        self.cache_dir = cache_dir
        self._deleted = False

    def to_dict(self) -> dict[str, NativeMatrix]:
        """Matrices holding at least one row, in build order."""
        if self._deleted:
            raise RuntimeError("watches were already deleted")
        return {
            name: matrix for name, matrix in self._matrices if self._row_counts[name] > 0
        }

    def row_count(self, name: str) -> int:
        return self._row_counts.get(name, 0)

    def delete(self) -> None:
        """Release every matrix and remove the cache directory.

        A second call is a no-op. Failing to remove the cache directory is
        logged and not raised.
        """
        if self._deleted:
            return
        self._deleted = True
        _release(self._matrices, self.cache_dir)

    def __enter__(self) -> Watches:
        return self

    def __exit__(self, *exc_info) -> None:
        self.delete()

    def __len__(self) -> int:
        return sum(1 for count in self._row_counts.values() if count > 0)

    def __repr__(self) -> str:
        if self._deleted:
            return "Watches(deleted)"
        sizes = ", ".join(
            f"{name}: {count}" for name, count in self._row_counts.items() if count > 0
        )
        return f"Watches({sizes})"


def _release(matrices: Iterable[tuple[str, NativeMatrix]], cache_dir: str | None) -> None:
    for name, matrix in matrices:
        try:
            matrix.delete()
        except Exception as exc:
            logger.warning("failed to release matrix '%s': %s", name, exc)
    if cache_dir is not None:
        try:
            shutil.rmtree(cache_dir)
        except OSError as exc:
            logger.warning("failed to remove cache directory %s: %s", cache_dir, exc)


def _make_cache_dir(partition_id: int) -> str:
    return tempfile.mkdtemp(prefix=f"shardboost-cache-{partition_id}-")


def _cache_prefix(cache_dir: str | None, name: str) -> str | None:
    if cache_dir is None:
        return None
    return os.path.join(cache_dir, name)


# =============================================================================
# Metadata
# =============================================================================

def base_margins_to_array(margins: ArrayLike) -> NDArray[np.float32] | None:
    """Base margin column of a matrix, or None when no row sets one.

    Raises:
        PartitionContractError: If only some rows set a base margin.
    """
    margins = np.asarray(margins, dtype=np.float32)
    unset = np.isnan(margins)
    if unset.all():
        return None
    if unset.any():
        raise PartitionContractError(
            f"base margin is set for {int((~unset).sum())} of {margins.shape[0]} "
            "instances; set it for all instances or for none"
        )
    return margins


def _attach_base_margin(matrix: NativeMatrix, margins: ArrayLike) -> None:
    margin = base_margins_to_array(margins)
    if margin is not None:
        matrix.set_base_margin(margin)


def _group_weight(group: LabeledPointGroup) -> float:
    weight = group.points[0].weight
    for point in group.points:
        if point.weight != weight:
            where = f", partitions {list(group.partitions)}" if group.partitions else ""
            raise PartitionContractError(
                "the instances in the same group have to be assigned with the same "
                f"weight (group {group.group_id}{where}: found {weight} and {point.weight})"
            )
    return weight


# =============================================================================
# Sources
# =============================================================================

class RowSource:
    """Rows of one dataset as a point iterator."""

    def __init__(self, points: Iterable[LabeledPoint]):
        self.points = points

    def build_matrix(
        self,
        name: str,
        backend: NativeBackend,
        missing: float,
        cache_dir: str | None = None,
    ) -> NativeMatrix:
        margins: list[float] = []

        def rows() -> Iterator[LabeledPoint]:
            for point in self.points:
                margins.append(point.base_margin)
                yield point

        matrix = backend.matrix_from_points(rows(), missing, _cache_prefix(cache_dir, name))
        try:
            _attach_base_margin(matrix, margins)
        except Exception:
            matrix.delete()
            raise
        return matrix


class GroupedRowSource:
    """Rows of one ranking dataset as an iterator of complete groups."""

    def __init__(self, groups: Iterable[LabeledPointGroup]):
        self.groups = groups

    def build_matrix(
        self,
        name: str,
        backend: NativeBackend,
        missing: float,
        cache_dir: str | None = None,
    ) -> NativeMatrix:
        sizes: list[int] = []
        weights: list[float] = []
        margins: list[float] = []

        def rows() -> Iterator[LabeledPoint]:
            for group in self.groups:
                weights.append(_group_weight(group))
                sizes.append(len(group))
                for point in group.points:
                    margins.append(point.base_margin)
                    yield point

        matrix = backend.matrix_from_points(rows(), missing, _cache_prefix(cache_dir, name))
        try:
            _attach_base_margin(matrix, margins)
            # An empty matrix carries no group metadata
            if sizes:
                matrix.set_group(np.asarray(sizes, dtype=np.int32))
                matrix.set_weight(np.asarray(weights, dtype=np.float32))
        except Exception:
            matrix.delete()
            raise
        return matrix


class ColumnarSource:
    """One block of numpy columns.

    Args:
        features: (n_samples, n_features) feature block.
        label: (n_samples,) labels.
        weight: (n_samples,) instance weights.
        base_margin: (n_samples,) base margins; NaN entries mean unset.
        group: (n_samples,) group ids, rows of a group contiguous.
    """

    def __init__(
        self,
        features: ArrayLike,
        label: ArrayLike,
        weight: ArrayLike | None = None,
        base_margin: ArrayLike | None = None,
        group: ArrayLike | None = None,
    ):
        self.features = np.asarray(features, dtype=np.float32)
        if self.features.ndim != 2:
            raise ValueError(f"features must be 2-D, got shape {self.features.shape}")
        n_samples = self.features.shape[0]
        self.label = _column(label, n_samples, "label", np.float32)
        self.weight = None if weight is None else _column(weight, n_samples, "weight", np.float32)
        self.base_margin = (
            None if base_margin is None
            else _column(base_margin, n_samples, "base_margin", np.float32)
        )
        self.group = None if group is None else _column(group, n_samples, "group", np.int64)

    @property
    def n_samples(self) -> int:
        return self.features.shape[0]

    @classmethod
    def concatenate(cls, sources: Sequence[ColumnarSource]) -> ColumnarSource:
        """Stack blocks of one partition, in order."""
        if not sources:
            raise ValueError("cannot concatenate an empty list of columnar sources")
        if len(sources) == 1:
            return sources[0]

        def stacked(attr: str):
            columns = [getattr(s, attr) for s in sources]
            present = [c is not None for c in columns]
            if not any(present):
                return None
            if not all(present):
                raise ValueError(f"column '{attr}' is set on some blocks only")
            return np.concatenate(columns)

        return cls(
            np.concatenate([s.features for s in sources]),
            np.concatenate([s.label for s in sources]),
            weight=stacked("weight"),
            base_margin=stacked("base_margin"),
            group=stacked("group"),
        )

    def build_matrix(
        self,
        name: str,
        backend: NativeBackend,
        missing: float,
        cache_dir: str | None = None,
    ) -> NativeMatrix:
        margin = None if self.base_margin is None else base_margins_to_array(self.base_margin)

        weights = self.weight
        sizes = None
        if self.group is not None:
            sizes, weights, first_bad = group_sizes_and_weights(self.group, self.weight)
            if first_bad >= 0:
                raise PartitionContractError(
                    "the instances in the same group have to be assigned with the same "
                    f"weight (group {self.group[first_bad]}, row {first_bad} of '{name}')"
                )

        matrix = backend.matrix_from_columns(
            self.features, self.label, missing, _cache_prefix(cache_dir, name),
        )
        try:
            if margin is not None:
                matrix.set_base_margin(margin)
            if sizes is not None and sizes.size:
                matrix.set_group(sizes)
            if weights is not None and weights.size:
                matrix.set_weight(weights)
        except Exception:
            matrix.delete()
            raise
        return matrix

    def __repr__(self) -> str:
        return (
            f"ColumnarSource(n_samples={self.n_samples}, n_features={self.features.shape[1]}, "
            f"grouped={self.group is not None})"
        )


def _column(values: ArrayLike, n_samples: int, name: str, dtype) -> np.ndarray:
    column = np.asarray(values, dtype=dtype).ravel()
    if column.shape[0] != n_samples:
        raise ValueError(f"{name} must have {n_samples} entries, got {column.shape[0]}")
    return column


MatrixSource = Union[RowSource, GroupedRowSource, ColumnarSource]


# =============================================================================
# Builders
# =============================================================================

def build_watches(
    sources: Mapping[str, MatrixSource] | Iterable[tuple[str, MatrixSource]],
    backend: NativeBackend,
    missing: float,
    use_external_memory: bool = False,
    partition_id: int = 0,
) -> Watches:
    """Build one matrix per named source.

    On failure the matrices built so far are released before the error
    propagates. Contract violations name the dataset and the partition.

    Args:
        sources: Named sources, training set first.
        backend: Native backend creating the matrices.
        missing: Missing value sentinel passed to the backend.
        use_external_memory: Give every matrix an on-disk cache under a
            fresh per-partition directory.
        partition_id: Partition the watches belong to (cache dir name).
    """
    items = sources.items() if isinstance(sources, Mapping) else sources
    cache_dir = _make_cache_dir(partition_id) if use_external_memory else None
    built: list[tuple[str, NativeMatrix]] = []
    try:
        for name, source in items:
            try:
                matrix = source.build_matrix(name, backend, missing, cache_dir)
            except PartitionContractError as exc:
                raise PartitionContractError(
                    f"{exc} (dataset '{name}', partition {partition_id})"
                ) from exc
            built.append((name, matrix))
        return Watches(built, cache_dir)
    except Exception:
        _release(built, cache_dir)
        raise


def _split(items: Iterable, ratio: float, seed: int | None) -> tuple[Iterator, list]:
    """Lazily route items to train (``draw <= ratio``) or to a test buffer."""
    rng = np.random.default_rng(seed)
    # The test buffer is complete once the train iterator is exhausted
    test: list = []

    def train() -> Iterator:
        for item in items:
            if rng.random() <= ratio:
                yield item
            else:
                test.append(item)

    return train(), test


def build_watches_with_split(
    points: Iterable[LabeledPoint],
    ratio: float,
    seed: int | None,
    backend: NativeBackend,
    missing: float,
    use_external_memory: bool = False,
    partition_id: int = 0,
) -> Watches:
    """Split a partition's points into "train" and "test" matrices.

    One uniform draw per point from a generator seeded once per call; the
    point goes to train when the draw is ``<= ratio``. With ratio 1.0 the
    test matrix is empty.
    """
    train, test = _split(points, ratio, seed)
    return build_watches(
        [(TRAIN_NAME, RowSource(train)), (TEST_NAME, RowSource(test))],
        backend, missing, use_external_memory, partition_id,
    )


def build_grouped_watches_with_split(
    groups: Iterable[LabeledPointGroup],
    ratio: float,
    seed: int | None,
    backend: NativeBackend,
    missing: float,
    use_external_memory: bool = False,
    partition_id: int = 0,
) -> Watches:
    """`build_watches_with_split` for ranking: whole groups are drawn."""
    train, test = _split(groups, ratio, seed)
    return build_watches(
        [(TRAIN_NAME, GroupedRowSource(train)), (TEST_NAME, GroupedRowSource(test))],
        backend, missing, use_external_memory, partition_id,
    )

