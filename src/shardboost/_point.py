"""Training instances for distributed boosting.

A `LabeledPoint` is one row of a training or evaluation set as it travels
through the partitioning pipeline. Ranking workloads additionally bundle
points into `LabeledPointGroup` values.
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Iterator

import numpy as np

if TYPE_CHECKING:
    from numpy.typing import ArrayLike, NDArray


@dataclass(frozen=True, eq=False)
class LabeledPoint:
    """One training instance.

    Attributes:
        label: Target value.
        values: Feature values, float32.
        indices: Feature indices for sparse rows, int32. ``None`` means the
            row is dense and ``values[i]`` is feature ``i``.
        size: Total number of features of the row (dense rows: ``len(values)``).
        weight: Instance weight.
        group: Group id, only meaningful for ranking objectives.
        base_margin: Initial prediction; NaN means unset.
    """
    label: float
    values: NDArray[np.float32]
    indices: NDArray[np.int32] | None = None
    size: int | None = None
    weight: float = 1.0
    group: int = -1
    base_margin: float = float("nan")

    def __post_init__(self) -> None:
        values = np.asarray(self.values, dtype=np.float32).ravel()
        object.__setattr__(self, "values", values)
        if self.indices is not None:
            indices = np.asarray(self.indices, dtype=np.int32).ravel()
            if indices.shape != values.shape:
                raise ValueError(
                    f"indices and values must have the same length, "
                    f"got {indices.shape[0]} and {values.shape[0]}"
                )
            object.__setattr__(self, "indices", indices)
        if self.size is None:
            if self.indices is None:
                size = values.shape[0]
            else:
                size = int(self.indices.max()) + 1 if self.indices.size else 0
            object.__setattr__(self, "size", size)

    @classmethod
    def dense(cls, label: float, values: ArrayLike, **kwargs) -> LabeledPoint:
        """Create a dense point."""
        return cls(label=label, values=values, **kwargs)

    @classmethod
    def sparse(
        cls,
        label: float,
        size: int,
        indices: ArrayLike,
        values: ArrayLike,
        **kwargs,
    ) -> LabeledPoint:
        """Create a sparse point with ``size`` features."""
        return cls(label=label, values=values, indices=indices, size=size, **kwargs)

    @property
    def is_sparse(self) -> bool:
        return self.indices is not None

    @property
    def has_base_margin(self) -> bool:
        return not np.isnan(self.base_margin)

    def copy(self, **changes) -> LabeledPoint:
        """Return a copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    def __repr__(self) -> str:
        kind = "sparse" if self.is_sparse else "dense"
        return (
            f"LabeledPoint(label={self.label}, {kind}, nnz={self.values.shape[0]}, "
            f"size={self.size}, weight={self.weight}, group={self.group})"
        )


@dataclass(frozen=True, eq=False)
class LabeledPointGroup:
    """Points of one ranking group, in their original order.

    Attributes:
        group_id: Group id shared by all points.
        points: Points of the group.
        is_edge_group: True if this was the first or last group seen in a
            partition, so it may be a fragment of a group that continues in
            a neighbouring partition.
        partitions: Ids of the partitions the points came from, in the
            order their fragments were concatenated.
    """
    group_id: int
    points: tuple[LabeledPoint, ...]
    is_edge_group: bool = False
    partitions: tuple[int, ...] = field(default=())

    def __post_init__(self) -> None:
        object.__setattr__(self, "points", tuple(self.points))

    def __len__(self) -> int:
        return len(self.points)

    def __iter__(self) -> Iterator[LabeledPoint]:
        return iter(self.points)

    def with_points(self, points) -> LabeledPointGroup:
        """Return a copy holding ``points`` instead."""
        return dataclasses.replace(self, points=tuple(points))

    def __repr__(self) -> str:
        return (
            f"LabeledPointGroup(group_id={self.group_id}, n_points={len(self.points)}, "
            f"is_edge_group={self.is_edge_group}, partitions={self.partitions})"
        )
