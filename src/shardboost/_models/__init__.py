"""High-level models built on the distributed training core."""

from ._boosting import DistributedGradientBoosting

__all__ = [
    "DistributedGradientBoosting",
]
