"""Exception types raised by distributed training."""

from __future__ import annotations


class TrainingError(RuntimeError):
    """A distributed training run failed.

    This is the single terminal error surfaced by ``train_distributed``.
    When the failure originated in a worker task, the worker's exception is
    chained as ``__cause__``.
    """


class PartitionContractError(TrainingError):
    """A partition violated the data layout training depends on.

    Raised for empty training or evaluation partitions, inconsistent
    weights within a ranking group and ambiguous base margins.
    """


class TrackerError(TrainingError):
    """The rendezvous tracker could not be started or failed."""


class JobCancelledError(TrainingError):
    """The distributed job was cancelled before all partitions ran."""
