"""Round-based orchestration of distributed training.

Training runs in checkpoint rounds. Each round:

1. starts a fresh rendezvous tracker for ``num_workers`` workers,
2. launches the job (one training task per partition) on its own thread,
3. waits on the tracker for the global return code,
4. on success keeps one worker's ``(model, metrics)`` and, unless this was
   the last round, saves a checkpoint that seeds the next round.

Any failure aborts the whole run with a single `TrainingError`.
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING, Any, Callable, Iterator, Mapping

import numpy as np

from ._backends import get_backend
from ._checkpoint import CheckpointManager
from ._errors import PartitionContractError, TrackerError, TrainingError
from ._missing import process_missing_values, process_missing_values_with_group
from ._partition import (
    TRAIN_NAME,
    co_partition,
    co_partition_group_sets,
    repartition_for_training,
    repartition_for_training_group,
)
from ._tracker import RabitTrackerSession
from ._watches import (
    ColumnarSource,
    GroupedRowSource,
    RowSource,
    Watches,
    build_grouped_watches_with_split,
    build_watches,
    build_watches_with_split,
)

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from ._backends import NativeBackend
    from ._distributed import PartitionedDataset
    from ._params import TrackerConf, TrainingParams
    from ._tracker import TrackerSession

logger = logging.getLogger(__name__)

TrackerFactory = Callable[[int, "TrackerConf"], "TrackerSession"]

Metrics = dict[str, "NDArray[np.float32]"]

# Row layouts a partition task can receive
POINTS = "points"
GROUPS = "groups"
COLUMNS = "columns"


# =============================================================================
# Partition Task
# =============================================================================

def _stack_blocks(partition_id: int, name: str, blocks: Iterator[ColumnarSource]) -> ColumnarSource:
    """One partition's blocks of a dataset as a single source holding at least one row."""
    source = ColumnarSource.concatenate(list(blocks))
    if source.n_samples == 0:
        logger.error("dataset '%s' has no rows on partition %d", name, partition_id)
        raise PartitionContractError(
            f"too few elements in dataset '{name}': partition {partition_id} is empty"
        )
    return source


class _PartitionTrainer:
    """Training task of one partition for one checkpoint round.

    Receives the co-partitioned ``(name, rows)`` pairs, joins the collective
    through the backend's communicator, builds the watches and trains until
    the model holds ``rounds`` rounds.
    """

    def __init__(
        self,
        params: TrainingParams,
        backend: NativeBackend,
        env: Mapping[str, Any],
        rounds: int,
        previous_model: Any,
        layout: str,
    ):
        self.params = params
        self.backend = backend
        self.env = dict(env)
        self.rounds = rounds
        self.previous_model = previous_model
        self.layout = layout

    def __call__(
        self,
        partition_id: int,
        named_rows: Iterator[tuple[str, Iterator[Any]]],
    ) -> list[tuple[Any, Metrics]]:
        # Pairing fails on an empty dataset before this worker joins the collective
        named = list(named_rows)
        if self.layout == COLUMNS:
            named = [(name, _stack_blocks(partition_id, name, blocks)) for name, blocks in named]
        env = dict(self.env, dmlc_task_id=str(partition_id))
        with self.backend.communicator(env):
            watches = self._build_watches(partition_id, named)
            try:
                return [self._train(partition_id, watches)]
            finally:
                watches.delete()

    def _build_watches(
        self,
        partition_id: int,
        named: list[tuple[str, Iterator[Any]]],
    ) -> Watches:
        params = self.params
        options = dict(
            backend=self.backend,
            missing=params.missing,
            use_external_memory=params.use_external_memory,
            partition_id=partition_id,
        )

        if self.layout == COLUMNS:
            return build_watches(named, **options)

        if len(named) == 1:
            # No eval sets: split the training rows
            _, rows = named[0]
            ratio = params.train_test_ratio if params.train_test_ratio is not None else 1.0
            if self.layout == GROUPS:
                return build_grouped_watches_with_split(
                    process_missing_values_with_group(rows, params.missing),
                    ratio, params.seed, **options,
                )
            return build_watches_with_split(
                process_missing_values(rows, params.missing), ratio, params.seed, **options,
            )

        if self.layout == GROUPS:
            sources = [
                (name, GroupedRowSource(process_missing_values_with_group(rows, params.missing)))
                for name, rows in named
            ]
        else:
            sources = [
                (name, RowSource(process_missing_values(rows, params.missing)))
                for name, rows in named
            ]
        return build_watches(sources, **options)

    def _train(self, partition_id: int, watches: Watches) -> tuple[Any, Metrics]:
        params = self.params
        matrices = watches.to_dict()
        train = matrices.get(TRAIN_NAME)
        if train is None:
            raise PartitionContractError(
                f"detected an empty partition in the training data, partition ID: {partition_id}"
            )
        metrics = {name: np.full(self.rounds, np.nan, dtype=np.float32) for name in matrices}
        model = self.backend.train(
            train,
            params.booster_params_for_task(),
            self.rounds,
            matrices,
            metrics,
            objective=params.custom_obj,
            eval_fn=params.custom_eval,
            early_stopping_rounds=params.num_early_stopping_rounds,
            maximize=params.maximize_evaluation_metrics,
            previous_model=self.previous_model,
        )
        return model, metrics


# =============================================================================
# Round Job
# =============================================================================

class RoundJob(threading.Thread):
    """Runs the distributed job of one round on a dedicated thread.

    A failure of the job is stored in `error` and reported to the tracker,
    so that the orchestrator's `wait_for` returns a nonzero code instead of
    waiting for workers that will never finish.
    """

    def __init__(self, job: PartitionedDataset, tracker: TrackerSession):
        super().__init__(name="shardboost-round-job", daemon=True)
        self._job = job
        self._tracker = tracker
        self.cancel_event = threading.Event()
        self.results: list[list[tuple[Any, Metrics]]] | None = None
        self.error: BaseException | None = None

    def run(self) -> None:
        try:
            self.results = self._job.collect(self.cancel_event)
        except Exception as exc:
            self.error = exc
            self._tracker.uncaught_exception(exc)

    def interrupt(self) -> None:
        """Ask the job to stop.

        Cancellation is advisory. The executor stops scheduling partitions
        and cancels the tasks it can, but a partition task that is already
        training is not guaranteed to stop, and a finished one cannot be
        undone. The tracker's return code stays the authoritative failure
        signal; `interrupt` never raises.
        """
        if not self.is_alive():
            logger.info("round job already finished, nothing to interrupt")
            return
        self.cancel_event.set()
        logger.info("requested cancellation of the round job")


# =============================================================================
# Orchestration
# =============================================================================

def _results_from_job(
    job: RoundJob,
    backend: NativeBackend,
    verify_consistency: bool,
) -> tuple[Any, Metrics]:
    job.join()
    if job.error is not None:
        raise TrainingError("training job failed") from job.error
    results = [row for rows in job.results for row in rows]
    job.results = None
    if not results:
        raise TrainingError("training job returned no model")

    model, metrics = results[0]
    if verify_consistency:
        expected = backend.model_fingerprint(model)
        for worker, (other, _) in enumerate(results[1:], start=1):
            if backend.model_fingerprint(other) != expected:
                raise TrainingError(
                    f"worker {worker} returned a model that differs from worker 0"
                )
    return model, metrics


def _train_round(
    job_data: PartitionedDataset,
    params: TrainingParams,
    backend: NativeBackend,
    tracker_factory: TrackerFactory,
    rounds: int,
    previous_model: Any,
    layout: str,
) -> tuple[Any, Metrics]:
    timeout = params.timeout_request_workers
    if timeout > 0 and not job_data.executor.wait_for_slots(params.num_workers, timeout):
        raise TrainingError(
            f"unable to get {params.num_workers} workers within {timeout:g}s; "
            "the executor cannot run all training tasks at once"
        )
    tracker = tracker_factory(params.num_workers, params.tracker_conf)
    try:
        if not tracker.start(params.tracker_conf.worker_connection_timeout):
            raise TrackerError("FAULT: Failed to start tracker")
        trainer = _PartitionTrainer(
            params, backend, tracker.worker_environment(), rounds, previous_model, layout,
        )
        job = RoundJob(job_data.map_partitions(trainer), tracker)
        job.start()
        logger.info("training up to round %d on %d workers", rounds, params.num_workers)

        code = tracker.wait_for(0)
        logger.info("tracker returned with code %d", code)
        if code != 0:
            job.interrupt()
            raise TrainingError(
                f"distributed training failed with tracker code {code}"
            ) from job.error
        return _results_from_job(job, backend, params.verify_worker_consistency)
    finally:
        tracker.stop()


def _merge_metrics(earlier: Metrics, latest: Metrics) -> Metrics:
    """Fill rounds the latest checkpoint round did not train from the earlier ones."""
    for name, values in latest.items():
        previous = earlier.get(name)
        if previous is None:
            continue
        n = min(previous.shape[0], values.shape[0])
        unset = np.isnan(values[:n])
        values[:n][unset] = previous[:n][unset]
    return latest


def _run_rounds(
    job_data: PartitionedDataset,
    params: TrainingParams,
    backend: NativeBackend,
    tracker_factory: TrackerFactory,
    checkpoint_manager: CheckpointManager | None,
    layout: str,
) -> tuple[Any, Metrics]:
    previous_model = None
    boundaries = [params.num_round]
    if checkpoint_manager is not None:
        checkpoint_manager.clean_up_higher_versions(params.num_round)
        previous_model = checkpoint_manager.load_latest_as_model()
        boundaries = checkpoint_manager.get_round_boundaries(
            params.checkpoint_interval, params.num_round,
        )

    result = None
    for rounds in boundaries:
        model, metrics = _train_round(
            job_data, params, backend, tracker_factory, rounds, previous_model, layout,
        )
        if result is not None:
            metrics = _merge_metrics(result[1], metrics)
        if rounds < params.num_round:
            checkpoint_manager.update_checkpoint(model)
        previous_model = model
        result = (model, metrics)
    return result


def _resolve(
    params: TrainingParams,
    backend: NativeBackend | None,
    tracker_factory: TrackerFactory | None,
    checkpoint_manager: CheckpointManager | None,
):
    backend = backend if backend is not None else get_backend()
    if tracker_factory is None:
        tracker_factory = RabitTrackerSession
    if checkpoint_manager is None and params.checkpoint_path is not None:
        checkpoint_manager = CheckpointManager(params.checkpoint_path, backend)
    return backend, tracker_factory, checkpoint_manager


def train_distributed(
    training_data: PartitionedDataset,
    params: TrainingParams,
    *,
    has_group: bool = False,
    eval_sets: Mapping[str, PartitionedDataset] | None = None,
    backend: NativeBackend | None = None,
    tracker_factory: TrackerFactory | None = None,
    checkpoint_manager: CheckpointManager | None = None,
) -> tuple[Any, Metrics]:
    """Train one model across ``params.num_workers`` workers.

    Args:
        training_data: Partitioned `LabeledPoint` rows. For ranking
            (``has_group=True``) the rows must be ordered so that each
            group's points are contiguous.
        params: Training parameters.
        has_group: Train a ranking model; groups are stitched across
            partition boundaries.
        eval_sets: Named evaluation sets of `LabeledPoint` rows. Every set
            needs at least one row per worker.
        backend: Native backend. Defaults to `get_backend()`.
        tracker_factory: ``(n_workers, tracker_conf) -> TrackerSession``.
            Defaults to `RabitTrackerSession`.
        checkpoint_manager: Checkpoint store. Defaults to a
            `CheckpointManager` on ``params.checkpoint_path`` when set.

    Returns:
        model: The trained model.
        metrics: Per dataset name, the evaluation metric after every round.

    Raises:
        TrainingError: If any round fails. Worker errors are chained.

    Example:
        >>> data = PartitionedDataset.from_sequence(points, num_partitions=4)
        >>> params = TrainingParams(num_workers=2, num_round=10,
        ...                         booster_params={"objective": "binary:logistic"})
        >>> model, metrics = train_distributed(data, params)
    """
    backend, tracker_factory, checkpoint_manager = _resolve(
        params, backend, tracker_factory, checkpoint_manager,
    )
    eval_sets = dict(eval_sets or {})
    logger.info("running distributed training with parameters:\n%s", params.describe())

    n_workers = params.num_workers
    if has_group:
        prepared = repartition_for_training_group(training_data, n_workers)
    else:
        prepared = repartition_for_training(training_data, n_workers)

    persisted = prepared.persist() if params.cache_training_set else prepared
    try:
        if has_group:
            job_data = co_partition_group_sets(persisted, eval_sets, n_workers)
        else:
            job_data = co_partition(persisted, eval_sets, n_workers)
        return _run_rounds(
            job_data, params, backend, tracker_factory, checkpoint_manager,
            GROUPS if has_group else POINTS,
        )
    finally:
        if params.cache_training_set and persisted is not training_data:
            persisted.unpersist()


def train_distributed_columnar(
    training_data: PartitionedDataset,
    params: TrainingParams,
    *,
    eval_sets: Mapping[str, PartitionedDataset] | None = None,
    backend: NativeBackend | None = None,
    tracker_factory: TrackerFactory | None = None,
    checkpoint_manager: CheckpointManager | None = None,
) -> tuple[Any, Metrics]:
    """`train_distributed` for datasets of `ColumnarSource` blocks.

    The blocks of each partition are stacked into one matrix. Group columns
    are not stitched across partitions; a group must not span two blocks
    that land on different workers.
    """
    backend, tracker_factory, checkpoint_manager = _resolve(
        params, backend, tracker_factory, checkpoint_manager,
    )
    logger.info("running distributed columnar training with parameters:\n%s", params.describe())

    prepared = repartition_for_training(training_data, params.num_workers)
    persisted = prepared.persist() if params.cache_training_set else prepared
    try:
        job_data = co_partition(persisted, dict(eval_sets or {}), params.num_workers)
        return _run_rounds(
            job_data, params, backend, tracker_factory, checkpoint_manager, COLUMNS,
        )
    finally:
        if params.cache_training_set and persisted is not training_data:
            persisted.unpersist()
