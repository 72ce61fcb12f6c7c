"""Background model training.

A training run rebuilds the interaction matrix, trains the matrix
factorization and neural models and bundles them into an immutable
``ModelSnapshot``. Runs execute on a background thread, one at a time, and
report typed progress events after every epoch. Cancellation is
cooperative: the training loops poll between epochs, and a cancelled run
never publishes its snapshot.
"""

import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from dinerec.exceptions import DataInsufficientError, TrainingCancelledError, TrainingInProgressError
from dinerec.recommender.data import DataSource
from dinerec.recommender.factorization import (
    MatrixFactorizationConfig,
    MatrixFactorizationModel,
    evaluate_model,
    train_matrix_factorization,
)
from dinerec.recommender.matrix import ImplicitRatingConfig, InteractionMatrix, InteractionMatrixBuilder
from dinerec.recommender.neural import NeuralConfig, NeuralEmbeddingModel, train_neural_model

logger = logging.getLogger(__name__)

STATE_IDLE = "idle"
STATE_RUNNING = "running"
STATE_COMPLETED = "completed"
STATE_FAILED = "failed"
STATE_CANCELLED = "cancelled"

TERMINAL_STATES = (STATE_COMPLETED, STATE_FAILED, STATE_CANCELLED)


@dataclass(frozen=True)
class TrainingConfig:
    matrix: ImplicitRatingConfig = ImplicitRatingConfig()
    matrix_factorization: MatrixFactorizationConfig = MatrixFactorizationConfig()
    neural: NeuralConfig = NeuralConfig()
    train_neural: bool = True
    evaluation_k: int = 5
    min_users: int = 5
    min_items: int = 3
    min_interactions: int = 10

    @classmethod
    def from_settings(cls, settings, **overrides) -> "TrainingConfig":
        values = {
            "min_users": settings.min_training_users,
            "min_items": settings.min_training_items,
            "min_interactions": settings.min_training_interactions,
            "train_neural": settings.train_neural,
        }
        values.update(overrides)
        return cls(**values)


@dataclass(frozen=True)
class TrainingProgressEvent:
    model: str
    epoch: int
    total_epochs: int
    loss: float
    accuracy: Optional[float] = None
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict:
        return {
            "model": self.model,
            "epoch": self.epoch,
            "total_epochs": self.total_epochs,
            "loss": self.loss,
            "accuracy": self.accuracy,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True, eq=False)
class ModelSnapshot:
    """Everything query time needs from one completed training run."""

    matrix: InteractionMatrix
    mf_model: MatrixFactorizationModel
    neural_model: NeuralEmbeddingModel
    trained_at: Optional[datetime] = None
    metrics: Dict = field(default_factory=dict)

    @classmethod
    def empty(cls) -> "ModelSnapshot":
        return cls(
            matrix=InteractionMatrix(),
            mf_model=MatrixFactorizationModel.empty(),
            neural_model=NeuralEmbeddingModel.empty(),
        )

    @property
    def trained(self) -> bool:
        return self.mf_model.is_trained or self.neural_model.is_trained


def check_training_data(matrix: InteractionMatrix, config: TrainingConfig) -> None:
    """Refuse to train on too little data.

    Raises:
        DataInsufficientError: If users, restaurants or interactions are
            below the configured minimums.
    """
    counts = {
        "users": matrix.num_users,
        "items": matrix.num_items,
        "interactions": matrix.nnz,
    }
    minimums = {
        "users": config.min_users,
        "items": config.min_items,
        "interactions": config.min_interactions,
    }
    short = [name for name in counts if counts[name] < minimums[name]]
    if short:
        reason = ", ".join(f"{counts[n]} {n} (need {minimums[n]})" for n in short)
        raise DataInsufficientError(reason, counts=counts, minimums=minimums)


def train_snapshot(
    matrix: InteractionMatrix,
    config: TrainingConfig = TrainingConfig(),
    on_progress: Optional[Callable[[TrainingProgressEvent], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> ModelSnapshot:
    """Train every model on ``matrix`` synchronously."""

    def reporter(model_name: str):
        def report(epoch: int, total_epochs: int, loss: float, accuracy: Optional[float]):
            if on_progress is not None:
                on_progress(TrainingProgressEvent(model_name, epoch, total_epochs, loss, accuracy))
        return report

    mf_model = train_matrix_factorization(
        matrix,
        config.matrix_factorization,
        progress=reporter("matrix_factorization"),
        should_stop=should_stop,
    )
    metrics: Dict = {
        "matrix": {
            "num_users": matrix.num_users,
            "num_items": matrix.num_items,
            "interactions": matrix.nnz,
            "positive_interactions": len(matrix.positive_interactions),
            "sparsity": matrix.sparsity(),
        },
        "matrix_factorization": {
            **mf_model.metrics(),
            **evaluate_model(mf_model, matrix, config.evaluation_k),
        },
    }

    if config.train_neural:
        neural_model = train_neural_model(
            matrix,
            config.neural,
            progress=reporter("neural"),
            should_stop=should_stop,
        )
        metrics["neural"] = neural_model.metrics()
    else:
        neural_model = NeuralEmbeddingModel.empty(config.neural)

    return ModelSnapshot(
        matrix=matrix,
        mf_model=mf_model,
        neural_model=neural_model,
        trained_at=datetime.now(),
        metrics=metrics,
    )


class TrainingHandle:
    """Observable state of one training run."""

    def __init__(self, job_id: Optional[str] = None):
        self.job_id = job_id or uuid.uuid4().hex
        self.state = STATE_IDLE
        self.events: List[TrainingProgressEvent] = []
        self.error: Optional[str] = None
        self.snapshot: Optional[ModelSnapshot] = None
        self.started_at: Optional[datetime] = None
        self.finished_at: Optional[datetime] = None
        self._lock = threading.Lock()
        self._cancel = threading.Event()
        self._done = threading.Event()

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def cancel(self) -> None:
        """Ask the run to stop at the next epoch boundary."""
        self._cancel.set()

    def cancel_requested(self) -> bool:
        return self._cancel.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._done.wait(timeout)

    def record(self, event: TrainingProgressEvent) -> None:
        with self._lock:
            self.events.append(event)

    def mark_running(self) -> None:
        with self._lock:
            self.state = STATE_RUNNING
            self.started_at = datetime.now()

    def finish(
        self,
        state: str,
        error: Optional[str] = None,
        snapshot: Optional[ModelSnapshot] = None,
    ) -> None:
        with self._lock:
            self.state = state
            self.error = error
            self.snapshot = snapshot
            self.finished_at = datetime.now()
        self._done.set()

    def status(self) -> Dict:
        with self._lock:
            last = self.events[-1] if self.events else None
            return {
                "job_id": self.job_id,
                "state": self.state,
                "model": last.model if last else None,
                "epoch": last.epoch if last else 0,
                "total_epochs": last.total_epochs if last else 0,
                "loss": last.loss if last else None,
                "accuracy": last.accuracy if last else None,
                "events": len(self.events),
                "error": self.error,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            }


class TrainingManager:
    """Runs at most one training job at a time.

    ``on_complete`` receives the snapshot of every successful, non-cancelled
    run; the service uses it to publish the new models.
    """

    def __init__(
        self,
        data_source: DataSource,
        on_complete: Callable[[ModelSnapshot], None],
    ):
        self.data_source = data_source
        self.on_complete = on_complete
        self._lock = threading.Lock()
        self.current: Optional[TrainingHandle] = None

    @property
    def running(self) -> bool:
        return self._lock.locked()

    def start(self, config: TrainingConfig = TrainingConfig(), background: bool = True) -> TrainingHandle:
        """Start a training run.

        The interaction matrix is built before this returns. An empty matrix
        yields a handle that is already completed and publishes nothing.

        Args:
            config: Models and minimums to use.
            background: Run on a daemon thread (default) or block until done.

        Returns:
            The run's ``TrainingHandle``.

        Raises:
            TrainingInProgressError: If another run is active.
            DataInsufficientError: If there is too little data to train.
        """
        if not self._lock.acquire(blocking=False):
            raise TrainingInProgressError(self.current.job_id if self.current else "unknown")

        handle = TrainingHandle()
        try:
            matrix = InteractionMatrixBuilder(self.data_source, config.matrix).build()
            if matrix.is_empty:
                logger.warning(
                    "No users or restaurants with interactions, training skipped",
                    extra={"job_id": handle.job_id},
                )
                self.current = handle
                self._lock.release()
                handle.finish(STATE_COMPLETED)
                return handle
            check_training_data(matrix, config)
        except Exception:
            self._lock.release()
            raise

        self.current = handle
        handle.mark_running()
        logger.info(
            "Training job started",
            extra={"job_id": handle.job_id, "num_users": matrix.num_users, "num_items": matrix.num_items},
        )

        if background:
            thread = threading.Thread(
                target=self._run,
                args=(handle, matrix, config),
                name=f"training-{handle.job_id[:8]}",
                daemon=True,
            )
            thread.start()
        else:
            self._run(handle, matrix, config)
        return handle

    def _run(self, handle: TrainingHandle, matrix: InteractionMatrix, config: TrainingConfig) -> None:
        state = STATE_FAILED
        error = None
        snapshot = None
        try:
            snapshot = train_snapshot(
                matrix,
                config,
                on_progress=handle.record,
                should_stop=handle.cancel_requested,
            )
            if handle.cancel_requested():
                state = STATE_CANCELLED
                snapshot = None
            else:
                self.on_complete(snapshot)
                state = STATE_COMPLETED
        except TrainingCancelledError as e:
            state = STATE_CANCELLED
            logger.info(e.message, extra={"job_id": handle.job_id, **e.details})
        except Exception as e:
            error = str(e)
            logger.exception(
                "Training job failed",
                extra={"job_id": handle.job_id, "error_type": type(e).__name__},
            )
        finally:
            self._lock.release()
            handle.finish(state, error, snapshot)

        logger.info("Training job finished", extra={"job_id": handle.job_id, "state": state})

    def cancel(self) -> bool:
        """Cancel the active run, if any. Returns whether one was running."""
        handle = self.current
        if handle is None or handle.done:
            return False
        handle.cancel()
        logger.info("Training cancellation requested", extra={"job_id": handle.job_id})
        return True

    def status(self) -> Dict:
        if self.current is None:
            return {"job_id": None, "state": STATE_IDLE}
        return self.current.status()
