"""Matrix factorization collaborative filtering.

This module learns low-rank user and restaurant latent vectors with
stochastic gradient descent on the binarized interaction matrix (1 if the
user ever ordered from the restaurant, else 0). Predictions squash the dot
product of the two vectors through a sigmoid.

Two iteration modes are supported:

* ``sampled`` (default): observed cells plus negatives sampled once per run,
  O(interactions) per epoch.
* ``dense``: every (user, restaurant) pair each epoch, O(users * items).
  Only suitable for catalogs in the thousands.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
from scipy.special import expit

from dinerec.exceptions import ModelUnavailableError, TrainingCancelledError
from dinerec.recommender.matrix import InteractionMatrix
from dinerec.recommender.sampling import DEFAULT_NEGATIVE_RATIO, generate_training_samples

# Configure module logger
logger = logging.getLogger(__name__)

MODEL_NAME = "matrix_factorization"

# Model configuration constants
DEFAULT_RANK = 10
DEFAULT_ITERATIONS = 50
DEFAULT_LEARNING_RATE = 0.01
DEFAULT_REGULARIZATION = 0.01
DEFAULT_TOLERANCE = 1e-6
DEFAULT_RANDOM_STATE = 42
INIT_SCALE = 0.05

ITERATION_MODES = ("sampled", "dense")


@dataclass(frozen=True)
class MatrixFactorizationConfig:
    rank: int = DEFAULT_RANK
    iterations: int = DEFAULT_ITERATIONS
    learning_rate: float = DEFAULT_LEARNING_RATE
    regularization: float = DEFAULT_REGULARIZATION
    tolerance: float = DEFAULT_TOLERANCE
    iteration_mode: str = "sampled"
    negative_ratio: int = DEFAULT_NEGATIVE_RATIO
    random_state: Optional[int] = DEFAULT_RANDOM_STATE

    def __post_init__(self):
        if self.iteration_mode not in ITERATION_MODES:
            raise ValueError(
                f"iteration_mode must be one of {ITERATION_MODES}, got {self.iteration_mode!r}"
            )
        if self.rank <= 0:
            raise ValueError(f"rank must be positive, got {self.rank}")


@dataclass(frozen=True, eq=False)
class MatrixFactorizationModel:
    """Immutable trained factors plus the index mappings they refer to."""

    user_factors: np.ndarray
    item_factors: np.ndarray
    user_id_to_idx: Dict[str, int] = field(default_factory=dict)
    item_id_to_idx: Dict[str, int] = field(default_factory=dict)
    idx_to_item_id: Tuple[str, ...] = ()
    loss_history: Tuple[float, ...] = ()
    trained_at: Optional[datetime] = None
    diverged: bool = False
    config: MatrixFactorizationConfig = MatrixFactorizationConfig()

    def __post_init__(self):
        self.user_factors.setflags(write=False)
        self.item_factors.setflags(write=False)

    @classmethod
    def empty(cls, config: MatrixFactorizationConfig = MatrixFactorizationConfig()) -> "MatrixFactorizationModel":
        return cls(
            user_factors=np.zeros((0, config.rank)),
            item_factors=np.zeros((0, config.rank)),
            config=config,
        )

    @property
    def is_trained(self) -> bool:
        return self.user_factors.shape[0] > 0 and self.item_factors.shape[0] > 0

    def predict(self, user_idx: int, item_idx: int) -> float:
        """Predicted affinity in [0, 1]; 0.0 when untrained or out of range."""
        if not self.is_trained:
            return 0.0
        if not (0 <= user_idx < self.user_factors.shape[0]):
            return 0.0
        if not (0 <= item_idx < self.item_factors.shape[0]):
            return 0.0
        return float(expit(self.user_factors[user_idx] @ self.item_factors[item_idx]))

    def score_user(self, user_id: str) -> np.ndarray:
        """Scores of every known restaurant for a user.

        Raises:
            ModelUnavailableError: If the model is untrained or the user was
                not part of the training data.
        """
        if not self.is_trained:
            raise ModelUnavailableError(MODEL_NAME)
        user_idx = self.user_id_to_idx.get(str(user_id))
        if user_idx is None:
            raise ModelUnavailableError(MODEL_NAME, str(user_id))
        return expit(self.item_factors @ self.user_factors[user_idx])

    def recommend(
        self,
        user_id: str,
        top_n: int,
        candidate_ids: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> List[Tuple[str, float]]:
        """Top ``top_n`` (item_id, score) pairs for a user, best first."""
        scores = self.score_user(user_id)
        excluded = {str(i) for i in exclude or ()}

        if candidate_ids is None:
            indices = range(len(self.idx_to_item_id))
        else:
            indices = [
                self.item_id_to_idx[str(i)]
                for i in candidate_ids
                if str(i) in self.item_id_to_idx
            ]

        ranked = [
            (self.idx_to_item_id[idx], float(scores[idx]))
            for idx in indices
            if self.idx_to_item_id[idx] not in excluded
        ]
        ranked.sort(key=lambda pair: pair[1], reverse=True)
        return ranked[:max(top_n, 0)]

    def metrics(self) -> Dict:
        return {
            "final_loss": self.loss_history[-1] if self.loss_history else None,
            "epochs": len(self.loss_history),
            "diverged": self.diverged,
            "rank": self.config.rank,
        }


def _training_cells(
    matrix: InteractionMatrix,
    config: MatrixFactorizationConfig,
    rng: np.random.Generator,
) -> Tuple[List[int], List[int], List[float]]:
    """Cells visited every epoch with their binarized labels."""
    if config.iteration_mode == "dense":
        observed = set(matrix.cells.keys())
        users, items, labels = [], [], []
        for u in range(matrix.num_users):
            for i in range(matrix.num_items):
                users.append(u)
                items.append(i)
                labels.append(1.0 if (u, i) in observed else 0.0)
        return users, items, labels

    samples = generate_training_samples(
        matrix.observed_pairs(),
        matrix.num_users,
        matrix.num_items,
        negative_ratio=config.negative_ratio,
        rng=rng,
    )
    return samples.users.tolist(), samples.items.tolist(), samples.labels.tolist()


def train_matrix_factorization(
    matrix: InteractionMatrix,
    config: MatrixFactorizationConfig = MatrixFactorizationConfig(),
    progress: Optional[Callable[[int, int, float, Optional[float]], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> MatrixFactorizationModel:
    """Train latent factors with SGD and L2 regularization.

    Both vectors of a cell are updated simultaneously from their pre-update
    values::

        u += lr * (error * v - reg * u)
        v += lr * (error * u - reg * v)

    Training stops early when the epoch-average squared loss changes by
    less than ``config.tolerance``. A non-finite loss, or a final loss above
    the first epoch's, is logged as divergence and the best weights seen are
    kept.

    Args:
        matrix: Interaction matrix to learn from.
        config: Hyperparameters.
        progress: Called after every epoch with
            ``(epoch, total_epochs, loss, accuracy)``; accuracy is None.
        should_stop: Polled before every epoch; returning True cancels.

    Returns:
        A new immutable ``MatrixFactorizationModel``. Empty (all predictions
        0) when the matrix has no users or no restaurants.

    Raises:
        TrainingCancelledError: If ``should_stop`` requested cancellation.
    """
    if matrix.is_empty:
        logger.warning("Empty interaction matrix, skipping matrix factorization training")
        return MatrixFactorizationModel.empty(config)

    logger.info("=" * 60)
    logger.info("Starting matrix factorization training")
    logger.info("=" * 60)
    logger.info(
        "Training configuration",
        extra={
            "num_users": matrix.num_users,
            "num_items": matrix.num_items,
            **asdict(config),
        },
    )

    rng = np.random.default_rng(config.random_state)
    user_factors = rng.uniform(-INIT_SCALE, INIT_SCALE, (matrix.num_users, config.rank))
    item_factors = rng.uniform(-INIT_SCALE, INIT_SCALE, (matrix.num_items, config.rank))

    users, items, labels = _training_cells(matrix, config, rng)
    n_cells = max(len(labels), 1)
    lr = config.learning_rate
    reg = config.regularization

    loss_history: List[float] = []
    best_loss = np.inf
    best_factors = (user_factors.copy(), item_factors.copy())
    diverged = False

    for epoch in range(config.iterations):
        if should_stop is not None and should_stop():
            raise TrainingCancelledError(MODEL_NAME, epoch)

        total_loss = 0.0
        for u, i, label in zip(users, items, labels):
            user_vec = user_factors[u].copy()
            item_vec = item_factors[i].copy()
            error = label - user_vec @ item_vec
            total_loss += error * error
            user_factors[u] += lr * (error * item_vec - reg * user_vec)
            item_factors[i] += lr * (error * user_vec - reg * item_vec)

        avg_loss = total_loss / n_cells
        if not np.isfinite(avg_loss):
            logger.warning(
                "Loss became non-finite, stopping with best weights",
                extra={"error_type": "TrainingDivergence", "epoch": epoch + 1},
            )
            diverged = True
            break

        loss_history.append(float(avg_loss))
        if avg_loss < best_loss:
            best_loss = avg_loss
            best_factors = (user_factors.copy(), item_factors.copy())

        if progress is not None:
            progress(epoch + 1, config.iterations, float(avg_loss), None)

        if epoch % 10 == 0 or epoch == config.iterations - 1:
            logger.info(f"Iteration {epoch + 1}/{config.iterations}: loss = {avg_loss:.6f}")

        if len(loss_history) > 1 and abs(loss_history[-2] - avg_loss) < config.tolerance:
            logger.info(f"Converged after {epoch + 1} iterations")
            break

    if len(loss_history) > 1 and loss_history[-1] > loss_history[0]:
        logger.warning(
            "Loss did not decrease during training",
            extra={
                "error_type": "TrainingDivergence",
                "first_loss": loss_history[0],
                "last_loss": loss_history[-1],
            },
        )
        diverged = True

    if diverged:
        user_factors, item_factors = best_factors

    logger.info("Matrix factorization training completed")

    return MatrixFactorizationModel(
        user_factors=np.array(user_factors),
        item_factors=np.array(item_factors),
        user_id_to_idx=dict(matrix.user_id_to_idx),
        item_id_to_idx=dict(matrix.item_id_to_idx),
        idx_to_item_id=tuple(matrix.idx_to_item_id),
        loss_history=tuple(loss_history),
        trained_at=datetime.now(),
        diverged=diverged,
        config=config,
    )


def evaluate_model(
    model: MatrixFactorizationModel,
    matrix: InteractionMatrix,
    k: int = 5,
) -> Dict:
    """Precision@k and recall@k against positive interactions.

    Users with fewer than two interactions or no positive interaction are
    not evaluated.
    """
    relevant: Dict[int, set] = {}
    for user_idx, item_idx, _rating in matrix.positive_interactions:
        relevant.setdefault(user_idx, set()).add(matrix.idx_to_item_id[item_idx])

    total_precision = 0.0
    total_recall = 0.0
    evaluated = 0

    for user_idx, actual in relevant.items():
        if len(matrix.user_items.get(user_idx, ())) < 2:
            continue
        user_id = matrix.idx_to_user_id[user_idx]
        try:
            recommended = {item_id for item_id, _ in model.recommend(user_id, k)}
        except ModelUnavailableError:
            continue
        hits = len(actual & recommended)
        total_precision += hits / k
        total_recall += hits / len(actual)
        evaluated += 1

    if evaluated == 0:
        return {f"precision_at_{k}": 0.0, f"recall_at_{k}": 0.0, "users_evaluated": 0}

    return {
        f"precision_at_{k}": total_precision / evaluated,
        f"recall_at_{k}": total_recall / evaluated,
        "users_evaluated": evaluated,
    }
