"""Neural collaborative filtering (NeuMF) on implicit feedback.

A user embedding table and a restaurant embedding table feed two branches:
a generalized matrix factorization branch (element-wise product) and an MLP
over the concatenated embeddings. Both branches meet in a single sigmoid
unit trained with binary cross-entropy against sampled positives and
negatives.
"""

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

import numpy as np
import torch
import torch.nn as nn
from sklearn.metrics import roc_auc_score
from torch.utils.data import DataLoader, TensorDataset

from dinerec.exceptions import ModelUnavailableError, TrainingCancelledError
from dinerec.recommender.matrix import InteractionMatrix
from dinerec.recommender.sampling import (
    DEFAULT_NEGATIVE_RATIO,
    TrainingSamples,
    generate_training_samples,
)

logger = logging.getLogger(__name__)

MODEL_NAME = "neural"

__all__ = [
    "NeuMF",
    "NeuralConfig",
    "NeuralEmbeddingModel",
    "generate_training_samples",
    "train_neural_model",
]


@dataclass(frozen=True)
class NeuralConfig:
    embedding_dim: int = 64
    hidden_layers: Tuple[int, ...] = (128, 64, 32, 16)
    dropout: float = 0.2
    batch_size: int = 128
    epochs: int = 30
    learning_rate: float = 0.001
    weight_decay: float = 1e-4
    negative_ratio: int = DEFAULT_NEGATIVE_RATIO
    random_state: Optional[int] = 42


class NeuMF(nn.Module):
    """GMF and MLP branches over shared user and item embeddings."""

    def __init__(
        self,
        num_users: int,
        num_items: int,
        embedding_dim: int = 64,
        hidden_layers: Tuple[int, ...] = (128, 64, 32, 16),
        dropout: float = 0.2,
    ):
        super().__init__()
        self.user_embedding = nn.Embedding(num_users, embedding_dim)
        self.item_embedding = nn.Embedding(num_items, embedding_dim)

        layers: List[nn.Module] = []
        in_dim = embedding_dim * 2
        for hidden in hidden_layers:
            layers += [nn.Linear(in_dim, hidden), nn.ReLU(), nn.Dropout(dropout)]
            in_dim = hidden
        self.mlp = nn.Sequential(*layers)

        self.output = nn.Linear(embedding_dim + in_dim, 1)
        self._init_weights()

    def _init_weights(self):
        nn.init.normal_(self.user_embedding.weight, std=0.01)
        nn.init.normal_(self.item_embedding.weight, std=0.01)
        for module in self.mlp:
            if isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                nn.init.zeros_(module.bias)
        nn.init.xavier_uniform_(self.output.weight)
        nn.init.zeros_(self.output.bias)

    def forward(self, user_idx: torch.Tensor, item_idx: torch.Tensor) -> torch.Tensor:
        u = self.user_embedding(user_idx)
        v = self.item_embedding(item_idx)
        gmf = u * v
        deep = self.mlp(torch.cat([u, v], dim=-1))
        logits = self.output(torch.cat([gmf, deep], dim=-1)).squeeze(-1)
        return torch.sigmoid(logits)


@dataclass(frozen=True, eq=False)
class NeuralEmbeddingModel:
    """A frozen NeuMF network plus the index mappings it was trained on."""

    network: Optional[NeuMF] = None
    user_id_to_idx: Dict[str, int] = field(default_factory=dict)
    item_id_to_idx: Dict[str, int] = field(default_factory=dict)
    idx_to_item_id: Tuple[str, ...] = ()
    loss_history: Tuple[float, ...] = ()
    accuracy_history: Tuple[float, ...] = ()
    auc: Optional[float] = None
    trained_at: Optional[datetime] = None
    config: NeuralConfig = NeuralConfig()

    @classmethod
    def empty(cls, config: NeuralConfig = NeuralConfig()) -> "NeuralEmbeddingModel":
        return cls(config=config)

    @property
    def is_trained(self) -> bool:
        return self.network is not None

    def _require_network(self) -> NeuMF:
        if self.network is None:
            raise ModelUnavailableError(MODEL_NAME)
        return self.network

    def predict(self, user_idx: int, item_idx: int) -> float:
        """Interaction probability in [0, 1].

        Raises:
            ModelUnavailableError: If untrained or an index is out of range.
        """
        network = self._require_network()
        if not (0 <= user_idx < network.user_embedding.num_embeddings):
            raise ModelUnavailableError(MODEL_NAME, str(user_idx))
        if not (0 <= item_idx < network.item_embedding.num_embeddings):
            raise ModelUnavailableError(MODEL_NAME)
        with torch.no_grad():
            score = network(torch.tensor([user_idx]), torch.tensor([item_idx]))
        return float(score.item())

    def score_items(self, user_id: str, item_ids: Optional[Iterable[str]] = None) -> Dict[str, float]:
        """Score restaurants for a user in one batch.

        Restaurants the model never saw are left out of the result.

        Raises:
            ModelUnavailableError: If untrained or the user is unknown.
        """
        network = self._require_network()
        user_idx = self.user_id_to_idx.get(str(user_id))
        if user_idx is None:
            raise ModelUnavailableError(MODEL_NAME, str(user_id))

        if item_ids is None:
            item_ids = self.idx_to_item_id
        known = [str(i) for i in item_ids if str(i) in self.item_id_to_idx]
        if not known:
            return {}

        items = torch.tensor([self.item_id_to_idx[i] for i in known], dtype=torch.long)
        users = torch.full_like(items, user_idx)
        with torch.no_grad():
            scores = network(users, items).numpy()
        return {item_id: float(score) for item_id, score in zip(known, scores)}

    def recommend(
        self,
        user_id: str,
        top_n: int,
        candidate_ids: Optional[Iterable[str]] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> List[Tuple[str, float]]:
        excluded = {str(i) for i in exclude or ()}
        scores = self.score_items(user_id, candidate_ids)
        ranked = sorted(
            ((item_id, s) for item_id, s in scores.items() if item_id not in excluded),
            key=lambda pair: pair[1],
            reverse=True,
        )
        return ranked[:max(top_n, 0)]

    def metrics(self) -> Dict:
        return {
            "final_loss": self.loss_history[-1] if self.loss_history else None,
            "final_accuracy": self.accuracy_history[-1] if self.accuracy_history else None,
            "auc": self.auc,
            "epochs": len(self.loss_history),
        }

    def to_state(self) -> Dict:
        """Serializable checkpoint (plain containers and tensors only)."""
        network = self._require_network()
        return {
            "state_dict": network.state_dict(),
            "num_users": network.user_embedding.num_embeddings,
            "num_items": network.item_embedding.num_embeddings,
            "config": asdict(self.config),
            "user_id_to_idx": dict(self.user_id_to_idx),
            "idx_to_item_id": list(self.idx_to_item_id),
            "loss_history": list(self.loss_history),
            "accuracy_history": list(self.accuracy_history),
            "auc": self.auc,
            "trained_at": self.trained_at.isoformat() if self.trained_at else None,
        }

    @classmethod
    def from_state(cls, state: Dict) -> "NeuralEmbeddingModel":
        raw_config = dict(state["config"])
        raw_config["hidden_layers"] = tuple(raw_config["hidden_layers"])
        config = NeuralConfig(**raw_config)

        network = NeuMF(
            state["num_users"],
            state["num_items"],
            embedding_dim=config.embedding_dim,
            hidden_layers=config.hidden_layers,
            dropout=config.dropout,
        )
        network.load_state_dict(state["state_dict"])
        _freeze(network)

        idx_to_item_id = tuple(state["idx_to_item_id"])
        return cls(
            network=network,
            user_id_to_idx=dict(state["user_id_to_idx"]),
            item_id_to_idx={item_id: idx for idx, item_id in enumerate(idx_to_item_id)},
            idx_to_item_id=idx_to_item_id,
            loss_history=tuple(state.get("loss_history", ())),
            accuracy_history=tuple(state.get("accuracy_history", ())),
            auc=state.get("auc"),
            trained_at=datetime.fromisoformat(state["trained_at"]) if state.get("trained_at") else None,
            config=config,
        )


def _freeze(network: nn.Module) -> None:
    network.eval()
    for param in network.parameters():
        param.requires_grad_(False)


def _make_loader(samples: TrainingSamples, config: NeuralConfig) -> DataLoader:
    dataset = TensorDataset(
        torch.from_numpy(samples.users),
        torch.from_numpy(samples.items),
        torch.from_numpy(samples.labels),
    )
    generator = torch.Generator()
    if config.random_state is not None:
        generator.manual_seed(config.random_state)
    return DataLoader(dataset, batch_size=config.batch_size, shuffle=True, generator=generator)


def _training_auc(network: NeuMF, samples: TrainingSamples) -> Optional[float]:
    """ROC AUC of the frozen network on its own training samples."""
    if samples.positive_count == 0 or samples.negative_count == 0:
        return None
    with torch.no_grad():
        scores = network(
            torch.from_numpy(samples.users), torch.from_numpy(samples.items)
        ).numpy()
    return float(roc_auc_score(samples.labels, scores))


def train_neural_model(
    matrix: InteractionMatrix,
    config: NeuralConfig = NeuralConfig(),
    progress: Optional[Callable[[int, int, float, Optional[float]], None]] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> NeuralEmbeddingModel:
    """Train a NeuMF network on every observed interaction.

    Args:
        matrix: Interaction matrix; each observed cell is a positive.
        config: Architecture and optimizer hyperparameters.
        progress: Called after every epoch with
            ``(epoch, total_epochs, loss, accuracy)``.
        should_stop: Polled before every epoch; returning True cancels.

    Returns:
        A frozen ``NeuralEmbeddingModel``, or an empty one when the matrix
        is empty.

    Raises:
        TrainingCancelledError: If ``should_stop`` requested cancellation.
    """
    if matrix.is_empty:
        logger.warning("Empty interaction matrix, skipping neural model training")
        return NeuralEmbeddingModel.empty(config)

    logger.info("=" * 60)
    logger.info("Starting neural embedding training")
    logger.info("=" * 60)

    if config.random_state is not None:
        torch.manual_seed(config.random_state)
    rng = np.random.default_rng(config.random_state)

    samples = generate_training_samples(
        matrix.observed_pairs(),
        matrix.num_users,
        matrix.num_items,
        negative_ratio=config.negative_ratio,
        rng=rng,
    )
    logger.info(
        "Generated training samples",
        extra={
            "positive_samples": samples.positive_count,
            "negative_samples": samples.negative_count,
            "num_users": matrix.num_users,
            "num_items": matrix.num_items,
        },
    )

    network = NeuMF(
        matrix.num_users,
        matrix.num_items,
        embedding_dim=config.embedding_dim,
        hidden_layers=config.hidden_layers,
        dropout=config.dropout,
    )
    optimizer = torch.optim.Adam(
        network.parameters(),
        lr=config.learning_rate,
        weight_decay=config.weight_decay,
    )
    loss_fn = nn.BCELoss()
    loader = _make_loader(samples, config)

    loss_history: List[float] = []
    accuracy_history: List[float] = []

    for epoch in range(config.epochs):
        if should_stop is not None and should_stop():
            raise TrainingCancelledError(MODEL_NAME, epoch)

        network.train()
        total_loss = 0.0
        correct = 0
        seen = 0
        for users, items, labels in loader:
            predictions = network(users, items)
            loss = loss_fn(predictions, labels)

            optimizer.zero_grad()
            loss.backward()
            optimizer.step()

            total_loss += loss.item() * len(labels)
            correct += int(((predictions.detach() >= 0.5).float() == labels).sum().item())
            seen += len(labels)

        epoch_loss = total_loss / max(seen, 1)
        epoch_accuracy = correct / max(seen, 1)
        loss_history.append(epoch_loss)
        accuracy_history.append(epoch_accuracy)

        if progress is not None:
            progress(epoch + 1, config.epochs, epoch_loss, epoch_accuracy)

        if epoch % 5 == 0 or epoch == config.epochs - 1:
            logger.info(
                f"Epoch {epoch + 1}/{config.epochs}: "
                f"loss = {epoch_loss:.4f}, accuracy = {epoch_accuracy:.4f}"
            )

    _freeze(network)
    auc = _training_auc(network, samples)
    logger.info("Neural embedding training completed", extra={"auc": auc})

    return NeuralEmbeddingModel(
        network=network,
        user_id_to_idx=dict(matrix.user_id_to_idx),
        item_id_to_idx=dict(matrix.item_id_to_idx),
        idx_to_item_id=tuple(matrix.idx_to_item_id),
        loss_history=tuple(loss_history),
        accuracy_history=tuple(accuracy_history),
        auc=auc,
        trained_at=datetime.now(),
        config=config,
    )
