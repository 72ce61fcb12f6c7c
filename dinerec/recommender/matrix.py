"""User-restaurant interaction matrix.

Turns raw order history into a sparse matrix of implicit affinity scores in
[0, 1]. Each (user, restaurant) pair with at least one order gets an
implied rating built from four normalized signals: how often the user
ordered there, how recently, how much they spent per order and any
explicit star rating they left.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Set, Tuple

import numpy as np
from scipy.sparse import csr_matrix

from dinerec.recommender.data import DataSource, Interaction

# Configure module logger
logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 86400


@dataclass(frozen=True)
class ImplicitRatingConfig:
    """Weights and normalizers of the implied rating.

    The defaults are empirical; they are configuration, not invariants.
    """

    frequency_weight: float = 0.4
    recency_weight: float = 0.3
    spend_weight: float = 0.2
    explicit_weight: float = 0.1
    frequency_norm: float = 10.0  # orders
    recency_window_days: float = 30.0
    spend_norm: float = 2000.0  # currency units per order
    rating_scale: float = 5.0
    positive_threshold: float = 0.3


@dataclass
class InteractionCell:
    """Aggregated interactions of one user at one restaurant."""

    implied_rating: float
    count: int
    total_spent: float
    last_timestamp: datetime
    avg_rating: Optional[float] = None


@dataclass
class InteractionMatrix:
    """Sparse user x restaurant matrix with dense index mappings."""

    user_id_to_idx: Dict[str, int] = field(default_factory=dict)
    item_id_to_idx: Dict[str, int] = field(default_factory=dict)
    idx_to_user_id: List[str] = field(default_factory=list)
    idx_to_item_id: List[str] = field(default_factory=list)
    cells: Dict[Tuple[int, int], InteractionCell] = field(default_factory=dict)
    user_items: Dict[int, Set[int]] = field(default_factory=dict)
    item_users: Dict[int, Set[int]] = field(default_factory=dict)
    positive_interactions: List[Tuple[int, int, float]] = field(default_factory=list)
    built_at: datetime = field(default_factory=datetime.now)

    @property
    def num_users(self) -> int:
        return len(self.idx_to_user_id)

    @property
    def num_items(self) -> int:
        return len(self.idx_to_item_id)

    @property
    def nnz(self) -> int:
        return len(self.cells)

    @property
    def is_empty(self) -> bool:
        """True when there is no collaborative signal at all."""
        return self.num_users == 0 or self.num_items == 0

    def sparsity(self) -> float:
        """Fraction of empty cells, 1.0 for an empty matrix."""
        total = self.num_users * self.num_items
        if total == 0:
            return 1.0
        return 1.0 - self.nnz / total

    def observed_pairs(self) -> List[Tuple[int, int]]:
        return list(self.cells.keys())

    def to_csr(self, binary: bool = False) -> csr_matrix:
        """Return the implied ratings (or a 0/1 view) as a CSR matrix."""
        shape = (self.num_users, self.num_items)
        if not self.cells:
            return csr_matrix(shape, dtype=np.float32)

        rows, cols = zip(*self.cells.keys())
        if binary:
            data = np.ones(len(rows), dtype=np.float32)
        else:
            data = np.array(
                [cell.implied_rating for cell in self.cells.values()], dtype=np.float32
            )
        return csr_matrix((data, (rows, cols)), shape=shape, dtype=np.float32)

    def similar_users(self, user_id: str, k: int = 10) -> List[Dict]:
        """Find the ``k`` users with the highest Jaccard similarity.

        Similarity is computed over the sets of restaurants each user has
        ordered from. Users sharing nothing with ``user_id`` are left out.

        Args:
            user_id: User to find neighbors for.
            k: Maximum number of neighbors to return.

        Returns:
            List of dicts with ``user_id``, ``user_idx``, ``similarity`` and
            ``common_items``, most similar first. Empty for unknown users
            or users without history.
        """
        user_idx = self.user_id_to_idx.get(str(user_id))
        if user_idx is None:
            return []

        target_items = self.user_items.get(user_idx, set())
        if not target_items:
            return []

        # Only users sharing at least one restaurant can have similarity > 0
        candidates: Set[int] = set()
        for item_idx in target_items:
            candidates.update(self.item_users.get(item_idx, set()))
        candidates.discard(user_idx)

        neighbors = []
        for other_idx in candidates:
            other_items = self.user_items[other_idx]
            common = len(target_items & other_items)
            union = len(target_items | other_items)
            neighbors.append({
                "user_id": self.idx_to_user_id[other_idx],
                "user_idx": other_idx,
                "similarity": common / union,
                "common_items": common,
            })

        neighbors.sort(key=lambda n: (-n["similarity"], n["user_idx"]))
        return neighbors[:k]

    def user_history(self, user_id: str) -> List[Dict]:
        """Restaurants the user interacted with, best implied rating first."""
        user_idx = self.user_id_to_idx.get(str(user_id))
        if user_idx is None:
            return []

        history = []
        for item_idx in self.user_items.get(user_idx, set()):
            cell = self.cells[(user_idx, item_idx)]
            history.append({
                "item_id": self.idx_to_item_id[item_idx],
                "rating": cell.implied_rating,
                "count": cell.count,
                "total_spent": cell.total_spent,
                "last_order": cell.last_timestamp,
            })
        return sorted(history, key=lambda h: h["rating"], reverse=True)

    def item_user_base(self, item_id: str) -> List[Dict]:
        """Users who ordered from a restaurant, best implied rating first."""
        item_idx = self.item_id_to_idx.get(str(item_id))
        if item_idx is None:
            return []

        user_base = []
        for user_idx in self.item_users.get(item_idx, set()):
            cell = self.cells[(user_idx, item_idx)]
            user_base.append({
                "user_id": self.idx_to_user_id[user_idx],
                "rating": cell.implied_rating,
                "count": cell.count,
                "total_spent": cell.total_spent,
                "last_order": cell.last_timestamp,
            })
        return sorted(user_base, key=lambda u: u["rating"], reverse=True)

    def statistics(self) -> Dict:
        """Summary statistics and interaction-count distributions."""
        user_distribution: Dict[int, int] = defaultdict(int)
        for items in self.user_items.values():
            user_distribution[len(items)] += 1
        item_distribution: Dict[int, int] = defaultdict(int)
        for users in self.item_users.values():
            item_distribution[len(users)] += 1

        return {
            "num_users": self.num_users,
            "num_items": self.num_items,
            "total_interactions": self.nnz,
            "positive_interactions": len(self.positive_interactions),
            "avg_interactions_per_user": self.nnz / self.num_users if self.num_users else 0.0,
            "avg_interactions_per_item": self.nnz / self.num_items if self.num_items else 0.0,
            "sparsity": self.sparsity(),
            "user_distribution": dict(user_distribution),
            "item_distribution": dict(item_distribution),
        }


def calculate_implied_rating(
    count: int,
    days_since_last_order: float,
    avg_spend: float,
    avg_rating: Optional[float],
    config: ImplicitRatingConfig = ImplicitRatingConfig(),
) -> float:
    """Combine the four implicit signals into one rating in [0, 1]."""
    frequency = min(count / config.frequency_norm, 1.0)
    recency = max(
        0.0, (config.recency_window_days - days_since_last_order) / config.recency_window_days
    )
    spend = min(max(avg_spend, 0.0) / config.spend_norm, 1.0)
    explicit = min(avg_rating / config.rating_scale, 1.0) if avg_rating else 0.0

    terms = (
        (frequency, config.frequency_weight),
        (recency, config.recency_weight),
        (spend, config.spend_weight),
        (explicit, config.explicit_weight),
    )
    rating = sum(min(max(value, 0.0), 1.0) * weight for value, weight in terms)
    return min(rating, 1.0)


class InteractionMatrixBuilder:
    """Builds an ``InteractionMatrix`` from order history."""

    def __init__(
        self,
        data_source: Optional[DataSource] = None,
        config: ImplicitRatingConfig = ImplicitRatingConfig(),
    ):
        self.data_source = data_source
        self.config = config

    def build(
        self,
        interactions: Optional[Iterable[Interaction]] = None,
        now: Optional[datetime] = None,
    ) -> InteractionMatrix:
        """Build the matrix.

        Args:
            interactions: Orders to use. Defaults to every interaction of the
                data source.
            now: Reference time for the recency term (default: now).

        Returns:
            The populated matrix. Empty (not an error) when there are no
            users or no restaurants.
        """
        if interactions is None:
            if self.data_source is None:
                raise ValueError("No interactions given and no data source configured")
            interactions = self.data_source.list_interactions()
        now = now or datetime.now()

        matrix = InteractionMatrix(built_at=now)
        aggregates: Dict[Tuple[int, int], Dict] = {}

        for interaction in interactions:
            user_idx = self._index(interaction.user_id, matrix.user_id_to_idx, matrix.idx_to_user_id)
            item_idx = self._index(interaction.item_id, matrix.item_id_to_idx, matrix.idx_to_item_id)

            agg = aggregates.setdefault((user_idx, item_idx), {
                "count": 0,
                "total_spent": 0.0,
                "last_timestamp": interaction.timestamp,
                "ratings": [],
            })
            agg["count"] += interaction.count
            agg["total_spent"] += interaction.amount
            if interaction.timestamp > agg["last_timestamp"]:
                agg["last_timestamp"] = interaction.timestamp
            if interaction.rating is not None:
                agg["ratings"].append(interaction.rating)

        if matrix.is_empty:
            logger.warning("No interactions available, returning empty matrix")
            return matrix

        for (user_idx, item_idx), agg in aggregates.items():
            avg_rating = float(np.mean(agg["ratings"])) if agg["ratings"] else None
            days_since = max(
                (now - agg["last_timestamp"]).total_seconds() / SECONDS_PER_DAY, 0.0
            )
            rating = calculate_implied_rating(
                count=agg["count"],
                days_since_last_order=days_since,
                avg_spend=agg["total_spent"] / max(agg["count"], 1),
                avg_rating=avg_rating,
                config=self.config,
            )

            matrix.cells[(user_idx, item_idx)] = InteractionCell(
                implied_rating=rating,
                count=agg["count"],
                total_spent=agg["total_spent"],
                last_timestamp=agg["last_timestamp"],
                avg_rating=avg_rating,
            )
            matrix.user_items.setdefault(user_idx, set()).add(item_idx)
            matrix.item_users.setdefault(item_idx, set()).add(user_idx)

            if rating > self.config.positive_threshold:
                matrix.positive_interactions.append((user_idx, item_idx, rating))

        logger.info(
            "Built interaction matrix",
            extra={
                "num_users": matrix.num_users,
                "num_items": matrix.num_items,
                "non_zero_entries": matrix.nnz,
                "positive_interactions": len(matrix.positive_interactions),
                "sparsity": round(matrix.sparsity(), 4),
            },
        )
        return matrix

    @staticmethod
    def _index(key: str, forward: Dict[str, int], reverse: List[str]) -> int:
        key = str(key)
        idx = forward.get(key)
        if idx is None:
            idx = len(reverse)
            forward[key] = idx
            reverse.append(key)
        return idx
