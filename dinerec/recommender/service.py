"""Recommendation service facade.

``RecommendationService`` owns the current ``ModelSnapshot`` and everything
built around it: the hybrid dispatcher, the multi-factor scorer and the
training manager. Readers take a reference to the snapshot once per request;
``reload`` replaces that reference in one assignment, so a request never sees
a half-published model.
"""

import logging
import threading
import time
from datetime import datetime
from typing import Dict, List, Optional

from dinerec.config import Settings
from dinerec.config import settings as default_settings
from dinerec.recommender.data import DataSource
from dinerec.recommender.hybrid import (
    ALGORITHM_POPULARITY,
    DispatchResult,
    HybridRecommender,
    Recommendation,
    RecommendationContext,
)
from dinerec.recommender.scoring import MultiFactorScorer, ScoringConfig, ScoringContext, build_scoring_context
from dinerec.recommender.training import ModelSnapshot, TrainingConfig, TrainingHandle, TrainingManager
from dinerec.recommender.utils import load_model_artifacts, save_model_artifacts

logger = logging.getLogger(__name__)

FEEDBACK_WEIGHTS = {
    "ordered": 2.0,
    "favorited": 1.5,
    "clicked": 1.0,
}
# Clicks only count for items shown near the top
CLICK_RANK_LIMIT = 3


def feedback_weight(action: str, rank: Optional[int] = None) -> float:
    if action == "clicked":
        return FEEDBACK_WEIGHTS["clicked"] if rank is not None and rank <= CLICK_RANK_LIMIT else 0.0
    return FEEDBACK_WEIGHTS.get(action, 0.0)


class RecommendationService:
    """Entry point used by the API and the CLI scripts."""

    def __init__(
        self,
        data_source: DataSource,
        settings: Optional[Settings] = None,
        scoring_config: Optional[ScoringConfig] = None,
        snapshot: Optional[ModelSnapshot] = None,
    ):
        self.data_source = data_source
        self.settings = settings or default_settings
        self._snapshot = snapshot or ModelSnapshot.empty()
        self._reload_lock = threading.Lock()

        self.scorer = MultiFactorScorer(
            scoring_config or ScoringConfig(diversity_factor=self.settings.diversity_factor)
        )
        self.recommender = HybridRecommender(
            scorer=self.scorer,
            experienced_user_min_orders=self.settings.experienced_user_min_orders,
            matrix_share=self.settings.matrix_share,
        )
        self.training = TrainingManager(data_source, on_complete=self.reload)

    @property
    def snapshot(self) -> ModelSnapshot:
        return self._snapshot

    def reload(self, snapshot: ModelSnapshot) -> None:
        """Publish a new snapshot atomically."""
        with self._reload_lock:
            self._snapshot = snapshot
        logger.info(
            "Model snapshot published",
            extra={
                "num_users": snapshot.matrix.num_users,
                "num_items": snapshot.matrix.num_items,
                "trained": snapshot.trained,
            },
        )

    def _scoring_context(self, user_id: str, restaurants) -> ScoringContext:
        try:
            return build_scoring_context(
                self.data_source,
                user_id,
                restaurants=restaurants,
                history_limit=self.settings.order_history_limit,
                popularity_window_days=self.scorer.config.popularity_window_days,
            )
        except Exception as e:
            logger.warning(
                "Could not load user history, scoring without it",
                extra={"user_id": user_id, "error": str(e), "error_type": type(e).__name__},
            )
            return ScoringContext(
                user_id=str(user_id),
                user=None,
                history=[],
                restaurants={r.item_id: r for r in restaurants},
                neighbor_order_counts={},
                neighbor_order_total=0,
                recent_order_counts={},
                now=datetime.now(),
            )

    def _clamp_count(self, count: Optional[int]) -> int:
        if count is None:
            return self.settings.default_count
        return max(0, min(int(count), self.settings.max_count))

    def recommend(
        self,
        user_id: str,
        count: Optional[int] = None,
        algorithm: Optional[str] = None,
    ) -> DispatchResult:
        """Rank restaurants for a user and report which strategy answered."""
        start_time = time.time()
        count = self._clamp_count(count)
        snapshot = self._snapshot

        restaurants = self.data_source.list_active_items()
        if not restaurants:
            logger.info("Catalog is empty, nothing to recommend", extra={"user_id": user_id})
            return DispatchResult([], HybridRecommender.normalize_algorithm(algorithm))

        context = RecommendationContext(
            user_id=str(user_id),
            restaurants=restaurants,
            scoring=self._scoring_context(str(user_id), restaurants),
            mf_model=snapshot.mf_model,
            neural_model=snapshot.neural_model,
        )
        result = self.recommender.dispatch(context, count, algorithm)

        logger.info(
            f"Generated {len(result.recommendations)} recommendations for user {user_id}",
            extra={
                "user_id": str(user_id),
                "strategy": result.strategy,
                "fallback": result.fallback,
                "duration_ms": round((time.time() - start_time) * 1000, 2),
            },
        )
        return result

    def get_recommendations(
        self,
        user_id: str,
        count: Optional[int] = None,
        algorithm: Optional[str] = None,
    ) -> List[Recommendation]:
        return self.recommend(user_id, count, algorithm).recommendations

    def popular(self, count: Optional[int] = None) -> List[Recommendation]:
        """Popularity ranking, independent of any user."""
        return self.recommend("guest", count, ALGORITHM_POPULARITY).recommendations

    def train_models(
        self,
        config: Optional[TrainingConfig] = None,
        background: bool = True,
    ) -> TrainingHandle:
        """Start training; see ``TrainingManager.start``."""
        config = config or TrainingConfig.from_settings(self.settings)
        return self.training.start(config, background=background)

    def cancel_training(self) -> bool:
        return self.training.cancel()

    def get_training_status(self) -> Dict:
        return self.training.status()

    def get_model_status(self) -> Dict:
        snapshot = self._snapshot
        return {
            "trained": snapshot.trained,
            "user_count": snapshot.matrix.num_users,
            "item_count": snapshot.matrix.num_items,
            "last_trained_at": snapshot.trained_at.isoformat() if snapshot.trained_at else None,
            "last_metrics": snapshot.metrics,
            "training": self.training.status(),
        }

    def record_feedback(
        self,
        user_id: str,
        item_id: str,
        action: str,
        rank: Optional[int] = None,
    ) -> float:
        """Write a user reaction back to the data source.

        Returns:
            The weight recorded for the interaction.
        """
        weight = feedback_weight(action, rank)
        self.data_source.record_interaction(str(user_id), str(item_id), weight, action)
        return weight

    def save(self, model_dir: Optional[str] = None) -> None:
        save_model_artifacts(self._snapshot, model_dir or self.settings.model_dir)

    def load(self, model_dir: Optional[str] = None) -> ModelSnapshot:
        snapshot = load_model_artifacts(model_dir or self.settings.model_dir)
        self.reload(snapshot)
        return snapshot
