"""Hybrid recommendation module.

Combines matrix factorization, the neural embedding model, the multi-factor
scorer and a popularity ranking behind one strategy interface. The
dispatcher picks a strategy from the user's history and the algorithm hint,
and falls back to popularity whenever the chosen strategy fails, comes back
empty or reports that its model is unavailable.
"""

import logging
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from dinerec.exceptions import ModelUnavailableError
from dinerec.recommender.data import Restaurant
from dinerec.recommender.factorization import MatrixFactorizationModel
from dinerec.recommender.neural import NeuralEmbeddingModel
from dinerec.recommender.scoring import (
    EXPLANATION_HIGHLY_RATED,
    EXPLANATION_ORDER_HISTORY,
    MAX_EXPLANATIONS,
    MultiFactorScorer,
    ScoredCandidate,
    ScoringContext,
)

# Configure module logger
logger = logging.getLogger(__name__)

ALGORITHM_HYBRID = "hybrid"
ALGORITHM_MATRIX = "matrix"
ALGORITHM_NEURAL = "neural"
ALGORITHM_MULTI_FACTOR = "multi_factor"
ALGORITHM_POPULARITY = "popularity"

ALGORITHMS = (
    ALGORITHM_HYBRID,
    ALGORITHM_MATRIX,
    ALGORITHM_NEURAL,
    ALGORITHM_MULTI_FACTOR,
    ALGORITHM_POPULARITY,
)

# Algorithm tags carried by each result
TAG_MATRIX = "matrix_factorization"
TAG_NEURAL = "neural_embedding"
TAG_MULTI_FACTOR = "multi_factor"
TAG_POPULARITY = "popularity"

EXPLANATION_SIMILAR_TASTE = "Liked by diners with similar taste"
EXPLANATION_LEARNED = "Learned from your dining patterns"
EXPLANATION_POPULAR = "Popular choice"

DEFAULT_EXPERIENCED_USER_MIN_ORDERS = 5
DEFAULT_MATRIX_SHARE = 0.7


@dataclass(frozen=True)
class Recommendation:
    """One ranked restaurant, independent of the engine that produced it."""

    item_id: str
    name: str
    cuisine: Tuple[str, ...]
    rating: float
    delivery_time: int
    price_range: str
    score: float
    explanations: Tuple[str, ...]
    algorithm: str
    sub_scores: Dict[str, float] = field(default_factory=dict)

    @property
    def match_percentage(self) -> int:
        return int(round(self.score * 100))

    @classmethod
    def from_restaurant(
        cls,
        restaurant: Restaurant,
        score: float,
        explanations: Iterable[str],
        algorithm: str,
        sub_scores: Optional[Dict[str, float]] = None,
    ) -> "Recommendation":
        return cls(
            item_id=restaurant.item_id,
            name=restaurant.name,
            cuisine=tuple(restaurant.cuisine_tags),
            rating=restaurant.rating,
            delivery_time=restaurant.delivery_minutes,
            price_range=restaurant.price_tier,
            score=min(max(float(score), 0.0), 1.0),
            explanations=tuple(explanations)[:MAX_EXPLANATIONS],
            algorithm=algorithm,
            sub_scores=dict(sub_scores or {}),
        )

    @classmethod
    def from_candidate(cls, candidate: ScoredCandidate, algorithm: str = TAG_MULTI_FACTOR) -> "Recommendation":
        return cls.from_restaurant(
            candidate.restaurant,
            candidate.final_score,
            candidate.explanations,
            algorithm,
            candidate.sub_scores.as_dict(),
        )

    def to_dict(self) -> Dict:
        return {
            "id": self.item_id,
            "name": self.name,
            "cuisine": list(self.cuisine),
            "rating": self.rating,
            "deliveryTime": self.delivery_time,
            "priceRange": self.price_range,
            "matchPercentage": self.match_percentage,
            "score": self.score,
            "subScores": self.sub_scores,
            "explanations": list(self.explanations),
            "algorithmTag": self.algorithm,
        }


@dataclass
class RecommendationContext:
    """Everything a strategy may look at for one request."""

    user_id: str
    restaurants: List[Restaurant]
    scoring: ScoringContext
    mf_model: Optional[MatrixFactorizationModel] = None
    neural_model: Optional[NeuralEmbeddingModel] = None

    @property
    def order_count(self) -> int:
        return sum(order.count for order in self.scoring.history)

    def restaurant(self, item_id: str) -> Optional[Restaurant]:
        return self.scoring.restaurants.get(item_id)


class RecommendationStrategy(ABC):
    """A way of ranking restaurants for one user."""

    name: str = ""

    @abstractmethod
    def recommend(
        self,
        context: RecommendationContext,
        count: int,
        exclude: Iterable[str] = (),
    ) -> List[Recommendation]:
        """Return at most ``count`` recommendations, best first.

        Raises:
            ModelUnavailableError: If the strategy has no usable model for
                this user.
        """


def _model_explanations(context: RecommendationContext, restaurant: Restaurant, default: str) -> List[str]:
    explanations = []
    if context.scoring.orders_at(restaurant.item_id):
        explanations.append(EXPLANATION_ORDER_HISTORY)
    else:
        explanations.append(default)
    if restaurant.rating >= 4.5:
        explanations.append(EXPLANATION_HIGHLY_RATED)
    return explanations


class MatrixFactorizationStrategy(RecommendationStrategy):
    name = ALGORITHM_MATRIX

    def recommend(self, context, count, exclude=()):
        model = context.mf_model
        if model is None or not model.is_trained:
            raise ModelUnavailableError("matrix_factorization")

        ranked = model.recommend(
            context.user_id,
            count,
            candidate_ids=[r.item_id for r in context.restaurants],
            exclude=exclude,
        )
        results = []
        for item_id, score in ranked:
            restaurant = context.restaurant(item_id)
            results.append(Recommendation.from_restaurant(
                restaurant,
                score,
                _model_explanations(context, restaurant, EXPLANATION_SIMILAR_TASTE),
                TAG_MATRIX,
            ))
        return results


class NeuralEmbeddingStrategy(RecommendationStrategy):
    name = ALGORITHM_NEURAL

    def recommend(self, context, count, exclude=()):
        model = context.neural_model
        if model is None or not model.is_trained:
            raise ModelUnavailableError("neural")

        ranked = model.recommend(
            context.user_id,
            count,
            candidate_ids=[r.item_id for r in context.restaurants],
            exclude=exclude,
        )
        results = []
        for item_id, score in ranked:
            restaurant = context.restaurant(item_id)
            results.append(Recommendation.from_restaurant(
                restaurant,
                score,
                _model_explanations(context, restaurant, EXPLANATION_LEARNED),
                TAG_NEURAL,
            ))
        return results


class MultiFactorStrategy(RecommendationStrategy):
    name = ALGORITHM_MULTI_FACTOR

    def __init__(self, scorer: MultiFactorScorer, diversity_factor: Optional[float] = None):
        self.scorer = scorer
        self.diversity_factor = diversity_factor

    def recommend(self, context, count, exclude=()):
        candidates = self.scorer.rank(
            context.restaurants,
            context.scoring,
            count,
            diversity_factor=self.diversity_factor,
            exclude=exclude,
        )
        return [Recommendation.from_candidate(c, TAG_MULTI_FACTOR) for c in candidates]


class PopularityStrategy(RecommendationStrategy):
    """Recent order volume, rating and fee. Needs no user data at all."""

    name = ALGORITHM_POPULARITY

    def __init__(self, scorer: MultiFactorScorer):
        self.scorer = scorer

    def recommend(self, context, count, exclude=()):
        excluded = set(exclude)
        scored = [
            (restaurant, self.scorer.popularity_score(restaurant, context.scoring))
            for restaurant in context.restaurants
            if restaurant.item_id not in excluded
        ]
        scored.sort(key=lambda pair: (pair[1], pair[0].rating), reverse=True)

        return [
            Recommendation.from_restaurant(
                restaurant,
                score,
                [EXPLANATION_HIGHLY_RATED if restaurant.rating >= 4.0 else EXPLANATION_POPULAR],
                TAG_POPULARITY,
                {"popularity": score},
            )
            for restaurant, score in scored[:max(count, 0)]
        ]


@dataclass
class DispatchResult:
    recommendations: List[Recommendation]
    strategy: str
    fallback: bool = False


class HybridRecommender:
    """Selects a strategy per request and runs the fallback chain."""

    def __init__(
        self,
        scorer: Optional[MultiFactorScorer] = None,
        experienced_user_min_orders: int = DEFAULT_EXPERIENCED_USER_MIN_ORDERS,
        matrix_share: float = DEFAULT_MATRIX_SHARE,
        diversity_factor: Optional[float] = None,
    ):
        self.scorer = scorer or MultiFactorScorer()
        self.experienced_user_min_orders = experienced_user_min_orders
        self.matrix_share = matrix_share

        self.strategies: Dict[str, RecommendationStrategy] = {
            ALGORITHM_MATRIX: MatrixFactorizationStrategy(),
            ALGORITHM_NEURAL: NeuralEmbeddingStrategy(),
            ALGORITHM_MULTI_FACTOR: MultiFactorStrategy(self.scorer, diversity_factor),
            ALGORITHM_POPULARITY: PopularityStrategy(self.scorer),
        }

        logger.info(
            f"Initialized HybridRecommender: "
            f"experienced threshold={experienced_user_min_orders} orders, "
            f"matrix share={matrix_share:.2f}"
        )

    @staticmethod
    def normalize_algorithm(algorithm: Optional[str]) -> str:
        if algorithm in ALGORITHMS:
            return algorithm
        if algorithm is not None:
            logger.info(f"Unknown algorithm hint {algorithm!r}, using {ALGORITHM_HYBRID}")
        return ALGORITHM_HYBRID

    def _hybrid(self, context: RecommendationContext, count: int) -> List[Recommendation]:
        multi_factor = self.strategies[ALGORITHM_MULTI_FACTOR]
        if context.order_count < self.experienced_user_min_orders:
            return multi_factor.recommend(context, count)

        matrix_count = int(math.floor(self.matrix_share * count))
        results: List[Recommendation] = []
        if matrix_count > 0:
            try:
                results = self.strategies[ALGORITHM_MATRIX].recommend(context, matrix_count)
            except ModelUnavailableError as e:
                logger.info(
                    "Matrix factorization unavailable, using multi-factor scorer",
                    extra={"user_id": context.user_id, "reason": e.message},
                )

        if not results:
            return multi_factor.recommend(context, count)

        remaining = count - len(results)
        if remaining > 0:
            seen = [r.item_id for r in results]
            results = results + multi_factor.recommend(context, remaining, exclude=seen)
        return self._order_by_personal_signal(context, results)

    def _order_by_personal_signal(
        self,
        context: RecommendationContext,
        results: List[Recommendation],
    ) -> List[Recommendation]:
        """Stable sort of a blended list by the user's own order history.

        Matrix factorization learns from binarized labels only, so it cannot
        tell a five-star favorite from a single unrated order.
        """
        signals: Dict[str, float] = {}
        for rec in results:
            restaurant = context.restaurant(rec.item_id)
            try:
                signals[rec.item_id] = self.scorer.personal_score(restaurant, context.scoring)
            except Exception as e:
                logger.warning(
                    "Personal signal unavailable, keeping blended position",
                    extra={"user_id": context.user_id, "item_id": rec.item_id, "error_type": type(e).__name__},
                )
                signals[rec.item_id] = 0.0
        return sorted(results, key=lambda rec: signals[rec.item_id], reverse=True)

    def _run(self, algorithm: str, context: RecommendationContext, count: int) -> List[Recommendation]:
        if algorithm == ALGORITHM_HYBRID:
            return self._hybrid(context, count)
        return self.strategies[algorithm].recommend(context, count)

    def dispatch(
        self,
        context: RecommendationContext,
        count: int,
        algorithm: Optional[str] = None,
    ) -> DispatchResult:
        """Run the selected strategy, falling back to popularity.

        Never raises. Returns an empty result only when the catalog is empty
        or ``count`` is not positive.
        """
        algorithm = self.normalize_algorithm(algorithm)
        if count <= 0 or not context.restaurants:
            return DispatchResult([], algorithm)

        try:
            results = self._run(algorithm, context, count)
            if results:
                return DispatchResult(results[:count], algorithm)
            reason = "empty result"
        except ModelUnavailableError as e:
            reason = e.message
        except Exception as e:
            logger.exception(
                f"Strategy {algorithm} failed",
                extra={"user_id": context.user_id, "error_type": type(e).__name__},
            )
            reason = str(e)

        logger.info(
            "Falling back to popularity ranking",
            extra={"user_id": context.user_id, "algorithm": algorithm, "reason": reason},
        )
        try:
            results = self.strategies[ALGORITHM_POPULARITY].recommend(context, count)
        except Exception:
            logger.exception("Popularity fallback failed", extra={"user_id": context.user_id})
            results = []
        return DispatchResult(results[:count], ALGORITHM_POPULARITY, fallback=True)

    def recommend(
        self,
        context: RecommendationContext,
        count: int,
        algorithm: Optional[str] = None,
    ) -> List[Recommendation]:
        return self.dispatch(context, count, algorithm).recommendations
