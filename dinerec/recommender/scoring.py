"""Rule-based multi-factor restaurant scoring.

Every candidate restaurant gets five sub-scores (personal preference,
collaborative neighbors, content attributes, temporal context and
popularity). Their weighted blend is jittered slightly, clamped into
[0.15, 0.90] and turned into a ranking with diversity re-ranking, boosts
for new and highly rated restaurants and short explanations.

This scorer needs no trained model, so it is also the cold-start path.
"""

import logging
from collections import Counter, defaultdict
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Dict, Iterable, List, Optional, Set

import numpy as np

from dinerec.exceptions import ScoringFaultError
from dinerec.recommender.data import PREMIUM_TIERS, DataSource, Interaction, Restaurant, UserProfile

logger = logging.getLogger(__name__)

EXPLANATION_ORDER_HISTORY = "Based on your order history"
EXPLANATION_TASTE = "Matches your taste profile"
EXPLANATION_HIGHLY_RATED = "Highly rated"
EXPLANATION_FAST = "Fast delivery"
EXPLANATION_TRENDING = "Trending now"
EXPLANATION_SIMILAR_USERS = "Popular with similar users"
EXPLANATION_TIME = "Perfect for this time"
EXPLANATION_CUISINE = "Matches your favorite cuisines"
EXPLANATION_NEW = "New restaurant"
EXPLANATION_GENERIC = "Recommended for you"

MAX_EXPLANATIONS = 3


@dataclass(frozen=True)
class ScoringConfig:
    """Empirical scoring constants."""

    weights: Dict[str, float] = field(default_factory=lambda: {
        "personal": 0.30,
        "collaborative": 0.20,
        "content": 0.25,
        "temporal": 0.15,
        "popularity": 0.10,
    })
    min_score: float = 0.15
    max_score: float = 0.90
    jitter: float = 0.02

    # Personal preference
    personal_cap: float = 0.75
    frequency_bonus_per_order: float = 0.05
    frequency_bonus_cap: float = 0.15
    declared_cuisine_share: float = 0.30
    implied_cuisine_share: float = 0.25
    implied_cuisine_min_orders: int = 2

    # Collaborative
    collaborative_cap: float = 0.8

    # Content
    content_cap: float = 0.65

    # Popularity
    popularity_window_days: int = 30
    popularity_order_norm: float = 50.0

    # Re-ranking
    diversity_factor: float = 0.3
    diversity_max_per_cuisine: int = 2
    new_item_days: int = 30
    new_item_boost: float = 0.10
    high_rating_threshold: float = 4.5
    high_rating_boost: float = 0.05

    # Explanation thresholds
    personal_threshold: float = 0.5
    popularity_threshold: float = 0.7
    collaborative_threshold: float = 0.3
    temporal_threshold: float = 0.2
    fast_delivery_minutes: int = 30

    random_state: Optional[int] = None


@dataclass
class SubScores:
    personal: float = 0.0
    collaborative: float = 0.0
    content: float = 0.0
    temporal: float = 0.0
    popularity: float = 0.0

    def as_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass
class ScoredCandidate:
    """A restaurant with its sub-scores, final score and explanations."""

    restaurant: Restaurant
    sub_scores: SubScores
    final_score: float
    explanations: List[str] = field(default_factory=list)
    fallback: bool = False


@dataclass
class ScoringContext:
    """Per-request view of one user's history and the global order log."""

    user_id: str
    user: Optional[UserProfile]
    history: List[Interaction]
    restaurants: Dict[str, Restaurant]
    neighbor_order_counts: Dict[str, int]
    neighbor_order_total: int
    recent_order_counts: Dict[str, int]
    now: datetime

    @property
    def has_history(self) -> bool:
        return bool(self.history)

    def orders_at(self, item_id: str) -> List[Interaction]:
        return [order for order in self.history if order.item_id == item_id]

    def implied_cuisines(self, min_orders: int = 2) -> Set[str]:
        """Cuisines of restaurants behind at least ``min_orders`` orders."""
        counts: Counter = Counter()
        for order in self.history:
            restaurant = self.restaurants.get(order.item_id)
            if restaurant is not None:
                for tag in restaurant.cuisine_tags:
                    counts[tag] += order.count
        return {tag for tag, n in counts.items() if n >= min_orders}


def build_scoring_context(
    data_source: DataSource,
    user_id: str,
    restaurants: Optional[Iterable[Restaurant]] = None,
    now: Optional[datetime] = None,
    history_limit: int = 50,
    popularity_window_days: int = 30,
) -> ScoringContext:
    """Gather everything the scorer needs in one pass over the order log.

    Neighbors are other users who ordered from at least one restaurant this
    user ordered from; their orders (anywhere) feed the collaborative score.
    """
    user_id = str(user_id)
    now = now or datetime.now()
    if restaurants is None:
        restaurants = data_source.list_active_items()
    catalog = {r.item_id: r for r in restaurants}

    history = data_source.get_order_history(user_id, history_limit)
    interactions = data_source.list_interactions()

    user_items = {order.item_id for order in history}
    items_by_user: Dict[str, Set[str]] = defaultdict(set)
    for interaction in interactions:
        items_by_user[interaction.user_id].add(interaction.item_id)
        if interaction.user_id == user_id:
            user_items.add(interaction.item_id)

    neighbors = {
        other for other, items in items_by_user.items()
        if other != user_id and items & user_items
    }

    cutoff = now - timedelta(days=popularity_window_days)
    neighbor_counts: Dict[str, int] = defaultdict(int)
    recent_counts: Dict[str, int] = defaultdict(int)
    neighbor_total = 0
    for interaction in interactions:
        if interaction.user_id in neighbors:
            neighbor_counts[interaction.item_id] += interaction.count
            neighbor_total += interaction.count
        if interaction.timestamp >= cutoff:
            recent_counts[interaction.item_id] += interaction.count

    return ScoringContext(
        user_id=user_id,
        user=data_source.get_user(user_id),
        history=history,
        restaurants=catalog,
        neighbor_order_counts=dict(neighbor_counts),
        neighbor_order_total=neighbor_total,
        recent_order_counts=dict(recent_counts),
        now=now,
    )


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(value, high))


def _cuisine_matches(tags: Iterable[str], preferences: Iterable[str]) -> int:
    prefs = [p.lower() for p in preferences]
    matches = 0
    for tag in tags:
        tag_lower = tag.lower()
        if any(pref in tag_lower or tag_lower in pref for pref in prefs):
            matches += 1
    return matches


def _tier(value: float, bounds, tiers=(1.0, 0.7, 0.4), floor: float = 0.1) -> float:
    for bound, tier in zip(bounds, tiers):
        if value <= bound:
            return tier
    return floor


class MultiFactorScorer:
    """Scores and ranks restaurants from rule-based signals."""

    def __init__(self, config: ScoringConfig = ScoringConfig()):
        self.config = config

    # Sub-scores

    def personal_score(self, restaurant: Restaurant, context: ScoringContext) -> float:
        cfg = self.config
        cap = cfg.personal_cap
        score = 0.0

        orders = context.orders_at(restaurant.item_id)
        if orders:
            ratings = [o.rating for o in orders if o.rating is not None]
            avg_rating = float(np.mean(ratings)) if ratings else 0.0
            if avg_rating >= 4.5:
                share = 0.60
            elif avg_rating >= 4.0:
                share = 0.50
            elif avg_rating >= 3.5:
                share = 0.35
            else:
                share = 0.20
            order_count = sum(o.count for o in orders)
            score += cap * share
            score += min(cfg.frequency_bonus_per_order * order_count, cfg.frequency_bonus_cap)

        tags = restaurant.cuisine_tags
        if tags:
            if context.user is not None and context.user.preferred_cuisines:
                matches = _cuisine_matches(tags, context.user.preferred_cuisines)
                score += (matches / len(tags)) * cfg.declared_cuisine_share * cap

            implied = context.implied_cuisines(cfg.implied_cuisine_min_orders)
            if implied:
                matches = sum(1 for tag in tags if tag in implied)
                score += (matches / len(tags)) * cfg.implied_cuisine_share * cap

        return min(score, cap)

    def collaborative_score(self, restaurant: Restaurant, context: ScoringContext) -> float:
        if not context.has_history or context.neighbor_order_total == 0:
            return 0.0
        share = context.neighbor_order_counts.get(restaurant.item_id, 0) / context.neighbor_order_total
        return min(share, 1.0) * self.config.collaborative_cap

    def content_score(self, restaurant: Restaurant) -> float:
        rating = _clamp(restaurant.rating / 5.0, 0.0, 1.0)
        speed = _tier(restaurant.delivery_minutes, (25, 35, 45))
        fee = _tier(restaurant.delivery_fee, (40, 60, 80))
        minimum_order = _tier(restaurant.minimum_order, (300, 500, 800))
        variety = 1.0 if len(restaurant.cuisine_tags) > 1 else 0.0

        raw = (
            rating * 0.30
            + speed * 0.25
            + fee * 0.20
            + minimum_order * 0.15
            + variety * 0.10
        )
        return raw * self.config.content_cap

    def temporal_score(self, restaurant: Restaurant, now: datetime) -> float:
        score = 0.0
        hour = now.hour
        tags = set(restaurant.cuisine_tags)
        premium = restaurant.price_tier in PREMIUM_TIERS

        if 6 <= hour <= 10:
            if "Breakfast" in tags or "Pakistani" in tags or "breakfast" in restaurant.name.lower():
                score += 0.3
        elif 11 <= hour <= 15:
            if tags & {"Fast Food", "Pakistani", "Chinese"}:
                score += 0.2
        elif 18 <= hour <= 22:
            score += 0.1
            if premium:
                score += 0.1

        # Saturday and Sunday
        if now.weekday() >= 5 and premium:
            score += 0.1

        return min(score, 1.0)

    def popularity_score(self, restaurant: Restaurant, context: Optional[ScoringContext]) -> float:
        recent = context.recent_order_counts.get(restaurant.item_id, 0) if context else 0
        order_score = min(recent / self.config.popularity_order_norm, 1.0) * 0.4
        rating_score = _clamp(restaurant.rating / 5.0, 0.0, 1.0) * 0.5
        fee_score = max(0.0, (100 - restaurant.delivery_fee) / 100) * 0.1
        return min(order_score + rating_score + fee_score, 1.0)

    # Combination

    def sub_scores(self, restaurant: Restaurant, context: ScoringContext) -> SubScores:
        return SubScores(
            personal=self.personal_score(restaurant, context),
            collaborative=self.collaborative_score(restaurant, context),
            content=self.content_score(restaurant),
            temporal=self.temporal_score(restaurant, context.now),
            popularity=self.popularity_score(restaurant, context),
        )

    def fallback_sub_scores(self, restaurant: Restaurant) -> SubScores:
        rating = _clamp((restaurant.rating or 0.0) / 5.0, 0.0, 1.0)
        return SubScores(content=rating, popularity=rating)

    def weighted_score(self, scores: SubScores, rng: Optional[np.random.Generator] = None) -> float:
        cfg = self.config
        values = scores.as_dict()
        total = sum(values[name] * weight for name, weight in cfg.weights.items())
        if rng is not None and cfg.jitter > 0:
            total *= 1.0 + rng.uniform(-cfg.jitter, cfg.jitter)
        return _clamp(total, cfg.min_score, cfg.max_score)

    def explain(self, restaurant: Restaurant, scores: SubScores, context: ScoringContext) -> List[str]:
        cfg = self.config
        explanations = []

        if scores.personal > cfg.personal_threshold:
            if context.orders_at(restaurant.item_id):
                explanations.append(EXPLANATION_ORDER_HISTORY)
            else:
                explanations.append(EXPLANATION_TASTE)
        if restaurant.rating >= cfg.high_rating_threshold:
            explanations.append(EXPLANATION_HIGHLY_RATED)
        if restaurant.delivery_minutes <= cfg.fast_delivery_minutes:
            explanations.append(EXPLANATION_FAST)
        if scores.popularity > cfg.popularity_threshold:
            explanations.append(EXPLANATION_TRENDING)
        if scores.collaborative > cfg.collaborative_threshold:
            explanations.append(EXPLANATION_SIMILAR_USERS)
        if scores.temporal >= cfg.temporal_threshold:
            explanations.append(EXPLANATION_TIME)
        if (
            context.user is not None
            and context.user.preferred_cuisines
            and _cuisine_matches(restaurant.cuisine_tags, context.user.preferred_cuisines)
        ):
            explanations.append(EXPLANATION_CUISINE)

        if not explanations:
            explanations.append(EXPLANATION_GENERIC)
        return explanations[:MAX_EXPLANATIONS]

    def score(
        self,
        restaurant: Restaurant,
        context: ScoringContext,
        rng: Optional[np.random.Generator] = None,
    ) -> ScoredCandidate:
        """Score one candidate, degrading to rating-only scores on failure."""
        try:
            scores = self.sub_scores(restaurant, context)
            explanations = self.explain(restaurant, scores, context)
            fallback = False
        except Exception as e:
            fault = ScoringFaultError(restaurant.item_id, e)
            logger.warning(
                fault.message,
                extra={
                    "item_id": restaurant.item_id,
                    "error": str(e),
                    "error_type": "ScoringFault",
                    "cause_type": type(e).__name__,
                },
            )
            scores = self.fallback_sub_scores(restaurant)
            explanations = [EXPLANATION_HIGHLY_RATED if restaurant.rating >= 4.0 else EXPLANATION_GENERIC]
            fallback = True

        return ScoredCandidate(
            restaurant=restaurant,
            sub_scores=scores,
            final_score=self.weighted_score(scores, rng),
            explanations=explanations,
            fallback=fallback,
        )

    # Ranking

    def apply_diversity(
        self,
        candidates: List[ScoredCandidate],
        diversity_factor: float,
        rng: np.random.Generator,
    ) -> List[ScoredCandidate]:
        """Drop candidates whose cuisine is already over-represented.

        A candidate is dropped with probability ``diversity_factor`` when
        any of its cuisine tags already appeared
        ``diversity_max_per_cuisine`` times among kept candidates.
        """
        if diversity_factor <= 0:
            return list(candidates)

        limit = self.config.diversity_max_per_cuisine
        kept = []
        cuisine_counts: Dict[str, int] = defaultdict(int)
        for candidate in candidates:
            drop = False
            for tag in candidate.restaurant.cuisine_tags:
                if cuisine_counts[tag] >= limit and rng.random() < diversity_factor:
                    drop = True
                    break
            if drop:
                continue
            kept.append(candidate)
            for tag in candidate.restaurant.cuisine_tags:
                cuisine_counts[tag] += 1
        return kept

    def apply_boosts(self, candidates: List[ScoredCandidate], now: datetime) -> None:
        """Add new-restaurant and high-rating bonuses in place, re-clamped."""
        cfg = self.config
        new_cutoff = now - timedelta(days=cfg.new_item_days)
        for candidate in candidates:
            restaurant = candidate.restaurant
            if restaurant.created_at is not None and restaurant.created_at > new_cutoff:
                candidate.final_score += cfg.new_item_boost
                if EXPLANATION_NEW not in candidate.explanations:
                    candidate.explanations.append(EXPLANATION_NEW)
            if restaurant.rating > cfg.high_rating_threshold:
                candidate.final_score += cfg.high_rating_boost
                if EXPLANATION_HIGHLY_RATED not in candidate.explanations:
                    candidate.explanations.append(EXPLANATION_HIGHLY_RATED)
            candidate.final_score = _clamp(candidate.final_score, cfg.min_score, cfg.max_score)
            del candidate.explanations[MAX_EXPLANATIONS:]

    def rank(
        self,
        restaurants: Iterable[Restaurant],
        context: ScoringContext,
        count: int,
        diversity_factor: Optional[float] = None,
        exclude: Optional[Iterable[str]] = None,
    ) -> List[ScoredCandidate]:
        """Score, diversify, boost and truncate a candidate list.

        Users without any history are ordered by restaurant rating first
        (final score breaks ties); everyone else by final score.
        """
        if count <= 0:
            return []

        excluded = {str(i) for i in exclude or ()}
        diversity_factor = self.config.diversity_factor if diversity_factor is None else diversity_factor
        rng = np.random.default_rng(self.config.random_state)

        candidates = [
            self.score(restaurant, context, rng)
            for restaurant in restaurants
            if restaurant.item_id not in excluded
        ]
        if not candidates:
            return []

        if context.has_history:
            def sort_key(c: ScoredCandidate):
                return c.final_score
        else:
            def sort_key(c: ScoredCandidate):
                return (c.restaurant.rating, c.final_score)

        candidates.sort(key=sort_key, reverse=True)
        candidates = self.apply_diversity(candidates, diversity_factor, rng)
        self.apply_boosts(candidates, context.now)
        candidates.sort(key=sort_key, reverse=True)

        logger.debug(
            "Ranked candidates",
            extra={"user_id": context.user_id, "candidates": len(candidates), "count": count},
        )
        return candidates[:count]
