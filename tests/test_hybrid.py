"""Tests for strategy dispatch and the hybrid recommender."""

from datetime import datetime, timedelta

import pytest

from conftest import small_training_config
from dinerec.config import Settings
from dinerec.recommender.data import InMemoryDataSource, Interaction
from dinerec.recommender.hybrid import (
    ALGORITHM_HYBRID,
    ALGORITHM_MATRIX,
    ALGORITHM_MULTI_FACTOR,
    ALGORITHM_POPULARITY,
    TAG_MATRIX,
    TAG_MULTI_FACTOR,
    TAG_POPULARITY,
    HybridRecommender,
    Recommendation,
    RecommendationStrategy,
)
from dinerec.recommender.scoring import EXPLANATION_ORDER_HISTORY, ScoringConfig
from dinerec.recommender.service import RecommendationService


class ExplodingStrategy(RecommendationStrategy):
    name = "exploding"

    def recommend(self, context, count, exclude=()):
        raise RuntimeError("strategy crashed")


def test_cold_start_user_gets_rating_sorted_results(service):
    result = service.recommend("never-ordered", count=6)

    assert result.strategy == ALGORITHM_HYBRID
    assert not result.fallback
    assert len(result.recommendations) == 6
    ratings = [r.rating for r in result.recommendations]
    assert ratings == sorted(ratings, reverse=True)
    assert all(r.algorithm == TAG_MULTI_FACTOR for r in result.recommendations)


def test_regular_gets_favorite_near_the_top(service):
    """u1 ordered six times from r1 and rated it five stars."""
    recs = service.get_recommendations("u1", count=6)

    top_two = {r.item_id: r for r in recs[:2]}
    assert "r1" in top_two
    assert EXPLANATION_ORDER_HISTORY in top_two["r1"].explanations


def test_three_five_star_orders_put_restaurant_in_top_two(data_source):
    """Six orders, three of them five-star at the same Pakistani restaurant."""
    now = datetime.now()
    for k, (item_id, rating) in enumerate(
        [("r1", 5.0), ("r1", 5.0), ("r1", 5.0), ("r3", None), ("r6", None), ("r2", 3.0)]
    ):
        data_source.add_order(Interaction("diner", item_id, now - timedelta(days=k + 1), 900.0, rating))
    service = RecommendationService(data_source, Settings(), scoring_config=ScoringConfig(random_state=4))

    recs = service.get_recommendations("diner", count=6)

    top_two = {r.item_id: r for r in recs[:2]}
    assert "r1" in top_two
    assert EXPLANATION_ORDER_HISTORY in top_two["r1"].explanations


@pytest.mark.parametrize("seed", range(10))
def test_five_star_favorite_stays_on_top_with_trained_models(data_source, seed):
    """The matrix block cannot push a five-star favorite out of the top two."""
    now = datetime.now()
    for k, (item_id, rating) in enumerate(
        [("r1", 5.0), ("r1", 5.0), ("r1", 5.0), ("r3", None), ("r6", None), ("r2", 3.0)]
    ):
        data_source.add_order(Interaction("diner", item_id, now - timedelta(days=k + 1), 900.0, rating))
    service = RecommendationService(data_source, Settings(), scoring_config=ScoringConfig(random_state=seed))
    handle = service.train_models(
        small_training_config(train_neural=False, iterations=50, random_state=seed),
        background=False,
    )
    assert handle.state == "completed"

    recs = service.get_recommendations("diner", count=5)

    assert [r.algorithm for r in recs].count(TAG_MATRIX) == 3
    top_two = {r.item_id: r for r in recs[:2]}
    assert "r1" in top_two
    assert EXPLANATION_ORDER_HISTORY in top_two["r1"].explanations


def test_empty_catalog_returns_nothing():
    service = RecommendationService(InMemoryDataSource(), Settings())

    result = service.recommend("u1", count=5)
    assert result.recommendations == []
    assert not result.fallback
    assert service.popular() == []


def test_unknown_algorithm_hint_uses_hybrid(service):
    result = service.recommend("u2", count=3, algorithm="quantum")
    assert result.strategy == ALGORITHM_HYBRID
    assert len(result.recommendations) == 3


def test_untrained_matrix_strategy_falls_back_to_popularity(service):
    result = service.recommend("u1", count=4, algorithm=ALGORITHM_MATRIX)

    assert result.fallback
    assert result.strategy == ALGORITHM_POPULARITY
    assert len(result.recommendations) == 4
    assert all(r.algorithm == TAG_POPULARITY for r in result.recommendations)


def test_unknown_user_with_trained_model_falls_back(trained_service):
    result = trained_service.recommend("stranger", count=3, algorithm=ALGORITHM_MATRIX)
    assert result.fallback
    assert len(result.recommendations) == 3


def test_strategy_exception_falls_back(service):
    service.recommender.strategies[ALGORITHM_MULTI_FACTOR] = ExplodingStrategy()

    result = service.recommend("u2", count=3, algorithm=ALGORITHM_MULTI_FACTOR)

    assert result.fallback
    assert result.strategy == ALGORITHM_POPULARITY
    assert len(result.recommendations) == 3


def test_count_is_capped(service):
    assert len(service.get_recommendations("u2", count=500)) <= service.settings.max_count
    assert len(service.get_recommendations("u2", count=500)) == 7
    assert service.get_recommendations("u2", count=0) == []
    assert len(service.get_recommendations("u2")) == service.settings.default_count


def test_experienced_user_blends_matrix_factorization(trained_service):
    recs = trained_service.get_recommendations("u1", count=6)

    ids = [r.item_id for r in recs]
    assert len(ids) == len(set(ids))
    assert len(recs) == 6
    # floor(0.7 * 6) == 4 from matrix factorization, the rest from the scorer
    tags = [r.algorithm for r in recs]
    assert tags.count(TAG_MATRIX) == 4
    assert tags.count(TAG_MULTI_FACTOR) == 2
    assert recs[0].item_id == "r1"


def test_new_user_skips_matrix_factorization(trained_service):
    recs = trained_service.get_recommendations("u6", count=5)
    assert all(r.algorithm == TAG_MULTI_FACTOR for r in recs)


def test_neural_strategy_with_trained_model(trained_service):
    result = trained_service.recommend("u3", count=3, algorithm="neural")

    assert not result.fallback
    assert [r.algorithm for r in result.recommendations] == ["neural_embedding"] * 3
    assert all(0.0 <= r.score <= 1.0 for r in result.recommendations)


def test_popularity_is_user_independent(service):
    popular = service.popular(3)

    assert len(popular) == 3
    assert all(r.algorithm == TAG_POPULARITY for r in popular)
    scores = [r.score for r in popular]
    assert scores == sorted(scores, reverse=True)


@pytest.mark.parametrize("algorithm", [None, "hybrid", "matrix", "neural", "multi_factor", "popularity", "bogus"])
def test_dispatch_never_raises(service, algorithm):
    result = service.recommend("u4", count=5, algorithm=algorithm)
    assert 0 < len(result.recommendations) <= 5
    for rec in result.recommendations:
        assert 0.0 <= rec.score <= 1.0
        assert 1 <= len(rec.explanations) <= 3


def test_normalize_algorithm():
    assert HybridRecommender.normalize_algorithm(None) == ALGORITHM_HYBRID
    assert HybridRecommender.normalize_algorithm("popularity") == ALGORITHM_POPULARITY
    assert HybridRecommender.normalize_algorithm("Popularity!") == ALGORITHM_HYBRID


def test_recommendation_to_dict(catalog):
    rec = Recommendation.from_restaurant(catalog[0], 0.734, ["Fast delivery"], TAG_POPULARITY)
    data = rec.to_dict()

    assert data["id"] == "r1"
    assert data["cuisine"] == ["Pakistani", "BBQ"]
    assert data["deliveryTime"] == 30
    assert data["priceRange"] == "Moderate"
    assert data["matchPercentage"] == 73
    assert data["algorithmTag"] == TAG_POPULARITY


def test_recommendation_truncates_explanations(catalog):
    rec = Recommendation.from_restaurant(catalog[0], 1.7, ["a", "b", "c", "d"], TAG_POPULARITY)
    assert rec.explanations == ("a", "b", "c")
    assert rec.score == 1.0
