"""Tests for the data source and the interaction matrix builder."""

from datetime import datetime, timedelta

import pandas as pd
import pytest

from conftest import make_orders
from dinerec.recommender.data import InMemoryDataSource, Interaction
from dinerec.recommender.matrix import (
    ImplicitRatingConfig,
    InteractionMatrixBuilder,
    calculate_implied_rating,
)


@pytest.mark.parametrize(
    "count, days, spend, rating",
    [
        (0, 0.0, 0.0, None),
        (1, 400.0, 50.0, None),
        (3, 2.0, 900.0, 4.0),
        (50, 0.0, 100000.0, 5.0),
        (1, -3.0, -10.0, 9.0),
    ],
)
def test_implied_rating_is_bounded(count, days, spend, rating):
    """Every combination of signals lands in [0, 1]."""
    value = calculate_implied_rating(count, days, spend, rating)
    assert 0.0 <= value <= 1.0


def test_implied_rating_saturates_at_one():
    value = calculate_implied_rating(10, 0.0, 2000.0, 5.0)
    assert value == pytest.approx(1.0)


def test_implied_rating_weights_frequency():
    config = ImplicitRatingConfig()
    value = calculate_implied_rating(5, 1000.0, 0.0, None, config)
    assert value == pytest.approx(0.5 * config.frequency_weight)


def test_build_matrix_counts(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()

    assert matrix.num_users == 6
    assert matrix.num_items == 7
    assert matrix.nnz == 15
    assert not matrix.is_empty
    assert 0.0 < matrix.sparsity() < 1.0

    u1 = matrix.user_id_to_idx["u1"]
    r1 = matrix.item_id_to_idx["r1"]
    cell = matrix.cells[(u1, r1)]
    assert cell.count == 6
    assert cell.total_spent == pytest.approx(7200.0)
    assert cell.avg_rating == pytest.approx(5.0)
    assert 0.0 <= cell.implied_rating <= 1.0


def test_index_mappings_are_consistent(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()

    for user_id, idx in matrix.user_id_to_idx.items():
        assert matrix.idx_to_user_id[idx] == user_id
    for item_id, idx in matrix.item_id_to_idx.items():
        assert matrix.idx_to_item_id[idx] == item_id


def test_positive_interactions_use_threshold(data_source):
    config = ImplicitRatingConfig(positive_threshold=0.3)
    matrix = InteractionMatrixBuilder(data_source, config).build()

    assert matrix.positive_interactions
    for user_idx, item_idx, rating in matrix.positive_interactions:
        assert rating > config.positive_threshold
        assert matrix.cells[(user_idx, item_idx)].implied_rating == rating


def test_empty_matrix_is_not_an_error():
    matrix = InteractionMatrixBuilder(InMemoryDataSource()).build()

    assert matrix.is_empty
    assert matrix.nnz == 0
    assert matrix.sparsity() == 1.0
    assert matrix.to_csr().shape == (0, 0)


def test_build_without_source_or_interactions_raises():
    with pytest.raises(ValueError):
        InteractionMatrixBuilder().build()


def test_to_csr_binary_view(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()
    csr = matrix.to_csr(binary=True)

    assert csr.shape == (matrix.num_users, matrix.num_items)
    assert csr.nnz == matrix.nnz
    assert set(csr.data.tolist()) == {1.0}


def test_similar_users_share_restaurants(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()
    neighbors = matrix.similar_users("u1", k=5)

    ids = [n["user_id"] for n in neighbors]
    assert set(ids) == {"u2", "u6"}
    assert all(0.0 < n["similarity"] <= 1.0 for n in neighbors)
    assert neighbors == sorted(neighbors, key=lambda n: -n["similarity"])


def test_similar_users_unknown_user(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()
    assert matrix.similar_users("nobody") == []


def test_user_history_and_item_user_base(data_source):
    matrix = InteractionMatrixBuilder(data_source).build()

    history = matrix.user_history("u2")
    assert {h["item_id"] for h in history} == {"r1", "r2", "r3"}
    ratings = [h["rating"] for h in history]
    assert ratings == sorted(ratings, reverse=True)

    base = matrix.item_user_base("r1")
    assert {u["user_id"] for u in base} == {"u1", "u2", "u6"}


def test_statistics(data_source):
    stats = InteractionMatrixBuilder(data_source).build().statistics()

    assert stats["num_users"] == 6
    assert stats["total_interactions"] == 15
    assert sum(stats["user_distribution"].values()) == 6


def test_recency_decays_rating():
    now = datetime(2024, 6, 1, 12, 0)
    recent = Interaction("u", "a", now - timedelta(days=1), amount=500.0)
    stale = Interaction("v", "a", now - timedelta(days=60), amount=500.0)
    matrix = InteractionMatrixBuilder().build([recent, stale], now=now)

    a = matrix.item_id_to_idx["a"]
    u = matrix.cells[(matrix.user_id_to_idx["u"], a)].implied_rating
    v = matrix.cells[(matrix.user_id_to_idx["v"], a)].implied_rating
    assert u > v


def test_data_source_order_history_and_analytics(data_source):
    history = data_source.get_order_history("u1", limit=3)
    assert len(history) == 3
    assert history == sorted(history, key=lambda o: o.timestamp, reverse=True)

    user = data_source.get_user("u1")
    assert user.order_count == 6
    assert user.average_spend == pytest.approx(1200.0)
    assert user.loyalty_tier == "Silver"

    assert "r8" not in {r.item_id for r in data_source.list_active_items()}


def test_from_csv(tmp_path):
    pd.DataFrame([
        {"item_id": "a", "name": "A", "cuisine": "Chinese|Fast Food", "rating": 4.5,
         "price_tier": "Budget", "delivery_minutes": 25, "delivery_fee": 30,
         "minimum_order": 200, "created_at": "2024-01-01", "is_active": True},
        {"item_id": "b", "name": "B", "cuisine": "BBQ", "rating": None,
         "price_tier": "Premium", "delivery_minutes": 45, "delivery_fee": 80,
         "minimum_order": 800, "created_at": None, "is_active": True},
    ]).to_csv(tmp_path / "restaurants.csv", index=False)
    pd.DataFrame([
        {"user_id": "u", "item_id": "a", "timestamp": "2024-02-01 12:00", "amount": 600, "rating": 5},
        {"user_id": "u", "item_id": "b", "timestamp": "2024-02-03 20:00", "amount": 900, "rating": None},
    ]).to_csv(tmp_path / "orders.csv", index=False)

    source = InMemoryDataSource.from_csv(str(tmp_path))

    restaurant = source.get_restaurant("a")
    assert restaurant.cuisine_tags == ("Chinese", "Fast Food")
    assert source.get_restaurant("b").rating == 0.0
    assert source.get_restaurant("b").created_at is None

    orders = source.get_order_history("u")
    assert [o.item_id for o in orders] == ["b", "a"]
    assert orders[0].rating is None
    assert orders[1].rating == 5.0
    assert source.get_user("u").order_count == 2


def test_from_csv_missing_directory():
    with pytest.raises(FileNotFoundError):
        InMemoryDataSource.from_csv("/nonexistent/dinerec-data")


def test_from_csv_missing_columns(tmp_path):
    pd.DataFrame([{"item_id": "a", "name": "A"}]).to_csv(tmp_path / "restaurants.csv", index=False)
    pd.DataFrame([{"user_id": "u", "item_id": "a"}]).to_csv(tmp_path / "orders.csv", index=False)

    with pytest.raises(ValueError, match="timestamp"):
        InMemoryDataSource.from_csv(str(tmp_path))


def test_orders_fixture_matches_matrix():
    assert len(make_orders()) == 26
