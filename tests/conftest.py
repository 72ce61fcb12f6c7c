"""Shared fixtures: a small restaurant catalog and order log.

u1 is a regular at r1 (six five-star orders) and prefers Pakistani food;
the remaining users spread their orders over the rest of the catalog.
"""

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

# Add project root to Python path for imports
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from dinerec.config import Settings
from dinerec.recommender.data import InMemoryDataSource, Interaction, Restaurant, UserProfile
from dinerec.recommender.factorization import MatrixFactorizationConfig
from dinerec.recommender.neural import NeuralConfig
from dinerec.recommender.scoring import ScoringConfig
from dinerec.recommender.service import RecommendationService
from dinerec.recommender.training import TrainingConfig

ORDERS = [
    # user, restaurant, number of orders, amount, rating
    ("u1", "r1", 6, 1200.0, 5.0),
    ("u2", "r1", 2, 900.0, 4.0),
    ("u2", "r2", 2, 700.0, None),
    ("u2", "r3", 1, 400.0, 3.0),
    ("u3", "r2", 2, 650.0, 5.0),
    ("u3", "r4", 1, 1500.0, None),
    ("u3", "r6", 1, 300.0, 4.0),
    ("u4", "r3", 2, 450.0, None),
    ("u4", "r4", 1, 1100.0, 4.0),
    ("u4", "r5", 1, 2500.0, 5.0),
    ("u5", "r5", 2, 2200.0, 4.0),
    ("u5", "r6", 1, 350.0, None),
    ("u5", "r7", 1, 500.0, 3.0),
    ("u6", "r1", 1, 800.0, None),
    ("u6", "r4", 2, 1300.0, 4.0),
]


def make_catalog(now=None):
    now = now or datetime.now()
    old = now - timedelta(days=400)
    return [
        Restaurant("r1", "Lahori Dhaba", ("Pakistani", "BBQ"), 4.2, "Moderate", 30, 40.0, 300.0, old),
        Restaurant("r2", "Golden Wok", ("Chinese",), 4.6, "Moderate", 35, 60.0, 400.0, old),
        Restaurant("r3", "Burger Point", ("Fast Food",), 3.9, "Budget", 25, 30.0, 200.0, old),
        Restaurant("r4", "Karachi Biryani House", ("Pakistani", "Biryani"), 4.4, "Moderate", 40, 50.0, 500.0, old),
        Restaurant("r5", "Royal Bistro", ("Italian", "Continental"), 4.8, "Premium", 50, 100.0, 1000.0, old),
        Restaurant("r6", "Sweet Corner", ("Desserts",), 4.0, "Budget", 20, 0.0, 150.0, old),
        Restaurant("r7", "Sunrise Breakfast", ("Breakfast",), 3.6, "Budget", 30, 40.0, 200.0,
                   now - timedelta(days=5)),
        Restaurant("r8", "Closed Kitchen", ("Chinese",), 4.9, "Luxury", 30, 0.0, 100.0, old, is_active=False),
    ]


def make_orders(now=None):
    now = now or datetime.now()
    orders = []
    for user_id, item_id, n, amount, rating in ORDERS:
        for k in range(n):
            orders.append(Interaction(
                user_id=user_id,
                item_id=item_id,
                timestamp=now - timedelta(days=k + 1, hours=3),
                amount=amount,
                rating=rating,
            ))
    return orders


def make_source(now=None):
    users = [
        UserProfile("u1", preferred_cuisines=("Pakistani",)),
        UserProfile("u2", preferred_cuisines=("Chinese",)),
        UserProfile("u3", preferred_cuisines=("Desserts", "Chinese")),
    ]
    return InMemoryDataSource(
        restaurants=make_catalog(now),
        users=users,
        interactions=make_orders(now),
    )


def small_training_config(train_neural=True, **mf_overrides):
    mf_values = {"rank": 4, "iterations": 10}
    mf_values.update(mf_overrides)
    return TrainingConfig.from_settings(
        Settings(),
        matrix_factorization=MatrixFactorizationConfig(**mf_values),
        neural=NeuralConfig(embedding_dim=8, hidden_layers=(16, 8), epochs=2, batch_size=16),
        train_neural=train_neural,
    )


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def data_source():
    return make_source()


@pytest.fixture
def scoring_config():
    return ScoringConfig(random_state=7)


@pytest.fixture
def service(data_source, scoring_config):
    """Service over the shared data with no trained models."""
    return RecommendationService(data_source, Settings(), scoring_config=scoring_config)


@pytest.fixture
def trained_service(service):
    """Service whose models were trained synchronously on the shared data."""
    handle = service.train_models(small_training_config(), background=False)
    assert handle.state == "completed"
    return service
