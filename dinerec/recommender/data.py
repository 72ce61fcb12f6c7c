"""Data contracts shared by the recommendation engines.

Users, restaurants and orders are owned by the surrounding application.
The recommender only reads them through the ``DataSource`` protocol and
writes feedback back through ``record_interaction``. ``InMemoryDataSource``
is the implementation used by the CLI scripts, the API defaults and the
tests; it can be loaded from CSV exports with pandas.
"""

import logging
import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

import pandas as pd

logger = logging.getLogger(__name__)

PRICE_TIERS = ("Budget", "Moderate", "Premium", "Luxury")
PREMIUM_TIERS = frozenset({"Premium", "Luxury"})

RESTAURANTS_FILENAME = "restaurants.csv"
USERS_FILENAME = "users.csv"
ORDERS_FILENAME = "orders.csv"

# Separator for multi-valued CSV cells such as cuisine lists
LIST_SEPARATOR = "|"


@dataclass(frozen=True)
class Restaurant:
    """A catalog item."""

    item_id: str
    name: str
    cuisine_tags: Tuple[str, ...] = ()
    rating: float = 0.0
    price_tier: str = "Moderate"
    delivery_minutes: int = 45
    delivery_fee: float = 50.0
    minimum_order: float = 200.0
    created_at: Optional[datetime] = None
    is_active: bool = True


@dataclass(frozen=True)
class UserProfile:
    """Declared preferences plus analytics derived by the order pipeline."""

    user_id: str
    preferred_cuisines: Tuple[str, ...] = ()
    spice_level: str = "medium"
    budget_range: Tuple[float, float] = (0.0, 5000.0)
    dietary_restrictions: Tuple[str, ...] = ()
    order_count: int = 0
    average_spend: float = 0.0
    loyalty_tier: str = "Bronze"


@dataclass(frozen=True)
class Interaction:
    """One completed order (or feedback event) of a user at a restaurant."""

    user_id: str
    item_id: str
    timestamp: datetime
    amount: float = 0.0
    rating: Optional[float] = None
    count: int = 1


@dataclass(frozen=True)
class FeedbackEvent:
    """Feedback written back through ``record_interaction``."""

    user_id: str
    item_id: str
    weight: float
    interaction_type: str
    timestamp: datetime = field(default_factory=datetime.now)


class DataSource(Protocol):
    """Read-mostly interface to the application's records."""

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        ...

    def get_order_history(self, user_id: str, limit: int = 50) -> List[Interaction]:
        ...

    def list_active_items(self) -> List[Restaurant]:
        ...

    def list_interactions(self) -> List[Interaction]:
        ...

    def record_interaction(
        self, user_id: str, item_id: str, weight: float, interaction_type: str
    ) -> None:
        ...


def _loyalty_tier(total_spent: float) -> str:
    if total_spent >= 50000:
        return "Platinum"
    if total_spent >= 20000:
        return "Gold"
    if total_spent >= 5000:
        return "Silver"
    return "Bronze"


class InMemoryDataSource:
    """Thread-safe in-memory ``DataSource``."""

    def __init__(
        self,
        restaurants: Iterable[Restaurant] = (),
        users: Iterable[UserProfile] = (),
        interactions: Iterable[Interaction] = (),
    ):
        self._lock = threading.Lock()
        self._restaurants: Dict[str, Restaurant] = {r.item_id: r for r in restaurants}
        self._users: Dict[str, UserProfile] = {u.user_id: u for u in users}
        self._interactions: List[Interaction] = []
        self.feedback: List[FeedbackEvent] = []

        for interaction in interactions:
            self.add_order(interaction)

    def get_user(self, user_id: str) -> Optional[UserProfile]:
        return self._users.get(str(user_id))

    def get_order_history(self, user_id: str, limit: int = 50) -> List[Interaction]:
        user_id = str(user_id)
        with self._lock:
            orders = [i for i in self._interactions if i.user_id == user_id]
        orders.sort(key=lambda i: i.timestamp, reverse=True)
        return orders[:limit]

    def list_active_items(self) -> List[Restaurant]:
        return [r for r in self._restaurants.values() if r.is_active]

    def list_interactions(self) -> List[Interaction]:
        with self._lock:
            return list(self._interactions)

    def get_restaurant(self, item_id: str) -> Optional[Restaurant]:
        return self._restaurants.get(str(item_id))

    def add_restaurant(self, restaurant: Restaurant) -> None:
        self._restaurants[restaurant.item_id] = restaurant

    def add_user(self, user: UserProfile) -> None:
        self._users[user.user_id] = user

    def add_order(self, interaction: Interaction) -> None:
        """Append an order and refresh the user's derived analytics."""
        with self._lock:
            self._interactions.append(interaction)
            user = self._users.get(interaction.user_id) or UserProfile(
                user_id=interaction.user_id
            )
            order_count = user.order_count + interaction.count
            total_spent = user.average_spend * user.order_count + interaction.amount
            self._users[interaction.user_id] = replace(
                user,
                order_count=order_count,
                average_spend=total_spent / order_count,
                loyalty_tier=_loyalty_tier(total_spent),
            )

    def record_interaction(
        self, user_id: str, item_id: str, weight: float, interaction_type: str
    ) -> None:
        event = FeedbackEvent(
            user_id=str(user_id),
            item_id=str(item_id),
            weight=weight,
            interaction_type=interaction_type,
        )
        with self._lock:
            self.feedback.append(event)
        logger.info(
            "Recorded interaction feedback",
            extra={
                "user_id": event.user_id,
                "item_id": event.item_id,
                "weight": weight,
                "interaction_type": interaction_type,
            },
        )

    @classmethod
    def from_csv(cls, data_dir: str) -> "InMemoryDataSource":
        """Load restaurants, users and orders from CSV exports.

        Expects ``restaurants.csv``, ``orders.csv`` and optionally
        ``users.csv`` in ``data_dir``. Multi-valued cells (cuisines,
        preferences, restrictions) are ``|``-separated.

        Raises:
            FileNotFoundError: If the directory or a required file is missing.
            ValueError: If a file is missing required columns.
        """
        data_path = Path(data_dir)
        if not data_path.exists():
            raise FileNotFoundError(f"Data directory not found: {data_dir}")

        restaurants_df = _read_csv(
            data_path / RESTAURANTS_FILENAME, required={"item_id", "name"}
        )
        orders_df = _read_csv(
            data_path / ORDERS_FILENAME, required={"user_id", "item_id", "timestamp"}
        )
        users_path = data_path / USERS_FILENAME
        users_df = (
            _read_csv(users_path, required={"user_id"})
            if users_path.exists()
            else pd.DataFrame(columns=["user_id"])
        )

        restaurants = [_restaurant_from_row(row) for row in restaurants_df.to_dict("records")]
        users = [_user_from_row(row) for row in users_df.to_dict("records")]

        orders_df["timestamp"] = pd.to_datetime(orders_df["timestamp"])
        orders_df = orders_df.sort_values("timestamp").reset_index(drop=True)
        interactions = [_interaction_from_row(row) for row in orders_df.to_dict("records")]

        logger.info(
            f"Loaded {len(restaurants)} restaurants, {len(users)} users and "
            f"{len(interactions)} orders from {data_dir}"
        )
        return cls(restaurants=restaurants, users=users, interactions=interactions)


def _read_csv(path: Path, required: set) -> pd.DataFrame:
    if not path.exists():
        raise FileNotFoundError(f"CSV file not found: {path}")
    df = pd.read_csv(path)
    if not required.issubset(df.columns):
        missing = required - set(df.columns)
        raise ValueError(f"{path.name} missing required columns: {missing}")
    return df


def _split(value) -> Tuple[str, ...]:
    if value is None or (isinstance(value, float) and pd.isna(value)):
        return ()
    return tuple(part.strip() for part in str(value).split(LIST_SEPARATOR) if part.strip())


def _optional_float(value) -> Optional[float]:
    if value is None or pd.isna(value):
        return None
    return float(value)


def _restaurant_from_row(row: Dict) -> Restaurant:
    created_at = row.get("created_at")
    return Restaurant(
        item_id=str(row["item_id"]),
        name=str(row["name"]),
        cuisine_tags=_split(row.get("cuisine")),
        rating=_optional_float(row.get("rating")) or 0.0,
        price_tier=str(row.get("price_tier", "Moderate")),
        delivery_minutes=int(row.get("delivery_minutes", 45)),
        delivery_fee=float(row.get("delivery_fee", 50.0)),
        minimum_order=float(row.get("minimum_order", 200.0)),
        created_at=None if created_at is None or pd.isna(created_at)
        else pd.Timestamp(created_at).to_pydatetime(),
        is_active=bool(row.get("is_active", True)),
    )


def _user_from_row(row: Dict) -> UserProfile:
    return UserProfile(
        user_id=str(row["user_id"]),
        preferred_cuisines=_split(row.get("preferred_cuisines")),
        spice_level=str(row.get("spice_level", "medium")),
        budget_range=(
            float(row.get("budget_min", 0.0)),
            float(row.get("budget_max", 5000.0)),
        ),
        dietary_restrictions=_split(row.get("dietary_restrictions")),
    )


def _interaction_from_row(row: Dict) -> Interaction:
    return Interaction(
        user_id=str(row["user_id"]),
        item_id=str(row["item_id"]),
        timestamp=pd.Timestamp(row["timestamp"]).to_pydatetime(),
        amount=float(row.get("amount", 0.0) or 0.0),
        rating=_optional_float(row.get("rating")),
    )
