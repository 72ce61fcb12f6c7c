"""Generate fake restaurant, user and order data for testing and development.

This module creates synthetic food-delivery data for the recommendation
service: a restaurant catalog, user profiles with declared cuisine
preferences and an order log biased towards those preferences. The three
CSV files match what ``InMemoryDataSource.from_csv`` expects.

Example:
    Run the script directly to generate default data:
        $ python scripts/generate_fake_data.py

    Or import and use programmatically:
        from scripts.generate_fake_data import generate_dataset
        frames = generate_dataset(num_users=100, num_restaurants=40)
"""

import argparse
import random
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Optional

import pandas as pd

# Default configuration constants
DEFAULT_NUM_USERS = 50
DEFAULT_NUM_RESTAURANTS = 30
DEFAULT_NUM_ORDERS = 1000
DEFAULT_DAYS_BACK = 90
DEFAULT_SEED = 42
SECONDS_PER_DAY = 86400

CUISINES = [
    "Pakistani", "BBQ", "Chinese", "Fast Food", "Italian",
    "Desserts", "Breakfast", "Biryani", "Seafood", "Continental",
]
PRICE_TIERS = ["Budget", "Moderate", "Premium", "Luxury"]
SPICE_LEVELS = ["mild", "medium", "hot"]
NAME_PREFIXES = ["Lahori", "Karachi", "Golden", "Royal", "Spice", "Urban", "Desi", "Cafe"]
NAME_SUFFIXES = ["Kitchen", "House", "Grill", "Dhaba", "Bistro", "Express", "Corner", "Point"]

# Share of orders placed at a restaurant matching the user's preferences
PREFERENCE_BIAS = 0.7


def generate_fake_restaurants(
    num_restaurants: int = DEFAULT_NUM_RESTAURANTS,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> pd.DataFrame:
    """Generate a restaurant catalog.

    Returns:
        DataFrame with item_id, name, cuisine (``|``-separated), rating,
        price_tier, delivery_minutes, delivery_fee, minimum_order,
        created_at and is_active.
    """
    if num_restaurants <= 0:
        raise ValueError("num_restaurants must be positive")
    rng = rng or random.Random()
    now = now or datetime.now()

    rows = []
    for i in range(1, num_restaurants + 1):
        cuisines = rng.sample(CUISINES, k=rng.choice([1, 1, 2, 3]))
        rows.append({
            "item_id": f"r{i}",
            "name": f"{rng.choice(NAME_PREFIXES)} {rng.choice(NAME_SUFFIXES)} {i}",
            "cuisine": "|".join(cuisines),
            "rating": round(rng.uniform(3.0, 5.0), 1),
            "price_tier": rng.choice(PRICE_TIERS),
            "delivery_minutes": rng.choice([20, 25, 30, 35, 40, 45, 55]),
            "delivery_fee": rng.choice([0, 30, 40, 50, 60, 80, 100]),
            "minimum_order": rng.choice([150, 200, 300, 500, 800, 1000]),
            "created_at": now - timedelta(days=rng.randint(1, 720)),
            "is_active": rng.random() > 0.05,
        })
    return pd.DataFrame(rows)


def generate_fake_users(
    num_users: int = DEFAULT_NUM_USERS,
    rng: Optional[random.Random] = None,
) -> pd.DataFrame:
    """Generate user profiles with declared preferences."""
    if num_users <= 0:
        raise ValueError("num_users must be positive")
    rng = rng or random.Random()

    rows = []
    for i in range(1, num_users + 1):
        budget_min = rng.choice([0, 200, 500])
        rows.append({
            "user_id": f"u{i}",
            "preferred_cuisines": "|".join(rng.sample(CUISINES, k=rng.randint(1, 3))),
            "spice_level": rng.choice(SPICE_LEVELS),
            "budget_min": budget_min,
            "budget_max": budget_min + rng.choice([1000, 2000, 4000]),
            "dietary_restrictions": rng.choice(["", "", "", "vegetarian", "halal"]),
        })
    return pd.DataFrame(rows)


def generate_fake_orders(
    users: pd.DataFrame,
    restaurants: pd.DataFrame,
    num_orders: int = DEFAULT_NUM_ORDERS,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> pd.DataFrame:
    """Generate completed orders biased towards each user's preferences.

    Returns:
        DataFrame with user_id, item_id, timestamp, amount and rating
        (empty for unrated orders), sorted by timestamp.

    Raises:
        ValueError: If num_orders is non-positive or start_date is after
            end_date.
    """
    if num_orders <= 0:
        raise ValueError("num_orders must be positive")
    rng = rng or random.Random()

    if end_date is None:
        end_date = datetime.now()
    if start_date is None:
        start_date = end_date - timedelta(days=DEFAULT_DAYS_BACK)
    if start_date >= end_date:
        raise ValueError("start_date must be before end_date")

    active = restaurants[restaurants["is_active"]]
    restaurant_cuisines = {
        row["item_id"]: set(row["cuisine"].split("|")) for _, row in active.iterrows()
    }
    restaurant_ids = list(restaurant_cuisines)
    days_range = max((end_date - start_date).days, 1)

    orders = []
    for _ in range(num_orders):
        user = users.iloc[rng.randrange(len(users))]
        preferred = set(str(user["preferred_cuisines"]).split("|"))
        matching = [r for r in restaurant_ids if restaurant_cuisines[r] & preferred]

        if matching and rng.random() < PREFERENCE_BIAS:
            item_id = rng.choice(matching)
        else:
            item_id = rng.choice(restaurant_ids)

        timestamp = start_date + timedelta(
            days=rng.randrange(days_range), seconds=rng.randrange(SECONDS_PER_DAY)
        )
        orders.append({
            "user_id": user["user_id"],
            "item_id": item_id,
            "timestamp": timestamp,
            "amount": round(rng.uniform(300, 3000), 2),
            "rating": rng.choice([None, None, 3, 4, 4, 5, 5]),
        })

    df = pd.DataFrame(orders)
    return df.sort_values("timestamp").reset_index(drop=True)


def generate_dataset(
    num_users: int = DEFAULT_NUM_USERS,
    num_restaurants: int = DEFAULT_NUM_RESTAURANTS,
    num_orders: int = DEFAULT_NUM_ORDERS,
    seed: Optional[int] = DEFAULT_SEED,
) -> Dict[str, pd.DataFrame]:
    """Generate restaurants, users and orders in one go."""
    rng = random.Random(seed)
    restaurants = generate_fake_restaurants(num_restaurants, rng=rng)
    users = generate_fake_users(num_users, rng=rng)
    orders = generate_fake_orders(users, restaurants, num_orders, rng=rng)
    return {"restaurants": restaurants, "users": users, "orders": orders}


def main() -> None:
    """Generate the three CSV files and print a summary."""
    parser = argparse.ArgumentParser(description="Generate fake restaurant order data.")
    parser.add_argument("--output-dir", type=str, default=None, help="Output directory (default: data/)")
    parser.add_argument("--users", type=int, default=DEFAULT_NUM_USERS)
    parser.add_argument("--restaurants", type=int, default=DEFAULT_NUM_RESTAURANTS)
    parser.add_argument("--orders", type=int, default=DEFAULT_NUM_ORDERS)
    parser.add_argument("--seed", type=int, default=DEFAULT_SEED)
    args = parser.parse_args()

    print(f"Generating {args.orders} fake orders...")
    print(f"Users: {args.users}, Restaurants: {args.restaurants}")

    try:
        frames = generate_dataset(
            num_users=args.users,
            num_restaurants=args.restaurants,
            num_orders=args.orders,
            seed=args.seed,
        )
    except ValueError as e:
        print(f"Error generating data: {e}")
        return

    data_dir = Path(args.output_dir) if args.output_dir else Path(__file__).parent.parent / "data"
    data_dir.mkdir(parents=True, exist_ok=True)

    for name, df in frames.items():
        output_path = data_dir / f"{name}.csv"
        df.to_csv(output_path, index=False)
        print(f"Saved {len(df)} rows to {output_path}")

    orders = frames["orders"]
    print(f"\nData summary:")
    print(f"  Total orders: {len(orders)}")
    print(f"  Unique users: {orders['user_id'].nunique()}")
    print(f"  Unique restaurants: {orders['item_id'].nunique()}")
    print(f"  Date range: {orders['timestamp'].min()} to {orders['timestamp'].max()}")


if __name__ == "__main__":
    main()
