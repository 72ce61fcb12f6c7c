"""Application configuration.

Reads settings from environment variables prefixed with ``DINEREC_``
(and from a local ``.env`` file when present).
"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Service-level settings."""

    model_config = SettingsConfigDict(
        env_prefix="DINEREC_",
        env_file=".env",
        extra="ignore",
        protected_namespaces=("settings_",),
    )

    # Application
    app_name: str = "DineRec API"
    log_level: str = "INFO"

    # Paths
    data_dir: Optional[str] = None
    model_dir: str = "models"

    # Recommendations
    default_count: int = 6
    max_count: int = 50
    diversity_factor: float = 0.3
    experienced_user_min_orders: int = 5
    matrix_share: float = 0.7
    order_history_limit: int = 50

    # Training
    min_training_users: int = 5
    min_training_items: int = 3
    min_training_interactions: int = 10
    train_neural: bool = True


settings = Settings()
