from __future__ import annotations

import logging
import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import DEFAULT_IDEMPOTENCY_TTL_MINUTES, DEFAULT_IN_FLIGHT_WAIT_SECONDS
from .contracts import NotificationChannel


class RedisConfig(BaseModel):
    """Connection settings for the Redis idempotency backend."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class IdempotencyConfig(BaseModel):
    """Idempotency store settings."""

    backend: Literal["database", "redis"] = "database"
    ttl_minutes: int = DEFAULT_IDEMPOTENCY_TTL_MINUTES
    in_flight_wait_seconds: float = DEFAULT_IN_FLIGHT_WAIT_SECONDS
    redis: RedisConfig = RedisConfig()


class NotificationConfig(BaseModel):
    """Notification channel routing.

    ``database_url`` enables the queue sender (an async SQLAlchemy URL such as
    ``sqlite+aiosqlite:///notifications.db``); ``gateway_url`` enables the HTTP
    gateway sender for the channels listed in ``gateway_channels``.
    """

    database_url: Optional[str] = None
    gateway_url: Optional[str] = None
    gateway_channels: List[NotificationChannel] = Field(
        default_factory=lambda: [
            NotificationChannel.EMAIL,
            NotificationChannel.WHATSAPP,
            NotificationChannel.PUSH,
        ]
    )


class PropflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    idempotency: IdempotencyConfig = IdempotencyConfig()
    notifications: NotificationConfig = NotificationConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> PropflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to PROPFLOW_CONFIG env
            variable or 'propflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("PROPFLOW_CONFIG", "propflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = PropflowConfig(**data)
    else:
        config = PropflowConfig()

    env_db_url = os.getenv("PROPFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config


def resolve_database_url(
    database_url: Optional[str] = None, config: Optional[PropflowConfig] = None
) -> Optional[str]:
    """Pick the database URL from the argument or config.

    An explicitly passed config is used as is; otherwise the loaded config
    already carries the environment override.
    """
    if database_url:
        return database_url
    if config is None:
        config = load_config()
    return config.database_url


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
