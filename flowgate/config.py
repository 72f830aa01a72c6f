from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None
    key_prefix: str = "flowgate"


class TransportConfig(BaseModel):
    """Event source transport settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()
    topic: str = "flowgate.events"


class EngineConfig(BaseModel):
    """Tunables for the orchestration engine."""

    condition_max_depth: int = Field(default=10, ge=1)
    sweep_interval_seconds: float = Field(default=60.0, gt=0)
    default_step_timeout_ms: int = Field(default=30000, gt=0)


class FlowgateConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    engine: EngineConfig = EngineConfig()
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> FlowgateConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the FLOWGATE_CONFIG
            env variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("FLOWGATE_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = FlowgateConfig(**data)
    else:
        config = FlowgateConfig()

    env_db_url = os.getenv("FLOWGATE_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
