from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel

from .constants import (
    DEFAULT_DEDUP_WINDOW_SECONDS,
    DEFAULT_MAX_STEPS,
    DEFAULT_SIGNAL_TOPIC,
    DEFAULT_WORKFLOW_TIMEOUT_SECONDS,
)


class RedisConfig(BaseModel):
    """Configuration for Redis transport."""

    host: str = "localhost"
    port: int = 6379
    db: int = 0
    password: Optional[str] = None


class TransportConfig(BaseModel):
    """Transport configuration settings."""

    backend: Literal["inmemory", "redis"] = "inmemory"
    redis: RedisConfig = RedisConfig()


class RoutingConfig(BaseModel):
    """Deployment-wide signal routing policy."""

    policy: Literal["first_match", "all_matches"] = "all_matches"


class SignalConfig(BaseModel):
    """Signal ingestion settings."""

    dedup_window_seconds: int = DEFAULT_DEDUP_WINDOW_SECONDS
    topic: str = DEFAULT_SIGNAL_TOPIC


class EngineConfig(BaseModel):
    """Workflow engine limits."""

    default_timeout_seconds: int = DEFAULT_WORKFLOW_TIMEOUT_SECONDS
    max_steps: int = DEFAULT_MAX_STEPS


class AIConfig(BaseModel):
    """Model used by ``ai`` steps; ``None`` leaves ai steps without a generator."""

    model: Optional[str] = None


class LoggingConfig(BaseModel):
    level: str = "INFO"


class AgencyFlowConfig(BaseModel):
    """Top-level configuration model."""

    transport: TransportConfig = TransportConfig()
    database_url: Optional[str] = None
    routing: RoutingConfig = RoutingConfig()
    signals: SignalConfig = SignalConfig()
    engine: EngineConfig = EngineConfig()
    ai: AIConfig = AIConfig()
    logging: LoggingConfig = LoggingConfig()


def load_config(path: Optional[str] = None) -> AgencyFlowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to AGENCYFLOW_CONFIG env
            variable or 'config.yaml' in the current directory.
    """

    config_path = path or os.getenv("AGENCYFLOW_CONFIG", "config.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = AgencyFlowConfig(**data)
    else:
        config = AgencyFlowConfig()

    env_db_url = os.getenv("AGENCYFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_policy = os.getenv("AGENCYFLOW_ROUTING_POLICY")
    if env_policy:
        config.routing = RoutingConfig(policy=env_policy.lower())
    return config
