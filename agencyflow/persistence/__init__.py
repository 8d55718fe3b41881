"""Persistence layer for agencyflow automation state."""

from __future__ import annotations

import os
from typing import Optional

from ..config import AgencyFlowConfig, load_config
from .inmemory import InMemoryAutomationRepository
from .postgres import PostgresAutomationRepository
from .repository import AutomationRepository
from .sqlite import SQLiteAutomationRepository

_repository_instance: AutomationRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[AgencyFlowConfig] = None
) -> AutomationRepository:
    """Factory function to obtain an automation repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``AGENCYFLOW_DATABASE_URL`` or
    ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("AGENCYFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryAutomationRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteAutomationRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresAutomationRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


def reset_repository() -> None:
    """Drop the cached repository so the next call re-reads configuration."""
    global _repository_instance
    _repository_instance = None


__all__ = [
    "AutomationRepository",
    "InMemoryAutomationRepository",
    "SQLiteAutomationRepository",
    "PostgresAutomationRepository",
    "get_repository",
    "reset_repository",
]
