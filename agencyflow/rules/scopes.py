"""Scope strategies: which data a condition's field path resolves against."""

from __future__ import annotations

import logging
from typing import Any, Dict, Protocol

from .models import EvaluationContext

logger = logging.getLogger(__name__)


class ScopeStrategy(Protocol):
    def resolve(self, context: EvaluationContext) -> Dict[str, Any]:
        """Return the mapping that field paths are looked up in."""


class SignalScope:
    def resolve(self, context: EvaluationContext) -> Dict[str, Any]:
        return context.signal


class ClientScope:
    def resolve(self, context: EvaluationContext) -> Dict[str, Any]:
        return context.client


class ProjectScope:
    def resolve(self, context: EvaluationContext) -> Dict[str, Any]:
        return context.project


class MergedContextScope:
    """Signal, client and project merged, later keys winning.

    Step results are reachable under ``steps.<step_id>``.
    """

    def resolve(self, context: EvaluationContext) -> Dict[str, Any]:
        merged: Dict[str, Any] = {}
        merged.update(context.signal)
        merged.update(context.client)
        merged.update(context.project)
        merged["steps"] = context.steps
        return merged


SCOPES: Dict[str, ScopeStrategy] = {
    "signal": SignalScope(),
    "client": ClientScope(),
    "project": ProjectScope(),
    "context": MergedContextScope(),
}

DEFAULT_SCOPE = "signal"


def register_scope(name: str, strategy: ScopeStrategy) -> None:
    """Add or replace the strategy used for ``name``."""
    SCOPES[name] = strategy


def resolve_scope(name: str | None, context: EvaluationContext) -> Dict[str, Any]:
    strategy = SCOPES.get(name or DEFAULT_SCOPE)
    if strategy is None:
        logger.warning(f"Unknown scope '{name}', falling back to '{DEFAULT_SCOPE}'")
        strategy = SCOPES[DEFAULT_SCOPE]
    return strategy.resolve(context)


__all__ = [
    "ScopeStrategy",
    "SignalScope",
    "ClientScope",
    "ProjectScope",
    "MergedContextScope",
    "SCOPES",
    "register_scope",
    "resolve_scope",
]
