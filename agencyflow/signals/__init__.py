"""Signal ingestion, source adapters and routing."""

from __future__ import annotations

from .adapters import ADAPTERS, AdaptedSignal, SignalAdapter, get_adapter, register_adapter
from .router import RouteMatch, SignalRouter
from .store import SignalStore, compute_fingerprint

__all__ = [
    "ADAPTERS",
    "AdaptedSignal",
    "RouteMatch",
    "SignalAdapter",
    "SignalRouter",
    "SignalStore",
    "compute_fingerprint",
    "get_adapter",
    "register_adapter",
]
