"""Dotted-path lookup into nested payloads."""

from __future__ import annotations

from typing import Any

_MISSING = object()


def get_path(data: Any, path: str, default: Any = None) -> Any:
    """Resolve ``a.b.0.c`` against nested mappings and sequences.

    Returns ``default`` as soon as a segment cannot be followed.
    """
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = getattr(current, part, _MISSING) if hasattr(current, "model_fields") else _MISSING
        if current is _MISSING:
            return default
    return current


def has_path(data: Any, path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING
