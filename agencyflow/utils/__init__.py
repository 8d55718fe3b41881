from .canonical import canonical_json, canonicalize, compute_hash
from .paths import get_path, has_path
from .retry import compute_backoff

__all__ = [
    "canonical_json",
    "canonicalize",
    "compute_hash",
    "compute_backoff",
    "get_path",
    "has_path",
]
