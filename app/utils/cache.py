"""Simple in-memory TTL cache for pre-warmed client dashboards."""
import time
from typing import Any

_cache: dict[str, tuple[float, Any]] = {}
MISS = object()


def kpi_cache_key(client_id: str) -> str:
    return f"kpi:{client_id}"


def get_cached(key: str):
    """Return cached value if still valid, else the MISS sentinel."""
    now = time.time()
    if key in _cache:
        expires, value = _cache[key]
        if now < expires:
            return value
        del _cache[key]
    return MISS


def set_cached(key: str, value: Any, seconds: int = 300):
    """Store a value in cache with TTL."""
    _cache[key] = (time.time() + seconds, value)


def clear_cache():
    """Clear all cached values."""
    _cache.clear()


def clear_for_client(client_id: str):
    """Drop every entry belonging to one client (token change, deletion)."""
    suffix = f":{client_id}"
    for key in [k for k in _cache if k.endswith(suffix)]:
        del _cache[key]
