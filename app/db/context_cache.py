"""Thread-safe TTL cache for per-user profile reads.

Several signal providers read the same ``context_profiles`` row for one
request, each from its own worker thread. This cache collapses those
reads. Writers invalidate the user's entry.
"""

import threading
from collections.abc import Callable
from time import monotonic
from typing import Any

_lock = threading.Lock()
_cache: dict[str, tuple[Any, float]] = {}
_TTL_SECONDS = 5.0


def _get_or_compute(key: str, compute_fn: Callable[[], Any]) -> Any:
    """Get from cache or compute and cache the result."""
    now = monotonic()
    with _lock:
        if key in _cache:
            value, ts = _cache[key]
            if now - ts < _TTL_SECONDS:
                return value

    # Compute outside the lock so one slow read doesn't block other users
    result = compute_fn()

    with _lock:
        _cache[key] = (result, monotonic())
    return result


def cached_context_profile(user_id: str) -> dict[str, Any] | None:
    from app.db.context_profiles import get_context_profile

    return _get_or_compute(f"profile:{user_id}", lambda: get_context_profile(user_id))


def invalidate_user(user_id: str) -> None:
    with _lock:
        for key in [k for k in _cache if k.endswith(f":{user_id}")]:
            del _cache[key]


def clear() -> None:
    with _lock:
        _cache.clear()
