"""
In-process sliding-window rate limiter for the public payment endpoints.

RATE_LIMIT_ENABLED (default 1) and RATE_LIMIT_PAYMENT_PER_MINUTE (default 30).
Limits are per client IP and per worker process.
"""

from __future__ import annotations
import os
import time
from collections import deque
from functools import wraps
from threading import Lock

from flask import jsonify, request

_lock = Lock()
_hits: dict[str, deque] = {}
_window = 60  # seconds
_last_sweep = 0.0


def _sweep(now: float) -> None:
    """Forget clients whose every hit has aged out of the window."""
    stale = [k for k, hits in _hits.items() if not hits or hits[-1] <= now - _window]
    for k in stale:
        del _hits[k]


def is_rate_limited(key: str, limit: int) -> bool:
    """Record a hit for key; True if it is over the limit for the window."""
    global _last_sweep
    if limit <= 0:
        return False
    now = time.monotonic()
    with _lock:
        if now - _last_sweep >= _window:
            _sweep(now)
            _last_sweep = now
        hits = _hits.setdefault(key, deque())
        while hits and hits[0] <= now - _window:
            hits.popleft()
        if len(hits) >= limit:
            return True
        hits.append(now)
        return False


def reset() -> None:
    global _last_sweep
    with _lock:
        _hits.clear()
        _last_sweep = 0.0


def client_key() -> str:
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.remote_addr or "unknown"


def rate_limited(key_prefix: str, env_var: str = "RATE_LIMIT_PAYMENT_PER_MINUTE", default: int = 30):
    def decorator(fn):
        @wraps(fn)
        def wrapper(*args, **kwargs):
            if os.getenv("RATE_LIMIT_ENABLED", "1") != "1":
                return fn(*args, **kwargs)
            limit = int(os.getenv(env_var, str(default)))
            if is_rate_limited(f"{key_prefix}:{client_key()}", limit):
                return jsonify({"error": "rate limit exceeded", "retry_after": _window}), 429
            return fn(*args, **kwargs)

        return wrapper

    return decorator
