"""
Shared Redis client. Backs the public player-page cache and the RQ email
queue; callers treat Redis errors as a cache miss.
"""
import os

import redis

REDIS_URL = os.getenv("REDIS_URL", "redis://127.0.0.1:6379/0")
PLAYER_PAGE_TTL = int(os.getenv("PLAYER_PAGE_CACHE_SECONDS", "30"))
_client = None


def r() -> redis.Redis:
    global _client
    if _client is None:
        # short timeouts: a down cache must not stall the page or a webhook
        _client = redis.Redis.from_url(
            REDIS_URL,
            decode_responses=True,
            socket_timeout=0.5,
            socket_connect_timeout=0.5,
        )
    return _client
