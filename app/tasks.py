"""
Background tasks for RQ (Redis Queue).

Run worker: rq worker -u $REDIS_URL
"""

from __future__ import annotations
import os
from typing import Any, Callable

import structlog

from app.utils.cache import REDIS_URL

log = structlog.get_logger(__name__)


def enqueue(fn: Callable[..., Any], *args: Any, job_timeout: str = "2m", **kwargs: Any) -> bool:
    """
    Run fn on the default queue when USE_EMAIL_QUEUE=1, otherwise inline.
    Returns True if enqueued, False if it ran synchronously.
    """
    use_queue = os.getenv("USE_EMAIL_QUEUE", "0") == "1"
    if not use_queue:
        fn(*args, **kwargs)
        return False

    try:
        from redis import Redis
        from rq import Queue

        conn = Redis.from_url(REDIS_URL, decode_responses=False)
        q = Queue("default", connection=conn)
        q.enqueue(fn, *args, job_timeout=job_timeout, **kwargs)
        return True
    except Exception as e:
        # Fallback to sync if queue unavailable
        log.warning("tasks.enqueue_failed", fn=fn.__name__, error=str(e))
        fn(*args, **kwargs)
        return False
