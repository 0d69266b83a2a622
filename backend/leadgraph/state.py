"""
Application State
=================

Process-wide shared resources.

WHAT it stores:
- redis_pool / redis_client: Shared Redis connection pool and client

WHERE it's used:
- leadgraph/services/named_lock.py: Redis-backed identity locks
- leadgraph/workers/arq_worker.py: ARQ manages its own Redis connection

Design:
- Module-level singleton, created on first use instead of at import so that
  tests and the `local` lock backend never need a Redis server
- Thread-safe (redis-py client has connection pooling)
"""

import logging
from typing import Optional

from redis import Redis, ConnectionPool

from leadgraph.deps import get_settings

logger = logging.getLogger(__name__)

redis_pool: Optional[ConnectionPool] = None
redis_client: Optional[Redis] = None


def get_redis_client() -> Redis:
    """Return the shared Redis client, creating the pool on first call."""
    global redis_pool, redis_client

    if redis_client is None:
        settings = get_settings()
        redis_pool = ConnectionPool.from_url(
            settings.REDIS_URL,
            max_connections=20,
            decode_responses=False,
        )
        redis_client = Redis(connection_pool=redis_pool)
        logger.info("[STATE] Shared Redis connection pool initialized (max_connections=20)")

    return redis_client
