"""Counter cache factory — backend selection.

Selection:
  1. cache.redis_url set (or KEYGATE_REDIS_URL, applied by load_config) → RedisCounterCache
  2. Otherwise                                                          → MemoryCounterCache
"""

from __future__ import annotations

from keygate.cache.protocol import CounterCache
from keygate.config import CacheConfig
from keygate.utils.logger import get_logger

logger = get_logger(__name__)


def create_counter_cache(config: CacheConfig) -> CounterCache:
    if config.redis_url:
        from keygate.cache.redis_backend import RedisCounterCache

        cache = RedisCounterCache.from_url(config.redis_url)
        logger.info(
            "counter_cache_selected",
            backend="RedisCounterCache",
            # Never log credentials embedded in the URL
            redis_host=config.redis_url.split("@")[-1],
        )
        return cache

    from keygate.cache.memory import MemoryCounterCache

    logger.info("counter_cache_selected", backend="MemoryCounterCache")
    return MemoryCounterCache()
