"""
Shared Redis client for cross-instance sync.

``core.sync_channel.build_sync_channel`` asks ``redis_available()`` before
choosing the Redis backend, then hands ``get_redis()`` to the channel:

    from config.redis_client import get_redis, redis_available

    if redis_available():
        channel = RedisSyncChannel(get_redis())
"""

import logging

logger = logging.getLogger(__name__)

_client = None
# None until the first ping; the answer is kept until reset_redis_connection()
_reachable = None


def _redis_url() -> str:
    from config.settings import get_settings
    return get_settings().redis.redis_url


def get_redis():
    """
    Return the process-wide client, creating it on first use.

    Connections are lazy, so this never touches the network; use
    ``redis_available()`` to find out whether the server answers.
    """
    global _client

    if _client is None:
        import redis
        _client = redis.from_url(_redis_url(), decode_responses=True)

    return _client


def redis_available() -> bool:
    """Ping the sync server once and remember the result."""
    global _reachable

    if _reachable is None:
        try:
            get_redis().ping()
            _reachable = True
            logger.info(f"Sync Redis reachable at {_redis_url()}")
        except Exception as e:
            _reachable = False
            logger.warning(f"Sync Redis unreachable at {_redis_url()}: {e}")

    return _reachable


def reset_redis_connection():
    """Forget the client and the cached ping (tests, reconfiguration)."""
    global _client, _reachable
    _client = None
    _reachable = None
