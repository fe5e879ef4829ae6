from redis import Redis

from app.core.config import settings

REDIS_SOCKET_TIMEOUT_SECONDS = 5.0


def get_redis_client() -> Redis:
    return Redis.from_url(
        settings.cache_redis_url,
        decode_responses=True,
        socket_connect_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
        socket_timeout=REDIS_SOCKET_TIMEOUT_SECONDS,
    )
