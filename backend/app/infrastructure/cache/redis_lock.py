import logging
from uuid import uuid4

from redis import Redis

from app.infrastructure.observability.metrics import measure_redis

logger = logging.getLogger(__name__)

_RELEASE_IF_OWNER_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class RedisSingleFlightLock:
    """Cross-process single-flight guard backed by ``SET NX EX``."""

    def __init__(self, redis_client: Redis, *, key: str, ttl_seconds: int) -> None:
        self.redis_client = redis_client
        self.key = key
        self.ttl_seconds = ttl_seconds

    def acquire(self) -> str | None:
        token = str(uuid4())
        with measure_redis("single_flight_acquire"):
            acquired = self.redis_client.set(self.key, token, nx=True, ex=self.ttl_seconds)
        if not acquired:
            return None
        return token

    def release(self, token: str) -> None:
        try:
            with measure_redis("single_flight_release"):
                self.redis_client.eval(_RELEASE_IF_OWNER_SCRIPT, 1, self.key, token)
        except Exception:
            logger.exception("single_flight_release_failed key=%s", self.key)
