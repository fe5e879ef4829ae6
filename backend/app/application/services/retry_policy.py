import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DelayFunction = Callable[[int], float]
SleepFunction = Callable[[float], Awaitable[None]]


def fixed_delay(seconds: float) -> DelayFunction:
    return lambda attempt: seconds


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delay: DelayFunction = fixed_delay(0.0)

    def allows_another_attempt(self, attempts_made: int) -> bool:
        return attempts_made < self.max_attempts

    def delay_after(self, attempt: int) -> float:
        return max(0.0, float(self.delay(attempt)))


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    policy: RetryPolicy,
    is_retryable: Callable[[Exception], bool],
    sleep: SleepFunction = asyncio.sleep,
    operation_name: str = "operation",
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return await operation(attempt)
        except Exception as exc:
            if not is_retryable(exc):
                raise
            if not policy.allows_another_attempt(attempt):
                logger.error(
                    "retry_exhausted operation=%s attempts=%s error=%s",
                    operation_name,
                    attempt,
                    exc,
                )
                raise
            delay = policy.delay_after(attempt)
            logger.warning(
                "retry_scheduled operation=%s attempt=%s/%s delay_seconds=%.1f error=%s",
                operation_name,
                attempt,
                policy.max_attempts,
                delay,
                exc,
            )
            await sleep(delay)
