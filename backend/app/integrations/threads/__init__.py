from app.integrations.threads.errors import (
    ContainerCreationFailed,
    MalformedResponse,
    PublishAttemptFailed,
    PublishExhausted,
    ThreadsPublishError,
)
from app.integrations.threads.publisher import PublishResult, ThreadsPublisher

__all__ = [
    "ThreadsPublishError",
    "MalformedResponse",
    "PublishAttemptFailed",
    "ContainerCreationFailed",
    "PublishExhausted",
    "PublishResult",
    "ThreadsPublisher",
]
