class ThreadsPublishError(RuntimeError):
    retryable: bool = True
    error_code: str = "threads_publish_error"


class MalformedResponse(ThreadsPublishError):
    retryable = True
    error_code = "malformed_response"


class PublishAttemptFailed(ThreadsPublishError):
    retryable = True
    error_code = "publish_attempt_failed"


class ContainerCreationFailed(ThreadsPublishError):
    retryable = False
    error_code = "container_creation_failed"


class PublishExhausted(ThreadsPublishError):
    retryable = False
    error_code = "publish_exhausted"
