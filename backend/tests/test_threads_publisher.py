import asyncio

import httpx
import pytest

from app.domain.thread_chain import ChainItemValidationError
from app.integrations.threads.errors import PublishAttemptFailed, PublishExhausted


def _publish(publisher, credentials, **kwargs):
    kwargs.setdefault("media_urls", [])
    kwargs.setdefault("media_type", "TEXT")
    return asyncio.run(publisher.publish(credentials=credentials, **kwargs))


def test_text_post_creates_container_then_publishes(publisher, credentials, threads_api, publisher_sleep):
    result = _publish(publisher, credentials, content="hello threads")

    assert result.success is True
    assert result.external_post_id == "post_1"
    assert result.creation_id == "container_1"
    assert len(threads_api.container_requests) == 1
    container_params = threads_api.container_requests[0].url.params
    assert container_params["media_type"] == "TEXT"
    assert container_params["text"] == "hello threads"
    assert container_params["access_token"] == "threads-access-token"
    assert "reply_to_id" not in container_params
    assert threads_api.container_requests[0].url.path == "/v1.0/1789/threads"

    publish_request = threads_api.publish_requests[0]
    assert publish_request.url.path == "/v1.0/1789/threads_publish"
    assert publish_request.url.params["creation_id"] == "container_1"
    assert publisher_sleep.delays == []


def test_reply_to_id_is_sent_with_container(publisher, credentials, threads_api):
    result = _publish(publisher, credentials, content="a reply", reply_to_id="post_root")

    assert result.success is True
    assert threads_api.container_requests[0].url.params["reply_to_id"] == "post_root"


def test_text_publish_retries_after_server_errors_without_recreating_container(
    publisher, credentials, threads_api, publisher_sleep
):
    threads_api.publish_failures_remaining = 4

    result = _publish(publisher, credentials, content="eventually")

    assert result.success is True
    assert result.external_post_id == "post_1"
    assert publisher_sleep.delays == [5.0, 5.0, 5.0, 5.0]
    assert len(threads_api.container_requests) == 1
    assert len(threads_api.publish_requests) == 5
    assert {request.url.params["creation_id"] for request in threads_api.publish_requests} == {"container_1"}


def test_malformed_publish_body_is_retried(publisher, credentials, threads_api, publisher_sleep):
    threads_api.malformed_publish_responses_remaining = 2

    result = _publish(publisher, credentials, content="empty body first")

    assert result.success is True
    assert len(threads_api.publish_requests) == 3
    assert publisher_sleep.delays == [5.0, 5.0]


def test_publish_exhaustion_returns_failure(publisher, credentials, threads_api, publisher_sleep):
    threads_api.publish_failures_remaining = 5

    result = _publish(publisher, credentials, content="never")

    assert result.success is False
    assert result.error == "Failed to publish after retries"
    assert result.error_code == "publish_exhausted"
    assert len(threads_api.publish_requests) == 5
    assert publisher_sleep.delays == [5.0, 5.0, 5.0, 5.0]


def test_exhausted_publish_raises_with_last_attempt_as_cause(publisher, credentials, threads_api):
    threads_api.publish_failures_remaining = 5

    async def publish_container():
        async with httpx.AsyncClient(base_url=publisher.base_url, transport=threads_api.transport) as client:
            await publisher._publish_container(client, creation_id="container_9", credentials=credentials, has_media=False)

    with pytest.raises(PublishExhausted, match="Failed to publish after retries") as exc_info:
        asyncio.run(publish_container())

    assert isinstance(exc_info.value.__cause__, PublishAttemptFailed)
    assert exc_info.value.retryable is False


def test_media_posts_wait_longer_between_publish_attempts(publisher, credentials, threads_api, publisher_sleep):
    threads_api.publish_failures_remaining = 2

    result = _publish(
        publisher,
        credentials,
        content="look at this",
        media_type="IMAGE",
        media_urls=["https://cdn.example.com/a.jpg"],
    )

    assert result.success is True
    assert publisher_sleep.delays == [10.0, 10.0]


def test_single_image_never_creates_carousel_children(publisher, credentials, threads_api):
    result = _publish(
        publisher,
        credentials,
        content="single image",
        media_type="IMAGE",
        media_urls=["https://cdn.example.com/a.jpg"],
    )

    assert result.success is True
    assert len(threads_api.container_requests) == 1
    params = threads_api.container_requests[0].url.params
    assert params["media_type"] == "IMAGE"
    assert params["image_url"] == "https://cdn.example.com/a.jpg"
    assert "is_carousel_item" not in params


def test_video_post_sends_video_url(publisher, credentials, threads_api):
    _publish(
        publisher,
        credentials,
        content="clip",
        media_type="video",
        media_urls=["https://cdn.example.com/a.mp4"],
    )

    params = threads_api.container_requests[0].url.params
    assert params["media_type"] == "VIDEO"
    assert params["video_url"] == "https://cdn.example.com/a.mp4"


def test_carousel_creates_children_sequentially_then_parent(publisher, credentials, threads_api, publisher_sleep):
    urls = [
        "https://cdn.example.com/1.jpg",
        "https://cdn.example.com/2.jpg",
        "https://cdn.example.com/3.jpg",
    ]

    result = _publish(
        publisher,
        credentials,
        content="three photos",
        media_type="CAROUSEL",
        media_urls=urls,
        reply_to_id="post_root",
    )

    assert result.success is True
    containers = threads_api.container_requests
    assert len(containers) == 4
    for index, request in enumerate(containers[:3]):
        assert request.url.params["is_carousel_item"] == "true"
        assert request.url.params["media_type"] == "IMAGE"
        assert request.url.params["image_url"] == urls[index]
    parent = containers[3].url.params
    assert parent["media_type"] == "CAROUSEL"
    assert parent["children"] == "container_1,container_2,container_3"
    assert parent["text"] == "three photos"
    assert parent["reply_to_id"] == "post_root"
    assert publisher_sleep.delays == [1.0, 1.0]
    assert threads_api.publish_requests[0].url.params["creation_id"] == "container_4"


def test_container_failure_is_not_retried(publisher, credentials, threads_api, publisher_sleep):
    threads_api.fail_container_texts = {"broken"}

    result = _publish(publisher, credentials, content="broken")

    assert result.success is False
    assert result.error_code == "container_creation_failed"
    assert "Invalid parameter" in result.error
    assert len(threads_api.container_requests) == 1
    assert threads_api.publish_requests == []
    assert publisher_sleep.delays == []


@pytest.mark.parametrize(
    ("media_type", "media_urls"),
    [
        ("TEXT", ["https://cdn.example.com/a.jpg"]),
        ("IMAGE", []),
        ("VIDEO", ["https://cdn.example.com/a.mp4", "https://cdn.example.com/b.mp4"]),
        ("CAROUSEL", ["https://cdn.example.com/a.jpg"]),
        ("GIF", []),
    ],
)
def test_inconsistent_media_is_rejected_before_any_request(publisher, credentials, threads_api, media_type, media_urls):
    with pytest.raises(ChainItemValidationError):
        _publish(publisher, credentials, content="bad media", media_type=media_type, media_urls=media_urls)

    assert threads_api.requests == []


def test_empty_content_is_rejected(publisher, credentials, threads_api):
    with pytest.raises(ChainItemValidationError):
        _publish(publisher, credentials, content="   ")

    assert threads_api.requests == []
