import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass
from time import perf_counter

import httpx

from app.application.services.retry_policy import RetryPolicy, SleepFunction, fixed_delay, run_with_retry
from app.core.config import settings
from app.domain.thread_chain import ChainItemValidationError, Credentials, MediaType, validate_media
from app.infrastructure.observability.metrics import THREADS_PUBLISH_ATTEMPTS_TOTAL, THREADS_PUBLISH_FAILURES_TOTAL
from app.integrations.threads.errors import (
    ContainerCreationFailed,
    MalformedResponse,
    PublishAttemptFailed,
    PublishExhausted,
    ThreadsPublishError,
)

logger = logging.getLogger(__name__)

THREADS_CREATE_PATH_TEMPLATE = "/{social_id}/threads"
THREADS_PUBLISH_PATH_TEMPLATE = "/{social_id}/threads_publish"

PUBLISH_MAX_ATTEMPTS = 5
PUBLISH_RETRY_DELAY_MEDIA_SECONDS = 10.0
PUBLISH_RETRY_DELAY_TEXT_SECONDS = 5.0
CAROUSEL_ITEM_PACING_SECONDS = 1.0
PUBLISH_EXHAUSTED_MESSAGE = "Failed to publish after retries"


@dataclass(frozen=True)
class PublishResult:
    success: bool
    external_post_id: str | None = None
    creation_id: str | None = None
    error: str | None = None
    error_code: str | None = None


def _parse_json_object(response: httpx.Response) -> dict:
    try:
        data = response.json()
    except ValueError as exc:
        raise MalformedResponse(f"Threads returned a non-JSON body ({response.status_code})") from exc
    if not isinstance(data, dict) or not data:
        raise MalformedResponse(f"Threads returned an empty body ({response.status_code})")
    return data


class ThreadsPublisher:
    """Creates a Threads media container, then publishes it with bounded retries."""

    def __init__(
        self,
        *,
        base_url: str | None = None,
        timeout_seconds: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: SleepFunction = asyncio.sleep,
    ) -> None:
        self.base_url = (base_url or settings.threads_graph_api_base_url).rstrip("/")
        self.timeout_seconds = timeout_seconds or settings.threads_http_timeout_seconds
        self._transport = transport
        self._sleep = sleep

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout_seconds,
            transport=self._transport,
        )

    async def publish(
        self,
        *,
        content: str,
        media_urls: Sequence[str] | None,
        media_type: MediaType | str,
        credentials: Credentials,
        reply_to_id: str | None = None,
    ) -> PublishResult:
        urls = list(media_urls or [])
        normalized_type = validate_media(media_type, urls)
        if not content or not content.strip():
            raise ChainItemValidationError("Post content is required")

        THREADS_PUBLISH_ATTEMPTS_TOTAL.inc()
        async with self._client() as client:
            try:
                creation_id = await self._create_container(
                    client,
                    content=content,
                    media_urls=urls,
                    media_type=normalized_type,
                    credentials=credentials,
                    reply_to_id=reply_to_id,
                )
            except ContainerCreationFailed as exc:
                THREADS_PUBLISH_FAILURES_TOTAL.labels(stage="container").inc()
                logger.warning(
                    "threads_container_creation_failed social_id=%s media_type=%s reply_to_id=%s error=%s",
                    credentials.social_id,
                    normalized_type,
                    reply_to_id,
                    exc,
                )
                return PublishResult(success=False, error=str(exc), error_code=exc.error_code)

            try:
                external_post_id = await self._publish_container(
                    client,
                    creation_id=creation_id,
                    credentials=credentials,
                    has_media=bool(urls),
                )
            except PublishExhausted as exc:
                THREADS_PUBLISH_FAILURES_TOTAL.labels(stage="publish").inc()
                logger.error(
                    "threads_publish_exhausted social_id=%s creation_id=%s last_error=%s",
                    credentials.social_id,
                    creation_id,
                    exc.__cause__,
                )
                return PublishResult(
                    success=False,
                    creation_id=creation_id,
                    error=str(exc),
                    error_code=exc.error_code,
                )

        logger.info(
            "threads_post_published social_id=%s media_type=%s creation_id=%s external_post_id=%s reply_to_id=%s",
            credentials.social_id,
            normalized_type,
            creation_id,
            external_post_id,
            reply_to_id,
        )
        return PublishResult(success=True, external_post_id=external_post_id, creation_id=creation_id)

    async def _create_container(
        self,
        client: httpx.AsyncClient,
        *,
        content: str,
        media_urls: list[str],
        media_type: MediaType,
        credentials: Credentials,
        reply_to_id: str | None,
    ) -> str:
        params: dict[str, str] = {"media_type": media_type.value, "text": content}
        if media_type == MediaType.IMAGE:
            params["image_url"] = media_urls[0]
        elif media_type == MediaType.VIDEO:
            params["video_url"] = media_urls[0]
        elif media_type == MediaType.CAROUSEL:
            children = await self._create_carousel_items(client, media_urls=media_urls, credentials=credentials)
            params["children"] = ",".join(children)
        if reply_to_id:
            params["reply_to_id"] = reply_to_id
        return await self._post_container(client, credentials=credentials, params=params, label=media_type.value)

    async def _create_carousel_items(
        self,
        client: httpx.AsyncClient,
        *,
        media_urls: list[str],
        credentials: Credentials,
    ) -> list[str]:
        children: list[str] = []
        for index, image_url in enumerate(media_urls):
            if index > 0:
                await self._sleep(CAROUSEL_ITEM_PACING_SECONDS)
            child_id = await self._post_container(
                client,
                credentials=credentials,
                params={"media_type": MediaType.IMAGE.value, "image_url": image_url, "is_carousel_item": "true"},
                label=f"carousel_item {index + 1}/{len(media_urls)}",
            )
            children.append(child_id)
        return children

    async def _post_container(
        self,
        client: httpx.AsyncClient,
        *,
        credentials: Credentials,
        params: dict[str, str],
        label: str,
    ) -> str:
        path = THREADS_CREATE_PATH_TEMPLATE.format(social_id=credentials.social_id)
        started_at = perf_counter()
        try:
            response = await client.post(path, params={**params, "access_token": credentials.access_token})
        except httpx.TransportError as exc:
            raise ContainerCreationFailed(f"Threads {label} container request failed: {exc}") from exc
        elapsed_ms = int((perf_counter() - started_at) * 1000)

        if not response.is_success:
            logger.warning(
                "threads_container_rejected label=%s status=%s elapsed_ms=%s body=%s",
                label,
                response.status_code,
                elapsed_ms,
                response.text,
            )
            raise ContainerCreationFailed(response.text or f"Threads {label} container failed: {response.status_code}")
        try:
            data = _parse_json_object(response)
        except MalformedResponse as exc:
            raise ContainerCreationFailed(str(exc)) from exc

        creation_id = str(data.get("id") or "")
        if not creation_id:
            raise ContainerCreationFailed(f"Threads {label} container response missing id")
        logger.debug("threads_container_created label=%s creation_id=%s elapsed_ms=%s", label, creation_id, elapsed_ms)
        return creation_id

    async def _publish_container(
        self,
        client: httpx.AsyncClient,
        *,
        creation_id: str,
        credentials: Credentials,
        has_media: bool,
    ) -> str:
        path = THREADS_PUBLISH_PATH_TEMPLATE.format(social_id=credentials.social_id)
        delay = PUBLISH_RETRY_DELAY_MEDIA_SECONDS if has_media else PUBLISH_RETRY_DELAY_TEXT_SECONDS
        policy = RetryPolicy(max_attempts=PUBLISH_MAX_ATTEMPTS, delay=fixed_delay(delay))

        async def _attempt(attempt: int) -> str:
            started_at = perf_counter()
            try:
                response = await client.post(
                    path,
                    params={"creation_id": creation_id, "access_token": credentials.access_token},
                )
            except httpx.TransportError as exc:
                raise PublishAttemptFailed(f"Threads publish request failed: {exc}") from exc
            elapsed_ms = int((perf_counter() - started_at) * 1000)

            if not response.is_success:
                logger.warning(
                    "threads_publish_attempt_failed creation_id=%s attempt=%s/%s status=%s elapsed_ms=%s body=%s",
                    creation_id,
                    attempt,
                    PUBLISH_MAX_ATTEMPTS,
                    response.status_code,
                    elapsed_ms,
                    response.text,
                )
                raise PublishAttemptFailed(f"Threads publish failed: {response.status_code} {response.text}")

            data = _parse_json_object(response)
            external_post_id = str(data.get("id") or "")
            if not external_post_id:
                raise MalformedResponse("Threads publish response missing id")
            logger.debug(
                "threads_publish_attempt_succeeded creation_id=%s attempt=%s elapsed_ms=%s",
                creation_id,
                attempt,
                elapsed_ms,
            )
            return external_post_id

        try:
            return await run_with_retry(
                _attempt,
                policy=policy,
                is_retryable=lambda exc: isinstance(exc, ThreadsPublishError) and exc.retryable,
                sleep=self._sleep,
                operation_name="threads_publish",
            )
        except ThreadsPublishError as exc:
            raise PublishExhausted(PUBLISH_EXHAUSTED_MESSAGE) from exc
