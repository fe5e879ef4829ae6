import asyncio
from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import select

from app.application.services.content_store_service import schedule_thread_chain
from app.application.services.thread_chain_service import (
    ThreadChainService,
    ThreadsAccountNotFound,
    load_threads_credentials,
)
from app.core.security import decrypt_secret
from app.domain.models.content_record import ContentRecord
from app.domain.models.thread_queue_entry import ThreadQueueEntry
from app.domain.thread_chain import (
    AutomatedContext,
    ChainItem,
    ChainItemValidationError,
    ChainValidationError,
    InteractiveContext,
    ReplyWiring,
    build_chain,
)


class SignalRecorder:
    def __init__(self) -> None:
        self.calls = 0

    def __call__(self) -> None:
        self.calls += 1


class ReplyExplodingPublisher:
    def __init__(self, inner) -> None:
        self.inner = inner

    async def publish(self, **kwargs):
        if kwargs.get("reply_to_id") and kwargs["content"] == "boom":
            raise RuntimeError("connection reset")
        return await self.inner.publish(**kwargs)


@pytest.fixture
def signal() -> SignalRecorder:
    return SignalRecorder()


@pytest.fixture
def service(db, publisher, sleep_recorder, signal) -> ThreadChainService:
    return ThreadChainService(db, publisher, sleep=sleep_recorder, signal=signal)


def _records(db) -> list[ContentRecord]:
    return list(
        db.execute(
            select(ContentRecord).order_by(ContentRecord.parent_media_id, ContentRecord.thread_sequence)
        ).scalars().all()
    )


def _queue_rows(db) -> list[ThreadQueueEntry]:
    return list(db.execute(select(ThreadQueueEntry).order_by(ThreadQueueEntry.thread_sequence)).scalars().all())


def _text_chain(*contents: str) -> list[ChainItem]:
    return build_chain([{"content": content, "media_type": "TEXT"} for content in contents])


def test_interactive_chain_publishes_replies_to_root(db, service, credentials, threads_api, sleep_recorder, signal):
    context = InteractiveContext(user_id="user-1", credentials=credentials)

    result = asyncio.run(service.post_chain(_text_chain("A", "B"), context))

    assert result.success is True
    assert result.parent_thread_id == "post_1"
    assert result.thread_ids == ["post_1", "post_2"]
    root_container, reply_container = threads_api.container_requests
    assert "reply_to_id" not in root_container.url.params
    assert reply_container.url.params["reply_to_id"] == "post_1"
    assert sleep_recorder.delays == [2.0]

    records = _records(db)
    assert [(row.thread_sequence, row.media_id, row.publish_status) for row in records] == [
        (0, "post_1", "posted"),
        (1, "post_2", "posted"),
    ]
    assert {row.parent_media_id for row in records} == {"post_1"}
    assert all(row.is_thread_chain for row in records)
    assert _queue_rows(db) == []
    assert signal.calls == 0


def test_interactive_chain_paces_replies_and_waits_longer_after_media_root(
    db, service, credentials, threads_api, sleep_recorder
):
    items = build_chain(
        [
            {"content": "A", "media_type": "IMAGE", "media_urls": ["https://cdn.example.com/a.jpg"]},
            {"content": "B"},
            {"content": "C"},
        ]
    )

    result = asyncio.run(service.post_chain(items, InteractiveContext(user_id="user-1", credentials=credentials)))

    assert result.thread_ids == ["post_1", "post_2", "post_3"]
    assert sleep_recorder.delays == [10.0, 1.0]
    reply_targets = [request.url.params["reply_to_id"] for request in threads_api.container_requests[1:]]
    assert reply_targets == ["post_1", "post_1"]


def test_interactive_chain_can_reply_to_previous_post(service, credentials, threads_api):
    context = InteractiveContext(user_id="user-1", credentials=credentials, reply_wiring=ReplyWiring.PREVIOUS)

    result = asyncio.run(service.post_chain(_text_chain("A", "B", "C"), context))

    assert result.thread_ids == ["post_1", "post_2", "post_3"]
    reply_targets = [request.url.params["reply_to_id"] for request in threads_api.container_requests[1:]]
    assert reply_targets == ["post_1", "post_2"]


def test_failed_reply_gets_placeholder_and_chain_still_succeeds(db, service, credentials, threads_api):
    threads_api.fail_publish_texts = {"B"}

    result = asyncio.run(
        service.post_chain(_text_chain("A", "B", "C"), InteractiveContext(user_id="user-1", credentials=credentials))
    )

    assert result.success is True
    assert result.thread_ids == ["post_1", "failed_1", "post_2"]
    records = _records(db)
    assert [(row.thread_sequence, row.media_id, row.publish_status) for row in records] == [
        (0, "post_1", "posted"),
        (1, "failed_1", "failed"),
        (2, "post_2", "posted"),
    ]


def test_raising_reply_is_isolated(db, publisher, sleep_recorder, signal, credentials):
    service = ThreadChainService(db, ReplyExplodingPublisher(publisher), sleep=sleep_recorder, signal=signal)

    result = asyncio.run(
        service.post_chain(_text_chain("A", "boom", "C"), InteractiveContext(user_id="user-1", credentials=credentials))
    )

    assert result.success is True
    assert result.thread_ids == ["post_1", "failed_1", "post_2"]


def test_automated_chain_queues_replies_and_signals(db, service, credentials, threads_api, sleep_recorder, signal):
    context = AutomatedContext(user_id="user-1", credentials=credentials)

    result = asyncio.run(service.post_chain(_text_chain("A", "B"), context))

    assert result.success is True
    assert result.parent_thread_id == "post_1"
    assert result.thread_ids == ["post_1", "queued_1"]
    assert len(threads_api.container_requests) == 1
    assert sleep_recorder.delays == []
    assert signal.calls == 1

    rows = _queue_rows(db)
    assert [(row.thread_sequence, row.status, row.reply_to_id) for row in rows] == [
        (0, "completed", None),
        (1, "pending", "post_1"),
    ]
    assert rows[1].queue_id == "post_1_1"
    assert rows[1].parent_media_id == "post_1"
    assert rows[1].access_token != "threads-access-token"
    assert decrypt_secret(rows[1].access_token) == "threads-access-token"
    assert rows[1].retry_count == 0
    assert rows[1].max_retries == 3

    records = _records(db)
    assert [(row.thread_sequence, row.media_id, row.publish_status) for row in records] == [
        (0, "post_1", "posted"),
        (1, None, "scheduled"),
    ]


def test_automated_chain_queues_every_reply_against_the_root(db, service, credentials):
    asyncio.run(service.post_chain(_text_chain("A", "B", "C", "D"), AutomatedContext(user_id="u", credentials=credentials)))

    pending = [row for row in _queue_rows(db) if row.status == "pending"]
    assert [row.thread_sequence for row in pending] == [1, 2, 3]
    assert {row.reply_to_id for row in pending} == {"post_1"}
    assert [row.thread_sequence for row in _queue_rows(db) if row.thread_sequence == 0] == [0]


def test_signal_failure_does_not_fail_the_chain(db, publisher, sleep_recorder, credentials):
    def broken_signal() -> None:
        raise ConnectionError("broker down")

    service = ThreadChainService(db, publisher, sleep=sleep_recorder, signal=broken_signal)

    result = asyncio.run(service.post_chain(_text_chain("A", "B"), AutomatedContext(user_id="u", credentials=credentials)))

    assert result.success is True
    assert len(_queue_rows(db)) == 2


@pytest.mark.parametrize("context_type", ["interactive", "automated"])
def test_single_item_chain_never_touches_the_queue(db, service, credentials, sleep_recorder, signal, context_type):
    if context_type == "interactive":
        context = InteractiveContext(user_id="user-1", credentials=credentials)
    else:
        context = AutomatedContext(user_id="user-1", credentials=credentials)

    result = asyncio.run(service.post_chain(_text_chain("only"), context))

    assert result.success is True
    assert result.thread_ids == ["post_1"]
    assert _queue_rows(db) == []
    assert signal.calls == 0
    assert sleep_recorder.delays == []
    (record,) = _records(db)
    assert record.is_thread_chain is False
    assert record.parent_media_id == "post_1"
    assert record.media_id == "post_1"


def test_root_failure_fails_the_chain_and_persists_nothing(db, service, credentials, threads_api, signal):
    threads_api.fail_container_texts = {"A"}

    result = asyncio.run(service.post_chain(_text_chain("A", "B"), AutomatedContext(user_id="u", credentials=credentials)))

    assert result.success is False
    assert result.parent_thread_id is None
    assert "Invalid parameter" in result.error
    assert len(threads_api.container_requests) == 1
    assert _records(db) == []
    assert _queue_rows(db) == []
    assert signal.calls == 0


def test_empty_chain_is_rejected(service, credentials, threads_api):
    with pytest.raises(ChainValidationError):
        asyncio.run(service.post_chain([], InteractiveContext(user_id="u", credentials=credentials)))

    assert threads_api.requests == []


def test_invalid_reply_is_rejected_before_root_is_published(service, credentials, threads_api):
    items = build_chain(
        [
            {"content": "A"},
            {"content": "B", "media_type": "TEXT", "media_urls": ["https://cdn.example.com/a.jpg"]},
        ]
    )

    with pytest.raises(ChainItemValidationError):
        asyncio.run(service.post_chain(items, InteractiveContext(user_id="u", credentials=credentials)))

    assert threads_api.requests == []


def test_scheduled_placeholder_rows_are_replaced(db, service, credentials):
    placeholder_parent_id, _ = schedule_thread_chain(
        db,
        items=_text_chain("A", "B"),
        scheduled_at=datetime.now(UTC) - timedelta(minutes=1),
        user_id="user-1",
        social_id=credentials.social_id,
    )
    db.commit()

    context = AutomatedContext(user_id="user-1", credentials=credentials, placeholder_parent_id=placeholder_parent_id)
    result = asyncio.run(service.post_chain(_text_chain("A", "B"), context))

    assert result.success is True
    parents = {row.parent_media_id for row in _records(db)}
    assert parents == {"post_1"}


def test_load_threads_credentials(db, threads_account):
    loaded = load_threads_credentials(db, user_id="user-1")

    assert loaded.social_id == threads_account.social_id
    assert loaded.access_token == "threads-access-token"
    with pytest.raises(ThreadsAccountNotFound):
        load_threads_credentials(db, user_id="someone-else")
