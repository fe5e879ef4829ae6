import asyncio
import logging
from collections.abc import Callable
from typing import Protocol

from sqlalchemy.orm import Session

from app.application.services.content_store_service import mark_thread_failed, mark_thread_posted
from app.application.services.retry_policy import SleepFunction
from app.application.services.thread_queue_service import (
    claim_entry,
    fetch_pending,
    has_pending,
    mark_completed,
    record_failure,
    signal_queue_processing,
)
from app.core.security import decrypt_secret
from app.domain.models.failed_job import FailedJob
from app.domain.models.thread_queue_entry import ThreadQueueEntry
from app.domain.thread_chain import Credentials
from app.infrastructure.observability.metrics import record_queue_outcome
from app.integrations.threads.publisher import ThreadsPublisher

logger = logging.getLogger(__name__)

MAX_CONCURRENT = 3
ITEM_PACING_SECONDS = 2.0
REARM_DELAY_SECONDS = 2.0
FAILED_JOB_TYPE = "thread_queue_publish"


class SingleFlightGuard(Protocol):
    def acquire(self) -> str | None: ...

    def release(self, token: str) -> None: ...


class ThreadQueueProcessor:
    """Drains pending thread replies in small, paced batches."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        publisher: ThreadsPublisher,
        *,
        guard: SingleFlightGuard,
        sleep: SleepFunction = asyncio.sleep,
        rearm: Callable[..., None] | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.publisher = publisher
        self.guard = guard
        self._sleep = sleep
        self._rearm = rearm or signal_queue_processing

    async def process_queue(self) -> dict:
        token = self.guard.acquire()
        if token is None:
            logger.info("thread_queue_processor_busy")
            return {"status": "skipped"}

        summary = {"status": "processed", "completed": 0, "retried": 0, "failed": 0, "skipped": 0, "errored": 0}
        try:
            with self.session_factory() as db:
                batch = [entry.queue_id for entry in fetch_pending(db, limit=MAX_CONCURRENT)]

            for index, queue_id in enumerate(batch):
                if index > 0:
                    await self._sleep(ITEM_PACING_SECONDS)
                try:
                    outcome = await self._process_entry(queue_id)
                except Exception:
                    # The claim lease expires and a later pass picks the entry up again.
                    logger.exception("thread_queue_entry_stranded queue_id=%s", queue_id)
                    record_queue_outcome("errored")
                    outcome = "errored"
                summary[outcome] += 1

            with self.session_factory() as db:
                remaining = has_pending(db)
        finally:
            self.guard.release(token)

        summary["rearmed"] = remaining
        if remaining:
            self._rearm(countdown=REARM_DELAY_SECONDS)
        logger.info(
            "thread_queue_batch_processed batch=%s completed=%s retried=%s failed=%s skipped=%s errored=%s rearmed=%s",
            len(batch),
            summary["completed"],
            summary["retried"],
            summary["failed"],
            summary["skipped"],
            summary["errored"],
            remaining,
        )
        return summary

    async def _process_entry(self, queue_id: str) -> str:
        with self.session_factory() as db:
            if not claim_entry(db, queue_id=queue_id):
                db.rollback()
                logger.info("thread_queue_claim_lost queue_id=%s", queue_id)
                return "skipped"
            db.commit()

            entry = db.get(ThreadQueueEntry, queue_id)
            if entry is None:
                return "skipped"

            error: str | None = None
            permanent = False
            external_post_id: str | None = None
            try:
                credentials = Credentials(social_id=entry.social_id, access_token=decrypt_secret(entry.access_token))
                result = await self.publisher.publish(
                    content=entry.content,
                    media_urls=entry.media_urls,
                    media_type=entry.media_type,
                    credentials=credentials,
                    reply_to_id=entry.reply_to_id,
                )
                if result.success and result.external_post_id:
                    external_post_id = result.external_post_id
                else:
                    error = result.error or "Threads publish failed"
            except ValueError as exc:
                # Undecryptable token or invalid stored media; retrying cannot help.
                logger.exception("thread_queue_entry_invalid queue_id=%s", queue_id)
                error = str(exc)
                permanent = True
            except Exception as exc:
                logger.exception("thread_queue_entry_error queue_id=%s", queue_id)
                error = str(exc) or exc.__class__.__name__

            if external_post_id is not None:
                return self._complete(db, entry, external_post_id=external_post_id)
            return self._fail(db, entry, error=error or "Threads publish failed", permanent=permanent)

    def _complete(self, db: Session, entry: ThreadQueueEntry, *, external_post_id: str) -> str:
        mark_completed(db, entry=entry)
        mark_thread_posted(
            db,
            parent_media_id=entry.parent_media_id,
            thread_sequence=entry.thread_sequence,
            media_id=external_post_id,
        )
        db.commit()
        record_queue_outcome("completed")
        logger.info(
            "thread_queue_entry_completed queue_id=%s external_post_id=%s",
            entry.queue_id,
            external_post_id,
        )
        return "completed"

    def _fail(self, db: Session, entry: ThreadQueueEntry, *, error: str, permanent: bool) -> str:
        if record_failure(db, entry=entry, error=error, permanent=permanent):
            db.commit()
            record_queue_outcome("retried")
            logger.warning(
                "thread_queue_entry_requeued queue_id=%s retry_count=%s/%s error=%s",
                entry.queue_id,
                entry.retry_count,
                entry.max_retries,
                error,
            )
            return "retried"

        mark_thread_failed(db, parent_media_id=entry.parent_media_id, thread_sequence=entry.thread_sequence)
        db.add(
            FailedJob(
                job_type=FAILED_JOB_TYPE,
                payload={
                    "queue_id": entry.queue_id,
                    "parent_media_id": entry.parent_media_id,
                    "thread_sequence": entry.thread_sequence,
                    "retry_count": entry.retry_count,
                },
                error_message=error,
            )
        )
        db.commit()
        record_queue_outcome("failed")
        logger.error(
            "thread_queue_entry_failed queue_id=%s retry_count=%s error=%s",
            entry.queue_id,
            entry.retry_count,
            error,
        )
        return "failed"
