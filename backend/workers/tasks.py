import asyncio
import logging
from datetime import UTC, datetime
from time import perf_counter

from app.application.services.content_store_service import (
    chain_items_from_records,
    claim_due_scheduled_chains,
    fail_scheduled_chain,
)
from app.application.services.thread_chain_service import (
    ThreadChainService,
    ThreadsAccountNotFound,
    load_threads_credentials,
)
from app.application.services.thread_queue_processor import ThreadQueueProcessor
from app.application.services.thread_queue_service import cleanup_queue
from app.core.config import settings
from app.domain.models.failed_job import FailedJob
from app.domain.thread_chain import AutomatedContext, ChainItem, ChainValidationError
from app.infrastructure.cache.redis_client import get_redis_client
from app.infrastructure.cache.redis_lock import RedisSingleFlightLock
from app.infrastructure.db.session import SessionLocal
from app.infrastructure.observability.metrics import measure_redis
from app.integrations.threads.publisher import ThreadsPublisher
from workers.celery_app import celery_app

logger = logging.getLogger(__name__)

PROCESSOR_LOCK_KEY = "lock:thread_queue:processor"
PROCESSOR_LOCK_TTL_SECONDS = 300
SCHEDULED_CHAIN_JOB_TYPE = "scheduled_thread_chain"


@celery_app.task(name="workers.tasks.worker_heartbeat")
def worker_heartbeat() -> dict:
    redis_client = get_redis_client()
    now = datetime.now(UTC).isoformat()
    with measure_redis("worker_heartbeat_set"):
        redis_client.set(
            settings.worker_heartbeat_key,
            now,
            ex=max(15, settings.worker_heartbeat_ttl_seconds),
        )
    return {"heartbeat_at": now}


@celery_app.task(name="workers.tasks.process_thread_queue")
def process_thread_queue() -> dict:
    guard = RedisSingleFlightLock(
        get_redis_client(),
        key=PROCESSOR_LOCK_KEY,
        ttl_seconds=PROCESSOR_LOCK_TTL_SECONDS,
    )
    processor = ThreadQueueProcessor(SessionLocal, ThreadsPublisher(), guard=guard)
    return asyncio.run(processor.process_queue())


@celery_app.task(name="workers.tasks.cleanup_thread_queue")
def cleanup_thread_queue() -> dict:
    with SessionLocal() as db:
        removed = cleanup_queue(db)
        db.commit()
    return {"removed": removed}


def _mark_scheduled_chain_failed(db, *, placeholder_parent_id: str, user_id: str, error: str) -> None:
    fail_scheduled_chain(db, placeholder_parent_id=placeholder_parent_id)
    db.add(
        FailedJob(
            job_type=SCHEDULED_CHAIN_JOB_TYPE,
            payload={"placeholder_parent_id": placeholder_parent_id, "user_id": user_id},
            error_message=error,
        )
    )
    db.commit()
    logger.error(
        "scheduled_thread_chain_failed placeholder_parent_id=%s user_id=%s error=%s",
        placeholder_parent_id,
        user_id,
        error,
    )


async def _publish_scheduled_chain(
    *,
    placeholder_parent_id: str,
    user_id: str,
    social_id: str | None,
    items: list[ChainItem],
) -> bool:
    with SessionLocal() as db:
        try:
            credentials = load_threads_credentials(db, user_id=user_id, social_id=social_id)
        except ThreadsAccountNotFound as exc:
            _mark_scheduled_chain_failed(db, placeholder_parent_id=placeholder_parent_id, user_id=user_id, error=str(exc))
            return False

        service = ThreadChainService(db, ThreadsPublisher())
        context = AutomatedContext(
            user_id=user_id,
            credentials=credentials,
            placeholder_parent_id=placeholder_parent_id,
        )
        try:
            result = await service.post_chain(items, context)
        except ChainValidationError as exc:
            db.rollback()
            _mark_scheduled_chain_failed(db, placeholder_parent_id=placeholder_parent_id, user_id=user_id, error=str(exc))
            return False

        if not result.success:
            db.rollback()
            _mark_scheduled_chain_failed(
                db,
                placeholder_parent_id=placeholder_parent_id,
                user_id=user_id,
                error=result.error or "Threads publish failed",
            )
            return False

        logger.info(
            "scheduled_thread_chain_published placeholder_parent_id=%s parent_media_id=%s items=%s",
            placeholder_parent_id,
            result.parent_thread_id,
            len(items),
        )
        return True


async def _publish_due_chains(due_chains: dict[str, tuple[str, str | None, list[ChainItem]]]) -> tuple[int, int]:
    published = 0
    failed = 0
    for placeholder_parent_id, (user_id, social_id, items) in due_chains.items():
        try:
            ok = await _publish_scheduled_chain(
                placeholder_parent_id=placeholder_parent_id,
                user_id=user_id,
                social_id=social_id,
                items=items,
            )
        except Exception as exc:
            logger.exception("scheduled_thread_chain_error placeholder_parent_id=%s", placeholder_parent_id)
            with SessionLocal() as db:
                _mark_scheduled_chain_failed(
                    db,
                    placeholder_parent_id=placeholder_parent_id,
                    user_id=user_id,
                    error=str(exc) or exc.__class__.__name__,
                )
            ok = False
        if ok:
            published += 1
        else:
            failed += 1
    return published, failed


@celery_app.task(name="workers.tasks.publish_due_thread_chains")
def publish_due_thread_chains() -> dict:
    started_at = perf_counter()
    now = datetime.now(UTC)
    with SessionLocal() as db:
        claimed = claim_due_scheduled_chains(db, now=now)
        db.commit()
        due_chains = {
            placeholder_parent_id: (records[0].user_id, records[0].social_id, chain_items_from_records(records))
            for placeholder_parent_id, records in claimed.items()
            if records
        }

    if not due_chains:
        return {"claimed": 0, "published": 0, "failed": 0}

    published, failed = asyncio.run(_publish_due_chains(due_chains))
    logger.info(
        "scheduled_thread_chains_processed claimed=%s published=%s failed=%s duration_ms=%s",
        len(due_chains),
        published,
        failed,
        int((perf_counter() - started_at) * 1000),
    )
    return {"claimed": len(due_chains), "published": published, "failed": failed}
