import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.orm import Session

from app.application.services.retry_policy import RetryPolicy
from app.core.security import encrypt_secret
from app.domain.models.thread_queue_entry import DEFAULT_MAX_RETRIES, QueueStatus, ThreadQueueEntry
from app.domain.thread_chain import ChainItem, Credentials, MediaType

logger = logging.getLogger(__name__)

COMPLETED_RETENTION = timedelta(hours=24)
# Must exceed the processor lock TTL (300 s).
CLAIM_LEASE = timedelta(minutes=10)


def build_queue_id(parent_media_id: str, thread_sequence: int) -> str:
    return f"{parent_media_id}_{thread_sequence}"


def enqueue_thread_chain(
    db: Session,
    *,
    parent_media_id: str,
    items: Sequence[ChainItem],
    credentials: Credentials,
    user_id: str,
    first_thread_id: str,
    max_retries: int = DEFAULT_MAX_RETRIES,
) -> list[ThreadQueueEntry]:
    """Sequence 0 is already published and is written as ``completed``; replies point at the root."""
    if not parent_media_id:
        raise ValueError("parent_media_id is required to enqueue a thread chain")

    now = datetime.now(UTC)
    encrypted_token = encrypt_secret(credentials.access_token)
    entries: list[ThreadQueueEntry] = []
    for index, item in enumerate(items):
        is_root = index == 0
        entries.append(
            ThreadQueueEntry(
                queue_id=build_queue_id(parent_media_id, index),
                parent_media_id=parent_media_id,
                thread_sequence=index,
                content=item.content,
                media_urls=list(item.media_urls),
                media_type=MediaType(str(item.media_type).upper()).value,
                social_id=credentials.social_id,
                access_token=encrypted_token,
                user_id=user_id,
                reply_to_id=None if is_root else first_thread_id,
                status=QueueStatus.COMPLETED.value if is_root else QueueStatus.PENDING.value,
                created_at=now,
                processed_at=now if is_root else None,
                retry_count=0,
                max_retries=max_retries,
            )
        )
    db.add_all(entries)
    db.flush()
    logger.info(
        "thread_chain_enqueued parent_media_id=%s user_id=%s pending=%s",
        parent_media_id,
        user_id,
        max(0, len(entries) - 1),
    )
    return entries


def signal_queue_processing(countdown: float | None = None) -> None:
    from workers.tasks import process_thread_queue

    process_thread_queue.apply_async(countdown=countdown)
    logger.info("thread_queue_signalled countdown=%s", countdown)


def _claimable(now: datetime):
    return or_(
        ThreadQueueEntry.status == QueueStatus.PENDING.value,
        and_(
            ThreadQueueEntry.status == QueueStatus.PROCESSING.value,
            or_(ThreadQueueEntry.claimed_at.is_(None), ThreadQueueEntry.claimed_at < now - CLAIM_LEASE),
        ),
    )


def fetch_pending(db: Session, *, limit: int, now: datetime | None = None) -> list[ThreadQueueEntry]:
    return list(
        db.execute(
            select(ThreadQueueEntry)
            .where(_claimable(now or datetime.now(UTC)))
            .order_by(ThreadQueueEntry.created_at.asc(), ThreadQueueEntry.thread_sequence.asc())
            .limit(limit)
        ).scalars().all()
    )


def has_pending(db: Session, *, now: datetime | None = None) -> bool:
    return (
        db.execute(
            select(ThreadQueueEntry.queue_id).where(_claimable(now or datetime.now(UTC))).limit(1)
        ).scalar_one_or_none()
        is not None
    )


def claim_entry(db: Session, *, queue_id: str, now: datetime | None = None) -> bool:
    """Move one entry to ``processing``; False when another worker holds a live claim on it."""
    now = now or datetime.now(UTC)
    result = db.execute(
        update(ThreadQueueEntry)
        .where(ThreadQueueEntry.queue_id == queue_id, _claimable(now))
        .values(status=QueueStatus.PROCESSING.value, claimed_at=now)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def mark_completed(db: Session, *, entry: ThreadQueueEntry, now: datetime | None = None) -> None:
    entry.status = QueueStatus.COMPLETED.value
    entry.processed_at = now or datetime.now(UTC)
    entry.error = None


def record_failure(
    db: Session,
    *,
    entry: ThreadQueueEntry,
    error: str,
    permanent: bool = False,
    now: datetime | None = None,
) -> bool:
    """True when the entry went back to ``pending``, False when it is now ``failed``."""
    policy = RetryPolicy(max_attempts=entry.max_retries + 1)
    entry.error = error
    if not permanent and policy.allows_another_attempt(entry.retry_count + 1):
        entry.retry_count += 1
        entry.status = QueueStatus.PENDING.value
        return True

    entry.status = QueueStatus.FAILED.value
    entry.processed_at = now or datetime.now(UTC)
    return False


def cleanup_queue(db: Session, *, now: datetime | None = None) -> int:
    cutoff = (now or datetime.now(UTC)) - COMPLETED_RETENTION
    result = db.execute(
        delete(ThreadQueueEntry).where(
            ThreadQueueEntry.status == QueueStatus.COMPLETED.value,
            ThreadQueueEntry.processed_at.is_not(None),
            ThreadQueueEntry.processed_at < cutoff,
        )
    )
    removed = result.rowcount or 0
    logger.info("thread_queue_cleanup removed=%s cutoff=%s", removed, cutoff.isoformat())
    return removed


def get_queue_status(db: Session) -> dict[str, int]:
    counts = {status.value: 0 for status in QueueStatus}
    rows = db.execute(
        select(ThreadQueueEntry.status, func.count()).group_by(ThreadQueueEntry.status)
    ).all()
    for status, count in rows:
        counts[status] = int(count)
    counts["total"] = sum(counts[status.value] for status in QueueStatus)
    return counts
