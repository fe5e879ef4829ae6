import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from uuid import uuid4

from sqlalchemy import and_, delete, or_, select, update
from sqlalchemy.orm import Session

from app.domain.models.content_record import ContentRecord, PublishStatus
from app.domain.thread_chain import ChainItem, MediaType

logger = logging.getLogger(__name__)

SCHEDULED_PARENT_PREFIX = "scheduled_parent_"
DUE_CHAIN_SCAN_LIMIT = 100
SCHEDULED_CLAIM_LEASE = timedelta(minutes=10)


def _media_type_value(item: ChainItem) -> str:
    return MediaType(str(item.media_type).upper()).value


def save_thread_chain(
    db: Session,
    *,
    items: Sequence[ChainItem],
    thread_ids: Sequence[str | None],
    statuses: Sequence[PublishStatus | str],
    parent_thread_id: str,
    user_id: str,
    social_id: str | None,
    is_thread_chain: bool = True,
    scheduled_at: datetime | None = None,
) -> list[ContentRecord]:
    if not (len(items) == len(thread_ids) == len(statuses)):
        raise ValueError("items, thread_ids and statuses must have the same length")

    records = [
        ContentRecord(
            user_id=user_id,
            social_id=social_id,
            content=item.content,
            media_urls=list(item.media_urls),
            media_type=_media_type_value(item),
            publish_status=str(status),
            media_id=thread_id,
            parent_media_id=parent_thread_id,
            thread_sequence=index,
            is_thread_chain=is_thread_chain,
            scheduled_at=scheduled_at,
        )
        for index, (item, thread_id, status) in enumerate(zip(items, thread_ids, statuses))
    ]
    db.add_all(records)
    db.flush()
    logger.info(
        "thread_chain_saved parent_media_id=%s user_id=%s items=%s",
        parent_thread_id,
        user_id,
        len(records),
    )
    return records


def mark_thread_posted(db: Session, *, parent_media_id: str, thread_sequence: int, media_id: str) -> int:
    result = db.execute(
        update(ContentRecord)
        .where(
            ContentRecord.parent_media_id == parent_media_id,
            ContentRecord.thread_sequence == thread_sequence,
        )
        .values(publish_status=PublishStatus.POSTED.value, media_id=media_id)
    )
    return result.rowcount or 0


def mark_thread_failed(db: Session, *, parent_media_id: str, thread_sequence: int) -> int:
    result = db.execute(
        update(ContentRecord)
        .where(
            ContentRecord.parent_media_id == parent_media_id,
            ContentRecord.thread_sequence == thread_sequence,
        )
        .values(publish_status=PublishStatus.FAILED.value)
    )
    return result.rowcount or 0


def schedule_thread_chain(
    db: Session,
    *,
    items: Sequence[ChainItem],
    scheduled_at: datetime,
    user_id: str,
    social_id: str | None,
) -> tuple[str, list[ContentRecord]]:
    placeholder_parent_id = f"{SCHEDULED_PARENT_PREFIX}{uuid4().hex}"
    records = save_thread_chain(
        db,
        items=items,
        thread_ids=[None] * len(items),
        statuses=[PublishStatus.SCHEDULED] * len(items),
        parent_thread_id=placeholder_parent_id,
        user_id=user_id,
        social_id=social_id,
        is_thread_chain=len(items) > 1,
        scheduled_at=scheduled_at,
    )
    return placeholder_parent_id, records


def _due_or_abandoned(now: datetime):
    return or_(
        and_(
            ContentRecord.publish_status == PublishStatus.SCHEDULED.value,
            ContentRecord.scheduled_at.is_not(None),
            ContentRecord.scheduled_at <= now,
        ),
        and_(
            ContentRecord.publish_status == PublishStatus.READY_TO_PUBLISH.value,
            or_(ContentRecord.claimed_at.is_(None), ContentRecord.claimed_at < now - SCHEDULED_CLAIM_LEASE),
        ),
    )


def claim_due_scheduled_chains(db: Session, *, now: datetime) -> dict[str, list[ContentRecord]]:
    """Flip due (or abandoned) scheduled chains to ``ready_to_publish``, keyed by placeholder id."""
    parent_ids = db.execute(
        select(ContentRecord.parent_media_id)
        .where(
            _due_or_abandoned(now),
            ContentRecord.parent_media_id.like(f"{SCHEDULED_PARENT_PREFIX}%"),
        )
        .distinct()
        .limit(DUE_CHAIN_SCAN_LIMIT)
    ).scalars().all()

    claimed: dict[str, list[ContentRecord]] = {}
    for parent_id in parent_ids:
        result = db.execute(
            update(ContentRecord)
            .where(ContentRecord.parent_media_id == parent_id, _due_or_abandoned(now))
            .values(publish_status=PublishStatus.READY_TO_PUBLISH.value, claimed_at=now)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            continue
        claimed[parent_id] = list(
            db.execute(
                select(ContentRecord)
                .where(ContentRecord.parent_media_id == parent_id)
                .order_by(ContentRecord.thread_sequence.asc())
                .execution_options(populate_existing=True)
            ).scalars().all()
        )
    return claimed


def fail_scheduled_chain(db: Session, *, placeholder_parent_id: str) -> int:
    result = db.execute(
        update(ContentRecord)
        .where(ContentRecord.parent_media_id == placeholder_parent_id)
        .values(publish_status=PublishStatus.FAILED.value)
    )
    return result.rowcount or 0


def replace_chain_records(db: Session, *, placeholder_parent_id: str) -> int:
    result = db.execute(delete(ContentRecord).where(ContentRecord.parent_media_id == placeholder_parent_id))
    return result.rowcount or 0


def chain_items_from_records(records: Sequence[ContentRecord]) -> list[ChainItem]:
    return [
        ChainItem(
            content=record.content,
            media_type=record.media_type,
            media_urls=list(record.media_urls or []),
            sequence=index,
        )
        for index, record in enumerate(sorted(records, key=lambda row: row.thread_sequence))
    ]


def serialize_content_record(record: ContentRecord) -> dict:
    return {
        "id": str(record.id),
        "content": record.content,
        "media_urls": list(record.media_urls or []),
        "media_type": record.media_type,
        "publish_status": record.publish_status,
        "media_id": record.media_id,
        "parent_media_id": record.parent_media_id,
        "thread_sequence": record.thread_sequence,
        "is_thread_chain": record.is_thread_chain,
        "scheduled_at": record.scheduled_at.isoformat() if record.scheduled_at else None,
        "created_at": record.created_at.isoformat() if record.created_at else None,
    }


def list_thread_chains(db: Session, *, user_id: str, social_id: str | None = None) -> dict[str, list[dict]]:
    query = select(ContentRecord).where(
        ContentRecord.user_id == user_id,
        ContentRecord.is_thread_chain.is_(True),
    )
    if social_id:
        query = query.where(ContentRecord.social_id == social_id)
    rows = db.execute(
        query.order_by(ContentRecord.parent_media_id.asc(), ContentRecord.thread_sequence.asc())
    ).scalars().all()

    chains: dict[str, list[dict]] = {}
    for row in rows:
        chains.setdefault(row.parent_media_id or "", []).append(serialize_content_record(row))
    return chains
