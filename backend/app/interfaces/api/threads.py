import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends, HTTPException, Query, status
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.application.services.content_store_service import (
    list_thread_chains,
    schedule_thread_chain,
    serialize_content_record,
)
from app.application.services.thread_chain_service import (
    ThreadChainService,
    ThreadsAccountNotFound,
    load_threads_credentials,
)
from app.application.services.thread_queue_service import cleanup_queue, get_queue_status, signal_queue_processing
from app.domain.thread_chain import InteractiveContext, ReplyWiring, build_chain
from app.infrastructure.db.session import get_db
from app.interfaces.api.deps import get_current_user_id, get_thread_chain_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/threads", tags=["threads"])


class ChainItemPayload(BaseModel):
    content: str = ""
    media_type: str = "TEXT"
    media_urls: list[str] = Field(default_factory=list)


class PostChainRequest(BaseModel):
    items: list[ChainItemPayload]
    social_id: str | None = None
    reply_wiring: ReplyWiring = ReplyWiring.ROOT


class ScheduleChainRequest(BaseModel):
    items: list[ChainItemPayload]
    scheduled_at: datetime
    social_id: str | None = None


def _resolve_credentials(db: Session, *, user_id: str, social_id: str | None):
    try:
        return load_threads_credentials(db, user_id=user_id, social_id=social_id)
    except ThreadsAccountNotFound as exc:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error_code": "threads_account_not_found", "message": str(exc)},
        ) from exc


@router.post("/chains", status_code=status.HTTP_200_OK)
def post_thread_chain(
    payload: PostChainRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    service: ThreadChainService = Depends(get_thread_chain_service),
) -> dict:
    credentials = _resolve_credentials(db, user_id=user_id, social_id=payload.social_id)
    items = build_chain([item.model_dump() for item in payload.items])
    context = InteractiveContext(user_id=user_id, credentials=credentials, reply_wiring=payload.reply_wiring)

    # Sync route: it runs in the threadpool, so the chain gets its own event loop.
    result = asyncio.run(service.post_chain(items, context))
    if not result.success:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error_code": "threads_publish_failed", "message": result.error or "Threads publish failed"},
        )
    return result.to_dict()


@router.post("/chains/schedule", status_code=status.HTTP_201_CREATED)
def schedule_chain(
    payload: ScheduleChainRequest,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    credentials = _resolve_credentials(db, user_id=user_id, social_id=payload.social_id)
    items = build_chain([item.model_dump() for item in payload.items])
    if not items:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error_code": "invalid_thread_chain", "message": "Thread chain must contain at least one item"},
        )
    for item in items:
        item.validate()

    scheduled_at = payload.scheduled_at
    if scheduled_at.tzinfo is None:
        scheduled_at = scheduled_at.replace(tzinfo=UTC)

    placeholder_parent_id, records = schedule_thread_chain(
        db,
        items=items,
        scheduled_at=scheduled_at,
        user_id=user_id,
        social_id=credentials.social_id,
    )
    db.commit()
    logger.info(
        "thread_chain_scheduled placeholder_parent_id=%s user_id=%s scheduled_at=%s",
        placeholder_parent_id,
        user_id,
        scheduled_at.isoformat(),
    )
    return {
        "placeholder_parent_id": placeholder_parent_id,
        "scheduled_at": scheduled_at.isoformat(),
        "items": [serialize_content_record(record) for record in records],
    }


@router.get("/chains")
def get_thread_chains(
    social_id: str | None = Query(default=None),
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return {"chains": list_thread_chains(db, user_id=user_id, social_id=social_id)}


@router.post("/queue", status_code=status.HTTP_202_ACCEPTED)
def trigger_queue_processing(user_id: str = Depends(get_current_user_id)) -> dict:
    signal_queue_processing()
    logger.info("thread_queue_trigger_requested user_id=%s", user_id)
    return {"status": "queued"}


@router.get("/queue")
def queue_status(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return get_queue_status(db)


def _run_cleanup(db: Session) -> dict:
    removed = cleanup_queue(db)
    db.commit()
    return {"removed": removed}


@router.delete("/queue")
def delete_completed_queue_entries(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return _run_cleanup(db)


@router.get("/queue/cleanup")
def cleanup_completed_queue_entries(
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> dict:
    return _run_cleanup(db)
