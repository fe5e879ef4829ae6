from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base, JSONType

DEFAULT_MAX_RETRIES = 3


class QueueStatus(StrEnum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ThreadQueueEntry(Base):
    __tablename__ = "thread_queue"
    __table_args__ = (
        UniqueConstraint("parent_media_id", "thread_sequence", name="uq_thread_queue_parent_sequence"),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_thread_queue_status_values",
        ),
        CheckConstraint("retry_count <= max_retries", name="ck_thread_queue_retry_bound"),
        Index("ix_thread_queue_status_created_at", "status", "created_at"),
        Index("ix_thread_queue_status_claimed_at", "status", "claimed_at"),
    )

    queue_id: Mapped[str] = mapped_column(String(300), primary_key=True)
    parent_media_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    thread_sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False, default="TEXT")
    social_id: Mapped[str] = mapped_column(String(255), nullable=False)
    # Fernet-encrypted; the queue is self-contained and never re-fetches tokens.
    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    reply_to_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=QueueStatus.PENDING.value)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), server_default=func.now(), nullable=False
    )
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_MAX_RETRIES)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
