import uuid
from datetime import UTC, datetime
from enum import StrEnum

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, Uuid, func
from sqlalchemy.orm import Mapped, mapped_column

from app.infrastructure.db.base import Base, JSONType


class PublishStatus(StrEnum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    POSTED = "posted"
    FAILED = "failed"
    READY_TO_PUBLISH = "ready_to_publish"


class ContentRecord(Base):
    __tablename__ = "my_contents"
    __table_args__ = (
        CheckConstraint(
            "publish_status IN ('draft', 'scheduled', 'posted', 'failed', 'ready_to_publish')",
            name="ck_my_contents_publish_status_values",
        ),
        CheckConstraint(
            "media_type IN ('TEXT', 'IMAGE', 'VIDEO', 'CAROUSEL')",
            name="ck_my_contents_media_type_values",
        ),
        Index("ix_my_contents_parent_sequence", "parent_media_id", "thread_sequence"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    social_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    content: Mapped[str] = mapped_column(Text, nullable=False)
    media_urls: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    media_type: Mapped[str] = mapped_column(String(16), nullable=False, default="TEXT")
    publish_status: Mapped[str] = mapped_column(String(32), nullable=False, default=PublishStatus.DRAFT.value)
    media_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    parent_media_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    thread_sequence: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_thread_chain: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    scheduled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    claimed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(UTC), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(UTC),
        server_default=func.now(),
        onupdate=lambda: datetime.now(UTC),
        nullable=False,
    )
