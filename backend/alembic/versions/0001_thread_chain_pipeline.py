"""thread chain publishing tables

Revision ID: 0001_thread_chain_pipeline
Revises:
Create Date: 2026-10-19 00:00:00
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = "0001_thread_chain_pipeline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "social_accounts",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False, server_default="threads"),
        sa.Column("social_id", sa.String(length=255), nullable=False),
        sa.Column("display_name", sa.String(length=255), nullable=True),
        sa.Column("access_token", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("user_id", "platform", "social_id", name="uq_social_accounts_user_platform_social"),
    )
    op.create_index("ix_social_accounts_user_id", "social_accounts", ["user_id"], unique=False)
    op.create_index("ix_social_accounts_platform", "social_accounts", ["platform"], unique=False)

    op.create_table(
        "my_contents",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("social_id", sa.String(length=255), nullable=True),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media_urls", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("media_type", sa.String(length=16), nullable=False, server_default="TEXT"),
        sa.Column("publish_status", sa.String(length=32), nullable=False, server_default="draft"),
        sa.Column("media_id", sa.String(length=255), nullable=True),
        sa.Column("parent_media_id", sa.String(length=255), nullable=True),
        sa.Column("thread_sequence", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_thread_chain", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("scheduled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_check_constraint(
        "ck_my_contents_publish_status_values",
        "my_contents",
        "publish_status IN ('draft', 'scheduled', 'posted', 'failed', 'ready_to_publish')",
    )
    op.create_check_constraint(
        "ck_my_contents_media_type_values",
        "my_contents",
        "media_type IN ('TEXT', 'IMAGE', 'VIDEO', 'CAROUSEL')",
    )
    op.create_index("ix_my_contents_user_id", "my_contents", ["user_id"], unique=False)
    op.create_index("ix_my_contents_social_id", "my_contents", ["social_id"], unique=False)
    op.create_index("ix_my_contents_scheduled_at", "my_contents", ["scheduled_at"], unique=False)
    op.create_index("ix_my_contents_parent_sequence", "my_contents", ["parent_media_id", "thread_sequence"], unique=False)

    op.create_table(
        "thread_queue",
        sa.Column("queue_id", sa.String(length=300), nullable=False),
        sa.Column("parent_media_id", sa.String(length=255), nullable=False),
        sa.Column("thread_sequence", sa.Integer(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("media_urls", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="[]"),
        sa.Column("media_type", sa.String(length=16), nullable=False, server_default="TEXT"),
        sa.Column("social_id", sa.String(length=255), nullable=False),
        sa.Column("access_token", sa.Text(), nullable=False),
        sa.Column("user_id", sa.String(length=255), nullable=False),
        sa.Column("reply_to_id", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=16), nullable=False, server_default="pending"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_retries", sa.Integer(), nullable=False, server_default="3"),
        sa.Column("error", sa.Text(), nullable=True),
        sa.PrimaryKeyConstraint("queue_id"),
        sa.UniqueConstraint("parent_media_id", "thread_sequence", name="uq_thread_queue_parent_sequence"),
    )
    op.create_check_constraint(
        "ck_thread_queue_status_values",
        "thread_queue",
        "status IN ('pending', 'processing', 'completed', 'failed')",
    )
    op.create_check_constraint("ck_thread_queue_retry_bound", "thread_queue", "retry_count <= max_retries")
    op.create_index("ix_thread_queue_parent_media_id", "thread_queue", ["parent_media_id"], unique=False)
    op.create_index("ix_thread_queue_user_id", "thread_queue", ["user_id"], unique=False)
    op.create_index("ix_thread_queue_status_created_at", "thread_queue", ["status", "created_at"], unique=False)

    op.create_table(
        "failed_jobs",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("job_type", sa.String(length=64), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, server_default="{}"),
        sa.Column("error_message", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("now()")),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_failed_jobs_job_type", "failed_jobs", ["job_type"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_failed_jobs_job_type", table_name="failed_jobs")
    op.drop_table("failed_jobs")

    op.drop_index("ix_thread_queue_status_created_at", table_name="thread_queue")
    op.drop_index("ix_thread_queue_user_id", table_name="thread_queue")
    op.drop_index("ix_thread_queue_parent_media_id", table_name="thread_queue")
    op.drop_table("thread_queue")

    op.drop_index("ix_my_contents_parent_sequence", table_name="my_contents")
    op.drop_index("ix_my_contents_scheduled_at", table_name="my_contents")
    op.drop_index("ix_my_contents_social_id", table_name="my_contents")
    op.drop_index("ix_my_contents_user_id", table_name="my_contents")
    op.drop_table("my_contents")

    op.drop_index("ix_social_accounts_platform", table_name="social_accounts")
    op.drop_index("ix_social_accounts_user_id", table_name="social_accounts")
    op.drop_table("social_accounts")
