"""claim timestamps for queue entries and scheduled chains

Revision ID: 0002_claim_leases
Revises: 0001_thread_chain_pipeline
Create Date: 2026-10-26 00:00:00
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = "0002_claim_leases"
down_revision = "0001_thread_chain_pipeline"
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.add_column("thread_queue", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("my_contents", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))
    op.create_index("ix_thread_queue_status_claimed_at", "thread_queue", ["status", "claimed_at"], unique=False)


def downgrade() -> None:
    op.drop_index("ix_thread_queue_status_claimed_at", table_name="thread_queue")
    op.drop_column("my_contents", "claimed_at")
    op.drop_column("thread_queue", "claimed_at")
