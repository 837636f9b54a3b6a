"""Create session record storage."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "session_records",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("record_json", sa.Text(), nullable=False),
        sa.Column("active_task_id", sa.String(), nullable=True),
        sa.Column("last_heartbeat", sa.DateTime(timezone=True), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(
        "ix_session_records_active_task_id",
        "session_records",
        ["active_task_id"],
    )
    op.create_index(
        "idx_session_records_heartbeat",
        "session_records",
        ["last_heartbeat"],
    )


def downgrade() -> None:
    op.drop_index("idx_session_records_heartbeat", table_name="session_records")
    op.drop_index("ix_session_records_active_task_id", table_name="session_records")
    op.drop_table("session_records")
