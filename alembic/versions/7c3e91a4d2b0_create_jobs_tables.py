"""Create jobs and job_events tables.

Revision ID: 7c3e91a4d2b0
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision = "7c3e91a4d2b0"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
  """Upgrade schema."""
  op.create_table(
    "jobs",
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("job_kind", sa.String(), nullable=False),
    sa.Column("user_id", sa.String(), nullable=True),
    sa.Column("status", sa.String(), nullable=False),
    sa.Column("payload_json", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
    sa.Column("attempts", sa.Integer(), nullable=False, server_default=sa.text("0")),
    sa.Column("last_error", sa.Text(), nullable=True),
    sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=True),
    sa.Column("error", sa.Text(), nullable=True),
    sa.Column("result_summary", sa.Text(), nullable=True),
    sa.Column("result_json", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
    sa.Column("idempotency_key", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.Column("updated_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.CheckConstraint("status IN ('pending', 'running', 'completed', 'failed')", name="ck_jobs_status"),
    sa.PrimaryKeyConstraint("job_id"),
  )
  op.create_index(op.f("ix_jobs_job_kind"), "jobs", ["job_kind"], unique=False)
  op.create_index(op.f("ix_jobs_user_id"), "jobs", ["user_id"], unique=False)
  op.create_index("ix_jobs_status_next_run_at", "jobs", ["status", "next_run_at"], unique=False)
  op.create_index("ix_jobs_kind_idempotency_key", "jobs", ["job_kind", "idempotency_key"], unique=False)

  op.create_table(
    "job_events",
    sa.Column("id", sa.Integer(), autoincrement=True, nullable=False),
    sa.Column("job_id", sa.String(), nullable=False),
    sa.Column("event_type", sa.String(), nullable=False),
    sa.Column("message", sa.Text(), nullable=False),
    sa.Column("from_status", sa.String(), nullable=True),
    sa.Column("to_status", sa.String(), nullable=True),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.text("now()"), nullable=False),
    sa.ForeignKeyConstraint(["job_id"], ["jobs.job_id"], ondelete="CASCADE"),
    sa.PrimaryKeyConstraint("id"),
  )
  op.create_index(op.f("ix_job_events_job_id"), "job_events", ["job_id"], unique=False)
  op.create_index(op.f("ix_job_events_event_type"), "job_events", ["event_type"], unique=False)


def downgrade() -> None:
  """Downgrade schema."""
  op.drop_index(op.f("ix_job_events_event_type"), table_name="job_events")
  op.drop_index(op.f("ix_job_events_job_id"), table_name="job_events")
  op.drop_table("job_events")
  op.drop_index("ix_jobs_kind_idempotency_key", table_name="jobs")
  op.drop_index("ix_jobs_status_next_run_at", table_name="jobs")
  op.drop_index(op.f("ix_jobs_user_id"), table_name="jobs")
  op.drop_index(op.f("ix_jobs_job_kind"), table_name="jobs")
  op.drop_table("jobs")
