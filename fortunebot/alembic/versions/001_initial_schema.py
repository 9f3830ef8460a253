"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-01 00:00:00.000000 UTC

Creates the five fortunebot tables:
  reading_sessions   one row per LINE user, mutated only by conditional UPDATEs
  generated_results  append-only generated readings
  session_events     append-only audit history (PII-free payloads)
  followup_jobs      delayed reminder / redelivery pushes
  credit_topups      one row per applied payment event id
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        "reading_sessions",
        sa.Column("user_id", sa.String(64), nullable=False, comment="LINE userId, stable per provider"),
        sa.Column(
            "phase",
            sa.String(32),
            nullable=False,
            comment="awaiting_profile | profile_complete | awaiting_concern | offer_shown | closed",
        ),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("profile", postgresql.JSONB(), nullable=True),
        sa.Column("concern", sa.Text(), nullable=True),
        sa.Column("credit_balance", sa.Integer(), nullable=False),
        sa.Column("input_error_count", sa.Integer(), nullable=False),
        sa.Column("session_closed", sa.Boolean(), nullable=False),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_message_id", sa.String(64), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("user_id"),
        sa.CheckConstraint("credit_balance >= 0", name="ck_reading_sessions_credit_balance"),
    )

    op.create_table(
        "generated_results",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("prompt_inputs", postgresql.JSONB(), nullable=False),
        sa.Column("output_text", sa.Text(), nullable=False),
        sa.Column("model", sa.String(64), nullable=False),
        sa.Column("usage", postgresql.JSONB(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_generated_results_user_id", "generated_results", ["user_id"])

    op.create_table(
        "session_events",
        sa.Column("id", sa.String(36), nullable=False, comment="UUID row identifier"),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column(
            "message_id",
            sa.String(64),
            nullable=True,
            comment="LINE message id of the inbound event, NULL for external events",
        ),
        sa.Column("event_type", sa.String(32), nullable=False),
        sa.Column("phase_before", sa.String(32), nullable=True),
        sa.Column("phase_after", sa.String(32), nullable=True),
        sa.Column(
            "payload",
            postgresql.JSONB(),
            nullable=False,
            comment="Structured event context. Must not contain names or birth data.",
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_session_events_user_id", "session_events", ["user_id"])

    op.create_table(
        "followup_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("messages", postgresql.JSONB(), nullable=False),
        sa.Column("required_phase", sa.String(32), nullable=True),
        sa.Column("run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_followup_jobs_user_id", "followup_jobs", ["user_id"])
    op.create_index("ix_followup_jobs_run_at", "followup_jobs", ["run_at"])
    op.create_index("ix_followup_jobs_status", "followup_jobs", ["status"])

    op.create_table(
        "credit_topups",
        sa.Column("reference", sa.String(255), nullable=False, comment="Payment provider event id"),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("reference"),
    )
    op.create_index("ix_credit_topups_user_id", "credit_topups", ["user_id"])


def downgrade() -> None:
    op.drop_index("ix_credit_topups_user_id", table_name="credit_topups")
    op.drop_table("credit_topups")
    op.drop_index("ix_followup_jobs_status", table_name="followup_jobs")
    op.drop_index("ix_followup_jobs_run_at", table_name="followup_jobs")
    op.drop_index("ix_followup_jobs_user_id", table_name="followup_jobs")
    op.drop_table("followup_jobs")
    op.drop_index("ix_session_events_user_id", table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("ix_generated_results_user_id", table_name="generated_results")
    op.drop_table("generated_results")
    op.drop_table("reading_sessions")
