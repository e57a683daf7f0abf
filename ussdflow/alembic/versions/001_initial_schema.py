"""initial_schema

Revision ID: 001_initial_schema
Revises:
Create Date: 2026-10-18 12:00:00.000000 UTC

Creates the three core tables:
  - flows           (immutable flow versions, JSONB definition)
  - ussd_sessions   (dialog state; partial unique index = one active session
                     per (phone_number, short_code); version = optimistic lock)
  - session_events  (engine-emitted analytics / audit events)
"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001_initial_schema"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # --- flows table ---
    op.create_table(
        "flows",
        sa.Column("flow_id", sa.String(length=64), nullable=False, comment="Operator-facing flow identifier"),
        sa.Column("version", sa.Integer(), nullable=False, comment="Monotonic per flow_id, starting at 1"),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("definition", postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment="Serialized FlowDefinition (nodes + edges)"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("flow_id", "version"),
    )

    # --- ussd_sessions table ---
    op.create_table(
        "ussd_sessions",
        sa.Column("session_id", sa.String(length=32), nullable=False, comment="Opaque id handed to the gateway: sess_ + 16 url-safe chars"),
        sa.Column("flow_id", sa.String(length=64), nullable=False),
        sa.Column("flow_version", sa.Integer(), nullable=False, comment="Pinned at creation; later flow edits never reach this session"),
        sa.Column("phone_number", sa.String(length=20), nullable=False),
        sa.Column("short_code", sa.String(length=16), nullable=False),
        sa.Column("status", sa.String(length=12), nullable=False, comment="active | completed | expired | terminated"),
        sa.Column("current_node_id", sa.String(length=128), nullable=False),
        sa.Column("variables", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("inputs", postgresql.JSONB(astext_type=sa.Text()), nullable=False),
        sa.Column("step_count", sa.Integer(), nullable=False),
        sa.Column("version", sa.Integer(), nullable=False, comment="Optimistic-lock counter, bumped on every save"),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("termination_reason", sa.String(length=255), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("session_id"),
    )
    op.create_index(op.f("ix_ussd_sessions_flow_id"), "ussd_sessions", ["flow_id"], unique=False)
    op.create_index(
        "ix_ussd_sessions_status_expires_at",
        "ussd_sessions",
        ["status", "expires_at"],
        unique=False,
    )
    op.create_index(
        "uq_ussd_sessions_active_channel",
        "ussd_sessions",
        ["phone_number", "short_code"],
        unique=True,
        postgresql_where=sa.text("status = 'active'"),
    )

    # --- session_events table ---
    op.create_table(
        "session_events",
        sa.Column("id", sa.String(length=36), nullable=False, comment="UUID row identifier"),
        sa.Column("session_id", sa.String(length=32), nullable=False, comment="Session identifier - groups events by dialog"),
        sa.Column("flow_id", sa.String(length=64), nullable=False),
        sa.Column("flow_version", sa.Integer(), nullable=False),
        sa.Column("event_type", sa.String(length=32), nullable=False, comment="EventType value"),
        sa.Column("node_id", sa.String(length=128), nullable=True),
        sa.Column("telco", sa.String(length=16), nullable=False),
        sa.Column("payload", postgresql.JSONB(astext_type=sa.Text()), nullable=False, comment="Structured event context. Must not contain raw input or phone numbers."),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(op.f("ix_session_events_session_id"), "session_events", ["session_id"], unique=False)
    op.create_index(op.f("ix_session_events_flow_id"), "session_events", ["flow_id"], unique=False)
    op.create_index(op.f("ix_session_events_event_type"), "session_events", ["event_type"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_session_events_event_type"), table_name="session_events")
    op.drop_index(op.f("ix_session_events_flow_id"), table_name="session_events")
    op.drop_index(op.f("ix_session_events_session_id"), table_name="session_events")
    op.drop_table("session_events")
    op.drop_index("uq_ussd_sessions_active_channel", table_name="ussd_sessions")
    op.drop_index("ix_ussd_sessions_status_expires_at", table_name="ussd_sessions")
    op.drop_index(op.f("ix_ussd_sessions_flow_id"), table_name="ussd_sessions")
    op.drop_table("ussd_sessions")
    op.drop_table("flows")
