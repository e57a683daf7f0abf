"""
models/session.py - SQLAlchemy ORM model for USSD dialog sessions.

Table: ussd_sessions

Concurrency:
  - uq_ussd_sessions_active_channel is a PARTIAL unique index on
    (phone_number, short_code) WHERE status = 'active'. It is the only guard
    for "one live dialog per channel"; no read-then-write check is trusted.
  - version is the optimistic lock: store.SqlSessionStore.save() updates
    WHERE version = <version read>, so a retransmitted turn matches zero rows.

Rows are never deleted: closed sessions stay for audit and analytics.
"""
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from ussdflow.database import Base, JSONType


class UssdSessionORM(Base):
    """
    ORM model for one dialog.

    variables: {name: value} collected by input nodes.
    inputs:    append-only list of {raw_input, node_id, step, timestamp}.
    """
    __tablename__ = "ussd_sessions"
    __table_args__ = (
        Index(
            "uq_ussd_sessions_active_channel",
            "phone_number",
            "short_code",
            unique=True,
            postgresql_where=text("status = 'active'"),
            sqlite_where=text("status = 'active'"),
        ),
        Index("ix_ussd_sessions_status_expires_at", "status", "expires_at"),
    )

    session_id: Mapped[str] = mapped_column(
        String(32),
        primary_key=True,
        comment="Opaque id handed to the gateway: sess_ + 16 url-safe chars",
    )
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    flow_version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        comment="Pinned at creation; later flow edits never reach this session",
    )
    phone_number: Mapped[str] = mapped_column(String(20), nullable=False)
    short_code: Mapped[str] = mapped_column(String(16), nullable=False)
    status: Mapped[str] = mapped_column(
        String(12),
        nullable=False,
        default="active",
        comment="active | completed | expired | terminated",
    )
    current_node_id: Mapped[str] = mapped_column(String(128), nullable=False)
    variables: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    inputs: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    step_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(
        Integer,
        nullable=False,
        default=1,
        comment="Optimistic-lock counter, bumped on every save",
    )
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    termination_reason: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
