"""
models/session_event.py - SQLAlchemy ORM for engine-emitted session events.

Table: session_events
One row per SessionEvent (session_started, input_received, node_visited,
invalid_input, flow_error, session_completed, session_terminated,
session_expired). Consumed by the analytics collaborator and by
GET /api/sessions/{session_id}/events.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ussdflow.database import Base, JSONType


class SessionEventORM(Base):
    """
    ORM model for a single session event.

    payload: structured context, e.g. {"step": 3, "input_length": 1}.
             Must NOT contain raw user input or phone numbers.
    """
    __tablename__ = "session_events"

    id: Mapped[str] = mapped_column(
        String(36),
        primary_key=True,
        default=lambda: str(uuid.uuid4()),
        comment="UUID row identifier",
    )
    session_id: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        comment="Session identifier - groups events by dialog",
    )
    flow_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    flow_version: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[str] = mapped_column(
        String(32),
        nullable=False,
        index=True,
        comment="EventType value",
    )
    node_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    telco: Mapped[str] = mapped_column(String(16), nullable=False, default="unknown")
    payload: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        default=dict,
        comment="Structured event context. Must not contain raw input or phone numbers.",
    )
    occurred_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
