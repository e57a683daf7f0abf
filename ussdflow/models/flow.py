"""
models/flow.py - SQLAlchemy ORM model for published flow versions.

Table: flows
One row per (flow_id, version). Rows are insert-only: a later edit is a new
version, so sessions pinned to an older version never observe it.
"""
from datetime import datetime, timezone

from sqlalchemy import DateTime, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from ussdflow.database import Base, JSONType


class FlowORM(Base):
    """
    ORM model for one immutable flow version.

    definition: the full FlowDefinition (nodes + edges) as JSON, parsed back
                through engine.validator.parse_flow on read.
    """
    __tablename__ = "flows"

    flow_id: Mapped[str] = mapped_column(
        String(64),
        primary_key=True,
        comment="Operator-facing flow identifier",
    )
    version: Mapped[int] = mapped_column(
        Integer,
        primary_key=True,
        comment="Monotonic per flow_id, starting at 1",
    )
    name: Mapped[str] = mapped_column(
        String(255),
        nullable=False,
        default="",
    )
    definition: Mapped[dict] = mapped_column(
        JSONType,
        nullable=False,
        comment="Serialized FlowDefinition (nodes + edges)",
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        nullable=False,
    )
