"""
store.py - SQL implementations of the engine contracts.

SqlSessionStore, SqlFlowStore and SqlEventSink satisfy
engine.contracts.SessionStore / FlowStore / EventSink on top of one
request-scoped AsyncSession. The engine never touches SQLAlchemy directly.

Design principles:
  - All methods are async and share the AsyncSession they were built with
  - flush() not commit(): the get_db() dependency (or the sweep job) owns the
    transaction boundary
  - One active session per channel is the partial unique index
    uq_ussd_sessions_active_channel; an IntegrityError on insert becomes
    ConflictingActiveSession
  - save() is a single UPDATE ... WHERE version = :expected; zero rows means
    another request won the race (ConcurrentModification)
  - Inserts that may fail, and event writes, run inside SAVEPOINTs so a
    failure never poisons the surrounding dialog transaction
  - Logs only session_id / flow_id - never phone numbers or raw input
  - Returns engine Pydantic objects (not ORM instances)
"""
import logging
from datetime import datetime, timezone
from typing import Optional

import redis.asyncio as aioredis
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ussdflow import cache
from ussdflow.engine.errors import (
    ConcurrentModification,
    ConflictingActiveSession,
    SessionNotFound,
)
from ussdflow.engine.events import EventType, SessionEvent
from ussdflow.engine.schemas import FlowDefinition, Session, SessionStatus
from ussdflow.engine.validator import ensure_valid_flow, parse_flow
from ussdflow.models.flow import FlowORM
from ussdflow.models.session import UssdSessionORM
from ussdflow.models.session_event import SessionEventORM

logger = logging.getLogger(__name__)

_PUBLISH_ATTEMPTS = 3


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Session store
# ---------------------------------------------------------------------------

def _session_to_domain(orm: UssdSessionORM) -> Session:
    return Session(
        session_id=orm.session_id,
        flow_id=orm.flow_id,
        flow_version=orm.flow_version,
        phone_number=orm.phone_number,
        short_code=orm.short_code,
        status=SessionStatus(orm.status),
        current_node_id=orm.current_node_id,
        variables=dict(orm.variables or {}),
        inputs=list(orm.inputs or []),
        step_count=orm.step_count,
        version=orm.version,
        started_at=_aware(orm.started_at),
        last_activity_at=_aware(orm.last_activity_at),
        expires_at=_aware(orm.expires_at),
        completed_at=_aware(orm.completed_at),
        termination_reason=orm.termination_reason,
    )


def _mutable_columns(session: Session) -> dict:
    """Columns a save() may change. Identity and channel never move."""
    return {
        "status": session.status.value,
        "current_node_id": session.current_node_id,
        "variables": dict(session.variables),
        "inputs": [record.model_dump(mode="json") for record in session.inputs],
        "step_count": session.step_count,
        "last_activity_at": session.last_activity_at,
        "expires_at": session.expires_at,
        "completed_at": session.completed_at,
        "termination_reason": session.termination_reason,
    }


class SqlSessionStore:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def get(self, session_id: str) -> Optional[Session]:
        result = await self.db.execute(
            select(UssdSessionORM)
            .where(UssdSessionORM.session_id == session_id)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return _session_to_domain(orm) if orm is not None else None

    async def get_by_channel(
        self, phone_number: str, short_code: str, status: str = "active"
    ) -> Optional[Session]:
        result = await self.db.execute(
            select(UssdSessionORM)
            .where(
                UssdSessionORM.phone_number == phone_number,
                UssdSessionORM.short_code == short_code,
                UssdSessionORM.status == status,
            )
            .order_by(UssdSessionORM.started_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        orm = result.scalar_one_or_none()
        return _session_to_domain(orm) if orm is not None else None

    async def create(self, session: Session) -> Session:
        """
        Insert a new session at version 1.

        Raises ConflictingActiveSession when the partial unique index rejects a
        second active row on the same (phone_number, short_code).
        """
        orm = UssdSessionORM(
            session_id=session.session_id,
            flow_id=session.flow_id,
            flow_version=session.flow_version,
            phone_number=session.phone_number,
            short_code=session.short_code,
            started_at=session.started_at,
            version=1,
            **_mutable_columns(session),
        )
        try:
            async with self.db.begin_nested():
                self.db.add(orm)
                await self.db.flush()
        except IntegrityError as exc:
            if session.is_active:
                logger.info(
                    "Active session conflict short_code=%s session_id=%s",
                    session.short_code, session.session_id,
                )
                raise ConflictingActiveSession(session.phone_number, session.short_code) from exc
            raise
        logger.info("Saved session session_id=%s flow_id=%s", session.session_id, session.flow_id)
        return session.model_copy(deep=True, update={"version": 1})

    async def save(self, session: Session, expected_version: int) -> Session:
        result = await self.db.execute(
            update(UssdSessionORM)
            .where(
                UssdSessionORM.session_id == session.session_id,
                UssdSessionORM.version == expected_version,
            )
            .values(version=expected_version + 1, **_mutable_columns(session))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            exists = await self.db.scalar(
                select(func.count())
                .select_from(UssdSessionORM)
                .where(UssdSessionORM.session_id == session.session_id)
            )
            if not exists:
                raise SessionNotFound(f"Session '{session.session_id}' not found")
            raise ConcurrentModification(session.session_id, expected_version)
        logger.debug(
            "Updated session session_id=%s version=%d status=%s",
            session.session_id, expected_version + 1, session.status.value,
        )
        return session.model_copy(deep=True, update={"version": expected_version + 1})

    async def list_stale(self, now: datetime, limit: int = 500) -> list[Session]:
        result = await self.db.execute(
            select(UssdSessionORM)
            .where(
                UssdSessionORM.status == SessionStatus.active.value,
                UssdSessionORM.expires_at <= now,
            )
            .order_by(UssdSessionORM.expires_at)
            .limit(limit)
            .execution_options(populate_existing=True)
        )
        return [_session_to_domain(orm) for orm in result.scalars().all()]


# ---------------------------------------------------------------------------
# Flow store
# ---------------------------------------------------------------------------

class SqlFlowStore:
    """
    Versioned flow registry backed by the flows table, with an optional Redis
    read-through cache (see cache.py). Pass redis=None to bypass the cache.
    """

    def __init__(self, db: AsyncSession, redis: Optional[aioredis.Redis] = None) -> None:
        self.db = db
        self.redis = redis

    async def _latest_version(self, flow_id: str) -> Optional[int]:
        if self.redis is not None:
            cached = await cache.get_latest_version(self.redis, flow_id)
            if cached is not None:
                return cached
        version = await self.db.scalar(
            select(func.max(FlowORM.version)).where(FlowORM.flow_id == flow_id)
        )
        if version is not None and self.redis is not None:
            await cache.set_latest_version(self.redis, flow_id, version)
        return version

    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        if version is None:
            version = await self._latest_version(flow_id)
            if version is None:
                return None

        if self.redis is not None:
            cached = await cache.get_flow_cache(self.redis, flow_id, version)
            if cached is not None:
                return parse_flow(cached)

        orm = await self.db.get(FlowORM, (flow_id, version))
        if orm is None:
            return None
        flow = parse_flow(orm.definition)
        if self.redis is not None:
            await cache.set_flow_cache(self.redis, flow_id, version, orm.definition)
        return flow

    async def publish(self, flow: FlowDefinition) -> FlowDefinition:
        """
        Validate and store `flow` as the next version of flow.id.

        Raises FlowMisconfigured listing every structural problem.
        """
        ensure_valid_flow(flow)
        for attempt in range(1, _PUBLISH_ATTEMPTS + 1):
            current = await self.db.scalar(
                select(func.max(FlowORM.version)).where(FlowORM.flow_id == flow.id)
            )
            published = flow.model_copy(update={"version": (current or 0) + 1})
            try:
                async with self.db.begin_nested():
                    self.db.add(
                        FlowORM(
                            flow_id=published.id,
                            version=published.version,
                            name=published.name,
                            definition=published.model_dump(mode="json"),
                        )
                    )
                    await self.db.flush()
            except IntegrityError:
                # Another publisher took this version number
                logger.warning(
                    "Flow version race flow_id=%s version=%d attempt=%d",
                    flow.id, published.version, attempt,
                )
                if attempt == _PUBLISH_ATTEMPTS:
                    raise
                continue
            break

        if self.redis is not None:
            await cache.invalidate_latest(self.redis, published.id)
        logger.info("Published flow flow_id=%s version=%d", published.id, published.version)
        return published


# ---------------------------------------------------------------------------
# Event sink
# ---------------------------------------------------------------------------

class SqlEventSink:
    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def emit(self, event: SessionEvent) -> None:
        """
        Append one event row inside a SAVEPOINT. Never commits.
        Caller (engine) logs and swallows any failure.
        """
        async with self.db.begin_nested():
            self.db.add(
                SessionEventORM(
                    session_id=event.session_id,
                    flow_id=event.flow_id,
                    flow_version=event.flow_version,
                    event_type=event.event_type.value,
                    node_id=event.node_id,
                    telco=event.telco,
                    payload=event.payload,
                    occurred_at=event.occurred_at,
                )
            )
            await self.db.flush()
        logger.debug("Session event saved session_id=%s type=%s", event.session_id, event.event_type.value)

    async def list_for_session(self, session_id: str) -> list[SessionEvent]:
        result = await self.db.execute(
            select(SessionEventORM)
            .where(SessionEventORM.session_id == session_id)
            .order_by(SessionEventORM.occurred_at)
        )
        return [
            SessionEvent(
                event_type=EventType(orm.event_type),
                session_id=orm.session_id,
                flow_id=orm.flow_id,
                flow_version=orm.flow_version,
                node_id=orm.node_id,
                telco=orm.telco,
                occurred_at=_aware(orm.occurred_at),
                payload=dict(orm.payload or {}),
            )
            for orm in result.scalars().all()
        ]
