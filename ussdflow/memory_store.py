"""
memory_store.py - In-memory reference implementations of the engine contracts.

Same semantics as the SQL stores in store.py:
  - one ACTIVE session per (phone_number, short_code), checked under the lock
    in the same critical section as the insert
  - save() applies only when the stored version equals expected_version
  - flow versions are immutable once published

Every read and write copies the record, so callers can never alias stored
state. A single asyncio.Lock guards the maps; critical sections never await.
Used by the test-suite and by single-process deployments without PostgreSQL.
"""
from __future__ import annotations

import asyncio
import logging
from datetime import datetime
from typing import Iterable, Optional

from ussdflow.engine.errors import (
    ConcurrentModification,
    ConflictingActiveSession,
    SessionNotFound,
)
from ussdflow.engine.events import SessionEvent
from ussdflow.engine.schemas import FlowDefinition, Session, SessionStatus
from ussdflow.engine.validator import ensure_valid_flow

logger = logging.getLogger(__name__)


class InMemorySessionStore:
    def __init__(self) -> None:
        self._sessions: dict[str, Session] = {}
        self._active_by_channel: dict[tuple[str, str], str] = {}
        self._lock = asyncio.Lock()

    async def get(self, session_id: str) -> Optional[Session]:
        stored = self._sessions.get(session_id)
        return stored.model_copy(deep=True) if stored else None

    async def get_by_channel(
        self, phone_number: str, short_code: str, status: str = "active"
    ) -> Optional[Session]:
        if status == SessionStatus.active.value:
            session_id = self._active_by_channel.get((phone_number, short_code))
            return await self.get(session_id) if session_id else None
        matches = [
            s for s in self._sessions.values()
            if s.phone_number == phone_number and s.short_code == short_code and s.status.value == status
        ]
        if not matches:
            return None
        return max(matches, key=lambda s: s.started_at).model_copy(deep=True)

    async def create(self, session: Session) -> Session:
        channel = (session.phone_number, session.short_code)
        async with self._lock:
            if session.session_id in self._sessions:
                raise ValueError(f"Session id '{session.session_id}' already exists")
            if session.is_active and channel in self._active_by_channel:
                raise ConflictingActiveSession(session.phone_number, session.short_code)
            stored = session.model_copy(deep=True, update={"version": 1})
            self._sessions[stored.session_id] = stored
            if stored.is_active:
                self._active_by_channel[channel] = stored.session_id
        logger.debug("Created session session_id=%s", stored.session_id)
        return stored.model_copy(deep=True)

    async def save(self, session: Session, expected_version: int) -> Session:
        async with self._lock:
            current = self._sessions.get(session.session_id)
            if current is None:
                raise SessionNotFound(f"Session '{session.session_id}' not found")
            if current.version != expected_version:
                raise ConcurrentModification(session.session_id, expected_version)
            stored = session.model_copy(deep=True, update={"version": expected_version + 1})
            self._sessions[stored.session_id] = stored
            channel = (stored.phone_number, stored.short_code)
            if not stored.is_active and self._active_by_channel.get(channel) == stored.session_id:
                del self._active_by_channel[channel]
        return stored.model_copy(deep=True)

    async def list_stale(self, now: datetime, limit: int = 500) -> list[Session]:
        stale = sorted(
            (s for s in self._sessions.values() if s.is_active and s.expires_at <= now),
            key=lambda s: s.expires_at,
        )
        return [s.model_copy(deep=True) for s in stale[:limit]]


class InMemoryFlowStore:
    """
    Versioned flow registry. Seed flows are stored as given (no validation) so
    tests can exercise runtime handling of broken definitions; publish()
    is the validated path.
    """

    def __init__(self, flows: Iterable[FlowDefinition] = ()) -> None:
        self._flows: dict[tuple[str, int], FlowDefinition] = {}
        self._lock = asyncio.Lock()
        for flow in flows:
            self._flows[(flow.id, flow.version)] = flow

    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]:
        if version is not None:
            return self._flows.get((flow_id, version))
        versions = [v for (fid, v) in self._flows if fid == flow_id]
        return self._flows[(flow_id, max(versions))] if versions else None

    async def publish(self, flow: FlowDefinition) -> FlowDefinition:
        ensure_valid_flow(flow)
        async with self._lock:
            versions = [v for (fid, v) in self._flows if fid == flow.id]
            published = flow.model_copy(update={"version": max(versions, default=0) + 1})
            self._flows[(published.id, published.version)] = published
        logger.info("Published flow flow_id=%s version=%d", published.id, published.version)
        return published


class InMemoryEventSink:
    def __init__(self) -> None:
        self.events: list[SessionEvent] = []

    async def emit(self, event: SessionEvent) -> None:
        self.events.append(event)

    async def list_for_session(self, session_id: str) -> list[SessionEvent]:
        return [e for e in self.events if e.session_id == session_id]
