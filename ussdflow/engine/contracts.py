"""
contracts.py - Collaborator interfaces the engine is written against.

SessionStore atomicity contract (the engine's guarantees depend on it):
  - create() must reject a second ACTIVE session on the same
    (phone_number, short_code) channel atomically (unique constraint, not a
    read-then-write check) by raising ConflictingActiveSession.
  - save(session, expected_version) must apply the write only if the stored
    version still equals expected_version, bump the version, and otherwise
    raise ConcurrentModification. Two turns read at the same version can
    therefore never both succeed.

FlowStore hands out immutable versions: get(flow_id, version) always returns
the same graph for the same pair.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Protocol, runtime_checkable

from ussdflow.engine.events import SessionEvent
from ussdflow.engine.schemas import FlowDefinition, Session


@runtime_checkable
class SessionStore(Protocol):
    async def get(self, session_id: str) -> Optional[Session]: ...

    async def get_by_channel(
        self, phone_number: str, short_code: str, status: str = "active"
    ) -> Optional[Session]: ...

    async def create(self, session: Session) -> Session: ...

    async def save(self, session: Session, expected_version: int) -> Session: ...

    async def list_stale(self, now: datetime, limit: int = 500) -> list[Session]: ...


@runtime_checkable
class FlowStore(Protocol):
    async def get(self, flow_id: str, version: Optional[int] = None) -> Optional[FlowDefinition]: ...

    async def publish(self, flow: FlowDefinition) -> FlowDefinition: ...


@runtime_checkable
class EventSink(Protocol):
    async def emit(self, event: SessionEvent) -> None: ...

    async def list_for_session(self, session_id: str) -> list[SessionEvent]: ...
