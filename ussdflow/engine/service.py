"""
service.py - SessionEngine, the USSD dialog state machine.

Orchestrates the pure resolver with the SessionStore / FlowStore / EventSink
collaborators. Each public method runs to completion without waiting on
anything but store I/O.

Lifecycle:
    create_session ──> active ──process_input / navigate_to_node──> active
                         │
                         ├── lands on an end node ──> completed
                         ├── complete_session     ──> completed
                         ├── terminate_session    ──> terminated
                         └── past expires_at      ──> expired (lazy or swept)

Terminal statuses never change again. Expiry is checked on every access, so a
session that is past its deadline is expired on read even if the sweeper has
not reached it yet.

Concurrency: the engine never mutates the Session it is handed. It works on a
copy and saves with the version it was given; a stale version raises
ConcurrentModification instead of double-applying a turn.
"""
from __future__ import annotations

import logging
import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ussdflow.engine import resolver
from ussdflow.engine.contracts import EventSink, FlowStore, SessionStore
from ussdflow.engine.errors import (
    ConcurrentModification,
    FlowMisconfigured,
    FlowNotFound,
    InternalFlowError,
    InvalidSelection,
    NodeNotFound,
    SessionNotActive,
    SessionNotFound,
    UserInputError,
)
from ussdflow.engine.events import EventType, SessionEvent, detect_telco
from ussdflow.engine.schemas import (
    EndNode,
    FlowDefinition,
    InputRecord,
    Node,
    Session,
    SessionStatus,
    TurnResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TIMEOUT_SECONDS = 120
INVALID_SELECTION_TEXT = "Invalid choice. Please try again."


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_session_id() -> str:
    """'sess_' + 16 URL-safe random characters."""
    return "sess_" + secrets.token_urlsafe(12)


class SessionEngine:
    """
    Public operations map 1:1 onto the gateway surface:

        create_session      dial in               -> TurnResult (first screen)
        process_input       one handset turn      -> TurnResult (next screen)
        navigate_to_node    admin override        -> Session
        complete_session    admin, idempotent     -> Session
        terminate_session   admin, idempotent     -> Session
        get_active_session  resume lookup         -> Session
        get_session         read by id            -> Session
        expire_session      used by the sweeper   -> Session
    """

    def __init__(
        self,
        sessions: SessionStore,
        flows: FlowStore,
        events: Optional[EventSink] = None,
        session_timeout_seconds: int = DEFAULT_SESSION_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.sessions = sessions
        self.flows = flows
        self.events = events
        self.session_timeout = timedelta(seconds=session_timeout_seconds)
        self.clock = clock

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    async def _emit(
        self,
        event_type: EventType,
        session: Session,
        node_id: Optional[str] = None,
        **payload,
    ) -> None:
        if self.events is None:
            return
        event = SessionEvent(
            event_type=event_type,
            session_id=session.session_id,
            flow_id=session.flow_id,
            flow_version=session.flow_version,
            node_id=node_id or session.current_node_id,
            telco=detect_telco(session.phone_number),
            occurred_at=self.clock(),
            payload=payload,
        )
        try:
            await self.events.emit(event)
        except Exception:
            # Analytics must never break a live dialog
            logger.exception(
                "Failed to emit %s session_id=%s", event_type.value, session.session_id
            )

    async def _pinned_flow(self, session: Session) -> FlowDefinition:
        flow = await self.flows.get(session.flow_id, session.flow_version)
        if flow is None:
            raise FlowNotFound(
                f"Flow '{session.flow_id}' v{session.flow_version} is no longer available"
            )
        return flow

    async def _ensure_active(self, session: Session) -> None:
        """Lazy expiry: expire-then-fail for anything past its deadline."""
        now = self.clock()
        if session.is_expired_at(now):
            try:
                await self.expire_session(session, source="lazy")
            except ConcurrentModification:
                await self._raise_if_closed(session.session_id)
                raise
            raise SessionNotActive(session.session_id, SessionStatus.expired.value)
        if not session.is_active:
            raise SessionNotActive(session.session_id, session.status.value)

    async def _raise_if_closed(self, session_id: str) -> None:
        """After a lost version check, fail on the status the winner left behind."""
        fresh = await self.sessions.get(session_id)
        if fresh is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        if fresh.is_terminal:
            raise SessionNotActive(session_id, fresh.status.value)

    def _result(
        self,
        session: Session,
        node: Node,
        text: str,
        reprompt: bool = False,
        error_code: Optional[str] = None,
    ) -> TurnResult:
        return TurnResult(
            session=session,
            session_id=session.session_id,
            text=text,
            status=session.status,
            node_id=node.id,
            step_count=session.step_count,
            reprompt=reprompt,
            error_code=error_code,
        )

    async def _force_close(
        self,
        session: Session,
        status: SessionStatus,
        reason: Optional[str] = None,
    ) -> Session:
        """Shared body of complete/terminate: no-op on terminal sessions."""
        if session.is_terminal:
            return session
        now = self.clock()
        if session.is_expired_at(now):
            try:
                return await self.expire_session(session, source="lazy")
            except ConcurrentModification:
                fresh = await self.sessions.get(session.session_id)
                if fresh is not None and fresh.is_terminal:
                    return fresh
                raise

        work = session.model_copy(deep=True)
        work.status = status
        work.last_activity_at = now
        if status == SessionStatus.completed:
            work.completed_at = now
        else:
            work.termination_reason = reason

        try:
            saved = await self.sessions.save(work, expected_version=session.version)
        except ConcurrentModification:
            # A duplicate admin request may have closed it first
            fresh = await self.sessions.get(session.session_id)
            if fresh is not None and fresh.is_terminal:
                return fresh
            raise

        logger.info("Session %s session_id=%s", status.value, saved.session_id)
        if status == SessionStatus.completed:
            await self._emit(
                EventType.session_completed, saved,
                duration_seconds=saved.duration_seconds, steps=saved.step_count,
            )
        else:
            await self._emit(
                EventType.session_terminated, saved,
                reason=reason, duration_seconds=saved.duration_seconds,
            )
        return saved

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_session(self, session_id: str) -> Session:
        """Read by id. A logically expired session is expired before it is returned."""
        session = await self.sessions.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session '{session_id}' not found")
        if session.is_expired_at(self.clock()):
            try:
                session = await self.expire_session(session, source="lazy")
            except ConcurrentModification:
                session = await self.sessions.get(session_id) or session
        return session

    async def get_active_session(self, phone_number: str, short_code: str) -> Session:
        session = await self.sessions.get_by_channel(phone_number, short_code)
        if session is None:
            raise SessionNotFound(f"No active session on short code {short_code}")
        if not session.is_expired_at(self.clock()):
            return session
        try:
            await self.expire_session(session, source="lazy")
        except ConcurrentModification:
            # Either a live turn extended it or the sweeper expired it first
            fresh = await self.sessions.get(session.session_id)
            if fresh is not None and fresh.is_active and not fresh.is_expired_at(self.clock()):
                return fresh
        missing = SessionNotFound(f"No active session on short code {short_code}")
        # The lazy expiry above is a real write even though the lookup fails
        missing.commit_pending = True
        raise missing

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------

    async def create_session(self, flow_id: str, phone_number: str, short_code: str) -> TurnResult:
        """
        Open a dialog on the latest version of flow_id and render its entry node.

        Raises:
            FlowNotFound: unknown flow, or flow without a start node.
            FlowMisconfigured: start node cannot route to an entry node.
            ConflictingActiveSession: channel already has a live dialog.
        """
        flow = await self.flows.get(flow_id)
        if flow is None:
            raise FlowNotFound(f"Flow '{flow_id}' not found")
        if flow.start_node() is None:
            raise FlowNotFound(f"Flow '{flow_id}' has no start node")

        entry = resolver.entry_node(flow)

        # Clear a stale-but-unswept dialog on this channel; the store's unique
        # constraint still arbitrates any race between concurrent creates.
        existing = await self.sessions.get_by_channel(phone_number, short_code)
        if existing is not None and existing.is_expired_at(self.clock()):
            try:
                await self.expire_session(existing, source="lazy")
            except ConcurrentModification:
                logger.info("Stale session already moved session_id=%s", existing.session_id)

        now = self.clock()
        session = Session(
            session_id=new_session_id(),
            flow_id=flow.id,
            flow_version=flow.version,
            phone_number=phone_number,
            short_code=short_code,
            current_node_id=entry.id,
            started_at=now,
            last_activity_at=now,
            expires_at=now + self.session_timeout,
        )
        if isinstance(entry, EndNode):
            session.status = SessionStatus.completed
            session.completed_at = now

        stored = await self.sessions.create(session)
        logger.info(
            "Session started session_id=%s flow_id=%s version=%d entry=%s",
            stored.session_id, flow.id, flow.version, entry.id,
        )
        await self._emit(EventType.session_started, stored, short_code=short_code)
        await self._emit(EventType.node_visited, stored, node_kind=entry.kind)
        if stored.status == SessionStatus.completed:
            await self._emit(
                EventType.session_completed, stored, duration_seconds=0, steps=0,
            )
        return self._result(stored, entry, resolver.render(entry, stored.variables))

    async def process_input(self, session: Session, raw_input: str) -> TurnResult:
        """
        Apply one handset turn to `session` as it was read by the caller.

        Raises:
            SessionNotActive: terminal, or expired (expired first, then raised).
            InternalFlowError: the pinned flow cannot route this turn; session stays active.
            ConcurrentModification: another turn was applied since `session` was read.
        """
        await self._ensure_active(session)
        flow = await self._pinned_flow(session)

        try:
            node = resolver.resolve_node(flow, session.current_node_id)
        except NodeNotFound as exc:
            raise InternalFlowError(session.session_id, FlowMisconfigured(exc.message)) from exc

        if isinstance(node, EndNode):
            completed = await self._force_close(session, SessionStatus.completed)
            return self._result(completed, node, resolver.render(node, completed.variables))

        try:
            step = resolver.next_node(flow, node, raw_input, session.variables)
            target = resolver.settle(flow, step.target_node_id, step.updated_variables)
        except UserInputError as exc:
            await self._emit(
                EventType.invalid_input, session, error_code=exc.code, input_length=len(raw_input),
            )
            reason = INVALID_SELECTION_TEXT if isinstance(exc, InvalidSelection) else exc.message
            screen = resolver.render(node, session.variables)
            return self._result(
                session, node, f"{reason}\n{screen}" if screen else reason,
                reprompt=True, error_code=exc.code,
            )
        except (FlowMisconfigured, NodeNotFound) as exc:
            cause = exc if isinstance(exc, FlowMisconfigured) else FlowMisconfigured(exc.message)
            logger.error(
                "Flow misconfigured session_id=%s flow_id=%s version=%d node=%s: %s",
                session.session_id, session.flow_id, session.flow_version, node.id, cause.message,
            )
            await self._emit(EventType.flow_error, session, error=cause.message)
            raise InternalFlowError(session.session_id, cause) from exc

        now = self.clock()
        work = session.model_copy(deep=True)
        work.step_count += 1
        work.inputs.append(
            InputRecord(raw_input=raw_input, node_id=node.id, step=work.step_count, timestamp=now)
        )
        work.variables = step.updated_variables
        work.current_node_id = target.id
        work.last_activity_at = now
        work.expires_at = now + self.session_timeout
        if isinstance(target, EndNode):
            # Never left active on an end node: completion rides in the same save
            work.status = SessionStatus.completed
            work.completed_at = now

        try:
            saved = await self.sessions.save(work, expected_version=session.version)
        except ConcurrentModification:
            logger.warning(
                "Concurrent turn rejected session_id=%s read_version=%d",
                session.session_id, session.version,
            )
            await self._raise_if_closed(session.session_id)
            raise

        logger.info(
            "Turn applied session_id=%s step=%d node=%s status=%s",
            saved.session_id, saved.step_count, target.id, saved.status.value,
        )
        await self._emit(
            EventType.input_received, saved, node_id=node.id,
            step=saved.step_count, input_length=len(raw_input),
        )
        await self._emit(EventType.node_visited, saved, node_kind=target.kind)
        if saved.status == SessionStatus.completed:
            await self._emit(
                EventType.session_completed, saved,
                duration_seconds=saved.duration_seconds, steps=saved.step_count,
            )
        return self._result(saved, target, resolver.render(target, saved.variables))

    async def navigate_to_node(self, session: Session, node_id: str) -> Session:
        """
        Administrative override: jump straight to node_id without edge checks.

        Not a user turn, so inputs and step_count are untouched. A conditional
        target is settled against the session variables like any other route,
        and landing on an end node completes the session in the same save.
        """
        await self._ensure_active(session)
        flow = await self._pinned_flow(session)
        target = resolver.settle(flow, node_id, session.variables)

        now = self.clock()
        work = session.model_copy(deep=True)
        work.current_node_id = target.id
        work.last_activity_at = now
        if isinstance(target, EndNode):
            work.status = SessionStatus.completed
            work.completed_at = now

        try:
            saved = await self.sessions.save(work, expected_version=session.version)
        except ConcurrentModification:
            await self._raise_if_closed(session.session_id)
            raise
        logger.info(
            "Session navigated session_id=%s from=%s to=%s",
            saved.session_id, session.current_node_id, target.id,
        )
        await self._emit(
            EventType.node_visited, saved, node_kind=target.kind, navigated=True,
        )
        if saved.status == SessionStatus.completed:
            await self._emit(
                EventType.session_completed, saved,
                duration_seconds=saved.duration_seconds, steps=saved.step_count,
            )
        return saved

    async def complete_session(self, session: Session) -> Session:
        return await self._force_close(session, SessionStatus.completed)

    async def terminate_session(self, session: Session, reason: str = "admin_terminated") -> Session:
        return await self._force_close(session, SessionStatus.terminated, reason=reason)

    async def expire_session(self, session: Session, source: str = "sweep") -> Session:
        """Transition an active session to expired. Terminal sessions are returned unchanged."""
        if session.is_terminal:
            return session
        work = session.model_copy(deep=True)
        work.status = SessionStatus.expired
        saved = await self.sessions.save(work, expected_version=session.version)
        logger.info("Session expired session_id=%s source=%s", saved.session_id, source)
        await self._emit(
            EventType.session_expired, saved,
            source=source, duration_seconds=saved.duration_seconds,
        )
        return saved
