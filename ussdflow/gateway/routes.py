"""
Gateway HTTP routes.

Dialog surface (called by the USSD aggregator):
  POST /api/sessions                      dial in, first screen
  POST /api/sessions/{session_id}/input   one handset turn
  GET  /api/sessions/active               resume lookup by channel
  GET  /api/sessions/{session_id}         read (lazy expiry applied)
  GET  /api/sessions/{session_id}/events  audit trail

Admin surface:
  POST /api/admin/sessions/{session_id}/navigate|complete|terminate
  POST /api/admin/sweep
  POST /api/admin/flows                   publish a validated flow version
  GET  /api/admin/flows/{flow_id}

Engine errors propagate to the handlers registered in main.py, which map them
onto HTTP statuses in the standard error envelope.
"""
from __future__ import annotations

import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse

from ussdflow.engine import ExpirySweeper, SessionEngine
from ussdflow.engine.errors import FlowMisconfigured, FlowNotFound
from ussdflow.engine.validator import parse_flow
from ussdflow.gateway.dependencies import get_engine, get_sweeper
from ussdflow.gateway.schemas import (
    CreateSessionRequest,
    FlowSummary,
    NavigateRequest,
    ProcessInputRequest,
    SessionEventsResponse,
    SessionView,
    SweepResponse,
    TerminateRequest,
    TurnResponse,
    error_payload,
)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])
admin_router = APIRouter(prefix="/api/admin", tags=["admin"])
logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Dialog endpoints
# ---------------------------------------------------------------------------

@router.post("", status_code=201, response_model=TurnResponse)
async def create_session(
    body: CreateSessionRequest,
    engine: SessionEngine = Depends(get_engine),
) -> TurnResponse:
    """
    Open a dialog for (phone_number, short_code) on the latest version of flow_id.

    Returns:
      201: first screen
      404: FLOW_NOT_FOUND
      409: CONFLICTING_ACTIVE_SESSION (the channel already has a live dialog)
    """
    result = await engine.create_session(body.flow_id, body.phone_number, body.short_code)
    return TurnResponse.from_result(result)


@router.post("/{session_id}/input", response_model=TurnResponse)
async def process_input(
    session_id: str,
    body: ProcessInputRequest,
    engine: SessionEngine = Depends(get_engine),
) -> TurnResponse:
    """
    Apply one handset turn.

    Invalid menu choices and failed input validation are 200 with reprompt=true.
    Returns 410 once the session is completed, terminated or expired, and 409
    when a retransmitted turn lost the race to the original.
    """
    session = await engine.get_session(session_id)
    result = await engine.process_input(session, body.input)
    return TurnResponse.from_result(result)


@router.get("/active", response_model=SessionView)
async def get_active_session(
    phone_number: str = Query(..., min_length=1),
    short_code: str = Query(..., min_length=1),
    engine: SessionEngine = Depends(get_engine),
) -> SessionView:
    session = await engine.get_active_session(phone_number.strip(), short_code.strip())
    return SessionView.from_session(session)


@router.get("/{session_id}", response_model=SessionView)
async def get_session(
    session_id: str,
    engine: SessionEngine = Depends(get_engine),
) -> SessionView:
    session = await engine.get_session(session_id)
    return SessionView.from_session(session)


@router.get("/{session_id}/events", response_model=SessionEventsResponse)
async def list_session_events(
    session_id: str,
    engine: SessionEngine = Depends(get_engine),
) -> SessionEventsResponse:
    session = await engine.get_session(session_id)
    events = await engine.events.list_for_session(session.session_id) if engine.events else []
    return SessionEventsResponse(session_id=session.session_id, events=events)


# ---------------------------------------------------------------------------
# Admin endpoints
# ---------------------------------------------------------------------------

@admin_router.post("/sessions/{session_id}/navigate", response_model=SessionView)
async def navigate_session(
    session_id: str,
    body: NavigateRequest,
    engine: SessionEngine = Depends(get_engine),
) -> SessionView:
    session = await engine.get_session(session_id)
    navigated = await engine.navigate_to_node(session, body.node_id)
    return SessionView.from_session(navigated)


@admin_router.post("/sessions/{session_id}/complete", response_model=SessionView)
async def complete_session(
    session_id: str,
    engine: SessionEngine = Depends(get_engine),
) -> SessionView:
    session = await engine.get_session(session_id)
    completed = await engine.complete_session(session)
    return SessionView.from_session(completed)


@admin_router.post("/sessions/{session_id}/terminate", response_model=SessionView)
async def terminate_session(
    session_id: str,
    body: Optional[TerminateRequest] = None,
    engine: SessionEngine = Depends(get_engine),
) -> SessionView:
    reason = body.reason if body is not None else "admin_terminated"
    session = await engine.get_session(session_id)
    terminated = await engine.terminate_session(session, reason=reason)
    return SessionView.from_session(terminated)


@admin_router.post("/sweep", response_model=SweepResponse)
async def trigger_sweep(sweeper: ExpirySweeper = Depends(get_sweeper)) -> SweepResponse:
    """Run one expiry sweep now. Same code path as the scheduled job."""
    expired = await sweeper.sweep()
    logger.info("Admin sweep expired=%d", expired)
    return SweepResponse(expired=expired)


@admin_router.post("/flows", status_code=201, response_model=FlowSummary)
async def publish_flow(
    payload: dict[str, Any] = Body(...),
    engine: SessionEngine = Depends(get_engine),
) -> FlowSummary | JSONResponse:
    """
    Publish an editor-exported flow as the next version of its id.

    Returns 422 FLOW_MISCONFIGURED with every structural problem listed in
    details when the graph is invalid; nothing is stored in that case.
    """
    try:
        flow = await engine.flows.publish(parse_flow(payload))
    except FlowMisconfigured as exc:
        return JSONResponse(
            status_code=422,
            content=error_payload(
                code=exc.code,
                message=exc.message,
                details=[{"field": None, "issue": p} for p in exc.problems],
            ),
        )
    return FlowSummary(
        flow_id=flow.id,
        version=flow.version,
        name=flow.name,
        node_count=len(flow.nodes),
        edge_count=len(flow.edges),
    )


@admin_router.get("/flows/{flow_id}")
async def get_flow(
    flow_id: str,
    version: Optional[int] = Query(default=None, ge=1),
    engine: SessionEngine = Depends(get_engine),
) -> JSONResponse:
    flow = await engine.flows.get(flow_id, version)
    if flow is None:
        suffix = f" v{version}" if version is not None else ""
        raise FlowNotFound(f"Flow '{flow_id}'{suffix} not found")
    return JSONResponse(status_code=200, content=flow.model_dump(mode="json"))
