"""
gateway/schemas.py - HTTP request / response contracts for the USSD gateway.

Request models normalize what aggregators send (stray whitespace, '*123#'
style short codes) and reject malformed identifiers with 422 before the
engine ever runs. Response models never echo the phone number.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ussdflow.config import settings
from ussdflow.engine.events import SessionEvent
from ussdflow.engine.schemas import Session, SessionStatus, TurnResult

_PHONE_RE = re.compile(r"^\+?\d{9,15}$")
_SHORT_CODE_RE = re.compile(r"^\*?(\d{3,6})#?$")


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------

class CreateSessionRequest(BaseModel):
    """Dial-in from the aggregator: opens a dialog on the latest flow version."""
    model_config = ConfigDict(extra="forbid")

    flow_id: str = Field(..., min_length=1, max_length=64)
    phone_number: str
    short_code: str

    @field_validator("phone_number")
    @classmethod
    def _check_phone(cls, value: str) -> str:
        value = value.strip().replace(" ", "")
        if not _PHONE_RE.match(value):
            raise ValueError("phone_number must be 9-15 digits with an optional leading '+'")
        return value

    @field_validator("short_code")
    @classmethod
    def _check_short_code(cls, value: str) -> str:
        value = value.strip()
        match = _SHORT_CODE_RE.match(value)
        if match is None or value.startswith("*") != value.endswith("#"):
            raise ValueError("short_code must be 3-6 digits, optionally written as *123#")
        return match.group(1)


class ProcessInputRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    input: str

    @field_validator("input")
    @classmethod
    def _check_input(cls, value: str) -> str:
        value = value.strip()
        if len(value) > settings.max_input_length:
            raise ValueError(
                f"input must be at most {settings.max_input_length} characters"
            )
        return value


class NavigateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    node_id: str = Field(..., min_length=1)


class TerminateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    reason: str = Field(default="admin_terminated", min_length=1, max_length=255)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------

class TurnResponse(BaseModel):
    """
    One screen for the handset.

    status != "active" tells the aggregator to close the USSD dialog
    (END) after showing `text`; "active" means CON.
    """
    session_id: str
    text: str
    status: SessionStatus
    node_id: str
    step_count: int
    reprompt: bool = False
    error_code: Optional[str] = None

    @classmethod
    def from_result(cls, result: TurnResult) -> "TurnResponse":
        return cls(
            session_id=result.session_id,
            text=result.text,
            status=result.status,
            node_id=result.node_id,
            step_count=result.step_count,
            reprompt=result.reprompt,
            error_code=result.error_code,
        )


class SessionView(BaseModel):
    """Read model of a session. Raw input history and the phone number are left out."""
    session_id: str
    flow_id: str
    flow_version: int
    short_code: str
    status: SessionStatus
    current_node_id: str
    variables: Dict[str, str]
    step_count: int
    version: int
    started_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    termination_reason: Optional[str] = None
    duration_seconds: int

    @classmethod
    def from_session(cls, session: Session) -> "SessionView":
        return cls(
            duration_seconds=session.duration_seconds,
            **session.model_dump(exclude={"phone_number", "inputs"}),
        )


class SessionEventsResponse(BaseModel):
    session_id: str
    events: List[SessionEvent]


class SweepResponse(BaseModel):
    expired: int


class FlowSummary(BaseModel):
    flow_id: str
    version: int
    name: str
    node_count: int
    edge_count: int


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

class ErrorDetail(BaseModel):
    """Single field-level validation or flow-structure problem."""
    model_config = ConfigDict(extra="forbid")

    field: Optional[str] = None
    issue: str


class ErrorBody(BaseModel):
    model_config = ConfigDict(extra="forbid")

    code: str                                      # SESSION_NOT_FOUND, VALIDATION_ERROR, etc.
    message: str
    details: List[ErrorDetail] = Field(default_factory=list)


class ErrorResponse(BaseModel):
    """
    Standard error response format for all ussdflow endpoints.

    Structure: {"error": {"code": "...", "message": "...", "details": [...]}}
    """
    model_config = ConfigDict(extra="forbid")

    error: ErrorBody


def error_payload(code: str, message: str, details: Optional[List[Dict[str, Any]]] = None) -> dict:
    return ErrorResponse(
        error=ErrorBody(
            code=code,
            message=message,
            details=[ErrorDetail(**d) for d in details or []],
        )
    ).model_dump()
