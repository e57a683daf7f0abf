"""
events.py - Session events emitted by the engine for analytics / audit.

The engine only produces events; storing and aggregating them belongs to an
EventSink collaborator (in-memory list, session_events table).

Payloads must stay PII-free: no raw user input, no phone numbers. The telco is
derived from the phone-number prefix so reports can split traffic by network
without keeping the number itself.
"""
from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class EventType(str, Enum):
    session_started = "session_started"
    input_received = "input_received"
    node_visited = "node_visited"
    invalid_input = "invalid_input"
    flow_error = "flow_error"
    session_completed = "session_completed"
    session_terminated = "session_terminated"
    session_expired = "session_expired"


class SessionEvent(BaseModel):
    event_type: EventType
    session_id: str
    flow_id: str
    flow_version: int
    node_id: Optional[str] = None
    telco: str = "unknown"
    occurred_at: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


# Ghana network prefixes, local (0XX) or international (233XX) form
_TELCO_PREFIXES: dict[str, tuple[str, ...]] = {
    "mtn": ("24", "54", "55", "59"),
    "telecel": ("20", "50"),
    "airteltigo": ("26", "27", "56", "57"),
}


def detect_telco(phone_number: str) -> str:
    digits = re.sub(r"\D", "", phone_number)
    if digits.startswith("233"):
        national = digits[3:]
    elif digits.startswith("0"):
        national = digits[1:]
    else:
        return "unknown"
    for telco, prefixes in _TELCO_PREFIXES.items():
        if national.startswith(prefixes):
            return telco
    return "unknown"
