"""
errors.py - Error taxonomy for the session engine.

Every engine failure carries a stable machine-readable `code` that the gateway
layer maps onto its own HTTP status and user-facing copy.

User-correctable errors (InvalidSelection, InvalidInput) derive from
UserInputError. The engine catches those and answers with a re-prompt; they
never reach the gateway as failures.
"""
from __future__ import annotations

from typing import Optional


class EngineError(Exception):
    """Base class for every error raised by the engine and its stores."""

    code: str = "ENGINE_ERROR"
    # True when the failing operation already recorded a state change
    # (lazy expiry, flow_error event) that must be committed before re-raising.
    commit_pending: bool = False

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


# ---------------------------------------------------------------------------
# Flow definition errors
# ---------------------------------------------------------------------------

class FlowNotFound(EngineError):
    code = "FLOW_NOT_FOUND"


class FlowMisconfigured(EngineError):
    """A definition bug: operator-fixable, never the end-user's fault."""

    code = "FLOW_MISCONFIGURED"

    def __init__(self, message: str, problems: Optional[list[str]] = None) -> None:
        super().__init__(message)
        self.problems = problems or [message]


class NodeNotFound(EngineError):
    code = "NODE_NOT_FOUND"


# ---------------------------------------------------------------------------
# Session lifecycle errors
# ---------------------------------------------------------------------------

class SessionNotFound(EngineError):
    code = "SESSION_NOT_FOUND"


class SessionNotActive(EngineError):
    code = "SESSION_NOT_ACTIVE"

    def __init__(self, session_id: str, status: str) -> None:
        super().__init__(f"Session '{session_id}' is {status}")
        self.session_id = session_id
        self.status = status
        # Lazy expiry writes the expired status before this is raised
        self.commit_pending = status == "expired"


class ConflictingActiveSession(EngineError):
    code = "CONFLICTING_ACTIVE_SESSION"

    def __init__(self, phone_number: str, short_code: str) -> None:
        # Phone number deliberately left out of the message (PII)
        super().__init__(f"An active session already exists on short code {short_code}")
        self.phone_number = phone_number
        self.short_code = short_code


class ConcurrentModification(EngineError):
    """Optimistic-lock loss: treat as a retransmit, never re-apply."""

    code = "CONCURRENT_MODIFICATION"

    def __init__(self, session_id: str, expected_version: int) -> None:
        super().__init__(
            f"Session '{session_id}' changed since version {expected_version} was read"
        )
        self.session_id = session_id
        self.expected_version = expected_version


class InternalFlowError(EngineError):
    """Raised by process_input when the flow is misconfigured mid-dialog."""

    code = "INTERNAL_FLOW_ERROR"
    commit_pending = True

    def __init__(self, session_id: str, cause: FlowMisconfigured) -> None:
        super().__init__(f"Flow error in session '{session_id}': {cause.message}")
        self.session_id = session_id
        self.cause = cause


class InvalidState(EngineError):
    """Programming error, e.g. asking the resolver to route out of an end node."""

    code = "INVALID_STATE"


# ---------------------------------------------------------------------------
# User-correctable errors (surfaced as re-prompts)
# ---------------------------------------------------------------------------

class UserInputError(EngineError):
    code = "USER_INPUT_ERROR"


class InvalidSelection(UserInputError):
    code = "INVALID_SELECTION"


class InvalidInput(UserInputError):
    code = "INVALID_INPUT"
