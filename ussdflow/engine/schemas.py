"""
schemas.py - Engine Pydantic v2 data contracts.

Defines:
  - NodeKind, SessionStatus enums
  - MenuOption, InputValidation, ConditionalRule  (node payload parts)
  - StartNode, MenuNode, InputNode, ResponseNode, ConditionalNode, EndNode
    and the `Node` discriminated union (closed set: unknown kinds fail to parse)
  - Edge, FlowDefinition  (read-only graph, pinned per version)
  - InputRecord, Session  (the mutable dialog record owned by the engine)
  - TurnResult  (what the gateway receives for every turn)

Flow payloads arrive as loosely-typed editor JSON; parse them through
engine.validator.parse_flow, which turns pydantic errors into FlowMisconfigured.
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class NodeKind(str, Enum):
    start = "start"
    menu = "menu"
    input = "input"
    response = "response"
    conditional = "conditional"
    end = "end"


class SessionStatus(str, Enum):
    active = "active"
    completed = "completed"
    expired = "expired"
    terminated = "terminated"


TERMINAL_STATUSES = frozenset(
    {SessionStatus.completed, SessionStatus.expired, SessionStatus.terminated}
)


# ---------------------------------------------------------------------------
# Node payload parts
# ---------------------------------------------------------------------------

class MenuOption(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    key: str
    text: str

    @model_validator(mode="before")
    @classmethod
    def _coerce_key(cls, data):
        # Editors export numeric keys (1, 2, ...) as JSON numbers
        if isinstance(data, dict) and isinstance(data.get("key"), int):
            data = {**data, "key": str(data["key"])}
        return data


class InputValidation(BaseModel):
    """
    Validation rule for an input node. All constraints are optional; the
    default rule only requires a non-empty (after strip) answer.

    message: operator-authored re-prompt shown when validation fails.
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    required: bool = True
    kind: Literal["text", "numeric", "amount", "phone"] = "text"
    pattern: Optional[str] = None
    min_length: Optional[int] = Field(default=None, ge=0)
    max_length: Optional[int] = Field(default=None, ge=1)
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    message: Optional[str] = None


ConditionalOperator = Literal["equals", "not_equals", "in", "gt", "gte", "lt", "lte"]


class ConditionalRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    match_value: str
    target_node_id: str
    operator: ConditionalOperator = "equals"


# ---------------------------------------------------------------------------
# Nodes - one class per kind, discriminated on `kind`
# ---------------------------------------------------------------------------

class _NodeBase(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str = Field(..., min_length=1)
    title: str = ""


class StartNode(_NodeBase):
    kind: Literal["start"] = "start"


class MenuNode(_NodeBase):
    kind: Literal["menu"] = "menu"
    text: str = ""                      # Header line(s) rendered above the options
    options: list[MenuOption] = Field(..., min_length=1)


class InputNode(_NodeBase):
    kind: Literal["input"] = "input"
    text: str = ""                      # Prompt, may reference {variables}
    variable_name: str = Field(..., min_length=1)
    validation: Optional[InputValidation] = None


class ResponseNode(_NodeBase):
    kind: Literal["response"] = "response"
    message: str


class ConditionalNode(_NodeBase):
    kind: Literal["conditional"] = "conditional"
    variable_name: str = Field(..., min_length=1)
    rules: list[ConditionalRule] = Field(default_factory=list)
    default_target_node_id: str


class EndNode(_NodeBase):
    kind: Literal["end"] = "end"
    message: str = ""                   # Final screen; the gateway closes the dialog after it


Node = Annotated[
    Union[StartNode, MenuNode, InputNode, ResponseNode, ConditionalNode, EndNode],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Flow definition
# ---------------------------------------------------------------------------

class Edge(BaseModel):
    """
    option_key set   -> applies only from a menu node when the input selects that key.
    option_key unset -> the unconditional "next" edge (start/input/response).
    """
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    source_node_id: str
    target_node_id: str
    option_key: Optional[str] = None

    @model_validator(mode="before")
    @classmethod
    def _coerce_option_key(cls, data):
        if isinstance(data, dict) and isinstance(data.get("option_key"), int):
            data = {**data, "option_key": str(data["option_key"])}
        return data


class FlowDefinition(BaseModel):
    """
    An authored dialog graph. Immutable once published: sessions pin
    (id, version) at creation and always re-load exactly that version.

    nodes: mapping node_id -> Node. The editor's list export shape
           ([{"id": ..., "kind": ...}, ...]) is accepted and keyed by id.
    """
    model_config = ConfigDict(extra="ignore", frozen=True)

    id: str = Field(..., min_length=1)
    version: int = Field(default=1, ge=1)
    name: str = ""
    nodes: dict[str, Node]
    edges: list[Edge] = Field(default_factory=list)

    @model_validator(mode="before")
    @classmethod
    def _index_node_list(cls, data):
        if isinstance(data, dict) and isinstance(data.get("nodes"), list):
            nodes = {}
            for raw in data["nodes"]:
                node_id = raw.get("id") if isinstance(raw, dict) else None
                if node_id is None:
                    raise ValueError("every node needs an id")
                if node_id in nodes:
                    raise ValueError(f"duplicate node id '{node_id}'")
                nodes[node_id] = raw
            data = {**data, "nodes": nodes}
        elif isinstance(data, dict) and isinstance(data.get("nodes"), dict):
            data = {
                **data,
                "nodes": {
                    key: ({"id": key, **raw} if isinstance(raw, dict) and "id" not in raw else raw)
                    for key, raw in data["nodes"].items()
                },
            }
        return data

    @model_validator(mode="after")
    def _keys_match_ids(self) -> "FlowDefinition":
        for key, node in self.nodes.items():
            if key != node.id:
                raise ValueError(f"node key '{key}' does not match node id '{node.id}'")
        return self

    def start_node(self) -> Optional[StartNode]:
        for node in self.nodes.values():
            if isinstance(node, StartNode):
                return node
        return None


# ---------------------------------------------------------------------------
# Session - the engine-owned dialog record
# ---------------------------------------------------------------------------

class InputRecord(BaseModel):
    """One accepted user turn. Append-only audit trail entry."""
    model_config = ConfigDict(frozen=True)

    raw_input: str
    node_id: str                 # Node the session sat on when the input arrived
    step: int                    # step_count after this turn was applied
    timestamp: datetime


class Session(BaseModel):
    """
    A single USSD dialog.

    version: optimistic-lock counter bumped by the store on every save.
             Callers pass the version they read; a mismatch means another
             request advanced the dialog first.
    """
    session_id: str
    flow_id: str
    flow_version: int
    phone_number: str
    short_code: str
    status: SessionStatus = SessionStatus.active
    current_node_id: str
    variables: dict[str, str] = Field(default_factory=dict)
    inputs: list[InputRecord] = Field(default_factory=list)
    step_count: int = 0
    version: int = 0
    started_at: datetime
    last_activity_at: datetime
    expires_at: datetime
    completed_at: Optional[datetime] = None
    termination_reason: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.active

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_expired_at(self, now: datetime) -> bool:
        """Logically expired: still marked active but past its deadline."""
        return self.is_active and now > self.expires_at

    @property
    def duration_seconds(self) -> int:
        end = self.completed_at or self.last_activity_at
        return max(0, int((end - self.started_at).total_seconds()))


class TurnResult(BaseModel):
    """
    Outcome of a successful engine call, handed back to the gateway.

    reprompt=True means the input was user-correctable (bad menu key, failed
    input validation): the session did not move and `text` re-asks.
    session: the record as persisted after this call.
    """
    session: Session
    session_id: str
    success: bool = True
    text: str
    status: SessionStatus
    node_id: str
    step_count: int
    reprompt: bool = False
    error_code: Optional[str] = None


__all__ = [
    "NodeKind",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "MenuOption",
    "InputValidation",
    "ConditionalRule",
    "StartNode",
    "MenuNode",
    "InputNode",
    "ResponseNode",
    "ConditionalNode",
    "EndNode",
    "Node",
    "Edge",
    "FlowDefinition",
    "InputRecord",
    "Session",
    "TurnResult",
]
