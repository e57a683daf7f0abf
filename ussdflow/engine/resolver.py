"""
resolver.py - Pure graph resolution over a FlowDefinition.

Responsibility: given a flow, a node and (maybe) an input, decide where the
dialog goes next and what the handset should display. Nothing here touches
storage, clocks or logging state; every function is deterministic.

Routing per node kind:
  menu         input must select exactly one option key, then the edge wired
               to that key is followed (no edge -> FlowMisconfigured)
  input        input must pass the node's validation; stored under variable_name
  response     any input advances ("press any key to continue")
  conditional  routes on a stored variable, never consumes input
  start        follows its single edge
  end          routing out of an end node is a programming error (InvalidState)
"""
from __future__ import annotations

import re
from decimal import Decimal, InvalidOperation
from typing import Mapping, NamedTuple

from ussdflow.engine.errors import (
    FlowMisconfigured,
    InvalidSelection,
    InvalidState,
    NodeNotFound,
)
from ussdflow.engine.schemas import (
    ConditionalNode,
    ConditionalRule,
    Edge,
    EndNode,
    FlowDefinition,
    InputNode,
    MenuNode,
    MenuOption,
    Node,
    ResponseNode,
    StartNode,
)
from ussdflow.engine.validator import normalize_option_key, validate_input

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class NextStep(NamedTuple):
    target_node_id: str
    updated_variables: dict[str, str]


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------

def resolve_node(flow: FlowDefinition, node_id: str) -> Node:
    node = flow.nodes.get(node_id)
    if node is None:
        raise NodeNotFound(f"Node '{node_id}' does not exist in flow '{flow.id}' v{flow.version}")
    return node


def outgoing_edges(flow: FlowDefinition, node_id: str) -> list[Edge]:
    """Edges leaving node_id, in declared order."""
    return [edge for edge in flow.edges if edge.source_node_id == node_id]


def unconditional_edge(flow: FlowDefinition, node: Node) -> Edge:
    edges = [e for e in outgoing_edges(flow, node.id) if e.option_key is None]
    if len(edges) != 1:
        raise FlowMisconfigured(
            f"{node.kind.capitalize()} node '{node.id}' needs exactly one unconditional edge, found {len(edges)}"
        )
    return edges[0]


# ---------------------------------------------------------------------------
# Menu matching
# ---------------------------------------------------------------------------

def _keys_equal(left: str, right: str) -> bool:
    """String match, or numeric match so that '01' selects key '1'."""
    return normalize_option_key(left) == normalize_option_key(right)


def match_option(node: MenuNode, raw_input: str) -> MenuOption:
    exact = [option for option in node.options if option.key == raw_input.strip()]
    matches = exact or [option for option in node.options if _keys_equal(option.key, raw_input)]
    if len(matches) != 1:
        raise InvalidSelection(f"'{raw_input.strip()}' is not an option of menu '{node.id}'")
    return matches[0]


# ---------------------------------------------------------------------------
# Conditional evaluation
# ---------------------------------------------------------------------------

def _decimal(value: str) -> Decimal | None:
    try:
        number = Decimal(value.strip())
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def rule_matches(rule: ConditionalRule, value: str | None) -> bool:
    """
    equals / not_equals compare stripped strings, `in` splits match_value on
    commas, gt / gte / lt / lte compare as decimals (non-numeric never matches).
    A missing variable only satisfies not_equals.
    """
    if value is None:
        return rule.operator == "not_equals"
    value = value.strip()
    expected = rule.match_value.strip()

    if rule.operator == "equals":
        return value == expected
    if rule.operator == "not_equals":
        return value != expected
    if rule.operator == "in":
        return value in {part.strip() for part in rule.match_value.split(",")}

    left, right = _decimal(value), _decimal(expected)
    if left is None or right is None:
        return False
    if rule.operator == "gt":
        return left > right
    if rule.operator == "gte":
        return left >= right
    if rule.operator == "lt":
        return left < right
    return left <= right


def evaluate_conditional(node: ConditionalNode, variables: Mapping[str, str]) -> str:
    """First matching rule wins; otherwise the default target."""
    value = variables.get(node.variable_name)
    for rule in node.rules:
        if rule_matches(rule, value):
            return rule.target_node_id
    return node.default_target_node_id


def settle(flow: FlowDefinition, node_id: str, variables: Mapping[str, str]) -> Node:
    """
    Follow conditional nodes until a displayable node is reached.

    Conditionals render nothing, so a session never rests on one. A chain
    longer than the node count can only be a cycle.
    """
    node = resolve_node(flow, node_id)
    hops = 0
    while isinstance(node, ConditionalNode):
        hops += 1
        if hops > len(flow.nodes):
            raise FlowMisconfigured(f"Conditional routing loops at node '{node.id}'")
        try:
            node = resolve_node(flow, evaluate_conditional(node, variables))
        except NodeNotFound as exc:
            raise FlowMisconfigured(exc.message) from exc
    return node


# ---------------------------------------------------------------------------
# Routing
# ---------------------------------------------------------------------------

def entry_node(flow: FlowDefinition, variables: Mapping[str, str] | None = None) -> Node:
    """The first displayable node: start's single edge, settled through conditionals."""
    start = flow.start_node()
    if start is None:
        raise FlowMisconfigured(f"Flow '{flow.id}' has no start node")
    edges = outgoing_edges(flow, start.id)
    if len(edges) != 1 or edges[0].option_key is not None:
        raise FlowMisconfigured(
            f"Start node '{start.id}' needs exactly one unconditional edge, found {len(edges)}"
        )
    try:
        return settle(flow, edges[0].target_node_id, variables or {})
    except NodeNotFound as exc:
        raise FlowMisconfigured(exc.message) from exc


def next_node(
    flow: FlowDefinition,
    node: Node,
    raw_input: str,
    variables: Mapping[str, str],
) -> NextStep:
    """
    Decide the next node for one user turn.

    Raises:
        InvalidSelection / InvalidInput: user-correctable, session should re-prompt.
        FlowMisconfigured: the definition cannot route this turn.
        InvalidState: called on an end node.
    """
    updated = dict(variables)

    if isinstance(node, EndNode):
        raise InvalidState(f"Cannot route out of end node '{node.id}'")

    if isinstance(node, MenuNode):
        option = match_option(node, raw_input)
        wired = [
            e for e in outgoing_edges(flow, node.id)
            if e.option_key is not None and _keys_equal(e.option_key, option.key)
        ]
        if len(wired) != 1:
            raise FlowMisconfigured(
                f"Menu node '{node.id}' option '{option.key}' has {len(wired)} outgoing edge(s)"
            )
        return NextStep(wired[0].target_node_id, updated)

    if isinstance(node, InputNode):
        validate_input(node, raw_input)
        updated[node.variable_name] = raw_input
        return NextStep(unconditional_edge(flow, node).target_node_id, updated)

    if isinstance(node, ConditionalNode):
        return NextStep(evaluate_conditional(node, variables), updated)

    if isinstance(node, (ResponseNode, StartNode)):
        return NextStep(unconditional_edge(flow, node).target_node_id, updated)

    raise InvalidState(f"Unsupported node kind '{node.kind}'")


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def render_template(template: str, variables: Mapping[str, str]) -> str:
    """
    Replace {name} placeholders in one left-to-right pass.

    Unknown names become the empty string. Substituted values are never
    re-scanned, so a variable holding "{pin}" renders literally.
    """
    return _PLACEHOLDER_RE.sub(lambda m: str(variables.get(m.group(1), "")), template)


def render(node: Node, variables: Mapping[str, str]) -> str:
    """Screen text for a node. Menus list options as 'key. text' lines."""
    if isinstance(node, MenuNode):
        lines = [render_template(node.text, variables)] if node.text else []
        lines.extend(
            f"{option.key}. {render_template(option.text, variables)}" for option in node.options
        )
        return "\n".join(lines)
    if isinstance(node, InputNode):
        return render_template(node.text, variables)
    if isinstance(node, (ResponseNode, EndNode)):
        return render_template(node.message, variables)
    return ""
