"""
Flow definition and input validation.

Two concerns live here, both pure and side-effect free:

  1. parse_flow / validate_flow / ensure_valid_flow
     Structural checks on an authored graph. All violations are collected in a
     single pass so an operator sees every problem in one response, then raised
     as one FlowMisconfigured.

  2. validate_input
     Applies an input node's optional InputValidation rule to a raw answer.
     Failures raise InvalidInput, which the engine turns into a re-prompt.

Rules enforced by validate_flow:
  1. exactly one start node, with exactly one unconditional outgoing edge
  2. every edge references existing source and target nodes; edge ids unique
  3. end nodes have no outgoing edges
  4. input / response nodes: exactly one unconditional edge, no keyed edges
  5. menu nodes: unique option keys, every option wired exactly once,
     no unconditional edges, no edges for undeclared keys
  6. conditional nodes: rule and default targets exist, no conditional-only cycles
  7. input validation patterns compile
"""
from __future__ import annotations

import logging
import re
from collections import Counter, deque
from decimal import Decimal, InvalidOperation
from typing import Any

from pydantic import ValidationError

from ussdflow.engine.errors import FlowMisconfigured, InvalidInput
from ussdflow.engine.schemas import (
    ConditionalNode,
    EndNode,
    FlowDefinition,
    InputNode,
    InputValidation,
    MenuNode,
    ResponseNode,
    StartNode,
)

logger = logging.getLogger(__name__)

_PHONE_RE = re.compile(r"\+?\d{9,15}")
_AMOUNT_RE = re.compile(r"\d+(\.\d{1,2})?")


# ---------------------------------------------------------------------------
# Flow parsing
# ---------------------------------------------------------------------------

def parse_flow(raw: dict[str, Any]) -> FlowDefinition:
    """
    Build a FlowDefinition from stored / editor JSON.

    Unknown node kinds (editor-only extras such as 'api') and malformed
    payloads are load-time FlowMisconfigured errors, never silently dropped.
    """
    try:
        return FlowDefinition.model_validate(raw)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            loc = ".".join(str(part) for part in error["loc"])
            problems.append(f"{loc}: {error['msg']}" if loc else error["msg"])
        flow_id = raw.get("id") if isinstance(raw, dict) else None
        logger.error("Flow failed to parse flow_id=%s problems=%d", flow_id, len(problems))
        raise FlowMisconfigured(f"Flow '{flow_id}' could not be parsed", problems) from exc


# ---------------------------------------------------------------------------
# Menu keys
# ---------------------------------------------------------------------------

def normalize_option_key(key: str) -> str:
    """Canonical menu key: stripped, and numeric keys without leading zeros."""
    key = key.strip()
    if key.isascii() and key.isdigit():
        return str(int(key))
    return key


# ---------------------------------------------------------------------------
# Flow structure validation
# ---------------------------------------------------------------------------

def _reachable_from(flow: FlowDefinition, start_id: str) -> set[str]:
    adjacency: dict[str, list[str]] = {}
    for edge in flow.edges:
        adjacency.setdefault(edge.source_node_id, []).append(edge.target_node_id)
    for node in flow.nodes.values():
        if isinstance(node, ConditionalNode):
            targets = [rule.target_node_id for rule in node.rules]
            targets.append(node.default_target_node_id)
            adjacency.setdefault(node.id, []).extend(targets)

    seen = {start_id}
    queue = deque([start_id])
    while queue:
        current = queue.popleft()
        for target in adjacency.get(current, []):
            if target in flow.nodes and target not in seen:
                seen.add(target)
                queue.append(target)
    return seen


def _conditional_cycles(flow: FlowDefinition) -> list[str]:
    """Return ids of conditional nodes that can route back into themselves
    without ever reaching a displayable node."""
    cyclic = []
    for node in flow.nodes.values():
        if not isinstance(node, ConditionalNode):
            continue
        stack = [node.id]
        visited: set[str] = set()
        while stack:
            current = flow.nodes.get(stack.pop())
            if not isinstance(current, ConditionalNode):
                continue
            for target in [r.target_node_id for r in current.rules] + [current.default_target_node_id]:
                if target == node.id:
                    cyclic.append(node.id)
                    stack.clear()
                    break
                if target not in visited:
                    visited.add(target)
                    stack.append(target)
    return cyclic


def validate_flow(flow: FlowDefinition) -> list[str]:
    """
    Check a parsed flow against every structural rule.

    Returns:
        A list of human-readable problems; empty when the flow is executable.
    """
    problems: list[str] = []

    # ---- 1. Start node -----------------------------------------------------
    starts = [n for n in flow.nodes.values() if isinstance(n, StartNode)]
    if len(starts) != 1:
        problems.append(f"Flow must have exactly one start node, found {len(starts)}")

    # ---- 2. Edge references ------------------------------------------------
    for edge_id, count in Counter(e.id for e in flow.edges).items():
        if count > 1:
            problems.append(f"Edge id '{edge_id}' is used {count} times")
    for edge in flow.edges:
        if edge.source_node_id not in flow.nodes:
            problems.append(f"Edge '{edge.id}' starts at unknown node '{edge.source_node_id}'")
        if edge.target_node_id not in flow.nodes:
            problems.append(f"Edge '{edge.id}' points to unknown node '{edge.target_node_id}'")

    outgoing: dict[str, list] = {}
    for edge in flow.edges:
        outgoing.setdefault(edge.source_node_id, []).append(edge)

    # ---- 3-6. Per-kind outgoing edge rules ---------------------------------
    for node in flow.nodes.values():
        edges = outgoing.get(node.id, [])
        unconditional = [e for e in edges if e.option_key is None]
        keyed = [e for e in edges if e.option_key is not None]

        if isinstance(node, EndNode):
            if edges:
                problems.append(f"End node '{node.id}' must not have outgoing edges")

        elif isinstance(node, StartNode):
            if len(edges) != 1 or keyed:
                problems.append(
                    f"Start node '{node.id}' must have exactly one unconditional edge, found {len(edges)} edge(s)"
                )

        elif isinstance(node, (InputNode, ResponseNode)):
            if len(unconditional) != 1:
                problems.append(
                    f"{node.kind.capitalize()} node '{node.id}' must have exactly one "
                    f"unconditional edge, found {len(unconditional)}"
                )
            if keyed:
                problems.append(f"{node.kind.capitalize()} node '{node.id}' must not have option-keyed edges")

        elif isinstance(node, MenuNode):
            keys = [normalize_option_key(option.key) for option in node.options]
            for key, count in Counter(keys).items():
                if count > 1:
                    problems.append(f"Menu node '{node.id}' declares option key '{key}' {count} times")
            wired = Counter(normalize_option_key(e.option_key) for e in keyed)
            for key in dict.fromkeys(keys):
                if wired[key] == 0:
                    problems.append(f"Menu node '{node.id}' option '{key}' has no outgoing edge")
                elif wired[key] > 1:
                    problems.append(f"Menu node '{node.id}' option '{key}' has {wired[key]} outgoing edges")
            for key in wired:
                if key not in keys:
                    problems.append(f"Menu node '{node.id}' has an edge for undeclared option '{key}'")
            if unconditional:
                problems.append(f"Menu node '{node.id}' must not have unconditional edges")

        elif isinstance(node, ConditionalNode):
            if edges:
                problems.append(f"Conditional node '{node.id}' routes by rules, not edges")
            for rule in node.rules:
                if rule.target_node_id not in flow.nodes:
                    problems.append(
                        f"Conditional node '{node.id}' rule targets unknown node '{rule.target_node_id}'"
                    )
            if node.default_target_node_id not in flow.nodes:
                problems.append(
                    f"Conditional node '{node.id}' default targets unknown node '{node.default_target_node_id}'"
                )

        # ---- 7. Input patterns compile -------------------------------------
        if isinstance(node, InputNode) and node.validation and node.validation.pattern:
            try:
                re.compile(node.validation.pattern)
            except re.error as exc:
                problems.append(f"Input node '{node.id}' has an invalid pattern: {exc}")

    for node_id in _conditional_cycles(flow):
        problems.append(f"Conditional node '{node_id}' is part of a conditional-only cycle")

    if len(starts) == 1:
        unreachable = set(flow.nodes) - _reachable_from(flow, starts[0].id)
        if unreachable:
            # Drafts often carry parked nodes; worth a log line, not a rejection
            logger.info("Flow has unreachable nodes flow_id=%s count=%d", flow.id, len(unreachable))

    return problems


def ensure_valid_flow(flow: FlowDefinition) -> FlowDefinition:
    """Raise FlowMisconfigured listing every problem, or return the flow unchanged."""
    problems = validate_flow(flow)
    if problems:
        logger.info("Flow validation failed flow_id=%s problems=%d", flow.id, len(problems))
        raise FlowMisconfigured(f"Flow '{flow.id}' failed validation", problems)
    return flow


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def _as_decimal(value: str) -> Decimal | None:
    try:
        number = Decimal(value)
    except InvalidOperation:
        return None
    return number if number.is_finite() else None


def validate_input(node: InputNode, raw_input: str) -> None:
    """
    Check a raw answer against the node's rule (non-empty by default).

    Raises:
        InvalidInput: carrying the operator-authored message when present,
            otherwise a short generic reason suitable for a handset screen.
    """
    rule = node.validation or InputValidation()
    value = raw_input.strip()

    def fail(reason: str) -> None:
        raise InvalidInput(rule.message or reason)

    if not value:
        if rule.required:
            fail("Input is required")
        return

    if rule.kind == "numeric" and not (value.isascii() and value.isdigit()):
        fail("Enter digits only")
    if rule.kind == "amount" and not _AMOUNT_RE.fullmatch(value):
        fail("Enter a valid amount")
    if rule.kind == "phone" and not _PHONE_RE.fullmatch(value):
        fail("Enter a valid phone number")

    if rule.min_length is not None and len(value) < rule.min_length:
        fail(f"Enter at least {rule.min_length} characters")
    if rule.max_length is not None and len(value) > rule.max_length:
        fail(f"Enter at most {rule.max_length} characters")

    if rule.min_value is not None or rule.max_value is not None:
        number = _as_decimal(value)
        if number is None:
            fail("Enter a number")
        if rule.min_value is not None and number < Decimal(str(rule.min_value)):
            fail(f"Minimum is {rule.min_value:g}")
        if rule.max_value is not None and number > Decimal(str(rule.max_value)):
            fail(f"Maximum is {rule.max_value:g}")

    if rule.pattern is not None:
        try:
            matched = re.fullmatch(rule.pattern, value)
        except re.error as exc:
            raise FlowMisconfigured(f"Input node '{node.id}' has an invalid pattern: {exc}") from exc
        if not matched:
            fail("Invalid input format")
