"""
Tests for the in-memory reference stores in memory_store.py.
"""
from __future__ import annotations

from datetime import timedelta

import pytest

from ussdflow.engine.errors import (
    ConcurrentModification,
    ConflictingActiveSession,
    FlowMisconfigured,
    SessionNotFound,
)
from ussdflow.engine.schemas import Session, SessionStatus
from ussdflow.engine.validator import parse_flow
from ussdflow.memory_store import InMemoryFlowStore, InMemorySessionStore
from ussdflow.tests.conftest import PHONE, SHORT_CODE, balance_flow_payload


def _session(clock, session_id: str = "sess_aaaaaaaaaaaaaaaa", **overrides) -> Session:
    fields = dict(
        session_id=session_id,
        flow_id="balance",
        flow_version=1,
        phone_number=PHONE,
        short_code=SHORT_CODE,
        current_node_id="ask_balance",
        started_at=clock.now,
        last_activity_at=clock.now,
        expires_at=clock.now + timedelta(seconds=120),
    )
    fields.update(overrides)
    return Session(**fields)


# ---------------------------------------------------------------------------
# InMemorySessionStore
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_assigns_version_one_and_copies(clock) -> None:
    store = InMemorySessionStore()
    original = _session(clock)

    stored = await store.create(original)
    stored.variables["leak"] = "x"

    assert stored.version == 1
    assert original.version == 0
    assert (await store.get(original.session_id)).variables == {}


@pytest.mark.asyncio
async def test_create_rejects_second_active_on_channel(clock) -> None:
    store = InMemorySessionStore()
    await store.create(_session(clock))
    with pytest.raises(ConflictingActiveSession):
        await store.create(_session(clock, session_id="sess_bbbbbbbbbbbbbbbb"))


@pytest.mark.asyncio
async def test_closed_session_frees_channel(clock) -> None:
    store = InMemorySessionStore()
    first = await store.create(_session(clock))
    await store.save(first.model_copy(update={"status": SessionStatus.terminated}), expected_version=1)

    second = await store.create(_session(clock, session_id="sess_bbbbbbbbbbbbbbbb"))

    assert (await store.get_by_channel(PHONE, SHORT_CODE)).session_id == second.session_id
    closed = await store.get_by_channel(PHONE, SHORT_CODE, status="terminated")
    assert closed.session_id == first.session_id


@pytest.mark.asyncio
async def test_save_checks_version(clock) -> None:
    store = InMemorySessionStore()
    created = await store.create(_session(clock))
    moved = created.model_copy(update={"current_node_id": "main_menu"})

    saved = await store.save(moved, expected_version=1)
    assert saved.version == 2

    with pytest.raises(ConcurrentModification):
        await store.save(moved, expected_version=1)


@pytest.mark.asyncio
async def test_save_unknown_session(clock) -> None:
    with pytest.raises(SessionNotFound):
        await InMemorySessionStore().save(_session(clock), expected_version=0)


@pytest.mark.asyncio
async def test_list_stale_orders_by_deadline_and_limits(clock) -> None:
    store = InMemorySessionStore()
    for i, offset in enumerate([30, 10, 20]):
        await store.create(
            _session(
                clock,
                session_id=f"sess_{i:016d}",
                phone_number=f"+2332400000{i}",
                expires_at=clock.now + timedelta(seconds=offset),
            )
        )

    stale = await store.list_stale(clock.now + timedelta(seconds=25), limit=10)
    assert [s.session_id for s in stale] == ["sess_0000000000000001", "sess_0000000000000002"]
    assert len(await store.list_stale(clock.now + timedelta(seconds=60), limit=1)) == 1


# ---------------------------------------------------------------------------
# InMemoryFlowStore
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_publish_assigns_monotonic_versions() -> None:
    store = InMemoryFlowStore()
    flow = parse_flow(balance_flow_payload())

    v1 = await store.publish(flow)
    v2 = await store.publish(flow)

    assert (v1.version, v2.version) == (1, 2)
    assert (await store.get("balance")).version == 2
    assert (await store.get("balance", 1)).version == 1
    assert await store.get("balance", 3) is None
    assert await store.get("unknown") is None


@pytest.mark.asyncio
async def test_publish_rejects_invalid_flow() -> None:
    payload = balance_flow_payload()
    payload["edges"] = []
    store = InMemoryFlowStore()
    with pytest.raises(FlowMisconfigured):
        await store.publish(parse_flow(payload))
    assert await store.get("balance") is None
