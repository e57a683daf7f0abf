"""
Shared fixtures for the ussdflow test-suite.

  - flow payloads in the editor's JSON shape (balance demo, conditional tiers)
  - FakeClock: a controllable UTC clock injected into SessionEngine
  - engine wired to the in-memory stores
  - sqlite_sessionmaker: aiosqlite-backed AsyncSession factory for the SQL
    store tests (partial unique index + optimistic lock behave as on PostgreSQL)
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

import ussdflow.models  # noqa: F401  (registers tables on Base.metadata)
from ussdflow.database import Base
from ussdflow.engine import SessionEngine
from ussdflow.engine.validator import parse_flow
from ussdflow.memory_store import InMemoryEventSink, InMemoryFlowStore, InMemorySessionStore

PHONE = "+233241234567"
SHORT_CODE = "123"


# ---------------------------------------------------------------------------
# Flow payloads
# ---------------------------------------------------------------------------

def balance_flow_payload() -> dict:
    """
    start -> ask_balance (input, balance) -> main_menu
      1 "Balance" -> show_balance (response "Your balance is {balance}") -> main_menu
      2 "Exit"    -> goodbye (end)
    """
    return {
        "id": "balance",
        "version": 1,
        "name": "Balance demo",
        "nodes": [
            {"id": "start", "kind": "start"},
            {
                "id": "ask_balance",
                "kind": "input",
                "text": "Enter opening balance",
                "variable_name": "balance",
                "validation": {"kind": "amount", "message": "Enter an amount like 100"},
            },
            {
                "id": "main_menu",
                "kind": "menu",
                "text": "Welcome",
                "options": [{"key": 1, "text": "Balance"}, {"key": 2, "text": "Exit"}],
            },
            {"id": "show_balance", "kind": "response", "message": "Your balance is {balance}"},
            {"id": "goodbye", "kind": "end", "message": "Goodbye"},
        ],
        "edges": [
            {"id": "e1", "source_node_id": "start", "target_node_id": "ask_balance"},
            {"id": "e2", "source_node_id": "ask_balance", "target_node_id": "main_menu"},
            {"id": "e3", "source_node_id": "main_menu", "target_node_id": "show_balance", "option_key": 1},
            {"id": "e4", "source_node_id": "main_menu", "target_node_id": "goodbye", "option_key": 2},
            {"id": "e5", "source_node_id": "show_balance", "target_node_id": "main_menu"},
        ],
    }


def tier_flow_payload() -> dict:
    """start -> ask_amount -> route (conditional on amount) -> big | small | other"""
    return {
        "id": "tiers",
        "version": 1,
        "nodes": {
            "start": {"kind": "start"},
            "ask_amount": {"kind": "input", "text": "Amount?", "variable_name": "amount"},
            "route": {
                "kind": "conditional",
                "variable_name": "amount",
                "rules": [
                    {"match_value": "1000", "target_node_id": "big", "operator": "gte"},
                    {"match_value": "0", "target_node_id": "zero"},
                ],
                "default_target_node_id": "small",
            },
            "big": {"kind": "end", "message": "Big spender: {amount}"},
            "zero": {"kind": "end", "message": "Nothing to send"},
            "small": {"kind": "end", "message": "Sent {amount}"},
        },
        "edges": [
            {"id": "e1", "source_node_id": "start", "target_node_id": "ask_amount"},
            {"id": "e2", "source_node_id": "ask_amount", "target_node_id": "route"},
        ],
    }


# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------

class FakeClock:
    """Callable UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def balance_flow():
    return parse_flow(balance_flow_payload())


@pytest.fixture
def tier_flow():
    return parse_flow(tier_flow_payload())


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def session_store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def event_sink() -> InMemoryEventSink:
    return InMemoryEventSink()


@pytest.fixture
def flow_store(balance_flow, tier_flow) -> InMemoryFlowStore:
    return InMemoryFlowStore([balance_flow, tier_flow])


@pytest.fixture
def engine(session_store, flow_store, event_sink, clock) -> SessionEngine:
    return SessionEngine(
        sessions=session_store,
        flows=flow_store,
        events=event_sink,
        session_timeout_seconds=120,
        clock=clock,
    )


@pytest_asyncio.fixture
async def sqlite_sessionmaker():
    """Fresh in-memory SQLite schema per test, with working SAVEPOINTs."""
    db_engine = create_async_engine("sqlite+aiosqlite:///:memory:")

    # pysqlite's implicit transaction handling breaks SAVEPOINT; take over BEGIN
    @event.listens_for(db_engine.sync_engine, "connect")
    def _disable_implicit_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(db_engine.sync_engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")

    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(bind=db_engine, class_=AsyncSession, expire_on_commit=False)

    await db_engine.dispose()
