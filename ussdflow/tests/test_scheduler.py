"""
Tests for the timer-driven sweep job in scheduler.py.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from ussdflow.engine import SessionEngine
from ussdflow.engine.schemas import SessionStatus
from ussdflow.engine.validator import parse_flow
from ussdflow.scheduler import SWEEP_JOB_ID, build_scheduler, run_expiry_sweep
from ussdflow.store import SqlEventSink, SqlFlowStore, SqlSessionStore
from ussdflow.tests.conftest import SHORT_CODE, FakeClock, balance_flow_payload


def test_build_scheduler_disabled_when_interval_zero() -> None:
    assert build_scheduler(interval_seconds=0) is None


def test_build_scheduler_registers_single_sweep_job() -> None:
    scheduler = build_scheduler(interval_seconds=30)
    jobs = scheduler.get_jobs()
    assert [job.id for job in jobs] == [SWEEP_JOB_ID]
    assert jobs[0].trigger.interval == timedelta(seconds=30)


@pytest.mark.asyncio
async def test_run_expiry_sweep_commits_in_own_transaction(sqlite_sessionmaker) -> None:
    # Dialogs opened an hour ago are stale against the real clock the job uses
    past = FakeClock(datetime.now(timezone.utc) - timedelta(hours=1))
    async with sqlite_sessionmaker() as db:
        await SqlFlowStore(db).publish(parse_flow(balance_flow_payload()))
        engine = SessionEngine(SqlSessionStore(db), SqlFlowStore(db), SqlEventSink(db), clock=past)
        created = await engine.create_session("balance", "+233241110000", SHORT_CODE)
        await db.commit()

    expired = await run_expiry_sweep(session_factory=sqlite_sessionmaker)

    assert expired == 1
    async with sqlite_sessionmaker() as db:
        stored = await SqlSessionStore(db).get(created.session_id)
    assert stored.status == SessionStatus.expired
