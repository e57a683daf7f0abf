"""
gateway/dependencies.py - FastAPI dependency wiring for the session engine.

Every request gets a SessionEngine bound to SQL stores that share the
request's AsyncSession, so a turn, its events and any lazy expiry commit (or
roll back) together in get_db(). Tests swap get_engine via
app.dependency_overrides to run against the in-memory stores.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from ussdflow.config import settings
from ussdflow.database import get_db
from ussdflow.engine import ExpirySweeper, SessionEngine
from ussdflow.store import SqlEventSink, SqlFlowStore, SqlSessionStore


def build_engine(db: AsyncSession, redis=None) -> SessionEngine:
    """SQL-backed engine. Shared by the request dependency and the sweep job."""
    return SessionEngine(
        sessions=SqlSessionStore(db),
        flows=SqlFlowStore(db, redis=redis),
        events=SqlEventSink(db),
        session_timeout_seconds=settings.session_timeout_seconds,
    )


async def get_engine(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> SessionEngine:
    redis = getattr(request.app.state, "redis", None)
    return build_engine(db, redis=redis)


async def get_sweeper(engine: SessionEngine = Depends(get_engine)) -> ExpirySweeper:
    return ExpirySweeper(engine, batch_size=settings.sweep_batch_size)
