"""
models/__init__.py - imports all ORM models so Alembic's env.py
sees them via Base.metadata when generating migrations.
"""
from ussdflow.models.flow import FlowORM
from ussdflow.models.session import UssdSessionORM
from ussdflow.models.session_event import SessionEventORM

__all__ = ["FlowORM", "UssdSessionORM", "SessionEventORM"]
