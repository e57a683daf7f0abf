"""
sweeper.py - Eager expiry of stale active sessions.

The timer job (APScheduler, registered in main.lifespan) and the admin
POST /api/admin/sweep route both call ExpirySweeper.sweep(); there is no
separate manual code path.

A sweep that loses the optimistic-lock race to a live turn on the same
session skips that session: the turn either extended it (no longer stale) or
closed it (already terminal).
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Optional

from ussdflow.engine.errors import ConcurrentModification
from ussdflow.engine.service import SessionEngine

logger = logging.getLogger(__name__)


class ExpirySweeper:
    def __init__(self, engine: SessionEngine, batch_size: int = 500) -> None:
        self.engine = engine
        self.batch_size = batch_size

    async def sweep(self, now: Optional[datetime] = None) -> int:
        """Expire every active session with expires_at <= now. Returns the count."""
        now = now or self.engine.clock()
        expired = 0
        seen: set[str] = set()

        while True:
            batch = await self.engine.sessions.list_stale(now, limit=self.batch_size)
            fresh = [s for s in batch if s.session_id not in seen]
            if not fresh:
                break
            for session in fresh:
                seen.add(session.session_id)
                try:
                    await self.engine.expire_session(session, source="sweep")
                except ConcurrentModification:
                    logger.warning(
                        "Sweep lost race to a live turn session_id=%s", session.session_id
                    )
                    continue
                expired += 1
            if len(batch) < self.batch_size:
                break

        if expired:
            logger.info("Sweep expired %d session(s)", expired)
        return expired
