"""
sceneaccess/features/stats/service.py

Per-user practice score, weighted toward recent sessions.
"""

import asyncio
import logging
from collections import defaultdict
from datetime import datetime
from typing import Dict, List, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError

from sceneaccess.core.database import get_db_session, learning_sessions
from sceneaccess.core.errors import StorageError
from sceneaccess.features.stats.scoring import (
    DEFAULT_HALF_LIFE_DAYS,
    ScoredSession,
    weighted_average_score_by_recency,
)


logger = logging.getLogger(__name__)


class SessionScoreStore(Protocol):
    async def list_sessions(self, user_id: str) -> List[ScoredSession]:
        ...


class InMemorySessionScoreStore:
    def __init__(self):
        self._sessions: Dict[str, List[ScoredSession]] = defaultdict(list)

    def add(
        self,
        user_id: str,
        started_at: datetime,
        average_score: Optional[float],
        score_scale: Optional[str] = None,
    ) -> None:
        self._sessions[user_id].append(ScoredSession(started_at, average_score, score_scale))

    async def list_sessions(self, user_id: str) -> List[ScoredSession]:
        return list(self._sessions.get(user_id, []))


class SqlSessionScoreStore:
    async def list_sessions(self, user_id: str) -> List[ScoredSession]:
        return await asyncio.to_thread(self._list_sessions, user_id)

    def _list_sessions(self, user_id: str) -> List[ScoredSession]:
        try:
            with get_db_session() as session:
                rows = session.execute(
                    select(
                        learning_sessions.c.started_at,
                        learning_sessions.c.average_score,
                        learning_sessions.c.score_scale,
                    ).where(learning_sessions.c.user_id == user_id)
                ).all()
        except SQLAlchemyError as e:
            raise StorageError("Session storage unavailable") from e
        return [ScoredSession(row.started_at, row.average_score, row.score_scale) for row in rows]


class StatsService:
    def __init__(self, sessions: SessionScoreStore, half_life_days: float = DEFAULT_HALF_LIFE_DAYS):
        self.sessions = sessions
        self.half_life_days = half_life_days

    async def recency_score(self, user_id: str, now: Optional[datetime] = None) -> float:
        sessions = await self.sessions.list_sessions(user_id)
        score = weighted_average_score_by_recency(sessions, self.half_life_days, now=now)
        logger.debug(f"Recency score for {user_id}: {score:.3f} over {len(sessions)} sessions")
        return score
