"""
Session persistence

The orchestrator keeps live sessions in memory; the repository makes them
survive a restart so the cleanup sweep can find sessions whose timers were
lost.
"""

import copy
from typing import Any, Dict, List, Optional, Protocol

import structlog
from sqlalchemy import func, select

from labrange.domain.sessions.entities import ACTIVE_STATUSES, Session
from labrange.infrastructure.database import DatabaseManager, SessionRecord

logger = structlog.get_logger(__name__)


class SessionRepository(Protocol):
    async def create(self, session: Session) -> None: ...

    async def get(self, session_id: str) -> Optional[Session]: ...

    async def update(self, session: Session) -> None: ...

    async def list_active(self) -> List[Session]: ...

    async def count(self) -> int: ...


class InMemorySessionRepository:
    """Dict-backed repository; stores serialised copies so callers cannot alias them."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[str, Any]] = {}

    async def create(self, session: Session) -> None:
        self._records[session.session_id] = copy.deepcopy(session.to_dict())

    async def get(self, session_id: str) -> Optional[Session]:
        data = self._records.get(session_id)
        return Session.from_dict(copy.deepcopy(data)) if data else None

    async def update(self, session: Session) -> None:
        self._records[session.session_id] = copy.deepcopy(session.to_dict())

    async def list_active(self) -> List[Session]:
        active = {status.value for status in ACTIVE_STATUSES}
        return [
            Session.from_dict(copy.deepcopy(data))
            for data in self._records.values()
            if data["status"] in active
        ]

    async def count(self) -> int:
        return len(self._records)


class SqlSessionRepository:
    """Repository over the ``lab_sessions`` table."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def create(self, session: Session) -> None:
        async with self.db.session() as db_session:
            db_session.add(_to_record(session))
            await db_session.commit()

    async def get(self, session_id: str) -> Optional[Session]:
        async with self.db.session() as db_session:
            record = await db_session.get(SessionRecord, session_id)
            return Session.from_dict(record.data) if record else None

    async def update(self, session: Session) -> None:
        async with self.db.session() as db_session:
            await db_session.merge(_to_record(session))
            await db_session.commit()

    async def list_active(self) -> List[Session]:
        statuses = [status.value for status in ACTIVE_STATUSES]
        async with self.db.session() as db_session:
            result = await db_session.execute(
                select(SessionRecord).where(SessionRecord.status.in_(statuses))
            )
            return [Session.from_dict(record.data) for record in result.scalars()]

    async def count(self) -> int:
        async with self.db.session() as db_session:
            result = await db_session.execute(select(func.count()).select_from(SessionRecord))
            return result.scalar_one()


def _to_record(session: Session) -> SessionRecord:
    return SessionRecord(
        session_id=session.session_id,
        user_id=session.user_id,
        lab_id=session.lab_id,
        status=session.status.value,
        started_at=session.started_at,
        expires_at=session.expires_at,
        data=session.to_dict(),
    )
