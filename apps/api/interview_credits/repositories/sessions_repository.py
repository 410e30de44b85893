from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from interview_credits.models.interview_sessions import InterviewSession, SessionStatus


class SessionsRepository:
    """Repository for interview session persistence.

    Uses SQLAlchemy AsyncSession for non-blocking DB access.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, session_id: str, *, for_update: bool = False) -> Optional[InterviewSession]:
        stmt = select(InterviewSession).where(InterviewSession.id == session_id)
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        result = await self.db.execute(stmt)
        return result.scalar_one_or_none()

    async def insert(self, session: InterviewSession) -> InterviewSession:
        self.db.add(session)
        await self.db.flush()
        return session

    async def save(self, session: InterviewSession) -> InterviewSession:
        # SQLAlchemy tracks changes; flush ensures SQL side effects before commit
        await self.db.flush()
        return session

    async def increment_usage(self, session_id: str, now: datetime) -> Optional[int]:
        """Bump the AI usage counter of an active session; None when it is not active."""
        # Increment in SQL so concurrent recorders never lose an update, and only
        # while still active so a concurrent complete/cancel wins
        updated = await self.db.execute(
            update(InterviewSession)
            .where(
                InterviewSession.id == session_id,
                InterviewSession.status == SessionStatus.ACTIVE.value,
            )
            .values(ai_usage_count=InterviewSession.ai_usage_count + 1, updated_at=now)
        )
        if updated.rowcount == 0:
            return None
        result = await self.db.execute(
            select(InterviewSession.ai_usage_count).where(InterviewSession.id == session_id)
        )
        return int(result.scalar_one())

    async def delete(self, session: InterviewSession) -> None:
        await self.db.delete(session)
        await self.db.flush()

    async def list_for_account(self, account_id: str, *, offset: int = 0, limit: int = 10) -> list[InterviewSession]:
        result = await self.db.execute(
            select(InterviewSession)
            .where(InterviewSession.account_id == account_id)
            .order_by(InterviewSession.created_at.desc(), InterviewSession.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_for_account(self, account_id: str) -> int:
        result = await self.db.execute(
            select(func.count(InterviewSession.id)).where(InterviewSession.account_id == account_id)
        )
        return int(result.scalar() or 0)
