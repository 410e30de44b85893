from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from interview_credits.models.billing import CreditRule


class RulesRepository:
    """Read access to the rule catalog, plus out-of-band admin writes."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, rule_name: str) -> Optional[CreditRule]:
        result = await self.db.execute(select(CreditRule).where(CreditRule.rule_name == rule_name))
        return result.scalar_one_or_none()

    async def list_active(self, now: datetime) -> list[CreditRule]:
        result = await self.db.execute(
            select(CreditRule)
            .where(
                CreditRule.is_active.is_(True),
                CreditRule.valid_from <= now,
                or_(CreditRule.valid_until.is_(None), CreditRule.valid_until > now),
            )
            .order_by(CreditRule.rule_name)
        )
        return list(result.scalars().all())

    async def list_all(self) -> list[CreditRule]:
        result = await self.db.execute(select(CreditRule).order_by(CreditRule.rule_name))
        return list(result.scalars().all())

    async def insert(self, rule: CreditRule) -> CreditRule:
        self.db.add(rule)
        await self.db.flush()
        return rule

    async def save(self, rule: CreditRule) -> CreditRule:
        await self.db.flush()
        return rule
