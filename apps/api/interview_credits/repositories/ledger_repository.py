from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import case, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from interview_credits.models.billing import (
    AccountBalance,
    CreditTransaction,
    CreditUsageLog,
    TransactionKind,
    TransactionStatus,
)


class LedgerRepository:
    """Persistence for balances, the transaction log and the usage log.

    Callers own the transaction; methods only flush.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_balance(self, account_id: str) -> Optional[AccountBalance]:
        result = await self.db.execute(select(AccountBalance).where(AccountBalance.account_id == account_id))
        return result.scalar_one_or_none()

    async def lock_balance(self, account_id: str) -> AccountBalance:
        """Return the balance row locked for update, creating it on first use."""
        stmt = (
            select(AccountBalance)
            .where(AccountBalance.account_id == account_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        row = (await self.db.execute(stmt)).scalar_one_or_none()
        if row is not None:
            return row

        try:
            async with self.db.begin_nested():
                row = AccountBalance(account_id=account_id, total_credits=0, used_credits=0, available_credits=0)
                self.db.add(row)
                await self.db.flush()
            return row
        except IntegrityError:
            # Another writer created it first; wait on its row lock instead
            return (await self.db.execute(stmt)).scalar_one()

    async def find_by_reference(self, account_id: str, kind: str, reference_id: str) -> Optional[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.kind == kind,
                CreditTransaction.reference_id == reference_id,
            )
        )
        return result.scalar_one_or_none()

    async def insert_transaction(self, txn: CreditTransaction) -> CreditTransaction:
        self.db.add(txn)
        await self.db.flush()
        return txn

    async def insert_usage_log(self, entry: CreditUsageLog) -> CreditUsageLog:
        self.db.add(entry)
        await self.db.flush()
        return entry

    async def count_rule_allocations(self, account_id: str, rule_name: str) -> int:
        result = await self.db.execute(
            select(func.count(CreditTransaction.id)).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.kind == TransactionKind.BONUS.value,
                CreditTransaction.rule_name == rule_name,
                CreditTransaction.status == TransactionStatus.COMPLETED.value,
            )
        )
        return int(result.scalar() or 0)

    async def last_rule_allocation_at(self, account_id: str, rule_name: str) -> Optional[datetime]:
        result = await self.db.execute(
            select(func.max(CreditTransaction.created_at)).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.kind == TransactionKind.BONUS.value,
                CreditTransaction.rule_name == rule_name,
                CreditTransaction.status == TransactionStatus.COMPLETED.value,
            )
        )
        return result.scalar()

    async def list_transactions(
        self,
        account_id: str,
        *,
        kind: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> list[CreditTransaction]:
        stmt = select(CreditTransaction).where(CreditTransaction.account_id == account_id)
        if kind:
            stmt = stmt.where(CreditTransaction.kind == kind)
        stmt = stmt.order_by(CreditTransaction.created_at.desc(), CreditTransaction.id.desc()).offset(offset).limit(limit)
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def count_transactions(self, account_id: str, *, kind: Optional[str] = None) -> int:
        stmt = select(func.count(CreditTransaction.id)).where(CreditTransaction.account_id == account_id)
        if kind:
            stmt = stmt.where(CreditTransaction.kind == kind)
        result = await self.db.execute(stmt)
        return int(result.scalar() or 0)

    async def completed_totals(self, account_id: str) -> tuple[int, int]:
        """Sum completed amounts by sign: (granted, used)."""
        granted = func.coalesce(func.sum(case((CreditTransaction.amount > 0, CreditTransaction.amount), else_=0)), 0)
        used = func.coalesce(func.sum(case((CreditTransaction.amount < 0, -CreditTransaction.amount), else_=0)), 0)
        result = await self.db.execute(
            select(granted, used).where(
                CreditTransaction.account_id == account_id,
                CreditTransaction.status == TransactionStatus.COMPLETED.value,
            )
        )
        row = result.one()
        return int(row[0] or 0), int(row[1] or 0)
