"""
Credit ledger: append-only transaction log plus one materialized balance row per account.

apply_transaction / apply_in_unit are the only code paths that write a
balance row. Each write inserts the log row and updates the balance in the
same database transaction, under the per-account lock.
"""
from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from interview_credits.core.exceptions import InsufficientBalanceError, InvalidAmountError, ValidationError
from interview_credits.db.retry import run_with_store_retry
from interview_credits.models.billing import (
    CREDIT_KINDS,
    DEBIT_KINDS,
    AccountBalance,
    CreditTransaction,
    CreditUsageLog,
    TransactionKind,
    TransactionStatus,
)
from interview_credits.repositories.ledger_repository import LedgerRepository
from interview_credits.services.account_locks import AccountLocks, account_locks

logger = logging.getLogger(__name__)


@dataclass
class BalanceDTO:
    account_id: str
    total: int = 0
    used: int = 0
    available: int = 0

    def as_dict(self) -> dict:
        return {"total": self.total, "used": self.used, "available": self.available}


@dataclass
class TransactionDTO:
    id: str
    account_id: str
    kind: str
    amount: int
    status: str
    created_at: datetime
    description: Optional[str] = None
    reference_id: Optional[str] = None
    rule_name: Optional[str] = None

    @classmethod
    def from_model(cls, txn: CreditTransaction) -> "TransactionDTO":
        return cls(
            id=txn.id,
            account_id=txn.account_id,
            kind=txn.kind,
            amount=txn.amount,
            status=txn.status,
            created_at=txn.created_at,
            description=txn.description,
            reference_id=txn.reference_id,
            rule_name=txn.rule_name,
        )


@dataclass
class TransactionPage:
    transactions: list[TransactionDTO]
    page: int
    limit: int
    total: int
    current: BalanceDTO
    total_pages: int = field(init=False)

    def __post_init__(self) -> None:
        self.total_pages = math.ceil(self.total / self.limit) if self.limit else 0


def _balance_dto(account_id: str, row: Optional[AccountBalance]) -> BalanceDTO:
    if row is None:
        return BalanceDTO(account_id=account_id)
    return BalanceDTO(
        account_id=account_id,
        total=row.total_credits,
        used=row.used_credits,
        available=row.available_credits,
    )


def validate_amount(kind: str, amount: int) -> TransactionKind:
    """Reject unknown kinds, zero, non-integer and wrong-sign amounts."""
    try:
        tx_kind = TransactionKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown transaction kind: {kind}")
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmountError("Credit amount must be an integer")
    if amount == 0:
        raise InvalidAmountError("Credit amount must be non-zero")
    if tx_kind in CREDIT_KINDS and amount < 0:
        raise InvalidAmountError(f"{tx_kind.value} transactions must have a positive amount")
    if tx_kind in DEBIT_KINDS and amount > 0:
        raise InvalidAmountError(f"{tx_kind.value} transactions must have a negative amount")
    return tx_kind


class LedgerService:
    """Reads and writes account balances through the transaction log."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        locks: Optional[AccountLocks] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.locks = locks or account_locks
        self.clock = clock or datetime.utcnow

    def account_lock(self, account_id: str):
        """Per-account serialization point shared with the rule engine and session machine."""
        return self.locks.hold(account_id)

    # ====================
    # Reads
    # ====================

    async def get_balance(self, account_id: str) -> BalanceDTO:
        async def _read() -> BalanceDTO:
            async with self.session_factory() as db:
                row = await LedgerRepository(db).get_balance(account_id)
                return _balance_dto(account_id, row)

        return await run_with_store_retry(_read, label="get_balance")

    async def has_sufficient_balance(self, account_id: str, required: int) -> bool:
        if required <= 0:
            raise InvalidAmountError("Required credits must be positive")
        balance = await self.get_balance(account_id)
        return balance.available >= required

    async def validate(self, account_id: str, required: int = 1, action: str = "interview_start") -> dict:
        """UI pre-check: does the account currently hold `required` credits for `action`."""
        if required <= 0:
            raise InvalidAmountError("Required credits must be positive")
        balance = await self.get_balance(account_id)
        sufficient = balance.available >= required
        if sufficient:
            message = f"Sufficient credits available for {action}"
        else:
            message = f"Insufficient credits for {action}. Required: {required}, Available: {balance.available}"
        return {
            "valid": sufficient,
            "credits": {"available": balance.available, "required": required, "sufficient": sufficient},
            "action": action,
            "message": message,
        }

    async def list_transactions(
        self,
        account_id: str,
        *,
        kind: Optional[str] = None,
        page: int = 1,
        limit: int = 20,
    ) -> TransactionPage:
        if kind == "all":
            kind = None
        if kind and kind not in {k.value for k in TransactionKind}:
            raise ValidationError(f"Unknown transaction kind: {kind}")
        page = max(1, int(page))
        limit = max(1, min(int(limit), 200))

        async def _read() -> TransactionPage:
            async with self.session_factory() as db:
                repo = LedgerRepository(db)
                rows = await repo.list_transactions(account_id, kind=kind, offset=(page - 1) * limit, limit=limit)
                total = await repo.count_transactions(account_id, kind=kind)
                balance = _balance_dto(account_id, await repo.get_balance(account_id))
                return TransactionPage(
                    transactions=[TransactionDTO.from_model(r) for r in rows],
                    page=page,
                    limit=limit,
                    total=total,
                    current=balance,
                )

        return await run_with_store_retry(_read, label="list_transactions")

    async def replay_balance(self, account_id: str) -> BalanceDTO:
        """Recompute totals from completed log rows, ignoring the materialized row."""

        async def _read() -> BalanceDTO:
            async with self.session_factory() as db:
                granted, used = await LedgerRepository(db).completed_totals(account_id)
                return BalanceDTO(account_id=account_id, total=granted, used=used, available=granted - used)

        return await run_with_store_retry(_read, label="replay_balance")

    async def reconcile(self, account_id: str) -> dict:
        materialized = await self.get_balance(account_id)
        replayed = await self.replay_balance(account_id)
        consistent = (materialized.total, materialized.used, materialized.available) == (
            replayed.total, replayed.used, replayed.available
        )
        if not consistent:
            logger.error(
                "Ledger mismatch for %s: materialized=%s replayed=%s",
                account_id, materialized.as_dict(), replayed.as_dict(),
            )
        return {
            "account_id": account_id,
            "materialized": materialized.as_dict(),
            "replayed": replayed.as_dict(),
            "consistent": consistent,
        }

    # ====================
    # Writes
    # ====================

    async def apply_transaction(
        self,
        account_id: str,
        kind: str,
        amount: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        *,
        usage_type: Optional[str] = None,
    ) -> TransactionDTO:
        """Append one transaction and update the balance atomically.

        Re-applying a (kind, reference_id) already recorded for the account
        returns the recorded transaction and leaves the balance untouched.

        Raises:
            InsufficientBalanceError: a debit would take available credits below zero
            InvalidAmountError: zero, non-integer or wrong-sign amount
            StoreUnavailableError: transient database fault after bounded retries
        """
        if not account_id:
            raise ValidationError("account_id is required")
        tx_kind = validate_amount(kind, amount)

        async def _attempt() -> tuple[CreditTransaction, bool]:
            async with self.account_lock(account_id):
                async with self.session_factory() as db:
                    try:
                        async with db.begin():
                            return await self.apply_in_unit(
                                db, account_id, tx_kind.value, amount, description, reference_id
                            )
                    except IntegrityError:
                        # Lost a cross-process race on the idempotency key
                        if not reference_id:
                            raise
                        existing = await LedgerRepository(db).find_by_reference(account_id, tx_kind.value, reference_id)
                        if existing is None:
                            raise
                        return existing, False

        txn, created = await run_with_store_retry(_attempt, label=f"apply_transaction({tx_kind.value})")
        if created and tx_kind is TransactionKind.USAGE:
            await self.log_usage(txn, usage_type or "credit_usage")
        return TransactionDTO.from_model(txn)

    async def apply_in_unit(
        self,
        db: AsyncSession,
        account_id: str,
        kind: str,
        amount: int,
        description: Optional[str] = None,
        reference_id: Optional[str] = None,
        *,
        rule_name: Optional[str] = None,
    ) -> tuple[CreditTransaction, bool]:
        """Apply a transaction inside a unit of work the caller owns.

        The caller must hold account_lock(account_id) and an open transaction
        on `db`. Returns (transaction, created); created is False for an
        idempotent replay.
        """
        tx_kind = validate_amount(kind, amount)
        repo = LedgerRepository(db)
        balance = await repo.lock_balance(account_id)

        if reference_id:
            existing = await repo.find_by_reference(account_id, tx_kind.value, reference_id)
            if existing is not None:
                logger.info(
                    "Idempotent replay of %s %s for account %s (transaction %s)",
                    tx_kind.value, reference_id, account_id, existing.id,
                )
                return existing, False

        if amount < 0 and balance.available_credits + amount < 0:
            raise InsufficientBalanceError(
                f"Insufficient credits. Required: {-amount}, available: {balance.available_credits}",
                available=balance.available_credits,
                required=-amount,
            )

        now = self.clock()
        if amount > 0:
            balance.total_credits += amount
        else:
            balance.used_credits += -amount
        balance.available_credits = balance.total_credits - balance.used_credits
        balance.updated_at = now

        txn = CreditTransaction(
            id=str(uuid.uuid4()),
            account_id=account_id,
            kind=tx_kind.value,
            amount=amount,
            description=description,
            reference_id=reference_id,
            rule_name=rule_name,
            status=TransactionStatus.COMPLETED.value,
            created_at=now,
        )
        await repo.insert_transaction(txn)
        logger.info(
            "Applied %s %+d to account %s (available=%d, transaction=%s)",
            tx_kind.value, amount, account_id, balance.available_credits, txn.id,
        )
        return txn, True

    async def log_usage(self, txn: CreditTransaction, usage_type: str) -> None:
        """Best-effort usage log row; a failure is logged and never reaches the caller."""
        entry = CreditUsageLog(
            id=str(uuid.uuid4()),
            transaction_id=txn.id,
            account_id=txn.account_id,
            usage_type=usage_type,
            reference_id=txn.reference_id,
            credits_used=abs(txn.amount),
            created_at=self.clock(),
        )
        try:
            async with self.session_factory() as db:
                async with db.begin():
                    await LedgerRepository(db).insert_usage_log(entry)
        except SQLAlchemyError as e:
            logger.warning("Usage log write failed for transaction %s: %s", txn.id, e)
