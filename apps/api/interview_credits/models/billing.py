from datetime import datetime
from enum import Enum
from typing import Optional

from interview_credits.db.base import Base
from sqlalchemy import JSON, Boolean, CheckConstraint, DateTime, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column


class TransactionKind(str, Enum):
    GRANT = "grant"
    BONUS = "bonus"
    REFUND = "refund"
    USAGE = "usage"
    ADJUSTMENT = "adjustment"
    EXPIRATION = "expiration"


class TransactionStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


# Kinds that may only increase / only decrease the balance; adjustment goes either way
CREDIT_KINDS = {TransactionKind.GRANT, TransactionKind.BONUS, TransactionKind.REFUND}
DEBIT_KINDS = {TransactionKind.USAGE, TransactionKind.EXPIRATION}


class AccountBalance(Base):
    """Materialized balance; only ever written together with a CreditTransaction."""

    __tablename__ = "account_balances"
    __table_args__ = (
        CheckConstraint("available_credits >= 0", name="ck_account_balances_available_non_negative"),
        CheckConstraint(
            "available_credits = total_credits - used_credits", name="ck_account_balances_available_consistent"
        ),
    )

    account_id: Mapped[str] = mapped_column(String(128), primary_key=True)

    total_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # lifetime granted
    used_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # lifetime consumed
    available_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)


class CreditTransaction(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        # Idempotency key: a reference may be applied once per account and kind
        UniqueConstraint("account_id", "kind", "reference_id", name="uq_credit_tx_account_kind_reference"),
        Index("ix_credit_tx_account_created", "account_id", "created_at"),
        Index("ix_credit_tx_account_rule", "account_id", "rule_name"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # grant, bonus, refund, usage, adjustment, expiration
    amount: Mapped[int] = mapped_column(Integer, nullable=False)  # positive adds to total, negative adds to used
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    rule_name: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(16), default=TransactionStatus.COMPLETED.value, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class CreditUsageLog(Base):
    __tablename__ = "credit_usage_log"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    transaction_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    account_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)
    usage_type: Mapped[str] = mapped_column(String(64), nullable=False)  # interview_start, ...
    reference_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    credits_used: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)


class CreditRule(Base):
    __tablename__ = "credit_rules"

    rule_name: Mapped[str] = mapped_column(String(64), primary_key=True)
    rule_type: Mapped[str] = mapped_column(String(32), default="one_time", nullable=False)  # one_time, recurring
    credit_amount: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # {"trigger": "login", "min_interval_hours": 24}
    conditions: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    max_uses_per_account: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # None = unlimited

    valid_from: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)  # None = open ended
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)

    @property
    def trigger(self) -> Optional[str]:
        return (self.conditions or {}).get("trigger")

    @property
    def min_interval_hours(self) -> Optional[float]:
        value = (self.conditions or {}).get("min_interval_hours")
        return float(value) if value is not None else None

    def is_valid_at(self, now: datetime) -> bool:
        if not self.is_active:
            return False
        if self.valid_from and self.valid_from > now:
            return False
        return self.valid_until is None or self.valid_until > now
