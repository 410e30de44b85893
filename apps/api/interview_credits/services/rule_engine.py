"""
Data-driven credit rules.

A rule is a row in credit_rules. Evaluation walks the active rules for a
trigger and, per rule, checks the per-account cap and the minimum interval
and applies the bonus inside one unit of work under the account lock, so
concurrent triggers for the same account cannot both pass the cap check.
"""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from interview_credits.core.config import settings
from interview_credits.core.exceptions import (
    InvalidAmountError,
    NotFoundError,
    RuleLimitReachedError,
    ServiceError,
    ValidationError,
)
from interview_credits.db.retry import run_with_store_retry
from interview_credits.models.billing import CreditRule, TransactionKind
from interview_credits.repositories.ledger_repository import LedgerRepository
from interview_credits.repositories.rules_repository import RulesRepository
from interview_credits.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

WELCOME_BONUS_RULE = "welcome_bonus"
RULE_TYPES = ("one_time", "recurring")


def _naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    # Timestamps are stored as naive UTC
    if value is not None and value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


@dataclass
class AllocationResult:
    rule_name: str
    amount: int
    rule_type: str
    allocated: bool = True
    transaction_id: Optional[str] = None
    error: Optional[str] = None

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass
class RuleDTO:
    rule_name: str
    rule_type: str
    credit_amount: int
    description: Optional[str]
    conditions: dict
    max_uses_per_account: Optional[int]
    valid_from: datetime
    valid_until: Optional[datetime]
    is_active: bool

    @classmethod
    def from_model(cls, rule: CreditRule) -> "RuleDTO":
        return cls(
            rule_name=rule.rule_name,
            rule_type=rule.rule_type,
            credit_amount=rule.credit_amount,
            description=rule.description,
            conditions=dict(rule.conditions or {}),
            max_uses_per_account=rule.max_uses_per_account,
            valid_from=rule.valid_from,
            valid_until=rule.valid_until,
            is_active=rule.is_active,
        )


class RuleEngine:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: LedgerService,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.clock = clock or ledger.clock

    async def evaluate(self, account_id: str, trigger: str, metadata: Optional[dict[str, Any]] = None) -> list[AllocationResult]:
        """Apply every active rule bound to `trigger`.

        Returns one entry per rule that allocated, plus one entry with
        allocated=False for each rule whose ledger write failed. Rules
        skipped by their cap or interval do not appear.
        """
        if not account_id:
            raise ValidationError("account_id is required")
        now = self.clock()

        async def _load() -> list[CreditRule]:
            async with self.session_factory() as db:
                return await RulesRepository(db).list_active(now)

        rules = [r for r in await run_with_store_retry(_load, label="list_active_rules") if r.trigger == trigger]

        results: list[AllocationResult] = []
        for rule in rules:
            try:
                result = await self._allocate(account_id, rule)
            except (ServiceError, SQLAlchemyError) as e:
                logger.warning("Rule %s failed for account %s: %s", rule.rule_name, account_id, e)
                results.append(
                    AllocationResult(
                        rule_name=rule.rule_name,
                        amount=rule.credit_amount,
                        rule_type=rule.rule_type,
                        allocated=False,
                        error=str(e),
                    )
                )
                continue
            if result is not None:
                results.append(result)

        allocated = [r for r in results if r.allocated]
        if allocated:
            logger.info(
                "Trigger %s for account %s allocated %d credits from %d rule(s)",
                trigger, account_id, sum(r.amount for r in allocated), len(allocated),
            )
        return results

    async def allocate_rule(self, account_id: str, rule_name: str) -> AllocationResult:
        """Allocate one named rule, failing loudly where evaluate() would skip."""
        now = self.clock()

        async def _load() -> Optional[CreditRule]:
            async with self.session_factory() as db:
                return await RulesRepository(db).get(rule_name)

        rule = await run_with_store_retry(_load, label="get_rule")
        if rule is None or not rule.is_valid_at(now):
            raise NotFoundError(f"Rule {rule_name} not found or inactive")

        result = await self._allocate(account_id, rule)
        if result is None:
            raise RuleLimitReachedError(f"Rule {rule_name} has already been allocated to this account")
        return result

    async def _allocate(self, account_id: str, rule: CreditRule) -> Optional[AllocationResult]:
        """Cap check, interval check and bonus write in one unit; None when skipped."""

        async def _attempt() -> Optional[AllocationResult]:
            async with self.ledger.account_lock(account_id):
                async with self.session_factory() as db:
                    async with db.begin():
                        ledger_repo = LedgerRepository(db)
                        # Row lock first so cross-process evaluators queue behind us
                        await ledger_repo.lock_balance(account_id)

                        if rule.max_uses_per_account is not None:
                            used = await ledger_repo.count_rule_allocations(account_id, rule.rule_name)
                            if used >= rule.max_uses_per_account:
                                logger.debug(
                                    "Skipping rule %s for %s: %d/%d uses",
                                    rule.rule_name, account_id, used, rule.max_uses_per_account,
                                )
                                return None

                        interval = rule.min_interval_hours
                        if interval is not None:
                            last = await ledger_repo.last_rule_allocation_at(account_id, rule.rule_name)
                            if last is not None and self.clock() - last < timedelta(hours=interval):
                                logger.debug(
                                    "Skipping rule %s for %s: last allocation at %s",
                                    rule.rule_name, account_id, last.isoformat(),
                                )
                                return None

                        txn, _ = await self.ledger.apply_in_unit(
                            db,
                            account_id,
                            TransactionKind.BONUS.value,
                            rule.credit_amount,
                            description=f"rule:{rule.rule_name}",
                            rule_name=rule.rule_name,
                        )
                        return AllocationResult(
                            rule_name=rule.rule_name,
                            amount=rule.credit_amount,
                            rule_type=rule.rule_type,
                            transaction_id=txn.id,
                        )

        return await run_with_store_retry(_attempt, label=f"allocate_rule({rule.rule_name})")

    # ====================
    # Catalog management
    # ====================

    async def list_rules(self, *, active_only: bool = False) -> list[RuleDTO]:
        async def _load() -> list[CreditRule]:
            async with self.session_factory() as db:
                repo = RulesRepository(db)
                return await (repo.list_active(self.clock()) if active_only else repo.list_all())

        return [RuleDTO.from_model(r) for r in await run_with_store_retry(_load, label="list_rules")]

    async def upsert_rule(
        self,
        rule_name: str,
        *,
        credit_amount: int,
        rule_type: str = "one_time",
        description: Optional[str] = None,
        conditions: Optional[dict] = None,
        max_uses_per_account: Optional[int] = None,
        valid_from: Optional[datetime] = None,
        valid_until: Optional[datetime] = None,
        is_active: bool = True,
    ) -> RuleDTO:
        if not rule_name:
            raise ValidationError("rule_name is required")
        if isinstance(credit_amount, bool) or not isinstance(credit_amount, int) or credit_amount <= 0:
            raise InvalidAmountError("Rule credit amount must be a positive integer")
        if max_uses_per_account is not None and max_uses_per_account < 1:
            raise ValidationError("max_uses_per_account must be at least 1")
        if rule_type not in RULE_TYPES:
            raise ValidationError(f"Invalid rule_type: {rule_type}. Expected one of: {', '.join(RULE_TYPES)}")
        if conditions and conditions.get("min_interval_hours") is not None:
            try:
                min_interval = float(conditions["min_interval_hours"])
            except (TypeError, ValueError):
                raise ValidationError("min_interval_hours must be a number")
            if min_interval < 0:
                raise ValidationError("min_interval_hours must not be negative")

        now = self.clock()
        async with self.session_factory() as db:
            async with db.begin():
                repo = RulesRepository(db)
                rule = await repo.get(rule_name)
                if rule is None:
                    rule = CreditRule(rule_name=rule_name, created_at=now)
                    created = True
                else:
                    created = False
                rule.rule_type = rule_type
                rule.credit_amount = credit_amount
                rule.description = description
                rule.conditions = dict(conditions or {})
                rule.max_uses_per_account = max_uses_per_account
                rule.valid_from = _naive_utc(valid_from) or rule.valid_from or now
                rule.valid_until = _naive_utc(valid_until)
                rule.is_active = is_active
                rule.updated_at = now
                if created:
                    await repo.insert(rule)
                else:
                    await repo.save(rule)
        logger.info("%s credit rule %s", "Created" if created else "Updated", rule_name)
        return RuleDTO.from_model(rule)

    async def ensure_default_rules(self) -> None:
        """Seed the welcome bonus rule if the catalog lacks it."""
        async with self.session_factory() as db:
            existing = await RulesRepository(db).get(WELCOME_BONUS_RULE)
        if existing is not None:
            return
        await self.upsert_rule(
            WELCOME_BONUS_RULE,
            credit_amount=settings.welcome_bonus_credits,
            rule_type="one_time",
            description="Welcome bonus for new users",
            conditions={"trigger": "login"},
            max_uses_per_account=1,
        )
