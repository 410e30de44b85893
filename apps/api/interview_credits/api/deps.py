from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from interview_credits.core.config import settings
from interview_credits.core.exceptions import ForbiddenError
from interview_credits.db.async_session import get_session_factory
from interview_credits.services.identity import verify_caller
from interview_credits.services.ledger_service import LedgerService
from interview_credits.services.rule_engine import RuleEngine
from interview_credits.services.session_service import InterviewSessionService


def get_ledger(session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory)) -> LedgerService:
    return LedgerService(session_factory)


def get_rule_engine(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ledger: LedgerService = Depends(get_ledger),
) -> RuleEngine:
    return RuleEngine(session_factory, ledger)


def get_session_service(
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    ledger: LedgerService = Depends(get_ledger),
) -> InterviewSessionService:
    return InterviewSessionService(session_factory, ledger)


def get_current_account(authorization: Optional[str] = Header(default=None)) -> str:
    """Account id of the verified caller."""
    return verify_caller(authorization)


def require_admin(account_id: str = Depends(get_current_account)) -> str:
    if account_id not in settings.admin_account_ids:
        raise ForbiddenError("Admin access required")
    return account_id
