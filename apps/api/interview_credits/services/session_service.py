from __future__ import annotations

import logging
import math
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Callable, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from interview_credits.core.config import settings
from interview_credits.core.exceptions import (
    InsufficientBalanceError,
    InsufficientCreditsError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from interview_credits.db.retry import run_with_store_retry
from interview_credits.models.billing import TransactionKind
from interview_credits.models.interview_sessions import (
    InterviewSession,
    SessionStatus,
    SessionType,
    can_transition,
)
from interview_credits.repositories.sessions_repository import SessionsRepository
from interview_credits.services.ledger_service import LedgerService

logger = logging.getLogger(__name__)

DEFAULT_COMPANY = "General Interview"
DEFAULT_POSITION = "Software Engineer"
DEFAULT_LANGUAGE = "English"

_CENT = Decimal("0.01")


@dataclass
class SessionDTO:
    id: str
    account_id: str
    session_type: str
    status: str
    company: str
    position: str
    language: Optional[str]
    ai_model: Optional[str]
    extra_context: Optional[str]
    resume_reference: Optional[str]
    planned_duration_minutes: int
    session_metadata: dict
    session_data: dict
    ai_usage_count: int
    started_at: Optional[datetime]
    ended_at: Optional[datetime]
    duration_minutes: Optional[Decimal]
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_model(cls, s: InterviewSession) -> "SessionDTO":
        return cls(
            id=s.id,
            account_id=s.account_id,
            session_type=s.session_type,
            status=s.status,
            company=s.company,
            position=s.position,
            language=s.language,
            ai_model=s.ai_model,
            extra_context=s.extra_context,
            resume_reference=s.resume_reference,
            planned_duration_minutes=s.planned_duration_minutes,
            session_metadata=dict(s.session_metadata or {}),
            session_data=dict(s.session_data or {}),
            ai_usage_count=s.ai_usage_count,
            started_at=s.started_at,
            ended_at=s.ended_at,
            duration_minutes=s.duration_minutes,
            created_at=s.created_at,
            updated_at=s.updated_at,
        )


@dataclass
class StartResult:
    session: SessionDTO
    credits_deducted: int


@dataclass
class SessionPage:
    sessions: list[SessionDTO]
    page: int
    limit: int
    total: int

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def compute_duration(started_at: datetime, ended_at: datetime) -> tuple[Decimal, dict]:
    """Elapsed minutes rounded half-up to 2 places (never below 0.01), plus a breakdown.

    99 s -> 1.65, 125 s -> 2.08.
    """
    elapsed = Decimal(str(max((ended_at - started_at).total_seconds(), 0.0)))
    decimal_minutes = (elapsed / 60).quantize(_CENT, rounding=ROUND_HALF_UP)
    total_seconds = int(elapsed.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    minutes, seconds = divmod(total_seconds, 60)
    breakdown = {
        "total_seconds": total_seconds,
        "decimal_minutes": float(decimal_minutes),
        "minutes": minutes,
        "seconds": seconds,
        "formatted": f"{minutes}m {seconds}s",
    }
    return max(decimal_minutes, _CENT), breakdown


# Stored for sessions completed without ever starting
ZERO_DURATION_BREAKDOWN = {
    "total_seconds": 0,
    "decimal_minutes": 0.0,
    "minutes": 0,
    "seconds": 0,
    "formatted": "0m 0s",
}


def _parse_enum(enum_cls, value: str, field: str):
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise ValidationError(f"Invalid {field}: {value}. Expected one of: {allowed}")


class InterviewSessionService:
    """Interview session lifecycle: pending -> active -> completed | cancelled.

    Every mutation runs under the owning account's lock so it serializes with
    ledger writes for the same account. A full session pays its one credit at
    start, in the same unit of work as the pending -> active transition.
    """

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

    async def create(
        self,
        account_id: str,
        session_type: str,
        company: Optional[str] = None,
        position: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        *,
        language: Optional[str] = None,
        ai_model: Optional[str] = None,
        extra_context: Optional[str] = None,
        resume_reference: Optional[str] = None,
        planned_duration_minutes: Optional[int] = None,
    ) -> SessionDTO:
        if not account_id:
            raise ValidationError("account_id is required")
        stype = _parse_enum(SessionType, session_type, "session type")
        if planned_duration_minutes is not None and planned_duration_minutes <= 0:
            raise ValidationError("planned_duration_minutes must be positive")

        if stype is SessionType.FULL:
            # Advisory only; the debit in start() is what enforces the balance
            cost = settings.full_session_credit_cost
            if not await self.ledger.has_sufficient_balance(account_id, cost):
                balance = await self.ledger.get_balance(account_id)
                raise InsufficientCreditsError(
                    "Insufficient credits. Full interview sessions require 1 credit.",
                    available=balance.available,
                    required=cost,
                )

        if planned_duration_minutes is None:
            planned_duration_minutes = (
                settings.trial_session_minutes if stype is SessionType.TRIAL else settings.full_session_minutes
            )

        now = self.clock()
        row = InterviewSession(
            id=str(uuid.uuid4()),
            account_id=account_id,
            session_type=stype.value,
            status=SessionStatus.PENDING.value,
            company=(company or "").strip() or DEFAULT_COMPANY,
            position=(position or "").strip() or DEFAULT_POSITION,
            language=language or DEFAULT_LANGUAGE,
            ai_model=ai_model,
            extra_context=extra_context,
            resume_reference=resume_reference,
            planned_duration_minutes=planned_duration_minutes,
            session_metadata=dict(metadata or {}),
            session_data={},
            ai_usage_count=0,
            created_at=now,
            updated_at=now,
        )

        async def _insert() -> None:
            async with self.session_factory() as db:
                async with db.begin():
                    await SessionsRepository(db).insert(row)

        await run_with_store_retry(_insert, label="create_session")
        logger.info("Created %s session %s for account %s", stype.value, row.id, account_id)
        return SessionDTO.from_model(row)

    async def get(self, account_id: str, session_id: str) -> SessionDTO:
        async def _read() -> SessionDTO:
            async with self.session_factory() as db:
                return SessionDTO.from_model(await self._load_owned(db, account_id, session_id))

        return await run_with_store_retry(_read, label="get_session")

    async def list_sessions(self, account_id: str, *, page: int = 1, limit: int = 10) -> SessionPage:
        page = max(1, int(page))
        limit = max(1, min(int(limit), 100))

        async def _read() -> SessionPage:
            async with self.session_factory() as db:
                repo = SessionsRepository(db)
                rows = await repo.list_for_account(account_id, offset=(page - 1) * limit, limit=limit)
                total = await repo.count_for_account(account_id)
                return SessionPage(
                    sessions=[SessionDTO.from_model(r) for r in rows], page=page, limit=limit, total=total
                )

        return await run_with_store_retry(_read, label="list_sessions")

    async def start(self, account_id: str, session_id: str) -> StartResult:
        """pending -> active; a full session pays one credit in the same unit.

        Starting an already active session returns it unchanged and charges nothing.
        """

        async def _attempt():
            async with self.ledger.account_lock(account_id):
                async with self.session_factory() as db:
                    try:
                        async with db.begin():
                            session = await self._load_owned(db, account_id, session_id, for_update=True)
                            status = SessionStatus(session.status)
                            if status is SessionStatus.ACTIVE:
                                return session, None
                            self._check_transition(session, SessionStatus.ACTIVE)

                            debit = None
                            if session.session_type == SessionType.FULL.value:
                                debit, created = await self.ledger.apply_in_unit(
                                    db,
                                    account_id,
                                    TransactionKind.USAGE.value,
                                    -settings.full_session_credit_cost,
                                    description=f"session:{session.id}",
                                    reference_id=session.id,
                                )
                                if not created:
                                    debit = None

                            now = self.clock()
                            session.status = SessionStatus.ACTIVE.value
                            if session.started_at is None:
                                session.started_at = now
                            session.updated_at = now
                            await SessionsRepository(db).save(session)
                            return session, debit
                    except InsufficientBalanceError as e:
                        raise InsufficientCreditsError(
                            "Insufficient credits to start a full interview session",
                            available=e.available,
                            required=e.required,
                        )

        session, debit = await run_with_store_retry(_attempt, label="start_session")
        if debit is not None:
            await self.ledger.log_usage(debit, "interview_start")
        logger.info(
            "Started %s session %s for account %s (credits deducted: %d)",
            session.session_type, session.id, account_id, -debit.amount if debit is not None else 0,
        )
        return StartResult(
            session=SessionDTO.from_model(session),
            credits_deducted=-debit.amount if debit is not None else 0,
        )

    async def record_usage(self, account_id: str, session_id: str) -> int:
        """Count one AI answer against an active session. Never touches the ledger."""

        async def _attempt() -> int:
            async with self.session_factory() as db:
                async with db.begin():
                    session = await self._load_owned(db, account_id, session_id, for_update=True)
                    if session.status != SessionStatus.ACTIVE.value:
                        raise InvalidStateError(f"Cannot record usage on a {session.status} session")
                    count = await SessionsRepository(db).increment_usage(session_id, self.clock())
                    if count is None:
                        # Completed or cancelled after the status read
                        raise InvalidStateError("Cannot record usage on a session that is no longer active")
                    return count

        count = await run_with_store_retry(_attempt, label="record_usage")
        logger.debug("Session %s AI usage count is now %d", session_id, count)
        return count

    async def complete(self, account_id: str, session_id: str) -> SessionDTO:
        """active|pending -> completed; duration is written once, here."""

        async def _attempt() -> InterviewSession:
            async with self.ledger.account_lock(account_id):
                async with self.session_factory() as db:
                    async with db.begin():
                        session = await self._load_owned(db, account_id, session_id, for_update=True)
                        self._check_transition(session, SessionStatus.COMPLETED)
                        now = self.clock()
                        session.status = SessionStatus.COMPLETED.value
                        session.ended_at = now
                        session.updated_at = now
                        if session.started_at is not None:
                            duration, breakdown = compute_duration(session.started_at, now)
                            session.duration_minutes = duration
                            session.session_data = {**(session.session_data or {}), "duration_breakdown": breakdown}
                        else:
                            session.duration_minutes = Decimal("0")
                            session.session_data = {
                                **(session.session_data or {}),
                                "duration_breakdown": dict(ZERO_DURATION_BREAKDOWN),
                            }
                        await SessionsRepository(db).save(session)
                        return session

        session = await run_with_store_retry(_attempt, label="complete_session")
        logger.info("Completed session %s for account %s (%s min)", session.id, account_id, session.duration_minutes)
        return SessionDTO.from_model(session)

    async def cancel(self, account_id: str, session_id: str) -> SessionDTO:
        """pending|active -> cancelled. A credit paid at start is not refunded."""

        async def _attempt() -> InterviewSession:
            async with self.ledger.account_lock(account_id):
                async with self.session_factory() as db:
                    async with db.begin():
                        session = await self._load_owned(db, account_id, session_id, for_update=True)
                        self._check_transition(session, SessionStatus.CANCELLED)
                        now = self.clock()
                        session.status = SessionStatus.CANCELLED.value
                        session.ended_at = now
                        session.updated_at = now
                        await SessionsRepository(db).save(session)
                        return session

        session = await run_with_store_retry(_attempt, label="cancel_session")
        logger.info("Cancelled session %s for account %s", session.id, account_id)
        return SessionDTO.from_model(session)

    async def delete(self, account_id: str, session_id: str) -> None:
        """Remove a session the caller owns. Credits already paid stay spent."""

        async def _attempt() -> None:
            async with self.ledger.account_lock(account_id):
                async with self.session_factory() as db:
                    async with db.begin():
                        session = await self._load_owned(db, account_id, session_id, for_update=True)
                        await SessionsRepository(db).delete(session)

        await run_with_store_retry(_attempt, label="delete_session")
        logger.info("Deleted session %s for account %s", session_id, account_id)

    async def _load_owned(
        self, db: AsyncSession, account_id: str, session_id: str, *, for_update: bool = False
    ) -> InterviewSession:
        session = await SessionsRepository(db).get(session_id, for_update=for_update)
        # Foreign sessions are indistinguishable from missing ones
        if session is None or session.account_id != account_id:
            raise NotFoundError("Session not found")
        return session

    @staticmethod
    def _check_transition(session: InterviewSession, target: SessionStatus) -> None:
        current = SessionStatus(session.status)
        if not can_transition(current, target):
            raise InvalidStateError(f"Cannot move session from {current.value} to {target.value}")
