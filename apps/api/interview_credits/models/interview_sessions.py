from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from interview_credits.db.base import Base
from sqlalchemy import JSON, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column


class SessionType(str, Enum):
    TRIAL = "trial"  # free
    FULL = "full"  # costs one credit at start


class SessionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


# Allowed forward transitions; terminal states have none
SESSION_TRANSITIONS: dict[SessionStatus, frozenset[SessionStatus]] = {
    SessionStatus.PENDING: frozenset({SessionStatus.ACTIVE, SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.ACTIVE: frozenset({SessionStatus.COMPLETED, SessionStatus.CANCELLED}),
    SessionStatus.COMPLETED: frozenset(),
    SessionStatus.CANCELLED: frozenset(),
}


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in SESSION_TRANSITIONS[current]


class InterviewSession(Base):
    __tablename__ = "interview_sessions"
    __table_args__ = (
        Index("ix_interview_sessions_account_created", "account_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    account_id: Mapped[str] = mapped_column(String(128), index=True, nullable=False)

    session_type: Mapped[str] = mapped_column(String(16), nullable=False)  # trial, full
    status: Mapped[str] = mapped_column(String(16), default=SessionStatus.PENDING.value, nullable=False)

    company: Mapped[str] = mapped_column(String(255), nullable=False)
    position: Mapped[str] = mapped_column(String(255), nullable=False)
    language: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    ai_model: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    extra_context: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    resume_reference: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    planned_duration_minutes: Mapped[int] = mapped_column(Integer, nullable=False)

    # Opaque pass-through from metadata producers; never inspected here
    session_metadata: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    # Derived data such as the duration breakdown
    session_data: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)

    ai_usage_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    duration_minutes: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow,
                                                 nullable=False)
