from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from interview_credits.api.deps import get_current_account, get_session_service
from interview_credits.services.session_service import InterviewSessionService

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


class CreateSessionRequest(BaseModel):
    session_type: str = Field(..., description="trial or full")
    company: Optional[str] = None
    position: Optional[str] = None
    language: Optional[str] = None
    ai_model: Optional[str] = None
    extra_context: Optional[str] = None
    resume_reference: Optional[str] = None
    planned_duration_minutes: Optional[int] = None
    metadata: Optional[dict[str, Any]] = None


@router.post("", status_code=201)
async def create_session(
    body: CreateSessionRequest,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    session = await service.create(
        account_id,
        body.session_type,
        body.company,
        body.position,
        body.metadata,
        language=body.language,
        ai_model=body.ai_model,
        extra_context=body.extra_context,
        resume_reference=body.resume_reference,
        planned_duration_minutes=body.planned_duration_minutes,
    )
    return {"session": session}


@router.get("")
async def list_sessions(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    result = await service.list_sessions(account_id, page=page, limit=limit)
    return {
        "sessions": result.sessions,
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "total_pages": result.total_pages,
        },
    }


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    return {"session": await service.get(account_id, session_id)}


@router.post("/{session_id}/start")
async def start_session(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    result = await service.start(account_id, session_id)
    return {"session": result.session, "credits_deducted": result.credits_deducted}


@router.post("/{session_id}/usage")
async def record_usage(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    count = await service.record_usage(account_id, session_id)
    return {"session_id": session_id, "ai_usage_count": count}


@router.post("/{session_id}/complete")
async def complete_session(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    session = await service.complete(account_id, session_id)
    return {"session": session, "duration_minutes": session.duration_minutes}


@router.post("/{session_id}/cancel")
async def cancel_session(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    return {"session": await service.cancel(account_id, session_id)}


@router.delete("/{session_id}")
async def delete_session(
    session_id: str,
    account_id: str = Depends(get_current_account),
    service: InterviewSessionService = Depends(get_session_service),
):
    await service.delete(account_id, session_id)
    return {"success": True, "session_id": session_id}
