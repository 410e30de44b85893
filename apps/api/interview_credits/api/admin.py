from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from interview_credits.api.deps import get_current_account, get_ledger, get_rule_engine, require_admin
from interview_credits.core.config import settings
from interview_credits.core.exceptions import ValidationError
from interview_credits.models.billing import TransactionKind
from interview_credits.services.ledger_service import LedgerService
from interview_credits.services.rule_engine import RuleEngine

router = APIRouter(prefix="/api/admin", tags=["admin"])

# Kinds an operator may apply by hand; usage and expiration come from the system
_ADMIN_KINDS = {TransactionKind.GRANT.value, TransactionKind.REFUND.value, TransactionKind.ADJUSTMENT.value}


@router.get("/me")
async def admin_me(account_id: str = Depends(get_current_account)):
    return {"account_id": account_id, "is_admin": account_id in settings.admin_account_ids}


class ApplyCreditsBody(BaseModel):
    kind: str = TransactionKind.GRANT.value
    amount: int
    description: Optional[str] = None
    # Payment or ticket id; makes the call safe to retry
    reference_id: Optional[str] = None


@router.post("/accounts/{account_id}/credits")
async def admin_apply_credits(
    account_id: str,
    body: ApplyCreditsBody,
    _admin: str = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger),
):
    """Grant, refund or adjust an account's credits. Payment flows terminate here."""
    if body.kind not in _ADMIN_KINDS:
        raise ValidationError(f"Kind must be one of: {', '.join(sorted(_ADMIN_KINDS))}")
    txn = await ledger.apply_transaction(
        account_id,
        body.kind,
        body.amount,
        body.description or f"Admin {body.kind}",
        body.reference_id,
    )
    balance = await ledger.get_balance(account_id)
    return {"transaction": txn, "balance": balance.as_dict()}


@router.get("/accounts/{account_id}/reconcile")
async def admin_reconcile(
    account_id: str,
    _admin: str = Depends(require_admin),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.reconcile(account_id)


class RuleBody(BaseModel):
    credit_amount: int
    rule_type: str = "one_time"
    description: Optional[str] = None
    conditions: Optional[dict[str, Any]] = None
    max_uses_per_account: Optional[int] = None
    valid_from: Optional[datetime] = None
    valid_until: Optional[datetime] = None
    is_active: bool = True


@router.get("/rules")
async def admin_list_rules(
    active_only: bool = Query(False),
    _admin: str = Depends(require_admin),
    engine: RuleEngine = Depends(get_rule_engine),
):
    return {"rules": await engine.list_rules(active_only=active_only)}


@router.put("/rules/{rule_name}")
async def admin_upsert_rule(
    rule_name: str,
    body: RuleBody,
    _admin: str = Depends(require_admin),
    engine: RuleEngine = Depends(get_rule_engine),
):
    rule = await engine.upsert_rule(
        rule_name,
        credit_amount=body.credit_amount,
        rule_type=body.rule_type,
        description=body.description,
        conditions=body.conditions,
        max_uses_per_account=body.max_uses_per_account,
        valid_from=body.valid_from,
        valid_until=body.valid_until,
        is_active=body.is_active,
    )
    return {"rule": rule}
