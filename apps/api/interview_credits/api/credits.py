from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel

from interview_credits.api.deps import get_current_account, get_ledger, get_rule_engine
from interview_credits.core.exceptions import InvalidAmountError
from interview_credits.models.billing import TransactionKind
from interview_credits.services.ledger_service import LedgerService
from interview_credits.services.rule_engine import RuleEngine

router = APIRouter(prefix="/api/credits", tags=["credits"])


class ValidateRequest(BaseModel):
    required_credits: int = 1
    action: str = "interview_start"


class EvaluateRulesRequest(BaseModel):
    trigger: str = "login"
    metadata: Optional[dict[str, Any]] = None


class AllocateRequest(BaseModel):
    rule_name: str


class DeductRequest(BaseModel):
    amount: int
    description: Optional[str] = None
    reference_id: Optional[str] = None
    usage_type: str = "interview_start"


@router.get("/balance")
async def get_balance(
    account_id: str = Depends(get_current_account),
    ledger: LedgerService = Depends(get_ledger),
):
    """Return the caller's credit balance."""
    balance = await ledger.get_balance(account_id)
    return balance.as_dict()


@router.post("/validate")
async def validate_credits(
    body: ValidateRequest,
    account_id: str = Depends(get_current_account),
    ledger: LedgerService = Depends(get_ledger),
):
    return await ledger.validate(account_id, body.required_credits, body.action)


@router.get("/history")
async def credit_history(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=200),
    kind: str = Query("all"),
    account_id: str = Depends(get_current_account),
    ledger: LedgerService = Depends(get_ledger),
):
    result = await ledger.list_transactions(account_id, kind=kind, page=page, limit=limit)
    return {
        "transactions": result.transactions,
        "pagination": {
            "page": result.page,
            "limit": result.limit,
            "total": result.total,
            "total_pages": result.total_pages,
        },
        "current_balance": result.current.as_dict(),
    }


@router.post("/evaluate-rules")
async def evaluate_rules(
    body: EvaluateRulesRequest,
    account_id: str = Depends(get_current_account),
    engine: RuleEngine = Depends(get_rule_engine),
):
    results = await engine.evaluate(account_id, body.trigger, body.metadata)
    allocated = [
        {"rule_name": r.rule_name, "amount": r.amount, "rule_type": r.rule_type}
        for r in results
        if r.allocated
    ]
    errors = [{"rule_name": r.rule_name, "error": r.error} for r in results if not r.allocated]
    return {
        "allocated": allocated,
        "total_credits": sum(a["amount"] for a in allocated),
        "errors": errors,
    }


@router.post("/allocate")
async def allocate_rule(
    body: AllocateRequest,
    account_id: str = Depends(get_current_account),
    engine: RuleEngine = Depends(get_rule_engine),
):
    result = await engine.allocate_rule(account_id, body.rule_name)
    return {"allocation": result.as_dict()}


@router.post("/deduct")
async def deduct_credits(
    body: DeductRequest,
    account_id: str = Depends(get_current_account),
    ledger: LedgerService = Depends(get_ledger),
):
    """Spend credits directly. Replaying a reference_id returns the original debit."""
    if body.amount <= 0:
        raise InvalidAmountError("Amount must be a positive integer")
    txn = await ledger.apply_transaction(
        account_id,
        TransactionKind.USAGE.value,
        -body.amount,
        body.description or f"Credit usage: {body.usage_type}",
        body.reference_id,
        usage_type=body.usage_type,
    )
    balance = await ledger.get_balance(account_id)
    return {"transaction": txn, "credits": balance.as_dict()}
