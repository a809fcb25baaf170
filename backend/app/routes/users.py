"""API routes for the signed-in user's credit balances and draw entries."""
from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from ..schemas.draws import DrawEntryListResponse, DrawEntrySummary
from ..schemas.membership import CreditBalanceResponse, CreditsResponse
from ..services.entitlements import get_credit_ledger, get_draw_entry_guard
from .dependencies import get_current_user

router = APIRouter(prefix="/api/users", tags=["users"])


@router.get("/credits", response_model=CreditsResponse)
def get_my_credits(
    history_limit: int = Query(20, alias="historyLimit", ge=0, le=200),
    *,
    current_user=Depends(get_current_user),
) -> CreditsResponse:
    ledger = get_credit_ledger()
    user_id = str(current_user.id)
    history = ledger.history(user_id, limit=history_limit) if history_limit else []
    return CreditsResponse(
        credits=CreditBalanceResponse.from_balance(ledger.balance(user_id)),
        history=list(history),
    )


@router.get("/entries", response_model=DrawEntryListResponse)
def list_my_entries(*, current_user=Depends(get_current_user)) -> DrawEntryListResponse:
    entries = get_draw_entry_guard().list_entries(str(current_user.id))
    return DrawEntryListResponse(entries=[DrawEntrySummary.from_entry(entry) for entry in entries])
