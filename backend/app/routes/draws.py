"""API routes for entering draws."""
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status

from ..entitlements.errors import EntitlementError
from ..schemas.draws import DrawEntryResponse
from ..services.entitlements import get_draw_entry_guard
from .dependencies import get_current_user

router = APIRouter(prefix="/api/draws", tags=["draws"])


@router.post("/{draw_id}/enter", response_model=DrawEntryResponse, status_code=status.HTTP_201_CREATED)
def enter_draw(
    draw_id: str,
    idempotency_key: Optional[str] = Header(None, alias="idempotency-key"),
    *,
    current_user=Depends(get_current_user),
) -> DrawEntryResponse:
    if not idempotency_key:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="idempotency-key header is required")

    guard = get_draw_entry_guard()
    try:
        result = guard.try_enter(str(current_user.id), draw_id, idempotency_key)
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return DrawEntryResponse.from_result(result)
