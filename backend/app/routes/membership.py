"""API routes for membership lifecycle and plan catalog."""
from __future__ import annotations

from typing import Callable

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..entitlements.errors import EntitlementError
from ..entitlements.models import MembershipSnapshot
from ..schemas.membership import (
    BoostPackListResponse,
    MembershipSnapshotResponse,
    PlanChangeRequest,
    PlanListResponse,
    RenewalListResponse,
)
from ..services.entitlements import get_catalog, get_membership_state_machine
from .dependencies import get_current_user

router = APIRouter(prefix="/api/membership", tags=["membership"])


def _apply(action: Callable[[], MembershipSnapshot]) -> MembershipSnapshotResponse:
    try:
        snapshot = action()
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    except LookupError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return MembershipSnapshotResponse.from_snapshot(snapshot)


@router.get("/plans", response_model=PlanListResponse)
def list_plans() -> PlanListResponse:
    return PlanListResponse(plans=list(get_catalog().list_plans()))


@router.get("/boost-packs", response_model=BoostPackListResponse)
def list_boost_packs() -> BoostPackListResponse:
    return BoostPackListResponse(boost_packs=list(get_catalog().list_boost_packs()))


@router.get("/me", response_model=MembershipSnapshotResponse)
def get_my_membership(*, current_user=Depends(get_current_user)) -> MembershipSnapshotResponse:
    machine = get_membership_state_machine()
    return _apply(lambda: machine.snapshot(str(current_user.id)))


@router.get("/me/renewals", response_model=RenewalListResponse)
def list_my_renewals(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    *,
    current_user=Depends(get_current_user),
) -> RenewalListResponse:
    machine = get_membership_state_machine()
    try:
        renewals, total = machine.list_renewals(str(current_user.id), page=page, limit=limit)
    except EntitlementError as exc:
        raise exc.to_http_exception() from exc
    return RenewalListResponse(renewals=list(renewals), page=page, limit=limit, total=total)


@router.post("/me/upgrade", response_model=MembershipSnapshotResponse)
def change_plan(
    payload: PlanChangeRequest,
    *,
    current_user=Depends(get_current_user),
) -> MembershipSnapshotResponse:
    """Schedule an upgrade or downgrade; the direction follows the plan ordering."""

    machine = get_membership_state_machine()
    return _apply(lambda: machine.request_plan_change(str(current_user.id), payload.new_plan_id))


@router.post("/me/pause", response_model=MembershipSnapshotResponse)
def pause_membership(*, current_user=Depends(get_current_user)) -> MembershipSnapshotResponse:
    machine = get_membership_state_machine()
    return _apply(lambda: machine.pause(str(current_user.id)))


@router.post("/me/resume", response_model=MembershipSnapshotResponse)
def resume_membership(*, current_user=Depends(get_current_user)) -> MembershipSnapshotResponse:
    machine = get_membership_state_machine()
    return _apply(lambda: machine.resume(str(current_user.id)))


@router.post("/me/cancel", response_model=MembershipSnapshotResponse)
def cancel_membership(*, current_user=Depends(get_current_user)) -> MembershipSnapshotResponse:
    machine = get_membership_state_machine()
    return _apply(lambda: machine.cancel(str(current_user.id)))


@router.post("/me/cancel-upgrade", response_model=MembershipSnapshotResponse)
def cancel_pending_upgrade(*, current_user=Depends(get_current_user)) -> MembershipSnapshotResponse:
    machine = get_membership_state_machine()
    return _apply(lambda: machine.cancel_pending_upgrade(str(current_user.id)))
