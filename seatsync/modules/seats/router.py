from datetime import date
from typing import List

from fastapi import APIRouter, Depends, Query

from seatsync.auth.deps import get_current_user_id, get_services
from seatsync.schemas.seat import (
    AvailabilityResponse,
    GroupHoldResponse,
    HoldManyRequest,
    HoldRequest,
    HoldResponse,
    ReleaseRequest,
    ReleaseResponse,
    UserHold,
)

router = APIRouter()


@router.get("/")
async def seats_root():
    return {"module": "seats", "status": "ok"}


@router.get("/{scope_id}/availability", response_model=AvailabilityResponse)
async def availability(
    scope_id: int,
    departure_date: date = Query(..., alias="date"),
    user_id: str = Depends(get_current_user_id),
    services=Depends(get_services),
):
    """Per-seat status for one route and date, personalized for the caller."""
    info = await services.holds.resolve_scope(scope_id)
    seats = await services.projector.snapshot(info.vehicle_id, departure_date, user_id)
    return AvailabilityResponse(scope_id=info.route_id, departure_date=departure_date, seats=seats)


@router.post("/holds", response_model=HoldResponse)
async def create_hold(req: HoldRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)):
    outcome = await services.holds.hold(user_id, req.scope_id, req.seat_label, req.departure_date, req.duration_override)
    return HoldResponse(
        seat_label=outcome.seat_label, status=outcome.status, expires_at=outcome.expires_at, extended=outcome.extended
    )


@router.post("/holds/batch", response_model=GroupHoldResponse)
async def create_holds(req: HoldManyRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)):
    result = await services.holds.hold_many(
        user_id,
        req.scope_id,
        req.seat_labels,
        req.departure_date,
        duration_minutes=req.duration_override,
        all_or_nothing=req.all_or_nothing,
    )
    return GroupHoldResponse(
        held=[
            HoldResponse(seat_label=o.seat_label, status=o.status, expires_at=o.expires_at, extended=o.extended)
            for o in result.held
        ],
        failed=result.failed,
        rolled_back=result.rolled_back,
    )


@router.post("/holds/release", response_model=ReleaseResponse)
async def release_hold(req: ReleaseRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)):
    await services.holds.release(user_id, req.scope_id, req.seat_label, req.departure_date)
    return ReleaseResponse(seat_label=req.seat_label)


@router.get("/holds/mine", response_model=List[UserHold])
async def my_holds(user_id: str = Depends(get_current_user_id), services=Depends(get_services)):
    holds = await services.holds.user_holds(user_id)
    return [
        UserHold(
            vehicle_id=ref.vehicle_id,
            departure_date=ref.departure_date,
            seat_label=ref.seat_label,
            expires_at=hold.expires_at,
        )
        for ref, hold in holds
    ]
