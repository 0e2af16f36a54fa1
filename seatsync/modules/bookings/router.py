from fastapi import APIRouter, Depends

from seatsync.auth.deps import get_current_user_id, get_services
from seatsync.schemas.booking import BookingResponse, ConfirmBookingRequest, RoundTripRequest, RoundTripResponse

router = APIRouter()


@router.get("/")
async def bookings_root():
    return {"module": "bookings", "status": "ok"}


@router.post("/confirm", response_model=BookingResponse)
async def confirm_booking(
    req: ConfirmBookingRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)
):
    """Turn the caller's live holds into a booking. Replaying a ``paymentRef`` returns the same booking."""
    result = await services.finalizer.finalize(user_id, req.to_leg(), payment_ref=req.payment_ref)
    return BookingResponse.model_validate(result.to_dict())


@router.post("/round-trip", response_model=RoundTripResponse)
async def confirm_round_trip(
    req: RoundTripRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)
):
    results = await services.finalizer.finalize_round_trip(
        user_id, req.outbound.to_leg(), req.inbound.to_leg(), payment_ref=req.payment_ref
    )
    return RoundTripResponse(
        group_ref=results[0].group_ref,
        bookings=[BookingResponse.model_validate(r.to_dict()) for r in results],
    )
