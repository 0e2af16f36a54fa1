import json
import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from seatsync.auth.deps import get_current_user_id, get_services
from seatsync.errors import SeatSyncError
from seatsync.schemas.payment import PaymentInitiateRequest, PaymentInitiateResponse, WebhookAck
from seatsync.services.payment_gateway import (
    PENDING,
    SUCCEEDED,
    forget_event,
    get_gateway,
    is_event_processed,
    mark_event_processed,
)

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/")
async def payments_root():
    return {"module": "payments", "status": "ok"}


@router.post("/initiate", response_model=PaymentInitiateResponse)
async def initiate_payment(
    req: PaymentInitiateRequest, user_id: str = Depends(get_current_user_id), services=Depends(get_services)
):
    """Extend the caller's holds for the payment window and open a gateway intent."""
    resp = await services.finalizer.start_payment(
        user_id, [leg.to_leg() for leg in req.legs], req.amount, req.currency, req.provider
    )
    return PaymentInitiateResponse.model_validate(resp)


@router.post("/webhook/{provider}", response_model=WebhookAck)
async def payment_webhook(provider: str, request: Request, services=Depends(get_services)):
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}

    gateway = get_gateway(services.gateways, provider)

    # verify signature
    valid = await gateway.verify_signature(headers, body)
    if not valid:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Malformed payload")
    event = gateway.parse_event(payload)

    # check idempotency/replay
    redis = services.redis
    if await is_event_processed(redis, gateway.provider_name, event.event_id):
        return WebhookAck(received=True)
    if event.status == PENDING:
        return WebhookAck(received=True, status=PENDING)

    added = await mark_event_processed(
        redis, gateway.provider_name, event.event_id, ttl=services.settings.PAYMENT_IDEMPOTENCY_TTL_SECONDS
    )
    if not added:
        # race: someone else processed
        return WebhookAck(received=True)

    try:
        result = await services.finalizer.confirm_payment(
            gateway.provider_name, event.intent_id, succeeded=(event.status == SUCCEEDED)
        )
    except SeatSyncError as exc:
        if exc.retryable or exc.http_status >= 500:
            # let the provider's retry through
            await forget_event(redis, gateway.provider_name, event.event_id)
        raise
    logger.info("payment %s settled as %s", event.intent_id, result.get("status"))
    return WebhookAck(received=True, status=result.get("status"))
