import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Dict, Optional
from urllib.parse import urlencode
from uuid import uuid4

from redis.exceptions import RedisError

from seatsync.errors import InvalidInput, NotFound, StorageError

logger = logging.getLogger(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"
PENDING = "pending"

_SUCCESS_STATUSES = {"successful", "success", "succeeded", "paid", "completed"}
_FAILURE_STATUSES = {"failed", "failed_attempt", "error", "declined", "cancelled", "canceled"}


def normalize_status(raw: Optional[str]) -> str:
    value = (raw or "").strip().lower()
    if value in _SUCCESS_STATUSES:
        return SUCCEEDED
    if value in _FAILURE_STATUSES:
        return FAILED
    return PENDING


@dataclass
class GatewayEvent:
    event_id: str
    intent_id: str
    status: str
    amount: Optional[float] = None


class BaseGateway:
    provider_name: str = "base"
    signature_headers = ("x-signature",)

    def __init__(self, secret: str = ""):
        self.secret = secret

    async def initiate(self, amount: float, currency: str, metadata: dict) -> Dict:
        raise NotImplementedError()

    async def verify_signature(self, headers: Dict[str, str], body: bytes) -> bool:
        """HMAC-SHA256 of the raw body with the provider secret, hex encoded."""
        if not self.secret:
            return False
        sig_header = ""
        for name in self.signature_headers:
            sig_header = headers.get(name) or sig_header
        computed = hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()
        return hmac.compare_digest(computed, sig_header)

    def sign(self, body: bytes) -> str:
        return hmac.new(self.secret.encode(), body, hashlib.sha256).hexdigest()

    def parse_event(self, payload: dict) -> GatewayEvent:
        data = payload.get("data") or payload
        event_id = payload.get("id") or payload.get("event_id") or data.get("id")
        intent_id = data.get("intent_id") or data.get("provider_ref") or data.get("transaction_id")
        if not event_id or not intent_id:
            raise InvalidInput("webhook payload is missing its event or intent id")
        return GatewayEvent(
            event_id=str(event_id),
            intent_id=str(intent_id),
            status=normalize_status(data.get("status") or data.get("transaction_status")),
            amount=data.get("amount"),
        )


class SandboxGateway(BaseGateway):
    """Simulated provider for development and tests; nothing leaves the process."""

    provider_name = "sandbox"

    async def initiate(self, amount: float, currency: str, metadata: dict) -> Dict:
        provider_ref = f"sbx_{uuid4().hex}"
        return {"provider": self.provider_name, "provider_ref": provider_ref, "checkout_url": None}


class FlutterwaveGateway(BaseGateway):
    provider_name = "flutterwave"
    signature_headers = ("x-signature", "x-flutterwave-signature")

    def __init__(self, secret: str = "", callback_host: str = "http://localhost:8000"):
        super().__init__(secret)
        self.callback_host = callback_host

    async def initiate(self, amount: float, currency: str, metadata: dict) -> Dict:
        # In production you'd call the Flutterwave API. Here we simulate a checkout URL and provider_ref
        provider_ref = f"flw_{uuid4().hex}"
        query = urlencode(
            {
                "amount": amount,
                "currency": currency,
                "tx_ref": provider_ref,
                "redirect_url": f"{self.callback_host}/payments/webhook/{self.provider_name}",
            }
        )
        checkout_url = f"https://flutterwave.com/pay/{provider_ref}?{query}"
        return {"provider": self.provider_name, "provider_ref": provider_ref, "checkout_url": checkout_url}

    def parse_event(self, payload: dict) -> GatewayEvent:
        data = payload.get("data", {})
        event_id = payload.get("id") or payload.get("event_id") or data.get("id")
        intent_id = data.get("tx_ref") or data.get("flw_ref")
        if not event_id or not intent_id:
            raise InvalidInput("webhook payload is missing its event or intent id")
        return GatewayEvent(
            event_id=str(event_id),
            intent_id=str(intent_id),
            status=normalize_status(data.get("status")),
            amount=data.get("amount"),
        )


def build_gateways(settings) -> Dict[str, BaseGateway]:
    return {
        "sandbox": SandboxGateway(settings.SANDBOX_PAYMENT_SECRET),
        "flutterwave": FlutterwaveGateway(settings.FLUTTERWAVE_SECRET, settings.PAYMENT_CALLBACK_HOST),
    }


def get_gateway(gateways: Dict[str, BaseGateway], name: str) -> BaseGateway:
    gateway = gateways.get((name or "").lower())
    if not gateway:
        raise NotFound(f"Unknown provider: {name}")
    return gateway


IDEMPOTENCY_KEY_TPL = "payment_webhook:{provider}:{event_id}"


async def mark_event_processed(redis, provider: str, event_id: str, ttl: int = 60 * 60 * 24) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    # set NX to ensure we only process once
    try:
        added = await redis.set(key, "1", ex=ttl, nx=True)
    except RedisError as exc:
        raise StorageError("idempotency store unavailable") from exc
    return bool(added)


async def is_event_processed(redis, provider: str, event_id: str) -> bool:
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    try:
        return bool(await redis.exists(key))
    except RedisError as exc:
        raise StorageError("idempotency store unavailable") from exc


async def forget_event(redis, provider: str, event_id: str) -> None:
    """Let the provider's retry through after processing failed on our side."""
    key = IDEMPOTENCY_KEY_TPL.format(provider=provider, event_id=event_id)
    try:
        await redis.delete(key)
    except RedisError:
        logger.warning("could not clear webhook idempotency key %s", key, exc_info=True)
