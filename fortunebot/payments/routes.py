"""
Payments HTTP routes — POST /api/payments/webhook

Completed checkouts add credits to the buyer's session so a user who ran out
can continue the reading flow. The provider redelivers until it sees a 2xx,
so the handler is idempotent on the provider event id (SessionStore.add_credits)
and answers 503 only when the store is down, asking for a redelivery.
app.state.store (SessionStore) is set in main.py lifespan.
"""
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import APIRouter, Header, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError

from fortunebot.config import settings
from fortunebot.payments.schemas import PaymentEvent, TopupResponse
from fortunebot.store import StoreUnavailable

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)

COMPLETED_EVENT = "checkout.session.completed"


def compute_payment_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA256 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Signatures are only enforced when a webhook secret is configured."""
    if not secret:
        return True
    if not signature:
        return False
    return hmac.compare_digest(compute_payment_signature(secret, body), signature)


@router.post("/webhook", response_model=TopupResponse)
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(default=None),
) -> TopupResponse:
    """
    Apply a credit top-up for a completed checkout.

    Returns:
        200: TopupResponse — applied / duplicate / closed, or ignored for other event types
        401: Signature mismatch
        422: Body is not a payment event, or a completed checkout without client_reference_id
        503: Session store unavailable (provider should redeliver)
    """
    body = await request.body()
    if not verify_payment_signature(settings.payment_webhook_secret, body, x_payment_signature):
        logger.warning("Rejected payment webhook with invalid signature")
        raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        event = PaymentEvent.model_validate_json(body)
    except ValidationError as exc:
        raise RequestValidationError(exc.errors()) from exc

    if event.type != COMPLETED_EVENT:
        logger.info("Payment event ignored event_id=%s type=%s", event.id, event.type)
        return TopupResponse(status="ignored")

    user_id = event.user_id
    if user_id is None:
        raise HTTPException(status_code=422, detail="client_reference_id is required for completed checkouts")

    store = request.app.state.store
    try:
        status, balance = await store.add_credits(user_id, settings.topup_credits, reference=event.id)
    except StoreUnavailable as exc:
        raise HTTPException(status_code=503, detail="Session store unavailable") from exc

    logger.info("Payment processed event_id=%s user_id=%s status=%s", event.id, user_id, status)
    return TopupResponse(status=status, balance=balance)
