from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import ValidationError as PydanticValidationError

from fanbilling.auth.deps import ROLE_ARTIST, get_principal, require_fan
from fanbilling.core.errors import Forbidden, NotFound, ValidationError
from fanbilling.core.settings import S
from fanbilling.models import CheckoutReq, RetryPaymentReq, WebhookEnvelope
from fanbilling.services import billing_cycle, gateway, ledger, webhooks
from fanbilling.services.checkout import start_checkout

router = APIRouter(tags=["payments"])

_RETRY_MESSAGES = {
    (True, True): "Payment processed successfully",
    (False, False): "Payment retry failed, will try again later",
    (False, True): "Subscription canceled due to repeated payment failures",
}


@router.post("/api/payments/webhooks")
@router.post("/api/webhooks/stripe")
async def payment_webhook(req: Request) -> Dict[str, Any]:
    payload = await req.body()
    gateway.construct_webhook_event(payload, req.headers.get("stripe-signature"), S.stripe_webhook_secret)
    try:
        envelope = WebhookEnvelope.model_validate_json(payload)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid event payload") from exc
    return await run_in_threadpool(webhooks.process_event, envelope)


@router.post("/api/payments/create-checkout")
def create_checkout(body: CheckoutReq, principal=Depends(require_fan)) -> Dict[str, str]:
    return start_checkout(principal["user_sub"], principal.get("email"), body.tier_id, body.amount)


def _authorize_subscription(principal: Dict[str, Any], subscription_id: str) -> Dict[str, Any]:
    sub = ledger.get_subscription(subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    if principal["user_sub"] not in (sub.get("fan_id"), sub.get("artist_id")):
        raise Forbidden()
    return sub


@router.get("/api/payments/retry")
def list_payment_failures(
    subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
    artist_id: Optional[str] = Query(None, alias="artistId"),
    principal=Depends(get_principal),
) -> Dict[str, Any]:
    if subscription_id:
        _authorize_subscription(principal, subscription_id)
        return {"failures": billing_cycle.get_payment_failures(subscription_id)}
    if artist_id:
        if principal["role"] != ROLE_ARTIST or principal["user_sub"] != artist_id:
            raise Forbidden()
        return {"failures": billing_cycle.get_artist_payment_failures(artist_id)}
    raise ValidationError("Missing subscriptionId or artistId parameter")


@router.post("/api/payments/retry")
def retry_payment(body: RetryPaymentReq, principal=Depends(get_principal)) -> Dict[str, Any]:
    failure = ledger.find_payment_failure(body.payment_failure_id)
    if not failure:
        raise NotFound("Payment failure not found")
    _authorize_subscription(principal, failure["subscription_id"])
    result = billing_cycle.retry_payment(body.payment_failure_id)
    out = {
        "success": result["success"],
        "resolved": result["resolved"],
        "attemptCount": result.get("attempt_count"),
        "message": _RETRY_MESSAGES[(result["success"], result["resolved"])],
    }
    if result.get("next_retry_at"):
        out["nextRetryAt"] = result["next_retry_at"]
    return out
