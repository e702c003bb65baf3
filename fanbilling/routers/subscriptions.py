from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query

from fanbilling.auth.deps import require_fan
from fanbilling.core.errors import Forbidden, NotFound
from fanbilling.core.time import ts_from_datetime
from fanbilling.models import ChangeTierReq
from fanbilling.services import ledger
from fanbilling.services.tier_change import calculate_tier_change_proration, change_tier

router = APIRouter(tags=["subscriptions"])


def _owned_subscription(subscription_id: str, fan_id: str) -> Dict[str, Any]:
    sub = ledger.get_subscription(subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    if sub.get("fan_id") != fan_id:
        raise Forbidden("Not your subscription")
    return sub


@router.post("/api/fan/subscriptions/{subscription_id}/change-tier")
def change_subscription_tier(subscription_id: str, body: ChangeTierReq, principal=Depends(require_fan)) -> Dict[str, Any]:
    _owned_subscription(subscription_id, principal["user_sub"])
    result = change_tier(
        subscription_id,
        body.new_tier_id,
        body.new_amount,
        effective_date=body.effective_date,
        proration_behavior=body.proration_behavior,
        send_notification=body.send_notification,
    )
    return {
        "success": True,
        "prorationAmount": result["proration_amount"],
        "invoiceId": result["invoice_id"],
        "effectiveDate": result["effective_date"],
        "scheduled": bool(result.get("scheduled")),
    }


@router.get("/api/fan/subscriptions/{subscription_id}/change-tier")
def preview_tier_change(
    subscription_id: str,
    new_tier_id: str = Query(..., alias="newTierId", min_length=1),
    new_amount: Decimal = Query(..., alias="newAmount", gt=0),
    effective_date: Optional[datetime] = Query(None, alias="effectiveDate"),
    principal=Depends(require_fan),
) -> Dict[str, Any]:
    _owned_subscription(subscription_id, principal["user_sub"])
    at = ts_from_datetime(effective_date) if effective_date is not None else None
    proration = calculate_tier_change_proration(subscription_id, new_tier_id, new_amount, at)
    return {"proration": proration.as_payload()}
