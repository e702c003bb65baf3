from __future__ import annotations

import logging
from typing import Any, Callable, Dict, Optional

from fastapi import APIRouter, Depends, Query

from fanbilling.auth.deps import ROLE_ARTIST, get_principal
from fanbilling.core.errors import Conflict, Forbidden, NotFound, ValidationError
from fanbilling.models import BillingActionReq
from fanbilling.services import billing_cycle, cache, ledger
from fanbilling.services.tier_change import process_scheduled_tier_changes

logger = logging.getLogger(__name__)

router = APIRouter(tags=["billing-cycle"])


def _require_artist(principal: Dict[str, Any], message: str) -> str:
    if principal["role"] != ROLE_ARTIST:
        raise Forbidden(message)
    return principal["user_sub"]


@router.get("/api/billing/cycle")
def get_billing_cycle(
    action: str = Query("info"),
    subscription_id: Optional[str] = Query(None, alias="subscriptionId"),
    principal=Depends(get_principal),
) -> Dict[str, Any]:
    if action == "info":
        if not subscription_id:
            raise ValidationError("Missing subscriptionId parameter")
        sub = ledger.get_subscription(subscription_id)
        if not sub:
            raise NotFound("Subscription not found")
        if principal["user_sub"] not in (sub.get("fan_id"), sub.get("artist_id")):
            raise Forbidden()
        return {"billingInfo": billing_cycle.get_billing_cycle_info(subscription_id)}
    if action == "upcoming":
        artist_id = _require_artist(principal, "Only artists can view upcoming invoices")
        return {"upcomingInvoices": billing_cycle.get_upcoming_invoices(artist_id)}
    if action == "stats":
        _require_artist(principal, "Only artists can view billing statistics")
        return {"stats": billing_cycle.get_billing_cycle_stats()}
    if action == "summary":
        artist_id = _require_artist(principal, "Only artists can view billing summaries")
        return {"summary": billing_cycle.get_artist_billing_summary(artist_id)}
    raise ValidationError("Invalid action parameter")


def _renewals(artist_id: str) -> Dict[str, Any]:
    return {"message": "Billing renewals processed", "events": billing_cycle.process_billing_renewals()}


def _retries(artist_id: str) -> Dict[str, Any]:
    return {"message": "Payment retries processed", "events": billing_cycle.process_failed_payment_retries()}


def _reminders(artist_id: str) -> Dict[str, Any]:
    return {"message": "Billing reminders sent", "count": billing_cycle.send_billing_reminders()}


def _scheduled_changes(artist_id: str) -> Dict[str, Any]:
    return {"message": "Scheduled tier changes processed", "events": process_scheduled_tier_changes()}


def _sync_invoices(artist_id: str) -> Dict[str, Any]:
    return {"message": "Invoices synced", "result": billing_cycle.sync_artist_invoices(artist_id)}


_ACTIONS: Dict[str, Callable[[str], Dict[str, Any]]] = {
    "process-renewals": _renewals,
    "process-retries": _retries,
    "send-reminders": _reminders,
    "process-scheduled-changes": _scheduled_changes,
    "sync-invoices": _sync_invoices,
}


@router.post("/api/billing/cycle")
def run_billing_action(body: BillingActionReq, principal=Depends(get_principal)) -> Dict[str, Any]:
    artist_id = _require_artist(principal, "Only artists can trigger billing processes")
    job = _ACTIONS.get(body.action)
    if job is None:
        raise ValidationError("Invalid action parameter")

    lock_name = f"{body.action}:{artist_id}" if body.action == "sync-invoices" else body.action
    token = cache.acquire_batch_lock(lock_name)
    if token is None:
        raise Conflict("Billing job already running")
    logger.info("Billing job started", extra={"job": body.action, "artist_id": artist_id})
    try:
        return job(artist_id)
    finally:
        cache.release_batch_lock(lock_name, token)
