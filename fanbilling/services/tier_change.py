from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional, Tuple

from fanbilling.core.errors import BillingError, Conflict, GatewayError, InternalError, NotFound, ValidationError
from fanbilling.core.money import Amount, from_cents, to_cents
from fanbilling.core.time import iso_from_ts, now_ts
from fanbilling.metrics import record_batch_row
from fanbilling.services import cache, gateway, ledger, notifications
from fanbilling.services.proration import Proration, compute_proration
from fanbilling.services.tiers import ensure_tier_product

logger = logging.getLogger(__name__)

EFFECTIVE_NOW = "now"
EFFECTIVE_NEXT_CYCLE = "next_billing_cycle"


def validate_tier_change(subscription_id: str, new_tier_id: str, new_amount_cents: int) -> Tuple[Dict[str, Any], Dict[str, Any]]:
    """Every rule a tier change must pass. Runs before any gateway call or ledger write."""
    sub = ledger.get_subscription(subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    if sub.get("status") != ledger.ACTIVE:
        raise ValidationError("Can only change tier for active subscriptions")

    new_tier = ledger.get_tier(new_tier_id)
    if not new_tier:
        raise NotFound("New tier not found")
    if new_tier.get("artist_id") != sub.get("artist_id"):
        raise ValidationError("Cannot change to a tier from a different artist")
    if not new_tier.get("is_active", True):
        raise ValidationError("New tier is not accepting subscribers")

    minimum = int(new_tier.get("minimum_price_cents", 0))
    if new_amount_cents < minimum:
        raise ValidationError(
            "Amount is below minimum price for the new tier",
            details={"minimum_price": from_cents(minimum)},
        )
    if new_tier_id == sub["tier_id"] and new_amount_cents == int(sub.get("amount_cents", 0)):
        raise ValidationError("Subscription is already on this tier at this amount")
    if new_tier_id != sub["tier_id"] and not ledger.lock_available_for(sub, new_tier_id):
        raise Conflict("Fan already has an active subscription to this tier")
    return sub, new_tier


def calculate_tier_change_proration(
    subscription_id: str,
    new_tier_id: str,
    new_amount: Amount,
    effective_date: Optional[int] = None,
    *,
    now: Optional[int] = None,
) -> Proration:
    new_cents = to_cents(new_amount)
    sub, _ = validate_tier_change(subscription_id, new_tier_id, new_cents)
    at = effective_date if effective_date is not None else (now or now_ts())
    return compute_proration(
        int(sub.get("amount_cents", 0)),
        new_cents,
        int(sub["current_period_start"]),
        int(sub["current_period_end"]),
        at,
    )


def _latest_invoice_id(gateway_sub: Dict[str, Any]) -> Optional[str]:
    latest = gateway_sub.get("latest_invoice")
    if isinstance(latest, str) or latest is None:
        return latest
    return latest.get("id")


def _push_to_gateway(
    sub: Dict[str, Any], new_tier: Dict[str, Any], new_amount_cents: int, proration_behavior: str
) -> Tuple[Dict[str, Any], Optional[str]]:
    """Returns the updated gateway subscription and the connected account it lives on."""
    artist = ledger.get_artist(sub["artist_id"]) or {}
    account_id = artist.get("stripe_account_id")
    product_id = ensure_tier_product(new_tier, account_id)
    price_id = gateway.create_price(product_id, new_amount_cents, account_id)
    updated = gateway.update_subscription(sub["stripe_subscription_id"], price_id, proration_behavior, account_id)
    return updated, account_id


def _proration_invoice_item(
    sub: Dict[str, Any], invoice_id: str, account_id: Optional[str], proration_cents: int
) -> Optional[Dict[str, Any]]:
    try:
        invoice = gateway.retrieve_invoice(invoice_id, account_id)
    except GatewayError:
        # invoice.paid/payment_failed still record it once the gateway delivers them.
        logger.warning(
            "Proration invoice lookup failed",
            extra={"subscription_id": sub["subscription_id"], "invoice_id": invoice_id, "account_id": account_id},
        )
        return None
    return ledger.build_invoice_item(sub, invoice, proration_cents=proration_cents)


def apply_tier_change(
    sub: Dict[str, Any],
    new_tier_id: str,
    new_amount_cents: int,
    *,
    invoice_item: Optional[Dict[str, Any]] = None,
    consume_schedule: bool = False,
) -> None:
    """Move ``sub`` onto the new tier/amount in one ledger transaction, carrying the live lock
    and the per-tier counters along with it."""
    old_tier_id = sub["tier_id"]
    ts = now_ts()
    tx = ledger.LedgerTransaction()
    tx.update(
        ledger.pk_subscription(sub["subscription_id"]), ledger.META,
        "SET tier_id = :nt, amount_cents = :a, updated_at = :t",
        {":nt": new_tier_id, ":a": int(new_amount_cents), ":t": ts, ":ot": old_tier_id, ":active": ledger.ACTIVE},
        names={"#s": "status"},
        condition="tier_id = :ot AND #s = :active",
    )
    if new_tier_id != old_tier_id:
        lock_keys = {"fan_id": sub["fan_id"], "subscription_id": sub["subscription_id"]}
        ledger.add_lock_release(tx, tier_id=old_tier_id, **lock_keys)
        ledger.add_lock_acquire(tx, tier_id=new_tier_id, **lock_keys)
        ledger.add_tier_decrement(tx, old_tier_id)
        ledger.add_tier_increment(tx, new_tier_id)
    if invoice_item:
        tx.put(invoice_item)
    if consume_schedule:
        tx.delete(ledger.pk_subscription(sub["subscription_id"]), ledger.SCHEDULE)
    tx.commit()


def change_tier(
    subscription_id: str,
    new_tier_id: str,
    new_amount: Amount,
    *,
    effective_date: str = EFFECTIVE_NOW,
    proration_behavior: str = "always_invoice",
    send_notification: bool = True,
    now: Optional[int] = None,
) -> Dict[str, Any]:
    if effective_date == EFFECTIVE_NEXT_CYCLE:
        scheduled = schedule_tier_change(subscription_id, new_tier_id, new_amount)
        return {
            "proration_amount": from_cents(0),
            "invoice_id": None,
            "effective_date": scheduled["scheduled_date"],
            "scheduled": True,
        }
    if effective_date != EFFECTIVE_NOW:
        raise ValidationError("effectiveDate must be 'now' or 'next_billing_cycle'")

    new_cents = to_cents(new_amount)
    sub, new_tier = validate_tier_change(subscription_id, new_tier_id, new_cents)
    at = now or now_ts()
    proration = compute_proration(
        int(sub.get("amount_cents", 0)),
        new_cents,
        int(sub["current_period_start"]),
        int(sub["current_period_end"]),
        at,
    )

    updated, account_id = _push_to_gateway(sub, new_tier, new_cents, proration_behavior)
    invoice_id = _latest_invoice_id(updated)
    invoice_item = None
    if invoice_id:
        invoice_item = _proration_invoice_item(sub, invoice_id, account_id, proration.net_cents)

    try:
        apply_tier_change(sub, new_tier_id, new_cents, invoice_item=invoice_item)
    except (ledger.TransactionConflict, BillingError) as exc:
        # Gateway already moved; the ledger did not. The next customer.subscription.updated
        # event or a manual reconcile has to close the gap.
        logger.error(
            "Tier change applied at gateway but not in ledger: %s",
            exc,
            extra={"subscription_id": subscription_id, "artist_id": sub.get("artist_id"), "new_tier_id": new_tier_id},
        )
        raise InternalError("Failed to record tier change") from exc

    logger.info(
        "Tier changed",
        extra={"subscription_id": subscription_id, "from_tier_id": sub["tier_id"], "to_tier_id": new_tier_id},
    )
    ledger.record_billing_event(
        subscription_id,
        "tier_change",
        new_cents,
        {"from_tier_id": sub["tier_id"], "to_tier_id": new_tier_id, "proration_cents": proration.net_cents},
    )
    if send_notification:
        _notify_tier_change(sub, new_tier, new_cents, proration)
    cache.invalidate_after_change({**sub, "tier_id": new_tier_id}, extra_tier_ids=[sub["tier_id"]])

    return {
        "proration_amount": from_cents(proration.net_cents),
        "invoice_id": invoice_id,
        "effective_date": iso_from_ts(at),
    }


def _notify_tier_change(sub: Dict[str, Any], new_tier: Dict[str, Any], new_cents: int, proration: Proration) -> None:
    artist = ledger.get_artist(sub["artist_id"]) or {}
    name = artist.get("display_name") or sub["artist_id"]
    try:
        notifications.notify_fan(
            sub["fan_id"],
            "subscription_tier_changed",
            subject=f"Subscription updated - {name}",
            body_text=(
                f"Your subscription to {name} is now on the {new_tier.get('name')} tier at "
                f"${from_cents(new_cents)}/month. Adjustment this period: ${from_cents(proration.net_cents)}."
            ),
            payload={
                "subscription_id": sub["subscription_id"],
                "tier_id": new_tier["tier_id"],
                "amount": from_cents(new_cents),
                "proration_amount": from_cents(proration.net_cents),
            },
            email=sub.get("fan_email"),
        )
    except Exception:
        logger.exception("Tier change notification failed", extra={"subscription_id": sub["subscription_id"]})


def schedule_tier_change(subscription_id: str, new_tier_id: str, new_amount: Amount) -> Dict[str, Any]:
    new_cents = to_cents(new_amount)
    sub, _ = validate_tier_change(subscription_id, new_tier_id, new_cents)
    effective_at = int(sub["current_period_end"])
    # One pending schedule per subscription; scheduling again replaces it.
    ledger.ddb_put_item({
        "pk": ledger.pk_subscription(subscription_id),
        "sk": ledger.SCHEDULE,
        "entity": "tier_change_schedule",
        "subscription_id": subscription_id,
        "artist_id": sub["artist_id"],
        "from_tier_id": sub["tier_id"],
        "from_amount_cents": int(sub.get("amount_cents", 0)),
        "new_tier_id": new_tier_id,
        "new_amount_cents": new_cents,
        "effective_at": effective_at,
        "created_at": now_ts(),
    })
    logger.info("Tier change scheduled", extra={"subscription_id": subscription_id, "effective_at": effective_at})
    return {"scheduled_date": iso_from_ts(effective_at)}


def process_scheduled_tier_changes(now: Optional[int] = None) -> List[Dict[str, Any]]:
    now = now or now_ts()
    events: List[Dict[str, Any]] = []
    for row in ledger.scan_entities("tier_change_schedule"):
        if int(row.get("effective_at", 0)) > now:
            continue
        subscription_id = row["subscription_id"]
        try:
            sub, new_tier = validate_tier_change(subscription_id, row["new_tier_id"], int(row["new_amount_cents"]))
        except BillingError as exc:
            logger.warning(
                "Dropping scheduled tier change that no longer validates: %s",
                exc.message,
                extra={"subscription_id": subscription_id},
            )
            ledger.ddb_delete(ledger.pk_subscription(subscription_id), ledger.SCHEDULE)
            record_batch_row("scheduled_changes", "dropped")
            continue
        try:
            # Effective at the period boundary, so nothing to prorate.
            _push_to_gateway(sub, new_tier, int(row["new_amount_cents"]), "none")
            apply_tier_change(sub, row["new_tier_id"], int(row["new_amount_cents"]), consume_schedule=True)
            event = ledger.record_billing_event(
                subscription_id,
                "tier_change",
                int(row["new_amount_cents"]),
                {"from_tier_id": sub["tier_id"], "to_tier_id": row["new_tier_id"], "scheduled": True},
            )
        except (ledger.TransactionConflict, BillingError):
            logger.exception("Scheduled tier change failed", extra={"subscription_id": subscription_id})
            record_batch_row("scheduled_changes", "failed")
            continue
        cache.invalidate_after_change({**sub, "tier_id": row["new_tier_id"]}, extra_tier_ids=[sub["tier_id"]])
        record_batch_row("scheduled_changes", "applied")
        events.append(ledger.billing_event_payload(event))
    return events
