from __future__ import annotations

import logging
from typing import Any, Callable, Dict, List, Optional

from pydantic import ValidationError as PydanticValidationError

from fanbilling.core.errors import InternalError, ValidationError
from fanbilling.core.money import from_cents, net_of_fee_cents
from fanbilling.core.settings import S
from fanbilling.core.time import now_ts
from fanbilling.metrics import record_webhook_event
from fanbilling.models import (
    EVENT_OBJECT_MODELS,
    AccountObject,
    CheckoutSessionObject,
    InvoiceObject,
    StripeModel,
    SubscriptionObject,
    WebhookEnvelope,
)
from fanbilling.services import cache, ledger, notifications

logger = logging.getLogger(__name__)

# Handlers return the subscriptions they touched so caches are dropped after commit.
Touched = List[Dict[str, Any]]


class SubscriptionNotRecorded(Exception):
    """The event refers to a gateway subscription the ledger does not know yet.

    Failing the delivery makes the gateway redeliver once checkout has been processed.
    """


def _claim(envelope: WebhookEnvelope) -> ledger.LedgerTransaction:
    # The claim is always operation 0; a conflict there means another delivery won.
    return ledger.LedgerTransaction().claim_event(envelope.id, envelope.type)


def _target_status(sub: Dict[str, Any], wanted: str) -> str:
    """``wanted`` unless it would make ``sub`` live while another subscription holds its lock."""
    if ledger.is_live(wanted) and not ledger.is_live(sub.get("status")) and not ledger.lock_available_for(sub):
        logger.warning(
            "Fan holds another live subscription to this tier; keeping status %s",
            sub.get("status"),
            extra={"subscription_id": sub["subscription_id"], "fan_id": sub["fan_id"], "tier_id": sub["tier_id"]},
        )
        return sub["status"]
    return wanted


# -----------------------------
# checkout.session.completed
# -----------------------------

def _on_checkout_completed(envelope: WebhookEnvelope, session: CheckoutSessionObject) -> Touched:
    tx = _claim(envelope)
    md = session.metadata
    fan_id = md.get("fan_id")
    tier_id = md.get("tier_id")
    if session.mode not in (None, "subscription") or not session.subscription or not fan_id or not tier_id:
        logger.info("Checkout session is not a fan subscription; acknowledging", extra={"session_id": session.id})
        tx.commit()
        return []

    if ledger.ddb_get_item(ledger.pk_stripe_subscription(session.subscription)):
        logger.info("Subscription already recorded for checkout", extra={"stripe_subscription_id": session.subscription})
        tx.commit()
        return []

    tier = ledger.get_tier(tier_id)
    if not tier:
        logger.warning("Checkout references an unknown tier", extra={"tier_id": tier_id, "session_id": session.id})
        tx.commit()
        return []

    if ledger.get_live_lock(fan_id, tier_id):
        logger.warning(
            "Fan already has a live subscription to this tier; not recording checkout",
            extra={"fan_id": fan_id, "tier_id": tier_id, "stripe_subscription_id": session.subscription},
        )
        tx.commit()
        return []

    ts = now_ts()
    artist_id = md.get("artist_id") or tier["artist_id"]
    amount_cents = int(md.get("amount_cents") or session.amount_total or tier.get("minimum_price_cents", 0))
    subscription_id = ledger.new_id("sub")
    sub = {
        "pk": ledger.pk_subscription(subscription_id),
        "sk": ledger.META,
        "entity": "subscription",
        "subscription_id": subscription_id,
        "fan_id": fan_id,
        "artist_id": artist_id,
        "tier_id": tier_id,
        "amount_cents": amount_cents,
        "status": ledger.ACTIVE,
        "stripe_subscription_id": session.subscription,
        "stripe_customer_id": session.customer,
        "fan_email": session.email,
        "current_period_start": ts,
        "current_period_end": ts + S.default_period_seconds,
        "cancel_at_period_end": False,
        "created_at": ts,
        "updated_at": ts,
    }
    tx.put(sub, condition="attribute_not_exists(pk)")
    tx.put(
        {
            "pk": ledger.pk_stripe_subscription(session.subscription),
            "sk": ledger.META,
            "entity": "gateway_pointer",
            "subscription_id": subscription_id,
            "created_at": ts,
        },
        condition="attribute_not_exists(pk)",
    )
    ledger.add_lock_acquire(tx, fan_id=fan_id, tier_id=tier_id, subscription_id=subscription_id)
    ledger.add_counter_increment(tx, tier_id=tier_id, artist_id=artist_id)
    if session.email:
        tx.update(
            notifications.pk_fan(fan_id), ledger.META,
            "SET #e = :e, fan_id = :f, email = :m, updated_at = :t",
            {":e": "fan", ":f": fan_id, ":m": session.email, ":t": ts},
            names={"#e": "entity"},
        )
    tx.commit()
    logger.info(
        "Subscription created from checkout",
        extra={"subscription_id": subscription_id, "fan_id": fan_id, "artist_id": artist_id, "tier_id": tier_id},
    )
    return [sub]


# -----------------------------
# invoice.*
# -----------------------------

def _subscription_for_invoice(invoice: InvoiceObject) -> Optional[Dict[str, Any]]:
    external_id = invoice.subscription_id
    if not external_id:
        return None
    sub = ledger.find_subscription_by_stripe_id(external_id)
    if not sub:
        logger.warning(
            "Invoice event for an unrecorded subscription",
            extra={"invoice_id": invoice.id, "stripe_subscription_id": external_id},
        )
        raise SubscriptionNotRecorded(external_id)
    return sub


def _on_invoice_paid(envelope: WebhookEnvelope, invoice: InvoiceObject) -> Touched:
    tx = _claim(envelope)
    sub = _subscription_for_invoice(invoice)
    if sub is None:
        tx.commit()
        return []

    subscription_id = sub["subscription_id"]
    # invoice.paid and invoice.payment_succeeded both fire for one invoice; only the first credits.
    existing = ledger.ddb_get_item(ledger.pk_subscription(subscription_id), ledger.sk_invoice(invoice.id)) or {}
    credited = bool(existing.get("earnings_recorded"))
    earnings = 0 if credited else net_of_fee_cents(invoice.amount_paid, S.platform_fee_bps)

    fields: Dict[str, Any] = {}
    start, end = invoice.service_period()
    if start and end:
        fields.update({"current_period_start": start, "current_period_end": end})
    new_status = _target_status(sub, ledger.ACTIVE)
    folded = ledger.add_status_update(tx, sub, new_status, fields, earnings_cents=earnings)
    if earnings and not folded:
        ledger.add_artist_earnings(tx, sub["artist_id"], earnings)

    failure = ledger.get_payment_failure(subscription_id, invoice.id)
    if failure and not failure.get("is_resolved"):
        ts = now_ts()
        tx.update(
            ledger.pk_subscription(subscription_id), ledger.sk_failure(invoice.id),
            "SET is_resolved = :y, resolution = :r, resolved_at = :t, updated_at = :t",
            {":y": True, ":r": "paid", ":t": ts},
        )

    item = ledger.build_invoice_item(sub, invoice.model_dump())
    item["status"] = "PAID"
    item["paid_at"] = item.get("paid_at") or now_ts()
    item["earnings_recorded"] = True
    if credited:
        tx.put(item)
    else:
        tx.put(item, condition="attribute_not_exists(earnings_recorded)")
    tx.commit()

    logger.info(
        "Invoice paid",
        extra={"subscription_id": subscription_id, "invoice_id": invoice.id, "earnings_cents": earnings},
    )
    if earnings:
        _notify_payment(sub, "payment_succeeded", invoice.amount_paid, invoice.id)
    return [sub]


def _on_invoice_failed(envelope: WebhookEnvelope, invoice: InvoiceObject) -> Touched:
    tx = _claim(envelope)
    sub = _subscription_for_invoice(invoice)
    if sub is None:
        tx.commit()
        return []

    subscription_id = sub["subscription_id"]
    paid = ledger.ddb_get_item(ledger.pk_subscription(subscription_id), ledger.sk_invoice(invoice.id)) or {}
    if paid.get("status") == "PAID":
        logger.info("Ignoring failure for an invoice already paid", extra={"subscription_id": subscription_id, "invoice_id": invoice.id})
        tx.commit()
        return []

    if sub.get("status") != ledger.CANCELED:
        ledger.add_status_update(tx, sub, _target_status(sub, ledger.PAST_DUE))

    ts = now_ts()
    previous = ledger.get_payment_failure(subscription_id, invoice.id)
    attempts = invoice.attempt_count or (int(previous.get("attempt_count", 0)) + 1 if previous else 1)
    next_retry = invoice.next_payment_attempt or ts + S.payment_retry_delay_seconds
    tx.update(
        ledger.pk_subscription(subscription_id), ledger.sk_failure(invoice.id),
        "SET #e = :e, failure_id = if_not_exists(failure_id, :fid), created_at = if_not_exists(created_at, :t), "
        "subscription_id = :sid, artist_id = :a, stripe_invoice_id = :inv, attempt_count = :n, "
        "next_retry_at = :r, amount_due_cents = :due, is_resolved = :no, updated_at = :t",
        {
            ":e": "payment_failure",
            ":fid": ledger.new_id("pf"),
            ":t": ts,
            ":sid": subscription_id,
            ":a": sub["artist_id"],
            ":inv": invoice.id,
            ":n": int(attempts),
            ":r": int(next_retry),
            ":due": int(invoice.amount_due),
            ":no": False,
        },
        names={"#e": "entity"},
    )
    tx.commit()

    logger.warning(
        "Invoice payment failed",
        extra={"subscription_id": subscription_id, "invoice_id": invoice.id, "attempt_count": attempts},
    )
    _notify_payment(sub, "payment_failed", invoice.amount_due, invoice.id)
    return [sub]


def _notify_payment(sub: Dict[str, Any], kind: str, amount_cents: int, invoice_id: str) -> None:
    artist = ledger.get_artist(sub["artist_id"]) or {}
    name = artist.get("display_name") or sub["artist_id"]
    amount = from_cents(int(amount_cents))
    if kind == "payment_failed":
        subject = f"Payment failed - {name}"
        body = (
            f"Your payment of ${amount} to {name} failed. Please update your payment method to continue "
            f"your subscription.\n\n{S.public_base_url}/dashboard/fan/subscriptions"
        )
    else:
        subject = f"Payment received - {name}"
        body = f"Thanks! Your payment of ${amount} to {name} went through."
    try:
        notifications.notify_fan(
            sub["fan_id"],
            kind,
            subject=subject,
            body_text=body,
            payload={"subscription_id": sub["subscription_id"], "invoice_id": invoice_id, "amount": amount},
            email=sub.get("fan_email"),
        )
    except Exception:
        logger.exception("Payment notification failed", extra={"subscription_id": sub["subscription_id"]})


# -----------------------------
# customer.subscription.*
# -----------------------------

def _subscription_fields(obj: SubscriptionObject) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    start, end = obj.period()
    if start and end:
        fields.update({"current_period_start": start, "current_period_end": end})
    if obj.cancel_at_period_end is not None:
        fields["cancel_at_period_end"] = obj.cancel_at_period_end
    if obj.canceled_at:
        fields["canceled_at"] = obj.canceled_at
    return fields


def _on_subscription_changed(envelope: WebhookEnvelope, obj: SubscriptionObject) -> Touched:
    tx = _claim(envelope)
    sub = ledger.find_subscription_by_stripe_id(obj.id)
    if not sub:
        if envelope.type == "customer.subscription.created" or not obj.metadata.get("fan_id"):
            # Checkout creates the row; nothing to sync yet.
            tx.commit()
            return []
        logger.warning("Subscription update for an unrecorded subscription", extra={"stripe_subscription_id": obj.id})
        raise SubscriptionNotRecorded(obj.id)

    new_status = _target_status(sub, ledger.status_from_gateway(obj.status))
    ledger.add_status_update(tx, sub, new_status, _subscription_fields(obj))
    if new_status == ledger.CANCELED:
        tx.delete(ledger.pk_subscription(sub["subscription_id"]), ledger.SCHEDULE)
    tx.commit()
    logger.info(
        "Subscription synced",
        extra={"subscription_id": sub["subscription_id"], "gateway_status": obj.status, "status": new_status},
    )
    return [sub]


def _on_subscription_deleted(envelope: WebhookEnvelope, obj: SubscriptionObject) -> Touched:
    tx = _claim(envelope)
    sub = ledger.find_subscription_by_stripe_id(obj.id)
    if not sub or sub.get("status") == ledger.CANCELED:
        tx.commit()
        return []

    ledger.add_status_update(tx, sub, ledger.CANCELED, {"canceled_at": obj.canceled_at or now_ts()})
    tx.delete(ledger.pk_subscription(sub["subscription_id"]), ledger.SCHEDULE)
    tx.commit()
    logger.info("Subscription canceled", extra={"subscription_id": sub["subscription_id"], "artist_id": sub["artist_id"]})
    return [sub]


# -----------------------------
# account.updated
# -----------------------------

def _on_account_updated(envelope: WebhookEnvelope, account: AccountObject) -> Touched:
    tx = _claim(envelope)
    artist_id = account.artist_id
    if not artist_id:
        logger.warning("Connected account update without artist metadata", extra={"account_id": account.id})
        tx.commit()
        return []
    tx.update(
        ledger.pk_artist(artist_id), ledger.META,
        "SET #e = :e, artist_id = :a, stripe_account_id = :acct, charges_enabled = :c, "
        "payouts_enabled = :p, is_stripe_onboarded = :o, updated_at = :t",
        {
            ":e": "artist",
            ":a": artist_id,
            ":acct": account.id,
            ":c": account.charges_enabled,
            ":p": account.payouts_enabled,
            ":o": account.charges_enabled and account.payouts_enabled,
            ":t": now_ts(),
        },
        names={"#e": "entity"},
    )
    tx.commit()
    logger.info(
        "Connected account updated",
        extra={"artist_id": artist_id, "account_id": account.id, "charges_enabled": account.charges_enabled},
    )
    return []


_HANDLERS: Dict[str, Callable[[WebhookEnvelope, Any], Touched]] = {
    "checkout.session.completed": _on_checkout_completed,
    "invoice.payment_succeeded": _on_invoice_paid,
    "invoice.paid": _on_invoice_paid,
    "invoice.payment_failed": _on_invoice_failed,
    "customer.subscription.created": _on_subscription_changed,
    "customer.subscription.updated": _on_subscription_changed,
    "customer.subscription.deleted": _on_subscription_deleted,
    "account.updated": _on_account_updated,
}


def process_event(envelope: WebhookEnvelope) -> Dict[str, Any]:
    """Apply one verified gateway event to the ledger.

    Unknown types and already-claimed event ids are acknowledged without touching the store.
    Any handler failure rolls the whole transaction back and surfaces as a 500 so the
    gateway redelivers.
    """
    event_type = envelope.type
    model = EVENT_OBJECT_MODELS.get(event_type)
    if model is None:
        logger.info("Ignoring unhandled webhook event", extra={"event_id": envelope.id, "event_type": event_type})
        record_webhook_event(event_type, "ignored")
        return {"received": True}

    if ledger.is_event_processed(envelope.id):
        logger.info("Duplicate webhook event", extra={"event_id": envelope.id, "event_type": event_type})
        record_webhook_event(event_type, "deduped")
        return {"received": True, "deduped": True}

    try:
        obj: StripeModel = model.model_validate(envelope.data.object)
    except PydanticValidationError as exc:
        logger.warning("Malformed webhook payload", extra={"event_id": envelope.id, "event_type": event_type})
        record_webhook_event(event_type, "invalid")
        raise ValidationError("Invalid event payload") from exc

    try:
        touched = _HANDLERS[event_type](envelope, obj)
    except ledger.TransactionConflict as exc:
        if exc.failed_at(0):
            logger.info("Webhook event claimed concurrently", extra={"event_id": envelope.id, "event_type": event_type})
            record_webhook_event(event_type, "deduped")
            return {"received": True, "deduped": True}
        logger.error(
            "Webhook transaction rejected: %s",
            exc,
            extra={"event_id": envelope.id, "event_type": event_type},
        )
        record_webhook_event(event_type, "failed")
        raise InternalError("Webhook handler failed") from exc
    except Exception as exc:
        logger.exception("Webhook handler failed", extra={"event_id": envelope.id, "event_type": event_type})
        record_webhook_event(event_type, "failed")
        raise InternalError("Webhook handler failed") from exc

    for sub in touched:
        cache.invalidate_after_change(sub)
    record_webhook_event(event_type, "processed")
    logger.info("Webhook event processed", extra={"event_id": envelope.id, "event_type": event_type})
    return {"received": True}
