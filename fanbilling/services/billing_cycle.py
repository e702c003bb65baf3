from __future__ import annotations

import logging
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional

from fanbilling.core.errors import BillingError, GatewayError, NotFound
from fanbilling.core.money import from_cents
from fanbilling.core.settings import S
from fanbilling.core.time import DAY_SECONDS, iso_from_ts, month_start_ts, now_ts
from fanbilling.metrics import record_batch_row
from fanbilling.services import cache, gateway, ledger, notifications
from fanbilling.services.proration import period_day_counts

logger = logging.getLogger(__name__)


def _account_id(artist_id: str) -> Optional[str]:
    return (ledger.get_artist(artist_id) or {}).get("stripe_account_id")


def _unresolved_failures() -> List[Dict[str, Any]]:
    return [f for f in ledger.scan_entities("payment_failure") if not f.get("is_resolved")]


# -----------------------------
# Read side
# -----------------------------

def get_billing_cycle_info(subscription_id: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    sub = ledger.get_subscription(subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    start = int(sub["current_period_start"])
    end = int(sub["current_period_end"])
    total, remaining = period_day_counts(start, end, now or now_ts())
    return {
        "subscription_id": subscription_id,
        "current_period_start": iso_from_ts(start),
        "current_period_end": iso_from_ts(end),
        "next_billing_date": iso_from_ts(end),
        "days_in_current_period": total,
        "days_remaining": remaining,
    }


def get_upcoming_invoices(artist_id: Optional[str] = None, *, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Projected next invoice per active subscription, earliest due first.

    A pending scheduled tier change replaces the amount it projects. ``proration_cents``
    is what unpaid proration invoices still carry into the next charge.
    """
    now = now or now_ts()
    out = []
    for sub in ledger.list_subscriptions(artist_id=artist_id, statuses=[ledger.ACTIVE]):
        due = int(sub.get("current_period_end") or 0)
        if due < now:
            continue
        amount = int(sub.get("amount_cents", 0))
        tier_id = sub["tier_id"]
        schedule = ledger.get_schedule(sub["subscription_id"])
        if schedule and int(schedule.get("effective_at", 0)) <= due:
            amount = int(schedule["new_amount_cents"])
            tier_id = schedule["new_tier_id"]
        proration = sum(
            int(row.get("proration_cents", 0))
            for row in ledger.list_subscription_invoices(sub["subscription_id"])
            if row.get("status") not in ("PAID", "VOID")
        )
        out.append({
            "subscription_id": sub["subscription_id"],
            "fan_id": sub.get("fan_id"),
            "tier_id": tier_id,
            "amount": from_cents(amount),
            "amount_cents": amount,
            "due_date": iso_from_ts(due),
            "period_start": iso_from_ts(due),
            "period_end": iso_from_ts(due + S.default_period_seconds),
            "proration_cents": proration,
            "scheduled_change": bool(schedule),
        })
    out.sort(key=lambda x: x["due_date"])
    return out


def get_billing_cycle_stats(*, now: Optional[int] = None, use_cache: bool = True) -> Dict[str, Any]:
    if use_cache:
        cached = cache.get_cached_json(cache.key_billing_stats())
        if cached is not None:
            return cached
    now = now or now_ts()
    horizon = now + S.upcoming_renewal_days * DAY_SECONDS
    active = ledger.list_subscriptions(statuses=[ledger.ACTIVE])
    stats = {
        "active_subscriptions": len(active),
        "upcoming_renewals": sum(1 for s in active if now <= int(s.get("current_period_end") or 0) <= horizon),
        "failed_payments": len(_unresolved_failures()),
        "total_monthly_revenue": from_cents(sum(int(s.get("amount_cents", 0)) for s in active)),
    }
    if use_cache:
        cache.set_cached_json(cache.key_billing_stats(), stats, ttl=S.stats_cache_ttl_seconds)
    return stats


def get_artist_billing_summary(artist_id: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    now = now or now_ts()
    this_month = month_start_ts(now)
    last_month = month_start_ts(now, months_back=1)
    horizon = now + S.upcoming_renewal_days * DAY_SECONDS

    subs = ledger.list_subscriptions(artist_id=artist_id)
    sub_ids = {s["subscription_id"] for s in subs}
    current_cents = previous_cents = 0
    for sub in subs:
        for inv in ledger.list_subscription_invoices(sub["subscription_id"]):
            if inv.get("status") != "PAID":
                continue
            paid_at = int(inv.get("paid_at") or inv.get("created_at") or 0)
            if paid_at >= this_month:
                current_cents += int(inv.get("amount_cents", 0))
            elif paid_at >= last_month:
                previous_cents += int(inv.get("amount_cents", 0))

    if previous_cents:
        change = (Decimal(current_cents - previous_cents) * 100 / Decimal(previous_cents)).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )
    else:
        change = Decimal("100.00") if current_cents else Decimal("0.00")

    active = [s for s in subs if s.get("status") == ledger.ACTIVE]
    active_total = sum(int(s.get("amount_cents", 0)) for s in active)
    revenue_by_tier: Dict[str, int] = {}
    for s in active:
        revenue_by_tier[s["tier_id"]] = revenue_by_tier.get(s["tier_id"], 0) + int(s.get("amount_cents", 0))

    tiers = sorted(ledger.list_artist_tiers(artist_id), key=lambda t: int(t.get("subscriber_count", 0)), reverse=True)
    return {
        "artist_id": artist_id,
        "current_month_revenue": from_cents(current_cents),
        "previous_month_revenue": from_cents(previous_cents),
        "revenue_change": str(change),
        "active_subscriptions": len(active),
        "upcoming_renewals": sum(1 for s in active if now <= int(s.get("current_period_end") or 0) <= horizon),
        "failed_payments": sum(1 for f in _unresolved_failures() if f.get("subscription_id") in sub_ids),
        "average_subscription_value": from_cents(active_total // len(active)) if active else from_cents(0),
        "top_tiers": [
            {
                "tier_id": t["tier_id"],
                "name": t.get("name"),
                "subscriber_count": int(t.get("subscriber_count", 0)),
                "monthly_revenue": from_cents(revenue_by_tier.get(t["tier_id"], 0)),
            }
            for t in tiers[:5]
        ],
    }


# -----------------------------
# Renewals
# -----------------------------

def process_billing_renewals(*, now: Optional[int] = None) -> List[Dict[str, Any]]:
    """Reconcile subscriptions whose period ends within the renewal window against the gateway.

    Stripe charges the renewal itself; this job pulls the new period into the ledger, emits a
    ``renewal`` event on success and a ``failure`` event once the period has lapsed without one.
    """
    now = now or now_ts()
    horizon = now + S.renewal_window_seconds
    events: List[Dict[str, Any]] = []
    for sub in ledger.list_subscriptions(statuses=[ledger.ACTIVE]):
        if int(sub.get("current_period_end") or 0) > horizon:
            continue
        try:
            event = _renew_one(sub, now)
        except (BillingError, ledger.TransactionConflict):
            logger.exception("Renewal failed", extra={"subscription_id": sub["subscription_id"], "artist_id": sub.get("artist_id")})
            record_batch_row("renewals", "failed")
            continue
        if event:
            events.append(ledger.billing_event_payload(event))
    return events


def _renew_one(sub: Dict[str, Any], now: int) -> Optional[Dict[str, Any]]:
    period_end = int(sub.get("current_period_end") or 0)
    remote = gateway.retrieve_subscription(sub["stripe_subscription_id"], _account_id(sub["artist_id"]))
    remote_start, remote_end = gateway.subscription_period(remote)
    remote_status = ledger.status_from_gateway(remote.get("status"))
    amount = int(sub.get("amount_cents", 0))

    if remote_status == ledger.ACTIVE and remote_end and remote_end > period_end:
        tx = ledger.LedgerTransaction()
        ledger.add_status_update(tx, sub, ledger.ACTIVE, {
            "current_period_start": remote_start or period_end,
            "current_period_end": remote_end,
        })
        tx.commit()
        event = ledger.record_billing_event(
            sub["subscription_id"], "renewal", amount,
            {"period_start": remote_start, "period_end": remote_end},
        )
        _notify_renewal(sub, remote_end)
        cache.invalidate_after_change(sub)
        record_batch_row("renewals", "renewed")
        return event

    if period_end <= now and remote_status != ledger.ACTIVE:
        tx = ledger.LedgerTransaction()
        ledger.add_status_update(tx, sub, remote_status)
        tx.commit()
        event = ledger.record_billing_event(
            sub["subscription_id"], "failure", amount,
            {"gateway_status": remote.get("status"), "period_end": period_end},
        )
        cache.invalidate_after_change(sub)
        record_batch_row("renewals", "lapsed")
        return event

    record_batch_row("renewals", "pending")
    return None


def _artist_name(artist_id: str) -> str:
    artist = ledger.get_artist(artist_id) or {}
    return artist.get("display_name") or artist_id


def _notify_renewal(sub: Dict[str, Any], next_billing: int) -> None:
    name = _artist_name(sub["artist_id"])
    amount = from_cents(int(sub.get("amount_cents", 0)))
    try:
        notifications.notify_fan(
            sub["fan_id"],
            "subscription_renewed",
            subject=f"Subscription Renewed - {name}",
            body_text=(
                f"Your subscription to {name} has been renewed.\n\nAmount: ${amount}\n"
                f"Next billing date: {iso_from_ts(next_billing)}\n\n"
                f"Manage your subscriptions: {S.public_base_url}/dashboard/fan/subscriptions"
            ),
            payload={"subscription_id": sub["subscription_id"], "amount": amount, "next_billing_date": iso_from_ts(next_billing)},
            email=sub.get("fan_email"),
        )
    except Exception:
        logger.exception("Renewal notification failed", extra={"subscription_id": sub["subscription_id"]})


# -----------------------------
# Failed payment retries
# -----------------------------

def process_failed_payment_retries(*, now: Optional[int] = None) -> List[Dict[str, Any]]:
    now = now or now_ts()
    events: List[Dict[str, Any]] = []
    for failure in _unresolved_failures():
        if int(failure.get("next_retry_at") or 0) > now:
            continue
        try:
            event = _retry_one(failure, now)
        except (BillingError, ledger.TransactionConflict):
            logger.exception(
                "Payment retry failed",
                extra={"subscription_id": failure.get("subscription_id"), "invoice_id": failure.get("stripe_invoice_id")},
            )
            record_batch_row("retries", "failed")
            continue
        if event:
            events.append(ledger.billing_event_payload(event))
    return events


def failure_payload(failure: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": failure.get("failure_id"),
        "subscription_id": failure.get("subscription_id"),
        "invoice_id": failure.get("stripe_invoice_id"),
        "amount": from_cents(int(failure.get("amount_due_cents", 0))),
        "attempt_count": int(failure.get("attempt_count", 0)),
        "next_retry_at": iso_from_ts(failure.get("next_retry_at")),
        "is_resolved": bool(failure.get("is_resolved")),
        "resolution": failure.get("resolution"),
        "created_at": iso_from_ts(failure.get("created_at")),
    }


def get_payment_failures(subscription_id: str) -> List[Dict[str, Any]]:
    rows = sorted(ledger.list_payment_failures(subscription_id), key=lambda f: int(f.get("created_at") or 0), reverse=True)
    return [failure_payload(f) for f in rows]


def get_artist_payment_failures(artist_id: str) -> List[Dict[str, Any]]:
    rows = [f for f in _unresolved_failures() if f.get("artist_id") == artist_id]
    rows.sort(key=lambda f: int(f.get("next_retry_at") or 0))
    return [failure_payload(f) for f in rows]


def retry_payment(failure_id: str, *, now: Optional[int] = None) -> Dict[str, Any]:
    """Retry one payment failure on demand, outside the scheduled sweep."""
    failure = ledger.find_payment_failure(failure_id)
    if not failure:
        raise NotFound("Payment failure not found")
    if failure.get("is_resolved"):
        return {"success": failure.get("resolution") == "paid", "resolved": True, "attempt_count": int(failure.get("attempt_count", 0))}
    event = _retry_one(failure, now or now_ts())
    if event is None:
        raise NotFound("Subscription not found")
    md = event.get("metadata") or {}
    if event["type"] == "cancellation":
        return {"success": False, "resolved": True, "attempt_count": md.get("attempt_count")}
    result = {"success": bool(md.get("resolved")), "resolved": bool(md.get("resolved")), "attempt_count": md.get("attempt_count")}
    if not md.get("resolved"):
        result["next_retry_at"] = md.get("next_retry_at")
    return result


def _failure_update(tx: ledger.LedgerTransaction, failure: Dict[str, Any], fields: Dict[str, Any]) -> None:
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {":u": now_ts()}
    sets = ["updated_at = :u"]
    for i, (key, value) in enumerate(fields.items()):
        names[f"#f{i}"] = key
        values[f":f{i}"] = value
        sets.append(f"#f{i} = :f{i}")
    tx.update(
        ledger.pk_subscription(failure["subscription_id"]),
        ledger.sk_failure(failure["stripe_invoice_id"]),
        "SET " + ", ".join(sets),
        values,
        names=names,
    )


def _retry_one(failure: Dict[str, Any], now: int) -> Optional[Dict[str, Any]]:
    sub = ledger.get_subscription(failure["subscription_id"])
    if not sub:
        logger.warning("Payment failure references a missing subscription", extra={"subscription_id": failure["subscription_id"]})
        record_batch_row("retries", "orphaned")
        return None

    invoice_id = failure["stripe_invoice_id"]
    account_id = _account_id(sub["artist_id"])
    amount = int(failure.get("amount_due_cents", 0))
    invoice = gateway.retrieve_invoice(invoice_id, account_id)
    attempts = int(invoice.get("attempt_count") or failure.get("attempt_count") or 0)

    if invoice.get("status") == "paid":
        return _resolve_failure(sub, failure, amount, attempts)

    if attempts >= S.max_payment_attempts:
        return _cancel_for_nonpayment(sub, failure, amount, attempts, account_id, now)

    try:
        paid = gateway.pay_invoice(invoice_id, account_id)
    except GatewayError:
        paid = None
    attempts += 1
    if paid is not None and paid.get("status") == "paid":
        return _resolve_failure(sub, failure, amount, attempts)

    next_attempt = invoice.get("next_payment_attempt")
    next_retry = int(next_attempt) if next_attempt and int(next_attempt) > now else now + S.payment_retry_delay_seconds
    tx = ledger.LedgerTransaction()
    _failure_update(tx, failure, {"attempt_count": attempts, "next_retry_at": next_retry})
    tx.commit()
    record_batch_row("retries", "unresolved")
    return ledger.record_billing_event(
        sub["subscription_id"], "retry", amount,
        {"resolved": False, "attempt_count": attempts, "next_retry_at": iso_from_ts(next_retry), "invoice_id": invoice_id},
    )


def _resolve_failure(sub: Dict[str, Any], failure: Dict[str, Any], amount: int, attempts: int) -> Dict[str, Any]:
    tx = ledger.LedgerTransaction()
    _failure_update(tx, failure, {"is_resolved": True, "resolution": "paid", "resolved_at": now_ts()})
    # A canceled subscription is only revived by the gateway's own payment event.
    if sub.get("status") == ledger.PAST_DUE:
        ledger.add_status_update(tx, sub, ledger.ACTIVE)
    tx.commit()
    cache.invalidate_after_change(sub)
    record_batch_row("retries", "resolved")
    return ledger.record_billing_event(
        sub["subscription_id"], "retry", amount,
        {"resolved": True, "attempt_count": attempts, "invoice_id": failure["stripe_invoice_id"]},
    )


def _cancel_for_nonpayment(
    sub: Dict[str, Any],
    failure: Dict[str, Any],
    amount: int,
    attempts: int,
    account_id: Optional[str],
    now: int,
) -> Dict[str, Any]:
    gateway.cancel_subscription(sub["stripe_subscription_id"], account_id)
    tx = ledger.LedgerTransaction()
    _failure_update(tx, failure, {"is_resolved": True, "resolution": "canceled", "resolved_at": now})
    if sub.get("status") != ledger.CANCELED:
        ledger.add_status_update(tx, sub, ledger.CANCELED, {"canceled_at": now})
    tx.commit()
    cache.invalidate_after_change(sub)
    record_batch_row("retries", "canceled")

    name = _artist_name(sub["artist_id"])
    try:
        notifications.notify_fan(
            sub["fan_id"],
            "subscription_canceled",
            subject="Subscription Canceled - Payment Failed",
            body_text=(
                f"Your subscription to {name} has been canceled due to repeated payment failures.\n\n"
                f"You can resubscribe at any time: {S.public_base_url}/artist/{sub['artist_id']}"
            ),
            payload={"subscription_id": sub["subscription_id"], "reason": "payment_failure"},
            email=sub.get("fan_email"),
        )
    except Exception:
        logger.exception("Cancellation notification failed", extra={"subscription_id": sub["subscription_id"]})

    return ledger.record_billing_event(
        sub["subscription_id"], "cancellation", amount,
        {"reason": "payment_failure", "attempt_count": attempts},
    )


# -----------------------------
# Reminders
# -----------------------------

def send_billing_reminders(*, now: Optional[int] = None) -> int:
    now = now or now_ts()
    earliest = now + S.reminder_min_days * DAY_SECONDS
    latest = now + S.reminder_max_days * DAY_SECONDS
    sent = 0
    for sub in ledger.list_subscriptions(statuses=[ledger.ACTIVE]):
        period_end = int(sub.get("current_period_end") or 0)
        if not earliest <= period_end <= latest:
            continue
        if int(sub.get("reminded_for_period_end") or 0) == period_end:
            continue
        name = _artist_name(sub["artist_id"])
        amount = from_cents(int(sub.get("amount_cents", 0)))
        try:
            delivered = notifications.notify_fan(
                sub["fan_id"],
                "billing_reminder",
                subject=f"Upcoming renewal - {name}",
                body_text=(
                    f"Your subscription to {name} renews on {iso_from_ts(period_end)} for ${amount}.\n\n"
                    f"Manage your subscriptions: {S.public_base_url}/dashboard/fan/subscriptions"
                ),
                payload={"subscription_id": sub["subscription_id"], "amount": amount, "renews_at": iso_from_ts(period_end)},
                email=sub.get("fan_email"),
            )
        except Exception:
            logger.exception("Billing reminder failed", extra={"subscription_id": sub["subscription_id"]})
            record_batch_row("reminders", "failed")
            continue
        if not delivered:
            record_batch_row("reminders", "opted_out")
            continue
        ledger.ddb_update(
            ledger.pk_subscription(sub["subscription_id"]), ledger.META,
            "SET reminded_for_period_end = :p",
            {":p": period_end},
        )
        record_batch_row("reminders", "sent")
        sent += 1
    return sent


# -----------------------------
# Invoice sync
# -----------------------------

def sync_subscription_invoices(subscription_id: str) -> Dict[str, int]:
    sub = ledger.get_subscription(subscription_id)
    if not sub:
        raise NotFound("Subscription not found")
    known = {row.get("stripe_invoice_id"): row for row in ledger.list_subscription_invoices(subscription_id)}
    created = updated = 0
    for invoice in gateway.list_invoices(sub["stripe_subscription_id"], _account_id(sub["artist_id"])):
        ledger.upsert_invoice_fields(ledger.build_invoice_item(sub, invoice))
        if invoice["id"] in known:
            updated += 1
        else:
            created += 1
    return {"created": created, "updated": updated, "total": created + updated}


def sync_artist_invoices(artist_id: str) -> Dict[str, int]:
    totals = {"created": 0, "updated": 0, "total": 0, "failed": 0}
    for sub in ledger.list_subscriptions(artist_id=artist_id):
        try:
            result = sync_subscription_invoices(sub["subscription_id"])
        except BillingError:
            logger.exception("Invoice sync failed", extra={"subscription_id": sub["subscription_id"], "artist_id": artist_id})
            totals["failed"] += 1
            continue
        for key in ("created", "updated", "total"):
            totals[key] += result[key]
    cache.invalidate_analytics_cache(artist_id, "earnings")
    return totals
