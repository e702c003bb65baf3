from __future__ import annotations

from typing import Any, Dict, List, Optional, Tuple

import pytest

from fanbilling.core.errors import Conflict, GatewayError, InternalError, NotFound, ValidationError
from fanbilling.services import gateway, ledger, tier_change

DAY = 86400
START = 1_700_000_000
END = START + 30 * DAY
MID = START + 15 * DAY


@pytest.fixture
def stripe_calls(monkeypatch) -> List[Tuple[str, tuple]]:
    """Replace every gateway call tier changes make and record the arguments."""
    calls: List[Tuple[str, tuple]] = []

    def recorder(name: str, result: Any):
        def call(*args: Any, **kwargs: Any) -> Any:
            calls.append((name, args))
            return result
        return call

    monkeypatch.setattr(gateway, "create_product", recorder("create_product", "prod_new"))
    monkeypatch.setattr(gateway, "create_price", recorder("create_price", "price_new"))
    monkeypatch.setattr(
        gateway, "update_subscription",
        recorder("update_subscription", {"id": "stripe_sub-1", "status": "active", "latest_invoice": "in_prorate"}),
    )

    def retrieve_invoice(invoice_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        calls.append(("retrieve_invoice", (invoice_id, account_id)))
        # The proration invoice only exists on the artist's connected account.
        if account_id != "acct_123":
            raise GatewayError()
        return {
            "id": invoice_id,
            "status": "paid",
            "amount_paid": 500,
            "lines": {"data": [{"amount": 500, "proration": True, "description": "Remaining time"}]},
        }

    monkeypatch.setattr(gateway, "retrieve_invoice", retrieve_invoice)
    return calls


@pytest.fixture
def two_tiers(seed) -> None:
    seed.artist()
    seed.tier("tier-1", minimum_cents=500)
    seed.tier("tier-2", minimum_cents=1500)
    seed.subscription(period_start=START, period_end=END)


# -----------------------------
# Validation
# -----------------------------

def test_unknown_subscription(tables) -> None:
    with pytest.raises(NotFound) as exc:
        tier_change.validate_tier_change("sub-missing", "tier-2", 2000)
    assert exc.value.message == "Subscription not found"


def test_only_active_subscriptions_can_change(seed, two_tiers) -> None:
    seed.subscription("sub-late", fan_id="fan-2", status=ledger.PAST_DUE, count=False)
    with pytest.raises(ValidationError) as exc:
        tier_change.validate_tier_change("sub-late", "tier-2", 2000)
    assert exc.value.message == "Can only change tier for active subscriptions"


def test_unknown_target_tier(two_tiers) -> None:
    with pytest.raises(NotFound) as exc:
        tier_change.validate_tier_change("sub-1", "tier-nope", 2000)
    assert exc.value.message == "New tier not found"


def test_cross_artist_change_is_rejected_before_any_gateway_call(seed, two_tiers, stripe_calls, tables) -> None:
    seed.artist("artist-2")
    seed.tier("tier-other", artist_id="artist-2")
    before = dict(tables.ledger.items)

    with pytest.raises(ValidationError) as exc:
        tier_change.change_tier("sub-1", "tier-other", "20.00", now=MID)

    assert exc.value.message == "Cannot change to a tier from a different artist"
    assert stripe_calls == []
    assert tables.ledger.items == before


def test_inactive_target_tier(seed, two_tiers) -> None:
    seed.tier("tier-closed", is_active=False)
    with pytest.raises(ValidationError) as exc:
        tier_change.validate_tier_change("sub-1", "tier-closed", 2000)
    assert exc.value.message == "New tier is not accepting subscribers"


def test_amount_below_target_minimum(two_tiers) -> None:
    with pytest.raises(ValidationError) as exc:
        tier_change.validate_tier_change("sub-1", "tier-2", 1499)
    assert exc.value.message == "Amount is below minimum price for the new tier"
    assert exc.value.details == {"minimum_price": "15.00"}


def test_no_op_change_is_rejected(two_tiers) -> None:
    with pytest.raises(ValidationError) as exc:
        tier_change.validate_tier_change("sub-1", "tier-1", 1000)
    assert exc.value.message == "Subscription is already on this tier at this amount"


def test_target_tier_already_held_by_fan(seed, two_tiers) -> None:
    seed.subscription("sub-2", tier_id="tier-2", stripe_subscription_id="stripe_sub-2")
    with pytest.raises(Conflict):
        tier_change.validate_tier_change("sub-1", "tier-2", 2000)


# -----------------------------
# Immediate change
# -----------------------------

def test_change_now_moves_lock_counters_and_records_invoice(two_tiers, stripe_calls, tables) -> None:
    result = tier_change.change_tier("sub-1", "tier-2", "20.00", now=MID)

    assert result["proration_amount"] == "5.00"
    assert result["invoice_id"] == "in_prorate"
    assert result["effective_date"].endswith("Z")

    sub = tables.ledger.get("SUB#sub-1")
    assert (sub["tier_id"], sub["amount_cents"]) == ("tier-2", 2000)
    assert tables.ledger.get("LIVE#fan-1#tier-1") is None
    assert tables.ledger.get("LIVE#fan-1#tier-2")["subscription_id"] == "sub-1"
    assert tables.ledger.get("TIER#tier-1")["subscriber_count"] == 0
    assert tables.ledger.get("TIER#tier-2")["subscriber_count"] == 1
    assert tables.ledger.get("ARTIST#artist-1")["total_subscribers"] == 1

    invoice = tables.ledger.get("SUB#sub-1", "INV#in_prorate")
    assert invoice["proration_cents"] == 500
    assert invoice["lines"][0]["proration"] is True

    events = [i for i in tables.ledger.entities("billing_event") if i["type"] == "tier_change"]
    assert len(events) == 1
    assert events[0]["metadata"]["proration_cents"] == 500

    assert ("update_subscription", ("stripe_sub-1", "price_new", "always_invoice", "acct_123")) in stripe_calls
    assert ("retrieve_invoice", ("in_prorate", "acct_123")) in stripe_calls
    assert tables.notifications.entities("notification")[0]["type"] == "subscription_tier_changed"


def test_proration_invoice_lookup_failure_still_records_change(two_tiers, stripe_calls, tables, monkeypatch) -> None:
    def unavailable(invoice_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
        raise GatewayError()

    monkeypatch.setattr(gateway, "retrieve_invoice", unavailable)
    result = tier_change.change_tier("sub-1", "tier-2", "20.00", now=MID, send_notification=False)

    assert result["invoice_id"] == "in_prorate"
    assert tables.ledger.get("SUB#sub-1")["tier_id"] == "tier-2"
    assert tables.ledger.get("LIVE#fan-1#tier-2")["subscription_id"] == "sub-1"
    assert tables.ledger.get("SUB#sub-1", "INV#in_prorate") is None


def test_amount_only_change_keeps_lock_and_counts(two_tiers, stripe_calls, tables) -> None:
    tier_change.change_tier("sub-1", "tier-1", "15.00", now=MID, send_notification=False)

    assert tables.ledger.get("SUB#sub-1")["amount_cents"] == 1500
    assert tables.ledger.get("LIVE#fan-1#tier-1")["subscription_id"] == "sub-1"
    assert tables.ledger.get("TIER#tier-1")["subscriber_count"] == 1
    assert tables.notifications.items == {}


def test_gateway_failure_leaves_ledger_untouched(two_tiers, stripe_calls, tables, monkeypatch) -> None:
    def fail(*args: Any, **kwargs: Any) -> Dict[str, Any]:
        raise GatewayError()

    monkeypatch.setattr(gateway, "update_subscription", fail)
    with pytest.raises(GatewayError):
        tier_change.change_tier("sub-1", "tier-2", "20.00", now=MID)

    assert tables.ledger.get("SUB#sub-1")["tier_id"] == "tier-1"
    assert tables.ledger.get("TIER#tier-2")["subscriber_count"] == 0


def test_ledger_drift_after_gateway_update_is_reported(two_tiers, stripe_calls, tables, monkeypatch) -> None:
    original = gateway.update_subscription

    def cancel_meanwhile(*args: Any, **kwargs: Any) -> Dict[str, Any]:
        tables.ledger.items[("SUB#sub-1", "META")]["status"] = ledger.CANCELED
        return original(*args, **kwargs)

    monkeypatch.setattr(gateway, "update_subscription", cancel_meanwhile)
    with pytest.raises(InternalError) as exc:
        tier_change.change_tier("sub-1", "tier-2", "20.00", now=MID)

    assert exc.value.message == "Failed to record tier change"
    assert tables.ledger.get("LIVE#fan-1#tier-2") is None


def test_unknown_effective_date_is_rejected(two_tiers) -> None:
    with pytest.raises(ValidationError):
        tier_change.change_tier("sub-1", "tier-2", "20.00", effective_date="tomorrow")


# -----------------------------
# Preview
# -----------------------------

def test_preview_matches_immediate_change(two_tiers, tables) -> None:
    proration = tier_change.calculate_tier_change_proration("sub-1", "tier-2", "20.00", now=MID)
    payload = proration.as_payload()

    assert payload["proration_amount"] == "5.00"
    assert payload["credit_amount"] == "5.00"
    assert payload["charge_amount"] == "10.00"
    assert payload["next_invoice_amount"] == "20.00"
    assert (payload["days_remaining"], payload["total_days_in_period"]) == (15, 30)
    assert tables.ledger.get("SUB#sub-1")["tier_id"] == "tier-1"


def test_preview_runs_the_same_validation(two_tiers) -> None:
    with pytest.raises(ValidationError):
        tier_change.calculate_tier_change_proration("sub-1", "tier-2", "1.00", now=MID)


# -----------------------------
# Scheduled change
# -----------------------------

def test_next_cycle_change_is_scheduled_without_gateway_calls(two_tiers, stripe_calls, tables) -> None:
    result = tier_change.change_tier("sub-1", "tier-2", "20.00", effective_date="next_billing_cycle")

    assert result["scheduled"] is True
    assert result["proration_amount"] == "0.00"
    assert stripe_calls == []
    schedule = tables.ledger.get("SUB#sub-1", "SCHEDULE")
    assert schedule["effective_at"] == END
    assert (schedule["new_tier_id"], schedule["new_amount_cents"]) == ("tier-2", 2000)
    assert tables.ledger.get("SUB#sub-1")["tier_id"] == "tier-1"


def test_rescheduling_replaces_the_pending_change(two_tiers, tables) -> None:
    tier_change.schedule_tier_change("sub-1", "tier-2", "20.00")
    tier_change.schedule_tier_change("sub-1", "tier-2", "25.00")

    schedules = tables.ledger.entities("tier_change_schedule")
    assert len(schedules) == 1
    assert schedules[0]["new_amount_cents"] == 2500


def test_due_schedules_are_applied_without_proration(two_tiers, stripe_calls, tables) -> None:
    tier_change.schedule_tier_change("sub-1", "tier-2", "20.00")

    assert tier_change.process_scheduled_tier_changes(now=END - DAY) == []
    events = tier_change.process_scheduled_tier_changes(now=END)

    assert len(events) == 1
    assert events[0]["type"] == "tier_change"
    assert events[0]["metadata"]["scheduled"] is True
    assert tables.ledger.get("SUB#sub-1")["tier_id"] == "tier-2"
    assert tables.ledger.get("SUB#sub-1", "SCHEDULE") is None
    assert tables.ledger.get("TIER#tier-2")["subscriber_count"] == 1
    assert ("update_subscription", ("stripe_sub-1", "price_new", "none", "acct_123")) in stripe_calls


def test_schedule_that_no_longer_validates_is_dropped(two_tiers, stripe_calls, tables) -> None:
    tier_change.schedule_tier_change("sub-1", "tier-2", "20.00")
    tables.ledger.items[("SUB#sub-1", "META")]["status"] = ledger.CANCELED

    assert tier_change.process_scheduled_tier_changes(now=END) == []
    assert tables.ledger.get("SUB#sub-1", "SCHEDULE") is None
    assert stripe_calls == []
