from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional

from botocore.exceptions import ClientError

from fanbilling.core.errors import InternalError
from fanbilling.core.money import from_cents
from fanbilling.core.settings import S
from fanbilling.core.tables import T
from fanbilling.core.time import iso_from_ts, now_ts

logger = logging.getLogger(__name__)

ACTIVE = "ACTIVE"
PAST_DUE = "PAST_DUE"
CANCELED = "CANCELED"
PENDING = "PENDING"

# Statuses that hold the (fan, tier) uniqueness lock and count toward subscriber counters.
LIVE_STATUSES = frozenset({ACTIVE, PAST_DUE})

META = "META"
SCHEDULE = "SCHEDULE"
EVENT_CLAIM_PK = "STRIPE_EVENT"


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex}"


def is_live(status: Optional[str]) -> bool:
    return (status or "").upper() in LIVE_STATUSES


# -----------------------------
# Keys
# -----------------------------

def pk_subscription(subscription_id: str) -> str:
    return f"SUB#{subscription_id}"


def pk_tier(tier_id: str) -> str:
    return f"TIER#{tier_id}"


def pk_artist(artist_id: str) -> str:
    return f"ARTIST#{artist_id}"


def pk_stripe_subscription(stripe_subscription_id: str) -> str:
    return f"STRIPE_SUB#{stripe_subscription_id}"


def pk_live_lock(fan_id: str, tier_id: str) -> str:
    return f"LIVE#{fan_id}#{tier_id}"


def sk_failure(stripe_invoice_id: str) -> str:
    return f"FAILURE#{stripe_invoice_id}"


def sk_invoice(stripe_invoice_id: str) -> str:
    return f"INV#{stripe_invoice_id}"


def sk_billing_event(ts: int, event_id: str) -> str:
    return f"EVENT#{ts}#{event_id}"


def sk_artist_tier(tier_id: str) -> str:
    return f"TIER#{tier_id}"


# -----------------------------
# Single-item helpers
# -----------------------------

def _ddb_failure(op: str, exc: ClientError, **context: Any) -> InternalError:
    logger.error(
        "DynamoDB %s failed: %s",
        op,
        exc.response.get("Error", {}).get("Message", "unknown"),
        extra=context,
    )
    return InternalError("Ledger store error")


def ddb_get_item(pk: str, sk: str = META) -> Optional[Dict[str, Any]]:
    try:
        resp = T.ledger.get_item(Key={"pk": pk, "sk": sk})
    except ClientError as exc:
        raise _ddb_failure("get_item", exc, pk=pk, sk=sk) from exc
    return resp.get("Item")


def ddb_put_item(item: Dict[str, Any], *, condition_expression: Optional[str] = None) -> None:
    kwargs: Dict[str, Any] = {"Item": item}
    if condition_expression:
        kwargs["ConditionExpression"] = condition_expression
    try:
        T.ledger.put_item(**kwargs)
    except ClientError as exc:
        if exc.response["Error"]["Code"] == "ConditionalCheckFailedException":
            raise
        raise _ddb_failure("put_item", exc, pk=item.get("pk"), sk=item.get("sk")) from exc


def ddb_update(pk: str, sk: str, expr: str, values: Dict[str, Any], names: Optional[Dict[str, str]] = None) -> None:
    kwargs: Dict[str, Any] = {
        "Key": {"pk": pk, "sk": sk},
        "UpdateExpression": expr,
        "ExpressionAttributeValues": values,
    }
    if names:
        kwargs["ExpressionAttributeNames"] = names
    try:
        T.ledger.update_item(**kwargs)
    except ClientError as exc:
        raise _ddb_failure("update_item", exc, pk=pk, sk=sk) from exc


def ddb_delete(pk: str, sk: str) -> None:
    try:
        T.ledger.delete_item(Key={"pk": pk, "sk": sk})
    except ClientError as exc:
        raise _ddb_failure("delete_item", exc, pk=pk, sk=sk) from exc


def ddb_query(pk: str, sk_prefix: Optional[str] = None) -> List[Dict[str, Any]]:
    values: Dict[str, Any] = {":pk": pk}
    expr = "pk = :pk"
    if sk_prefix:
        expr += " AND begins_with(sk, :sk)"
        values[":sk"] = sk_prefix
    kwargs: Dict[str, Any] = {"KeyConditionExpression": expr, "ExpressionAttributeValues": values}
    items: List[Dict[str, Any]] = []
    while True:
        try:
            resp = T.ledger.query(**kwargs)
        except ClientError as exc:
            raise _ddb_failure("query", exc, pk=pk) from exc
        items.extend(resp.get("Items", []))
        last = resp.get("LastEvaluatedKey")
        if not last:
            return items
        kwargs["ExclusiveStartKey"] = last


def scan_entities(entity: str) -> List[Dict[str, Any]]:
    """Full-table scan filtered on the ``entity`` discriminator.

    Batch jobs run off-request, so a paginated scan is acceptable here.
    """
    kwargs: Dict[str, Any] = {
        "FilterExpression": "#e = :e",
        "ExpressionAttributeNames": {"#e": "entity"},
        "ExpressionAttributeValues": {":e": entity},
    }
    items: List[Dict[str, Any]] = []
    while True:
        try:
            resp = T.ledger.scan(**kwargs)
        except ClientError as exc:
            raise _ddb_failure("scan", exc, entity=entity) from exc
        items.extend(resp.get("Items", []))
        last = resp.get("LastEvaluatedKey")
        if not last:
            return items
        kwargs["ExclusiveStartKey"] = last


# -----------------------------
# Entity reads
# -----------------------------

def get_subscription(subscription_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_subscription(subscription_id), META)


def get_tier(tier_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_tier(tier_id), META)


def get_artist(artist_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_artist(artist_id), META)


def find_subscription_by_stripe_id(stripe_subscription_id: str) -> Optional[Dict[str, Any]]:
    pointer = ddb_get_item(pk_stripe_subscription(stripe_subscription_id), META)
    if not pointer:
        return None
    return get_subscription(pointer["subscription_id"])


def get_live_lock(fan_id: str, tier_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_live_lock(fan_id, tier_id), META)


def get_payment_failure(subscription_id: str, stripe_invoice_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_subscription(subscription_id), sk_failure(stripe_invoice_id))


def get_schedule(subscription_id: str) -> Optional[Dict[str, Any]]:
    return ddb_get_item(pk_subscription(subscription_id), SCHEDULE)


def list_artist_tiers(artist_id: str) -> List[Dict[str, Any]]:
    index = ddb_query(pk_artist(artist_id), "TIER#")
    tiers: List[Dict[str, Any]] = []
    for row in index:
        tier = get_tier(row["tier_id"])
        if tier:
            tiers.append(tier)
    return tiers


def list_subscriptions(*, artist_id: Optional[str] = None, statuses: Optional[Iterable[str]] = None) -> List[Dict[str, Any]]:
    wanted = set(statuses) if statuses is not None else None
    out = []
    for sub in scan_entities("subscription"):
        if artist_id and sub.get("artist_id") != artist_id:
            continue
        if wanted is not None and sub.get("status") not in wanted:
            continue
        out.append(sub)
    return out


def list_subscription_invoices(subscription_id: str) -> List[Dict[str, Any]]:
    return ddb_query(pk_subscription(subscription_id), "INV#")


def list_payment_failures(subscription_id: str) -> List[Dict[str, Any]]:
    return ddb_query(pk_subscription(subscription_id), "FAILURE#")


def find_payment_failure(failure_id: str) -> Optional[Dict[str, Any]]:
    for failure in scan_entities("payment_failure"):
        if failure.get("failure_id") == failure_id:
            return failure
    return None


def is_event_processed(event_id: str) -> bool:
    return ddb_get_item(EVENT_CLAIM_PK, event_id) is not None


def save_tier(tier: Dict[str, Any]) -> None:
    ddb_put_item({**tier, "pk": pk_tier(tier["tier_id"]), "sk": META, "entity": "tier"})
    ddb_put_item({
        "pk": pk_artist(tier["artist_id"]),
        "sk": sk_artist_tier(tier["tier_id"]),
        "entity": "artist_tier",
        "tier_id": tier["tier_id"],
        "name": tier.get("name"),
        "created_at": tier.get("created_at"),
    })


def ensure_artist(artist_id: str, *, display_name: Optional[str] = None, email: Optional[str] = None) -> Dict[str, Any]:
    artist = get_artist(artist_id)
    if artist:
        return artist
    ts = now_ts()
    ddb_update(
        pk_artist(artist_id),
        META,
        "SET #e = :e, artist_id = :a, display_name = if_not_exists(display_name, :d), "
        "email = if_not_exists(email, :m), total_subscribers = if_not_exists(total_subscribers, :z), "
        "total_earnings_cents = if_not_exists(total_earnings_cents, :z), updated_at = :t",
        {":e": "artist", ":a": artist_id, ":d": display_name or artist_id, ":m": email, ":z": 0, ":t": ts},
        names={"#e": "entity"},
    )
    return get_artist(artist_id) or {"artist_id": artist_id}


def record_billing_event(
    subscription_id: str,
    event_type: str,
    amount_cents: int,
    metadata: Optional[Dict[str, Any]] = None,
    *,
    ts: Optional[int] = None,
) -> Dict[str, Any]:
    ts = ts or now_ts()
    event_id = new_id("bev")
    item = {
        "pk": pk_subscription(subscription_id),
        "sk": sk_billing_event(ts, event_id),
        "entity": "billing_event",
        "event_id": event_id,
        "type": event_type,
        "subscription_id": subscription_id,
        "amount_cents": int(amount_cents),
        "metadata": metadata or {},
        "ts": ts,
    }
    ddb_put_item(item)
    return item


def billing_event_payload(item: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "type": item["type"],
        "subscription_id": item["subscription_id"],
        "amount": from_cents(int(item.get("amount_cents", 0))),
        "timestamp": iso_from_ts(int(item["ts"])),
        "metadata": item.get("metadata") or {},
    }


def build_invoice_item(sub: Dict[str, Any], invoice: Dict[str, Any], *, proration_cents: Optional[int] = None) -> Dict[str, Any]:
    """Ledger row for a gateway invoice, keyed by the gateway invoice id so re-syncs overwrite."""
    lines = ((invoice.get("lines") or {}).get("data")) or []
    period = (lines[0].get("period") if lines else None) or {}
    transitions = invoice.get("status_transitions") or {}
    ts = now_ts()
    item: Dict[str, Any] = {
        "pk": pk_subscription(sub["subscription_id"]),
        "sk": sk_invoice(invoice["id"]),
        "entity": "invoice",
        "stripe_invoice_id": invoice["id"],
        "subscription_id": sub["subscription_id"],
        "artist_id": sub.get("artist_id"),
        "tier_id": sub.get("tier_id"),
        "amount_cents": int(invoice.get("amount_paid") or invoice.get("amount_due") or 0),
        "status": str(invoice.get("status") or "open").upper(),
        "due_date": invoice.get("due_date"),
        "paid_at": transitions.get("paid_at"),
        "period_start": period.get("start") or invoice.get("period_start"),
        "period_end": period.get("end") or invoice.get("period_end"),
        "lines": [
            {
                "description": line.get("description"),
                "amount_cents": int(line.get("amount") or 0),
                "proration": bool(line.get("proration")),
            }
            for line in lines
        ],
        "created_at": int(invoice.get("created") or ts),
        "updated_at": ts,
    }
    if proration_cents:
        item["proration_cents"] = int(proration_cents)
    return item


def upsert_invoice_fields(item: Dict[str, Any]) -> None:
    """Write the gateway-owned fields of an invoice row in place.

    ``earnings_recorded`` belongs to the webhook path and is never touched here,
    so a concurrent ``invoice.paid`` cannot be undone by a sync.
    """
    assignments = []
    names: Dict[str, str] = {}
    values: Dict[str, Any] = {}
    for i, (field, value) in enumerate(sorted(item.items())):
        if field in ("pk", "sk", "earnings_recorded"):
            continue
        names[f"#f{i}"] = field
        values[f":v{i}"] = value
        if field == "created_at":
            assignments.append(f"#f{i} = if_not_exists(#f{i}, :v{i})")
        else:
            assignments.append(f"#f{i} = :v{i}")
    ddb_update(item["pk"], item["sk"], "SET " + ", ".join(assignments), values, names=names)


# -----------------------------
# Transactions
# -----------------------------

class TransactionConflict(Exception):
    """A condition inside a transaction failed. ``reasons`` mirrors the request order."""

    def __init__(self, reasons: List[Dict[str, Any]]) -> None:
        self.reasons = reasons
        super().__init__(f"Transaction cancelled: {[r.get('Code') for r in reasons]}")

    def failed_at(self, index: int) -> bool:
        if index >= len(self.reasons):
            return False
        return self.reasons[index].get("Code") == "ConditionalCheckFailed"


class LedgerTransaction:
    """Collects TransactWriteItems operations against the ledger table and commits them at once."""

    def __init__(self) -> None:
        self.items: List[Dict[str, Any]] = []

    def __len__(self) -> int:
        return len(self.items)

    def put(self, item: Dict[str, Any], *, condition: Optional[str] = None,
            values: Optional[Dict[str, Any]] = None, names: Optional[Dict[str, str]] = None) -> "LedgerTransaction":
        op: Dict[str, Any] = {"TableName": T.ledger.name, "Item": item}
        _attach_condition(op, condition, values, names)
        self.items.append({"Put": op})
        return self

    def update(self, pk: str, sk: str, expr: str, values: Dict[str, Any], *,
               names: Optional[Dict[str, str]] = None, condition: Optional[str] = None) -> "LedgerTransaction":
        op: Dict[str, Any] = {
            "TableName": T.ledger.name,
            "Key": {"pk": pk, "sk": sk},
            "UpdateExpression": expr,
            "ExpressionAttributeValues": values,
        }
        if names:
            op["ExpressionAttributeNames"] = names
        if condition:
            op["ConditionExpression"] = condition
        self.items.append({"Update": op})
        return self

    def delete(self, pk: str, sk: str, *, condition: Optional[str] = None,
               values: Optional[Dict[str, Any]] = None, names: Optional[Dict[str, str]] = None) -> "LedgerTransaction":
        op: Dict[str, Any] = {"TableName": T.ledger.name, "Key": {"pk": pk, "sk": sk}}
        _attach_condition(op, condition, values, names)
        self.items.append({"Delete": op})
        return self

    def claim_event(self, event_id: str, event_type: str) -> "LedgerTransaction":
        ts = now_ts()
        item = {
            "pk": EVENT_CLAIM_PK,
            "sk": event_id,
            "event_type": event_type,
            "ts": ts,
            S.ddb_ttl_attr: ts + S.processed_event_ttl_days * 24 * 3600,
        }
        return self.put(item, condition="attribute_not_exists(pk)")

    def commit(self) -> None:
        if not self.items:
            return
        try:
            T.ledger.meta.client.transact_write_items(TransactItems=self.items)
        except ClientError as exc:
            error = exc.response.get("Error", {})
            if error.get("Code") == "TransactionCanceledException":
                raise TransactionConflict(exc.response.get("CancellationReasons", [])) from exc
            raise _ddb_failure("transact_write_items", exc, ops=len(self.items)) from exc


def _attach_condition(op: Dict[str, Any], condition: Optional[str],
                      values: Optional[Dict[str, Any]], names: Optional[Dict[str, str]]) -> None:
    if condition:
        op["ConditionExpression"] = condition
    if values:
        op["ExpressionAttributeValues"] = values
    if names:
        op["ExpressionAttributeNames"] = names


# -----------------------------
# Counters & the live lock
# -----------------------------

def add_tier_increment(tx: LedgerTransaction, tier_id: str) -> None:
    tx.update(
        pk_tier(tier_id), META,
        "ADD subscriber_count :one SET updated_at = :t",
        {":one": 1, ":t": now_ts()},
        condition="attribute_exists(pk)",
    )


def add_artist_increment(tx: LedgerTransaction, artist_id: str, *, earnings_cents: int = 0) -> None:
    # A transaction may touch the artist item once, so earnings ride along with the counter.
    expr = "ADD total_subscribers :one"
    values: Dict[str, Any] = {":one": 1, ":a": artist_id, ":e": "artist", ":t": now_ts()}
    if earnings_cents:
        expr += ", total_earnings_cents :earn"
        values[":earn"] = int(earnings_cents)
    tx.update(
        pk_artist(artist_id), META,
        expr + " SET artist_id = :a, #e = :e, updated_at = :t",
        values,
        names={"#e": "entity"},
    )


def add_artist_earnings(tx: LedgerTransaction, artist_id: str, earnings_cents: int) -> None:
    tx.update(
        pk_artist(artist_id), META,
        "ADD total_earnings_cents :earn SET artist_id = :a, #e = :e, updated_at = :t",
        {":earn": int(earnings_cents), ":a": artist_id, ":e": "artist", ":t": now_ts()},
        names={"#e": "entity"},
    )


def add_tier_decrement(tx: LedgerTransaction, tier_id: str) -> None:
    # Issued only when the stored counter is positive, and conditioned on it staying so.
    tier = get_tier(tier_id)
    if not tier or int(tier.get("subscriber_count", 0)) <= 0:
        logger.warning("Tier subscriber_count already zero; skipping decrement", extra={"tier_id": tier_id})
        return
    tx.update(
        pk_tier(tier_id), META,
        "ADD subscriber_count :neg SET updated_at = :t",
        {":neg": -1, ":zero": 0, ":t": now_ts()},
        condition="subscriber_count > :zero",
    )


def add_artist_decrement(tx: LedgerTransaction, artist_id: str) -> None:
    artist = get_artist(artist_id)
    if not artist or int(artist.get("total_subscribers", 0)) <= 0:
        logger.warning("Artist total_subscribers already zero; skipping decrement", extra={"artist_id": artist_id})
        return
    tx.update(
        pk_artist(artist_id), META,
        "ADD total_subscribers :neg SET updated_at = :t",
        {":neg": -1, ":zero": 0, ":t": now_ts()},
        condition="total_subscribers > :zero",
    )


def add_counter_increment(tx: LedgerTransaction, *, tier_id: str, artist_id: str, earnings_cents: int = 0) -> None:
    add_tier_increment(tx, tier_id)
    add_artist_increment(tx, artist_id, earnings_cents=earnings_cents)


def add_counter_decrement(tx: LedgerTransaction, *, tier_id: str, artist_id: str) -> None:
    add_tier_decrement(tx, tier_id)
    add_artist_decrement(tx, artist_id)


def add_lock_acquire(tx: LedgerTransaction, *, fan_id: str, tier_id: str, subscription_id: str) -> None:
    tx.put(
        {
            "pk": pk_live_lock(fan_id, tier_id),
            "sk": META,
            "entity": "live_lock",
            "subscription_id": subscription_id,
            "fan_id": fan_id,
            "tier_id": tier_id,
            "created_at": now_ts(),
        },
        condition="attribute_not_exists(pk) OR subscription_id = :sid",
        values={":sid": subscription_id},
    )


def add_lock_release(tx: LedgerTransaction, *, fan_id: str, tier_id: str, subscription_id: str) -> None:
    tx.delete(
        pk_live_lock(fan_id, tier_id), META,
        condition="attribute_not_exists(pk) OR subscription_id = :sid",
        values={":sid": subscription_id},
    )


def add_live_transition(tx: LedgerTransaction, sub: Dict[str, Any], new_status: str, *, earnings_cents: int = 0) -> bool:
    """Adjust the lock and counters for a status change of ``sub``. No-op when liveness is unchanged.

    Returns True when ``earnings_cents`` was folded into the artist increment.
    """
    was = is_live(sub.get("status"))
    now_live = is_live(new_status)
    if was == now_live:
        return False
    keys = {"fan_id": sub["fan_id"], "tier_id": sub["tier_id"], "subscription_id": sub["subscription_id"]}
    if now_live:
        add_lock_acquire(tx, **keys)
        add_counter_increment(tx, tier_id=sub["tier_id"], artist_id=sub["artist_id"], earnings_cents=earnings_cents)
        return bool(earnings_cents)
    add_lock_release(tx, **keys)
    add_counter_decrement(tx, tier_id=sub["tier_id"], artist_id=sub["artist_id"])
    return False


def lock_available_for(sub: Dict[str, Any], tier_id: Optional[str] = None) -> bool:
    lock = get_live_lock(sub["fan_id"], tier_id or sub["tier_id"])
    return lock is None or lock.get("subscription_id") == sub["subscription_id"]


_GATEWAY_STATUS_MAP = {
    "active": ACTIVE,
    "trialing": ACTIVE,
    "past_due": PAST_DUE,
    "unpaid": PAST_DUE,
    "canceled": CANCELED,
    "incomplete_expired": CANCELED,
    "incomplete": PENDING,
    "paused": PENDING,
}


def status_from_gateway(gateway_status: Optional[str]) -> str:
    return _GATEWAY_STATUS_MAP.get((gateway_status or "").lower(), PENDING)


def add_status_update(
    tx: LedgerTransaction,
    sub: Dict[str, Any],
    new_status: str,
    fields: Optional[Dict[str, Any]] = None,
    *,
    earnings_cents: int = 0,
) -> bool:
    """Overwrite status (last write wins) plus any extra fields, and move the lock/counters
    when the subscription crosses the live boundary. Returns whether earnings were applied."""
    names = {"#s": "status"}
    values: Dict[str, Any] = {":s": new_status, ":u": now_ts()}
    sets = ["#s = :s", "updated_at = :u"]
    for i, (key, value) in enumerate((fields or {}).items()):
        names[f"#f{i}"] = key
        values[f":f{i}"] = value
        sets.append(f"#f{i} = :f{i}")
    tx.update(pk_subscription(sub["subscription_id"]), META, "SET " + ", ".join(sets), values, names=names)
    return add_live_transition(tx, sub, new_status, earnings_cents=earnings_cents)
