from __future__ import annotations

import copy
import fnmatch
import hashlib
import hmac
import json
import os
import re
import time
from types import SimpleNamespace
from typing import Any, Dict, Iterator, List, Optional, Tuple

import pytest

os.environ.setdefault("AWS_REGION", "us-east-1")
os.environ.setdefault("AWS_ACCESS_KEY_ID", "testing")
os.environ.setdefault("AWS_SECRET_ACCESS_KEY", "testing")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_fanbilling"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_fanbilling"
os.environ.pop("REDIS_URL", None)
os.environ.pop("COGNITO_USER_POOL_ID", None)
os.environ.pop("SES_FROM_EMAIL", None)

import redis  # noqa: E402
from botocore.exceptions import ClientError  # noqa: E402

from fanbilling.core.settings import S  # noqa: E402
from fanbilling.core.tables import T  # noqa: E402

WEBHOOK_SECRET = "whsec_test_fanbilling"

# -----------------------------
# In-memory DynamoDB table
# -----------------------------

_FUNC = re.compile(r"^(attribute_exists|attribute_not_exists|begins_with|if_not_exists)\((.*)\)$")
_CMP = re.compile(r"^(.+?)\s*(<>|<=|>=|=|<|>)\s*(.+)$")
_CLAUSE = re.compile(r"(SET|ADD|REMOVE)\s+(.*?)(?=\s+(?:SET|ADD|REMOVE)\s+|$)")


def _split_top(text: str) -> List[str]:
    parts, depth, current = [], 0, []
    for char in text:
        if char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        if char == "," and depth == 0:
            parts.append("".join(current).strip())
            current = []
        else:
            current.append(char)
    if current:
        parts.append("".join(current).strip())
    return parts


def _attr(token: str, names: Dict[str, str]) -> str:
    token = token.strip()
    return names.get(token, token)


def _operand(token: str, item: Dict[str, Any], names: Dict[str, str], values: Dict[str, Any]) -> Any:
    token = token.strip()
    if token.startswith(":"):
        return values[token]
    match = _FUNC.match(token)
    if match and match.group(1) == "if_not_exists":
        attr, fallback = _split_top(match.group(2))
        name = _attr(attr, names)
        return item[name] if name in item else _operand(fallback, item, names, values)
    if "+" in token:
        left, right = token.split("+", 1)
        return _operand(left, item, names, values) + _operand(right, item, names, values)
    return item.get(_attr(token, names))


def _term(term: str, item: Dict[str, Any], names: Dict[str, str], values: Dict[str, Any]) -> bool:
    term = term.strip()
    match = _FUNC.match(term)
    if match:
        fn, args = match.group(1), _split_top(match.group(2))
        name = _attr(args[0], names)
        if fn == "attribute_exists":
            return name in item
        if fn == "attribute_not_exists":
            return name not in item
        return str(item.get(name, "")).startswith(values[args[1].strip()])
    left, op, right = _CMP.match(term).groups()
    a = _operand(left, item, names, values)
    b = _operand(right, item, names, values)
    if op == "=":
        return a == b
    if op == "<>":
        return a != b
    if a is None:
        return False
    return {"<": a < b, "<=": a <= b, ">": a > b, ">=": a >= b}[op]


def evaluate_condition(expr: str, item: Dict[str, Any], names: Optional[Dict[str, str]], values: Optional[Dict[str, Any]]) -> bool:
    names, values = names or {}, values or {}
    for alternative in re.split(r"\s+OR\s+", expr.strip()):
        if all(_term(t, item, names, values) for t in re.split(r"\s+AND\s+", alternative)):
            return True
    return False


def apply_update(item: Dict[str, Any], expr: str, names: Optional[Dict[str, str]], values: Dict[str, Any]) -> None:
    names = names or {}
    for keyword, body in _CLAUSE.findall(expr.strip()):
        for part in _split_top(body):
            if keyword == "SET":
                left, right = part.split("=", 1)
                item[_attr(left, names)] = copy.deepcopy(_operand(right, item, names, values))
            elif keyword == "ADD":
                attr, value = part.split()
                name = _attr(attr, names)
                item[name] = item.get(name, 0) + values[value]
            else:
                item.pop(_attr(part, names), None)


def _conditional_failure(op: str) -> ClientError:
    return ClientError(
        {"Error": {"Code": "ConditionalCheckFailedException", "Message": "The conditional request failed"}},
        op,
    )


class FakeTable:
    """Enough of a boto3 DynamoDB Table resource for the ledger: conditions, SET/ADD updates,
    paginated query/scan and all-or-nothing transact_write_items."""

    def __init__(self, name: str, *, page_size: int = 1000) -> None:
        self.name = name
        self.items: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.page_size = page_size
        self.transactions: List[List[Dict[str, Any]]] = []
        self.meta = SimpleNamespace(client=SimpleNamespace(transact_write_items=self.transact_write_items))

    # single-item API

    def get_item(self, *, Key: Dict[str, str], **_: Any) -> Dict[str, Any]:
        item = self.items.get((Key["pk"], Key["sk"]))
        return {"Item": copy.deepcopy(item)} if item is not None else {}

    def put_item(self, *, Item: Dict[str, Any], ConditionExpression: Optional[str] = None,
                 ExpressionAttributeNames=None, ExpressionAttributeValues=None, **_: Any) -> Dict[str, Any]:
        key = (Item["pk"], Item["sk"])
        if ConditionExpression and not evaluate_condition(
            ConditionExpression, self.items.get(key, {}), ExpressionAttributeNames, ExpressionAttributeValues
        ):
            raise _conditional_failure("PutItem")
        self.items[key] = copy.deepcopy(Item)
        return {}

    def update_item(self, *, Key: Dict[str, str], UpdateExpression: str, ExpressionAttributeValues: Dict[str, Any],
                    ExpressionAttributeNames=None, ConditionExpression: Optional[str] = None, **_: Any) -> Dict[str, Any]:
        key = (Key["pk"], Key["sk"])
        current = copy.deepcopy(self.items.get(key, {}))
        if ConditionExpression and not evaluate_condition(
            ConditionExpression, current, ExpressionAttributeNames, ExpressionAttributeValues
        ):
            raise _conditional_failure("UpdateItem")
        current.update({"pk": Key["pk"], "sk": Key["sk"]})
        apply_update(current, UpdateExpression, ExpressionAttributeNames, ExpressionAttributeValues)
        self.items[key] = current
        return {}

    def delete_item(self, *, Key: Dict[str, str], ConditionExpression: Optional[str] = None,
                    ExpressionAttributeNames=None, ExpressionAttributeValues=None, **_: Any) -> Dict[str, Any]:
        key = (Key["pk"], Key["sk"])
        if ConditionExpression and not evaluate_condition(
            ConditionExpression, self.items.get(key, {}), ExpressionAttributeNames, ExpressionAttributeValues
        ):
            raise _conditional_failure("DeleteItem")
        self.items.pop(key, None)
        return {}

    def _page(self, matches: List[Dict[str, Any]], start: Optional[Dict[str, str]]) -> Dict[str, Any]:
        offset = 0
        if start:
            keys = [(m["pk"], m["sk"]) for m in matches]
            offset = keys.index((start["pk"], start["sk"])) + 1
        page = matches[offset:offset + self.page_size]
        resp: Dict[str, Any] = {"Items": copy.deepcopy(page)}
        if offset + self.page_size < len(matches):
            resp["LastEvaluatedKey"] = {"pk": page[-1]["pk"], "sk": page[-1]["sk"]}
        return resp

    def query(self, *, KeyConditionExpression: str, ExpressionAttributeValues: Dict[str, Any],
              ExclusiveStartKey: Optional[Dict[str, str]] = None, **_: Any) -> Dict[str, Any]:
        pk = ExpressionAttributeValues[":pk"]
        prefix = ExpressionAttributeValues.get(":sk", "")
        matches = sorted(
            (item for (item_pk, sk), item in self.items.items() if item_pk == pk and sk.startswith(prefix)),
            key=lambda i: i["sk"],
        )
        return self._page(matches, ExclusiveStartKey)

    def scan(self, *, FilterExpression: Optional[str] = None, ExpressionAttributeNames=None,
             ExpressionAttributeValues=None, ExclusiveStartKey: Optional[Dict[str, str]] = None, **_: Any) -> Dict[str, Any]:
        matches = [
            item for _, item in sorted(self.items.items())
            if not FilterExpression
            or evaluate_condition(FilterExpression, item, ExpressionAttributeNames, ExpressionAttributeValues)
        ]
        return self._page(matches, ExclusiveStartKey)

    # transactions

    def transact_write_items(self, *, TransactItems: List[Dict[str, Any]], **_: Any) -> Dict[str, Any]:
        self.transactions.append(copy.deepcopy(TransactItems))
        touched = set()
        for entry in TransactItems:
            op = next(iter(entry.values()))
            assert op["TableName"] == self.name
            key = (op["Item"]["pk"], op["Item"]["sk"]) if "Item" in op else (op["Key"]["pk"], op["Key"]["sk"])
            if key in touched:
                raise ClientError(
                    {"Error": {"Code": "ValidationException",
                               "Message": "Transaction request cannot include multiple operations on one item"}},
                    "TransactWriteItems",
                )
            touched.add(key)

        staged = copy.deepcopy(self.items)
        reasons: List[Dict[str, Any]] = []
        for entry in TransactItems:
            kind, op = next(iter(entry.items()))
            key = (op["Item"]["pk"], op["Item"]["sk"]) if kind == "Put" else (op["Key"]["pk"], op["Key"]["sk"])
            current = self.items.get(key, {})
            condition = op.get("ConditionExpression")
            if condition and not evaluate_condition(
                condition, current, op.get("ExpressionAttributeNames"), op.get("ExpressionAttributeValues")
            ):
                reasons.append({"Code": "ConditionalCheckFailed", "Message": "The conditional request failed"})
                continue
            reasons.append({"Code": "None"})
            if kind == "Put":
                staged[key] = copy.deepcopy(op["Item"])
            elif kind == "Delete":
                staged.pop(key, None)
            else:
                updated = copy.deepcopy(current)
                updated.update({"pk": key[0], "sk": key[1]})
                apply_update(updated, op["UpdateExpression"], op.get("ExpressionAttributeNames"), op["ExpressionAttributeValues"])
                staged[key] = updated

        if any(r["Code"] != "None" for r in reasons):
            raise ClientError(
                {
                    "Error": {"Code": "TransactionCanceledException", "Message": "Transaction cancelled"},
                    "CancellationReasons": reasons,
                },
                "TransactWriteItems",
            )
        self.items = staged
        return {}

    # test helpers

    def get(self, pk: str, sk: str = "META") -> Optional[Dict[str, Any]]:
        return self.items.get((pk, sk))

    def entities(self, entity: str) -> List[Dict[str, Any]]:
        return [item for item in self.items.values() if item.get("entity") == entity]


# -----------------------------
# In-memory redis
# -----------------------------

class FakeRedis:
    def __init__(self, *, broken: bool = False) -> None:
        self.store: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.broken = broken

    def _check(self) -> None:
        if self.broken:
            raise redis.ConnectionError("connection refused")

    def get(self, key: str) -> Optional[str]:
        self._check()
        return self.store.get(key)

    def set(self, key: str, value: str, nx: bool = False, ex: Optional[int] = None) -> Optional[bool]:
        self._check()
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    def setex(self, key: str, ttl: int, value: str) -> bool:
        self._check()
        self.store[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    def scan_iter(self, match: str = "*", count: int = 100) -> Iterator[str]:
        self._check()
        return iter([k for k in list(self.store) if fnmatch.fnmatchcase(k, match)])


# -----------------------------
# Fixtures
# -----------------------------

@pytest.fixture
def tables():
    original = (T.ledger, T.notifications)
    fakes = SimpleNamespace(ledger=FakeTable(S.ledger_table_name), notifications=FakeTable(S.notifications_table_name))
    object.__setattr__(T, "ledger", fakes.ledger)
    object.__setattr__(T, "notifications", fakes.notifications)
    yield fakes
    object.__setattr__(T, "ledger", original[0])
    object.__setattr__(T, "notifications", original[1])


@pytest.fixture
def settings():
    """Override frozen settings for one test: ``settings(platform_fee_bps=1000)``."""
    saved: Dict[str, Any] = {}

    def override(**values: Any) -> None:
        for name, value in values.items():
            saved.setdefault(name, getattr(S, name))
            object.__setattr__(S, name, value)

    yield override
    for name, value in saved.items():
        object.__setattr__(S, name, value)


@pytest.fixture
def fake_redis(monkeypatch):
    from fanbilling.services import cache

    client = FakeRedis()
    monkeypatch.setattr(cache, "get_redis_client", lambda: client)
    return client


class Seeder:
    """Writes ledger rows the way checkout and tier creation leave them."""

    def __init__(self, table: FakeTable) -> None:
        self.table = table

    def artist(self, artist_id: str = "artist-1", **extra: Any) -> Dict[str, Any]:
        item = {
            "pk": f"ARTIST#{artist_id}", "sk": "META", "entity": "artist", "artist_id": artist_id,
            "display_name": "The Artist", "stripe_account_id": "acct_123",
            "total_subscribers": 0, "total_earnings_cents": 0, **extra,
        }
        self.table.put_item(Item=item)
        return item

    def tier(self, tier_id: str = "tier-1", artist_id: str = "artist-1", minimum_cents: int = 500, **extra: Any) -> Dict[str, Any]:
        item = {
            "pk": f"TIER#{tier_id}", "sk": "META", "entity": "tier", "tier_id": tier_id, "artist_id": artist_id,
            "name": f"Tier {tier_id}", "minimum_price_cents": minimum_cents, "is_active": True,
            "subscriber_count": 0, "stripe_product_id": f"prod_{tier_id}", "stripe_product_account": "acct_123",
            **extra,
        }
        self.table.put_item(Item=item)
        self.table.put_item(Item={
            "pk": f"ARTIST#{artist_id}", "sk": f"TIER#{tier_id}", "entity": "artist_tier", "tier_id": tier_id,
        })
        return item

    def subscription(
        self,
        subscription_id: str = "sub-1",
        *,
        fan_id: str = "fan-1",
        artist_id: str = "artist-1",
        tier_id: str = "tier-1",
        amount_cents: int = 1000,
        status: str = "ACTIVE",
        period_start: Optional[int] = None,
        period_end: Optional[int] = None,
        stripe_subscription_id: Optional[str] = None,
        count: bool = True,
        **extra: Any,
    ) -> Dict[str, Any]:
        start = period_start if period_start is not None else int(time.time()) - 15 * 86400
        end = period_end if period_end is not None else start + 30 * 86400
        external = stripe_subscription_id or f"stripe_{subscription_id}"
        item = {
            "pk": f"SUB#{subscription_id}", "sk": "META", "entity": "subscription",
            "subscription_id": subscription_id, "fan_id": fan_id, "artist_id": artist_id, "tier_id": tier_id,
            "amount_cents": amount_cents, "status": status, "stripe_subscription_id": external,
            "current_period_start": start, "current_period_end": end, "created_at": start, **extra,
        }
        self.table.put_item(Item=item)
        self.table.put_item(Item={"pk": f"STRIPE_SUB#{external}", "sk": "META", "subscription_id": subscription_id})
        if status in ("ACTIVE", "PAST_DUE"):
            self.table.put_item(Item={
                "pk": f"LIVE#{fan_id}#{tier_id}", "sk": "META", "entity": "live_lock",
                "subscription_id": subscription_id, "fan_id": fan_id, "tier_id": tier_id,
            })
            if count:
                self.bump(f"TIER#{tier_id}", "subscriber_count")
                self.bump(f"ARTIST#{artist_id}", "total_subscribers")
        return item

    def bump(self, pk: str, attr: str, by: int = 1) -> None:
        item = self.table.get(pk)
        if item is not None:
            item[attr] = int(item.get(attr, 0)) + by


@pytest.fixture
def seed(tables) -> Seeder:
    return Seeder(tables.ledger)


# -----------------------------
# Webhook helpers
# -----------------------------

def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    ts = timestamp or int(time.time())
    signed = f"{ts}.{payload.decode('utf-8')}".encode("utf-8")
    signature = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={signature}"


def event_body(event_id: str, event_type: str, obj: Dict[str, Any]) -> bytes:
    return json.dumps({
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }).encode("utf-8")


@pytest.fixture
def signed_event():
    """Build a (body, headers) pair carrying a valid stripe-signature."""

    def build(event_id: str, event_type: str, obj: Dict[str, Any]) -> Tuple[bytes, Dict[str, str]]:
        body = event_body(event_id, event_type, obj)
        return body, {"stripe-signature": sign_payload(body), "content-type": "application/json"}

    return build
