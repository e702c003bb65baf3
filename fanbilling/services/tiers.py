from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from fanbilling.core.money import Amount, from_cents, to_cents
from fanbilling.core.time import iso_from_ts, now_ts
from fanbilling.services import cache, gateway, ledger

logger = logging.getLogger(__name__)


def tier_payload(tier: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": tier["tier_id"],
        "artist_id": tier.get("artist_id"),
        "name": tier.get("name"),
        "description": tier.get("description"),
        "minimum_price": from_cents(int(tier.get("minimum_price_cents", 0))),
        "is_active": bool(tier.get("is_active", True)),
        "subscriber_count": int(tier.get("subscriber_count", 0)),
        "created_at": iso_from_ts(tier.get("created_at")),
    }


def ensure_tier_product(tier: Dict[str, Any], account_id: Optional[str]) -> str:
    """Gateway product backing ``tier`` on ``account_id``.

    Products are scoped to the account that created them, so a tier made before
    the artist connected a payout account gets a fresh product on that account.
    """
    if tier.get("stripe_product_id") and tier.get("stripe_product_account") == account_id:
        return tier["stripe_product_id"]
    product_id = gateway.create_product(tier.get("name") or tier["tier_id"], tier.get("description"), account_id)
    ledger.ddb_update(
        ledger.pk_tier(tier["tier_id"]), ledger.META,
        "SET stripe_product_id = :p, stripe_product_account = :acct, updated_at = :t",
        {":p": product_id, ":acct": account_id, ":t": now_ts()},
    )
    if tier.get("stripe_product_id"):
        logger.info(
            "Tier product moved to connected account",
            extra={"tier_id": tier["tier_id"], "account_id": account_id, "previous_product_id": tier["stripe_product_id"]},
        )
    tier["stripe_product_id"] = product_id
    tier["stripe_product_account"] = account_id
    return product_id


def create_tier(
    artist_id: str,
    name: str,
    description: Optional[str],
    minimum_price: Amount,
    *,
    artist_email: Optional[str] = None,
) -> Dict[str, Any]:
    minimum_cents = to_cents(minimum_price)
    artist = ledger.ensure_artist(artist_id, email=artist_email)
    account_id = artist.get("stripe_account_id")
    product_id = gateway.create_product(name, description, account_id)
    price_id = gateway.create_price(product_id, minimum_cents, account_id)
    ts = now_ts()
    tier = {
        "tier_id": ledger.new_id("tier"),
        "artist_id": artist_id,
        "name": name,
        "description": description,
        "minimum_price_cents": minimum_cents,
        "is_active": True,
        "subscriber_count": 0,
        "stripe_product_id": product_id,
        "stripe_product_account": account_id,
        "stripe_price_id": price_id,
        "created_at": ts,
        "updated_at": ts,
    }
    ledger.save_tier(tier)
    logger.info("Tier created", extra={"artist_id": artist_id, "tier_id": tier["tier_id"]})
    cache.invalidate_analytics_cache(artist_id, "tiers")
    return tier_payload(tier)


def list_tiers(artist_id: str) -> List[Dict[str, Any]]:
    tiers = sorted(ledger.list_artist_tiers(artist_id), key=lambda t: int(t.get("minimum_price_cents", 0)))
    return [tier_payload(t) for t in tiers]
