from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fanbilling.core.errors import Conflict, NotFound, ValidationError
from fanbilling.core.money import Amount, from_cents, to_cents
from fanbilling.core.settings import S
from fanbilling.services import gateway, ledger
from fanbilling.services.tiers import ensure_tier_product

logger = logging.getLogger(__name__)


def start_checkout(fan_id: str, fan_email: Optional[str], tier_id: str, amount: Amount) -> Dict[str, Any]:
    """Open a hosted checkout for ``fan_id`` on ``tier_id``.

    Nothing is written to the ledger here; the subscription is recorded when the
    gateway reports ``checkout.session.completed``.
    """
    tier = ledger.get_tier(tier_id)
    if not tier:
        raise NotFound("Tier not found")
    if not tier.get("is_active", True):
        raise ValidationError("Tier is not active")
    amount_cents = to_cents(amount)
    minimum = int(tier.get("minimum_price_cents", 0))
    if amount_cents < minimum:
        raise ValidationError("Amount is below minimum price", details={"minimum_price": from_cents(minimum)})

    artist = ledger.get_artist(tier["artist_id"]) or {}
    account_id = artist.get("stripe_account_id")
    if not account_id:
        raise ValidationError("Artist is not set up to receive payments")
    if ledger.get_live_lock(fan_id, tier_id):
        raise Conflict("Already subscribed to this tier")

    customer_id = gateway.create_or_retrieve_customer(fan_email, None, account_id)
    product_id = ensure_tier_product(tier, account_id)
    price_id = gateway.create_price(product_id, amount_cents, account_id)
    session = gateway.create_checkout_session(
        price_id,
        customer_id,
        account_id,
        success_url=f"{S.public_base_url}/artist/{tier['artist_id']}?checkout=success&session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{S.public_base_url}/artist/{tier['artist_id']}?checkout=canceled",
        metadata={
            "fan_id": fan_id,
            "tier_id": tier_id,
            "artist_id": tier["artist_id"],
            "amount_cents": str(amount_cents),
        },
    )
    logger.info("Checkout started", extra={"fan_id": fan_id, "tier_id": tier_id, "session_id": session["id"]})
    return {"checkoutUrl": session["url"], "sessionId": session["id"]}
