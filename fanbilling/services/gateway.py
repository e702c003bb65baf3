from __future__ import annotations

import logging
from typing import Any, Dict, Iterator, Optional, Tuple

import stripe

from fanbilling.core.errors import GatewayError, InvalidSignature, NotConfigured
from fanbilling.core.settings import S

logger = logging.getLogger(__name__)

PRORATION_BEHAVIORS = ("create_prorations", "always_invoice", "none")


def ensure_stripe_configured() -> None:
    if not S.stripe_secret_key:
        raise NotConfigured("Stripe is not configured")
    stripe.api_key = S.stripe_secret_key


def _account_kwargs(account_id: Optional[str]) -> Dict[str, Any]:
    return {"stripe_account": account_id} if account_id else {}


def _gateway_failure(op: str, exc: Exception, **context: Any) -> GatewayError:
    logger.error("Stripe %s failed: %s", op, exc, extra=context)
    return GatewayError()


def create_or_retrieve_customer(email: Optional[str], display_name: Optional[str], connected_account_id: Optional[str] = None) -> str:
    ensure_stripe_configured()
    kwargs = _account_kwargs(connected_account_id)
    try:
        if email:
            existing = stripe.Customer.list(email=email, limit=1, **kwargs)
            data = existing.get("data") or []
            if data:
                return data[0]["id"]
        customer = stripe.Customer.create(email=email, name=display_name or None, **kwargs)
    except stripe.StripeError as exc:
        raise _gateway_failure("customer lookup", exc, account_id=connected_account_id) from exc
    return customer["id"]


def create_product(name: str, description: Optional[str], account_id: Optional[str] = None) -> str:
    ensure_stripe_configured()
    try:
        product = stripe.Product.create(
            name=name,
            description=description or None,
            **_account_kwargs(account_id),
        )
    except stripe.StripeError as exc:
        raise _gateway_failure("product create", exc, account_id=account_id) from exc
    return product["id"]


def create_price(product_id: str, amount_cents: int, account_id: Optional[str] = None) -> str:
    ensure_stripe_configured()
    try:
        price = stripe.Price.create(
            product=product_id,
            unit_amount=int(amount_cents),
            currency=S.stripe_default_currency,
            recurring={"interval": "month"},
            **_account_kwargs(account_id),
        )
    except stripe.StripeError as exc:
        raise _gateway_failure("price create", exc, product_id=product_id, account_id=account_id) from exc
    return price["id"]


def create_checkout_session(
    price_id: str,
    customer_id: str,
    account_id: Optional[str],
    success_url: str,
    cancel_url: str,
    metadata: Dict[str, str],
) -> Dict[str, str]:
    ensure_stripe_configured()
    try:
        session = stripe.checkout.Session.create(
            mode="subscription",
            customer=customer_id,
            line_items=[{"price": price_id, "quantity": 1}],
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            subscription_data={"metadata": metadata},
            **_account_kwargs(account_id),
        )
    except stripe.StripeError as exc:
        raise _gateway_failure("checkout session create", exc, price_id=price_id, account_id=account_id) from exc
    return {"id": session["id"], "url": session["url"]}


def retrieve_subscription(external_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
    ensure_stripe_configured()
    try:
        return stripe.Subscription.retrieve(external_id, **_account_kwargs(account_id))
    except stripe.StripeError as exc:
        raise _gateway_failure("subscription retrieve", exc, stripe_subscription_id=external_id) from exc


def update_subscription(
    external_id: str,
    new_price_id: str,
    proration_behavior: str = "always_invoice",
    account_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Swap the single subscription item onto ``new_price_id``."""
    if proration_behavior not in PRORATION_BEHAVIORS:
        raise ValueError(f"Unsupported proration behavior: {proration_behavior}")
    current = retrieve_subscription(external_id, account_id)
    items = (current.get("items") or {}).get("data") or []
    if not items:
        logger.error("Stripe subscription has no items", extra={"stripe_subscription_id": external_id})
        raise GatewayError()
    try:
        return stripe.Subscription.modify(
            external_id,
            items=[{"id": items[0]["id"], "price": new_price_id}],
            proration_behavior=proration_behavior,
            **_account_kwargs(account_id),
        )
    except stripe.StripeError as exc:
        raise _gateway_failure("subscription update", exc, stripe_subscription_id=external_id) from exc


def cancel_subscription(external_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
    ensure_stripe_configured()
    try:
        return stripe.Subscription.cancel(external_id, **_account_kwargs(account_id))
    except stripe.StripeError as exc:
        raise _gateway_failure("subscription cancel", exc, stripe_subscription_id=external_id) from exc


def retrieve_invoice(invoice_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
    ensure_stripe_configured()
    try:
        return stripe.Invoice.retrieve(invoice_id, **_account_kwargs(account_id))
    except stripe.StripeError as exc:
        raise _gateway_failure("invoice retrieve", exc, invoice_id=invoice_id) from exc


def pay_invoice(invoice_id: str, account_id: Optional[str] = None) -> Dict[str, Any]:
    ensure_stripe_configured()
    try:
        return stripe.Invoice.pay(invoice_id, **_account_kwargs(account_id))
    except stripe.CardError as exc:
        logger.info("Invoice charge declined", extra={"invoice_id": invoice_id, "code": getattr(exc, "code", None)})
        raise GatewayError("Payment declined") from exc
    except stripe.StripeError as exc:
        raise _gateway_failure("invoice pay", exc, invoice_id=invoice_id) from exc


def list_invoices(external_subscription_id: str, account_id: Optional[str] = None, page_size: int = 100) -> Iterator[Dict[str, Any]]:
    ensure_stripe_configured()
    starting_after: Optional[str] = None
    while True:
        params: Dict[str, Any] = {"subscription": external_subscription_id, "limit": page_size}
        if starting_after:
            params["starting_after"] = starting_after
        try:
            page = stripe.Invoice.list(**params, **_account_kwargs(account_id))
        except stripe.StripeError as exc:
            raise _gateway_failure("invoice list", exc, stripe_subscription_id=external_subscription_id) from exc
        data = page.get("data") or []
        yield from data
        if not page.get("has_more") or not data:
            return
        starting_after = data[-1]["id"]


def construct_webhook_event(raw_body: bytes, signature: Optional[str], secret: str) -> Dict[str, Any]:
    if not signature:
        raise InvalidSignature("Missing stripe-signature header")
    if not secret:
        raise NotConfigured("Stripe webhook secret not configured")
    try:
        return stripe.Webhook.construct_event(payload=raw_body, sig_header=signature, secret=secret)
    except stripe.SignatureVerificationError as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise InvalidSignature() from exc
    except ValueError as exc:
        logger.warning("Webhook payload could not be parsed: %s", exc)
        raise InvalidSignature("Invalid webhook payload") from exc


def subscription_period(obj: Dict[str, Any]) -> Tuple[Optional[int], Optional[int]]:
    """Current period bounds of a Stripe subscription. Newer API versions moved them onto the item."""
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items:
            start = items[0].get("current_period_start", start)
            end = items[0].get("current_period_end", end)
    return (int(start) if start is not None else None, int(end) if end is not None else None)
