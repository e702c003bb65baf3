from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, List, Literal, Optional, Tuple, Type

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

# -----------------------------
# Request bodies
# -----------------------------

class CheckoutReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    tier_id: str = Field(validation_alias=AliasChoices("tierId", "tier_id"), min_length=1)
    amount: Decimal = Field(gt=0)


class ChangeTierReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    new_tier_id: str = Field(validation_alias=AliasChoices("newTierId", "new_tier_id"), min_length=1)
    new_amount: Decimal = Field(validation_alias=AliasChoices("newAmount", "new_amount"), gt=0)
    effective_date: Literal["now", "next_billing_cycle"] = Field(
        default="now", validation_alias=AliasChoices("effectiveDate", "effective_date")
    )
    proration_behavior: Literal["create_prorations", "always_invoice", "none"] = Field(
        default="always_invoice", validation_alias=AliasChoices("prorationBehavior", "proration_behavior")
    )
    send_notification: bool = Field(default=True, validation_alias=AliasChoices("sendNotification", "send_notification"))


class BillingActionReq(BaseModel):
    action: str = Field(min_length=1)


class RetryPaymentReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    payment_failure_id: str = Field(validation_alias=AliasChoices("paymentFailureId", "payment_failure_id"), min_length=1)


class TierCreateReq(BaseModel):
    model_config = ConfigDict(populate_by_name=True)
    name: str = Field(min_length=1, max_length=80)
    description: Optional[str] = Field(default=None, max_length=500)
    minimum_price: Decimal = Field(validation_alias=AliasChoices("minimumPrice", "minimum_price"), gt=0)


# -----------------------------
# Webhook payloads
# -----------------------------

class StripeModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


def _collapse_expanded(value: Any) -> Any:
    # Expanded references arrive as objects; the handlers only ever need the id.
    if isinstance(value, dict):
        return value.get("id")
    return value


class CustomerDetails(StripeModel):
    email: Optional[str] = None
    name: Optional[str] = None


class CheckoutSessionObject(StripeModel):
    id: str
    mode: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    customer_email: Optional[str] = None
    customer_details: Optional[CustomerDetails] = None
    amount_total: Optional[int] = None
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _collapse_expanded(value)

    @property
    def email(self) -> Optional[str]:
        if self.customer_details and self.customer_details.email:
            return self.customer_details.email
        return self.customer_email


class Period(StripeModel):
    start: Optional[int] = None
    end: Optional[int] = None


class InvoiceLine(StripeModel):
    id: Optional[str] = None
    amount: int = 0
    description: Optional[str] = None
    proration: bool = False
    period: Optional[Period] = None


class InvoiceLines(StripeModel):
    data: List[InvoiceLine] = Field(default_factory=list)


class InvoiceObject(StripeModel):
    id: str
    status: Optional[str] = None
    subscription: Optional[str] = None
    customer: Optional[str] = None
    amount_paid: int = 0
    amount_due: int = 0
    attempt_count: int = 0
    next_payment_attempt: Optional[int] = None
    period_start: Optional[int] = None
    period_end: Optional[int] = None
    created: Optional[int] = None
    due_date: Optional[int] = None
    billing_reason: Optional[str] = None
    status_transitions: Dict[str, Any] = Field(default_factory=dict)
    lines: InvoiceLines = Field(default_factory=InvoiceLines)
    parent: Optional[Dict[str, Any]] = None

    @field_validator("subscription", "customer", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _collapse_expanded(value)

    @property
    def subscription_id(self) -> Optional[str]:
        if self.subscription:
            return self.subscription
        details = (self.parent or {}).get("subscription_details") or {}
        return _collapse_expanded(details.get("subscription"))

    def service_period(self) -> Tuple[Optional[int], Optional[int]]:
        """Period the invoice pays for. Line items carry it; the top-level fields lag a cycle."""
        lines = [ln for ln in self.lines.data if ln.period and ln.period.end]
        regular = [ln for ln in lines if not ln.proration] or lines
        if regular:
            return regular[-1].period.start, regular[-1].period.end
        return self.period_start, self.period_end


class SubscriptionItem(StripeModel):
    id: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None


class SubscriptionItems(StripeModel):
    data: List[SubscriptionItem] = Field(default_factory=list)


class SubscriptionObject(StripeModel):
    id: str
    status: str
    customer: Optional[str] = None
    current_period_start: Optional[int] = None
    current_period_end: Optional[int] = None
    cancel_at_period_end: Optional[bool] = None
    canceled_at: Optional[int] = None
    items: SubscriptionItems = Field(default_factory=SubscriptionItems)
    metadata: Dict[str, str] = Field(default_factory=dict)

    @field_validator("customer", mode="before")
    @classmethod
    def collapse_expanded_ids(cls, value: Any) -> Any:
        return _collapse_expanded(value)

    def period(self) -> Tuple[Optional[int], Optional[int]]:
        if self.current_period_start is not None and self.current_period_end is not None:
            return self.current_period_start, self.current_period_end
        if self.items.data:
            item = self.items.data[0]
            return item.current_period_start, item.current_period_end
        return None, None


class AccountObject(StripeModel):
    id: str
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    metadata: Dict[str, str] = Field(default_factory=dict)

    @property
    def artist_id(self) -> Optional[str]:
        return self.metadata.get("artist_id") or self.metadata.get("userId")


class WebhookData(StripeModel):
    object: Dict[str, Any]


class WebhookEnvelope(StripeModel):
    id: str
    type: str
    created: Optional[int] = None
    livemode: bool = False
    data: WebhookData


EVENT_OBJECT_MODELS: Dict[str, Type[StripeModel]] = {
    "checkout.session.completed": CheckoutSessionObject,
    "invoice.payment_succeeded": InvoiceObject,
    "invoice.paid": InvoiceObject,
    "invoice.payment_failed": InvoiceObject,
    "customer.subscription.created": SubscriptionObject,
    "customer.subscription.updated": SubscriptionObject,
    "customer.subscription.deleted": SubscriptionObject,
    "account.updated": AccountObject,
}
