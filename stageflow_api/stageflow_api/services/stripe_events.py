"""Typed view of the Stripe events the inbound processor acts on.

A verified webhook body is parsed into an :class:`EventEnvelope` and then
into exactly one variant of :data:`InboundEvent`.  Event types outside the
handled set become :class:`UnhandledEvent`, which the processor accepts
without changing state.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from stageflow_api.errors import ValidationError
from stageflow_core.state.tables import SubscriptionStatus

logger = logging.getLogger(__name__)

SUBSCRIPTION_CREATED = "customer.subscription.created"
SUBSCRIPTION_UPDATED = "customer.subscription.updated"
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAYMENT_FAILED = "invoice.payment_failed"
INVOICE_PAYMENT_SUCCEEDED = "invoice.payment_succeeded"
INVOICE_PAID = "invoice.paid"

_ACTIVE_STATUSES = frozenset({"active", "trialing"})
_CANCELED_STATUSES = frozenset({"canceled", "incomplete_expired"})


def map_subscription_status(provider_status: str | None) -> SubscriptionStatus:
    """Collapse a Stripe subscription status into the local three states.

    ``active``/``trialing`` are active, ``canceled``/``incomplete_expired``
    are canceled, everything else (``past_due``, ``unpaid``,
    ``incomplete``, ``paused``, unknown) is past due.
    """
    if provider_status in _ACTIVE_STATUSES:
        return SubscriptionStatus.ACTIVE
    if provider_status in _CANCELED_STATUSES:
        return SubscriptionStatus.CANCELED
    return SubscriptionStatus.PAST_DUE


# ---------------------------------------------------------------------------
# Envelope
# ---------------------------------------------------------------------------


class EventData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    object: dict[str, Any] = Field(default_factory=dict)


class EventEnvelope(BaseModel):
    """The outer Stripe ``event`` object."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(..., min_length=1, max_length=255)
    type: str = Field(..., min_length=1, max_length=100)
    created: int | None = None
    livemode: bool = False
    data: EventData = Field(default_factory=EventData)


# ---------------------------------------------------------------------------
# Variants
# ---------------------------------------------------------------------------


class _EventBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    event_id: str
    event_type: str


class SubscriptionChanged(_EventBase):
    """``customer.subscription.created`` or ``customer.subscription.updated``."""

    subscription_id: str
    customer_id: str | None
    provider_status: str | None
    price_id: str | None
    period_start: datetime | None = None
    period_end: datetime | None = None

    @property
    def status(self) -> SubscriptionStatus:
        return map_subscription_status(self.provider_status)


class SubscriptionDeleted(_EventBase):
    subscription_id: str
    customer_id: str | None


class InvoicePaymentFailed(_EventBase):
    invoice_id: str | None
    subscription_id: str | None
    customer_id: str | None


class InvoicePaymentSucceeded(_EventBase):
    invoice_id: str | None
    subscription_id: str | None
    customer_id: str | None


class UnhandledEvent(_EventBase):
    """Any event type the processor does not act on."""


InboundEvent = SubscriptionChanged | SubscriptionDeleted | InvoicePaymentFailed | InvoicePaymentSucceeded | UnhandledEvent


# ---------------------------------------------------------------------------
# Field extraction helpers
# ---------------------------------------------------------------------------


def _ref_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be a string or an expanded object."""
    if isinstance(value, str):
        return value or None
    if isinstance(value, dict):
        ref = value.get("id")
        return ref if isinstance(ref, str) and ref else None
    return None


def _timestamp(value: Any) -> datetime | None:
    if isinstance(value, bool) or not isinstance(value, int | float):
        return None
    return datetime.fromtimestamp(value, tz=UTC)


def _first_item(subscription: dict[str, Any]) -> dict[str, Any]:
    items = subscription.get("items") or {}
    data = items.get("data") if isinstance(items, dict) else None
    if isinstance(data, list) and data and isinstance(data[0], dict):
        return data[0]
    return {}


def _price_id(item: dict[str, Any]) -> str | None:
    return _ref_id(item.get("price")) or _ref_id(item.get("plan"))


def _required_id(obj: dict[str, Any], event_type: str) -> str:
    object_id = _ref_id(obj.get("id"))
    if object_id is None:
        raise ValidationError(f"{event_type} event object has no id")
    return object_id


def _invoice_subscription_id(invoice: dict[str, Any]) -> str | None:
    """Subscription reference of an invoice.

    Older API versions put it on ``invoice.subscription``; newer ones
    nest it under ``invoice.parent.subscription_details.subscription``.
    """
    direct = _ref_id(invoice.get("subscription"))
    if direct:
        return direct
    parent = invoice.get("parent")
    if isinstance(parent, dict):
        details = parent.get("subscription_details")
        if isinstance(details, dict):
            return _ref_id(details.get("subscription"))
    return None


# ---------------------------------------------------------------------------
# Variant builders
# ---------------------------------------------------------------------------


def _subscription_changed(envelope: EventEnvelope) -> SubscriptionChanged:
    sub = envelope.data.object
    item = _first_item(sub)
    return SubscriptionChanged(
        event_id=envelope.id,
        event_type=envelope.type,
        subscription_id=_required_id(sub, envelope.type),
        customer_id=_ref_id(sub.get("customer")),
        provider_status=sub.get("status"),
        price_id=_price_id(item),
        period_start=_timestamp(sub.get("current_period_start")) or _timestamp(item.get("current_period_start")),
        period_end=_timestamp(sub.get("current_period_end")) or _timestamp(item.get("current_period_end")),
    )


def _subscription_deleted(envelope: EventEnvelope) -> SubscriptionDeleted:
    sub = envelope.data.object
    return SubscriptionDeleted(
        event_id=envelope.id,
        event_type=envelope.type,
        subscription_id=_required_id(sub, envelope.type),
        customer_id=_ref_id(sub.get("customer")),
    )


def _invoice_failed(envelope: EventEnvelope) -> InvoicePaymentFailed:
    invoice = envelope.data.object
    return InvoicePaymentFailed(
        event_id=envelope.id,
        event_type=envelope.type,
        invoice_id=_ref_id(invoice.get("id")),
        subscription_id=_invoice_subscription_id(invoice),
        customer_id=_ref_id(invoice.get("customer")),
    )


def _invoice_succeeded(envelope: EventEnvelope) -> InvoicePaymentSucceeded:
    invoice = envelope.data.object
    return InvoicePaymentSucceeded(
        event_id=envelope.id,
        event_type=envelope.type,
        invoice_id=_ref_id(invoice.get("id")),
        subscription_id=_invoice_subscription_id(invoice),
        customer_id=_ref_id(invoice.get("customer")),
    )


_BUILDERS: dict[str, Callable[[EventEnvelope], InboundEvent]] = {
    SUBSCRIPTION_CREATED: _subscription_changed,
    SUBSCRIPTION_UPDATED: _subscription_changed,
    SUBSCRIPTION_DELETED: _subscription_deleted,
    INVOICE_PAYMENT_FAILED: _invoice_failed,
    INVOICE_PAYMENT_SUCCEEDED: _invoice_succeeded,
    INVOICE_PAID: _invoice_succeeded,
}


def parse_envelope(raw_body: bytes | str) -> EventEnvelope:
    """Decode a verified webhook body into an :class:`EventEnvelope`.

    Raises
    ------
    ValidationError
        If the body is not JSON or lacks an event id or type.
    """
    try:
        decoded = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ValidationError("Invalid payload") from exc
    if not isinstance(decoded, dict):
        raise ValidationError("Invalid payload")
    try:
        return EventEnvelope.model_validate(decoded)
    except PydanticValidationError as exc:
        raise ValidationError("Invalid event envelope") from exc


def to_variant(envelope: EventEnvelope) -> InboundEvent:
    """Select the variant for *envelope*; unknown types become :class:`UnhandledEvent`."""
    builder = _BUILDERS.get(envelope.type)
    if builder is None:
        return UnhandledEvent(event_id=envelope.id, event_type=envelope.type)
    try:
        return builder(envelope)
    except PydanticValidationError as exc:
        logger.warning("Malformed %s event %s: %s", envelope.type, envelope.id, exc)
        raise ValidationError(f"Malformed {envelope.type} event") from exc
