"""SQLAlchemy 2.0 ORM table definitions for the StageFlow webhook pipeline.

All tables use the modern ``Mapped`` / ``mapped_column`` declaration style
introduced in SQLAlchemy 2.0.  The ``Base`` declarative base is exported for
use by migrations and the repository layer.

Two tables are append-mostly (``inbound_events``, ``webhook_deliveries``)
and two are mutable mirrors of provider state (``subscriptions`` and the
plan fields of ``organizations``).
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# Cross-dialect JSON type: uses JSONB on PostgreSQL, falls back to plain
# JSON (stored as TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class InboundEventStatus(str, Enum):
    """Lifecycle of an idempotency-ledger claim."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class SubscriptionStatus(str, Enum):
    """Local mirror of the provider subscription status."""

    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class DeliveryStatus(str, Enum):
    """Outcome of a single outbound delivery attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RetryStatus(str, Enum):
    """State of a retry-queue entry."""

    PENDING = "pending"
    DELIVERED = "delivered"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all StageFlow tables."""


# ---------------------------------------------------------------------------
# Idempotency ledger
# ---------------------------------------------------------------------------


class InboundEventTable(Base):
    """One row per upstream provider event id.

    The primary key on ``event_id`` is the only concurrency control for
    duplicate deliveries: claims are inserted with ``ON CONFLICT DO
    NOTHING`` before any business mutation runs.  ``processed_at`` is set
    in the same transaction as the mutations, so a ``completed`` row is
    never visible without its effects.
    """

    __tablename__ = "inbound_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=InboundEventStatus.PROCESSING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    claimed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (Index("ix_inbound_events_status", "status"),)


# ---------------------------------------------------------------------------
# Organizations and subscriptions
# ---------------------------------------------------------------------------


class OrganizationTable(Base):
    """Partial view of a tenant organization.

    The inbound processor owns ``plan`` and ``subscription_id`` only.
    ``stripe_customer_id`` is written by checkout (out of scope here) and
    read to resolve the owning organization of a provider event.
    """

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(256), nullable=False, default="")
    plan: Mapped[str] = mapped_column(String(32), nullable=False, default="free")
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    subscription_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )


class SubscriptionTable(Base):
    """Mirror of an external provider subscription.

    A row is only ever written after ``organization_id`` has been resolved
    from ``external_customer_id``; subscriptions never exist detached from
    an organization.
    """

    __tablename__ = "subscriptions"

    external_subscription_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    external_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=SubscriptionStatus.ACTIVE.value)
    plan_tier: Mapped[str] = mapped_column(String(32), nullable=False)
    period_start: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_subscriptions_organization", "organization_id"),
        Index("ix_subscriptions_customer", "external_customer_id"),
    )


# ---------------------------------------------------------------------------
# Outbound webhooks
# ---------------------------------------------------------------------------


class WebhookConfigTable(Base):
    """Tenant-registered outbound webhook target.

    ``secret_encrypted`` holds a Fernet-encrypted copy of the signing
    secret; the dispatcher decrypts it only to compute signatures.  Rows
    are created and edited by tenant-facing management and are read-only
    to the dispatcher.
    """

    __tablename__ = "webhook_configs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    organization_id: Mapped[str] = mapped_column(String(36), ForeignKey("organizations.id"), nullable=False)
    url: Mapped[str] = mapped_column(String(2048), nullable=False)
    secret_encrypted: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (Index("ix_webhook_configs_org_active", "organization_id", "active"),)


class WebhookDeliveryTable(Base):
    """Audit row for one outbound delivery attempt.

    Created ``pending`` before the network call and moved exactly once to
    ``success`` or ``failed``.  Rows are never deleted.
    """

    __tablename__ = "webhook_deliveries"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    webhook_id: Mapped[str] = mapped_column(String(36), ForeignKey("webhook_configs.id"), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=DeliveryStatus.PENDING.value)
    response_status: Mapped[int | None] = mapped_column(Integer, nullable=True)
    response_body: Mapped[str | None] = mapped_column(Text, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_webhook_deliveries_webhook_created", "webhook_id", "created_at"),
        Index("ix_webhook_deliveries_status", "status"),
    )


class WebhookRetryTable(Base):
    """Dead-letter queue of failed deliveries awaiting another attempt."""

    __tablename__ = "webhook_retry_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    webhook_id: Mapped[str] = mapped_column(String(36), ForeignKey("webhook_configs.id"), nullable=False)
    organization_id: Mapped[str] = mapped_column(String(36), nullable=False)
    event: Mapped[str] = mapped_column(String(100), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=RetryStatus.PENDING.value)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    next_retry_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    last_delivery_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (Index("ix_webhook_retry_status_next", "status", "next_retry_at"),)
