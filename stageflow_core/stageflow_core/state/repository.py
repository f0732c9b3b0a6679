"""Repository classes providing access to the StageFlow state store.

Each repository takes an ``AsyncSession`` at construction time and operates
within the caller's transaction boundary.  All writes call ``session.flush()``
so that generated defaults are populated; the caller is responsible for
committing (or relying on :func:`stageflow_core.state.database.session_scope`).
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from sqlalchemy import func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from stageflow_core.state.tables import (
    DeliveryStatus,
    InboundEventStatus,
    InboundEventTable,
    OrganizationTable,
    RetryStatus,
    SubscriptionStatus,
    SubscriptionTable,
    WebhookConfigTable,
    WebhookDeliveryTable,
    WebhookRetryTable,
)

logger = logging.getLogger(__name__)

# Response bodies from tenant endpoints are stored truncated.
MAX_RESPONSE_BODY_CHARS = 1000

# Ledger error text is for operators, not for a stack trace dump.
_MAX_LEDGER_ERROR_CHARS = 500


def _dialect_insert(session: AsyncSession, table: Any) -> Any:
    """Return a dialect-specific ``insert()`` supporting ``ON CONFLICT``."""
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        return _pg_insert(table)

    from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

    return _sqlite_insert(table)


async def _dialect_upsert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Returns the execution result; ``rowcount`` is 1 when the row was
    inserted and 0 when it already existed.
    """
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


async def _dialect_upsert(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
    update_columns: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO UPDATE`` of *update_columns*."""
    stmt = _dialect_insert(session, table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=index_elements,
        set_={col: stmt.excluded[col] for col in update_columns},
    )
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# InboundEventRepository (idempotency ledger)
# ---------------------------------------------------------------------------


class ClaimResult(str, Enum):
    """Outcome of an idempotency claim attempt."""

    CLAIMED = "claimed"
    RECLAIMED = "reclaimed"
    DUPLICATE = "duplicate"
    IN_FLIGHT = "in_flight"


class InboundEventRepository:
    """Idempotency ledger keyed by upstream event id.

    A claim is a row in ``processing`` state.  It becomes ``completed``
    only in the transaction that applies the event's mutations, and
    ``failed`` when those mutations raised.  Failed claims, and
    ``processing`` claims older than the lease, may be re-claimed so the
    provider's retry can finish the work.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, event_id: str) -> InboundEventTable | None:
        stmt = select(InboundEventTable).where(InboundEventTable.event_id == event_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def claim(
        self,
        event_id: str,
        event_type: str,
        *,
        lease_seconds: int = 300,
    ) -> ClaimResult:
        """Atomically claim *event_id* for processing.

        The insert relies on the primary-key constraint rather than a
        read-then-write check, so two concurrent deliveries of the same
        event cannot both obtain ``CLAIMED``.  Re-claiming uses a single
        conditional ``UPDATE`` for the same reason.
        """
        now = datetime.now(UTC)
        result = await _dialect_upsert_nothing(
            self._session,
            InboundEventTable,
            values={
                "event_id": event_id,
                "event_type": event_type,
                "status": InboundEventStatus.PROCESSING.value,
                "attempts": 1,
                "claimed_at": now,
            },
            index_elements=["event_id"],
        )
        await self._session.flush()
        if (result.rowcount or 0) > 0:
            return ClaimResult.CLAIMED

        existing = await self.get(event_id)
        if existing is not None and existing.status == InboundEventStatus.COMPLETED.value:
            return ClaimResult.DUPLICATE

        cutoff = now - timedelta(seconds=lease_seconds)
        stmt = (
            update(InboundEventTable)
            .where(
                InboundEventTable.event_id == event_id,
                InboundEventTable.status != InboundEventStatus.COMPLETED.value,
                or_(
                    InboundEventTable.status == InboundEventStatus.FAILED.value,
                    InboundEventTable.claimed_at < cutoff,
                ),
            )
            .values(
                status=InboundEventStatus.PROCESSING.value,
                attempts=InboundEventTable.attempts + 1,
                claimed_at=now,
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        reclaim = await self._session.execute(stmt)
        await self._session.flush()
        if (reclaim.rowcount or 0) > 0:
            logger.info("Re-claimed unfinished inbound event %s (%s)", event_id, event_type)
            return ClaimResult.RECLAIMED
        return ClaimResult.IN_FLIGHT

    async def complete(self, event_id: str) -> None:
        """Mark the claim completed.  Call inside the mutation transaction."""
        stmt = (
            update(InboundEventTable)
            .where(InboundEventTable.event_id == event_id)
            .values(
                status=InboundEventStatus.COMPLETED.value,
                processed_at=datetime.now(UTC),
                last_error=None,
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()

    async def fail(self, event_id: str, error: str) -> None:
        """Release a claim whose processing raised so a retry can re-run it."""
        stmt = (
            update(InboundEventTable)
            .where(
                InboundEventTable.event_id == event_id,
                InboundEventTable.status == InboundEventStatus.PROCESSING.value,
            )
            .values(
                status=InboundEventStatus.FAILED.value,
                last_error=error[:_MAX_LEDGER_ERROR_CHARS],
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# OrganizationRepository
# ---------------------------------------------------------------------------


class OrganizationRepository:
    """Access to the plan fields of ``organizations``."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, organization_id: str) -> OrganizationTable | None:
        return await self._session.get(OrganizationTable, organization_id)

    async def get_by_customer_id(self, customer_id: str) -> OrganizationTable | None:
        """Resolve the organization that owns a provider customer id."""
        if not customer_id:
            return None
        stmt = select(OrganizationTable).where(OrganizationTable.stripe_customer_id == customer_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def set_plan(
        self,
        organization: OrganizationTable,
        *,
        plan: str,
        subscription_id: str | None,
    ) -> OrganizationTable:
        organization.plan = plan
        organization.subscription_id = subscription_id
        await self._session.flush()
        return organization


# ---------------------------------------------------------------------------
# SubscriptionRepository
# ---------------------------------------------------------------------------


class SubscriptionRepository:
    """Mirror of provider subscriptions keyed by external subscription id."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, external_subscription_id: str) -> SubscriptionTable | None:
        return await self._session.get(SubscriptionTable, external_subscription_id)

    async def upsert(
        self,
        *,
        external_subscription_id: str,
        external_customer_id: str,
        organization_id: str,
        status: SubscriptionStatus,
        plan_tier: str,
        period_start: datetime | None,
        period_end: datetime | None,
    ) -> None:
        """Insert or overwrite the subscription row.

        Every column is assigned absolutely, so replaying the same event
        converges on the same row.
        """
        values: dict[str, Any] = {
            "external_subscription_id": external_subscription_id,
            "external_customer_id": external_customer_id,
            "organization_id": organization_id,
            "status": status.value,
            "plan_tier": plan_tier,
            "period_start": period_start,
            "period_end": period_end,
            "updated_at": datetime.now(UTC),
        }
        await _dialect_upsert(
            self._session,
            SubscriptionTable,
            values=values,
            index_elements=["external_subscription_id"],
            update_columns=[k for k in values if k != "external_subscription_id"],
        )
        await self._session.flush()

    async def set_status(self, external_subscription_id: str, status: SubscriptionStatus) -> bool:
        """Set the status of an existing subscription.

        Returns ``False`` when no row matches.
        """
        stmt = (
            update(SubscriptionTable)
            .where(SubscriptionTable.external_subscription_id == external_subscription_id)
            .values(status=status.value, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0


# ---------------------------------------------------------------------------
# WebhookConfigRepository
# ---------------------------------------------------------------------------


class WebhookConfigRepository:
    """Read-only access to tenant webhook targets, scoped to one organization."""

    def __init__(self, session: AsyncSession, organization_id: str) -> None:
        self._session = session
        self._organization_id = organization_id

    async def get_active(self, webhook_id: str) -> WebhookConfigTable | None:
        """Fetch an active webhook owned by this organization."""
        stmt = select(WebhookConfigTable).where(
            WebhookConfigTable.id == webhook_id,
            WebhookConfigTable.organization_id == self._organization_id,
            WebhookConfigTable.active == True,  # noqa: E712
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get(self, webhook_id: str) -> WebhookConfigTable | None:
        """Fetch a webhook owned by this organization regardless of state."""
        stmt = select(WebhookConfigTable).where(
            WebhookConfigTable.id == webhook_id,
            WebhookConfigTable.organization_id == self._organization_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# DeliveryRepository
# ---------------------------------------------------------------------------

_MAX_DELIVERY_PAGE_SIZE = 100


class DeliveryRepository:
    """Audit trail of outbound delivery attempts.

    Rows are created ``pending`` and finished exactly once; nothing here
    deletes a delivery.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create_pending(
        self,
        *,
        webhook_id: str,
        event: str,
        payload: dict[str, Any],
    ) -> WebhookDeliveryTable:
        row = WebhookDeliveryTable(
            webhook_id=webhook_id,
            event=event,
            payload=payload,
            status=DeliveryStatus.PENDING.value,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, delivery_id: str) -> WebhookDeliveryTable | None:
        return await self._session.get(WebhookDeliveryTable, delivery_id)

    async def finish(
        self,
        delivery_id: str,
        *,
        status: DeliveryStatus,
        response_status: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
    ) -> bool:
        """Move a pending delivery to its terminal state.

        The ``status == pending`` guard makes the transition happen at
        most once.  Returns ``False`` if the row was not pending.
        """
        if status == DeliveryStatus.PENDING:
            raise ValueError("A delivery can only be finished as success or failed")

        stmt = (
            update(WebhookDeliveryTable)
            .where(
                WebhookDeliveryTable.id == delivery_id,
                WebhookDeliveryTable.status == DeliveryStatus.PENDING.value,
            )
            .values(
                status=status.value,
                response_status=response_status,
                response_body=response_body[:MAX_RESPONSE_BODY_CHARS] if response_body is not None else None,
                error=error,
                delivered_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        updated = (result.rowcount or 0) > 0
        if not updated:
            logger.warning("Delivery %s was not pending; terminal state left unchanged", delivery_id)
        return updated

    async def list_for_webhook(self, webhook_id: str, limit: int = 50) -> list[WebhookDeliveryTable]:
        """Return the most recent deliveries for a webhook, newest first."""
        limit = max(1, min(limit, _MAX_DELIVERY_PAGE_SIZE))
        stmt = (
            select(WebhookDeliveryTable)
            .where(WebhookDeliveryTable.webhook_id == webhook_id)
            .order_by(WebhookDeliveryTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# RetryQueueRepository
# ---------------------------------------------------------------------------


class RetryQueueRepository:
    """Dead-letter queue of failed deliveries."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        *,
        webhook_id: str,
        organization_id: str,
        event: str,
        payload: dict[str, Any],
        next_retry_at: datetime,
        max_attempts: int,
        error: str | None,
        delivery_id: str | None,
    ) -> WebhookRetryTable:
        row = WebhookRetryTable(
            webhook_id=webhook_id,
            organization_id=organization_id,
            event=event,
            payload=payload,
            status=RetryStatus.PENDING.value,
            attempts=0,
            max_attempts=max_attempts,
            next_retry_at=next_retry_at,
            last_error=error,
            last_delivery_id=delivery_id,
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def get(self, entry_id: str) -> WebhookRetryTable | None:
        return await self._session.get(WebhookRetryTable, entry_id)

    async def claim_due(
        self,
        *,
        lease_seconds: int,
        now: datetime | None = None,
        limit: int = 100,
    ) -> list[WebhookRetryTable]:
        """Lock due entries and push their retry time out by *lease_seconds*.

        A concurrent processor skips locked rows (PostgreSQL) and, once this
        transaction commits, no longer sees the claimed entries as due.
        """
        now = now or datetime.now(UTC)
        stmt = (
            select(WebhookRetryTable)
            .where(
                WebhookRetryTable.status == RetryStatus.PENDING.value,
                WebhookRetryTable.attempts < WebhookRetryTable.max_attempts,
                WebhookRetryTable.next_retry_at <= now,
            )
            .order_by(WebhookRetryTable.next_retry_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        entries = list(result.scalars().all())
        lease_until = now + timedelta(seconds=lease_seconds)
        for entry in entries:
            entry.next_retry_at = lease_until
        await self._session.flush()
        return entries

    async def mark_delivered(self, entry: WebhookRetryTable, *, delivery_id: str | None) -> None:
        entry.attempts += 1
        entry.status = RetryStatus.DELIVERED.value
        entry.last_delivery_id = delivery_id
        entry.last_error = None
        entry.finished_at = datetime.now(UTC)
        await self._session.flush()

    async def mark_failed(self, entry: WebhookRetryTable, error: str, *, delivery_id: str | None = None) -> None:
        """Give up on an entry permanently."""
        entry.attempts += 1
        entry.status = RetryStatus.FAILED.value
        entry.last_error = error
        if delivery_id is not None:
            entry.last_delivery_id = delivery_id
        entry.finished_at = datetime.now(UTC)
        await self._session.flush()

    async def reschedule(
        self,
        entry: WebhookRetryTable,
        *,
        error: str,
        next_retry_at: datetime,
        delivery_id: str | None,
    ) -> None:
        entry.attempts += 1
        entry.last_error = error
        entry.last_delivery_id = delivery_id
        entry.next_retry_at = next_retry_at
        await self._session.flush()

    async def stats(self) -> dict[str, int]:
        """Return entry counts by status plus the total number of attempts."""
        stmt = select(
            WebhookRetryTable.status,
            func.count(WebhookRetryTable.id),
            func.coalesce(func.sum(WebhookRetryTable.attempts), 0),
        ).group_by(WebhookRetryTable.status)
        result = await self._session.execute(stmt)

        stats = {s.value: 0 for s in RetryStatus}
        stats["total_attempts"] = 0
        for status, count, attempts in result.all():
            stats[status] = int(count)
            stats["total_attempts"] += int(attempts or 0)
        return stats
