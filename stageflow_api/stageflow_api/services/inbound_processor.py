"""Inbound Stripe webhook processing.

Each event goes through three steps:

1. **Verify** the ``Stripe-Signature`` header against the raw body with
   the provider SDK.  Nothing is read or written before this succeeds.
2. **Claim** the event id in the idempotency ledger, committed in its own
   transaction.  Completed events are reported as duplicates; events whose
   claim is held by a live invocation are refused with a conflict.
3. **Apply** the event's mutations and mark the claim completed in one
   transaction.  If applying raises, the claim is released as ``failed``
   so the provider's next retry processes the event again, and the error
   propagates to the caller as a 500.

All mutations are absolute assignments or upserts, so re-applying an
event after a partial failure converges on the same state.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

import stripe
from pydantic import SecretStr
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stageflow_api.errors import ConflictError, FatalProcessingError, ValidationError
from stageflow_api.middleware.prometheus import INBOUND_EVENTS_TOTAL
from stageflow_api.services.plan_tiers import PlanTier, PlanTierMap
from stageflow_api.services.stripe_events import (
    EventEnvelope,
    InboundEvent,
    InvoicePaymentFailed,
    InvoicePaymentSucceeded,
    SubscriptionChanged,
    SubscriptionDeleted,
    UnhandledEvent,
    parse_envelope,
    to_variant,
)
from stageflow_core.state.database import session_scope
from stageflow_core.state.repository import (
    ClaimResult,
    InboundEventRepository,
    OrganizationRepository,
    SubscriptionRepository,
)
from stageflow_core.state.tables import SubscriptionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandlerResult:
    """Outcome reported back to the provider."""

    event_id: str
    event_type: str
    duplicate: bool = False


class InboundEventProcessor:
    """Verify, claim and apply Stripe webhook events.

    Parameters
    ----------
    session_factory:
        Factory for the sessions used by the claim and apply transactions.
    webhook_secret:
        The endpoint signing secret (``whsec_...``).
    plan_tiers:
        Price id -> plan tier mapping.
    tolerance_seconds:
        Maximum age of the signature timestamp.
    claim_lease_seconds:
        Age after which an unfinished ``processing`` claim may be taken over.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        webhook_secret: SecretStr,
        plan_tiers: PlanTierMap,
        tolerance_seconds: int = 300,
        claim_lease_seconds: int = 300,
    ) -> None:
        self._session_factory = session_factory
        self._webhook_secret = webhook_secret
        self._plan_tiers = plan_tiers
        self._tolerance = tolerance_seconds
        self._lease = claim_lease_seconds
        self._handlers: dict[type, Callable[[AsyncSession, Any], Awaitable[None]]] = {
            SubscriptionChanged: self._apply_subscription_changed,
            SubscriptionDeleted: self._apply_subscription_deleted,
            InvoicePaymentFailed: self._apply_invoice_payment_failed,
            InvoicePaymentSucceeded: self._apply_invoice_payment_succeeded,
            UnhandledEvent: self._apply_unhandled,
        }

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify(self, raw_body: bytes, signature_header: str | None) -> EventEnvelope:
        """Check the provider signature and decode the event envelope.

        Raises
        ------
        ValidationError
            Missing or invalid signature, stale timestamp, or a body that
            is not a well-formed event.
        FatalProcessingError
            No webhook secret is configured.
        """
        secret = self._webhook_secret.get_secret_value()
        if not secret:
            logger.error("Stripe webhook secret is not configured; refusing inbound event")
            raise FatalProcessingError("Webhook endpoint is not configured")

        if not signature_header:
            raise ValidationError("Missing Stripe signature")

        try:
            payload = raw_body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ValidationError("Invalid payload") from exc

        try:
            stripe.WebhookSignature.verify_header(payload, signature_header, secret, self._tolerance)
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise ValidationError("Signature verification failed") from exc

        return parse_envelope(payload)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def handle(self, raw_body: bytes, signature_header: str | None) -> HandlerResult:
        """Process one webhook delivery from the provider."""
        try:
            event = to_variant(self.verify(raw_body, signature_header))
        except ValidationError:
            INBOUND_EVENTS_TOTAL.labels(outcome="rejected").inc()
            raise

        async with session_scope(self._session_factory) as session:
            claim = await InboundEventRepository(session).claim(
                event.event_id,
                event.event_type,
                lease_seconds=self._lease,
            )

        if claim == ClaimResult.DUPLICATE:
            logger.info("Duplicate Stripe event %s (%s); skipping", event.event_id, event.event_type)
            INBOUND_EVENTS_TOTAL.labels(outcome="duplicate").inc()
            return HandlerResult(event.event_id, event.event_type, duplicate=True)

        if claim == ClaimResult.IN_FLIGHT:
            logger.info("Stripe event %s is being processed by another worker", event.event_id)
            INBOUND_EVENTS_TOTAL.labels(outcome="in_flight").inc()
            raise ConflictError()

        try:
            async with session_scope(self._session_factory) as session:
                await self._handlers[type(event)](session, event)
                await InboundEventRepository(session).complete(event.event_id)
        except Exception as exc:
            INBOUND_EVENTS_TOTAL.labels(outcome="failed").inc()
            logger.error(
                "Processing Stripe event %s (%s) failed: %s",
                event.event_id,
                event.event_type,
                exc,
                exc_info=True,
            )
            await self._release_claim(event, exc)
            raise

        INBOUND_EVENTS_TOTAL.labels(outcome="processed").inc()
        logger.info("Processed Stripe event %s (%s, %s)", event.event_id, event.event_type, claim.value)
        return HandlerResult(event.event_id, event.event_type)

    async def _release_claim(self, event: InboundEvent, exc: Exception) -> None:
        try:
            async with session_scope(self._session_factory) as session:
                await InboundEventRepository(session).fail(event.event_id, f"{type(exc).__name__}: {exc}")
        except Exception:
            # The claim stays ``processing`` and becomes reclaimable once its lease runs out.
            logger.error("Could not release claim for Stripe event %s", event.event_id, exc_info=True)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def _apply_subscription_changed(self, session: AsyncSession, event: SubscriptionChanged) -> None:
        tier = self._plan_tiers.resolve(event.price_id)

        if not event.customer_id:
            raise FatalProcessingError(f"Subscription {event.subscription_id} has no customer")
        orgs = OrganizationRepository(session)
        org = await orgs.get_by_customer_id(event.customer_id)
        if org is None:
            raise FatalProcessingError(f"No organization for customer {event.customer_id}")

        status = event.status
        await SubscriptionRepository(session).upsert(
            external_subscription_id=event.subscription_id,
            external_customer_id=event.customer_id,
            organization_id=org.id,
            status=status,
            plan_tier=tier.value,
            period_start=event.period_start,
            period_end=event.period_end,
        )

        if status == SubscriptionStatus.CANCELED:
            if org.subscription_id not in (None, event.subscription_id):
                logger.info(
                    "Organization %s is on subscription %s; ignoring cancellation of %s",
                    org.id,
                    org.subscription_id,
                    event.subscription_id,
                )
                return
            await orgs.set_plan(org, plan=PlanTier.FREE.value, subscription_id=None)
        else:
            await orgs.set_plan(org, plan=tier.value, subscription_id=event.subscription_id)
        logger.info(
            "Organization %s now on plan %s (subscription %s, %s)",
            org.id,
            org.plan,
            event.subscription_id,
            status.value,
        )

    async def _apply_subscription_deleted(self, session: AsyncSession, event: SubscriptionDeleted) -> None:
        subs = SubscriptionRepository(session)
        orgs = OrganizationRepository(session)

        existing = await subs.get(event.subscription_id)
        if existing is None:
            logger.info("Cancellation for unknown subscription %s; nothing to mark", event.subscription_id)
        else:
            await subs.set_status(event.subscription_id, SubscriptionStatus.CANCELED)

        org = None
        if existing is not None:
            org = await orgs.get(existing.organization_id)
        if org is None and event.customer_id:
            org = await orgs.get_by_customer_id(event.customer_id)
        if org is None:
            logger.info("No organization found for cancelled subscription %s", event.subscription_id)
            return

        # An organization that already moved to another subscription keeps its plan.
        if org.subscription_id not in (None, event.subscription_id):
            logger.info(
                "Organization %s is on subscription %s; ignoring cancellation of %s",
                org.id,
                org.subscription_id,
                event.subscription_id,
            )
            return
        await orgs.set_plan(org, plan=PlanTier.FREE.value, subscription_id=None)
        logger.info("Organization %s downgraded to free after cancellation", org.id)

    async def _set_subscription_status(
        self,
        session: AsyncSession,
        subscription_id: str | None,
        status: SubscriptionStatus,
        event: InboundEvent,
    ) -> None:
        if not subscription_id:
            logger.debug("%s %s references no subscription", event.event_type, event.event_id)
            return
        updated = await SubscriptionRepository(session).set_status(subscription_id, status)
        if not updated:
            logger.info("%s for unknown subscription %s; no change", event.event_type, subscription_id)

    async def _apply_invoice_payment_failed(self, session: AsyncSession, event: InvoicePaymentFailed) -> None:
        await self._set_subscription_status(session, event.subscription_id, SubscriptionStatus.PAST_DUE, event)

    async def _apply_invoice_payment_succeeded(self, session: AsyncSession, event: InvoicePaymentSucceeded) -> None:
        await self._set_subscription_status(session, event.subscription_id, SubscriptionStatus.ACTIVE, event)

    async def _apply_unhandled(self, session: AsyncSession, event: UnhandledEvent) -> None:
        logger.debug("Unhandled Stripe event type: %s", event.event_type)
