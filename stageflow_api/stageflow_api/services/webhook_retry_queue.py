"""Dead-letter queue for failed webhook deliveries.

Failed triggers are queued by the dispatcher with an exponential backoff
delay.  :meth:`WebhookRetryQueue.process_due` is called periodically
(by a scheduler hitting ``POST /webhooks/retries/process``) and redelivers
every entry whose retry time has arrived.

Each redelivery goes through the same gates as a fresh trigger: the
webhook must still be active, and the SSRF guard is applied again since
DNS for the target may have changed.  Every attempt writes its own
delivery record.
"""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stageflow_api.config import APISettings
from stageflow_api.errors import ForbiddenError, NotFoundError, StageflowError
from stageflow_api.services.webhook_dispatcher import OutboundWebhookDispatcher
from stageflow_core.state.database import session_scope
from stageflow_core.state.repository import RetryQueueRepository
from stageflow_core.state.tables import RetryStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff with jitter.

    The delay before retry *n* (0-based) is
    ``min(initial * multiplier ** n, max_delay)`` adjusted by up to
    ``±jitter_ratio`` of itself.
    """

    max_attempts: int = 5
    initial_delay_seconds: float = 60.0
    max_delay_seconds: float = 3600.0
    multiplier: float = 2.0
    jitter_ratio: float = 0.1

    @classmethod
    def from_settings(cls, settings: APISettings) -> RetryPolicy:
        return cls(
            max_attempts=settings.webhook_retry_max_attempts,
            initial_delay_seconds=float(settings.webhook_retry_initial_delay_seconds),
            max_delay_seconds=float(settings.webhook_retry_max_delay_seconds),
            multiplier=settings.webhook_retry_backoff_multiplier,
        )

    def delay_for(self, attempts: int, rng: Callable[[], float] = random.random) -> float:
        base = min(self.initial_delay_seconds * self.multiplier**attempts, self.max_delay_seconds)
        jitter = base * self.jitter_ratio * (2 * rng() - 1)
        return max(0.0, base + jitter)


def _describe(exc: Exception) -> str:
    return f"{type(exc).__name__}: {exc}"


@dataclass
class RetryRunSummary:
    processed: int = 0
    delivered: int = 0
    rescheduled: int = 0
    failed: int = 0


@dataclass(frozen=True)
class _DueEntry:
    id: str
    webhook_id: str
    organization_id: str
    event: str
    payload: dict[str, Any]


class WebhookRetryQueue:
    """Redeliver queued webhook failures.

    Parameters
    ----------
    session_factory:
        Factory for queue transactions.
    dispatcher:
        Performs target resolution, SSRF checks and the delivery itself.
    policy:
        Backoff schedule and attempt limit.
    lease_seconds:
        How long a claimed entry is hidden from other processors while its
        redelivery is in progress.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher: OutboundWebhookDispatcher,
        policy: RetryPolicy,
        *,
        lease_seconds: int = 120,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher
        self._policy = policy
        self._lease_seconds = lease_seconds

    async def process_due(self, limit: int = 50, *, now: datetime | None = None) -> RetryRunSummary:
        """Attempt every due entry once.  Returns per-outcome counts."""
        async with session_scope(self._session_factory) as session:
            rows = await RetryQueueRepository(session).claim_due(
                lease_seconds=self._lease_seconds,
                now=now,
                limit=limit,
            )
            due = [_DueEntry(r.id, r.webhook_id, r.organization_id, r.event, dict(r.payload)) for r in rows]

        summary = RetryRunSummary()
        for entry in due:
            outcome = await self._process_entry(entry)
            summary.processed += 1
            if outcome == RetryStatus.DELIVERED:
                summary.delivered += 1
            elif outcome == RetryStatus.FAILED:
                summary.failed += 1
            else:
                summary.rescheduled += 1

        if summary.processed:
            logger.info(
                "Retry run: processed=%d delivered=%d rescheduled=%d failed=%d",
                summary.processed,
                summary.delivered,
                summary.rescheduled,
                summary.failed,
            )
        return summary

    async def _process_entry(self, entry: _DueEntry) -> RetryStatus:
        try:
            target = await self._dispatcher.resolve_target(entry.organization_id, entry.webhook_id)
        except NotFoundError:
            return await self._give_up(entry, "Webhook inactive or deleted")
        except ForbiddenError as exc:
            return await self._give_up(entry, f"Blocked by SSRF guard: {exc.detail}")
        except StageflowError as exc:
            logger.error("Could not prepare retry %s for webhook %s: %s", entry.id, entry.webhook_id, exc.detail)
            return await self._record_attempt(entry, success=False, error=exc.detail, delivery_id=None)
        except Exception as exc:
            logger.error("Could not prepare retry %s for webhook %s", entry.id, entry.webhook_id, exc_info=True)
            return await self._record_attempt(entry, success=False, error=_describe(exc), delivery_id=None)

        try:
            outcome = await self._dispatcher.deliver(target, entry.event, entry.payload)
        except Exception as exc:
            logger.error("Redelivery of retry %s for webhook %s raised", entry.id, entry.webhook_id, exc_info=True)
            return await self._record_attempt(entry, success=False, error=_describe(exc), delivery_id=None)

        return await self._record_attempt(
            entry,
            success=outcome.success,
            error=outcome.error or "Delivery failed",
            delivery_id=outcome.delivery_id,
        )

    async def _record_attempt(
        self,
        entry: _DueEntry,
        *,
        success: bool,
        error: str,
        delivery_id: str | None,
    ) -> RetryStatus:
        """Count one attempt against *entry* and reschedule or settle it."""
        async with session_scope(self._session_factory) as session:
            repo = RetryQueueRepository(session)
            row = await repo.get(entry.id)
            if row is None or row.status != RetryStatus.PENDING.value:
                return RetryStatus(row.status) if row is not None else RetryStatus.FAILED

            if success:
                await repo.mark_delivered(row, delivery_id=delivery_id)
                logger.info("Retry of webhook %s delivered (delivery %s)", entry.webhook_id, delivery_id)
                return RetryStatus.DELIVERED

            if row.attempts + 1 >= row.max_attempts:
                await repo.mark_failed(row, error, delivery_id=delivery_id)
                logger.warning(
                    "Giving up on webhook %s after %d retries (delivery %s)",
                    entry.webhook_id,
                    row.attempts,
                    delivery_id,
                )
                return RetryStatus.FAILED

            delay = self._policy.delay_for(row.attempts + 1)
            await repo.reschedule(
                row,
                error=error,
                next_retry_at=datetime.now(UTC) + timedelta(seconds=delay),
                delivery_id=delivery_id,
            )
            return RetryStatus.PENDING

    async def _give_up(self, entry: _DueEntry, error: str) -> RetryStatus:
        async with session_scope(self._session_factory) as session:
            repo = RetryQueueRepository(session)
            row = await repo.get(entry.id)
            if row is not None and row.status == RetryStatus.PENDING.value:
                await repo.mark_failed(row, error)
        logger.warning("Retry entry %s for webhook %s marked failed: %s", entry.id, entry.webhook_id, error)
        return RetryStatus.FAILED

    async def stats(self) -> dict[str, int]:
        async with session_scope(self._session_factory) as session:
            return await RetryQueueRepository(session).stats()
