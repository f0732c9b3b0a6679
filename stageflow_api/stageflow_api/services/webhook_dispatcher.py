"""Outbound webhook delivery to tenant-configured endpoints.

A trigger is processed in this order:

1. Caller identity is required; there is no anonymous path.
2. The request is structurally validated.
3. The webhook is looked up by id, owning organization and ``active``.
4. The URL must pass the :class:`SSRFGuard`.  A denial raises
   :class:`ForbiddenError` and nothing is recorded or sent.
5. A ``pending`` delivery row is committed.
6. The body is signed and POSTed once with a bounded timeout.  Redirects
   are not followed.
7. The delivery row is moved to ``success`` (status < 400) or ``failed``.

A failed tenant endpoint is an expected outcome: it is recorded and
reported as ``success=False``, optionally queued for retry, and never
raised to the caller.

SECURITY: Webhook secrets are stored Fernet-encrypted and decrypted only
to compute the signature.  They are never logged or sent.
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from stageflow_api.errors import (
    AuthError,
    ForbiddenError,
    NotFoundError,
    StageflowError,
    UpstreamDeliveryError,
    ValidationError,
)
from stageflow_api.middleware.prometheus import SSRF_BLOCKS_TOTAL, WEBHOOK_DELIVERIES_TOTAL
from stageflow_api.schemas import TriggerRequest
from stageflow_api.security import CallerIdentity, CredentialVault
from stageflow_api.services.ssrf_guard import SSRFGuard
from stageflow_core.signing import build_signature_header
from stageflow_core.state.database import session_scope
from stageflow_core.state.repository import (
    MAX_RESPONSE_BODY_CHARS,
    DeliveryRepository,
    RetryQueueRepository,
    WebhookConfigRepository,
)
from stageflow_core.state.tables import DeliveryStatus

if TYPE_CHECKING:
    from stageflow_api.services.webhook_retry_queue import RetryPolicy

logger = logging.getLogger(__name__)

USER_AGENT = "StageFlow-Webhooks/1.0"
SIGNATURE_HEADER = "X-StageFlow-Signature"
EVENT_HEADER = "X-StageFlow-Event"
DELIVERY_HEADER = "X-StageFlow-Delivery"

_DEFAULT_TIMEOUT_SECONDS = 30.0

# Bytes read from a tenant response before the excerpt is cut.
_RESPONSE_READ_LIMIT = 4 * MAX_RESPONSE_BODY_CHARS


@dataclass(frozen=True)
class DeliveryOutcome:
    """Result of one delivery attempt, as reported to the internal caller."""

    success: bool
    delivery_id: str
    status: int | None = None
    error: str | None = None


@dataclass(frozen=True)
class WebhookTarget:
    """A resolved, guard-approved delivery target with its plaintext secret."""

    webhook_id: str
    organization_id: str
    url: str
    secret: str


def _utc_iso(now: datetime | None = None) -> str:
    now = now or datetime.now(UTC)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def build_payload(webhook_id: str, event: str, data: dict[str, Any]) -> dict[str, Any]:
    return {
        "event": event,
        "data": data,
        "webhook_id": webhook_id,
        "timestamp": _utc_iso(),
    }


def encode_body(payload: dict[str, Any]) -> bytes:
    """Serialise *payload* compactly.  These exact bytes are signed and sent."""
    return json.dumps(payload, separators=(",", ":"), default=str).encode("utf-8")


async def _read_excerpt(response: httpx.Response) -> str:
    """Read at most a bounded prefix of a streamed response body."""
    chunks: list[bytes] = []
    size = 0
    async for chunk in response.aiter_bytes():
        chunks.append(chunk)
        size += len(chunk)
        if size >= _RESPONSE_READ_LIMIT:
            break
    return b"".join(chunks)[:_RESPONSE_READ_LIMIT].decode("utf-8", errors="replace")[:MAX_RESPONSE_BODY_CHARS]


class OutboundWebhookDispatcher:
    """Sign and deliver events to tenant webhook endpoints.

    Parameters
    ----------
    session_factory:
        Factory for the lookup and delivery-record transactions.
    http_client:
        Shared ``httpx.AsyncClient``.  Owned by the application lifespan.
    ssrf_guard:
        Gate applied to every target URL before any record is written.
    vault:
        Decrypts stored webhook secrets.
    timeout:
        Per-request timeout in seconds for tenant endpoints.
    retry_policy:
        When set, failed triggers are queued for redelivery.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        http_client: httpx.AsyncClient,
        ssrf_guard: SSRFGuard,
        vault: CredentialVault,
        *,
        timeout: float = _DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._client = http_client
        self._guard = ssrf_guard
        self._vault = vault
        self._timeout = timeout
        self._retry_policy = retry_policy

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def trigger(
        self,
        caller: CallerIdentity | None,
        webhook_id: str,
        event: str,
        data: dict[str, Any],
    ) -> DeliveryOutcome:
        """Deliver *event* with *data* to the caller's webhook *webhook_id*.

        The request is validated before the caller is checked, so malformed
        input is reported as such whether or not a caller is present.

        Raises
        ------
        AuthError
            No caller identity.
        ValidationError
            Malformed id, event name or oversized data.
        NotFoundError
            The webhook does not exist, is inactive, or belongs to another
            organization.
        ForbiddenError
            The SSRF guard rejected the webhook URL.
        """
        try:
            request = TriggerRequest(webhook_id=webhook_id, event=event, data=data)
        except PydanticValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            raise ValidationError(str(first.get("msg", "Invalid trigger request"))) from exc

        if caller is None or not caller.tenant_id:
            raise AuthError()

        target = await self.resolve_target(caller.tenant_id, str(request.webhook_id))
        payload = build_payload(target.webhook_id, request.event, request.data)
        return await self.deliver(target, request.event, payload, schedule_retry=self._retry_policy is not None)

    async def resolve_target(self, organization_id: str, webhook_id: str) -> WebhookTarget:
        """Look up an active webhook and check its URL with the SSRF guard."""
        async with session_scope(self._session_factory) as session:
            config = await WebhookConfigRepository(session, organization_id).get_active(webhook_id)
            if config is None:
                raise NotFoundError("Webhook not found or inactive")
            url = config.url
            secret_encrypted = config.secret_encrypted

        await self.check_url(webhook_id, url)

        try:
            secret = self._vault.decrypt(secret_encrypted)
        except ValueError:
            logger.error("Failed to decrypt secret for webhook %s", webhook_id)
            raise StageflowError("Webhook secret unavailable")

        return WebhookTarget(webhook_id=webhook_id, organization_id=organization_id, url=url, secret=secret)

    async def check_url(self, webhook_id: str, url: str) -> None:
        """Raise :class:`ForbiddenError` if the SSRF guard denies *url*."""
        verdict = await self._guard.validate(url)
        if not verdict.allowed:
            SSRF_BLOCKS_TOTAL.inc()
            logger.warning("SSRF guard blocked webhook %s: %s", webhook_id, verdict.reason)
            raise ForbiddenError(verdict.reason or "Webhook URL is not allowed")

    async def deliver(
        self,
        target: WebhookTarget,
        event: str,
        payload: dict[str, Any],
        *,
        schedule_retry: bool = False,
    ) -> DeliveryOutcome:
        """Record, sign and send one delivery attempt to an approved target.

        The delivery row is committed as ``pending`` before the network
        call and always finished before this method returns or raises.
        """
        async with session_scope(self._session_factory) as session:
            delivery = await DeliveryRepository(session).create_pending(
                webhook_id=target.webhook_id,
                event=event,
                payload=payload,
            )
            delivery_id = delivery.id

        try:
            response_status, excerpt = await self._send(target, event, payload, delivery_id)
        except UpstreamDeliveryError as exc:
            await self._finish(
                target,
                event,
                payload,
                delivery_id,
                status=DeliveryStatus.FAILED,
                response_status=exc.response_status,
                response_body=exc.response_body,
                error=exc.detail,
                schedule_retry=schedule_retry,
            )
            WEBHOOK_DELIVERIES_TOTAL.labels(outcome="failed").inc()
            logger.warning("Webhook %s delivery %s failed: %s", target.webhook_id, delivery_id, exc.detail)
            return DeliveryOutcome(False, delivery_id, exc.response_status, exc.detail)
        except Exception:
            await self._finish(
                target,
                event,
                payload,
                delivery_id,
                status=DeliveryStatus.FAILED,
                error="Internal error during delivery",
                schedule_retry=False,
            )
            WEBHOOK_DELIVERIES_TOTAL.labels(outcome="error").inc()
            raise

        await self._finish(
            target,
            event,
            payload,
            delivery_id,
            status=DeliveryStatus.SUCCESS,
            response_status=response_status,
            response_body=excerpt,
        )
        WEBHOOK_DELIVERIES_TOTAL.labels(outcome="success").inc()
        logger.info("Webhook %s delivery %s succeeded (HTTP %d)", target.webhook_id, delivery_id, response_status)
        return DeliveryOutcome(True, delivery_id, response_status)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _send(
        self,
        target: WebhookTarget,
        event: str,
        payload: dict[str, Any],
        delivery_id: str,
    ) -> tuple[int, str]:
        body = encode_body(payload)
        headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
            SIGNATURE_HEADER: build_signature_header(target.secret, body, int(time.time())),
            EVENT_HEADER: event,
            DELIVERY_HEADER: delivery_id,
        }

        try:
            async with self._client.stream(
                "POST",
                target.url,
                content=body,
                headers=headers,
                timeout=self._timeout,
                follow_redirects=False,
            ) as response:
                excerpt = await _read_excerpt(response)
        except httpx.TimeoutException:
            raise UpstreamDeliveryError(f"Request timed out after {self._timeout:g}s")
        except httpx.RequestError as exc:
            raise UpstreamDeliveryError(f"Request failed: {type(exc).__name__}")

        if response.status_code >= 400:
            raise UpstreamDeliveryError(
                f"HTTP {response.status_code}",
                response_status=response.status_code,
                response_body=excerpt,
            )
        return response.status_code, excerpt

    async def _finish(
        self,
        target: WebhookTarget,
        event: str,
        payload: dict[str, Any],
        delivery_id: str,
        *,
        status: DeliveryStatus,
        response_status: int | None = None,
        response_body: str | None = None,
        error: str | None = None,
        schedule_retry: bool = False,
    ) -> None:
        async with session_scope(self._session_factory) as session:
            await DeliveryRepository(session).finish(
                delivery_id,
                status=status,
                response_status=response_status,
                response_body=response_body,
                error=error,
            )
            if schedule_retry and self._retry_policy is not None:
                delay = self._retry_policy.delay_for(0)
                await RetryQueueRepository(session).enqueue(
                    webhook_id=target.webhook_id,
                    organization_id=target.organization_id,
                    event=event,
                    payload=payload,
                    next_retry_at=datetime.now(UTC) + timedelta(seconds=delay),
                    max_attempts=self._retry_policy.max_attempts,
                    error=error,
                    delivery_id=delivery_id,
                )
                logger.info("Queued webhook %s delivery %s for retry in %.0fs", target.webhook_id, delivery_id, delay)
