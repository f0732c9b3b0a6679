"""FastAPI dependency injection for sessions, callers and webhook services.

Process-wide resources (engine, HTTP client, dispatcher, processor) are
created once by :func:`init_resources` from the application lifespan and
released by :func:`dispose_resources`.  Request handlers receive them
through the ``*Dep`` aliases below.
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from typing import Annotated

import httpx
from fastapi import Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from stageflow_core.state.database import get_engine, make_session_factory

from stageflow_api.config import APISettings
from stageflow_api.security import CallerIdentity, CredentialVault
from stageflow_api.services.inbound_processor import InboundEventProcessor
from stageflow_api.services.plan_tiers import PlanTierMap
from stageflow_api.services.ssrf_guard import SSRFGuard
from stageflow_api.services.webhook_dispatcher import USER_AGENT, OutboundWebhookDispatcher
from stageflow_api.services.webhook_retry_queue import RetryPolicy, WebhookRetryQueue

# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory."""
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield a session that commits on clean exit and rolls back on error."""
    session = get_session_factory()()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# Webhook services
# ---------------------------------------------------------------------------

_http_client: httpx.AsyncClient | None = None
_dispatcher: OutboundWebhookDispatcher | None = None
_retry_queue: WebhookRetryQueue | None = None
_processor: InboundEventProcessor | None = None


def init_resources(settings: APISettings) -> None:
    """Build the HTTP client and the webhook services on top of the engine.

    :func:`init_engine` must have been called first.
    """
    global _http_client, _dispatcher, _retry_queue, _processor  # noqa: PLW0603
    session_factory = get_session_factory()

    _http_client = httpx.AsyncClient(
        headers={"User-Agent": USER_AGENT},
        timeout=settings.webhook_delivery_timeout_seconds,
        follow_redirects=False,
    )

    retry_policy = RetryPolicy.from_settings(settings) if settings.webhook_retry_enabled else None
    _dispatcher = OutboundWebhookDispatcher(
        session_factory,
        _http_client,
        SSRFGuard(allow_http=settings.webhook_allow_http),
        CredentialVault(settings.credential_encryption_key.get_secret_value()),
        timeout=settings.webhook_delivery_timeout_seconds,
        retry_policy=retry_policy,
    )
    _retry_queue = (
        WebhookRetryQueue(session_factory, _dispatcher, retry_policy) if retry_policy is not None else None
    )

    _processor = InboundEventProcessor(
        session_factory,
        webhook_secret=settings.stripe_webhook_secret,
        plan_tiers=PlanTierMap.from_settings(settings),
        tolerance_seconds=settings.stripe_signature_tolerance_seconds,
        claim_lease_seconds=settings.inbound_claim_lease_seconds,
    )


async def dispose_resources() -> None:
    """Close the shared HTTP client and drop service singletons."""
    global _http_client, _dispatcher, _retry_queue, _processor  # noqa: PLW0603
    if _http_client is not None:
        await _http_client.aclose()
    _http_client = None
    _dispatcher = None
    _retry_queue = None
    _processor = None


def get_dispatcher() -> OutboundWebhookDispatcher:
    if _dispatcher is None:
        raise RuntimeError("Webhook dispatcher has not been initialised")
    return _dispatcher


def get_retry_queue() -> WebhookRetryQueue:
    """Return the retry queue, or 503 when retries are disabled."""
    if _retry_queue is None:
        raise HTTPException(status_code=503, detail="Webhook retry queue is disabled")
    return _retry_queue


def get_processor() -> InboundEventProcessor:
    if _processor is None:
        raise RuntimeError("Inbound event processor has not been initialised")
    return _processor


DispatcherDep = Annotated[OutboundWebhookDispatcher, Depends(get_dispatcher)]
RetryQueueDep = Annotated[WebhookRetryQueue, Depends(get_retry_queue)]
ProcessorDep = Annotated[InboundEventProcessor, Depends(get_processor)]

# ---------------------------------------------------------------------------
# Caller identity
# ---------------------------------------------------------------------------


def get_caller(request: Request) -> CallerIdentity:
    """Build the caller identity from the state set by the auth middleware.

    Raises ``HTTPException(401)`` if the request was not authenticated.
    """
    tenant_id = getattr(request.state, "tenant_id", None)
    if not tenant_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return CallerIdentity(
        sub=getattr(request.state, "sub", ""),
        tenant_id=tenant_id,
        role=getattr(request.state, "role", "viewer"),
    )


CallerDep = Annotated[CallerIdentity, Depends(get_caller)]
