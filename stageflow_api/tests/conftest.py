"""Shared fixtures for StageFlow API tests.

Provides an in-memory SQLite database seeded with one organization and
one webhook, an SSRF guard with a stub resolver, bearer-token and Stripe
signature factories, and an ASGI test client with the service
dependencies overridden.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from pydantic import SecretStr

# Set the token secret BEFORE importing application modules so the
# AuthenticationMiddleware built by ``create_app`` verifies test tokens.
_TEST_TOKEN_SECRET = "test-secret-key-for-stageflow-tests"
_TEST_STRIPE_SECRET = "whsec_test_stageflow"
os.environ.setdefault("API_AUTH_TOKEN_SECRET", _TEST_TOKEN_SECRET)
os.environ.setdefault("API_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from stageflow_core.signing import build_signature_header
from stageflow_core.state.database import get_engine, make_session_factory, session_scope
from stageflow_core.state.sqlite_adapter import create_local_tables
from stageflow_core.state.tables import OrganizationTable, WebhookConfigTable

from stageflow_api.dependencies import (
    get_db_session,
    get_dispatcher,
    get_processor,
    get_retry_queue,
    get_session_factory,
)
from stageflow_api.main import create_app
from stageflow_api.security import CredentialVault
from stageflow_api.services.inbound_processor import InboundEventProcessor
from stageflow_api.services.plan_tiers import PlanTier, PlanTierMap
from stageflow_api.services.ssrf_guard import SSRFGuard
from stageflow_api.services.webhook_dispatcher import OutboundWebhookDispatcher
from stageflow_api.services.webhook_retry_queue import RetryPolicy, WebhookRetryQueue

ORG_ID = "6f1c2d3e-0000-4000-8000-000000000001"
OTHER_ORG_ID = "6f1c2d3e-0000-4000-8000-000000000002"
WEBHOOK_ID = "7a8b9c0d-0000-4000-8000-000000000001"
WEBHOOK_URL = "https://hooks.example.com/stageflow"
WEBHOOK_SECRET = "whsec_tenant_secret"
CUSTOMER_ID = "cus_acme"

PRICE_STARTUP = "price_startup_monthly"
PRICE_GROWTH = "price_growth_monthly"
PRICE_GROWTH_ANNUAL = "price_growth_annual"


# ---------------------------------------------------------------------------
# Bearer tokens
# ---------------------------------------------------------------------------


def _make_token(
    tenant_id: str = ORG_ID,
    sub: str = "test-user",
    role: str | None = "engineer",
    *,
    identity_kind: str = "user",
    expires_in: float = 3600,
    issued_in: float = 0,
    secret: str = _TEST_TOKEN_SECRET,
) -> str:
    """Mint an ``sf1`` token the way the identity service does."""
    now = time.time()
    claims: dict[str, Any] = {
        "sub": sub,
        "tenant_id": tenant_id,
        "identity_kind": identity_kind,
        "iat": now + issued_in,
        "exp": now + expires_in,
    }
    if role is not None:
        claims["role"] = role
    segment = base64.urlsafe_b64encode(json.dumps(claims).encode("utf-8")).decode("ascii").rstrip("=")
    signature = hmac.new(secret.encode("utf-8"), segment.encode("ascii"), hashlib.sha256).hexdigest()
    return f"sf1.{segment}.{signature}"


@pytest.fixture()
def make_token() -> Callable[..., str]:
    return _make_token


@pytest.fixture()
def auth_headers() -> Callable[..., dict[str, str]]:
    """Return a factory of ``Authorization`` headers for a role."""

    def _headers(role: str | None = "engineer", tenant_id: str = ORG_ID) -> dict[str, str]:
        return {"Authorization": f"Bearer {_make_token(tenant_id=tenant_id, role=role)}"}

    return _headers


# ---------------------------------------------------------------------------
# Stripe events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignedEvent:
    body: bytes
    header: str


def _stripe_event(event_id: str, event_type: str, obj: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": event_id,
        "object": "event",
        "type": event_type,
        "created": int(time.time()),
        "livemode": False,
        "data": {"object": obj},
    }


@pytest.fixture()
def signed_event() -> Callable[..., SignedEvent]:
    """Build a Stripe event body with a valid ``Stripe-Signature`` header."""

    def _build(
        event_id: str,
        event_type: str,
        obj: dict[str, Any],
        *,
        secret: str = _TEST_STRIPE_SECRET,
        timestamp: int | None = None,
    ) -> SignedEvent:
        body = json.dumps(_stripe_event(event_id, event_type, obj)).encode("utf-8")
        return SignedEvent(body=body, header=build_signature_header(secret, body, timestamp or int(time.time())))

    return _build


def subscription_object(
    subscription_id: str = "sub_1",
    *,
    status: str = "active",
    price_id: str = PRICE_GROWTH,
    customer: str | None = CUSTOMER_ID,
) -> dict[str, Any]:
    obj: dict[str, Any] = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "current_period_start": 1767225600,
        "current_period_end": 1769904000,
        "items": {"object": "list", "data": [{"id": "si_1", "price": {"id": price_id, "object": "price"}}]},
    }
    if customer is not None:
        obj["customer"] = customer
    return obj


@pytest.fixture()
def subscription_payload() -> Callable[..., dict[str, Any]]:
    return subscription_object


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
def vault() -> CredentialVault:
    return CredentialVault("test-vault-key")


@pytest_asyncio.fixture()
async def session_factory(vault: CredentialVault) -> async_sessionmaker[AsyncSession]:
    """In-memory SQLite with one organization and one active webhook."""
    engine = get_engine("sqlite+aiosqlite:///:memory:")
    await create_local_tables(engine)
    factory = make_session_factory(engine)

    async with session_scope(factory) as session:
        session.add_all(
            [
                OrganizationTable(id=ORG_ID, name="Acme", stripe_customer_id=CUSTOMER_ID),
                OrganizationTable(id=OTHER_ORG_ID, name="Globex", stripe_customer_id="cus_globex"),
            ]
        )
        await session.flush()
        session.add(
            WebhookConfigTable(
                id=WEBHOOK_ID,
                organization_id=ORG_ID,
                url=WEBHOOK_URL,
                secret_encrypted=vault.encrypt(WEBHOOK_SECRET),
            )
        )

    yield factory
    await engine.dispose()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


async def public_resolver(hostname: str, port: int) -> list[str]:
    """Resolve every hostname to one public address."""
    return ["93.184.216.34"]


@pytest.fixture()
def ssrf_guard() -> SSRFGuard:
    return SSRFGuard(resolver=public_resolver)


@pytest.fixture()
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, initial_delay_seconds=60, max_delay_seconds=3600, multiplier=2.0)


@pytest.fixture()
def plan_tiers() -> PlanTierMap:
    return PlanTierMap(
        {
            PRICE_STARTUP: PlanTier.STARTUP,
            PRICE_GROWTH: PlanTier.GROWTH,
            PRICE_GROWTH_ANNUAL: PlanTier.GROWTH,
        }
    )


@pytest.fixture()
def processor(session_factory: async_sessionmaker[AsyncSession], plan_tiers: PlanTierMap) -> InboundEventProcessor:
    return InboundEventProcessor(
        session_factory,
        webhook_secret=SecretStr(_TEST_STRIPE_SECRET),
        plan_tiers=plan_tiers,
    )


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------


@pytest.fixture()
def app_factory(session_factory: async_sessionmaker[AsyncSession]):
    """Return a builder for a FastAPI app wired to the test database.

    The builder takes the dispatcher, retry queue and processor to inject;
    any left as ``None`` keep the production dependency.
    """

    def _build(
        *,
        dispatcher: OutboundWebhookDispatcher | None = None,
        retry_queue: WebhookRetryQueue | None = None,
        processor: InboundEventProcessor | None = None,
    ):
        application = create_app()

        async def _override_session():
            async with session_scope(session_factory) as session:
                yield session

        application.dependency_overrides[get_db_session] = _override_session
        application.dependency_overrides[get_session_factory] = lambda: session_factory
        if dispatcher is not None:
            application.dependency_overrides[get_dispatcher] = lambda: dispatcher
        if retry_queue is not None:
            application.dependency_overrides[get_retry_queue] = lambda: retry_queue
        if processor is not None:
            application.dependency_overrides[get_processor] = lambda: processor
        return application

    return _build


@pytest_asyncio.fixture()
async def client_for():
    """Yield a factory of ``AsyncClient`` instances bound to an app."""
    clients: list[AsyncClient] = []

    def _client(application) -> AsyncClient:
        ac = AsyncClient(transport=ASGITransport(app=application), base_url="http://test")
        clients.append(ac)
        return ac

    yield _client
    for ac in clients:
        await ac.aclose()
