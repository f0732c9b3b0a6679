"""State persistence layer for the webhook pipeline."""

from stageflow_core.state.database import get_engine, make_session_factory, session_scope
from stageflow_core.state.repository import (
    ClaimResult,
    DeliveryRepository,
    InboundEventRepository,
    OrganizationRepository,
    RetryQueueRepository,
    SubscriptionRepository,
    WebhookConfigRepository,
)

__all__ = [
    "ClaimResult",
    "DeliveryRepository",
    "InboundEventRepository",
    "OrganizationRepository",
    "RetryQueueRepository",
    "SubscriptionRepository",
    "WebhookConfigRepository",
    "get_engine",
    "make_session_factory",
    "session_scope",
]
