"""Pydantic request and response models for the webhook endpoints.

Routers import from here so that the OpenAPI document and the validation
rules stay in one place.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field, field_validator

# Serialized size limit for ``TriggerRequest.data``.
MAX_TRIGGER_DATA_BYTES = 100 * 1024

# ---------------------------------------------------------------------------
# Outbound trigger
# ---------------------------------------------------------------------------


class TriggerRequest(BaseModel):
    """Request body for ``POST /webhooks/trigger``."""

    webhook_id: UUID = Field(..., description="Identifier of an active webhook owned by the caller.")
    event: str = Field(..., min_length=1, max_length=100, description="Event name, e.g. 'deal.created'.")
    data: dict[str, Any] = Field(default_factory=dict, description="Event payload object.")

    @field_validator("event")
    @classmethod
    def _event_not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("event must not be blank")
        return value

    @field_validator("data")
    @classmethod
    def _data_size_bounded(cls, value: dict[str, Any]) -> dict[str, Any]:
        try:
            encoded = json.dumps(value, separators=(",", ":"), default=str).encode("utf-8")
        except (TypeError, ValueError) as exc:
            raise ValueError(f"data is not JSON serialisable: {exc}") from exc
        if len(encoded) > MAX_TRIGGER_DATA_BYTES:
            raise ValueError(f"data exceeds {MAX_TRIGGER_DATA_BYTES} bytes when serialised")
        return value


class TriggerResponse(BaseModel):
    """Outcome of one delivery attempt.

    ``success`` is false when the tenant endpoint failed; the attempt is
    still recorded under ``delivery_id``.
    """

    success: bool
    delivery_id: str
    status: int | None = None
    error: str | None = None


class DeliveryResponse(BaseModel):
    """A delivery record as exposed to the owning tenant."""

    model_config = {"from_attributes": True}

    id: str
    webhook_id: str
    event: str
    payload: dict[str, Any]
    status: str
    response_status: int | None = None
    error: str | None = None
    created_at: datetime
    delivered_at: datetime | None = None


class DeliveryListResponse(BaseModel):
    webhook_id: str
    deliveries: list[DeliveryResponse] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Retry queue
# ---------------------------------------------------------------------------


class RetryProcessResponse(BaseModel):
    """Summary of one ``process_due`` pass."""

    processed: int = 0
    delivered: int = 0
    rescheduled: int = 0
    failed: int = 0


class RetryStatsResponse(BaseModel):
    pending: int = 0
    delivered: int = 0
    failed: int = 0
    total_attempts: int = 0


# ---------------------------------------------------------------------------
# Inbound provider webhook
# ---------------------------------------------------------------------------


class InboundAck(BaseModel):
    """Acknowledgement returned to the payment provider."""

    received: bool = True
    duplicate: bool | None = None
