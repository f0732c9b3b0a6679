"""Outbound webhook endpoints: trigger, delivery history and retry queue."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Query

from stageflow_api.dependencies import CallerDep, DispatcherDep, RetryQueueDep, SessionDep
from stageflow_api.errors import NotFoundError
from stageflow_api.middleware.rbac import Permission, Role, require_permission
from stageflow_api.schemas import (
    DeliveryListResponse,
    DeliveryResponse,
    RetryProcessResponse,
    RetryStatsResponse,
    TriggerRequest,
    TriggerResponse,
)
from stageflow_core.state.repository import DeliveryRepository, WebhookConfigRepository

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/trigger", response_model=TriggerResponse)
async def trigger_webhook(
    body: TriggerRequest,
    caller: CallerDep,
    dispatcher: DispatcherDep,
    _role: Role = Depends(require_permission(Permission.TRIGGER_WEBHOOKS)),
) -> TriggerResponse:
    """Deliver an event to one of the caller's webhooks.

    A delivery that reached the endpoint but failed (timeout, non-2xx) is
    still a 200 response with ``success=false``; the failure is recorded
    on the delivery and, when retries are enabled, queued.
    """
    outcome = await dispatcher.trigger(caller, str(body.webhook_id), body.event, body.data)
    return TriggerResponse(
        success=outcome.success,
        delivery_id=outcome.delivery_id,
        status=outcome.status,
        error=outcome.error,
    )


# Retry routes are declared before ``/{webhook_id}`` so they are not
# captured by the path parameter.


@router.post("/retries/process", response_model=RetryProcessResponse)
async def process_retries(
    queue: RetryQueueDep,
    limit: int = Query(default=50, ge=1, le=500),
    _role: Role = Depends(require_permission(Permission.MANAGE_WEBHOOK_RETRIES)),
) -> RetryProcessResponse:
    """Run one pass over the due retry entries."""
    summary = await queue.process_due(limit=limit)
    return RetryProcessResponse(
        processed=summary.processed,
        delivered=summary.delivered,
        rescheduled=summary.rescheduled,
        failed=summary.failed,
    )


@router.get("/retries/stats", response_model=RetryStatsResponse)
async def retry_stats(
    queue: RetryQueueDep,
    _role: Role = Depends(require_permission(Permission.READ_WEBHOOK_DELIVERIES)),
) -> RetryStatsResponse:
    return RetryStatsResponse(**await queue.stats())


@router.get("/{webhook_id}/deliveries", response_model=DeliveryListResponse)
async def list_deliveries(
    webhook_id: str,
    session: SessionDep,
    caller: CallerDep,
    limit: int = Query(default=50, ge=1, le=100),
    _role: Role = Depends(require_permission(Permission.READ_WEBHOOK_DELIVERIES)),
) -> DeliveryListResponse:
    """Return recent deliveries for a webhook owned by the caller's organization."""
    webhook = await WebhookConfigRepository(session, caller.tenant_id).get(webhook_id)
    if webhook is None:
        raise NotFoundError(f"Webhook {webhook_id} not found")

    rows = await DeliveryRepository(session).list_for_webhook(webhook_id, limit=limit)
    return DeliveryListResponse(
        webhook_id=webhook_id,
        deliveries=[DeliveryResponse.model_validate(row) for row in rows],
    )
