"""Inbound Stripe webhook endpoint.

``POST /billing/webhooks`` is public at the auth layer: every request is
authenticated by its ``Stripe-Signature`` header instead.  Failures are
raised as :class:`~stageflow_api.errors.StageflowError` subclasses and
mapped to status codes by the application's exception handlers, so the
provider sees 400 for requests it should not retry, 409 while another
worker holds the event, and 500 when a retry may succeed.
"""

from __future__ import annotations

from fastapi import APIRouter, Request

from stageflow_api.dependencies import ProcessorDep
from stageflow_api.schemas import InboundAck

router = APIRouter(prefix="/billing", tags=["billing"])


@router.post("/webhooks", response_model=InboundAck, response_model_exclude_none=True)
async def stripe_webhook(request: Request, processor: ProcessorDep) -> InboundAck:
    """Verify, deduplicate and apply one Stripe event."""
    body = await request.body()
    result = await processor.handle(body, request.headers.get("stripe-signature"))
    return InboundAck(duplicate=True if result.duplicate else None)
