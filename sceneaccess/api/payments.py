"""
Payments API routes.

- POST /api/payments/webhook: Stripe webhook (signature-authenticated, no origin check)
"""
from fastapi import APIRouter, Depends, Request

from sceneaccess.api.deps import Services, get_services


router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/webhook")
async def handle_webhook(request: Request, services: Services = Depends(get_services)):
    """
    Handle Stripe webhook events.

    Verifies signature, processes the event once per event id, and records
    purchase grants or subscription snapshots.

    Returns:
        {"received": true, "event_id": ..., "duplicate": bool}

    Errors:
        400: Invalid signature, payload or checkout metadata
        503: Billing disabled
        500: Storage failure
    """
    # Raw body is required for signature verification
    body = await request.body()
    headers = dict(request.headers)

    outcome = await services.billing.process_webhook_event(headers, body)
    return {"received": True, "event_id": outcome.event_id, "duplicate": outcome.duplicate}
