"""Payment gateway webhook endpoint.

Accepts both the legacy flat event body and the nested gateway event body.
Answers 200 for anything it could process, including re-deliveries and event
types it does not act on, and 400 only when the event is malformed or points
at no known payment. A gateway call that fails while handling the event
answers 502 so the event is delivered again.
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status

from bookrent.core.config import Settings
from bookrent.core.database import async_session_factory
from bookrent.core.dependencies import get_gateway, get_settings
from bookrent.core.errors import GatewayUnavailable, MalformedEvent, PaymentNotFound
from bookrent.services.gateway import PaymentLinkGateway, construct_webhook_event
from bookrent.services.webhook_events import parse_webhook_event
from bookrent.services.webhook_handler import WebhookHandler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/payments")
async def payment_webhook(
    request: Request,
    gateway: PaymentLinkGateway = Depends(get_gateway),
    app_settings: Settings = Depends(get_settings),
):
    """Handle a gateway event.

    Uses a dedicated DB session (not the request-scoped one) because webhook
    processing commits in stages: the settlement first, then each side effect.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")

    try:
        event = parse_webhook_event(construct_webhook_event(payload, sig_header, app_settings))
    except MalformedEvent as exc:
        logger.warning("Rejected webhook: %s", exc.message)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from None

    logger.info("Webhook received: %s (session=%s)", event.event_type, event.session_id)

    async with async_session_factory() as db:
        try:
            await WebhookHandler(db, gateway, app_settings).handle(event)
        except PaymentNotFound as exc:
            await db.rollback()
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=exc.message) from None
        except GatewayUnavailable as exc:
            # A 5xx makes the gateway deliver the event again later
            await db.rollback()
            logger.error("Webhook %s deferred: %s", event.event_type, exc.message)
            raise exc.to_http() from exc

    return {"received": True}
