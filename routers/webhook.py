import structlog
from fastapi import APIRouter, Depends, Request
from pydantic import ValidationError

from dependencies import get_inbound_handler
from schemas import TelnyxWebhook
from services.inbound import InboundHandler

router = APIRouter()
logger = structlog.get_logger("webhook")

DELIVERY_EVENTS = {"message.sent", "message.finalized"}


@router.post("/webhooks/telnyx")
async def telnyx_webhook(request: Request, handler: InboundHandler = Depends(get_inbound_handler)):
    try:
        body = await request.json()
        webhook = TelnyxWebhook.model_validate(body)
    except (ValueError, ValidationError) as e:
        logger.error("Failed to parse webhook", error=str(e))
        return {"status": "error", "reason": "invalid_payload"}

    event_type = webhook.data.event_type
    payload = webhook.data.payload

    if event_type == "message.received":
        result = await handler.handle_message(payload)
        return {
            "status": result.action.value,
            "reason": result.reason,
            "conversation_id": result.conversation_id,
            "message_id": result.message_id,
        }

    if event_type in DELIVERY_EVENTS:
        status = await handler.handle_delivery_report(event_type, payload)
        return {"status": "delivery_report", "message_status": status.value if status else None}

    logger.info("Webhook event ignored", event_type=event_type)
    return {"status": "ignored", "reason": "unhandled_event"}


@router.get("/webhooks/telnyx")
async def telnyx_webhook_health():
    return {"status": "ok", "message": "Telnyx webhook endpoint is active"}
