"""
Welcome message for a conversation the agent just started.

Goes through the send gate as an automated message, so tier, auto-send and
per-type approval rules apply exactly as they do for cron messages.
"""

from typing import Optional

import structlog

from models import Agency, Agent, Conversation, Deal
from services.dispatchers import template_values
from services.errors import SendRejected
from services.send_gate import MessageCategory, SendGate, SendOutcome, SendRequest, SendStatus
from services.templates import MessageType, agency_setting, render_template, template_for

logger = structlog.get_logger("welcome")


async def send_welcome(
    gate: SendGate,
    conversation: Conversation,
    deal: Deal,
    agent: Agent,
    agency: Optional[Agency],
) -> SendOutcome:
    if agency is None or not agency.messaging_enabled:
        logger.info("Welcome message skipped", conversation_id=conversation.id, reason="messaging_disabled")
        return SendOutcome(SendStatus.SKIPPED, reason="messaging_disabled")
    if not agency_setting(agency, MessageType.WELCOME, "enabled", True):
        logger.info("Welcome message skipped", conversation_id=conversation.id, reason="type_disabled")
        return SendOutcome(SendStatus.SKIPPED, reason="type_disabled")

    values = template_values(deal, agent, agency)
    values["agent_name"] = values["agent_name"] or "your agent"
    values["client_email"] = values["client_email"] or "your email"
    body = render_template(template_for(agency, MessageType.WELCOME), values)

    try:
        outcome = await gate.dispatch(SendRequest(
            conversation=conversation,
            agent=agent,
            agency=agency,
            body=body,
            category=MessageCategory.AUTOMATED,
            message_type=MessageType.WELCOME,
            metadata={"deal_id": deal.id, "client_name": deal.client_name},
        ))
    except SendRejected as e:
        logger.info("Welcome message rejected", conversation_id=conversation.id, reason=e.reason.value)
        return SendOutcome(SendStatus.REJECTED, reason=e.reason.value)

    logger.info("Welcome message dispatched", conversation_id=conversation.id, status=outcome.status.value)
    return outcome
