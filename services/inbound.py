"""
Inbound SMS Handler

Per inbound message:
    received -> resolved (agency, deal, conversation) -> logged
             -> compliance keyword?  -> opt-in transition + canned reply
             -> eligible?            -> classified -> {replied | escalated | ignored}

Delivery-status callbacks for our own outbound messages are handled here too.
"""

import enum
from dataclasses import dataclass
from typing import Optional

import structlog
from prometheus_client import Counter

from config import Settings
from logger_config import mask_phone
from models import MessageDirection, MessageStatus
from schemas import TelnyxPayload
from services import opt_in
from services.ai import ReplyGenerator
from services.classifier import ClassificationResult, classify
from services.conversations import ConversationRepository
from services.deals import DealDirectory, deal_facts
from services.errors import ProviderSendError, ReplyGenerationError, SendRejected
from services.phone import normalize_for_storage
from services.send_gate import MessageCategory, SendGate, SendRequest, SendStatus
from services.templates import (
    MessageType, help_response, opt_in_confirmation, opt_out_confirmation,
)
from services.tiers import allows_auto_messaging

logger = structlog.get_logger("inbound")

INBOUND_MESSAGES = Counter("sms_inbound_total", "Inbound SMS by resulting action", ["action"])
CLASSIFICATIONS = Counter("sms_classifier_results_total", "Classifier results", ["result"])

STOP_KEYWORDS = frozenset({"STOP", "UNSUBSCRIBE", "STOPALL", "CANCEL", "END", "QUIT"})
START_KEYWORDS = frozenset({"START", "UNSTOP", "SUBSCRIBE"})
HELP_KEYWORDS = frozenset({"HELP", "INFO"})

URGENT_KEYWORDS = (
    "don't have money",
    "don't have the money",
    "can't pay",
    "cannot pay",
    "call me",
    "need help",
    "emergency",
    "urgent",
    "problem",
    "cancel policy",
    "cancelling",
)

# Telnyx recipient statuses on message.finalized
DELIVERED_STATUSES = frozenset({"delivered"})
FAILED_STATUSES = frozenset({"delivery_failed", "sending_failed", "delivery_unconfirmed"})


class InboundAction(str, enum.Enum):
    REPLIED = "replied"
    DRAFTED = "drafted"
    REPLY_FAILED = "reply_failed"
    ESCALATED = "escalated"
    IGNORED = "ignored"
    OPTED_OUT = "opted_out"
    OPTED_IN = "opted_in"
    HELP_SENT = "help_sent"


class ComplianceKeyword(str, enum.Enum):
    STOP = "STOP"
    START = "START"
    HELP = "HELP"


@dataclass
class InboundResult:
    action: InboundAction
    reason: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None


def compliance_keyword(text: str) -> Optional[ComplianceKeyword]:
    """Whole-message command match; "stop sending me bills" is not a STOP."""
    word = (text or "").strip().upper()
    if word in STOP_KEYWORDS:
        return ComplianceKeyword.STOP
    if word in START_KEYWORDS:
        return ComplianceKeyword.START
    if word in HELP_KEYWORDS:
        return ComplianceKeyword.HELP
    return None


def contains_urgent_keywords(text: str) -> bool:
    lowered = (text or "").lower()
    return any(keyword in lowered for keyword in URGENT_KEYWORDS)


class InboundHandler:
    def __init__(
        self,
        repo: ConversationRepository,
        directory: DealDirectory,
        gate: SendGate,
        replier: ReplyGenerator,
        settings: Settings,
    ):
        self.repo = repo
        self.directory = directory
        self.gate = gate
        self.replier = replier
        self.settings = settings

    async def handle_message(self, payload: TelnyxPayload) -> InboundResult:
        result = await self._handle_message(payload)
        INBOUND_MESSAGES.labels(action=result.action.value).inc()
        logger.info(
            "Inbound processed",
            action=result.action.value,
            reason=result.reason,
            conversation_id=result.conversation_id,
        )
        return result

    async def _handle_message(self, payload: TelnyxPayload) -> InboundResult:
        text = payload.text or ""
        if not payload.sender or not payload.recipient:
            return InboundResult(InboundAction.IGNORED, "incomplete_payload")

        if payload.id and await self.repo.get_by_provider_id(payload.id, MessageDirection.INBOUND):
            return InboundResult(InboundAction.IGNORED, "duplicate_delivery")

        # 1. Resolve agency -> deal -> agent
        agency = await self.directory.find_agency_by_phone(payload.recipient)
        if agency is None:
            return InboundResult(InboundAction.IGNORED, "agency_not_found")

        client_phone = normalize_for_storage(payload.sender)
        deal = await self.directory.find_deal_by_client_phone(client_phone, agency.id)
        if deal is None:
            return InboundResult(InboundAction.IGNORED, "deal_not_found")

        agent = await self.directory.get_agent(deal.agent_id)
        if agent is None:
            return InboundResult(InboundAction.IGNORED, "agent_not_found")

        with structlog.contextvars.bound_contextvars(agency_id=agency.id, deal_id=deal.id):
            # 2. Conversation + inbound row
            conversation = await self.repo.get_or_create(agent.id, deal.id, agency.id, client_phone)
            keyword = compliance_keyword(text)

            metadata = {"client_phone": client_phone, "telnyx_message_id": payload.id}
            if keyword is not None:
                metadata["compliance_keyword"] = keyword.value

            inbound = await self.repo.log_message(
                conversation,
                text,
                MessageDirection.INBOUND,
                MessageStatus.RECEIVED,
                receiver_id=agent.id,
                metadata=metadata,
                provider_message_id=payload.id,
            )

            def result(action, reason=None):
                return InboundResult(action, reason, conversation.id, inbound.id)

            # 3. STOP / START / HELP
            if keyword is not None:
                return result(await self._handle_compliance(keyword, conversation, agent, agency))

            # 4. Urgent forward to the agent's own phone
            if contains_urgent_keywords(text):
                await self._forward_urgent(agency, agent, deal, text)

            # 5. Eligibility before any classification or LLM work
            if not opt_in.can_send(conversation):
                return result(InboundAction.IGNORED, "not_opted_in")
            if not agency.messaging_enabled:
                return result(InboundAction.IGNORED, "messaging_disabled")
            if not allows_auto_messaging(agent.subscription_tier):
                return result(InboundAction.IGNORED, "tier_without_automation")

            # 6. Classify against fresh deal facts
            facts = deal_facts(deal, agent)
            classification = classify(text, facts)
            CLASSIFICATIONS.labels(result=classification.value).inc()

            if classification == ClassificationResult.NOT_QUESTION:
                return result(InboundAction.IGNORED, "not_question")

            if classification == ClassificationResult.NON_DEAL:
                await self.directory.flag_for_attention(deal)
                return result(InboundAction.ESCALATED, "non_deal")

            try:
                reply = await self.replier.generate(text, facts)
            except ReplyGenerationError as e:
                logger.warning("Reply generation failed, escalating", error=str(e))
                await self.directory.flag_for_attention(deal)
                return result(InboundAction.ESCALATED, "generation_failed")

            try:
                outcome = await self.gate.dispatch(SendRequest(
                    conversation=conversation,
                    agent=agent,
                    agency=agency,
                    body=reply,
                    category=MessageCategory.AUTOMATED,
                    message_type=MessageType.AI_RESPONSE,
                    metadata={"question_type": classification.value, "in_reply_to": inbound.id},
                ))
            except SendRejected as e:
                return result(InboundAction.IGNORED, e.reason.value)

            if outcome.status == SendStatus.SENT:
                return InboundResult(InboundAction.REPLIED, None, conversation.id, outcome.message_id)
            if outcome.status == SendStatus.DRAFT:
                return InboundResult(InboundAction.DRAFTED, outcome.reason, conversation.id, outcome.message_id)
            if outcome.status == SendStatus.FAILED:
                return InboundResult(InboundAction.REPLY_FAILED, outcome.reason, conversation.id, outcome.message_id)
            return result(InboundAction.IGNORED, outcome.reason)

    async def _handle_compliance(self, keyword, conversation, agent, agency) -> InboundAction:
        settings = self.settings

        if keyword == ComplianceKeyword.STOP:
            await self.repo.apply_opt_in_event(conversation, opt_in.OptInEvent.CLIENT_STOP)
            body = opt_out_confirmation(settings.COMPLIANCE_BRAND, settings.SUPPORT_EMAIL)
            await self.gate.send_compliance(conversation, agent, agency, body, MessageType.OPT_OUT_CONFIRMATION)
            return InboundAction.OPTED_OUT

        if keyword == ComplianceKeyword.START:
            await self.repo.apply_opt_in_event(conversation, opt_in.OptInEvent.CLIENT_START)
            body = opt_in_confirmation(agency.name, settings.COMPLIANCE_BRAND)
            await self.gate.send_compliance(conversation, agent, agency, body, MessageType.OPT_IN_CONFIRMATION)
            return InboundAction.OPTED_IN

        body = help_response(
            settings.COMPLIANCE_BRAND, settings.SUPPORT_EMAIL, settings.PRIVACY_URL, settings.TERMS_URL
        )
        await self.gate.send_compliance(conversation, agent, agency, body, MessageType.HELP_RESPONSE)
        return InboundAction.HELP_SENT

    async def _forward_urgent(self, agency, agent, deal, text: str) -> None:
        """Best-effort heads-up to the agent; never blocks handling."""
        if not agent.phone_number or not agency.phone_number:
            return
        forward = f'URGENT: Client {deal.client_name} says: "{text}"'
        try:
            await self.gate.provider.send(agency.phone_number, agent.phone_number, forward)
            logger.info("Urgent message forwarded", agent_phone=mask_phone(agent.phone_number))
        except ProviderSendError as e:
            logger.error("Urgent forward failed", error=str(e))

    # =========================================================================
    # DELIVERY REPORTS
    # =========================================================================

    async def handle_delivery_report(self, event_type: str, payload: TelnyxPayload) -> Optional[MessageStatus]:
        if not payload.id:
            return None

        error_code = payload.error_code
        status = payload.recipient_status
        if event_type == "message.finalized" and status in DELIVERED_STATUSES:
            target = MessageStatus.DELIVERED
        elif status in FAILED_STATUSES or error_code:
            target = MessageStatus.FAILED
        else:
            return None

        message = await self.repo.apply_delivery_report(payload.id, target, error_code)
        if message is None:
            return None

        if target == MessageStatus.FAILED and opt_in.is_carrier_block(error_code):
            conversation = await self.repo.get(message.conversation_id)
            if conversation is not None:
                await self.repo.apply_opt_in_event(conversation, opt_in.OptInEvent.CARRIER_BLOCK)

        return message.status
