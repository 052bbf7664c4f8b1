"""
Send Gate

Decides, for every composed outbound message, between sending now, holding
it as a draft, skipping it, or rejecting it.

Decision order:
1. Conversation not opted in            -> SendRejected(opted_out | pending_opt_in)
2. Tier has no messaging                -> SendRejected(upgrade_required)
   Automated and agency messaging off   -> SendRejected(messaging_disabled)
3. Automated and tier lacks automation  -> skipped (no row, no provider call)
4. Automated: auto-send off, per-type approval required or unresolved
   placeholders                          -> draft
5. Otherwise                            -> provider send; row `sent` (metered) or `failed`

Manual messages skip step 4: the composing agent is the approver.
"""

import enum
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

import structlog
from prometheus_client import Counter

from logger_config import mask_phone
from models import Agency, Agent, Conversation, Message, MessageDirection, MessageStatus
from services import opt_in
from services.conversations import ConversationRepository
from services.deals import DealDirectory
from services.errors import ProviderSendError, RejectReason, SendRejected
from services.phone import is_valid_phone, phone_validation_error
from services.templates import MessageType, agency_setting, find_unresolved_placeholders
from services.tiers import allows_messaging, get_tier_limits
from services.usage_meter import UsageMeter

logger = structlog.get_logger("send_gate")

OUTBOUND_DISPATCH = Counter("sms_outbound_total", "Outbound SMS dispatch outcomes", ["status", "category"])

INVALID_PHONE_CODE = "invalid_phone"


class MessageCategory(str, enum.Enum):
    MANUAL = "manual"
    AUTOMATED = "automated"


class SendStatus(str, enum.Enum):
    SENT = "sent"
    DRAFT = "draft"
    FAILED = "failed"
    SKIPPED = "skipped"
    REJECTED = "rejected"


@dataclass
class SendRequest:
    conversation: Conversation
    agent: Agent
    agency: Agency
    body: str
    category: MessageCategory
    message_type: MessageType
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def automated(self) -> bool:
        return self.category == MessageCategory.AUTOMATED


@dataclass
class SendOutcome:
    status: SendStatus
    message: Optional[Message] = None
    reason: Optional[str] = None
    error: Optional[ProviderSendError] = None

    @property
    def message_id(self) -> Optional[str]:
        return self.message.id if self.message is not None else None


def resolve_auto_send(agent_override: Optional[bool], agency_setting_value: Optional[bool]) -> bool:
    """Agent override wins when set; otherwise the agency setting (on by default)."""
    if agent_override is not None:
        return bool(agent_override)
    if agency_setting_value is None:
        return True
    return bool(agency_setting_value)


def draft_reason(agent: Agent, agency: Agency, message_type: MessageType, body: str) -> Optional[str]:
    """Why an automated message must wait for approval, or None to send it now."""
    if not resolve_auto_send(agent.sms_auto_send_enabled, agency.sms_auto_send_enabled):
        return "auto_send_disabled"
    if agency_setting(agency, message_type, "require_approval", False):
        return "requires_approval"
    if find_unresolved_placeholders(body):
        return "unresolved_placeholders"
    return None


class SendGate:
    def __init__(
        self,
        repo: ConversationRepository,
        directory: DealDirectory,
        provider,
        meter: UsageMeter,
    ):
        self.repo = repo
        self.directory = directory
        self.provider = provider
        self.meter = meter

    # =========================================================================
    # DISPATCH
    # =========================================================================

    async def dispatch(self, request: SendRequest) -> SendOutcome:
        conversation, agent, agency = request.conversation, request.agent, request.agency
        category = request.category.value

        try:
            self._check_allowed(conversation, agent, agency, request.automated)
        except SendRejected as e:
            OUTBOUND_DISPATCH.labels(status=SendStatus.REJECTED.value, category=category).inc()
            logger.info("Send rejected", conversation_id=conversation.id, reason=e.reason.value)
            raise

        if request.automated and not get_tier_limits(agent.subscription_tier).auto_messaging:
            OUTBOUND_DISPATCH.labels(status=SendStatus.SKIPPED.value, category=category).inc()
            logger.info(
                "Automated send skipped for tier",
                conversation_id=conversation.id,
                tier=agent.subscription_tier,
                type=request.message_type.value,
            )
            return SendOutcome(SendStatus.SKIPPED, reason="tier_without_automation")

        metadata = {
            **request.metadata,
            "automated": request.automated,
            "type": request.message_type.value,
            "client_phone": conversation.client_phone,
        }

        if request.automated:
            reason = draft_reason(agent, agency, request.message_type, request.body)
            if reason is not None:
                message = await self.repo.log_message(
                    conversation,
                    request.body,
                    MessageDirection.OUTBOUND,
                    MessageStatus.DRAFT,
                    sender_id=agent.id,
                    metadata=metadata,
                )
                OUTBOUND_DISPATCH.labels(status=SendStatus.DRAFT.value, category=category).inc()
                logger.info("Draft created", message_id=message.id, reason=reason, type=request.message_type.value)
                return SendOutcome(SendStatus.DRAFT, message, reason=reason)

        outcome = await self._transmit(conversation, agent, agency, request.body, metadata)
        OUTBOUND_DISPATCH.labels(status=outcome.status.value, category=category).inc()
        return outcome

    async def send_compliance(
        self,
        conversation: Conversation,
        agent: Agent,
        agency: Agency,
        body: str,
        message_type: MessageType,
    ) -> SendOutcome:
        """STOP/START/HELP confirmations. Carriers require them, so no tier or opt-in gate."""
        if not agency.phone_number:
            raise SendRejected(RejectReason.MISSING_AGENCY_PHONE)

        metadata = {
            "automated": True,
            "type": message_type.value,
            "client_phone": conversation.client_phone,
        }
        outcome = await self._transmit(conversation, agent, agency, body, metadata)
        OUTBOUND_DISPATCH.labels(status=outcome.status.value, category="compliance").inc()
        return outcome

    def _check_allowed(self, conversation: Conversation, agent: Agent, agency: Agency, automated: bool) -> None:
        reason = opt_in.send_block_reason(conversation)
        if reason is not None:
            raise SendRejected(reason)

        if not allows_messaging(agent.subscription_tier):
            raise SendRejected(RejectReason.UPGRADE_REQUIRED, "Upgrade your plan to send SMS messages")

        # Master switch covers automated traffic only
        if automated and not agency.messaging_enabled:
            raise SendRejected(RejectReason.MESSAGING_DISABLED, "Messaging is disabled for this agency")

        if not agency.phone_number:
            raise SendRejected(RejectReason.MISSING_AGENCY_PHONE, "Agency has no SMS number configured")

    async def _transmit(
        self,
        conversation: Conversation,
        agent: Agent,
        agency: Agency,
        body: str,
        metadata: Dict[str, Any],
    ) -> SendOutcome:
        try:
            provider_message_id = await self._provider_send(agency, conversation, body)
        except ProviderSendError as e:
            message = await self.repo.log_message(
                conversation,
                body,
                MessageDirection.OUTBOUND,
                MessageStatus.FAILED,
                sender_id=agent.id,
                metadata={**metadata, "error": e.detail, "error_code": e.code},
            )
            await self._reconcile_carrier_block(conversation, e.code)
            return SendOutcome(SendStatus.FAILED, message, reason=e.code, error=e)

        message = await self.repo.log_message(
            conversation,
            body,
            MessageDirection.OUTBOUND,
            MessageStatus.SENT,
            sender_id=agent.id,
            metadata=metadata,
            provider_message_id=provider_message_id,
        )
        await self.meter.record_sent(agent.id)
        return SendOutcome(SendStatus.SENT, message)

    async def _provider_send(self, agency: Agency, conversation: Conversation, body: str) -> str:
        if not is_valid_phone(conversation.client_phone):
            raise ProviderSendError(INVALID_PHONE_CODE, phone_validation_error(conversation.client_phone))
        return await self.provider.send(agency.phone_number, conversation.client_phone, body)

    async def _reconcile_carrier_block(self, conversation: Conversation, error_code: Optional[str]) -> None:
        if opt_in.is_carrier_block(error_code):
            logger.warning(
                "Carrier block reported, opting out",
                conversation_id=conversation.id,
                phone=mask_phone(conversation.client_phone),
            )
            await self.repo.apply_opt_in_event(conversation, opt_in.OptInEvent.CARRIER_BLOCK)

    # =========================================================================
    # APPROVAL & RETRY
    # =========================================================================

    async def approve_drafts(self, message_ids: Iterable[str], agent_id: Optional[str] = None) -> List[SendOutcome]:
        """Send approved drafts. A human approved them, so no tier gate; opt-in still applies."""
        drafts = await self.repo.list_messages(MessageStatus.DRAFT, message_ids, agent_id)
        return [await self._deliver_existing(message) for message in drafts]

    async def retry_failed(self, message_ids: Iterable[str], agent_id: Optional[str] = None) -> List[SendOutcome]:
        failed = await self.repo.list_messages(MessageStatus.FAILED, message_ids, agent_id)
        return [await self._deliver_existing(message) for message in failed]

    async def _deliver_existing(self, message: Message) -> SendOutcome:
        conversation = await self.repo.get(message.conversation_id)
        agency = await self.directory.get_agency(conversation.agency_id)

        reason = opt_in.send_block_reason(conversation)
        if reason is None and (agency is None or not agency.phone_number):
            reason = RejectReason.MISSING_AGENCY_PHONE
        if reason is not None:
            OUTBOUND_DISPATCH.labels(status=SendStatus.REJECTED.value, category="approval").inc()
            logger.info("Approval rejected", message_id=message.id, reason=reason.value)
            return SendOutcome(SendStatus.REJECTED, message, reason=reason.value)

        try:
            provider_message_id = await self._provider_send(agency, conversation, message.body)
        except ProviderSendError as e:
            await self.repo.mark_failed(message, e.code, e.detail)
            await self._reconcile_carrier_block(conversation, e.code)
            OUTBOUND_DISPATCH.labels(status=SendStatus.FAILED.value, category="approval").inc()
            return SendOutcome(SendStatus.FAILED, message, reason=e.code, error=e)

        await self.repo.mark_sent(message, provider_message_id)
        await self.meter.record_sent(conversation.agent_id)
        OUTBOUND_DISPATCH.labels(status=SendStatus.SENT.value, category="approval").inc()
        logger.info("Message delivered after approval", message_id=message.id)
        return SendOutcome(SendStatus.SENT, message)
