"""
Cron Dispatchers

Scheduled producers that feed the send gate:
- birthday           client birthday (month/day) is today
- lapse              policy status is lapse_pending
- billing            next billing date is three days out
- policy-packet      policy took effect fourteen days ago
- holiday            today is a US federal holiday (greeting to every client)
- quarterly-checkin  policy age is a whole multiple of 90 days

They only message into conversations that already exist and never create
one. A failure on one deal is logged and counted; the batch carries on.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, List, Optional

import structlog

from models import Agency, Agent, Deal
from services import opt_in
from services.conversations import ConversationRepository
from services.deals import DealDirectory
from services.errors import SendRejected
from services.holidays import Holiday, holiday_on
from services.phone import format_for_display
from services.send_gate import MessageCategory, SendGate, SendRequest, SendStatus
from services.templates import (
    MessageType, agency_setting, first_name, render_template, template_for,
)
from services.tiers import allows_auto_messaging

logger = structlog.get_logger("dispatchers")

JOB_MESSAGE_TYPES = {
    "birthday": MessageType.BIRTHDAY,
    "lapse": MessageType.LAPSE_REMINDER,
    "billing": MessageType.BILLING_REMINDER,
    "policy-packet": MessageType.POLICY_PACKET,
    "holiday": MessageType.HOLIDAY,
    "quarterly-checkin": MessageType.QUARTERLY_CHECKIN,
}


@dataclass
class DispatchCounts:
    sent: int = 0
    drafted: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0

    def record(self, status: SendStatus) -> None:
        if status == SendStatus.SENT:
            self.sent += 1
        elif status == SendStatus.DRAFT:
            self.drafted += 1
        elif status == SendStatus.FAILED:
            self.failed += 1
        else:
            self.skipped += 1

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


def template_values(deal: Deal, agent: Agent, agency: Agency) -> Dict[str, Any]:
    return {
        "client_first_name": first_name(deal.client_name),
        "client_name": deal.client_name,
        "client_email": deal.client_email,
        "agency_name": agency.name,
        "agent_name": agent.full_name,
        "agent_phone": format_for_display(agent.phone_number) if agent.phone_number else None,
        "policy_number": deal.policy_number,
        "carrier_name": deal.carrier_name,
        "monthly_premium": f"{deal.monthly_premium:.2f}" if deal.monthly_premium is not None else None,
        "face_amount": f"{deal.face_value:,.0f}" if deal.face_value is not None else None,
        "next_billing_date": deal.next_billing_date.strftime("%m/%d/%Y") if deal.next_billing_date else None,
    }


class CronDispatcher:
    def __init__(self, repo: ConversationRepository, directory: DealDirectory, gate: SendGate):
        self.repo = repo
        self.directory = directory
        self.gate = gate

    async def deals_for(self, kind: str, today: date) -> List[Deal]:
        if kind == "birthday":
            return await self.directory.birthday_deals(today)
        if kind == "lapse":
            return await self.directory.lapse_pending_deals()
        if kind == "billing":
            return await self.directory.billing_due_deals(today)
        if kind == "policy-packet":
            return await self.directory.policy_packet_deals(today)
        if kind == "holiday":
            return await self.directory.holiday_deals() if holiday_on(today) else []
        if kind == "quarterly-checkin":
            return await self.directory.quarterly_checkin_deals(today)
        raise ValueError(f"Unknown cron job: {kind}")

    async def run(self, kind: str, today: Optional[date] = None) -> DispatchCounts:
        message_type = JOB_MESSAGE_TYPES[kind]
        today = today or date.today()
        holiday = holiday_on(today) if message_type == MessageType.HOLIDAY else None
        counts = DispatchCounts()

        deals = await self.deals_for(kind, today)
        counts.total = len(deals)
        logger.info("Cron run started", job=kind, deals=len(deals), holiday=holiday.name if holiday else None)

        # Ids up front: a rollback after a failed deal expires every loaded row
        for deal_id in [deal.id for deal in deals]:
            try:
                deal = await self.directory.get_deal(deal_id)
                status = await self._process(deal, message_type, today, holiday)
            except Exception as e:
                logger.error("Cron deal failed", job=kind, deal_id=deal_id, error=str(e))
                await self.repo.db.rollback()
                status = SendStatus.FAILED
            counts.record(status)

        logger.info("Cron run finished", job=kind, **counts.as_dict())
        return counts

    async def _process(
        self, deal: Deal, message_type: MessageType, today: date, holiday: Optional[Holiday] = None
    ) -> SendStatus:
        agency = await self.directory.get_agency(deal.agency_id)
        agent = await self.directory.get_agent(deal.agent_id)

        skip = self._skip_reason(deal, agent, agency, message_type)
        if skip is None:
            conversation = await self.repo.get_if_exists(agent.id, deal.id)
            if conversation is None:
                skip = "no_conversation"
            elif not opt_in.can_send(conversation):
                skip = "not_opted_in"

        if skip is not None:
            logger.info("Cron deal skipped", deal_id=deal.id, type=message_type.value, reason=skip)
            return SendStatus.SKIPPED

        values = template_values(deal, agent, agency)
        metadata = {"deal_id": deal.id, "client_name": deal.client_name}
        if message_type == MessageType.BILLING_REMINDER:
            metadata["next_billing_date"] = deal.next_billing_date.isoformat()
        elif message_type == MessageType.POLICY_PACKET:
            metadata["policy_effective_date"] = deal.policy_effective_date.isoformat()
        elif message_type == MessageType.HOLIDAY:
            values["holiday_greeting"] = holiday.greeting
            metadata["holiday_name"] = holiday.name
        elif message_type == MessageType.QUARTERLY_CHECKIN:
            metadata["policy_effective_date"] = deal.policy_effective_date.isoformat()
            metadata["days_since_effective"] = (today - deal.policy_effective_date).days

        body = render_template(template_for(agency, message_type), values)

        try:
            outcome = await self.gate.dispatch(SendRequest(
                conversation=conversation,
                agent=agent,
                agency=agency,
                body=body,
                category=MessageCategory.AUTOMATED,
                message_type=message_type,
                metadata=metadata,
            ))
        except SendRejected as e:
            logger.info("Cron deal rejected", deal_id=deal.id, reason=e.reason.value)
            return SendStatus.SKIPPED

        return outcome.status

    @staticmethod
    def _skip_reason(
        deal: Deal, agent: Optional[Agent], agency: Optional[Agency], message_type: MessageType
    ) -> Optional[str]:
        if agent is None or agency is None:
            return "missing_agent_or_agency"
        if not agency.messaging_enabled:
            return "messaging_disabled"
        if not agency_setting(agency, message_type, "enabled", True):
            return "type_disabled"
        if not allows_auto_messaging(agent.subscription_tier):
            return "tier_without_automation"
        if not deal.client_phone:
            return "no_client_phone"
        return None
