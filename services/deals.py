"""
Deal Directory

Read side of the agency/agent/deal tables plus the one write the SMS layer
is allowed to make on a deal: flagging it for human attention.
"""

from datetime import date, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

import structlog
from sqlalchemy import select, extract
from sqlalchemy.ext.asyncio import AsyncSession

from logger_config import mask_phone
from models import Agency, Agent, Deal, utcnow
from services.phone import lookup_variants, normalize_for_storage, phones_match

logger = structlog.get_logger("deals")

LAPSE_PENDING = "lapse_pending"
BILLING_REMINDER_DAYS_AHEAD = 3
POLICY_PACKET_DAYS_AFTER = 14
QUARTERLY_CHECKIN_DAYS = 90

# Fallback LIKE search never pulls more than this many candidates
_PATTERN_MATCH_LIMIT = 10


def _fact(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return f"{value:.2f}"
    if isinstance(value, date):
        return value.isoformat()
    return value


def deal_facts(deal: Deal, agent: Optional[Agent] = None) -> Dict[str, Any]:
    """
    Facts of ONE deal, shaped for the classifier's dotted field paths and the
    reply prompt. Nothing about other deals or clients ever goes in here.
    """
    facts = {
        "client_name": deal.client_name,
        "policy_number": deal.policy_number,
        "monthly_premium": _fact(deal.monthly_premium),
        "annual_premium": _fact(deal.annual_premium),
        "face_value": _fact(deal.face_value),
        "policy_effective_date": _fact(deal.policy_effective_date),
        "next_billing_date": _fact(deal.next_billing_date),
        "billing_cycle": deal.billing_cycle,
        "beneficiary": deal.beneficiaries,
        "status": deal.status,
        "status_standardized": deal.status_standardized,
        "product": deal.product_name,
        "carrier": {"name": deal.carrier_name},
        "agent": {},
    }
    if agent is not None:
        facts["agent"] = {
            "first_name": agent.first_name,
            "last_name": agent.last_name,
            "email": agent.email,
            "phone_number": agent.phone_number,
        }
    return facts


class DealDirectory:
    def __init__(self, db: AsyncSession):
        self.db = db

    async def get_agency(self, agency_id: str) -> Optional[Agency]:
        return await self.db.get(Agency, agency_id)

    async def get_agent(self, agent_id: str) -> Optional[Agent]:
        return await self.db.get(Agent, agent_id)

    async def get_deal(self, deal_id: str) -> Optional[Deal]:
        return await self.db.get(Deal, deal_id)

    async def find_agency_by_phone(self, phone: str) -> Optional[Agency]:
        """Agency owning the receiving number, whatever format it was saved in."""
        variants = lookup_variants(phone)
        if not variants:
            return None

        stmt = select(Agency).where(Agency.phone_number.in_(variants)).limit(1)
        agency = (await self.db.execute(stmt)).scalars().first()
        if agency is None:
            logger.warning("No agency for receiving number", to=mask_phone(phone))
        return agency

    async def find_deal_by_client_phone(self, phone: str, agency_id: str) -> Optional[Deal]:
        """
        Deal for a client phone within one agency.

        Exact match on the known storage formats first, then a digits-contains
        search whose candidates are compared digit-wise.
        """
        national = normalize_for_storage(phone)
        if not national:
            return None

        for variant in lookup_variants(phone):
            stmt = (
                select(Deal)
                .where(Deal.agency_id == agency_id, Deal.client_phone == variant)
                .order_by(Deal.created_at)
                .limit(1)
            )
            deal = (await self.db.execute(stmt)).scalars().first()
            if deal is not None:
                return deal

        stmt = (
            select(Deal)
            .where(Deal.agency_id == agency_id, Deal.client_phone.like(f"%{national}%"))
            .limit(_PATTERN_MATCH_LIMIT)
        )
        candidates = (await self.db.execute(stmt)).scalars().all()
        for deal in candidates:
            if phones_match(deal.client_phone, national):
                return deal

        logger.info("No deal for client phone", agency_id=agency_id, phone=mask_phone(phone))
        return None

    async def flag_for_attention(self, deal: Deal) -> None:
        deal.needs_attention = True
        deal.needs_attention_at = utcnow()
        await self.db.commit()
        logger.info("Deal flagged for attention", deal_id=deal.id)

    # =========================================================================
    # CRON QUERIES
    # =========================================================================

    async def _deals(self, *criteria) -> List[Deal]:
        stmt = select(Deal).where(Deal.client_phone.isnot(None), *criteria).order_by(Deal.created_at)
        return list((await self.db.execute(stmt)).scalars().all())

    async def birthday_deals(self, today: date) -> List[Deal]:
        return await self._deals(
            Deal.client_birthday.isnot(None),
            extract("month", Deal.client_birthday) == today.month,
            extract("day", Deal.client_birthday) == today.day,
        )

    async def lapse_pending_deals(self) -> List[Deal]:
        return await self._deals(Deal.status_standardized == LAPSE_PENDING)

    async def billing_due_deals(self, today: date) -> List[Deal]:
        due = today + timedelta(days=BILLING_REMINDER_DAYS_AHEAD)
        return await self._deals(Deal.next_billing_date == due)

    async def policy_packet_deals(self, today: date) -> List[Deal]:
        effective = today - timedelta(days=POLICY_PACKET_DAYS_AFTER)
        return await self._deals(Deal.policy_effective_date == effective)

    async def holiday_deals(self) -> List[Deal]:
        """Every deal with a client phone; opt-in and tier gates narrow it down."""
        return await self._deals()

    async def quarterly_checkin_deals(self, today: date) -> List[Deal]:
        """Deals whose policy turns a whole number of quarters old today."""
        candidates = await self._deals(
            Deal.policy_effective_date.isnot(None),
            Deal.policy_effective_date < today,
        )
        return [
            deal for deal in candidates
            if (today - deal.policy_effective_date).days % QUARTERLY_CHECKIN_DAYS == 0
        ]
