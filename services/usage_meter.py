"""
Usage Meter

Counts messages that were actually transmitted, per agent, per billing
cycle, and reports overage units to the billing provider.

1. Expired cycle -> compare-and-set reset (count = 1, cycle end advanced)
2. Otherwise     -> atomic `count = count + 1 RETURNING count`
3. Past the tier's included messages -> one unit reported to billing

Concurrent sends never lose increments: both branches are single UPDATE
statements, and a racer that loses the reset falls through to the increment.
Metering is best-effort; nothing here may break message delivery. It runs in
its own session, so a failed increment never rolls back (or expires) the
caller's freshly committed message.
"""

import calendar
from datetime import datetime
from typing import Optional

import structlog
from prometheus_client import Counter
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import Agent, utcnow
from services.tiers import TierLimits, get_tier_limits

logger = structlog.get_logger("usage_meter")

OVERAGE_REPORTED = Counter("sms_overage_units_total", "Overage units reported to billing", ["status"])

agents = Agent.__table__


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; Jan 31 + 1 month is Feb 28/29."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def next_cycle_end(cycle_end: datetime, now: datetime) -> datetime:
    """First whole-month step of `cycle_end` that lies in the future."""
    months = 1
    candidate = add_months(cycle_end, months)
    while candidate <= now:
        months += 1
        candidate = add_months(cycle_end, months)
    return candidate


class UsageMeter:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        reporter=None,
        meter_event_name: str = "sms_messages",
    ):
        self.session_factory = session_factory
        self.reporter = reporter
        self.meter_event_name = meter_event_name

    async def record_sent(self, agent_id: str) -> Optional[int]:
        """
        Count one transmitted message. Returns the new count, or None when
        metering failed (logged, never raised).
        """
        try:
            async with self.session_factory() as session:
                row = (await session.execute(
                    select(
                        agents.c.subscription_tier,
                        agents.c.billing_cycle_end,
                        agents.c.stripe_customer_id,
                    ).where(agents.c.id == agent_id)
                )).first()

                if row is None:
                    logger.warning("Usage not recorded, unknown agent", agent_id=agent_id)
                    return None

                new_count = await self._increment(session, agent_id, row.billing_cycle_end)
                await session.commit()
        except Exception as e:
            logger.error("Usage metering failed", agent_id=agent_id, error=str(e))
            return None

        limits = get_tier_limits(row.subscription_tier)
        if new_count > limits.included_messages:
            await self._report_overage(agent_id, row.stripe_customer_id, new_count, limits)

        return new_count

    async def _increment(self, session, agent_id: str, cycle_end: Optional[datetime]) -> int:
        now = utcnow()

        if cycle_end is not None and cycle_end < now:
            reset = await session.execute(
                update(agents)
                .where(agents.c.id == agent_id, agents.c.billing_cycle_end == cycle_end)
                .values(
                    messages_sent_count=1,
                    messages_reset_date=now,
                    billing_cycle_end=next_cycle_end(cycle_end, now),
                )
            )
            if reset.rowcount:
                logger.info("Billing cycle rolled over", agent_id=agent_id)
                return 1

        result = await session.execute(
            update(agents)
            .where(agents.c.id == agent_id)
            .values(messages_sent_count=agents.c.messages_sent_count + 1)
            .returning(agents.c.messages_sent_count)
        )
        return result.scalar_one()

    async def _report_overage(
        self, agent_id: str, customer_id: Optional[str], count: int, limits: TierLimits
    ) -> None:
        if self.reporter is None or not customer_id:
            logger.info("Overage not reported, billing not configured", agent_id=agent_id, count=count)
            return

        try:
            await self.reporter.report_usage(customer_id, self.meter_event_name, 1)
            OVERAGE_REPORTED.labels(status="reported").inc()
            logger.info(
                "Overage reported",
                agent_id=agent_id,
                count=count,
                included=limits.included_messages,
                unit_price=limits.overage_price,
            )
        except Exception as e:
            OVERAGE_REPORTED.labels(status="failed").inc()
            logger.error("Overage report failed", agent_id=agent_id, count=count, error=str(e))
