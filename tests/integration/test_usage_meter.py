import asyncio
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from models import Agent, utcnow
from services.usage_meter import UsageMeter


async def _agent_row(session_factory, agent_id):
    async with session_factory() as session:
        return (await session.execute(select(Agent).where(Agent.id == agent_id))).scalar_one()


@pytest.mark.asyncio
async def test_each_send_increments_the_counter(factory, services, session_factory):
    agency = await factory.agency()
    agent = await factory.agent(agency)

    counts = [await services.meter.record_sent(agent.id) for _ in range(3)]

    assert counts == [1, 2, 3]
    assert (await _agent_row(session_factory, agent.id)).messages_sent_count == 3


@pytest.mark.asyncio
async def test_concurrent_sends_never_lose_increments(factory, session_factory, reporter):
    """
    Five sends for the same agent at once, each metered in its own session. The counter
    is a single UPDATE ... RETURNING, so the final value is exactly 5.
    """
    agency = await factory.agency()
    agent = await factory.agent(agency)

    meter = UsageMeter(session_factory, reporter=reporter)

    results = await asyncio.gather(*(meter.record_sent(agent.id) for _ in range(5)))

    assert sorted(results) == [1, 2, 3, 4, 5]
    assert (await _agent_row(session_factory, agent.id)).messages_sent_count == 5


@pytest.mark.asyncio
async def test_overage_reported_only_past_included_messages(factory, services, reporter):
    agency = await factory.agency()
    agent = await factory.agent(agency, subscription_tier="basic", messages_sent_count=49)

    await services.meter.record_sent(agent.id)  # 50 of 50
    reporter.report_usage.assert_not_awaited()

    await services.meter.record_sent(agent.id)  # 51
    reporter.report_usage.assert_awaited_once_with("cus_123", "sms_messages", 1)


@pytest.mark.asyncio
async def test_overage_without_customer_is_only_logged(factory, services, reporter):
    agency = await factory.agency()
    agent = await factory.agent(agency, subscription_tier="basic", messages_sent_count=60, stripe_customer_id=None)

    assert await services.meter.record_sent(agent.id) == 61
    reporter.report_usage.assert_not_awaited()


@pytest.mark.asyncio
async def test_billing_failure_never_breaks_metering(factory, services, reporter):
    reporter.report_usage.side_effect = RuntimeError("stripe down")
    agency = await factory.agency()
    agent = await factory.agent(agency, subscription_tier="pro", messages_sent_count=250)

    assert await services.meter.record_sent(agent.id) == 251


@pytest.mark.asyncio
async def test_expired_cycle_resets_counter(factory, services, session_factory):
    agency = await factory.agency()
    cycle_end = (utcnow() - timedelta(days=2)).replace(microsecond=0)
    agent = await factory.agent(agency, messages_sent_count=180, billing_cycle_end=cycle_end)

    assert await services.meter.record_sent(agent.id) == 1

    row = await _agent_row(session_factory, agent.id)
    assert row.messages_sent_count == 1
    assert row.billing_cycle_end > utcnow()
    assert row.messages_reset_date is not None

    assert await services.meter.record_sent(agent.id) == 2


@pytest.mark.asyncio
async def test_concurrent_sends_across_cycle_end_reset_once(factory, session_factory):
    agency = await factory.agency()
    cycle_end = datetime(2020, 1, 15, 0, 0, 0)
    agent = await factory.agent(agency, messages_sent_count=500, billing_cycle_end=cycle_end)

    meter = UsageMeter(session_factory)

    results = await asyncio.gather(*(meter.record_sent(agent.id) for _ in range(3)))

    assert sorted(results) == [1, 2, 3]
    assert (await _agent_row(session_factory, agent.id)).messages_sent_count == 3


@pytest.mark.asyncio
async def test_unknown_agent_returns_none(services):
    assert await services.meter.record_sent("missing-agent") is None
