import itertools
from datetime import date
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from database import build_engine, build_session_factory, init_db
from main import app
from models import Agency, Agent, Deal, new_id
from schemas import TelnyxPayload
from services.conversations import ConversationRepository
from services.deals import DealDirectory
from services.dispatchers import CronDispatcher
from services.inbound import InboundHandler
from services.send_gate import SendGate
from services.usage_meter import UsageMeter
from config import get_settings

AGENCY_PHONE = "+15555550100"
CLIENT_PHONE = "6692456363"
AGENT_PHONE = "4155550123"


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'sms.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


class Factory:
    """Seeds agencies, agents and deals with sensible defaults."""

    def __init__(self, db):
        self.db = db

    async def _save(self, obj):
        self.db.add(obj)
        await self.db.commit()
        return obj

    async def agency(self, **overrides) -> Agency:
        values = dict(id=new_id(), name="Summit Life Agency", phone_number=AGENCY_PHONE)
        values.update(overrides)
        return await self._save(Agency(**values))

    async def agent(self, agency: Agency, **overrides) -> Agent:
        values = dict(
            id=new_id(),
            agency_id=agency.id,
            first_name="Sam",
            last_name="Rivera",
            email="sam@summitlife.test",
            phone_number=AGENT_PHONE,
            subscription_tier="pro",
            messages_sent_count=0,
            stripe_customer_id="cus_123",
        )
        values.update(overrides)
        return await self._save(Agent(**values))

    async def deal(self, agent: Agent, **overrides) -> Deal:
        values = dict(
            id=new_id(),
            agent_id=agent.id,
            agency_id=agent.agency_id,
            client_name="Jane Doe",
            client_phone=CLIENT_PHONE,
            client_email="jane@example.com",
            policy_number="POL-12345",
            carrier_name="Mutual of Omaha",
            product_name="Term Life 20",
            monthly_premium=Decimal("85.50"),
            annual_premium=Decimal("1026.00"),
            policy_effective_date=date(2024, 3, 1),
            billing_cycle="monthly",
            status="active",
            status_standardized="active",
        )
        values.update(overrides)
        return await self._save(Deal(**values))

    async def scenario(self, agency_kwargs=None, agent_kwargs=None, deal_kwargs=None):
        agency = await self.agency(**(agency_kwargs or {}))
        agent = await self.agent(agency, **(agent_kwargs or {}))
        deal = await self.deal(agent, **(deal_kwargs or {}))
        return SimpleNamespace(agency=agency, agent=agent, deal=deal)


@pytest.fixture
def factory(db):
    return Factory(db)


@pytest.fixture
def provider():
    counter = itertools.count(1)
    mock = MagicMock()
    mock.send = AsyncMock(side_effect=lambda from_, to, text: f"telnyx-{next(counter)}")
    return mock


@pytest.fixture
def replier():
    mock = MagicMock()
    mock.generate = AsyncMock(return_value="Your policy number is POL-12345.")
    return mock


@pytest.fixture
def reporter():
    mock = MagicMock()
    mock.report_usage = AsyncMock(return_value=None)
    return mock


@pytest.fixture
def services(db, session_factory, provider, replier, reporter):
    repo = ConversationRepository(db)
    directory = DealDirectory(db)
    meter = UsageMeter(session_factory, reporter=reporter)
    gate = SendGate(repo, directory, provider, meter)
    return SimpleNamespace(
        repo=repo,
        directory=directory,
        meter=meter,
        gate=gate,
        inbound=InboundHandler(repo, directory, gate, replier, get_settings()),
        dispatcher=CronDispatcher(repo, directory, gate),
    )


def telnyx_payload(text="", message_id="inbound-1", sender=f"+1{CLIENT_PHONE}", recipient=AGENCY_PHONE,
                   status=None, error_code=None):
    """Telnyx `data.payload` dict as it arrives on the webhook."""
    payload = {
        "id": message_id,
        "text": text,
        "from": {"phone_number": sender},
        "to": [{"phone_number": recipient, "status": status}],
    }
    if error_code is not None:
        payload["errors"] = [{"code": error_code, "title": "Blocked due to STOP message"}]
    return payload


@pytest.fixture
def payload():
    """Builds a parsed TelnyxPayload."""
    def build(text="", **kwargs):
        return TelnyxPayload.model_validate(telnyx_payload(text, **kwargs))
    return build


@pytest.fixture
def webhook_body():
    """Builds a full Telnyx webhook JSON body."""
    def build(event_type, text="", **kwargs):
        return {"data": {"event_type": event_type, "payload": telnyx_payload(text, **kwargs)}}
    return build


@pytest.fixture
def cron_secret(monkeypatch):
    monkeypatch.setattr(get_settings(), "CRON_SECRET", "cron-test-secret")
    return "cron-test-secret"


@pytest_asyncio.fixture
async def async_client(session_factory, provider, replier, reporter):
    app.state.session_factory = session_factory
    app.state.telnyx = provider
    app.state.replier = replier
    app.state.billing_reporter = reporter

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides = {}
