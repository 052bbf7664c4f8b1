"""
FastAPI dependency wiring.

Long-lived clients come from `app.state` (built once in the lifespan);
repositories and services are request-scoped around one DB session.
"""

from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from config import get_settings
from database import get_db
from models import Agent
from services.ai import ReplyGenerator
from services.conversations import ConversationRepository
from services.deals import DealDirectory
from services.dispatchers import CronDispatcher
from services.inbound import InboundHandler
from services.job_locks import JobLockService
from services.send_gate import SendGate
from services.telnyx import TelnyxClient
from services.usage_meter import UsageMeter


def get_provider(request: Request) -> TelnyxClient:
    return request.app.state.telnyx


def get_replier(request: Request) -> ReplyGenerator:
    return request.app.state.replier


def get_repo(db: AsyncSession = Depends(get_db)) -> ConversationRepository:
    return ConversationRepository(db)


def get_directory(db: AsyncSession = Depends(get_db)) -> DealDirectory:
    return DealDirectory(db)


def get_job_locks(db: AsyncSession = Depends(get_db)) -> JobLockService:
    return JobLockService(db)


def get_meter(request: Request) -> UsageMeter:
    return UsageMeter(
        request.app.state.session_factory,
        reporter=getattr(request.app.state, "billing_reporter", None),
        meter_event_name=get_settings().STRIPE_METER_EVENT_NAME,
    )


def get_gate(
    repo: ConversationRepository = Depends(get_repo),
    directory: DealDirectory = Depends(get_directory),
    provider: TelnyxClient = Depends(get_provider),
    meter: UsageMeter = Depends(get_meter),
) -> SendGate:
    return SendGate(repo, directory, provider, meter)


def get_inbound_handler(
    repo: ConversationRepository = Depends(get_repo),
    directory: DealDirectory = Depends(get_directory),
    gate: SendGate = Depends(get_gate),
    replier: ReplyGenerator = Depends(get_replier),
) -> InboundHandler:
    return InboundHandler(repo, directory, gate, replier, get_settings())


def get_dispatcher(
    repo: ConversationRepository = Depends(get_repo),
    directory: DealDirectory = Depends(get_directory),
    gate: SendGate = Depends(get_gate),
) -> CronDispatcher:
    return CronDispatcher(repo, directory, gate)


async def get_acting_agent(
    x_agent_id: Optional[str] = Header(default=None),
    directory: DealDirectory = Depends(get_directory),
) -> Agent:
    """The upstream gateway authenticates and passes the agent id along."""
    if not x_agent_id:
        raise HTTPException(status_code=401, detail="Missing X-Agent-Id header")

    agent = await directory.get_agent(x_agent_id)
    if agent is None:
        raise HTTPException(status_code=401, detail="Unknown agent")
    return agent
