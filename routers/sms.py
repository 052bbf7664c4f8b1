from typing import List

import structlog
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse

from dependencies import get_acting_agent, get_directory, get_gate, get_repo
from models import Agent, MessageStatus
from schemas import (
    BatchResult, ConversationOut, ConversationRequest, EditDraftRequest,
    MessageIdsRequest, MessageOut, SendMessageRequest, SendResult,
)
from services.conversations import ConversationRepository
from services.deals import DealDirectory
from services.errors import InvalidStatusTransition, SendRejected
from services.send_gate import MessageCategory, SendGate, SendRequest, SendStatus
from services.templates import MessageType
from services.welcome import send_welcome

router = APIRouter(prefix="/sms")
logger = structlog.get_logger("sms_api")


async def _agent_deal(deal_id: str, agent: Agent, directory: DealDirectory):
    deal = await directory.get_deal(deal_id)
    if deal is None or deal.agent_id != agent.id:
        raise HTTPException(status_code=404, detail="Deal not found")
    return deal


def _batch(outcomes) -> BatchResult:
    return BatchResult(
        results=[SendResult.from_outcome(o) for o in outcomes],
        sent=sum(1 for o in outcomes if o.status == SendStatus.SENT),
        failed=sum(1 for o in outcomes if o.status != SendStatus.SENT),
    )


@router.post("/send", response_model=SendResult)
async def send_message(
    body: SendMessageRequest,
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
    directory: DealDirectory = Depends(get_directory),
    gate: SendGate = Depends(get_gate),
):
    deal = await _agent_deal(body.deal_id, agent, directory)
    agency = await directory.get_agency(deal.agency_id)
    conversation = await repo.get_or_create(agent.id, deal.id, deal.agency_id, deal.client_phone)

    try:
        outcome = await gate.dispatch(SendRequest(
            conversation=conversation,
            agent=agent,
            agency=agency,
            body=body.message,
            category=MessageCategory.MANUAL,
            message_type=MessageType.MANUAL,
            metadata={"deal_id": deal.id},
        ))
    except SendRejected as e:
        return JSONResponse(status_code=403, content={"reason": e.reason.value, "detail": e.detail})

    result = SendResult.from_outcome(outcome)
    if outcome.status == SendStatus.FAILED:
        return JSONResponse(status_code=502, content=result.model_dump())
    return result


@router.post("/conversations/get-or-create", response_model=ConversationOut)
async def get_or_create_conversation(
    body: ConversationRequest,
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
    directory: DealDirectory = Depends(get_directory),
    gate: SendGate = Depends(get_gate),
):
    deal = await _agent_deal(body.deal_id, agent, directory)
    conversation, created = await repo.open_conversation(agent.id, deal.id, deal.agency_id, deal.client_phone)
    if not created:
        return ConversationOut.from_model(conversation)

    agency = await directory.get_agency(deal.agency_id)
    welcome = await send_welcome(gate, conversation, deal, agent, agency)
    return ConversationOut.from_model(conversation, welcome_status=welcome.status.value)


@router.get("/drafts", response_model=List[MessageOut])
async def list_drafts(
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
):
    drafts = await repo.list_messages(MessageStatus.DRAFT, agent_id=agent.id)
    return [MessageOut.from_model(m) for m in drafts]


@router.post("/drafts/approve", response_model=BatchResult)
async def approve_drafts(
    body: MessageIdsRequest,
    agent: Agent = Depends(get_acting_agent),
    gate: SendGate = Depends(get_gate),
):
    outcomes = await gate.approve_drafts(body.message_ids, agent_id=agent.id)
    logger.info("Drafts approved", agent_id=agent.id, requested=len(body.message_ids), processed=len(outcomes))
    return _batch(outcomes)


@router.post("/drafts/reject")
async def reject_drafts(
    body: MessageIdsRequest,
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
):
    owned = await repo.list_messages(MessageStatus.DRAFT, body.message_ids, agent.id)
    deleted = await repo.delete_drafts([m.id for m in owned])
    return {"deleted": deleted}


@router.post("/drafts/edit", response_model=MessageOut)
async def edit_draft(
    body: EditDraftRequest,
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
):
    owned = await repo.list_messages(message_ids=[body.message_id], agent_id=agent.id)
    if not owned:
        raise HTTPException(status_code=404, detail="Message not found")

    try:
        message = await repo.update_draft_body(owned[0], body.body)
    except InvalidStatusTransition:
        raise HTTPException(status_code=409, detail="Only drafts can be edited")
    return MessageOut.from_model(message)


@router.post("/failed/retry", response_model=BatchResult)
async def retry_failed(
    body: MessageIdsRequest,
    agent: Agent = Depends(get_acting_agent),
    gate: SendGate = Depends(get_gate),
):
    outcomes = await gate.retry_failed(body.message_ids, agent_id=agent.id)
    return _batch(outcomes)


@router.post("/messages/{message_id}/read", response_model=MessageOut)
async def mark_read(
    message_id: str,
    agent: Agent = Depends(get_acting_agent),
    repo: ConversationRepository = Depends(get_repo),
):
    owned = await repo.list_messages(message_ids=[message_id], agent_id=agent.id)
    if not owned:
        raise HTTPException(status_code=404, detail="Message not found")
    message = await repo.mark_read(owned[0])
    return MessageOut.from_model(message)
