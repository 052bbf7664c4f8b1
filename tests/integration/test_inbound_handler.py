import pytest
from sqlalchemy import func, select

from models import Conversation, MessageDirection, MessageStatus, OptInStatus
from services.errors import ReplyGenerationError, SendRejected
from services.inbound import InboundAction, compliance_keyword, contains_urgent_keywords
from services.send_gate import MessageCategory, SendRequest
from services.templates import MessageType


def test_compliance_keywords_match_whole_message_only():
    assert compliance_keyword(" stop ").value == "STOP"
    assert compliance_keyword("Unsubscribe").value == "STOP"
    assert compliance_keyword("START").value == "START"
    assert compliance_keyword("info").value == "HELP"
    assert compliance_keyword("stop sending me bills") is None


def test_urgent_keywords():
    assert contains_urgent_keywords("Please call me ASAP")
    assert not contains_urgent_keywords("What is my premium?")


@pytest.mark.asyncio
async def test_policy_number_question_gets_ai_reply(factory, services, provider, replier, payload):
    """
    1. Client texts a question the deal can answer.
    2. The conversation is created and the inbound row logged.
    3. The AI reply is sent and metered.
    """
    s = await factory.scenario()

    result = await services.inbound.handle_message(payload("What is my policy number?"))

    assert result.action == InboundAction.REPLIED
    replier.generate.assert_awaited_once()
    question, facts = replier.generate.await_args.args
    assert question == "What is my policy number?"
    assert facts["policy_number"] == "POL-12345"

    provider.send.assert_awaited_once_with("+15555550100", "6692456363", "Your policy number is POL-12345.")

    messages = await services.repo.list_messages(agent_id=s.agent.id)
    assert [(m.direction, m.status) for m in messages] == [
        (MessageDirection.INBOUND, MessageStatus.RECEIVED),
        (MessageDirection.OUTBOUND, MessageStatus.SENT),
    ]
    assert messages[1].meta["type"] == "ai_response"
    assert messages[1].meta["in_reply_to"] == messages[0].id
    assert await services.meter.record_sent(s.agent.id) == 2


@pytest.mark.asyncio
async def test_cancel_request_escalates_without_reply(factory, services, provider, replier, payload):
    s = await factory.scenario()

    result = await services.inbound.handle_message(payload("I want to cancel my policy"))

    assert result.action == InboundAction.ESCALATED
    replier.generate.assert_not_awaited()
    provider.send.assert_not_awaited()
    assert s.deal.needs_attention is True
    assert s.deal.needs_attention_at is not None


@pytest.mark.asyncio
async def test_stop_opts_out_and_blocks_later_sends(factory, services, provider, payload):
    s = await factory.scenario()

    result = await services.inbound.handle_message(payload("STOP"))

    assert result.action == InboundAction.OPTED_OUT
    conversation = await services.repo.get(result.conversation_id)
    assert conversation.sms_opt_in_status == OptInStatus.OPTED_OUT

    # Confirmation goes out even though the conversation is now opted out
    provider.send.assert_awaited_once()
    assert "unsubscribed" in provider.send.await_args.args[2]

    with pytest.raises(SendRejected):
        await services.gate.dispatch(SendRequest(
            conversation=conversation,
            agent=s.agent,
            agency=s.agency,
            body="Hi Jane",
            category=MessageCategory.MANUAL,
            message_type=MessageType.MANUAL,
        ))
    assert provider.send.await_count == 1


@pytest.mark.asyncio
async def test_start_resubscribes(factory, services, provider, payload):
    await factory.scenario()
    await services.inbound.handle_message(payload("STOP", message_id="in-1"))

    result = await services.inbound.handle_message(payload("START", message_id="in-2"))

    assert result.action == InboundAction.OPTED_IN
    conversation = await services.repo.get(result.conversation_id)
    assert conversation.sms_opt_in_status == OptInStatus.OPTED_IN
    assert conversation.opted_out_at is None


@pytest.mark.asyncio
async def test_help_sends_compliance_text(factory, services, provider, payload):
    await factory.scenario()

    result = await services.inbound.handle_message(payload("HELP"))

    assert result.action == InboundAction.HELP_SENT
    assert "support@useagentspace.com" in provider.send.await_args.args[2]


@pytest.mark.asyncio
async def test_repeated_messages_share_one_conversation(factory, services, session_factory, payload):
    s = await factory.scenario()

    first = await services.inbound.handle_message(payload("What is my premium?", message_id="in-1"))
    second = await services.inbound.handle_message(payload("What is my carrier?", message_id="in-2"))

    assert first.conversation_id == second.conversation_id
    async with session_factory() as session:
        stmt = select(func.count()).select_from(Conversation).where(Conversation.deal_id == s.deal.id)
        assert (await session.execute(stmt)).scalar_one() == 1


@pytest.mark.asyncio
async def test_duplicate_provider_delivery_is_ignored(factory, services, replier, payload):
    await factory.scenario()

    await services.inbound.handle_message(payload("What is my premium?", message_id="dup-1"))
    result = await services.inbound.handle_message(payload("What is my premium?", message_id="dup-1"))

    assert result.action == InboundAction.IGNORED
    assert result.reason == "duplicate_delivery"
    assert replier.generate.await_count == 1


@pytest.mark.asyncio
async def test_basic_tier_inbound_is_logged_but_not_answered(factory, services, provider, replier, payload):
    s = await factory.scenario(agent_kwargs={"subscription_tier": "basic"})

    result = await services.inbound.handle_message(payload("What is my policy number?"))

    assert result.action == InboundAction.IGNORED
    assert result.reason == "tier_without_automation"
    replier.generate.assert_not_awaited()
    provider.send.assert_not_awaited()
    messages = await services.repo.list_messages(agent_id=s.agent.id)
    assert len(messages) == 1


@pytest.mark.asyncio
async def test_pro_tier_with_auto_send_off_drafts_the_reply(factory, services, provider, payload):
    await factory.scenario(agency_kwargs={"sms_auto_send_enabled": False})

    result = await services.inbound.handle_message(payload("What is my policy number?"))

    assert result.action == InboundAction.DRAFTED
    assert result.reason == "auto_send_disabled"
    provider.send.assert_not_awaited()
    [draft] = await services.repo.list_messages(message_ids=[result.message_id])
    assert draft.status == MessageStatus.DRAFT
    assert draft.body == "Your policy number is POL-12345."


@pytest.mark.asyncio
async def test_llm_failure_escalates(factory, services, provider, replier, payload):
    replier.generate.side_effect = ReplyGenerationError("LLM timed out")
    s = await factory.scenario()

    result = await services.inbound.handle_message(payload("What is my monthly premium?"))

    assert result.action == InboundAction.ESCALATED
    assert result.reason == "generation_failed"
    provider.send.assert_not_awaited()
    assert s.deal.needs_attention is True


@pytest.mark.asyncio
async def test_question_the_deal_cannot_answer_escalates(factory, services, replier, payload):
    s = await factory.scenario(deal_kwargs={"policy_number": None})

    result = await services.inbound.handle_message(payload("What is my policy number?"))

    assert result.action == InboundAction.ESCALATED
    assert result.reason == "non_deal"
    replier.generate.assert_not_awaited()
    assert s.deal.needs_attention is True


@pytest.mark.asyncio
async def test_statement_is_logged_and_ignored(factory, services, replier, payload):
    await factory.scenario()

    result = await services.inbound.handle_message(payload("Thanks, have a great day"))

    assert result.action == InboundAction.IGNORED
    assert result.reason == "not_question"
    replier.generate.assert_not_awaited()


@pytest.mark.asyncio
async def test_urgent_message_is_forwarded_to_agent(factory, services, provider, payload):
    await factory.scenario()

    await services.inbound.handle_message(payload("This is urgent, call me"))

    forward = provider.send.await_args_list[0].args
    assert forward[1] == "4155550123"
    assert forward[2].startswith("URGENT: Client Jane Doe says:")


@pytest.mark.asyncio
async def test_unknown_agency_or_client_is_ignored(factory, services, payload):
    await factory.scenario()

    unknown_agency = await services.inbound.handle_message(payload("Hi?", recipient="+15555559999"))
    unknown_client = await services.inbound.handle_message(payload("Hi?", sender="+14085550199"))

    assert unknown_agency.reason == "agency_not_found"
    assert unknown_client.reason == "deal_not_found"


@pytest.mark.asyncio
async def test_client_phone_matches_legacy_formats(factory, services, payload):
    await factory.scenario(deal_kwargs={"client_phone": "(669) 245-6363"})

    result = await services.inbound.handle_message(payload("What is my policy number?"))

    assert result.action == InboundAction.REPLIED


@pytest.mark.asyncio
async def test_unlisted_phone_format_found_by_digit_comparison(factory, services):
    s = await factory.scenario(deal_kwargs={"client_phone": "tel:16692456363"})

    deal = await services.directory.find_deal_by_client_phone("+16692456363", s.agency.id)

    assert deal.id == s.deal.id


@pytest.mark.asyncio
async def test_carrier_block_delivery_report_opts_out(factory, services, payload):
    s = await factory.scenario()
    conversation = await services.repo.get_or_create(s.agent.id, s.deal.id, s.agency.id, s.deal.client_phone)
    sent = await services.gate.dispatch(SendRequest(
        conversation=conversation,
        agent=s.agent,
        agency=s.agency,
        body="Hi Jane",
        category=MessageCategory.MANUAL,
        message_type=MessageType.MANUAL,
    ))

    status = await services.inbound.handle_delivery_report(
        "message.finalized",
        payload(message_id=sent.message.provider_message_id, status="delivery_failed", error_code=40300),
    )

    assert status == MessageStatus.FAILED
    assert sent.message.meta["error_code"] == "40300"
    assert conversation.sms_opt_in_status == OptInStatus.OPTED_OUT


@pytest.mark.asyncio
async def test_delivered_report_marks_message_delivered(factory, services, payload):
    s = await factory.scenario()
    conversation = await services.repo.get_or_create(s.agent.id, s.deal.id, s.agency.id, s.deal.client_phone)
    sent = await services.gate.dispatch(SendRequest(
        conversation=conversation,
        agent=s.agent,
        agency=s.agency,
        body="Hi Jane",
        category=MessageCategory.MANUAL,
        message_type=MessageType.MANUAL,
    ))

    status = await services.inbound.handle_delivery_report(
        "message.finalized", payload(message_id=sent.message.provider_message_id, status="delivered"),
    )

    assert status == MessageStatus.DELIVERED
    assert conversation.sms_opt_in_status == OptInStatus.OPTED_IN
