from unittest.mock import AsyncMock

import pytest
from sqlalchemy.exc import OperationalError

from models import MessageStatus, OptInStatus
from services.errors import ProviderSendError, RejectReason, SendRejected
from services.send_gate import MessageCategory, SendRequest, SendStatus
from services.templates import MessageType
from services.usage_meter import UsageMeter


async def _setup(factory, services, **kwargs):
    s = await factory.scenario(**kwargs)
    s.conversation = await services.repo.get_or_create(s.agent.id, s.deal.id, s.agency.id, s.deal.client_phone)
    return s


def _request(s, body="Hi Jane, your policy is active.", category=MessageCategory.MANUAL,
             message_type=MessageType.MANUAL):
    return SendRequest(
        conversation=s.conversation,
        agent=s.agent,
        agency=s.agency,
        body=body,
        category=category,
        message_type=message_type,
    )


@pytest.mark.asyncio
async def test_manual_send_transmits_logs_and_meters(factory, services, provider):
    s = await _setup(factory, services)

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.SENT
    assert outcome.message.status == MessageStatus.SENT
    assert outcome.message.provider_message_id == "telnyx-1"
    assert outcome.message.meta["automated"] is False
    provider.send.assert_awaited_once_with("+15555550100", "6692456363", "Hi Jane, your policy is active.")
    assert await services.meter.record_sent(s.agent.id) == 2


@pytest.mark.asyncio
async def test_opted_out_conversation_rejects_before_provider(factory, services, provider):
    s = await _setup(factory, services)
    s.conversation.sms_opt_in_status = OptInStatus.OPTED_OUT

    with pytest.raises(SendRejected) as exc:
        await services.gate.dispatch(_request(s))

    assert exc.value.reason == RejectReason.OPTED_OUT
    provider.send.assert_not_awaited()
    assert await services.repo.list_messages(agent_id=s.agent.id) == []


@pytest.mark.asyncio
async def test_free_tier_needs_upgrade(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"subscription_tier": "free"})

    with pytest.raises(SendRejected) as exc:
        await services.gate.dispatch(_request(s))

    assert exc.value.reason == RejectReason.UPGRADE_REQUIRED
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_agency_master_switch_blocks_automated_messages(factory, services, provider):
    s = await _setup(factory, services, agency_kwargs={"messaging_enabled": False})

    with pytest.raises(SendRejected) as exc:
        await services.gate.dispatch(_request(
            s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
        ))

    assert exc.value.reason == RejectReason.MESSAGING_DISABLED
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_agency_master_switch_does_not_block_manual_messages(factory, services, provider):
    s = await _setup(factory, services, agency_kwargs={"messaging_enabled": False})

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.SENT
    provider.send.assert_awaited_once()


@pytest.mark.asyncio
async def test_basic_tier_automated_message_is_skipped(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"subscription_tier": "basic"})

    outcome = await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))

    assert outcome.status == SendStatus.SKIPPED
    assert outcome.message is None
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_basic_tier_can_still_send_manually(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"subscription_tier": "basic"})

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.SENT


@pytest.mark.asyncio
async def test_automated_message_with_auto_send_off_becomes_draft(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"sms_auto_send_enabled": False})

    outcome = await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))

    assert outcome.status == SendStatus.DRAFT
    assert outcome.reason == "auto_send_disabled"
    assert outcome.message.sent_at is None
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_agent_override_beats_agency_setting(factory, services, provider):
    s = await _setup(
        factory, services,
        agency_kwargs={"sms_auto_send_enabled": False},
        agent_kwargs={"sms_auto_send_enabled": True},
    )

    outcome = await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))

    assert outcome.status == SendStatus.SENT


@pytest.mark.asyncio
async def test_unresolved_placeholder_forces_draft(factory, services, provider):
    s = await _setup(factory, services)

    outcome = await services.gate.dispatch(_request(
        s, body="Call me at {{agent_phone}}", category=MessageCategory.AUTOMATED,
        message_type=MessageType.LAPSE_REMINDER,
    ))

    assert outcome.status == SendStatus.DRAFT
    assert outcome.reason == "unresolved_placeholders"


@pytest.mark.asyncio
async def test_manual_message_ignores_auto_send_setting(factory, services, provider):
    s = await _setup(factory, services, agency_kwargs={"sms_auto_send_enabled": False})

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.SENT


@pytest.mark.asyncio
async def test_provider_failure_records_failed_row_without_metering(factory, services, provider):
    provider.send.side_effect = ProviderSendError("timeout", "Telnyx request timed out")
    s = await _setup(factory, services)

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.FAILED
    assert outcome.message.status == MessageStatus.FAILED
    assert outcome.message.meta["error_code"] == "timeout"
    # Nothing was transmitted, so the counter is untouched
    assert await services.meter.record_sent(s.agent.id) == 1


@pytest.mark.asyncio
async def test_carrier_block_on_send_opts_conversation_out(factory, services, provider):
    provider.send.side_effect = ProviderSendError("40300", "Blocked due to STOP message")
    s = await _setup(factory, services)

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.FAILED
    assert s.conversation.sms_opt_in_status == OptInStatus.OPTED_OUT
    assert s.conversation.opted_out_at is not None


@pytest.mark.asyncio
async def test_invalid_client_phone_fails_without_provider_call(factory, services, provider):
    s = await _setup(factory, services, deal_kwargs={"client_phone": "0123456789"})

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.FAILED
    assert outcome.reason == "invalid_phone"
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_approve_drafts_sends_and_meters(factory, services, provider):
    s = await _setup(factory, services, agency_kwargs={"sms_birthday_require_approval": True})
    draft = (await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))).message

    outcomes = await services.gate.approve_drafts([draft.id], agent_id=s.agent.id)

    assert [o.status for o in outcomes] == [SendStatus.SENT]
    assert draft.status == MessageStatus.SENT
    assert draft.sent_at is not None
    assert draft.provider_message_id == "telnyx-1"
    assert await services.meter.record_sent(s.agent.id) == 2


@pytest.mark.asyncio
async def test_approval_still_respects_opt_out(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"sms_auto_send_enabled": False})
    draft = (await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))).message
    s.conversation.sms_opt_in_status = OptInStatus.OPTED_OUT

    outcomes = await services.gate.approve_drafts([draft.id])

    assert outcomes[0].status == SendStatus.REJECTED
    assert outcomes[0].reason == "opted_out"
    assert draft.status == MessageStatus.DRAFT
    provider.send.assert_not_awaited()


@pytest.mark.asyncio
async def test_approve_ignores_other_agents_drafts(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"sms_auto_send_enabled": False})
    draft = (await services.gate.dispatch(_request(
        s, category=MessageCategory.AUTOMATED, message_type=MessageType.BIRTHDAY
    ))).message
    intruder = await factory.agent(s.agency)

    assert await services.gate.approve_drafts([draft.id], agent_id=intruder.id) == []


@pytest.mark.asyncio
async def test_retry_failed_message(factory, services, provider):
    provider.send.side_effect = [ProviderSendError("timeout", "timed out"), "telnyx-retry"]
    s = await _setup(factory, services)
    failed = (await services.gate.dispatch(_request(s))).message

    outcomes = await services.gate.retry_failed([failed.id], agent_id=s.agent.id)

    assert outcomes[0].status == SendStatus.SENT
    assert failed.status == MessageStatus.SENT
    assert failed.provider_message_id == "telnyx-retry"


@pytest.mark.asyncio
async def test_compliance_reply_bypasses_opt_in_gate(factory, services, provider):
    s = await _setup(factory, services, agent_kwargs={"subscription_tier": "free"})
    s.conversation.sms_opt_in_status = OptInStatus.OPTED_OUT

    outcome = await services.gate.send_compliance(
        s.conversation, s.agent, s.agency, "You have been unsubscribed.", MessageType.OPT_OUT_CONFIRMATION
    )

    assert outcome.status == SendStatus.SENT
    assert outcome.message.meta["type"] == "opt_out_confirmation"


@pytest.mark.asyncio
async def test_metering_failure_does_not_undo_the_send(factory, services, provider, monkeypatch):
    monkeypatch.setattr(
        UsageMeter, "_increment",
        AsyncMock(side_effect=OperationalError("UPDATE agents", {}, Exception("database is locked"))),
    )
    s = await _setup(factory, services)

    outcome = await services.gate.dispatch(_request(s))

    assert outcome.status == SendStatus.SENT
    assert outcome.message_id is not None
    assert outcome.message.provider_message_id == "telnyx-1"
    assert s.conversation.id is not None
    sent = await services.repo.list_messages(MessageStatus.SENT, agent_id=s.agent.id)
    assert [m.id for m in sent] == [outcome.message_id]
