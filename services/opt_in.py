"""
Conversation consent (opt-in/opt-out) state machine.

    creation ----------------------------> opted_in
    pending  --(client START)------------> opted_in
    opted_in --(client STOP | carrier)---> opted_out
    opted_out --(client START)-----------> opted_in

Only an explicit client action can move a conversation to opted_in; carrier
reconciliation and every other automated source can only opt out. `pending`
is a legacy state that blocks all sends until resolved.
"""

import enum
from datetime import datetime
from typing import Optional

import structlog

from models import Conversation, OptInStatus, utcnow
from services.errors import InvalidOptInTransition, RejectReason

logger = structlog.get_logger("opt_in")

# Telnyx: "Blocked due to STOP message" - recipient opted out at the carrier
CARRIER_BLOCK_ERROR_CODES = frozenset({"40300"})


class OptInEvent(str, enum.Enum):
    CLIENT_STOP = "client_stop"
    CLIENT_START = "client_start"
    CARRIER_BLOCK = "carrier_block"


_TARGETS = {
    OptInEvent.CLIENT_STOP: OptInStatus.OPTED_OUT,
    OptInEvent.CARRIER_BLOCK: OptInStatus.OPTED_OUT,
    OptInEvent.CLIENT_START: OptInStatus.OPTED_IN,
}


def initial_values(now: Optional[datetime] = None) -> dict:
    """
    Column values for a brand-new conversation.

    Creating a conversation implies consent to informational messages
    (billing, birthday, policy reminders), so it starts opted in.
    """
    return {
        "sms_opt_in_status": OptInStatus.OPTED_IN,
        "opted_in_at": now or utcnow(),
    }


def can_send(conversation: Conversation) -> bool:
    return conversation.sms_opt_in_status == OptInStatus.OPTED_IN


def send_block_reason(conversation: Conversation) -> Optional[RejectReason]:
    status = conversation.sms_opt_in_status
    if status == OptInStatus.OPTED_IN:
        return None
    if status == OptInStatus.OPTED_OUT:
        return RejectReason.OPTED_OUT
    return RejectReason.PENDING_OPT_IN


def is_carrier_block(error_code: Optional[str]) -> bool:
    return error_code is not None and str(error_code) in CARRIER_BLOCK_ERROR_CODES


def apply_event(conversation: Conversation, event: OptInEvent, now: Optional[datetime] = None) -> bool:
    """
    Apply a consent event in place. Returns True when the state changed.

    Callers persist the conversation; this module never touches the session.
    """
    if not isinstance(event, OptInEvent):
        raise InvalidOptInTransition(f"Unknown opt-in event: {event!r}")

    target = _TARGETS[event]
    current = conversation.sms_opt_in_status
    now = now or utcnow()

    if current == target:
        return False

    if target == OptInStatus.OPTED_OUT:
        conversation.sms_opt_in_status = OptInStatus.OPTED_OUT
        conversation.opted_out_at = now
    else:
        conversation.sms_opt_in_status = OptInStatus.OPTED_IN
        conversation.opted_in_at = now
        conversation.opted_out_at = None

    logger.info(
        "Opt-in status changed",
        conversation_id=conversation.id,
        opt_in_event=event.value,
        previous=current.value if current else None,
        current=target.value,
    )
    return True
