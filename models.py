"""
Database Models

Agencies own agents, agents own deals, and every (agent, deal) pair has at
most one SMS conversation. Messages hang off conversations.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Boolean, DateTime, Date, Text, Integer, Numeric, ForeignKey,
    JSON, UniqueConstraint, Index, Enum as SAEnum,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp; every DateTime column stores UTC without tzinfo."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class OptInStatus(str, enum.Enum):
    PENDING = "pending"
    OPTED_IN = "opted_in"
    OPTED_OUT = "opted_out"


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class MessageStatus(str, enum.Enum):
    DRAFT = "draft"
    SENT = "sent"
    DELIVERED = "delivered"
    FAILED = "failed"
    RECEIVED = "received"


def _enum_column(enum_cls, name: str, **kwargs) -> Column:
    return Column(
        SAEnum(
            enum_cls,
            name=name,
            native_enum=False,
            length=20,
            values_callable=lambda members: [m.value for m in members],
        ),
        **kwargs,
    )


class Agency(Base):
    __tablename__ = "agencies"

    id = Column(String(36), primary_key=True, default=new_id)
    name = Column(String(200), nullable=False)
    phone_number = Column(String(30), nullable=True, index=True)
    timezone = Column(String(64), default="America/Los_Angeles")

    # Master switch; no automated message is sent for the agency while this is off
    messaging_enabled = Column(Boolean, default=True, nullable=False)
    sms_auto_send_enabled = Column(Boolean, default=True, nullable=False)

    sms_welcome_require_approval = Column(Boolean, default=False, nullable=False)
    sms_birthday_require_approval = Column(Boolean, default=False, nullable=False)
    sms_lapse_require_approval = Column(Boolean, default=False, nullable=False)
    sms_billing_require_approval = Column(Boolean, default=False, nullable=False)
    sms_policy_packet_require_approval = Column(Boolean, default=False, nullable=False)
    sms_holiday_require_approval = Column(Boolean, default=False, nullable=False)
    sms_quarterly_require_approval = Column(Boolean, default=False, nullable=False)

    sms_welcome_enabled = Column(Boolean, default=True, nullable=False)
    sms_birthday_enabled = Column(Boolean, default=True, nullable=False)
    sms_lapse_enabled = Column(Boolean, default=True, nullable=False)
    sms_billing_enabled = Column(Boolean, default=True, nullable=False)
    sms_policy_packet_enabled = Column(Boolean, default=True, nullable=False)
    sms_holiday_enabled = Column(Boolean, default=True, nullable=False)
    sms_quarterly_enabled = Column(Boolean, default=True, nullable=False)

    sms_welcome_template = Column(Text, nullable=True)
    sms_birthday_template = Column(Text, nullable=True)
    sms_lapse_template = Column(Text, nullable=True)
    sms_billing_template = Column(Text, nullable=True)
    sms_policy_packet_template = Column(Text, nullable=True)
    sms_holiday_template = Column(Text, nullable=True)
    sms_quarterly_template = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Agency {self.name}>"


class Agent(Base):
    """
    Agent (user) record. Also carries the SMS usage counter for billing.
    """
    __tablename__ = "agents"

    id = Column(String(36), primary_key=True, default=new_id)
    agency_id = Column(String(36), ForeignKey("agencies.id"), nullable=False, index=True)
    first_name = Column(String(100), default="")
    last_name = Column(String(100), default="")
    email = Column(String(200), nullable=True)
    phone_number = Column(String(30), nullable=True)

    subscription_tier = Column(String(20), default="free", nullable=False)
    # None defers to the agency setting
    sms_auto_send_enabled = Column(Boolean, nullable=True)

    messages_sent_count = Column(Integer, default=0, nullable=False)
    billing_cycle_end = Column(DateTime, nullable=True)
    messages_reset_date = Column(DateTime, nullable=True)
    stripe_customer_id = Column(String(100), nullable=True)

    created_at = Column(DateTime, default=utcnow)

    @property
    def full_name(self) -> str:
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def __repr__(self):
        return f"<Agent {self.id[:8]} tier={self.subscription_tier}>"


class Deal(Base):
    """Insurance policy / client record a conversation is scoped to."""
    __tablename__ = "deals"

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=False, index=True)
    agency_id = Column(String(36), ForeignKey("agencies.id"), nullable=False, index=True)

    client_name = Column(String(200), default="")
    client_phone = Column(String(30), nullable=True, index=True)
    client_email = Column(String(200), nullable=True)
    client_birthday = Column(Date, nullable=True)

    policy_number = Column(String(100), nullable=True)
    carrier_name = Column(String(200), nullable=True)
    product_name = Column(String(200), nullable=True)
    monthly_premium = Column(Numeric(12, 2), nullable=True)
    annual_premium = Column(Numeric(12, 2), nullable=True)
    face_value = Column(Numeric(14, 2), nullable=True)
    policy_effective_date = Column(Date, nullable=True)
    next_billing_date = Column(Date, nullable=True)
    billing_cycle = Column(String(50), nullable=True)
    beneficiaries = Column(Text, nullable=True)

    status = Column(String(50), nullable=True)
    status_standardized = Column(String(50), nullable=True)

    needs_attention = Column(Boolean, default=False, nullable=False)
    needs_attention_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class Conversation(Base):
    """
    One SMS thread per (agent, deal). The unique constraint is what keeps
    concurrent webhook deliveries from creating duplicates.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("agent_id", "deal_id", name="uq_conversation_agent_deal"),
        Index("ix_conversation_agency_phone", "agency_id", "client_phone"),
    )

    id = Column(String(36), primary_key=True, default=new_id)
    agent_id = Column(String(36), ForeignKey("agents.id"), nullable=False)
    deal_id = Column(String(36), ForeignKey("deals.id"), nullable=False)
    agency_id = Column(String(36), ForeignKey("agencies.id"), nullable=False)
    client_phone = Column(String(20), nullable=True)

    sms_opt_in_status = _enum_column(
        OptInStatus, "opt_in_status", default=OptInStatus.OPTED_IN, nullable=False
    )
    opted_in_at = Column(DateTime, nullable=True)
    opted_out_at = Column(DateTime, nullable=True)

    last_message_at = Column(DateTime, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<Conversation {self.id[:8]} {self.sms_opt_in_status.value}>"


class Message(Base):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.id"), nullable=False, index=True)
    sender_id = Column(String(36), nullable=True)
    receiver_id = Column(String(36), nullable=True)
    body = Column(Text, nullable=False)
    direction = _enum_column(MessageDirection, "message_direction", nullable=False)
    status = _enum_column(MessageStatus, "message_status", nullable=False, index=True)
    provider_message_id = Column(String(100), nullable=True, index=True)
    meta = Column("metadata", JSON, default=dict)

    created_at = Column(DateTime, default=utcnow)
    sent_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Message {self.id[:8]} {self.direction.value}/{self.status.value}>"


class JobLock(Base):
    """Single-flight claims for automated jobs (one row per job kind)."""
    __tablename__ = "job_locks"

    name = Column(String(100), primary_key=True)
    holder = Column(String(64), nullable=True)
    locked_until = Column(DateTime, nullable=True)
