"""
Pydantic schemas: Telnyx webhook payloads and the agent SMS API.
"""
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator


# =============================================================================
# TELNYX WEBHOOK
# =============================================================================

class TelnyxNumber(BaseModel):
    phone_number: Optional[str] = None
    status: Optional[str] = None


class TelnyxError(BaseModel):
    code: Optional[str] = None
    title: Optional[str] = None
    detail: Optional[str] = None

    @field_validator("code", mode="before")
    @classmethod
    def code_as_string(cls, v: Any) -> Optional[str]:
        return None if v is None else str(v)


class TelnyxPayload(BaseModel):
    """Message record as Telnyx sends it (inbound message or delivery update)."""
    id: Optional[str] = None
    text: str = ""
    from_: TelnyxNumber = Field(default_factory=TelnyxNumber, alias="from")
    to: List[TelnyxNumber] = Field(default_factory=list)
    errors: List[TelnyxError] = Field(default_factory=list)

    model_config = {"populate_by_name": True}

    @property
    def sender(self) -> Optional[str]:
        return self.from_.phone_number

    @property
    def recipient(self) -> Optional[str]:
        return self.to[0].phone_number if self.to else None

    @property
    def recipient_status(self) -> Optional[str]:
        return self.to[0].status if self.to else None

    @property
    def error_code(self) -> Optional[str]:
        return self.errors[0].code if self.errors else None


class TelnyxEvent(BaseModel):
    event_type: str = ""
    payload: TelnyxPayload = Field(default_factory=TelnyxPayload)


class TelnyxWebhook(BaseModel):
    data: TelnyxEvent = Field(default_factory=TelnyxEvent)


# =============================================================================
# AGENT SMS API
# =============================================================================

class SendMessageRequest(BaseModel):
    deal_id: str
    message: str = Field(min_length=1, max_length=1600)


class ConversationRequest(BaseModel):
    deal_id: str


class MessageIdsRequest(BaseModel):
    message_ids: List[str] = Field(min_length=1)


class EditDraftRequest(BaseModel):
    message_id: str
    body: str = Field(min_length=1, max_length=1600)


class ConversationOut(BaseModel):
    id: str
    agent_id: str
    deal_id: str
    agency_id: str
    client_phone: Optional[str] = None
    sms_opt_in_status: str
    is_active: bool
    # Set only when this request started the conversation
    welcome_status: Optional[str] = None

    @classmethod
    def from_model(cls, conversation, welcome_status: Optional[str] = None) -> "ConversationOut":
        return cls(
            id=conversation.id,
            agent_id=conversation.agent_id,
            deal_id=conversation.deal_id,
            agency_id=conversation.agency_id,
            client_phone=conversation.client_phone,
            sms_opt_in_status=conversation.sms_opt_in_status.value,
            is_active=conversation.is_active,
            welcome_status=welcome_status,
        )


class MessageOut(BaseModel):
    id: str
    conversation_id: str
    body: str
    direction: str
    status: str
    metadata: dict = Field(default_factory=dict)

    @classmethod
    def from_model(cls, message) -> "MessageOut":
        return cls(
            id=message.id,
            conversation_id=message.conversation_id,
            body=message.body,
            direction=message.direction.value,
            status=message.status.value,
            metadata=message.meta or {},
        )


class SendResult(BaseModel):
    status: str
    message_id: Optional[str] = None
    reason: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def from_outcome(cls, outcome) -> "SendResult":
        return cls(
            status=outcome.status.value,
            message_id=outcome.message_id,
            reason=outcome.reason,
            error=outcome.error.detail if outcome.error is not None else None,
        )


class BatchResult(BaseModel):
    results: List[SendResult]
    sent: int = 0
    failed: int = 0


class DispatchSummary(BaseModel):
    sent: int = 0
    drafted: int = 0
    failed: int = 0
    skipped: int = 0
    total: int = 0
