"""
Conversation / Message repository.

Every mutation of conversations and messages goes through this class:
1. Idempotent get-or-create keyed on (agent_id, deal_id)
2. Message logging with draft-aware timestamps
3. One-directional message status transitions
4. Opt-in state persistence
"""

from typing import Any, Dict, Iterable, List, Optional, Tuple

import structlog
from sqlalchemy import select, delete
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from logger_config import mask_phone
from models import (
    Conversation, Message, MessageDirection, MessageStatus, new_id, utcnow,
)
from services import opt_in
from services.errors import InvalidStatusTransition
from services.phone import normalize_for_storage

logger = structlog.get_logger("conversations")

ALLOWED_TRANSITIONS = {
    MessageStatus.DRAFT: {MessageStatus.SENT, MessageStatus.FAILED},
    MessageStatus.SENT: {MessageStatus.DELIVERED, MessageStatus.FAILED},
    MessageStatus.FAILED: {MessageStatus.SENT},
    MessageStatus.DELIVERED: set(),
    MessageStatus.RECEIVED: set(),
}


def check_transition(current: MessageStatus, target: MessageStatus) -> None:
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStatusTransition(current, target)


class ConversationRepository:
    """Conversation and message persistence for one request-scoped session."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================

    async def get(self, conversation_id: str) -> Optional[Conversation]:
        return await self.db.get(Conversation, conversation_id)

    async def find_by_identity(self, agent_id: str, deal_id: str) -> Optional[Conversation]:
        stmt = select(Conversation).where(
            Conversation.agent_id == agent_id,
            Conversation.deal_id == deal_id,
        )
        result = await self.db.execute(stmt)
        return result.scalars().first()

    async def get_if_exists(self, agent_id: str, deal_id: str) -> Optional[Conversation]:
        """Read-only lookup for cron jobs, which must never create conversations."""
        conversation = await self.find_by_identity(agent_id, deal_id)
        if conversation is None or not conversation.is_active:
            return None
        return conversation

    async def get_or_create(
        self,
        agent_id: str,
        deal_id: str,
        agency_id: str,
        client_phone: Optional[str] = None,
    ) -> Conversation:
        """
        Return the conversation for (agent, deal), creating it if needed.

        Never matches by phone number: two deals sharing a phone still get
        two conversations. A changed deal phone is corrected in place.
        """
        conversation, _ = await self.open_conversation(agent_id, deal_id, agency_id, client_phone)
        return conversation

    async def open_conversation(
        self,
        agent_id: str,
        deal_id: str,
        agency_id: str,
        client_phone: Optional[str] = None,
    ) -> Tuple[Conversation, bool]:
        """`get_or_create` that also says whether this call inserted the row."""
        phone = normalize_for_storage(client_phone) or None

        existing = await self.find_by_identity(agent_id, deal_id)
        if existing is not None:
            if phone and existing.client_phone != phone:
                logger.info(
                    "Updating conversation phone",
                    conversation_id=existing.id,
                    old=mask_phone(existing.client_phone),
                    new=mask_phone(phone),
                )
                existing.client_phone = phone
                await self.db.commit()
            return existing, False

        inserted = await self._insert_conversation(agent_id, deal_id, agency_id, phone)

        conversation = await self.find_by_identity(agent_id, deal_id)
        if conversation is None:
            raise RuntimeError(f"Conversation for agent={agent_id} deal={deal_id} vanished after insert")

        if inserted:
            logger.info("Conversation created", conversation_id=conversation.id, deal_id=deal_id)
        else:
            # Lost the race to a concurrent delivery; the winner's row is ours too
            logger.info("Conversation insert raced, reusing existing row", conversation_id=conversation.id)
        return conversation, inserted

    async def _insert_conversation(
        self, agent_id: str, deal_id: str, agency_id: str, phone: Optional[str]
    ) -> bool:
        values = {
            "id": new_id(),
            "agent_id": agent_id,
            "deal_id": deal_id,
            "agency_id": agency_id,
            "client_phone": phone,
            "is_active": True,
            "created_at": utcnow(),
            **opt_in.initial_values(),
        }

        dialect = self.db.bind.dialect.name if self.db.bind is not None else ""
        if dialect in ("postgresql", "sqlite"):
            insert = pg_insert if dialect == "postgresql" else sqlite_insert
            stmt = insert(Conversation.__table__).values(**values).on_conflict_do_nothing(
                index_elements=["agent_id", "deal_id"]
            )
            result = await self.db.execute(stmt)
            await self.db.commit()
            return bool(result.rowcount)

        try:
            self.db.add(Conversation(**values))
            await self.db.commit()
            return True
        except IntegrityError:
            await self.db.rollback()
            return False

    async def apply_opt_in_event(
        self, conversation: Conversation, event: opt_in.OptInEvent
    ) -> bool:
        changed = opt_in.apply_event(conversation, event)
        if changed:
            await self.db.commit()
        return changed

    # =========================================================================
    # MESSAGES
    # =========================================================================

    async def log_message(
        self,
        conversation: Conversation,
        body: str,
        direction: MessageDirection,
        status: MessageStatus,
        sender_id: Optional[str] = None,
        receiver_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        provider_message_id: Optional[str] = None,
    ) -> Message:
        """
        Insert a message row.

        Drafts carry no sent_at/read_at and never bump the conversation's
        last_message_at. Outbound non-drafts are marked read immediately
        (the agent already knows what they sent).
        """
        now = utcnow()
        is_draft = status == MessageStatus.DRAFT
        attempted = status in (MessageStatus.SENT, MessageStatus.DELIVERED, MessageStatus.RECEIVED)

        message = Message(
            id=new_id(),
            conversation_id=conversation.id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            body=body,
            direction=direction,
            status=status,
            provider_message_id=provider_message_id,
            meta=dict(metadata or {}),
            created_at=now,
            sent_at=now if attempted else None,
            read_at=now if direction == MessageDirection.OUTBOUND and not is_draft else None,
        )
        self.db.add(message)

        if not is_draft:
            conversation.last_message_at = now

        await self.db.commit()
        logger.debug("Message logged", message_id=message.id, status=status.value, direction=direction.value)
        return message

    async def get_by_provider_id(
        self, provider_message_id: str, direction: Optional[MessageDirection] = None
    ) -> Optional[Message]:
        stmt = select(Message).where(Message.provider_message_id == provider_message_id)
        if direction is not None:
            stmt = stmt.where(Message.direction == direction)
        return (await self.db.execute(stmt)).scalars().first()

    async def list_messages(
        self,
        status: Optional[MessageStatus] = None,
        message_ids: Optional[Iterable[str]] = None,
        agent_id: Optional[str] = None,
    ) -> List[Message]:
        stmt = select(Message).order_by(Message.created_at)
        if status is not None:
            stmt = stmt.where(Message.status == status)
        if message_ids is not None:
            stmt = stmt.where(Message.id.in_(list(message_ids)))
        if agent_id is not None:
            stmt = stmt.join(Conversation, Conversation.id == Message.conversation_id).where(
                Conversation.agent_id == agent_id
            )
        result = await self.db.execute(stmt)
        return list(result.scalars().all())

    async def mark_sent(self, message: Message, provider_message_id: Optional[str]) -> Message:
        check_transition(message.status, MessageStatus.SENT)
        now = utcnow()

        message.status = MessageStatus.SENT
        message.sent_at = now
        message.read_at = message.read_at or now
        message.provider_message_id = provider_message_id
        meta = dict(message.meta or {})
        meta.pop("error", None)
        meta.pop("error_code", None)
        message.meta = meta

        conversation = await self.db.get(Conversation, message.conversation_id)
        if conversation is not None:
            conversation.last_message_at = now
        await self.db.commit()
        return message

    async def mark_failed(self, message: Message, error_code: Optional[str], detail: str) -> Message:
        """A failed retry keeps the row failed and records the latest error."""
        if message.status != MessageStatus.FAILED:
            check_transition(message.status, MessageStatus.FAILED)

        message.status = MessageStatus.FAILED
        message.meta = {**(message.meta or {}), "error": detail, "error_code": error_code}
        await self.db.commit()
        return message

    async def apply_delivery_report(
        self, provider_message_id: str, status: MessageStatus, error_code: Optional[str] = None
    ) -> Optional[Message]:
        """Provider delivery callback. Out-of-order or repeated reports are ignored."""
        message = await self.get_by_provider_id(provider_message_id, MessageDirection.OUTBOUND)
        if message is None:
            logger.info("Delivery report for unknown message", provider_message_id=provider_message_id)
            return None

        if status not in ALLOWED_TRANSITIONS[message.status]:
            logger.info(
                "Delivery report ignored",
                message_id=message.id,
                current=message.status.value,
                reported=status.value,
            )
            return message

        message.status = status
        if error_code:
            message.meta = {**(message.meta or {}), "error_code": error_code}
        await self.db.commit()
        return message

    async def mark_read(self, message: Message) -> Message:
        if message.read_at is None:
            message.read_at = utcnow()
            await self.db.commit()
        return message

    async def update_draft_body(self, message: Message, body: str) -> Message:
        if message.status != MessageStatus.DRAFT:
            raise InvalidStatusTransition(message.status, MessageStatus.DRAFT)
        message.body = body
        await self.db.commit()
        return message

    async def delete_drafts(self, message_ids: Iterable[str]) -> int:
        """Rejecting a draft deletes it; non-draft ids are left alone."""
        stmt = (
            delete(Message)
            .where(Message.id.in_(list(message_ids)), Message.status == MessageStatus.DRAFT)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        return result.rowcount or 0

