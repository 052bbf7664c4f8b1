"""Initial SMS schema

Revision ID: 0001_initial
Revises:
Create Date: 2026-10-17

Agencies, agents, deals, conversations, messages and job locks.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0001_initial"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MESSAGE_TYPES = ("welcome", "birthday", "lapse", "billing", "policy_packet")


def upgrade() -> None:
    agency_columns = []
    for kind in MESSAGE_TYPES:
        agency_columns += [
            sa.Column(f"sms_{kind}_require_approval", sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column(f"sms_{kind}_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
            sa.Column(f"sms_{kind}_template", sa.Text(), nullable=True),
        ]

    op.create_table(
        "agencies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("name", sa.String(200), nullable=False),
        sa.Column("phone_number", sa.String(30), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=True),
        sa.Column("messaging_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sms_auto_send_enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        *agency_columns,
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_agencies_phone_number", "agencies", ["phone_number"])

    op.create_table(
        "agents",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("first_name", sa.String(100), nullable=True),
        sa.Column("last_name", sa.String(100), nullable=True),
        sa.Column("email", sa.String(200), nullable=True),
        sa.Column("phone_number", sa.String(30), nullable=True),
        sa.Column("subscription_tier", sa.String(20), nullable=False, server_default="free"),
        sa.Column("sms_auto_send_enabled", sa.Boolean(), nullable=True),
        sa.Column("messages_sent_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("billing_cycle_end", sa.DateTime(), nullable=True),
        sa.Column("messages_reset_date", sa.DateTime(), nullable=True),
        sa.Column("stripe_customer_id", sa.String(100), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_agents_agency_id", "agents", ["agency_id"])

    op.create_table(
        "deals",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id"), nullable=False),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("client_name", sa.String(200), nullable=True),
        sa.Column("client_phone", sa.String(30), nullable=True),
        sa.Column("client_email", sa.String(200), nullable=True),
        sa.Column("client_birthday", sa.Date(), nullable=True),
        sa.Column("policy_number", sa.String(100), nullable=True),
        sa.Column("carrier_name", sa.String(200), nullable=True),
        sa.Column("product_name", sa.String(200), nullable=True),
        sa.Column("monthly_premium", sa.Numeric(12, 2), nullable=True),
        sa.Column("annual_premium", sa.Numeric(12, 2), nullable=True),
        sa.Column("face_value", sa.Numeric(14, 2), nullable=True),
        sa.Column("policy_effective_date", sa.Date(), nullable=True),
        sa.Column("next_billing_date", sa.Date(), nullable=True),
        sa.Column("billing_cycle", sa.String(50), nullable=True),
        sa.Column("beneficiaries", sa.Text(), nullable=True),
        sa.Column("status", sa.String(50), nullable=True),
        sa.Column("status_standardized", sa.String(50), nullable=True),
        sa.Column("needs_attention", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("needs_attention_at", sa.DateTime(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("updated_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_deals_agent_id", "deals", ["agent_id"])
    op.create_index("ix_deals_agency_id", "deals", ["agency_id"])
    op.create_index("ix_deals_client_phone", "deals", ["client_phone"])

    op.create_table(
        "conversations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("agent_id", sa.String(36), sa.ForeignKey("agents.id"), nullable=False),
        sa.Column("deal_id", sa.String(36), sa.ForeignKey("deals.id"), nullable=False),
        sa.Column("agency_id", sa.String(36), sa.ForeignKey("agencies.id"), nullable=False),
        sa.Column("client_phone", sa.String(20), nullable=True),
        sa.Column("sms_opt_in_status", sa.String(20), nullable=False, server_default="opted_in"),
        sa.Column("opted_in_at", sa.DateTime(), nullable=True),
        sa.Column("opted_out_at", sa.DateTime(), nullable=True),
        sa.Column("last_message_at", sa.DateTime(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.UniqueConstraint("agent_id", "deal_id", name="uq_conversation_agent_deal"),
    )
    op.create_index("ix_conversation_agency_phone", "conversations", ["agency_id", "client_phone"])

    op.create_table(
        "messages",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("conversation_id", sa.String(36), sa.ForeignKey("conversations.id"), nullable=False),
        sa.Column("sender_id", sa.String(36), nullable=True),
        sa.Column("receiver_id", sa.String(36), nullable=True),
        sa.Column("body", sa.Text(), nullable=False),
        sa.Column("direction", sa.String(20), nullable=False),
        sa.Column("status", sa.String(20), nullable=False),
        sa.Column("provider_message_id", sa.String(100), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(), nullable=True),
        sa.Column("sent_at", sa.DateTime(), nullable=True),
        sa.Column("read_at", sa.DateTime(), nullable=True),
    )
    op.create_index("ix_messages_conversation_id", "messages", ["conversation_id"])
    op.create_index("ix_messages_status", "messages", ["status"])
    op.create_index("ix_messages_provider_message_id", "messages", ["provider_message_id"])

    op.create_table(
        "job_locks",
        sa.Column("name", sa.String(100), primary_key=True),
        sa.Column("holder", sa.String(64), nullable=True),
        sa.Column("locked_until", sa.DateTime(), nullable=True),
    )


def downgrade() -> None:
    op.drop_table("job_locks")
    op.drop_index("ix_messages_provider_message_id", table_name="messages")
    op.drop_index("ix_messages_status", table_name="messages")
    op.drop_index("ix_messages_conversation_id", table_name="messages")
    op.drop_table("messages")
    op.drop_index("ix_conversation_agency_phone", table_name="conversations")
    op.drop_table("conversations")
    op.drop_index("ix_deals_client_phone", table_name="deals")
    op.drop_index("ix_deals_agency_id", table_name="deals")
    op.drop_index("ix_deals_agent_id", table_name="deals")
    op.drop_table("deals")
    op.drop_index("ix_agents_agency_id", table_name="agents")
    op.drop_table("agents")
    op.drop_index("ix_agencies_phone_number", table_name="agencies")
    op.drop_table("agencies")
