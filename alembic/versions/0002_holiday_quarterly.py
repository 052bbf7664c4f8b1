"""Holiday and quarterly check-in settings

Revision ID: 0002_holiday_quarterly
Revises: 0001_initial
Create Date: 2026-10-17

Per-agency enabled/require_approval/template columns for the holiday
greeting and the quarterly policy check-in.
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "0002_holiday_quarterly"
down_revision: Union[str, Sequence[str], None] = "0001_initial"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MESSAGE_TYPES = ("holiday", "quarterly")


def upgrade() -> None:
    with op.batch_alter_table("agencies") as batch_op:
        for kind in MESSAGE_TYPES:
            batch_op.add_column(
                sa.Column(f"sms_{kind}_require_approval", sa.Boolean(), nullable=False, server_default=sa.false())
            )
            batch_op.add_column(
                sa.Column(f"sms_{kind}_enabled", sa.Boolean(), nullable=False, server_default=sa.true())
            )
            batch_op.add_column(sa.Column(f"sms_{kind}_template", sa.Text(), nullable=True))


def downgrade() -> None:
    with op.batch_alter_table("agencies") as batch_op:
        for kind in reversed(MESSAGE_TYPES):
            batch_op.drop_column(f"sms_{kind}_template")
            batch_op.drop_column(f"sms_{kind}_enabled")
            batch_op.drop_column(f"sms_{kind}_require_approval")
