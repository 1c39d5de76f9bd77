"""Create fraud_rules table.

Revision ID: 001
Revises:
Create Date: 2026-10-18
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "fraud_rules",
        sa.Column("id", sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column("rule_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("conditions", postgresql.JSONB(), nullable=False),
        sa.Column("severity", sa.String(), nullable=False, server_default="medium"),
        sa.Column("action", sa.String(), nullable=False, server_default="review"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index("ix_fraud_rules_rule_id", "fraud_rules", ["rule_id"], unique=True)
    op.create_index("ix_fraud_rules_is_active", "fraud_rules", ["is_active"])


def downgrade() -> None:
    op.drop_index("ix_fraud_rules_is_active", table_name="fraud_rules")
    op.drop_index("ix_fraud_rules_rule_id", table_name="fraud_rules")
    op.drop_table("fraud_rules")
