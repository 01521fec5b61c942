"""Create billing tables.

Revision ID: V0001
Revises:
Create Date: 2026-03-02 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

revision: str = "V0001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

MONEY = sa.Numeric(14, 4)


def upgrade() -> None:
    op.create_table(
        "calls",
        sa.Column("call_id", sa.String(255), primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("agent_id", sa.String(255), nullable=True),
        sa.Column("duration_sec", sa.Integer, nullable=True),
        sa.Column("call_status", sa.String(50), nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("recording_url", sa.String(2048), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_calls_user_id", "calls", ["user_id"])
    op.create_index("ix_calls_timestamp", "calls", ["timestamp"])

    op.create_table(
        "agents",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("telephony_agent_id", sa.String(255), nullable=True),
        sa.Column("rate_per_minute", sa.Numeric(12, 4), nullable=False),
        sa.Column("status", sa.String(32), nullable=False, server_default="active"),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )
    op.create_index("ix_agents_telephony_agent_id", "agents", ["telephony_agent_id"])

    op.create_table(
        "user_agent_assignments",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column(
            "agent_id",
            sa.Uuid,
            sa.ForeignKey("agents.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("is_primary", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.UniqueConstraint("user_id", "agent_id", name="uq_user_agent_assignment"),
    )
    op.create_index("ix_user_agent_assignments_user_id", "user_agent_assignments", ["user_id"])

    op.create_table(
        "user_balances",
        sa.Column("user_id", sa.String(255), primary_key=True),
        sa.Column("current_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("initial_balance", MONEY, nullable=False, server_default="0"),
        sa.Column("warning_threshold", MONEY, nullable=False, server_default="40"),
        sa.Column("critical_threshold", MONEY, nullable=False, server_default="20"),
        sa.Column("is_blocked", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("CURRENT_TIMESTAMP"),
        ),
    )

    op.create_table(
        "balance_transactions",
        sa.Column("id", sa.Uuid, primary_key=True),
        sa.Column("user_id", sa.String(255), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("transaction_type", sa.String(20), nullable=False),
        sa.Column("direction", sa.String(10), nullable=False),
        sa.Column("description", sa.Text, nullable=False, server_default=""),
        sa.Column("call_id_ref", sa.String(255), nullable=True),
        sa.Column("balance_after", MONEY, nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint("amount >= 0", name="ck_balance_transactions_amount_unsigned"),
    )
    op.create_index(
        "ix_balance_transactions_user_created",
        "balance_transactions",
        ["user_id", "created_at"],
    )
    # One deduction per call: the durable idempotency boundary
    op.create_index(
        "uq_balance_transactions_deduction_call_ref",
        "balance_transactions",
        ["call_id_ref"],
        unique=True,
        postgresql_where=sa.text("transaction_type = 'deduction'"),
        sqlite_where=sa.text("transaction_type = 'deduction'"),
    )


def downgrade() -> None:
    op.drop_index("uq_balance_transactions_deduction_call_ref", table_name="balance_transactions")
    op.drop_index("ix_balance_transactions_user_created", table_name="balance_transactions")
    op.drop_table("balance_transactions")
    op.drop_table("user_balances")
    op.drop_index("ix_user_agent_assignments_user_id", table_name="user_agent_assignments")
    op.drop_table("user_agent_assignments")
    op.drop_index("ix_agents_telephony_agent_id", table_name="agents")
    op.drop_table("agents")
    op.drop_index("ix_calls_timestamp", table_name="calls")
    op.drop_index("ix_calls_user_id", table_name="calls")
    op.drop_table("calls")
