"""plans and transactions ledger

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "plans",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("goal_name", sa.String(length=100), nullable=False),
        sa.Column("target_amount", sa.Float(), nullable=False),
        sa.Column(
            "current_balance", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("target_amount > 0", name="ck_plans_target_positive"),
    )
    op.create_index("ix_plans_created_at", "plans", ["created_at"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "plan_id",
            sa.Integer(),
            sa.ForeignKey("plans.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount <> 0", name="ck_transactions_amount_nonzero"),
    )
    op.create_index(
        "ix_transactions_plan_created", "transactions", ["plan_id", "created_at"]
    )
    op.create_index("ix_transactions_created_at", "transactions", ["created_at"])


def downgrade():
    op.drop_index("ix_transactions_created_at", table_name="transactions")
    op.drop_index("ix_transactions_plan_created", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_plans_created_at", table_name="plans")
    op.drop_table("plans")
