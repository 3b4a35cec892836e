"""homes, memberships and finance ledger

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "homes",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("address", sa.Text(), nullable=False, server_default=""),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "home_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "home_id", sa.Integer(), sa.ForeignKey("homes.id"), nullable=False
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("pending", "accepted", name="memberstatus"),
            nullable=False,
            server_default="pending",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("home_id", "user_id", name="uq_home_member"),
    )

    op.create_table(
        "finances",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "home_id", sa.Integer(), sa.ForeignKey("homes.id"), nullable=False
        ),
        sa.Column(
            "type", sa.Enum("income", "expense", name="financetype"), nullable=False
        ),
        sa.Column("category", sa.String(length=100), nullable=False),
        sa.Column("amount_encoded", sa.String(length=255), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("transaction_date", sa.Date(), nullable=False),
        sa.Column(
            "is_recurring", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("due_date", sa.Date()),
        sa.Column("payment_months", sa.Integer()),
        sa.Column("created_by", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint(
            "payment_months IS NULL OR payment_months BETWEEN 1 AND 999",
            name="ck_finances_payment_months_range",
        ),
    )
    op.create_index(
        "ix_finances_home_date", "finances", ["home_id", "transaction_date"]
    )
    op.create_index("ix_finances_home_type", "finances", ["home_id", "type"])

    op.create_table(
        "finance_visibility",
        sa.Column(
            "finance_id",
            sa.Integer(),
            sa.ForeignKey("finances.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("user_id", sa.Integer(), primary_key=True),
    )


def downgrade():
    op.drop_table("finance_visibility")
    op.drop_index("ix_finances_home_type", table_name="finances")
    op.drop_index("ix_finances_home_date", table_name="finances")
    op.drop_table("finances")
    op.drop_table("home_members")
    op.drop_table("homes")
