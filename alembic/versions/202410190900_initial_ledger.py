"""initial ledger schema

Revision ID: 202410190900
Revises:
Create Date: 2024-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202410190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "currency", sa.String(length=3), nullable=False, server_default="RUB"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "account_id", "type", "name", name="uq_category_account_type_name"
        ),
    )

    op.create_table(
        "savings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column(
            "balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("account_id", "date", name="uq_saving_account_date"),
    )
    op.create_index("ix_savings_account_date", "savings", ["account_id", "date"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column(
            "is_planned", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "saving_id", sa.Integer(), sa.ForeignKey("savings.id"), nullable=False
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_account_type_saving",
        "transactions",
        ["account_id", "type", "saving_id"],
    )

    op.create_table(
        "history",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "action_type",
            sa.Enum("create", "update", "delete", name="historyactiontype"),
            nullable=False,
        ),
        sa.Column(
            "operation_type",
            sa.Enum("income", "expense", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("old_operation_json", sa.Text()),
        sa.Column("new_operation_json", sa.Text()),
        sa.Column("modified_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_history_account_modified", "history", ["account_id", "modified_at"]
    )


def downgrade():
    op.drop_index("ix_history_account_modified", table_name="history")
    op.drop_table("history")
    op.drop_index("ix_transactions_account_type_saving", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_savings_account_date", table_name="savings")
    op.drop_table("savings")
    op.drop_table("categories")
    op.drop_table("accounts")
