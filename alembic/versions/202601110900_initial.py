"""initial envelope budgeting schema

Revision ID: 202601110900
Revises:
Create Date: 2026-01-11 09:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202601110900"
down_revision = None
branch_labels = None
depends_on = None


account_type = sa.Enum(
    "checking", "savings", "credit_card", "investment", "loan", name="accounttype"
)
category_type = sa.Enum("income", "expense", "savings", name="categorytype")
transaction_type = sa.Enum("income", "expense", "transfer", name="transactiontype")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("type", account_type, nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column(
            "is_goal_tracking", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("institution", sa.String(length=100), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user_sort", "accounts", ["user_id", "sort_order"])
    op.create_index(
        "ix_accounts_user_goal_tracking", "accounts", ["user_id", "is_goal_tracking"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("total_income", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("total_allocated", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "month", name="uq_budget_user_month"),
    )

    op.create_table(
        "budget_categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_id",
            sa.Integer(),
            sa.ForeignKey("budgets.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("category_type", category_type, nullable=False),
        sa.Column("category_group", sa.String(length=100), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("allocated_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("spent_amount", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_amount", sa.Integer(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint(
            "allocated_amount >= 0", name="ck_budget_category_allocated_positive"
        ),
        sa.CheckConstraint(
            "available_amount >= 0", name="ck_budget_category_available_positive"
        ),
    )
    op.create_index(
        "ix_budget_categories_account_budget",
        "budget_categories",
        ["account_id", "budget_id"],
    )
    op.create_index(
        "ix_budget_categories_budget_sort",
        "budget_categories",
        ["budget_id", "sort_order"],
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "counterpart_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("subscription_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("amount > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index(
        "ix_transactions_account_date", "transactions", ["account_id", "date"]
    )
    op.create_index(
        "ix_transactions_user_type_date", "transactions", ["user_id", "type", "date"]
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("budget_categories.id", ondelete="CASCADE"),
            nullable=False,
            unique=True,
        ),
        sa.Column("target_amount", sa.Integer(), nullable=False),
        sa.Column("target_date", sa.Date(), nullable=True),
        sa.Column("image_url", sa.String(length=500), nullable=True),
        *_timestamps(),
        sa.CheckConstraint("target_amount >= 0", name="ck_goal_target_positive"),
    )


def downgrade() -> None:
    op.drop_table("goals")
    op.drop_index("ix_transactions_user_type_date", table_name="transactions")
    op.drop_index("ix_transactions_account_date", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_budget_categories_budget_sort", table_name="budget_categories")
    op.drop_index(
        "ix_budget_categories_account_budget", table_name="budget_categories"
    )
    op.drop_table("budget_categories")
    op.drop_table("budgets")
    op.drop_index("ix_accounts_user_goal_tracking", table_name="accounts")
    op.drop_index("ix_accounts_user_sort", table_name="accounts")
    op.drop_table("accounts")
    account_type.drop(op.get_bind(), checkfirst=True)
    category_type.drop(op.get_bind(), checkfirst=True)
    transaction_type.drop(op.get_bind(), checkfirst=True)
