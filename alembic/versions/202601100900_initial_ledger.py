"""initial ledger schema

Revision ID: 202601100900
Revises:
Create Date: 2026-01-10 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202601100900"
down_revision = None
branch_labels = None
depends_on = None

TRANSACTION_KIND = sa.Enum("income", "expense", name="transactionkind")
SCOPE = sa.Enum("personal", "business", "both", name="scope")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum(
                "savings",
                "current",
                "credit_card",
                "cash",
                "other",
                name="accounttype",
            ),
            nullable=False,
        ),
        sa.Column(
            "is_business", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("currency", sa.String(length=3), nullable=False),
        sa.Column(
            "initial_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "current_balance_cents", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index("ix_accounts_user", "accounts", ["user_id"])
    op.create_index(
        "ix_accounts_user_business", "accounts", ["user_id", "is_business"]
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer()),
        sa.Column("label", sa.String(length=100), nullable=False),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column("scope", SCOPE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "slug", name="uq_category_user_slug"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("date", sa.DateTime(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column(
            "is_business", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("notes", sa.Text()),
        sa.Column("tags", sa.JSON()),
        sa.Column("recurring_template_id", sa.Integer()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_user_date", "transactions", ["user_id", "date"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index(
        "ix_transactions_user_business", "transactions", ["user_id", "is_business"]
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year_month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("scope", SCOPE, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "category_id",
            "year_month",
            name="uq_budget_user_category_month",
        ),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budget_user_month", "budgets", ["user_id", "year_month"])

    op.create_table(
        "recurring_templates",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("template_amount_cents", sa.Integer(), nullable=False),
        sa.Column("kind", TRANSACTION_KIND, nullable=False),
        sa.Column(
            "is_business", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column(
            "frequency",
            sa.Enum("daily", "weekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("interval", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("day_of_month", sa.Integer()),
        sa.Column("day_of_week", sa.Integer()),
        sa.Column("next_occurrence", sa.DateTime(), nullable=False),
        sa.Column("end_date", sa.DateTime()),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("interval > 0", name="ck_recurring_interval_positive"),
        sa.CheckConstraint(
            "template_amount_cents > 0", name="ck_recurring_amount_positive"
        ),
    )
    op.create_index("ix_recurring_user", "recurring_templates", ["user_id"])
    op.create_index(
        "ix_recurring_active_next",
        "recurring_templates",
        ["active", "next_occurrence"],
    )


def downgrade():
    op.drop_index("ix_recurring_active_next", table_name="recurring_templates")
    op.drop_index("ix_recurring_user", table_name="recurring_templates")
    op.drop_table("recurring_templates")
    op.drop_index("ix_budget_user_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_user_business", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_user_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_index("ix_accounts_user_business", table_name="accounts")
    op.drop_index("ix_accounts_user", table_name="accounts")
    op.drop_table("accounts")
