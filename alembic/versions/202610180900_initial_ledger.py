"""initial ledger schema

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


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column(
            "type",
            sa.Enum("income", "expense", "transfer", name="categorytype"),
            nullable=False,
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.UniqueConstraint("type", "name", name="uq_category_type_name"),
    )
    op.create_index("ix_categories_parent", "categories", ["parent_id"])

    op.create_table(
        "properties",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("nickname", sa.String(length=120)),
        sa.Column("street", sa.String(length=200), nullable=False, server_default=""),
        sa.Column("city", sa.String(length=120), nullable=False, server_default=""),
        sa.Column("state", sa.String(length=40), nullable=False, server_default=""),
        sa.Column("zip", sa.String(length=20), nullable=False, server_default=""),
        sa.Column(
            "status",
            sa.Enum("active", "inactive", name="propertystatus"),
            nullable=False,
            server_default="active",
        ),
        sa.Column("zillow_estimated_value_cents", sa.Integer()),
        sa.Column("redfin_estimated_value_cents", sa.Integer()),
        *_timestamps(),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("payee", sa.String(length=200)),
        sa.Column("memo", sa.Text()),
        sa.Column("statement_month", sa.String(length=7)),
        sa.Column(
            "source",
            sa.Enum("manual", "recurring", name="transactionsource"),
            nullable=False,
            server_default="manual",
        ),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
    )
    op.create_index(
        "ix_transactions_property_date", "transactions", ["property_id", "date"]
    )
    op.create_index(
        "ix_transactions_category_date", "transactions", ["category_id", "date"]
    )

    op.create_table(
        "recurring_transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("memo", sa.Text()),
        sa.Column("day_of_month", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("start_month", sa.String(length=7), nullable=False),
        sa.Column("end_month", sa.String(length=7)),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
    )
    op.create_index(
        "ix_recurring_property_active",
        "recurring_transactions",
        ["property_id", "is_active"],
    )

    op.create_table(
        "recurring_postings",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "recurring_transaction_id",
            sa.Integer(),
            sa.ForeignKey("recurring_transactions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column(
            "transaction_id",
            sa.Integer(),
            sa.ForeignKey("transactions.id", ondelete="SET NULL"),
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "recurring_transaction_id", "month", name="uq_recurring_posting_month"
        ),
    )

    op.create_table(
        "annual_category_amounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False
        ),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("note", sa.Text()),
        *_timestamps(),
        sa.UniqueConstraint(
            "property_id",
            "category_id",
            "year",
            name="uq_annual_property_category_year",
        ),
    )

    op.create_table(
        "loan_snapshots",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "property_id", sa.Integer(), sa.ForeignKey("properties.id"), nullable=False
        ),
        sa.Column(
            "loan_label", sa.String(length=120), nullable=False, server_default="Mortgage"
        ),
        sa.Column("as_of_date", sa.Date(), nullable=False),
        sa.Column("balance_cents", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.CheckConstraint("balance_cents >= 0", name="ck_loan_balance_positive"),
    )
    op.create_index(
        "ix_loan_snapshot_property_date", "loan_snapshots", ["property_id", "as_of_date"]
    )


def downgrade():
    op.drop_index("ix_loan_snapshot_property_date", table_name="loan_snapshots")
    op.drop_table("loan_snapshots")
    op.drop_table("annual_category_amounts")
    op.drop_table("recurring_postings")
    op.drop_index("ix_recurring_property_active", table_name="recurring_transactions")
    op.drop_table("recurring_transactions")
    op.drop_index("ix_transactions_category_date", table_name="transactions")
    op.drop_index("ix_transactions_property_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("properties")
    op.drop_index("ix_categories_parent", table_name="categories")
    op.drop_table("categories")
