"""initial rule engine schema

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

MATCH_STATUSES = (
    "unmatched",
    "auto_matched",
    "suggested",
    "manual_matched",
    "flagged",
    "excluded",
)
DEAL_STATUSES = (
    "active",
    "paid_off",
    "defaulted",
    "paused",
    "late",
    "in_collections",
)


def _timestamps():
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade():
    op.create_table(
        "tags",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("team_id", "name", name="uq_tag_team_name"),
    )
    op.create_index("ix_tags_team_id", "tags", ["team_id"])

    op.create_table(
        "merchants",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("name_lower", sa.String(length=200), nullable=False),
        *_timestamps(),
    )
    op.create_index("ix_merchants_team_id", "merchants", ["team_id"])
    op.create_index(
        "ix_merchants_team_name_lower", "merchants", ["team_id", "name_lower"]
    )

    op.create_table(
        "deals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column(
            "merchant_id",
            sa.String(length=36),
            sa.ForeignKey("merchants.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("deal_code", sa.String(length=64), nullable=False),
        sa.Column(
            "status",
            sa.Enum(*DEAL_STATUSES, name="dealstatus"),
            nullable=False,
            server_default="active",
        ),
        *_timestamps(),
        sa.UniqueConstraint("team_id", "deal_code", name="uq_deal_team_code"),
    )
    op.create_index(
        "ix_deals_team_merchant_status", "deals", ["team_id", "merchant_id", "status"]
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("merchant_name", sa.Text(), nullable=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("bank_account_id", sa.String(length=36), nullable=True),
        sa.Column("category_slug", sa.String(length=100), nullable=True),
        sa.Column("internal", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("assigned_id", sa.String(length=36), nullable=True),
        sa.Column("deal_code", sa.String(length=64), nullable=True),
        sa.Column(
            "match_status",
            sa.Enum(*MATCH_STATUSES, name="matchstatus"),
            nullable=False,
            server_default="unmatched",
        ),
        sa.Column(
            "matched_deal_id",
            sa.String(length=36),
            sa.ForeignKey("deals.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("matched_at", sa.DateTime(), nullable=True),
        sa.Column("match_rule", sa.String(length=120), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_transactions_team_date", "transactions", ["team_id", "date"])
    op.create_index(
        "ix_transactions_team_category", "transactions", ["team_id", "category_slug"]
    )
    op.create_index("ix_transactions_match_status", "transactions", ["match_status"])

    op.create_table(
        "transaction_tags",
        sa.Column(
            "transaction_id",
            sa.String(length=36),
            sa.ForeignKey("transactions.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column(
            "tag_id",
            sa.String(length=36),
            sa.ForeignKey("tags.id", ondelete="CASCADE"),
            primary_key=True,
        ),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    )
    op.create_index(
        "ix_transaction_tags_team_tag", "transaction_tags", ["team_id", "tag_id"]
    )

    op.create_table(
        "transaction_rules",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("team_id", sa.String(length=36), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("enabled", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("merchant_match", sa.String(length=200), nullable=True),
        sa.Column(
            "merchant_match_type",
            sa.Enum("exact", "starts_with", "contains", name="merchantmatchtype"),
            nullable=False,
            server_default="contains",
        ),
        sa.Column(
            "amount_operator",
            sa.Enum("eq", "gt", "lt", "between", name="amountoperator"),
            nullable=True,
        ),
        sa.Column("amount_value_cents", sa.Integer(), nullable=True),
        sa.Column("amount_value_max_cents", sa.Integer(), nullable=True),
        sa.Column("account_id", sa.String(length=36), nullable=True),
        sa.Column("date_start", sa.Date(), nullable=True),
        sa.Column("date_end", sa.Date(), nullable=True),
        sa.Column("set_category_slug", sa.String(length=100), nullable=True),
        sa.Column("set_merchant_name", sa.String(length=200), nullable=True),
        sa.Column("set_excluded", sa.Boolean(), nullable=True),
        sa.Column("set_assigned_id", sa.String(length=36), nullable=True),
        sa.Column("set_deal_code", sa.String(length=64), nullable=True),
        sa.Column(
            "auto_resolve_deal", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("add_tag_ids_json", sa.Text(), nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "amount_operator != 'between' OR amount_value_max_cents IS NOT NULL",
            name="ck_rule_between_has_max",
        ),
    )
    op.create_index(
        "ix_transaction_rules_team_enabled_priority",
        "transaction_rules",
        ["team_id", "enabled", "priority", "created_at"],
    )


def downgrade():
    op.drop_index(
        "ix_transaction_rules_team_enabled_priority", table_name="transaction_rules"
    )
    op.drop_table("transaction_rules")
    op.drop_index("ix_transaction_tags_team_tag", table_name="transaction_tags")
    op.drop_table("transaction_tags")
    op.drop_index("ix_transactions_match_status", table_name="transactions")
    op.drop_index("ix_transactions_team_category", table_name="transactions")
    op.drop_index("ix_transactions_team_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_deals_team_merchant_status", table_name="deals")
    op.drop_table("deals")
    op.drop_index("ix_merchants_team_name_lower", table_name="merchants")
    op.drop_index("ix_merchants_team_id", table_name="merchants")
    op.drop_table("merchants")
    op.drop_index("ix_tags_team_id", table_name="tags")
    op.drop_table("tags")
