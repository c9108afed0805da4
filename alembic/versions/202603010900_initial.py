"""initial schema

Revision ID: 202603010900
Revises:
Create Date: 2026-03-01 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202603010900"
down_revision = None
branch_labels = None
depends_on = None

SAVINGS_CATEGORY = sa.Enum(
    "FD_RD", "NPS_PPF", "STOCKS_ETFS", "MF", name="savingscategory"
)
LOGIN_REASON = sa.Enum(
    "invalid_email",
    "invalid_password",
    "account_locked",
    "success",
    name="loginreason",
)


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("password_hash", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("security_question", sa.String(length=255)),
        sa.Column("security_answer_hash", sa.String(length=100)),
        sa.Column(
            "failed_login_attempts", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("locked_until", sa.DateTime()),
        sa.Column("last_login_at", sa.DateTime()),
        sa.Column("last_login_ip", sa.String(length=64)),
        *_timestamps(),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "login_attempts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="SET NULL"),
        ),
        sa.Column("ip_address", sa.String(length=64)),
        sa.Column("user_agent", sa.String(length=255)),
        sa.Column("success", sa.Boolean(), nullable=False),
        sa.Column("reason", LOGIN_REASON, nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index("ix_login_attempts_email", "login_attempts", ["email"])
    op.create_index("ix_login_attempts_created_at", "login_attempts", ["created_at"])

    op.create_table(
        "email_verifications",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column("otp", sa.String(length=6), nullable=False),
        sa.Column("expires_at", sa.DateTime(), nullable=False),
        sa.Column("verified", sa.Boolean(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_email_verifications_email_created",
        "email_verifications",
        ["email", "created_at"],
    )

    op.create_table(
        "income_sources",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_income_source_user_name"),
    )

    op.create_table(
        "expense_verticals",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_expense_vertical_user_name"),
    )

    op.create_table(
        "savings_instruments",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("category", SAVINGS_CATEGORY, nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.UniqueConstraint(
            "name", "category", name="uq_savings_instrument_name_category"
        ),
    )

    op.create_table(
        "income_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "source_id",
            sa.Integer(),
            sa.ForeignKey("income_sources.id"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )
    op.create_index(
        "ix_income_entries_user_month", "income_entries", ["user_id", "month"]
    )

    op.create_table(
        "expense_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "vertical_id",
            sa.Integer(),
            sa.ForeignKey("expense_verticals.id"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )
    op.create_index(
        "ix_expense_entries_user_month", "expense_entries", ["user_id", "month"]
    )

    op.create_table(
        "savings_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.Integer(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "instrument_id",
            sa.Integer(),
            sa.ForeignKey("savings_instruments.id"),
            nullable=False,
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("notes", sa.Text()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_savings_amount_positive"),
    )
    op.create_index(
        "ix_savings_entries_user_month", "savings_entries", ["user_id", "month"]
    )


def downgrade():
    op.drop_index("ix_savings_entries_user_month", table_name="savings_entries")
    op.drop_table("savings_entries")
    op.drop_index("ix_expense_entries_user_month", table_name="expense_entries")
    op.drop_table("expense_entries")
    op.drop_index("ix_income_entries_user_month", table_name="income_entries")
    op.drop_table("income_entries")
    op.drop_table("savings_instruments")
    op.drop_table("expense_verticals")
    op.drop_table("income_sources")
    op.drop_index(
        "ix_email_verifications_email_created", table_name="email_verifications"
    )
    op.drop_table("email_verifications")
    op.drop_index("ix_login_attempts_created_at", table_name="login_attempts")
    op.drop_index("ix_login_attempts_email", table_name="login_attempts")
    op.drop_table("login_attempts")
    op.drop_table("users")
    SAVINGS_CATEGORY.drop(op.get_bind(), checkfirst=True)
    LOGIN_REASON.drop(op.get_bind(), checkfirst=True)
