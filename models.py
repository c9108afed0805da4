from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SavingsCategory(str, Enum):
    fd_rd = "FD_RD"
    nps_ppf = "NPS_PPF"
    stocks_etfs = "STOCKS_ETFS"
    mf = "MF"

    @property
    def label(self) -> str:
        return SAVINGS_CATEGORY_LABELS[self]


SAVINGS_CATEGORY_LABELS = {
    SavingsCategory.fd_rd: "Bank Deposits",
    SavingsCategory.nps_ppf: "Retirement & Tax",
    SavingsCategory.stocks_etfs: "Equities",
    SavingsCategory.mf: "Mutual Funds",
}

SAVINGS_CATEGORY_ENUM = SAEnum(
    SavingsCategory,
    name="savingscategory",
    values_callable=lambda enum_cls: [member.value for member in enum_cls],
)


class LoginReason(str, Enum):
    invalid_email = "invalid_email"
    invalid_password = "invalid_password"
    account_locked = "account_locked"
    success = "success"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, onupdate=utcnow, nullable=False
    )


class User(Base, TimestampMixin):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(String(100), nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    security_question: Mapped[Optional[str]] = mapped_column(String(255))
    security_answer_hash: Mapped[Optional[str]] = mapped_column(String(100))
    failed_login_attempts: Mapped[int] = mapped_column(
        Integer, default=0, nullable=False
    )
    locked_until: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_login_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_login_ip: Mapped[Optional[str]] = mapped_column(String(64))


class LoginAttempt(Base):
    __tablename__ = "login_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    user_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("users.id", ondelete="SET NULL")
    )
    ip_address: Mapped[Optional[str]] = mapped_column(String(64))
    user_agent: Mapped[Optional[str]] = mapped_column(String(255))
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    reason: Mapped[LoginReason] = mapped_column(SAEnum(LoginReason), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_login_attempts_email", "email"),
        Index("ix_login_attempts_created_at", "created_at"),
    )


class EmailVerification(Base):
    __tablename__ = "email_verifications"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    otp: Mapped[str] = mapped_column(String(6), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    verified: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_email_verifications_email_created", "email", "created_at"),
    )


class IncomeSource(Base, TimestampMixin):
    __tablename__ = "income_sources"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    entries: Mapped[list["IncomeEntry"]] = relationship(
        "IncomeEntry", back_populates="source"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_income_source_user_name"),
    )


class ExpenseVertical(Base, TimestampMixin):
    __tablename__ = "expense_verticals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    entries: Mapped[list["ExpenseEntry"]] = relationship(
        "ExpenseEntry", back_populates="vertical"
    )

    __table_args__ = (
        UniqueConstraint("user_id", "name", name="uq_expense_vertical_user_name"),
    )


class SavingsInstrument(Base, TimestampMixin):
    """Shared reference table; instruments are visible to every user."""

    __tablename__ = "savings_instruments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category: Mapped[SavingsCategory] = mapped_column(
        SAVINGS_CATEGORY_ENUM, nullable=False
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    entries: Mapped[list["SavingsEntry"]] = relationship(
        "SavingsEntry", back_populates="instrument"
    )

    __table_args__ = (
        UniqueConstraint("name", "category", name="uq_savings_instrument_name_category"),
    )


class IncomeEntry(Base, TimestampMixin):
    __tablename__ = "income_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    source_id: Mapped[int] = mapped_column(
        ForeignKey("income_sources.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    source: Mapped["IncomeSource"] = relationship(
        "IncomeSource", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_income_entries_user_month", "user_id", "month"),
        CheckConstraint("amount_cents > 0", name="ck_income_amount_positive"),
    )


class ExpenseEntry(Base, TimestampMixin):
    __tablename__ = "expense_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    vertical_id: Mapped[int] = mapped_column(
        ForeignKey("expense_verticals.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    vertical: Mapped["ExpenseVertical"] = relationship(
        "ExpenseVertical", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_expense_entries_user_month", "user_id", "month"),
        CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )


class SavingsEntry(Base, TimestampMixin):
    __tablename__ = "savings_entries"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    instrument_id: Mapped[int] = mapped_column(
        ForeignKey("savings_instruments.id"), nullable=False
    )
    month: Mapped[str] = mapped_column(String(7), nullable=False)
    amount_cents: Mapped[int] = mapped_column(BigInteger, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    instrument: Mapped["SavingsInstrument"] = relationship(
        "SavingsInstrument", back_populates="entries"
    )

    __table_args__ = (
        Index("ix_savings_entries_user_month", "user_id", "month"),
        CheckConstraint("amount_cents > 0", name="ck_savings_amount_positive"),
    )
