import re
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from models import SavingsCategory
from months import is_month_token

MAX_AMOUNT = Decimal("999999999999")
EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def first_error_message(exc: ValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    err = errors[0]
    ctx = err.get("ctx") or {}
    if "error" in ctx:
        return str(ctx["error"])
    field = ".".join(str(part) for part in err.get("loc", ()))
    if err.get("type") == "missing":
        return f"{field} is required"
    if field:
        return f"{field}: {err['msg']}"
    return err["msg"]


def to_cents(amount: Decimal) -> int:
    return int(amount * 100)


def _check_month(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    if not is_month_token(value):
        raise ValueError("Month must be in YYYY-MM format")
    return value


def _check_amount(value: Optional[Decimal]) -> Optional[Decimal]:
    if value is None:
        return value
    if value <= 0:
        raise ValueError("Amount must be greater than 0")
    if value > MAX_AMOUNT:
        raise ValueError("Amount is too large")
    if (value * 100) % 1 != 0:
        raise ValueError("Amount can have at most two decimal places")
    return value


def _check_email(value: str) -> str:
    clean = (value or "").strip().lower()
    if not EMAIL_PATTERN.match(clean):
        raise ValueError("Invalid email address")
    return clean


def _check_name(value: str) -> str:
    clean = (value or "").strip()
    if not clean:
        raise ValueError("Name is required")
    if len(clean) > 100:
        raise ValueError("Name is too long")
    return clean


class _EntryBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    month: Optional[str] = None
    amount: Optional[Decimal] = None
    notes: Optional[str] = Field(default=None, max_length=500)

    @field_validator("month")
    @classmethod
    def validate_month(cls, value: Optional[str]) -> Optional[str]:
        return _check_month(value)

    @field_validator("amount")
    @classmethod
    def validate_amount(cls, value: Optional[Decimal]) -> Optional[Decimal]:
        return _check_amount(value)


class IncomeEntryIn(_EntryBase):
    month: str
    amount: Decimal
    source_id: int = Field(..., alias="sourceId")


class IncomeEntryUpdate(_EntryBase):
    source_id: Optional[int] = Field(default=None, alias="sourceId")


class ExpenseEntryIn(_EntryBase):
    month: str
    amount: Decimal
    vertical_id: int = Field(..., alias="verticalId")


class ExpenseEntryUpdate(_EntryBase):
    vertical_id: Optional[int] = Field(default=None, alias="verticalId")


class SavingsEntryIn(_EntryBase):
    month: str
    amount: Decimal
    instrument_id: int = Field(..., alias="instrumentId")


class SavingsEntryUpdate(_EntryBase):
    instrument_id: Optional[int] = Field(default=None, alias="instrumentId")


class CategoryNameIn(BaseModel):
    name: str

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _check_name(value)


class SavingsInstrumentIn(CategoryNameIn):
    category: SavingsCategory


class OnboardingIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    income_sources: Optional[list[str]] = Field(default=None, alias="incomeSources")
    expense_verticals: Optional[list[str]] = Field(
        default=None, alias="expenseVerticals"
    )


class ExportQuery(BaseModel):
    month: str
    type: Literal["income", "expenses", "savings", "summary"]

    @field_validator("month")
    @classmethod
    def validate_month(cls, value: str) -> str:
        return _check_month(value)


class EmailIn(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str) -> str:
        return _check_email(value)


class LoginIn(EmailIn):
    password: str = Field(..., min_length=1)


class OtpVerifyIn(EmailIn):
    otp: str

    @field_validator("otp")
    @classmethod
    def validate_otp(cls, value: str) -> str:
        clean = (value or "").strip()
        if len(clean) != 6 or not clean.isdigit():
            raise ValueError("OTP must be 6 digits")
        return clean


class RegisterIn(EmailIn):
    model_config = ConfigDict(populate_by_name=True)

    name: str
    password: str
    security_question: str = Field(..., alias="securityQuestion")
    security_answer: str = Field(..., alias="securityAnswer")

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: str) -> str:
        return _check_name(value)

    @field_validator("password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        if len(value.encode("utf-8")) > 72:
            raise ValueError("Password is too long")
        return value

    @field_validator("security_question")
    @classmethod
    def validate_question(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Security question is required")
        return value.strip()

    @field_validator("security_answer")
    @classmethod
    def validate_answer(cls, value: str) -> str:
        if len(value.strip()) < 2:
            raise ValueError("Security answer must be at least 2 characters")
        return value


class ResetPasswordIn(EmailIn):
    model_config = ConfigDict(populate_by_name=True)

    security_answer: str = Field(..., alias="securityAnswer")
    new_password: str = Field(..., alias="newPassword")

    @field_validator("security_answer")
    @classmethod
    def validate_answer(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Security answer is required")
        return value

    @field_validator("new_password")
    @classmethod
    def validate_password(cls, value: str) -> str:
        if len(value) < 6:
            raise ValueError("Password must be at least 6 characters")
        if len(value.encode("utf-8")) > 72:
            raise ValueError("Password is too long")
        return value
