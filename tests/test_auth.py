from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker

from auth import (
    AccountLockedError,
    AccountService,
    AuthenticationError,
    EmailVerificationService,
    LoginService,
    OtpError,
    RateLimitError,
    hash_secret,
    verify_secret,
)
from database import Base
from mailer import MailDeliveryError
from models import (
    EmailVerification,
    IncomeEntry,
    IncomeSource,
    LoginAttempt,
    LoginReason,
    User,
)
from schemas import CategoryNameIn, IncomeEntryIn, RegisterIn, ResetPasswordIn
from services import ConflictError, IncomeEntryService, IncomeSourceService, NotFoundError

NOW = datetime(2026, 1, 5, 12, 0, 0)


def make_session():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:", connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(engine)
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    return SessionLocal()


def make_user(session, email: str = "alice@example.com", password: str = "correct-horse"):
    user = User(
        email=email,
        name="Alice",
        password_hash=hash_secret(password),
        security_question="First pet?",
        security_answer_hash=hash_secret("fluffy"),
    )
    session.add(user)
    session.commit()
    session.refresh(user)
    return user


class RecordingMailer:
    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        self.sent.append((email, otp))


class FailingMailer:
    def send_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        raise MailDeliveryError("Failed to send verification email")


def test_login_success_records_audit_row() -> None:
    session = make_session()
    user = make_user(session)

    logged_in = LoginService(session).authenticate(
        " Alice@Example.com ", "correct-horse", ip_address="10.0.0.1", now=NOW
    )
    assert logged_in.id == user.id
    assert logged_in.last_login_at == NOW
    assert logged_in.last_login_ip == "10.0.0.1"

    attempt = session.scalars(select(LoginAttempt)).one()
    assert attempt.success is True
    assert attempt.reason == LoginReason.success
    assert attempt.user_id == user.id


def test_unknown_email_and_wrong_password_share_message() -> None:
    session = make_session()
    make_user(session)
    service = LoginService(session)

    with pytest.raises(AuthenticationError) as unknown:
        service.authenticate("nobody@example.com", "whatever", now=NOW)
    with pytest.raises(AuthenticationError) as wrong:
        service.authenticate("alice@example.com", "nope", now=NOW)
    assert str(unknown.value) == str(wrong.value) == "Invalid email or password"

    reasons = [a.reason for a in session.scalars(select(LoginAttempt).order_by(LoginAttempt.id))]
    assert reasons == [LoginReason.invalid_email, LoginReason.invalid_password]


def test_five_failures_lock_the_account() -> None:
    session = make_session()
    user = make_user(session)
    service = LoginService(session)

    for minute in range(4):
        with pytest.raises(AuthenticationError):
            service.authenticate(
                "alice@example.com", "bad", now=NOW + timedelta(minutes=minute)
            )
    with pytest.raises(AccountLockedError, match="Account locked for 15 minutes"):
        service.authenticate("alice@example.com", "bad", now=NOW + timedelta(minutes=4))

    # correct password is still refused while locked
    with pytest.raises(AccountLockedError, match="temporarily locked"):
        service.authenticate(
            "alice@example.com", "correct-horse", now=NOW + timedelta(minutes=5)
        )

    session.refresh(user)
    assert user.failed_login_attempts == 5
    assert user.locked_until == NOW + timedelta(minutes=19)
    reasons = [a.reason for a in session.scalars(select(LoginAttempt).order_by(LoginAttempt.id))]
    assert reasons == [LoginReason.invalid_password] * 5 + [LoginReason.account_locked]

    later = NOW + timedelta(minutes=20)
    assert service.authenticate("alice@example.com", "correct-horse", now=later).id == user.id
    session.refresh(user)
    assert user.failed_login_attempts == 0
    assert user.locked_until is None


def test_locked_message_reports_remaining_minutes() -> None:
    session = make_session()
    user = make_user(session)
    user.failed_login_attempts = 5
    user.locked_until = NOW + timedelta(minutes=7, seconds=30)
    session.commit()

    with pytest.raises(AccountLockedError) as exc_info:
        LoginService(session).authenticate("alice@example.com", "correct-horse", now=NOW)
    assert str(exc_info.value) == (
        "Account is temporarily locked. Please try again in 8 minutes."
    )


def test_failure_after_lock_elapses_starts_a_fresh_count() -> None:
    session = make_session()
    user = make_user(session)
    user.failed_login_attempts = 5
    user.locked_until = NOW - timedelta(minutes=1)
    session.commit()

    with pytest.raises(AuthenticationError):
        LoginService(session).authenticate("alice@example.com", "bad", now=NOW)
    session.refresh(user)
    assert user.failed_login_attempts == 1
    assert user.locked_until is None


def test_otp_wrong_code_counts_down_then_invalidates() -> None:
    session = make_session()
    mailer = RecordingMailer()
    service = EmailVerificationService(session, mailer=mailer)
    verification = service.send("new@example.com", now=NOW)
    assert mailer.sent == [("new@example.com", verification.otp)]
    assert len(verification.otp) == 6 and verification.otp.isdigit()

    wrong = "000000" if verification.otp != "000000" else "111111"
    for expected_remaining in (4, 3, 2, 1):
        with pytest.raises(OtpError) as exc_info:
            service.verify("new@example.com", wrong, now=NOW)
        assert exc_info.value.remaining_attempts == expected_remaining
    assert "1 attempt remaining" in str(exc_info.value)

    with pytest.raises(OtpError, match="Too many failed attempts") as exhausted:
        service.verify("new@example.com", wrong, now=NOW)
    assert exhausted.value.remaining_attempts == 0
    assert session.scalars(select(EmailVerification)).all() == []

    # even the right code needs a fresh send now
    with pytest.raises(OtpError, match="No pending verification found"):
        service.verify("new@example.com", verification.otp, now=NOW)


def test_otp_expires_after_ten_minutes() -> None:
    session = make_session()
    service = EmailVerificationService(session, mailer=RecordingMailer())
    verification = service.send("new@example.com", now=NOW)

    with pytest.raises(OtpError, match="Verification code has expired"):
        service.verify("new@example.com", verification.otp, now=NOW + timedelta(minutes=10))
    assert session.scalars(select(EmailVerification)).all() == []


def test_otp_send_is_limited_to_three_per_hour() -> None:
    session = make_session()
    service = EmailVerificationService(session, mailer=RecordingMailer())
    for minute in range(3):
        service.send("new@example.com", now=NOW + timedelta(minutes=minute))

    with pytest.raises(RateLimitError, match="Too many OTP requests"):
        service.send("new@example.com", now=NOW + timedelta(minutes=30))

    fresh = service.send("new@example.com", now=NOW + timedelta(minutes=61))
    service.verify("new@example.com", fresh.otp, now=NOW + timedelta(minutes=62))


def test_only_the_latest_code_is_accepted() -> None:
    session = make_session()
    service = EmailVerificationService(session, mailer=RecordingMailer())
    first = service.send("new@example.com", now=NOW)
    second = service.send("new@example.com", now=NOW + timedelta(minutes=1))
    if first.otp == second.otp:
        pytest.skip("codes collided")

    with pytest.raises(OtpError, match="Invalid verification code"):
        service.verify("new@example.com", first.otp, now=NOW + timedelta(minutes=2))
    service.verify("new@example.com", second.otp, now=NOW + timedelta(minutes=2))


def test_otp_refused_for_registered_email_and_mail_failure() -> None:
    session = make_session()
    make_user(session)
    with pytest.raises(OtpError, match="already registered"):
        EmailVerificationService(session, mailer=RecordingMailer()).send(
            "ALICE@example.com", now=NOW
        )

    with pytest.raises(MailDeliveryError):
        EmailVerificationService(session, mailer=FailingMailer()).send(
            "other@example.com", now=NOW
        )
    assert session.scalars(select(EmailVerification)).all() == []


def register_payload(email: str = "new@example.com") -> RegisterIn:
    return RegisterIn(
        email=email,
        name="New User",
        password="s3cret-pass",
        securityQuestion="Favourite city?",
        securityAnswer="  Lisbon ",
    )


def test_register_requires_verified_email() -> None:
    session = make_session()
    accounts = AccountService(session)
    with pytest.raises(OtpError, match="Please verify your email first"):
        accounts.register(register_payload())

    otp = EmailVerificationService(session, mailer=RecordingMailer())
    verification = otp.send("new@example.com")
    otp.verify("new@example.com", verification.otp)

    user = accounts.register(register_payload())
    assert user.email == "new@example.com"
    assert verify_secret("s3cret-pass", user.password_hash)
    assert verify_secret("lisbon", user.security_answer_hash)
    assert session.scalars(select(EmailVerification)).all() == []

    with pytest.raises(OtpError):
        accounts.register(register_payload())


def test_register_rejects_existing_email() -> None:
    session = make_session()
    make_user(session, email="new@example.com")
    session.add(
        EmailVerification(
            email="new@example.com",
            otp="123456",
            expires_at=NOW,
            verified=True,
            created_at=NOW,
        )
    )
    session.commit()
    with pytest.raises(ConflictError, match="User with this email already exists"):
        AccountService(session).register(register_payload())


def test_password_reset_with_security_answer() -> None:
    session = make_session()
    user = make_user(session)
    user.failed_login_attempts = 5
    user.locked_until = NOW + timedelta(minutes=10)
    session.commit()
    accounts = AccountService(session)

    assert accounts.security_question("alice@example.com") == "First pet?"
    with pytest.raises(NotFoundError, match="no security question set"):
        accounts.security_question("ghost@example.com")

    with pytest.raises(AuthenticationError, match="Incorrect security answer"):
        accounts.reset_password(
            ResetPasswordIn(
                email="alice@example.com", securityAnswer="rex", newPassword="brand-new"
            )
        )
    with pytest.raises(NotFoundError, match="Invalid email or security question not set"):
        accounts.reset_password(
            ResetPasswordIn(
                email="ghost@example.com", securityAnswer="rex", newPassword="brand-new"
            )
        )

    accounts.reset_password(
        ResetPasswordIn(
            email="alice@example.com", securityAnswer=" FLUFFY ", newPassword="brand-new"
        )
    )
    assert LoginService(session).authenticate("alice@example.com", "brand-new", now=NOW)


def test_delete_account_removes_owned_rows() -> None:
    session = make_session()
    user = make_user(session)
    other = make_user(session, email="bob@example.com")
    source = IncomeSourceService(session, user.id).create(CategoryNameIn(name="Salary"))
    IncomeEntryService(session, user.id).create(
        IncomeEntryIn(month="2024-03", amount="100", sourceId=source.id)
    )
    other_source = IncomeSourceService(session, other.id).create(
        CategoryNameIn(name="Salary")
    )
    LoginService(session).authenticate("alice@example.com", "correct-horse", now=NOW)

    AccountService(session).delete_account(user.id)

    assert session.get(User, user.id) is None
    assert session.scalars(select(IncomeEntry)).all() == []
    assert [s.id for s in session.scalars(select(IncomeSource))] == [other_source.id]
    attempt = session.scalars(select(LoginAttempt)).one()
    assert attempt.user_id is None
    assert attempt.email == "alice@example.com"
