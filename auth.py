import hmac
import logging
import math
import secrets
from datetime import datetime, timedelta
from typing import Optional

import bcrypt
from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session

from config import Settings, get_settings
from mailer import Mailer
from models import (
    EmailVerification,
    ExpenseEntry,
    ExpenseVertical,
    IncomeEntry,
    IncomeSource,
    LoginAttempt,
    LoginReason,
    SavingsEntry,
    User,
    utcnow,
)
from schemas import RegisterIn, ResetPasswordIn
from services import ConflictError, NotFoundError

logger = logging.getLogger(__name__)

OTP_EXPIRY_MINUTES = 10
OTP_MAX_ATTEMPTS = 5
OTP_SENDS_PER_HOUR = 3
INVALID_CREDENTIALS = "Invalid email or password"


class AuthenticationError(ValueError):
    pass


class AccountLockedError(ValueError):
    pass


class RateLimitError(ValueError):
    pass


class OtpError(ValueError):
    def __init__(self, message: str, remaining_attempts: Optional[int] = None) -> None:
        super().__init__(message)
        self.remaining_attempts = remaining_attempts


def hash_secret(value: str, rounds: Optional[int] = None) -> str:
    rounds = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(value.encode("utf-8"), bcrypt.gensalt(rounds=rounds)).decode(
        "utf-8"
    )


def verify_secret(value: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    try:
        return bcrypt.checkpw(value.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


def normalize_answer(answer: str) -> str:
    return answer.strip().lower()


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}" if count == 1 else f"{count} {noun}s"


class LoginService:
    def __init__(self, session: Session, settings: Optional[Settings] = None) -> None:
        self.session = session
        self.settings = settings or get_settings()

    def _record(
        self,
        email: str,
        user: Optional[User],
        reason: LoginReason,
        ip_address: Optional[str],
        user_agent: Optional[str],
        now: datetime,
    ) -> None:
        self.session.add(
            LoginAttempt(
                email=email,
                user_id=user.id if user else None,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:255] or None,
                success=reason == LoginReason.success,
                reason=reason,
                created_at=now,
            )
        )

    def authenticate(
        self,
        email: str,
        password: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> User:
        now = now or utcnow()
        email = email.strip().lower()
        user = self.session.scalar(select(User).where(User.email == email))

        if not user:
            self._record(email, None, LoginReason.invalid_email, ip_address, user_agent, now)
            self.session.commit()
            logger.info(f"login_failed: email={email} reason=invalid_email")
            raise AuthenticationError(INVALID_CREDENTIALS)

        if user.locked_until and user.locked_until > now:
            minutes = math.ceil((user.locked_until - now).total_seconds() / 60)
            self._record(email, user, LoginReason.account_locked, ip_address, user_agent, now)
            self.session.commit()
            logger.info(f"login_failed: email={email} reason=account_locked")
            raise AccountLockedError(
                "Account is temporarily locked. "
                f"Please try again in {_plural(minutes, 'minute')}."
            )

        if user.locked_until:
            # lock elapsed, the next attempt starts from a clean counter
            user.locked_until = None
            user.failed_login_attempts = 0

        if not verify_secret(password, user.password_hash):
            user.failed_login_attempts += 1
            self._record(
                email, user, LoginReason.invalid_password, ip_address, user_agent, now
            )
            if user.failed_login_attempts >= self.settings.max_login_attempts:
                user.locked_until = now + timedelta(minutes=self.settings.lockout_minutes)
                self.session.commit()
                logger.warning(
                    f"account_locked: user={user.id} until={user.locked_until.isoformat()}"
                )
                raise AccountLockedError(
                    "Too many failed attempts. Account locked for "
                    f"{_plural(self.settings.lockout_minutes, 'minute')}."
                )
            self.session.commit()
            logger.info(
                f"login_failed: email={email} reason=invalid_password "
                f"attempts={user.failed_login_attempts}"
            )
            raise AuthenticationError(INVALID_CREDENTIALS)

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login_at = now
        user.last_login_ip = ip_address
        self._record(email, user, LoginReason.success, ip_address, user_agent, now)
        self.session.commit()
        logger.info(f"login_succeeded: user={user.id}")
        return user


class EmailVerificationService:
    def __init__(self, session: Session, mailer: Optional[Mailer] = None) -> None:
        self.session = session
        self.mailer = mailer or Mailer()

    def _latest_pending(self, email: str) -> Optional[EmailVerification]:
        stmt = (
            select(EmailVerification)
            .where(
                EmailVerification.email == email,
                EmailVerification.verified.is_(False),
            )
            .order_by(EmailVerification.created_at.desc(), EmailVerification.id.desc())
            .limit(1)
        )
        return self.session.scalar(stmt)

    def send(self, email: str, *, now: Optional[datetime] = None) -> EmailVerification:
        now = now or utcnow()
        email = email.strip().lower()
        if self.session.scalar(select(User.id).where(User.email == email)):
            raise OtpError("This email is already registered. Please sign in instead.")

        window_start = now - timedelta(hours=1)
        recent = self.session.scalars(
            select(EmailVerification).where(
                EmailVerification.email == email,
                EmailVerification.created_at >= window_start,
            )
        ).all()
        if len(recent) >= OTP_SENDS_PER_HOUR:
            logger.info(f"otp_rate_limited: email={email}")
            raise RateLimitError("Too many OTP requests. Please try again later.")

        self.session.execute(
            delete(EmailVerification).where(
                EmailVerification.email == email,
                EmailVerification.verified.is_(False),
                EmailVerification.created_at < window_start,
            )
        )
        # earlier codes stay for the send count but can no longer be redeemed
        for row in recent:
            if not row.verified and row.expires_at > now:
                row.expires_at = now

        verification = EmailVerification(
            email=email,
            otp=f"{secrets.randbelow(1_000_000):06d}",
            expires_at=now + timedelta(minutes=OTP_EXPIRY_MINUTES),
            verified=False,
            attempts=0,
            created_at=now,
        )
        self.session.add(verification)
        self.session.commit()

        try:
            self.mailer.send_otp(email, verification.otp, OTP_EXPIRY_MINUTES)
        except RuntimeError:
            self.session.delete(verification)
            self.session.commit()
            raise
        logger.info(f"otp_sent: email={email}")
        return verification

    def verify(self, email: str, otp: str, *, now: Optional[datetime] = None) -> None:
        now = now or utcnow()
        email = email.strip().lower()
        verification = self._latest_pending(email)
        if not verification:
            raise OtpError("No pending verification found. Please request a new code.")

        if verification.expires_at <= now:
            self.session.delete(verification)
            self.session.commit()
            raise OtpError("Verification code has expired. Please request a new one.")

        if verification.attempts >= OTP_MAX_ATTEMPTS:
            self.session.delete(verification)
            self.session.commit()
            raise OtpError(
                "Too many failed attempts. Please request a new code.",
                remaining_attempts=0,
            )

        if not hmac.compare_digest(verification.otp, otp):
            verification.attempts += 1
            remaining = OTP_MAX_ATTEMPTS - verification.attempts
            if remaining <= 0:
                self.session.delete(verification)
                self.session.commit()
                logger.info(f"otp_exhausted: email={email}")
                raise OtpError(
                    "Too many failed attempts. Please request a new code.",
                    remaining_attempts=0,
                )
            self.session.commit()
            raise OtpError(
                f"Invalid verification code. {_plural(remaining, 'attempt')} remaining.",
                remaining_attempts=remaining,
            )

        verification.verified = True
        self.session.commit()
        logger.info(f"otp_verified: email={email}")


class AccountService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def get_user(self, user_id: int) -> Optional[User]:
        return self.session.get(User, user_id)

    def register(self, data: RegisterIn) -> User:
        verified = self.session.scalar(
            select(EmailVerification.id).where(
                EmailVerification.email == data.email,
                EmailVerification.verified.is_(True),
            )
        )
        if not verified:
            raise OtpError("Please verify your email first")
        if self.session.scalar(select(User.id).where(User.email == data.email)):
            raise ConflictError("User with this email already exists")

        user = User(
            email=data.email,
            name=data.name,
            password_hash=hash_secret(data.password),
            security_question=data.security_question,
            security_answer_hash=hash_secret(normalize_answer(data.security_answer)),
            failed_login_attempts=0,
        )
        self.session.add(user)
        self.session.execute(
            delete(EmailVerification).where(EmailVerification.email == data.email)
        )
        self.session.commit()
        self.session.refresh(user)
        logger.info(f"user_registered: user={user.id}")
        return user

    def security_question(self, email: str) -> str:
        user = self.session.scalar(select(User).where(User.email == email))
        if not user or not user.security_question:
            raise NotFoundError(
                "No account found with this email or no security question set"
            )
        return user.security_question

    def reset_password(self, data: ResetPasswordIn) -> None:
        user = self.session.scalar(select(User).where(User.email == data.email))
        if not user or not user.security_answer_hash:
            raise NotFoundError("Invalid email or security question not set")
        if not verify_secret(
            normalize_answer(data.security_answer), user.security_answer_hash
        ):
            logger.info(f"password_reset_rejected: user={user.id}")
            raise AuthenticationError("Incorrect security answer")
        user.password_hash = hash_secret(data.new_password)
        user.failed_login_attempts = 0
        user.locked_until = None
        self.session.commit()
        logger.info(f"password_reset: user={user.id}")

    def delete_account(self, user_id: int) -> None:
        user = self.session.get(User, user_id)
        if not user:
            raise NotFoundError("User not found")
        for model in (IncomeEntry, ExpenseEntry, SavingsEntry):
            self.session.execute(delete(model).where(model.user_id == user_id))
        for model in (IncomeSource, ExpenseVertical):
            self.session.execute(delete(model).where(model.user_id == user_id))
        self.session.execute(
            update(LoginAttempt)
            .where(LoginAttempt.user_id == user_id)
            .values(user_id=None)
        )
        self.session.delete(user)
        self.session.commit()
        logger.info(f"account_deleted: user={user_id}")
