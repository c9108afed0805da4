import logging
import smtplib
from email.message import EmailMessage
from pathlib import Path
from typing import Optional

from jinja2 import Environment, FileSystemLoader, select_autoescape

from config import Settings, get_settings

logger = logging.getLogger(__name__)

TEMPLATE_DIR = Path(__file__).resolve().parent / "templates"

_env = Environment(
    loader=FileSystemLoader(TEMPLATE_DIR),
    autoescape=select_autoescape(["html"]),
)


class MailDeliveryError(RuntimeError):
    pass


def render_otp_email(otp: str, expiry_minutes: int) -> tuple[str, str]:
    context = {"otp": otp, "expiry_minutes": expiry_minutes}
    text = _env.get_template("email/otp.txt").render(**context)
    html = _env.get_template("email/otp.html").render(**context)
    return text, html


class Mailer:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()

    def send_otp(self, email: str, otp: str, expiry_minutes: int) -> None:
        if not self.settings.smtp_host:
            # development mode, no SMTP relay configured
            logger.info(f"otp_email_skipped: email={email} otp={otp}")
            return

        text, html = render_otp_email(otp, expiry_minutes)
        message = EmailMessage()
        message["Subject"] = "Your Finlog verification code"
        message["From"] = self.settings.mail_from
        message["To"] = email
        message.set_content(text)
        message.add_alternative(html, subtype="html")

        try:
            with smtplib.SMTP(
                self.settings.smtp_host, self.settings.smtp_port, timeout=15
            ) as smtp:
                smtp.starttls()
                if self.settings.smtp_username:
                    smtp.login(self.settings.smtp_username, self.settings.smtp_password)
                smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error(f"otp_email_failed: email={email} error={exc}")
            raise MailDeliveryError("Failed to send verification email") from exc
        logger.info(f"otp_email_sent: email={email}")
