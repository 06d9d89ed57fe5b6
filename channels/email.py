"""
Email Channel — reminder emails for signers who have not signed yet.

Provides:
- Stage-specific reminder wording (friendly → follow-up → final)
- HTML and plain-text bodies in one multipart message
- SMTP delivery through aiosmtplib
- Test mode: log the message instead of sending it
"""
from __future__ import annotations

import html
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Any, Optional

import aiosmtplib

from config.settings import EmailConfig

logger = structlog.get_logger()


class EmailSendError(Exception):
    """Transport failure for a single send."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


@dataclass(frozen=True)
class ReminderEmailParams:
    recipient_name: str
    document_name: str
    signing_link: str


# ──────────────────────────────────────────────────────────────
#  Rendering
# ──────────────────────────────────────────────────────────────

_STAGE_COPY: dict[int, dict[str, str]] = {
    1: {
        "subject": "Reminder: please sign {document}",
        "heading": "Friendly reminder",
        "lead": "You have a document waiting for your signature.",
    },
    2: {
        "subject": "Follow-up: {document} still needs your signature",
        "heading": "Following up",
        "lead": "We noticed you have not signed this document yet.",
    },
    3: {
        "subject": "Final reminder: sign {document}",
        "heading": "Final reminder",
        "lead": "This is the last reminder we will send for this document.",
    },
}


def render_reminder(stage: int, params: ReminderEmailParams) -> tuple[str, str, str]:
    """Return (subject, html_body, text_body) for a reminder stage (1–3)."""
    copy = _STAGE_COPY.get(stage)
    if copy is None:
        raise ValueError(f"No reminder stage {stage}")

    subject = copy["subject"].format(document=params.document_name)
    greeting = f"Hello {params.recipient_name}," if params.recipient_name else "Hello,"

    text_body = (
        f"{greeting}\n\n"
        f"{copy['lead']}\n\n"
        f"Document: {params.document_name}\n"
        f"Sign here: {params.signing_link}\n\n"
        f"Reminder {stage} of 3.\n"
    )

    name = html.escape(params.document_name)
    link = html.escape(params.signing_link, quote=True)
    html_body = (
        "<html><body style=\"font-family: Arial, sans-serif;\">"
        f"<h2>{html.escape(copy['heading'])}</h2>"
        f"<p>{html.escape(greeting)}</p>"
        f"<p>{html.escape(copy['lead'])}</p>"
        f"<p><strong>{name}</strong></p>"
        f"<p><a href=\"{link}\" style=\"padding: 10px 18px; background: #2563eb; "
        f"color: #fff; text-decoration: none; border-radius: 4px;\">Sign document</a></p>"
        f"<p style=\"color: #6b7280; font-size: 12px;\">Reminder {stage} of 3. "
        f"If the button does not work, open {link}</p>"
        "</body></html>"
    )
    return subject, html_body, text_body


# ──────────────────────────────────────────────────────────────
#  Gateways
# ──────────────────────────────────────────────────────────────

class EmailGateway(ABC):
    """Anything that can deliver a reminder email."""

    @abstractmethod
    async def send_reminder(self, to_email: str, stage: int, params: ReminderEmailParams) -> None:
        """Deliver one reminder. Raises EmailSendError on transport failure."""
        ...


class SmtpEmailGateway(EmailGateway):
    """SMTP delivery via aiosmtplib; in test_mode the message is only logged."""

    def __init__(self, config: Optional[EmailConfig] = None):
        self.config = config or EmailConfig()

    def build_message(self, to_email: str, stage: int, params: ReminderEmailParams) -> EmailMessage:
        subject, html_body, text_body = render_reminder(stage, params)
        msg = EmailMessage()
        msg["From"] = f"{self.config.from_name} <{self.config.from_email}>"
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(text_body, charset="utf-8")
        msg.add_alternative(html_body, subtype="html", charset="utf-8")
        return msg

    async def send_reminder(self, to_email: str, stage: int, params: ReminderEmailParams) -> None:
        try:
            msg = self.build_message(to_email, stage, params)
        except ValueError as e:
            # email.headerregistry rejects CR/LF and other unusable addresses
            raise EmailSendError(f"Invalid recipient {to_email!r}: {e}", retryable=False) from e

        if self.config.test_mode:
            logger.info("reminder_email_test_mode",
                        to=to_email, stage=stage,
                        subject=msg["Subject"],
                        link=params.signing_link)
            return

        kwargs: dict[str, Any] = {
            "hostname": self.config.smtp_host,
            "port": self.config.smtp_port,
            "start_tls": self.config.use_tls,
            "timeout": self.config.timeout_seconds,
        }
        if self.config.username:
            kwargs["username"] = self.config.username
            kwargs["password"] = self.config.password

        try:
            await aiosmtplib.send(msg, **kwargs)
        except aiosmtplib.SMTPRecipientsRefused as e:
            raise EmailSendError(f"Recipient refused: {to_email}", retryable=False) from e
        except (aiosmtplib.SMTPException, OSError) as e:
            raise EmailSendError(f"SMTP send to {to_email} failed: {e}") from e

        logger.info("reminder_email_sent", to=to_email, stage=stage)
