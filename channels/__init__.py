"""Outbound notification channels (reminder email)."""
from channels.email import (
    EmailGateway,
    EmailSendError,
    ReminderEmailParams,
    SmtpEmailGateway,
    render_reminder,
)

__all__ = [
    "EmailGateway", "EmailSendError", "ReminderEmailParams",
    "SmtpEmailGateway", "render_reminder",
]
