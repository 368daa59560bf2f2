"""
Mail transports for report digests.

SmtpMailTransport sends a plain-text message through aiosmtplib.
LoggingMailTransport is used when SMTP_HOST is empty (local development):
it logs the digest instead of sending it.
"""

import logging
from email.message import EmailMessage

import aiosmtplib

from app.config import Settings
from app.core.exceptions import MailDeliveryError
from app.core.interfaces import IMailTransport
from app.core.models import DigestDocument

logger = logging.getLogger(__name__)


class SmtpMailTransport(IMailTransport):
    """Sends digests over SMTP."""

    def __init__(
        self,
        hostname: str,
        port: int = 587,
        username: str = "",
        password: str = "",
        sender: str = "TaskPulse <no-reply@taskpulse.local>",
        use_tls: bool = False,
        start_tls: bool = True,
        timeout: float = 30.0,
    ):
        self._hostname = hostname
        self._port = port
        self._username = username or None
        self._password = password or None
        self._sender = sender
        self._use_tls = use_tls
        # Implicit TLS and STARTTLS are mutually exclusive
        self._start_tls = start_tls and not use_tls
        self._timeout = timeout

    def build_message(self, document: DigestDocument) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self._sender
        message["To"] = document.recipient_address
        message["Subject"] = document.subject
        if document.source_event_id:
            message["X-TaskPulse-Event"] = document.source_event_id
        message.set_content(document.render_text())
        return message

    async def deliver(self, document: DigestDocument) -> None:
        message = self.build_message(document)
        try:
            await aiosmtplib.send(
                message,
                hostname=self._hostname,
                port=self._port,
                username=self._username,
                password=self._password,
                use_tls=self._use_tls,
                start_tls=self._start_tls,
                timeout=self._timeout,
            )
        except (aiosmtplib.SMTPException, OSError, TimeoutError) as e:
            raise MailDeliveryError(
                f"SMTP delivery to {document.recipient_address} failed: {e}",
                details={"recipient": document.recipient_address},
            ) from e

        logger.info(
            f"Digest '{document.subject}' sent to {document.recipient_address}"
        )


class LoggingMailTransport(IMailTransport):
    """Logs digests instead of sending them."""

    async def deliver(self, document: DigestDocument) -> None:
        logger.info(
            f"SMTP not configured; digest for {document.recipient_address} "
            f"not sent:\n{document.render_text()}"
        )


def build_transport(settings: Settings) -> IMailTransport:
    if not settings.smtp_host:
        logger.warning(
            "SMTP_HOST is empty, digests will be logged instead of emailed. "
            "Set SMTP_HOST, SMTP_PORT, SMTP_USER, SMTP_PASSWORD to enable email sending."
        )
        return LoggingMailTransport()
    return SmtpMailTransport(
        hostname=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.smtp_user,
        password=settings.smtp_password,
        sender=settings.smtp_from,
        use_tls=settings.smtp_use_tls,
        start_tls=settings.smtp_start_tls,
        timeout=settings.smtp_timeout,
    )
