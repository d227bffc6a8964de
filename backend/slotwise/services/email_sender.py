import logging
import re
import smtplib
from email.message import EmailMessage
from html import unescape

from slotwise.config import Settings, settings

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<[^>]+>")


class EmailSender:
    """SMTP email channel. ``send`` returns False when SMTP is not configured."""

    def __init__(self, config: Settings):
        self._config = config
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return bool(self._config.smtp_host and (self._config.smtp_from_email or self._config.smtp_username))

    def send(self, to: str, subject: str, html: str) -> bool:
        if not self.enabled:
            if not self._warned_disabled:
                logger.info("Email sender disabled: SMTP_HOST or SMTP_FROM_EMAIL not set")
                self._warned_disabled = True
            return False

        message = EmailMessage()
        message["From"] = self._config.smtp_from_email or self._config.smtp_username
        message["To"] = to
        message["Subject"] = subject
        message.set_content(unescape(_TAG_RE.sub("", html)))
        message.add_alternative(html, subtype="html")

        with smtplib.SMTP(self._config.smtp_host, self._config.smtp_port, timeout=10) as server:
            if self._config.smtp_use_tls:
                server.starttls()
            if self._config.smtp_username and self._config.smtp_password:
                server.login(self._config.smtp_username, self._config.smtp_password)
            server.send_message(message)
        logger.info("Email sent to %s: %s", to, subject)
        return True


email_sender = EmailSender(settings)
