import logging

import httpx

from slotwise.config import Settings, settings

logger = logging.getLogger(__name__)

TWILIO_API_BASE = "https://api.twilio.com/2010-04-01"


class SmsSender:
    """Twilio SMS channel over the REST API."""

    def __init__(self, config: Settings, transport: httpx.BaseTransport = None):
        self._config = config
        self._transport = transport
        self._warned_disabled = False

    @property
    def enabled(self) -> bool:
        return bool(
            self._config.twilio_account_sid and self._config.twilio_auth_token and self._config.twilio_from_number
        )

    def send(self, to: str, message: str) -> bool:
        if not self.enabled:
            if not self._warned_disabled:
                logger.info("SMS sender disabled: Twilio credentials not set")
                self._warned_disabled = True
            return False
        if not to.startswith("+"):
            logger.warning("Phone number not in E.164 format: %s", to)
            return False

        account_sid = self._config.twilio_account_sid
        with httpx.Client(transport=self._transport, timeout=10.0) as client:
            response = client.post(
                f"{TWILIO_API_BASE}/Accounts/{account_sid}/Messages.json",
                auth=(account_sid, self._config.twilio_auth_token),
                data={"To": to, "From": self._config.twilio_from_number, "Body": message},
            )
        if response.status_code in (200, 201):
            logger.info("SMS sent to %s", to)
            return True
        logger.warning("Twilio rejected SMS to %s: %s %s", to, response.status_code, response.text[:200])
        return False


sms_sender = SmsSender(settings)
