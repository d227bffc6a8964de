import logging
from dataclasses import dataclass, field
from threading import Lock
from typing import List, Optional

from slotwise.config import Settings, settings

logger = logging.getLogger(__name__)


@dataclass
class PushResult:
    attempted: int = 0
    delivered: int = 0
    invalid_tokens: List[str] = field(default_factory=list)


class PushSender:
    """Firebase Cloud Messaging channel.

    Initialised on first use; without FIREBASE_CREDENTIALS_PATH every send is
    a no-op that reports zero attempts.
    """

    def __init__(self, config: Settings):
        self._credentials_path = config.firebase_credentials_path
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            if not self._credentials_path:
                self._initialized = True
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging

                cred = credentials.Certificate(self._credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except Exception:
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def send(self, tokens: List[str], title: str, body: str, data: Optional[dict[str, str]] = None) -> PushResult:
        if not tokens or not self.enabled:
            return PushResult()
        assert self._messaging is not None
        message = self._messaging.MulticastMessage(
            notification=self._messaging.Notification(title=title, body=body),
            tokens=tokens,
            data=data or {},
        )
        batch = self._messaging.send_each_for_multicast(message)
        result = PushResult(attempted=len(tokens))
        for idx, response in enumerate(batch.responses):
            if response.success:
                result.delivered += 1
                continue
            error_text = str(response.exception).lower() if response.exception else ""
            if "registration token" in error_text or "invalid argument" in error_text:
                result.invalid_tokens.append(tokens[idx])
        return result


push_sender = PushSender(settings)
