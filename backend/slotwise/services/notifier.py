import logging
from concurrent.futures import Future, ThreadPoolExecutor, wait
from threading import Lock
from typing import Iterable, Optional, Set

from slotwise.config import Settings
from slotwise.models import NotificationEvent
from slotwise.services.notification_dispatcher import NotificationDispatcher

logger = logging.getLogger(__name__)


class Notifier:
    """Hands lifecycle events to the dispatcher once a transition has committed.

    ``notify`` never raises: a broken channel must not unwind a booking.
    """

    def __init__(self, dispatcher: NotificationDispatcher):
        self.dispatcher = dispatcher

    def _deliver(self, event: NotificationEvent) -> None:
        try:
            self.dispatcher.notify(event)
        except Exception:
            logger.exception("Notification for %s (booking %s) was dropped", event.user_id, event.booking_id)

    def notify(self, event: NotificationEvent) -> None:
        raise NotImplementedError

    def notify_many(self, events: Iterable[NotificationEvent]) -> None:
        for event in events:
            self.notify(event)

    def flush(self, timeout: Optional[float] = None) -> None:
        return None

    def shutdown(self) -> None:
        return None


class InlineNotifier(Notifier):
    def notify(self, event: NotificationEvent) -> None:
        self._deliver(event)


class BackgroundNotifier(Notifier):
    def __init__(self, dispatcher: NotificationDispatcher, max_workers: int = 4):
        super().__init__(dispatcher)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="slotwise-notify")
        self._pending: Set[Future] = set()
        self._lock = Lock()

    def notify(self, event: NotificationEvent) -> None:
        try:
            future = self._executor.submit(self._deliver, event)
        except RuntimeError:
            # Executor already shut down; deliver on the caller's thread.
            logger.warning("Notifier is shut down; delivering %s notification inline", event.type)
            self._deliver(event)
            return
        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._forget)

    def _forget(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> None:
        with self._lock:
            pending = list(self._pending)
        if pending:
            wait(pending, timeout=timeout)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


def build_notifier(config: Settings, dispatcher: NotificationDispatcher) -> Notifier:
    if config.notification_dispatch == "inline":
        return InlineNotifier(dispatcher)
    return BackgroundNotifier(dispatcher, max_workers=config.notification_workers)
