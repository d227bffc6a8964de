import logging
from html import escape
from typing import Iterable, List, Optional
from uuid import uuid4

from slotwise.errors import ExternalDeliveryError, NotFoundError
from slotwise.models import NotificationEvent, NotificationPage, NotificationRecord, Pagination
from slotwise.services.booking_store import utc_now_iso
from slotwise.services.directory_store import DirectoryStore, directory_store
from slotwise.services.email_sender import EmailSender, email_sender
from slotwise.services.notification_store import NotificationStore, notification_store
from slotwise.services.push_sender import PushSender, push_sender
from slotwise.services.sms_sender import SmsSender, sms_sender

logger = logging.getLogger(__name__)


def _email_html(record: NotificationRecord) -> str:
    return f"<h3>{escape(record.title)}</h3><p>{escape(record.message)}</p>"


class NotificationDispatcher:
    """Persists one notification per event and delivers it on its channel.

    Delivery outcome lands on the record as SENT or FAILED. A channel that
    raises is recorded as FAILED and surfaced as ExternalDeliveryError; a
    channel that reports failure (or a user with no address on file) is only
    recorded.
    """

    def __init__(
        self,
        store: NotificationStore,
        directory: DirectoryStore,
        email: EmailSender,
        sms: SmsSender,
        push: PushSender,
    ):
        self.store = store
        self.directory = directory
        self.email = email
        self.sms = sms
        self.push = push

    def create(self, event: NotificationEvent) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            user_id=event.user_id,
            booking_id=event.booking_id,
            type=event.type,
            title=event.title,
            message=event.message,
            status="PENDING",
            metadata=event.metadata,
            created_at=utc_now_iso(),
        )
        self.store.insert(record)
        return self.deliver(record)

    def deliver(self, record: NotificationRecord) -> NotificationRecord:
        try:
            status = self._deliver_on_channel(record)
        except Exception as exc:
            self.store.set_status(record.id, "FAILED")
            logger.exception("%s delivery failed for notification %s", record.type, record.id)
            raise ExternalDeliveryError(record.type, record.id, str(exc)) from exc
        if status == "FAILED":
            logger.warning("%s notification %s for %s not delivered", record.type, record.id, record.user_id)
        updated = self.store.set_status(record.id, status)
        return updated or record.model_copy(update={"status": status})

    def _deliver_on_channel(self, record: NotificationRecord) -> str:
        if record.type == "IN_APP":
            return "SENT"

        if record.type == "EMAIL":
            contact = self.directory.find_user(record.user_id)
            if not contact or not contact.email:
                return "FAILED"
            return "SENT" if self.email.send(contact.email, record.title, _email_html(record)) else "FAILED"

        if record.type == "SMS":
            contact = self.directory.find_user(record.user_id)
            if not contact or not contact.phone:
                return "FAILED"
            return "SENT" if self.sms.send(contact.phone, record.message) else "FAILED"

        if record.type == "PUSH":
            tokens = self.store.device_tokens(record.user_id)
            result = self.push.send(
                tokens,
                record.title,
                record.message,
                data={"notification_id": record.id, "booking_id": record.booking_id or ""},
            )
            if result.invalid_tokens:
                self.store.remove_device_tokens(record.user_id, result.invalid_tokens)
            return "SENT"

        return "FAILED"

    def notify(self, event: NotificationEvent) -> Optional[NotificationRecord]:
        """Fire-and-forget variant of ``create``; delivery errors are logged, not raised."""
        try:
            return self.create(event)
        except ExternalDeliveryError as exc:
            return self.store.get(exc.notification_id)

    def send_bulk(
        self,
        user_ids: Iterable[str],
        notification_type: str,
        title: str,
        message: str,
        metadata: Optional[dict] = None,
    ) -> List[NotificationRecord]:
        records: List[NotificationRecord] = []
        for user_id in dict.fromkeys(user_ids):
            event = NotificationEvent(
                user_id=user_id,
                type=notification_type,
                title=title,
                message=message,
                metadata=metadata or {},
            )
            try:
                records.append(self.create(event))
            except ExternalDeliveryError as exc:
                failed = self.store.get(exc.notification_id)
                if failed:
                    records.append(failed)
            except Exception:
                logger.exception("Bulk notification to %s could not be recorded", user_id)
        return records

    # Read side, always scoped to the owning user.

    def get(self, notification_id: str, user_id: str) -> NotificationRecord:
        record = self.store.get(notification_id)
        if not record or record.user_id != user_id:
            raise NotFoundError("Notification not found")
        return record

    def list_for_user(self, user_id: str, page: int = 1, limit: int = 10, unread_only: bool = False) -> NotificationPage:
        rows, total = self.store.search(user_id=user_id, unread_only=unread_only, page=page, limit=limit)
        return NotificationPage(notifications=rows, pagination=Pagination.build(page, limit, total))

    def search(
        self,
        *,
        user_id: Optional[str] = None,
        booking_id: Optional[str] = None,
        notification_type: Optional[str] = None,
        status: Optional[str] = None,
        unread_only: bool = False,
        page: int = 1,
        limit: int = 10,
    ) -> NotificationPage:
        rows, total = self.store.search(
            user_id=user_id,
            booking_id=booking_id,
            notification_type=notification_type,
            status=status,
            unread_only=unread_only,
            page=page,
            limit=limit,
        )
        return NotificationPage(notifications=rows, pagination=Pagination.build(page, limit, total))

    def unread_count(self, user_id: str) -> int:
        return self.store.unread_count(user_id)

    def mark_read(self, notification_id: str, user_id: str) -> NotificationRecord:
        updated = self.store.mark_read(user_id=user_id, notification_id=notification_id)
        if not updated:
            raise NotFoundError("Notification not found")
        return updated

    def mark_all_read(self, user_id: str) -> int:
        return self.store.mark_all_read(user_id)

    def delete(self, notification_id: str, user_id: str) -> None:
        if not self.store.delete(user_id=user_id, notification_id=notification_id):
            raise NotFoundError("Notification not found")

    def register_device(self, user_id: str, device_token: str, platform: str = "android") -> None:
        if not device_token.strip():
            return
        self.store.register_device_token(user_id, device_token.strip(), platform)


notification_dispatcher = NotificationDispatcher(
    store=notification_store,
    directory=directory_store,
    email=email_sender,
    sms=sms_sender,
    push=push_sender,
)
