import os
import smtplib
import sys

import httpx
import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from slotwise.config import Settings
from slotwise.errors import ExternalDeliveryError, NotFoundError
from slotwise.models import NotificationEvent
from slotwise.services.directory_store import DirectoryStore
from slotwise.services.notification_dispatcher import NotificationDispatcher
from slotwise.services.notification_store import NotificationStore
from slotwise.services.notifier import BackgroundNotifier, InlineNotifier
from slotwise.services.push_sender import PushResult
from slotwise.services.sms_sender import SmsSender


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append(to)
        return True


class FlakyEmail:
    """Raises for one address, delivers to everyone else."""

    def __init__(self, broken_address):
        self.broken_address = broken_address
        self.sent = []

    def send(self, to, subject, html):
        if to == self.broken_address:
            raise smtplib.SMTPRecipientsRefused({to: (550, b"mailbox unavailable")})
        self.sent.append(to)
        return True


class RecordingSms:
    def send(self, to, message):
        return True


class StalePush:
    def __init__(self):
        self.calls = []

    def send(self, tokens, title, body, data=None):
        self.calls.append(list(tokens))
        return PushResult(attempted=len(tokens), delivered=len(tokens) - 1, invalid_tokens=tokens[:1])


def _dispatcher(tmp_path, email=None, push=None):
    directory = DirectoryStore(db_path=str(tmp_path / "directory.sqlite3"))
    store = NotificationStore(db_path=str(tmp_path / "notifications.sqlite3"))
    return NotificationDispatcher(
        store=store,
        directory=directory,
        email=email or RecordingEmail(),
        sms=RecordingSms(),
        push=push or StalePush(),
    )


def _event(user_id="user_1", channel="IN_APP", **extra):
    return NotificationEvent(user_id=user_id, type=channel, title="Hello", message="Test message", **extra)


def test_in_app_notification_is_sent_and_stored(tmp_path):
    dispatcher = _dispatcher(tmp_path)

    record = dispatcher.create(_event(booking_id="bk_1", metadata={"event": "booking.created"}))

    assert record.status == "SENT"
    assert record.sent_at
    stored = dispatcher.get(record.id, "user_1")
    assert stored.booking_id == "bk_1"
    assert stored.metadata == {"event": "booking.created"}


def test_email_without_address_is_failed_not_raised(tmp_path):
    email = RecordingEmail()
    dispatcher = _dispatcher(tmp_path, email=email)

    record = dispatcher.create(_event(user_id="user_4", channel="EMAIL"))

    assert record.status == "FAILED"
    assert email.sent == []


def test_raising_channel_is_recorded_then_surfaced(tmp_path):
    dispatcher = _dispatcher(tmp_path, email=FlakyEmail("asha@example.com"))

    with pytest.raises(ExternalDeliveryError) as excinfo:
        dispatcher.create(_event(channel="EMAIL"))

    assert excinfo.value.channel == "EMAIL"
    assert dispatcher.get(excinfo.value.notification_id, "user_1").status == "FAILED"


def test_notify_swallows_delivery_errors(tmp_path):
    dispatcher = _dispatcher(tmp_path, email=FlakyEmail("asha@example.com"))

    record = dispatcher.notify(_event(channel="EMAIL"))

    assert record is not None
    assert record.status == "FAILED"


def test_unknown_channel_is_failed(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    assert dispatcher.create(_event(channel="FAX")).status == "FAILED"


def test_push_prunes_invalid_device_tokens(tmp_path):
    push = StalePush()
    dispatcher = _dispatcher(tmp_path, push=push)
    dispatcher.register_device("user_1", "stale-token")
    dispatcher.register_device("user_1", "fresh-token", platform="ios")
    dispatcher.register_device("user_1", "   ")

    record = dispatcher.create(_event(channel="PUSH"))

    assert record.status == "SENT"
    assert sorted(push.calls[0]) == ["fresh-token", "stale-token"]
    assert len(dispatcher.store.device_tokens("user_1")) == 1


def test_bulk_send_continues_past_failures(tmp_path):
    email = FlakyEmail("ravi@example.com")
    dispatcher = _dispatcher(tmp_path, email=email)

    records = dispatcher.send_bulk(["user_1", "user_2", "user_3", "user_1"], "EMAIL", "Maintenance", "Back soon")

    assert [record.user_id for record in records] == ["user_1", "user_2", "user_3"]
    assert {record.user_id: record.status for record in records} == {
        "user_1": "SENT",
        "user_2": "FAILED",
        "user_3": "SENT",
    }
    assert email.sent == ["asha@example.com", "meena@example.com"]


def test_reads_are_scoped_to_owner(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    record = dispatcher.create(_event())

    with pytest.raises(NotFoundError):
        dispatcher.get(record.id, "user_2")
    with pytest.raises(NotFoundError):
        dispatcher.mark_read(record.id, "user_2")
    with pytest.raises(NotFoundError):
        dispatcher.delete(record.id, "user_2")

    assert dispatcher.unread_count("user_1") == 1
    assert dispatcher.mark_read(record.id, "user_1").read_at
    assert dispatcher.unread_count("user_1") == 0

    dispatcher.delete(record.id, "user_1")
    with pytest.raises(NotFoundError):
        dispatcher.get(record.id, "user_1")


def test_list_and_mark_all_read(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    for _ in range(3):
        dispatcher.create(_event())
    dispatcher.create(_event(user_id="user_2"))

    page = dispatcher.list_for_user("user_1", page=1, limit=2)
    assert page.pagination.total == 3
    assert len(page.notifications) == 2

    assert dispatcher.mark_all_read("user_1") == 3
    assert dispatcher.list_for_user("user_1", unread_only=True).pagination.total == 0
    assert dispatcher.unread_count("user_2") == 1


def test_background_notifier_delivers_after_flush(tmp_path):
    dispatcher = _dispatcher(tmp_path)
    notifier = BackgroundNotifier(dispatcher, max_workers=2)

    notifier.notify_many([_event(booking_id=f"bk_{index}") for index in range(5)])
    notifier.flush(timeout=5)
    notifier.shutdown()

    assert dispatcher.unread_count("user_1") == 5


def test_notifier_never_raises(tmp_path, monkeypatch):
    dispatcher = _dispatcher(tmp_path)

    def broken_notify(event):
        raise RuntimeError("notification store offline")

    monkeypatch.setattr(dispatcher, "notify", broken_notify)

    InlineNotifier(dispatcher).notify(_event())


def _twilio_settings(tmp_path):
    return Settings(
        data_dir=str(tmp_path),
        bookings_db_path=str(tmp_path / "b.sqlite3"),
        directory_db_path=str(tmp_path / "d.sqlite3"),
        notifications_db_path=str(tmp_path / "n.sqlite3"),
        twilio_account_sid="AC123",
        twilio_auth_token="secret",
        twilio_from_number="+15550001111",
    )


def test_sms_sender_posts_to_twilio(tmp_path):
    captured = {}

    def handler(request):
        captured["url"] = str(request.url)
        captured["body"] = request.content.decode("utf-8")
        return httpx.Response(201, json={"sid": "SM1"})

    sender = SmsSender(_twilio_settings(tmp_path), transport=httpx.MockTransport(handler))

    assert sender.send("+919800000001", "Your booking is confirmed") is True
    assert captured["url"].endswith("/Accounts/AC123/Messages.json")
    assert "To=%2B919800000001" in captured["body"]


def test_sms_sender_rejects_non_e164_and_error_responses(tmp_path):
    sender = SmsSender(
        _twilio_settings(tmp_path),
        transport=httpx.MockTransport(lambda request: httpx.Response(400, json={"message": "bad"})),
    )

    assert sender.send("9800000001", "hi") is False
    assert sender.send("+919800000001", "hi") is False


def test_sms_sender_disabled_without_credentials(tmp_path):
    sender = SmsSender(
        Settings(
            data_dir=str(tmp_path),
            bookings_db_path="b",
            directory_db_path="d",
            notifications_db_path="n",
        )
    )
    assert sender.enabled is False
    assert sender.send("+919800000001", "hi") is False
