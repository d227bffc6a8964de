import os
import smtplib
import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from slotwise.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SchedulingSystemError,
    ValidationError,
)
from slotwise.models import BookingCreateRequest, BookingRescheduleRequest
from slotwise.services.booking_engine import BookingEngine
from slotwise.services.booking_store import BookingFilters, BookingStore
from slotwise.services.directory_store import DirectoryStore
from slotwise.services.notification_dispatcher import NotificationDispatcher
from slotwise.services.notification_store import NotificationStore
from slotwise.services.notifier import BackgroundNotifier, InlineNotifier
from slotwise.services.push_sender import PushResult

THURSDAY = "2024-02-15"


class RecordingEmail:
    def __init__(self):
        self.sent = []

    def send(self, to, subject, html):
        self.sent.append((to, subject))
        return True


class BrokenEmail:
    def send(self, to, subject, html):
        raise smtplib.SMTPServerDisconnected("smtp relay unreachable")


class RecordingSms:
    def __init__(self):
        self.sent = []

    def send(self, to, message):
        self.sent.append((to, message))
        return True


class NoPush:
    def send(self, tokens, title, body, data=None):
        return PushResult()


def _engine(tmp_path, *, email=None, policy="overlap", channels=("IN_APP", "EMAIL", "SMS")):
    directory = DirectoryStore(db_path=str(tmp_path / "directory.sqlite3"), admin_user_ids=frozenset({"admin_1"}))
    bookings = BookingStore(db_path=str(tmp_path / "bookings.sqlite3"))
    notifications = NotificationStore(db_path=str(tmp_path / "notifications.sqlite3"))
    dispatcher = NotificationDispatcher(
        store=notifications,
        directory=directory,
        email=email or RecordingEmail(),
        sms=RecordingSms(),
        push=NoPush(),
    )
    engine = BookingEngine(
        bookings,
        directory,
        InlineNotifier(dispatcher),
        policy=policy,
        lifecycle_channels=channels,
    )
    return engine, notifications


def _request(time="10:00", date=THURSDAY, user_id="user_1", service_id="svc_1", **extra):
    return BookingCreateRequest(
        user_id=user_id,
        provider_id="prv_1",
        service_id=service_id,
        date=date,
        time=time,
        **extra,
    )


def _completed(engine, time="10:00"):
    booking = engine.create_booking(_request(time=time))
    engine.confirm_booking(booking.id, "user_2")
    return engine.complete_booking(booking.id, "user_2")


def test_create_admits_thursday_slot_and_rejects_duplicate(tmp_path):
    engine, _ = _engine(tmp_path)

    booking = engine.create_booking(_request())

    assert booking.status == "PENDING"
    assert booking.total_amount == Decimal("2500")
    assert booking.duration_minutes == 120
    assert booking.payment_status == "PENDING"
    assert engine.bookings.get(booking.id) == booking

    with pytest.raises(ConflictError) as excinfo:
        engine.create_booking(_request(user_id="user_4"))
    assert "slot already booked" in str(excinfo.value)


def test_create_rejects_outside_availability(tmp_path):
    engine, _ = _engine(tmp_path)
    with pytest.raises(ConflictError) as excinfo:
        engine.create_booking(_request(time="19:00"))
    assert "outside provider availability" in str(excinfo.value)


def test_create_validates_input_and_catalog(tmp_path):
    engine, _ = _engine(tmp_path)

    with pytest.raises(ValidationError):
        engine.create_booking(_request(timezone="Mars/Olympus"))
    with pytest.raises(ValidationError):
        engine.create_booking(_request(time="10am"))
    with pytest.raises(ValidationError):
        engine.create_booking(_request(special_instructions="x" * 1001))
    with pytest.raises(NotFoundError):
        engine.create_booking(_request(service_id="svc_3"))
    with pytest.raises(NotFoundError):
        engine.create_booking(_request(service_id="svc_missing"))
    with pytest.raises(NotFoundError):
        engine.create_booking(
            BookingCreateRequest(user_id="user_1", provider_id="prv_3", service_id="svc_1", date=THURSDAY, time="10:00")
        )

    trimmed = engine.create_booking(_request(special_instructions="  bring flowers  "))
    assert trimmed.special_instructions == "bring flowers"


def test_concurrent_creates_admit_exactly_one(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))

    def attempt(index):
        try:
            return engine.create_booking(_request(user_id=f"racer_{index}"))
        except ConflictError:
            return None

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(attempt, range(16)))

    admitted = [result for result in results if result is not None]
    assert len(admitted) == 1
    rows, total = engine.bookings.search(BookingFilters(provider_id="prv_1", date_from=THURSDAY, date_to=THURSDAY), 1, 50)
    assert total == 1
    assert rows[0].id == admitted[0].id


def test_store_index_blocks_duplicate_active_slot(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))
    first = engine.create_booking(_request())

    with pytest.raises(ConflictError):
        engine.bookings.insert(first.model_copy(update={"id": "bk_shadow", "user_id": "user_4"}))


def test_cancelled_slot_can_be_booked_again(tmp_path):
    engine, _ = _engine(tmp_path)
    first = engine.create_booking(_request())
    engine.cancel_booking(first.id, "plans changed", "user_1")

    second = engine.create_booking(_request(user_id="user_4"))
    assert second.status == "PENDING"


def test_lifecycle_happy_path_records_history(tmp_path):
    engine, _ = _engine(tmp_path)
    booking = engine.create_booking(_request())

    confirmed = engine.confirm_booking(booking.id, "user_2")
    assert confirmed.status == "CONFIRMED"

    completed = engine.complete_booking(booking.id, "user_2")
    assert completed.status == "COMPLETED"
    assert completed.completed_at

    history = engine.booking_history(booking.id, "user_1")
    assert [(item.from_status, item.to_status) for item in history] == [
        ("NONE", "PENDING"),
        ("PENDING", "CONFIRMED"),
        ("CONFIRMED", "COMPLETED"),
    ]


def test_terminal_states_are_closed(tmp_path):
    engine, _ = _engine(tmp_path)
    completed = _completed(engine)

    with pytest.raises(InvalidStateError):
        engine.cancel_booking(completed.id, "too late", "user_1")
    with pytest.raises(InvalidStateError):
        engine.complete_booking(completed.id, "user_2")
    with pytest.raises(InvalidStateError):
        engine.confirm_booking(completed.id, "user_2")
    with pytest.raises(InvalidStateError):
        engine.reschedule_booking(
            completed.id, BookingRescheduleRequest(actor_user_id="user_1", date=THURSDAY, time="15:00")
        )
    assert engine.bookings.get(completed.id) == completed

    cancelled = engine.create_booking(_request(time="14:00"))
    engine.cancel_booking(cancelled.id, "no longer needed", "user_1")
    with pytest.raises(InvalidStateError):
        engine.confirm_booking(cancelled.id, "user_2")
    with pytest.raises(InvalidStateError):
        engine.complete_booking(cancelled.id, "user_2")
    with pytest.raises(InvalidStateError):
        engine.cancel_booking(cancelled.id, "again", "user_1")


def test_complete_requires_confirmation_first(tmp_path):
    engine, _ = _engine(tmp_path)
    booking = engine.create_booking(_request())
    with pytest.raises(InvalidStateError):
        engine.complete_booking(booking.id, "user_2")


def test_authorization_matrix(tmp_path):
    engine, _ = _engine(tmp_path)
    booking = engine.create_booking(_request())

    with pytest.raises(ForbiddenError):
        engine.cancel_booking(booking.id, "not mine", "stranger_9")
    with pytest.raises(ForbiddenError):
        engine.confirm_booking(booking.id, "user_1")
    with pytest.raises(ForbiddenError):
        engine.confirm_booking(booking.id, "user_3")
    with pytest.raises(ForbiddenError):
        engine.get_booking(booking.id, "stranger_9")
    assert engine.bookings.get(booking.id).status == "PENDING"

    assert engine.confirm_booking(booking.id, "admin_1").status == "CONFIRMED"
    assert engine.cancel_booking(booking.id, "provider unavailable", "user_2").cancelled_by == "user_2"


def test_cancel_requires_reason(tmp_path):
    engine, _ = _engine(tmp_path)
    booking = engine.create_booking(_request())
    with pytest.raises(ValidationError):
        engine.cancel_booking(booking.id, "   ", "user_1")


def test_unknown_booking_is_not_found(tmp_path):
    engine, _ = _engine(tmp_path)
    with pytest.raises(NotFoundError):
        engine.cancel_booking("bk_missing", "reason", "user_1")
    with pytest.raises(NotFoundError):
        engine.add_review("bk_missing", 5, None, "user_1")


def test_review_gating_and_rating_mean(tmp_path):
    engine, _ = _engine(tmp_path)
    pending = engine.create_booking(_request(time="15:00"))
    with pytest.raises(InvalidStateError):
        engine.add_review(pending.id, 5, "early", "user_1")

    first = _completed(engine, time="10:00")
    with pytest.raises(ForbiddenError):
        engine.add_review(first.id, 5, "not my booking", "user_4")

    review = engine.add_review(first.id, 5, "Wonderful ceremony", "user_1")
    assert review.rating == 5
    provider = engine.directory.get_provider("prv_1")
    assert provider.rating == 5.0
    assert provider.review_count == 1

    with pytest.raises(ConflictError):
        engine.add_review(first.id, 4, "second try", "user_1")

    engine.cancel_booking(pending.id, "freeing the slot", "user_1")
    second = _completed(engine, time="15:00")
    engine.add_review(second.id, 3, None, "user_1")

    provider = engine.directory.get_provider("prv_1")
    assert provider.rating == 4.0
    assert provider.review_count == 2
    assert len(engine.list_provider_reviews("prv_1")) == 2


def test_reschedule_moves_slot_and_resets_to_pending(tmp_path):
    engine, _ = _engine(tmp_path)
    booking = engine.create_booking(_request())
    blocker = engine.create_booking(_request(time="14:00", user_id="user_4"))
    engine.confirm_booking(booking.id, "user_2")

    with pytest.raises(ConflictError):
        engine.reschedule_booking(
            booking.id, BookingRescheduleRequest(actor_user_id="user_1", date=THURSDAY, time="13:00")
        )

    moved = engine.reschedule_booking(
        booking.id, BookingRescheduleRequest(actor_user_id="user_1", date="2024-02-16", time="11:00")
    )
    assert moved.status == "PENDING"
    assert (moved.booking_date, moved.booking_time) == ("2024-02-16", "11:00")

    # The vacated Thursday slot is free again.
    assert engine.resolver.check("prv_1", THURSDAY, "10:00", 60).admitted is True
    assert engine.bookings.get(blocker.id).status == "PENDING"


def test_search_is_scoped_by_role(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))
    mine = engine.create_booking(_request(time="10:00"))
    engine.create_booking(_request(time="14:00", user_id="user_4"))
    other_provider = engine.create_booking(
        BookingCreateRequest(user_id="user_1", provider_id="prv_2", service_id="svc_2", date=THURSDAY, time="16:00")
    )

    as_user = engine.search_bookings(BookingFilters(), "user_1")
    assert {item.id for item in as_user.bookings} == {mine.id, other_provider.id}

    as_provider = engine.search_bookings(BookingFilters(), "user_2")
    assert as_provider.pagination.total == 2
    assert all(item.provider_id == "prv_1" for item in as_provider.bookings)

    as_admin = engine.search_bookings(BookingFilters(status="PENDING"), "admin_1", page=1, limit=2)
    assert as_admin.pagination.total == 3
    assert as_admin.pagination.pages == 2
    assert len(as_admin.bookings) == 2


def test_available_slots_flag_booked_and_overlapping_starts(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))
    engine.create_booking(_request(time="10:00"))

    slots = {slot.time: slot for slot in engine.available_slots("prv_1", THURSDAY, service_id="svc_2")}

    assert len(slots) == 18
    assert slots["09:00"].available is True
    assert slots["09:30"].available is False
    assert slots["10:00"].reason == "slot already booked"
    assert slots["11:30"].available is False
    assert slots["12:00"].available is True
    assert engine.available_slots("prv_1", "2024-02-17") == []


def test_channel_failure_does_not_unwind_booking(tmp_path):
    engine, notifications = _engine(tmp_path, email=BrokenEmail())

    booking = engine.create_booking(_request())

    assert engine.bookings.get(booking.id).status == "PENDING"
    rows, _ = notifications.search(user_id="user_1", booking_id=booking.id, limit=50)
    by_type = {row.type: row.status for row in rows}
    assert by_type["EMAIL"] == "FAILED"
    assert by_type["IN_APP"] == "SENT"
    assert by_type["SMS"] == "SENT"


def test_lifecycle_notifications_reach_both_parties(tmp_path):
    engine, notifications = _engine(tmp_path)
    booking = engine.create_booking(_request())
    engine.confirm_booking(booking.id, "user_2")
    engine.cancel_booking(booking.id, "weather", "user_1")

    requester, _ = notifications.search(user_id="user_1", notification_type="IN_APP", limit=50)
    provider, _ = notifications.search(user_id="user_2", notification_type="IN_APP", limit=50)

    assert {row.metadata["event"] for row in requester} == {"booking.created", "booking.confirmed"}
    assert {row.metadata["event"] for row in provider} == {"booking.created", "booking.cancelled"}


def test_missing_contact_details_record_failed_channels(tmp_path):
    engine, notifications = _engine(tmp_path)
    booking = engine.create_booking(_request(user_id="user_4"))

    rows, _ = notifications.search(user_id="user_4", booking_id=booking.id, limit=50)
    by_type = {row.type: row.status for row in rows}
    assert by_type == {"IN_APP": "SENT", "EMAIL": "FAILED", "SMS": "FAILED"}


def test_unexpected_collaborator_failure_becomes_system_error(tmp_path, monkeypatch):
    engine, _ = _engine(tmp_path)

    def broken_provider(provider_id):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(engine.directory, "get_provider", broken_provider)

    with pytest.raises(SchedulingSystemError):
        engine.create_booking(_request())
    _, total = engine.bookings.search(BookingFilters(), 1, 10)
    assert total == 0


def test_bookings_commit_and_notify_after_background_notifier_shutdown(tmp_path):
    engine, notifications = _engine(tmp_path, channels=("IN_APP",))
    engine.notifier = BackgroundNotifier(engine.notifier.dispatcher, max_workers=1)
    engine.notifier.shutdown()

    booking = engine.create_booking(_request())

    assert engine.bookings.get(booking.id).status == "PENDING"
    rows, _ = notifications.search(user_id="user_1", booking_id=booking.id, limit=50)
    assert [row.status for row in rows] == ["SENT"]


def test_provider_locks_are_dropped_once_idle(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))

    held = engine._provider_lock("prv_1")
    assert engine._provider_lock("prv_1") is held
    del held
    assert "prv_1" not in engine._provider_locks

    engine.create_booking(_request())
    assert len(engine._provider_locks) == 0


def test_window_with_unpadded_times_accepts_bookings(tmp_path):
    engine, _ = _engine(tmp_path, channels=("IN_APP",))
    engine.directory.add_window("prv_1", day_of_week=6, start_time="8:00", end_time="9:30")

    booking = engine.create_booking(_request(date="2024-02-17", time="8:00", service_id="svc_2"))

    assert booking.booking_time == "08:00"
    with pytest.raises(ConflictError):
        engine.create_booking(_request(date="2024-02-17", time="9:30", service_id="svc_2"))
