import logging
from contextlib import contextmanager
from threading import Lock
from typing import Iterator, List, Optional, Sequence
from uuid import uuid4
from weakref import WeakValueDictionary
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from slotwise.config import settings
from slotwise.errors import (
    ConflictError,
    ForbiddenError,
    InvalidStateError,
    NotFoundError,
    SchedulingSystemError,
    SlotWiseError,
    ValidationError,
)
from slotwise.models import (
    Actor,
    Booking,
    BookingCreateRequest,
    BookingPage,
    BookingRescheduleRequest,
    BookingStatusChange,
    NotificationEvent,
    Pagination,
    ProviderInfo,
    Review,
    SlotAvailability,
)
from slotwise.services.booking_store import (
    ACTIVE_STATUSES,
    BookingFilters,
    BookingStore,
    booking_store,
    utc_now_iso,
)
from slotwise.services.conflict_resolver import ConflictResolver
from slotwise.services.directory_store import DirectoryStore, directory_store
from slotwise.services.notification_dispatcher import notification_dispatcher
from slotwise.services.notifier import Notifier, build_notifier
from slotwise.services.slot_time import (
    format_minutes,
    minutes_since_midnight,
    parse_booking_date,
    parse_time_of_day,
    weekday_index,
)

logger = logging.getLogger(__name__)

SLOT_STEP_MINUTES = 30


@contextmanager
def _collaborator_boundary(action: str) -> Iterator[None]:
    try:
        yield
    except SlotWiseError:
        raise
    except Exception as exc:
        logger.exception("Unexpected failure during %s", action)
        raise SchedulingSystemError(f"Unable to {action}") from exc


class BookingEngine:
    """Booking lifecycle: PENDING -> CONFIRMED -> COMPLETED, or -> CANCELLED.

    Every transition checks who is asking, commits, and only then hands
    notifications to the notifier. Admission runs under a per-provider lock
    so the conflict check and the insert cannot interleave with another
    request for the same provider.
    """

    def __init__(
        self,
        bookings: BookingStore,
        directory: DirectoryStore,
        notifier: Notifier,
        *,
        policy: str = "overlap",
        lifecycle_channels: Sequence[str] = ("IN_APP", "EMAIL", "SMS"),
        instructions_max_length: int = 1000,
        default_page_size: int = 10,
        max_page_size: int = 100,
    ):
        self.bookings = bookings
        self.directory = directory
        self.notifier = notifier
        self.resolver = ConflictResolver(directory=directory, bookings=bookings, policy=policy)
        self.lifecycle_channels = tuple(lifecycle_channels)
        self.instructions_max_length = instructions_max_length
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self._locks_guard = Lock()
        # Entries disappear once no request holds the lock.
        self._provider_locks: WeakValueDictionary = WeakValueDictionary()

    def _provider_lock(self, provider_id: str) -> Lock:
        with self._locks_guard:
            lock = self._provider_locks.get(provider_id)
            if lock is None:
                lock = Lock()
                self._provider_locks[provider_id] = lock
            return lock

    # Actors and authorization

    def resolve_actor(self, user_id: str) -> Actor:
        if not user_id or not user_id.strip():
            raise ValidationError("actor user id is required")
        return Actor(user_id=user_id, role=self.directory.resolve_role(user_id))

    def _provider_of(self, booking: Booking) -> ProviderInfo:
        return self.directory.get_provider(booking.provider_id)

    def _is_provider(self, booking: Booking, actor: Actor) -> bool:
        return self._provider_of(booking).user_id == actor.user_id

    def _can_view(self, booking: Booking, actor: Actor) -> bool:
        return actor.is_admin or booking.user_id == actor.user_id or self._is_provider(booking, actor)

    # Input normalisation

    def _normalize_slot(self, booking_date: str, booking_time: str, tz_name: str) -> tuple[str, str, str]:
        parsed_date = parse_booking_date(booking_date)
        parsed_time = parse_time_of_day(booking_time)
        tz_name = (tz_name or "").strip()
        try:
            ZoneInfo(tz_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValidationError(f"Unknown timezone: {tz_name or '<empty>'}") from exc
        return parsed_date.isoformat(), parsed_time.strftime("%H:%M"), tz_name

    def _normalize_instructions(self, value: Optional[str]) -> Optional[str]:
        text = (value or "").strip()
        if not text:
            return None
        if len(text) > self.instructions_max_length:
            raise ValidationError(f"special_instructions must be at most {self.instructions_max_length} characters")
        return text

    def _page_bounds(self, page: int, limit: Optional[int]) -> tuple[int, int]:
        page = max(1, page or 1)
        limit = limit or self.default_page_size
        return page, min(max(1, limit), self.max_page_size)

    # Notifications

    def _emit(self, user_id: str, booking: Booking, event_name: str, title: str, message: str) -> None:
        for channel in self.lifecycle_channels:
            self.notifier.notify(
                NotificationEvent(
                    user_id=user_id,
                    booking_id=booking.id,
                    type=channel,
                    title=title,
                    message=message,
                    metadata={"event": event_name, "status": booking.status},
                )
            )

    def _emit_to_parties(
        self,
        booking: Booking,
        provider_user_id: str,
        actor: Actor,
        event_name: str,
        title: str,
        message: str,
    ) -> None:
        for user_id in dict.fromkeys([booking.user_id, provider_user_id]):
            if user_id != actor.user_id:
                self._emit(user_id, booking, event_name, title, message)

    # Lifecycle operations

    def create_booking(self, request: BookingCreateRequest) -> Booking:
        with _collaborator_boundary("create booking"):
            booking_date, booking_time, tz_name = self._normalize_slot(request.date, request.time, request.timezone)
            instructions = self._normalize_instructions(request.special_instructions)

            provider = self.directory.get_provider(request.provider_id)
            if not provider.is_active:
                raise NotFoundError("Provider not available")
            service = self.directory.get_service(request.service_id)
            if not service.is_active:
                raise NotFoundError("Service not available")

            with self._provider_lock(provider.id):
                decision = self.resolver.check(provider.id, booking_date, booking_time, service.duration_minutes)
                if not decision.admitted:
                    logger.info(
                        "Booking rejected for provider %s on %s %s: %s",
                        provider.id,
                        booking_date,
                        booking_time,
                        decision.reason,
                    )
                    raise ConflictError(f"Time slot unavailable ({decision.reason})")
                now = utc_now_iso()
                booking = self.bookings.insert(
                    Booking(
                        id=f"bk_{uuid4().hex[:12]}",
                        user_id=request.user_id,
                        provider_id=provider.id,
                        service_id=service.id,
                        booking_date=booking_date,
                        booking_time=booking_time,
                        timezone=tz_name,
                        duration_minutes=service.duration_minutes,
                        total_amount=service.base_price,
                        payment_status="PENDING",
                        status="PENDING",
                        special_instructions=instructions,
                        created_at=now,
                        updated_at=now,
                    )
                )

        logger.info("Booking %s created by %s for provider %s", booking.id, booking.user_id, provider.id)
        self._emit(
            booking.user_id,
            booking,
            "booking.created",
            "Booking Requested",
            f"Your booking for {service.name} on {booking_date} at {booking_time} is awaiting confirmation.",
        )
        if provider.user_id != booking.user_id:
            self._emit(
                provider.user_id,
                booking,
                "booking.created",
                "New Booking Request",
                f"You have a new booking request for {service.name} on {booking_date} at {booking_time}.",
            )
        return booking

    def confirm_booking(self, booking_id: str, actor_user_id: str) -> Booking:
        with _collaborator_boundary("confirm booking"):
            actor = self.resolve_actor(actor_user_id)
            booking = self.bookings.require(booking_id)
            if not (actor.is_admin or self._is_provider(booking, actor)):
                raise ForbiddenError("Only the assigned provider can confirm this booking")
            if booking.status != "PENDING":
                raise InvalidStateError("Only pending bookings can be confirmed")
            updated = self.bookings.transition(
                booking_id,
                from_statuses=("PENDING",),
                to_status="CONFIRMED",
                actor_user_id=actor.user_id,
                note="confirmed",
            )

        logger.info("Booking %s confirmed by %s", booking_id, actor.user_id)
        self._emit(
            updated.user_id,
            updated,
            "booking.confirmed",
            "Booking Confirmed",
            f"Your booking on {updated.booking_date} at {updated.booking_time} has been confirmed.",
        )
        return updated

    def cancel_booking(self, booking_id: str, reason: str, actor_user_id: str) -> Booking:
        with _collaborator_boundary("cancel booking"):
            actor = self.resolve_actor(actor_user_id)
            reason = (reason or "").strip()
            if not reason:
                raise ValidationError("Cancellation reason is required")
            booking = self.bookings.require(booking_id)
            if not self._can_view(booking, actor):
                raise ForbiddenError("You do not have permission to cancel this booking")
            if booking.status not in ("PENDING", "CONFIRMED"):
                raise InvalidStateError(f"Booking cannot be cancelled from {booking.status}")
            updated = self.bookings.transition(
                booking_id,
                from_statuses=ACTIVE_STATUSES,
                to_status="CANCELLED",
                actor_user_id=actor.user_id,
                note=reason,
                fields={
                    "cancellation_reason": reason,
                    "cancelled_by": actor.user_id,
                    "cancelled_at": utc_now_iso(),
                },
            )
            provider = self._provider_of(updated)

        logger.info("Booking %s cancelled by %s (%s)", booking_id, actor.user_id, booking.status)
        self._emit_to_parties(
            updated,
            provider.user_id,
            actor,
            "booking.cancelled",
            "Booking Cancelled",
            f"The booking on {updated.booking_date} at {updated.booking_time} was cancelled. Reason: {reason}",
        )
        return updated

    def complete_booking(self, booking_id: str, actor_user_id: str) -> Booking:
        with _collaborator_boundary("complete booking"):
            actor = self.resolve_actor(actor_user_id)
            booking = self.bookings.require(booking_id)
            if not (actor.is_admin or self._is_provider(booking, actor)):
                raise ForbiddenError("Only the assigned provider can complete this booking")
            if booking.status != "CONFIRMED":
                raise InvalidStateError("Only confirmed bookings can be completed")
            updated = self.bookings.transition(
                booking_id,
                from_statuses=("CONFIRMED",),
                to_status="COMPLETED",
                actor_user_id=actor.user_id,
                note="completed",
                fields={"completed_at": utc_now_iso()},
            )
            provider = self._provider_of(updated)

        logger.info("Booking %s completed by %s", booking_id, actor.user_id)
        self._emit(
            updated.user_id,
            updated,
            "booking.completed",
            "Service Completed",
            f"Your service with {provider.name} has been completed. Please rate and review your experience.",
        )
        return updated

    def reschedule_booking(self, booking_id: str, request: BookingRescheduleRequest) -> Booking:
        with _collaborator_boundary("reschedule booking"):
            actor = self.resolve_actor(request.actor_user_id)
            booking = self.bookings.require(booking_id)
            if not self._can_view(booking, actor):
                raise ForbiddenError("You do not have permission to reschedule this booking")
            if booking.status not in ("PENDING", "CONFIRMED"):
                raise InvalidStateError(f"Booking cannot be rescheduled from {booking.status}")
            booking_date, booking_time, tz_name = self._normalize_slot(request.date, request.time, request.timezone)

            with self._provider_lock(booking.provider_id):
                decision = self.resolver.check(
                    booking.provider_id,
                    booking_date,
                    booking_time,
                    booking.duration_minutes,
                    exclude_booking_id=booking.id,
                )
                if not decision.admitted:
                    raise ConflictError(f"Time slot unavailable ({decision.reason})")
                updated = self.bookings.transition(
                    booking_id,
                    from_statuses=ACTIVE_STATUSES,
                    to_status="PENDING",
                    actor_user_id=actor.user_id,
                    note=(request.reason or "").strip() or f"rescheduled to {booking_date} {booking_time}",
                    fields={"booking_date": booking_date, "booking_time": booking_time, "timezone": tz_name},
                )
            provider = self._provider_of(updated)

        logger.info("Booking %s rescheduled by %s to %s %s", booking_id, actor.user_id, booking_date, booking_time)
        self._emit_to_parties(
            updated,
            provider.user_id,
            actor,
            "booking.rescheduled",
            "Booking Rescheduled",
            f"The booking has been moved to {booking_date} at {booking_time} and awaits confirmation.",
        )
        return updated

    def add_review(self, booking_id: str, rating: int, comment: Optional[str], actor_user_id: str) -> Review:
        with _collaborator_boundary("add review"):
            if not 1 <= int(rating) <= 5:
                raise ValidationError("rating must be between 1 and 5")
            actor = self.resolve_actor(actor_user_id)
            booking = self.bookings.require(booking_id)
            if booking.user_id != actor.user_id:
                raise ForbiddenError("You can only review your own bookings")
            if booking.status != "COMPLETED":
                raise InvalidStateError("Can only review completed bookings")
            if self.bookings.get_review_for_booking(booking_id):
                raise ConflictError("Review already exists for this booking")

            with self._provider_lock(booking.provider_id):
                review, mean, count = self.bookings.insert_review(
                    Review(
                        id=f"rv_{uuid4().hex[:10]}",
                        booking_id=booking.id,
                        user_id=actor.user_id,
                        provider_id=booking.provider_id,
                        rating=int(rating),
                        comment=(comment or "").strip() or None,
                        created_at=utc_now_iso(),
                    )
                )
                try:
                    self.directory.update_aggregate_rating(booking.provider_id, mean, count)
                except Exception:
                    # The review stands; the displayed rating catches up on the next review.
                    logger.exception("Rating refresh failed for provider %s", booking.provider_id)

        logger.info("Review %s added for booking %s (rating %s)", review.id, booking_id, review.rating)
        return review

    # Reads

    def get_booking(self, booking_id: str, actor_user_id: str) -> Booking:
        with _collaborator_boundary("load booking"):
            actor = self.resolve_actor(actor_user_id)
            booking = self.bookings.require(booking_id)
            if not self._can_view(booking, actor):
                raise ForbiddenError("Access denied to this booking")
            return booking

    def booking_history(self, booking_id: str, actor_user_id: str) -> List[BookingStatusChange]:
        self.get_booking(booking_id, actor_user_id)
        with _collaborator_boundary("load booking history"):
            return self.bookings.list_history(booking_id)

    def search_bookings(
        self,
        filters: BookingFilters,
        actor_user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
    ) -> BookingPage:
        with _collaborator_boundary("search bookings"):
            actor = self.resolve_actor(actor_user_id)
            page, limit = self._page_bounds(page, limit)
            if actor.role == "USER":
                filters.user_id = actor.user_id
            elif actor.role == "PROVIDER":
                own = self.directory.find_provider_by_user(actor.user_id)
                if own:
                    filters.provider_id = own.id
                else:
                    filters.user_id = actor.user_id
            rows, total = self.bookings.search(filters, page, limit)
        return BookingPage(bookings=rows, pagination=Pagination.build(page, limit, total))

    def available_slots(
        self,
        provider_id: str,
        booking_date: str,
        service_id: Optional[str] = None,
    ) -> List[SlotAvailability]:
        with _collaborator_boundary("list availability"):
            parsed_date = parse_booking_date(booking_date)
            provider = self.directory.get_provider(provider_id)
            if not provider.is_active:
                raise NotFoundError("Provider not available")
            duration = self.directory.get_service(service_id).duration_minutes if service_id else SLOT_STEP_MINUTES
            windows = self.directory.list_active_windows(provider_id, weekday_index(parsed_date))
            candidates = sorted(
                {
                    start
                    for window in windows
                    for start in range(
                        minutes_since_midnight(window.start_time),
                        minutes_since_midnight(window.end_time),
                        SLOT_STEP_MINUTES,
                    )
                }
            )
            slots: List[SlotAvailability] = []
            for start in candidates:
                decision = self.resolver.check(provider_id, parsed_date.isoformat(), format_minutes(start), duration)
                slots.append(
                    SlotAvailability(
                        date=parsed_date.isoformat(),
                        time=format_minutes(start),
                        available=decision.admitted,
                        reason=decision.reason,
                    )
                )
            return slots

    def list_provider_reviews(self, provider_id: str) -> List[Review]:
        with _collaborator_boundary("list reviews"):
            self.directory.get_provider(provider_id)
            return self.bookings.list_reviews(provider_id)


booking_engine = BookingEngine(
    bookings=booking_store,
    directory=directory_store,
    notifier=build_notifier(settings, notification_dispatcher),
    policy=settings.conflict_policy,
    lifecycle_channels=settings.lifecycle_channels,
    instructions_max_length=settings.special_instructions_max_length,
    default_page_size=settings.default_page_size,
    max_page_size=settings.max_page_size,
)
