from dataclasses import dataclass
from datetime import date
from typing import Optional

from slotwise.services.booking_store import BookingStore
from slotwise.services.directory_store import DirectoryStore
from slotwise.services.slot_time import (
    format_time_of_day,
    minutes_since_midnight,
    parse_booking_date,
    parse_time_of_day,
    weekday_index,
)

POLICY_OVERLAP = "overlap"
POLICY_EXACT = "exact"

REASON_OUTSIDE_AVAILABILITY = "outside provider availability"
REASON_SLOT_BOOKED = "slot already booked"


@dataclass(frozen=True)
class SlotDecision:
    admitted: bool
    reason: Optional[str] = None
    conflicting_booking_id: Optional[str] = None


@dataclass
class ConflictResolver:
    """Decides whether a provider can take a booking at a given start time.

    Dates and times-of-day are compared independently within the booking's
    own timezone; there is no combined instant.
    """

    directory: DirectoryStore
    bookings: BookingStore
    policy: str = POLICY_OVERLAP

    def __post_init__(self) -> None:
        if self.policy not in {POLICY_OVERLAP, POLICY_EXACT}:
            raise ValueError(f"Unknown conflict policy: {self.policy}")

    def within_availability(self, provider_id: str, booking_date: date, start_minutes: int) -> bool:
        windows = self.directory.list_active_windows(provider_id, weekday_index(booking_date))
        for window in windows:
            if minutes_since_midnight(window.start_time) <= start_minutes < minutes_since_midnight(window.end_time):
                return True
        return False

    def check(
        self,
        provider_id: str,
        booking_date: str,
        booking_time: str,
        duration_minutes: int,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> SlotDecision:
        parsed_date = parse_booking_date(booking_date)
        parsed_time = parse_time_of_day(booking_time)
        start = parsed_time.hour * 60 + parsed_time.minute
        if not self.within_availability(provider_id, parsed_date, start):
            return SlotDecision(admitted=False, reason=REASON_OUTSIDE_AVAILABILITY)

        if self.policy == POLICY_EXACT:
            holder = self.bookings.find_active_at(
                provider_id,
                parsed_date.isoformat(),
                format_time_of_day(parsed_time),
                exclude_booking_id=exclude_booking_id,
            )
            if holder is not None:
                return SlotDecision(admitted=False, reason=REASON_SLOT_BOOKED, conflicting_booking_id=holder.id)
            return SlotDecision(admitted=True)

        end = start + duration_minutes
        existing = self.bookings.list_active_on_date(
            provider_id, parsed_date.isoformat(), exclude_booking_id=exclude_booking_id
        )
        for booking in existing:
            other_start = minutes_since_midnight(booking.booking_time)
            if other_start < end and start < other_start + booking.duration_minutes:
                return SlotDecision(admitted=False, reason=REASON_SLOT_BOOKED, conflicting_booking_id=booking.id)
        return SlotDecision(admitted=True)
