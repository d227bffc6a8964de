from datetime import date, datetime, time

from slotwise.errors import ValidationError

_TIME_FORMATS = ("%H:%M", "%H:%M:%S")


def parse_booking_date(value: str, *, field: str = "date") -> date:
    try:
        return date.fromisoformat(value)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Invalid {field}; expected YYYY-MM-DD") from exc


def parse_time_of_day(value: str, *, field: str = "time") -> time:
    """Parse a wall-clock time. Single-digit hours such as ``8:00`` are accepted."""
    text = value.strip() if isinstance(value, str) else ""
    for fmt in _TIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).time()
        except ValueError:
            continue
    raise ValidationError(f"Invalid {field}; expected HH:MM")


def format_time_of_day(value: time) -> str:
    return value.strftime("%H:%M")


def minutes_since_midnight(value: str) -> int:
    parsed = parse_time_of_day(value)
    return parsed.hour * 60 + parsed.minute


def format_minutes(minutes: int) -> str:
    return f"{minutes // 60:02d}:{minutes % 60:02d}"


def weekday_index(value: date) -> int:
    # 0 = Sunday ... 6 = Saturday
    return value.isoweekday() % 7
