import sqlite3
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from slotwise.config import settings
from slotwise.errors import ConflictError, InvalidStateError, NotFoundError
from slotwise.models import Booking, BookingStatusChange, Review

ACTIVE_STATUSES = ("PENDING", "CONFIRMED")

# Inlined into the partial unique index, which cannot take bound parameters.
_ACTIVE_SQL = "(" + ", ".join(f"'{status}'" for status in ACTIVE_STATUSES) + ")"

_BOOKING_COLUMNS = (
    "id",
    "user_id",
    "provider_id",
    "service_id",
    "booking_date",
    "booking_time",
    "timezone",
    "duration_minutes",
    "total_amount",
    "payment_status",
    "status",
    "special_instructions",
    "cancellation_reason",
    "cancelled_by",
    "cancelled_at",
    "completed_at",
    "created_at",
    "updated_at",
)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BookingFilters:
    user_id: Optional[str] = None
    provider_id: Optional[str] = None
    service_id: Optional[str] = None
    status: Optional[str] = None
    payment_status: Optional[str] = None
    date_from: Optional[str] = None
    date_to: Optional[str] = None


@dataclass
class BookingStore:
    """Durable booking, status-history and review records.

    Bookings are never deleted. The partial unique index on active
    (provider, date, time) rows backs up the engine's per-provider lock so
    two writers can never both hold the same start time.
    """

    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        service_id TEXT NOT NULL,
                        booking_date TEXT NOT NULL,
                        booking_time TEXT NOT NULL,
                        timezone TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        total_amount TEXT NOT NULL,
                        payment_status TEXT NOT NULL DEFAULT 'PENDING',
                        status TEXT NOT NULL,
                        special_instructions TEXT,
                        cancellation_reason TEXT,
                        cancelled_by TEXT,
                        cancelled_at TEXT,
                        completed_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    f"""
                    CREATE UNIQUE INDEX IF NOT EXISTS uq_bookings_active_slot
                    ON bookings (provider_id, booking_date, booking_time)
                    WHERE status IN {_ACTIVE_SQL}
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS ix_bookings_user ON bookings (user_id)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS booking_status_history (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        actor_user_id TEXT NOT NULL,
                        from_status TEXT NOT NULL,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL UNIQUE,
                        user_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.commit()

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(**{column: row[column] for column in _BOOKING_COLUMNS})

    def _insert_history(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        actor_user_id: str,
        from_status: str,
        to_status: str,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_user_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (f"bsh_{uuid4().hex[:10]}", booking_id, actor_user_id, from_status, to_status, note, utc_now_iso()),
        )

    def insert(self, booking: Booking, *, note: str = "booking requested") -> Booking:
        values = booking.model_dump()
        values["total_amount"] = str(booking.total_amount)
        placeholders = ", ".join("?" for _ in _BOOKING_COLUMNS)
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        f"INSERT INTO bookings ({', '.join(_BOOKING_COLUMNS)}) VALUES ({placeholders})",
                        tuple(values[column] for column in _BOOKING_COLUMNS),
                    )
                    self._insert_history(conn, booking.id, booking.user_id, "NONE", booking.status, note)
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Time slot is already booked") from exc
        return booking

    def get(self, booking_id: str) -> Optional[Booking]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row) if row else None

    def require(self, booking_id: str) -> Booking:
        booking = self.get(booking_id)
        if booking is None:
            raise NotFoundError("Booking not found")
        return booking

    def find_active_at(
        self,
        provider_id: str,
        booking_date: str,
        booking_time: str,
        *,
        exclude_booking_id: Optional[str] = None,
    ) -> Optional[Booking]:
        """Return the active booking holding this provider's start time, if any."""
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    SELECT * FROM bookings
                    WHERE provider_id = ? AND booking_date = ? AND booking_time = ?
                      AND status IN {_ACTIVE_SQL} AND id != ?
                    LIMIT 1
                    """,
                    (provider_id, booking_date, booking_time, exclude_booking_id or ""),
                ).fetchone()
        return self._row_to_booking(row) if row else None

    def list_active_on_date(
        self,
        provider_id: str,
        booking_date: str,
        exclude_booking_id: Optional[str] = None,
    ) -> List[Booking]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    f"""
                    SELECT * FROM bookings
                    WHERE provider_id = ? AND booking_date = ? AND status IN {_ACTIVE_SQL}
                    ORDER BY booking_time
                    """,
                    (provider_id, booking_date),
                ).fetchall()
        return [self._row_to_booking(row) for row in rows if row["id"] != exclude_booking_id]

    def transition(
        self,
        booking_id: str,
        *,
        from_statuses: Tuple[str, ...],
        to_status: str,
        actor_user_id: str,
        note: str = "",
        fields: Optional[Dict[str, Any]] = None,
    ) -> Booking:
        """Move a booking to ``to_status`` only if it is still in one of ``from_statuses``.

        The status guard is part of the UPDATE itself, so a concurrent
        transition that got there first turns this one into InvalidStateError.
        """
        updates: Dict[str, Any] = dict(fields or {})
        updates["status"] = to_status
        updates["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in updates)
        guard = ", ".join("?" for _ in from_statuses)
        with self._lock:
            try:
                with self._connect() as conn:
                    row = conn.execute("SELECT status FROM bookings WHERE id = ?", (booking_id,)).fetchone()
                    if not row:
                        raise NotFoundError("Booking not found")
                    cursor = conn.execute(
                        f"UPDATE bookings SET {assignments} WHERE id = ? AND status IN ({guard})",
                        (*updates.values(), booking_id, *from_statuses),
                    )
                    if cursor.rowcount == 0:
                        raise InvalidStateError(f"Booking cannot move from {row['status']} to {to_status}")
                    self._insert_history(conn, booking_id, actor_user_id, row["status"], to_status, note)
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Time slot is already booked") from exc
        return self.require(booking_id)

    def search(self, filters: BookingFilters, page: int, limit: int) -> Tuple[List[Booking], int]:
        clauses: List[str] = []
        params: List[Any] = []
        for column in ("user_id", "provider_id", "service_id", "status", "payment_status"):
            value = getattr(filters, column)
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if filters.date_from:
            clauses.append("booking_date >= ?")
            params.append(filters.date_from)
        if filters.date_to:
            clauses.append("booking_date <= ?")
            params.append(filters.date_to)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                total = conn.execute(f"SELECT COUNT(*) FROM bookings{where}", tuple(params)).fetchone()[0]
                rows = conn.execute(
                    f"SELECT * FROM bookings{where} ORDER BY created_at DESC LIMIT ? OFFSET ?",
                    (*params, limit, (page - 1) * limit),
                ).fetchall()
        return [self._row_to_booking(row) for row in rows], int(total)

    def list_history(self, booking_id: str) -> List[BookingStatusChange]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
                    (booking_id,),
                ).fetchall()
        return [BookingStatusChange(**dict(row)) for row in rows]

    # Reviews

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            booking_id=row["booking_id"],
            user_id=row["user_id"],
            provider_id=row["provider_id"],
            rating=int(row["rating"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def insert_review(self, review: Review) -> Tuple[Review, float, int]:
        """Insert a review and return it with the provider's new mean rating and review count."""
        with self._lock:
            try:
                with self._connect() as conn:
                    conn.execute(
                        """
                        INSERT INTO reviews (id, booking_id, user_id, provider_id, rating, comment, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            review.id,
                            review.booking_id,
                            review.user_id,
                            review.provider_id,
                            review.rating,
                            review.comment,
                            review.created_at,
                        ),
                    )
                    mean, count = conn.execute(
                        "SELECT AVG(rating), COUNT(*) FROM reviews WHERE provider_id = ?",
                        (review.provider_id,),
                    ).fetchone()
            except sqlite3.IntegrityError as exc:
                raise ConflictError("Review already exists for this booking") from exc
        return review, float(mean), int(count)

    def get_review_for_booking(self, booking_id: str) -> Optional[Review]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM reviews WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_review(row) if row else None

    def list_reviews(self, provider_id: str) -> List[Review]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM reviews WHERE provider_id = ? ORDER BY created_at DESC",
                    (provider_id,),
                ).fetchall()
        return [self._row_to_review(row) for row in rows]


booking_store = BookingStore(db_path=settings.bookings_db_path)
