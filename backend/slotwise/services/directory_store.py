import logging
import sqlite3
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from threading import Lock
from typing import Any, FrozenSet, List, Optional
from uuid import uuid4

from slotwise.config import settings
from slotwise.errors import NotFoundError, ValidationError
from slotwise.models import AvailabilityWindow, ProviderInfo, ServiceInfo, UserContact
from slotwise.services.cache import Cache, MemoryCache, build_cache
from slotwise.services.slot_time import format_time_of_day, parse_time_of_day

logger = logging.getLogger(__name__)

SEED_USERS = [
    ("user_1", "Asha Rao", "asha@example.com", "+919800000001", "USER"),
    ("user_2", "Pt. Ravi Shastri", "ravi@example.com", "+919800000002", "PROVIDER"),
    ("user_3", "Pt. Meena Joshi", "meena@example.com", None, "PROVIDER"),
    ("user_4", "Karan Mehta", None, None, "USER"),
    ("admin_1", "Operations", "ops@example.com", None, "ADMIN"),
]

SEED_PROVIDERS = [
    ("prv_1", "user_2", "Pt. Ravi Shastri", 1),
    ("prv_2", "user_3", "Pt. Meena Joshi", 1),
    ("prv_3", "user_4", "Retired listing", 0),
]

SEED_SERVICES = [
    ("svc_1", "Griha Pravesh Puja", 120, "2500", 1),
    ("svc_2", "Satyanarayan Katha", 60, "1100", 1),
    ("svc_3", "Archived Havan", 90, "1800", 0),
]

# (provider, day_of_week, start, end); 0 = Sunday
SEED_WINDOWS = [
    *[("prv_1", day, "09:00", "18:00") for day in range(1, 6)],
    ("prv_2", 0, "07:00", "12:00"),
    ("prv_2", 6, "07:00", "12:00"),
    *[("prv_2", day, "16:00", "20:00") for day in range(1, 6)],
]


def _as_bool(value: Any) -> bool:
    return bool(int(value))


@dataclass
class DirectoryStore:
    """Users, provider profiles, the service catalog and weekly open hours.

    Read-only from the booking engine's point of view, apart from the
    provider aggregate rating. Service and availability reads are memoized
    through ``cache``; every write here invalidates the keys it affects.
    """

    db_path: str
    cache: Cache = field(default_factory=MemoryCache)
    cache_ttl_seconds: int = 300
    admin_user_ids: FrozenSet[str] = frozenset()
    seed: bool = True

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        if self.seed:
            self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS users (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL DEFAULT '',
                        email TEXT,
                        phone TEXT,
                        role TEXT NOT NULL DEFAULT 'USER'
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL UNIQUE,
                        name TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        rating REAL NOT NULL DEFAULT 0,
                        review_count INTEGER NOT NULL DEFAULT 0
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS services (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        base_price TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS availability_windows (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        day_of_week INTEGER NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        is_active INTEGER NOT NULL DEFAULT 1
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS ix_windows_provider_day ON availability_windows (provider_id, day_of_week)"
                )
                conn.commit()

    def _seed_if_needed(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "INSERT OR IGNORE INTO users (id, name, email, phone, role) VALUES (?, ?, ?, ?, ?)",
                    SEED_USERS,
                )
                conn.executemany(
                    "INSERT OR IGNORE INTO providers (id, user_id, name, is_active) VALUES (?, ?, ?, ?)",
                    SEED_PROVIDERS,
                )
                conn.executemany(
                    """
                    INSERT OR IGNORE INTO services (id, name, duration_minutes, base_price, is_active)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    SEED_SERVICES,
                )
                has_windows = conn.execute("SELECT 1 FROM availability_windows LIMIT 1").fetchone()
                if not has_windows:
                    conn.executemany(
                        """
                        INSERT INTO availability_windows (id, provider_id, day_of_week, start_time, end_time, is_active)
                        VALUES (?, ?, ?, ?, ?, 1)
                        """,
                        [(f"aw_{uuid4().hex[:10]}", *window) for window in SEED_WINDOWS],
                    )
                conn.commit()

    # Cache helpers: a broken cache only costs a database read.

    def _cache_get(self, key: str) -> Optional[Any]:
        try:
            return self.cache.get(key)
        except Exception:
            logger.exception("Cache read failed for %s", key)
            return None

    def _cache_set(self, key: str, value: Any) -> None:
        try:
            self.cache.set(key, value, self.cache_ttl_seconds)
        except Exception:
            logger.exception("Cache write failed for %s", key)

    def _cache_invalidate(self, pattern: str) -> None:
        try:
            self.cache.delete_pattern(pattern)
        except Exception:
            logger.exception("Cache invalidation failed for %s", pattern)

    # Users

    def get_user(self, user_id: str) -> UserContact:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()
        if not row:
            raise NotFoundError("User not found")
        return UserContact(id=row["id"], name=row["name"], email=row["email"], phone=row["phone"], role=row["role"])

    def find_user(self, user_id: str) -> Optional[UserContact]:
        try:
            return self.get_user(user_id)
        except NotFoundError:
            return None

    def add_user(
        self,
        user_id: str,
        *,
        name: str = "",
        email: Optional[str] = None,
        phone: Optional[str] = None,
        role: str = "USER",
    ) -> UserContact:
        if role not in {"USER", "PROVIDER", "ADMIN"}:
            raise ValidationError("Invalid role. Allowed: USER, PROVIDER, ADMIN")
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO users (id, name, email, phone, role) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name, email = excluded.email,
                        phone = excluded.phone, role = excluded.role
                    """,
                    (user_id, name, email, phone, role),
                )
                conn.commit()
        return UserContact(id=user_id, name=name, email=email, phone=phone, role=role)

    def resolve_role(self, user_id: str) -> str:
        if user_id in self.admin_user_ids:
            return "ADMIN"
        user = self.find_user(user_id)
        if user and user.role == "ADMIN":
            return "ADMIN"
        if user and user.role == "PROVIDER":
            return "PROVIDER"
        if self.find_provider_by_user(user_id):
            return "PROVIDER"
        return "USER"

    # Providers

    def _row_to_provider(self, row: sqlite3.Row) -> ProviderInfo:
        return ProviderInfo(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            is_active=_as_bool(row["is_active"]),
            rating=float(row["rating"]),
            review_count=int(row["review_count"]),
        )

    def get_provider(self, provider_id: str) -> ProviderInfo:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise NotFoundError("Provider not found")
        return self._row_to_provider(row)

    def find_provider_by_user(self, user_id: str) -> Optional[ProviderInfo]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM providers WHERE user_id = ?", (user_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def add_provider(self, provider_id: str, *, user_id: str, name: str, is_active: bool = True) -> ProviderInfo:
        if not name.strip():
            raise ValidationError("Provider name is required")
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO providers (id, user_id, name, is_active) VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        user_id = excluded.user_id, name = excluded.name, is_active = excluded.is_active
                    """,
                    (provider_id, user_id, name.strip(), int(is_active)),
                )
                conn.commit()
        return self.get_provider(provider_id)

    def update_aggregate_rating(self, provider_id: str, mean: float, review_count: int) -> ProviderInfo:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE providers SET rating = ?, review_count = ? WHERE id = ?",
                    (round(mean, 2), review_count, provider_id),
                )
                conn.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Provider not found")
        return self.get_provider(provider_id)

    # Service catalog

    def get_service(self, service_id: str) -> ServiceInfo:
        cache_key = f"service:{service_id}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return ServiceInfo.model_validate(cached)
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM services WHERE id = ?", (service_id,)).fetchone()
        if not row:
            raise NotFoundError("Service not found")
        service = ServiceInfo(
            id=row["id"],
            name=row["name"],
            duration_minutes=int(row["duration_minutes"]),
            base_price=Decimal(row["base_price"]),
            is_active=_as_bool(row["is_active"]),
        )
        self._cache_set(cache_key, service.model_dump(mode="json"))
        return service

    def add_service(
        self,
        service_id: str,
        *,
        name: str,
        duration_minutes: int,
        base_price: Decimal,
        is_active: bool = True,
    ) -> ServiceInfo:
        if duration_minutes <= 0:
            raise ValidationError("duration_minutes must be > 0")
        if Decimal(base_price) < 0:
            raise ValidationError("base_price must not be negative")
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO services (id, name, duration_minutes, base_price, is_active) VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        name = excluded.name, duration_minutes = excluded.duration_minutes,
                        base_price = excluded.base_price, is_active = excluded.is_active
                    """,
                    (service_id, name, duration_minutes, str(base_price), int(is_active)),
                )
                conn.commit()
        self._cache_invalidate(f"service:{service_id}")
        return self.get_service(service_id)

    # Availability

    def _row_to_window(self, row: sqlite3.Row) -> AvailabilityWindow:
        return AvailabilityWindow(
            id=row["id"],
            provider_id=row["provider_id"],
            day_of_week=int(row["day_of_week"]),
            start_time=row["start_time"],
            end_time=row["end_time"],
            is_active=_as_bool(row["is_active"]),
        )

    def list_active_windows(self, provider_id: str, weekday: int) -> List[AvailabilityWindow]:
        cache_key = f"windows:{provider_id}:{weekday}"
        cached = self._cache_get(cache_key)
        if cached is not None:
            return [AvailabilityWindow.model_validate(item) for item in cached]
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    """
                    SELECT * FROM availability_windows
                    WHERE provider_id = ? AND day_of_week = ? AND is_active = 1
                    ORDER BY start_time
                    """,
                    (provider_id, weekday),
                ).fetchall()
        windows = [self._row_to_window(row) for row in rows]
        self._cache_set(cache_key, [window.model_dump(mode="json") for window in windows])
        return windows

    def list_windows(self, provider_id: str) -> List[AvailabilityWindow]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT * FROM availability_windows WHERE provider_id = ? ORDER BY day_of_week, start_time",
                    (provider_id,),
                ).fetchall()
        return [self._row_to_window(row) for row in rows]

    def add_window(
        self,
        provider_id: str,
        *,
        day_of_week: int,
        start_time: str,
        end_time: str,
        is_active: bool = True,
    ) -> AvailabilityWindow:
        if not 0 <= day_of_week <= 6:
            raise ValidationError("day_of_week must be between 0 (Sunday) and 6 (Saturday)")
        opens = parse_time_of_day(start_time, field="start_time")
        closes = parse_time_of_day(end_time, field="end_time")
        if closes <= opens:
            raise ValidationError("end_time must be after start_time")
        start_time, end_time = format_time_of_day(opens), format_time_of_day(closes)
        window = AvailabilityWindow(
            id=f"aw_{uuid4().hex[:10]}",
            provider_id=provider_id,
            day_of_week=day_of_week,
            start_time=start_time,
            end_time=end_time,
            is_active=is_active,
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO availability_windows (id, provider_id, day_of_week, start_time, end_time, is_active)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (window.id, provider_id, day_of_week, start_time, end_time, int(is_active)),
                )
                conn.commit()
        self._cache_invalidate(f"windows:{provider_id}:*")
        return window

    def set_window_active(self, window_id: str, is_active: bool) -> AvailabilityWindow:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE availability_windows SET is_active = ? WHERE id = ?",
                    (int(is_active), window_id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM availability_windows WHERE id = ?", (window_id,)).fetchone()
        if not row:
            raise NotFoundError("Availability window not found")
        window = self._row_to_window(row)
        self._cache_invalidate(f"windows:{window.provider_id}:*")
        return window


def _build_default_store() -> DirectoryStore:
    return DirectoryStore(
        db_path=settings.directory_db_path,
        cache=build_cache(settings),
        cache_ttl_seconds=settings.cache_ttl_seconds,
        admin_user_ids=settings.admin_user_ids,
    )


directory_store = _build_default_store()
