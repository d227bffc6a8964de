import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import FrozenSet, Tuple

DEFAULT_DATA_DIR = Path(__file__).resolve().parents[1] / "data"

NOTIFICATION_CHANNELS = ("EMAIL", "SMS", "IN_APP", "PUSH")


def _env_str(name: str, default: str) -> str:
    value = os.getenv(name, "").strip()
    return value or default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name, "").strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes"}


def _env_csv(name: str, default: str = "") -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _lifecycle_channels() -> Tuple[str, ...]:
    requested = [item.upper() for item in _env_csv("LIFECYCLE_CHANNELS", "IN_APP,EMAIL,SMS")]
    channels = tuple(dict.fromkeys(item for item in requested if item in NOTIFICATION_CHANNELS))
    return channels or ("IN_APP",)


@dataclass(frozen=True)
class Settings:
    data_dir: str
    bookings_db_path: str
    directory_db_path: str
    notifications_db_path: str
    conflict_policy: str = "overlap"
    notification_dispatch: str = "background"
    notification_workers: int = 4
    lifecycle_channels: Tuple[str, ...] = ("IN_APP", "EMAIL", "SMS")
    admin_user_ids: FrozenSet[str] = field(default_factory=frozenset)
    cache_backend: str = "memory"
    redis_url: str = "redis://localhost:6379/0"
    cache_ttl_seconds: int = 300
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_from_email: str = ""
    smtp_use_tls: bool = True
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""
    twilio_from_number: str = ""
    firebase_credentials_path: str = ""
    special_instructions_max_length: int = 1000
    default_page_size: int = 10
    max_page_size: int = 100
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        data_dir = _env_str("SLOTWISE_DATA_DIR", str(DEFAULT_DATA_DIR))
        conflict_policy = _env_str("CONFLICT_POLICY", "overlap").lower()
        if conflict_policy not in {"overlap", "exact"}:
            conflict_policy = "overlap"
        dispatch = _env_str("NOTIFICATION_DISPATCH", "background").lower()
        if dispatch not in {"background", "inline"}:
            dispatch = "background"
        return cls(
            data_dir=data_dir,
            bookings_db_path=_env_str("BOOKINGS_DB_PATH", str(Path(data_dir) / "bookings.sqlite3")),
            directory_db_path=_env_str("DIRECTORY_DB_PATH", str(Path(data_dir) / "directory.sqlite3")),
            notifications_db_path=_env_str(
                "NOTIFICATIONS_DB_PATH", str(Path(data_dir) / "notifications.sqlite3")
            ),
            conflict_policy=conflict_policy,
            notification_dispatch=dispatch,
            notification_workers=_env_int("NOTIFICATION_WORKERS", 4),
            lifecycle_channels=_lifecycle_channels(),
            admin_user_ids=frozenset(_env_csv("ADMIN_USER_IDS", "admin_1")),
            cache_backend=_env_str("CACHE_BACKEND", "memory").lower(),
            redis_url=_env_str("REDIS_URL", "redis://localhost:6379/0"),
            cache_ttl_seconds=_env_int("CACHE_TTL_SECONDS", 300),
            smtp_host=_env_str("SMTP_HOST", ""),
            smtp_port=_env_int("SMTP_PORT", 587),
            smtp_username=_env_str("SMTP_USERNAME", ""),
            smtp_password=_env_str("SMTP_PASSWORD", ""),
            smtp_from_email=_env_str("SMTP_FROM_EMAIL", ""),
            smtp_use_tls=_env_bool("SMTP_USE_TLS", True),
            twilio_account_sid=_env_str("TWILIO_ACCOUNT_SID", ""),
            twilio_auth_token=_env_str("TWILIO_AUTH_TOKEN", ""),
            twilio_from_number=_env_str("TWILIO_FROM_NUMBER", ""),
            firebase_credentials_path=_env_str("FIREBASE_CREDENTIALS_PATH", ""),
            special_instructions_max_length=_env_int("SPECIAL_INSTRUCTIONS_MAX_LENGTH", 1000),
            default_page_size=_env_int("DEFAULT_PAGE_SIZE", 10),
            max_page_size=_env_int("MAX_PAGE_SIZE", 100),
            log_level=_env_str("LOG_LEVEL", "INFO").upper(),
        )


settings = Settings.from_env()
