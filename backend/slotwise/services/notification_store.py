import json
import sqlite3
from dataclasses import dataclass
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional, Tuple

from slotwise.config import settings
from slotwise.models import NotificationRecord
from slotwise.services.booking_store import utc_now_iso


def _load_metadata(raw: Optional[str]) -> Dict[str, Any]:
    try:
        value = json.loads(raw or "{}")
    except json.JSONDecodeError:
        return {}
    return value if isinstance(value, dict) else {}


@dataclass
class NotificationStore:
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
                    CREATE TABLE IF NOT EXISTS notifications (
                        id TEXT PRIMARY KEY,
                        user_id TEXT NOT NULL,
                        booking_id TEXT,
                        type TEXT NOT NULL,
                        title TEXT NOT NULL,
                        message TEXT NOT NULL,
                        status TEXT NOT NULL DEFAULT 'PENDING',
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        sent_at TEXT,
                        read_at TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute("CREATE INDEX IF NOT EXISTS ix_notifications_user ON notifications (user_id, created_at)")
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS device_tokens (
                        user_id TEXT NOT NULL,
                        token TEXT NOT NULL,
                        platform TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        PRIMARY KEY (user_id, token)
                    )
                    """
                )
                conn.commit()

    def _row_to_record(self, row: sqlite3.Row) -> NotificationRecord:
        return NotificationRecord(
            id=row["id"],
            user_id=row["user_id"],
            booking_id=row["booking_id"],
            type=row["type"],
            title=row["title"],
            message=row["message"],
            status=row["status"],
            metadata=_load_metadata(row["metadata_json"]),
            sent_at=row["sent_at"],
            read_at=row["read_at"],
            created_at=row["created_at"],
        )

    def insert(self, record: NotificationRecord) -> NotificationRecord:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO notifications (id, user_id, booking_id, type, title, message, status, metadata_json, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        record.id,
                        record.user_id,
                        record.booking_id,
                        record.type,
                        record.title,
                        record.message,
                        record.status,
                        json.dumps(record.metadata),
                        record.created_at,
                    ),
                )
                conn.commit()
        return record

    def set_status(self, notification_id: str, status: str) -> Optional[NotificationRecord]:
        sent_at = utc_now_iso() if status == "SENT" else None
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    "UPDATE notifications SET status = ?, sent_at = COALESCE(?, sent_at) WHERE id = ?",
                    (status, sent_at, notification_id),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return self._row_to_record(row) if row else None

    def get(self, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return self._row_to_record(row) if row else None

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
    ) -> Tuple[List[NotificationRecord], int]:
        clauses: List[str] = []
        params: List[Any] = []
        for column, value in (
            ("user_id", user_id),
            ("booking_id", booking_id),
            ("type", notification_type),
            ("status", status),
        ):
            if value:
                clauses.append(f"{column} = ?")
                params.append(value)
        if unread_only:
            clauses.append("read_at IS NULL")
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            with self._connect() as conn:
                total = conn.execute(f"SELECT COUNT(*) FROM notifications{where}", tuple(params)).fetchone()[0]
                rows = conn.execute(
                    f"SELECT * FROM notifications{where} ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    (*params, limit, (page - 1) * limit),
                ).fetchall()
        return [self._row_to_record(row) for row in rows], int(total)

    def unread_count(self, user_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND read_at IS NULL",
                    (user_id,),
                ).fetchone()
        return int(row[0])

    def mark_read(self, user_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE notifications SET read_at = COALESCE(read_at, ?) WHERE id = ? AND user_id = ?",
                    (utc_now_iso(), notification_id, user_id),
                )
                conn.commit()
                if cursor.rowcount == 0:
                    return None
                row = conn.execute("SELECT * FROM notifications WHERE id = ?", (notification_id,)).fetchone()
        return self._row_to_record(row)

    def mark_all_read(self, user_id: str) -> int:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE notifications SET read_at = ? WHERE user_id = ? AND read_at IS NULL",
                    (utc_now_iso(), user_id),
                )
                conn.commit()
        return cursor.rowcount

    def delete(self, user_id: str, notification_id: str) -> bool:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "DELETE FROM notifications WHERE id = ? AND user_id = ?",
                    (notification_id, user_id),
                )
                conn.commit()
        return cursor.rowcount > 0

    def register_device_token(self, user_id: str, token: str, platform: str) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO device_tokens (user_id, token, platform, created_at) VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, token) DO UPDATE SET platform = excluded.platform
                    """,
                    (user_id, token, platform, utc_now_iso()),
                )
                conn.commit()

    def device_tokens(self, user_id: str) -> List[str]:
        with self._lock:
            with self._connect() as conn:
                rows = conn.execute("SELECT token FROM device_tokens WHERE user_id = ?", (user_id,)).fetchall()
        return [row["token"] for row in rows]

    def remove_device_tokens(self, user_id: str, tokens: List[str]) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.executemany(
                    "DELETE FROM device_tokens WHERE user_id = ? AND token = ?",
                    [(user_id, token) for token in tokens],
                )
                conn.commit()


notification_store = NotificationStore(db_path=settings.notifications_db_path)
