"""
SQLite ledger of fulfillment runs.

One row per payment session. The UNIQUE constraint on ``payment_session_id``
makes the first claim of a session atomic across processes. Re-arming a
failed session for another attempt goes through ``rearm_if_failed``, a single
conditional UPDATE, so only one worker wins the retry.
"""

import json
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

DEFAULT_DB_PATH = Path("data/fulfillment.db")

_COLUMNS = (
    "id",
    "payment_session_id",
    "external_id",
    "book_data_url",
    "shipping",
    "stage",
    "order_status",
    "vendor_status",
    "vendor_order_id",
    "page_count",
    "interior_url",
    "cover_url",
    "tracking_number",
    "tracking_url",
    "attempts",
    "error",
    "events",
    "created_at",
    "updated_at",
)
_UPDATABLE = frozenset(_COLUMNS) - {"id", "payment_session_id", "created_at", "events"}


def _ensure_db_dir(db_path: Path) -> None:
    """Ensure the database directory exists."""
    db_path.parent.mkdir(parents=True, exist_ok=True)


def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
    """Serialize datetime to ISO format string."""
    return dt.isoformat() if dt else None


def _deserialize_datetime(s: Optional[str]) -> Optional[datetime]:
    """Deserialize ISO format string to datetime."""
    if not s:
        return None
    return datetime.fromisoformat(s)


def _serialize_value(key: str, value: Any) -> Any:
    if key in ("created_at", "updated_at"):
        return _serialize_datetime(value)
    if key == "shipping":
        return json.dumps(value) if value is not None else None
    if isinstance(value, Enum):
        return value.value
    return value


class FulfillmentDatabase:
    """
    SQLite database for fulfillment persistence.

    Thread-safe: every call opens its own connection and SQLite handles
    concurrent access with WAL mode.
    """

    def __init__(self, db_path: Path = DEFAULT_DB_PATH):
        self.db_path = Path(db_path)
        _ensure_db_dir(self.db_path)
        self._init_db()

    @contextmanager
    def _get_connection(self):
        """Get a database connection with proper settings."""
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _init_db(self) -> None:
        """Initialize database schema."""
        with self._get_connection() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS fulfillments (
                    id TEXT PRIMARY KEY,
                    payment_session_id TEXT NOT NULL UNIQUE,
                    external_id TEXT NOT NULL,
                    book_data_url TEXT,
                    shipping TEXT,
                    stage TEXT NOT NULL,
                    order_status TEXT,
                    vendor_status TEXT,
                    vendor_order_id TEXT,
                    page_count INTEGER,
                    interior_url TEXT,
                    cover_url TEXT,
                    tracking_number TEXT,
                    tracking_url TEXT,
                    attempts INTEGER NOT NULL DEFAULT 0,
                    error TEXT,
                    events TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_fulfillments_vendor_order
                ON fulfillments(vendor_order_id)
            """)

            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_fulfillments_external_id
                ON fulfillments(external_id)
            """)

    def insert_if_absent(self, data: Dict[str, Any]) -> bool:
        """
        Insert a new fulfillment unless its payment session is already known.

        Returns:
            True if the row was inserted, False if the session already exists
        """
        row = {key: _serialize_value(key, data.get(key)) for key in _COLUMNS if key != "events"}
        row["events"] = json.dumps([
            {"timestamp": _serialize_datetime(e["timestamp"]), "message": e["message"]}
            for e in data.get("events", [])
        ])
        row["attempts"] = row.get("attempts") or 0
        placeholders = ", ".join("?" for _ in _COLUMNS)
        with self._get_connection() as conn:
            cursor = conn.execute(
                f"INSERT OR IGNORE INTO fulfillments ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                [row[key] for key in _COLUMNS],
            )
            return cursor.rowcount == 1

    def update(self, fulfillment_id: str, **fields: Any) -> None:
        """Update the given columns and refresh ``updated_at``."""
        self._update_where(fulfillment_id, "", [], fields)

    def rearm_if_failed(self, fulfillment_id: str, **fields: Any) -> bool:
        """
        Move a FAILED fulfillment back to RECEIVED, applying ``fields``.

        The stage check and the write are one statement, so of several
        workers re-arming the same row concurrently exactly one succeeds.

        Returns:
            True if this call re-armed the row, False if it was not FAILED
        """
        fields.update(stage="received", error=None)
        return self._update_where(fulfillment_id, "AND stage = 'failed'", [], fields)

    def update_if_order_status(self, fulfillment_id: str, expected: Optional[str], **fields: Any) -> bool:
        """
        Apply ``fields`` only while ``order_status`` still equals ``expected``.

        Returns:
            True if the row was updated, False if another writer changed the
            order status first
        """
        condition = [_serialize_value("order_status", expected)]
        return self._update_where(fulfillment_id, "AND order_status IS ?", condition, fields)

    def _update_where(self, fulfillment_id: str, condition: str, condition_values: List[Any], fields: Dict[str, Any]) -> bool:
        unknown = set(fields) - _UPDATABLE
        if unknown:
            raise KeyError(f"Unknown fulfillment fields: {sorted(unknown)}")

        fields["updated_at"] = datetime.utcnow()
        assignments = ", ".join(f"{key} = ?" for key in fields)
        values = [_serialize_value(key, value) for key, value in fields.items()]
        values.append(fulfillment_id)
        values.extend(condition_values)
        with self._get_connection() as conn:
            cursor = conn.execute(f"UPDATE fulfillments SET {assignments} WHERE id = ? {condition}", values)
            return cursor.rowcount == 1

    def add_event(self, fulfillment_id: str, message: str) -> None:
        """Append an event to a fulfillment's event log."""
        with self._get_connection() as conn:
            row = conn.execute(
                "SELECT events FROM fulfillments WHERE id = ?", (fulfillment_id,)
            ).fetchone()

            if not row:
                return

            now = _serialize_datetime(datetime.utcnow())
            events = json.loads(row["events"] or "[]")
            events.append({"timestamp": now, "message": message})

            conn.execute(
                "UPDATE fulfillments SET events = ?, updated_at = ? WHERE id = ?",
                (json.dumps(events), now, fulfillment_id),
            )

    def get(self, fulfillment_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM fulfillments WHERE id = ?", fulfillment_id)

    def get_by_session(self, payment_session_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM fulfillments WHERE payment_session_id = ?", payment_session_id)

    def get_by_vendor_order(self, vendor_order_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM fulfillments WHERE vendor_order_id = ?", vendor_order_id)

    def get_by_external_id(self, external_id: str) -> Optional[Dict[str, Any]]:
        return self._fetch_one("SELECT * FROM fulfillments WHERE external_id = ?", external_id)

    def list_all(self) -> List[Dict[str, Any]]:
        """List all fulfillments ordered by creation time (newest first)."""
        with self._get_connection() as conn:
            rows = conn.execute(
                "SELECT * FROM fulfillments ORDER BY created_at DESC"
            ).fetchall()
            return [self._row_to_dict(row) for row in rows]

    def _fetch_one(self, query: str, value: str) -> Optional[Dict[str, Any]]:
        with self._get_connection() as conn:
            row = conn.execute(query, (value,)).fetchone()
            return self._row_to_dict(row) if row else None

    def _row_to_dict(self, row: sqlite3.Row) -> Dict[str, Any]:
        """Convert a database row to a fulfillment data dictionary."""
        data = {key: row[key] for key in _COLUMNS}
        data["shipping"] = json.loads(row["shipping"]) if row["shipping"] else None
        data["created_at"] = _deserialize_datetime(row["created_at"])
        data["updated_at"] = _deserialize_datetime(row["updated_at"])
        data["events"] = [
            {"timestamp": _deserialize_datetime(e["timestamp"]), "message": e["message"]}
            for e in json.loads(row["events"] or "[]")
        ]
        return data
