"""AlertStorage service for SQLite-based alert persistence."""

import sqlite3
import asyncio
import json
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Any, Iterable
from pathlib import Path
import threading
from contextlib import contextmanager

import structlog

from ..models import Alert, AlertSeverity, AlertStatus


logger = structlog.get_logger(__name__)


class AlertStorageError(Exception):
    """Raised when an alert cannot be read or written."""
    pass


class AlertNotFoundError(AlertStorageError):
    """Raised when an alert id does not exist."""

    def __init__(self, alert_id: str):
        self.alert_id = alert_id
        super().__init__(f"Alert not found: {alert_id}")


_COLUMNS = (
    "id", "room_id", "room_name", "sensor_id", "sensor_type", "alert_type",
    "check_kind", "severity", "message", "triggering_value", "triggered_at",
    "status", "acknowledged_at", "acknowledged_by", "resolved_at", "details",
)

_DATETIME_COLUMNS = ("triggered_at", "acknowledged_at", "resolved_at")


class AlertStorage:
    """SQLite-based alert store.

    At most one open alert per (room, sensor, check kind) is enforced by a
    partial unique index; writes that would break it raise AlertStorageError.
    """

    def __init__(self,
                 database_path: Optional[str] = None,
                 in_memory: bool = True,
                 retention_hours: int = 24 * 7):
        """Initialize alert storage."""

        if in_memory:
            self.database_path = ":memory:"
        else:
            self.database_path = database_path or "labwatch_alerts.db"

        self.retention_hours = retention_hours
        self.connection: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

        # Background cleanup
        self.is_running = False
        self._cleanup_task: Optional[asyncio.Task] = None
        self.cleanup_interval_minutes = 30

        # Performance tracking
        self.query_count = 0
        self.write_count = 0

    async def initialize(self) -> None:
        """Open the database and create tables."""
        try:
            logger.info("Initializing alert storage", database_path=self.database_path)

            self.connection = sqlite3.connect(
                self.database_path,
                check_same_thread=False,
                timeout=30.0
            )

            if self.database_path != ":memory:":
                self.connection.execute("PRAGMA journal_mode=WAL")

            self._create_tables()

            self.is_running = True
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())

            logger.info("Alert storage initialized")

        except sqlite3.Error as e:
            logger.error("Failed to initialize alert storage", error=str(e))
            raise AlertStorageError(f"Failed to initialize alert storage: {e}") from e

    async def close(self) -> None:
        """Stop background cleanup and close the connection."""
        logger.info("Closing alert storage")

        self.is_running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._cleanup_task = None

        if self.connection:
            self.connection.close()
            self.connection = None

        logger.info("Alert storage closed")

    @property
    def is_initialized(self) -> bool:
        return self.connection is not None

    @contextmanager
    def _get_cursor(self):
        """Yield a cursor inside a transaction, rolling back on error."""
        if not self.connection:
            raise AlertStorageError("Database not initialized")

        cursor = self.connection.cursor()
        try:
            yield cursor
            self.connection.commit()
        except sqlite3.IntegrityError as e:
            self.connection.rollback()
            logger.error("Alert write violates a constraint", error=str(e))
            raise AlertStorageError(f"Constraint violated: {e}") from e
        except sqlite3.Error as e:
            self.connection.rollback()
            logger.error("Database operation failed", error=str(e))
            raise AlertStorageError(f"Database operation failed: {e}") from e
        except Exception:
            self.connection.rollback()
            raise
        finally:
            cursor.close()

    def _create_tables(self) -> None:
        with self._lock:
            with self._get_cursor() as cursor:
                cursor.execute("""
                    CREATE TABLE IF NOT EXISTS alerts (
                        id TEXT PRIMARY KEY,
                        room_id TEXT NOT NULL,
                        room_name TEXT NOT NULL,
                        sensor_id TEXT,
                        sensor_type TEXT,
                        alert_type TEXT NOT NULL,
                        check_kind TEXT,
                        severity TEXT NOT NULL,
                        message TEXT NOT NULL,
                        triggering_value TEXT,
                        triggered_at TEXT NOT NULL,
                        status TEXT NOT NULL,
                        acknowledged_at TEXT,
                        acknowledged_by TEXT,
                        resolved_at TEXT,
                        details TEXT,
                        created_at TEXT DEFAULT CURRENT_TIMESTAMP
                    )
                """)

                cursor.execute("""
                    CREATE UNIQUE INDEX IF NOT EXISTS idx_alerts_one_open_per_check
                    ON alerts (room_id, sensor_id, check_kind)
                    WHERE status = 'open' AND check_kind IS NOT NULL
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_alerts_sensor_status
                    ON alerts (sensor_id, status)
                """)

                cursor.execute("""
                    CREATE INDEX IF NOT EXISTS idx_alerts_room_triggered
                    ON alerts (room_id, triggered_at)
                """)

                logger.debug("Alert tables created")

    async def create_alert(self, alert: Alert) -> Alert:
        """Insert a new alert."""
        await self.apply_changes(inserts=[alert])
        return alert

    async def update_alert(self, alert: Alert) -> Alert:
        """Overwrite an existing alert by id."""
        await self.apply_changes(updates=[alert])
        return alert

    async def apply_changes(self,
                            updates: Iterable[Alert] = (),
                            inserts: Iterable[Alert] = ()) -> None:
        """Apply updates then inserts in a single transaction."""
        assignments = ", ".join(f"{column} = ?" for column in _COLUMNS[1:])
        placeholders = ", ".join("?" for _ in _COLUMNS)

        with self._lock:
            with self._get_cursor() as cursor:
                for alert in updates:
                    row = self._alert_to_row(alert)
                    cursor.execute(
                        f"UPDATE alerts SET {assignments} WHERE id = ?",
                        row[1:] + (row[0],)
                    )
                    if cursor.rowcount == 0:
                        raise AlertNotFoundError(alert.id)
                    self.write_count += 1

                for alert in inserts:
                    cursor.execute(
                        f"INSERT INTO alerts ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
                        self._alert_to_row(alert)
                    )
                    self.write_count += 1

    async def get_alert(self, alert_id: str) -> Optional[Alert]:
        """Fetch one alert by id."""
        alerts = self._query("SELECT * FROM alerts WHERE id = ?", [alert_id])
        return alerts[0] if alerts else None

    async def get_open_alerts(self, sensor_id: str, room_id: Optional[str] = None) -> List[Alert]:
        """Open alerts raised by one sensor."""
        query = "SELECT * FROM alerts WHERE sensor_id = ? AND status = ?"
        params: List[Any] = [sensor_id, AlertStatus.OPEN.value]

        if room_id:
            query += " AND room_id = ?"
            params.append(room_id)

        query += " ORDER BY triggered_at DESC"
        return self._query(query, params)

    async def list_alerts(self,
                          room_id: Optional[str] = None,
                          status: Optional[AlertStatus] = None,
                          severity: Optional[AlertSeverity] = None,
                          start_time: Optional[datetime] = None,
                          limit: int = 100) -> List[Alert]:
        """Alerts newest first with optional filtering."""
        query = "SELECT * FROM alerts WHERE 1=1"
        params: List[Any] = []

        if room_id:
            query += " AND room_id = ?"
            params.append(room_id)

        if status:
            query += " AND status = ?"
            params.append(AlertStatus(status).value)

        if severity:
            query += " AND severity = ?"
            params.append(AlertSeverity(severity).value)

        if start_time:
            query += " AND triggered_at >= ?"
            params.append(start_time.isoformat())

        query += " ORDER BY triggered_at DESC LIMIT ?"
        params.append(limit)

        return self._query(query, params)

    async def count_alerts(self, status: Optional[AlertStatus] = None) -> int:
        """Number of stored alerts, optionally in one status."""
        query = "SELECT COUNT(*) FROM alerts"
        params: List[Any] = []
        if status:
            query += " WHERE status = ?"
            params.append(AlertStatus(status).value)

        with self._lock:
            with self._get_cursor() as cursor:
                cursor.execute(query, params)
                self.query_count += 1
                return cursor.fetchone()[0]

    async def cleanup_old_alerts(self) -> int:
        """Delete resolved alerts older than the retention period."""
        cutoff_iso = (datetime.now() - timedelta(hours=self.retention_hours)).isoformat()

        with self._lock:
            with self._get_cursor() as cursor:
                cursor.execute(
                    "DELETE FROM alerts WHERE status = ? AND resolved_at < ?",
                    (AlertStatus.RESOLVED.value, cutoff_iso)
                )
                removed = cursor.rowcount

        if removed > 0:
            logger.info("Cleaned up resolved alerts", removed=removed)
        return removed

    def get_storage_stats(self) -> Dict[str, Any]:
        """Storage statistics including per-status counts."""
        stats: Dict[str, Any] = {
            "database_path": self.database_path,
            "query_count": self.query_count,
            "write_count": self.write_count,
            "retention_hours": self.retention_hours,
            "is_running": self.is_running
        }

        if self.connection:
            with self._lock:
                with self._get_cursor() as cursor:
                    cursor.execute("SELECT status, COUNT(*) FROM alerts GROUP BY status")
                    for status, count in cursor.fetchall():
                        stats[f"{status}_count"] = count

            if self.database_path != ":memory:":
                db_path = Path(self.database_path)
                if db_path.exists():
                    stats["database_size_mb"] = db_path.stat().st_size / (1024 * 1024)

        return stats

    async def export_alerts(self, output_path: str) -> int:
        """Write all alerts to a JSON file; returns the number exported."""
        alerts = await self.list_alerts(limit=100000)

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)

        export_data = {
            "export_timestamp": datetime.now().isoformat(),
            "alerts": [alert.model_dump(mode='json') for alert in alerts],
            "storage_stats": self.get_storage_stats()
        }

        with open(output_file, 'w', encoding='utf-8') as f:
            json.dump(export_data, f, indent=2, default=str)

        logger.info("Alerts exported", output_path=output_path, count=len(alerts))
        return len(alerts)

    def _query(self, query: str, params: List[Any]) -> List[Alert]:
        with self._lock:
            with self._get_cursor() as cursor:
                cursor.execute(query, params)
                rows = cursor.fetchall()
                columns = [desc[0] for desc in cursor.description]

        self.query_count += 1
        return [self._row_to_alert(dict(zip(columns, row))) for row in rows]

    @staticmethod
    def _alert_to_row(alert: Alert) -> tuple:
        data = alert.model_dump()
        values = []
        for column in _COLUMNS:
            value = data[column]
            if column in _DATETIME_COLUMNS and value is not None:
                value = value.isoformat()
            elif column == "details" and value is not None:
                value = json.dumps(value, default=str)
            elif hasattr(value, "value"):
                value = value.value
            values.append(value)
        return tuple(values)

    @staticmethod
    def _row_to_alert(row: Dict[str, Any]) -> Alert:
        data = {column: row[column] for column in _COLUMNS}
        for column in _DATETIME_COLUMNS:
            if data[column]:
                data[column] = datetime.fromisoformat(data[column])
        if data["details"]:
            data["details"] = json.loads(data["details"])
        return Alert(**data)

    async def _cleanup_loop(self) -> None:
        """Periodically delete expired resolved alerts."""
        logger.debug("Alert cleanup loop started")

        while self.is_running:
            try:
                await self.cleanup_old_alerts()
                await asyncio.sleep(self.cleanup_interval_minutes * 60)

            except asyncio.CancelledError:
                break
            except AlertStorageError as e:
                logger.error("Error in cleanup loop", error=str(e))
                await asyncio.sleep(300)

        logger.debug("Alert cleanup loop stopped")


__all__ = ["AlertStorage", "AlertStorageError", "AlertNotFoundError"]
