"""
liveness/store.py -- SQLite-backed device liveness markers.

Each heartbeat stores one row per device: the instant its marker expires.
A device is ONLINE while that instant is in the future. Liveness is decided
at read time by comparing against the clock, so answers are correct whether
or not purge_expired() has ever run; the purge only bounds storage.

Extension policy: always extend forward. A heartbeat sets the expiry to
max(stored expiry, now + ttl) in a single upsert, so a heartbeat carrying a
short ttl never pulls back an expiry a longer one already granted, and
concurrent heartbeats for the same device cannot regress it.

Usage:
    status = DeviceStatusStore()
    status.reset_status("dev_123", timedelta(seconds=60))
    status.get_status("dev_123")                    # DeviceStatus.ONLINE
    status.get_statuses(["dev_123", "dev_456"])     # [ONLINE, OFFLINE]
    status.purge_expired(timedelta(days=1))         # optional housekeeping
"""

from __future__ import annotations

import sqlite3
import time
from collections.abc import Callable, Sequence
from datetime import timedelta
from enum import Enum
from pathlib import Path

from core.errors import StoreUnavailableError

_DEFAULT_DB = Path(__file__).resolve().parent.parent / "fleetplane_status.db"

# SQLite caps the number of bound parameters per statement.
_BATCH_SIZE = 500

_DDL = """
CREATE TABLE IF NOT EXISTS device_status (
    device_id   TEXT PRIMARY KEY,
    expires_at  REAL NOT NULL
);
"""

_UPSERT = """
INSERT INTO device_status (device_id, expires_at) VALUES (?, ?)
ON CONFLICT(device_id) DO UPDATE SET expires_at = MAX(expires_at, excluded.expires_at)
"""

# Only "?" placeholders are interpolated; ids are always bound parameters.
_SELECT_MANY = "SELECT device_id, expires_at FROM device_status WHERE device_id IN ({placeholders})"


class DeviceStatus(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"


class DeviceStatusStore:
    """Expiring per-device markers.

    clock returns seconds since the epoch; tests inject a fake one.
    """

    def __init__(self, db_path: Path | str = _DEFAULT_DB, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        try:
            self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.execute(_DDL)
            self._conn.commit()
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"status store unavailable: {exc}") from exc

    def reset_status(self, device_id: str, ttl: timedelta) -> None:
        """Mark device_id online until now + ttl, never shortening an existing marker."""
        expires_at = self._clock() + ttl.total_seconds()
        try:
            with self._conn:
                self._conn.execute(_UPSERT, (device_id, expires_at))
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"status store unavailable: {exc}") from exc

    def get_status(self, device_id: str) -> DeviceStatus:
        return self.get_statuses([device_id])[0]

    def get_statuses(self, device_ids: Sequence[str]) -> list[DeviceStatus]:
        """Return one status per input id, in input order (duplicates included)."""
        now = self._clock()
        expiries: dict[str, float] = {}
        unique = list(dict.fromkeys(device_ids))
        try:
            for start in range(0, len(unique), _BATCH_SIZE):
                chunk = unique[start : start + _BATCH_SIZE]
                placeholders = ",".join("?" for _ in chunk)
                query = _SELECT_MANY.format(placeholders=placeholders)
                rows = self._conn.execute(query, chunk).fetchall()
                expiries.update(rows)
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"status store unavailable: {exc}") from exc
        return [
            DeviceStatus.ONLINE if expiries.get(device_id, 0.0) > now else DeviceStatus.OFFLINE
            for device_id in device_ids
        ]

    def get_expiry(self, device_id: str) -> float | None:
        """Return the stored expiry (epoch seconds), or None if never reported."""
        row = self._conn.execute("SELECT expires_at FROM device_status WHERE device_id = ?", (device_id,)).fetchone()
        return row[0] if row else None

    def purge_expired(self, retention: timedelta = timedelta(0)) -> int:
        """Delete markers that expired more than `retention` ago. Returns rows removed."""
        cutoff = self._clock() - retention.total_seconds()
        try:
            with self._conn:
                cursor = self._conn.execute("DELETE FROM device_status WHERE expires_at < ?", (cutoff,))
        except sqlite3.OperationalError as exc:
            raise StoreUnavailableError(f"status store unavailable: {exc}") from exc
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()

