"""
Repository pattern for data access.

Handles the balance time series: snapshot writes, usage derivation,
window queries and retention pruning.
"""

import logging
import sqlite3
import threading
import uuid
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Optional, Tuple, Union

from .db import DEFAULT_DB_PATH, get_connection
from .models import BalanceSnapshot, UsageRecord
from ..core.errors import StorageError

log = logging.getLogger(__name__)

HistoryEntry = Union[BalanceSnapshot, UsageRecord]

_SNAPSHOT_COLUMNS = "id, amount, timestamp, source"
_USAGE_COLUMNS = "id, start_balance, end_balance, usage_amount, duration_minutes, timestamp"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(ts: datetime) -> str:
    """Serialize a timestamp as fixed-width UTC ISO-8601.

    Fixed width keeps lexical ordering in SQLite equal to time ordering.
    Naive datetimes are taken to be UTC already.
    """
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat(timespec="microseconds")


def _from_db(value: str) -> datetime:
    ts = datetime.fromisoformat(value)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


def _row_to_snapshot(row: tuple) -> BalanceSnapshot:
    return BalanceSnapshot(
        id=row[0],
        amount=row[1],
        timestamp=_from_db(row[2]),
        source=row[3],
    )


def _row_to_usage(row: tuple) -> UsageRecord:
    return UsageRecord(
        id=row[0],
        start_balance=row[1],
        end_balance=row[2],
        usage_amount=row[3],
        duration_minutes=row[4],
        timestamp=_from_db(row[5]),
    )


class BalanceRepository:
    """Repository for the balance snapshot and usage record ledgers.

    Both tables are append-only. The only deletion path is `prune`,
    which removes records older than the retention horizon.

    Writes are serialized through a lock held by this instance; reads
    open their own connections and may run concurrently.
    """

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        now: Optional[Callable[[], datetime]] = None,
    ):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            now: Clock returning the current UTC time (injectable for tests)
        """
        self.db_path = db_path
        self._now = now or _utc_now
        self._write_lock = threading.Lock()

    def _connect(self) -> sqlite3.Connection:
        try:
            return get_connection(self.db_path)
        except (sqlite3.Error, OSError) as e:
            raise StorageError(f"Cannot open database {self.db_path}: {e}") from e

    def initialize_schema(self) -> None:
        """Create both ledgers and their timestamp indexes if missing.

        Raises:
            StorageError: If the schema cannot be created
        """
        conn = self._connect()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS balance_records (
                    id TEXT PRIMARY KEY,
                    amount INTEGER NOT NULL,
                    timestamp TEXT NOT NULL,
                    source TEXT NOT NULL DEFAULT 'scraper'
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS usage_records (
                    id TEXT PRIMARY KEY,
                    start_balance INTEGER NOT NULL,
                    end_balance INTEGER NOT NULL,
                    usage_amount INTEGER NOT NULL,
                    duration_minutes INTEGER NOT NULL,
                    timestamp TEXT NOT NULL
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_balance_timestamp ON balance_records(timestamp)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_usage_timestamp ON usage_records(timestamp)"
            )
            conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to initialize schema: {e}") from e
        finally:
            conn.close()

    def record_balance(
        self,
        amount: int,
        source: str = "scraper",
        timestamp: Optional[datetime] = None,
    ) -> BalanceSnapshot:
        """Append a balance snapshot and derive usage from the previous one.

        If the immediately preceding snapshot (by timestamp, excluding the
        new one) holds a strictly greater amount, a usage record is written
        in the same transaction with usage_amount = previous - amount and
        duration_minutes = max(1, elapsed whole minutes). A balance that
        stayed equal or went up (a top-up) produces no usage record.

        Args:
            amount: Current balance, must be >= 0
            source: Label of the extraction path that produced the value
            timestamp: Reading time; defaults to now

        Returns:
            The stored snapshot

        Raises:
            ValueError: If amount is negative
            StorageError: If the write fails
        """
        if amount < 0:
            raise ValueError("amount cannot be negative")

        snapshot = BalanceSnapshot(
            id=str(uuid.uuid4()),
            amount=int(amount),
            timestamp=timestamp or self._now(),
            source=source,
        )

        with self._write_lock:
            conn = self._connect()
            try:
                conn.execute(
                    "INSERT INTO balance_records (id, amount, timestamp, source) VALUES (?, ?, ?, ?)",
                    (snapshot.id, snapshot.amount, _to_db(snapshot.timestamp), snapshot.source),
                )

                cursor = conn.execute(
                    f"""
                    SELECT {_SNAPSHOT_COLUMNS} FROM balance_records
                    WHERE id != ? AND timestamp <= ?
                    ORDER BY timestamp DESC LIMIT 1
                    """,
                    (snapshot.id, _to_db(snapshot.timestamp)),
                )
                row = cursor.fetchone()
                previous = _row_to_snapshot(row) if row else None

                if previous is not None and previous.amount > snapshot.amount:
                    usage = self._derive_usage(previous, snapshot)
                    conn.execute(
                        f"INSERT INTO usage_records ({_USAGE_COLUMNS}) VALUES (?, ?, ?, ?, ?, ?)",
                        (
                            usage.id,
                            usage.start_balance,
                            usage.end_balance,
                            usage.usage_amount,
                            usage.duration_minutes,
                            _to_db(usage.timestamp),
                        ),
                    )
                    log.debug(
                        "Usage recorded: %d credits over %d min",
                        usage.usage_amount, usage.duration_minutes,
                    )
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Failed to record balance: {e}") from e
            finally:
                conn.close()

        return snapshot

    @staticmethod
    def _derive_usage(previous: BalanceSnapshot, current: BalanceSnapshot) -> UsageRecord:
        elapsed = current.timestamp - previous.timestamp
        minutes = int(elapsed.total_seconds() // 60)
        return UsageRecord(
            id=str(uuid.uuid4()),
            start_balance=previous.amount,
            end_balance=current.amount,
            usage_amount=previous.amount - current.amount,
            duration_minutes=max(1, minutes),
            timestamp=current.timestamp,
        )

    def latest_balance(self) -> Optional[BalanceSnapshot]:
        """Return the most recent snapshot, or None if the store is empty."""
        rows = self._query(
            f"SELECT {_SNAPSHOT_COLUMNS} FROM balance_records ORDER BY timestamp DESC LIMIT 1",
            (),
        )
        return _row_to_snapshot(rows[0]) if rows else None

    def balance_history(self, hours: float) -> List[BalanceSnapshot]:
        """Snapshots within the last `hours`, oldest first."""
        rows = self._query(
            f"""
            SELECT {_SNAPSHOT_COLUMNS} FROM balance_records
            WHERE timestamp >= ? ORDER BY timestamp ASC
            """,
            (self._cutoff(hours=hours),),
        )
        return [_row_to_snapshot(row) for row in rows]

    def usage_history(self, hours: float) -> List[UsageRecord]:
        """Usage records within the last `hours`, oldest first."""
        rows = self._query(
            f"""
            SELECT {_USAGE_COLUMNS} FROM usage_records
            WHERE timestamp >= ? ORDER BY timestamp ASC
            """,
            (self._cutoff(hours=hours),),
        )
        return [_row_to_usage(row) for row in rows]

    def history(self, hours: float) -> List[HistoryEntry]:
        """Snapshots and usage records within the window, merged by time.

        A usage record shares its timestamp with the snapshot that produced
        it and is ordered right after that snapshot.
        """
        entries: List[Tuple[datetime, int, HistoryEntry]] = []
        entries.extend((s.timestamp, 0, s) for s in self.balance_history(hours))
        entries.extend((u.timestamp, 1, u) for u in self.usage_history(hours))
        entries.sort(key=lambda item: (item[0], item[1]))
        return [entry for _, _, entry in entries]

    def prune(self, retention_days: int) -> Tuple[int, int]:
        """Delete snapshots and usage records older than the horizon.

        Args:
            retention_days: Number of days of history to keep

        Returns:
            (deleted snapshots, deleted usage records)

        Raises:
            ValueError: If retention_days < 1
            StorageError: If the delete fails
        """
        if retention_days < 1:
            raise ValueError("retention_days must be >= 1")

        cutoff = self._cutoff(days=retention_days)
        with self._write_lock:
            conn = self._connect()
            try:
                snapshots = conn.execute(
                    "DELETE FROM balance_records WHERE timestamp < ?", (cutoff,)
                ).rowcount
                usage = conn.execute(
                    "DELETE FROM usage_records WHERE timestamp < ?", (cutoff,)
                ).rowcount
                conn.commit()
            except sqlite3.Error as e:
                conn.rollback()
                raise StorageError(f"Failed to prune history: {e}") from e
            finally:
                conn.close()

        log.info("Pruned %d snapshots and %d usage records older than %d days",
                 snapshots, usage, retention_days)
        return snapshots, usage

    def _cutoff(self, hours: float = 0, days: float = 0) -> str:
        return _to_db(self._now() - timedelta(hours=hours, days=days))

    def _query(self, sql: str, params: tuple) -> list:
        conn = self._connect()
        try:
            return conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Query failed: {e}") from e
        finally:
            conn.close()
