"""
Repository pattern for durable usage counters.

Defines the durable store interface consumed by the quota store and its SQLite
implementation. Every SQLite failure surfaces as ``TransientStoreError`` so the
caller can fall back to degraded mode.
"""

import logging
import sqlite3
import uuid
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, List, Optional, Protocol, runtime_checkable

from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

from usage_guard.core.errors import TransientStoreError
from .db import DEFAULT_DB_PATH, get_connection
from .models import FeatureType, UsageCounter, UsageDetail

logger = logging.getLogger(__name__)

_COUNTER_COLUMNS = (
    "identity, day, summary_count, question_count, total_count, "
    "is_premium, created_at, updated_at, archived"
)
_DETAIL_COLUMNS = "id, title, source_ref, model, size, correlation_id, created_at"


@runtime_checkable
class UsageRepository(Protocol):
    """Protocol defining the durable usage store.

    Implementations must make ``increment_counter`` atomic across concurrent
    callers, including callers in other processes. Any failure to reach the
    store must be raised as ``TransientStoreError``.

    Implementations:
        - SQLiteUsageRepository: local SQLite file
    """

    def initialize_schema(self) -> None:
        """Create tables if they do not exist."""
        ...

    def ping(self) -> None:
        """Raise ``TransientStoreError`` if the store is unreachable."""
        ...

    def get_counter(self, identity: str, day: date) -> Optional[UsageCounter]:
        """Fetch the counter for (identity, day), or None if absent."""
        ...

    def create_counter(self, identity: str, day: date, is_premium: bool, now: datetime) -> UsageCounter:
        """Create the counter with zeroed fields if absent and return it."""
        ...

    def increment_counter(
        self,
        identity: str,
        day: date,
        feature: FeatureType,
        is_premium: bool,
        now: datetime,
        limit: Optional[int] = None,
    ) -> Optional[UsageCounter]:
        """Transactionally create-or-increment, refusing once ``limit`` is reached.

        Returns:
            The committed counter, or None if the limit guard refused the write
        """
        ...

    def append_detail(self, identity: str, day: date, detail: UsageDetail, now: datetime) -> UsageDetail:
        """Append a usage detail under an existing counter."""
        ...

    def list_details(self, identity: str, day: date, limit: int = 20) -> List[UsageDetail]:
        """List usage details for a counter, newest first."""
        ...

    def list_counters(self, identity: str, start_day: date, end_day: date) -> List[UsageCounter]:
        """List non-archived counters within [start_day, end_day], oldest first."""
        ...

    def archive_counters_before(self, cutoff: date, now: datetime) -> int:
        """Soft-archive every counter dated before ``cutoff``; return how many."""
        ...


def _is_busy(exc: BaseException) -> bool:
    """True for SQLite lock contention that is worth retrying."""
    if not isinstance(exc, sqlite3.OperationalError):
        return False
    message = str(exc).lower()
    return "locked" in message or "busy" in message


_retry_on_busy = retry(
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.05, max=1.0),
    retry=retry_if_exception(_is_busy),
    reraise=True,
)


@contextmanager
def _store_errors(operation: str) -> Iterator[None]:
    try:
        yield
    except sqlite3.Error as e:
        raise TransientStoreError(f"{operation} failed: {e}") from e


def _row_to_counter(row: sqlite3.Row) -> UsageCounter:
    return UsageCounter(
        identity=row["identity"],
        day=date.fromisoformat(row["day"]),
        summary_count=row["summary_count"],
        question_count=row["question_count"],
        total_count=row["total_count"],
        is_premium=bool(row["is_premium"]),
        created_at=datetime.fromisoformat(row["created_at"]),
        updated_at=datetime.fromisoformat(row["updated_at"]),
        archived=bool(row["archived"]),
    )


def _row_to_detail(row: sqlite3.Row) -> UsageDetail:
    return UsageDetail(
        id=row["id"],
        title=row["title"],
        source_ref=row["source_ref"],
        model=row["model"],
        size=row["size"],
        correlation_id=row["correlation_id"],
        created_at=datetime.fromisoformat(row["created_at"]),
    )


class SQLiteUsageRepository:
    """SQLite-backed durable store for usage counters and details.

    Opens one connection per operation. Writes that must be atomic run inside
    ``BEGIN IMMEDIATE`` transactions, which take the database write lock up
    front so concurrent read-modify-write cycles serialize, also across
    processes sharing the same file.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = 5.0):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds SQLite waits on a locked database per attempt
        """
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self) -> sqlite3.Connection:
        return get_connection(self.db_path, self.timeout)

    def initialize_schema(self) -> None:
        """Create the usage_counter and usage_detail tables if they don't exist."""
        with _store_errors("initialize_schema"):
            conn = self._connect()
            try:
                conn.executescript("""
                    CREATE TABLE IF NOT EXISTS usage_counter (
                        identity TEXT NOT NULL,
                        day TEXT NOT NULL,
                        summary_count INTEGER NOT NULL DEFAULT 0,
                        question_count INTEGER NOT NULL DEFAULT 0,
                        total_count INTEGER NOT NULL DEFAULT 0,
                        is_premium INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        archived INTEGER NOT NULL DEFAULT 0,
                        archived_at TEXT,
                        PRIMARY KEY (identity, day)
                    );
                    CREATE INDEX IF NOT EXISTS idx_usage_counter_day
                        ON usage_counter(day, archived);
                    CREATE TABLE IF NOT EXISTS usage_detail (
                        id TEXT PRIMARY KEY,
                        identity TEXT NOT NULL,
                        day TEXT NOT NULL,
                        title TEXT NOT NULL,
                        source_ref TEXT NOT NULL,
                        model TEXT,
                        size INTEGER NOT NULL DEFAULT 0,
                        correlation_id TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (identity, day) REFERENCES usage_counter(identity, day)
                    );
                """)
            finally:
                conn.close()
        logger.info("Usage schema ready at %s", self.db_path)

    def ping(self) -> None:
        """Verify the database opens and the schema is in place."""
        with _store_errors("ping"):
            conn = self._connect()
            try:
                conn.execute("SELECT 1 FROM usage_counter LIMIT 1").fetchall()
            finally:
                conn.close()

    def get_counter(self, identity: str, day: date) -> Optional[UsageCounter]:
        """Fetch the counter for (identity, day).

        Args:
            identity: Quota subject
            day: Calendar day of the counter

        Returns:
            The counter, or None if nothing was consumed that day
        """
        with _store_errors("get_counter"):
            conn = self._connect()
            try:
                return self._select_counter(conn, identity, day)
            finally:
                conn.close()

    def create_counter(self, identity: str, day: date, is_premium: bool, now: datetime) -> UsageCounter:
        """Create the counter if absent; an existing counter is returned untouched."""
        with _store_errors("create_counter"):
            return self._create(identity, day, is_premium, now)

    @_retry_on_busy
    def _create(self, identity: str, day: date, is_premium: bool, now: datetime) -> UsageCounter:
        conn = self._connect()
        try:
            conn.execute(
                f"INSERT OR IGNORE INTO usage_counter ({_COUNTER_COLUMNS}) "
                "VALUES (?, ?, 0, 0, 0, ?, ?, ?, 0)",
                (identity, day.isoformat(), int(is_premium), now.isoformat(), now.isoformat()),
            )
            return self._select_counter(conn, identity, day)
        finally:
            conn.close()

    def increment_counter(
        self,
        identity: str,
        day: date,
        feature: FeatureType,
        is_premium: bool,
        now: datetime,
        limit: Optional[int] = None,
    ) -> Optional[UsageCounter]:
        """Atomically create-or-increment the counter for ``feature``.

        Args:
            identity: Quota subject
            day: Calendar day of the counter
            feature: Which feature counter to bump alongside the total
            is_premium: Premium flag snapshot stored with the write
            now: Write timestamp
            limit: If given, refuse the increment when total_count >= limit

        Returns:
            The committed counter, or None if the limit guard refused the write

        Raises:
            TransientStoreError: If the store is unreachable or stays locked
        """
        with _store_errors("increment_counter"):
            return self._increment(identity, day, feature, is_premium, now, limit)

    @_retry_on_busy
    def _increment(
        self,
        identity: str,
        day: date,
        feature: FeatureType,
        is_premium: bool,
        now: datetime,
        limit: Optional[int],
    ) -> Optional[UsageCounter]:
        conn = self._connect()
        try:
            conn.execute("BEGIN IMMEDIATE")
            try:
                row = conn.execute(
                    "SELECT total_count FROM usage_counter WHERE identity = ? AND day = ?",
                    (identity, day.isoformat()),
                ).fetchone()
                current = row["total_count"] if row is not None else 0
                if limit is not None and current >= limit:
                    conn.execute("ROLLBACK")
                    return None

                field = feature.counter_field
                if row is None:
                    conn.execute(
                        f"INSERT INTO usage_counter ({_COUNTER_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, 1, ?, ?, ?, 0)",
                        (
                            identity,
                            day.isoformat(),
                            1 if feature is FeatureType.SUMMARY else 0,
                            1 if feature is FeatureType.QUESTION else 0,
                            int(is_premium),
                            now.isoformat(),
                            now.isoformat(),
                        ),
                    )
                else:
                    conn.execute(
                        f"UPDATE usage_counter SET {field} = {field} + 1, "
                        "total_count = total_count + 1, is_premium = ?, updated_at = ? "
                        "WHERE identity = ? AND day = ?",
                        (int(is_premium), now.isoformat(), identity, day.isoformat()),
                    )
                counter = self._select_counter(conn, identity, day)
                conn.execute("COMMIT")
                return counter
            except Exception:
                if conn.in_transaction:
                    conn.execute("ROLLBACK")
                raise
        finally:
            conn.close()

    def append_detail(self, identity: str, day: date, detail: UsageDetail, now: datetime) -> UsageDetail:
        """Append a usage detail record under the (identity, day) counter.

        Returns:
            The stored detail with its generated id and timestamp
        """
        stored = UsageDetail(
            id=detail.id or uuid.uuid4().hex,
            title=detail.title or "Untitled",
            source_ref=detail.source_ref or "",
            model=detail.model,
            size=detail.size,
            correlation_id=detail.correlation_id,
            created_at=now,
        )
        with _store_errors("append_detail"):
            conn = self._connect()
            try:
                conn.execute(
                    f"INSERT INTO usage_detail ({_DETAIL_COLUMNS}, identity, day) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        stored.id,
                        stored.title,
                        stored.source_ref,
                        stored.model,
                        stored.size,
                        stored.correlation_id,
                        now.isoformat(),
                        identity,
                        day.isoformat(),
                    ),
                )
            finally:
                conn.close()
        return stored

    def list_details(self, identity: str, day: date, limit: int = 20) -> List[UsageDetail]:
        """List usage details for (identity, day), newest first."""
        with _store_errors("list_details"):
            conn = self._connect()
            try:
                cursor = conn.execute(
                    f"SELECT {_DETAIL_COLUMNS} FROM usage_detail "
                    "WHERE identity = ? AND day = ? "
                    "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                    (identity, day.isoformat(), limit),
                )
                return [_row_to_detail(row) for row in cursor.fetchall()]
            finally:
                conn.close()

    def list_counters(self, identity: str, start_day: date, end_day: date) -> List[UsageCounter]:
        """List non-archived counters for an identity within a day range, oldest first."""
        with _store_errors("list_counters"):
            conn = self._connect()
            try:
                cursor = conn.execute(
                    f"SELECT {_COUNTER_COLUMNS} FROM usage_counter "
                    "WHERE identity = ? AND day >= ? AND day <= ? AND archived = 0 "
                    "ORDER BY day ASC",
                    (identity, start_day.isoformat(), end_day.isoformat()),
                )
                return [_row_to_counter(row) for row in cursor.fetchall()]
            finally:
                conn.close()

    def archive_counters_before(self, cutoff: date, now: datetime) -> int:
        """Mark counters dated before ``cutoff`` as archived.

        A single UPDATE statement, so the set of archived counters is a
        point-in-time snapshot; counters written afterwards are left for the
        next run.

        Returns:
            Number of counters archived by this call
        """
        with _store_errors("archive_counters_before"):
            conn = self._connect()
            try:
                cursor = conn.execute(
                    "UPDATE usage_counter SET archived = 1, archived_at = ? "
                    "WHERE day < ? AND archived = 0",
                    (now.isoformat(), cutoff.isoformat()),
                )
                return cursor.rowcount
            finally:
                conn.close()

    @staticmethod
    def _select_counter(conn: sqlite3.Connection, identity: str, day: date) -> Optional[UsageCounter]:
        row = conn.execute(
            f"SELECT {_COUNTER_COLUMNS} FROM usage_counter WHERE identity = ? AND day = ?",
            (identity, day.isoformat()),
        ).fetchone()
        return _row_to_counter(row) if row is not None else None
