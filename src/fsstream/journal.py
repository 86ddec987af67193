"""SQLite-backed event journal: id sequence, event history and root snapshots."""

import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

from .exceptions import JournalError
from .flags import SINCE_ALL

logger = logging.getLogger(__name__)

# SQLite integers are signed 64-bit
SQLITE_MAX_INT = 2 ** 63 - 1

# path -> [inode, device, mtime, size, is_dir]
SnapshotEntries = Dict[str, list]


class EventJournal:
    """
    Durable record of every event the native streams have delivered.

    Event ids come from a single sequence stored in the database, so they
    are monotonic across streams and across processes sharing the file.

    Features:
    - Atomic id allocation and recording of a whole batch
    - History lookup for ``since`` replay
    - Per-root directory snapshots for changes made while nothing watched
    - Thread-safe operations
    """

    def __init__(self, db_path: Path):
        """
        Initialize the journal.

        Args:
            db_path: Path to the SQLite database file
        """
        self.db_path = Path(db_path)
        self._lock = threading.Lock()
        self._local = threading.local()
        self._connections: List[sqlite3.Connection] = []
        self._connections_lock = threading.Lock()
        self._closed = False

        self._init_db()

    def _get_connection(self) -> sqlite3.Connection:
        """Get a thread-local database connection."""
        if getattr(self._local, "conn", None) is None:
            try:
                conn = sqlite3.connect(
                    str(self.db_path),
                    check_same_thread=False,
                    isolation_level=None,  # Autocommit mode
                    timeout=10.0,
                )
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA synchronous=NORMAL")
            except sqlite3.Error as e:
                raise JournalError(f"Cannot open journal {self.db_path}: {e}") from e
            self._local.conn = conn
            with self._connections_lock:
                self._connections.append(conn)
        return self._local.conn

    def release_thread_connection(self) -> None:
        """
        Close the calling thread's connection, if it has one.

        Threads that stop using the journal (delivery threads, on exit)
        call this so their connection does not outlive them.
        """
        conn = getattr(self._local, "conn", None)
        if conn is None:
            return
        self._local.conn = None

        with self._connections_lock:
            try:
                self._connections.remove(conn)
            except ValueError:
                return  # already closed by close()
        conn.close()

    def _check_open(self) -> None:
        if self._closed:
            raise JournalError("Journal is closed")

    def _init_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        try:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS meta (
                    key TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    id INTEGER PRIMARY KEY,
                    path TEXT NOT NULL,
                    flags INTEGER NOT NULL,
                    recorded_at REAL NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_events_recorded_at
                ON events(recorded_at)
            """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS snapshots (
                    root TEXT NOT NULL,
                    event_id INTEGER NOT NULL,
                    payload TEXT NOT NULL,
                    taken_at REAL NOT NULL,
                    PRIMARY KEY (root, event_id)
                )
            """)
            conn.execute(
                "INSERT OR IGNORE INTO meta (key, value) VALUES ('last_event_id', ?)",
                (SINCE_ALL,)
            )
        except sqlite3.Error as e:
            raise JournalError(f"Cannot initialize journal {self.db_path}: {e}") from e

    def current_event_id(self) -> int:
        """
        Get the most recently allocated event id.

        Returns:
            The last event id, or SINCE_ALL for an empty journal
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT value FROM meta WHERE key = 'last_event_id'"
            ).fetchone()
            return row[0] if row else SINCE_ALL

    def record(self, entries: Sequence[Tuple[str, int]]) -> List[int]:
        """
        Allocate ids for a batch of events and store them atomically.

        Args:
            entries: (path, flags) pairs in delivery order

        Returns:
            The ids assigned to the entries, strictly increasing
        """
        self._check_open()

        if not entries:
            return []

        return self._allocate(len(entries), entries)

    def reserve_id(self) -> int:
        """
        Allocate one id that no event carries.

        Used to label snapshots so that a later snapshot never shares an id
        with an earlier one.
        """
        self._check_open()
        return self._allocate(1)[0]

    def _allocate(self, count: int, entries: Optional[Sequence[Tuple[str, int]]] = None) -> List[int]:
        """Internal: bump the id sequence by ``count``, recording ``entries``."""
        now = time.time()

        with self._lock:
            conn = self._get_connection()
            try:
                conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as e:
                raise JournalError(f"Cannot lock journal: {e}") from e
            try:
                last = conn.execute(
                    "SELECT value FROM meta WHERE key = 'last_event_id'"
                ).fetchone()[0]
                ids = list(range(last + 1, last + 1 + count))
                if entries:
                    conn.executemany(
                        "INSERT INTO events (id, path, flags, recorded_at) VALUES (?, ?, ?, ?)",
                        [(event_id, path, int(flags), now)
                         for event_id, (path, flags) in zip(ids, entries)]
                    )
                conn.execute(
                    "UPDATE meta SET value = ? WHERE key = 'last_event_id'",
                    (ids[-1],)
                )
                conn.execute("COMMIT")
                return ids
            except Exception as e:
                try:
                    conn.execute("ROLLBACK")
                except sqlite3.Error as rollback_error:
                    logger.error("Rollback failed after %s: %s", e, rollback_error)
                if isinstance(e, sqlite3.Error):
                    raise JournalError(f"Cannot allocate event ids: {e}") from e
                raise

    def events_since(self, since: int, limit: Optional[int] = None) -> List[Tuple[int, str, int]]:
        """
        Get recorded events newer than a checkpoint.

        Args:
            since: Only events with a greater id are returned
            limit: Maximum number of events to return

        Returns:
            List of (id, path, flags) tuples in id order
        """
        self._check_open()

        query = "SELECT id, path, flags FROM events WHERE id > ? ORDER BY id"
        since = min(since, SQLITE_MAX_INT)
        params: tuple = (since,)
        if limit is not None:
            query += " LIMIT ?"
            params = (since, limit)

        with self._lock:
            conn = self._get_connection()
            return [tuple(row) for row in conn.execute(query, params).fetchall()]

    def last_event_before(self, timestamp: float) -> int:
        """
        Get the id of the last event recorded before a point in time.

        Args:
            timestamp: Unix timestamp

        Returns:
            The event id, or SINCE_ALL if nothing was recorded before then
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT MAX(id) FROM events WHERE recorded_at < ?",
                (timestamp,)
            ).fetchone()
            return row[0] if row and row[0] is not None else SINCE_ALL

    def purge_up_to(self, event_id: int) -> int:
        """
        Delete recorded events with ids up to and including ``event_id``.

        Snapshots older than the newest one at or before ``event_id`` are
        dropped too, per root. The id sequence is not rewound.

        Returns:
            Number of events removed
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            cursor = conn.execute("DELETE FROM events WHERE id <= ?", (event_id,))
            removed = cursor.rowcount
            conn.execute("""
                DELETE FROM snapshots
                WHERE event_id < (
                    SELECT MAX(s2.event_id) FROM snapshots AS s2
                    WHERE s2.root = snapshots.root AND s2.event_id <= ?
                )
            """, (event_id,))
            return removed

    def event_count(self) -> int:
        """Get the number of events currently kept in history."""
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def save_snapshot(self, root: str, event_id: int, entries: SnapshotEntries) -> None:
        """
        Store the listing of a watched root as of ``event_id``.

        Args:
            root: Watched root path
            event_id: Checkpoint the listing corresponds to
            entries: Mapping of path to [inode, device, mtime, size, is_dir]
        """
        self._check_open()

        payload = json.dumps(entries)

        with self._lock:
            conn = self._get_connection()
            conn.execute(
                "INSERT OR REPLACE INTO snapshots (root, event_id, payload, taken_at) VALUES (?, ?, ?, ?)",
                (root, event_id, payload, time.time())
            )
        logger.debug("Stored snapshot of %s (%d entries) at event %d", root, len(entries), event_id)

    def load_snapshot(self, root: str, at_or_before: int = SQLITE_MAX_INT) -> Optional[Tuple[int, SnapshotEntries]]:
        """
        Load the newest listing of a watched root taken at or before a checkpoint.

        Args:
            root: Watched root path
            at_or_before: Ignore snapshots labelled with a greater id

        Returns:
            (event_id, entries), or None if no such snapshot exists
        """
        self._check_open()

        with self._lock:
            conn = self._get_connection()
            row = conn.execute(
                "SELECT event_id, payload FROM snapshots WHERE root = ? AND event_id <= ? "
                "ORDER BY event_id DESC LIMIT 1",
                (root, min(at_or_before, SQLITE_MAX_INT))
            ).fetchone()

        if row is None:
            return None
        try:
            return row[0], json.loads(row[1])
        except ValueError as e:
            raise JournalError(f"Corrupted snapshot for {root}: {e}") from e

    def close(self) -> None:
        """Close the journal and release resources."""
        if self._closed:
            return

        self._closed = True

        with self._lock, self._connections_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = threading.local()

    @property
    def open_connections(self) -> int:
        """Number of per-thread connections currently open."""
        with self._connections_lock:
            return len(self._connections)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


def current_event_id(db_path: Path) -> int:
    """Get the last event id allocated in the journal at ``db_path``."""
    with EventJournal(db_path) as journal:
        return journal.current_event_id()


def last_event_before(db_path: Path, timestamp: float) -> int:
    """Get the last event id recorded in ``db_path`` before ``timestamp``."""
    with EventJournal(db_path) as journal:
        return journal.last_event_before(timestamp)


def purge_events_up_to(db_path: Path, event_id: int) -> int:
    """Drop history up to ``event_id`` from the journal at ``db_path``."""
    with EventJournal(db_path) as journal:
        return journal.purge_up_to(event_id)
