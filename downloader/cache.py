"""
SQLite-backed cache of verified cartridge content.

Entries are keyed by (cartridge identifier, checksum), re-verified on every
read and evicted least-recently-used once the total size exceeds a byte
budget.
"""

import sqlite3
import threading
import time
from pathlib import Path
from typing import Optional

from common.checksum import checksums_equal, compute_checksum, verify_checksum
from common.config import Config
from common.constants import DEFAULT_CACHE_MAX_BYTES
from common.exceptions import IntegrityFailureError
from common.logging_config import get_logger

logger = get_logger(__name__)


class CacheService:
    """
    Explicitly opened cache handle; construct one and pass it to the pipelines
    that need it.

    Thread-safe: all statements run under one lock.
    """

    def __init__(self, path, max_bytes: int = DEFAULT_CACHE_MAX_BYTES):
        """
        Initialize cache service (call `open()` before use).

        Args:
            path: SQLite database file, or ":memory:"
            max_bytes: Size budget for cached content
        """
        self.path = str(path)
        self.max_bytes = max_bytes
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()
        self._last_stamp = 0.0

    @classmethod
    def from_config(cls, config: Config) -> "CacheService":
        """Unopened cache at the configured path with the configured size budget."""
        settings = config.get_cache_config()
        return cls(settings["path"], max_bytes=settings["max_bytes"])

    def open(self) -> "CacheService":
        """
        Open the database and create the schema if needed.

        Returns:
            self
        """
        with self._lock:
            if self._conn is not None:
                return self
            if self.path != ":memory:":
                Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(self.path, check_same_thread=False)
            conn.row_factory = sqlite3.Row
            conn.execute("""
                CREATE TABLE IF NOT EXISTS cartridge_cache (
                    cartridge_id TEXT NOT NULL,
                    checksum TEXT NOT NULL,
                    data BLOB NOT NULL,
                    size INTEGER NOT NULL,
                    last_access REAL NOT NULL,
                    PRIMARY KEY(cartridge_id, checksum)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_cartridge_cache_last_access
                ON cartridge_cache(last_access)
            """)
            conn.commit()
            self._conn = conn
        logger.info(f"Cache opened [path={self.path}, max_bytes={self.max_bytes}]")
        return self

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None
        logger.debug(f"Cache closed [path={self.path}]")

    def __enter__(self) -> "CacheService":
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def _db(self) -> sqlite3.Connection:
        if self._conn is None:
            raise RuntimeError("Cache is not open")
        return self._conn

    def _stamp(self) -> float:
        """Strictly increasing access time so LRU order is total."""
        self._last_stamp = max(time.time(), self._last_stamp + 1e-6)
        return self._last_stamp

    def get(self, cartridge_id: str, checksum: str) -> Optional[bytes]:
        """
        Return cached content if present and still matching its checksum.

        A corrupted entry is deleted and reported as a miss.
        """
        checksum = checksum.lower()
        with self._lock:
            conn = self._db()
            row = conn.execute(
                "SELECT data FROM cartridge_cache WHERE cartridge_id = ? AND checksum = ?",
                (cartridge_id, checksum),
            ).fetchone()
            if row is None:
                return None

            data = bytes(row["data"])
            if not verify_checksum(data, checksum):
                logger.warning(f"Cache entry for cartridge {cartridge_id} is corrupt, dropping it")
                conn.execute(
                    "DELETE FROM cartridge_cache WHERE cartridge_id = ? AND checksum = ?",
                    (cartridge_id, checksum),
                )
                conn.commit()
                return None

            conn.execute(
                "UPDATE cartridge_cache SET last_access = ? WHERE cartridge_id = ? AND checksum = ?",
                (self._stamp(), cartridge_id, checksum),
            )
            conn.commit()
        logger.debug(f"Cache hit for cartridge {cartridge_id} ({len(data)} bytes)")
        return data

    def put(self, cartridge_id: str, checksum: str, data: bytes) -> None:
        """
        Store verified content, then evict old entries beyond the budget.

        Raises:
            IntegrityFailureError: If `data` does not match `checksum`
        """
        actual = compute_checksum(data)
        if not checksums_equal(actual, checksum):
            raise IntegrityFailureError(checksum.lower(), actual)
        with self._lock:
            conn = self._db()
            conn.execute(
                """
                INSERT OR REPLACE INTO cartridge_cache (cartridge_id, checksum, data, size, last_access)
                VALUES (?, ?, ?, ?, ?)
                """,
                (cartridge_id, checksum.lower(), sqlite3.Binary(data), len(data), self._stamp()),
            )
            conn.commit()
        logger.debug(f"Cached cartridge {cartridge_id} ({len(data)} bytes)")
        self.enforce_limit()

    def invalidate(self, cartridge_id: str, checksum: Optional[str] = None) -> int:
        """
        Remove one entry, or every entry of a cartridge when no checksum is given.

        Returns:
            Number of removed entries
        """
        with self._lock:
            conn = self._db()
            if checksum is None:
                cursor = conn.execute("DELETE FROM cartridge_cache WHERE cartridge_id = ?", (cartridge_id,))
            else:
                cursor = conn.execute(
                    "DELETE FROM cartridge_cache WHERE cartridge_id = ? AND checksum = ?",
                    (cartridge_id, checksum.lower()),
                )
            conn.commit()
            return cursor.rowcount

    def clear(self) -> None:
        with self._lock:
            conn = self._db()
            conn.execute("DELETE FROM cartridge_cache")
            conn.commit()
        logger.info("Cache cleared")

    def total_size(self) -> int:
        with self._lock:
            row = self._db().execute("SELECT COALESCE(SUM(size), 0) AS total FROM cartridge_cache").fetchone()
            return int(row["total"])

    def enforce_limit(self) -> int:
        """
        Evict least recently used entries until the total fits the budget.

        Returns:
            Number of evicted entries
        """
        evicted = 0
        with self._lock:
            conn = self._db()
            total = conn.execute("SELECT COALESCE(SUM(size), 0) FROM cartridge_cache").fetchone()[0]
            if total <= self.max_bytes:
                return 0
            rows = conn.execute(
                "SELECT cartridge_id, checksum, size FROM cartridge_cache ORDER BY last_access ASC"
            ).fetchall()
            for row in rows:
                if total <= self.max_bytes:
                    break
                conn.execute(
                    "DELETE FROM cartridge_cache WHERE cartridge_id = ? AND checksum = ?",
                    (row["cartridge_id"], row["checksum"]),
                )
                total -= row["size"]
                evicted += 1
            conn.commit()
        logger.info(f"Evicted {evicted} cache entr(y/ies), {total} bytes remain")
        return evicted
