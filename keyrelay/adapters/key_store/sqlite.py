"""SQLite-backed key store.

Notes:
- One connection per store, shared across threads behind a lock.
- Leases run inside ``BEGIN IMMEDIATE`` so they stay serialized even when
  several processes open the same database file.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from keyrelay.adapters.key_store.base import AbstractKeyStore, Credential, LeaseResult
from keyrelay.core.logging import fingerprint

logger = logging.getLogger(__name__)

_SELECT_COLUMNS = "id, base_url, key AS secret, pool, last_used"


def _to_credential(row: sqlite3.Row) -> Credential:
    return Credential(
        id=int(row["id"]),
        base_url=row["base_url"],
        secret=row["secret"],
        pool=row["pool"],
    )


def _pool_clause(pool: str | None) -> tuple[str, tuple]:
    if pool is None:
        return "", ()
    return "WHERE pool = ?", (pool,)


class SQLiteKeyStore(AbstractKeyStore):
    """Durable table of upstream keys stored in one SQLite file."""

    def __init__(self, db_path: str | Path) -> None:
        """Open (creating if needed) the database file.

        Args:
            db_path: Filesystem path, or ``":memory:"`` for a throwaway store.
        """
        path = str(db_path)
        if path != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)

        # isolation_level=None: transactions are opened explicitly in lease()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._path = path
        with self._lock:
            self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.execute("PRAGMA synchronous = NORMAL")
            self._conn.execute("PRAGMA busy_timeout = 5000")

    def __repr__(self) -> str:  # pragma: no cover - representation only
        return f"SQLiteKeyStore(db_path={self._path!r})"

    def initialize(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS keys (
                    id        INTEGER NOT NULL PRIMARY KEY AUTOINCREMENT,
                    base_url  TEXT    NOT NULL,
                    key       TEXT    NOT NULL,
                    pool      TEXT,
                    last_used INTEGER NOT NULL DEFAULT 0
                )
                """
            )
            columns = {row["name"] for row in self._conn.execute("PRAGMA table_info(keys)")}
            if "pool" not in columns:
                # databases created before pools existed
                self._conn.execute("ALTER TABLE keys ADD COLUMN pool TEXT")
                logger.info("key_store.migrated", extra={"added_column": "pool"})
            self._conn.execute(
                "CREATE INDEX IF NOT EXISTS keys_pool_lru ON keys (pool, last_used, id)"
            )

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[None]:
        self._conn.execute("BEGIN IMMEDIATE")
        try:
            yield
        except BaseException:
            self._conn.execute("ROLLBACK")
            raise
        self._conn.execute("COMMIT")

    def _select_lru_row(self, pool: str | None) -> sqlite3.Row | None:
        where, params = _pool_clause(pool)
        return self._conn.execute(
            f"SELECT {_SELECT_COLUMNS} FROM keys {where} ORDER BY last_used ASC, id ASC LIMIT 1",
            params,
        ).fetchone()

    def least_recently_used(self, pool: str | None = None) -> Credential | None:
        with self._lock:
            row = self._select_lru_row(pool)
        return _to_credential(row) if row is not None else None

    def last_used(self, credential_id: int) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT last_used FROM keys WHERE id = ?", (credential_id,)
            ).fetchone()
        if row is None or row["last_used"] is None:
            return 0
        return int(row["last_used"])

    def mark_used(self, credential_id: int, timestamp: int) -> None:
        with self._lock:
            self._conn.execute(
                "UPDATE keys SET last_used = ? WHERE id = ?", (timestamp, credential_id)
            )

    def lease(self, pool: str | None, *, now: int, cooldown_ms: int) -> LeaseResult:
        with self._lock, self._transaction():
            row = self._select_lru_row(pool)
            if row is None:
                return LeaseResult.no_key_available()

            credential = _to_credential(row)
            elapsed = now - int(row["last_used"] or 0)
            if elapsed < cooldown_ms:
                return LeaseResult.rate_limited(
                    credential, elapsed_ms=elapsed, cooldown_ms=cooldown_ms
                )

            self._conn.execute(
                "UPDATE keys SET last_used = ? WHERE id = ?", (now, credential.id)
            )
            return LeaseResult.grant(credential)

    def add_credential(self, base_url: str, secret: str, pool: str | None = None) -> Credential:
        with self._lock:
            cursor = self._conn.execute(
                "INSERT INTO keys (base_url, key, pool) VALUES (?, ?, ?)",
                (base_url, secret, pool),
            )
            credential_id = int(cursor.lastrowid)
        logger.info(
            "key_store.credential_added",
            extra={"credential_id": credential_id, "pool_hash": fingerprint(pool)},
        )
        return Credential(id=credential_id, base_url=base_url, secret=secret, pool=pool)

    def count(self, pool: str | None = None) -> int:
        where, params = _pool_clause(pool)
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) AS c FROM keys {where}", params).fetchone()
        return int(row["c"])
