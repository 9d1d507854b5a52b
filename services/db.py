import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Iterator, Optional

import config

logger = logging.getLogger(__name__)
ORDERS_DB_PATH = config.ORDERS_DB_PATH

# ====================================================================
# SQLITE: WAL MODE + TIMEOUT + WRITE LOCK
# - WAL mode allows concurrent reads while serializing writes
# - 10s timeout prevents infinite hangs on database locks
# - _db_write_lock serializes multi-statement writes from worker threads
# ====================================================================

_db_write_lock = Lock()
_db_timeout = 10  # seconds


def _resolve(db_path: Optional[Path]) -> Path:
    return Path(db_path) if db_path is not None else Path(ORDERS_DB_PATH)


@contextmanager
def get_db_connection(db_path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    """
    Context manager for a SQLite connection.
    - Enforces timeout to prevent infinite waits
    - Enables WAL mode for better concurrency
    - Ensures cleanup even on exception
    """
    path = _resolve(db_path)
    conn = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(path, timeout=_db_timeout)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        yield conn
    except sqlite3.DatabaseError as e:
        logger.error(f"[DB] Database error on {path}: {e}", exc_info=True)
        raise
    finally:
        if conn:
            try:
                conn.close()
            except sqlite3.Error as e:
                logger.warning(f"[DB] Error closing connection: {e}")


@contextmanager
def write_transaction(db_path: Optional[Path] = None) -> Iterator[sqlite3.Connection]:
    """
    Serialized write transaction: commits on success, rolls back on error.
    """
    with _db_write_lock:
        with get_db_connection(db_path) as conn:
            try:
                yield conn
                conn.commit()
            except sqlite3.OperationalError as e:
                conn.rollback()
                if "database is locked" in str(e):
                    logger.error(f"[DB] Database locked after {_db_timeout}s timeout: {e}")
                raise
            except Exception:
                conn.rollback()
                raise


def execute_write(sql: str, params: tuple = (), db_path: Optional[Path] = None) -> Optional[int]:
    """Run a single write statement under the write lock."""
    with write_transaction(db_path) as conn:
        cur = conn.execute(sql, params)
        return cur.lastrowid


def ensure_orders_schema(db_path: Optional[Path] = None) -> None:
    """
    Create the orders table and the app_kv_store table if missing.
    One row per order; the full order is kept as JSON in ``payload``.
    """
    with write_transaction(db_path) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS orders (
                order_id TEXT PRIMARY KEY,
                seq INTEGER NOT NULL DEFAULT 0,
                purchase_date TEXT,
                payload TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
            """
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_orders_purchase_date ON orders(purchase_date)")
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS app_kv_store (
                key   TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
            """
        )


def get_app_kv(conn, key: str) -> Optional[str]:
    """
    Get a value from app_kv_store by key.

    Returns:
        The value as a string, or None if key not found
    """
    try:
        row = conn.execute("SELECT value FROM app_kv_store WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None
    except sqlite3.Error as exc:
        logger.error(f"[DB] Failed to get_app_kv for key '{key}': {exc}")
        raise


def set_app_kv(conn, key: str, value: str) -> None:
    """Insert or update a key in app_kv_store. The caller commits."""
    conn.execute(
        """
        INSERT INTO app_kv_store (key, value)
        VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value
        """,
        (key, value),
    )


def delete_app_kv(conn, key: str) -> None:
    conn.execute("DELETE FROM app_kv_store WHERE key = ?", (key,))
