"""
SQLite-based status store.

Suitable for local development, single-host deployments and tests.
Every pooled connection runs in autocommit mode; write transactions are
opened explicitly with BEGIN IMMEDIATE so that concurrent workers queue
on the database lock instead of failing on lock upgrades.
"""

import logging
import re
import sqlite3
from pathlib import Path
from typing import Any, Tuple, Union

from ..core.exceptions import ConstraintKind, ConstraintViolation, StoreError
from .base import SqlStatusStore


logger = logging.getLogger(__name__)


SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS block (
        id INTEGER PRIMARY KEY,
        number INTEGER NOT NULL UNIQUE,
        hash TEXT,
        timestamp TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS extracted_block (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        block_id INTEGER NOT NULL REFERENCES block (id) ON DELETE CASCADE,
        extractor_name TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'new'
            CHECK (status IN ('new', 'done', 'error')),
        UNIQUE (block_id, extractor_name)
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_extracted_block_status
    ON extracted_block (extractor_name, status, block_id)
    """,
)

_CONSTRAINT_NAME = re.compile(r"constraint failed: (.+)$")


class SqliteStatusStore(SqlStatusStore):
    """
    SQLite implementation of the status store.

    The database must be a file: every pooled connection and every
    read-only connection opens the same path.
    """

    def __init__(
        self,
        db_path: Union[str, Path],
        pool_size: int = 5,
        busy_timeout: float = 30.0,
        acquire_timeout: float = 30.0,
        auto_init: bool = True,
    ):
        """
        Initialize the SQLite status store.

        Args:
            db_path: Path to the SQLite database file
            pool_size: Maximum number of concurrently open write connections
            busy_timeout: Seconds to wait for the database lock
            acquire_timeout: Seconds to wait for a free pooled connection
            auto_init: Whether to create tables automatically
        """
        self.db_path = Path(db_path)
        self.busy_timeout = busy_timeout
        super().__init__(pool_size=pool_size, acquire_timeout=acquire_timeout)

        if auto_init:
            self.init_schema()

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(
            str(self.db_path),
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.execute("PRAGMA foreign_keys = ON")
        logger.debug(f"Connected to SQLite status store: {self.db_path}")
        return conn

    def _connect_read_only(self) -> sqlite3.Connection:
        conn = sqlite3.connect(
            f"{self.db_path.resolve().as_uri()}?mode=ro",
            uri=True,
            timeout=self.busy_timeout,
            isolation_level=None,
            check_same_thread=False,
        )
        conn.row_factory = sqlite3.Row
        return conn

    def init_schema(self) -> None:
        with self._acquire() as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        logger.debug("Initialized status store schema")

    def _table(self, name: str) -> str:
        return name

    def _limited_select(self, select_list: str, body: str) -> Tuple[str, bool]:
        return f"SELECT {select_list} {body} LIMIT ?", False

    def _insert_ignore_sql(self) -> str:
        return (
            "INSERT INTO extracted_block (block_id, extractor_name, status) "
            "VALUES (?, ?, ?) "
            "ON CONFLICT (block_id, extractor_name) DO NOTHING"
        )

    def _begin(self, conn: sqlite3.Connection) -> None:
        conn.execute("BEGIN IMMEDIATE")

    def _commit(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("COMMIT")

    def _rollback(self, conn: sqlite3.Connection) -> None:
        if conn.in_transaction:
            conn.execute("ROLLBACK")

    def _is_driver_error(self, error: BaseException) -> bool:
        return isinstance(error, sqlite3.Error)

    def _translate_error(self, error: BaseException) -> StoreError:
        message = str(error)

        if not isinstance(error, sqlite3.IntegrityError):
            return StoreError(f"SQLite error: {message}")

        error_name = getattr(error, "sqlite_errorname", "") or ""
        upper = message.upper()

        if error_name == "SQLITE_CONSTRAINT_FOREIGNKEY" or "FOREIGN KEY" in upper:
            kind = ConstraintKind.FOREIGN_KEY
        elif error_name in ("SQLITE_CONSTRAINT_UNIQUE", "SQLITE_CONSTRAINT_PRIMARYKEY") \
                or "UNIQUE" in upper:
            kind = ConstraintKind.UNIQUE
        elif error_name == "SQLITE_CONSTRAINT_CHECK" or "CHECK" in upper:
            kind = ConstraintKind.CHECK
        else:
            kind = ConstraintKind.OTHER

        match = _CONSTRAINT_NAME.search(message)
        constraint = match.group(1) if match else None

        return ConstraintViolation(message, kind=kind, constraint=constraint)

    def __repr__(self) -> str:
        return f"<SqliteStatusStore {self.db_path}>"
