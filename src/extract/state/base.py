"""
Shared SQL implementation of the status store.

Both backends speak DB-API with qmark parameters, so the queries live
here and the backends only supply dialect details: table naming,
row limiting, insert-ignore syntax, transaction start, and driver
error translation.
"""

import logging
from abc import abstractmethod
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy import exc as sa_exc
from sqlalchemy.pool import QueuePool

from ..core.exceptions import ExtractError, StoreError
from ..core.models import Block, DependencyCondition, ExtractedBlock, ExtractionStatus
from ..core.status_store import StatusStore


logger = logging.getLogger(__name__)

# Keeps IN (...) lists under driver parameter limits
UPDATE_CHUNK_SIZE = 500


class SqlStatusStore(StatusStore):
    """
    Status store over pooled DB-API connections.

    The pool is a SQLAlchemy QueuePool wrapping the raw driver
    connections; no overflow connections are opened, so pool_size is a
    hard cap on concurrent writers.
    """

    def __init__(self, pool_size: int = 5, acquire_timeout: float = 30.0):
        if pool_size < 1:
            raise ValueError(f"Pool size must be at least 1, got {pool_size}")

        self.pool_size = pool_size
        self.acquire_timeout = acquire_timeout
        self._closed = False
        self.pool = QueuePool(
            self._connect,
            pool_size=pool_size,
            max_overflow=0,
            timeout=acquire_timeout,
            reset_on_return="rollback",
        )

    # ------------------------------------------------------------------
    # Dialect hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def _connect(self) -> Any:
        """Open a new write connection for the pool."""
        pass

    @abstractmethod
    def _connect_read_only(self) -> Any:
        """Open a new read-only connection (not pooled)."""
        pass

    @abstractmethod
    def _table(self, name: str) -> str:
        """Return the quoted, qualified name of a table."""
        pass

    @abstractmethod
    def _limited_select(self, select_list: str, body: str) -> Tuple[str, bool]:
        """
        Build a row-limited SELECT.

        Returns:
            (sql, limit_first) where limit_first tells whether the limit
            parameter precedes the body parameters
        """
        pass

    @abstractmethod
    def _insert_ignore_sql(self) -> str:
        """INSERT of (block_id, extractor_name, status) that skips existing pairs."""
        pass

    @abstractmethod
    def _begin(self, conn: Any) -> None:
        """Start a write transaction on conn."""
        pass

    @abstractmethod
    def _commit(self, conn: Any) -> None:
        pass

    @abstractmethod
    def _rollback(self, conn: Any) -> None:
        pass

    @abstractmethod
    def _is_driver_error(self, error: BaseException) -> bool:
        pass

    @abstractmethod
    def _translate_error(self, error: BaseException) -> StoreError:
        """Map a driver error to StoreError or ConstraintViolation."""
        pass

    # ------------------------------------------------------------------
    # Connections and transactions
    # ------------------------------------------------------------------

    @contextmanager
    def _acquire(self) -> Iterator[Any]:
        """Borrow a pooled connection; it returns to the pool on exit."""
        if self._closed:
            raise StoreError(f"{type(self).__name__} is closed")

        try:
            conn = self.pool.connect()
        except sa_exc.TimeoutError as e:
            raise StoreError(
                f"Timed out after {self.acquire_timeout}s waiting for a database connection "
                f"(pool size {self.pool_size})"
            ) from e
        except Exception as e:
            if self._is_driver_error(e):
                raise self._translate_error(e) from e
            raise

        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        with self._acquire() as conn:
            try:
                self._begin(conn)
                yield conn
                self._commit(conn)
            except BaseException as e:
                self._safe_rollback(conn)
                if self._is_driver_error(e):
                    raise self._translate_error(e) from e
                raise

    @contextmanager
    def connection(self, read_only: bool = False) -> Iterator[Any]:
        if read_only:
            conn = self._open_read_only()
            try:
                yield conn
            except BaseException as e:
                if self._is_driver_error(e):
                    raise self._translate_error(e) from e
                raise
            finally:
                conn.close()
            return

        with self._acquire() as conn:
            try:
                yield conn
                self._commit(conn)
            except BaseException as e:
                self._safe_rollback(conn)
                if self._is_driver_error(e):
                    raise self._translate_error(e) from e
                raise

    def _open_read_only(self) -> Any:
        try:
            return self._connect_read_only()
        except Exception as e:
            if self._is_driver_error(e):
                raise self._translate_error(e) from e
            raise

    def _safe_rollback(self, conn: Any) -> None:
        try:
            self._rollback(conn)
        except Exception as e:
            logger.warning(f"Rollback failed, discarding connection: {e}")
            conn.invalidate(e)

    def _run(self, operation: str, func):
        """Run a read on a pooled connection, translating driver errors."""
        with self._acquire() as conn:
            try:
                result = func(conn)
                self._commit(conn)
                return result
            except ExtractError:
                self._safe_rollback(conn)
                raise
            except Exception as e:
                self._safe_rollback(conn)
                if self._is_driver_error(e):
                    logger.error(f"Failed to {operation}: {e}")
                    raise self._translate_error(e) from e
                raise

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------

    def queue_new_blocks(
        self,
        conn: Any,
        extractor_names: Sequence[str],
        blocks: Sequence[Block],
    ) -> None:
        rows = [
            (block.id, name, ExtractionStatus.NEW.value)
            for block in blocks
            for name in extractor_names
        ]
        if not rows:
            return

        cursor = conn.cursor()
        cursor.executemany(self._insert_ignore_sql(), rows)
        logger.debug(
            f"Queued {len(blocks)} blocks for {len(extractor_names)} extractors "
            f"({len(rows)} pairs)"
        )

    def get_next_blocks(
        self,
        extractor_name: str,
        conditions: Sequence[DependencyCondition],
        limit: int,
    ) -> List[ExtractedBlock]:
        block_table = self._table("block")
        status_table = self._table("extracted_block")

        joins = []
        join_params: List[Any] = []
        for i, condition in enumerate(conditions):
            alias = f"dep{i}"
            joins.append(
                f"JOIN {status_table} {alias} ON {alias}.block_id = b.id "
                f"AND {alias}.extractor_name = ? AND {alias}.status = ?"
            )
            join_params.extend([condition.extractor_name, condition.required_status.value])

        body = (
            f"FROM {block_table} b "
            f"JOIN {status_table} eb ON eb.block_id = b.id "
            + " ".join(joins)
            + " WHERE eb.extractor_name = ? AND eb.status = ? "
            "ORDER BY b.number"
        )
        sql, limit_first = self._limited_select(
            "b.id, b.number, b.hash, b.timestamp, eb.id AS extracted_block_id",
            body,
        )

        params = join_params + [extractor_name, ExtractionStatus.NEW.value]
        params = [limit] + params if limit_first else params + [limit]

        def fetch(conn):
            cursor = conn.cursor()
            cursor.execute(sql, params)
            columns = [column[0] for column in cursor.description]
            return [self._row_to_block(dict(zip(columns, row))) for row in cursor.fetchall()]

        return self._run("fetch next blocks", fetch)

    def mark_blocks(
        self,
        conn: Any,
        blocks: Sequence[ExtractedBlock],
        extractor_name: str,
        status: ExtractionStatus,
    ) -> int:
        ids = [b.extracted_block_id for b in blocks]
        updated = 0
        cursor = conn.cursor()

        for start in range(0, len(ids), UPDATE_CHUNK_SIZE):
            chunk = ids[start:start + UPDATE_CHUNK_SIZE]
            placeholders = ", ".join("?" for _ in chunk)
            cursor.execute(
                f"UPDATE {self._table('extracted_block')} SET status = ? "
                f"WHERE extractor_name = ? AND status = ? AND id IN ({placeholders})",
                [status.value, extractor_name, ExtractionStatus.NEW.value] + chunk,
            )
            if cursor.rowcount and cursor.rowcount > 0:
                updated += cursor.rowcount

        if updated < len(ids):
            logger.warning(
                f"Only {updated} of {len(ids)} status rows for {extractor_name} "
                f"moved to {status.value} (others were no longer new)"
            )
        return updated

    def get_status(self, block_id: int, extractor_name: str) -> Optional[ExtractionStatus]:
        def fetch(conn):
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT status FROM {self._table('extracted_block')} "
                "WHERE block_id = ? AND extractor_name = ?",
                [block_id, extractor_name],
            )
            row = cursor.fetchone()
            return ExtractionStatus(row[0]) if row else None

        return self._run("get status", fetch)

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        def fetch(conn):
            cursor = conn.cursor()
            cursor.execute(
                f"SELECT extractor_name, status, COUNT(*) "
                f"FROM {self._table('extracted_block')} "
                "GROUP BY extractor_name, status"
            )
            stats: Dict[str, Dict[str, int]] = {}
            for name, status, count in cursor.fetchall():
                stats.setdefault(name, {})[status] = count
            return stats

        return self._run("get queue stats", fetch)

    def get_latest_block_number(self) -> Optional[int]:
        def fetch(conn):
            cursor = conn.cursor()
            cursor.execute(f"SELECT MAX(number) FROM {self._table('block')}")
            row = cursor.fetchone()
            return row[0] if row and row[0] is not None else None

        return self._run("get latest block number", fetch)

    def _row_to_block(self, row: Dict[str, Any]) -> ExtractedBlock:
        """Convert a result row to an ExtractedBlock."""
        return ExtractedBlock(
            id=row["id"],
            number=row["number"],
            hash=row.get("hash"),
            timestamp=self._parse_datetime(row.get("timestamp")),
            extracted_block_id=row["extracted_block_id"],
        )

    def _parse_datetime(self, value) -> Optional[datetime]:
        if value is None:
            return None
        if isinstance(value, datetime):
            return value
        return datetime.fromisoformat(str(value))

    def close(self) -> None:
        self._closed = True
        self.pool.dispose()
        logger.debug(f"Closed {type(self).__name__} connections")
