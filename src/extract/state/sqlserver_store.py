"""
SQL Server-based status store.

This is the production backend: multiple scheduler hosts may share it
and extractors write their own tables in the same database, inside the
same transaction as the status update.
"""

import logging
import re
from typing import Any, Optional, Tuple

try:
    import pyodbc
except ImportError:
    pyodbc = None

from ..core.exceptions import ConstraintKind, ConstraintViolation, StoreError
from .base import SqlStatusStore


logger = logging.getLogger(__name__)

_CONSTRAINT_NAME = re.compile(r'constraint "([^"]+)"', re.IGNORECASE)

# SQL Server native error numbers
_FK_OR_CHECK_VIOLATION = "547"
_UNIQUE_VIOLATIONS = ("2627", "2601")


class SqlServerStatusStore(SqlStatusStore):
    """
    SQL Server implementation of the status store.

    Features:
    - Pooled connections with explicit commit/rollback
    - Schema-qualified tables with validated identifiers
    - MERGE-based idempotent enqueue
    """

    def __init__(
        self,
        connection_string: Optional[str] = None,
        host: str = "localhost",
        port: int = 1433,
        database: str = "Extract",
        username: str = "sa",
        password: Optional[str] = None,
        driver: str = "ODBC Driver 18 for SQL Server",
        schema: str = "extract",
        pool_size: int = 5,
        acquire_timeout: float = 30.0,
        auto_init: bool = True,
        trust_server_certificate: bool = True,
    ):
        """
        Initialize the SQL Server status store.

        Args:
            connection_string: Full ODBC connection string (if provided, other params ignored)
            host: SQL Server host
            port: SQL Server port
            database: Database name
            username: Database username
            password: Database password
            driver: ODBC driver name
            schema: Schema name for tables (default: 'extract')
            pool_size: Maximum number of concurrently open write connections
            acquire_timeout: Seconds to wait for a free pooled connection
            auto_init: Whether to create schema and tables automatically
            trust_server_certificate: Whether to trust self-signed certificates
        """
        if pyodbc is None:
            raise ImportError(
                "pyodbc is required for SqlServerStatusStore. "
                "Install with: pip install pyodbc"
            )

        if not self._is_valid_identifier(schema):
            raise ValueError(f"Invalid schema name: {schema}")

        self.schema = schema

        if connection_string:
            self.connection_string = connection_string
        else:
            trust_cert = "yes" if trust_server_certificate else "no"
            self.connection_string = (
                f"Driver={{{driver}}};"
                f"Server={host},{port};"
                f"Database={database};"
                f"UID={username};"
                f"PWD={password};"
                f"TrustServerCertificate={trust_cert}"
            )

        super().__init__(pool_size=pool_size, acquire_timeout=acquire_timeout)

        if auto_init:
            self.init_schema()

    def _is_valid_identifier(self, name: str) -> bool:
        """
        Validate that a name is a safe SQL identifier.

        Must start with a letter or underscore, contain only letters,
        digits and underscores, and fit SQL Server's 128 character limit.
        """
        if not name or len(name) > 128:
            return False

        if not re.match(r'^[a-zA-Z_][a-zA-Z0-9_]*$', name):
            return False

        reserved_words = {
            'select', 'insert', 'update', 'delete', 'drop', 'create', 'alter',
            'exec', 'execute', 'union', 'where', 'from', 'table', 'database',
            'schema', 'index', 'grant', 'revoke', 'truncate', 'declare', 'set'
        }
        return name.lower() not in reserved_words

    def _connect(self):
        try:
            conn = pyodbc.connect(self.connection_string, autocommit=False)
        except pyodbc.Error as e:
            logger.error(f"Failed to connect to SQL Server: {e}")
            raise
        logger.debug(f"Connected to SQL Server status store (schema: {self.schema})")
        return conn

    def _connect_read_only(self):
        return pyodbc.connect(
            f"{self.connection_string};ApplicationIntent=ReadOnly",
            autocommit=True,
            readonly=True,
        )

    def init_schema(self) -> None:
        """Initialize database schema and tables."""
        with self.transaction() as conn:
            cursor = conn.cursor()

            # Schema name is validated in __init__; CREATE SCHEMA cannot take parameters
            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.schemas WHERE name = ?)
                BEGIN
                    EXEC('CREATE SCHEMA [{self.schema}]')
                END
            """, (self.schema,))

            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.tables t
                               JOIN sys.schemas s ON t.schema_id = s.schema_id
                               WHERE t.name = 'block' AND s.name = ?)
                BEGIN
                    CREATE TABLE [{self.schema}].[block] (
                        id BIGINT PRIMARY KEY,
                        number BIGINT NOT NULL,
                        hash NVARCHAR(66),
                        timestamp DATETIME2,
                        CONSTRAINT UQ_block_number UNIQUE (number)
                    )
                END
            """, (self.schema,))

            cursor.execute(f"""
                IF NOT EXISTS (SELECT * FROM sys.tables t
                               JOIN sys.schemas s ON t.schema_id = s.schema_id
                               WHERE t.name = 'extracted_block' AND s.name = ?)
                BEGIN
                    CREATE TABLE [{self.schema}].[extracted_block] (
                        id BIGINT IDENTITY(1,1) PRIMARY KEY,
                        block_id BIGINT NOT NULL,
                        extractor_name NVARCHAR(200) NOT NULL,
                        status NVARCHAR(10) NOT NULL DEFAULT 'new',
                        CONSTRAINT FK_extracted_block_block FOREIGN KEY (block_id)
                            REFERENCES [{self.schema}].[block] (id) ON DELETE CASCADE,
                        CONSTRAINT UQ_extracted_block UNIQUE (block_id, extractor_name),
                        CONSTRAINT CK_extracted_block_status
                            CHECK (status IN ('new', 'done', 'error'))
                    );
                    CREATE INDEX IX_extracted_block_status
                        ON [{self.schema}].[extracted_block] (extractor_name, status, block_id);
                END
            """, (self.schema,))

        logger.debug("Initialized status store schema")

    def _table(self, name: str) -> str:
        return f"[{self.schema}].[{name}]"

    def _limited_select(self, select_list: str, body: str) -> Tuple[str, bool]:
        return f"SELECT TOP (?) {select_list} {body}", True

    def _insert_ignore_sql(self) -> str:
        return f"""
            MERGE {self._table('extracted_block')} WITH (HOLDLOCK) AS t
            USING (SELECT ? AS block_id, ? AS extractor_name, ? AS status) AS src
            ON t.block_id = src.block_id AND t.extractor_name = src.extractor_name
            WHEN NOT MATCHED THEN
                INSERT (block_id, extractor_name, status)
                VALUES (src.block_id, src.extractor_name, src.status);
        """

    def _begin(self, conn: Any) -> None:
        # autocommit=False: the first statement opens the transaction
        pass

    def _commit(self, conn: Any) -> None:
        conn.commit()

    def _rollback(self, conn: Any) -> None:
        conn.rollback()

    def _is_driver_error(self, error: BaseException) -> bool:
        return pyodbc is not None and isinstance(error, pyodbc.Error)

    def _translate_error(self, error: BaseException) -> StoreError:
        message = " ".join(str(arg) for arg in error.args)

        if not isinstance(error, pyodbc.IntegrityError):
            return StoreError(f"SQL Server error: {message}")

        upper = message.upper()
        if "FOREIGN KEY" in upper or (
            _FK_OR_CHECK_VIOLATION in message and "CHECK" not in upper
        ):
            kind = ConstraintKind.FOREIGN_KEY
        elif any(code in message for code in _UNIQUE_VIOLATIONS) or "DUPLICATE KEY" in upper:
            kind = ConstraintKind.UNIQUE
        elif "CHECK" in upper:
            kind = ConstraintKind.CHECK
        else:
            kind = ConstraintKind.OTHER

        match = _CONSTRAINT_NAME.search(message)
        constraint = match.group(1) if match else None

        return ConstraintViolation(message, kind=kind, constraint=constraint)

    def __repr__(self) -> str:
        return f"<SqlServerStatusStore schema={self.schema}>"
