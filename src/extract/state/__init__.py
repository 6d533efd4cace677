"""
Status store implementations for the extraction queue.

To select a backend, pass it to create_status_store() or set the
EXTRACT_DB_BACKEND environment variable:
    - EXTRACT_DB_BACKEND=sqlite (default)
    - EXTRACT_DB_BACKEND=sqlserver
"""

import logging
import os
from pathlib import Path
from typing import Optional, Union

from ..core.status_store import StatusStore
from .sqlite_store import SqliteStatusStore


logger = logging.getLogger(__name__)


def _get_sqlserver_store():
    from .sqlserver_store import SqlServerStatusStore
    return SqlServerStatusStore


def create_status_store(
    backend: Optional[str] = None,
    # SQLite options
    db_path: Optional[Union[str, Path]] = None,
    # SQL Server options
    connection_string: Optional[str] = None,
    host: str = "localhost",
    port: int = 1433,
    database: str = "Extract",
    username: str = "sa",
    password: Optional[str] = None,
    driver: str = "ODBC Driver 18 for SQL Server",
    schema: str = "extract",
    trust_server_certificate: bool = True,
    # Shared options
    pool_size: int = 5,
    auto_init: bool = True,
) -> StatusStore:
    """
    Create the status store for the configured backend.

    Args:
        backend: 'sqlite' or 'sqlserver'. Defaults to EXTRACT_DB_BACKEND or 'sqlite'.
        db_path: SQLite database file
        connection_string: Full ODBC connection string for SQL Server
        host, port, database, username, password, driver, schema,
        trust_server_certificate: discrete SQL Server settings
        pool_size: Maximum number of concurrently open write connections
        auto_init: Create tables if missing

    Raises:
        ValueError: If backend is not recognized
        ImportError: If pyodbc is missing for the SQL Server backend
    """
    if backend is None:
        backend = os.environ.get("EXTRACT_DB_BACKEND", "sqlite")
    backend = backend.lower()

    if backend == "sqlite":
        if db_path is None:
            db_path = os.environ.get("EXTRACT_SQLITE_PATH", "local/state/extract.db")
        return SqliteStatusStore(db_path=Path(db_path), pool_size=pool_size, auto_init=auto_init)

    if backend == "sqlserver":
        SqlServerStatusStore = _get_sqlserver_store()

        if password is None:
            password = os.environ.get("EXTRACT_SQLSERVER_PASSWORD")
        if connection_string is None:
            connection_string = os.environ.get("EXTRACT_SQLSERVER_CONN_STR")

        return SqlServerStatusStore(
            connection_string=connection_string,
            host=host,
            port=port,
            database=database,
            username=username,
            password=password,
            driver=driver,
            schema=schema,
            pool_size=pool_size,
            auto_init=auto_init,
            trust_server_certificate=trust_server_certificate,
        )

    raise ValueError(
        f"Unknown backend: {backend}. Supported backends: 'sqlite', 'sqlserver'"
    )


__all__ = ["SqliteStatusStore", "create_status_store"]
