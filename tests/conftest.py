"""
Shared test fixtures and configuration for pytest.
"""

import logging
import os
import sys
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import pytest

# Add src directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from extract.core.extractor import BlockExtractor
from extract.core.models import Block
from extract.state.sqlite_store import SqliteStatusStore


logger = logging.getLogger(__name__)


# ============================================================================
# Environment detection
# ============================================================================

def is_sqlserver_available() -> bool:
    """Check if SQL Server is available for testing."""
    password = os.environ.get("EXTRACT_SQLSERVER_PASSWORD") or os.environ.get("MSSQL_SA_PASSWORD")
    if not password:
        return False

    try:
        import pyodbc

        host = os.environ.get("EXTRACT_SQLSERVER_HOST", "localhost")
        port = int(os.environ.get("EXTRACT_SQLSERVER_PORT", "1433"))
        database = os.environ.get("EXTRACT_SQLSERVER_DATABASE", "Extract")
        username = os.environ.get("EXTRACT_SQLSERVER_USER", "sa")
        driver = os.environ.get("EXTRACT_SQLSERVER_DRIVER", "ODBC Driver 18 for SQL Server")

        conn_str = (
            f"Driver={{{driver}}};"
            f"Server={host},{port};"
            f"Database={database};"
            f"UID={username};"
            f"PWD={password};"
            f"TrustServerCertificate=yes"
        )

        conn = pyodbc.connect(conn_str, timeout=5)
        conn.close()
        return True

    except Exception as e:
        logger.debug(f"SQL Server not available: {e}")
        return False


# ============================================================================
# Pytest hooks
# ============================================================================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line("markers", "unit: Unit tests (no external dependencies)")
    config.addinivalue_line("markers", "integration: Integration tests (requires SQL Server)")


def pytest_collection_modifyitems(config, items):
    """Automatically skip integration tests if SQL Server is not available."""
    if not any("integration" in item.keywords for item in items):
        return
    if is_sqlserver_available():
        return

    skip_sqlserver = pytest.mark.skip(
        reason="SQL Server not available (set EXTRACT_SQLSERVER_PASSWORD and ensure SQL Server is running)"
    )

    for item in items:
        if "integration" in item.keywords:
            item.add_marker(skip_sqlserver)


# ============================================================================
# Test extractors
# ============================================================================

class RecordingExtractor(BlockExtractor):
    """
    Extractor that writes one 'derived' row per block and records its calls.

    failures maps a block height to the exception raised (after the rows
    of the sub-batch were written) whenever that height is processed.
    """

    def __init__(
        self,
        name: str,
        dependencies: Sequence[str] = (),
        disable_perf_boost: bool = False,
        failures: Optional[Dict[int, BaseException]] = None,
        bad_reference: Optional[int] = None,
    ):
        self.name = name
        self.extractor_dependencies = tuple(dependencies)
        self.disable_perf_boost = disable_perf_boost
        self.failures = dict(failures or {})
        self.bad_reference = bad_reference
        self.calls: List[List[int]] = []
        self._lock = threading.Lock()

    def extract(self, services, blocks):
        with self._lock:
            self.calls.append([b.number for b in blocks])

        cursor = services.tx.cursor()
        cursor.executemany(
            "INSERT INTO derived (block_id, extractor_name) VALUES (?, ?)",
            [(b.id, self.name) for b in blocks],
        )

        if self.bad_reference is not None and any(
            b.number == self.bad_reference for b in blocks
        ):
            cursor.execute(
                "INSERT INTO derived (block_id, extractor_name) VALUES (?, ?)",
                (-1, self.name),
            )

        for block in blocks:
            if block.number in self.failures:
                raise self.failures[block.number]

    def get_data(self, services, blocks):
        cursor = services.conn.cursor()
        placeholders = ", ".join("?" for _ in blocks)
        cursor.execute(
            f"SELECT block_id FROM derived WHERE extractor_name = ? "
            f"AND block_id IN ({placeholders}) ORDER BY block_id",
            [self.name] + [b.id for b in blocks],
        )
        return [row[0] for row in cursor.fetchall()]

    @property
    def processed(self) -> List[int]:
        with self._lock:
            return sorted(n for call in self.calls for n in call)


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def store(tmp_path) -> SqliteStatusStore:
    """SQLite status store on a fresh database, with a 'derived' side-effect table."""
    status_store = SqliteStatusStore(tmp_path / "extract.db", pool_size=4, busy_timeout=10.0)

    with status_store.transaction() as tx:
        tx.execute("""
            CREATE TABLE derived (
                block_id INTEGER NOT NULL REFERENCES block (id),
                extractor_name TEXT NOT NULL
            )
        """)

    yield status_store
    status_store.close()


@pytest.fixture
def add_blocks(store) -> Callable[..., List[Block]]:
    """
    Insert blocks (id == height) and queue them for the given extractors.

    Usage: add_blocks([50, 51, 52], ["a", "b"])
    """
    def _add(numbers: Iterable[int], extractor_names: Sequence[str] = ()) -> List[Block]:
        blocks = [Block(id=n, number=n, hash=f"0x{n:064x}") for n in numbers]
        with store.transaction() as tx:
            tx.executemany(
                "INSERT INTO block (id, number, hash, timestamp) VALUES (?, ?, ?, ?)",
                [(b.id, b.number, b.hash, None) for b in blocks],
            )
            store.queue_new_blocks(tx, list(extractor_names), blocks)
        return blocks

    return _add


@pytest.fixture
def derived_rows(store) -> Callable[[str], List[int]]:
    """Return block ids written to 'derived' by an extractor."""
    def _rows(extractor_name: str) -> List[int]:
        with store.connection(read_only=True) as conn:
            rows = conn.execute(
                "SELECT block_id FROM derived WHERE extractor_name = ? ORDER BY block_id",
                (extractor_name,),
            ).fetchall()
        return [row[0] for row in rows]

    return _rows


@pytest.fixture
def make_extractor() -> Callable[..., RecordingExtractor]:
    """Factory for RecordingExtractor instances."""
    return RecordingExtractor
