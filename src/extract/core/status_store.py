"""
Status store interface for the per-(block, extractor) extraction queue.
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Optional, Sequence

from .models import Block, DependencyCondition, ExtractedBlock, ExtractionStatus


class StatusStore(ABC):
    """
    Abstract base class for status stores.

    A status store owns one row per (block, extractor) pair and is the
    only writer of those rows. It is also the work queue: rows in 'new'
    are pending work.

    Driver errors raised inside transaction() or connection() are
    translated to StoreError / ConstraintViolation before they leave
    the context manager.
    """

    # Maximum concurrent connections, None when unbounded
    pool_size: Optional[int] = None

    @abstractmethod
    def init_schema(self) -> None:
        """Create the block and status tables if they do not exist."""
        pass

    @abstractmethod
    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """
        Open a write transaction on a pooled connection.

        Commits when the block exits normally, rolls back otherwise.
        """
        pass

    @abstractmethod
    @contextmanager
    def connection(self, read_only: bool = False) -> Iterator[Any]:
        """
        Get a connection outside of any caller transaction.

        Writes made on a non read-only connection are committed when the
        block exits normally.
        """
        pass

    @abstractmethod
    def queue_new_blocks(
        self,
        conn: Any,
        extractor_names: Sequence[str],
        blocks: Sequence[Block],
    ) -> None:
        """
        Insert a 'new' row for every (block, extractor) pair.

        Existing pairs are left untouched.
        """
        pass

    @abstractmethod
    def get_next_blocks(
        self,
        extractor_name: str,
        conditions: Sequence[DependencyCondition],
        limit: int,
    ) -> List[ExtractedBlock]:
        """
        Get blocks whose status for extractor_name is 'new' and which
        satisfy every dependency condition, ascending by height.
        """
        pass

    @abstractmethod
    def mark_blocks(
        self,
        conn: Any,
        blocks: Sequence[ExtractedBlock],
        extractor_name: str,
        status: ExtractionStatus,
    ) -> int:
        """
        Move status rows of blocks from 'new' to status.

        Rows not currently 'new' are left untouched.

        Returns:
            Number of rows updated
        """
        pass

    @abstractmethod
    def get_status(self, block_id: int, extractor_name: str) -> Optional[ExtractionStatus]:
        """Get the status of one (block, extractor) pair, if queued."""
        pass

    @abstractmethod
    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """
        Get row counts per extractor and status.

        Returns:
            {extractor_name: {status: count}}
        """
        pass

    @abstractmethod
    def get_latest_block_number(self) -> Optional[int]:
        """Get the highest stored block height, or None when empty."""
        pass

    def close(self) -> None:
        """Close any open resources. Optional."""
        pass
