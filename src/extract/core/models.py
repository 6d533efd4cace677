"""
Core data models for the block extraction framework.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ExtractionStatus(str, Enum):
    """Status of a (block, extractor) pair in the extraction queue."""
    NEW = "new"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class Block:
    """
    A block as persisted by the ingestion process.

    Attributes:
        id: Database identifier of the block row
        number: Block height (strictly increasing)
        hash: Block hash
        timestamp: Block timestamp, if known
    """
    id: int
    number: int
    hash: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ExtractedBlock(Block):
    """
    A block returned by the fetcher for a given extractor.

    Carries the id of the extractor's status row so that status
    updates can target it directly.
    """
    extracted_block_id: int = 0


@dataclass(frozen=True)
class DependencyCondition:
    """Required status of another extractor for the same block."""
    extractor_name: str
    required_status: ExtractionStatus = ExtractionStatus.DONE


@dataclass(frozen=True)
class NetworkState:
    """
    Snapshot of the chain taken when the scheduler starts.

    Attributes:
        latest_block_on_start: Highest known block height at process start
    """
    latest_block_on_start: int


def format_block_range(blocks) -> str:
    """Describe the heights covered by a sequence of blocks (e.g. '50-52')."""
    if not blocks:
        return "-"
    first = blocks[0].number
    last = blocks[-1].number
    if first == last:
        return str(first)
    return f"{first}-{last}"
