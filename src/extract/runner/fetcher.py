"""
Finds the next blocks an extractor may process.
"""

import logging
from typing import List

from ..core.extractor import BlockExtractor, ExtractorRegistry
from ..core.models import ExtractedBlock, format_block_range
from ..core.status_store import StatusStore


logger = logging.getLogger(__name__)


class DependencyAwareFetcher:
    """
    Selects ready blocks for an extractor.

    A block is ready when the extractor's own status row is 'new' and
    every declared dependency's row for the same block is 'done'.
    Results are ascending by height and capped at batch_size; an empty
    list means there is no work right now.
    """

    def __init__(self, store: StatusStore, registry: ExtractorRegistry, batch_size: int):
        self.store = store
        self.registry = registry
        self.batch_size = batch_size

    def next_batch(self, extractor: BlockExtractor) -> List[ExtractedBlock]:
        blocks = self.store.get_next_blocks(
            extractor.name,
            self.registry.conditions_for(extractor),
            self.batch_size,
        )

        if blocks:
            logger.debug(
                f"Fetched {len(blocks)} blocks for {extractor.name}",
                extra={"extractor": extractor.name, "block_range": format_block_range(blocks)},
            )
        return blocks
