"""
Reorg-aware grouping of fetched blocks into transactional sub-batches.

Far from the chain tip a reorg of the processed window is practically
impossible, so consecutive blocks are processed together in one
transaction. Close to the tip each block gets its own transaction, so a
reorg can only ever invalidate one committed status row at a time.
"""

from typing import List, Sequence, TypeVar

from ..core.models import Block


DEFAULT_REORG_MARGIN = 1000

B = TypeVar("B", bound=Block)


def is_close_to_tip(
    blocks: Sequence[Block],
    tip_at_start: int,
    batch_size: int,
    margin: int = DEFAULT_REORG_MARGIN,
) -> bool:
    """
    Check whether a fetched batch is within reach of a reorg.

    Uses the lowest height of the batch (0 for an empty batch):
    lowest + batch_size - tip_at_start + margin > 0
    """
    lowest = blocks[0].number if blocks else 0
    return lowest + batch_size - tip_at_start + margin > 0


def find_consecutive_subsets(blocks: Sequence[B]) -> List[List[B]]:
    """
    Split height-ascending blocks into maximal runs of consecutive heights.

    Example:
        heights [50, 51, 52, 54, 55] -> [[50, 51, 52], [54, 55]]
    """
    subsets: List[List[B]] = []
    for block in blocks:
        if subsets and block.number == subsets[-1][-1].number + 1:
            subsets[-1].append(block)
        else:
            subsets.append([block])
    return subsets


def group_blocks(
    blocks: Sequence[B],
    tip_at_start: int,
    batch_size: int,
    disable_perf_boost: bool = False,
    margin: int = DEFAULT_REORG_MARGIN,
) -> List[List[B]]:
    """
    Group a fetched batch into sub-batches, one transaction each.

    Returns consecutive runs when the batch is far from the tip and the
    extractor allows it, otherwise one singleton per block.
    """
    if should_process_in_batch(blocks, tip_at_start, batch_size, disable_perf_boost, margin):
        return find_consecutive_subsets(blocks)
    return [[block] for block in blocks]


def should_process_in_batch(
    blocks: Sequence[Block],
    tip_at_start: int,
    batch_size: int,
    disable_perf_boost: bool = False,
    margin: int = DEFAULT_REORG_MARGIN,
) -> bool:
    return not disable_perf_boost and not is_close_to_tip(blocks, tip_at_start, batch_size, margin)
