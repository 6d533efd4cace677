"""
Applies one extractor to one sub-batch inside a single transaction.
"""

import logging
from enum import Enum
from typing import Sequence

from ..core.exceptions import ConstraintViolation, RetryableError
from ..core.extractor import BlockExtractor
from ..core.models import ExtractedBlock, ExtractionStatus, format_block_range
from ..core.services import Services, TransactionalServices


logger = logging.getLogger(__name__)


class ApplyOutcome(str, Enum):
    """Result of applying an extractor to a sub-batch."""
    DONE = "done"
    RETRY = "retry"
    ERROR = "error"


def is_recoverable(error: BaseException) -> bool:
    """
    Check whether a failed sub-batch should simply be retried later.

    Recoverable errors are the ones the extractor flags as retryable and
    foreign key violations, which typically mean a row written by an
    upstream extractor is not visible yet.
    """
    if isinstance(error, RetryableError):
        return True
    return isinstance(error, ConstraintViolation) and error.is_foreign_key


def is_store_failure(error: BaseException, body_running: bool) -> bool:
    """
    Check whether a failure belongs to the store rather than the sub-batch.

    Failures raised while the transaction body ran (the transform and the
    status advance) belong to the sub-batch. Outside of it, while getting
    a connection, opening the transaction or committing, only constraint
    violations do; anything else is process-fatal and leaves the blocks
    untouched.
    """
    return not body_running and not isinstance(error, ConstraintViolation)


class TransactionalApplier:
    """
    Runs extractor.extract and the 'new' -> 'done' status advance atomically.

    Outcomes:
    - DONE: both committed together
    - RETRY: rolled back, status left 'new' for a later pass
    - ERROR: rolled back, status moved to 'error' on a separate connection

    Store failures outside the transaction body (pool timeout, connection
    or BEGIN errors, non-constraint commit errors) propagate unmarked, as
    does a failure while marking 'error' that is not a foreign key
    violation. Both are fatal for the scheduler.
    """

    def __init__(self, services: Services):
        self.services = services
        self.store = services.store

    def apply(self, blocks: Sequence[ExtractedBlock], extractor: BlockExtractor) -> ApplyOutcome:
        blocks = list(blocks)
        block_range = format_block_range(blocks)
        context = {"extractor": extractor.name, "block_range": block_range}

        logger.debug(
            f"Extracting blocks: {', '.join(str(b.number) for b in blocks)}",
            extra=context,
        )

        body_running = False
        try:
            with self.store.transaction() as tx:
                body_running = True
                tx_services = TransactionalServices(
                    store=self.services.store,
                    config=self.services.config,
                    network_state=self.services.network_state,
                    tx=tx,
                )
                extractor.extract(tx_services, blocks)

                logger.debug(f"Marking blocks as processed: {block_range}", extra=context)
                self.store.mark_blocks(tx, blocks, extractor.name, ExtractionStatus.DONE)
                logger.debug(f"Closing transaction for {block_range}", extra=context)
                body_running = False

        except Exception as e:
            if is_store_failure(e, body_running):
                raise

            if is_recoverable(e):
                logger.warning(
                    f"Retryable error while processing {block_range} with {extractor.name}, "
                    f"will retry: {e}",
                    extra={**context, "outcome": ApplyOutcome.RETRY.value},
                )
                return ApplyOutcome.RETRY

            logger.error(
                f"Error occurred while processing {block_range} with {extractor.name}: {e}",
                extra={**context, "outcome": ApplyOutcome.ERROR.value},
                exc_info=True,
            )
            self._mark_error(blocks, extractor)
            return ApplyOutcome.ERROR

        return ApplyOutcome.DONE

    def _mark_error(self, blocks: Sequence[ExtractedBlock], extractor: BlockExtractor) -> None:
        block_range = format_block_range(blocks)
        try:
            with self.store.connection() as conn:
                self.store.mark_blocks(conn, blocks, extractor.name, ExtractionStatus.ERROR)
        except ConstraintViolation as e:
            if not e.is_foreign_key:
                raise
            # Referenced block is gone (e.g. removed by a reorg); nothing left to mark
            logger.warning(
                f"Could not mark {block_range} as error for {extractor.name}: {e}",
                extra={"extractor": extractor.name, "block_range": block_range},
            )
