"""
Extraction scheduler: the top-level loop driving every extractor.

This module provides a ThreadPoolExecutor-based scheduler that:
- Runs one pass over all registered extractors, in registration order
- Never runs two extractors at the same time
- Applies the sub-batches of one extractor concurrently, one transaction each
- Sleeps after passes that made no progress
- Runs until the process is asked to stop or a fatal error occurs
"""

import logging
import signal
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Union

from ..core.exceptions import ExtractConfigError
from ..core.extractor import BlockExtractor, ExtractorRegistry
from ..core.models import ExtractedBlock, NetworkState, format_block_range
from ..core.services import Services
from ..core.status_store import StatusStore
from .applier import ApplyOutcome, TransactionalApplier
from .batcher import DEFAULT_REORG_MARGIN, group_blocks, should_process_in_batch
from .fetcher import DependencyAwareFetcher


logger = logging.getLogger(__name__)


@dataclass
class SchedulerConfig:
    """
    Configuration for the extraction scheduler.

    Attributes:
        batch_size: Maximum blocks fetched per extractor per pass
        idle_delay_ms: Pause after a pass that made no progress
        reorg_margin: Distance from the tip (in blocks) inside which
            blocks are processed one per transaction
        max_workers: Concurrent sub-batch transactions; keep it at or
            below the store's connection pool size
    """
    batch_size: int = 100
    idle_delay_ms: int = 1000
    reorg_margin: int = DEFAULT_REORG_MARGIN
    max_workers: int = 4

    def __post_init__(self):
        if self.batch_size < 1:
            raise ExtractConfigError(f"batch_size must be at least 1, got {self.batch_size}")
        if self.idle_delay_ms < 0:
            raise ExtractConfigError(f"idle_delay_ms must not be negative, got {self.idle_delay_ms}")
        if self.reorg_margin < 0:
            raise ExtractConfigError(f"reorg_margin must not be negative, got {self.reorg_margin}")
        if self.max_workers < 1:
            raise ExtractConfigError(f"max_workers must be at least 1, got {self.max_workers}")


class SchedulerState(str, Enum):
    """DRAINING while the last full pass made progress, IDLE otherwise."""
    DRAINING = "draining"
    IDLE = "idle"


@dataclass
class SchedulerMetrics:
    """Aggregate metrics since the scheduler was created."""
    started_at: datetime
    passes: int = 0
    idle_passes: int = 0
    sub_batches: int = 0
    blocks_done: int = 0
    blocks_retried: int = 0
    blocks_errored: int = 0
    per_extractor: Dict[str, Dict[str, int]] = field(default_factory=dict)


class ExtractionScheduler:
    """
    Drives all registered extractors forever.

    Features:
    - Dependency-aware fetching per extractor
    - Reorg-aware grouping into transactional sub-batches
    - Concurrent, independent sub-batch transactions
    - Graceful stop on SIGINT/SIGTERM after the current pass
    """

    def __init__(
        self,
        store: StatusStore,
        extractors: Union[ExtractorRegistry, Iterable[BlockExtractor]],
        network_state: NetworkState,
        config: Optional[SchedulerConfig] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            store: Status store shared by every worker
            extractors: Registry or extractors in the order they should run
            network_state: Chain snapshot taken at process start
            config: Scheduler configuration (uses defaults if not provided)
        """
        self.store = store
        self.registry = (
            extractors if isinstance(extractors, ExtractorRegistry)
            else ExtractorRegistry(extractors)
        )
        self.network_state = network_state
        self.config = config or SchedulerConfig()

        # Each worker holds at most one pooled connection
        if store.pool_size is not None and self.config.max_workers > store.pool_size:
            raise ExtractConfigError(
                f"max_workers ({self.config.max_workers}) exceeds the status store "
                f"pool size ({store.pool_size})"
            )

        self.services = Services(store=store, config=self.config, network_state=network_state)
        self.fetcher = DependencyAwareFetcher(store, self.registry, self.config.batch_size)
        self.applier = TransactionalApplier(self.services)

        self.state = SchedulerState.IDLE
        self._pass_number = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        self._shutdown_event = threading.Event()

        self._metrics_lock = threading.Lock()
        self.metrics = SchedulerMetrics(started_at=datetime.now(timezone.utc))

    def run(self) -> SchedulerMetrics:
        """
        Run passes until shutdown is requested.

        Returns only after shutdown(); fatal errors propagate.
        """
        if len(self.registry) == 0:
            logger.warning("No extractors registered, nothing to do")
            return self.metrics

        logger.info(
            f"Spawning extractors: {len(self.registry)} "
            f"(tip on start: {self.network_state.latest_block_on_start}, "
            f"batch: {self.config.batch_size}, workers: {self.config.max_workers})"
        )

        restore_signals = self._install_signal_handlers()
        self._shutdown_event.clear()

        try:
            while not self._shutdown_event.is_set():
                progressed = self.run_pass()
                if not progressed and not self._shutdown_event.is_set():
                    self._sleep(self.config.idle_delay_ms / 1000.0)
        finally:
            restore_signals()
            self.close()

        logger.warning(f"Extraction stopped after {self.metrics.passes} passes")
        return self.metrics

    def run_pass(self) -> bool:
        """
        Run every extractor once, one after another.

        Returns:
            True if any extractor moved a block out of 'new'. A pass
            whose blocks were all retried counts as idle.
        """
        self._pass_number += 1
        pass_number = self._pass_number
        logger.debug(f"Starting pass {pass_number}", extra={"pass_number": pass_number})

        progressed = False
        for extractor in self.registry:
            if self.extract_blocks(extractor) > 0:
                progressed = True

        self.state = SchedulerState.DRAINING if progressed else SchedulerState.IDLE
        with self._metrics_lock:
            self.metrics.passes += 1
            if not progressed:
                self.metrics.idle_passes += 1

        logger.debug(
            f"Finished pass {pass_number} ({self.state.value})",
            extra={"pass_number": pass_number},
        )
        return progressed

    def extract_blocks(self, extractor: BlockExtractor) -> int:
        """
        Fetch, group and apply one batch for an extractor.

        All sub-batches run to completion even if some fail; the first
        fatal error is re-raised afterwards.

        Returns:
            Number of blocks that left the 'new' status (done or error);
            retried blocks do not count
        """
        blocks = self.fetcher.next_batch(extractor)
        if not blocks:
            return 0

        tip = self.network_state.latest_block_on_start
        process_in_batch = should_process_in_batch(
            blocks, tip, self.config.batch_size,
            extractor.disable_perf_boost, self.config.reorg_margin,
        )
        sub_batches = group_blocks(
            blocks, tip, self.config.batch_size,
            extractor.disable_perf_boost, self.config.reorg_margin,
        )

        logger.debug(
            f"Processing {len(blocks)} blocks with {extractor.name} in "
            f"{len(sub_batches)} sub-batches. ProcessInBatch: {process_in_batch}",
            extra={"extractor": extractor.name, "block_range": format_block_range(blocks)},
        )

        executor = self._get_executor()
        futures: List[Future] = [
            executor.submit(self.applier.apply, sub_batch, extractor)
            for sub_batch in sub_batches
        ]
        wait(futures)

        fatal: Optional[BaseException] = None
        progressed = 0
        for future, sub_batch in zip(futures, sub_batches):
            error = future.exception()
            if error is not None:
                logger.error(
                    f"Fatal error while processing {format_block_range(sub_batch)} "
                    f"with {extractor.name}: {error}",
                    extra={
                        "extractor": extractor.name,
                        "block_range": format_block_range(sub_batch),
                    },
                    exc_info=error,
                )
                if fatal is None:
                    fatal = error
                continue
            outcome = future.result()
            self._record(extractor, sub_batch, outcome)
            if outcome != ApplyOutcome.RETRY:
                progressed += len(sub_batch)

        if fatal is not None:
            raise fatal

        return progressed

    def _record(
        self,
        extractor: BlockExtractor,
        sub_batch: List[ExtractedBlock],
        outcome: ApplyOutcome,
    ) -> None:
        count = len(sub_batch)
        with self._metrics_lock:
            self.metrics.sub_batches += 1
            per_extractor = self.metrics.per_extractor.setdefault(
                extractor.name, {o.value: 0 for o in ApplyOutcome}
            )
            per_extractor[outcome.value] += count

            if outcome == ApplyOutcome.DONE:
                self.metrics.blocks_done += count
            elif outcome == ApplyOutcome.RETRY:
                self.metrics.blocks_retried += count
            else:
                self.metrics.blocks_errored += count

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="extract-worker",
            )
        return self._executor

    def _sleep(self, seconds: float) -> None:
        """Wait between idle passes; returns early on shutdown."""
        self._shutdown_event.wait(seconds)

    def _install_signal_handlers(self):
        """Stop after the current pass on SIGINT/SIGTERM. Returns a restore callback."""
        if threading.current_thread() is not threading.main_thread():
            return lambda: None

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handle_shutdown_signal(signum, frame):
            logger.info(f"Received signal {signum}, stopping after the current pass...")
            self.shutdown()

        signal.signal(signal.SIGINT, _handle_shutdown_signal)
        signal.signal(signal.SIGTERM, _handle_shutdown_signal)

        def restore():
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)

        return restore

    # =========================================================================
    # Control Methods
    # =========================================================================

    def shutdown(self) -> None:
        """Request the loop to stop once the current pass completes."""
        logger.info("Initiating shutdown...")
        self._shutdown_event.set()

    def close(self) -> None:
        """Release worker threads."""
        if self._executor:
            self._executor.shutdown(wait=True)
            self._executor = None

    def get_status(self) -> Dict:
        """
        Get current scheduler status.

        Returns:
            Dictionary with scheduler state, metrics and queue counts
        """
        with self._metrics_lock:
            metrics = {
                "passes": self.metrics.passes,
                "idle_passes": self.metrics.idle_passes,
                "sub_batches": self.metrics.sub_batches,
                "blocks_done": self.metrics.blocks_done,
                "blocks_retried": self.metrics.blocks_retried,
                "blocks_errored": self.metrics.blocks_errored,
                "per_extractor": {k: dict(v) for k, v in self.metrics.per_extractor.items()},
            }

        return {
            "state": self.state.value,
            "extractors": self.registry.names,
            "tip_on_start": self.network_state.latest_block_on_start,
            "metrics": metrics,
            "queue": self.store.get_stats(),
        }
