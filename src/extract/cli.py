#!/usr/bin/env python3
"""
CLI entry point for the block extraction framework.

Usage:
    python -m extract --config config/extract.yaml init-db
    python -m extract --config config/extract.yaml run --tip-height 18000000
    python -m extract --config config/extract.yaml stats
"""

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import ExtractConfig
from .core.exceptions import ExtractError
from .core.extractor import load_extractors
from .core.logging import configure_logging
from .core.models import NetworkState
from .core.status_store import StatusStore
from .runner.scheduler import ExtractionScheduler
from .state import create_status_store


logger = logging.getLogger(__name__)


def build_status_store(config: ExtractConfig, auto_init: bool = True) -> StatusStore:
    """Build the status store from configuration."""
    state_config = config.get_state_config()
    backend = state_config.get("backend", "sqlite")
    pool_size = int(state_config.get("pool_size", 5))

    if backend == "sqlserver":
        sql_config = state_config.get("sqlserver", {})
        return create_status_store(
            backend="sqlserver",
            connection_string=sql_config.get("connection_string"),
            host=sql_config.get("host", "localhost"),
            port=int(sql_config.get("port", 1433)),
            database=sql_config.get("database", "Extract"),
            username=sql_config.get("user", "sa"),
            password=sql_config.get("password"),
            driver=sql_config.get("driver", "ODBC Driver 18 for SQL Server"),
            schema=sql_config.get("schema", "extract"),
            pool_size=pool_size,
            auto_init=auto_init,
        )

    return create_status_store(
        backend=backend,
        db_path=state_config.get("sqlite", {}).get("db_path"),
        pool_size=pool_size,
        auto_init=auto_init,
    )


def cmd_init_db(config: ExtractConfig, args: argparse.Namespace) -> int:
    store = build_status_store(config, auto_init=False)
    try:
        store.init_schema()
        logger.info("Status store schema ready")
    finally:
        store.close()
    return 0


def cmd_run(config: ExtractConfig, args: argparse.Namespace) -> int:
    registry = load_extractors(config.get_extractor_refs())
    if len(registry) == 0:
        logger.error("No extractors configured (set 'extractors' in the config file)")
        return 1

    scheduler_config = config.get_scheduler_config()
    if args.batch_size is not None:
        scheduler_config = replace(scheduler_config, batch_size=args.batch_size)

    store = build_status_store(config)
    try:
        tip = args.tip_height
        if tip is None:
            tip = store.get_latest_block_number() or 0
            logger.info(f"Using latest stored block as chain tip: {tip}")

        scheduler = ExtractionScheduler(
            store=store,
            extractors=registry,
            network_state=NetworkState(latest_block_on_start=tip),
            config=scheduler_config,
        )
        metrics = scheduler.run()
        logger.info(
            f"Final metrics: passes={metrics.passes}, done={metrics.blocks_done}, "
            f"retried={metrics.blocks_retried}, errored={metrics.blocks_errored}"
        )
    finally:
        store.close()
    return 0


def cmd_stats(config: ExtractConfig, args: argparse.Namespace) -> int:
    store = build_status_store(config)
    try:
        stats = store.get_stats()
    finally:
        store.close()

    if not stats:
        print("Queue is empty")
        return 0

    print(f"{'extractor':<30} {'new':>10} {'done':>10} {'error':>10}")
    for name in sorted(stats):
        counts = stats[name]
        print(
            f"{name:<30} {counts.get('new', 0):>10} "
            f"{counts.get('done', 0):>10} {counts.get('error', 0):>10}"
        )
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        prog="extract",
        description="Incremental block extraction scheduler",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create the block and status tables")

    run_parser = subparsers.add_parser("run", help="Run the extraction loop")
    run_parser.add_argument(
        "--tip-height",
        type=int,
        help="Chain tip height at start (defaults to the latest stored block)",
    )
    run_parser.add_argument(
        "--batch-size",
        type=int,
        help="Override scheduler.batch_size",
    )

    subparsers.add_parser("stats", help="Show status counts per extractor")

    return parser.parse_args(argv)


COMMANDS = {
    "init-db": cmd_init_db,
    "run": cmd_run,
    "stats": cmd_stats,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)

    try:
        config = ExtractConfig(config_path=args.config)
    except (ExtractError, FileNotFoundError) as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 2

    log_config = config.get_logging_config()
    level_name = "DEBUG" if args.verbose else str(log_config.get("level", "INFO")).upper()
    configure_logging(
        level=getattr(logging, level_name, logging.INFO),
        structured=bool(log_config.get("structured", False)),
    )

    try:
        return COMMANDS[args.command](config, args)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 1
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
