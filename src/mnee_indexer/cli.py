#!/usr/bin/env python3
"""
MNEE commerce indexer CLI

Mirrors OrderPlaced / OrderRefunded events of the commerce contract into
PostgreSQL.

Usage:
    mnee-indexer                          # Run until SIGINT/SIGTERM
    mnee-indexer --once                   # Run a single pass and exit
    mnee-indexer --dry-run                # Sync into memory, no database
    mnee-indexer --print-config           # Show effective configuration
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Sequence

from mnee_indexer.chain import ChainClient
from mnee_indexer.config import IndexerSettings
from mnee_indexer.exceptions import ConfigurationError, IndexerError, get_error_context
from mnee_indexer.logging_config import setup_logging
from mnee_indexer.metrics import IndexerMetrics, start_metrics_server
from mnee_indexer.reset import ResetDetector
from mnee_indexer.resolver import AddressResolver
from mnee_indexer.storage import (
    CheckpointStore,
    Database,
    InMemoryCheckpointStore,
    InMemoryOrderStore,
    OrderStore,
)
from mnee_indexer.sync import IndexerService, SyncLoop

logger = logging.getLogger("mnee_indexer.cli")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="mnee-indexer",
        description="MNEE commerce event indexer",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment Variables:
  MNEE_RPC_URL            JSON-RPC endpoint (default: http://127.0.0.1:8545)
  MNEE_CHAIN_ID           Network id (default: 31337)
  DATABASE_URL            PostgreSQL DSN
  MNEE_DEPLOYMENT_FILE    Deployment descriptor (default: ../contract-addresses.json)
  MNEE_FALLBACK_ADDRESS   Address used before the first deploy ("none" disables)
  MNEE_POLL_INTERVAL      Seconds between passes (default: 2)
  MNEE_RESET_THRESHOLD    Blocks the chain may lag the checkpoint before a reset (default: 50)
  MNEE_METRICS_PORT       Prometheus port (default: disabled)
  MNEE_LOG_LEVEL          Log level (default: INFO)
  MNEE_LOG_FILE           Rotating JSON log file
        """,
    )
    parser.add_argument("--rpc-url", help="Override MNEE_RPC_URL")
    parser.add_argument("--chain-id", type=int, help="Override MNEE_CHAIN_ID")
    parser.add_argument("--database-url", help="Override DATABASE_URL")
    parser.add_argument("--deployment-file", help="Override MNEE_DEPLOYMENT_FILE")
    parser.add_argument("--poll-interval", type=float, help="Override MNEE_POLL_INTERVAL")
    parser.add_argument("--metrics-port", type=int, help="Override MNEE_METRICS_PORT")
    parser.add_argument("--log-level", help="Override MNEE_LOG_LEVEL")
    parser.add_argument("--once", action="store_true", help="Run a single sync pass and exit")
    parser.add_argument("--dry-run", action="store_true", help="Keep orders and checkpoints in memory only")
    parser.add_argument("--print-config", action="store_true", help="Print effective settings as JSON and exit")
    return parser


def settings_from_args(args: argparse.Namespace, env=None) -> IndexerSettings:
    """Environment settings with command-line overrides applied."""
    return IndexerSettings.from_env(env).with_overrides(
        rpc_url=args.rpc_url,
        chain_id=args.chain_id,
        database_url=args.database_url,
        deployment_file=args.deployment_file,
        poll_interval=args.poll_interval,
        metrics_port=args.metrics_port,
        log_level=args.log_level.upper() if args.log_level else None,
    )


def build_sync_loop(settings: IndexerSettings, chain: ChainClient, checkpoints, orders, metrics=None) -> SyncLoop:
    resolver = AddressResolver(
        settings.deployment_file,
        fallback_address=settings.fallback_address,
        expected_chain_id=settings.chain_id,
    )
    detector = ResetDetector(
        checkpoints,
        orders,
        chain,
        threshold=settings.reset_threshold,
        metrics=metrics,
    )
    return SyncLoop(
        resolver,
        chain,
        checkpoints,
        orders,
        chain_id=settings.chain_id,
        reset_detector=detector,
        token_decimals=settings.token_decimals,
        metrics=metrics,
    )


async def run(settings: IndexerSettings, *, once: bool = False, dry_run: bool = False) -> int:
    metrics = IndexerMetrics()
    if settings.metrics_port:
        start_metrics_server(settings.metrics_port)

    database: Database | None = None
    if dry_run:
        orders, checkpoints = InMemoryOrderStore(), InMemoryCheckpointStore()
        logger.warning("Dry run: orders are kept in memory only", extra={"event": "indexer.dry_run"})
    else:
        database = Database(
            settings.database_url,
            min_size=settings.db_pool_min,
            max_size=settings.db_pool_max,
        )
        try:
            await database.connect()
            await database.run_migrations()
        except IndexerError as exc:
            logger.error(
                "Could not prepare database: %s",
                exc,
                extra={"event": "indexer.database_unavailable", **get_error_context(exc)},
            )
            await database.disconnect()
            return 1
        orders, checkpoints = OrderStore(database), CheckpointStore(database)

    chain = ChainClient.from_url(
        settings.rpc_url,
        timeout=settings.rpc_timeout,
        max_block_range=settings.max_block_range,
    )
    sync_loop = build_sync_loop(settings, chain, checkpoints, orders, metrics)
    logger.info(
        "Indexer configured for chain %s at %s",
        settings.chain_id,
        settings.rpc_url,
        extra={"event": "indexer.configured", "settings": settings.to_dict(), "dry_run": dry_run},
    )

    try:
        if once:
            result = await sync_loop.run_once()
            print(json.dumps(result.to_dict(), indent=2))
            return 0 if result.error is None else 1

        service = IndexerService(sync_loop, poll_interval=settings.poll_interval)
        stop_requested = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_requested.set)
            except NotImplementedError:
                # Windows event loops have no signal handlers; Ctrl+C still raises KeyboardInterrupt
                pass

        await service.start()
        try:
            await stop_requested.wait()
        finally:
            logger.info("Shutdown requested", extra={"event": "indexer.shutdown"})
            await service.stop()
        return 0
    finally:
        await chain.close()
        if database is not None:
            await database.disconnect()


def main(argv: Sequence[str] | None = None) -> int:
    """Main entry point"""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        settings = settings_from_args(args)
    except ConfigurationError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return 2

    if args.print_config:
        print(json.dumps(settings.to_dict(), indent=2))
        return 0

    setup_logging(
        log_file=settings.log_file,
        level=settings.log_level,
        environment=settings.environment,
    )

    try:
        return asyncio.run(run(settings, once=args.once, dry_run=args.dry_run))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
