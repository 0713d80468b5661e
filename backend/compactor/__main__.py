"""CLI entry point for the execution compactor.

Usage:
    python -m compactor                      # run continuously
    python -m compactor --once               # drain every partition and exit
    python -m compactor --flush              # drain, including open timestamp groups
    python -m compactor --partitions bitflyer/FX_BTC_JPY,liquid/*
    python -m compactor --init-db
    python -m compactor --status
    python -m compactor --verify
"""

import argparse
import asyncio
import logging
import signal
import sys

import yaml
from pydantic import ValidationError

# Try to use uvloop for better performance (Unix only)
try:
    import uvloop
    uvloop.install()
    _UVLOOP_ENABLED = True
except ImportError:
    _UVLOOP_ENABLED = False

from compactor.config import CompactorSettings, get_settings
from compactor.core.encoding import BulkEncoder
from compactor.core.errors import CompactorError, FatalConfigError
from compactor.models import PartitionKey
from compactor.partition_config import PartitionConfig, load_partition_config
from compactor.services import (
    Backoff,
    CommitCoordinator,
    ConsistencyVerifier,
    PartitionPipeline,
    PartitionScheduler,
)
from compactor.storage import (
    AggregateWriter,
    CompactorDatabase,
    LeaseRepository,
    RawExecutionReader,
    WatermarkRepository,
)

logger = logging.getLogger(__name__)


def parse_partitions(value: str) -> list[PartitionKey]:
    try:
        return [PartitionKey.parse(p) for p in value.split(",") if p.strip()]
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Aggregate raw trade executions into per-timestamp rows",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python -m compactor --init-db
  python -m compactor --once
  python -m compactor --partitions bitflyer/FX_BTC_JPY --flush
  python -m compactor --verify
        """,
    )

    # Management commands
    parser.add_argument(
        "--init-db",
        action="store_true",
        help="Create the destination, watermark and lease tables",
    )
    parser.add_argument(
        "--status",
        action="store_true",
        help="Print committed watermarks",
    )
    parser.add_argument(
        "--verify",
        action="store_true",
        help="Compare source and destination totals up to each watermark",
    )

    # Run modes
    parser.add_argument(
        "--once",
        action="store_true",
        help="Drain every partition once and exit",
    )
    parser.add_argument(
        "--flush",
        action="store_true",
        help="Like --once, but also commit the trailing timestamp group",
    )
    parser.add_argument(
        "--partitions",
        type=parse_partitions,
        default=None,
        help="Comma-separated exchange/instrument list (default: partitions.yaml / discovery)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Verbose logging",
    )
    return parser.parse_args(argv)


class Compactor:
    """Wires storage and services around one shared pool."""

    def __init__(
        self,
        settings: CompactorSettings,
        db: CompactorDatabase,
        flush: bool = False,
        explicit: list[PartitionKey] | None = None,
    ):
        self.settings = settings
        self.db = db
        self.explicit = explicit
        try:
            self.partition_config: PartitionConfig = load_partition_config(settings.partitions_file)
        except (ValidationError, yaml.YAMLError) as e:
            raise FatalConfigError(f"Invalid partitions file: {e}") from e

        pool = db.pool
        self.watermarks = WatermarkRepository(pool, settings.watermark_table)
        self.writer = AggregateWriter(settings.target_table)
        self.reader = RawExecutionReader(
            pool,
            settings.source,
            exchanges=settings.exchanges,
            fetch_timeout=settings.fetch_timeout,
        )
        self.coordinator = CommitCoordinator(
            pool,
            self.watermarks,
            self.writer,
            staging_dir=settings.staging_dir,
            commit_timeout=settings.commit_timeout,
        )
        self.pipeline = PartitionPipeline(
            self.reader,
            self.watermarks,
            self.coordinator,
            BulkEncoder(settings.price_scale, settings.volume_scale),
            batch_max_rows=settings.batch_max_rows,
            seal_trailing_group=settings.seal_trailing_group and not flush,
            seal_grace_seconds=settings.seal_grace_seconds,
            batch_rows_for=self.partition_config.batch_rows_for,
        )
        self.scheduler = PartitionScheduler(
            self.pipeline,
            Backoff(
                initial=settings.backoff_initial,
                maximum=settings.backoff_max,
                multiplier=settings.backoff_multiplier,
                jitter=settings.backoff_jitter,
            ),
            max_workers=settings.max_workers,
            max_attempts=settings.max_attempts,
            poll_interval=settings.poll_interval,
            leases=LeaseRepository(pool, settings.lease_table, ttl=settings.lease_ttl),
            discover=self.partitions if self.partition_config.needs_discovery(explicit) else None,
        )

    async def partitions(self) -> list[PartitionKey]:
        config = self.partition_config
        discovered = []
        if config.needs_discovery(self.explicit):
            discovered = await self.reader.discover_partitions()
        return config.select(discovered, self.explicit)


async def cmd_status(app: Compactor) -> int:
    """Print all watermarks."""
    watermarks = await app.watermarks.list_all()
    if not watermarks:
        print("No watermarks yet.")
        return 0

    print(f"\n{'Partition':<40} {'Watermark':>14}  Updated")
    print("-" * 80)
    for w in watermarks:
        updated = w.updated_at.strftime("%Y-%m-%d %H:%M:%S") if w.updated_at else "-"
        print(f"{str(w.partition):<40} {w.last_sequence:>14}  {updated}")
    print()
    return 0


async def cmd_verify(app: Compactor, partitions: list[PartitionKey]) -> int:
    """Verify every partition; exit code 1 on any discrepancy."""
    verifier = ConsistencyVerifier(
        app.db.pool,
        app.reader,
        app.writer,
        app.watermarks,
        volume_scale=app.settings.volume_scale,
    )
    reports = await verifier.verify_all(partitions)

    print(f"\n{'Partition':<40} {'Watermark':>14}  Result")
    print("-" * 80)
    for r in reports:
        watermark = "-" if r.watermark is None else str(r.watermark)
        print(f"{str(r.partition):<40} {watermark:>14}  {'OK' if r.ok else 'FAIL'}")
        for issue in r.discrepancies:
            print(f"{'':<56}{issue}")
    print()
    return 0 if all(r.ok for r in reports) else 1


async def cmd_drain(app: Compactor, partitions: list[PartitionKey], stop: asyncio.Event) -> int:
    """Drain partitions once; exit code 1 if any partition gave up."""
    statuses = await app.scheduler.drain(partitions, stop_event=stop)
    failed = [s for s in statuses if not s.healthy]
    total = sum(s.rows_committed for s in statuses)
    logger.info(f"Drain finished: {total:,} rows committed, {len(failed)} partitions failed")
    for s in failed:
        logger.error(f"[{s.partition}] {s.last_error_kind}: {s.last_error}")
    return 1 if failed else 0


async def cmd_run(app: Compactor, partitions: list[PartitionKey], stop: asyncio.Event) -> int:
    """Run continuously until SIGINT/SIGTERM."""
    logger.info(f"Compacting {len(partitions)} partitions (uvloop={_UVLOOP_ENABLED})")
    await app.scheduler.run_forever(stop, partitions)
    return 0


def install_signal_handlers(stop: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: KeyboardInterrupt still stops the loop
            pass


async def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    # Configure logging
    level = logging.DEBUG if args.verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("asyncpg").setLevel(logging.WARNING)

    try:
        settings = get_settings()
    except ValidationError as e:
        logger.critical(f"Invalid configuration:\n{e}")
        return 2

    db = CompactorDatabase(settings)
    stop = asyncio.Event()
    install_signal_handlers(stop)

    try:
        await db.init()
        if args.init_db:
            await db.create_tables()
            return 0

        app = Compactor(settings, db, flush=args.flush, explicit=args.partitions)
        if args.status:
            return await cmd_status(app)

        partitions = await app.partitions()
        if args.verify:
            return await cmd_verify(app, partitions)
        if args.once or args.flush:
            return await cmd_drain(app, partitions, stop)
        return await cmd_run(app, partitions, stop)
    except FatalConfigError as e:
        logger.critical(f"{e.message}")
        return 2
    except CompactorError as e:
        logger.critical(f"Startup failed: {e}")
        return 1
    finally:
        await db.close()


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
