"""
Main entrypoint: runs one sync operation, or all schedules continuously.

Usage:
    python -m erpwms --company ACME --operation ProductSync --dry-run
    python -m erpwms -c ACME -o CustomerSync --from 2024-01-01 --limit 10
    python -m erpwms -c ACME                    # continuous scheduler

Exit codes:
    0  success (or graceful stop of the scheduler)
    1  total failure or unknown operation
    2  partial success
    3  configuration or database error
"""
import argparse
import asyncio
import logging
import shlex
import signal
import sys
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import List, Optional

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)s %(levelname)s %(message)s",
)
logger = logging.getLogger(__name__)

EXIT_CONFIG_ERROR = 3


def _date_arg(value: str):
    from erpwms.sync.record import parse_datetime

    parsed = parse_datetime(value)
    if parsed is None:
        raise argparse.ArgumentTypeError(f"not a date: {value!r}")
    return parsed


def _positive_int(value: str) -> int:
    number = int(value)
    if number <= 0:
        raise argparse.ArgumentTypeError("must be a positive integer")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="erpwms",
        description="Synchronize master data and documents between SAP Business One and P4 Warehouse.",
    )
    parser.add_argument("--company", "-c", help="Company name from the config file (default: first)")
    parser.add_argument(
        "--operation", "-o", default="All",
        help="Operation to run once (ProductSync, CustomerSync, ...) or All for continuous mode",
    )
    parser.add_argument("--dry-run", "--dryrun", dest="dry_run", action="store_true",
                        help="Fetch and map but write nothing remotely")
    parser.add_argument("--limit", "-l", type=_positive_int, help="Process at most N records")
    parser.add_argument("--from", "--from-date", dest="from_date", type=_date_arg,
                        help="Only records changed on or after DATE")
    parser.add_argument("--to", "--to-date", dest="to_date", type=_date_arg,
                        help="Only records changed on or before DATE")
    parser.add_argument("--force", "-f", action="store_true", help="Ignore the stored watermark")
    parser.add_argument("--config", help="Company/schedule JSON file (default: settings.config_file)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser


def _configure_logging(log_dir: str, company_name: str, retention_days: int, verbose: bool) -> None:
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    if not log_dir:
        return
    try:
        Path(log_dir).mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            Path(log_dir) / f"{company_name}_integration.log",
            when="midnight",
            backupCount=retention_days,
            encoding="utf-8",
        )
    except OSError as exc:
        logger.warning("File logging disabled: %s", exc)
        return
    handler.setFormatter(logging.Formatter("%(asctime)s %(name)s %(levelname)s %(message)s"))
    root.addHandler(handler)


async def _run(args: argparse.Namespace, command_line: str) -> int:
    from erpwms.config import ConfigurationError, get_settings, load_company_config
    from erpwms.db.engine import DatabaseInitError, get_engine, init_database, verify_database_health
    from erpwms.erp.client import ServiceLayerClient
    from erpwms.scheduler.jobs import SyncScheduler
    from erpwms.sync.images import LocalBlobStore, NullAssetSync, ProductImageSync
    from erpwms.sync.job import SyncOptions
    from erpwms.sync.runner import JobContext, run_operation
    from erpwms.warehouse.client import WarehouseClient

    settings = get_settings()
    try:
        config = load_company_config(args.config or settings.config_file)
        company = config.get_company(args.company)
    except ConfigurationError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR

    _configure_logging(
        settings.log_dir, company.company_name,
        company.settings.log_retention_days or settings.log_retention_days, args.verbose,
    )
    logger.info("Starting integration for company %s", company.company_name)

    engine = get_engine()
    try:
        init_database(engine, company.company_name)
    except DatabaseInitError as exc:
        logger.error("%s", exc)
        return EXIT_CONFIG_ERROR
    if not verify_database_health(engine):
        return EXIT_CONFIG_ERROR

    sap = company.sap_b1
    erp = ServiceLayerClient(
        sap.service_layer_url,
        sap.company_db,
        sap.user_name,
        sap.password,
        max_retries=settings.http_max_retries,
        backoff_seconds=settings.http_backoff_seconds,
        verify=settings.service_layer_verify_ssl,
    )
    wms = WarehouseClient(
        company.p4_warehouse_api_key,
        sap.client_name,
        base_url=settings.warehouse_base_url,
        timeout=settings.http_timeout_seconds,
        max_retries=settings.http_max_retries,
        backoff_seconds=settings.http_backoff_seconds,
    )
    if settings.blob_root:
        assets = ProductImageSync(
            erp,
            LocalBlobStore(settings.blob_root, settings.blob_base_url, settings.blob_max_file_size_bytes),
        )
    else:
        logger.info("BLOB_ROOT not set; product image sync disabled.")
        assets = NullAssetSync()

    context = JobContext(
        engine=engine, company=company, erp=erp, wms=wms, settings=settings, assets=assets,
    )

    # Command-line modifiers apply to every run, scheduled or not
    options = SyncOptions(
        dry_run=args.dry_run,
        limit=args.limit,
        from_date=args.from_date,
        to_date=args.to_date,
        force=args.force,
        batch_size=company.settings.product_batch_size,
    )

    async with erp, wms:
        if args.operation.lower() != "all":
            logger.info("Running single operation: %s", args.operation)
            result = await run_operation(context, args.operation, options, command_line)
            return result.exit_code

        stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, stop_event.set)
            except NotImplementedError:
                # Windows: Ctrl+C still raises KeyboardInterrupt
                pass

        async def runner(name, run_options):
            return await run_operation(context, name, run_options, command_line)

        if args.dry_run:
            logger.info("[DRY RUN] Continuous mode: no remote writes will be made")
        scheduler = SyncScheduler(config.schedules, runner, base_options=options)
        await scheduler.run_forever(stop_event, settings.scheduler_poll_seconds)
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    command_line = shlex.join(sys.argv if argv is None else ["erpwms", *argv])
    try:
        return asyncio.run(_run(args, command_line))
    except KeyboardInterrupt:
        logger.info("Shutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
