"""Command-line entry point for the usage aggregator."""

import argparse
import json
import sys
from datetime import date, timedelta

from .billing_sync import HttpMeterProvider, UsageReporter
from .config_loader import get_config
from .db_adapter import check_db_connectivity
from .db_writer import DatabaseWriter
from .errors import UsageAggregatorError
from .orchestrator import collect_usage
from .utils import get_logger, setup_logging, utc_now


def run_collect(config, args) -> int:
    """Run one usage collection and print the report.

    Returns:
        Exit code (0 if every namespace succeeded, 1 otherwise)
    """
    logger = get_logger("main")
    logger.info("=" * 80)
    logger.info("Usage collection - Starting")
    logger.info("=" * 80)

    report = collect_usage(config)
    print(json.dumps(report.to_dict(), indent=2))

    if report.skipped:
        logger.warning("Run skipped, another collection holds the lock")
        return 0
    return 0 if report.failed == 0 and not report.errors else 1


def run_sync_usage(config, args) -> int:
    """Report unreported daily usage to the billing provider."""
    usage_date = date.fromisoformat(args.date) if args.date else utc_now().date() - timedelta(days=1)
    provider = HttpMeterProvider(config)
    try:
        with DatabaseWriter(config) as store:
            report = UsageReporter(store, provider).sync(usage_date)
    finally:
        provider.close()

    print(json.dumps(report.to_dict(), indent=2))
    return 0 if report.failed == 0 else 1


def run_init_db(config, args) -> int:
    """Create the database schema."""
    logger = get_logger("main")
    if not check_db_connectivity(config):
        logger.error("Database connectivity test failed")
        return 1

    with DatabaseWriter(config) as store:
        store.create_schema()
    logger.info("✓ Schema created")
    return 0


def run_serve(config, args) -> int:
    """Serve the invocation endpoint."""
    import uvicorn

    from .api import create_app

    uvicorn.run(create_app(config), host=args.host, port=args.port)
    return 0


COMMANDS = {
    "collect": run_collect,
    "sync-usage": run_sync_usage,
    "init-db": run_init_db,
    "serve": run_serve,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Usage metering and incremental billing aggregation")

    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to config.yaml (default: $USAGE_AGGREGATOR_CONFIG or config/config.yaml)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("collect", help="Collect one hour of usage from every active cluster")

    sync_parser = subparsers.add_parser("sync-usage", help="Report daily usage to the billing provider")
    sync_parser.add_argument("--date", type=str, default=None, help="Usage date YYYY-MM-DD (default: yesterday UTC)")

    subparsers.add_parser("init-db", help="Create database tables")

    serve_parser = subparsers.add_parser("serve", help="Serve the collection endpoint")
    serve_parser.add_argument("--host", type=str, default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)

    return parser


def main(argv=None):
    """Main entry point."""
    args = build_parser().parse_args(argv)

    config = get_config(args.config)
    setup_logging(
        level=config.get("logging", {}).get("level", "INFO"),
        log_format=config.get("logging", {}).get("format", "console"),
    )
    logger = get_logger("main")

    try:
        exit_code = COMMANDS[args.command](config, args)
    except UsageAggregatorError as e:
        logger.error(f"{args.command} failed with error", error=str(e))
        exit_code = 1

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
