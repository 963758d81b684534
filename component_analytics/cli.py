"""
Command line interface for the component analytics service.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from component_analytics.config import AnalyticsConfig
from component_analytics.exceptions import AnalyticsError, ConfigurationError
from component_analytics.logging_config import LogContext
from component_analytics.logging_config import setup_logging as setup_full_logging
from component_analytics.service import AnalyticsService
from component_analytics.storage import PostgresEventStore

DEFAULT_CONFIG_PATH = "/etc/component-analytics/config.yml"

COMMANDS = ("run", "aggregate-hour", "aggregate-day", "refresh-baselines", "evaluate", "status")


def setup_logging(config: AnalyticsConfig, verbose: bool = False) -> None:
    """Setup logging, falling back to console-only when the log dir is not writable."""
    console_level = "DEBUG" if verbose else config.logging.console_level

    log_dir = config.logging.log_dir
    parent = Path(log_dir).parent
    if not os.access(parent, os.W_OK) and not os.access(log_dir, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "component-analytics")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level=config.logging.file_level,
            use_json=config.logging.use_json,
        )
    except PermissionError:
        logging.basicConfig(
            level=getattr(logging, console_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def load_config(path: str) -> AnalyticsConfig:
    """Config file when present, otherwise defaults plus environment."""
    if Path(path).exists():
        return AnalyticsConfig.from_file(path)
    return AnalyticsConfig.from_env()


def _parse_time(value: str) -> datetime:
    moment = datetime.fromisoformat(value)
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    return moment


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Component analytics - telemetry ingestion, rollups and alerting"
    )
    parser.add_argument(
        "command",
        nargs="?",
        default="run",
        choices=COMMANDS,
        help="What to do (default: run the service)",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help="Path to configuration file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--at",
        type=_parse_time,
        default=None,
        help="Reference time (ISO 8601) for one-shot commands; defaults to now",
    )
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )
    return parser


async def run_command(service: AnalyticsService, command: str, at: Optional[datetime]) -> dict:
    """Run one pipeline pass and return a printable summary."""
    await service.initialize()
    try:
        if command == "aggregate-hour":
            return {"hourly_rows": await service.aggregator.run_hourly(at)}
        if command == "aggregate-day":
            return {"daily_rows": await service.aggregator.run_daily(at)}
        if command == "refresh-baselines":
            return {"baselines": await service.aggregator.refresh_all_baselines(at)}
        if command == "evaluate":
            created = await service.evaluator.evaluate_rules(at)
            resolved = await service.evaluator.resolve_alerts(at)
            return {
                "created": [alert.id for alert in created],
                "resolved": [alert.id for alert in resolved],
            }
        if command == "status":
            return await service.get_status()
        raise ValueError(f"Unknown command: {command}")
    finally:
        if isinstance(service.store, PostgresEventStore):
            await service.store.disconnect()


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    if args.generate_config:
        AnalyticsConfig().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    if args.validate_config:
        try:
            AnalyticsConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except ConfigurationError as e:
            print(f"Configuration invalid: {e}")
            return 1

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    setup_logging(config, args.verbose)
    logger = logging.getLogger(__name__)

    service = AnalyticsService(config)
    try:
        if args.command == "run":
            logger.info("Starting component analytics service")
            asyncio.run(service.run())
        else:
            with LogContext(logger, command=args.command):
                result = asyncio.run(run_command(service, args.command, args.at))
            print(json.dumps(result, indent=2, default=str))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 0
    except AnalyticsError as e:
        logger.error(f"{args.command} failed: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error running component analytics: {e}", file=sys.stderr)
        return 1

    return 0
