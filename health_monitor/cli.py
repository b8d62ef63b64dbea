"""
Health Monitor - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line entry point for the monitor service.

- Loads configuration from environment, overridden by flags
- Sets up logging
- Runs the poll loop, instruction listener and command poller

============================================================
USAGE
============================================================
health-monitor
health-monitor --metric available_credit --poll-interval 60
health-monitor --log-level DEBUG --log-format json

============================================================
"""

import argparse
import asyncio
import json
import logging
import os
import sys
from dataclasses import replace
from typing import List, Optional

from .commands import CommandHandler, CommandPoller
from .config import MonitorConfig, set_config
from .exceptions import ClientInitializationError, ClientUnavailableError
from .models import MetricKind
from .notifications import TelegramNotifier
from .service import HealthMonitor


logger = logging.getLogger(__name__)


# ============================================================
# LOGGING
# ============================================================

def setup_logging(level: str = "INFO", log_format: str = "text") -> None:
    """
    Configure the root logger with a single stdout handler.

    Args:
        level: Log level name
        log_format: "json" or "text"
    """
    log_level = getattr(logging, level.upper(), logging.INFO)

    if log_format == "json":
        formatter = logging.Formatter(
            json.dumps({
                "timestamp": "%(asctime)s",
                "level": "%(levelname)s",
                "logger": "%(name)s",
                "message": "%(message)s",
            })
        )
    else:
        formatter = logging.Formatter("%(asctime)s | %(levelname)-8s | %(name)s | %(message)s")

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)
    root_logger.handlers = [handler]


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="health-monitor",
        description="Account health threshold monitor with chat notifications",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Environment:
  RPC_URL, WS_URL, PROTOCOL_API_URL, TELEGRAM_BOT_TOKEN, DATABASE_URL,
  METRIC_KIND, REARM_MARGIN, POLL_INTERVAL_SECONDS, PROGRAM_ID

Examples:
  %(prog)s                                  # Run with environment settings
  %(prog)s --metric available_credit        # Watch available credit
  %(prog)s --show-config                    # Print effective configuration
        """
    )

    monitor_group = parser.add_argument_group("Monitoring Options")
    monitor_group.add_argument(
        "--metric",
        choices=[kind.value for kind in MetricKind],
        help="Metric to watch (default: METRIC_KIND or health)",
    )
    monitor_group.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between poll ticks (default: 120)",
    )
    monitor_group.add_argument(
        "--rearm-margin",
        type=int,
        help="Re-arm offset above each level, in metric units",
    )
    monitor_group.add_argument(
        "--database-url",
        help="SQLAlchemy async database URL",
    )
    monitor_group.add_argument(
        "--no-commands",
        action="store_true",
        help="Do not poll Telegram for chat commands",
    )

    log_group = parser.add_argument_group("Logging Options")
    log_group.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    log_group.add_argument(
        "--log-format",
        choices=["json", "text"],
        help="Log format (default: LOG_FORMAT or text)",
    )

    parser.add_argument(
        "--show-config",
        action="store_true",
        help="Print the effective configuration and exit",
    )

    return parser


def build_config(args: argparse.Namespace, base: Optional[MonitorConfig] = None) -> MonitorConfig:
    """Apply command-line overrides to the environment configuration."""
    config = base or MonitorConfig.from_env()
    overrides = {}
    if args.metric:
        overrides["metric_kind"] = MetricKind(args.metric)
        if args.rearm_margin is None and not os.environ.get("REARM_MARGIN"):
            overrides["rearm_margin"] = MetricKind(args.metric).default_margin
    if args.poll_interval is not None:
        overrides["poll_interval_seconds"] = args.poll_interval
    if args.rearm_margin is not None:
        overrides["rearm_margin"] = args.rearm_margin
    if args.database_url:
        overrides["database_url"] = args.database_url
    if args.log_level:
        overrides["log_level"] = args.log_level
    if args.log_format:
        overrides["log_format"] = args.log_format
    return replace(config, **overrides) if overrides else config


# ============================================================
# MAIN ENTRY POINT
# ============================================================

async def async_main(config: MonitorConfig, with_commands: bool = True) -> int:
    """
    Run the service until a task fails or the process is interrupted.

    Returns:
        Exit code
    """
    monitor = HealthMonitor.from_config(config)

    background = []
    if with_commands and isinstance(monitor.sink, TelegramNotifier):
        poller = CommandPoller(monitor.sink, CommandHandler(monitor), config.command_poll_timeout_seconds)
        background.append(poller.run_forever)

    try:
        await monitor.run(background)
        return 0
    except (ClientInitializationError, ClientUnavailableError) as e:
        logger.critical(f"Protocol client unusable, exiting: {e}")
        return 2
    except asyncio.CancelledError:
        logger.info("Interrupted")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await monitor.close()


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        argv: Command line arguments (default: sys.argv[1:])

    Returns:
        Exit code
    """
    parser = create_parser()
    args = parser.parse_args(argv)

    config = build_config(args)
    set_config(config)

    if args.show_config:
        print(json.dumps(config.to_dict(), indent=2))
        return 0

    errors = config.validate()
    if errors:
        for error in errors:
            print(f"Error: {error}", file=sys.stderr)
        return 1

    setup_logging(config.log_level, config.log_format)
    logger.info(f"Starting health monitor: {config.metric_kind.value}, poll every {config.poll_interval_seconds:.0f}s")

    try:
        return asyncio.run(async_main(config, with_commands=not args.no_commands))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130


if __name__ == "__main__":
    sys.exit(main())
