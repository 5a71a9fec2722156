"""Command line entry point: one-shot or continuous monitoring."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

import structlog

from .config import MonitoringConfig, SchedulingSection, load_config
from .errors import ConfigurationError, PersistenceFailure
from .logging_setup import configure_logging
from .orchestrator import Orchestrator
from .scheduler import RunScheduler, parse_cron_expression

logger = structlog.get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Salesforce org monitoring agent")
    parser.add_argument(
        "--config",
        default=None,
        help="Path to YAML config (default: $MONITORING_CONFIG or config/monitoring.yaml)",
    )
    parser.add_argument(
        "--run-once",
        action="store_true",
        help="Run one monitoring cycle and exit; exits 1 if the run failed, not only on startup errors",
    )
    parser.add_argument("--cron", default=None, help="Cron expression overriding scheduling.cron")
    parser.add_argument("--log-level", default=None, help="Logging level (INFO, WARNING, ...)")
    return parser


async def run_once(orchestrator: Orchestrator) -> int:
    try:
        result = await orchestrator.run()
    finally:
        await orchestrator.close()

    if result.success:
        logger.info("Monitoring complete", run_id=result.run_id, anomalies=result.anomaly_count)
        return 0
    logger.error("Monitoring failed", run_id=result.run_id, error=result.error)
    return 1


async def run_service(config: MonitoringConfig, orchestrator: Orchestrator) -> int:
    """Run on the configured schedule until SIGINT or SIGTERM."""
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            logger.warning("Signal handlers not supported on this platform", signal=sig.name)

    scheduler = RunScheduler(
        orchestrator.run,
        cron_expression=config.scheduling.cron,
        run_on_startup=config.scheduling.run_on_startup,
    )

    try:
        await scheduler.start()
        logger.info("Monitoring agent started. Press Ctrl+C to stop.")
        await stop_event.wait()
        logger.info("Shutdown requested")
        await scheduler.stop(wait=True)
    finally:
        await orchestrator.close()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                pass

    logger.info("Monitoring agent stopped")
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
        if args.cron:
            config.scheduling = SchedulingSection(
                cron=args.cron,
                run_on_startup=config.scheduling.run_on_startup,
            )
        parse_cron_expression(config.scheduling.cron)
    except (ConfigurationError, ValueError) as e:
        configure_logging(args.log_level or "INFO")
        logger.error("Invalid configuration", error=str(e))
        return 1

    configure_logging(args.log_level or config.log_level)

    # httpx logs request URLs at INFO; the Telegram URL embeds the bot token.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    try:
        orchestrator = Orchestrator.from_config(config)
    except PersistenceFailure as e:
        logger.error("Failed to initialize", error=str(e))
        return 1

    if args.run_once:
        return asyncio.run(run_once(orchestrator))
    return asyncio.run(run_service(config, orchestrator))


def run() -> None:
    sys.exit(main())
