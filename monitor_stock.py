"""CLI entrypoint for the stockwatcher agent."""

from __future__ import annotations

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path
from typing import List

from stockwatcher.admission import AdmissionController
from stockwatcher.config import AppConfig, ConfigError, load_config, load_notification_config
from stockwatcher.db import CheckHistory, resolve_sqlite_path
from stockwatcher.loader import HttpPageLoader, PageLoader, PlaywrightPageLoader
from stockwatcher.notifications import Notifier, build_notifier
from stockwatcher.scheduler import WatchScheduler, activate_watches, run_watches

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(verbose: bool, log_dir: Path | None = None) -> None:
    """Log everything to verbose.log, warnings to error.log, and INFO+ to the console."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, logging.FileHandler):
            handler.close()
    root.setLevel(logging.DEBUG)
    formatter = logging.Formatter(LOG_FORMAT)

    console = logging.StreamHandler()
    console.setLevel(logging.DEBUG if verbose else logging.INFO)
    console.setFormatter(formatter)
    root.addHandler(console)

    if log_dir is None:
        return
    log_dir.mkdir(parents=True, exist_ok=True)
    for filename, level in (("verbose.log", logging.DEBUG), ("error.log", logging.WARNING)):
        file_handler = logging.FileHandler(log_dir / filename, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Watch store pages for in-stock products")
    parser.add_argument(
        "--config",
        default=os.getenv("WATCH_CONFIG", "watch-config.json"),
        help="watch configuration JSON (overrides WATCH_CONFIG env var)",
    )
    parser.add_argument(
        "--notification-config",
        default=os.getenv("NOTIFICATION_CONFIG", "notification-config.json"),
        help="notification settings JSON; SMTP_* and SLACK_WEBHOOK env vars take precedence",
    )
    parser.add_argument(
        "--loader",
        choices=("browser", "http"),
        default="browser",
        help="render pages in headless Chromium or fetch static HTML",
    )
    parser.add_argument("--once", action="store_true", help="run one check per watch and exit")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="evaluate pages and log results without sending notifications",
    )
    parser.add_argument(
        "--history-db",
        default=os.getenv("DATABASE_URL", "sqlite:///stock_watch.db"),
        help="SQLite URL for check history (overrides DATABASE_URL env var)",
    )
    parser.add_argument(
        "--export-history",
        metavar="PATH",
        help="export check history to an .xlsx workbook and exit",
    )
    parser.add_argument("--log-dir", default="logs", help="directory for verbose.log and error.log")
    parser.add_argument("--verbose", action="store_true", help="echo debug logging to the console")
    return parser


async def run_monitor(
    config: AppConfig,
    loader_kind: str,
    notifier: Notifier | None,
    history: CheckHistory | None,
    once: bool = False,
    dry_run: bool = False,
) -> List[WatchScheduler]:
    """Start the page loader and drive every enabled watch."""
    admission = AdmissionController(config.settings)

    async def drive(loader: PageLoader) -> List[WatchScheduler]:
        schedulers = activate_watches(
            config,
            loader=loader,
            admission=admission,
            notifier=notifier,
            history=history,
            dry_run=dry_run,
        )
        if not schedulers:
            logger.warning("No enabled watches configured")
            return schedulers
        stagger = 0.0 if once else config.settings.startup_stagger_seconds
        await run_watches(schedulers, stagger, max_checks=1 if once else None)
        return schedulers

    if loader_kind == "http":
        return await drive(HttpPageLoader())
    async with PlaywrightPageLoader(config.settings) as loader:
        return await drive(loader)


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    log_dir = Path(args.log_dir)
    configure_logging(args.verbose, log_dir)

    history = CheckHistory(path=resolve_sqlite_path(args.history_db))
    history.initialize()

    if args.export_history:
        export_path = Path(args.export_history)
        history.export_history_to_xlsx(export_path)
        logger.info("Exported check history to %s", export_path)
        return 0

    try:
        config = load_config(args.config)
        notification_config = load_notification_config(args.notification_config)
    except ConfigError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    if config.settings.verbose and not args.verbose:
        configure_logging(True, log_dir)

    notifier = build_notifier(notification_config)
    if notifier is None and not args.dry_run:
        logger.warning("No notification channel configured; stock alerts will only be logged")

    try:
        schedulers = asyncio.run(
            run_monitor(
                config,
                loader_kind=args.loader,
                notifier=notifier,
                history=history,
                once=args.once,
                dry_run=args.dry_run,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted; shutting down")
        return 130

    for scheduler in schedulers:
        status = scheduler.last_status.value if scheduler.last_status else "not run"
        logger.info("%s: %s", scheduler.store, status)
    return 0


if __name__ == "__main__":
    sys.exit(main())
