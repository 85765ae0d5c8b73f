"""CLI entrypoint for the vuokrawatch agent."""

from __future__ import annotations

import argparse
import logging
import sys
import threading
from pathlib import Path

from vuokrawatch.config import WatcherConfig
from vuokrawatch.notifications import build_notifier_from_env
from vuokrawatch.runner import VuokraWatcherRunner
from vuokrawatch.scheduler import DEFAULT_PURGE_INTERVAL, PeriodicReconciler
from vuokrawatch.scraper import FetchError, read_form_data
from vuokrawatch.store import ListingStore, PersistenceError, resolve_state_path

logger = logging.getLogger(__name__)


def configure_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def build_parser(config: WatcherConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Vuokraovi rental offer watcher")
    parser.add_argument("--init", action="store_true", help="load and rewrite the state file, then exit")
    parser.add_argument("--run", action="store_true", help="execute one reconciliation cycle")
    parser.add_argument(
        "--watch",
        action="store_true",
        help="keep running and reconcile on a fixed interval",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=config.max_pages,
        help="maximum number of pages to query (0 = no limit)",
    )
    parser.add_argument(
        "--form",
        type=Path,
        default=config.form_file,
        help="path to the URL-encoded search form data",
    )
    parser.add_argument(
        "--data-dir",
        type=Path,
        default=config.data_dir,
        help="directory holding bot_state.json",
    )
    parser.add_argument(
        "--notify",
        action="store_true",
        help="deliver new offers to subscribers via Telegram (TELEGRAM_BOT_TOKEN)",
    )
    parser.add_argument(
        "--purge-inactive",
        action="store_true",
        help="with --watch, drop subscribers not notified for 30 days (checked daily)",
    )
    parser.add_argument("--verbose", action="store_true", help="enable debug logging")
    return parser


def main(argv: list[str] | None = None) -> int:
    try:
        config = WatcherConfig.from_env()
    except ValueError as exc:
        print(f"Invalid configuration: {exc}", file=sys.stderr)
        return 2

    parser = build_parser(config)
    args = parser.parse_args(argv)
    configure_logging(args.verbose)

    store = ListingStore(path=resolve_state_path(args.data_dir))

    if args.init:
        store.load()
        try:
            store.save()
        except PersistenceError:
            logger.exception("Failed to write state file")
            return 1
        logger.info("State file ready at %s", store.path)
        return 0

    if not (args.run or args.watch):
        parser.print_help()
        return 1

    try:
        form_data = read_form_data(args.form)
    except OSError as exc:
        logger.error("Error reading form data from %s: %s", args.form, exc)
        return 1

    notifier = None
    if args.notify:
        notifier = build_notifier_from_env()
        if notifier is None:
            logger.warning("TELEGRAM_BOT_TOKEN is not set; notifications disabled")

    runner = VuokraWatcherRunner(
        store=store,
        form_data=form_data,
        max_pages=args.limit,
        notifier=notifier,
    )
    runner.init()

    if args.watch:
        reconciler = PeriodicReconciler(
            runner,
            interval=config.interval,
            purge_interval=DEFAULT_PURGE_INTERVAL if args.purge_inactive else None,
        )
        reconciler.start()
        try:
            threading.Event().wait()
        except KeyboardInterrupt:
            logger.info("Interrupted; shutting down")
        finally:
            reconciler.shutdown()
        return 0

    try:
        summary = runner.run()
    except (FetchError, PersistenceError):
        return 1

    if summary.new_listings:
        logger.info("New rental offers (%d):", len(summary.new_listings))
        for listing in summary.new_listings:
            logger.info(
                "%s | %s | %s | %s | %s | %s",
                listing.title or "N/A",
                listing.address or "N/A",
                listing.price or "N/A",
                listing.rooms or "N/A",
                listing.size or "N/A",
                listing.link,
            )
    else:
        logger.info("No new rental offers in this run.")
    return 0


if __name__ == "__main__":
    sys.exit(main())
