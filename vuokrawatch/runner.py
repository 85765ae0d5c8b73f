"""Core reconciliation workflow for vuokrawatch."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from .diff import filter_usable
from .models import Listing, RunSummary
from .notifications import Notifier, notify_subscribers
from .scraper import FetchError, fetch_listings
from .store import ListingStore, PersistenceError, format_timestamp, utcnow

logger = logging.getLogger(__name__)

Fetcher = Callable[[str, int], List[Listing]]


@dataclass
class VuokraWatcherRunner:
    """Coordinates fetch, diff, and notification steps."""

    store: ListingStore
    form_data: str
    max_pages: int = 0
    fetcher: Fetcher = field(default_factory=lambda: fetch_listings)
    notifier: Optional[Notifier] = None

    def init(self) -> None:
        """Load persisted state."""
        logger.info("Loading state from %s", self.store.path)
        self.store.load()

    def run(self) -> RunSummary:
        """Execute a single reconciliation cycle.

        Fetching happens without touching the store; only the final
        registration takes the store lock.
        """
        logger.info("Checking for new rental offers...")
        executed_at = format_timestamp(utcnow())

        try:
            fetched = self.fetcher(self.form_data, self.max_pages)
        except FetchError:
            logger.exception("Fetching rental offers failed")
            raise

        usable = filter_usable(fetched)
        try:
            new_listings = self.store.register_and_diff(usable)
        except PersistenceError:
            logger.exception(
                "New offers registered in memory but state was not saved")
            raise

        if new_listings:
            logger.info("Found %d new rental offers", len(new_listings))
        else:
            logger.info("No new rental offers found")

        notified: List[int] = []
        if self.notifier is not None and new_listings:
            try:
                notified = notify_subscribers(self.store, self.notifier,
                                              new_listings)
            except PersistenceError:
                logger.exception(
                    "Offers delivered but delivery state was not saved")
                raise

        return RunSummary(
            executed_at=executed_at,
            fetched=len(fetched),
            usable=len(usable),
            new_listings=new_listings,
            notified=notified,
        )
