"""Notification helpers for delivering new listings to subscribers."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

import requests

from .models import Listing
from .store import ListingStore, PersistenceError

logger = logging.getLogger(__name__)

TELEGRAM_API_BASE = "https://api.telegram.org"
MAX_LISTINGS_PER_MESSAGE = 10


class Notifier(Protocol):
    """Protocol defining the notifier contract."""

    def send(self, chat_id: int, message: str) -> None:
        ...


@dataclass
class TelegramNotifier:
    """Send Markdown messages through the Telegram Bot API."""

    token: str
    timeout: int = 10
    api_base: str = TELEGRAM_API_BASE

    def send(self, chat_id: int, message: str) -> None:
        response = requests.post(
            f"{self.api_base}/bot{self.token}/sendMessage",
            json={
                "chat_id": chat_id,
                "text": message,
                "parse_mode": "Markdown",
                "disable_web_page_preview": True,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()


def build_notifier_from_env() -> TelegramNotifier | None:
    """Construct a notifier from environment configuration."""
    token = (os.getenv("TELEGRAM_BOT_TOKEN") or "").strip()
    if not token:
        return None
    return TelegramNotifier(token=token)


def format_listing(listing: Listing) -> str:
    lines = [
        f"*{listing.title}*",
        f"📍 {listing.address}",
        f"💰 {listing.price}",
        f"🛏 {listing.rooms}",
        f"📐 {listing.size}",
    ]
    if listing.available:
        lines.append(f"📅 {listing.available}")
    lines.append(f"🔗 [View Details]({listing.link})")
    return "\n".join(lines)


def format_new_listings(
    listings: Sequence[Listing],
    limit: int = MAX_LISTINGS_PER_MESSAGE,
) -> str:
    """Render the new-offer announcement, truncated after ``limit`` entries."""
    parts = [
        f"🏠 *New Rental Offers*\n\nFound {len(listings)} new rental offers:"
    ]
    parts.extend(format_listing(listing) for listing in listings[:limit])
    if len(listings) > limit:
        parts.append(f"...and {len(listings) - limit} more offers. "
                     "Use /list to see all offers.")
    return "\n\n".join(parts)


def notify_subscribers(
    store: ListingStore,
    notifier: Notifier,
    new_listings: Sequence[Listing],
) -> List[int]:
    """Announce new listings to every subscriber with notifications on.

    Messages are sent without holding the store lock. Only the listings that
    made it into a delivered message are marked as seen. A failure to save
    a delivery does not stop the remaining sends; the first such
    ``PersistenceError`` is raised once every subscriber has been handled.
    """
    if not new_listings:
        return []

    included = list(new_listings[:MAX_LISTINGS_PER_MESSAGE])
    message = format_new_listings(new_listings)
    delivered: List[int] = []
    save_error: Optional[PersistenceError] = None
    for chat_id, subscriber in store.subscribers().items():
        if not subscriber.notifications:
            continue
        try:
            notifier.send(chat_id, message)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to deliver notification to %s", chat_id)
            continue
        delivered.append(chat_id)
        try:
            store.record_delivery(chat_id, [listing.link for listing in included])
        except PersistenceError as exc:
            logger.exception(
                "Delivered to %s but could not save delivery state", chat_id)
            if save_error is None:
                save_error = exc

    logger.info("Delivered %d new offer(s) to %d subscriber(s)",
                len(new_listings), len(delivered))
    if save_error is not None:
        raise save_error
    return delivered


__all__ = [
    "Notifier",
    "TelegramNotifier",
    "build_notifier_from_env",
    "format_listing",
    "format_new_listings",
    "notify_subscribers",
]
