"""Core data models for vuokrawatch."""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass, field, replace
from typing import List, Set

ZERO_TIME = dt.datetime(1, 1, 1, tzinfo=dt.timezone.utc)


@dataclass(frozen=True)
class Listing:
    """Represents a rental offer scraped from the listing pages."""

    title: str = ""
    address: str = ""
    price: str = ""
    size: str = ""
    rooms: str = ""
    available: str = ""
    link: str = ""

    @property
    def is_usable(self) -> bool:
        """A listing needs at least one of size, rooms or price."""
        return bool(self.size or self.rooms or self.price)

    def with_link(self, link: str) -> "Listing":
        return replace(self, link=link)


@dataclass
class Subscriber:
    """A notification recipient and the offers already shown to it."""

    chat_id: int
    username: str = ""
    first_name: str = ""
    last_name: str = ""
    last_notified: dt.datetime = ZERO_TIME
    seen_offers: Set[str] = field(default_factory=set)
    notifications: bool = True

    def copy(self) -> "Subscriber":
        return replace(self, seen_offers=set(self.seen_offers))


@dataclass
class RunSummary:
    """Aggregated result returned by a reconciliation cycle."""

    executed_at: str
    fetched: int
    usable: int
    new_listings: List[Listing]
    notified: List[int] = field(default_factory=list)
