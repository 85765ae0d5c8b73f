"""Identity and diff utilities for scraped listings."""

from __future__ import annotations

import logging
from typing import Callable, Dict, Iterable, List, TypeVar

from .models import Listing

logger = logging.getLogger(__name__)

TNew = TypeVar("TNew")
TStored = TypeVar("TStored")
KeyFunc = Callable[[TNew], str]


def canonical_link(url: str) -> str:
    """Strip everything from the first ``?`` onward."""
    position = url.find("?")
    if position == -1:
        return url
    return url[:position]


def _diff_items(
    new_items: Iterable[TNew],
    previous_items: Dict[str, TStored],
    key_fn: KeyFunc,
) -> List[TNew]:
    seen = set(previous_items)
    added = []
    for item in new_items:
        item_id = key_fn(item)
        if not item_id or item_id in seen:
            continue
        seen.add(item_id)
        added.append(item)
    return added


def diff_new_listings(
    new_listings: Iterable[Listing],
    known_listings: Dict[str, Listing],
) -> List[Listing]:
    """Return listings whose canonical link is not yet known, in input order.

    Returned listings carry their canonical link. Repeated links within
    ``new_listings`` only count once.
    """
    canonical = (listing.with_link(canonical_link(listing.link))
                 for listing in new_listings)
    return _diff_items(canonical,
                       known_listings,
                       key_fn=lambda item: item.link)


def filter_usable(listings: Iterable[Listing]) -> List[Listing]:
    """Drop listings that carry neither size, rooms nor price."""
    usable = []
    for index, listing in enumerate(listings, start=1):
        if listing.is_usable:
            usable.append(listing)
        else:
            logger.warning("Skipping offer #%d due to insufficient data (%s)",
                           index, listing.link or "no link")
    return usable
