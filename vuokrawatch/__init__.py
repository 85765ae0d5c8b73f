"""vuokrawatch package initialization."""

from .diff import canonical_link, diff_new_listings, filter_usable
from .models import Listing, RunSummary, Subscriber
from .parser import extract_listings, find_next_page
from .runner import VuokraWatcherRunner
from .scraper import FetchError, VuokraoviClient, fetch_listings
from .store import ListingStore, PersistenceError

__all__ = [
    "FetchError",
    "Listing",
    "ListingStore",
    "PersistenceError",
    "RunSummary",
    "Subscriber",
    "VuokraWatcherRunner",
    "VuokraoviClient",
    "canonical_link",
    "diff_new_listings",
    "extract_listings",
    "fetch_listings",
    "filter_usable",
    "find_next_page",
]
