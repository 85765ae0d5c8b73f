"""Session-aware, paginating fetcher for vuokraovi.com search results."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List

import requests

from .models import Listing
from .parser import extract_listings, find_next_page, parse_document

logger = logging.getLogger(__name__)

BASE_URL = "https://www.vuokraovi.com"
SEARCH_URL = f"{BASE_URL}/haku/vuokra-asunnot?locale=fi"
USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/91.0.4472.124 Safari/537.36"
)
ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8"
ACCEPT_LANGUAGE = "en-US,en;q=0.5"
FORM_CONTENT_TYPE = "application/x-www-form-urlencoded"
MAX_REDIRECTS = 10
# Pause between successive page requests so the site does not throttle us.
PAGE_DELAY_SECONDS = 0.5


class FetchError(Exception):
    """Raised when a single page could not be retrieved."""


@dataclass(frozen=True)
class PageResult:
    """Listings found on one page plus the next page URL, if any."""

    listings: List[Listing]
    next_url: str


class VuokraoviClient:
    """Wraps one cookie-bearing session for a whole pagination run."""

    def __init__(self,
                 session: requests.Session | None = None,
                 base_url: str = BASE_URL,
                 search_url: str = SEARCH_URL,
                 delay: float = PAGE_DELAY_SECONDS):
        self.base_url = base_url
        self.search_url = search_url
        self.delay = delay
        self.session = session or requests.Session()
        self.session.max_redirects = MAX_REDIRECTS
        self.session.headers.update({
            "User-Agent": USER_AGENT,
            "Accept": ACCEPT,
            "Accept-Language": ACCEPT_LANGUAGE,
        })

    def fetch_page(self,
                   url: str,
                   method: str = "GET",
                   form_data: str = "") -> PageResult:
        logger.debug("[%s] %s", method, url)
        try:
            if method == "POST":
                response = self.session.post(
                    url,
                    data=form_data.encode("utf-8"),
                    headers={"Content-Type": FORM_CONTENT_TYPE},
                )
            else:
                response = self.session.get(url)
        except requests.RequestException as exc:
            raise FetchError(f"error sending request to {url}: {exc}") from exc

        if response.status_code != 200:
            raise FetchError(
                f"unexpected status code {response.status_code} for {url}")

        if not response.encoding or response.encoding.lower() == "iso-8859-1":
            response.encoding = response.apparent_encoding or "utf-8"

        soup = parse_document(response.text)
        listings = extract_listings(soup, self.base_url)
        logger.debug("Found %d offers on %s", len(listings), url)
        return PageResult(listings=listings,
                          next_url=find_next_page(soup, self.base_url))

    def fetch_all(self, form_data: str, max_pages: int = 0) -> List[Listing]:
        """Run the search and follow ``rel="next"`` links.

        The first page is a POST of ``form_data``; a failure there raises
        FetchError. A failure on any later page ends pagination and returns
        what was collected so far. ``max_pages`` of 0 means no limit.
        """
        logger.info("Sending initial search request to %s", self.search_url)
        try:
            first = self.fetch_page(self.search_url, "POST", form_data)
        except FetchError as exc:
            raise FetchError(f"error fetching initial page: {exc}") from exc

        listings = list(first.listings)
        next_url = first.next_url
        page_num = 2
        while next_url:
            if max_pages > 0 and page_num > max_pages:
                logger.info(
                    "Reached maximum number of pages (%d). Stopping pagination.",
                    max_pages,
                )
                break

            if self.delay > 0:
                time.sleep(self.delay)

            logger.debug("Fetching page %d: %s", page_num, next_url)
            try:
                page = self.fetch_page(next_url)
            except FetchError as exc:
                logger.warning("Error fetching page %d: %s", page_num, exc)
                break

            listings.extend(page.listings)
            next_url = page.next_url
            page_num += 1

        logger.info("Collected %d offers from %d page(s)", len(listings),
                    page_num - 1)
        return listings


def fetch_listings(form_data: str,
                   max_pages: int = 0,
                   session: requests.Session | None = None) -> List[Listing]:
    """Fetch all result pages with a fresh session."""
    client = VuokraoviClient(session=session)
    try:
        return client.fetch_all(form_data, max_pages=max_pages)
    finally:
        if session is None:
            client.session.close()


def read_form_data(path: Path) -> str:
    """Read the URL-encoded search filters from disk as an opaque string."""
    return Path(path).read_text(encoding="utf-8").rstrip("\r\n")
