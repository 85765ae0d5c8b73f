"""HTML extraction rules for vuokraovi.com search result pages."""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Tuple, Union
from urllib.parse import unquote, urlsplit

from bs4 import BeautifulSoup, Tag

from .models import Listing

logger = logging.getLogger(__name__)

Document = Union[str, bytes, BeautifulSoup]
Fields = Dict[str, str]
Rule = Callable[[Tag, Fields, str], None]

CONTAINER_SELECTOR = ".list-item-container"
MESSAGE_SELECTOR = ".error-message, .no-results-message"
AREA_UNIT = "m²"


def parse_document(document: Document) -> BeautifulSoup:
    if isinstance(document, BeautifulSoup):
        return document
    return BeautifulSoup(document, "html.parser")


def resolve_href(href: str, base_url: str) -> str:
    """Prefix relative hrefs with the site base URL."""
    if href.startswith("http"):
        return href
    return base_url + href


def extract_listings(document: Document, base_url: str) -> List[Listing]:
    """Extract one listing per result container, in document order.

    Incomplete listings are kept; callers decide what is usable.
    """
    soup = parse_document(document)
    containers = soup.select(CONTAINER_SELECTOR)
    if not containers:
        logger.warning("No rental listings found in the HTML document")
        message = _joined_text(soup.select(MESSAGE_SELECTOR))
        if message:
            logger.warning("Message from page: %s", message)
        return []

    return [_extract_single(container, base_url) for container in containers]


def find_next_page(document: Document, base_url: str) -> str:
    """Return the resolved ``rel="next"`` URL, or an empty string."""
    soup = parse_document(document)
    next_url = ""
    for link in soup.find_all("link", href=True):
        if "next" in (link.get("rel") or []):
            next_url = resolve_href(link["href"], base_url)
    return next_url


def _extract_single(container: Tag, base_url: str) -> Listing:
    fields: Fields = {}
    for name, rule in EXTRACTION_RULES:
        rule(container, fields, base_url)
    return Listing(**fields)


def _extract_address_and_title(container: Tag, fields: Fields,
                               base_url: str) -> None:
    for image in container.select(".col-1 img"):
        alt = image.get("alt") or ""
        if len(alt) > 5 and "icon" not in alt.lower():
            fields["address"] = alt
            fields["title"] = alt.split(",")[0].strip()


def _extract_price(container: Tag, fields: Fields, base_url: str) -> None:
    price = _joined_text(container.select("span.price"))
    if price:
        fields["price"] = price


def _extract_size_and_rooms(container: Tag, fields: Fields,
                            base_url: str) -> None:
    items = container.select(".col-2 .list-unstyled li")
    if not items:
        return

    # e.g. "kerrostalo, 34 m²"
    size_text = items[0].get_text().strip()
    if AREA_UNIT in size_text:
        parts = size_text.split(",")
        if len(parts) > 1:
            fields["size"] = parts[1].strip()

    if len(items) > 1:
        fields["rooms"] = items[1].get_text().strip()


def _extract_availability(container: Tag, fields: Fields,
                          base_url: str) -> None:
    available = _joined_text(container.select(".showing-lease-container li"))
    if available:
        fields["available"] = available


def _extract_link(container: Tag, fields: Fields, base_url: str) -> None:
    anchor = container.select_one("a.list-item-link")
    if anchor is None or not anchor.has_attr("href"):
        return
    href = resolve_href(anchor["href"], base_url)
    fields["link"] = href
    if not fields.get("address"):
        _fill_address_from_link(fields, href)


def _fill_address_from_link(fields: Fields, href: str) -> None:
    # /vuokra-asunto/<city>/<district>/<type>/<id>
    try:
        path = unquote(urlsplit(href).path)
    except ValueError:
        logger.debug("Could not parse listing link %s", href)
        return
    parts = path.strip("/").split("/")
    if len(parts) < 4:
        return
    city = title_case(parts[1])
    district = title_case(parts[2])
    if not fields.get("title"):
        fields["title"] = district
    fields["address"] = f"{district}, {city}"


def title_case(text: str) -> str:
    """Uppercase the first letter of every word, leaving the rest untouched.

    Word boundaries are any ASCII character that is not a letter, digit or
    underscore, plus whitespace.
    """
    chars = []
    previous = " "
    for char in text:
        chars.append(char.upper() if _is_separator(previous) else char)
        previous = char
    return "".join(chars)


def _is_separator(char: str) -> bool:
    if char.isascii():
        return not (char.isalnum() or char == "_")
    if char.isalpha() or char.isdigit():
        return False
    return char.isspace()


def _joined_text(elements: List[Tag]) -> str:
    return "".join(element.get_text() for element in elements).strip()


EXTRACTION_RULES: Tuple[Tuple[str, Rule], ...] = (
    ("address_and_title", _extract_address_and_title),
    ("price", _extract_price),
    ("size_and_rooms", _extract_size_and_rooms),
    ("availability", _extract_availability),
    ("link", _extract_link),
)
