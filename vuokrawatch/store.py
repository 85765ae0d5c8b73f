"""JSON snapshot persistence for known listings and subscribers."""

from __future__ import annotations

import datetime as dt
import json
import logging
import os
import re
import threading
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .diff import canonical_link, diff_new_listings
from .models import ZERO_TIME, Listing, Subscriber

logger = logging.getLogger(__name__)

STATE_FILENAME = "bot_state.json"
INACTIVITY_THRESHOLD = dt.timedelta(days=30)

LISTING_FIELDS = tuple(item.name for item in fields(Listing))
_LONG_FRACTION = re.compile(r"(\.\d{6})\d+")


class PersistenceError(RuntimeError):
    """Raised when the snapshot could not be written.

    The in-memory mutation that triggered the write has already been applied.
    """


def resolve_state_path(data_dir: str | Path) -> Path:
    """Translate a data directory into the snapshot file path."""
    if not str(data_dir):
        raise ValueError("data directory must not be empty")
    path = Path(data_dir).expanduser()
    if not path.is_absolute():
        path = Path.cwd() / path
    return (path / STATE_FILENAME).resolve()


def utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def format_timestamp(value: dt.datetime) -> str:
    return value.isoformat()


def parse_timestamp(raw: Any) -> dt.datetime:
    """Parse an ISO-8601 timestamp, falling back to ZERO_TIME."""
    if not isinstance(raw, str) or not raw:
        return ZERO_TIME
    text = _LONG_FRACTION.sub(r"\1", raw.strip())
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        value = dt.datetime.fromisoformat(text)
        if value.tzinfo is None:
            return value.replace(tzinfo=dt.timezone.utc)
        return value.astimezone(dt.timezone.utc)
    except (ValueError, OverflowError):
        logger.debug("Ignoring malformed timestamp %r", raw)
        return ZERO_TIME


class ListingStore:
    """Registry of known listings and per-subscriber seen state.

    Every public method runs under one lock covering both collections, and
    every mutation is written through to ``path`` before returning.
    """

    def __init__(self,
                 path: Path,
                 clock: Callable[[], dt.datetime] = utcnow):
        self.path = Path(path)
        self._clock = clock
        self._lock = threading.Lock()
        self._known: Dict[str, Listing] = {}
        self._users: Dict[int, Subscriber] = {}
        self._last_updated = clock()

    # -- loading ---------------------------------------------------------

    def load(self) -> None:
        """Replace in-memory state with the sanitized snapshot on disk."""
        with self._lock:
            self._known = {}
            self._users = {}
            self._last_updated = self._clock()

            if not self.path.exists():
                logger.info("No state file at %s; starting empty", self.path)
                return

            try:
                document = json.loads(self.path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, json.JSONDecodeError) as exc:
                logger.warning("Failed to load state from %s: %s", self.path,
                               exc)
                return
            if not isinstance(document, dict):
                logger.warning("Ignoring state file %s: not a JSON object",
                               self.path)
                return

            raw_offers = _as_mapping(document.get("known_offers"))
            offers = {}
            for key, raw in raw_offers.items():
                listing = _listing_from_json(raw)
                if listing is not None:
                    offers[str(key)] = listing
            self._known = _normalize_listings(offers)

            for key, raw in _as_mapping(document.get("users")).items():
                subscriber = _subscriber_from_json(key, raw)
                if subscriber is None:
                    logger.debug("Dropping malformed subscriber entry %r", key)
                    continue
                self._users[subscriber.chat_id] = _normalize_subscriber(
                    subscriber, self._known)

            last_updated = parse_timestamp(document.get("last_updated"))
            if last_updated != ZERO_TIME:
                self._last_updated = last_updated

            logger.info("Loaded %d known offers and %d users from %s",
                        len(self._known), len(self._users), self.path)

    # -- listings --------------------------------------------------------

    def register_and_diff(self, listings: Iterable[Listing]) -> List[Listing]:
        """Store listings with unseen canonical links and return them."""
        with self._lock:
            new_listings = diff_new_listings(listings, self._known)
            for listing in new_listings:
                self._known[listing.link] = listing
            self._last_updated = self._clock()
            self._save_locked()
            return list(new_listings)

    def known_listings(self) -> Dict[str, Listing]:
        with self._lock:
            return dict(self._known)

    def unseen_listings(self, chat_id: int) -> List[Listing]:
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return []
            return [
                listing for link, listing in self._known.items()
                if link not in user.seen_offers
            ]

    @property
    def last_updated(self) -> dt.datetime:
        with self._lock:
            return self._last_updated

    # -- subscribers -----------------------------------------------------

    def add_or_update_subscriber(self,
                                 chat_id: int,
                                 username: str = "",
                                 first_name: str = "",
                                 last_name: str = "") -> Subscriber:
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                user = Subscriber(chat_id=chat_id,
                                  username=username,
                                  first_name=first_name,
                                  last_name=last_name)
                self._users[chat_id] = user
                logger.info("Added subscriber %s", chat_id)
            else:
                user.username = username
                user.first_name = first_name
                user.last_name = last_name
            self._save_locked()
            return self._users[chat_id].copy()

    def get_subscriber(self, chat_id: int) -> Optional[Subscriber]:
        with self._lock:
            user = self._users.get(chat_id)
            return user.copy() if user is not None else None

    def subscribers(self) -> Dict[int, Subscriber]:
        with self._lock:
            return {chat_id: user.copy() for chat_id, user in self._users.items()}

    def mark_seen(self, chat_id: int, link: str) -> None:
        """Mark ``link`` as shown to the subscriber; unknown ids are ignored."""
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return
            user.seen_offers.add(canonical_link(link))
            self._save_locked()

    def record_delivery(self,
                        chat_id: int,
                        links: Iterable[str],
                        delivered_at: dt.datetime | None = None) -> None:
        """Mark links seen and stamp the notification time in one step."""
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return
            user.seen_offers.update(canonical_link(link) for link in links)
            user.last_notified = delivered_at or self._clock()
            self._save_locked()

    def update_last_notified(self, chat_id: int, when: dt.datetime) -> None:
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return
            user.last_notified = when
            self._save_locked()

    def reset_subscriber(self, chat_id: int) -> None:
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return
            user.seen_offers = set()
            user.last_notified = ZERO_TIME
            self._save_locked()

    def clear_subscriber(self, chat_id: int) -> bool:
        """Reset seen state and re-enable notifications."""
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return False
            user.seen_offers = set()
            user.last_notified = ZERO_TIME
            user.notifications = True
            self._save_locked()
            return True

    def set_notifications_enabled(self, chat_id: int, enabled: bool) -> bool:
        with self._lock:
            user = self._users.get(chat_id)
            if user is None:
                return False
            user.notifications = enabled
            self._save_locked()
            return True

    def notifications_enabled(self, chat_id: int) -> Optional[bool]:
        with self._lock:
            user = self._users.get(chat_id)
            return user.notifications if user is not None else None

    def purge_inactive(
            self,
            threshold: dt.timedelta = INACTIVITY_THRESHOLD) -> List[int]:
        """Remove subscribers not notified within ``threshold``."""
        with self._lock:
            cutoff = self._clock() - threshold
            removed = [
                chat_id for chat_id, user in self._users.items()
                if user.last_notified < cutoff
            ]
            for chat_id in removed:
                del self._users[chat_id]
            if removed:
                logger.info("Removed %d inactive subscriber(s)", len(removed))
            self._save_locked()
            return removed

    # -- persistence -----------------------------------------------------

    def save(self) -> None:
        """Normalize and write the current state."""
        with self._lock:
            self._save_locked()

    def _save_locked(self) -> None:
        self._known = _normalize_listings(self._known)
        self._users = {
            chat_id: _normalize_subscriber(user, self._known)
            for chat_id, user in self._users.items()
        }
        document = {
            "users": {
                str(chat_id): _subscriber_to_json(user)
                for chat_id, user in self._users.items()
            },
            "known_offers": {
                link: asdict(listing)
                for link, listing in self._known.items()
            },
            "last_updated": format_timestamp(self._last_updated),
        }
        payload = json.dumps(document, indent=2, ensure_ascii=False)
        temp_path = self.path.with_name(self.path.name + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            temp_path.write_text(payload, encoding="utf-8")
            os.replace(temp_path, self.path)
        except OSError as exc:
            raise PersistenceError(
                f"failed to write state file {self.path}: {exc}") from exc


def _normalize_listings(listings: Mapping[str, Listing]) -> Dict[str, Listing]:
    normalized: Dict[str, Listing] = {}
    for key, listing in listings.items():
        clean = canonical_link(key)
        if clean and listing.link:
            normalized.setdefault(clean, listing.with_link(clean))
    return normalized


def _normalize_subscriber(user: Subscriber,
                          known: Mapping[str, Listing]) -> Subscriber:
    seen = {canonical_link(link) for link in user.seen_offers}
    user.seen_offers = {link for link in seen if link in known}
    return user


def _as_mapping(value: Any) -> Dict[Any, Any]:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _listing_from_json(raw: Any) -> Optional[Listing]:
    if not isinstance(raw, dict):
        return None
    return Listing(**{name: _as_str(raw.get(name)) for name in LISTING_FIELDS})


def _subscriber_from_json(key: Any, raw: Any) -> Optional[Subscriber]:
    if not isinstance(raw, dict):
        return None
    try:
        chat_id = int(key)
    except (TypeError, ValueError):
        return None

    raw_seen = raw.get("seen_offers")
    if isinstance(raw_seen, dict):
        seen = {_as_str(link) for link, flag in raw_seen.items() if flag}
    elif isinstance(raw_seen, list):
        seen = {_as_str(link) for link in raw_seen}
    else:
        seen = set()

    return Subscriber(
        chat_id=chat_id,
        username=_as_str(raw.get("username")),
        first_name=_as_str(raw.get("first_name")),
        last_name=_as_str(raw.get("last_name")),
        last_notified=parse_timestamp(raw.get("last_notified")),
        seen_offers=seen,
        notifications=bool(raw.get("notifications", False)),
    )


def _subscriber_to_json(user: Subscriber) -> Dict[str, Any]:
    return {
        "chat_id": user.chat_id,
        "username": user.username,
        "first_name": user.first_name,
        "last_name": user.last_name,
        "last_notified": format_timestamp(user.last_notified),
        "seen_offers": {link: True for link in sorted(user.seen_offers)},
        "notifications": user.notifications,
    }
