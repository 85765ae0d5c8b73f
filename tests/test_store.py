import datetime as dt
import json
import threading

import pytest

from vuokrawatch.models import ZERO_TIME, Listing
from vuokrawatch.store import (
    STATE_FILENAME,
    ListingStore,
    PersistenceError,
    parse_timestamp,
    resolve_state_path,
)

NOW = dt.datetime(2025, 5, 1, 12, 0, tzinfo=dt.timezone.utc)


def make_listing(num: int, query: str = "") -> Listing:
    return Listing(
        title=f"Street {num}",
        address=f"Street {num}, Helsinki",
        price=f"{num}00 €/kk",
        size="30 m²",
        rooms="1h + k",
        link=f"https://www.vuokraovi.com/vuokra-asunto/helsinki/kallio/kerrostalo/{num}{query}",
    )


def build_store(tmp_path, now=NOW) -> ListingStore:
    store = ListingStore(path=tmp_path / STATE_FILENAME, clock=lambda: now)
    store.load()
    return store


def read_snapshot(store: ListingStore) -> dict:
    return json.loads(store.path.read_text(encoding="utf-8"))


def test_resolve_state_path_handles_relative(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert resolve_state_path("data") == tmp_path / "data" / STATE_FILENAME


def test_load_without_snapshot_starts_empty(tmp_path):
    store = build_store(tmp_path)

    assert store.known_listings() == {}
    assert store.subscribers() == {}
    assert store.last_updated == NOW
    assert not store.path.exists()


def test_register_and_diff_is_dedup_stable(tmp_path):
    store = build_store(tmp_path)
    offers = [make_listing(1), make_listing(2)]

    first = store.register_and_diff(offers)
    second = store.register_and_diff(offers)

    assert [listing.link for listing in first] == [offer.link for offer in offers]
    assert second == []
    assert set(read_snapshot(store)["known_offers"]) == {offer.link for offer in offers}


def test_register_and_diff_uses_canonical_link(tmp_path):
    store = build_store(tmp_path)

    new = store.register_and_diff([make_listing(1, "?s=a"), make_listing(1, "?s=b")])

    assert len(new) == 1
    assert new[0].link == make_listing(1).link
    assert list(store.known_listings()) == [make_listing(1).link]


def test_add_or_update_subscriber_preserves_seen_state(tmp_path):
    store = build_store(tmp_path)
    store.register_and_diff([make_listing(1)])

    created = store.add_or_update_subscriber(42, username="matti", first_name="Matti")
    assert created.notifications is True
    assert created.seen_offers == set()
    assert created.last_notified == ZERO_TIME

    store.mark_seen(42, make_listing(1).link + "?from=chat")
    store.set_notifications_enabled(42, False)
    updated = store.add_or_update_subscriber(42, username="matti_v", first_name="Matti", last_name="V")

    assert updated.username == "matti_v"
    assert updated.last_name == "V"
    assert updated.seen_offers == {make_listing(1).link}
    assert updated.notifications is False


def test_subscriber_copies_do_not_leak_state(tmp_path):
    store = build_store(tmp_path)
    store.add_or_update_subscriber(1)

    copy = store.get_subscriber(1)
    copy.seen_offers.add("https://x/not-known")
    copy.notifications = False

    assert store.get_subscriber(1).seen_offers == set()
    assert store.notifications_enabled(1) is True


def test_mark_seen_unknown_subscriber_is_noop(tmp_path):
    store = build_store(tmp_path)

    store.mark_seen(999, "https://x/1")

    assert store.get_subscriber(999) is None
    assert not store.path.exists()


def test_reset_and_clear_subscriber(tmp_path):
    store = build_store(tmp_path)
    store.register_and_diff([make_listing(1), make_listing(2)])
    store.add_or_update_subscriber(7)
    store.record_delivery(7, [make_listing(1).link], delivered_at=NOW)
    store.set_notifications_enabled(7, False)

    assert [listing.link for listing in store.unseen_listings(7)] == [make_listing(2).link]

    store.reset_subscriber(7)
    user = store.get_subscriber(7)
    assert user.seen_offers == set()
    assert user.last_notified == ZERO_TIME
    assert user.notifications is False

    assert store.clear_subscriber(7) is True
    assert store.notifications_enabled(7) is True
    assert store.clear_subscriber(8) is False


def test_set_notifications_reports_missing_subscriber(tmp_path):
    store = build_store(tmp_path)

    assert store.set_notifications_enabled(5, True) is False
    assert store.notifications_enabled(5) is None


def test_purge_inactive_removes_stale_subscribers(tmp_path):
    store = build_store(tmp_path)
    store.add_or_update_subscriber(1)
    store.add_or_update_subscriber(2)
    store.add_or_update_subscriber(3)
    store.update_last_notified(1, NOW - dt.timedelta(days=2))
    store.update_last_notified(2, NOW - dt.timedelta(days=45))

    removed = store.purge_inactive()

    assert sorted(removed) == [2, 3]
    assert set(store.subscribers()) == {1}
    assert set(read_snapshot(store)["users"]) == {"1"}


def test_round_trip_preserves_state(tmp_path):
    store = build_store(tmp_path)
    store.register_and_diff([make_listing(1), make_listing(2)])
    store.add_or_update_subscriber(10, username="a", first_name="Aino", last_name="K")
    store.record_delivery(10, [make_listing(2).link], delivered_at=NOW)
    store.add_or_update_subscriber(11)
    store.set_notifications_enabled(11, False)

    reloaded = ListingStore(path=store.path, clock=lambda: NOW)
    reloaded.load()

    assert reloaded.known_listings() == store.known_listings()
    assert reloaded.subscribers() == store.subscribers()
    assert reloaded.last_updated == NOW


def test_load_prunes_dangling_seen_offers(tmp_path):
    known = make_listing(1)
    snapshot = {
        "users": {
            "5": {
                "chat_id": 5,
                "username": "liisa",
                "last_notified": "2025-04-30T10:00:00.123456789Z",
                "seen_offers": {
                    known.link + "?utm=x": True,
                    "https://www.vuokraovi.com/gone/1": True,
                },
                "notifications": True,
            },
            "not-a-number": {"chat_id": 1},
            "6": "garbage",
        },
        "known_offers": {
            known.link + "?ref=1": {**known.__dict__},
            "https://www.vuokraovi.com/no-link": {"title": "x", "link": ""},
            "": {"title": "empty key", "link": "https://x/y"},
            "https://www.vuokraovi.com/bad": ["not", "an", "object"],
        },
        "last_updated": "2025-04-30T10:00:00Z",
    }
    path = tmp_path / STATE_FILENAME
    path.write_text(json.dumps(snapshot), encoding="utf-8")

    store = ListingStore(path=path, clock=lambda: NOW)
    store.load()

    assert list(store.known_listings()) == [known.link]
    users = store.subscribers()
    assert list(users) == [5]
    assert users[5].seen_offers == {known.link}
    assert users[5].last_notified == dt.datetime(2025, 4, 30, 10, 0, 0, 123456, tzinfo=dt.timezone.utc)
    assert store.last_updated == dt.datetime(2025, 4, 30, 10, 0, tzinfo=dt.timezone.utc)


def test_load_canonicalizes_legacy_listing_links(tmp_path):
    legacy = make_listing(7, query="?ref=feed")
    path = tmp_path / STATE_FILENAME
    path.write_text(json.dumps({
        "users": {},
        "known_offers": {legacy.link: {**legacy.__dict__}},
    }), encoding="utf-8")

    store = ListingStore(path=path, clock=lambda: NOW)
    store.load()

    known = store.known_listings()
    clean = make_listing(7).link
    assert list(known) == [clean]
    assert known[clean].link == clean
    assert known[clean].title == "Street 7"

    store.save()
    assert read_snapshot(store)["known_offers"][clean]["link"] == clean

def test_load_tolerates_missing_collections(tmp_path):
    path = tmp_path / STATE_FILENAME
    path.write_text(json.dumps({"users": None}), encoding="utf-8")

    store = ListingStore(path=path, clock=lambda: NOW)
    store.load()

    assert store.known_listings() == {}
    assert store.subscribers() == {}


def test_load_ignores_corrupt_snapshot(tmp_path, caplog):
    path = tmp_path / STATE_FILENAME
    path.write_text('{"users": {', encoding="utf-8")

    store = ListingStore(path=path, clock=lambda: NOW)
    with caplog.at_level("WARNING"):
        store.load()

    assert store.known_listings() == {}
    assert "Failed to load state" in caplog.text


def test_save_writes_seen_offers_as_object(tmp_path):
    store = build_store(tmp_path)
    store.register_and_diff([make_listing(1)])
    store.add_or_update_subscriber(3)
    store.mark_seen(3, make_listing(1).link)
    store.mark_seen(3, "https://www.vuokraovi.com/unknown")

    user = read_snapshot(store)["users"]["3"]

    assert user["seen_offers"] == {make_listing(1).link: True}
    assert user["chat_id"] == 3
    assert user["notifications"] is True


def test_persistence_failure_keeps_in_memory_mutation(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = ListingStore(path=blocker / "data" / STATE_FILENAME, clock=lambda: NOW)

    with pytest.raises(PersistenceError):
        store.register_and_diff([make_listing(1)])

    assert list(store.known_listings()) == [make_listing(1).link]


def test_parse_timestamp_falls_back_to_zero_time():
    assert parse_timestamp("not a date") == ZERO_TIME
    assert parse_timestamp(None) == ZERO_TIME
    assert parse_timestamp("0001-01-01T00:00:00Z") == ZERO_TIME


def test_concurrent_operations_are_serialized(tmp_path):
    store = build_store(tmp_path)
    writers = 8
    per_writer = 10
    subscribers = 4
    barrier = threading.Barrier(writers + subscribers)
    returned = []
    errors = []

    def register(index):
        own = [make_listing(index * per_writer + num) for num in range(per_writer)]
        # every writer also reports the first two offers, once with a query
        shared = [make_listing(0, query=f"?w={index}"), make_listing(1)]
        barrier.wait()
        try:
            for listing in own + shared:
                returned.extend(store.register_and_diff([listing]))
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    def subscribe(chat_id):
        barrier.wait()
        try:
            store.add_or_update_subscriber(chat_id, username=f"user{chat_id}")
            for num in range(writers * per_writer):
                store.mark_seen(chat_id, make_listing(num).link)
            store.record_delivery(chat_id, [make_listing(0).link])
        except Exception as exc:  # noqa: BLE001
            errors.append(exc)

    threads = [threading.Thread(target=register, args=(index,)) for index in range(writers)]
    threads += [threading.Thread(target=subscribe, args=(100 + num,)) for num in range(subscribers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    expected = {make_listing(num).link for num in range(writers * per_writer)}
    links = [listing.link for listing in returned]
    assert len(links) == len(expected)
    assert set(links) == expected

    known = store.known_listings()
    assert set(known) == expected
    users = store.subscribers()
    assert sorted(users) == [100, 101, 102, 103]
    for user in users.values():
        assert user.seen_offers <= set(known)
        assert user.last_notified == NOW

    reloaded = ListingStore(path=store.path, clock=lambda: NOW)
    reloaded.load()
    assert reloaded.known_listings() == known
    assert reloaded.subscribers() == users
