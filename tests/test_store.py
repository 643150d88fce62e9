import json
from datetime import datetime, timedelta, timezone

import pytest

from klausgate.store import ZERO_TIME, Entry, Key, Store, parse_key

NOW = datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "key",
    [
        Key(channel="web", channel_id="abc", user_id="u1", thread_id="t1"),
        Key(channel="slack", channel_id="C|123", user_id="user\\1", thread_id=""),
    ],
)
def test_key_string_round_trip(key):
    assert parse_key(str(key)) == key


def test_key_string_format():
    assert str(Key("web", "abc", "u1", "t1")) == "web|abc|u1|t1"


def test_key_escapes_pipes():
    text = str(Key("slack", "C|123", "u", ""))
    assert text.count("|") == 3
    assert "C\\p123" in text


def test_parse_key_rejects_wrong_part_count():
    with pytest.raises(ValueError):
        parse_key("a|b")


def test_zero_ttl_never_expires():
    entry = Entry(instance="i1", last_seen=ZERO_TIME)
    assert entry.expired(NOW) is False


def test_expired_after_ttl():
    entry = Entry(instance="i1", last_seen=NOW - timedelta(hours=2), ttl=timedelta(hours=1))
    assert entry.expired(NOW) is True


def test_not_expired_at_exact_ttl():
    entry = Entry(instance="i1", last_seen=NOW - timedelta(hours=1), ttl=timedelta(hours=1))
    assert entry.expired(NOW) is False


def test_entry_json_round_trip():
    entry = Entry(
        instance="i1",
        created_at=NOW,
        last_seen=NOW + timedelta(microseconds=123456),
        ttl=timedelta(hours=1),
    )
    assert Entry.from_json(entry.to_json()) == entry


def test_entry_json_ttl_in_nanoseconds():
    entry = Entry(instance="i1", ttl=timedelta(hours=1))
    assert json.loads(entry.to_json())["ttl"] == 3600 * 10**9


def test_entry_from_json_accepts_utc_suffix_and_nanoseconds():
    data = (
        '{"instance":"i1","created_at":"2024-01-02T03:04:05Z",'
        '"last_seen":"2024-01-02T03:04:05.123456789Z","ttl":3600000000000}'
    )
    entry = Entry.from_json(data)
    assert entry.instance == "i1"
    assert entry.created_at == NOW
    assert entry.last_seen == NOW + timedelta(microseconds=123456)
    assert entry.ttl == timedelta(hours=1)


def test_entry_from_json_missing_fields_are_zero():
    entry = Entry.from_json("{}")
    assert entry == Entry()
    assert entry.created_at == ZERO_TIME


def test_entry_from_json_rejects_garbage():
    with pytest.raises(ValueError):
        Entry.from_json("not json")


def test_store_is_abstract():
    with pytest.raises(TypeError):
        Store()  # type: ignore[abstract]