from datetime import datetime, timedelta, timezone

import pytest

from klausgate.memory_store import MemoryStore
from klausgate.store import Entry, Key


class FakeClock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


def _now():
    return datetime.now(timezone.utc)


@pytest.fixture
def store():
    s = MemoryStore()
    yield s
    s.close()


def test_put_get_delete(store):
    k = Key("web", "c1", "u1", "t1")
    e = Entry(instance="i1", created_at=_now(), last_seen=_now(), ttl=timedelta(hours=1))
    assert store.get(k) is None
    store.put(k, e)
    got = store.get(k)
    assert got is not None and got.instance == e.instance
    store.delete(k)
    assert store.get(k) is None


def test_list(store):
    for k in (Key("web", "c1", "u1", "t1"), Key("slack", "c2", "u2", "t2")):
        store.put(k, Entry(instance="inst", created_at=_now(), last_seen=_now(), ttl=timedelta(hours=1)))
    entries = store.list()
    assert len(entries) == 2
    assert {ke.key.channel for ke in entries} == {"web", "slack"}


def test_keys_with_pipes_round_trip(store):
    k = Key("web", "c|pipe", "u1", "t\\back")
    store.put(k, Entry(instance="inst", last_seen=_now(), ttl=timedelta(hours=1)))
    got = store.get(k)
    assert got is not None and got.instance == "inst"
    assert [ke.key for ke in store.list()] == [k]


def test_ttl_expired_filtered(store):
    k = Key("web", "c1", "u1", "t1")
    old = _now() - timedelta(hours=2)
    store.put(k, Entry(instance="i1", created_at=old, last_seen=old, ttl=timedelta(hours=1)))
    assert store.get(k) is None
    assert all(ke.entry.instance != "i1" for ke in store.list())


def test_delete_missing_key_is_harmless(store):
    store.delete(Key("none"))
    assert store.list() == []


def test_evict_now_removes_expired_entries():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    clock = FakeClock(start)
    with MemoryStore(clock=clock) as s:
        k = Key("web", "c1", "u1", "t1")
        s.put(k, Entry(instance="i1", last_seen=start, ttl=timedelta(hours=1)))
        clock.now = start + timedelta(hours=2)
        s.evict_now()
        clock.now = start
        assert s.get(k) is None


def test_evict_now_keeps_live_entries():
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    clock = FakeClock(start)
    with MemoryStore(clock=clock) as s:
        k = Key("web", "c1", "u1", "t1")
        s.put(k, Entry(instance="i1", last_seen=start, ttl=timedelta(hours=1)))
        clock.now = start + timedelta(minutes=30)
        s.evict_now()
        got = s.get(k)
        assert got is not None and got.instance == "i1"


def test_close_is_idempotent_without_put():
    s = MemoryStore()
    s.close()
    s.close()
    assert s.get(Key("web")) is None