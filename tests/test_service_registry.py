import threading
import time

import pytest

from lanbeacon.registry import DeviceSet, Instance, InvalidAddress, NetworkRegistry, ReadWriteLock


def _urls(instances):
    return [i.url for i in instances]


def test_upsert_replaces_same_url_with_latest() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    assert device_set.upsert(Instance("http://a", "first", 100.0))
    assert device_set.upsert(Instance("http://a", "second", 200.0))

    [only] = device_set.snapshot()
    assert only.name == "second"
    assert only.registered_at == 200.0


def test_upsert_moves_replaced_instance_to_end() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    device_set.upsert(Instance("http://a", "a", 1.0))
    device_set.upsert(Instance("http://b", "b", 2.0))
    device_set.upsert(Instance("http://a", "a", 3.0))

    assert _urls(device_set.snapshot()) == ["http://b", "http://a"]


def test_upsert_never_moves_registration_time_backwards() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    device_set.upsert(Instance("http://a", "old", 200.0))
    device_set.upsert(Instance("http://a", "new", 150.0))

    [only] = device_set.snapshot()
    assert only.name == "new"
    assert only.registered_at == 200.0


def test_snapshot_is_a_copy() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    device_set.upsert(Instance("http://a", "a", 1.0))
    snap = device_set.snapshot()
    snap.clear()
    device_set.upsert(Instance("http://b", "b", 2.0))

    assert snap == []
    assert len(device_set) == 2


def test_purge_expired_uses_inclusive_lifetime() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    device_set.upsert(Instance("http://old", "old", 100.0))
    device_set.upsert(Instance("http://new", "new", 101.0))

    assert device_set.purge_expired(now=110.0, lifetime=10.0) is False
    assert _urls(device_set.snapshot()) == ["http://new"]

    assert device_set.purge_expired(now=111.0, lifetime=10.0) is True
    assert device_set.snapshot() == []


def test_retired_set_refuses_upserts() -> None:
    device_set = DeviceSet("10.0.0.1/32")
    device_set.upsert(Instance("http://a", "a", 1.0))
    assert device_set.retire() is False

    device_set.purge_expired(now=100.0, lifetime=1.0)
    assert device_set.retire() is True
    assert device_set.retired
    assert device_set.upsert(Instance("http://b", "b", 2.0)) is False
    assert len(device_set) == 0


def test_get_or_create_returns_same_set() -> None:
    registry = NetworkRegistry()
    first = registry.get_or_create("10.0.0.1/32")
    assert registry.get_or_create("10.0.0.1/32") is first
    assert registry.get("10.0.0.1/32") is first
    assert "10.0.0.1/32" in registry
    assert len(registry) == 1


def test_get_unknown_key_returns_none() -> None:
    registry = NetworkRegistry()
    assert registry.get("10.0.0.1/32") is None
    assert "10.0.0.1/32" not in registry


def test_concurrent_get_or_create_yields_one_set() -> None:
    registry = NetworkRegistry(shards=1)
    barrier = threading.Barrier(16)
    results = []

    def worker():
        barrier.wait()
        results.append(registry.get_or_create("2001:db8::/64"))

    threads = [threading.Thread(target=worker) for _ in range(16)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert len({id(s) for s in results}) == 1
    assert len(registry) == 1


def test_remove_with_expected_only_drops_empty_matching_set() -> None:
    registry = NetworkRegistry()
    key = "10.0.0.1/32"
    device_set = registry.get_or_create(key)
    device_set.upsert(Instance("http://a", "a", 1.0))

    assert registry.remove(key, expected=device_set) is False
    assert registry.remove(key, expected=DeviceSet(key)) is False
    assert registry.get(key) is device_set

    device_set.purge_expired(now=100.0, lifetime=1.0)
    assert registry.remove(key, expected=device_set) is True
    assert registry.get(key) is None
    assert device_set.retired


def test_remove_without_expected_is_unconditional() -> None:
    registry = NetworkRegistry()
    device_set = registry.get_or_create("10.0.0.1/32")
    device_set.upsert(Instance("http://a", "a", 1.0))

    assert registry.remove("10.0.0.1/32") is True
    assert registry.remove("10.0.0.1/32") is False
    assert device_set.retired


def test_for_each_visits_every_pair() -> None:
    registry = NetworkRegistry(shards=4)
    keys = {f"10.0.0.{n}/32" for n in range(1, 11)}
    for key in keys:
        registry.get_or_create(key)

    seen = {}
    registry.for_each(lambda key, device_set: seen.setdefault(key, device_set))

    assert set(seen) == keys
    assert set(registry.keys()) == keys


def test_for_each_callback_may_mutate_registry() -> None:
    registry = NetworkRegistry(shards=1)
    registry.get_or_create("10.0.0.1/32")
    registry.get_or_create("10.0.0.2/32")

    registry.for_each(lambda key, device_set: registry.remove(key, expected=device_set))

    assert len(registry) == 0


def test_announce_then_list_scenario() -> None:
    registry = NetworkRegistry()
    registry.announce("10.0.0.1", "node-a", "http://10.0.0.1:9000")
    assert [i.to_dict() for i in registry.list_instances("10.0.0.1")] == [
        {"url": "http://10.0.0.1:9000", "name": "node-a"},
    ]

    registry.announce("10.0.0.1", "node-a-renamed", "http://10.0.0.1:9000")
    assert [i.to_dict() for i in registry.list_instances("10.0.0.1")] == [
        {"url": "http://10.0.0.1:9000", "name": "node-a-renamed"},
    ]


def test_announce_uses_clock_for_registration_time() -> None:
    registry = NetworkRegistry(clock=lambda: 1234.5)
    instance = registry.announce("10.0.0.1", "node", "http://x")
    assert instance.registered_at == 1234.5
    assert registry.announce("10.0.0.1", "node", "http://x", now=2000.0).registered_at == 2000.0


def test_dedup_keeps_second_announcement_time() -> None:
    registry = NetworkRegistry()
    registry.announce("10.0.0.1", "node", "http://x", now=100.0)
    registry.announce("10.0.0.1", "node", "http://x", now=160.0)

    [only] = registry.list_instances("10.0.0.1")
    assert only.registered_at == 160.0


def test_ipv4_neighbours_are_partitioned() -> None:
    registry = NetworkRegistry()
    registry.announce("203.0.113.5", "five", "http://five")
    registry.announce("203.0.113.6", "six", "http://six")

    assert _urls(registry.list_instances("203.0.113.5")) == ["http://five"]
    assert _urls(registry.list_instances("203.0.113.6")) == ["http://six"]
    assert len(registry) == 2


def test_ipv6_subnet_shares_one_set() -> None:
    registry = NetworkRegistry()
    registry.announce("2001:db8::1", "one", "http://one")
    registry.announce("2001:db8::2", "two", "http://two")

    assert _urls(registry.list_instances("2001:db8::3")) == ["http://one", "http://two"]
    assert registry.keys() == ["2001:db8::/64"]


def test_list_unknown_network_is_empty() -> None:
    registry = NetworkRegistry()
    assert registry.list_instances("192.0.2.1") == []


def test_invalid_address_leaves_no_state() -> None:
    registry = NetworkRegistry()
    with pytest.raises(InvalidAddress):
        registry.announce("bogus", "node", "http://x")
    with pytest.raises(InvalidAddress):
        registry.list_instances("bogus")
    assert len(registry) == 0


def test_concurrent_announces_are_not_lost() -> None:
    registry = NetworkRegistry()
    count = 64
    barrier = threading.Barrier(count)

    def worker(n):
        barrier.wait()
        registry.announce("10.0.0.1", f"node-{n}", f"http://10.0.0.1:{9000 + n}")

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(count)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    instances = registry.list_instances("10.0.0.1")
    assert len(instances) == count
    assert len(set(_urls(instances))) == count
    assert registry.instance_count() == count


def test_announce_retries_when_set_was_swept() -> None:
    registry = NetworkRegistry()
    key = "10.0.0.1/32"
    stale = registry.get_or_create(key)
    assert registry.remove(key, expected=stale)

    registry.announce("10.0.0.1", "node", "http://x")

    fresh = registry.get(key)
    assert fresh is not None and fresh is not stale
    assert _urls(fresh.snapshot()) == ["http://x"]
    assert stale.snapshot() == []


def test_invalid_shard_count_rejected() -> None:
    with pytest.raises(ValueError):
        NetworkRegistry(shards=0)


def test_read_lock_is_shared() -> None:
    lock = ReadWriteLock()
    lock.acquire_read()
    acquired = threading.Event()

    def reader():
        with lock.read_locked():
            acquired.set()

    t = threading.Thread(target=reader)
    t.start()
    assert acquired.wait(timeout=2)
    t.join()
    lock.release_read()


def test_writer_waits_for_readers() -> None:
    lock = ReadWriteLock()
    lock.acquire_read()
    acquired = threading.Event()

    def writer():
        with lock.write_locked():
            acquired.set()

    t = threading.Thread(target=writer)
    t.start()
    assert not acquired.wait(timeout=0.2)
    lock.release_read()
    assert acquired.wait(timeout=2)
    t.join()


def test_interrupted_writer_releases_queued_readers() -> None:
    lock = ReadWriteLock()
    lock.acquire_read()
    original_wait = lock._cond.wait

    def wait(timeout=None):
        original_wait(timeout)
        if threading.current_thread().name == "writer":
            raise RuntimeError("interrupted")

    lock._cond.wait = wait
    writer_failed = threading.Event()
    reader_in = threading.Event()

    def writer():
        try:
            lock.acquire_write()
        except RuntimeError:
            writer_failed.set()

    def reader():
        with lock.read_locked():
            reader_in.set()

    w = threading.Thread(target=writer, name="writer")
    w.start()
    while lock._writers_waiting == 0:
        time.sleep(0.01)

    r = threading.Thread(target=reader, name="reader")
    r.start()
    assert not reader_in.wait(timeout=0.2)

    # Wake the writer without releasing the read lock; its wait() raises
    with lock._cond:
        lock._cond.notify_all()

    assert writer_failed.wait(timeout=2)
    assert reader_in.wait(timeout=2)
    w.join()
    r.join()
    assert lock._writers_waiting == 0
    lock.release_read()
