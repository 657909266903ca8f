#!/usr/bin/env python3
"""
In-process Network-Scoped Registry

This module provides:
- Instance: one announced (url, name) endpoint
- DeviceSet: the instances announced from one network, behind a read/write lock
- NetworkRegistry: a lock-striped network key -> DeviceSet map plus the
  announce/list operations the HTTP layer calls
"""

import sys
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Dict, Iterator, List, Optional, Tuple

from .network import derive_network_key


@dataclass(frozen=True)
class Instance:
    """An announced endpoint. Replaced, never mutated, on re-announce."""
    url: str
    name: str
    registered_at: float

    def to_dict(self) -> Dict[str, str]:
        """Convert to the public JSON shape (registration time stays internal)."""
        return {"url": self.url, "name": self.name}


# ---------------------------------------------------------------------------
# Shared/exclusive lock
# ---------------------------------------------------------------------------

class ReadWriteLock:
    """Many readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            acquired = False
            try:
                while self._writer or self._readers:
                    self._cond.wait()
                self._writer = acquired = True
            finally:
                self._writers_waiting -= 1
                if not acquired:
                    # Readers held back for this writer must re-check
                    self._cond.notify_all()

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# ---------------------------------------------------------------------------
# Per-network instance list
# ---------------------------------------------------------------------------

class DeviceSet:
    """Instances announced under one network key, in insertion order."""

    def __init__(self, key: str):
        self.key = key
        self._lock = ReadWriteLock()
        self._instances: List[Instance] = []
        self._retired = False

    def upsert(self, instance: Instance) -> bool:
        """Replace any instance with the same url and append *instance*.

        Returns False if this set was already removed from its registry; the
        caller has to fetch a fresh set and try again.
        """
        with self._lock.write_locked():
            if self._retired:
                return False
            kept = []
            for existing in self._instances:
                if existing.url != instance.url:
                    kept.append(existing)
                elif existing.registered_at > instance.registered_at:
                    # Clock stepped back; keep the timestamp monotonic
                    instance = Instance(instance.url, instance.name, existing.registered_at)
            kept.append(instance)
            self._instances = kept
        return True

    def snapshot(self) -> List[Instance]:
        with self._lock.read_locked():
            return list(self._instances)

    def purge_expired(self, now: float, lifetime: float) -> bool:
        """Drop instances at least *lifetime* old. Returns True if now empty."""
        with self._lock.write_locked():
            self._instances = [
                i for i in self._instances
                if now - i.registered_at < lifetime
            ]
            return not self._instances

    def retire(self, only_if_empty: bool = True) -> bool:
        """Mark this set as removed so later upserts are refused.

        With *only_if_empty* a non-empty set is left alone and False returned.
        """
        with self._lock.write_locked():
            if only_if_empty and self._instances:
                return False
            self._retired = True
            return True

    @property
    def retired(self) -> bool:
        with self._lock.read_locked():
            return self._retired

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._instances)


# ---------------------------------------------------------------------------
# Network key -> DeviceSet map
# ---------------------------------------------------------------------------

class _Shard:
    __slots__ = ("lock", "sets")

    def __init__(self):
        self.lock = threading.Lock()
        self.sets: Dict[str, DeviceSet] = {}


class NetworkRegistry:
    """Thread-safe registry of device sets, striped across shard locks."""

    def __init__(self, shards: int = 16, clock: Callable[[], float] = time.time):
        if shards < 1:
            raise ValueError("shards must be >= 1")
        self._shards = [_Shard() for _ in range(shards)]
        self._clock = clock

    def _shard(self, key: str) -> _Shard:
        return self._shards[hash(key) % len(self._shards)]

    def get_or_create(self, key: str) -> DeviceSet:
        shard = self._shard(key)
        with shard.lock:
            device_set = shard.sets.get(key)
            if device_set is None:
                device_set = DeviceSet(key)
                shard.sets[key] = device_set
            return device_set

    def get(self, key: str) -> Optional[DeviceSet]:
        shard = self._shard(key)
        with shard.lock:
            return shard.sets.get(key)

    def remove(self, key: str, expected: Optional[DeviceSet] = None) -> bool:
        """Delete the entry for *key*.

        With *expected*, the entry is only deleted if it is still that set and
        the set is still empty. The set is retired under the shard lock, so a
        concurrent announce either lands before the check (and the set stays)
        or sees the retirement and creates a fresh set.
        """
        shard = self._shard(key)
        with shard.lock:
            current = shard.sets.get(key)
            if current is None:
                return False
            if expected is not None:
                if current is not expected or not current.retire():
                    return False
            else:
                current.retire(only_if_empty=False)
            del shard.sets[key]
            return True

    def items(self) -> List[Tuple[str, DeviceSet]]:
        """Point-in-time copy of all (key, set) pairs."""
        result: List[Tuple[str, DeviceSet]] = []
        for shard in self._shards:
            with shard.lock:
                result.extend(shard.sets.items())
        return result

    def for_each(self, fn: Callable[[str, DeviceSet], None]) -> None:
        """Call *fn* for every known pair, outside all shard locks."""
        for key, device_set in self.items():
            fn(key, device_set)

    def keys(self) -> List[str]:
        return [key for key, _ in self.items()]

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        total = 0
        for shard in self._shards:
            with shard.lock:
                total += len(shard.sets)
        return total

    def instance_count(self) -> int:
        return sum(len(device_set) for _, device_set in self.items())

    # -- operations used by the HTTP layer --------------------------------

    def announce(self, address: str, name: str, url: str,
                 now: Optional[float] = None) -> Instance:
        """Register *url* under the network *address* belongs to.

        Raises InvalidAddress before any state is touched.
        """
        key = derive_network_key(address)
        instance = Instance(
            url=url,
            name=name,
            registered_at=self._clock() if now is None else now,
        )
        while not self.get_or_create(key).upsert(instance):
            # Lost a race with the sweeper removing this key; retry on a fresh set
            print(f"[registry] {key} was swept during announce, retrying", file=sys.stderr)
        return instance

    def list_instances(self, address: str) -> List[Instance]:
        """Snapshot of the instances on *address*'s network ([] if none)."""
        device_set = self.get(derive_network_key(address))
        if device_set is None:
            return []
        return device_set.snapshot()
