"""Background eviction of expired announcements."""

import sys
import threading
import time
from typing import Optional

from .registry import DeviceSet, NetworkRegistry


DEFAULT_LIFETIME = 3600
DEFAULT_INTERVAL = 60


def _validate(lifetime: float, interval: float) -> None:
    if lifetime <= 0:
        raise ValueError(f"lifetime must be positive, got {lifetime}")
    if interval <= 0:
        raise ValueError(f"sweep interval must be positive, got {interval}")
    if interval >= lifetime:
        raise ValueError(
            f"sweep interval ({interval}s) must be shorter than the lifetime ({lifetime}s)"
        )


def sweep_once(registry: NetworkRegistry, lifetime: float,
               now: Optional[float] = None) -> int:
    """Purge expired instances and drop networks left empty.

    Returns the number of network keys removed.
    """
    if now is None:
        now = time.time()
    removed = 0

    def _sweep(key: str, device_set: DeviceSet) -> None:
        nonlocal removed
        if device_set.purge_expired(now, lifetime):
            # Re-checked under the set's lock; a concurrent announce wins
            if registry.remove(key, expected=device_set):
                removed += 1

    registry.for_each(_sweep)
    return removed


def run_sweeper(
    registry: NetworkRegistry,
    lifetime: float = DEFAULT_LIFETIME,
    interval: float = DEFAULT_INTERVAL,
    stop_event: Optional[threading.Event] = None,
) -> None:
    """Sweep every *interval* seconds until *stop_event* is set.

    Without a stop event this runs for the life of the process.
    """
    _validate(lifetime, interval)
    if stop_event is None:
        stop_event = threading.Event()

    while not stop_event.wait(interval):
        removed = sweep_once(registry, lifetime)
        if removed:
            print(
                f"[sweeper] removed {removed} empty network(s), {len(registry)} remaining",
                file=sys.stderr,
            )


def start_sweeper(
    registry: NetworkRegistry,
    lifetime: float = DEFAULT_LIFETIME,
    interval: float = DEFAULT_INTERVAL,
) -> tuple[threading.Thread, threading.Event]:
    """Run the sweep loop in a daemon thread. Set the returned event to stop it."""
    _validate(lifetime, interval)
    stop_event = threading.Event()
    thread = threading.Thread(
        target=run_sweeper,
        args=(registry, lifetime, interval, stop_event),
        name="lanbeacon-sweeper",
        daemon=True,
    )
    thread.start()
    return thread, stop_event
