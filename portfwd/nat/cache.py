"""Process-wide registry of discovered NAT devices."""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from portfwd.nat.device import NatDevice
    from portfwd.nat.lifecycle import ShutdownHook

logger = logging.getLogger(__name__)

# Global cache instance
_device_cache: DeviceCache | None = None
_device_cache_lock = threading.Lock()


class DeviceCache:
    """Devices keyed by identity.

    Every method holds the lock for a dictionary operation only, so the cache
    may be used from the event loop, from other threads and from exit hooks.
    """

    def __init__(self) -> None:
        self._devices: dict[str, NatDevice] = {}
        self._lock = threading.RLock()
        # Shared by every discoverer over this cache
        self.shutdown_hook: ShutdownHook | None = None

    def add_or_touch(self, device: NatDevice) -> NatDevice:
        """Insert ``device`` or touch the entry already cached for its identity.

        Returns:
            The cached handle for the identity

        """
        key = device.identity
        with self._lock:
            cached = self._devices.get(key)
            if cached is None:
                self._devices[key] = device
                logger.debug("Cached new device %s", key)
                return device
            cached.touch()
        logger.debug("Touched cached device %s", key)
        return cached

    def get(self, identity: str) -> NatDevice | None:
        with self._lock:
            return self._devices.get(identity)

    def remove(self, identity: str) -> bool:
        with self._lock:
            return self._devices.pop(identity, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._devices.clear()

    def devices(self) -> list[NatDevice]:
        """Snapshot of the cached devices, in insertion order."""
        with self._lock:
            return list(self._devices.values())

    def __len__(self) -> int:
        with self._lock:
            return len(self._devices)

    def __contains__(self, identity: object) -> bool:
        with self._lock:
            return identity in self._devices


def get_device_cache() -> DeviceCache:
    """Get the process-wide device cache."""
    global _device_cache
    with _device_cache_lock:
        if _device_cache is None:
            _device_cache = DeviceCache()
        return _device_cache


def reset_device_cache() -> DeviceCache:
    """Replace the process-wide device cache with an empty one."""
    global _device_cache
    with _device_cache_lock:
        _device_cache = DeviceCache()
        return _device_cache
