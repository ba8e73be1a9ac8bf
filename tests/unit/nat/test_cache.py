"""Unit tests for the device cache."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from portfwd.nat.cache import DeviceCache, get_device_cache, reset_device_cache

pytestmark = [pytest.mark.unit]


def test_add_new_device(cache, make_device):
    """Test a new identity is inserted and returned."""
    device = make_device("a")

    assert cache.add_or_touch(device) is device
    assert len(cache) == 1
    assert "fake:a" in cache
    assert cache.get("fake:a") is device


def test_rediscovery_returns_cached_handle(cache, make_device):
    """Test a second handle for the same identity yields the cached one, touched."""
    original = make_device("a")
    cache.add_or_touch(original)
    original.last_seen = 0

    result = cache.add_or_touch(make_device("a"))

    assert result is original
    assert original.last_seen > 0
    assert len(cache) == 1


def test_devices_snapshot(cache, make_device):
    """Test devices() is a copy in insertion order."""
    first, second = make_device("a"), make_device("b")
    cache.add_or_touch(first)
    cache.add_or_touch(second)

    snapshot = cache.devices()
    cache.add_or_touch(make_device("c"))

    assert snapshot == [first, second]
    assert len(cache.devices()) == 3


def test_remove_and_clear(cache, make_device):
    """Test entries can be removed one at a time or all at once."""
    cache.add_or_touch(make_device("a"))
    cache.add_or_touch(make_device("b"))

    assert cache.remove("fake:a") is True
    assert cache.remove("fake:a") is False
    assert cache.get("fake:a") is None

    cache.clear()

    assert len(cache) == 0


def test_concurrent_inserts_keep_one_entry(make_device):
    """Test racing inserts of one identity all get the same handle."""
    cache = DeviceCache()
    candidates = [make_device("same") for _ in range(50)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(cache.add_or_touch, candidates))

    assert len(cache) == 1
    assert all(result is results[0] for result in results)
    assert results[0] in candidates


def test_process_wide_cache():
    """Test the process-wide cache is shared until reset."""
    shared = get_device_cache()

    assert get_device_cache() is shared

    fresh = reset_device_cache()

    assert fresh is not shared
    assert get_device_cache() is fresh
