"""Unit tests for mapping renewal and shutdown cleanup."""

from __future__ import annotations

import asyncio
import time
from unittest.mock import AsyncMock, patch

import pytest

from portfwd.nat import lifecycle
from portfwd.nat.cache import get_device_cache
from portfwd.nat.lifecycle import RenewalLoop, ShutdownHook, get_renewal_loop
from portfwd.nat.mapping import Lease, Mapping, Protocol

pytestmark = [pytest.mark.unit]


async def _open(device, private, public, lease):
    mapping = Mapping(Protocol.TCP, private, public, lease)
    await device.create_port_map(mapping)
    return mapping


class TestRenewalLoop:
    """Periodic renewal of session mappings."""

    @pytest.mark.asyncio
    async def test_run_once_visits_every_device(self, cache, make_device):
        """Test one cycle renews due mappings on every cached device."""
        devices = [make_device("a"), make_device("b")]
        for device in devices:
            cache.add_or_touch(device)
            mapping = await _open(device, 1601, 1701, Lease.SESSION)
            mapping._expiration = time.time() - 1  # noqa: SLF001
        loop = RenewalLoop(cache, warmup=0.0, interval=10.0)

        await loop.run_once()

        assert loop.cycles == 1
        for device in devices:
            assert len(device.created) == 2

    @pytest.mark.asyncio
    async def test_fresh_mappings_untouched(self, cache, make_device):
        """Test a cycle leaves mappings that are not due alone."""
        device = make_device()
        cache.add_or_touch(device)
        await _open(device, 1601, 1701, Lease.SESSION)

        await RenewalLoop(cache).run_once()

        assert len(device.created) == 1

    @pytest.mark.asyncio
    async def test_loop_keeps_running(self, cache):
        """Test the loop runs cycles until stopped."""
        loop = RenewalLoop(cache, warmup=0.0, interval=0.01)

        loop.start()
        await asyncio.sleep(0.1)

        assert loop.running
        assert loop.cycles >= 2

        await loop.stop()

        assert not loop.running
        cycles = loop.cycles
        await asyncio.sleep(0.05)
        assert loop.cycles == cycles

    @pytest.mark.asyncio
    async def test_warmup_delays_first_cycle(self, cache):
        """Test nothing runs before the warm-up delay."""
        loop = RenewalLoop(cache, warmup=5.0, interval=0.01)

        loop.start()
        await asyncio.sleep(0.05)

        assert loop.cycles == 0
        await loop.stop()

    @pytest.mark.asyncio
    async def test_start_idempotent(self, cache):
        """Test starting twice keeps a single task."""
        loop = RenewalLoop(cache, warmup=5.0)

        first = loop.start()
        second = loop.ensure_started()

        assert first is second
        await loop.stop()

    @pytest.mark.asyncio
    async def test_stop_when_not_started(self, cache):
        """Test stop() on an idle loop is a no-op."""
        loop = RenewalLoop(cache)

        await loop.stop()

        assert not loop.running

    @pytest.mark.asyncio
    async def test_cycle_error_reported_and_loop_survives(self, cache):
        """Test a failing cycle reaches the error hook and the next cycle still runs."""
        errors = []
        loop = RenewalLoop(cache, warmup=0.0, interval=0.01, on_error=errors.append)
        boom = RuntimeError("cache exploded")
        calls = []

        def devices():
            calls.append(1)
            if len(calls) == 1:
                raise boom
            return []

        with patch.object(cache, "devices", side_effect=devices):
            loop.start()
            await asyncio.sleep(0.05)
            await loop.stop()

        assert errors[0] is boom
        assert loop.cycles >= 2

    @pytest.mark.asyncio
    async def test_failing_error_hook_contained(self, cache):
        """Test a failing error hook does not kill the loop."""

        def broken(_error):
            raise ValueError("hook failed")

        loop = RenewalLoop(cache, warmup=0.0, interval=0.01, on_error=broken)

        with patch.object(cache, "devices", side_effect=RuntimeError("boom")):
            loop.start()
            await asyncio.sleep(0.05)

            assert loop.running
            await loop.stop()

    def test_process_wide_loop(self):
        """Test the process-wide loop follows the process-wide cache."""
        renewal = get_renewal_loop()

        assert renewal is get_renewal_loop()
        assert renewal.cache is get_device_cache()
        assert renewal.warmup == 5.0
        assert renewal.interval == 2.0


class TestRelease:
    """Module-level release helpers."""

    @pytest.mark.asyncio
    async def test_release_session_mappings(self, cache, make_device):
        """Test only session mappings are released across devices."""
        device = make_device()
        cache.add_or_touch(device)
        await _open(device, 1601, 1701, Lease.SESSION)
        await _open(device, 1602, 1702, Lease.PERMANENT)

        await lifecycle.release_session_mappings(cache)

        assert device.deleted == [(Protocol.TCP, 1701)]

    @pytest.mark.asyncio
    async def test_device_failure_does_not_stop_release(self, cache, make_device):
        """Test a device raising during release does not stop the others."""
        broken, healthy = make_device("a"), make_device("b")
        cache.add_or_touch(broken)
        cache.add_or_touch(healthy)
        await _open(healthy, 1601, 1701, Lease.SESSION)
        broken.release_all = AsyncMock(side_effect=RuntimeError("down"))

        await lifecycle.release_all(cache)

        assert healthy.deleted == [(Protocol.TCP, 1701)]


class TestShutdownHook:
    """Once-only release at shutdown."""

    @pytest.mark.asyncio
    async def test_runs_once(self, cache, make_device):
        """Test the hook releases session mappings only on its first run."""
        device = make_device()
        cache.add_or_touch(device)
        await _open(device, 1601, 1701, Lease.SESSION)
        await _open(device, 1602, 1702, Lease.from_duration(20))
        hook = ShutdownHook(cache)

        assert await hook.run() is True
        await _open(device, 1603, 1703, Lease.SESSION)
        assert await hook.run() is False

        assert device.deleted == [(Protocol.TCP, 1701)]
        assert hook.done

    @pytest.mark.asyncio
    async def test_concurrent_runs_release_once(self, cache, make_device):
        """Test racing runs release each mapping only once."""
        device = make_device()
        cache.add_or_touch(device)
        await _open(device, 1601, 1701, Lease.SESSION)
        hook = ShutdownHook(cache)

        results = await asyncio.gather(hook.run(), hook.run(), hook.run())

        assert sorted(results) == [False, False, True]
        assert device.deleted == [(Protocol.TCP, 1701)]

    def test_install_registers_once(self, cache):
        """Test install() registers a single interpreter-exit callback."""
        hook = ShutdownHook(cache)

        with patch("portfwd.nat.lifecycle.atexit.register") as register:
            hook.install()
            hook.install()

        register.assert_called_once_with(hook._run_at_exit)  # noqa: SLF001

    def test_run_at_exit_releases(self, cache, make_device):
        """Test the exit fallback releases session mappings without a running loop."""
        device = make_device()
        cache.add_or_touch(device)
        mapping = Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION)
        device._register_mapping(mapping)  # noqa: SLF001
        device.table[(Protocol.TCP, 1701)] = mapping
        hook = ShutdownHook(cache)

        hook._run_at_exit()  # noqa: SLF001

        assert device.deleted == [(Protocol.TCP, 1701)]
        assert hook.done

    def test_run_at_exit_after_run_is_noop(self, cache, make_device):
        """Test the exit fallback does nothing once the hook has run."""
        device = make_device()
        cache.add_or_touch(device)
        hook = ShutdownHook(cache)
        hook._claim()  # noqa: SLF001

        hook._run_at_exit()  # noqa: SLF001

        assert device.deleted == []

    @pytest.mark.asyncio
    async def test_run_at_exit_skipped_inside_event_loop(self, cache, make_device):
        """Test the exit fallback does not start a nested event loop."""
        device = make_device()
        cache.add_or_touch(device)
        hook = ShutdownHook(cache)

        hook._run_at_exit()  # noqa: SLF001

        assert not hook.done
