"""Background renewal of session mappings and shutdown cleanup."""

from __future__ import annotations

import asyncio
import atexit
import contextlib
import logging
import threading
from collections.abc import Callable

from portfwd.logging_config import log_exception
from portfwd.nat.cache import DeviceCache, get_device_cache

logger = logging.getLogger(__name__)

DEFAULT_WARMUP_DELAY = 5.0
DEFAULT_RENEWAL_INTERVAL = 2.0

ErrorHook = Callable[[BaseException], None]

_renewal_loop: RenewalLoop | None = None
_renewal_loop_lock = threading.Lock()


class RenewalLoop:
    """Keeps session mappings alive on every cached device.

    After a warm-up delay the loop runs one cycle, sleeps ``interval`` and
    repeats. A cycle visits the cached devices one at a time, awaiting each
    device's renewal before moving to the next.
    """

    def __init__(
        self,
        cache: DeviceCache,
        warmup: float = DEFAULT_WARMUP_DELAY,
        interval: float = DEFAULT_RENEWAL_INTERVAL,
        on_error: ErrorHook | None = None,
    ) -> None:
        """Initialize renewal loop.

        Args:
            cache: Devices to renew
            warmup: Delay before the first cycle in seconds
            interval: Delay between cycles in seconds
            on_error: Called with any exception that aborts a cycle

        """
        self.cache = cache
        self.warmup = warmup
        self.interval = interval
        self.on_error = on_error
        self.cycles = 0
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> asyncio.Task:
        """Start the loop on the running event loop."""
        loop = asyncio.get_running_loop()
        if self.running and self._task is not None and self._task.get_loop() is loop:
            return self._task
        self._task = loop.create_task(self._run(), name="portfwd-renewal")
        logger.debug(
            "Renewal loop started (warmup %.1fs, interval %.1fs)",
            self.warmup,
            self.interval,
        )
        return self._task

    def ensure_started(self) -> asyncio.Task:
        """Start the loop unless it is already running on this event loop."""
        return self.start()

    async def stop(self) -> None:
        """Cancel the loop and wait for it to finish."""
        task, self._task = self._task, None
        if task is None or task.done():
            return
        if task.get_loop() is not asyncio.get_running_loop():
            task.cancel()
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.debug("Renewal loop stopped")

    async def _run(self) -> None:
        await asyncio.sleep(self.warmup)
        while True:
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log_exception(logger, e, "Renewal cycle failed")
                if self.on_error is not None:
                    try:
                        self.on_error(e)
                    except Exception:
                        logger.exception("Renewal error hook failed")
            await asyncio.sleep(self.interval)

    async def run_once(self) -> None:
        """Run one renewal cycle over a snapshot of the cache."""
        self.cycles += 1
        for device in self.cache.devices():
            await device.renew_mappings()


def get_renewal_loop() -> RenewalLoop:
    """Get the renewal loop bound to the process-wide device cache."""
    global _renewal_loop
    with _renewal_loop_lock:
        if _renewal_loop is None or _renewal_loop.cache is not get_device_cache():
            from portfwd.config import get_config

            renewal = get_config().renewal
            _renewal_loop = RenewalLoop(
                get_device_cache(),
                warmup=renewal.warmup_delay,
                interval=renewal.interval,
            )
        return _renewal_loop


async def release_all(cache: DeviceCache) -> None:
    """Release every mapping opened on every cached device."""
    for device in cache.devices():
        try:
            await device.release_all()
        except Exception:
            logger.exception("Failed to release mappings on %s", device.identity)


async def release_session_mappings(cache: DeviceCache) -> None:
    """Release the session mappings opened on every cached device."""
    for device in cache.devices():
        try:
            await device.release_session_mappings()
        except Exception:
            logger.exception("Failed to release session mappings on %s", device.identity)


class ShutdownHook:
    """Releases session mappings once, when the host application shuts down.

    Call ``run()`` from the application's own shutdown path. ``install()``
    adds an interpreter-exit fallback for applications that never do; it
    does not run on abnormal termination.
    """

    def __init__(self, cache: DeviceCache) -> None:
        self.cache = cache
        self._done = False
        self._done_lock = threading.Lock()
        self._installed = False

    @property
    def done(self) -> bool:
        return self._done

    def _claim(self) -> bool:
        with self._done_lock:
            if self._done:
                return False
            self._done = True
            return True

    async def run(self) -> bool:
        """Release session mappings on every cached device.

        Returns:
            False if the hook had already run

        """
        if not self._claim():
            return False
        logger.info("Releasing session mappings on %d device(s)", len(self.cache))
        await release_session_mappings(self.cache)
        return True

    def install(self) -> None:
        """Register the interpreter-exit fallback (once)."""
        if self._installed:
            return
        self._installed = True
        atexit.register(self._run_at_exit)

    def _run_at_exit(self) -> None:
        if self._done or not len(self.cache):
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            logger.debug("Event loop still running at exit, skipping session release")
            return
        try:
            asyncio.run(self.run())
        except Exception:
            logger.exception("Session mapping release at exit failed")
