"""NAT device discovery across UPnP and NAT-PMP."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from portfwd.logging_config import LoggingContext
from portfwd.nat.cache import DeviceCache, get_device_cache
from portfwd.nat.exceptions import NatDeviceNotFoundError
from portfwd.nat.lifecycle import (
    RenewalLoop,
    ShutdownHook,
    get_renewal_loop,
    release_all,
    release_session_mappings,
)
from portfwd.nat.searcher import (
    CancellationScope,
    PortMapper,
    Searcher,
    check_port_mapper,
)

if TYPE_CHECKING:  # pragma: no cover
    from portfwd.models import DiscoveryConfig
    from portfwd.nat.device import NatDevice

logger = logging.getLogger(__name__)

SearcherFactory = Callable[[], Searcher]

# Search order; also the order results are merged in
SEARCH_ORDER = (PortMapper.UPNP, PortMapper.PMP)


def _default_searchers(config: DiscoveryConfig) -> dict[PortMapper, SearcherFactory]:
    from portfwd.nat.interfaces import IPAddressesProvider
    from portfwd.nat.natpmp import PmpSearcher
    from portfwd.nat.upnp import UpnpSearcher

    provider = IPAddressesProvider()
    return {
        PortMapper.UPNP: lambda: UpnpSearcher(provider, timeout=config.upnp_search_timeout),
        PortMapper.PMP: lambda: PmpSearcher(provider, timeout=config.natpmp_search_timeout),
    }


def _shutdown_hook_for(cache: DeviceCache) -> ShutdownHook:
    if cache.shutdown_hook is None:
        cache.shutdown_hook = ShutdownHook(cache)
    return cache.shutdown_hook


class NatDiscoverer:
    """Discovers UPnP and NAT-PMP gateways.

    Every protocol requested is searched concurrently. Devices found are
    merged into the device cache, so rediscovering a gateway hands back the
    handle that already tracks its mappings.
    """

    def __init__(
        self,
        cache: DeviceCache | None = None,
        searchers: dict[PortMapper, SearcherFactory] | None = None,
        config: DiscoveryConfig | None = None,
        renewal: RenewalLoop | None = None,
        release_on_shutdown: bool | None = None,
    ) -> None:
        """Initialize discoverer.

        Args:
            cache: Device cache; defaults to the process-wide cache
            searchers: Searcher factory per protocol; defaults to the UPnP and
                NAT-PMP searchers
            config: Discovery settings; defaults to the global configuration
            renewal: Renewal loop started after discovery when
                ``config.auto_renew`` is set
            release_on_shutdown: Release session mappings in ``shutdown()``
                and at interpreter exit; defaults to the global configuration

        """
        if config is None:
            from portfwd.config import get_config

            config = get_config().discovery
        self.config = config
        self.cache = cache if cache is not None else get_device_cache()
        self._searchers = searchers if searchers is not None else _default_searchers(config)
        if renewal is None or release_on_shutdown is None:
            from portfwd.config import get_config

            renewal_config = get_config().renewal
            if release_on_shutdown is None:
                release_on_shutdown = renewal_config.release_on_shutdown
            if renewal is None:
                if cache is None:
                    renewal = get_renewal_loop()
                else:
                    renewal = RenewalLoop(
                        self.cache,
                        warmup=renewal_config.warmup_delay,
                        interval=renewal_config.interval,
                    )
        self.renewal = renewal
        self.release_on_shutdown = release_on_shutdown
        self.shutdown_hook = _shutdown_hook_for(self.cache)

    async def __aenter__(self) -> NatDiscoverer:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.shutdown()

    async def discover_device(
        self,
        port_mapper: PortMapper = PortMapper.ALL,
        timeout: float | None = None,
        cancel: CancellationScope | None = None,
    ) -> NatDevice:
        """Discover a single UPnP or NAT-PMP device.

        The first protocol to answer wins; the other searches are cancelled.

        Args:
            port_mapper: Protocols to search for
            timeout: Deadline in seconds; defaults to ``config.discovery_timeout``
            cancel: Caller scope; cancelling it ends the search

        Returns:
            The cached device handle

        Raises:
            ValueError: If ``port_mapper`` selects no protocol
            NatDeviceNotFoundError: If no device answered before the deadline
                or cancellation

        """
        check_port_mapper(port_mapper)
        if timeout is None:
            timeout = self.config.discovery_timeout
        devices = await self._discover(port_mapper, True, timeout, cancel)
        if not devices:
            logger.info("Device not found. Common reasons:")
            logger.info("\t* No device is present or,")
            logger.info("\t* Upnp is disabled in the router or")
            logger.info("\t* Antivirus software is filtering SSDP (discovery protocol).")
            raise NatDeviceNotFoundError(
                details={"port_mapper": port_mapper.name, "timeout": timeout}
            )
        return devices[0]

    async def discover_devices(
        self,
        port_mapper: PortMapper = PortMapper.ALL,
        timeout: float | None = None,
        cancel: CancellationScope | None = None,
    ) -> list[NatDevice]:
        """Discover every UPnP and NAT-PMP device answering before the deadline.

        Returns:
            Cached device handles; empty if none answered

        Raises:
            ValueError: If ``port_mapper`` selects no protocol

        """
        check_port_mapper(port_mapper)
        if timeout is None:
            timeout = self.config.discovery_timeout
        return await self._discover(port_mapper, False, timeout, cancel)

    async def _discover(
        self,
        port_mapper: PortMapper,
        only_one: bool,
        timeout: float,
        cancel: CancellationScope | None,
    ) -> list[NatDevice]:
        scope = CancellationScope(cancel)
        with LoggingContext("discovery", logger, port_mapper=port_mapper.name):
            try:
                scope.cancel_after(timeout)
                tasks = self._start_searches(port_mapper, only_one, scope)
                await self._wait_for_searches(tasks, scope)
            finally:
                scope.close()
            found = self._collect(tasks, scope)

        devices: list[NatDevice] = []
        seen: set[str] = set()
        for device in found:
            if device.identity in seen:
                continue
            seen.add(device.identity)
            devices.append(self.cache.add_or_touch(device))

        if devices:
            if self.config.auto_renew and self.renewal is not None:
                self.renewal.ensure_started()
            if self.release_on_shutdown:
                self.shutdown_hook.install()
        return devices

    def _start_searches(
        self,
        port_mapper: PortMapper,
        only_one: bool,
        scope: CancellationScope,
    ) -> list[asyncio.Task]:
        tasks: list[asyncio.Task] = []
        for protocol in SEARCH_ORDER:
            if not port_mapper & protocol:
                continue
            factory = self._searchers.get(protocol)
            if factory is None:
                logger.debug("No searcher registered for %s", protocol.name)
                continue
            searcher = factory()
            if only_one:
                searcher.add_device_found_handler(lambda _device: scope.cancel())
            tasks.append(
                asyncio.create_task(
                    searcher.search(scope), name=f"portfwd-search-{protocol.name.lower()}"
                )
            )
        return tasks

    async def _wait_for_searches(
        self,
        tasks: list[asyncio.Task],
        scope: CancellationScope,
    ) -> None:
        if not tasks:
            return
        pending: set[asyncio.Task] = set(tasks)
        waiter = asyncio.create_task(scope.wait())
        try:
            while pending and not scope.cancelled:
                done, _ = await asyncio.wait(
                    pending | {waiter}, return_when=asyncio.FIRST_COMPLETED
                )
                pending -= done
            # Searchers stop on their own once the scope is cancelled; the
            # ones that don't are aborted after the grace period.
            if pending:
                _done, pending = await asyncio.wait(
                    pending, timeout=self.config.shutdown_grace
                )
        except asyncio.CancelledError:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            waiter.cancel()
        for task in pending:
            logger.debug("Aborting unresponsive searcher %s", task.get_name())
            task.cancel()
        if pending:
            await asyncio.wait(pending)

    def _collect(
        self,
        tasks: list[asyncio.Task],
        scope: CancellationScope,
    ) -> list[NatDevice]:
        found: list[NatDevice] = []
        for task in tasks:
            if task.cancelled():
                if not scope.cancelled:
                    logger.debug("Search %s was cancelled", task.get_name())
                continue
            exc = task.exception()
            if exc is not None:
                logger.warning("Discovery issue: %s", exc, exc_info=exc)
                continue
            found.extend(task.result())
        return found

    async def release_all(self) -> None:
        """Release every mapping, permanent ones included, on every cached device."""
        await release_all(self.cache)

    async def release_session_mappings(self) -> None:
        """Release the session mappings on every cached device."""
        await release_session_mappings(self.cache)

    async def shutdown(self) -> None:
        """Stop renewing and release session mappings (once per cache)."""
        if self.renewal is not None:
            await self.renewal.stop()
        if self.release_on_shutdown:
            await self.shutdown_hook.run()
