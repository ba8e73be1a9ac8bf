"""Fakes shared by the NAT unit tests."""

from __future__ import annotations

import asyncio
import ipaddress
from unittest.mock import MagicMock

import pytest

from portfwd.models import DiscoveryConfig
from portfwd.nat.cache import DeviceCache
from portfwd.nat.device import NatDevice
from portfwd.nat.discoverer import NatDiscoverer
from portfwd.nat.lifecycle import RenewalLoop
from portfwd.nat.mapping import Mapping, Protocol
from portfwd.nat.searcher import CancellationScope, PortMapper, Searcher


class FakeDevice(NatDevice):
    """In-memory gateway."""

    protocol_name = "fake"

    def __init__(
        self,
        name: str = "gw",
        local_address: str | None = "192.168.1.10",
        external_ip: str = "203.0.113.5",
    ) -> None:
        super().__init__(ipaddress.IPv4Address(local_address) if local_address else None)
        self.name = name
        self.external_ip = ipaddress.IPv4Address(external_ip)
        self.table: dict[tuple[Protocol, int], Mapping] = {}
        self.created: list[Mapping] = []
        self.deleted: list[tuple[Protocol, int]] = []
        self.fail_create: Exception | None = None
        self.fail_delete: Exception | None = None

    @property
    def identity(self) -> str:
        return f"fake:{self.name}"

    async def get_external_ip(self) -> ipaddress.IPv4Address:
        return self.external_ip

    async def get_all_mappings(self) -> list[Mapping]:
        return list(self.table.values())

    async def _create_port_map(self, mapping: Mapping) -> None:
        if self.fail_create is not None:
            raise self.fail_create
        self.created.append(mapping)
        self.table[(mapping.protocol, mapping.public_port)] = mapping

    async def _delete_port_map(self, protocol: Protocol, public_port: int) -> bool:
        if self.fail_delete is not None:
            raise self.fail_delete
        self.deleted.append((protocol, public_port))
        return self.table.pop((protocol, public_port), None) is not None


class FakeSearcher(Searcher):
    """Reports ``devices`` after ``delay`` unless the scope is cancelled first."""

    port_mapper = PortMapper.UPNP

    def __init__(
        self,
        port_mapper: PortMapper = PortMapper.UPNP,
        devices: list[NatDevice] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
        ignore_cancel: bool = False,
    ) -> None:
        super().__init__(provider=MagicMock(), timeout=5.0)
        self.port_mapper = port_mapper
        self.devices = devices or []
        self.delay = delay
        self.error = error
        self.ignore_cancel = ignore_cancel
        self.started_at: float | None = None
        self.observed_cancel_at: float | None = None

    async def _search(self, scope: CancellationScope) -> None:
        loop = asyncio.get_running_loop()
        self.started_at = loop.time()
        if self.ignore_cancel:
            await asyncio.sleep(self.delay)
        elif await scope.sleep(self.delay):
            self.observed_cancel_at = loop.time()
            return
        if self.error is not None:
            raise self.error
        for device in self.devices:
            self._device_found(device)


@pytest.fixture
def cache():
    """Fresh device cache."""
    return DeviceCache()


@pytest.fixture
def make_device():
    """Factory for fake devices."""
    return FakeDevice


@pytest.fixture
def make_searcher():
    """Factory for fake searchers."""
    return FakeSearcher


@pytest.fixture
def make_discoverer(cache):
    """Factory for discoverers over fake searchers and an isolated cache."""

    def _make(
        searchers: dict[PortMapper, object],
        release_on_shutdown: bool = False,
        **config_overrides,
    ) -> NatDiscoverer:
        options = {"auto_renew": False, "shutdown_grace": 0.2}
        options.update(config_overrides)
        return NatDiscoverer(
            cache=cache,
            searchers=searchers,
            config=DiscoveryConfig(**options),
            renewal=RenewalLoop(cache, warmup=0.0, interval=0.01),
            release_on_shutdown=release_on_shutdown,
        )

    return _make
