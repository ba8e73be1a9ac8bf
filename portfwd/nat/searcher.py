"""Searcher contract, protocol selector and cancellation scope."""

from __future__ import annotations

import asyncio
import logging
import socket
from abc import ABC, abstractmethod
from collections.abc import Callable
from enum import IntFlag
from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from portfwd.nat.device import NatDevice
    from portfwd.nat.interfaces import IPAddressesProvider

logger = logging.getLogger(__name__)

DeviceFoundHandler = Callable[["NatDevice"], None]


class PortMapper(IntFlag):
    """Port mapping protocols to search for."""

    UPNP = 1
    PMP = 2
    ALL = UPNP | PMP

    @classmethod
    def parse(cls, value: str) -> PortMapper:
        """Parse ``"upnp"``, ``"pmp"``/``"natpmp"`` or ``"all"``."""
        names = {
            "upnp": cls.UPNP,
            "pmp": cls.PMP,
            "natpmp": cls.PMP,
            "nat-pmp": cls.PMP,
            "all": cls.ALL,
        }
        try:
            return names[value.strip().lower()]
        except KeyError:
            msg = f"Unknown port mapper: {value!r}"
            raise ValueError(msg) from None


def check_port_mapper(port_mapper: PortMapper) -> PortMapper:
    """Ensure at least one protocol bit is set."""
    if not (port_mapper & PortMapper.UPNP or port_mapper & PortMapper.PMP):
        msg = "port_mapper must include PortMapper.UPNP and/or PortMapper.PMP"
        raise ValueError(msg)
    return port_mapper


class CancellationScope:
    """Cancellation token shared by every searcher of one discovery call.

    The first ``cancel()`` wins; later calls are no-ops. A scope may be linked
    to a parent scope and is cancelled whenever the parent is.
    """

    def __init__(self, parent: CancellationScope | None = None) -> None:
        self._event = asyncio.Event()
        self._timer: asyncio.TimerHandle | None = None
        self._children: list[CancellationScope] = []
        self._parent: CancellationScope | None = None
        if parent is not None:
            self.link(parent)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Cancel the scope.

        Returns:
            True if this call performed the cancellation, False if the scope
            was already cancelled

        """
        if self._event.is_set():
            return False
        self._event.set()
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        for child in list(self._children):
            child.cancel()
        return True

    def cancel_after(self, delay: float | None) -> None:
        """Cancel the scope ``delay`` seconds from now (None disarms)."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if delay is None or self.cancelled:
            return
        if delay <= 0:
            self.cancel()
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(delay, self.cancel)

    def link(self, parent: CancellationScope) -> None:
        """Cancel this scope whenever ``parent`` is cancelled."""
        self._parent = parent
        if parent.cancelled:
            self.cancel()
            return
        parent._children.append(self)  # noqa: SLF001

    def close(self) -> None:
        """Disarm the deadline and detach from the parent scope."""
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        if self._parent is not None:
            try:
                self._parent._children.remove(self)  # noqa: SLF001
            except ValueError:
                pass
            self._parent = None

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or ``timeout`` elapses.

        Returns:
            True if the scope is cancelled

        """
        if self.cancelled:
            return True
        if timeout is not None and timeout <= 0:
            return False
        try:
            await asyncio.wait_for(self._event.wait(), timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def sleep(self, delay: float) -> bool:
        """Sleep for ``delay`` seconds, waking early on cancellation.

        Returns:
            True if the scope was cancelled while sleeping

        """
        return await self.wait(delay)


class Searcher(ABC):
    """Protocol-specific discovery process.

    A searcher runs until its scope is cancelled or its own timeout expires,
    raising ``device_found`` for every new device as soon as it is found.
    Observing cancellation is a normal way to finish: ``search`` then returns
    what it found so far.
    """

    port_mapper: PortMapper

    def __init__(
        self,
        provider: IPAddressesProvider | None = None,
        timeout: float = 5.0,
    ) -> None:
        """Initialize searcher.

        Args:
            provider: Local interface enumerator; one is created on demand
            timeout: Protocol-specific search timeout in seconds

        """
        self._provider = provider
        self.timeout = timeout
        self.logger = logging.getLogger(self.__class__.__module__)
        self._handlers: list[DeviceFoundHandler] = []
        self._found: dict[str, NatDevice] = {}

    @property
    def provider(self) -> IPAddressesProvider:
        if self._provider is None:
            from portfwd.nat.interfaces import IPAddressesProvider

            self._provider = IPAddressesProvider()
        return self._provider

    def add_device_found_handler(self, handler: DeviceFoundHandler) -> None:
        self._handlers.append(handler)

    def remove_device_found_handler(self, handler: DeviceFoundHandler) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def _device_found(self, device: NatDevice) -> bool:
        """Record ``device`` and notify handlers.

        Returns:
            False if a device with the same identity was already found

        """
        if device.identity in self._found:
            return False
        self._found[device.identity] = device
        self.logger.info("%s device found: %s", self.port_mapper.name, device.identity)
        for handler in list(self._handlers):
            try:
                handler(device)
            except Exception:
                self.logger.exception("device_found handler failed")
        return True

    async def search(self, scope: CancellationScope) -> list[NatDevice]:
        """Search for devices until ``scope`` is cancelled or the timeout expires."""
        self._found = {}
        self.logger.debug(
            "Searching for %s devices (timeout %.1fs)", self.port_mapper.name, self.timeout
        )
        await self._search(scope)
        return list(self._found.values())

    @abstractmethod
    async def _search(self, scope: CancellationScope) -> None:
        """Protocol search body; report devices via ``_device_found``."""

    async def _receive(
        self,
        sock: socket.socket,
        scope: CancellationScope,
        timeout: float,
        bufsize: int = 4096,
    ) -> tuple[bytes, tuple] | None:
        """Receive one datagram from a non-blocking socket.

        Returns:
            ``(data, address)``, or None if ``timeout`` elapsed or the scope
            was cancelled first

        """
        if scope.cancelled or timeout <= 0:
            return None
        loop = asyncio.get_running_loop()
        recv = loop.create_task(loop.sock_recvfrom(sock, bufsize))
        cancelled = loop.create_task(scope.wait())
        try:
            done, _ = await asyncio.wait(
                {recv, cancelled},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            for task in (recv, cancelled):
                task.cancel()
            await asyncio.wait({recv, cancelled})
        if recv in done:
            return recv.result()
        return None
