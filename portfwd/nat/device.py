"""NAT device handle base class.

A device handle talks to one gateway. Besides the protocol operations each
subclass implements, the base class keeps track of the mappings opened
through it so they can be renewed and released later.
"""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time
from abc import ABC, abstractmethod

from portfwd.nat.exceptions import MappingError, NATError
from portfwd.nat.mapping import NO_ADDRESS, Lease, LeaseType, Mapping, Protocol

logger = logging.getLogger(__name__)


class NatDevice(ABC):
    """Client for one NAT gateway."""

    protocol_name: str = "nat"

    def __init__(self, local_address: ipaddress.IPv4Address | None = None) -> None:
        """Initialize device handle.

        Args:
            local_address: Address of this host on the gateway's network

        """
        self.local_address = local_address
        self.last_seen = time.time()
        self.logger = logging.getLogger(self.__class__.__module__)
        self._open_mappings: list[Mapping] = []
        self._lock: asyncio.Lock | None = None

    @property
    @abstractmethod
    def identity(self) -> str:
        """Stable cache key for this gateway."""

    @property
    def lock(self) -> asyncio.Lock:
        """Lock serialising mapping changes on this device."""
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def open_mappings(self) -> list[Mapping]:
        """Mappings opened through this handle."""
        return list(self._open_mappings)

    def touch(self) -> None:
        """Record that the device was seen again."""
        self.last_seen = time.time()

    # Protocol operations

    @abstractmethod
    async def get_external_ip(self) -> ipaddress.IPv4Address:
        """Query the gateway's external address."""

    @abstractmethod
    async def get_all_mappings(self) -> list[Mapping]:
        """Enumerate the mappings known to the gateway."""

    @abstractmethod
    async def _create_port_map(self, mapping: Mapping) -> None:
        """Send the protocol request creating ``mapping``.

        Raises:
            MappingError: If the gateway rejects the request

        """

    @abstractmethod
    async def _delete_port_map(self, protocol: Protocol, public_port: int) -> bool:
        """Send the protocol request deleting a mapping.

        Returns:
            False if the gateway reports there was no such mapping

        """

    async def get_specific_mapping(
        self, protocol: Protocol | str, public_port: int
    ) -> Mapping | None:
        """Find the mapping for ``protocol`` and ``public_port``, if any."""
        protocol = Protocol.parse(protocol)
        for mapping in await self.get_all_mappings():
            if mapping.protocol is protocol and mapping.public_port == public_port:
                return mapping
        return None

    # Lifecycle

    async def create_port_map(self, mapping: Mapping) -> bool:
        """Create ``mapping`` on the gateway and track it.

        Returns:
            True once the gateway accepted the mapping

        Raises:
            MappingError: If the gateway rejects the mapping

        """
        async with self.lock:
            return await self._create_and_register(mapping)

    async def _create_and_register(
        self, mapping: Mapping, replaces: Mapping | None = None
    ) -> bool:
        if mapping.private_ip == NO_ADDRESS and self.local_address is not None:
            mapping.private_ip = self.local_address
        try:
            await self._create_port_map(mapping)
        except MappingError:
            raise
        except NATError as e:
            msg = f"Error creating port mapping {mapping}: {e}"
            raise MappingError(msg, getattr(e, "error_code", None)) from e
        if replaces is not None:
            # The gateway may have granted a different public port.
            self._open_mappings = [m for m in self._open_mappings if m is not replaces]
        self._register_mapping(mapping)
        self.logger.info("%s port mapping created: %s", self.protocol_name, mapping)
        return True

    async def delete_port_map(self, protocol: Protocol | str, public_port: int) -> bool:
        """Delete the mapping for ``protocol`` and ``public_port``.

        Returns:
            False if the gateway had no such mapping

        """
        protocol = Protocol.parse(protocol)
        async with self.lock:
            return await self._delete_and_unregister(protocol, public_port)

    async def _delete_and_unregister(self, protocol: Protocol, public_port: int) -> bool:
        try:
            deleted = await self._delete_port_map(protocol, public_port)
        except MappingError:
            raise
        except NATError as e:
            msg = f"Error deleting {protocol.value} port mapping {public_port}: {e}"
            raise MappingError(msg, getattr(e, "error_code", None)) from e
        self._unregister_mapping(protocol, public_port)
        return deleted

    def _register_mapping(self, mapping: Mapping) -> None:
        # Equality ignores protocol, so this replaces any entry on the same port pair.
        self._open_mappings = [m for m in self._open_mappings if m != mapping]
        self._open_mappings.append(mapping)

    def _unregister_mapping(self, protocol: Protocol, public_port: int) -> None:
        self._open_mappings = [
            m
            for m in self._open_mappings
            if not (m.protocol is protocol and m.public_port == public_port)
        ]

    async def renew_mappings(self) -> bool:
        """Re-issue every Session mapping whose local window has passed.

        Failures are logged and swallowed.

        Returns:
            True if every due mapping was renewed

        """
        due = [m for m in self._open_mappings if m.should_renew()]
        ok = True
        for mapping in due:
            ok = await self._renew_mapping(mapping) and ok
        return ok

    async def _renew_mapping(self, mapping: Mapping) -> bool:
        try:
            async with self.lock:
                # Deleted or renewed while waiting for the lock.
                if not any(m is mapping for m in self._open_mappings):
                    return True
                if not mapping.should_renew():
                    return True
                renewed = mapping.copy()
                renewed.lease = Lease.SESSION
                self.logger.debug("Renewing mapping %s", renewed)
                await self._create_and_register(renewed, replaces=mapping)
        except Exception:
            self.logger.warning("Renew %s failed", mapping, exc_info=True)
            return False
        self.logger.debug(
            "Next renew scheduled at %s",
            time.strftime("%H:%M:%S", time.localtime(renewed.expiration)),
        )
        return True

    async def release_all(self) -> None:
        """Delete every mapping opened through this handle."""
        await self._release(list(self._open_mappings))

    async def release_session_mappings(self) -> None:
        """Delete the Session mappings opened through this handle."""
        await self._release(
            [m for m in self._open_mappings if m.lease_type is LeaseType.SESSION]
        )

    async def _release(self, mappings: list[Mapping]) -> None:
        for mapping in mappings:
            try:
                async with self.lock:
                    await self._delete_and_unregister(mapping.protocol, mapping.public_port)
                self.logger.debug("%s port successfully closed", mapping)
            except Exception:
                self.logger.exception("%s port couldn't be closed", mapping)

    def __str__(self) -> str:
        return self.identity

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}({self.identity!r})"
