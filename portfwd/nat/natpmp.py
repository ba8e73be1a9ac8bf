"""NAT-PMP (NAT Port Mapping Protocol) searcher and device handle per RFC 6886."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
import struct
from dataclasses import dataclass
from enum import IntEnum

from portfwd.nat.device import NatDevice
from portfwd.nat.exceptions import MappingError, NATPMPError
from portfwd.nat.mapping import SESSION_SECONDS, Mapping, Protocol
from portfwd.nat.searcher import CancellationScope, PortMapper, Searcher

logger = logging.getLogger(__name__)

# RFC 6886 constants
NAT_PMP_PORT = 5351
NAT_PMP_VERSION = 0
NAT_PMP_INITIAL_RETRY_DELAY = 0.25  # section 3.1: 250ms, doubling
NAT_PMP_MAX_RETRIES = 4
NAT_PMP_RESPONSE_OPCODE_OFFSET = 128

# Lifetime requested for Permanent mappings; 0 would delete them
NAT_PMP_PERMANENT_LIFETIME = SESSION_SECONDS


class NATPMPOpcode(IntEnum):
    """NAT-PMP opcodes from RFC 6886."""

    PUBLIC_ADDRESS_REQUEST = 0
    UDP_MAPPING_REQUEST = 1
    TCP_MAPPING_REQUEST = 2


class NATPMPResult(IntEnum):
    """NAT-PMP result codes from RFC 6886 section 3.5."""

    SUCCESS = 0
    UNSUPPORTED_VERSION = 1
    NOT_AUTHORIZED = 2  # e.g., gateway firewall disallows
    NETWORK_FAILURE = 3
    OUT_OF_RESOURCES = 4
    UNSUPPORTED_OPCODE = 5


@dataclass
class NATPMPPortMapping:
    """A mapping as granted by the gateway."""

    internal_port: int
    external_port: int
    lifetime: int  # seconds
    protocol: Protocol
    epoch: int = 0


def opcode_for(protocol: Protocol) -> NATPMPOpcode:
    if protocol is Protocol.TCP:
        return NATPMPOpcode.TCP_MAPPING_REQUEST
    return NATPMPOpcode.UDP_MAPPING_REQUEST


# Message encoding/decoding functions


def encode_public_address_request() -> bytes:
    """Encode public address request (RFC 6886 section 3.2)."""
    return struct.pack("!BB", NAT_PMP_VERSION, NATPMPOpcode.PUBLIC_ADDRESS_REQUEST)


def encode_port_mapping_request(
    internal_port: int,
    external_port: int,
    lifetime: int,
    protocol: Protocol | str,
) -> bytes:
    """Encode port mapping request (RFC 6886 section 3.3).

    Args:
        internal_port: Internal port
        external_port: Suggested external port (0 for automatic)
        lifetime: Requested lifetime in seconds (0 deletes the mapping)
        protocol: TCP or UDP

    Returns:
        Encoded NAT-PMP request message

    """
    opcode = opcode_for(Protocol.parse(protocol))
    # version(1), opcode(1), reserved(2), internal_port(2), external_port(2), lifetime(4)
    return struct.pack(
        "!BBHHHI",
        NAT_PMP_VERSION,
        opcode,
        0,  # reserved
        internal_port,
        external_port,
        lifetime,
    )


def _check_header(data: bytes, expected_opcode: NATPMPOpcode, min_length: int) -> int:
    if len(data) < min_length:
        msg = "Response too short"
        raise ValueError(msg)
    version, opcode, result = struct.unpack("!BBH", data[:4])
    if version != NAT_PMP_VERSION:
        msg = f"Unsupported NAT-PMP version {version}"
        raise ValueError(msg)
    if opcode != NAT_PMP_RESPONSE_OPCODE_OFFSET + expected_opcode:
        msg = f"Unexpected NAT-PMP opcode {opcode}"
        raise ValueError(msg)
    if result != NATPMPResult.SUCCESS:
        error_name = (
            NATPMPResult(result).name if result in range(6) else f"Unknown({result})"
        )
        msg = f"NAT-PMP error: {error_name}"
        raise NATPMPError(msg, result)
    return result


def decode_public_address_response(data: bytes) -> tuple[ipaddress.IPv4Address, int]:
    """Decode public address response (RFC 6886 section 3.2).

    Args:
        data: Response bytes

    Returns:
        Tuple of (external_ip, seconds_since_epoch)

    Raises:
        ValueError: If response is malformed
        NATPMPError: If NAT-PMP returned an error

    """
    _check_header(data, NATPMPOpcode.PUBLIC_ADDRESS_REQUEST, 12)
    seconds, ip_int = struct.unpack("!II", data[4:12])
    return ipaddress.IPv4Address(ip_int), seconds


def decode_port_mapping_response(data: bytes) -> NATPMPPortMapping:
    """Decode port mapping response (RFC 6886 section 3.3).

    Args:
        data: Response bytes

    Returns:
        NATPMPPortMapping object

    Raises:
        ValueError: If response is malformed
        NATPMPError: If NAT-PMP returned an error

    """
    if len(data) < 2:
        msg = "Response too short"
        raise ValueError(msg)
    opcode = data[1] - NAT_PMP_RESPONSE_OPCODE_OFFSET
    if opcode not in (NATPMPOpcode.UDP_MAPPING_REQUEST, NATPMPOpcode.TCP_MAPPING_REQUEST):
        msg = f"Unexpected NAT-PMP opcode {data[1]}"
        raise ValueError(msg)
    _check_header(data, NATPMPOpcode(opcode), 16)
    seconds, internal, external, lifetime = struct.unpack("!IHHI", data[4:16])
    protocol = Protocol.TCP if opcode == NATPMPOpcode.TCP_MAPPING_REQUEST else Protocol.UDP
    return NATPMPPortMapping(internal, external, lifetime, protocol, seconds)


def _open_socket(gateway: ipaddress.IPv4Address) -> socket.socket:
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        sock.setblocking(False)
        sock.connect((str(gateway), NAT_PMP_PORT))
    except OSError:
        sock.close()
        raise
    return sock


class PmpNatDevice(NatDevice):
    """NAT-PMP gateway at the default route."""

    protocol_name = "NAT-PMP"

    def __init__(
        self,
        gateway: ipaddress.IPv4Address,
        local_address: ipaddress.IPv4Address | None = None,
        public_address: ipaddress.IPv4Address | None = None,
        retries: int = NAT_PMP_MAX_RETRIES,
    ) -> None:
        """Initialize NAT-PMP device handle.

        Args:
            gateway: Gateway address answering on port 5351
            local_address: Address of this host on the gateway's network
            public_address: External address reported during discovery
            retries: Transmissions per request, with doubling delays

        """
        super().__init__(local_address)
        self.gateway = gateway
        self.public_address = public_address
        self.retries = retries

    @property
    def identity(self) -> str:
        return f"natpmp:{self.gateway}"

    async def _request(self, request: bytes) -> bytes:
        """Send ``request`` and wait for the answer, retransmitting per RFC 6886.

        Raises:
            NATPMPError: If the gateway never answered

        """
        loop = asyncio.get_running_loop()
        try:
            sock = _open_socket(self.gateway)
        except OSError as e:
            msg = f"Cannot reach NAT-PMP gateway {self.gateway}: {e}"
            raise NATPMPError(msg) from e
        try:
            delay = NAT_PMP_INITIAL_RETRY_DELAY
            for attempt in range(self.retries):
                try:
                    await loop.sock_sendall(sock, request)
                    return await asyncio.wait_for(loop.sock_recv(sock, 1024), delay)
                except asyncio.TimeoutError:
                    self.logger.debug(
                        "No NAT-PMP answer from %s (attempt %d/%d)",
                        self.gateway,
                        attempt + 1,
                        self.retries,
                    )
                    delay *= 2
                except OSError as e:
                    msg = f"Error talking to NAT-PMP gateway {self.gateway}: {e}"
                    raise NATPMPError(msg) from e
        finally:
            sock.close()
        msg = f"Timeout waiting for NAT-PMP gateway {self.gateway}"
        raise NATPMPError(msg)

    async def get_external_ip(self) -> ipaddress.IPv4Address:
        """Get external IP address (RFC 6886 section 3.2).

        Raises:
            NATPMPError: If unable to get external IP

        """
        response = await self._request(encode_public_address_request())
        try:
            external_ip, _epoch = decode_public_address_response(response)
        except ValueError as e:
            msg = f"Invalid public address response: {e}"
            raise NATPMPError(msg) from e
        self.public_address = external_ip
        return external_ip

    async def get_all_mappings(self) -> list[Mapping]:
        """Mappings opened through this handle; NAT-PMP cannot list the table."""
        return self.open_mappings

    async def _create_port_map(self, mapping: Mapping) -> None:
        if mapping.lease.is_permanent:
            lifetime = NAT_PMP_PERMANENT_LIFETIME
        else:
            lifetime = mapping.lease.wire_seconds
        granted = await self._map(
            mapping.protocol, mapping.private_port, mapping.public_port, lifetime
        )
        if granted.external_port != mapping.public_port:
            self.logger.info(
                "Gateway assigned public port %d instead of %d",
                granted.external_port,
                mapping.public_port,
            )
            mapping.public_port = granted.external_port
        if self.public_address is not None:
            mapping.public_ip = self.public_address

    async def _delete_port_map(self, protocol: Protocol, public_port: int) -> bool:
        private_port = public_port
        for mapping in self._open_mappings:
            if mapping.protocol is protocol and mapping.public_port == public_port:
                private_port = mapping.private_port
                break
        # Section 3.4: lifetime 0 and external port 0 delete the mapping
        await self._map(protocol, private_port, 0, 0)
        return True

    async def _map(
        self,
        protocol: Protocol,
        private_port: int,
        public_port: int,
        lifetime: int,
    ) -> NATPMPPortMapping:
        request = encode_port_mapping_request(private_port, public_port, lifetime, protocol)
        try:
            response = await self._request(request)
            granted = decode_port_mapping_response(response)
        except NATPMPError as e:
            msg = f"NAT-PMP {protocol.value} mapping of port {private_port} failed: {e}"
            raise MappingError(msg, e.result_code) from e
        except ValueError as e:
            msg = f"Invalid NAT-PMP mapping response: {e}"
            raise MappingError(msg) from e
        self.logger.debug(
            "Mapped %s port %s -> %s (lifetime: %s s)",
            protocol.value,
            granted.internal_port,
            granted.external_port,
            granted.lifetime,
        )
        return granted


class PmpSearcher(Searcher):
    """Finds NAT-PMP gateways by asking each default gateway for its public address."""

    port_mapper = PortMapper.PMP

    async def _search(self, scope: CancellationScope) -> None:
        gateways = await self.provider.gateway_addresses()
        if not gateways:
            self.logger.debug("No default gateway to probe for NAT-PMP")
            return
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        await asyncio.gather(*(self._probe(gateway, scope, deadline) for gateway in gateways))

    async def _probe(
        self,
        gateway: ipaddress.IPv4Address,
        scope: CancellationScope,
        deadline: float,
    ) -> None:
        loop = asyncio.get_running_loop()
        try:
            sock = _open_socket(gateway)
        except OSError as e:
            self.logger.debug("Cannot probe %s for NAT-PMP: %s", gateway, e)
            return

        request = encode_public_address_request()
        delay = NAT_PMP_INITIAL_RETRY_DELAY
        try:
            while not scope.cancelled:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await loop.sock_sendall(sock, request)
                    received = await self._receive(sock, scope, min(delay, remaining))
                except OSError as e:
                    # ICMP port unreachable: nothing listens on 5351
                    self.logger.debug("NAT-PMP probe of %s failed: %s", gateway, e)
                    return
                delay *= 2
                if received is None:
                    continue
                data, _addr = received
                try:
                    public_address, _epoch = decode_public_address_response(data)
                except (ValueError, NATPMPError) as e:
                    self.logger.debug("Bad NAT-PMP answer from %s: %s", gateway, e)
                    continue
                local_address = ipaddress.IPv4Address(sock.getsockname()[0])
                self._device_found(
                    PmpNatDevice(
                        gateway,
                        local_address=local_address,
                        public_address=public_address,
                    )
                )
                return
        finally:
            sock.close()
