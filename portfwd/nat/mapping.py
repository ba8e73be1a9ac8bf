"""Port mapping and lease model.

A ``Mapping`` is one port-forward rule on a gateway. Its ``Lease`` decides
how long the gateway should keep it:

- Permanent (0 seconds): kept until explicitly deleted.
- Session (sentinel maximum): kept while this process runs. Gateways cannot
  express that, so the rule is requested for a short window and the renewal
  loop keeps pushing it forward.
- Manual (any other value): kept for the given number of seconds.
"""

from __future__ import annotations

import ipaddress
import math
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import ClassVar, Union

# Session leases are emulated with this window (seconds), renewed by the
# renewal loop before it runs out.
SESSION_LEASE_WINDOW = 10 * 60

# Largest lease expressible on the wire; reserved to mean "session".
SESSION_SECONDS = 2**31 - 1

MIN_PORT = 0
MAX_PORT = 65535

DEFAULT_DESCRIPTION = "portfwd"

# "No address" marker (255.255.255.255).
NO_ADDRESS = ipaddress.IPv4Address("255.255.255.255")

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]


class Protocol(str, Enum):
    """Transport protocol of a mapping."""

    TCP = "TCP"
    UDP = "UDP"

    @classmethod
    def parse(cls, value: Protocol | str) -> Protocol:
        """Parse ``value`` (case-insensitive) into a Protocol."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.upper())
            except ValueError:
                pass
        msg = f"protocol must be TCP or UDP, got {value!r}"
        raise ValueError(msg)


class LeaseType(Enum):
    """Interpretation of a lease value."""

    PERMANENT = "permanent"
    SESSION = "session"
    MANUAL = "manual"


@dataclass(frozen=True)
class Lease:
    """Requested lifetime of a mapping, in whole seconds."""

    seconds: int

    PERMANENT: ClassVar[Lease]
    SESSION: ClassVar[Lease]

    def __post_init__(self) -> None:
        if isinstance(self.seconds, bool) or not isinstance(self.seconds, int):
            msg = f"lease seconds must be an int, got {self.seconds!r}"
            raise ValueError(msg)
        if not 0 <= self.seconds <= SESSION_SECONDS:
            msg = f"lease seconds must be within [0, {SESSION_SECONDS}], got {self.seconds}"
            raise ValueError(msg)

    @classmethod
    def from_duration(cls, duration: timedelta | float) -> Lease:
        """Create a manual lease from a duration.

        The duration is truncated to whole seconds.

        Raises:
            ValueError: If it is shorter than one second, or reaches the
                session sentinel.

        """
        total = (
            duration.total_seconds()
            if isinstance(duration, timedelta)
            else float(duration)
        )
        if not math.isfinite(total):
            msg = f"Lease duration must be finite, got {total}"
            raise ValueError(msg)
        seconds = int(total)
        if seconds <= 0:
            msg = "Lease must be at least one second (rounded down to whole seconds)"
            raise ValueError(msg)
        if seconds == SESSION_SECONDS:
            msg = "Lease duration equals the session sentinel; use Lease.SESSION"
            raise ValueError(msg)
        if seconds > SESSION_SECONDS:
            msg = f"Lease duration exceeds {SESSION_SECONDS} seconds"
            raise ValueError(msg)
        return cls(seconds)

    @property
    def lease_type(self) -> LeaseType:
        if self.seconds == 0:
            return LeaseType.PERMANENT
        if self.seconds == SESSION_SECONDS:
            return LeaseType.SESSION
        return LeaseType.MANUAL

    @property
    def is_permanent(self) -> bool:
        return self.lease_type is LeaseType.PERMANENT

    @property
    def is_session(self) -> bool:
        return self.lease_type is LeaseType.SESSION

    @property
    def is_manual(self) -> bool:
        return self.lease_type is LeaseType.MANUAL

    @property
    def wire_seconds(self) -> int:
        """Lease to request from the gateway."""
        if self.is_session:
            return SESSION_LEASE_WINDOW
        return self.seconds

    def __str__(self) -> str:
        if self.is_permanent:
            return "Permanent"
        if self.is_session:
            return "Session"
        return str(timedelta(seconds=self.seconds))


Lease.PERMANENT = Lease(0)
Lease.SESSION = Lease(SESSION_SECONDS)


def _check_port(value: int, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{name} must be an int, got {value!r}"
        raise ValueError(msg)
    if not MIN_PORT <= value <= MAX_PORT:
        msg = f"{name} must be within [{MIN_PORT}, {MAX_PORT}], got {value}"
        raise ValueError(msg)
    return value


def _parse_address(value: IPAddress | str | None, name: str) -> IPAddress:
    if value is None:
        msg = f"{name} is required"
        raise ValueError(msg)
    if isinstance(value, (ipaddress.IPv4Address, ipaddress.IPv6Address)):
        return value
    try:
        return ipaddress.ip_address(value)
    except ValueError as e:
        msg = f"{name} is not a valid IP address: {value!r}"
        raise ValueError(msg) from e


class Mapping:
    """A port forwarding entry in the gateway's translation table.

    Two mappings are equal when their public and private ports match; the
    protocol does not take part in equality, so a TCP and a UDP rule on the
    same port pair are the same entry for bookkeeping purposes.
    """

    def __init__(
        self,
        protocol: Protocol | str,
        private_port: int,
        public_port: int,
        lease: Lease = Lease.PERMANENT,
        description: str = DEFAULT_DESCRIPTION,
        private_ip: IPAddress | str | None = NO_ADDRESS,
    ) -> None:
        """Initialize a mapping.

        Args:
            protocol: TCP or UDP
            private_port: Port on this host the traffic is forwarded to
            public_port: Port on the gateway's WAN side
            lease: Requested lifetime
            description: Human readable text shown in router admin pages
            private_ip: Host address; ``NO_ADDRESS`` lets the device fill in
                the local address facing the gateway

        Raises:
            ValueError: If a port, the protocol or the address is invalid

        """
        self.protocol = Protocol.parse(protocol)
        self.private_port = _check_port(private_port, "private_port")
        self.public_port = _check_port(public_port, "public_port")
        self.private_ip: IPAddress = _parse_address(private_ip, "private_ip")
        self.public_ip: IPAddress = NO_ADDRESS
        self.description = description
        self.forced_session = False
        self._lease = Lease.PERMANENT
        self._expiration = time.time()
        self.lease = lease

    @property
    def lease(self) -> Lease:
        return self._lease

    @lease.setter
    def lease(self, value: Lease) -> None:
        if not isinstance(value, Lease):
            msg = f"lease must be a Lease, got {value!r}"
            raise ValueError(msg)
        now = time.time()
        self._lease = value
        if value.is_session:
            self._expiration = now + SESSION_LEASE_WINDOW
        elif value.is_permanent:
            self._expiration = now
        else:
            self._expiration = now + value.seconds

    @property
    def lease_type(self) -> LeaseType:
        return self._lease.lease_type

    @property
    def expiration(self) -> float:
        """Expiration as a POSIX timestamp."""
        return self._expiration

    @expiration.setter
    def expiration(self, value: float) -> None:
        self._lease = Lease.from_duration(value - time.time())
        self._expiration = value

    def is_expired(self) -> bool:
        """Whether the local bookkeeping considers this mapping expired.

        Permanent and forced-session mappings never expire.
        """
        return (
            self.lease_type is not LeaseType.PERMANENT
            and not self.forced_session
            and self._expiration < time.time()
        )

    def should_renew(self) -> bool:
        return self.lease_type is LeaseType.SESSION and self.is_expired()

    def copy(self) -> Mapping:
        clone = Mapping.__new__(Mapping)
        clone.__dict__.update(self.__dict__)
        return clone

    def __eq__(self, other: object) -> bool:
        if self is other:
            return True
        if not isinstance(other, Mapping):
            return NotImplemented
        return (
            self.public_port == other.public_port
            and self.private_port == other.private_port
        )

    def __hash__(self) -> int:
        return hash((self.public_port, self.private_port))

    def __repr__(self) -> str:
        return (
            f"Mapping(protocol={self.protocol.value!r}, "
            f"private_port={self.private_port}, public_port={self.public_port}, "
            f"lease={self._lease!s}, description={self.description!r})"
        )

    def __str__(self) -> str:
        return (
            f"{self.protocol.value} {self.public_port} --> "
            f"{self.private_ip}:{self.private_port} "
            f"({self.description} for {self._lease})"
        )
