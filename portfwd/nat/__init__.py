"""NAT traversal module for automatic port forwarding.

Discovers NAT-PMP (RFC 6886) and UPnP IGD gateways and manages the
port mappings opened on them, renewing session mappings in the background.
"""

from portfwd.nat.cache import DeviceCache, get_device_cache
from portfwd.nat.device import NatDevice
from portfwd.nat.discoverer import NatDiscoverer
from portfwd.nat.exceptions import (
    MappingError,
    NatDeviceNotFoundError,
    NATError,
    NATPMPError,
    UPnPError,
)
from portfwd.nat.lifecycle import RenewalLoop, ShutdownHook
from portfwd.nat.mapping import Lease, LeaseType, Mapping, Protocol
from portfwd.nat.searcher import CancellationScope, PortMapper, Searcher

__all__ = [
    "CancellationScope",
    "DeviceCache",
    "Lease",
    "LeaseType",
    "Mapping",
    "MappingError",
    "NATError",
    "NATPMPError",
    "NatDevice",
    "NatDeviceNotFoundError",
    "NatDiscoverer",
    "PortMapper",
    "Protocol",
    "RenewalLoop",
    "Searcher",
    "ShutdownHook",
    "UPnPError",
    "get_device_cache",
]
