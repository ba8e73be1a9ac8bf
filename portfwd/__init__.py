"""portfwd - NAT gateway discovery and port forwarding over UPnP and NAT-PMP."""

from __future__ import annotations

__version__ = "0.1.0"
