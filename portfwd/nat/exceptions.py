"""NAT traversal exceptions."""

from __future__ import annotations

from typing import Any

from portfwd.exceptions import PortForwardError


class NATError(PortForwardError):
    """Base exception for NAT traversal errors."""


class NatDeviceNotFoundError(NATError):
    """No NAT device answered before the discovery ended.

    Raised both when the search timed out and when there is genuinely no
    gateway; the two cases are not distinguishable.
    """

    def __init__(
        self,
        message: str = "NAT device not found",
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)


class MappingError(NATError):
    """The gateway rejected a port mapping request."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.error_code = error_code


class NATPMPError(NATError):
    """NAT-PMP specific error."""

    def __init__(
        self,
        message: str,
        result_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.result_code = result_code


class UPnPError(NATError):
    """UPnP specific error."""

    def __init__(
        self,
        message: str,
        error_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.error_code = error_code
