"""Configuration models for portfwd."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field

from portfwd.nat.searcher import PortMapper


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class DiscoveryConfig(BaseModel):
    """NAT device discovery configuration."""

    enable_upnp: bool = Field(
        default=True,
        description="Enable UPnP IGD protocol",
    )
    enable_nat_pmp: bool = Field(
        default=True,
        description="Enable NAT-PMP protocol",
    )
    discovery_timeout: float = Field(
        default=3.0,
        ge=0.1,
        le=60.0,
        description="Default deadline for single-device discovery in seconds",
    )
    upnp_search_timeout: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="UPnP SSDP search timeout in seconds",
    )
    natpmp_search_timeout: float = Field(
        default=5.0,
        ge=0.1,
        le=60.0,
        description="NAT-PMP search timeout in seconds",
    )
    shutdown_grace: float = Field(
        default=1.0,
        ge=0.0,
        le=30.0,
        description="Time searchers get to stop after cancellation before being aborted",
    )
    auto_renew: bool = Field(
        default=True,
        description="Start the session mapping renewal loop after discovery",
    )
    mapping_description: str = Field(
        default="portfwd",
        description="Default description for mappings created from the CLI",
    )

    def port_mapper(self) -> PortMapper:
        """Protocols enabled by this configuration."""
        selected = PortMapper(0)
        if self.enable_upnp:
            selected |= PortMapper.UPNP
        if self.enable_nat_pmp:
            selected |= PortMapper.PMP
        if not selected:
            msg = "Both UPnP and NAT-PMP are disabled"
            raise ValueError(msg)
        return selected


class RenewalConfig(BaseModel):
    """Session mapping renewal configuration."""

    warmup_delay: float = Field(
        default=5.0,
        ge=0.0,
        le=3600.0,
        description="Delay before the first renewal cycle in seconds",
    )
    interval: float = Field(
        default=2.0,
        gt=0.0,
        le=600.0,
        description="Delay between renewal cycles in seconds",
    )
    release_on_shutdown: bool = Field(
        default=True,
        description="Release session mappings when the process shuts down",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False, description="Use structured (JSON) logging"
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main configuration."""

    discovery: DiscoveryConfig = Field(
        default_factory=DiscoveryConfig,
        description="Discovery configuration",
    )
    renewal: RenewalConfig = Field(
        default_factory=RenewalConfig,
        description="Renewal configuration",
    )
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
