"""Local network interface enumeration for the searchers."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import platform
import socket

import psutil

logger = logging.getLogger(__name__)

ROUTE_COMMAND_TIMEOUT = 5.0


def parse_default_gateways(output: str) -> list[ipaddress.IPv4Address]:
    """Extract default gateway addresses from routing command output.

    Understands ``ip route show default`` ("default via 192.168.1.1 dev eth0"),
    ``route -n get default`` ("gateway: 192.168.1.1") and Windows
    ``route print 0.0.0.0`` tables.
    """
    gateways: list[ipaddress.IPv4Address] = []
    for line in output.splitlines():
        parts = line.split()
        candidates: list[str] = []
        for i, part in enumerate(parts):
            if part in ("via", "gateway:") and i + 1 < len(parts):
                candidates.append(parts[i + 1].split("/")[0])
        # Windows: "0.0.0.0  0.0.0.0  192.168.1.1  192.168.1.100  25"
        if len(parts) >= 3 and parts[0] == "0.0.0.0" and parts[1] == "0.0.0.0":  # nosec B104 - routing table parsing
            candidates.append(parts[2])
        for candidate in candidates:
            try:
                gateway = ipaddress.IPv4Address(candidate)
            except ValueError:
                continue
            if gateway not in gateways:
                gateways.append(gateway)
    return gateways


class IPAddressesProvider:
    """Supplies the local addresses and gateways searchers should use."""

    def unicast_addresses(self) -> list[ipaddress.IPv4Address]:
        """Non-loopback IPv4 addresses of the interfaces that are up."""
        addresses: list[ipaddress.IPv4Address] = []
        try:
            stats = psutil.net_if_stats()
            interfaces = psutil.net_if_addrs()
        except (OSError, RuntimeError) as e:
            logger.debug("Could not enumerate network interfaces: %s", e)
            return addresses

        for name, addrs in interfaces.items():
            stat = stats.get(name)
            if stat is not None and not stat.isup:
                continue
            for addr in addrs:
                if addr.family != socket.AF_INET:
                    continue
                try:
                    ip = ipaddress.IPv4Address(addr.address)
                except ValueError:
                    continue
                if ip.is_loopback or ip.is_link_local or ip in addresses:
                    continue
                addresses.append(ip)
        return addresses

    async def gateway_addresses(self) -> list[ipaddress.IPv4Address]:
        """Default gateways according to the routing table."""
        system = platform.system()
        if system == "Windows":
            commands = [["route", "print", "0.0.0.0"]]  # nosec B104 - routing table query, not bind
        else:
            commands = [
                ["ip", "route", "show", "default"],
                ["route", "-n", "get", "default"],
            ]

        for cmd in commands:
            output = await self._run(cmd)
            if output is None:
                continue
            gateways = parse_default_gateways(output)
            if gateways:
                logger.debug("Default gateways: %s", ", ".join(map(str, gateways)))
                return gateways
        logger.debug("No default gateway found")
        return []

    async def _run(self, cmd: list[str]) -> str | None:
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except (FileNotFoundError, PermissionError) as e:
            logger.debug("Cannot run %s: %s", cmd[0], e)
            return None
        try:
            stdout, _ = await asyncio.wait_for(proc.communicate(), ROUTE_COMMAND_TIMEOUT)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.debug("%s timed out", " ".join(cmd))
            return None
        if proc.returncode != 0:
            return None
        return stdout.decode("utf-8", errors="ignore")
