"""UPnP IGD (Internet Gateway Device) searcher and device handle."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import socket
from urllib.parse import urljoin

import aiohttp
import defusedxml.ElementTree as ET  # noqa: N817

from portfwd.nat.device import NatDevice
from portfwd.nat.exceptions import MappingError, UPnPError
from portfwd.nat.mapping import (
    NO_ADDRESS,
    SESSION_SECONDS,
    Lease,
    Mapping,
    Protocol,
)
from portfwd.nat.searcher import CancellationScope, PortMapper, Searcher

logger = logging.getLogger(__name__)

# SSDP constants
SSDP_MULTICAST_IP = "239.255.255.250"
SSDP_MULTICAST_PORT = 1900
SSDP_MX = 3
SSDP_RESEND_INTERVAL = 1.0
SSDP_MSEARCH_RETRIES = 3

# UPnP IGD service constants
UPNP_IGD_SERVICE_TYPE = "urn:schemas-upnp-org:service:WANIPConnection:1"
UPNP_PPP_SERVICE_TYPE = "urn:schemas-upnp-org:service:WANPPPConnection:1"
UPNP_IGD_DEVICE_TYPE = "urn:schemas-upnp-org:device:InternetGatewayDevice:1"

SEARCH_TARGETS = (
    UPNP_IGD_SERVICE_TYPE,
    UPNP_IGD_DEVICE_TYPE,
    "ssdp:all",
)

HTTP_TIMEOUT = 10.0

# UPnP error codes
ERROR_INVALID_ARGS = 402
ERROR_SPECIFIED_ARRAY_INDEX_INVALID = 713
ERROR_NO_SUCH_ENTRY_IN_ARRAY = 714
ERROR_CONFLICT_IN_MAPPING_ENTRY = 718
ERROR_ONLY_PERMANENT_LEASES_SUPPORTED = 725

ERROR_HINTS = {
    402: "Invalid Args - Check parameter formats",
    501: "Action Failed - Router rejected the request",
    713: "SpecifiedArrayIndexInvalid - No more port mappings",
    714: "NoSuchEntryInArray - Port mapping not found",
    715: "WildCardNotPermittedInSrcIP - Invalid remote host parameter",
    716: "WildCardNotPermittedInExtPort - Invalid external port",
    718: "ConflictInMappingEntry - Port mapping conflict (port may be in use)",
    724: "SamePortValuesRequired - Internal and external ports must match for this router",
    725: "OnlyPermanentLeasesSupported - Router only supports permanent mappings",
    726: "RemoteHostOnlySupportsWildcard - Remote host must be empty",
}

_SOAP_NS = {"soap": "http://schemas.xmlsoap.org/soap/envelope/"}
_DEVICE_NS = {"device": "urn:schemas-upnp-org:device-1-0"}
_CONTROL_NS = {"upnp": "urn:schemas-upnp-org:control-1-0"}


def build_msearch_request(search_target: str | None = None) -> bytes:
    """Build SSDP M-SEARCH request (UPnP Device Architecture 1.1).

    Args:
        search_target: ST (Search Target) header value. If None, uses UPNP_IGD_SERVICE_TYPE.

    Returns:
        M-SEARCH request bytes

    """
    if search_target is None:
        search_target = UPNP_IGD_SERVICE_TYPE

    msg = (
        f"M-SEARCH * HTTP/1.1\r\n"
        f"HOST: {SSDP_MULTICAST_IP}:{SSDP_MULTICAST_PORT}\r\n"
        'MAN: "ssdp:discover"\r\n'
        f"MX: {SSDP_MX}\r\n"
        f"ST: {search_target}\r\n"
        "\r\n"
    )
    return msg.encode("utf-8")


def parse_ssdp_response(response: bytes) -> dict[str, str]:
    """Parse SSDP response headers.

    Args:
        response: SSDP response bytes

    Returns:
        Dictionary of header fields, keys lower-cased

    """
    headers: dict[str, str] = {}
    lines = response.decode("utf-8", errors="ignore").split("\r\n")
    for line in lines[1:]:  # Skip status line
        if ":" in line:
            key, value = line.split(":", 1)
            headers[key.strip().lower()] = value.strip()
    return headers


def is_gateway_response(headers: dict[str, str]) -> bool:
    """Whether SSDP response headers announce an internet gateway."""
    st = headers.get("st", "")
    nt = headers.get("nt", "")
    return any(
        marker in value
        for value in (st, nt)
        for marker in ("InternetGatewayDevice", "WANIPConnection", "WANPPPConnection")
    )


async def fetch_device_description(
    location_url: str,
    timeout: float = HTTP_TIMEOUT,
) -> dict[str, str]:
    """Fetch and parse a UPnP device description.

    Args:
        location_url: Device description URL (the SSDP LOCATION header)
        timeout: HTTP timeout in seconds

    Returns:
        ``control_url`` and ``service_type`` of the WAN connection service,
        plus ``friendly_name`` when the description has one

    Raises:
        UPnPError: If unable to fetch or parse device description

    """
    try:
        async with aiohttp.ClientSession() as session, session.get(
            location_url, timeout=aiohttp.ClientTimeout(total=timeout)
        ) as response:
            if response.status != 200:
                msg = f"Failed to fetch device description: HTTP {response.status}"
                raise UPnPError(msg)
            xml_content = await response.text()
    except asyncio.TimeoutError as e:
        msg = f"Timeout fetching device description from {location_url}"
        raise UPnPError(msg) from e
    except aiohttp.ClientError as e:
        msg = f"Network error fetching device description: {e}"
        raise UPnPError(msg) from e

    return parse_device_description(xml_content, location_url)


def parse_device_description(xml_content: str, location_url: str) -> dict[str, str]:
    """Extract the WAN connection service from device description XML.

    WANIPConnection is preferred over WANPPPConnection. Relative control URLs
    are resolved against ``location_url`` (or the description's URLBase).

    Raises:
        UPnPError: If the XML is invalid or has no WAN connection service

    """
    try:
        root = ET.fromstring(xml_content)  # nosec B314 - defusedxml.ElementTree.fromstring
    except ET.ParseError as e:
        msg = f"Failed to parse device description XML: {e}"
        raise UPnPError(msg) from e

    base_url = location_url
    url_base = root.find("device:URLBase", _DEVICE_NS)
    if url_base is not None and url_base.text:
        base_url = url_base.text.strip()

    candidates: dict[str, dict[str, str]] = {}
    for service in root.findall(".//device:service", _DEVICE_NS):
        service_type_elem = service.find("device:serviceType", _DEVICE_NS)
        control_url_elem = service.find("device:controlURL", _DEVICE_NS)
        if service_type_elem is None or control_url_elem is None:
            continue
        service_type = (service_type_elem.text or "").strip()
        control_url = (control_url_elem.text or "").strip()
        if not control_url:
            continue
        for kind in ("WANIPConnection", "WANPPPConnection"):
            if kind in service_type and kind not in candidates:
                candidates[kind] = {
                    "control_url": urljoin(base_url, control_url),
                    "service_type": service_type,
                }

    service_info = candidates.get("WANIPConnection") or candidates.get("WANPPPConnection")
    if not service_info:
        msg = "No WANIPConnection or WANPPPConnection service found in device description"
        raise UPnPError(msg)

    friendly_name = root.find(".//device:friendlyName", _DEVICE_NS)
    if friendly_name is not None and friendly_name.text:
        service_info["friendly_name"] = friendly_name.text.strip()
    return service_info


def build_soap_action(
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
) -> str:
    """Build SOAP action request body.

    Args:
        action_name: SOAP action name (e.g., "AddPortMapping")
        service_type: UPnP service type
        parameters: Action parameters

    Returns:
        SOAP request XML string

    """
    param_xml = "\n".join(
        f"    <{key}>{_escape(value)}</{key}>" for key, value in parameters.items()
    )

    return f"""<?xml version="1.0"?>
<s:Envelope xmlns:s="http://schemas.xmlsoap.org/soap/envelope/"
            s:encodingStyle="http://schemas.xmlsoap.org/soap/encoding/">
  <s:Body>
    <u:{action_name} xmlns:u="{service_type}">
{param_xml}
    </u:{action_name}>
  </s:Body>
</s:Envelope>"""


def _escape(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
    )


def parse_soap_response(response_xml: str, http_status: int = 200) -> dict[str, str]:
    """Parse a SOAP action response.

    Returns:
        The response element's children by tag name

    Raises:
        UPnPError: On a SOAP fault (with the UPnP ``errorCode``) or an
            unparseable non-200 answer

    """
    try:
        root = ET.fromstring(response_xml)  # nosec B314 - defusedxml.ElementTree.fromstring
    except ET.ParseError as e:
        if http_status != 200:
            msg = f"SOAP action failed: HTTP {http_status} (response not parseable as XML)"
            raise UPnPError(msg) from e
        msg = f"Failed to parse SOAP response: {e}"
        raise UPnPError(msg) from e

    # Some routers answer HTTP 500 with a perfectly valid SOAP fault
    fault = root.find(".//soap:Fault", _SOAP_NS)
    if fault is not None:
        raise _fault_to_error(fault, http_status)

    if http_status != 200:
        logger.debug(
            "UPnP SOAP action returned HTTP %d but no SOAP fault. Response: %s",
            http_status,
            response_xml[:500],
        )
        msg = f"SOAP action failed: HTTP {http_status}"
        raise UPnPError(msg)

    response_params: dict[str, str] = {}
    body = root.find(".//soap:Body", _SOAP_NS)
    if body is not None:
        for elem in body:
            if elem.tag.endswith("Response"):
                for child in elem:
                    tag_name = child.tag.split("}")[-1] if "}" in child.tag else child.tag
                    response_params[tag_name] = child.text or ""
                break
    return response_params


def _fault_to_error(fault, http_status: int) -> UPnPError:
    fault_code_elem = fault.find("faultcode")
    fault_string_elem = fault.find("faultstring")
    fault_code = fault_code_elem.text if fault_code_elem is not None else "Unknown"
    fault_string = fault_string_elem.text if fault_string_elem is not None else "Unknown error"

    error_code: int | None = None
    error_description = None
    detail_elem = fault.find("detail")
    if detail_elem is not None:
        error_code_elem = detail_elem.find(".//errorCode")
        if error_code_elem is None:
            error_code_elem = detail_elem.find(".//upnp:errorCode", _CONTROL_NS)
        if error_code_elem is not None and error_code_elem.text:
            try:
                error_code = int(error_code_elem.text.strip())
            except ValueError:
                logger.debug("Non-numeric UPnP error code: %s", error_code_elem.text)

        error_desc_elem = detail_elem.find(".//errorDescription")
        if error_desc_elem is None:
            error_desc_elem = detail_elem.find(".//upnp:errorDescription", _CONTROL_NS)
        if error_desc_elem is not None:
            error_description = error_desc_elem.text

    logger.debug("UPnP SOAP fault (HTTP %d): %s %s", http_status, error_code, error_description)

    if error_code is None:
        return UPnPError(f"SOAP fault: {fault_code} - {fault_string}")

    hint = ERROR_HINTS.get(error_code, "")
    msg = (
        f"SOAP fault: {fault_code} - {fault_string} (UPnP error code: {error_code}"
        + (f", description: {error_description}" if error_description else "")
        + (f", hint: {hint}" if hint else "")
        + ")"
    )
    return UPnPError(msg, error_code, details={"description": error_description})


async def send_soap_action(
    control_url: str,
    action_name: str,
    service_type: str,
    parameters: dict[str, str],
    timeout: float = HTTP_TIMEOUT,
) -> dict[str, str]:
    """Send SOAP action request and parse response.

    Args:
        control_url: Control URL for the service
        action_name: SOAP action name
        service_type: UPnP service type
        parameters: Action parameters
        timeout: HTTP timeout in seconds

    Returns:
        Dictionary of response parameters

    Raises:
        UPnPError: If SOAP action fails

    """
    soap_body = build_soap_action(action_name, service_type, parameters)
    headers = {
        "Content-Type": 'text/xml; charset="utf-8"',
        "SOAPAction": f'"{service_type}#{action_name}"',
    }

    try:
        async with aiohttp.ClientSession() as session, session.post(
            control_url,
            data=soap_body,
            headers=headers,
            timeout=aiohttp.ClientTimeout(total=timeout),
        ) as resp:
            response_xml = await resp.text()
            http_status = resp.status
    except asyncio.TimeoutError as e:
        msg = f"Timeout sending SOAP action {action_name}"
        raise UPnPError(msg) from e
    except aiohttp.ClientError as e:
        msg = f"Error sending SOAP action {action_name}: {e}"
        raise UPnPError(msg) from e

    return parse_soap_response(response_xml, http_status)


class UpnpNatDevice(NatDevice):
    """UPnP IGD gateway reached through its WAN connection control URL."""

    protocol_name = "UPnP"

    def __init__(
        self,
        control_url: str,
        service_type: str = UPNP_IGD_SERVICE_TYPE,
        local_address: ipaddress.IPv4Address | None = None,
        location: str | None = None,
        friendly_name: str = "",
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        """Initialize UPnP device handle.

        Args:
            control_url: Absolute control URL of the WAN connection service
            service_type: WANIPConnection or WANPPPConnection service type
            local_address: Address of this host on the gateway's network
            location: Device description URL the device was found at
            friendly_name: Name announced in the device description
            timeout: HTTP timeout for SOAP actions

        """
        super().__init__(local_address)
        self.control_url = control_url
        self.service_type = service_type
        self.location = location
        self.friendly_name = friendly_name
        self.timeout = timeout

    @property
    def identity(self) -> str:
        return f"upnp:{self.control_url}"

    async def _soap(self, action_name: str, parameters: dict[str, str]) -> dict[str, str]:
        return await send_soap_action(
            self.control_url,
            action_name,
            self.service_type,
            parameters,
            timeout=self.timeout,
        )

    async def get_external_ip(self) -> ipaddress.IPv4Address:
        """Get external IP address.

        Raises:
            UPnPError: If the gateway did not report a valid address

        """
        response = await self._soap("GetExternalIPAddress", {})
        external_ip_str = response.get("NewExternalIPAddress")
        if not external_ip_str:
            msg = "No external IP in response"
            raise UPnPError(msg)
        try:
            return ipaddress.IPv4Address(external_ip_str.strip())
        except ValueError as e:
            msg = f"Invalid external IP address: {external_ip_str}"
            raise UPnPError(msg) from e

    async def get_all_mappings(self) -> list[Mapping]:
        """Enumerate the gateway's table with GetGenericPortMappingEntry.

        Gateways that do not implement the action yield an empty list.
        """
        mappings: list[Mapping] = []
        index = 0
        while True:
            try:
                entry = await self._soap(
                    "GetGenericPortMappingEntry",
                    {"NewPortMappingIndex": str(index)},
                )
            except UPnPError as e:
                if e.error_code not in (
                    ERROR_SPECIFIED_ARRAY_INDEX_INVALID,
                    ERROR_NO_SUCH_ENTRY_IN_ARRAY,
                    ERROR_INVALID_ARGS,
                ):
                    self.logger.debug(
                        "GetGenericPortMappingEntry failed at index %d: %s", index, e
                    )
                break
            mapping = self._entry_to_mapping(entry)
            if mapping is not None:
                mappings.append(mapping)
            index += 1
        return mappings

    async def get_specific_mapping(
        self, protocol: Protocol | str, public_port: int
    ) -> Mapping | None:
        """Look up one entry with GetSpecificPortMappingEntry."""
        protocol = Protocol.parse(protocol)
        try:
            entry = await self._soap(
                "GetSpecificPortMappingEntry",
                {
                    "NewRemoteHost": "",
                    "NewExternalPort": str(public_port),
                    "NewProtocol": protocol.value,
                },
            )
        except UPnPError as e:
            if e.error_code in (ERROR_NO_SUCH_ENTRY_IN_ARRAY, ERROR_INVALID_ARGS):
                return None
            raise
        entry.setdefault("NewExternalPort", str(public_port))
        entry.setdefault("NewProtocol", protocol.value)
        return self._entry_to_mapping(entry)

    def _entry_to_mapping(self, entry: dict[str, str]) -> Mapping | None:
        try:
            lease_seconds = int(entry.get("NewLeaseDuration") or 0)
            mapping = Mapping(
                entry.get("NewProtocol", "TCP"),
                int(entry.get("NewInternalPort") or 0),
                int(entry.get("NewExternalPort") or 0),
                lease=Lease(min(max(lease_seconds, 0), SESSION_SECONDS)),
                description=entry.get("NewPortMappingDescription", ""),
                private_ip=entry.get("NewInternalClient") or NO_ADDRESS,
            )
        except ValueError as e:
            self.logger.debug("Skipping malformed port mapping entry %s: %s", entry, e)
            return None
        remote_host = entry.get("NewRemoteHost")
        if remote_host:
            try:
                mapping.public_ip = ipaddress.ip_address(remote_host)
            except ValueError:
                pass
        return mapping

    def _add_params(self, mapping: Mapping, lease_seconds: int) -> dict[str, str]:
        internal_client = "" if mapping.private_ip == NO_ADDRESS else str(mapping.private_ip)
        return {
            "NewRemoteHost": "",
            "NewExternalPort": str(mapping.public_port),
            "NewProtocol": mapping.protocol.value,
            "NewInternalPort": str(mapping.private_port),
            "NewInternalClient": internal_client,
            "NewEnabled": "1",
            "NewPortMappingDescription": mapping.description,
            "NewLeaseDuration": str(lease_seconds),
        }

    async def _create_port_map(self, mapping: Mapping) -> None:
        try:
            await self._soap("AddPortMapping", self._add_params(mapping, mapping.lease.wire_seconds))
        except UPnPError as e:
            if (
                e.error_code == ERROR_ONLY_PERMANENT_LEASES_SUPPORTED
                and not mapping.lease.is_permanent
            ):
                self.logger.info(
                    "Gateway only supports permanent leases; %s will be kept open "
                    "for the session",
                    mapping,
                )
                await self._create_forced_session(mapping)
                return
            msg = f"Error creating port mapping {mapping}: {e}"
            raise MappingError(msg, e.error_code) from e

    async def _create_forced_session(self, mapping: Mapping) -> None:
        try:
            await self._soap("AddPortMapping", self._add_params(mapping, 0))
        except UPnPError as e:
            msg = f"Error creating port mapping {mapping}: {e}"
            raise MappingError(msg, e.error_code) from e
        mapping.forced_session = True

    async def _delete_port_map(self, protocol: Protocol, public_port: int) -> bool:
        try:
            await self._soap(
                "DeletePortMapping",
                {
                    "NewRemoteHost": "",
                    "NewExternalPort": str(public_port),
                    "NewProtocol": protocol.value,
                },
            )
        except UPnPError as e:
            if e.error_code == ERROR_NO_SUCH_ENTRY_IN_ARRAY:
                self.logger.debug(
                    "Port mapping %s:%s does not exist (error 714), nothing to delete",
                    protocol.value,
                    public_port,
                )
                return False
            msg = f"Error deleting {protocol.value} port mapping {public_port}: {e}"
            raise MappingError(msg, e.error_code) from e
        return True

    def __str__(self) -> str:
        if self.friendly_name:
            return f"{self.friendly_name} ({self.control_url})"
        return self.identity


class UpnpSearcher(Searcher):
    """Finds IGD gateways with SSDP M-SEARCH on every local interface."""

    port_mapper = PortMapper.UPNP

    async def _search(self, scope: CancellationScope) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        addresses: list[ipaddress.IPv4Address | None] = list(
            self.provider.unicast_addresses()
        )
        if not addresses:
            self.logger.debug("No local IPv4 address, searching from the wildcard address")
            addresses = [None]

        seen_locations: set[str] = set()
        sockets: list[socket.socket] = []
        try:
            for address in addresses:
                sock = self._open_socket(address)
                if sock is not None:
                    sockets.append(sock)
            if not sockets:
                self.logger.warning("UPnP search could not open any SSDP socket")
                return
            await asyncio.gather(
                *(
                    self._search_interface(sock, scope, deadline, seen_locations)
                    for sock in sockets
                )
            )
        finally:
            for sock in sockets:
                sock.close()

    def _open_socket(self, address: ipaddress.IPv4Address | None) -> socket.socket | None:
        sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
        try:
            sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, 2)
            if address is not None:
                sock.setsockopt(
                    socket.IPPROTO_IP, socket.IP_MULTICAST_IF, socket.inet_aton(str(address))
                )
                sock.bind((str(address), 0))
            else:
                sock.bind(("0.0.0.0", 0))  # nosec B104 - SSDP search socket
            sock.setblocking(False)
        except OSError as e:
            self.logger.debug("Cannot open SSDP socket on %s: %s", address or "0.0.0.0", e)
            sock.close()
            return None
        return sock

    async def _search_interface(
        self,
        sock: socket.socket,
        scope: CancellationScope,
        deadline: float,
        seen_locations: set[str],
    ) -> None:
        loop = asyncio.get_running_loop()
        local_address = self._local_address(sock)
        next_send = loop.time()
        sent = 0
        while not scope.cancelled:
            now = loop.time()
            if now >= deadline:
                break
            if sent < SSDP_MSEARCH_RETRIES and now >= next_send:
                await self._send_msearch(sock)
                sent += 1
                next_send = now + SSDP_RESEND_INTERVAL

            wait = deadline - now
            if sent < SSDP_MSEARCH_RETRIES:
                wait = min(wait, max(next_send - now, 0.0))
            try:
                received = await self._receive(sock, scope, wait)
            except OSError as e:
                self.logger.debug("Error receiving SSDP response: %s", e)
                break
            if received is None:
                continue

            data, addr = received
            headers = parse_ssdp_response(data)
            location = headers.get("location", "")
            if not is_gateway_response(headers) or not location:
                continue
            if location in seen_locations:
                continue
            seen_locations.add(location)
            self.logger.debug(
                "SSDP response from %s: %s (server: %s)",
                addr[0],
                location,
                headers.get("server", "unknown"),
            )
            await self._handle_location(location, local_address)

    async def _send_msearch(self, sock: socket.socket) -> None:
        loop = asyncio.get_running_loop()
        for search_target in SEARCH_TARGETS:
            try:
                await loop.sock_sendto(
                    sock,
                    build_msearch_request(search_target),
                    (SSDP_MULTICAST_IP, SSDP_MULTICAST_PORT),
                )
            except OSError as e:
                self.logger.debug("Failed to send M-SEARCH for %s: %s", search_target, e)

    async def _handle_location(
        self,
        location: str,
        local_address: ipaddress.IPv4Address | None,
    ) -> None:
        try:
            service_info = await fetch_device_description(location)
        except UPnPError as e:
            self.logger.debug("Ignoring device at %s: %s", location, e)
            return
        device = UpnpNatDevice(
            service_info["control_url"],
            service_info["service_type"],
            local_address=local_address,
            location=location,
            friendly_name=service_info.get("friendly_name", ""),
        )
        self._device_found(device)

    @staticmethod
    def _local_address(sock: socket.socket) -> ipaddress.IPv4Address | None:
        try:
            address = ipaddress.IPv4Address(sock.getsockname()[0])
        except (OSError, ValueError):
            return None
        return None if address.is_unspecified else address
