"""Unit tests for the NatDevice mapping lifecycle."""

from __future__ import annotations

import asyncio
import ipaddress
import logging
import time

import pytest

from portfwd.nat.exceptions import MappingError, NATPMPError, UPnPError
from portfwd.nat.mapping import NO_ADDRESS, Lease, LeaseType, Mapping, Protocol

pytestmark = [pytest.mark.unit]


@pytest.mark.asyncio
async def test_create_fills_private_address(make_device):
    """Test the device's local address is used when none was given."""
    device = make_device(local_address="192.168.1.10")
    mapping = Mapping(Protocol.TCP, 1600, 1700)

    assert await device.create_port_map(mapping) is True

    assert mapping.private_ip == ipaddress.IPv4Address("192.168.1.10")
    assert device.open_mappings == [mapping]
    assert device.table[(Protocol.TCP, 1700)] is mapping


@pytest.mark.asyncio
async def test_create_keeps_explicit_private_address(make_device):
    """Test an explicit private address is left untouched."""
    device = make_device()
    mapping = Mapping(Protocol.TCP, 1600, 1700, private_ip="10.0.0.7")

    await device.create_port_map(mapping)

    assert mapping.private_ip == ipaddress.IPv4Address("10.0.0.7")


@pytest.mark.asyncio
async def test_create_without_local_address(make_device):
    """Test NO_ADDRESS is kept when the device has no local address."""
    device = make_device(local_address=None)
    mapping = Mapping(Protocol.UDP, 1600, 1700)

    await device.create_port_map(mapping)

    assert mapping.private_ip == NO_ADDRESS


@pytest.mark.asyncio
async def test_register_replaces_equal_mapping(make_device):
    """Test re-creating a mapping on the same port pair replaces the entry."""
    device = make_device()
    await device.create_port_map(Mapping(Protocol.TCP, 1600, 1700, description="old"))
    await device.create_port_map(Mapping(Protocol.UDP, 1600, 1700, description="new"))

    assert len(device.open_mappings) == 1
    assert device.open_mappings[0].description == "new"


@pytest.mark.parametrize(
    "error",
    [UPnPError("rejected", 718), NATPMPError("rejected", 2)],
)
@pytest.mark.asyncio
async def test_protocol_error_translated(make_device, error):
    """Test protocol errors surface as MappingError and nothing is tracked."""
    device = make_device()
    device.fail_create = error

    with pytest.raises(MappingError) as exc_info:
        await device.create_port_map(Mapping(Protocol.TCP, 1600, 1700))

    assert exc_info.value.__cause__ is error
    assert device.open_mappings == []


@pytest.mark.asyncio
async def test_upnp_error_code_kept(make_device):
    """Test the gateway error code is kept on the MappingError."""
    device = make_device()
    device.fail_create = UPnPError("conflict", 718)

    with pytest.raises(MappingError) as exc_info:
        await device.create_port_map(Mapping(Protocol.TCP, 1600, 1700))

    assert exc_info.value.error_code == 718


@pytest.mark.asyncio
async def test_delete_unregisters(make_device):
    """Test deleting removes the mapping from the open set."""
    device = make_device()
    await device.create_port_map(Mapping(Protocol.TCP, 1600, 1700))
    await device.create_port_map(Mapping(Protocol.TCP, 1601, 1701))

    assert await device.delete_port_map("tcp", 1700) is True

    assert [m.public_port for m in device.open_mappings] == [1701]


@pytest.mark.asyncio
async def test_delete_missing_returns_false(make_device):
    """Test deleting an unknown mapping reports False."""
    device = make_device()

    assert await device.delete_port_map(Protocol.UDP, 9999) is False


@pytest.mark.asyncio
async def test_get_specific_mapping(make_device):
    """Test lookup by protocol and public port."""
    device = make_device()
    tcp = Mapping(Protocol.TCP, 1600, 1700)
    await device.create_port_map(tcp)

    assert await device.get_specific_mapping("TCP", 1700) is tcp
    assert await device.get_specific_mapping(Protocol.UDP, 1700) is None


class TestRenewal:
    """Session mapping renewal."""

    @pytest.mark.asyncio
    async def test_renews_due_session_mapping(self, make_device):
        """Test an expired Session mapping is re-created with a fresh window."""
        device = make_device()
        mapping = Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION)
        await device.create_port_map(mapping)
        mapping._expiration = time.time() - 1  # noqa: SLF001

        assert await device.renew_mappings() is True

        assert len(device.created) == 2
        renewed = device.created[-1]
        assert renewed is not mapping
        assert renewed.lease_type is LeaseType.SESSION
        assert not renewed.should_renew()
        assert device.open_mappings == [renewed]

    @pytest.mark.asyncio
    async def test_skips_mappings_not_due(self, make_device):
        """Test fresh Session, Permanent and Manual mappings are left alone."""
        device = make_device()
        await device.create_port_map(Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION))
        await device.create_port_map(Mapping(Protocol.TCP, 1602, 1702, Lease.PERMANENT))
        manual = Mapping(Protocol.TCP, 1603, 1703, Lease.from_duration(20))
        await device.create_port_map(manual)
        manual._expiration = time.time() - 1  # noqa: SLF001

        assert await device.renew_mappings() is True

        assert len(device.created) == 3

    @pytest.mark.asyncio
    async def test_renew_failure_logged_and_swallowed(self, make_device, caplog):
        """Test a failed renewal logs a warning and reports False."""
        device = make_device()
        mapping = Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION)
        await device.create_port_map(mapping)
        mapping._expiration = time.time() - 1  # noqa: SLF001
        device.fail_create = UPnPError("gone")

        with caplog.at_level(logging.WARNING):
            assert await device.renew_mappings() is False

        assert "Renew" in caplog.text
        assert device.open_mappings == [mapping]

    @pytest.mark.asyncio
    async def test_renew_serialised_with_create(self, make_device):
        """Test renewal waits for a mapping change holding the device lock."""
        device = make_device()
        mapping = Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION)
        await device.create_port_map(mapping)
        mapping._expiration = time.time() - 1  # noqa: SLF001

        async with device.lock:
            renewal = asyncio.create_task(device.renew_mappings())
            await asyncio.sleep(0.01)
            assert not renewal.done()

        assert await renewal is True

    @pytest.mark.asyncio
    async def test_renew_skips_mapping_deleted_meanwhile(self, make_device):
        """Test a mapping deleted while renewal waits for the lock stays deleted."""

        class SlowDeleteDevice(make_device):
            async def _delete_port_map(self, protocol, public_port):
                await asyncio.sleep(0.05)
                return await super()._delete_port_map(protocol, public_port)

        device = SlowDeleteDevice()
        mapping = Mapping(Protocol.TCP, 1600, 1700, Lease.SESSION)
        await device.create_port_map(mapping)
        mapping._expiration = time.time() - 1  # noqa: SLF001

        deletion = asyncio.create_task(device.delete_port_map(Protocol.TCP, 1700))
        await asyncio.sleep(0)
        assert await device.renew_mappings() is True
        assert await deletion is True

        assert device.open_mappings == []
        assert len(device.created) == 1
        assert device.table == {}

    @pytest.mark.asyncio
    async def test_renew_replaces_original_entry(self, make_device):
        """Test the renewed copy takes the place of the expired entry."""
        device = make_device()
        mapping = Mapping(Protocol.TCP, 1600, 1700, Lease.SESSION)
        await device.create_port_map(mapping)
        mapping._expiration = time.time() - 1  # noqa: SLF001

        await device.renew_mappings()

        assert len(device.open_mappings) == 1
        assert device.open_mappings[0] is not mapping
        assert not any(m.should_renew() for m in device.open_mappings)


class TestRelease:
    """Releasing open mappings."""

    @pytest.mark.asyncio
    async def test_release_session_only(self, make_device):
        """Test only Session mappings are released."""
        device = make_device()
        await device.create_port_map(Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION))
        await device.create_port_map(Mapping(Protocol.TCP, 1602, 1702, Lease.PERMANENT))
        await device.create_port_map(Mapping(Protocol.TCP, 1603, 1703, Lease.from_duration(20)))

        await device.release_session_mappings()

        assert device.deleted == [(Protocol.TCP, 1701)]
        assert sorted(m.public_port for m in device.open_mappings) == [1702, 1703]

    @pytest.mark.asyncio
    async def test_release_all(self, make_device):
        """Test every open mapping is released."""
        device = make_device()
        await device.create_port_map(Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION))
        await device.create_port_map(Mapping(Protocol.UDP, 1602, 1702, Lease.PERMANENT))

        await device.release_all()

        assert sorted(device.deleted) == [(Protocol.TCP, 1701), (Protocol.UDP, 1702)]
        assert device.open_mappings == []

    @pytest.mark.asyncio
    async def test_release_failure_logged(self, make_device, caplog):
        """Test release failures are logged, not raised."""
        device = make_device()
        await device.create_port_map(Mapping(Protocol.TCP, 1601, 1701, Lease.SESSION))
        device.fail_delete = UPnPError("unreachable")

        with caplog.at_level(logging.ERROR):
            await device.release_all()

        assert "couldn't be closed" in caplog.text
        assert len(device.open_mappings) == 1


def test_touch_updates_last_seen(make_device):
    """Test touch() records a new sighting."""
    device = make_device()
    device.last_seen = 0

    device.touch()

    assert device.last_seen > 0


def test_str_and_repr(make_device):
    """Test the textual forms use the identity."""
    device = make_device("home")

    assert str(device) == "fake:home"
    assert repr(device) == "FakeDevice('fake:home')"
