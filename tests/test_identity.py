import ipaddress

import pytest

from appliance_installer.errors import ConfigError
from appliance_installer.models import DeviceIdentity, derive_stream_id


def test_stream_id_is_lowercased_name(fleet):
    ident = DeviceIdentity.create("CAM3", "10.77.9.63", fleet)
    assert ident.stream_id == "cam3"
    assert not ident.stream_overridden
    assert derive_stream_id("Cam-West") == "cam-west"


def test_explicit_stream_equal_to_derived_is_not_an_override(fleet):
    ident = DeviceIdentity.create("CAM2", "10.77.9.62/23", fleet, stream="cam2")
    assert ident.stream_id == "cam2"
    assert ident.stream_override is None


def test_override_is_recorded(fleet):
    ident = DeviceIdentity.create("CAM2", "10.77.9.62/23", fleet, stream="stage-left")
    assert ident.stream_id == "stage-left"
    assert ident.stream_overridden


def test_prefix_defaults_to_fleet_subnet(fleet):
    ident = DeviceIdentity.create("CAM2", "10.77.9.62", fleet)
    assert str(ident.address) == "10.77.9.62/23"
    assert ident.address.gateway == ipaddress.IPv4Address("10.77.8.1")
    assert ident.ndi_label == fleet.display_label


@pytest.mark.parametrize("address", ["10.77.10.5", "192.168.1.10/24", "10.77.8.0", "10.77.9.255", "not-an-ip"])
def test_address_must_be_a_host_in_fleet_subnet(fleet, address):
    with pytest.raises(ConfigError):
        DeviceIdentity.create("CAM2", address, fleet)


@pytest.mark.parametrize("name", ["", "cam 2", "-cam", "cam_2", "x" * 64])
def test_name_must_be_a_hostname(fleet, name):
    with pytest.raises(ConfigError):
        DeviceIdentity.create(name, "10.77.9.62", fleet)


def test_empty_stream_rejected(fleet):
    with pytest.raises(ConfigError):
        DeviceIdentity.create("CAM2", "10.77.9.62", fleet, stream="  ")
