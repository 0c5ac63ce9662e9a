"""Tests for imagebuilder.config module."""

from __future__ import annotations

import pytest

from imagebuilder.config import BuildConfig, load_config
from imagebuilder.devices import DeviceLetterAllocator
from imagebuilder.exceptions import ConfigurationError
from imagebuilder.sources import CloudInitSource


def _config(**overrides) -> BuildConfig:
    raw = {
        "domain_name": "vm",
        "network_address_source": "lease",
        "volumes": [{"alias": "artifact", "pool": "default", "name": "disk", "size": "1G", "bus": "virtio"}],
    }
    raw.update(overrides)
    return BuildConfig.from_dict(raw)


class TestFromDict:
    def test_nested_sections(self, config_dict):
        config = BuildConfig.from_dict(config_dict)
        assert config.network_interfaces[0].mac == "52:54:00:AA:BB:CC"
        assert config.communicator.type == "ssh"
        assert config.volumes[0].name == "disk.qcow2"

    def test_errors_are_aggregated(self):
        with pytest.raises(ConfigurationError) as excinfo:
            BuildConfig.from_dict({
                "colour": "blue",
                "communicator": {"type": "ssh", "password": "x"},
                "volumes": ["not-a-mapping", {"source": {"type": "ftp"}}],
            })
        errors = excinfo.value.errors
        assert "volume #0 must be a mapping" in errors
        assert any(err.startswith("volume #1: unknown volume source type 'ftp'") for err in errors)
        assert "unknown communicator option(s): password" in errors
        assert "unknown configuration option(s): colour" in errors

    def test_not_a_mapping(self):
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            BuildConfig.from_dict(["a"])


class TestPrepare:
    def test_defaults(self):
        config = BuildConfig.from_dict({"volumes": [{"pool": "default", "size": "1G", "bus": "virtio"}]})
        warnings = config.prepare()
        assert config.domain_name.startswith("imagebuilder-")
        assert config.domain_type == "kvm"
        assert config.arch == "x86_64"
        assert config.boot_devices == ["hd"]
        assert config.network_address_source == "agent"
        assert config.shutdown_mode == "auto"
        assert config.communicator.port == 22
        assert config.volumes[0].alias == "ua-artifact"
        assert "No network interface defined" in warnings
        assert "Using the only defined volume as an artifact" in warnings

    def test_bad_uri(self):
        with pytest.raises(ConfigurationError, match="malformed libvirt URI"):
            _config(libvirt_uri="not a uri").prepare()

    def test_uri_must_be_a_string(self):
        with pytest.raises(ConfigurationError, match="libvirt_uri must be a string \\(got 123\\)"):
            _config(libvirt_uri=123).prepare()

    def test_transport_errors_surface(self):
        with pytest.raises(ConfigurationError, match="ssh transport requires a username"):
            _config(libvirt_uri="qemu+ssh://hv01/system?keyfile=/k&no_verify=1").prepare()

    def test_collects_every_error(self):
        config = _config(memory=0, boot_devices=["floppy"], shutdown_mode="kick",
                         network_address_source="dhcp", graphics=[{"type": "spice"}])
        with pytest.raises(ConfigurationError) as excinfo:
            config.prepare()
        errors = excinfo.value.errors
        assert len(errors) == 5
        assert "memory must be a positive integer (got 0)" in errors
        assert "unknown boot device: floppy" in errors
        assert "unrecognized shutdown mode 'kick'" in errors
        assert "unrecognized network address source 'dhcp'" in errors
        assert "unsupported graphics type 'spice'" in errors

    def test_shutdown_timeout_duration(self):
        config = _config(shutdown_timeout="2m")
        config.prepare()
        assert config.shutdown_timeout == 120.0

    def test_no_volumes(self):
        with pytest.raises(ConfigurationError, match="no volume has been specified"):
            _config(volumes=[]).prepare()


class TestCommunicatorInterface:
    def test_first_interface_adopted(self):
        config = _config(network_interfaces=[{"type": "managed"}, {"type": "bridge", "bridge": "br0"}])
        warnings = config.prepare()
        assert config.network_interfaces[0].alias == "ua-communicator"
        assert config.communicator_interface == "ua-communicator"
        assert "using first network interface found as communicator interface" in warnings

    def test_explicit_alias_matched(self):
        config = _config(
            network_interfaces=[{"type": "managed", "alias": "lan"}, {"type": "managed", "alias": "mgmt"}],
            communicator_interface="mgmt",
        )
        config.prepare()
        assert config.communicator_interface == "ua-mgmt"
        assert config.network_interfaces[0].alias == "ua-lan"

    def test_explicit_alias_missing(self):
        config = _config(network_interfaces=[{"type": "managed", "alias": "lan"}], communicator_interface="mgmt")
        with pytest.raises(ConfigurationError, match="no network_interface found with alias 'mgmt'"):
            config.prepare()

    def test_bridge_requires_name(self):
        with pytest.raises(ConfigurationError, match="bridge must be set"):
            _config(network_interfaces=[{"type": "bridge"}]).prepare()

    def test_winrm_port(self):
        config = _config(communicator={"type": "winrm"})
        config.prepare()
        assert config.communicator.port == 5985


class TestArtifactVolume:
    def test_explicit_alias(self):
        config = _config(
            volumes=[
                {"alias": "seed", "pool": "default", "bus": "sata", "source": {"type": "cloud-init"}},
                {"alias": "root", "pool": "default", "size": "1G", "bus": "virtio"},
            ],
            artifact_volume_alias="root",
        )
        config.prepare()
        assert config.artifact_volume_alias == "ua-root"
        assert [config.is_artifact(v) for v in config.volumes] == [False, True]
        assert isinstance(config.volumes[0].source, CloudInitSource)

    def test_explicit_alias_missing(self):
        with pytest.raises(ConfigurationError, match="no volume found with alias 'root'"):
            _config(artifact_volume_alias="root").prepare()

    def test_ambiguous_without_alias(self):
        config = _config(volumes=[
            {"pool": "default", "name": "a", "size": "1G", "bus": "virtio"},
            {"pool": "default", "name": "b", "size": "1G", "bus": "virtio"},
        ])
        with pytest.raises(ConfigurationError, match="please specify an alias"):
            config.prepare()


class TestTargetDevices:
    def test_explicit_devices_are_reserved_first(self):
        config = _config(
            volumes=[
                {"alias": "artifact", "pool": "default", "name": "a", "size": "1G", "bus": "virtio"},
                {"pool": "default", "name": "b", "size": "1G", "bus": "virtio", "target_dev": "vda"},
            ],
        )
        config.prepare()
        assert [v.target_dev for v in config.volumes] == ["vdb", "vda"]

    def test_floppy_bus_exhaustion(self):
        volumes = [{"alias": "artifact", "pool": "default", "name": "disk", "size": "1G", "bus": "virtio"}]
        volumes += [
            {"pool": "default", "name": f"f{i}", "device": "floppy", "source": {"type": "files"}}
            for i in range(5)
        ]
        config = _config(volumes=volumes)
        with pytest.raises(ConfigurationError, match="no device names left on bus 'fdc'"):
            config.prepare()

    def test_allocator_is_per_build(self):
        first, second = _config(), _config()
        first.prepare(DeviceLetterAllocator())
        second.prepare(DeviceLetterAllocator())
        assert first.volumes[0].target_dev == second.volumes[0].target_dev == "vda"


class TestLoadConfig:
    def test_load_yaml(self, tmp_path):
        path = tmp_path / "build.yaml"
        path.write_text(
            "domain_name: vm\n"
            "memory: 2048\n"
            "volumes:\n"
            "  - alias: artifact\n"
            "    pool: default\n"
            "    capacity: 20G\n"
            "    source:\n"
            "      type: external\n"
            "      urls: https://example.com/disk.qcow2\n"
            "      checksum: none\n"
        )
        config = load_config(path)
        assert config.memory == 2048
        assert config.volumes[0].source.urls == ["https://example.com/disk.qcow2"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError, match="cannot read configuration"):
            load_config(tmp_path / "missing.yaml")

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("volumes: [\n")
        with pytest.raises(ConfigurationError, match="invalid YAML"):
            load_config(path)
