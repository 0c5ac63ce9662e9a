"""Shared test fixtures."""

from __future__ import annotations

from typing import Any, Dict
from unittest.mock import MagicMock

import libvirt
import pytest

from imagebuilder.config import BuildConfig
from imagebuilder.definitions import DomainDefinition
from imagebuilder.domain import build_domain_definition
from imagebuilder.runner import BuildState

VOLUME_XML = """
<volume type="file">
  <name>{name}</name>
  <key>/var/lib/libvirt/images/{name}</key>
  <capacity unit="bytes">{capacity}</capacity>
  <allocation unit="bytes">{capacity}</allocation>
  <target>
    <path>/var/lib/libvirt/images/{name}</path>
    <format type="{format}"/>
  </target>
</volume>
"""


def volume_xml(name: str = "vol", capacity: int = 1024, fmt: str = "qcow2") -> str:
    return VOLUME_XML.format(name=name, capacity=capacity, format=fmt)


@pytest.fixture
def session() -> MagicMock:
    """A hypervisor session double talking to a non-test driver."""
    sess = MagicMock(name="session")
    sess.is_test_driver = False
    sess.storage_vol_get_xml_desc.return_value = volume_xml()
    sess.domain_get_state.return_value = (libvirt.VIR_DOMAIN_RUNNING, 1)
    return sess


@pytest.fixture
def config_dict() -> Dict[str, Any]:
    return {
        "libvirt_uri": "qemu:///system",
        "domain_name": "builder-vm",
        "network_interfaces": [{"type": "managed", "alias": "communicator", "mac": "52:54:00:AA:BB:CC"}],
        "network_address_source": "lease",
        "communicator": {"type": "ssh", "timeout": "1s"},
        "volumes": [
            {"alias": "artifact", "pool": "default", "name": "disk.qcow2", "size": "1G", "bus": "virtio"},
        ],
    }


@pytest.fixture
def build_config(config_dict) -> BuildConfig:
    config = BuildConfig.from_dict(config_dict)
    config.prepare()
    return config


@pytest.fixture
def build_state(build_config, session) -> BuildState:
    definition = build_domain_definition(build_config)
    session.domain_get_xml_desc.return_value = definition.marshal()
    return BuildState(config=build_config, session=session, domain_definition=definition)


@pytest.fixture
def empty_definition() -> DomainDefinition:
    return DomainDefinition.from_xml("<domain><name>builder-vm</name><devices/></domain>")


@pytest.fixture
def make_volume_xml():
    return volume_xml
