"""Typed views over the libvirt storage-volume and domain XML documents."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List, Optional
from xml.etree.ElementTree import Element, SubElement, fromstring, tostring

from imagebuilder.constants import SIZE_UNITS, UNIT_MULTIPLIERS
from imagebuilder.exceptions import ConfigurationError
from imagebuilder.utils import element_to_str

_SIZE_RE = re.compile(r"^\s*(\d+)\s*([A-Za-z]*)\s*$")


@dataclass(frozen=True)
class SizeSpec:
    value: int
    unit: str = "B"

    @property
    def multiplier(self) -> int:
        try:
            return UNIT_MULTIPLIERS[self.unit]
        except KeyError:
            raise ConfigurationError([f"unknown size unit '{self.unit}'"]) from None

    @property
    def bytes(self) -> int:
        return self.value * self.multiplier

    def __str__(self) -> str:
        return f"{self.value}{self.unit}"


def parse_size(raw) -> SizeSpec:
    """Parse ``"10G"`` into ``SizeSpec(10, "GiB")``."""
    match = _SIZE_RE.match(str(raw))
    if not match:
        raise ConfigurationError([f"invalid size '{raw}': expected a number with an optional unit suffix"])
    value, suffix = match.groups()
    if suffix not in SIZE_UNITS:
        raise ConfigurationError(
            [f"unknown size unit '{suffix}' in '{raw}': use k/kb/kB, M/Mb/MB or G/Gb/GB"]
        )
    return SizeSpec(int(value), SIZE_UNITS[suffix])


def _child(parent: Element, tag: str) -> Element:
    node = parent.find(tag)
    if node is None:
        node = SubElement(parent, tag)
    return node


def _size_of(node: Optional[Element]) -> Optional[SizeSpec]:
    if node is None or not (node.text or "").strip():
        return None
    return SizeSpec(int(node.text.strip()), node.get("unit", "bytes"))


class StorageVolumeDefinition:
    """A ``<volume>`` document."""

    def __init__(self, root: Optional[Element] = None) -> None:
        self.root = root if root is not None else Element("volume", type="file")

    @classmethod
    def from_xml(cls, xml: str) -> "StorageVolumeDefinition":
        return cls(fromstring(xml))

    @property
    def name(self) -> str:
        return self.root.findtext("name", "")

    @name.setter
    def name(self, value: str) -> None:
        _child(self.root, "name").text = value

    @property
    def key(self) -> str:
        return self.root.findtext("key", "")

    def _set_size(self, tag: str, size: Optional[SizeSpec]) -> None:
        node = self.root.find(tag)
        if size is None:
            if node is not None:
                self.root.remove(node)
            return
        node = _child(self.root, tag)
        node.text = str(size.value)
        node.set("unit", size.unit)

    @property
    def capacity(self) -> Optional[SizeSpec]:
        return _size_of(self.root.find("capacity"))

    @capacity.setter
    def capacity(self, size: Optional[SizeSpec]) -> None:
        self._set_size("capacity", size)

    @property
    def allocation(self) -> Optional[SizeSpec]:
        return _size_of(self.root.find("allocation"))

    @allocation.setter
    def allocation(self, size: Optional[SizeSpec]) -> None:
        self._set_size("allocation", size)

    @property
    def physical(self) -> Optional[SizeSpec]:
        return _size_of(self.root.find("physical"))

    @property
    def format(self) -> str:
        node = self.root.find("target/format")
        return node.get("type", "") if node is not None else ""

    @format.setter
    def format(self, value: str) -> None:
        _child(_child(self.root, "target"), "format").set("type", value)

    @property
    def target_path(self) -> str:
        return self.root.findtext("target/path", "")

    @property
    def target_permissions(self) -> Optional[Element]:
        return self.root.find("target/permissions")

    @property
    def has_backing_store(self) -> bool:
        return self.root.find("backingStore") is not None

    def set_backing_store(self, path: str, fmt: str, permissions: Optional[Element] = None) -> None:
        existing = self.root.find("backingStore")
        if existing is not None:
            self.root.remove(existing)
        backing = SubElement(self.root, "backingStore")
        SubElement(backing, "path").text = path
        if fmt:
            SubElement(backing, "format", type=fmt)
        if permissions is not None:
            backing.append(fromstring(tostring(permissions, encoding="unicode")))

    def marshal(self) -> str:
        return element_to_str(self.root)


class DomainDefinition:
    """A ``<domain>`` document mutated step by step during a build."""

    def __init__(self, root: Element) -> None:
        self.root = root

    @classmethod
    def from_xml(cls, xml: str) -> "DomainDefinition":
        return cls(fromstring(xml))

    @property
    def name(self) -> str:
        return self.root.findtext("name", "")

    @property
    def devices(self) -> Element:
        return _child(self.root, "devices")

    def add_disk(self, disk: Element) -> None:
        # disks stay in declaration order, ahead of other devices
        self.devices.insert(len(self.disks()), disk)

    def disks(self) -> List[Element]:
        return self.devices.findall("disk")

    def interfaces(self) -> List[Element]:
        return self.devices.findall("interface")

    def find_interface(self, alias: str) -> Optional[Element]:
        for iface in self.interfaces():
            node = iface.find("alias")
            if node is not None and node.get("name") == alias:
                return iface
        return None

    @staticmethod
    def interface_mac(iface: Optional[Element]) -> str:
        if iface is None:
            return ""
        node = iface.find("mac")
        return (node.get("address", "") if node is not None else "").lower()

    def refresh(self, xml: str) -> None:
        """Replace the local view with the daemon's canonical definition."""
        self.root = fromstring(xml)

    def marshal(self) -> str:
        return element_to_str(self.root)
