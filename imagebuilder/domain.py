"""Domain definition building and runtime helpers for a build's domain."""

from __future__ import annotations

import ipaddress
import os
import random
import sys
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, BinaryIO, Dict, List, Optional
from xml.etree.ElementTree import Element, SubElement

import libvirt  # type: ignore

from imagebuilder.constants import (
    GUEST_AGENT_CHANNEL,
    LINK_LOCAL_INTERFACE_ENV,
    SERIAL_CONSOLE_ALIAS,
    VIRTUAL_CONSOLE_ALIAS,
)
from imagebuilder.definitions import DomainDefinition
from imagebuilder.exceptions import BuildError, RPCError
from imagebuilder.network import render_interface
from imagebuilder.tasks import BackgroundTask
from imagebuilder.utils import log

if TYPE_CHECKING:  # pragma: no cover
    from imagebuilder.config import BuildConfig
    from imagebuilder.runner import BuildState
    from imagebuilder.session import HypervisorSession

SHUTDOWN_FLAGS: Dict[str, int] = {
    "auto": libvirt.VIR_DOMAIN_SHUTDOWN_DEFAULT,
    "acpi": libvirt.VIR_DOMAIN_SHUTDOWN_ACPI_POWER_BTN,
    "guest": libvirt.VIR_DOMAIN_SHUTDOWN_GUEST_AGENT,
    "initctl": libvirt.VIR_DOMAIN_SHUTDOWN_INITCTL,
    "signal": libvirt.VIR_DOMAIN_SHUTDOWN_SIGNAL,
    "paravirt": libvirt.VIR_DOMAIN_SHUTDOWN_PARAVIRT,
}

ADDRESS_SOURCES: Dict[str, int] = {
    "lease": libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE,
    "agent": libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_AGENT,
    "arp": libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_ARP,
}

STOPPED_STATES = (libvirt.VIR_DOMAIN_SHUTOFF, libvirt.VIR_DOMAIN_CRASHED)


def domain_state_means_stopped(state: int) -> bool:
    return state in STOPPED_STATES


def _graphic(devices: Element, graphic) -> None:
    if graphic.type == "vnc":
        attrs = {"type": "vnc"}
        if graphic.port and graphic.port > 0:
            attrs.update(port=str(graphic.port), autoport="no")
        else:
            attrs["autoport"] = "yes"
        if graphic.listen:
            attrs["listen"] = graphic.listen
        SubElement(devices, "graphics", **attrs)
    elif graphic.type == "sdl":
        attrs = {"type": "sdl"}
        if graphic.display:
            attrs["display"] = graphic.display
        SubElement(devices, "graphics", **attrs)


def build_domain_definition(config: "BuildConfig") -> DomainDefinition:
    """Render the skeletal domain; disks are attached later, one per volume."""
    domain = Element("domain", type=config.domain_type)
    SubElement(domain, "name").text = config.domain_name
    SubElement(domain, "description").text = config.description or "Domain created by imagebuilder"
    if config.cpu_mode:
        SubElement(domain, "cpu", mode=config.cpu_mode)
    SubElement(domain, "memory", unit="MiB").text = str(config.memory)
    SubElement(domain, "vcpu", placement="static").text = str(config.vcpu)

    os_el = SubElement(domain, "os")
    type_attrs = {"arch": config.arch}
    if config.chipset:
        type_attrs["machine"] = config.chipset
    SubElement(os_el, "type", **type_attrs).text = "hvm"
    if config.loader_path:
        loader_attrs = {"readonly": "yes"}
        if config.loader_type:
            loader_attrs["type"] = config.loader_type
        if config.secure_boot:
            loader_attrs["secure"] = "yes"
        SubElement(os_el, "loader", **loader_attrs).text = config.loader_path
    if config.nvram_path or config.nvram_template:
        nvram = SubElement(os_el, "nvram")
        if config.nvram_template:
            nvram.set("template", config.nvram_template)
        if config.nvram_path:
            nvram.text = config.nvram_path
    for device in config.boot_devices:
        SubElement(os_el, "boot", dev=device)

    features = SubElement(domain, "features")
    for feature in ("pae", "acpi", "apic"):
        SubElement(features, feature)
    if config.loader_path and config.secure_boot:
        SubElement(features, "smm", state="on")

    devices = SubElement(domain, "devices")
    channel = SubElement(devices, "channel", type="unix")
    SubElement(channel, "target", type="virtio", name=GUEST_AGENT_CHANNEL)
    serial = SubElement(devices, "serial", type="pty")
    SubElement(serial, "alias", name=SERIAL_CONSOLE_ALIAS)
    console = SubElement(devices, "console", type="pty")
    SubElement(console, "target", type="virtio")
    SubElement(console, "alias", name=VIRTUAL_CONSOLE_ALIAS)

    for graphic in config.graphics:
        _graphic(devices, graphic)
    if config.graphics:
        video = SubElement(devices, "video")
        SubElement(video, "model", type="virtio")

    for nic in config.network_interfaces:
        devices.append(render_interface(nic))

    return DomainDefinition(domain)


def refresh_domain_definition(state: "BuildState") -> None:
    """Pull the daemon's canonical XML so generated values become visible."""
    try:
        xml = state.session.domain_get_xml_desc(state.domain)
    except RPCError as exc:
        log("WARN", f"couldn't refresh domain definition: {exc}")
        return
    state.domain_definition.refresh(xml)


@dataclass
class CommunicatorAddressHelper:
    interface_mac: str
    source: int


def make_address_helper(state: "BuildState") -> CommunicatorAddressHelper:
    config = state.config
    iface = state.domain_definition.find_interface(config.communicator_interface)
    if iface is None and config.network_interfaces:
        log("WARN", f"No network interface with alias {config.communicator_interface} in the domain definition")
    return CommunicatorAddressHelper(
        interface_mac=DomainDefinition.interface_mac(iface),
        source=ADDRESS_SOURCES[config.network_address_source],
    )


def format_address(addr: Dict) -> str:
    """Format one libvirt interface address for a communicator to dial."""
    raw = addr["addr"]
    if addr.get("type") != libvirt.VIR_IP_ADDR_TYPE_IPV6:
        return raw
    if ipaddress.ip_address(raw).is_link_local:
        interface = os.environ.get(LINK_LOCAL_INTERFACE_ENV, "")
        if not interface:
            raise BuildError(f"unable to use ipv6 link local address '{raw}' for communication")
        return f"[{raw}%{interface}]"
    return f"[{raw}]"


def communicator_address(state: "BuildState") -> str:
    """Return the host the communicator should connect to."""
    host = state.config.communicator.host
    if host:
        log("DEBUG", f"Using user specified host '{host}' for communication")
        return host

    helper: CommunicatorAddressHelper = state.require("communicator_address_helper")
    domain = state.require("domain")
    if not helper.interface_mac:
        raise BuildError("the communicator interface has no MAC address to look addresses up by")

    interfaces = state.session.domain_interface_addresses(domain, helper.source) or {}
    log("DEBUG", f"Discovered domain interfaces: {interfaces}")
    for details in interfaces.values():
        hwaddr = (details.get("hwaddr") or "").lower()
        if hwaddr != helper.interface_mac:
            continue
        addresses: List[str] = []
        for addr in details.get("addrs") or []:
            try:
                addresses.append(format_address(addr))
            except (BuildError, ValueError) as exc:
                log("DEBUG", str(exc))
        if addresses:
            return random.choice(addresses)
    raise BuildError("no suitable IP address found")


class ConsoleStreamer:
    """Forward a domain console to a local writer until cancelled."""

    def __init__(self, session: "HypervisorSession", domain, alias: str, writer: Optional[BinaryIO] = None) -> None:
        self.session = session
        self.domain = domain
        self.alias = alias
        self.writer = writer or sys.stdout.buffer
        self._task = BackgroundTask(f"console-{alias}", self._pump)
        self._stream = None

    def _pump(self, stop: threading.Event) -> None:
        stream = self._stream
        while not stop.is_set():
            data = stream.recv(4096)
            if data == -2:
                stop.wait(0.1)
                continue
            if not data:
                return
            self.writer.write(data)
            self.writer.flush()

    def start(self) -> "ConsoleStreamer":
        self._stream = self.session.domain_open_console(self.domain, self.alias)
        self._task.start()
        log("DEBUG", f"Streaming console {self.alias}")
        return self

    def stop(self) -> None:
        self._task.stop()
        if self._stream is not None:
            try:
                self._stream.abort()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Closing console stream failed: {exc}")
            self._stream = None
