"""Network interface XML generation for imagebuilder."""

from __future__ import annotations

from xml.etree.ElementTree import Element, SubElement

from imagebuilder.constants import DEFAULT_NETWORK
from imagebuilder.exceptions import ConfigurationError
from imagebuilder.models import NetworkInterface


def _common(iface: Element, config: NetworkInterface) -> None:
    if config.mac:
        SubElement(iface, "mac", address=config.mac.lower())
    SubElement(iface, "model", type=config.model)
    if config.alias:
        SubElement(iface, "alias", name=config.alias)


def render_interface(config: NetworkInterface) -> Element:
    """Render a libvirt ``<interface>`` based on the requested network type."""
    if config.type == "managed":
        iface = Element("interface", type="network")
        SubElement(iface, "source", network=config.network or DEFAULT_NETWORK)
        _common(iface, config)
        return iface

    if config.type == "bridge":
        if not config.bridge:
            raise ConfigurationError(["bridge must be set for a bridge network interface"])
        iface = Element("interface", type="bridge")
        SubElement(iface, "source", bridge=config.bridge)
        _common(iface, config)
        return iface

    if config.type == "direct":
        if not config.dev:
            raise ConfigurationError(["dev must be set for a direct network interface"])
        iface = Element("interface", type="direct")
        SubElement(iface, "source", dev=config.dev, mode=config.mode)
        _common(iface, config)
        return iface

    if config.type == "user":
        iface = Element("interface", type="user")
        _common(iface, config)
        return iface

    raise ConfigurationError([f"Unsupported network interface type: {config.type}"])
