"""Global constants and environment-driven settings for imagebuilder."""

from __future__ import annotations

import os
from pathlib import Path

TRUTHY = {"1", "true", "yes", "on"}

LIBVIRT_URI = os.environ.get("LIBVIRT_URI", "qemu:///system")
_LOG_VERBOSE = os.environ.get("IMAGEBUILDER_LOG_VERBOSE", "").lower() in TRUTHY
CACHE_DIR = Path(
    os.environ.get("IMAGEBUILDER_CACHE_DIR", str(Path.home() / ".cache" / "imagebuilder"))
)
STREAM_CONSOLE_ALIAS = os.environ.get("IMAGEBUILDER_STREAM_CONSOLE", "")
LINK_LOCAL_INTERFACE_ENV = "IMAGEBUILDER_LINK_LOCAL_INTERFACE"

# libvirt restricts user aliases to names starting with this prefix
ALIAS_PREFIX = "ua-"

# Connection
DEFAULT_LIBVIRT_SOCKET = "/var/run/libvirt/libvirt-sock"
DIRECT_SOCKET_TEMPLATE = "/var/run/libvirt/virt{driver}d-sock"
DEFAULT_TCP_PORT = 16509
DEFAULT_TLS_PORT = 16514
DEFAULT_SSH_PORT = 22
DIAL_TIMEOUT = 30.0
PKI_CA_CERT = "cacert.pem"
PKI_CLIENT_CERT = "clientcert.pem"
PKI_CLIENT_KEY = "clientkey.pem"
URI_PARAMS = (
    "name",
    "tls_priority",
    "mode",
    "socket",
    "keyfile",
    "no_verify",
    "known_hosts",
    "pkipath",
)

# Storage
DEFAULT_POOL = "default"
DEFAULT_BUS = "scsi"
CLOUD_INIT_LABEL = "cidata"
FLOPPY_MAX_BYTES = 1474560
UPLOAD_CHUNK_SIZE = 256 * 1024

SIZE_UNITS = {
    "": "B",
    "k": "KiB",
    "kb": "KiB",
    "kB": "KiB",
    "M": "MiB",
    "Mb": "MiB",
    "MB": "MiB",
    "G": "GiB",
    "Gb": "GiB",
    "GB": "GiB",
}
UNIT_MULTIPLIERS = {
    "B": 1,
    "bytes": 1,
    "KiB": 1024,
    "K": 1024,
    "k": 1024,
    "MiB": 1024 ** 2,
    "M": 1024 ** 2,
    "GiB": 1024 ** 3,
    "G": 1024 ** 3,
    "TiB": 1024 ** 4,
    "T": 1024 ** 4,
    "KB": 1000,
    "MB": 1000 ** 2,
    "GB": 1000 ** 3,
    "TB": 1000 ** 4,
}

# Device-name prefix and available letters per disk bus
_ALPHABET = "abcdefghijklmnopqrstuvwxyz"
BUS_LETTER_SEQUENCES = {
    "scsi": ("sd", _ALPHABET),
    "sata": ("sd", _ALPHABET),
    "usb": ("sd", _ALPHABET),
    "ide": ("hd", _ALPHABET),
    "fdc": ("fd", "abcd"),
    "virtio": ("vd", _ALPHABET),
}

# Domain
DEFAULT_DOMAIN_PREFIX = "imagebuilder"
DEFAULT_DOMAIN_TYPE = "kvm"
DEFAULT_ARCH = "x86_64"
DEFAULT_MEMORY_MIB = 512
DEFAULT_VCPU = 1
BOOT_DEVICES = ("hd", "network", "cdrom")
NETWORK_TYPES = ("managed", "bridge", "direct", "user")
DEFAULT_NETWORK = "default"
DEFAULT_NIC_MODEL = "virtio"
DEFAULT_COMMUNICATOR_INTERFACE = "communicator"
DEFAULT_ARTIFACT_ALIAS = "artifact"
SERIAL_CONSOLE_ALIAS = ALIAS_PREFIX + "serial-console"
VIRTUAL_CONSOLE_ALIAS = ALIAS_PREFIX + "virtual-console"
GUEST_AGENT_CHANNEL = "org.qemu.guest_agent.0"
SHUTDOWN_MODES = ("auto", "acpi", "guest", "initctl", "signal", "paravirt")
NETWORK_ADDRESS_SOURCES = ("agent", "lease", "arp")

# Timing
DEFAULT_SHUTDOWN_TIMEOUT = 300.0
STATE_POLL_PERIOD = 5.0
COMMUNICATOR_PORTS = {"ssh": 22, "winrm": 5985}
COMMUNICATOR_TYPES = ("ssh", "winrm", "none")
DEFAULT_COMMUNICATOR_TIMEOUT = 300.0
COMMUNICATOR_RETRY_INTERVAL = 5.0
