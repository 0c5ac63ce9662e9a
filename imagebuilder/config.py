"""Build configuration: YAML loading, defaults and aggregated validation."""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from imagebuilder.constants import (
    ALIAS_PREFIX,
    BOOT_DEVICES,
    COMMUNICATOR_PORTS,
    COMMUNICATOR_TYPES,
    DEFAULT_ARCH,
    DEFAULT_ARTIFACT_ALIAS,
    DEFAULT_COMMUNICATOR_INTERFACE,
    DEFAULT_COMMUNICATOR_TIMEOUT,
    DEFAULT_DOMAIN_PREFIX,
    DEFAULT_DOMAIN_TYPE,
    DEFAULT_MEMORY_MIB,
    DEFAULT_NIC_MODEL,
    DEFAULT_SHUTDOWN_TIMEOUT,
    DEFAULT_VCPU,
    LIBVIRT_URI,
    NETWORK_ADDRESS_SOURCES,
    NETWORK_TYPES,
    SHUTDOWN_MODES,
)
from imagebuilder.devices import DeviceLetterAllocator
from imagebuilder.dialers import dialer_for_uri
from imagebuilder.exceptions import BuildError, ConfigurationError
from imagebuilder.models import CommunicatorConfig, DomainGraphic, NetworkInterface
from imagebuilder.uri import ConnectionURI
from imagebuilder.utils import log, parse_duration, random_id
from imagebuilder.volume import Volume

GRAPHIC_TYPES = ("vnc", "sdl")


def _prefixed(alias: str) -> str:
    if not alias or alias.startswith(ALIAS_PREFIX):
        return alias
    return ALIAS_PREFIX + alias


def _build(cls, raw: Dict[str, Any], what: str, errors: List[str]):
    if not isinstance(raw, dict):
        errors.append(f"{what} must be a mapping")
        return None
    known = {f.name for f in fields(cls)}
    unknown = sorted(set(raw) - known)
    if unknown:
        errors.append(f"unknown {what} option(s): {', '.join(unknown)}")
    try:
        return cls(**{k: v for k, v in raw.items() if k in known})
    except TypeError as exc:
        errors.append(f"invalid {what}: {exc}")
        return None


@dataclass
class BuildConfig:
    libvirt_uri: str = LIBVIRT_URI
    domain_name: str = ""
    description: str = ""
    domain_type: str = ""
    arch: str = ""
    chipset: str = ""
    cpu_mode: str = ""
    memory: int = DEFAULT_MEMORY_MIB
    vcpu: int = DEFAULT_VCPU
    boot_devices: List[str] = field(default_factory=list)
    loader_path: str = ""
    loader_type: str = ""
    secure_boot: bool = False
    nvram_path: str = ""
    nvram_template: str = ""
    graphics: List[DomainGraphic] = field(default_factory=list)
    network_interfaces: List[NetworkInterface] = field(default_factory=list)
    volumes: List[Volume] = field(default_factory=list)
    communicator: CommunicatorConfig = field(default_factory=CommunicatorConfig)
    communicator_interface: str = ""
    network_address_source: str = ""
    artifact_volume_alias: str = ""
    shutdown_mode: str = ""
    shutdown_timeout: Any = DEFAULT_SHUTDOWN_TIMEOUT
    graceful_shutdown: bool = True
    persistent_domain: bool = False

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BuildConfig":
        """Turn a parsed YAML mapping into a config; structural problems are raised together."""
        if not isinstance(raw, dict):
            raise ConfigurationError(["build configuration must be a mapping"])
        errors: List[str] = []
        options = dict(raw)

        volumes = []
        for index, item in enumerate(options.pop("volumes", None) or []):
            if not isinstance(item, dict):
                errors.append(f"volume #{index} must be a mapping")
                continue
            try:
                volumes.append(Volume.from_dict(item))
            except ConfigurationError as exc:
                errors.extend(f"volume #{index}: {err}" for err in exc.errors)

        interfaces = [
            _build(NetworkInterface, item, "network interface", errors)
            for item in options.pop("network_interfaces", None) or []
        ]
        graphics = [_build(DomainGraphic, item, "graphics", errors) for item in options.pop("graphics", None) or []]
        communicator = _build(CommunicatorConfig, options.pop("communicator", None) or {}, "communicator", errors)

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(options) - known)
        if unknown:
            errors.append(f"unknown configuration option(s): {', '.join(unknown)}")
        if errors:
            raise ConfigurationError(errors)

        config = cls(**{k: v for k, v in options.items() if k in known})
        config.volumes = volumes
        config.network_interfaces = [i for i in interfaces if i is not None]
        config.graphics = [g for g in graphics if g is not None]
        config.communicator = communicator or CommunicatorConfig()
        return config

    def prepare(self, letters: Optional[DeviceLetterAllocator] = None) -> List[str]:
        """Fill in defaults and validate everything at once.

        Returns the warnings; raises :class:`ConfigurationError` with every
        problem found.
        """
        warnings: List[str] = []
        errors: List[str] = []

        if not isinstance(self.libvirt_uri, str):
            errors.append(f"libvirt_uri must be a string (got {self.libvirt_uri!r})")
        else:
            try:
                uri = ConnectionURI.parse(self.libvirt_uri)
                errors.extend(dialer_for_uri(uri).prepare())
            except ConfigurationError as exc:
                errors.extend(exc.errors)

        if not self.domain_name:
            self.domain_name = f"{DEFAULT_DOMAIN_PREFIX}-{random_id(20)}"
        self.domain_type = self.domain_type or DEFAULT_DOMAIN_TYPE
        self.arch = self.arch or DEFAULT_ARCH

        for label in ("memory", "vcpu"):
            value = getattr(self, label)
            if not isinstance(value, int) or value < 1:
                errors.append(f"{label} must be a positive integer (got {value!r})")

        if not self.boot_devices:
            self.boot_devices = ["hd"]
        for device in self.boot_devices:
            if device not in BOOT_DEVICES:
                errors.append(f"unknown boot device: {device}")

        for graphic in self.graphics:
            if graphic.type not in GRAPHIC_TYPES:
                errors.append(f"unsupported graphics type '{graphic.type}'")

        if self.secure_boot and not self.loader_path:
            warnings.append("secure_boot is set without loader_path; libvirt will pick the firmware")

        self._prepare_network_interfaces(errors)
        self._prepare_communicator(warnings, errors)
        self._prepare_volumes(letters or DeviceLetterAllocator(), warnings, errors)

        if not self.network_address_source:
            self.network_address_source = "agent"
            warnings.append(
                "No network_address_source was specified, defaulting to agent. This might hang "
                "your build when there is no qemu guest agent running in the domain"
            )
        if self.network_address_source not in NETWORK_ADDRESS_SOURCES:
            errors.append(f"unrecognized network address source '{self.network_address_source}'")

        self.shutdown_mode = self.shutdown_mode or "auto"
        if self.shutdown_mode not in SHUTDOWN_MODES:
            errors.append(f"unrecognized shutdown mode '{self.shutdown_mode}'")
        try:
            self.shutdown_timeout = parse_duration(self.shutdown_timeout)
        except BuildError as exc:
            errors.append(f"shutdown_timeout: {exc}")
        else:
            if self.shutdown_timeout <= 0:
                self.shutdown_timeout = DEFAULT_SHUTDOWN_TIMEOUT

        for warning in warnings:
            log("WARN", warning)
        if errors:
            raise ConfigurationError(errors)
        return warnings

    def _prepare_network_interfaces(self, errors: List[str]) -> None:
        for nic in self.network_interfaces:
            if nic.type not in NETWORK_TYPES:
                errors.append(f"unsupported network interface type '{nic.type}'")
            elif nic.type == "bridge" and not nic.bridge:
                errors.append("bridge must be set for a bridge network interface")
            elif nic.type == "direct" and not nic.dev:
                errors.append("dev must be set for a direct network interface")
            nic.model = nic.model or DEFAULT_NIC_MODEL
            nic.alias = _prefixed(nic.alias)

    def _prepare_communicator(self, warnings: List[str], errors: List[str]) -> None:
        comm = self.communicator
        if comm.type not in COMMUNICATOR_TYPES:
            errors.append(f"unsupported communicator type '{comm.type}'")
        elif not comm.port and comm.type in COMMUNICATOR_PORTS:
            comm.port = COMMUNICATOR_PORTS[comm.type]
        try:
            comm.timeout = parse_duration(comm.timeout or DEFAULT_COMMUNICATOR_TIMEOUT)
        except BuildError as exc:
            errors.append(f"communicator timeout: {exc}")

        explicit = self.communicator_interface
        self.communicator_interface = _prefixed(explicit or DEFAULT_COMMUNICATOR_INTERFACE)
        if not self.network_interfaces:
            warnings.append("No network interface defined")
            return
        if any(nic.alias == self.communicator_interface for nic in self.network_interfaces):
            return
        if explicit:
            errors.append(f"no network_interface found with alias '{explicit}'")
        else:
            warnings.append("using first network interface found as communicator interface")
            self.network_interfaces[0].alias = self.communicator_interface

    def _prepare_volumes(self, letters: DeviceLetterAllocator, warnings: List[str], errors: List[str]) -> None:
        if not self.volumes:
            errors.append("no volume has been specified")
            return

        for volume in self.volumes:
            vol_warnings, vol_errors = volume.prepare_config(self.domain_name)
            warnings.extend(vol_warnings)
            errors.extend(vol_errors)

        explicit = self.artifact_volume_alias
        self.artifact_volume_alias = _prefixed(explicit or DEFAULT_ARTIFACT_ALIAS)
        if not any(v.alias == self.artifact_volume_alias for v in self.volumes):
            if explicit:
                errors.append(f"no volume found with alias '{explicit}'")
            elif len(self.volumes) == 1:
                warnings.append("Using the only defined volume as an artifact")
                self.volumes[0].alias = self.artifact_volume_alias
            else:
                errors.append("please specify an alias for a volume and set artifact_volume_alias on the builder")

        # explicit names first so auto-assigned ones never collide with them
        for volume in self.volumes:
            if volume.target_dev:
                letters.reserve(volume.target_dev)
        for volume in self.volumes:
            try:
                volume.assign_target_dev(letters)
            except ConfigurationError as exc:
                errors.extend(exc.errors)

    def is_artifact(self, volume: Volume) -> bool:
        return volume.alias == self.artifact_volume_alias


def load_config(path: Path) -> BuildConfig:
    try:
        with Path(path).open(encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
    except OSError as exc:
        raise ConfigurationError([f"cannot read configuration {path}: {exc}"]) from exc
    except yaml.YAMLError as exc:
        raise ConfigurationError([f"invalid YAML in {path}: {exc}"]) from exc
    return BuildConfig.from_dict(raw)
