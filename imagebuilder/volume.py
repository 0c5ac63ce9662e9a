"""Volume configuration and its preparation against a storage pool."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
from xml.etree.ElementTree import Element, SubElement

from imagebuilder.constants import ALIAS_PREFIX, DEFAULT_BUS, DEFAULT_POOL
from imagebuilder.definitions import StorageVolumeDefinition, parse_size
from imagebuilder.devices import DeviceLetterAllocator
from imagebuilder.exceptions import BuildCancelled, BuildError, ConfigurationError, RPCError
from imagebuilder.preparation import PreparationContext
from imagebuilder.runner import StepAction
from imagebuilder.sources import VolumeSource, parse_volume_source
from imagebuilder.utils import log, random_id

DEVICE_KINDS = ("disk", "cdrom", "floppy")


@dataclass
class Volume:
    pool: str = ""
    name: str = ""
    source: Optional[VolumeSource] = None
    size: str = ""
    capacity: str = ""
    bus: str = ""
    target_dev: str = ""
    alias: str = ""
    format: str = ""
    device: str = "disk"
    readonly: bool = False
    extra: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Volume":
        options = dict(raw)
        source = parse_volume_source(options.pop("source", None))
        known = {name for name in cls.__dataclass_fields__ if name not in ("source", "extra")}
        kwargs = {key: options.pop(key) for key in list(options) if key in known}
        for key in ("size", "capacity"):
            if key in kwargs and kwargs[key] is not None:
                kwargs[key] = str(kwargs[key])
        return cls(source=source, extra=options, **kwargs)

    @property
    def plain_alias(self) -> str:
        if self.alias.startswith(ALIAS_PREFIX):
            return self.alias[len(ALIAS_PREFIX):]
        return self.alias

    def prepare_config(self, domain_name: str) -> Tuple[List[str], List[str]]:
        """Fill defaults and validate. Safe to call more than once."""
        warnings: List[str] = []
        errors: List[str] = []

        if self.extra:
            errors.append(f"unknown volume option(s): {', '.join(sorted(self.extra))}")
        if self.device not in DEVICE_KINDS:
            errors.append(f"unsupported volume device '{self.device}'; expected one of {', '.join(DEVICE_KINDS)}")

        plain_alias = self.plain_alias
        if plain_alias:
            self.alias = ALIAS_PREFIX + plain_alias

        if not self.pool:
            self.pool = DEFAULT_POOL
            warnings.append(f"Pool isn't set for volume {self.name or plain_alias}, using the '{self.pool}' pool")

        if self.source is not None:
            source_warnings, source_errors = self.source.prepare_config(self, domain_name)
            warnings.extend(source_warnings)
            errors.extend(source_errors)

        if not self.bus and not self.target_dev:
            self.bus = DEFAULT_BUS
            warnings.append(f"Bus and target_dev aren't set for volume {self.pool}/{self.name or plain_alias}, using bus={self.bus}")

        if not self.name:
            self.name = f"{domain_name}-{self.alias or random_id()}"
            warnings.append(f"Volume name was not set, using '{self.name}' as volume name instead.")

        size_exempt = self.source is not None and self.source.size_exempt
        if not self.size and not self.capacity and not size_exempt:
            errors.append(f"at least one of size or capacity must be set for volume {self.pool}/{self.name}")
        if not self.size:
            self.size = self.capacity
        if not self.capacity:
            self.capacity = self.size
        for label, raw in (("size", self.size), ("capacity", self.capacity)):
            if raw:
                try:
                    parse_size(raw)
                except ConfigurationError as exc:
                    errors.append(f"couldn't understand volume {label} for {self.pool}/{self.name}: {exc}")

        return warnings, errors

    def assign_target_dev(self, letters: DeviceLetterAllocator) -> None:
        if not self.target_dev:
            self.target_dev = letters.allocate(self.bus or DEFAULT_BUS)

    def storage_definition(self) -> StorageVolumeDefinition:
        definition = StorageVolumeDefinition()
        definition.name = self.name
        if self.capacity:
            definition.capacity = parse_size(self.capacity)
        if self.size:
            definition.allocation = parse_size(self.size)
        if self.format:
            definition.format = self.format
        if self.source is not None:
            self.source.update_storage_xml(definition)
        return definition

    def disk_xml(self) -> Element:
        disk = Element("disk", type="volume", device=self.device)
        if self.format:
            SubElement(disk, "driver", name="qemu", type=self.format)
        SubElement(disk, "source", pool=self.pool, volume=self.name)
        target = {}
        if self.target_dev:
            target["dev"] = self.target_dev
        if self.bus:
            target["bus"] = self.bus
        if target:
            SubElement(disk, "target", **target)
        if self.readonly:
            SubElement(disk, "readonly")
        if self.alias:
            SubElement(disk, "alias", name=self.alias)
        if self.source is not None:
            self.source.update_disk_xml(disk)
        return disk

    def prepare(self, ctx: PreparationContext) -> StepAction:
        """Look up, materialize or create the volume described here."""
        log("INFO", f"Preparing volume {self.pool}/{self.name}")
        session = ctx.session
        try:
            ctx.pool = session.storage_pool_lookup_by_name(self.pool)
        except RPCError as exc:
            return ctx.halt_on_error(f"Error while looking up storage pool {self.pool}: {exc}")

        ctx.definition = self.storage_definition()

        if self.source is None:
            try:
                ctx.volume_ref = session.storage_vol_lookup_by_name(ctx.pool, self.name)
                ctx.created = False
            except RPCError as exc:
                if not ctx.is_artifact:
                    return ctx.halt_on_error(f"Error while looking up volume {self.pool}/{self.name}: {exc}")
                log("DEBUG", f"Artifact volume {self.pool}/{self.name} does not exist yet")
        else:
            try:
                action = self.source.materialize(ctx)
            except BuildCancelled:
                raise
            except (BuildError, OSError) as exc:
                return ctx.halt_on_error(exc)
            if action is not StepAction.CONTINUE:
                return action

        if ctx.volume_ref is None:
            try:
                ctx.create_volume()
            except BuildError as exc:
                return ctx.halt_on_error(f"Error while creating volume {self.pool}/{self.name}: {exc}")

        return StepAction.CONTINUE
