"""Volume sources: the origins a volume's content can be materialized from."""

from __future__ import annotations

import tempfile
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union
from xml.etree.ElementTree import Element, SubElement

import yaml

from imagebuilder.constants import CACHE_DIR, CLOUD_INIT_LABEL
from imagebuilder.definitions import SizeSpec, StorageVolumeDefinition
from imagebuilder.exceptions import BuildError, ConfigurationError, RPCError
from imagebuilder.media import build_floppy, build_iso, stage_files
from imagebuilder.runner import StepAction
from imagebuilder.utils import fetch_cached, log, parse_checksum

if TYPE_CHECKING:  # pragma: no cover
    from imagebuilder.preparation import PreparationContext
    from imagebuilder.volume import Volume

Findings = Tuple[List[str], List[str]]


def _disk_driver(disk: Element, driver_type: str) -> None:
    driver = disk.find("driver")
    if driver is None:
        driver = SubElement(disk, "driver", name="qemu")
    driver.set("type", driver_type)


def _readonly(disk: Element) -> None:
    if disk.find("readonly") is None:
        SubElement(disk, "readonly")


def _relabel(label: str, exc: RPCError) -> RPCError:
    return RPCError(label, str(exc))


class VolumeSource:
    """Capabilities shared by every source variant."""

    type_name = ""
    # every source can size the volume on its own
    size_exempt = True

    def prepare_config(self, volume: "Volume", domain_name: str) -> Findings:
        return [], []

    def update_disk_xml(self, disk: Element) -> None:
        pass

    def update_storage_xml(self, definition: StorageVolumeDefinition) -> None:
        pass

    def materialize(self, ctx: "PreparationContext") -> StepAction:
        raise NotImplementedError


@dataclass
class ExternalSource(VolumeSource):
    """Content downloaded from the first reachable of several URLs."""

    urls: List[str] = field(default_factory=list)
    checksum: Optional[str] = None

    type_name = "external"

    def prepare_config(self, volume, domain_name):
        errors = []
        if not self.urls:
            errors.append("at least 1 URL must be specified for an external volume source")
        try:
            parse_checksum(self.checksum)
        except BuildError as exc:
            errors.append(str(exc))
        return [], errors

    def materialize(self, ctx):
        path = fetch_cached(
            self.urls, CACHE_DIR, self.checksum, label=f"Downloading {ctx.label}", cancel_event=ctx.state.cancel_event
        )
        ctx.state.check_cancelled()
        requested = ctx.definition.capacity
        size = path.stat().st_size

        ctx.definition.allocation = SizeSpec(size, "B")
        ctx.definition.capacity = SizeSpec(size, "B")
        ctx.create_volume()
        ctx.state.check_cancelled()
        ctx.upload(path, sparse=True)
        ctx.refresh_definition()

        if requested is None:
            return StepAction.CONTINUE
        target = requested.bytes
        if target > size:
            log("INFO", f"Resizing volume {ctx.label} to meet capacity {requested}")
            ctx.session.storage_vol_resize(ctx.volume_ref, target)
            ctx.refresh_definition()
        elif target < size:
            log(
                "WARN",
                f"Requested capacity {requested} of {ctx.label} is smaller than the "
                f"downloaded image ({size} bytes); volumes are never shrunk",
            )
        return StepAction.CONTINUE


def _payload(value: Any, header: str = "") -> str:
    if isinstance(value, str):
        return value
    return header + yaml.safe_dump(value, sort_keys=False, default_flow_style=False)


@dataclass
class CloudInitSource(VolumeSource):
    """A NoCloud seed ISO synthesized from meta-data, user-data and network-config."""

    meta_data: Union[str, Dict[str, Any], None] = None
    user_data: Union[str, Dict[str, Any], None] = None
    network_config: Union[str, Dict[str, Any], None] = None

    type_name = "cloud-init"

    def prepare_config(self, volume, domain_name):
        if not volume.name:
            volume.name = f"{domain_name}-cloudinit"
        volume.device = "cdrom"
        volume.readonly = True
        return [], []

    def update_disk_xml(self, disk):
        disk.set("device", "cdrom")
        _disk_driver(disk, "raw")
        _readonly(disk)

    def update_storage_xml(self, definition):
        definition.format = "iso"

    def payloads(self, domain_name: str) -> Dict[str, str]:
        meta_data = self.meta_data
        if meta_data is None:
            meta_data = f"instance_id: {domain_name}\n"
        contents: Dict[str, str] = {}
        meta_text = _payload(meta_data)
        if meta_text:
            contents["meta-data"] = meta_text
        if self.user_data is not None:
            contents["user-data"] = _payload(self.user_data, header="#cloud-config\n")
        if self.network_config is not None:
            contents["network-config"] = _payload(self.network_config)
        return contents

    def materialize(self, ctx):
        log("INFO", f"Assembling CloudInit image {ctx.label}")
        contents = self.payloads(ctx.state.domain_definition.name)
        with tempfile.TemporaryDirectory(prefix="imagebuilder-cidata-") as tmpdir:
            tmp = Path(tmpdir)
            staging = stage_files([], contents, tmp / "cidata")
            iso = build_iso(staging, tmp / "cidata.iso", CLOUD_INIT_LABEL)
            return ctx.create_and_upload(iso)


@dataclass
class BackingStoreSource(VolumeSource):
    """A qcow2 overlay on top of an existing volume."""

    pool: str = ""
    volume: str = ""
    path: str = ""

    type_name = "backing-store"

    def prepare_config(self, volume, domain_name):
        errors = []
        if not self.path:
            if not self.pool:
                errors.append("backing store volume missing pool name")
            if not self.volume:
                errors.append("backing store volume missing volume name")
        elif self.pool or self.volume:
            errors.append("if path is specified on a backing store, no other arguments can be specified")
        return [], errors

    def update_disk_xml(self, disk):
        _disk_driver(disk, "qcow2")

    def update_storage_xml(self, definition):
        definition.format = "qcow2"

    def _lookup(self, ctx):
        session = ctx.session
        if self.path:
            try:
                return session.storage_vol_lookup_by_path(self.path)
            except RPCError as exc:
                raise _relabel("BackingStoreSource.VolumeLookup", exc) from exc
        try:
            pool = session.storage_pool_lookup_by_name(self.pool)
        except RPCError as exc:
            raise _relabel("BackingStoreSource.PoolLookup", exc) from exc
        try:
            return session.storage_vol_lookup_by_name(pool, self.volume)
        except RPCError as exc:
            raise _relabel("BackingStoreSource.VolumeLookup", exc) from exc

    def materialize(self, ctx):
        backing_vol = self._lookup(ctx)
        try:
            backing = StorageVolumeDefinition.from_xml(ctx.session.storage_vol_get_xml_desc(backing_vol))
        except RPCError as exc:
            raise _relabel("BackingStoreSource.GetXMLDescription", exc) from exc

        ctx.definition.set_backing_store(backing.target_path, backing.format, backing.target_permissions)
        if not ctx.volume.capacity:
            ctx.definition.capacity = backing.capacity
        ctx.create_volume()
        ctx.refresh_definition()
        return StepAction.CONTINUE


@dataclass
class CloningSource(VolumeSource):
    """A full server-side copy of an existing volume."""

    pool: str = ""
    volume: str = ""

    type_name = "cloning"

    def prepare_config(self, volume, domain_name):
        errors = []
        if not self.pool:
            errors.append("cloning volume missing pool name")
        if not self.volume:
            errors.append("cloning volume missing volume name")
        return [], errors

    def update_disk_xml(self, disk):
        _disk_driver(disk, "qcow2")

    def update_storage_xml(self, definition):
        definition.format = "qcow2"

    def materialize(self, ctx):
        session = ctx.session
        try:
            pool = session.storage_pool_lookup_by_name(self.pool)
        except RPCError as exc:
            raise _relabel("CloningVolumeSource.PoolLookup", exc) from exc
        try:
            source_vol = session.storage_vol_lookup_by_name(pool, self.volume)
        except RPCError as exc:
            raise _relabel("CloningVolumeSource.VolumeLookup", exc) from exc

        ctx.clone_volume_from(source_vol)
        ctx.refresh_definition()
        return StepAction.CONTINUE


@dataclass
class FilesSource(VolumeSource):
    """Local files and literal contents packed into a CD-ROM or floppy image."""

    files: List[str] = field(default_factory=list)
    contents: Dict[str, str] = field(default_factory=dict)
    label: str = ""
    device: str = ""

    type_name = "files"

    def prepare_config(self, volume, domain_name):
        errors = []
        volume.readonly = True
        self.device = volume.device
        if self.device == "floppy":
            volume.bus = "fdc"
        elif self.device == "cdrom":
            volume.format = "raw"
        else:
            errors.append(f"files source only supports cdrom or floppy devices: '{self.device}' not supported")
        return [], errors

    def update_disk_xml(self, disk):
        if self.device == "floppy":
            _disk_driver(disk, "raw")

    def update_storage_xml(self, definition):
        if self.device == "floppy":
            definition.format = "raw"
        elif self.device == "cdrom":
            definition.format = "iso"

    def materialize(self, ctx):
        kind = "CDROM" if self.device == "cdrom" else "Floppy disk"
        log("INFO", f"Assembling {kind} {ctx.label}")
        with tempfile.TemporaryDirectory(prefix="imagebuilder-files-") as tmpdir:
            tmp = Path(tmpdir)
            staging = stage_files(self.files, self.contents, tmp / "root")
            if self.device == "cdrom":
                image = build_iso(staging, tmp / "files.iso", self.label or "cdrom")
            elif self.device == "floppy":
                image = build_floppy(staging, tmp / "files.img", self.label)
            else:
                raise BuildError(f"Unknown volume device type: {self.device}")
            log("DEBUG", f"Image was created at '{image}'")
            return ctx.create_and_upload(image)


SOURCE_TYPES = {
    "external": ExternalSource,
    "cloud-init": CloudInitSource,
    "cloudinit": CloudInitSource,
    "backing-store": BackingStoreSource,
    "backingstore": BackingStoreSource,
    "backing_store": BackingStoreSource,
    "cloning": CloningSource,
    "files": FilesSource,
}


def parse_volume_source(raw: Optional[Dict[str, Any]]) -> Optional[VolumeSource]:
    """Build the source variant selected by ``raw["type"]``."""
    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigurationError([f"volume source must be a mapping, got {type(raw).__name__}"])
    options = dict(raw)
    type_name = str(options.pop("type", "")).lower()
    source_cls = SOURCE_TYPES.get(type_name)
    if source_cls is None:
        raise ConfigurationError(
            [f"unknown volume source type '{type_name}'; expected one of {', '.join(sorted(set(SOURCE_TYPES)))}"]
        )
    accepted = {f.name for f in fields(source_cls) if f.name != "device"}
    unknown = sorted(set(options) - accepted)
    if unknown:
        raise ConfigurationError([f"unknown option(s) for {type_name} source: {', '.join(unknown)}"])
    if "urls" in options and isinstance(options["urls"], str):
        options["urls"] = [options["urls"]]
    return source_cls(**options)
