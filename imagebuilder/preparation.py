"""Per-volume transient state while a volume is being materialized."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Optional

from imagebuilder.definitions import SizeSpec, StorageVolumeDefinition
from imagebuilder.exceptions import BuildError, RPCError
from imagebuilder.runner import BuildState, StepAction
from imagebuilder.utils import log

if TYPE_CHECKING:  # pragma: no cover
    from imagebuilder.session import HypervisorSession
    from imagebuilder.volume import Volume


@dataclass
class PreparationContext:
    state: BuildState
    volume: "Volume"
    is_artifact: bool = False
    pool: Any = None
    volume_ref: Any = None
    definition: Optional[StorageVolumeDefinition] = None
    created: bool = False

    @property
    def session(self) -> "HypervisorSession":
        return self.state.session

    @property
    def label(self) -> str:
        return f"{self.volume.pool}/{self.volume.name}"

    def halt_on_error(self, error) -> StepAction:
        return self.state.halt_on_error(error)

    def create_volume(self) -> None:
        if self.volume_ref is not None:
            raise BuildError(f"CreateVolume: volume {self.label} already exists")
        xml = self.definition.marshal()
        log("DEBUG", f"Volume definition XML:\n{xml}")
        self.volume_ref = self.session.storage_vol_create_xml(self.pool, xml)
        self.created = True
        log("INFO", f"Created volume {self.label}")

    def clone_volume_from(self, source_vol) -> None:
        if self.volume_ref is not None:
            raise BuildError(f"CreateVolumeFrom: volume {self.label} already exists")
        if self.definition.has_backing_store:
            raise BuildError("can't simultaneously clone a volume and use a backing store")
        xml = self.definition.marshal()
        log("DEBUG", f"Volume definition XML:\n{xml}")
        self.volume_ref = self.session.storage_vol_create_xml_from(self.pool, xml, source_vol)
        self.created = True
        log("INFO", f"Cloned volume {self.label}")

    def refresh_definition(self) -> None:
        """Re-read the daemon's view; failures are logged and tolerated."""
        try:
            xml = self.session.storage_vol_get_xml_desc(self.volume_ref)
        except RPCError as exc:
            log("DEBUG", f"Error while refreshing volume definition: {exc}")
            return
        self.definition = StorageVolumeDefinition.from_xml(xml)

    def upload(self, path: Path, sparse: bool = False) -> None:
        """Upload ``path`` into the live volume.

        The test driver cannot receive uploads, which is only worth a warning.
        """
        size = path.stat().st_size
        try:
            self.session.storage_vol_upload(
                self.volume_ref, path, 0, size, sparse=sparse, cancel_event=self.state.cancel_event
            )
        except RPCError as exc:
            if not self.session.is_test_driver:
                raise
            log("WARN", f"Error during volume streaming: {exc}")
            return
        log("INFO", f"Uploaded {size} bytes to {self.label}")

    def create_and_upload(self, path: Path) -> StepAction:
        """Size the volume exactly to ``path``, create it and stream the file in."""
        self.definition.capacity = SizeSpec(path.stat().st_size, "B")
        self.definition.allocation = None
        self.create_volume()
        self.upload(path)
        self.refresh_definition()
        return StepAction.CONTINUE
