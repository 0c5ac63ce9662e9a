"""The volume a successful build leaves behind."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Dict, Optional

from imagebuilder.definitions import StorageVolumeDefinition

BUILDER_ID = "imagebuilder.libvirt"


@dataclass(frozen=True)
class Artifact:
    libvirt_uri: str
    pool: str
    volume_xml: str
    generated_data: Dict[str, Any] = field(default_factory=dict)

    @property
    def builder_id(self) -> str:
        return BUILDER_ID

    @property
    def definition(self) -> StorageVolumeDefinition:
        return StorageVolumeDefinition.from_xml(self.volume_xml)

    @property
    def id(self) -> str:
        return self.definition.key

    @property
    def volume(self) -> str:
        return self.definition.name

    @property
    def format(self) -> str:
        return self.definition.format

    def __str__(self) -> str:
        return f"Libvirt volume {self.pool}/{self.volume} in {self.format} format was generated"

    def state(self, name: str) -> Optional[Any]:
        definition = self.definition
        if name == "Key":
            return definition.key
        if name == "Pool":
            return self.pool
        if name == "Volume":
            return definition.name
        if name == "Allocation":
            return str(definition.allocation.bytes) if definition.allocation else None
        if name in ("Size", "Capacity"):
            return str(definition.capacity.bytes) if definition.capacity else None
        if name == "Physical":
            return str(definition.physical.bytes) if definition.physical else None
        if name == "Format":
            return definition.format
        if name == "RemotePath":
            return definition.target_path
        return self.generated_data.get(name)

    def with_generated_data(self, data: Dict[str, Any]) -> "Artifact":
        return replace(self, generated_data=dict(data))

    def destroy(self, session=None) -> None:
        """Delete the volume, opening a short-lived session when none is given."""
        from imagebuilder.session import connect

        owned = session is None
        if owned:
            session = connect(self.libvirt_uri)
        try:
            pool = session.storage_pool_lookup_by_name(self.pool)
            vol = session.storage_vol_lookup_by_name(pool, self.volume)
            session.storage_vol_delete(vol)
        finally:
            if owned:
                session.close()
