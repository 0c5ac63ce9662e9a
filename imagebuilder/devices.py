"""Per-build allocation of disk target device names."""

from __future__ import annotations

from typing import Dict, Set

from imagebuilder.constants import BUS_LETTER_SEQUENCES
from imagebuilder.exceptions import ConfigurationError


class DeviceLetterAllocator:
    """Hand out ``sda``, ``sdb``, ``vda``... in request order.

    Buses sharing a prefix (scsi, sata and usb all use ``sd``) share one
    sequence. Names reserved up front are skipped. Nothing wraps around: once
    the alphabet of a bus is used up every further request fails.
    """

    def __init__(self) -> None:
        self._cursor: Dict[str, int] = {}
        self._reserved: Set[str] = set()

    def reserve(self, target_dev: str) -> None:
        self._reserved.add(target_dev)

    def allocate(self, bus: str) -> str:
        try:
            prefix, letters = BUS_LETTER_SEQUENCES[bus]
        except KeyError:
            raise ConfigurationError([f"unsupported disk bus '{bus}'"]) from None
        index = self._cursor.get(prefix, 0)
        while index < len(letters):
            candidate = prefix + letters[index]
            index += 1
            if candidate not in self._reserved:
                self._cursor[prefix] = index
                self._reserved.add(candidate)
                return candidate
        self._cursor[prefix] = index
        raise ConfigurationError(
            [f"no device names left on bus '{bus}': {prefix}{letters[0]}-{prefix}{letters[-1]} are all taken"]
        )
