"""Data models for imagebuilder."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional


@dataclass
class NetworkInterface:
    type: str = "managed"
    network: Optional[str] = None
    bridge: Optional[str] = None
    dev: Optional[str] = None
    mode: str = "bridge"
    model: str = "virtio"
    mac: Optional[str] = None
    alias: str = ""


@dataclass
class DomainGraphic:
    type: str
    port: int = 0
    listen: Optional[str] = None
    display: Optional[str] = None


@dataclass
class CommunicatorConfig:
    type: str = "ssh"
    host: str = ""
    port: int = 0
    timeout: float = 300.0
