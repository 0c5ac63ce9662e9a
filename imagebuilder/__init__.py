"""libvirt image builder package."""

__all__ = [
    "artifact",
    "builder",
    "cli",
    "config",
    "constants",
    "definitions",
    "devices",
    "dialers",
    "domain",
    "exceptions",
    "media",
    "models",
    "network",
    "poller",
    "preparation",
    "runner",
    "session",
    "sources",
    "steps",
    "tasks",
    "uri",
    "volume",
]
