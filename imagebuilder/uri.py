"""Parsing and rendering of libvirt connection URIs."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict

from imagebuilder.exceptions import MalformedURIError

_URI_RE = re.compile(
    r"^(?P<driver>[a-z]+)(\+(?P<transport>[a-z]+))?://"
    r"(((?P<username>[a-z_][-a-z0-9_]*\$?)@)?(?P<hostname>[-_.a-z0-9]+)(:(?P<port>[0-9]+)?)?)?"
    r"(?P<path>/[-_.a-z0-9]+)?"
    r"(\?(?P<extra>.*))?$"
)

# test:///default and test:///path/to/node.xml
_TEST_URI_RE = re.compile(
    r"^(?P<driver>test)://(?P<path>(default|/[-_.a-z0-9/]+))?(\?(?P<extra>.*))?$"
)


def _parse_extra(raw: str, uri: str) -> Dict[str, str]:
    params: Dict[str, str] = {}
    if not raw:
        return params
    for pair in raw.split("&"):
        key, sep, value = pair.partition("=")
        if not sep or not key or "=" in value:
            raise MalformedURIError(uri)
        params[key] = value
    return params


@dataclass
class ConnectionURI:
    driver: str
    transport: str = ""
    username: str = ""
    hostname: str = ""
    port: str = ""
    path: str = ""
    extra_params: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: str) -> "ConnectionURI":
        match = _URI_RE.match(raw)
        if match is None:
            match = _TEST_URI_RE.match(raw)
            if match is None:
                raise MalformedURIError(raw)
            path = match.group("path") or ""
            if path and not path.startswith("/"):
                path = "/" + path
            return cls(
                driver="test",
                path=path,
                extra_params=_parse_extra(match.group("extra") or "", raw),
            )
        return cls(
            driver=match.group("driver"),
            transport=match.group("transport") or "",
            username=match.group("username") or "",
            hostname=match.group("hostname") or "",
            port=match.group("port") or "",
            path=match.group("path") or "",
            extra_params=_parse_extra(match.group("extra") or "", raw),
        )

    @property
    def is_test_driver(self) -> bool:
        return self.driver == "test"

    def param(self, key: str, default: str = "") -> str:
        return self.extra_params.get(key, default)

    def name(self) -> str:
        """Logical connection name announced to the daemon."""
        explicit = self.extra_params.get("name")
        if explicit:
            return explicit
        return f"{self.driver}://{self.path}"

    def marshal(self) -> str:
        scheme = self.driver if not self.transport else f"{self.driver}+{self.transport}"
        authority = ""
        if self.hostname:
            if self.username:
                authority = f"{self.username}@"
            authority += self.hostname
            if self.port:
                authority += f":{self.port}"
        out = f"{scheme}://{authority}{self.path}"
        if self.extra_params:
            out += "?" + "&".join(f"{k}={v}" for k, v in self.extra_params.items())
        return out

    def __str__(self) -> str:
        return self.marshal()
