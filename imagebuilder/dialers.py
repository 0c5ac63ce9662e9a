"""Transport dialers used to reach a libvirt daemon."""

from __future__ import annotations

import os
import shlex
import socket
import ssl
from pathlib import Path
from typing import List, Optional

import paramiko

from imagebuilder.constants import (
    DEFAULT_LIBVIRT_SOCKET,
    DEFAULT_SSH_PORT,
    DEFAULT_TCP_PORT,
    DEFAULT_TLS_PORT,
    DIAL_TIMEOUT,
    DIRECT_SOCKET_TEMPLATE,
    PKI_CA_CERT,
    PKI_CLIENT_CERT,
    PKI_CLIENT_KEY,
)
from imagebuilder.exceptions import ConfigurationError, HypervisorConnectionError
from imagebuilder.uri import ConnectionURI
from imagebuilder.utils import log


def _no_verify(uri: ConnectionURI, errors: List[str]) -> int:
    raw = uri.param("no_verify", "0") or "0"
    try:
        return int(raw)
    except ValueError:
        errors.append(f"no_verify must be an integer (got '{raw}')")
        return 0


class Dialer:
    """Base class: ``prepare`` validates, ``dial`` returns a connected stream."""

    remote = True

    def __init__(self, uri: ConnectionURI) -> None:
        self.uri = uri

    def prepare(self) -> List[str]:
        return []

    def dial(self):
        raise NotImplementedError

    def close(self) -> None:
        pass

    def validate(self) -> None:
        errors = self.prepare()
        if errors:
            raise ConfigurationError(errors)


class UnixDialer(Dialer):
    remote = False

    @property
    def local_socket(self) -> str:
        explicit = self.uri.param("socket")
        if explicit:
            return explicit
        if self.uri.param("mode") == "direct":
            return DIRECT_SOCKET_TEMPLATE.format(driver=self.uri.driver)
        return DEFAULT_LIBVIRT_SOCKET

    def prepare(self) -> List[str]:
        mode = self.uri.param("mode")
        if mode and mode not in ("auto", "direct", "legacy"):
            return [f"unsupported unix socket mode '{mode}'"]
        return []

    def dial(self):
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.connect(self.local_socket)
        except OSError as exc:
            sock.close()
            raise HypervisorConnectionError(f"cannot connect to {self.local_socket}: {exc}") from exc
        return sock


class TcpDialer(Dialer):
    default_port = DEFAULT_TCP_PORT

    @property
    def address(self):
        port = int(self.uri.port) if self.uri.port else self.default_port
        return self.uri.hostname, port

    def prepare(self) -> List[str]:
        if not self.uri.hostname:
            return [f"{self.uri.transport} transport requires a hostname"]
        return []

    def dial(self):
        host, port = self.address
        try:
            return socket.create_connection((host, port), timeout=DIAL_TIMEOUT)
        except OSError as exc:
            raise HypervisorConnectionError(f"cannot reach libvirt daemon at {host}:{port}: {exc}") from exc


class TlsDialer(TcpDialer):
    default_port = DEFAULT_TLS_PORT

    def prepare(self) -> List[str]:
        errors = super().prepare()
        no_verify = _no_verify(self.uri, errors)
        pkipath = self.uri.param("pkipath")
        if no_verify > 0:
            return errors
        if not pkipath:
            errors.append("tls transport requires 'pkipath' unless no_verify is set")
            return errors
        for name in (PKI_CA_CERT, PKI_CLIENT_CERT, PKI_CLIENT_KEY):
            if not (Path(pkipath).expanduser() / name).is_file():
                errors.append(f"pkipath {pkipath} is missing {name}")
        return errors

    def ssl_context(self) -> ssl.SSLContext:
        errors: List[str] = []
        no_verify = _no_verify(self.uri, errors)
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        pkipath = self.uri.param("pkipath")
        if pkipath:
            pki = Path(pkipath).expanduser()
            if (pki / PKI_CLIENT_CERT).is_file():
                context.load_cert_chain(str(pki / PKI_CLIENT_CERT), str(pki / PKI_CLIENT_KEY))
            if no_verify <= 0:
                context.load_verify_locations(cafile=str(pki / PKI_CA_CERT))
        if no_verify > 0:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        priority = self.uri.param("tls_priority")
        if priority:
            log("WARN", f"tls_priority '{priority}' is a GnuTLS setting and is not applied")
        return context

    def dial(self):
        host, port = self.address
        raw = super().dial()
        try:
            return self.ssl_context().wrap_socket(raw, server_hostname=host)
        except (ssl.SSLError, OSError) as exc:
            raw.close()
            raise HypervisorConnectionError(f"TLS handshake with {host}:{port} failed: {exc}") from exc


class SshDialer(Dialer):
    def __init__(self, uri: ConnectionURI) -> None:
        super().__init__(uri)
        self._client: Optional[paramiko.SSHClient] = None

    @property
    def keyfile(self) -> str:
        return os.path.expanduser(self.uri.param("keyfile"))

    @property
    def remote_socket(self) -> str:
        return self.uri.param("socket") or DEFAULT_LIBVIRT_SOCKET

    def prepare(self) -> List[str]:
        errors: List[str] = []
        if not self.uri.hostname:
            errors.append("ssh transport requires a hostname")
        if not self.uri.username:
            errors.append("ssh transport requires a username")
        if not self.uri.param("keyfile"):
            errors.append("ssh transport requires a 'keyfile' parameter")
        no_verify = _no_verify(self.uri, errors)
        known_hosts = self.uri.param("known_hosts")
        if no_verify <= 0:
            if not known_hosts:
                errors.append("ssh transport requires either no_verify=1 or a 'known_hosts' file")
            elif not os.path.isfile(os.path.expanduser(known_hosts)):
                errors.append(f"known_hosts file {known_hosts} does not exist")
        return errors

    def dial(self):
        port = int(self.uri.port) if self.uri.port else DEFAULT_SSH_PORT
        client = paramiko.SSHClient()
        try:
            if _no_verify(self.uri, []) > 0:
                log("WARN", f"Host key checking disabled for {self.uri.hostname}")
                client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            else:
                client.load_host_keys(os.path.expanduser(self.uri.param("known_hosts")))
                client.set_missing_host_key_policy(paramiko.RejectPolicy())
            client.connect(
                self.uri.hostname,
                port=port,
                username=self.uri.username,
                key_filename=self.keyfile,
                look_for_keys=False,
                allow_agent=False,
                timeout=DIAL_TIMEOUT,
            )
            channel = client.get_transport().open_session()
            channel.exec_command(f"nc -U {shlex.quote(self.remote_socket)}")
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise HypervisorConnectionError(
                f"ssh tunnel to {self.uri.username}@{self.uri.hostname}:{port} failed: {exc}"
            ) from exc
        self._client = client
        log("DEBUG", f"Tunnelling {self.remote_socket} over ssh to {self.uri.hostname}:{port}")
        return channel

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


_DIALERS = {
    "": UnixDialer,
    "unix": UnixDialer,
    "tcp": TcpDialer,
    "tls": TlsDialer,
    "ssh": SshDialer,
}


def dialer_for_uri(uri: ConnectionURI) -> Dialer:
    try:
        dialer_cls = _DIALERS[uri.transport]
    except KeyError:
        raise ConfigurationError([f"unsupported libvirt transport '{uri.transport}'"]) from None
    return dialer_cls(uri)
