"""The libvirt RPC session shared by every step of a build."""

from __future__ import annotations

import errno
import os
import selectors
import shutil
import socket
import ssl
import tempfile
import threading
from pathlib import Path
from typing import Callable, Optional, TypeVar
from urllib.parse import quote

try:
    import libvirt  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit(f"libvirt python bindings not available: {exc}")

from imagebuilder.dialers import Dialer, dialer_for_uri
from imagebuilder.exceptions import BuildCancelled, BuildError, HypervisorConnectionError, RPCError
from imagebuilder.tasks import BackgroundTask
from imagebuilder.uri import ConnectionURI
from imagebuilder.utils import log

T = TypeVar("T")

_PUMP_CHUNK = 64 * 1024


class SocketBridge:
    """Expose a dialed stream as a local unix socket that libvirt can open.

    libvirt-python only speaks to sockets it opens itself, so remote transports
    dialed here are pumped through a private listener in a background task.
    """

    def __init__(self, remote) -> None:
        self.remote = remote
        self._tmpdir = Path(tempfile.mkdtemp(prefix="imagebuilder-"))
        self.path = str(self._tmpdir / "libvirt.sock")
        self._listener = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        self._listener.bind(self.path)
        self._listener.listen(1)
        self._task = BackgroundTask("libvirt-bridge", self._serve)

    def start(self) -> "SocketBridge":
        self._task.start()
        return self

    def _serve(self, stop: threading.Event) -> None:
        sel = selectors.DefaultSelector()
        sel.register(self._listener, selectors.EVENT_READ)
        client = None
        try:
            while client is None and not stop.is_set():
                if sel.select(timeout=0.5):
                    client, _ = self._listener.accept()
            if client is None:
                return
            sel.unregister(self._listener)
            sel.register(client, selectors.EVENT_READ, self.remote)
            sel.register(self.remote, selectors.EVENT_READ, client)
            while not stop.is_set():
                for key, _ in sel.select(timeout=0.5):
                    if not self._forward(key.fileobj, key.data):
                        return
        finally:
            sel.close()
            if client is not None:
                client.close()

    @staticmethod
    def _forward(source, sink) -> bool:
        try:
            data = source.recv(_PUMP_CHUNK)
        except ssl.SSLWantReadError:
            return True
        if not data:
            return False
        sink.sendall(data)
        # TLS may hold decrypted records that select() cannot see
        pending = getattr(source, "pending", None)
        while pending is not None and pending():
            sink.sendall(source.recv(pending()))
        return True

    def close(self) -> None:
        self._task.stop()
        self._listener.close()
        try:
            self.remote.close()
        except OSError as exc:
            log("DEBUG", f"Closing remote stream failed: {exc}")
        shutil.rmtree(self._tmpdir, ignore_errors=True)


def _read_handler(stream, nbytes: int, opaque) -> bytes:
    fd, cancel_event = opaque
    if cancel_event is not None and cancel_event.is_set():
        raise BuildCancelled("upload cancelled")
    return os.read(fd, nbytes)


def _hole_handler(stream, opaque):
    """Report whether the current offset is in data and how long the section is."""
    fd = opaque[0]
    cur = os.lseek(fd, 0, os.SEEK_CUR)
    try:
        data = os.lseek(fd, cur, os.SEEK_DATA)
    except OSError as exc:
        if exc.errno != errno.ENXIO:
            raise
        data = -1
    if data < 0:
        in_data = False
        section = os.lseek(fd, 0, os.SEEK_END) - cur
    elif data > cur:
        in_data = False
        section = data - cur
    else:
        in_data = True
        section = os.lseek(fd, data, os.SEEK_HOLE) - data
    os.lseek(fd, cur, os.SEEK_SET)
    return [in_data, section]


def _skip_handler(stream, length: int, opaque) -> int:
    fd = opaque[0]
    return os.lseek(fd, length, os.SEEK_CUR)


class HypervisorSession:
    """Sequential wrapper around one ``virConnect``.

    Every daemon failure leaves here as :class:`RPCError` labelled with the
    operation that failed.
    """

    def __init__(
        self,
        conn,
        uri: ConnectionURI,
        dialer: Optional[Dialer] = None,
        bridge: Optional[SocketBridge] = None,
    ) -> None:
        self.conn = conn
        self.uri = uri
        self._dialer = dialer
        self._bridge = bridge

    @property
    def is_test_driver(self) -> bool:
        return self.get_uri().startswith("test")

    @property
    def connection(self):
        if self.conn is None:
            raise BuildError("libvirt connection not established")
        return self.conn

    def _call(self, label: str, func: Callable[..., T], *args) -> T:
        try:
            return func(*args)
        except libvirt.libvirtError as exc:
            message = exc.get_error_message() if hasattr(exc, "get_error_message") else str(exc)
            raise RPCError(label, message or str(exc)) from exc

    def get_uri(self) -> str:
        return self._call("ConnectGetUri.RPC", self.connection.getURI)

    def close(self) -> None:
        if self.conn is not None:
            try:
                self.conn.close()
            except libvirt.libvirtError as exc:
                log("DEBUG", f"Closing libvirt connection failed: {exc}")
            self.conn = None
        if self._bridge is not None:
            self._bridge.close()
            self._bridge = None
        if self._dialer is not None:
            self._dialer.close()
            self._dialer = None

    # Storage

    def storage_pool_lookup_by_name(self, name: str):
        return self._call("StoragePoolLookupByName.RPC", self.connection.storagePoolLookupByName, name)

    def storage_pool_refresh(self, pool) -> None:
        self._call("StoragePoolRefresh.RPC", pool.refresh, 0)

    def storage_vol_lookup_by_name(self, pool, name: str):
        return self._call("StorageVolLookupByName.RPC", pool.storageVolLookupByName, name)

    def storage_vol_lookup_by_path(self, path: str):
        return self._call("StorageVolLookupByPath.RPC", self.connection.storageVolLookupByPath, path)

    def storage_vol_create_xml(self, pool, xml: str):
        return self._call("StorageVolCreateXML.RPC", pool.createXML, xml, 0)

    def storage_vol_create_xml_from(self, pool, xml: str, source_vol):
        return self._call("StorageVolCreateXMLFrom.RPC", pool.createXMLFrom, xml, source_vol, 0)

    def storage_vol_get_xml_desc(self, vol) -> str:
        return self._call("StorageVolGetXMLDesc.RPC", vol.XMLDesc, 0)

    def storage_vol_resize(self, vol, capacity: int) -> None:
        self._call("StorageVolResize.RPC", vol.resize, capacity, 0)

    def storage_vol_delete(self, vol) -> None:
        self._call("StorageVolDelete.RPC", vol.delete, 0)

    def storage_vol_upload(
        self,
        vol,
        path: Path,
        offset: int = 0,
        length: int = 0,
        sparse: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        """Stream a local file into ``vol``, skipping holes when the platform can see them."""
        sparse = sparse and hasattr(os, "SEEK_DATA")
        flags = libvirt.VIR_STORAGE_VOL_UPLOAD_SPARSE_STREAM if sparse else 0
        stream = self._call("StreamNew.RPC", self.connection.newStream, 0)
        fd = os.open(str(path), os.O_RDONLY)
        try:
            os.lseek(fd, offset, os.SEEK_SET)
            opaque = (fd, cancel_event)
            self._call("StorageVolUpload.RPC", vol.upload, stream, offset, length, flags)
            if sparse:
                self._call(
                    "StorageVolUpload.Stream", stream.sparseSendAll, _read_handler, _hole_handler, _skip_handler, opaque
                )
            else:
                self._call("StorageVolUpload.Stream", stream.sendAll, _read_handler, opaque)
            self._call("StorageVolUpload.Finish", stream.finish)
        except (RPCError, BuildCancelled):
            try:
                stream.abort()
            except libvirt.libvirtError:
                pass
            raise
        finally:
            os.close(fd)

    # Domains

    def domain_lookup_by_name(self, name: str):
        return self._call("DomainLookupByName.RPC", self.connection.lookupByName, name)

    def domain_define_xml(self, xml: str):
        return self._call("DomainDefineXML.RPC", self.connection.defineXML, xml)

    def domain_create_xml(self, xml: str, flags: int = 0):
        return self._call("DomainCreateXML.RPC", self.connection.createXML, xml, flags)

    def domain_create(self, domain) -> None:
        self._call("DomainCreate.RPC", domain.create)

    def domain_destroy(self, domain) -> None:
        self._call("DomainDestroy.RPC", domain.destroy)

    def domain_undefine(self, domain, flags: int = 0) -> None:
        self._call("DomainUndefine.RPC", domain.undefineFlags, flags)

    def domain_get_state(self, domain):
        """Return ``(state, reason)``."""
        state, reason = self._call("DomainGetState.RPC", domain.state, 0)
        return state, reason

    def domain_get_xml_desc(self, domain) -> str:
        return self._call("DomainGetXMLDesc.RPC", domain.XMLDesc, 0)

    def domain_shutdown_flags(self, domain, flags: int) -> None:
        self._call("DomainShutdownFlags.RPC", domain.shutdownFlags, flags)

    def domain_send_key(self, domain, codeset: int, holdtime: int, keycodes) -> None:
        self._call("DomainSendKey.RPC", domain.sendKey, codeset, holdtime, list(keycodes), len(keycodes), 0)

    def domain_open_console(self, domain, alias: Optional[str]):
        stream = self._call("StreamNew.RPC", self.connection.newStream, libvirt.VIR_STREAM_NONBLOCK)
        self._call("DomainOpenConsole.RPC", domain.openConsole, alias, stream, libvirt.VIR_DOMAIN_CONSOLE_FORCE)
        return stream

    def domain_interface_addresses(self, domain, source: int):
        return self._call("DomainInterfaceAddresses.RPC", domain.interfaceAddresses, source, 0)


def _open(target: str):
    log("DEBUG", f"Opening libvirt connection to {target}")
    try:
        conn = libvirt.open(target)
    except libvirt.libvirtError as exc:
        raise HypervisorConnectionError(
            f"error while establishing connection with libvirt daemon: {exc}"
        ) from exc
    if conn is None:
        raise HypervisorConnectionError(f"error while establishing connection with libvirt daemon at {target}")
    return conn


def _unix_target(uri: ConnectionURI, socket_path: str) -> str:
    target = f"{uri.driver}+unix://{uri.path}?socket={quote(socket_path, safe='/')}"
    if uri.param("name"):
        target += f"&name={quote(uri.param('name'), safe=':/')}"
    return target


def connect(raw_uri: str) -> HypervisorSession:
    """Resolve the transport for ``raw_uri`` and open the RPC session over it."""
    uri = ConnectionURI.parse(raw_uri)
    dialer = dialer_for_uri(uri)

    if uri.is_test_driver:
        # The in-process test driver answers regardless of what the transport does
        if uri.transport:
            try:
                dialer.validate()
                dialer.dial().close()
            except (BuildError, OSError) as exc:
                log("DEBUG", f"Ignoring transport failure for test driver: {exc}")
            finally:
                dialer.close()
        conn = _open(f"test://{uri.path or '/default'}")
        return HypervisorSession(conn, uri)

    dialer.validate()
    if not dialer.remote:
        conn = _open(_unix_target(uri, dialer.local_socket))
        log("SUCCESS", f"Connected to libvirt at {uri.name()}")
        return HypervisorSession(conn, uri, dialer=dialer)

    stream = dialer.dial()
    bridge = SocketBridge(stream).start()
    try:
        conn = _open(_unix_target(uri, bridge.path))
    except HypervisorConnectionError:
        bridge.close()
        dialer.close()
        raise
    log("SUCCESS", f"Connected to libvirt at {uri.name()} over {uri.transport}")
    return HypervisorSession(conn, uri, dialer=dialer, bridge=bridge)
