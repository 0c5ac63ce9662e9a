"""Tests for imagebuilder.dialers module."""

from __future__ import annotations

import ssl
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from imagebuilder.dialers import (
    SshDialer,
    TcpDialer,
    TlsDialer,
    UnixDialer,
    dialer_for_uri,
)
from imagebuilder.exceptions import ConfigurationError, HypervisorConnectionError
from imagebuilder.uri import ConnectionURI


def _dialer(raw: str):
    return dialer_for_uri(ConnectionURI.parse(raw))


class TestDialerSelection:
    @pytest.mark.parametrize(
        "raw,cls",
        [
            ("qemu:///system", UnixDialer),
            ("qemu+unix:///system", UnixDialer),
            ("qemu+tcp://hv01/system", TcpDialer),
            ("qemu+tls://hv01/system", TlsDialer),
            ("qemu+ssh://root@hv01/system", SshDialer),
        ],
    )
    def test_transport_picks_dialer(self, raw, cls):
        assert type(_dialer(raw)) is cls

    def test_unknown_transport(self):
        with pytest.raises(ConfigurationError, match="unsupported libvirt transport 'libssh'"):
            _dialer("qemu+libssh://root@hv01/system")


class TestUnixDialer:
    def test_default_socket(self):
        dialer = _dialer("qemu:///system")
        assert dialer.local_socket == "/var/run/libvirt/libvirt-sock"
        assert not dialer.remote

    def test_explicit_socket(self):
        assert _dialer("qemu:///system?socket=/tmp/libvirt.sock").local_socket == "/tmp/libvirt.sock"

    def test_direct_mode_uses_driver_daemon(self):
        assert _dialer("qemu:///system?mode=direct").local_socket == "/var/run/libvirt/virtqemud-sock"

    def test_bad_mode(self):
        assert _dialer("qemu:///system?mode=sideways").prepare() == ["unsupported unix socket mode 'sideways'"]

    def test_connect_failure(self, tmp_path):
        dialer = _dialer(f"qemu:///system?socket={tmp_path}/missing.sock")
        with pytest.raises(HypervisorConnectionError, match="cannot connect to"):
            dialer.dial()


class TestTcpDialer:
    def test_requires_hostname(self):
        assert _dialer("qemu+tcp:///system").prepare() == ["tcp transport requires a hostname"]

    def test_default_port(self):
        assert _dialer("qemu+tcp://hv01/system").address == ("hv01", 16509)

    def test_explicit_port(self):
        assert _dialer("qemu+tcp://hv01:1234/system").address == ("hv01", 1234)

    def test_dial_failure_is_connection_error(self):
        with patch("imagebuilder.dialers.socket.create_connection", side_effect=OSError("refused")):
            with pytest.raises(HypervisorConnectionError, match="hv01:16509"):
                _dialer("qemu+tcp://hv01/system").dial()


class TestTlsDialer:
    def test_default_port(self):
        assert _dialer("qemu+tls://hv01/system").address == ("hv01", 16514)

    def test_requires_pkipath(self):
        errors = _dialer("qemu+tls://hv01/system").prepare()
        assert errors == ["tls transport requires 'pkipath' unless no_verify is set"]

    def test_no_verify_skips_pki(self):
        assert _dialer("qemu+tls://hv01/system?no_verify=1").prepare() == []

    def test_reports_missing_pki_files(self, tmp_path):
        (tmp_path / "cacert.pem").write_text("ca")
        errors = _dialer(f"qemu+tls://hv01/system?pkipath={tmp_path}").prepare()
        assert len(errors) == 2
        assert any("clientcert.pem" in err for err in errors)
        assert any("clientkey.pem" in err for err in errors)

    def test_complete_pki(self, tmp_path):
        for name in ("cacert.pem", "clientcert.pem", "clientkey.pem"):
            (tmp_path / name).write_text(name)
        assert _dialer(f"qemu+tls://hv01/system?pkipath={tmp_path}").prepare() == []

    def test_bad_no_verify(self):
        errors = _dialer("qemu+tls://hv01/system?no_verify=yes").prepare()
        assert "no_verify must be an integer (got 'yes')" in errors

    def test_ssl_context_without_verification(self):
        context = _dialer("qemu+tls://hv01/system?no_verify=1").ssl_context()
        assert context.verify_mode == ssl.CERT_NONE
        assert context.check_hostname is False

    def test_handshake_failure(self):
        raw = MagicMock()
        dialer = _dialer("qemu+tls://hv01/system?no_verify=1")
        context = MagicMock()
        context.wrap_socket.side_effect = ssl.SSLError("bad record")
        with patch("imagebuilder.dialers.socket.create_connection", return_value=raw), \
                patch.object(TlsDialer, "ssl_context", return_value=context):
            with pytest.raises(HypervisorConnectionError, match="TLS handshake"):
                dialer.dial()
        raw.close.assert_called_once()


class TestSshDialer:
    def test_prepare_lists_every_problem(self):
        errors = _dialer("qemu+ssh:///system").prepare()
        assert errors == [
            "ssh transport requires a hostname",
            "ssh transport requires a username",
            "ssh transport requires a 'keyfile' parameter",
            "ssh transport requires either no_verify=1 or a 'known_hosts' file",
        ]

    def test_prepare_ok_with_known_hosts(self, tmp_path):
        known_hosts = tmp_path / "known_hosts"
        known_hosts.write_text("")
        dialer = _dialer(f"qemu+ssh://root@hv01/system?keyfile=/k&known_hosts={known_hosts}")
        assert dialer.prepare() == []

    def test_prepare_rejects_missing_known_hosts(self, tmp_path):
        missing = tmp_path / "known_hosts"
        dialer = _dialer(f"qemu+ssh://root@hv01/system?keyfile=/k&known_hosts={missing}")
        assert dialer.prepare() == [f"known_hosts file {missing} does not exist"]

    def test_validate_raises_all_errors(self):
        with pytest.raises(ConfigurationError) as excinfo:
            _dialer("qemu+ssh://hv01/system?no_verify=1").validate()
        assert excinfo.value.errors == [
            "ssh transport requires a username",
            "ssh transport requires a 'keyfile' parameter",
        ]

    @patch("imagebuilder.dialers.paramiko.SSHClient")
    def test_dial_tunnels_remote_socket(self, client_cls):
        client = client_cls.return_value
        channel = client.get_transport.return_value.open_session.return_value
        dialer = _dialer("qemu+ssh://root@hv01:2222/system?keyfile=/k&no_verify=1&socket=/run/libvirt.sock")

        assert dialer.dial() is channel

        client.set_missing_host_key_policy.assert_called_once()
        assert isinstance(client.set_missing_host_key_policy.call_args[0][0], paramiko.AutoAddPolicy)
        kwargs = client.connect.call_args.kwargs
        assert client.connect.call_args.args == ("hv01",)
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "root"
        assert kwargs["key_filename"] == "/k"
        assert kwargs["look_for_keys"] is False
        channel.exec_command.assert_called_once_with("nc -U /run/libvirt.sock")

        dialer.close()
        client.close.assert_called_once()

    @patch("imagebuilder.dialers.paramiko.SSHClient")
    def test_dial_with_known_hosts_rejects_unknown(self, client_cls):
        client = client_cls.return_value
        _dialer("qemu+ssh://root@hv01/system?keyfile=/k&known_hosts=/kh").dial()
        client.load_host_keys.assert_called_once_with("/kh")
        assert isinstance(client.set_missing_host_key_policy.call_args[0][0], paramiko.RejectPolicy)
        assert client.connect.call_args.kwargs["port"] == 22

    @patch("imagebuilder.dialers.paramiko.SSHClient")
    def test_dial_failure(self, client_cls):
        client = client_cls.return_value
        client.connect.side_effect = paramiko.SSHException("auth failed")
        with pytest.raises(HypervisorConnectionError, match="root@hv01:22"):
            _dialer("qemu+ssh://root@hv01/system?keyfile=/k&no_verify=1").dial()
        client.close.assert_called_once()

    @patch("imagebuilder.dialers.paramiko.SSHClient")
    def test_dial_unreadable_known_hosts(self, client_cls):
        client = client_cls.return_value
        client.load_host_keys.side_effect = FileNotFoundError(2, "No such file or directory")
        with pytest.raises(HypervisorConnectionError, match="ssh tunnel to root@hv01:22 failed"):
            _dialer("qemu+ssh://root@hv01/system?keyfile=/k&known_hosts=/kh").dial()
        client.connect.assert_not_called()
        client.close.assert_called_once()
