"""Tests for imagebuilder.utils module."""

from __future__ import annotations

import hashlib
import threading
from unittest.mock import MagicMock, patch

import pytest

from imagebuilder.exceptions import BuildCancelled, BuildError
from imagebuilder.utils import (
    download_file,
    fetch_cached,
    get_env,
    get_env_bool,
    log,
    parse_checksum,
    parse_duration,
    random_id,
    verify_checksum,
)


class TestLog:
    def test_info(self, capsys):
        log("INFO", "hello")
        assert "[INFO]" in capsys.readouterr().out

    def test_debug_hidden_by_default(self, capsys):
        with patch("imagebuilder.utils._LOG_VERBOSE", False):
            log("DEBUG", "noise")
        assert capsys.readouterr().out == ""

    def test_debug_when_verbose(self, capsys):
        with patch("imagebuilder.utils._LOG_VERBOSE", True):
            log("DEBUG", "detail")
        assert "detail" in capsys.readouterr().out


class TestEnv:
    def test_get_env(self, monkeypatch):
        monkeypatch.setenv("IMAGEBUILDER_TEST_VAR", "x")
        assert get_env("IMAGEBUILDER_TEST_VAR") == "x"
        assert get_env("IMAGEBUILDER_TEST_MISSING", "d") == "d"

    @pytest.mark.parametrize("raw,expected", [("1", True), ("yes", True), ("ON", True), ("0", False), ("", False)])
    def test_get_env_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("IMAGEBUILDER_TEST_FLAG", raw)
        assert get_env_bool("IMAGEBUILDER_TEST_FLAG") is expected

    def test_get_env_bool_default(self, monkeypatch):
        monkeypatch.delenv("IMAGEBUILDER_TEST_FLAG", raising=False)
        assert get_env_bool("IMAGEBUILDER_TEST_FLAG", True) is True


class TestParseDuration:
    @pytest.mark.parametrize(
        "raw,seconds",
        [(300, 300.0), (1.5, 1.5), ("300", 300.0), ("90s", 90.0), ("5m", 300.0), ("1h30m", 5400.0)],
    )
    def test_valid(self, raw, seconds):
        assert parse_duration(raw) == seconds

    @pytest.mark.parametrize("raw", ["", "soon", "5 minutes"])
    def test_invalid(self, raw):
        with pytest.raises(BuildError, match="Invalid duration"):
            parse_duration(raw)


class TestChecksum:
    @pytest.mark.parametrize("raw", [None, "", "none", "NONE"])
    def test_disabled(self, raw):
        assert parse_checksum(raw) is None

    def test_explicit_algorithm(self):
        assert parse_checksum("SHA256:ABCD") == ("sha256", "abcd")

    def test_inferred_from_length(self):
        assert parse_checksum("a" * 64) == ("sha256", "a" * 64)
        assert parse_checksum("a" * 32) == ("md5", "a" * 32)

    def test_checksum_file_rejected(self):
        with pytest.raises(BuildError, match="checksum files are not supported"):
            parse_checksum("file:https://example.com/SHA256SUMS")

    def test_unknown_algorithm(self):
        with pytest.raises(BuildError, match="Unsupported checksum type"):
            parse_checksum("crc99:abcd")

    def test_verify(self, tmp_path):
        path = tmp_path / "blob"
        path.write_bytes(b"payload")
        digest = hashlib.sha256(b"payload").hexdigest()
        verify_checksum(path, f"sha256:{digest}")
        with pytest.raises(BuildError, match="Checksum mismatch"):
            verify_checksum(path, "sha256:" + "0" * 64)


class TestDownloads:
    def test_local_copy(self, tmp_path):
        source = tmp_path / "src.img"
        source.write_bytes(b"image")
        target = tmp_path / "dst.img"
        download_file(f"file://{source}", target)
        assert target.read_bytes() == b"image"

    def test_missing_local_source(self, tmp_path):
        with pytest.raises(BuildError, match="does not exist"):
            download_file(str(tmp_path / "missing"), tmp_path / "dst")

    def test_fetch_cached_falls_back_to_next_url(self, tmp_path):
        good = tmp_path / "good.img"
        good.write_bytes(b"image")
        cache = tmp_path / "cache"
        path = fetch_cached([str(tmp_path / "missing.img"), str(good)], cache, None, "Downloading")
        assert path.parent == cache
        assert path.read_bytes() == b"image"

    def test_fetch_cached_reuses_cache(self, tmp_path):
        good = tmp_path / "good.img"
        good.write_bytes(b"image")
        cache = tmp_path / "cache"
        first = fetch_cached([str(good)], cache, None, "Downloading")
        with patch("imagebuilder.utils.download_file") as download:
            second = fetch_cached([str(good)], cache, None, "Downloading")
        download.assert_not_called()
        assert first == second

    def test_fetch_cached_reports_every_failure(self, tmp_path):
        with pytest.raises(BuildError, match="none of the 2 source URL"):
            fetch_cached([str(tmp_path / "a"), str(tmp_path / "b")], tmp_path / "cache", None, "Downloading")

    def test_checksum_mismatch_is_a_failure(self, tmp_path):
        good = tmp_path / "good.img"
        good.write_bytes(b"image")
        with pytest.raises(BuildError, match="Checksum mismatch"):
            fetch_cached([str(good)], tmp_path / "cache", "md5:" + "0" * 32, "Downloading")

    def test_download_stops_when_cancelled(self, tmp_path):
        event = threading.Event()
        reads = []

        def read(size):
            reads.append(size)
            event.set()
            return b"\1" * size

        response = MagicMock()
        response.headers = {"Content-Length": str(100 * 256 * 1024)}
        response.read.side_effect = read
        target = tmp_path / "dst.img"
        with patch("imagebuilder.utils.urlopen", return_value=response):
            with pytest.raises(BuildCancelled):
                download_file("http://mirror.example/disk.qcow2", target, cancel_event=event)
        assert len(reads) == 1
        assert list(tmp_path.iterdir()) == []

    def test_fetch_cached_does_not_fall_back_after_cancel(self, tmp_path):
        with patch("imagebuilder.utils.download_file", side_effect=BuildCancelled()) as download:
            with pytest.raises(BuildCancelled):
                fetch_cached(["http://a/x.img", "http://b/x.img"], tmp_path / "cache", None, "Downloading")
        download.assert_called_once()


def test_random_id():
    value = random_id(20)
    assert len(value) == 20
    assert value.isalnum()
    assert value == value.lower()
