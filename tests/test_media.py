"""Tests for imagebuilder.media module."""

from __future__ import annotations

import subprocess
from unittest.mock import patch

import pytest

from imagebuilder.exceptions import BuildError
from imagebuilder.media import build_floppy, build_iso, expand_paths, stage_files


class TestStageFiles:
    def test_layout(self, tmp_path):
        src = tmp_path / "src"
        (src / "scripts").mkdir(parents=True)
        (src / "scripts" / "setup.sh").write_text("#!/bin/sh\n")
        (src / "a.txt").write_text("a")
        (src / "b.txt").write_text("b")

        staging = stage_files(
            [str(src / "scripts"), str(src / "*.txt")],
            {"a.txt": "override", "nested/c.txt": "c"},
            tmp_path / "staging",
        )

        assert (staging / "scripts" / "setup.sh").exists()
        assert (staging / "a.txt").read_text() == "override"
        assert (staging / "b.txt").read_text() == "b"
        assert (staging / "nested" / "c.txt").read_text() == "c"

    def test_missing_file(self, tmp_path):
        with pytest.raises(BuildError, match="issues with file"):
            expand_paths([str(tmp_path / "nope")])

    def test_glob_without_matches(self, tmp_path):
        assert expand_paths([str(tmp_path / "*.iso")]) == []


class TestBuildIso:
    def test_genisoimage(self, tmp_path):
        with patch("imagebuilder.media.find_executable", return_value="/usr/bin/genisoimage"), \
                patch("imagebuilder.media.run") as run:
            build_iso(tmp_path, tmp_path / "out.iso", "cidata")
        cmd = run.call_args.args[0]
        assert cmd[0] == "/usr/bin/genisoimage"
        assert cmd[cmd.index("-volid") + 1] == "cidata"

    def test_xorriso_uses_mkisofs_emulation(self, tmp_path):
        with patch("imagebuilder.media.find_executable", return_value="/usr/bin/xorriso"), \
                patch("imagebuilder.media.run") as run:
            build_iso(tmp_path, tmp_path / "out.iso", "cidata")
        assert run.call_args.args[0][1:3] == ["-as", "mkisofs"]

    def test_no_tool(self, tmp_path):
        with patch("imagebuilder.media.find_executable", return_value=None):
            with pytest.raises(BuildError, match="No ISO authoring tool"):
                build_iso(tmp_path, tmp_path / "out.iso", "cidata")

    def test_tool_failure(self, tmp_path):
        error = subprocess.CalledProcessError(1, ["genisoimage"], stderr="bad volid")
        with patch("imagebuilder.media.find_executable", return_value="/usr/bin/genisoimage"), \
                patch("imagebuilder.media.run", side_effect=error):
            with pytest.raises(BuildError, match="bad volid"):
                build_iso(tmp_path, tmp_path / "out.iso", "cidata")


class TestBuildFloppy:
    def test_too_large(self, tmp_path):
        (tmp_path / "big.bin").write_bytes(b"\0" * (1474560 + 1))
        with pytest.raises(BuildError, match="at most 1474560"):
            build_floppy(tmp_path, tmp_path / "out.img", "")

    def test_commands(self, tmp_path):
        staging = tmp_path / "staging"
        staging.mkdir()
        (staging / "autounattend.xml").write_text("<xml/>")
        tools = {"mkfs.msdos": "/sbin/mkfs.msdos", "mcopy": "/usr/bin/mcopy"}
        with patch("imagebuilder.media.find_executable", side_effect=lambda *names: tools.get(names[0])), \
                patch("imagebuilder.media.run") as run:
            build_floppy(staging, tmp_path / "out.img", "setup")
        mkfs_cmd, mcopy_cmd = (c.args[0] for c in run.call_args_list)
        assert mkfs_cmd == ["/sbin/mkfs.msdos", "-C", str(tmp_path / "out.img"), "1440", "-n", "SETUP"]
        assert mcopy_cmd[:2] == ["/usr/bin/mcopy", "-s"]
        assert mcopy_cmd[-1] == "::/"
