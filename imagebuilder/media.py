"""Assembly of ISO and floppy images from local files."""

from __future__ import annotations

import glob
import shutil
import subprocess
from pathlib import Path
from typing import Dict, Iterable, List

from imagebuilder.constants import FLOPPY_MAX_BYTES
from imagebuilder.exceptions import BuildError
from imagebuilder.utils import ensure_directory, find_executable, log, run


def expand_paths(patterns: Iterable[str]) -> List[Path]:
    """Expand ``*`` and ``?`` globs; plain paths must exist."""
    resolved: List[Path] = []
    for pattern in patterns:
        expanded = str(Path(pattern).expanduser())
        if any(ch in expanded for ch in "*?"):
            matches = sorted(glob.glob(expanded))
            if not matches:
                log("WARN", f"Pattern '{pattern}' matched no files")
            resolved.extend(Path(m) for m in matches)
            continue
        path = Path(expanded)
        if not path.exists():
            raise BuildError(f"issues with file '{pattern}': no such file or directory")
        resolved.append(path)
    return resolved


def stage_files(files: Iterable[str], contents: Dict[str, str], staging: Path) -> Path:
    """Lay out files, directories and literal contents under ``staging``.

    Files land at the root and directories keep their own name and structure.
    ``contents`` entries overwrite anything staged at the same path.
    """
    ensure_directory(staging)
    for path in expand_paths(files):
        if path.is_dir():
            shutil.copytree(path, staging / path.name, dirs_exist_ok=True)
        else:
            shutil.copy2(path, staging / path.name)
    for rel_path, text in (contents or {}).items():
        target = staging / rel_path.lstrip("/")
        ensure_directory(target.parent)
        target.write_text(text, encoding="utf-8")
    return staging


def _staged_bytes(staging: Path) -> int:
    return sum(p.stat().st_size for p in staging.rglob("*") if p.is_file())


def build_iso(staging: Path, output: Path, label: str) -> Path:
    tool = find_executable("genisoimage", "mkisofs", "xorriso")
    if tool is None:
        raise BuildError("No ISO authoring tool found; install genisoimage, mkisofs or xorriso")
    cmd = [tool]
    if Path(tool).name == "xorriso":
        cmd += ["-as", "mkisofs"]
    cmd += ["-output", str(output), "-volid", label, "-joliet", "-rock", str(staging)]
    try:
        run(cmd, capture_output=True)
    except subprocess.CalledProcessError as exc:
        raise BuildError(f"Couldn't assemble ISO image: {(exc.stderr or '').strip() or exc}") from exc
    return output


def build_floppy(staging: Path, output: Path, label: str) -> Path:
    payload = _staged_bytes(staging)
    if payload > FLOPPY_MAX_BYTES:
        raise BuildError(f"Floppy contents are {payload} bytes; a floppy holds at most {FLOPPY_MAX_BYTES}")
    mkfs = find_executable("mkfs.msdos", "mkfs.vfat", "mkfs.fat")
    mcopy = find_executable("mcopy")
    if mkfs is None or mcopy is None:
        raise BuildError("Floppy images need mkfs.msdos and mcopy (dosfstools and mtools)")
    cmd = [mkfs, "-C", str(output), "1440"]
    if label:
        cmd += ["-n", label[:11].upper()]
    try:
        run(cmd, capture_output=True)
        for entry in sorted(staging.iterdir()):
            run([mcopy, "-s", "-i", str(output), str(entry), "::/"], capture_output=True)
    except subprocess.CalledProcessError as exc:
        raise BuildError(f"Couldn't assemble floppy image: {(exc.stderr or '').strip() or exc}") from exc
    return output
