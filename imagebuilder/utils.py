"""Utility functions for imagebuilder."""

from __future__ import annotations

import hashlib
import os
import random
import re
import shutil
import string
import subprocess
import tempfile
import threading
import time
from pathlib import Path
from typing import List, Optional
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen
from xml.dom.minidom import parseString
from xml.etree.ElementTree import Element, tostring

from imagebuilder.constants import _LOG_VERBOSE, TRUTHY
from imagebuilder.exceptions import BuildCancelled, BuildError

_DURATION_RE = re.compile(r"^\s*(?:(\d+(?:\.\d+)?)h)?\s*(?:(\d+(?:\.\d+)?)m)?\s*(?:(\d+(?:\.\d+)?)s?)?\s*$")
_HASH_BY_HEX_LENGTH = {32: "md5", 40: "sha1", 64: "sha256", 128: "sha512"}


def log(level: str, message: str) -> None:
    """Lightweight structured logging with colour per level."""
    if level == "DEBUG" and not _LOG_VERBOSE:
        return
    colours = {
        "INFO": "\033[0;34m",
        "WARN": "\033[1;33m",
        "ERROR": "\033[0;31m",
        "SUCCESS": "\033[0;32m",
        "DEBUG": "\033[0;90m",
    }
    colour = colours.get(level, "")
    reset = "\033[0m" if colour else ""
    print(f"{colour}[{level}]{reset} {message}", flush=True)


def get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def get_env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.lower() in TRUTHY


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def random_id(length: int = 8) -> str:
    alphabet = string.ascii_lowercase + string.digits
    return "".join(random.choice(alphabet) for _ in range(length))


def parse_duration(raw) -> float:
    """Parse '5m', '90s', '1h30m' or a plain number of seconds."""
    if isinstance(raw, (int, float)):
        return float(raw)
    match = _DURATION_RE.match(str(raw))
    if not match or not any(match.groups()):
        raise BuildError(f"Invalid duration '{raw}'. Use e.g. '300', '90s', '5m' or '1h30m'")
    hours, minutes, seconds = (float(part) if part else 0.0 for part in match.groups())
    return hours * 3600 + minutes * 60 + seconds


def element_to_str(root: Element) -> str:
    """Serialize an ElementTree element to a pretty-printed XML string without declaration."""
    raw = tostring(root, encoding="unicode")
    return parseString(raw).documentElement.toprettyxml(indent="  ").strip()


def find_executable(*candidates: str) -> Optional[str]:
    for name in candidates:
        path = shutil.which(name)
        if path:
            return path
    return None


def run(cmd: List[str], check: bool = True, **kwargs) -> subprocess.CompletedProcess:
    """Run command with logging."""
    log("DEBUG", f"Running: {' '.join(cmd)}")
    result = subprocess.run(cmd, check=check, text=True, **kwargs)
    return result


def parse_checksum(raw: Optional[str]):
    """Return (algorithm, hexdigest) or None when verification is disabled."""
    if raw is None:
        return None
    value = raw.strip()
    if not value or value.lower() == "none":
        return None
    if ":" in value:
        algo, digest = value.split(":", 1)
        algo = algo.lower()
        if algo == "file":
            raise BuildError("checksum files are not supported; give the digest inline as '<algo>:<hex>'")
        if algo not in hashlib.algorithms_available:
            raise BuildError(f"Unsupported checksum type '{algo}'")
        return algo, digest.lower()
    algo = _HASH_BY_HEX_LENGTH.get(len(value))
    if algo is None:
        raise BuildError(f"Cannot infer checksum type from '{value}'; use '<algo>:<hex>'")
    return algo, value.lower()


def verify_checksum(path: Path, checksum: Optional[str]) -> None:
    parsed = parse_checksum(checksum)
    if parsed is None:
        return
    algo, expected = parsed
    digest = hashlib.new(algo)
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(1024 * 1024), b""):
            digest.update(chunk)
    actual = digest.hexdigest()
    if actual != expected:
        raise BuildError(f"Checksum mismatch for {path}: expected {algo}:{expected}, got {algo}:{actual}")
    log("DEBUG", f"Checksum {algo}:{actual} verified for {path}")


def download_file(
    url: str, destination: Path, label: str = "Downloading", cancel_event: Optional[threading.Event] = None
) -> None:
    """Download a file with a progress bar using Python urllib."""
    log("INFO", f"{label}: {url}")
    if url.startswith("file://") or "://" not in url:
        local = Path(url[len("file://"):] if url.startswith("file://") else url).expanduser()
        if not local.is_file():
            raise BuildError(f"Local source {local} does not exist")
        shutil.copyfile(local, destination)
        return

    req = Request(url, headers={"User-Agent": "imagebuilder/0.1"})
    try:
        response = urlopen(req, timeout=60)
    except HTTPError as exc:
        raise BuildError(f"HTTP error downloading {url}: {exc.code} {exc.reason}")
    except URLError as exc:
        raise BuildError(f"Failed to download {url}: {exc.reason}")

    total = response.headers.get("Content-Length")
    total_bytes = int(total) if total else None
    downloaded = 0
    start_time = time.time()

    with tempfile.NamedTemporaryFile(delete=False, dir=destination.parent) as tmp:
        tmp_path = Path(tmp.name)
        try:
            while True:
                if cancel_event is not None and cancel_event.is_set():
                    print(flush=True)
                    raise BuildCancelled(f"download of {url} cancelled")
                chunk = response.read(1024 * 256)
                if not chunk:
                    break
                tmp.write(chunk)
                downloaded += len(chunk)

                elapsed = time.time() - start_time
                speed = downloaded / elapsed if elapsed > 0 else 0
                downloaded_mb = downloaded / (1024 * 1024)
                if total_bytes:
                    pct = downloaded * 100 / total_bytes
                    filled = int(30 * downloaded / total_bytes)
                    bar = "#" * filled + "-" * (30 - filled)
                    print(
                        f"\r  [{bar}] {pct:5.1f}% {downloaded_mb:.1f}/{total_bytes / (1024 * 1024):.1f} MiB "
                        f"({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
                else:
                    print(
                        f"\r  {downloaded_mb:.1f} MiB downloaded ({speed / (1024 * 1024):.1f} MiB/s)",
                        end="", flush=True,
                    )
            print(flush=True)
        except Exception:
            tmp_path.unlink(missing_ok=True)
            raise
    tmp_path.replace(destination)
    log("SUCCESS", f"Downloaded {downloaded / (1024 * 1024):.1f} MiB in {time.time() - start_time:.1f}s")


def fetch_cached(
    urls: List[str],
    cache_dir: Path,
    checksum: Optional[str],
    label: str,
    cancel_event: Optional[threading.Event] = None,
) -> Path:
    """Try each URL in order; return a verified local copy from the cache."""
    ensure_directory(cache_dir)
    failures = []
    for url in urls:
        if cancel_event is not None and cancel_event.is_set():
            raise BuildCancelled()
        key = hashlib.sha1(url.encode("utf-8")).hexdigest()
        suffix = Path(url.split("?", 1)[0]).suffix
        target = cache_dir / f"{key}{suffix}"
        if target.exists():
            try:
                verify_checksum(target, checksum)
                log("INFO", f"Using cached copy of {url}")
                return target
            except BuildError as exc:
                log("WARN", f"Discarding cached copy of {url}: {exc}")
                target.unlink(missing_ok=True)
        try:
            download_file(url, target, label=label, cancel_event=cancel_event)
            verify_checksum(target, checksum)
            return target
        except BuildCancelled:
            raise
        except BuildError as exc:
            log("WARN", str(exc))
            failures.append(str(exc))
            target.unlink(missing_ok=True)
    raise BuildError(f"{label}: none of the {len(urls)} source URL(s) could be fetched: " + "; ".join(failures))
