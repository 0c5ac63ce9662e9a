"""CLI entry points for the libvirt image builder."""

from __future__ import annotations

import argparse
import signal
from dataclasses import asdict
from pathlib import Path
from typing import List, Optional

try:
    import yaml  # type: ignore
except ImportError as exc:  # pragma: no cover
    raise SystemExit("PyYAML is required but not installed") from exc

from imagebuilder.builder import Builder
from imagebuilder.config import BuildConfig, load_config
from imagebuilder.exceptions import BuildCancelled, BuildError, ConfigurationError
from imagebuilder.utils import log

EXIT_CANCELLED = 130
ARTIFACT_KEYS = ("Key", "Pool", "Volume", "Format", "Capacity", "Allocation", "RemotePath", "Host", "Port")


def show_config(config: BuildConfig) -> None:
    resolved = asdict(config)
    # volume sources are objects, print their type only
    for raw, volume in zip(resolved["volumes"], config.volumes):
        raw["source"] = volume.source.type_name if volume.source else None
    print(yaml.safe_dump(resolved, sort_keys=False, default_flow_style=False), end="")


def _load(path: Path, builder_factory=Builder) -> Optional[Builder]:
    try:
        builder = builder_factory(load_config(path))
        builder.prepare()
    except ConfigurationError as exc:
        for err in exc.errors:
            log("ERROR", err)
        return None
    return builder


def cmd_validate(args: argparse.Namespace) -> int:
    builder = _load(Path(args.config))
    if builder is None:
        return 1
    if args.show:
        show_config(builder.config)
    log("SUCCESS", f"Configuration {args.config} is valid")
    return 0


def cmd_build(args: argparse.Namespace) -> int:
    builder = _load(Path(args.config))
    if builder is None:
        return 1

    def _handle_signal(signum, _frame):
        log("WARN", f"Received signal {signum}")
        builder.cancel()

    previous = {sig: signal.signal(sig, _handle_signal) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        artifact = builder.run()
    except BuildCancelled:
        log("ERROR", "Build was cancelled")
        return EXIT_CANCELLED
    except BuildError as exc:
        log("ERROR", f"Build failed: {exc}")
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    if artifact is None:
        log("WARN", "No artifact was produced")
        return 0
    log("SUCCESS", str(artifact))
    print(str(artifact))
    for key in ARTIFACT_KEYS:
        value = artifact.state(key)
        if value is not None:
            log("INFO", f"  {key}: {value}")
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Build VM images on a libvirt hypervisor")
    sub = parser.add_subparsers(dest="command", required=True)

    validate = sub.add_parser("validate", help="Validate a build configuration and exit")
    validate.add_argument("config", help="Path to the YAML build configuration")
    validate.add_argument("--show", action="store_true", help="Print the resolved configuration")
    validate.set_defaults(func=cmd_validate)

    build = sub.add_parser("build", help="Run a build and print the resulting artifact")
    build.add_argument("config", help="Path to the YAML build configuration")
    build.set_defaults(func=cmd_build)

    args = parser.parse_args(argv)
    return args.func(args)
