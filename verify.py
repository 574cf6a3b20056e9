#!/usr/bin/env python3
"""Check a persisted derivative tree for assets its SVF containers list but lack."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import Iterable

from persist import (
    RESERVED_URI_CHARS,
    ContainerKind,
    ContainerParseError,
    classify_container,
    read_archive_manifest,
)

OUTPUT_DIR = Path("output")


def iter_archives(root: Path) -> Iterable[Path]:
    for path in sorted(root.rglob("*")):
        if path.is_file() and classify_container(path) is ContainerKind.ARCHIVE:
            yield path


def missing_assets(archive: Path) -> list[str]:
    """Relative URIs listed in archive's manifest that have no file beside it."""
    manifest = read_archive_manifest(archive)
    missing: list[str] = []
    for asset in manifest["assets"]:
        uri = asset.get("URI") if isinstance(asset, dict) else None
        if not isinstance(uri, str) or not uri or any(c in RESERVED_URI_CHARS for c in uri):
            continue
        local = archive.parent / uri.replace("\\", "/").lstrip("/")
        if not local.is_file():
            missing.append(uri)
    return missing


def verify(output_dir: Path) -> int:
    ng_count = 0
    ok_count = 0

    if not output_dir.exists() or not output_dir.is_dir():
        print(f"[NG] output directory not found: {output_dir}")
        print("OK: 0")
        print("NG: 1")
        return 1

    for archive in iter_archives(output_dir):
        rel = archive.relative_to(output_dir).as_posix()
        try:
            missing = missing_assets(archive)
        except ContainerParseError as e:
            ng_count += 1
            print(f"[NG] unreadable container: {rel} ({e})")
            continue

        if missing:
            ng_count += len(missing)
            for uri in missing:
                print(f"[NG] missing asset: {uri} (listed by {rel})")
        else:
            ok_count += 1

    print(f"OK: {ok_count}")
    print(f"NG: {ng_count}")
    return 1 if ng_count > 0 else 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Verify a persisted derivative tree")
    parser.add_argument("output_dir", nargs="?", default=str(OUTPUT_DIR), help="Directory written by persist.py")
    args = parser.parse_args(argv)
    return verify(Path(args.output_dir))


if __name__ == "__main__":
    sys.exit(main())
