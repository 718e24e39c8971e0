#!/usr/bin/env python3
"""Rebuild a canonical ZIP archive from a normalized directory tree.

Determinism settings:
  - Files are added in bytewise order of their UTF-8 relative paths.
  - All entries use NORMALIZED_DATE_TIME (1990-02-01 00:00:00).
  - No directory placeholder entries are written.
  - Every entry uses the same compression method and level.
  - Permissions are 0755 for files with any execute bit, 0644 otherwise,
    recorded as Unix attributes regardless of the host platform.
  - Symlinks are stored as symlink entries (mode 0777, target path as data).

Two trees with the same relative paths and file bytes produce byte-identical
archives on the same zlib build. zlib version drift between environments is
accepted as an environmental constant.
"""

from __future__ import annotations

import argparse
import logging
import os
import pathlib
import shutil
import stat
import sys
import zipfile
from dataclasses import dataclass

from repack_digest import canonical_sort_key, enumerate_tree_files
from repack_errors import CompressionError, FilesystemError, RepackError
from repack_normalize import NORMALIZED_DATE_TIME

logger = logging.getLogger(__name__)

UNIX_SYSTEM = 3
EXECUTABLE_MODE = 0o755
REGULAR_MODE = 0o644
LINK_MODE = 0o777
COPY_CHUNK_SIZE = 1024 * 1024


@dataclass(frozen=True)
class RepackConfig:
    """Rebuild parameters, passed explicitly to every stage that needs them."""

    omit_directory_entries: bool = True
    compression: int = zipfile.ZIP_DEFLATED
    compresslevel: int = 9
    workers: int = 1

    def validate(self) -> None:
        if not self.omit_directory_entries:
            raise ValueError("Rebuilt archives never contain directory entries")
        if self.compression not in (zipfile.ZIP_STORED, zipfile.ZIP_DEFLATED):
            raise ValueError(f"Unsupported compression method: {self.compression}")
        if self.compression == zipfile.ZIP_DEFLATED and not 0 <= self.compresslevel <= 9:
            raise ValueError(f"compresslevel must be 0-9, got {self.compresslevel}")
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1, got {self.workers}")


DEFAULT_CONFIG = RepackConfig()


def canonical_mode(fpath: pathlib.Path) -> int:
    if os.stat(fpath).st_mode & 0o111:
        return EXECUTABLE_MODE
    return REGULAR_MODE


def make_zipinfo(
    rel: str, mode: int, config: RepackConfig, file_type: int = stat.S_IFREG
) -> zipfile.ZipInfo:
    zi = zipfile.ZipInfo(filename=rel, date_time=NORMALIZED_DATE_TIME)
    zi.compress_type = config.compression
    zi.create_system = UNIX_SYSTEM
    zi.external_attr = ((file_type | mode) & 0xFFFF) << 16
    # Read by ZipFile.open(zi, "w"); writestr alone would fill it in.
    zi._compresslevel = config.compresslevel
    return zi


def iter_files(tree: pathlib.Path):
    """Files and symlinks under tree in canonical order. Directories are never yielded."""
    return sorted(enumerate_tree_files(tree), key=lambda t: canonical_sort_key(t[0]))


def _write_entries(
    zf: zipfile.ZipFile, files: list[tuple[str, pathlib.Path]], config: RepackConfig
) -> None:
    for rel, fpath in files:
        if fpath.is_symlink():
            zi = make_zipinfo(rel, LINK_MODE, config, stat.S_IFLNK)
            zf.writestr(zi, os.fsencode(os.readlink(fpath)), compresslevel=config.compresslevel)
            continue
        zi = make_zipinfo(rel, canonical_mode(fpath), config)
        with open(fpath, "rb") as src, zf.open(zi, "w") as dst:
            shutil.copyfileobj(src, dst, COPY_CHUNK_SIZE)


def build_zip(
    tree: pathlib.Path,
    out_zip: pathlib.Path,
    config: RepackConfig = DEFAULT_CONFIG,
) -> int:
    """Write a canonical archive of tree to out_zip; return the entry count.

    out_zip is a staging path. On failure it is removed so no partial archive
    is left behind.

    Raises:
        FilesystemError: The staging file cannot be created.
        CompressionError: Writing any entry fails.
    """
    config.validate()
    tree = pathlib.Path(tree)
    out_zip = pathlib.Path(out_zip)
    files = iter_files(tree)

    try:
        out_zip.parent.mkdir(parents=True, exist_ok=True)
        handle = open(out_zip, "wb")
    except OSError as exc:
        raise FilesystemError(f"Cannot create staging archive {out_zip}: {exc}") from exc

    try:
        with handle, zipfile.ZipFile(
            handle, "w", compression=config.compression, compresslevel=config.compresslevel
        ) as zf:
            _write_entries(zf, files, config)
    except Exception as exc:
        out_zip.unlink(missing_ok=True)
        if isinstance(exc, CompressionError):
            raise
        raise CompressionError(f"Failed to rebuild {out_zip.name}: {exc}") from exc

    logger.debug("Wrote %d entries to %s", len(files), out_zip)
    return len(files)


# pragma: no mutate
def main() -> int:
    ap = argparse.ArgumentParser(description="Build a canonical ZIP archive from a directory")
    ap.add_argument("tree", help="Path to directory to archive")
    ap.add_argument("out_zip", help="Output zip path")
    ap.add_argument(
        "--stored",
        action="store_true",
        help="Store entries without compression",
    )
    ap.add_argument(
        "--compresslevel",
        type=int,
        default=DEFAULT_CONFIG.compresslevel,
        help="Deflate level 0-9 (default: %(default)s)",
    )
    args = ap.parse_args()

    config = RepackConfig(
        compression=zipfile.ZIP_STORED if args.stored else zipfile.ZIP_DEFLATED,
        compresslevel=args.compresslevel,
    )
    try:
        build_zip(pathlib.Path(args.tree), pathlib.Path(args.out_zip), config)
    except (RepackError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
