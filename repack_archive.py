#!/usr/bin/env python3
"""Archive extraction for the repackaging engine.

Unpacks a ZIP archive into a fresh scratch directory with path traversal
hardening. Timestamps are not preserved; the executable bit is. Symlink
entries are recreated as symlinks as long as their target stays inside the
archive root.
"""

from __future__ import annotations

import logging
import os
import shutil
import zipfile
import zlib
from pathlib import Path
from stat import S_ISLNK
from typing import List, Tuple

from repack_digest import (
    normalize_member_name,
    validate_link_target,
    validate_path,
    zip_entry_mode,
)
from repack_errors import ExtractionError

logger = logging.getLogger(__name__)

EXECUTABLE_BITS = 0o111

Member = Tuple[str, zipfile.ZipInfo]


def _check_members(members: List[zipfile.ZipInfo]) -> Tuple[List[Member], List[Member]]:
    """Validate members and split them into (files, symlinks) by normalized name.

    Directory entries are dropped.
    """
    files: List[Member] = []
    links: List[Member] = []
    seen: set[str] = set()
    for member in members:
        if member.is_dir() or member.filename.endswith("/"):
            continue
        name = normalize_member_name(member.filename)
        validate_path(name)
        if name in seen:
            raise ExtractionError(f"Duplicate entry in archive: {member.filename}")
        seen.add(name)
        if S_ISLNK(zip_entry_mode(member)):
            links.append((name, member))
        else:
            files.append((name, member))
    return files, links


def _target(dest: Path, name: str) -> Path:
    target = dest / name
    if not target.parent.resolve().is_relative_to(dest):
        raise ExtractionError(f"Archive member escapes destination: {name}")
    return target


def _extract_zip(zf: zipfile.ZipFile, dest: Path) -> List[str]:
    dest = dest.resolve()
    files, links = _check_members(zf.infolist())
    extracted: List[str] = []

    # Links last, so no regular file is ever written through one.
    for name, member in files:
        target = _target(dest, name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(member) as src, open(target, "xb") as dst:
                shutil.copyfileobj(src, dst)
        except FileExistsError as exc:
            raise ExtractionError(f"Entry collides with an extracted path: {name}") from exc
        if zip_entry_mode(member) & EXECUTABLE_BITS:
            os.chmod(target, 0o755)
        extracted.append(name)

    for name, member in links:
        link_target = zf.read(member).decode("utf-8", errors="surrogateescape")
        validate_link_target(name, link_target)
        target = _target(dest, name)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            os.symlink(link_target, target)
        except FileExistsError as exc:
            raise ExtractionError(f"Entry collides with an extracted path: {name}") from exc
        extracted.append(name)

    return extracted


def extract_archive(archive_path: Path, dest: Path) -> List[str]:
    """Extract a ZIP archive into dest, which must not exist yet.

    Returns the normalized archive-relative paths of the extracted files and
    symlinks.

    Raises:
        ExtractionError: The archive is missing, unreadable or corrupt, an entry
            or symlink target is unsafe, two entries land on the same path, or
            dest cannot be created (including when it already exists, which
            means two jobs were given the same scratch name).
    """
    archive_path = Path(archive_path)
    dest = Path(dest)

    try:
        dest.mkdir(parents=True, exist_ok=False)
    except FileExistsError as exc:
        raise ExtractionError(f"Scratch directory collision: {dest} already exists") from exc
    except OSError as exc:
        raise ExtractionError(f"Cannot create extraction directory {dest}: {exc}") from exc

    try:
        with zipfile.ZipFile(archive_path, "r") as zf:
            extracted = _extract_zip(zf, dest)
    except ExtractionError:
        raise
    except (
        zipfile.BadZipFile,
        zipfile.LargeZipFile,
        zlib.error,
        EOFError,
        NotImplementedError,
    ) as exc:
        raise ExtractionError(f"Malformed archive {archive_path}: {exc}") from exc
    except OSError as exc:
        raise ExtractionError(f"Cannot read archive {archive_path}: {exc}") from exc

    logger.debug("Extracted %d entries from %s into %s", len(extracted), archive_path, dest)
    return extracted
