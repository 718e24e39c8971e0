#!/usr/bin/env python3
"""Commit a rebuilt archive over the original.

A same-filesystem rename is atomic, so it is always tried first. When the
staging file lives on another device the bytes are first copied into a
temporary file beside the target, flushed to disk, and only then renamed over
the target. Readers of the target path see either the old archive or the new
one, never a truncated file.
"""

from __future__ import annotations

import errno
import logging
import os
import shutil
import tempfile
from pathlib import Path

from repack_errors import SwapError

logger = logging.getLogger(__name__)


def _fsync_directory(directory: Path) -> None:
    try:
        fd = os.open(directory, os.O_RDONLY)
    except OSError:
        return
    try:
        os.fsync(fd)
    except OSError:
        pass
    finally:
        os.close(fd)


def _copy_then_replace(staging: Path, target: Path) -> None:
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{target.name}.", suffix=".swap", dir=target.parent
    )
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "wb") as dst, open(staging, "rb") as src:
            shutil.copyfileobj(src, dst)
            dst.flush()
            os.fsync(dst.fileno())
        shutil.copymode(target, tmp_path)
        os.replace(tmp_path, target)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise
    _fsync_directory(target.parent)
    staging.unlink(missing_ok=True)


def swap_artifact(staging: Path, target: Path) -> None:
    """Replace target with staging.

    Raises:
        SwapError: The replacement failed; target is unchanged.
    """
    staging = Path(staging)
    target = Path(target)

    if not staging.is_file():
        raise SwapError(f"Staging archive not found: {staging}")

    try:
        # The rebuilt archive keeps the original's permission bits.
        shutil.copymode(target, staging)
        os.replace(staging, target)
        logger.debug("Renamed %s over %s", staging, target)
        return
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise SwapError(f"Cannot replace {target}: {exc}") from exc

    logger.debug("%s is on another device than %s; copying", staging, target)
    try:
        _copy_then_replace(staging, target)
    except OSError as exc:
        raise SwapError(f"Cannot copy {staging} over {target}: {exc}") from exc
