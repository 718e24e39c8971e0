#!/usr/bin/env python3
"""Scratch space for a repackaging run.

The scratch root is owned by exactly one run. Entering the context removes
whatever a previous, possibly crashed, run left behind and creates an empty
root; leaving it removes the root again whether or not the run succeeded.
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Optional, Tuple

from repack_errors import FilesystemError

logger = logging.getLogger(__name__)

STAGING_SUFFIX = ".new"


def job_name(archive: Path) -> str:
    """Scratch name for an archive: its base name without the .zip suffix."""
    name = Path(archive).name
    if name.lower().endswith(".zip"):
        name = name[:-4]
    return name or "archive"


def _remove_tree(path: Path) -> None:
    try:
        shutil.rmtree(path)
    except FileNotFoundError:
        pass


class ScratchSpace:
    """Context manager owning a run's scratch root."""

    def __init__(self, root: Path):
        self.root = Path(root).absolute()
        self._active = False
        self._lock = threading.Lock()
        self._reserved: set[str] = set()

    def __enter__(self) -> "ScratchSpace":
        try:
            if self.root.is_symlink() or self.root.is_file():
                self.root.unlink()
            else:
                _remove_tree(self.root)
            self.root.mkdir(parents=True)
        except OSError as exc:
            raise FilesystemError(f"Cannot prepare scratch root {self.root}: {exc}") from exc
        self._active = True
        logger.debug("Prepared scratch root %s", self.root)
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self._active = False
        self._reserved.clear()
        self.cleanup()

    def cleanup(self) -> bool:
        """Remove the scratch root; failures are logged, never raised."""
        try:
            _remove_tree(self.root)
        except OSError as exc:
            logger.warning("Could not remove scratch root %s: %s", self.root, exc)
            return False
        logger.debug("Removed scratch root %s", self.root)
        return True

    def reserve(self, archive: Path) -> Tuple[Path, Path]:
        """Claim (extract_dir, staging_path) for one archive's job.

        The paths are derived from the archive's base name. Two in-flight jobs
        mapping to the same name is a naming bug and fails loudly.

        Raises:
            FilesystemError: Used outside the context, or the name is taken.
        """
        if not self._active:
            raise FilesystemError("Scratch space used outside of its context")
        name = job_name(archive)
        with self._lock:
            if name in self._reserved:
                raise FilesystemError(
                    f"Scratch name collision: {archive} maps to '{name}', already in use"
                )
            self._reserved.add(name)
        return self.root / name, self.root / f"{name}.zip{STAGING_SUFFIX}"

    def release(self, extract_dir: Path, staging: Optional[Path] = None) -> None:
        """Best-effort removal of one job's scratch files; frees its name."""
        try:
            _remove_tree(extract_dir)
            if staging is not None:
                staging.unlink(missing_ok=True)
        except OSError as exc:
            logger.warning("Could not clean job scratch %s: %s", extract_dir, exc)
        with self._lock:
            self._reserved.discard(extract_dir.name)
