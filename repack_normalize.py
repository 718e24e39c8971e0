#!/usr/bin/env python3
"""Timestamp normalization for extracted archive trees.

Every file's access and modification time is set to NORMALIZED_TIMESTAMP so
that nothing about *when* an archive was built survives into the rebuild.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

from repack_errors import FilesystemError

logger = logging.getLogger(__name__)

# 1990-02-01T00:00:00Z. Never change this: every archive ever rebuilt embeds it.
NORMALIZED_TIMESTAMP = 633830400

# The same moment as a ZIP entry date (local fields, no timezone).
NORMALIZED_DATE_TIME = (1990, 2, 1, 0, 0, 0)


def normalize_tree(root: Path, timestamp: int = NORMALIZED_TIMESTAMP) -> int:
    """Set atime and mtime of every file under root; return the file count.

    Directories are left alone.

    Raises:
        FilesystemError: If any file's timestamps cannot be set.
    """
    root = Path(root)
    if not root.is_dir():
        raise FilesystemError(f"Normalization root is not a directory: {root}")

    count = 0
    for dirpath, _dirnames, filenames in os.walk(root):
        for filename in filenames:
            path = os.path.join(dirpath, filename)
            try:
                os.utime(path, (timestamp, timestamp), follow_symlinks=False)
            except (OSError, NotImplementedError) as exc:
                raise FilesystemError(f"Cannot set timestamps on {path}: {exc}") from exc
            count += 1

    logger.debug("Normalized timestamps of %d files under %s", count, root)
    return count
