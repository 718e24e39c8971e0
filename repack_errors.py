#!/usr/bin/env python3
"""Error taxonomy for the repackaging engine.

Each stage raises the error class that describes *where* it failed; the engine
decides how far the failure reaches:

- ExtractionError  -> job abandoned, batch continues
- FilesystemError  -> job abandoned (run-fatal during scratch setup)
- CompressionError -> run aborted, remaining jobs skipped
- SwapError        -> job abandoned, original archive intact
"""

from __future__ import annotations


class RepackError(Exception):
    """Base class for all repackaging failures."""

    pass


class ExtractionError(RepackError):
    """Raised when an archive cannot be read or unpacked."""

    pass


class FilesystemError(RepackError):
    """Raised when scratch, timestamp or staging filesystem operations fail."""

    pass


class CompressionError(RepackError):
    """Raised when rebuilding an archive fails or produces the wrong content."""

    pass


class SwapError(RepackError):
    """Raised when the rebuilt archive cannot replace the original."""

    pass
