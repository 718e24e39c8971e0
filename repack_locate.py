#!/usr/bin/env python3
"""Resolve the archives a repackaging run should process.

The build knows most of its archives up front (one per packaged target), but
auxiliary steps can drop extra archives into the output directory later. The
locator merges both: explicit paths first, in the order given, then anything a
glob scan finds that is not already listed.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from pathlib import Path
from typing import Iterable, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_PATTERN = "**/*.zip"


def _key(path: Path) -> str:
    return os.path.normcase(str(path.resolve()))


def _is_under(path: Path, directories: List[Path]) -> bool:
    resolved = path.resolve()
    return any(resolved.is_relative_to(d) for d in directories)


def locate_archives(
    explicit: Iterable[Path],
    search_root: Optional[Path] = None,
    pattern: str = DEFAULT_PATTERN,
    exclude: Iterable[Path] = (),
) -> List[Path]:
    """Return explicit paths followed by newly discovered archives.

    Args:
        explicit: Archive paths known ahead of time; kept in caller order,
            duplicates collapsed to their first occurrence.
        search_root: Directory to scan; None or a missing directory scans nothing.
        pattern: Glob relative to search_root. Hidden directories are included.
        exclude: Directories whose contents are never discovered, such as the
            run's scratch root.

    Returns:
        Absolute archive paths, each listed once.

    Raises:
        ValueError: pattern is not a usable relative glob.
    """
    located: List[Path] = []
    seen: set[str] = set()

    for path in explicit:
        path = Path(path).absolute()
        key = _key(path)
        if key in seen:
            continue
        seen.add(key)
        located.append(path)

    if search_root is None:
        return located

    search_root = Path(search_root).absolute()
    if not search_root.is_dir():
        logger.debug("Search root %s does not exist; nothing discovered", search_root)
        return located

    try:
        candidates = list(search_root.glob(pattern))
    except (NotImplementedError, ValueError) as exc:
        raise ValueError(f"Invalid glob pattern {pattern!r}: {exc}") from exc

    excluded = [Path(d).resolve() for d in exclude]
    discovered = 0
    for candidate in candidates:
        if not candidate.is_file():
            continue
        if excluded and _is_under(candidate, excluded):
            continue
        key = _key(candidate)
        if key in seen:
            continue
        seen.add(key)
        located.append(candidate)
        discovered += 1

    logger.debug("Discovered %d additional archives under %s", discovered, search_root)
    return located


# pragma: no mutate
def main() -> int:
    ap = argparse.ArgumentParser(description="List the archives a repack run would process")
    ap.add_argument("archives", nargs="*", type=Path, help="Explicit archive paths")
    ap.add_argument("--search-root", type=Path, help="Directory to scan for more archives")
    ap.add_argument(
        "--pattern",
        default=DEFAULT_PATTERN,
        help="Glob relative to --search-root (default: %(default)s)",
    )
    ap.add_argument(
        "--exclude",
        action="append",
        type=Path,
        default=[],
        help="Directory to skip while scanning (repeatable)",
    )
    args = ap.parse_args()

    if not args.archives and args.search_root is None:
        print("Error: give archive paths or --search-root", file=sys.stderr)
        return 2

    try:
        located = locate_archives(args.archives, args.search_root, args.pattern, args.exclude)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2
    for path in located:
        print(path)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
