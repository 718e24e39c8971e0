#!/usr/bin/env python3
"""
Canonical content digests for repackaged archives.

A *content digest* identifies the logical contents of an archive or an
extracted tree, independent of how they were packaged: entry order,
timestamps, directory entries and compression settings do not contribute.

Algorithm:
1. Enumerate all regular files and symlinks (directory entries are ignored)
2. For each file: compute SHA-256 of raw bytes; for a symlink, of its target
3. Create entry: "<path>\0sha256:<hex>\0<size>\n", with "symlink:" before
   "sha256:" for symlinks
4. Sort entries by path (bytewise UTF-8)
5. Concatenate all entries
6. Compute SHA-256 of concatenated entries

The engine uses the content digest to prove that a rebuilt archive holds
exactly the files that were extracted from the original. The *archive digest*
(plain SHA-256 of the archive bytes) is what deployment systems compare.
"""

import hashlib
import os
import posixpath
import stat
import sys
import zipfile
from pathlib import Path
from typing import Iterator, NamedTuple

from repack_errors import ExtractionError

# =============================================================================
# Constants
# =============================================================================

# Maximum path component length (security hardening)
MAX_PATH_COMPONENT_LENGTH = 255

# Maximum total path length
MAX_PATH_LENGTH = 4096

HASH_CHUNK_SIZE = 65536


# =============================================================================
# Data Types
# =============================================================================


class FileEntry(NamedTuple):
    """A single file contributing to a content digest."""

    path: str  # Archive-relative path, / separators
    digest: str  # SHA-256 hex digest of file contents
    size: int  # File size in bytes
    link: bool = False  # Symlink; digest and size describe the target path


class ContentDigestResult(NamedTuple):
    digest: str
    algorithm: str
    entry_count: int
    total_bytes: int
    entries: tuple[FileEntry, ...]  # sorted canonically


# =============================================================================
# Path Validation
# =============================================================================


class PathValidationError(ExtractionError):
    """Raised when an archive entry path is unsafe to extract."""

    pass


def validate_path(path: str) -> None:
    """
    Validate an archive-relative path before it touches the filesystem.

    Rejects empty paths, NUL bytes, backslashes, absolute paths, empty
    components, "." and ".." components, and over-long paths.

    Raises:
        PathValidationError: If path fails validation
    """
    if not path:
        raise PathValidationError("Empty path")

    if len(path) > MAX_PATH_LENGTH:
        raise PathValidationError(f"Path exceeds {MAX_PATH_LENGTH} characters: {path[:50]}...")

    if "\x00" in path:
        raise PathValidationError(f"Path contains NUL byte: {repr(path)}")

    if "\\" in path:
        raise PathValidationError(f"Path contains backslash (use / separator): {path}")

    if path.startswith("/"):
        raise PathValidationError(f"Absolute path not allowed: {path}")

    for component in path.split("/"):
        if not component:
            raise PathValidationError(f"Empty path component in: {path}")
        if component == "..":
            raise PathValidationError(f"Path traversal (..) not allowed: {path}")
        if component == ".":
            raise PathValidationError(f"Current directory (.) not allowed in path: {path}")
        if len(component) > MAX_PATH_COMPONENT_LENGTH:
            raise PathValidationError(
                "Path component exceeds "
                f"{MAX_PATH_COMPONENT_LENGTH} characters: {component[:50]}..."
            )


def canonical_sort_key(relative_path: str) -> bytes:
    """Total order used for every entry listing: bytewise on UTF-8."""
    return relative_path.encode("utf-8")


def normalize_member_name(name: str) -> str:
    """Drop "." components, so "./handler.py" names the same file as "handler.py"."""
    return "/".join(part for part in name.split("/") if part != ".")


def zip_entry_mode(info: zipfile.ZipInfo) -> int:
    """Unix mode bits recorded for a ZIP entry (0 when none were recorded)."""
    return (info.external_attr >> 16) & 0xFFFF


def validate_link_target(path: str, target: str) -> None:
    """
    Validate a symlink entry's target before the link is created.

    The target is resolved relative to the link's own directory and must stay
    inside the archive root.

    Raises:
        PathValidationError: If the target is empty, absolute, or escapes
    """
    if not target or "\x00" in target:
        raise PathValidationError(f"Invalid symlink target for {path}: {target!r}")

    if target.startswith("/"):
        raise PathValidationError(f"Absolute symlink target not allowed: {path} -> {target}")

    resolved = posixpath.normpath(posixpath.join(posixpath.dirname(path), target))
    if resolved == ".." or resolved.startswith("../"):
        raise PathValidationError(f"Symlink escapes archive root: {path} -> {target}")


# =============================================================================
# Hashing and enumeration
# =============================================================================


def hash_file(filepath: Path, chunk_size: int = HASH_CHUNK_SIZE) -> tuple[str, int]:
    """Compute SHA-256 of a file; returns (hex digest, size in bytes)."""
    hasher = hashlib.sha256()
    size = 0

    with open(filepath, "rb") as f:
        while chunk := f.read(chunk_size):
            hasher.update(chunk)
            size += len(chunk)

    return hasher.hexdigest(), size


def hash_link(linkpath: Path) -> tuple[str, int]:
    """SHA-256 of a symlink's target path, as a ZIP symlink entry stores it."""
    target = os.fsencode(os.readlink(linkpath))
    return hashlib.sha256(target).hexdigest(), len(target)


def enumerate_tree_files(root: Path) -> Iterator[tuple[str, Path]]:
    """
    Yield (relative_path, absolute_path) for every regular file and symlink.

    Directories never appear in the output and symlinked directories are not
    descended into; a symlink is yielded as itself. Order is filesystem
    traversal order; callers that need a stable order sort with
    canonical_sort_key.
    """
    root = root.resolve()

    for dirpath, dirnames, filenames in os.walk(root):
        rel_dir = Path(dirpath).relative_to(root).as_posix()
        if rel_dir == ".":
            rel_dir = ""

        for filename in filenames:
            abs_path = Path(dirpath) / filename
            if not (abs_path.is_symlink() or abs_path.is_file()):
                continue
            yield f"{rel_dir}/{filename}" if rel_dir else filename, abs_path

        for dirname in dirnames:
            abs_path = Path(dirpath) / dirname
            if abs_path.is_symlink():
                yield f"{rel_dir}/{dirname}" if rel_dir else dirname, abs_path


def format_entry(entry: FileEntry) -> bytes:
    """Format: <path>\\0[symlink:]sha256:<hex>\\0<size>\\n"""
    kind = "symlink:" if entry.link else ""
    return f"{entry.path}\x00{kind}sha256:{entry.digest}\x00{entry.size}\n".encode("utf-8")


def _digest_entries(entries: list[FileEntry]) -> ContentDigestResult:
    entries.sort(key=lambda e: canonical_sort_key(e.path))

    hasher = hashlib.sha256()
    total_bytes = 0
    for entry in entries:
        hasher.update(format_entry(entry))
        total_bytes += entry.size

    return ContentDigestResult(
        digest=hasher.hexdigest(),
        algorithm="sha256",
        entry_count=len(entries),
        total_bytes=total_bytes,
        entries=tuple(entries),
    )


# =============================================================================
# Content digests
# =============================================================================


def compute_tree_digest(root: Path) -> ContentDigestResult:
    """
    Compute the content digest of a directory tree.

    Raises:
        FileNotFoundError: If root doesn't exist
        ValueError: If root is not a directory
    """
    root = Path(root)

    if not root.exists():
        raise FileNotFoundError(f"Tree root not found: {root}")
    if not root.is_dir():
        raise ValueError(f"Tree root is not a directory: {root}")

    entries: list[FileEntry] = []
    for rel_path, abs_path in enumerate_tree_files(root):
        link = abs_path.is_symlink()
        file_digest, file_size = hash_link(abs_path) if link else hash_file(abs_path)
        entries.append(FileEntry(rel_path, file_digest, file_size, link))

    return _digest_entries(entries)


def compute_zip_content_digest(archive_path: Path) -> ContentDigestResult:
    """
    Compute the content digest of a ZIP archive without extracting it.

    Directory entries are ignored and "." path components dropped, so an
    archive and its repacked form share a content digest.
    """
    entries: list[FileEntry] = []

    with zipfile.ZipFile(archive_path, "r") as zf:
        for info in zf.infolist():
            if info.is_dir():
                continue
            hasher = hashlib.sha256()
            size = 0
            with zf.open(info) as src:
                while chunk := src.read(HASH_CHUNK_SIZE):
                    hasher.update(chunk)
                    size += len(chunk)
            entries.append(
                FileEntry(
                    path=normalize_member_name(info.filename),
                    digest=hasher.hexdigest(),
                    size=size,
                    link=stat.S_ISLNK(zip_entry_mode(info)),
                )
            )

    return _digest_entries(entries)


def compute_archive_digest(archive_path: Path) -> tuple[str, int]:
    """SHA-256 of the archive file itself, as a deployment system sees it."""
    return hash_file(archive_path)


# =============================================================================
# Output Formatting
# =============================================================================


def format_result_json(result: ContentDigestResult) -> str:
    import json

    return json.dumps(
        {
            "contentDigest": f"sha256:{result.digest}",
            "algorithm": result.algorithm,
            "entryCount": result.entry_count,
            "totalBytes": result.total_bytes,
            "entries": [
                {"path": e.path, "digest": f"sha256:{e.digest}", "size": e.size}
                for e in result.entries
            ],
        },
        indent=2,
    )


def format_result_human(result: ContentDigestResult) -> str:
    lines = [
        f"Content Digest: sha256:{result.digest}",
        f"Files: {result.entry_count}",
        f"Total Size: {result.total_bytes:,} bytes",
        "",
        "Entries:",
    ]

    for entry in result.entries:
        lines.append(f"  {entry.path}")
        lines.append(f"    sha256:{entry.digest} ({entry.size:,} bytes)")

    return "\n".join(lines)


# =============================================================================
# CLI Interface
# =============================================================================


# pragma: no mutate
def main() -> int:
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(
        description="Compute archive content digests",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s build/                       # Content digest of a directory
  %(prog)s function.zip                 # Content digest of a ZIP archive
  %(prog)s function.zip --archive       # SHA-256 of the archive bytes
  %(prog)s function.zip --json          # Output as JSON
        """,
    )

    parser.add_argument("path", type=Path, help="Directory or ZIP archive")
    parser.add_argument(
        "--archive", action="store_true", help="Hash the archive file bytes only"
    )
    parser.add_argument("--json", action="store_true", help="Output as JSON")
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show detailed output including all file entries",
    )

    args = parser.parse_args()

    try:
        if args.archive:
            digest, size = compute_archive_digest(args.path)
            if args.json:
                import json

                print(json.dumps({"archiveDigest": f"sha256:{digest}", "size": size}, indent=2))
            else:
                print(f"sha256:{digest}")
                if args.verbose:
                    print(f"Size: {size:,} bytes")
            return 0

        if args.path.is_dir():
            result = compute_tree_digest(args.path)
        else:
            result = compute_zip_content_digest(args.path)

        if args.json:
            print(format_result_json(result))
        elif args.verbose:
            print(format_result_human(result))
        else:
            print(f"sha256:{result.digest}")
        return 0

    except (ValueError, FileNotFoundError, zipfile.BadZipFile) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        print(f"Unexpected error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
