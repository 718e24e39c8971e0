#!/usr/bin/env python3
"""Idempotent repackaging of built ZIP archives.

Each archive is extracted into scratch space, its timestamps are normalized,
and it is rebuilt in canonical form and swapped over the original. Two builds
of the same files therefore yield byte-identical archives, and deployment
systems that compare artifact hashes stop seeing spurious changes.

Usage:
    # Repack specific archives
    python repack_engine.py .serverless/api.zip .serverless/worker.zip

    # Repack everything under a build output directory
    python repack_engine.py --search-root .serverless

    # Both: known archives first, then anything else the scan finds
    python repack_engine.py .serverless/api.zip --search-root .serverless --json

Exit codes:
    0 = Every archive was repacked
    1 = At least one archive failed, or the run aborted
    2 = Error (invalid arguments, etc.)
"""

from __future__ import annotations

import argparse
import json
import logging
import pathlib
import sys
import threading
import zipfile
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from repack_archive import extract_archive
from repack_digest import (
    ContentDigestResult,
    compute_archive_digest,
    compute_tree_digest,
    compute_zip_content_digest,
)
from repack_errors import (
    CompressionError,
    ExtractionError,
    FilesystemError,
    SwapError,
)
from repack_locate import DEFAULT_PATTERN, locate_archives
from repack_normalize import normalize_tree
from repack_scratch import ScratchSpace
from repack_swap import swap_artifact
from repack_zip import DEFAULT_CONFIG, RepackConfig, build_zip

logger = logging.getLogger(__name__)

SCRATCH_DIR_NAME = ".repack"


# =============================================================================
# Result types
# =============================================================================


class JobStatus(Enum):
    OK = "ok"
    EXTRACTION_FAILED = "extraction-failed"
    FILESYSTEM_FAILED = "filesystem-failed"
    COMPRESSION_FAILED = "compression-failed"
    SWAP_FAILED = "swap-failed"
    SKIPPED = "skipped"


class RunStatus(Enum):
    COMPLETED = "completed"
    ABORTED = "aborted"


@dataclass
class RepackJob:
    source: pathlib.Path
    extract_dir: pathlib.Path
    staging: pathlib.Path


@dataclass
class JobOutcome:
    archive: pathlib.Path
    status: JobStatus
    message: Optional[str] = None
    original_digest: Optional[str] = None
    repacked_digest: Optional[str] = None
    content_digest: Optional[str] = None
    entry_count: int = 0
    changed: bool = False

    @property
    def ok(self) -> bool:
        return self.status == JobStatus.OK

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.archive),
            "status": self.status.value,
            "message": self.message,
            "originalDigest": self.original_digest,
            "repackedDigest": self.repacked_digest,
            "contentDigest": self.content_digest,
            "entryCount": self.entry_count,
            "changed": self.changed,
        }


class RepackReport:
    def __init__(self):
        self.outcomes: List[JobOutcome] = []
        self.status = RunStatus.COMPLETED
        self.error: Optional[str] = None

    def add(self, outcome: JobOutcome):
        self.outcomes.append(outcome)

    def abort(self, error: str):
        if self.status == RunStatus.ABORTED:
            return
        self.status = RunStatus.ABORTED
        self.error = error

    @property
    def failures(self) -> List[JobOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def passed(self) -> bool:
        return self.status == RunStatus.COMPLETED and not self.failures

    @property
    def exit_code(self) -> int:
        return 0 if self.passed else 1

    def to_dict(self) -> Dict[str, Any]:
        counts = {status: 0 for status in JobStatus}
        for outcome in self.outcomes:
            counts[outcome.status] += 1
        return {
            "status": self.status.value,
            "passed": self.passed,
            "error": self.error,
            "summary": {
                "total": len(self.outcomes),
                "ok": counts[JobStatus.OK],
                "changed": sum(1 for o in self.outcomes if o.changed),
                "failed": len(self.failures) - counts[JobStatus.SKIPPED],
                "skipped": counts[JobStatus.SKIPPED],
            },
            "archives": [o.to_dict() for o in self.outcomes],
        }

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 60)
        print("REPACK REPORT")
        print("=" * 60)

        failed = [o for o in self.failures if o.status != JobStatus.SKIPPED]
        skipped = [o for o in self.outcomes if o.status == JobStatus.SKIPPED]
        done = [o for o in self.outcomes if o.ok]

        if self.error:
            print(f"\n❌ RUN ABORTED: {self.error}")

        if failed:
            print(f"\n❌ FAILED ({len(failed)}):")
            for o in failed:
                print(f"  [{o.status.value}] {o.archive}")
                if o.message:
                    print(f"      {o.message}")

        if skipped:
            print(f"\n⚠️  SKIPPED ({len(skipped)}):")
            for o in skipped:
                print(f"  {o.archive}")

        if done:
            changed = sum(1 for o in done if o.changed)
            print(f"\n✅ REPACKED ({len(done)}, {changed} changed):")
            if verbose:
                for o in done:
                    marker = "changed" if o.changed else "unchanged"
                    print(f"  {o.archive} ({o.entry_count} files, {marker})")
                    print(f"      {o.repacked_digest}")

        print("\n" + "-" * 60)
        if self.passed:
            print("RESULT: ✅ COMPLETED")
        elif self.status == RunStatus.ABORTED:
            print("RESULT: ❌ ABORTED")
        else:
            print(f"RESULT: ❌ {len(self.failures)}/{len(self.outcomes)} ARCHIVES NOT REPACKED")
        print("-" * 60 + "\n")


# =============================================================================
# Job pipeline
# =============================================================================


def _sha256(path: pathlib.Path, error_cls: type) -> str:
    try:
        digest, _ = compute_archive_digest(path)
    except OSError as exc:
        raise error_cls(f"Cannot read {path}: {exc}") from exc
    return f"sha256:{digest}"


def _expected_content(tree: pathlib.Path) -> ContentDigestResult:
    try:
        return compute_tree_digest(tree)
    except (OSError, ValueError) as exc:
        raise FilesystemError(f"Cannot read extracted tree {tree}: {exc}") from exc


def _verify_content(staging: pathlib.Path, expected: ContentDigestResult) -> None:
    """The rebuilt archive must hold exactly the extracted files."""
    try:
        actual = compute_zip_content_digest(staging)
    except (OSError, zipfile.BadZipFile) as exc:
        raise CompressionError(f"Rebuilt archive is unreadable: {exc}") from exc
    if actual.digest != expected.digest:
        raise CompressionError(
            f"Rebuilt archive content differs from source "
            f"({actual.entry_count} entries, expected {expected.entry_count})"
        )


def process_job(job: RepackJob, config: RepackConfig = DEFAULT_CONFIG) -> JobOutcome:
    """Run extract, normalize, rebuild, verify and swap for one archive.

    Raises the stage's RepackError subclass on failure; the original archive
    is only touched by the final swap.
    """
    extract_archive(job.source, job.extract_dir)
    normalize_tree(job.extract_dir)
    expected = _expected_content(job.extract_dir)

    entry_count = build_zip(job.extract_dir, job.staging, config)
    _verify_content(job.staging, expected)

    original_digest = _sha256(job.source, ExtractionError)
    repacked_digest = _sha256(job.staging, FilesystemError)
    changed = original_digest != repacked_digest
    if changed:
        swap_artifact(job.staging, job.source)
    else:
        logger.debug("%s is already canonical; left untouched", job.source)

    return JobOutcome(
        archive=job.source,
        status=JobStatus.OK,
        original_digest=original_digest,
        repacked_digest=repacked_digest,
        content_digest=f"sha256:{expected.digest}",
        entry_count=entry_count,
        changed=changed,
    )


def _failure(archive: pathlib.Path, status: JobStatus, exc: Exception) -> JobOutcome:
    logger.warning("%s: %s (%s)", archive, status.value, exc)
    return JobOutcome(archive=archive, status=status, message=str(exc))


def _run_job(
    archive: pathlib.Path,
    scratch: ScratchSpace,
    config: RepackConfig,
    abort: threading.Event,
) -> JobOutcome:
    if abort.is_set():
        return JobOutcome(archive, JobStatus.SKIPPED, "Run aborted before this archive started")

    try:
        extract_dir, staging = scratch.reserve(archive)
    except FilesystemError as exc:
        return _failure(archive, JobStatus.FILESYSTEM_FAILED, exc)

    logger.info("Repacking %s", archive)
    job = RepackJob(source=archive, extract_dir=extract_dir, staging=staging)
    try:
        outcome = process_job(job, config)
    except ExtractionError as exc:
        return _failure(archive, JobStatus.EXTRACTION_FAILED, exc)
    except FilesystemError as exc:
        return _failure(archive, JobStatus.FILESYSTEM_FAILED, exc)
    except CompressionError as exc:
        abort.set()
        logger.error("Rebuild of %s failed; aborting run: %s", archive, exc)
        return JobOutcome(archive, JobStatus.COMPRESSION_FAILED, str(exc))
    except SwapError as exc:
        return _failure(archive, JobStatus.SWAP_FAILED, exc)
    finally:
        scratch.release(job.extract_dir, job.staging)

    logger.info(
        "Repacked %s (%d files, %s)",
        archive,
        outcome.entry_count,
        "changed" if outcome.changed else "unchanged",
    )
    return outcome


def _check_scratch_root(scratch_root: pathlib.Path, archives: List[pathlib.Path]) -> None:
    """The scratch root is deleted wholesale, so no input may live under it."""
    root = pathlib.Path(scratch_root).resolve()
    for archive in archives:
        inside = (archive.parent.resolve(), archive.resolve())
        if any(path.is_relative_to(root) for path in inside):
            raise FilesystemError(
                f"Scratch root {root} contains input archive {archive}; refusing to delete it"
            )


def repack(
    paths: Iterable[pathlib.Path],
    scratch_root: pathlib.Path,
    config: RepackConfig = DEFAULT_CONFIG,
) -> RepackReport:
    """Repack every archive in paths, in order, and report per-archive outcomes.

    Extraction, filesystem and swap failures are local to their archive. A
    rebuild failure aborts the run: archives not yet started are reported as
    skipped, while archives already in flight on other workers finish.
    """
    config.validate()
    archives = [pathlib.Path(p).absolute() for p in paths]
    report = RepackReport()
    abort = threading.Event()

    try:
        _check_scratch_root(scratch_root, archives)
        with ScratchSpace(scratch_root) as scratch:
            if config.workers == 1:
                for archive in archives:
                    report.add(_run_job(archive, scratch, config, abort))
            else:
                with ThreadPoolExecutor(max_workers=config.workers) as pool:
                    futures = [
                        pool.submit(_run_job, archive, scratch, config, abort)
                        for archive in archives
                    ]
                    for future in futures:
                        report.add(future.result())
    except FilesystemError as exc:
        logger.error("Scratch setup failed: %s", exc)
        report.abort(str(exc))
        for archive in archives:
            report.add(JobOutcome(archive, JobStatus.SKIPPED, "Scratch space unavailable"))
        return report

    if abort.is_set():
        failed = next(o for o in report.outcomes if o.status == JobStatus.COMPRESSION_FAILED)
        report.abort(f"Rebuild failed for {failed.archive}")

    return report


def default_scratch_root(search_root: pathlib.Path) -> pathlib.Path:
    """Scratch directory beside the build output directory."""
    return pathlib.Path(search_root).absolute().parent / SCRATCH_DIR_NAME


def repack_service(
    search_root: pathlib.Path,
    explicit: Iterable[pathlib.Path] = (),
    pattern: str = DEFAULT_PATTERN,
    scratch_root: Optional[pathlib.Path] = None,
    config: RepackConfig = DEFAULT_CONFIG,
) -> RepackReport:
    """Locate archives under search_root (after the explicit ones) and repack them.

    Raises:
        FilesystemError: scratch_root is search_root or one of its ancestors.
    """
    if scratch_root is None:
        scratch_root = default_scratch_root(search_root)
    if pathlib.Path(search_root).resolve().is_relative_to(pathlib.Path(scratch_root).resolve()):
        raise FilesystemError(
            f"Scratch root {scratch_root} would delete the search root {search_root}"
        )
    archives = locate_archives(explicit, search_root, pattern, exclude=[scratch_root])
    return repack(archives, scratch_root, config)


# =============================================================================
# CLI
# =============================================================================


# pragma: no mutate
def main() -> int:
    parser = argparse.ArgumentParser(
        description="Rebuild ZIP archives deterministically",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("archives", nargs="*", type=pathlib.Path, help="Archives to repack")
    parser.add_argument(
        "--search-root",
        type=pathlib.Path,
        help="Also repack archives found under this directory",
    )
    parser.add_argument(
        "--pattern",
        default=DEFAULT_PATTERN,
        help="Glob relative to --search-root (default: %(default)s)",
    )
    parser.add_argument(
        "--scratch-dir",
        type=pathlib.Path,
        help=f"Scratch directory, removed on exit (default: {SCRATCH_DIR_NAME} "
        "beside --search-root, else in the current directory)",
    )
    parser.add_argument(
        "--workers",
        type=int,
        default=DEFAULT_CONFIG.workers,
        help="Archives to process concurrently (default: %(default)s)",
    )
    parser.add_argument(
        "--compresslevel",
        type=int,
        default=DEFAULT_CONFIG.compresslevel,
        help="Deflate level 0-9 (default: %(default)s)",
    )
    parser.add_argument(
        "--stored",
        action="store_true",
        help="Store entries without compression",
    )
    parser.add_argument(
        "--verbose",
        "-v",
        action="store_true",
        help="Show per-archive details and debug logging",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output report as JSON",
    )

    args = parser.parse_args()

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if not args.archives and args.search_root is None:
        print("Error: give archive paths or --search-root", file=sys.stderr)
        return 2

    config = RepackConfig(
        compression=zipfile.ZIP_STORED if args.stored else zipfile.ZIP_DEFLATED,
        compresslevel=args.compresslevel,
        workers=args.workers,
    )
    try:
        config.validate()
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 2

    if args.search_root is not None:
        try:
            report = repack_service(
                args.search_root,
                explicit=args.archives,
                pattern=args.pattern,
                scratch_root=args.scratch_dir,
                config=config,
            )
        except (FilesystemError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            return 2
    else:
        scratch_root = args.scratch_dir or pathlib.Path.cwd() / SCRATCH_DIR_NAME
        report = repack(args.archives, scratch_root, config)

    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        report.print_report(verbose=args.verbose)

    return report.exit_code


if __name__ == "__main__":
    sys.exit(main())
