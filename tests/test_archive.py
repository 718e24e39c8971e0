from __future__ import annotations

import os
import warnings
import zipfile
from pathlib import Path

import pytest

import repack_archive
import repack_digest
from repack_errors import ExtractionError


def test_extract_preserves_paths_and_bytes(tmp_path: Path, make_zip, service_files) -> None:
    archive = make_zip(tmp_path / "svc.zip", service_files)
    dest = tmp_path / "out"

    extracted = repack_archive.extract_archive(archive, dest)

    assert sorted(extracted) == sorted(service_files)
    for rel, data in service_files.items():
        assert (dest / rel).read_bytes() == data


def test_extract_drops_directory_entries(tmp_path: Path) -> None:
    archive = tmp_path / "dirs.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("empty/", b"")
        zf.writestr("lib/", b"")
        zf.writestr("lib/util.py", b"x = 1\n")

    extracted = repack_archive.extract_archive(archive, tmp_path / "out")

    assert extracted == ["lib/util.py"]
    assert not (tmp_path / "out" / "empty").exists()


@pytest.mark.skipif(os.name == "nt", reason="POSIX permission bits")
def test_extract_preserves_executable_bit(tmp_path: Path, make_zip, service_files) -> None:
    archive = make_zip(tmp_path / "svc.zip", service_files, executables=["bin/run.sh"])
    dest = tmp_path / "out"

    repack_archive.extract_archive(archive, dest)

    assert os.stat(dest / "bin" / "run.sh").st_mode & 0o111
    assert not os.stat(dest / "handler.py").st_mode & 0o111


def test_extract_rejects_existing_destination(tmp_path: Path, make_zip, service_files) -> None:
    archive = make_zip(tmp_path / "svc.zip", service_files)
    dest = tmp_path / "out"
    dest.mkdir()

    with pytest.raises(ExtractionError, match="collision"):
        repack_archive.extract_archive(archive, dest)


def test_extract_rejects_missing_archive(tmp_path: Path) -> None:
    with pytest.raises(ExtractionError, match="Cannot read archive"):
        repack_archive.extract_archive(tmp_path / "missing.zip", tmp_path / "out")


def test_extract_rejects_non_zip(tmp_path: Path) -> None:
    bogus = tmp_path / "bogus.zip"
    bogus.write_bytes(b"this is not an archive")

    with pytest.raises(ExtractionError, match="Malformed archive"):
        repack_archive.extract_archive(bogus, tmp_path / "out")


def test_extract_rejects_bad_crc(tmp_path: Path) -> None:
    archive = tmp_path / "crc.zip"
    name = "data.bin"
    with zipfile.ZipFile(archive, "w", compression=zipfile.ZIP_STORED) as zf:
        zf.writestr(name, b"A" * 64)

    raw = bytearray(archive.read_bytes())
    # Local file header is 30 bytes followed by the file name, then the data.
    raw[30 + len(name)] ^= 0xFF
    archive.write_bytes(bytes(raw))

    with pytest.raises(ExtractionError):
        repack_archive.extract_archive(archive, tmp_path / "out")


def test_extract_rejects_traversal(tmp_path: Path) -> None:
    archive = tmp_path / "evil.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("../evil.txt", "nope")

    with pytest.raises(repack_digest.PathValidationError):
        repack_archive.extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "evil.txt").exists()


def test_extract_rejects_absolute_path(tmp_path: Path) -> None:
    archive = tmp_path / "abs.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("/abs.txt", "nope")

    with pytest.raises(repack_digest.PathValidationError):
        repack_archive.extract_archive(archive, tmp_path / "out")


@pytest.mark.skipif(os.name == "nt", reason="POSIX symlinks")
def test_extract_recreates_symlinks(tmp_path: Path, make_zip) -> None:
    files = {"node_modules/uuid/bin/uuid": b"#!/usr/bin/env node\n"}
    archive = make_zip(
        tmp_path / "fn.zip",
        files,
        executables=list(files),
        symlinks={"node_modules/.bin/uuid": "../uuid/bin/uuid"},
    )
    dest = tmp_path / "out"

    extracted = repack_archive.extract_archive(archive, dest)

    link = dest / "node_modules" / ".bin" / "uuid"
    assert sorted(extracted) == ["node_modules/.bin/uuid", "node_modules/uuid/bin/uuid"]
    assert link.is_symlink()
    assert os.readlink(link) == "../uuid/bin/uuid"
    assert link.read_bytes() == files["node_modules/uuid/bin/uuid"]


@pytest.mark.parametrize("target", ["../../outside", "/etc/passwd", "a/../../.."])
def test_extract_rejects_escaping_symlink(tmp_path: Path, make_zip, target: str) -> None:
    archive = make_zip(tmp_path / "link.zip", {"a.txt": b"a"}, symlinks={"lib/link": target})

    with pytest.raises(repack_digest.PathValidationError, match="[Ss]ymlink"):
        repack_archive.extract_archive(archive, tmp_path / "out")
    assert not (tmp_path / "out" / "lib" / "link").is_symlink()


def test_extract_rejects_duplicate_entries(tmp_path: Path) -> None:
    archive = tmp_path / "dup.zip"
    with warnings.catch_warnings():
        warnings.simplefilter("ignore")
        with zipfile.ZipFile(archive, "w") as zf:
            zf.writestr("a.txt", "first")
            zf.writestr("a.txt", "second")

    with pytest.raises(ExtractionError, match="Duplicate entry"):
        repack_archive.extract_archive(archive, tmp_path / "out")


def test_extract_treats_dot_prefix_as_same_entry(tmp_path: Path) -> None:
    archive = tmp_path / "dot.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("./handler.py", "one")
        zf.writestr("handler.py", "two")

    with pytest.raises(ExtractionError, match="Duplicate entry"):
        repack_archive.extract_archive(archive, tmp_path / "out")


def test_extract_strips_dot_prefix(tmp_path: Path) -> None:
    archive = tmp_path / "dot.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("./handler.py", "one")
        zf.writestr("./lib/./util.py", "two")

    extracted = repack_archive.extract_archive(archive, tmp_path / "out")

    assert extracted == ["handler.py", "lib/util.py"]
    assert (tmp_path / "out" / "lib" / "util.py").read_text() == "two"


def _case_sensitive(directory: Path) -> bool:
    marker = directory / "CaseCheck"
    marker.write_bytes(b"")
    try:
        return not (directory / "casecheck").exists()
    finally:
        marker.unlink()


def test_extract_keeps_case_distinct_names(tmp_path: Path) -> None:
    archive = tmp_path / "case.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("Makefile", "one")
        zf.writestr("makefile", "two")
    dest = tmp_path / "out"

    if _case_sensitive(tmp_path):
        assert sorted(repack_archive.extract_archive(archive, dest)) == ["Makefile", "makefile"]
        assert (dest / "Makefile").read_text() == "one"
        assert (dest / "makefile").read_text() == "two"
    else:
        with pytest.raises(ExtractionError, match="collides"):
            repack_archive.extract_archive(archive, dest)
        assert (dest / "Makefile").read_text() == "one"


def test_extract_rejects_file_over_file_as_directory(tmp_path: Path) -> None:
    archive = tmp_path / "clash.zip"
    with zipfile.ZipFile(archive, "w") as zf:
        zf.writestr("lib", "a file")
        zf.writestr("lib/util.py", "x = 1\n")

    with pytest.raises(ExtractionError):
        repack_archive.extract_archive(archive, tmp_path / "out")
