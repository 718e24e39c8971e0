from __future__ import annotations

import calendar
import os
from pathlib import Path

import pytest

import repack_normalize
from repack_errors import FilesystemError


def _tree(root: Path) -> list[Path]:
    files = [root / "a.txt", root / "lib" / "b.py", root / "lib" / "deep" / ".hidden"]
    for i, f in enumerate(files):
        f.parent.mkdir(parents=True, exist_ok=True)
        f.write_text(str(i), encoding="utf-8")
        os.utime(f, (1_700_000_000 + i, 1_700_000_500 + i))
    return files


def test_constants_describe_the_same_moment() -> None:
    assert (
        calendar.timegm(repack_normalize.NORMALIZED_DATE_TIME + (0, 0, 0))
        == repack_normalize.NORMALIZED_TIMESTAMP
    )


def test_normalize_sets_atime_and_mtime(tmp_path: Path) -> None:
    files = _tree(tmp_path)

    count = repack_normalize.normalize_tree(tmp_path)

    assert count == len(files)
    for f in files:
        st = os.stat(f)
        assert int(st.st_mtime) == repack_normalize.NORMALIZED_TIMESTAMP
        assert int(st.st_atime) == repack_normalize.NORMALIZED_TIMESTAMP


def test_normalize_leaves_directories_alone(tmp_path: Path) -> None:
    _tree(tmp_path)
    lib = tmp_path / "lib"
    os.utime(lib, (1_600_000_000, 1_600_000_000))

    repack_normalize.normalize_tree(tmp_path)

    assert int(os.stat(lib).st_mtime) == 1_600_000_000


def test_normalize_accepts_custom_timestamp(tmp_path: Path) -> None:
    files = _tree(tmp_path)

    repack_normalize.normalize_tree(tmp_path, timestamp=315532800)

    assert all(int(os.stat(f).st_mtime) == 315532800 for f in files)


def test_normalize_failure_is_filesystem_error(tmp_path: Path, monkeypatch) -> None:
    _tree(tmp_path)

    def _deny(*_args, **_kwargs):
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(repack_normalize.os, "utime", _deny)

    with pytest.raises(FilesystemError, match="Cannot set timestamps"):
        repack_normalize.normalize_tree(tmp_path)


def test_normalize_requires_directory(tmp_path: Path) -> None:
    with pytest.raises(FilesystemError):
        repack_normalize.normalize_tree(tmp_path / "missing")
