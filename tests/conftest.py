from __future__ import annotations

import json
import os
import stat
import sys
import zipfile
from pathlib import Path
from typing import Callable, Dict, Iterable, Optional

import pytest

if os.environ.get("REPACK_MUTMUT") == "1":
    _main_module = sys.modules.get("__main__")
    _main_spec = getattr(_main_module, "__spec__", None)
    if (
        _main_module is not None
        and _main_spec
        and getattr(_main_spec, "name", None) == "mutmut.__main__"
    ):
        sys.modules.setdefault("mutmut.__main__", _main_module)

    from scripts.run_mutmut import install_start_method_guard

    install_start_method_guard()


SERVICE_FILES: Dict[str, bytes] = {
    "handler.py": b"def handler(event, context):\n    return {'statusCode': 200}\n",
    "lib/util.py": b"def helper():\n    return 42\n",
    "lib/data/table.json": b'{"rows": [1, 2, 3]}\n',
    "bin/run.sh": b"#!/bin/sh\necho run\n",
}


@pytest.fixture(scope="session")
def repo_root() -> Path:
    root = Path(__file__).resolve().parents[1]
    if root.name == "mutants":
        return root.parent
    return root


@pytest.fixture(scope="session")
def manifest(repo_root: Path) -> dict:
    return json.loads((repo_root / "manifest.json").read_text(encoding="utf-8"))


@pytest.fixture(scope="session")
def report_schema(repo_root: Path) -> dict:
    return json.loads((repo_root / "repack-report-v1.schema.json").read_text(encoding="utf-8"))


def write_zip(
    path: Path,
    files: Dict[str, bytes],
    order: Optional[Iterable[str]] = None,
    date_time: tuple = (2023, 5, 17, 13, 37, 2),
    directories: bool = True,
    executables: Iterable[str] = (),
    compresslevel: int = 6,
    symlinks: Optional[Dict[str, str]] = None,
) -> Path:
    """Write an archive the way an ordinary packager would, quirks included."""
    names = list(order) if order is not None else list(files)
    executables = set(executables)
    path.parent.mkdir(parents=True, exist_ok=True)
    with zipfile.ZipFile(path, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        if directories:
            dirs = sorted({n.rsplit("/", 1)[0] + "/" for n in names if "/" in n}, reverse=True)
            for d in dirs:
                zf.writestr(zipfile.ZipInfo(d, date_time=date_time), b"")
        for name in names:
            info = zipfile.ZipInfo(name, date_time=date_time)
            mode = 0o755 if name in executables else 0o664
            info.external_attr = ((stat.S_IFREG | mode) & 0xFFFF) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, files[name], compresslevel=compresslevel)
        for name, target in (symlinks or {}).items():
            info = zipfile.ZipInfo(name, date_time=date_time)
            info.create_system = 3
            info.external_attr = (stat.S_IFLNK | 0o777) << 16
            zf.writestr(info, target)
    return path


@pytest.fixture
def make_zip() -> Callable[..., Path]:
    return write_zip


@pytest.fixture
def service_files() -> Dict[str, bytes]:
    return dict(SERVICE_FILES)
