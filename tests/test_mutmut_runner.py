import os
from pathlib import Path

import pytest

pytest.importorskip("mutmut")

from scripts import run_mutmut  # noqa: E402


def test_resolve_timeout_default(monkeypatch):
    monkeypatch.delenv("REPACK_MUTMUT_TIMEOUT", raising=False)
    assert run_mutmut._resolve_timeout_seconds() == run_mutmut.DEFAULT_TIMEOUT


def test_resolve_timeout_override(monkeypatch):
    monkeypatch.setenv("REPACK_MUTMUT_TIMEOUT", "300")
    assert run_mutmut._resolve_timeout_seconds() == 300.0


def test_resolve_timeout_disable(monkeypatch):
    monkeypatch.setenv("REPACK_MUTMUT_TIMEOUT", "0")
    assert run_mutmut._resolve_timeout_seconds() is None


def test_resolve_timeout_garbage(monkeypatch):
    monkeypatch.setenv("REPACK_MUTMUT_TIMEOUT", "soon")
    assert run_mutmut._resolve_timeout_seconds() == run_mutmut.DEFAULT_TIMEOUT


def test_resolve_paths_override(monkeypatch):
    monkeypatch.setenv("REPACK_MUTMUT_PATHS", "repack_zip.py, repack_swap.py")
    assert run_mutmut._resolve_mutation_paths() == ["repack_zip.py", "repack_swap.py"]


def test_resolve_paths_unset(monkeypatch):
    monkeypatch.delenv("REPACK_MUTMUT_PATHS", raising=False)
    assert run_mutmut._resolve_mutation_paths() is None


def test_load_paths_to_mutate():
    paths = run_mutmut._load_paths_to_mutate()
    assert "repack_engine.py" in paths
    assert "repack_zip.py" in paths


def test_load_paths_to_mutate_requires_section(tmp_path):
    cfg = tmp_path / "setup.cfg"
    cfg.write_text("[metadata]\nname = x\n", encoding="utf-8")
    with pytest.raises(ValueError):
        run_mutmut._load_paths_to_mutate(cfg)


def test_extend_pythonpath_adds_root():
    env: dict[str, str] = {}
    run_mutmut._extend_pythonpath(env, Path("/tmp/root"))
    assert env["PYTHONPATH"] == "/tmp/root"

    env = {"PYTHONPATH": os.pathsep.join(["/other", "/else"])}
    run_mutmut._extend_pythonpath(env, Path("/tmp/root"))
    assert env["PYTHONPATH"].split(os.pathsep)[0] == "/tmp/root"

    env = {"PYTHONPATH": os.pathsep.join(["/tmp/root", "/other"])}
    run_mutmut._extend_pythonpath(env, Path("/tmp/root"))
    assert env["PYTHONPATH"] == os.pathsep.join(["/tmp/root", "/other"])


def test_start_method_guard_skips_repeat_calls(monkeypatch):
    import multiprocessing

    calls = []
    active = {"method": None}

    def fake_set(method, force=False):
        if active["method"] is not None and not force:
            raise RuntimeError("context has already been set")
        calls.append(method)
        active["method"] = method

    monkeypatch.setattr(multiprocessing, "set_start_method", fake_set)
    monkeypatch.setattr(
        multiprocessing, "get_start_method", lambda allow_none=False: active["method"]
    )

    run_mutmut.install_start_method_guard()
    run_mutmut.install_start_method_guard()
    multiprocessing.set_start_method("fork")
    multiprocessing.set_start_method("fork")

    assert calls == ["fork"]
    with pytest.raises(RuntimeError):
        multiprocessing.set_start_method("spawn")
