#!/usr/bin/env python3
"""Run mutmut against the repack modules.

Tests run in a fresh interpreter per mutant instead of mutmut's in-process
runner, and every test is treated as covering every mutant; the suite is
small enough that per-test coverage stats are not worth collecting.

Environment:
    REPACK_MUTMUT_TIMEOUT  seconds per mutant (default 60, 0 disables)
    REPACK_MUTMUT_PATHS    comma-separated modules, overriding setup.cfg
"""

from __future__ import annotations

import argparse
import configparser
import multiprocessing
import os
import shutil
import subprocess
import sys
from pathlib import Path

import mutmut
import mutmut.__main__ as mutmut_main

REPO_ROOT = Path(__file__).resolve().parents[1]
DEFAULT_TIMEOUT = 60.0


class _NoThread:
    def __init__(self, *args, **kwargs) -> None:
        self._target = kwargs.get("target")

    def start(self) -> None:
        # Background threads must not start before mutmut forks.
        return


def install_start_method_guard() -> None:
    """Make multiprocessing.set_start_method a no-op when the method is already active.

    mutmut picks a start method in every process it imports into; pytest
    children import it again after the context is fixed.
    """
    current = multiprocessing.set_start_method
    if getattr(current, "_repack_guard", False):
        return

    def set_start_method(method: str, force: bool = False) -> None:
        if not force and multiprocessing.get_start_method(allow_none=True) == method:
            return
        current(method, force=force)

    set_start_method._repack_guard = True  # type: ignore[attr-defined]
    multiprocessing.set_start_method = set_start_method  # type: ignore[assignment]


def _child_env() -> dict[str, str]:
    env = os.environ.copy()
    env.setdefault("REPACK_MUTMUT", "1")
    env.setdefault("MUTANT_UNDER_TEST", "")
    _extend_pythonpath(env, REPO_ROOT)
    return env


class _SubprocessPytestRunner(mutmut_main.PytestRunner):
    def execute_pytest(self, params: list[str], **kwargs):
        if kwargs.get("plugins"):
            return 0

        timeout = _resolve_timeout_seconds()
        args = ["-m", "pytest", "--rootdir=.", "--tb=native", *params, *self._pytest_add_cli_args]
        if mutmut.config.debug:
            args = ["-vv", *args]
            print("python", *args)

        env = _child_env()
        try:
            result = subprocess.run([sys.executable, *args], env=env, check=False, timeout=timeout)
        except subprocess.TimeoutExpired:
            mutant = env.get("MUTANT_UNDER_TEST") or "unknown-mutant"
            print(f"mutmut timeout after {timeout:.0f}s for {mutant}", file=sys.stderr)
            return 1
        return int(result.returncode)


def _resolve_timeout_seconds() -> float | None:
    raw = os.environ.get("REPACK_MUTMUT_TIMEOUT", "").strip()
    if not raw:
        return DEFAULT_TIMEOUT
    try:
        value = float(raw)
    except ValueError:
        return DEFAULT_TIMEOUT
    return value if value > 0 else None


def _load_paths_to_mutate(config_path: Path | None = None) -> list[str]:
    path = config_path or (REPO_ROOT / "setup.cfg")
    config = configparser.ConfigParser()
    config.read(path)
    raw = config.get("mutmut", "paths_to_mutate", fallback="")
    paths = [line.strip() for line in raw.splitlines() if line.strip()]
    if not paths:
        raise ValueError(f"mutmut.paths_to_mutate not found in {path}")
    return paths


def _resolve_mutation_paths() -> list[str] | None:
    raw = os.environ.get("REPACK_MUTMUT_PATHS", "").strip()
    paths = [item.strip() for item in raw.split(",") if item.strip()]
    return paths or None


def _extend_pythonpath(env: dict[str, str], repo_root: Path) -> None:
    root = str(repo_root)
    existing = env.get("PYTHONPATH", "")
    if not existing:
        env["PYTHONPATH"] = root
    elif root not in existing.split(os.pathsep):
        env["PYTHONPATH"] = os.pathsep.join([root, existing])


def _collect_all_tests() -> list[str]:
    mutants_root = REPO_ROOT / "mutants"
    tests_dst = mutants_root / "tests"
    mutants_root.mkdir(parents=True, exist_ok=True)
    if tests_dst.exists():
        shutil.rmtree(tests_dst)
    shutil.copytree(REPO_ROOT / "tests", tests_dst)

    result = subprocess.run(
        [sys.executable, "-m", "pytest", "--collect-only", "-q"],
        cwd=mutants_root,
        env=_child_env(),
        check=False,
        capture_output=True,
        text=True,
    )
    if result.returncode != 0:
        raise RuntimeError(
            "Failed to collect tests for mutmut.\n"
            f"stdout:\n{result.stdout}\n\nstderr:\n{result.stderr}"
        )
    return [line.strip() for line in result.stdout.splitlines() if "::" in line]


def _seed_all_tests() -> None:
    tests = _collect_all_tests()
    mutmut.tests_by_mangled_function_name.clear()
    mutmut.duration_by_test = {test: 0.0 for test in tests}

    original_collect = mutmut_main.collect_source_file_mutation_data

    def _collect_and_seed(*, mutant_names):
        mutants, data_by_path = original_collect(mutant_names=mutant_names)
        for _, mutant_name, _ in mutants:
            mangled = mutmut_main.mangled_name_from_mutant_name(mutant_name)
            mutmut.tests_by_mangled_function_name[mangled].update(tests)
        return mutants, data_by_path

    mutmut_main.collect_source_file_mutation_data = _collect_and_seed
    mutmut_main.collect_or_load_stats = lambda _runner: None


def main() -> int:
    parser = argparse.ArgumentParser(description="Run mutmut over the repack modules.")
    parser.add_argument("--max-children", type=int, default=None)
    parser.add_argument("mutant_names", nargs="*")
    args = parser.parse_args()

    install_start_method_guard()
    mutmut_main.Thread = _NoThread
    mutmut_main.PytestRunner = _SubprocessPytestRunner
    mutmut_main.setproctitle = lambda *_args, **_kwargs: None
    mutmut_main.ensure_config_loaded()
    mutmut.config.paths_to_mutate = _resolve_mutation_paths() or _load_paths_to_mutate()
    _seed_all_tests()

    mutmut_main._run(args.mutant_names, args.max_children)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
