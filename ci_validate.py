#!/usr/bin/env python3
"""CI validation script for the repack tools.

This script validates:
1. All Python tools compile successfully
2. The report JSON schema is valid Draft 2020-12
3. Test vectors repack to byte-identical archives regardless of source
   entry order, timestamps and directory entries
4. Repacked archives list exactly the manifest's entries, in canonical order
5. The engine's JSON report conforms to the schema

Usage:
    python ci_validate.py                    # Run all validations
    python ci_validate.py --verbose          # Show detailed output
    python ci_validate.py --schema-only      # Only validate the schema

Exit codes:
    0 = All validations passed
    1 = One or more validations failed
    2 = Script error
"""

from __future__ import annotations

import argparse
import json
import pathlib
import random
import stat
import subprocess
import sys
import tempfile
import zipfile
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

# =============================================================================
# Configuration
# =============================================================================

SCRIPT_DIR = pathlib.Path(__file__).parent.resolve()

PYTHON_TOOLS = [
    "repack.py",
    "repack_archive.py",
    "repack_digest.py",
    "repack_engine.py",
    "repack_errors.py",
    "repack_locate.py",
    "repack_normalize.py",
    "repack_scratch.py",
    "repack_swap.py",
    "repack_zip.py",
]

REPORT_SCHEMA = "repack-report-v1.schema.json"

MANIFEST_FILE = "manifest.json"

# Deliberately different from the normalized timestamp.
SOURCE_DATE_TIMES = [(2001, 9, 9, 1, 46, 40), (2024, 2, 29, 23, 59, 58)]


# =============================================================================
# Validation result tracking
# =============================================================================


@dataclass
class ValidationResult:
    name: str
    passed: bool
    message: str
    details: Optional[str] = None


class ValidationReport:
    def __init__(self):
        self.results: List[ValidationResult] = []

    def add(self, name: str, passed: bool, message: str, details: Optional[str] = None):
        self.results.append(ValidationResult(name, passed, message, details))

    def passed(self) -> bool:
        return all(r.passed for r in self.results)

    def print_report(self, verbose: bool = False):
        print("\n" + "=" * 70)
        print("REPACK CI VALIDATION REPORT")
        print("=" * 70)

        passed = [r for r in self.results if r.passed]
        failed = [r for r in self.results if not r.passed]

        if failed:
            print(f"\n❌ FAILED ({len(failed)}):\n")
            for r in failed:
                print(f"  • {r.name}: {r.message}")
                if r.details:
                    for line in r.details.split("\n"):
                        print(f"      {line}")

        if verbose and passed:
            print(f"\n✅ PASSED ({len(passed)}):\n")
            for r in passed:
                print(f"  • {r.name}: {r.message}")

        print("\n" + "-" * 70)
        if self.passed():
            print(f"RESULT: ✅ ALL {len(self.results)} VALIDATIONS PASSED")
        else:
            print(f"RESULT: ❌ {len(failed)}/{len(self.results)} VALIDATIONS FAILED")
        print("-" * 70 + "\n")


# =============================================================================
# Helpers
# =============================================================================


def _load_manifest(report: ValidationReport) -> Optional[Dict[str, Any]]:
    manifest_path = SCRIPT_DIR / MANIFEST_FILE
    if not manifest_path.exists():
        report.add("manifest", False, f"Manifest not found: {MANIFEST_FILE}")
        return None
    try:
        with open(manifest_path) as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        report.add("manifest", False, "Invalid manifest JSON", str(e))
        return None


def _write_scrambled_zip(
    tv_path: pathlib.Path,
    out_zip: pathlib.Path,
    executables: List[str],
    seed: int,
) -> None:
    """Zip a test vector the way a careless packager would."""
    rng = random.Random(seed)
    files = sorted(p for p in tv_path.rglob("*") if p.is_file())
    rng.shuffle(files)
    dirs = sorted({p.parent for p in files if p.parent != tv_path})

    with zipfile.ZipFile(out_zip, "w", compression=zipfile.ZIP_DEFLATED) as zf:
        for d in dirs:
            rel_dir = d.relative_to(tv_path).as_posix() + "/"
            zf.writestr(zipfile.ZipInfo(rel_dir, date_time=rng.choice(SOURCE_DATE_TIMES)), b"")
        for f in files:
            rel = f.relative_to(tv_path).as_posix()
            info = zipfile.ZipInfo(rel, date_time=rng.choice(SOURCE_DATE_TIMES))
            mode = 0o775 if rel in executables else 0o664
            info.external_attr = ((stat.S_IFREG | mode) & 0xFFFF) << 16
            info.compress_type = zipfile.ZIP_DEFLATED
            zf.writestr(info, f.read_bytes(), compresslevel=rng.randint(1, 9))


def _run_engine(archive: pathlib.Path, scratch: pathlib.Path) -> subprocess.CompletedProcess:
    return subprocess.run(
        [
            sys.executable,
            str(SCRIPT_DIR / "repack_engine.py"),
            str(archive),
            "--scratch-dir",
            str(scratch),
            "--json",
        ],
        capture_output=True,
        text=True,
    )


# =============================================================================
# Validation functions
# =============================================================================


def validate_python_compilation(report: ValidationReport):
    """Validate all Python tools compile without syntax errors."""
    for tool in PYTHON_TOOLS:
        tool_path = SCRIPT_DIR / tool
        if not tool_path.exists():
            report.add(f"compile:{tool}", False, f"File not found: {tool}")
            continue

        result = subprocess.run(
            [sys.executable, "-m", "py_compile", str(tool_path)],
            capture_output=True,
            text=True,
        )

        if result.returncode == 0:
            report.add(f"compile:{tool}", True, "Compiles successfully")
        else:
            report.add(
                f"compile:{tool}",
                False,
                "Compilation failed",
                result.stderr.strip(),
            )


def _report_validator():
    try:
        from jsonschema import Draft202012Validator
    except ImportError:
        return None
    with open(SCRIPT_DIR / REPORT_SCHEMA) as f:
        return Draft202012Validator(json.load(f))


def validate_schema(report: ValidationReport):
    """Validate the report schema is valid Draft 2020-12."""
    try:
        from jsonschema import Draft202012Validator
    except ImportError:
        report.add(
            "schema:jsonschema",
            False,
            "jsonschema package not installed",
            "Run: pip install jsonschema",
        )
        return

    schema_path = SCRIPT_DIR / REPORT_SCHEMA
    if not schema_path.exists():
        report.add(f"schema:{REPORT_SCHEMA}", False, f"File not found: {REPORT_SCHEMA}")
        return

    try:
        with open(schema_path) as f:
            schema = json.load(f)
        Draft202012Validator.check_schema(schema)
        report.add(f"schema:{REPORT_SCHEMA}", True, "Valid Draft 2020-12 schema")
    except json.JSONDecodeError as e:
        report.add(f"schema:{REPORT_SCHEMA}", False, "Invalid JSON", str(e))
    except Exception as e:
        report.add(f"schema:{REPORT_SCHEMA}", False, "Schema validation failed", str(e))


def validate_test_vectors(report: ValidationReport, verbose: bool = False):
    """Repack each test vector from two scrambled sources and compare."""
    manifest = _load_manifest(report)
    if manifest is None:
        return

    validator = _report_validator()

    for tv_name, tv_spec in manifest.get("testVectors", {}).items():
        tv_path = SCRIPT_DIR / tv_spec["path"]
        if not tv_path.exists():
            report.add(f"tv:{tv_name}", False, f"Path not found: {tv_spec['path']}")
            continue

        executables = tv_spec.get("executableEntries", [])
        digests = []
        with tempfile.TemporaryDirectory() as tmpdir:
            tmp = pathlib.Path(tmpdir)
            for seed in (1, 2):
                archive = tmp / f"run{seed}" / f"{tv_name}.zip"
                archive.parent.mkdir()
                _write_scrambled_zip(tv_path, archive, executables, seed)

                result = _run_engine(archive, tmp / f"scratch{seed}")
                try:
                    output = json.loads(result.stdout)
                except json.JSONDecodeError:
                    report.add(
                        f"tv:{tv_name}",
                        False,
                        "Engine output invalid",
                        (result.stdout or result.stderr)[:500],
                    )
                    break

                if validator is not None:
                    errors = list(validator.iter_errors(output))
                    if errors:
                        report.add(f"report:{tv_name}", False, errors[0].message)
                if result.returncode != 0 or not output.get("passed"):
                    report.add(
                        f"tv:{tv_name}",
                        False,
                        "Repack failed",
                        json.dumps(output.get("archives", []), indent=2),
                    )
                    break

                with zipfile.ZipFile(archive) as zf:
                    names = zf.namelist()
                    modes = {i.filename: (i.external_attr >> 16) & 0o777 for i in zf.infolist()}
                if names != tv_spec["expectedEntries"]:
                    report.add(
                        f"order:{tv_name}",
                        False,
                        "Entry list differs from manifest",
                        f"Expected: {tv_spec['expectedEntries']}\nActual:   {names}",
                    )
                    break
                wrong_modes = [n for n in executables if modes.get(n) != 0o755]
                if wrong_modes:
                    report.add(f"mode:{tv_name}", False, f"Not executable: {wrong_modes}")
                    break

                digests.append(output["archives"][0]["repackedDigest"])

        if len(digests) != 2:
            continue
        if digests[0] == digests[1]:
            report.add(f"tv:{tv_name}", True, f"Deterministic: {digests[0][:20]}...")
        else:
            report.add(
                f"tv:{tv_name}",
                False,
                "Repacked archives differ",
                f"First:  {digests[0]}\nSecond: {digests[1]}",
            )


# =============================================================================
# Main
# =============================================================================


def main() -> int:
    parser = argparse.ArgumentParser(description="Repack CI validation")
    parser.add_argument("--verbose", "-v", action="store_true", help="Verbose output")
    parser.add_argument("--schema-only", action="store_true", help="Only validate the schema")
    args = parser.parse_args()

    report = ValidationReport()

    print("Running repack CI validations...")

    validate_python_compilation(report)
    validate_schema(report)

    if not args.schema_only:
        validate_test_vectors(report, verbose=args.verbose)

    report.print_report(verbose=args.verbose)

    return 0 if report.passed() else 1


if __name__ == "__main__":
    sys.exit(main())
