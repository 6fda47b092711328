from __future__ import annotations

import sys
from pathlib import Path

import pytest

from chorebot.config import VerificationCheckSettings
from chorebot.tools.gates import VerificationCheck, VerificationFailure, normalise_checks, run_verification
from chorebot.tools.invocation import ToolRunner


def _check(name: str, code: str, *, optional: bool = False) -> VerificationCheck:
    return VerificationCheck(name=name, command=[sys.executable, "-c", code], optional=optional)


def test_run_verification_reports_each_check(tmp_path: Path) -> None:
    checks = [
        _check("passing", "pass"),
        _check("failing", "import sys; sys.exit(1)"),
        VerificationCheck(name="absent", command=["definitely-not-installed"], optional=True),
    ]

    report = run_verification(checks, runner=ToolRunner(), repo_root=tmp_path, timeout=30)

    assert [result.status for result in report.results] == ["passed", "failed", "skipped"]
    assert report.has_failures
    assert "failing: failed" in report.format_summary()
    with pytest.raises(VerificationFailure) as excinfo:
        report.raise_for_failures()
    assert excinfo.value.report is report


def test_missing_required_check_fails(tmp_path: Path) -> None:
    checks = [VerificationCheck(name="absent", command=["definitely-not-installed"])]

    report = run_verification(checks, runner=ToolRunner(), repo_root=tmp_path, timeout=30)

    assert report.results[0].status == "failed"


def test_no_checks_passes(tmp_path: Path) -> None:
    report = run_verification([], runner=ToolRunner(), repo_root=tmp_path, timeout=30)

    assert not report.has_failures
    report.raise_for_failures()
    assert report.format_summary() == "No verification checks configured."


def test_normalise_checks_accepts_strings_mappings_and_models() -> None:
    checks = normalise_checks(
        [
            "make lint",
            {"name": "tests", "cmd": "pytest -q", "optional": True},
            VerificationCheckSettings(name="guidelines", command=["make", "run-guidelines"]),
            {"name": "empty", "command": []},
        ]
    )

    assert [(check.name, list(check.command), check.optional) for check in checks] == [
        ("make", ["make", "lint"], False),
        ("tests", ["pytest", "-q"], True),
        ("guidelines", ["make", "run-guidelines"], False),
    ]
