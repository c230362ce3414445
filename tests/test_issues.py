from __future__ import annotations

from datetime import timedelta

import pytest
from pydantic import ValidationError

from aidev.issues import DiagnosticResult, Issue, IssueCategory, IssueLevel, issue_id, utc_now


def _issue(identifier: str, level: IssueLevel, *, file: str | None = "main.go") -> Issue:
    return Issue(id=identifier, category=IssueCategory.BUILD, level=level, title=identifier, file=file, line=1)


def _result(*issues: Issue) -> DiagnosticResult:
    start = utc_now()
    return DiagnosticResult(
        project_path="/tmp/demo",
        start_time=start,
        end_time=start + timedelta(seconds=2),
        issues=issues,
    )


def test_issue_id_sanitizes_and_appends_location() -> None:
    assert issue_id("build-undefined", "./pkg/handler.go parseUser", line=12, column=5) == (
        "build-undefined-pkg-handler-go-parseUser-12-5"
    )
    assert issue_id("dep-unused") == "dep-unused"
    assert issue_id("vet", "a.go", line=3) != issue_id("vet", "a.go", line=3, column=1)


def test_counts_are_derived_from_issues() -> None:
    result = _result(
        _issue("a", IssueLevel.CRITICAL),
        _issue("b", IssueLevel.ERROR),
        _issue("c", IssueLevel.WARNING),
        _issue("d", IssueLevel.INFO),
    )

    assert result.total_issues == 4
    assert (result.critical_count, result.error_count, result.warning_count, result.info_count) == (1, 1, 1, 1)
    assert result.duration == pytest.approx(2.0)
    payload = result.to_dict()
    assert payload["total_issues"] == 4
    assert payload["issues"][0]["level"] == "critical"


def test_result_is_immutable() -> None:
    result = _result(_issue("a", IssueLevel.ERROR))
    with pytest.raises(ValidationError):
        result.summary = "changed"  # type: ignore[misc]


def test_ranked_and_fixable_views() -> None:
    result = _result(
        _issue("warn", IssueLevel.WARNING),
        _issue("info", IssueLevel.INFO),
        _issue("crit", IssueLevel.CRITICAL, file=None),
        _issue("err", IssueLevel.ERROR, file="util.go"),
    )

    assert [issue.id for issue in result.ranked_issues()] == ["crit", "err", "warn", "info"]
    assert [issue.id for issue in result.fixable_issues()] == ["warn", "err"]
    assert sorted(result.issues_by_file()) == ["main.go", "util.go"]


def test_with_fixed_returns_new_result() -> None:
    result = _result(_issue("a", IssueLevel.ERROR), _issue("b", IssueLevel.ERROR))

    updated = result.with_fixed(["a"], "patched")

    assert result.fixed_count == 0
    assert updated.fixed_count == 1
    assert updated.issues[0].fix_result == "patched"
    assert [issue.id for issue in updated.fixable_issues()] == ["b"]
