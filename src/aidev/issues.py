"""Typed issue records shared by the diagnoser and the repair engine."""

from __future__ import annotations

import re
from collections.abc import Iterable
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, computed_field

_ID_SANITIZE_PATTERN = re.compile(r"[^A-Za-z0-9]+")


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


class IssueCategory(str, Enum):
    """Diagnostic dimension an issue belongs to."""

    CONFIG = "config"
    DEPENDENCY = "dependency"
    BUILD = "build"
    RUNTIME = "runtime"
    TEST = "test"
    LINT = "lint"
    SECURITY = "security"


class IssueLevel(str, Enum):
    """Severity classification, ordered critical > error > warning > info."""

    CRITICAL = "critical"
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"

    @property
    def rank(self) -> int:
        return _LEVEL_RANKS[self]


_LEVEL_RANKS: Dict[IssueLevel, int] = {
    IssueLevel.CRITICAL: 3,
    IssueLevel.ERROR: 2,
    IssueLevel.WARNING: 1,
    IssueLevel.INFO: 0,
}


def sanitize_id(value: str | None) -> str:
    """Collapse every run of non-alphanumeric characters into a single dash."""
    if not value:
        return ""
    return _ID_SANITIZE_PATTERN.sub("-", value).strip("-")


def issue_id(
    prefix: str,
    key: str | None = None,
    *,
    line: int | None = None,
    column: int | None = None,
) -> str:
    """Build a deterministic identifier from a category prefix and a location key.

    Identical inputs always produce the same identifier, and any difference in
    ``key``, ``line`` or ``column`` produces a different one. The diagnoser
    relies on this to deduplicate issues within a run and to compare runs.
    """
    parts = [prefix]
    sanitized = sanitize_id(key)
    if sanitized:
        parts.append(sanitized)
    if line is not None:
        parts.append(str(line))
    if column is not None:
        parts.append(str(column))
    return "-".join(parts)


class RecordModel(BaseModel):
    """Base model for immutable diagnostic records."""

    model_config = ConfigDict(extra="forbid", frozen=True)


class Issue(RecordModel):
    """A single normalized problem detected by a check."""

    id: str
    category: IssueCategory
    level: IssueLevel
    title: str
    description: str = ""
    suggestion: str = ""
    file: Optional[str] = None
    line: Optional[int] = None
    column: Optional[int] = None
    snippet: str = ""
    raw_output: str = ""
    fixed: bool = False
    fix_result: str = ""

    @property
    def location(self) -> str:
        if not self.file:
            return ""
        location = self.file
        if self.line is not None:
            location = f"{location}:{self.line}"
            if self.column is not None:
                location = f"{location}:{self.column}"
        return location

    def mark_fixed(self, note: str = "") -> "Issue":
        """Return a copy of the issue flagged as fixed."""
        return self.model_copy(update={"fixed": True, "fix_result": note})


class DiagnosticResult(RecordModel):
    """Immutable aggregate produced by one diagnoser run.

    Counts are derived from ``issues`` rather than stored, so they always match
    the issue sequence exactly.
    """

    project_path: str
    start_time: datetime
    end_time: datetime
    issues: Tuple[Issue, ...] = ()
    build_success: bool = False
    test_success: bool = False
    run_success: bool = False
    summary: str = ""

    @computed_field  # type: ignore[prop-decorator]
    @property
    def duration(self) -> float:
        return (self.end_time - self.start_time).total_seconds()

    @computed_field  # type: ignore[prop-decorator]
    @property
    def total_issues(self) -> int:
        return len(self.issues)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def critical_count(self) -> int:
        return self._count_level(IssueLevel.CRITICAL)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def error_count(self) -> int:
        return self._count_level(IssueLevel.ERROR)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def warning_count(self) -> int:
        return self._count_level(IssueLevel.WARNING)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def info_count(self) -> int:
        return self._count_level(IssueLevel.INFO)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def fixed_count(self) -> int:
        return sum(1 for issue in self.issues if issue.fixed)

    @property
    def healthy(self) -> bool:
        return not self.issues

    def _count_level(self, level: IssueLevel) -> int:
        return sum(1 for issue in self.issues if issue.level == level)

    def count_by_category(self, category: IssueCategory) -> int:
        return sum(1 for issue in self.issues if issue.category == category)

    def ranked_issues(self) -> List[Issue]:
        """Return issues ordered by severity, keeping detection order within a level."""
        return sorted(self.issues, key=lambda issue: -issue.level.rank)

    def issues_by_file(self) -> Dict[str, List[Issue]]:
        """Group localized issues by their source file."""
        grouped: Dict[str, List[Issue]] = {}
        for issue in self.issues:
            if issue.file:
                grouped.setdefault(issue.file, []).append(issue)
        return grouped

    def fixable_issues(self) -> List[Issue]:
        """Issues the repair engine can target: localized and above info level."""
        return [
            issue
            for issue in self.issues
            if issue.file and issue.level != IssueLevel.INFO and not issue.fixed
        ]

    def with_fixed(self, issue_ids: Iterable[str], note: str = "") -> "DiagnosticResult":
        """Return a new result where the given issues are flagged as fixed."""
        wanted = set(issue_ids)
        updated = tuple(
            issue.mark_fixed(note) if issue.id in wanted and not issue.fixed else issue
            for issue in self.issues
        )
        return self.model_copy(update={"issues": updated})

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")

    def to_json(self, *, indent: int | None = 2) -> str:
        return self.model_dump_json(indent=indent)


__all__ = [
    "DiagnosticResult",
    "Issue",
    "IssueCategory",
    "IssueLevel",
    "issue_id",
    "sanitize_id",
    "utc_now",
]
