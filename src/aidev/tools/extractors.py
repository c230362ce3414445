"""Pattern extractors that turn raw tool output into normalized issues.

Every extractor is a pure function of its input text: lines that do not match
a known shape are skipped, and re-running an extractor on the same text yields
the same issues in the same order. Classification tables are immutable and
injected through :class:`ExtractorTables` so projects can extend them from
``config.yaml`` without touching the parsing code.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Iterable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ..issues import Issue, IssueCategory, IssueLevel, issue_id

__all__ = [
    "CompilerRule",
    "DEFAULT_TABLES",
    "ExtractorTables",
    "GoTestEvent",
    "extract_compiler_issues",
    "extract_lint_issues",
    "extract_runtime_issues",
    "extract_test_issues",
    "extract_vet_issues",
]

_COMPILER_LINE_RE = re.compile(r"^([^:]+):(\d+):(\d+):\s*(.+)$")
_VET_LINE_RE = re.compile(r"^([^:]+):(\d+):(?:(\d+):)?\s*(.+)$")
_LINT_LINE_RE = re.compile(r"^([^:]+):(\d+):(\d+):\s*(.+)\s+\((\w+)\)$")
_PANIC_RE = re.compile(r"(?:panic|fatal error):\s*(.+)")
_NIL_DEREFERENCE_RE = re.compile(r"(?:nil|null) pointer dereference")
_OUT_OF_RANGE_RE = re.compile(r"(?:index|bounds) out of range")


@dataclass(frozen=True)
class CompilerRule:
    """Substring rule that classifies one family of compiler messages."""

    markers: tuple[str, ...]
    kind: str
    title: str
    suggestion: str = ""
    symbol_pattern: re.Pattern[str] | None = None
    level: IssueLevel = IssueLevel.ERROR

    def matches(self, message: str) -> bool:
        return any(marker in message for marker in self.markers)

    def symbol(self, message: str) -> str | None:
        if self.symbol_pattern is None:
            return None
        match = self.symbol_pattern.search(message)
        if match is None:
            return None
        return match.group(1).strip()


_DEFAULT_COMPILER_RULES: tuple[CompilerRule, ...] = (
    CompilerRule(
        markers=("undefined",),
        kind="undefined",
        title="Undefined identifier: {symbol}",
        suggestion="Check if '{symbol}' is defined or imported correctly",
        symbol_pattern=re.compile(r"undefined:\s*(\w+)"),
    ),
    CompilerRule(
        markers=("could not import",),
        kind="import",
        title="Import failed: {symbol}",
        suggestion="Check if the package exists and run 'go mod tidy'",
        symbol_pattern=re.compile(r"could not import\s+(.+)"),
    ),
    CompilerRule(
        markers=("declared but not used", "declared and not used"),
        kind="unused",
        title="Unused variable/declaration",
        suggestion="Remove unused declaration or use the variable",
        level=IssueLevel.WARNING,
    ),
    CompilerRule(
        markers=("cannot use",),
        kind="type-mismatch",
        title="Type mismatch",
        suggestion="Check type compatibility",
    ),
)

_DEFAULT_LINTER_SUGGESTIONS: dict[str, str] = {
    "errcheck": "Check and handle the returned error",
    "govet": "Follow the suggested fix from go vet",
    "staticcheck": "Apply the suggested fix from staticcheck",
    "ineffassign": "Remove or use the assigned variable",
    "deadcode": "Remove unused code",
    "unused": "Remove or use the unused code",
    "gosec": "Review and fix the security issue",
}


@dataclass(frozen=True)
class ExtractorTables:
    """Immutable lookup tables consulted by the extractors."""

    compiler_rules: tuple[CompilerRule, ...] = _DEFAULT_COMPILER_RULES
    linter_suggestions: Mapping[str, str] = field(
        default_factory=lambda: dict(_DEFAULT_LINTER_SUGGESTIONS)
    )
    escalated_linters: frozenset[str] = frozenset({"errcheck", "staticcheck"})
    default_lint_suggestion: str = "Review and fix the issue"

    def __post_init__(self) -> None:
        object.__setattr__(self, "compiler_rules", tuple(self.compiler_rules))
        object.__setattr__(
            self, "linter_suggestions", MappingProxyType(dict(self.linter_suggestions))
        )
        object.__setattr__(self, "escalated_linters", frozenset(self.escalated_linters))

    def lint_level(self, linter: str) -> IssueLevel:
        return IssueLevel.ERROR if linter in self.escalated_linters else IssueLevel.WARNING

    def lint_suggestion(self, linter: str) -> str:
        return self.linter_suggestions.get(linter, self.default_lint_suggestion)

    @classmethod
    def from_mapping(
        cls,
        section: Mapping[str, Any] | None,
        *,
        base: "ExtractorTables | None" = None,
    ) -> "ExtractorTables":
        """Layer overrides from an ``extractors`` config section on top of ``base``.

        ``linter_suggestions`` entries are merged, ``escalated_linters`` replaces
        the escalation list, and ``compiler_rules`` entries are evaluated before
        the base rules.
        """
        base = base or DEFAULT_TABLES
        if not isinstance(section, Mapping):
            return base

        suggestions = dict(base.linter_suggestions)
        raw_suggestions = section.get("linter_suggestions")
        if isinstance(raw_suggestions, Mapping):
            for key, value in raw_suggestions.items():
                if isinstance(key, str) and isinstance(value, str) and value.strip():
                    suggestions[key] = value.strip()

        escalated = base.escalated_linters
        raw_escalated = section.get("escalated_linters")
        if isinstance(raw_escalated, Sequence) and not isinstance(raw_escalated, (str, bytes)):
            escalated = frozenset(str(item) for item in raw_escalated if str(item).strip())

        rules: list[CompilerRule] = []
        raw_rules = section.get("compiler_rules")
        if isinstance(raw_rules, list):
            for entry in raw_rules:
                if isinstance(entry, Mapping):
                    rule = _build_compiler_rule(entry)
                    if rule is not None:
                        rules.append(rule)
        rules.extend(base.compiler_rules)

        default_suggestion = section.get("default_lint_suggestion")
        if not isinstance(default_suggestion, str) or not default_suggestion.strip():
            default_suggestion = base.default_lint_suggestion

        return cls(
            compiler_rules=tuple(rules),
            linter_suggestions=suggestions,
            escalated_linters=escalated,
            default_lint_suggestion=default_suggestion.strip(),
        )


DEFAULT_TABLES = ExtractorTables()


def _build_compiler_rule(config: Mapping[str, Any]) -> CompilerRule | None:
    """Convert a compiler rule configuration into an executable rule."""
    raw_markers = config.get("markers", config.get("marker"))
    if isinstance(raw_markers, str):
        markers = (raw_markers,)
    elif isinstance(raw_markers, Sequence) and not isinstance(raw_markers, bytes):
        markers = tuple(str(item) for item in raw_markers if str(item))
    else:
        return None
    kind = config.get("kind")
    title = config.get("title")
    if not markers or not isinstance(kind, str) or not kind or not isinstance(title, str):
        return None

    symbol_pattern = None
    pattern_text = config.get("symbol_pattern")
    if isinstance(pattern_text, str) and pattern_text:
        try:
            symbol_pattern = re.compile(pattern_text)
        except re.error:
            return None
        if symbol_pattern.groups < 1:
            return None

    try:
        level = IssueLevel(str(config.get("level") or IssueLevel.ERROR.value).lower())
    except ValueError:
        level = IssueLevel.ERROR

    suggestion = config.get("suggestion")
    if not isinstance(suggestion, str):
        suggestion = ""
    if not _renders(title) or not _renders(suggestion):
        return None
    return CompilerRule(
        markers=markers,
        kind=kind,
        title=title,
        suggestion=suggestion,
        symbol_pattern=symbol_pattern,
        level=level,
    )


def _renders(template: str) -> bool:
    """Return True when ``template`` formats with the rule placeholders."""
    try:
        template.format_map(_SafeDict(symbol="", path="", message=""))
    except (ValueError, IndexError, KeyError, AttributeError, TypeError):
        return False
    return True


def extract_compiler_issues(
    output: str | Iterable[str],
    *,
    tables: ExtractorTables = DEFAULT_TABLES,
) -> list[Issue]:
    """Parse ``path:line:column: message`` compiler diagnostics."""
    issues: list[Issue] = []
    for raw_line in _coerce_lines(output):
        line = raw_line.strip()
        if not line:
            continue
        match = _COMPILER_LINE_RE.match(line)
        if match is not None:
            issues.append(_classify_compiler_line(match, line, tables))
            continue
        if "error" in line or "Error" in line:
            # Unstructured; the running count keeps ids unique within one scan.
            issues.append(
                Issue(
                    id=f"build-generic-{len(issues)}",
                    category=IssueCategory.BUILD,
                    level=IssueLevel.ERROR,
                    title="Build error",
                    description=line,
                    raw_output=line,
                )
            )
    return issues


def _classify_compiler_line(
    match: re.Match[str],
    line: str,
    tables: ExtractorTables,
) -> Issue:
    path = _normalise_path(match.group(1))
    line_no = int(match.group(2))
    column = int(match.group(3))
    message = match.group(4).strip()

    for rule in tables.compiler_rules:
        if not rule.matches(message):
            continue
        symbol = rule.symbol(message)
        if rule.symbol_pattern is not None and symbol is None:
            break
        values = _SafeDict(symbol=symbol or "", path=path, message=message)
        key = f"{path} {symbol}" if symbol else path
        return Issue(
            id=issue_id(f"build-{rule.kind}", key, line=line_no, column=column),
            category=IssueCategory.BUILD,
            level=rule.level,
            title=rule.title.format_map(values),
            description=message,
            suggestion=rule.suggestion.format_map(values),
            file=path,
            line=line_no,
            column=column,
            raw_output=line,
        )

    return Issue(
        id=issue_id("build-error", path, line=line_no, column=column),
        category=IssueCategory.BUILD,
        level=IssueLevel.ERROR,
        title="Build error",
        description=message,
        file=path,
        line=line_no,
        column=column,
        raw_output=line,
    )


def extract_vet_issues(
    output: str | Iterable[str],
    *,
    tables: ExtractorTables = DEFAULT_TABLES,
) -> list[Issue]:
    """Parse ``path:line: message`` static-analysis output as lint warnings."""
    issues: list[Issue] = []
    for raw_line in _coerce_lines(output):
        line = raw_line.strip()
        match = _VET_LINE_RE.match(line)
        if match is None:
            continue
        path = _normalise_path(match.group(1))
        line_no = int(match.group(2))
        column = int(match.group(3)) if match.group(3) else None
        issues.append(
            Issue(
                id=issue_id("vet", path, line=line_no, column=column),
                category=IssueCategory.LINT,
                level=IssueLevel.WARNING,
                title="go vet issue",
                description=match.group(4).strip(),
                suggestion=tables.lint_suggestion("govet"),
                file=path,
                line=line_no,
                column=column,
                raw_output=line,
            )
        )
    return issues


def extract_lint_issues(
    output: str | Iterable[str],
    *,
    tables: ExtractorTables = DEFAULT_TABLES,
) -> list[Issue]:
    """Parse ``path:line:column: message (linter)`` linter output."""
    issues: list[Issue] = []
    for raw_line in _coerce_lines(output):
        line = raw_line.strip()
        match = _LINT_LINE_RE.match(line)
        if match is None:
            continue
        path = _normalise_path(match.group(1))
        line_no = int(match.group(2))
        column = int(match.group(3))
        message = match.group(4).strip()
        linter = match.group(5)
        issues.append(
            Issue(
                id=issue_id(f"lint-{linter}", path, line=line_no, column=column),
                category=IssueCategory.LINT,
                level=tables.lint_level(linter),
                title=f"[{linter}] {message}",
                description=message,
                suggestion=tables.lint_suggestion(linter),
                file=path,
                line=line_no,
                column=column,
                raw_output=line,
            )
        )
    return issues


class GoTestEvent(BaseModel):
    """One record of the ``go test -json`` event stream."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    time: str = Field(default="", alias="Time")
    action: str = Field(default="", alias="Action")
    package: str = Field(default="", alias="Package")
    test: str = Field(default="", alias="Test")
    output: str = Field(default="", alias="Output")
    elapsed: float | None = Field(default=None, alias="Elapsed")


def extract_test_issues(output: str | Iterable[str]) -> list[Issue]:
    """Turn failed test events into issues; malformed records are skipped."""
    issues: list[Issue] = []
    captured: dict[tuple[str, str], list[str]] = {}
    for raw_line in _coerce_lines(output):
        line = raw_line.strip()
        if not line:
            continue
        try:
            event = GoTestEvent.model_validate_json(line)
        except ValidationError:
            continue

        key = (event.package, event.test)
        if event.action == "output" and event.output:
            captured.setdefault(key, []).append(event.output)
            continue
        if event.action != "fail" or not event.test:
            continue

        raw_output = "".join(captured.get(key, ())) or event.output
        issues.append(
            Issue(
                id=issue_id("test-fail", f"{event.package} {event.test}"),
                category=IssueCategory.TEST,
                level=IssueLevel.ERROR,
                title=f"Test failed: {event.test}",
                description=f"Test '{event.test}' in package '{event.package}' failed",
                raw_output=raw_output,
            )
        )
    return issues


def extract_runtime_issues(output: str | Iterable[str]) -> list[Issue]:
    """Scan process output for crash signatures, one issue per signature."""
    text = _coerce_text(output)
    issues: list[Issue] = []

    panic = _PANIC_RE.search(text)
    if panic is not None:
        issues.append(
            Issue(
                id="runtime-panic",
                category=IssueCategory.RUNTIME,
                level=IssueLevel.CRITICAL,
                title="Runtime panic",
                description=panic.group(1).strip(),
                suggestion="Review the panic stack trace and fix the root cause",
                raw_output=text,
            )
        )

    if _NIL_DEREFERENCE_RE.search(text):
        issues.append(
            Issue(
                id="runtime-nil-pointer",
                category=IssueCategory.RUNTIME,
                level=IssueLevel.CRITICAL,
                title="Nil pointer dereference",
                description="The program attempted to access a nil pointer",
                suggestion="Add nil checks before accessing pointers",
                raw_output=text,
            )
        )

    if _OUT_OF_RANGE_RE.search(text):
        issues.append(
            Issue(
                id="runtime-index-out-of-range",
                category=IssueCategory.RUNTIME,
                level=IssueLevel.CRITICAL,
                title="Index out of range",
                description="Array/slice index out of bounds",
                suggestion="Add bounds checking before accessing array/slice elements",
                raw_output=text,
            )
        )

    return issues


def _normalise_path(path: str) -> str:
    """Return a consistent, forward-slash path without a leading ``./``."""
    normalized = path.strip()
    if "\\" in normalized:
        normalized = normalized.replace("\\", "/")
    while normalized.startswith("./"):
        normalized = normalized[2:]
    return normalized


def _coerce_lines(output: str | Iterable[str]) -> list[str]:
    if isinstance(output, str):
        return output.splitlines()
    return [str(line) for line in output]


def _coerce_text(output: str | Iterable[str]) -> str:
    if isinstance(output, str):
        return output
    return "\n".join(str(line) for line in output)


class _SafeDict(dict):
    """`str.format_map` helper that tolerates missing keys."""

    def __missing__(self, key: str) -> str:
        return ""
