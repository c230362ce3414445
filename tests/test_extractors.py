from __future__ import annotations

import json
import textwrap

import pytest

from aidev.issues import IssueCategory, IssueLevel
from aidev.tools.extractors import (
    DEFAULT_TABLES,
    ExtractorTables,
    extract_compiler_issues,
    extract_lint_issues,
    extract_runtime_issues,
    extract_test_issues,
    extract_vet_issues,
)


def test_compiler_undefined_identifier_becomes_single_build_error() -> None:
    issues = extract_compiler_issues("handler.go:12:5: undefined: parseUser")

    assert len(issues) == 1
    issue = issues[0]
    assert issue.category == IssueCategory.BUILD
    assert issue.level == IssueLevel.ERROR
    assert issue.file == "handler.go"
    assert issue.line == 12
    assert issue.column == 5
    assert "parseUser" in issue.title
    assert "parseUser" in issue.suggestion


def test_compiler_classification_table_order() -> None:
    output = textwrap.dedent(
        """
        # example.com/demo
        ./api/server.go:4:2: could not import example.com/missing (no required module)
        ./api/server.go:9:2: declared and not used: count
        .\\api\\server.go:15:9: cannot use name (variable of type int) as string value
        ./api/server.go:20:1: syntax error: unexpected }
        """
    )

    issues = extract_compiler_issues(output)

    assert [issue.title for issue in issues] == [
        "Import failed: example.com/missing (no required module)",
        "Unused variable/declaration",
        "Type mismatch",
        "Build error",
    ]
    assert issues[1].level == IssueLevel.WARNING
    assert {issue.file for issue in issues} == {"api/server.go"}


def test_compiler_unstructured_error_lines_get_running_ids() -> None:
    output = "main.go:1:1: undefined: thing\nerror: linker failed\nsome Error happened"

    issues = extract_compiler_issues(output)

    assert [issue.id for issue in issues[1:]] == ["build-generic-1", "build-generic-2"]
    assert all(issue.file is None for issue in issues[1:])


def test_compiler_ids_are_stable_and_location_sensitive() -> None:
    first = extract_compiler_issues("handler.go:12:5: undefined: parseUser")[0]
    again = extract_compiler_issues("./handler.go:12:5: undefined: parseUser")[0]
    moved = extract_compiler_issues("handler.go:13:5: undefined: parseUser")[0]
    shifted = extract_compiler_issues("handler.go:12:6: undefined: parseUser")[0]

    assert first.id == again.id
    assert len({first.id, moved.id, shifted.id}) == 3


@pytest.mark.parametrize(
    ("extract", "output"),
    [
        (extract_compiler_issues, "a.go:1:2: undefined: x\nb.go:3:4: cannot use y\nbroken Error line"),
        (extract_vet_issues, "# example.com/demo\n./a.go:3:1: unreachable code\nb.go:9: printf call has arguments"),
        (extract_lint_issues, "a.go:3:1: should check error (errcheck)\nb.go:8:2: line is 140 characters (lll)"),
        (
            extract_test_issues,
            '{"Action": "fail", "Package": "example.com/demo", "Test": "TestA"}\n'
            '{"Action": "fail", "Package": "example.com/demo", "Test": "TestB"}',
        ),
        (
            extract_runtime_issues,
            "panic: runtime error: index out of range [3] with length 2\ngoroutine 1 [running]:",
        ),
    ],
)
def test_extractors_are_deterministic(extract, output: str) -> None:
    first = extract(output)

    assert first
    assert extract(output) == first
    assert len({issue.id for issue in first}) == len(first)


@pytest.mark.parametrize("title", ["Syntax {0}", "Syntax {", "Syntax {message[0]}", "Syntax {path.bogus}"])
def test_compiler_rule_with_unusable_template_is_dropped(title: str) -> None:
    tables = ExtractorTables.from_mapping(
        {"compiler_rules": [{"markers": ["syntax error"], "kind": "syntax", "title": title}]}
    )

    issues = extract_compiler_issues("main.go:1:1: syntax error: unexpected }", tables=tables)

    assert len(tables.compiler_rules) == len(DEFAULT_TABLES.compiler_rules)
    assert issues[0].title == "Build error"
    assert issues[0].id.startswith("build-error-")


def test_compiler_rule_with_unusable_suggestion_is_dropped() -> None:
    tables = ExtractorTables.from_mapping(
        {
            "compiler_rules": [
                {"markers": ["syntax error"], "kind": "syntax", "title": "Syntax", "suggestion": "Fix {}"},
                {"markers": ["syntax error"], "kind": "syntax", "title": "Syntax in {path}"},
            ]
        }
    )

    issues = extract_compiler_issues("main.go:1:1: syntax error: unexpected }", tables=tables)

    assert len(tables.compiler_rules) == len(DEFAULT_TABLES.compiler_rules) + 1
    assert issues[0].title == "Syntax in main.go"


def test_lint_errcheck_is_escalated_with_table_suggestion() -> None:
    issues = extract_lint_issues("svc.go:3:1: should check error (errcheck)")

    assert len(issues) == 1
    issue = issues[0]
    assert issue.category == IssueCategory.LINT
    assert issue.level == IssueLevel.ERROR
    assert issue.suggestion == "Check and handle the returned error"
    assert issue.title == "[errcheck] should check error"


def test_lint_unknown_linter_defaults_to_warning() -> None:
    issues = extract_lint_issues("svc.go:8:2: line is 140 characters (lll)")

    assert issues[0].level == IssueLevel.WARNING
    assert issues[0].suggestion == "Review and fix the issue"


def test_tables_from_mapping_layer_overrides() -> None:
    tables = ExtractorTables.from_mapping(
        {
            "escalated_linters": ["lll"],
            "linter_suggestions": {"lll": "Wrap the line"},
            "compiler_rules": [
                {
                    "markers": ["too many arguments"],
                    "kind": "arity",
                    "title": "Wrong argument count",
                    "suggestion": "Check the call signature",
                }
            ],
        }
    )

    lint = extract_lint_issues("svc.go:8:2: line is 140 characters (lll)", tables=tables)
    assert lint[0].level == IssueLevel.ERROR
    assert lint[0].suggestion == "Wrap the line"
    errcheck = extract_lint_issues("svc.go:3:1: should check error (errcheck)", tables=tables)
    assert errcheck[0].level == IssueLevel.WARNING

    build = extract_compiler_issues("x.go:2:3: too many arguments in call to f", tables=tables)
    assert build[0].title == "Wrong argument count"
    assert build[0].id.startswith("build-arity-")
    assert DEFAULT_TABLES.lint_level("lll") == IssueLevel.WARNING


def test_vet_accepts_optional_column() -> None:
    output = "# example.com/demo\nvet: ./store.go:22: unreachable code\n./store.go:30:4: printf call has arguments"

    issues = extract_vet_issues(output)

    assert len(issues) == 1
    assert issues[0].line == 30
    assert issues[0].column == 4
    assert issues[0].level == IssueLevel.WARNING
    assert issues[0].category == IssueCategory.LINT

    without_column = extract_vet_issues("store.go:22: unreachable code")
    assert without_column[0].column is None
    assert without_column[0].id == "vet-store-go-22"


def test_test_events_only_failures_with_test_name() -> None:
    events = [
        {"Action": "run", "Package": "example.com/demo", "Test": "TestAdd"},
        {"Action": "output", "Package": "example.com/demo", "Test": "TestAdd", "Output": "    add_test.go:9: got 4\n"},
        {"Action": "fail", "Package": "example.com/demo", "Test": "TestAdd", "Elapsed": 0.01},
        {"Action": "pass", "Package": "example.com/demo", "Test": "TestSub"},
        {"Action": "fail", "Package": "example.com/demo", "Elapsed": 0.02},
    ]
    output = "\n".join(json.dumps(event) for event in events) + "\nnot json at all\n{\"Action\": 5}"

    issues = extract_test_issues(output)

    assert len(issues) == 1
    issue = issues[0]
    assert issue.category == IssueCategory.TEST
    assert issue.level == IssueLevel.ERROR
    assert issue.title == "Test failed: TestAdd"
    assert "add_test.go:9: got 4" in issue.raw_output


def test_runtime_signatures_emit_one_issue_each() -> None:
    output = textwrap.dedent(
        """
        panic: runtime error: invalid memory address or nil pointer dereference
        [signal SIGSEGV: segmentation violation]
        panic: runtime error: index out of range [3] with length 2
        """
    )

    issues = extract_runtime_issues(output)

    assert [issue.id for issue in issues] == [
        "runtime-panic",
        "runtime-nil-pointer",
        "runtime-index-out-of-range",
    ]
    assert all(issue.level == IssueLevel.CRITICAL for issue in issues)
    assert extract_runtime_issues("all good") == []
