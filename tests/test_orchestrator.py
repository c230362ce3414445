from __future__ import annotations

import json
from pathlib import Path

import pytest

from aidev.issues import DiagnosticResult, Issue, IssueCategory, IssueLevel, utc_now
from aidev.models.llm_client import LLMAPIError, LLMTransportError
from aidev.orchestrator import (
    TRANSITIONS,
    Autofixer,
    RepairConfig,
    RepairEngine,
    RepairMode,
    RepairRequest,
    RepairState,
    RetryPolicy,
)
from aidev.tools.commands import CancellationToken, CommandCancelled, CommandTimeout
from aidev.tools.files import WorkspaceFiles
from conftest import FakeRunner, MemoryFiles, ScriptedClient

BUILD = ("go", "build", "-v", "./...")
TEST = ("go", "test", "-v", "-json", "./...")
GO_BLOCK = "Updated code:\n\n```go\npackage main\n\nfunc main() {}\n```"


def _engine(
    files: MemoryFiles,
    client: ScriptedClient,
    runner: FakeRunner | None = None,
    **config: object,
) -> RepairEngine:
    return RepairEngine(files, client, runner or FakeRunner(), RepairConfig(**config))


def _request(work_dir: Path | None, *paths: str, mode: RepairMode = RepairMode.FIX) -> RepairRequest:
    return RepairRequest(mode=mode, files=list(paths or ("main.go",)), instruction="Fix the build", work_dir=work_dir)


def test_persistent_build_failure_exhausts_retries(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.script(BUILD, (1, "./main.go:3:2: undefined: x"))
    client = ScriptedClient([GO_BLOCK])
    files = MemoryFiles({"main.go": "package main"})

    result = _engine(files, client, runner, max_retries=3).execute(_request(tmp_path))

    assert not result.success
    assert result.final_state is RepairState.FAILED
    assert result.attempts == 3
    assert result.error.startswith("build failed")
    assert len(client.prompts) == 3
    assert runner.calls == [BUILD, BUILD, BUILD]
    assert [record.state for record in result.attempt_log] == [
        RepairState.RETRYING,
        RepairState.RETRYING,
        RepairState.FAILED,
    ]
    assert all(record.failed_in is RepairState.VERIFYING for record in result.attempt_log)


def test_result_serializes_to_plain_json(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.script(BUILD, (1, "./main.go:3:2: undefined: x"))
    files = MemoryFiles({"main.go": "package main"})

    result = _engine(files, ScriptedClient([GO_BLOCK]), runner, max_retries=2).execute(_request(tmp_path))
    data = result.to_dict()

    assert data["final_state"] == "failed"
    assert data["success"] is False
    assert [record["state"] for record in data["attempt_log"]] == ["retrying", "failed"]
    assert data["attempt_log"][0]["failed_in"] == "verifying"
    assert json.loads(result.to_json()) == data


def test_build_feedback_is_sent_on_next_attempt(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.script(BUILD, (1, "./main.go:3:2: undefined: x"), (0, ""))
    client = ScriptedClient([GO_BLOCK])
    files = MemoryFiles({"main.go": "package main"})

    result = _engine(files, client, runner).execute(_request(tmp_path))

    assert result.success
    assert result.error is None
    assert result.attempts == 2
    assert result.files_written == ["main.go"]
    assert result.explanation == "Updated code:"
    assert "Previous attempt failed" not in client.prompts[0]
    assert "Previous attempt failed:\nbuild failed: ./main.go:3:2: undefined: x" in client.prompts[1]
    assert files.contents["main.go"] == "package main\n\nfunc main() {}"


def test_blocks_are_written_to_targets_in_request_order() -> None:
    client = ScriptedClient(["```go\npackage b\n```\n\n```go\npackage a\n```"])
    files = MemoryFiles({"b.go": "", "a.go": ""})
    runner = FakeRunner()

    result = _engine(files, client, runner).execute(_request(None, "b.go", "a.go"))

    assert result.success
    assert files.writes == [("b.go", "package b"), ("a.go", "package a")]
    assert runner.calls == []
    assert "1. b.go\n2. a.go" in client.prompts[0]


def test_fatal_service_error_stops_after_one_attempt() -> None:
    client = ScriptedClient([LLMAPIError("API error: code=1002, message=invalid api key")])

    result = _engine(MemoryFiles({"main.go": ""}), client, max_retries=3).execute(_request(None))

    assert not result.success
    assert result.attempts == 1
    assert result.error.startswith("LLM call: API error")
    assert result.attempt_log[0].failed_in is RepairState.CALLING


def test_transient_service_error_is_retried_without_feedback() -> None:
    client = ScriptedClient([LLMTransportError("Connection failed: refused"), GO_BLOCK])

    result = _engine(MemoryFiles({"main.go": ""}), client).execute(_request(None))

    assert result.success
    assert result.attempts == 2
    assert "Previous attempt failed" not in client.prompts[1]


def test_response_without_code_is_retried() -> None:
    client = ScriptedClient(["Sorry, I need more context.", GO_BLOCK])

    result = _engine(MemoryFiles({"main.go": ""}), client).execute(_request(None))

    assert result.success
    assert result.attempt_log[0].error == "no code blocks found in response"
    assert result.attempt_log[0].failed_in is RepairState.PARSING_RESPONSE


def test_missing_target_fails_fix_but_not_generate() -> None:
    client = ScriptedClient([GO_BLOCK])

    fix = _engine(MemoryFiles(), client, max_retries=2).execute(_request(None, "new.go"))
    assert not fix.success
    assert fix.attempts == 2
    assert fix.error.startswith("read files: new.go")
    assert client.prompts == []

    files = MemoryFiles()
    generate = _engine(files, client).execute(_request(None, "new.go", mode=RepairMode.GENERATE))
    assert generate.success
    assert files.contents["new.go"] == "package main\n\nfunc main() {}"


def test_undecodable_target_fails_the_run(tmp_path: Path) -> None:
    (tmp_path / "main.go").write_bytes(b"package main\n// caf\xe9\n")
    client = ScriptedClient([GO_BLOCK])
    engine = RepairEngine(WorkspaceFiles(root=tmp_path), client, FakeRunner(), RepairConfig(max_retries=2))

    result = engine.execute(_request(tmp_path))

    assert not result.success
    assert result.attempts == 2
    assert result.error.startswith("read files: main.go")
    assert "UTF-8" in result.error
    assert client.prompts == []


def test_write_failure_is_reported() -> None:
    files = MemoryFiles({"main.go": ""}, fail_writes=True)

    result = _engine(files, ScriptedClient([GO_BLOCK]), max_retries=1).execute(_request(None))

    assert not result.success
    assert result.error.startswith("write files: main.go:")


def test_cancellation_during_verification_fails_run(tmp_path: Path) -> None:
    token = CancellationToken()
    runner = FakeRunner()

    def cancel(argv, verify_token):
        token.cancel()
        return CommandCancelled("Operation cancelled.")

    runner.script(BUILD, cancel)
    client = ScriptedClient([GO_BLOCK])

    result = _engine(MemoryFiles({"main.go": ""}), client, runner, max_retries=3).execute(_request(tmp_path), token)

    assert not result.success
    assert result.attempts == 1
    assert "cancelled" in result.error
    assert result.files_written == ["main.go"]
    assert result.attempt_log[0].failed_in is RepairState.VERIFYING


def test_cancelled_token_stops_before_calling() -> None:
    token = CancellationToken()
    token.cancel()
    client = ScriptedClient([GO_BLOCK])

    result = _engine(MemoryFiles({"main.go": ""}), client).execute(_request(None), token)

    assert not result.success
    assert result.attempts == 1
    assert client.prompts == []


def test_verification_timeout_is_retryable(tmp_path: Path) -> None:
    runner = FakeRunner()
    runner.script(BUILD, CommandTimeout("Command timed out: go build"), (0, ""))

    result = _engine(MemoryFiles({"main.go": ""}), ScriptedClient([GO_BLOCK]), runner).execute(_request(tmp_path))

    assert result.success
    assert result.attempts == 2
    assert result.attempt_log[0].error.startswith("verification timed out")


def test_test_verification_reports_failing_tests(tmp_path: Path) -> None:
    runner = FakeRunner()
    event = '{"Action": "fail", "Package": "example.com/demo", "Test": "TestAdd"}'
    runner.script(TEST, (1, event))

    result = _engine(
        MemoryFiles({"main.go": ""}),
        ScriptedClient([GO_BLOCK]),
        runner,
        max_retries=1,
        build_verify=False,
        test_verify=True,
    ).execute(_request(tmp_path))

    assert not result.success
    assert result.error.startswith("tests failed: Test failed: TestAdd")
    assert runner.calls == [TEST]


def test_autofix_marks_repaired_issues(tmp_path: Path) -> None:
    start = utc_now()
    diagnosis = DiagnosticResult(
        project_path=str(tmp_path),
        start_time=start,
        end_time=start,
        issues=(
            Issue(
                id="build-undefined-main-go-parseUser-3-2",
                category=IssueCategory.BUILD,
                level=IssueLevel.ERROR,
                title="Undefined: parseUser",
                suggestion="Define parseUser",
                file="main.go",
                line=3,
                column=2,
            ),
            Issue(id="dep-unused", category=IssueCategory.DEPENDENCY, level=IssueLevel.INFO, title="unused"),
        ),
    )
    client = ScriptedClient([GO_BLOCK])
    engine = _engine(MemoryFiles({"main.go": "package main"}), client)

    report = Autofixer(engine, work_dir=tmp_path).run(diagnosis)

    assert report.fixed_files == ["main.go"]
    assert report.diagnosis.fixed_count == 1
    assert report.diagnosis.issues[0].fix_result == "Repaired in 1 attempt(s)"
    assert "Fix the reported problems in main.go." in client.prompts[0]
    assert "- main.go:3:2: Undefined: parseUser. Define parseUser" in client.prompts[0]


def test_transition_table_and_policy() -> None:
    assert TRANSITIONS[RepairState.RETRYING] == frozenset({RepairState.READING})
    assert not TRANSITIONS[RepairState.SUCCEEDED]
    assert RepairState.FAILED.terminal

    policy = RetryPolicy(max_retries=3)
    assert policy.should_retry(RepairState.VERIFYING, "build failed", 1)
    assert not policy.should_retry(RepairState.VERIFYING, "build failed", 3)
    assert policy.should_retry(RepairState.CALLING, "HTTP 503: unavailable", 1)
    assert not policy.should_retry(RepairState.CALLING, "invalid api key", 1)


def test_config_and_mode_helpers() -> None:
    with pytest.raises(ValueError):
        RepairConfig(max_retries=0)
    assert RepairMode.from_command("review") is RepairMode.REFACTOR
    assert RepairMode.from_command("Generate") is RepairMode.GENERATE
