"""Bounded-retry repair loop: read, prompt, generate, write, verify."""

from __future__ import annotations

import json
import logging
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Sequence

from .codeblocks import assign_blocks, extract_explanation, parse_code_blocks
from .diagnoser import ToolchainCommands, check_build, check_tests
from .issues import DiagnosticResult, Issue
from .models.llm_client import (
    RETRYABLE_MARKERS,
    GenerationClient,
    LLMCancelledError,
    LLMClientError,
    is_retryable_error,
)
from .prompts import PromptBuilder, PromptError, render_issue_guidance
from .tools.commands import (
    CancellationToken,
    CommandCancelled,
    CommandRunner,
    CommandTimeout,
    CommandUnavailable,
)
from .tools.extractors import DEFAULT_TABLES, ExtractorTables
from .tools.files import FileAccess, PathOutsideRoot

LOGGER = logging.getLogger(__name__)

FEEDBACK_TEMPLATE = "{instruction}\n\nPrevious attempt failed:\n{error}\nPlease fix the code."


class RepairMode(str, Enum):
    """Kind of change requested from the generation service."""

    REFACTOR = "refactor"
    FIX = "fix"
    GENERATE = "generate"

    @classmethod
    def from_command(cls, name: str) -> "RepairMode":
        """Map a CLI command name onto a mode; explain/review/test run as refactor."""
        lowered = name.strip().lower()
        if lowered in {"explain", "review", "test"}:
            return cls.REFACTOR
        return cls(lowered)


class RepairState(str, Enum):
    """States of one repair run."""

    READING = "reading"
    PROMPTING = "prompting"
    CALLING = "calling"
    PARSING_RESPONSE = "parsing_response"
    WRITING = "writing"
    VERIFYING = "verifying"
    RETRYING = "retrying"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in {RepairState.SUCCEEDED, RepairState.FAILED}


_FAILURE_EXITS = frozenset({RepairState.RETRYING, RepairState.FAILED})

TRANSITIONS: Mapping[RepairState, frozenset[RepairState]] = {
    RepairState.READING: frozenset({RepairState.PROMPTING}) | _FAILURE_EXITS,
    RepairState.PROMPTING: frozenset({RepairState.CALLING}) | _FAILURE_EXITS,
    RepairState.CALLING: frozenset({RepairState.PARSING_RESPONSE}) | _FAILURE_EXITS,
    RepairState.PARSING_RESPONSE: frozenset({RepairState.WRITING}) | _FAILURE_EXITS,
    RepairState.WRITING: frozenset({RepairState.VERIFYING, RepairState.SUCCEEDED}) | _FAILURE_EXITS,
    RepairState.VERIFYING: frozenset({RepairState.SUCCEEDED}) | _FAILURE_EXITS,
    RepairState.RETRYING: frozenset({RepairState.READING}),
    RepairState.SUCCEEDED: frozenset(),
    RepairState.FAILED: frozenset(),
}


class RepairStateError(RuntimeError):
    """Raised when the engine attempts a transition the table does not allow."""


@dataclass(slots=True)
class RepairConfig:
    """Retry budget and verification settings."""

    max_retries: int = 3
    build_verify: bool = True
    test_verify: bool = False
    verify_timeout: float | None = 300.0
    retryable_markers: tuple[str, ...] = RETRYABLE_MARKERS

    def __post_init__(self) -> None:
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1.")


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    """Decides whether a failed attempt is retried or ends the run."""

    max_retries: int = 3
    retryable_markers: tuple[str, ...] = RETRYABLE_MARKERS

    def is_fatal(self, state: RepairState, error: str) -> bool:
        # Only service errors can be fatal; every other failure is worth another attempt.
        return state is RepairState.CALLING and not is_retryable_error(error, self.retryable_markers)

    def should_retry(self, state: RepairState, error: str, attempt: int) -> bool:
        if attempt >= self.max_retries:
            return False
        return not self.is_fatal(state, error)


@dataclass(slots=True)
class RepairRequest:
    """Target files, instruction and working directory of one repair run."""

    mode: RepairMode
    files: list[str]
    instruction: str
    work_dir: Path | None = None
    constraints: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AttemptRecord:
    """Outcome of a single attempt."""

    attempt: int
    state: RepairState
    failed_in: RepairState | None = None
    error: str | None = None
    files_written: list[str] = field(default_factory=list)


@dataclass(slots=True)
class RepairResult:
    """Final outcome of a repair run."""

    success: bool = False
    files_written: list[str] = field(default_factory=list)
    attempts: int = 0
    duration: float = 0.0
    output: str = ""
    explanation: str = ""
    error: str | None = None
    attempt_log: list[AttemptRecord] = field(default_factory=list)

    @property
    def final_state(self) -> RepairState:
        return RepairState.SUCCEEDED if self.success else RepairState.FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Return a JSON-ready record; enum members are rendered as their values."""
        data = asdict(self, dict_factory=_record_dict)
        data["final_state"] = self.final_state.value
        return data

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), indent=indent)


def _record_dict(items: list[tuple[str, Any]]) -> Dict[str, Any]:
    return {key: value.value if isinstance(value, Enum) else value for key, value in items}


class _AttemptFailed(Exception):
    """Internal signal carrying the state an attempt failed in."""

    def __init__(self, state: RepairState, message: str, *, feedback: bool = False) -> None:
        super().__init__(message)
        self.state = state
        self.message = message
        self.feedback = feedback


class _Cancelled(Exception):
    """Internal signal that the caller's token stopped the run."""

    def __init__(self, message: str, state: RepairState) -> None:
        super().__init__(message)
        self.state = state


class _Attempt:
    """State tracker for one attempt, enforcing :data:`TRANSITIONS`."""

    def __init__(self, number: int) -> None:
        self.number = number
        self.state = RepairState.READING
        self.written: list[str] = []

    def advance(self, target: RepairState) -> None:
        if target not in TRANSITIONS[self.state]:
            raise RepairStateError(f"Illegal transition {self.state.value} -> {target.value}")
        LOGGER.debug("Attempt %d: %s -> %s", self.number, self.state.value, target.value)
        self.state = target


class RepairEngine:
    """Drives the repair state machine against injected capabilities."""

    def __init__(
        self,
        files: FileAccess,
        client: GenerationClient,
        runner: CommandRunner,
        config: RepairConfig | None = None,
        *,
        toolchain: ToolchainCommands | None = None,
        tables: ExtractorTables = DEFAULT_TABLES,
    ) -> None:
        self.files = files
        self.client = client
        self.runner = runner
        self.config = config or RepairConfig()
        self.toolchain = toolchain or ToolchainCommands()
        self.tables = tables
        self.policy = RetryPolicy(
            max_retries=self.config.max_retries,
            retryable_markers=self.config.retryable_markers,
        )

    def execute(self, request: RepairRequest, token: CancellationToken | None = None) -> RepairResult:
        """Run attempts until one verifies, the budget is spent, or a fatal error occurs."""
        token = token or CancellationToken()
        started = time.monotonic()
        result = RepairResult()
        instruction = request.instruction
        LOGGER.info(
            "Starting %s operation on %d file(s)", request.mode.value, len(request.files)
        )

        for number in range(1, self.config.max_retries + 1):
            result.attempts = number
            attempt = _Attempt(number)
            LOGGER.info("Attempt %d/%d", number, self.config.max_retries)
            try:
                response = self._run_attempt(attempt, request, instruction, token)
            except _Cancelled as cancelled:
                # Cancellation consumes the attempt and ends the run as failed.
                attempt.advance(RepairState.FAILED)
                if attempt.written:
                    result.files_written = list(attempt.written)
                result.error = str(cancelled)
                result.attempt_log.append(
                    AttemptRecord(number, RepairState.FAILED, cancelled.state, str(cancelled), list(attempt.written))
                )
                LOGGER.warning("Repair cancelled during attempt %d: %s", number, cancelled)
                break
            except _AttemptFailed as failure:
                if attempt.written:
                    result.files_written = list(attempt.written)
                result.error = failure.message
                retry = self.policy.should_retry(failure.state, failure.message, number)
                attempt.advance(RepairState.RETRYING if retry else RepairState.FAILED)
                result.attempt_log.append(
                    AttemptRecord(number, attempt.state, failure.state, failure.message, list(attempt.written))
                )
                LOGGER.error("Attempt %d failed while %s: %s", number, failure.state.value, failure.message)
                if not retry:
                    break
                if failure.feedback:
                    instruction = FEEDBACK_TEMPLATE.format(instruction=instruction, error=failure.message)
                continue

            attempt.advance(RepairState.SUCCEEDED)
            result.success = True
            result.error = None
            result.files_written = list(attempt.written)
            result.output = response
            result.explanation = extract_explanation(response)
            result.attempt_log.append(
                AttemptRecord(number, RepairState.SUCCEEDED, files_written=list(attempt.written))
            )
            break

        result.duration = time.monotonic() - started
        LOGGER.info(
            "Repair %s after %d attempt(s) in %.2fs",
            "succeeded" if result.success else "failed",
            result.attempts,
            result.duration,
        )
        return result

    def _run_attempt(
        self,
        attempt: _Attempt,
        request: RepairRequest,
        instruction: str,
        token: CancellationToken,
    ) -> str:
        self._checkpoint(token, attempt)
        contents = self._read(attempt, request)

        attempt.advance(RepairState.PROMPTING)
        builder = PromptBuilder(mode=request.mode.value, instruction=instruction)
        for path, content in contents.items():
            builder.add_file(path, content)
        for constraint in request.constraints:
            builder.add_constraint(constraint)
        builder.expect_outputs(request.files)
        try:
            package = builder.build()
        except PromptError as error:
            raise _AttemptFailed(attempt.state, f"build prompt: {error}") from error

        self._checkpoint(token, attempt)
        attempt.advance(RepairState.CALLING)
        try:
            response = self.client.chat(package.user_prompt, system_prompt=package.system_prompt, token=token)
        except LLMCancelledError as error:
            raise _Cancelled(f"Repair cancelled: {error}", RepairState.CALLING) from error
        except LLMClientError as error:
            if token.cancelled:
                raise _Cancelled("Repair cancelled.", RepairState.CALLING) from error
            raise _AttemptFailed(attempt.state, f"LLM call: {error}") from error
        LOGGER.info("LLM response received (%d chars)", len(response))

        self._checkpoint(token, attempt)
        attempt.advance(RepairState.PARSING_RESPONSE)
        blocks = parse_code_blocks(response)
        if not blocks:
            raise _AttemptFailed(attempt.state, "no code blocks found in response")
        assignments = assign_blocks(blocks, request.files)
        if not assignments:
            raise _AttemptFailed(attempt.state, "no code block could be mapped to a target file")
        LOGGER.info("Parsed %d code block(s)", len(blocks))

        self._checkpoint(token, attempt)
        attempt.advance(RepairState.WRITING)
        for path, block in assignments:
            try:
                self.files.write(path, block.content)
            except (OSError, PathOutsideRoot) as error:
                raise _AttemptFailed(attempt.state, f"write files: {path}: {error}") from error
            attempt.written.append(path)
            LOGGER.info("Wrote: %s", path)

        if request.work_dir is None or not (self.config.build_verify or self.config.test_verify):
            return response

        self._checkpoint(token, attempt)
        attempt.advance(RepairState.VERIFYING)
        self._verify(attempt, Path(request.work_dir), token)
        return response

    def _read(self, attempt: _Attempt, request: RepairRequest) -> dict[str, str]:
        contents: dict[str, str] = {}
        for path in request.files:
            try:
                contents[path] = self.files.read(path)
            except FileNotFoundError as error:
                if request.mode is RepairMode.GENERATE:
                    contents[path] = ""
                    continue
                raise _AttemptFailed(attempt.state, f"read files: {path}: {error}") from error
            except (OSError, UnicodeDecodeError, PathOutsideRoot) as error:
                raise _AttemptFailed(attempt.state, f"read files: {path}: {error}") from error
        return contents

    def _verify(self, attempt: _Attempt, work_dir: Path, token: CancellationToken) -> None:
        verify_token = token.child(self.config.verify_timeout)
        try:
            if self.config.build_verify:
                outcome = check_build(
                    self.runner,
                    work_dir,
                    toolchain=self.toolchain,
                    tables=self.tables,
                    token=verify_token,
                )
                if not outcome.ok:
                    raise _AttemptFailed(attempt.state, f"build failed: {outcome.output.strip()}", feedback=True)
                LOGGER.info("Build verification passed")
            if self.config.test_verify:
                outcome = check_tests(self.runner, work_dir, toolchain=self.toolchain, token=verify_token)
                if not outcome.ok:
                    details = _describe_issues(outcome.issues) or outcome.output.strip()
                    raise _AttemptFailed(attempt.state, f"tests failed: {details}", feedback=True)
                LOGGER.info("Test verification passed")
        except CommandCancelled as error:
            raise _Cancelled(f"Repair cancelled during verification: {error}", RepairState.VERIFYING) from error
        except CommandTimeout as error:
            if token.cancelled or token.expired:
                raise _Cancelled(f"Repair deadline exceeded during verification: {error}", RepairState.VERIFYING) from error
            raise _AttemptFailed(attempt.state, f"verification timed out: {error}", feedback=True) from error
        except CommandUnavailable as error:
            raise _AttemptFailed(attempt.state, f"verification unavailable: {error}") from error

    @staticmethod
    def _checkpoint(token: CancellationToken, attempt: _Attempt) -> None:
        if token.cancelled:
            raise _Cancelled("Repair cancelled.", attempt.state)
        if token.expired:
            raise _Cancelled("Repair deadline exceeded.", attempt.state)

    def refactor(
        self,
        files: Sequence[str],
        instruction: str,
        work_dir: Path | None = None,
        token: CancellationToken | None = None,
    ) -> RepairResult:
        return self.execute(RepairRequest(RepairMode.REFACTOR, list(files), instruction, work_dir), token)

    def fix(
        self,
        files: Sequence[str],
        instruction: str,
        work_dir: Path | None = None,
        token: CancellationToken | None = None,
    ) -> RepairResult:
        return self.execute(RepairRequest(RepairMode.FIX, list(files), instruction, work_dir), token)

    def generate(
        self,
        files: Sequence[str],
        instruction: str,
        work_dir: Path | None = None,
        token: CancellationToken | None = None,
    ) -> RepairResult:
        return self.execute(RepairRequest(RepairMode.GENERATE, list(files), instruction, work_dir), token)


def _describe_issues(issues: Iterable[Issue]) -> str:
    return "\n".join(f"{issue.title}: {issue.description}" for issue in issues)


@dataclass(slots=True)
class FileRepair:
    """Autofix outcome for one file."""

    path: str
    issue_ids: list[str]
    result: RepairResult


@dataclass(slots=True)
class AutofixReport:
    """Diagnosis updated with the outcome of every per-file repair."""

    diagnosis: DiagnosticResult
    repairs: list[FileRepair] = field(default_factory=list)

    @property
    def fixed_files(self) -> list[str]:
        return [repair.path for repair in self.repairs if repair.result.success]


class Autofixer:
    """Feeds fixable diagnostics back into the repair engine, one file at a time."""

    def __init__(self, engine: RepairEngine, *, work_dir: Path) -> None:
        self.engine = engine
        self.work_dir = work_dir

    def run(self, diagnosis: DiagnosticResult, token: CancellationToken | None = None) -> AutofixReport:
        token = token or CancellationToken()
        grouped: dict[str, list[Issue]] = {}
        for issue in diagnosis.fixable_issues():
            grouped.setdefault(issue.file or "", []).append(issue)

        report = AutofixReport(diagnosis=diagnosis)
        for path, issues in grouped.items():
            if token.cancelled:
                LOGGER.warning("Autofix cancelled; %d file(s) left untouched", len(grouped) - len(report.repairs))
                break
            lines = [f"{issue.location}: {issue.title}. {issue.suggestion}".strip() for issue in issues]
            instruction = f"Fix the reported problems in {path}.\n\n{render_issue_guidance(lines)}"
            request = RepairRequest(RepairMode.FIX, [path], instruction, self.work_dir)
            result = self.engine.execute(request, token)
            ids = [issue.id for issue in issues]
            report.repairs.append(FileRepair(path=path, issue_ids=ids, result=result))
            if result.success:
                note = f"Repaired in {result.attempts} attempt(s)"
                report.diagnosis = report.diagnosis.with_fixed(ids, note)
        return report


__all__ = [
    "AttemptRecord",
    "AutofixReport",
    "Autofixer",
    "FEEDBACK_TEMPLATE",
    "FileRepair",
    "RepairConfig",
    "RepairEngine",
    "RepairMode",
    "RepairRequest",
    "RepairResult",
    "RepairState",
    "RepairStateError",
    "RetryPolicy",
    "TRANSITIONS",
]
