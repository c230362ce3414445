"""Project diagnosis across config, dependencies, build, lint, tests and runtime.

The :class:`Diagnoser` runs each enabled check in a fixed order, turns the raw
tool output into :class:`~aidev.issues.Issue` records through the pattern
extractors and returns one immutable :class:`~aidev.issues.DiagnosticResult`.
The build and test checks are also exposed as :func:`check_build` and
:func:`check_tests` so the repair engine verifies patches with exactly the same
commands and success criterion.
"""

from __future__ import annotations

import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterator, Mapping, Sequence

from pydantic.type_adapter import TypeAdapter

from .issues import DiagnosticResult, Issue, IssueCategory, IssueLevel, issue_id, utc_now
from .tools.commands import (
    CancellationToken,
    CommandCancelled,
    CommandResult,
    CommandRunner,
    CommandTimeout,
    CommandUnavailable,
    SubprocessRunner,
    split_command,
)
from .tools.extractors import (
    DEFAULT_TABLES,
    ExtractorTables,
    extract_compiler_issues,
    extract_lint_issues,
    extract_runtime_issues,
    extract_test_issues,
    extract_vet_issues,
)

LOGGER = logging.getLogger(__name__)

HEALTHY_SUMMARY = "No issues found. Project is healthy!"

_SKIPPED_DIRS = frozenset({".git", ".ai-backup", "vendor", "node_modules", "testdata"})

_COMMAND_FIELDS = ("build", "vet", "lint", "test", "deps_verify", "deps_tidy", "run")


class ProjectEnvironmentError(RuntimeError):
    """Raised when the project directory cannot be entered."""


@dataclass(slots=True)
class ToolchainCommands:
    """External commands and file conventions used by the checks."""

    build: tuple[str, ...] = ("go", "build", "-v", "./...")
    vet: tuple[str, ...] = ("go", "vet", "./...")
    lint: tuple[str, ...] = ("golangci-lint", "run", "--timeout", "5m", "--issues-exit-code", "1")
    test: tuple[str, ...] = ("go", "test", "-v", "-json", "./...")
    deps_verify: tuple[str, ...] = ("go", "mod", "verify")
    deps_tidy: tuple[str, ...] = ("go", "mod", "tidy", "-v")
    run: tuple[str, ...] = ("go", "run")
    manifest: str = "go.mod"
    manifest_hint: str = "go mod init <module-name>"
    config_files: tuple[str, ...] = (
        ".env.example",
        "config.yaml",
        "config.json",
        "Dockerfile",
        "docker-compose.yml",
    )
    main_candidates: tuple[str, ...] = (
        "main.go",
        "cmd/main.go",
        "cmd/server/main.go",
        "cmd/app/main.go",
    )
    main_filename: str = "main.go"


@dataclass(slots=True)
class DiagnoseConfig:
    """Which checks run, where, and under which deadlines."""

    project_path: Path = Path(".")
    timeout: float = 300.0
    runtime_timeout: float = 10.0
    check_config: bool = True
    check_deps: bool = True
    check_build: bool = True
    check_lint: bool = True
    check_tests: bool = True
    check_runtime: bool = True
    verbose: bool = False
    autofix: bool = False
    max_fix_attempts: int = 3
    toolchain: ToolchainCommands = field(default_factory=ToolchainCommands)

    @classmethod
    def from_mapping(
        cls,
        diagnose_section: Mapping[str, Any] | None = None,
        toolchain_section: Mapping[str, Any] | None = None,
        **overrides: Any,
    ) -> "DiagnoseConfig":
        """Validate the ``diagnose`` and ``toolchain`` config sections.

        Keyword ``overrides`` with a ``None`` value are ignored so CLI flags
        that were not passed fall through to the file values.
        """
        data: dict[str, Any] = dict(diagnose_section or {})
        data.update({key: value for key, value in overrides.items() if value is not None})
        toolchain: dict[str, Any] = dict(toolchain_section or {})
        for name in _COMMAND_FIELDS:
            if isinstance(toolchain.get(name), str):
                toolchain[name] = split_command(toolchain[name])
        data["toolchain"] = toolchain
        config = _DIAGNOSE_ADAPTER.validate_python(data)
        config.validate()
        return config

    def validate(self) -> None:
        if self.timeout <= 0 or self.runtime_timeout <= 0:
            raise ValueError("Diagnose timeouts must be positive.")
        if self.max_fix_attempts < 1:
            raise ValueError("max_fix_attempts must be at least 1.")
        for name in _COMMAND_FIELDS:
            if not getattr(self.toolchain, name):
                raise ValueError(f"Toolchain command '{name}' cannot be empty.")

    def enabled_categories(self) -> list[IssueCategory]:
        toggles = (
            (self.check_config, IssueCategory.CONFIG),
            (self.check_deps, IssueCategory.DEPENDENCY),
            (self.check_build, IssueCategory.BUILD),
            (self.check_lint, IssueCategory.LINT),
            (self.check_tests, IssueCategory.TEST),
            (self.check_runtime, IssueCategory.RUNTIME),
        )
        return [category for enabled, category in toggles if enabled]


_DIAGNOSE_ADAPTER = TypeAdapter(DiagnoseConfig)


@dataclass(slots=True)
class CheckOutcome:
    """Result of one build or test verification."""

    ok: bool
    issues: list[Issue] = field(default_factory=list)
    output: str = ""


@contextmanager
def working_directory(path: Path | str) -> Iterator[Path]:
    """Enter ``path`` for the duration of the block and always restore the previous cwd."""
    previous = Path.cwd()
    try:
        os.chdir(path)
    except OSError as error:
        raise ProjectEnvironmentError(f"Failed to change to project directory {path}: {error}") from error
    try:
        yield Path.cwd()
    finally:
        os.chdir(previous)


def check_build(
    runner: CommandRunner,
    cwd: Path,
    *,
    toolchain: ToolchainCommands | None = None,
    tables: ExtractorTables = DEFAULT_TABLES,
    token: CancellationToken | None = None,
) -> CheckOutcome:
    """Run the build command; success means a zero exit code.

    Command errors (:class:`CommandUnavailable`, :class:`CommandTimeout`,
    :class:`CommandCancelled`) propagate to the caller.
    """
    toolchain = toolchain or ToolchainCommands()
    result = runner.run(toolchain.build, cwd=cwd, token=token)
    if result.ok:
        return CheckOutcome(ok=True, output=result.combined)
    output = result.combined
    issues = extract_compiler_issues(output, tables=tables)
    if not issues:
        issues = [_command_failure_issue(IssueCategory.BUILD, "Build failed", result)]
    return CheckOutcome(ok=False, issues=issues, output=output)


def check_tests(
    runner: CommandRunner,
    cwd: Path,
    *,
    toolchain: ToolchainCommands | None = None,
    token: CancellationToken | None = None,
) -> CheckOutcome:
    """Run the test command; success means a zero exit code."""
    toolchain = toolchain or ToolchainCommands()
    result = runner.run(toolchain.test, cwd=cwd, token=token)
    if result.ok:
        return CheckOutcome(ok=True, output=result.combined)
    output = result.combined
    issues = extract_test_issues(output)
    if not issues:
        issues = [_command_failure_issue(IssueCategory.TEST, "Test run failed", result)]
    return CheckOutcome(ok=False, issues=issues, output=output)


def generate_summary(issues: Sequence[Issue], config: DiagnoseConfig) -> str:
    """Render the human-readable summary of a run."""
    if not issues:
        return HEALTHY_SUMMARY
    lines = [f"Found {len(issues)} issue(s):"]
    for category in config.enabled_categories():
        count = sum(1 for issue in issues if issue.category == category)
        if count:
            lines.append(f"  - {_CATEGORY_LABELS[category]}: {count}")
    return "\n".join(lines)


_CATEGORY_LABELS: Mapping[IssueCategory, str] = {
    IssueCategory.CONFIG: "Config",
    IssueCategory.DEPENDENCY: "Dependencies",
    IssueCategory.BUILD: "Build",
    IssueCategory.LINT: "Lint",
    IssueCategory.TEST: "Tests",
    IssueCategory.RUNTIME: "Runtime",
}


class _RunDeadlineExceeded(Exception):
    """Internal signal that the overall run deadline elapsed."""


class _IssueCollector:
    """Per-run issue list that keeps the first occurrence of every id."""

    def __init__(self) -> None:
        self.issues: list[Issue] = []
        self._seen: set[str] = set()

    def add(self, issue: Issue) -> None:
        if issue.id in self._seen:
            LOGGER.debug("Dropping duplicate issue %s", issue.id)
            return
        self._seen.add(issue.id)
        self.issues.append(issue)

    def extend(self, issues: Sequence[Issue]) -> None:
        for issue in issues:
            self.add(issue)


_Check = Callable[[Path, _IssueCollector, CancellationToken], bool]


class Diagnoser:
    """Runs the enabled checks against one project directory."""

    def __init__(
        self,
        config: DiagnoseConfig,
        *,
        runner: CommandRunner | None = None,
        tables: ExtractorTables = DEFAULT_TABLES,
    ) -> None:
        self.config = config
        self.runner = runner or SubprocessRunner()
        self.tables = tables

    def run(self, token: CancellationToken | None = None) -> DiagnosticResult:
        """Diagnose the project and return a full report.

        Raises :class:`ProjectEnvironmentError` when the project directory is
        inaccessible and :class:`CommandCancelled` when ``token`` is cancelled.
        Every other failure is reported as an issue.
        """
        parent = token or CancellationToken()
        run_token = parent.child(self.config.timeout)
        start_time = utc_now()
        collector = _IssueCollector()
        checks: tuple[tuple[bool, IssueCategory, _Check], ...] = (
            (self.config.check_config, IssueCategory.CONFIG, self._check_config),
            (self.config.check_deps, IssueCategory.DEPENDENCY, self._check_dependencies),
            (self.config.check_build, IssueCategory.BUILD, self._check_build),
            (self.config.check_lint, IssueCategory.LINT, self._check_lint),
            (self.config.check_tests, IssueCategory.TEST, self._check_tests),
            (self.config.check_runtime, IssueCategory.RUNTIME, self._check_runtime),
        )
        outcomes: dict[IssueCategory, bool] = {}

        with working_directory(self.config.project_path) as cwd:
            LOGGER.info("Diagnosing %s", cwd)
            for enabled, category, check in checks:
                if not enabled:
                    continue
                try:
                    outcomes[category] = self._guard(category, check, cwd, collector, run_token, parent)
                except _RunDeadlineExceeded:
                    outcomes[category] = False
                    LOGGER.warning(
                        "Diagnosis deadline of %.0fs exceeded during the %s check; skipping remaining checks.",
                        self.config.timeout,
                        category.value,
                    )
                    break

        issues = tuple(collector.issues)
        result = DiagnosticResult(
            project_path=str(self.config.project_path),
            start_time=start_time,
            end_time=utc_now(),
            issues=issues,
            build_success=outcomes.get(IssueCategory.BUILD, True),
            test_success=outcomes.get(IssueCategory.TEST, True),
            run_success=outcomes.get(IssueCategory.RUNTIME, True),
            summary=generate_summary(issues, self.config),
        )
        LOGGER.info("Diagnosis finished with %d issue(s) in %.2fs", result.total_issues, result.duration)
        return result

    def _guard(
        self,
        category: IssueCategory,
        check: "_Check",
        cwd: Path,
        collector: _IssueCollector,
        token: CancellationToken,
        parent: CancellationToken,
    ) -> bool:
        """Run one check, converting tool and deadline failures into issues."""
        try:
            return check(cwd, collector, token)
        except CommandCancelled:
            raise
        except CommandTimeout as error:
            if parent.cancelled:
                raise CommandCancelled("Diagnosis cancelled.") from error
            collector.add(
                Issue(
                    id=f"{category.value}-timeout",
                    category=category,
                    level=IssueLevel.WARNING,
                    title=f"{_CATEGORY_LABELS[category]} check timed out",
                    description=str(error),
                    suggestion="Increase the diagnose timeout or run the check manually",
                    raw_output="\n".join(part for part in (error.stdout, error.stderr) if part),
                )
            )
            raise _RunDeadlineExceeded() from error
        except CommandUnavailable as error:
            collector.add(
                Issue(
                    id=f"{category.value}-tool-unavailable",
                    category=category,
                    level=IssueLevel.ERROR,
                    title=f"{_CATEGORY_LABELS[category]} tool unavailable",
                    description=str(error),
                    suggestion="Install the toolchain or adjust the toolchain section of config.yaml",
                )
            )
            return False

    def _check_config(self, cwd: Path, collector: _IssueCollector, token: CancellationToken) -> bool:
        toolchain = self.config.toolchain
        manifest = cwd / toolchain.manifest
        healthy = manifest.is_file()
        if not healthy:
            collector.add(
                Issue(
                    id=issue_id("config", f"{toolchain.manifest} missing"),
                    category=IssueCategory.CONFIG,
                    level=IssueLevel.CRITICAL,
                    title=f"{toolchain.manifest} file missing",
                    description=(
                        f"Project has no {toolchain.manifest}. "
                        f"Run '{toolchain.manifest_hint}' to initialize."
                    ),
                    suggestion=f"Run: {toolchain.manifest_hint}",
                )
            )
        else:
            try:
                content = manifest.read_text(encoding="utf-8")
            except (OSError, UnicodeDecodeError) as error:
                LOGGER.warning("Could not read %s: %s", manifest, error)
                healthy = False
                collector.add(
                    Issue(
                        id=issue_id("config", f"{toolchain.manifest} unreadable"),
                        category=IssueCategory.CONFIG,
                        level=IssueLevel.ERROR,
                        title=f"{toolchain.manifest} could not be read",
                        description=str(error),
                        suggestion=f"Re-save {toolchain.manifest} as UTF-8 text",
                        file=toolchain.manifest,
                    )
                )
            else:
                for line in content.splitlines():
                    if "replace" in line and "=>" in line:
                        LOGGER.info("Found replace directive: %s", line.strip())

        for name in toolchain.config_files:
            if (cwd / name).exists():
                LOGGER.debug("Found config file: %s", name)
        return healthy

    def _check_dependencies(
        self,
        cwd: Path,
        collector: _IssueCollector,
        token: CancellationToken,
    ) -> bool:
        toolchain = self.config.toolchain
        verify = self._run(toolchain.deps_verify, cwd, token)
        if not verify.ok:
            collector.add(
                Issue(
                    id="dep-verify-failed",
                    category=IssueCategory.DEPENDENCY,
                    level=IssueLevel.WARNING,
                    title="Dependency verification failed",
                    description=verify.combined,
                    suggestion="Run 'go mod tidy' and 'go mod download' to fix dependencies",
                    raw_output=verify.combined,
                )
            )

        tidy = self._run(toolchain.deps_tidy, cwd, token)
        if "unused" in tidy.combined:
            collector.add(
                Issue(
                    id="dep-unused",
                    category=IssueCategory.DEPENDENCY,
                    level=IssueLevel.INFO,
                    title="Unused dependencies detected",
                    description="Some dependencies are not used in the code",
                    suggestion="Run 'go mod tidy' to clean up",
                    raw_output=tidy.combined,
                )
            )
        return verify.ok

    def _check_build(self, cwd: Path, collector: _IssueCollector, token: CancellationToken) -> bool:
        outcome = check_build(
            self.runner,
            cwd,
            toolchain=self.config.toolchain,
            tables=self.tables,
            token=token,
        )
        collector.extend(outcome.issues)
        if outcome.ok:
            LOGGER.info("Build successful")
        return outcome.ok

    def _check_lint(self, cwd: Path, collector: _IssueCollector, token: CancellationToken) -> bool:
        toolchain = self.config.toolchain
        linter = toolchain.lint[0]
        if self.runner.which(linter):
            try:
                result = self._run(toolchain.lint, cwd, token)
            except CommandUnavailable:
                LOGGER.info("%s could not be started; falling back to %s", linter, toolchain.vet[0])
            else:
                if not result.ok:
                    collector.extend(extract_lint_issues(result.combined, tables=self.tables))
                return result.ok
        else:
            LOGGER.info("%s not installed; falling back to %s", linter, " ".join(toolchain.vet))

        result = self._run(toolchain.vet, cwd, token)
        if not result.ok:
            collector.extend(extract_vet_issues(result.combined, tables=self.tables))
        return result.ok

    def _check_tests(self, cwd: Path, collector: _IssueCollector, token: CancellationToken) -> bool:
        outcome = check_tests(self.runner, cwd, toolchain=self.config.toolchain, token=token)
        collector.extend(outcome.issues)
        if outcome.ok:
            LOGGER.info("Tests passed")
        return outcome.ok

    def _check_runtime(self, cwd: Path, collector: _IssueCollector, token: CancellationToken) -> bool:
        main_file = find_main_file(cwd, self.config.toolchain)
        if main_file is None:
            LOGGER.debug("No main file found; skipping runtime check")
            return True

        command = (*self.config.toolchain.run, main_file)
        try:
            result = self._run(command, cwd, token.child(self.config.runtime_timeout))
        except CommandTimeout:
            if token.expired or token.cancelled:
                raise
            # Long-running programs (servers) are expected to outlive the runtime check.
            LOGGER.info("Program still running after %.0fs; treating as healthy", self.config.runtime_timeout)
            return True

        if result.ok:
            return True
        issues = extract_runtime_issues(result.combined)
        if not issues:
            issues = [_command_failure_issue(IssueCategory.RUNTIME, "Program exited with an error", result)]
        collector.extend(issues)
        return False

    def _run(self, command: Sequence[str], cwd: Path, token: CancellationToken) -> CommandResult:
        result = self.runner.run(command, cwd=cwd, token=token)
        if self.config.verbose:
            LOGGER.debug("%s -> exit %d", " ".join(command), result.exit_code)
        return result


def find_main_file(root: Path, toolchain: ToolchainCommands) -> str | None:
    """Return the relative path of the program entry point, if any."""
    for candidate in toolchain.main_candidates:
        if (root / candidate).is_file():
            return candidate
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(
            name for name in dirnames if name not in _SKIPPED_DIRS and not name.startswith(".")
        )
        if toolchain.main_filename in filenames:
            return (Path(dirpath) / toolchain.main_filename).relative_to(root).as_posix()
    return None


def _command_failure_issue(category: IssueCategory, title: str, result: CommandResult) -> Issue:
    """Fallback issue for a failing command whose output matched no pattern."""
    output = result.combined
    first_line = next((line.strip() for line in output.splitlines() if line.strip()), "")
    return Issue(
        id=f"{category.value}-failed",
        category=category,
        level=IssueLevel.ERROR,
        title=title,
        description=first_line or f"{' '.join(result.command)} exited with code {result.exit_code}",
        raw_output=output,
    )


def diagnose(
    config: DiagnoseConfig,
    *,
    runner: CommandRunner | None = None,
    tables: ExtractorTables = DEFAULT_TABLES,
    token: CancellationToken | None = None,
) -> DiagnosticResult:
    """Run a one-off diagnosis with ``config``."""
    return Diagnoser(config, runner=runner, tables=tables).run(token)


__all__ = [
    "CheckOutcome",
    "DiagnoseConfig",
    "Diagnoser",
    "HEALTHY_SUMMARY",
    "ProjectEnvironmentError",
    "ToolchainCommands",
    "check_build",
    "check_tests",
    "diagnose",
    "find_main_file",
    "generate_summary",
    "working_directory",
]
