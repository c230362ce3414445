"""CLI commands for diagnosing and repairing projects."""

from __future__ import annotations

import json
import logging
import re
import signal
import sys
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import typer

from .config import (
    DEFAULT_CONFIG_NAME,
    ConfigError,
    build_diagnose_config,
    ModelSettings,
    build_extractor_tables,
    build_model_settings,
    build_repair_config,
    copy_config_template,
    load_config,
    resolve_project_path,
    section,
    write_config,
)
from .diagnoser import Diagnoser, ProjectEnvironmentError
from .issues import DiagnosticResult, IssueLevel
from .models import ChatCompletionsClient, LLMClient
from .orchestrator import Autofixer, RepairEngine, RepairMode, RepairRequest, RepairResult
from .tools.commands import CancellationToken, CommandCancelled, SubprocessRunner
from .tools.files import WorkspaceFiles

APP_HELP = "Diagnose Go projects and repair them with a code-generation service."

LOGGER = logging.getLogger(__name__)

_LEVEL_MARKERS = {
    IssueLevel.CRITICAL: "[CRITICAL]",
    IssueLevel.ERROR: "[ERROR]",
    IssueLevel.WARNING: "[WARNING]",
    IssueLevel.INFO: "[INFO]",
}

_PROMPT_FILE_RE = re.compile(r"--- FILE: (?P<path>.+?) ---\n```[^\n]*\n(?P<body>[\s\S]*?)\n```")
_OUTPUT_ORDER_RE = re.compile(r"### Output order:\n((?:\d+\. .+\n?)+)")

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool, *, quiet: bool = False) -> None:
    """Route log records to stderr so command output stays parseable."""
    level = logging.DEBUG if verbose else logging.INFO
    if quiet and not verbose:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] %(levelname)s %(name)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stderr)],
        force=True,
    )


def _load(config: str, *, required: bool = False) -> tuple[Path, Dict[str, Any]]:
    config_path = Path(config)
    try:
        return config_path, load_config(config_path, required=required)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error


@contextmanager
def _cancel_on_interrupt(token: CancellationToken) -> Iterator[CancellationToken]:
    """Cancel ``token`` on Ctrl-C instead of unwinding mid-operation."""

    def _handler(signum: int, frame: Any) -> None:
        typer.echo("\nInterrupt received; cancelling...", err=True)
        token.cancel()

    try:
        previous = signal.signal(signal.SIGINT, _handler)
    except ValueError:
        # Not on the main thread; Ctrl-C keeps its default behaviour.
        yield token
        return
    try:
        yield token
    finally:
        signal.signal(signal.SIGINT, previous)


class _OfflineLLMClient(LLMClient):
    """Local stub that echoes the prompt's files back as code blocks."""

    def __init__(self) -> None:
        super().__init__("offline", max_attempts=1)

    def _raw_invoke(self, payload: Dict[str, Any], *, timeout: float | None = None) -> str:
        messages = payload.get("messages") or []
        prompt = str(messages[-1].get("content", "")) if messages else ""
        files = {match.group("path"): match.group("body") for match in _PROMPT_FILE_RE.finditer(prompt)}
        order_match = _OUTPUT_ORDER_RE.search(prompt)
        if order_match:
            order = [line.split(". ", 1)[1].strip() for line in order_match.group(1).splitlines() if ". " in line]
        else:
            order = list(files)

        parts = ["Offline mode: returning the files unchanged."]
        for path in order:
            body = files.get(path, "")
            parts.append(f"```{path}\n{body or '// offline placeholder'}\n```")
        return "\n\n".join(parts)


def _build_client(settings: ModelSettings, *, use_remote: bool) -> LLMClient:
    """Select either the chat completions client or the offline stub."""
    if not use_remote or settings.offline:
        LOGGER.info("Using offline stub client (model %r).", settings.default)
        return _OfflineLLMClient()
    try:
        client = ChatCompletionsClient(
            api_key=settings.api_key,
            base_url=settings.base_url,
            model=settings.default,
            timeout=settings.timeout,
            max_attempts=settings.max_attempts,
            retry_delay=settings.retry_delay,
        )
    except ValueError as error:
        typer.echo(f"{error} Re-run with --no-use-remote to use the offline stub.")
        raise typer.Exit(code=1) from error
    LOGGER.info("Using chat completions client (%s).", settings.default)
    return client


def _render_diagnosis(result: DiagnosticResult) -> None:
    typer.echo(f"Project: {result.project_path}")
    typer.echo(f"Duration: {result.duration:.2f}s")
    typer.echo(
        f"Issues: {result.total_issues} (critical {result.critical_count}, error {result.error_count}, "
        f"warning {result.warning_count}, info {result.info_count})"
    )
    for issue in result.ranked_issues():
        marker = _LEVEL_MARKERS[issue.level]
        location = f" {issue.location}" if issue.location else ""
        status = " (fixed)" if issue.fixed else ""
        typer.echo(f"{marker} {issue.id}{location}: {issue.title}{status}")
        if issue.suggestion:
            typer.echo(f"    -> {issue.suggestion}")
    typer.echo(result.summary)


def _render_repair(result: RepairResult) -> None:
    status = "succeeded" if result.success else "failed"
    typer.echo(f"Repair {status} after {result.attempts} attempt(s) in {result.duration:.2f}s.")
    if result.files_written:
        typer.echo("Files written:")
        for path in result.files_written:
            typer.echo(f"- {path}")
    if result.explanation:
        typer.echo(result.explanation)
    if result.error:
        typer.echo(f"Error: {result.error}")


def _build_engine(
    config_data: Dict[str, Any],
    project_root: Path,
    *,
    use_remote: bool,
    model: Optional[str],
    api_key: Optional[str],
    retries: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
    no_backup: bool,
) -> RepairEngine:
    files_cfg = section(config_data, "files")
    try:
        repair_config = build_repair_config(config_data, max_retries=retries)
        diagnose_config = build_diagnose_config(config_data, project_path=project_root)
        tables = build_extractor_tables(config_data)
        model_settings = build_model_settings(config_data, model=model, api_key=api_key, timeout=timeout)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    try:
        files = WorkspaceFiles(
            root=project_root,
            backup_enabled=bool(files_cfg.get("backup", True)) and not no_backup,
            backup_dir=str(files_cfg.get("backup_dir") or ".ai-backup"),
            max_backups=int(files_cfg.get("max_backups") or 10),
            dry_run=dry_run,
        )
    except FileNotFoundError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    if dry_run:
        repair_config.build_verify = False
        repair_config.test_verify = False
        typer.echo("Dry run: files will not be written and verification is skipped.")

    client = _build_client(model_settings, use_remote=use_remote)
    return RepairEngine(
        files,
        client,
        SubprocessRunner(),
        repair_config,
        toolchain=diagnose_config.toolchain,
        tables=tables,
    )


@app.command()
def init(
    config: str = typer.Option(
        DEFAULT_CONFIG_NAME,
        "--config",
        "-c",
        help="Path to the configuration file to create.",
    ),
    force: bool = typer.Option(
        False,
        "--force",
        help="Overwrite an existing configuration file with the defaults.",
    ),
) -> None:
    """Write a default configuration file."""
    config_path = Path(config)
    if config_path.exists() and not force:
        typer.echo(f"Configuration already exists at {config_path}; use --force to overwrite.")
        return
    write_config(config_path, copy_config_template())
    typer.echo(f"Created configuration at {config_path}.")


@app.command()
def diagnose(
    path: Optional[Path] = typer.Argument(None, help="Project directory (defaults to project.path in the config)."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    check_config: Optional[bool] = typer.Option(None, "--check-config/--no-check-config", help="Check project configuration files."),
    check_deps: Optional[bool] = typer.Option(None, "--check-deps/--no-check-deps", help="Verify dependencies."),
    check_build: Optional[bool] = typer.Option(None, "--check-build/--no-check-build", help="Build the project."),
    check_lint: Optional[bool] = typer.Option(None, "--check-lint/--no-check-lint", help="Run the linter (or vet)."),
    check_tests: Optional[bool] = typer.Option(None, "--check-tests/--no-check-tests", help="Run the tests."),
    check_runtime: Optional[bool] = typer.Option(None, "--check-runtime/--no-check-runtime", help="Run the program briefly."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Overall diagnosis deadline in seconds."),
    as_json: bool = typer.Option(False, "--json", help="Print the result as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
    fail_on_issues: bool = typer.Option(False, "--fail-on-issues", help="Exit with code 1 when issues are found."),
    autofix: Optional[bool] = typer.Option(None, "--autofix/--no-autofix", help="Try to repair fixable issues after diagnosing."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the chat completions API instead of the offline stub (requires API key).",
    ),
) -> None:
    """Diagnose a project and report normalized issues."""
    _configure_logging(verbose, quiet=as_json)
    config_path, config_data = _load(config)
    project_root = resolve_project_path(config_data, config_path, path)
    try:
        diagnose_config = build_diagnose_config(
            config_data,
            project_path=project_root,
            check_config=check_config,
            check_deps=check_deps,
            check_build=check_build,
            check_lint=check_lint,
            check_tests=check_tests,
            check_runtime=check_runtime,
            timeout=timeout,
            verbose=verbose or None,
            autofix=autofix,
        )
        tables = build_extractor_tables(config_data)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    token = CancellationToken()
    with _cancel_on_interrupt(token):
        try:
            result = Diagnoser(diagnose_config, runner=SubprocessRunner(), tables=tables).run(token)
        except ProjectEnvironmentError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
        except CommandCancelled as error:
            typer.echo(f"Diagnosis cancelled: {error}")
            raise typer.Exit(code=130) from error

        if diagnose_config.autofix and result.fixable_issues():
            engine = _build_engine(
                config_data,
                project_root,
                use_remote=use_remote,
                model=None,
                api_key=None,
                retries=diagnose_config.max_fix_attempts,
                timeout=None,
                dry_run=False,
                no_backup=False,
            )
            report = Autofixer(engine, work_dir=project_root).run(result, token)
            result = report.diagnosis
            if not as_json:
                typer.echo(f"Autofix repaired {len(report.fixed_files)} of {len(report.repairs)} file(s).")

    if as_json:
        typer.echo(result.to_json())
    else:
        _render_diagnosis(result)

    if fail_on_issues and any(not issue.fixed for issue in result.issues):
        raise typer.Exit(code=1)


def _run_repair(
    mode: RepairMode,
    files: List[str],
    instruction: str,
    *,
    config: str,
    workdir: Optional[Path],
    model: Optional[str],
    api_key: Optional[str],
    retries: Optional[int],
    timeout: Optional[float],
    dry_run: bool,
    no_backup: bool,
    use_remote: bool,
    verbose: bool,
) -> None:
    _configure_logging(verbose)
    config_path, config_data = _load(config)
    project_root = resolve_project_path(config_data, config_path, workdir)
    engine = _build_engine(
        config_data,
        project_root,
        use_remote=use_remote,
        model=model,
        api_key=api_key,
        retries=retries,
        timeout=timeout,
        dry_run=dry_run,
        no_backup=no_backup,
    )
    request = RepairRequest(mode=mode, files=list(files), instruction=instruction, work_dir=project_root)
    token = CancellationToken()
    with _cancel_on_interrupt(token):
        result = engine.execute(request, token)
    _render_repair(result)
    if not result.success:
        raise typer.Exit(code=1)


def _register_repair_command(name: str, mode: Optional[RepairMode], help_text: str) -> None:
    """Register a repair command; ``mode=None`` exposes ``--mode``."""

    def command(
        files: List[str] = typer.Argument(..., help="Target files, relative to the project directory."),
        instruction: str = typer.Option(..., "--instruction", "-i", help="What the change should achieve."),
        mode_name: str = typer.Option(
            mode.value if mode else RepairMode.FIX.value,
            "--mode",
            help="Repair mode: refactor, fix or generate.",
            hidden=mode is not None,
        ),
        config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
        workdir: Optional[Path] = typer.Option(None, "--workdir", "-w", help="Project directory for file access and verification."),
        model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name override."),
        api_key: Optional[str] = typer.Option(None, "--api-key", "-k", help="API key for the chat completions service."),
        retries: Optional[int] = typer.Option(None, "--retries", min=1, help="Maximum number of attempts."),
        timeout: Optional[float] = typer.Option(None, "--timeout", help="Request timeout in seconds."),
        dry_run: bool = typer.Option(False, "--dry-run", help="Show what would change without writing files."),
        no_backup: bool = typer.Option(False, "--no-backup", help="Do not keep backups of overwritten files."),
        use_remote: bool = typer.Option(
            True,
            "--use-remote/--no-use-remote",
            help="Call the chat completions API instead of the offline stub (requires API key).",
        ),
        verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
    ) -> None:
        try:
            selected = mode or RepairMode.from_command(mode_name)
        except ValueError as error:
            raise typer.BadParameter(f"Unknown mode: {mode_name}", param_hint="--mode") from error
        _run_repair(
            selected,
            files,
            instruction,
            config=config,
            workdir=workdir,
            model=model,
            api_key=api_key,
            retries=retries,
            timeout=timeout,
            dry_run=dry_run,
            no_backup=no_backup,
            use_remote=use_remote,
            verbose=verbose,
        )

    command.__doc__ = help_text
    app.command(name)(command)


_register_repair_command("repair", None, "Run the repair loop in the selected mode.")
_register_repair_command("fix", RepairMode.FIX, "Fix bugs in the given files.")
_register_repair_command("refactor", RepairMode.REFACTOR, "Refactor the given files.")
_register_repair_command("generate", RepairMode.GENERATE, "Generate code into the given files.")
for _alias in ("explain", "review", "test"):
    _register_repair_command(_alias, RepairMode.from_command(_alias), f"Run a {_alias} request (handled as a refactor).")


@app.command()
def autofix(
    path: Optional[Path] = typer.Argument(None, help="Project directory (defaults to project.path in the config)."),
    config: str = typer.Option(DEFAULT_CONFIG_NAME, "--config", "-c", help="Path to the configuration file."),
    model: Optional[str] = typer.Option(None, "--model", "-m", help="Model name override."),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k", help="API key for the chat completions service."),
    retries: Optional[int] = typer.Option(None, "--retries", min=1, help="Maximum attempts per file."),
    timeout: Optional[float] = typer.Option(None, "--timeout", help="Request timeout in seconds."),
    no_backup: bool = typer.Option(False, "--no-backup", help="Do not keep backups of overwritten files."),
    use_remote: bool = typer.Option(
        True,
        "--use-remote/--no-use-remote",
        help="Call the chat completions API instead of the offline stub (requires API key).",
    ),
    as_json: bool = typer.Option(False, "--json", help="Print the updated diagnosis as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-V", help="Enable debug logging."),
) -> None:
    """Diagnose the project, then repair every file with fixable issues."""
    _configure_logging(verbose, quiet=as_json)
    config_path, config_data = _load(config)
    project_root = resolve_project_path(config_data, config_path, path)
    try:
        diagnose_config = build_diagnose_config(config_data, project_path=project_root, verbose=verbose or None)
        tables = build_extractor_tables(config_data)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=1) from error

    engine = _build_engine(
        config_data,
        project_root,
        use_remote=use_remote,
        model=model,
        api_key=api_key,
        retries=retries or diagnose_config.max_fix_attempts,
        timeout=timeout,
        dry_run=False,
        no_backup=no_backup,
    )
    token = CancellationToken()
    with _cancel_on_interrupt(token):
        try:
            diagnosis = Diagnoser(diagnose_config, runner=engine.runner, tables=tables).run(token)
        except ProjectEnvironmentError as error:
            typer.echo(str(error))
            raise typer.Exit(code=1) from error
        except CommandCancelled as error:
            typer.echo(f"Diagnosis cancelled: {error}")
            raise typer.Exit(code=130) from error
        report = Autofixer(engine, work_dir=project_root).run(diagnosis, token)

    if as_json:
        payload = {
            "diagnosis": report.diagnosis.to_dict(),
            "repairs": [
                {"file": repair.path, "issues": repair.issue_ids, **repair.result.to_dict()}
                for repair in report.repairs
            ],
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        _render_diagnosis(report.diagnosis)
        typer.echo(f"Autofix repaired {len(report.fixed_files)} of {len(report.repairs)} file(s).")

    if any(not repair.result.success for repair in report.repairs):
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
