"""Command execution, workspace files and output extractors used by the diagnoser and repair engine."""

from .commands import (
    CancellationToken,
    CommandCancelled,
    CommandError,
    CommandResult,
    CommandRunner,
    CommandTimeout,
    CommandUnavailable,
    SubprocessRunner,
)
from .extractors import (
    DEFAULT_TABLES,
    ExtractorTables,
    extract_compiler_issues,
    extract_lint_issues,
    extract_runtime_issues,
    extract_test_issues,
    extract_vet_issues,
)
from .files import FileAccess, PathOutsideRoot, WorkspaceFiles

__all__ = [
    "CancellationToken",
    "CommandCancelled",
    "CommandError",
    "CommandResult",
    "CommandRunner",
    "CommandTimeout",
    "CommandUnavailable",
    "DEFAULT_TABLES",
    "ExtractorTables",
    "FileAccess",
    "PathOutsideRoot",
    "SubprocessRunner",
    "WorkspaceFiles",
    "extract_compiler_issues",
    "extract_lint_issues",
    "extract_runtime_issues",
    "extract_test_issues",
    "extract_vet_issues",
]
