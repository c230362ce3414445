from __future__ import annotations

import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from aidev.tools.commands import CancellationToken, CommandResult, CommandUnavailable  # noqa: E402


@dataclass(slots=True)
class FakeRunner:
    """Scripted :class:`CommandRunner` keyed by the exact argument vector."""

    responses: dict[tuple[str, ...], list[object]] = field(default_factory=dict)
    installed: set[str] = field(default_factory=lambda: {"go"})
    calls: list[tuple[str, ...]] = field(default_factory=list)

    def script(self, command: Sequence[str], *outcomes: object) -> None:
        self.responses[tuple(command)] = list(outcomes)

    def which(self, executable: str) -> bool:
        return executable in self.installed

    def run(
        self,
        command: Sequence[str],
        *,
        cwd: Path,
        token: CancellationToken | None = None,
    ) -> CommandResult:
        argv = tuple(command)
        self.calls.append(argv)
        if argv[0] not in self.installed:
            raise CommandUnavailable(f"Executable not available: {argv[0]}")
        queue = self.responses.get(argv)
        if queue is None:
            return CommandResult(command=argv, cwd=cwd, exit_code=0, stdout="", stderr="", duration=0.0)
        outcome = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(outcome):
            outcome = outcome(argv, token)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, tuple):
            exit_code, output = outcome
            return CommandResult(command=argv, cwd=cwd, exit_code=exit_code, stdout="", stderr=output, duration=0.0)
        assert isinstance(outcome, CommandResult)
        return outcome


@dataclass(slots=True)
class MemoryFiles:
    """In-memory :class:`FileAccess` implementation."""

    contents: dict[str, str] = field(default_factory=dict)
    writes: list[tuple[str, str]] = field(default_factory=list)
    fail_writes: bool = False

    def read(self, path: str) -> str:
        if path not in self.contents:
            raise FileNotFoundError(f"File not found: {path}")
        return self.contents[path]

    def write(self, path: str, content: str) -> None:
        if self.fail_writes:
            raise OSError(f"disk full: {path}")
        self.contents[path] = content
        self.writes.append((path, content))

    def exists(self, path: str) -> bool:
        return path in self.contents


@dataclass(slots=True)
class ScriptedClient:
    """Generation client replaying canned responses and recording prompts."""

    responses: list[object]
    prompts: list[str] = field(default_factory=list)
    system_prompts: list[str | None] = field(default_factory=list)

    def chat(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        token: CancellationToken | None = None,
    ) -> str:
        self.prompts.append(prompt)
        self.system_prompts.append(system_prompt)
        outcome = self.responses[min(len(self.prompts), len(self.responses)) - 1]
        if callable(outcome):
            outcome = outcome(prompt, token)
        if isinstance(outcome, Exception):
            raise outcome
        return str(outcome)


@pytest.fixture()
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture()
def go_project(tmp_path: Path) -> Path:
    """Minimal Go module layout on disk."""
    root = tmp_path / "project"
    root.mkdir()
    (root / "go.mod").write_text("module example.com/demo\n\ngo 1.22\n", encoding="utf-8")
    (root / "main.go").write_text("package main\n\nfunc main() {}\n", encoding="utf-8")
    return root
