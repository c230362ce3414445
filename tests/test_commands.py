from __future__ import annotations

import sys
import time
from pathlib import Path

import pytest

from aidev.tools.commands import (
    CancellationToken,
    CommandCancelled,
    CommandTimeout,
    CommandUnavailable,
    SubprocessRunner,
    split_command,
)


def test_runner_reports_exit_code_and_output(tmp_path: Path) -> None:
    runner = SubprocessRunner()
    script = "import sys; print('out'); print('err', file=sys.stderr); sys.exit(3)"

    result = runner.run([sys.executable, "-c", script], cwd=tmp_path)

    assert result.exit_code == 3
    assert not result.ok
    assert result.stdout.strip() == "out"
    assert result.stderr.strip() == "err"
    assert "out" in result.combined and "err" in result.combined


def test_runner_kills_process_when_deadline_expires(tmp_path: Path) -> None:
    runner = SubprocessRunner()
    started = time.monotonic()

    with pytest.raises(CommandTimeout):
        runner.run(
            [sys.executable, "-c", "import time; time.sleep(30)"],
            cwd=tmp_path,
            token=CancellationToken(timeout=0.5),
        )

    assert time.monotonic() - started < 10


def test_runner_refuses_cancelled_token(tmp_path: Path) -> None:
    token = CancellationToken()
    token.cancel()

    with pytest.raises(CommandCancelled):
        SubprocessRunner().run([sys.executable, "-c", "pass"], cwd=tmp_path, token=token)


def test_runner_missing_executable_is_unavailable(tmp_path: Path) -> None:
    runner = SubprocessRunner()

    with pytest.raises(CommandUnavailable):
        runner.run(["definitely-not-a-real-tool-xyz"], cwd=tmp_path)
    assert not runner.which("definitely-not-a-real-tool-xyz")


def test_child_token_inherits_cancellation_and_tighter_deadline() -> None:
    parent = CancellationToken(timeout=100)
    child = parent.child(timeout=1)

    remaining = child.remaining()
    assert remaining is not None and remaining <= 1
    assert not child.cancelled

    parent.cancel()
    assert child.cancelled
    with pytest.raises(CommandCancelled):
        child.raise_if_cancelled()


def test_unbounded_token_has_no_deadline() -> None:
    token = CancellationToken()
    assert token.remaining() is None
    assert not token.expired


def test_split_command_accepts_strings_and_sequences() -> None:
    assert split_command("go test -v -json ./...") == ("go", "test", "-v", "-json", "./...")
    assert split_command(["go", "vet"]) == ("go", "vet")
