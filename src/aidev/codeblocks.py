"""Fenced code block extraction from generated responses."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Sequence

_FENCE_RE = re.compile(r"```([^\n`]*)\n?([\s\S]*?)```")
_FILE_COMMENT_RE = re.compile(r"^\s*(?://|#|--|/\*)\s*(?:file|path)\s*:\s*(\S+?)\s*(?:\*/)?\s*$", re.IGNORECASE)
_PATH_HINT_RE = re.compile(r"^[\w./\\-]+\.[A-Za-z0-9]+$")


@dataclass(frozen=True, slots=True)
class CodeBlock:
    """One fenced block: its info-string language, declared file and body."""

    language: str
    content: str
    path: str | None = None


def parse_code_blocks(response: str) -> list[CodeBlock]:
    """Return the non-empty fenced blocks of ``response`` in order of appearance.

    The info string may carry a language and a file name (```go cmd/main.go``).
    A first line of the form ``// file: path`` or ``# file: path`` also declares
    the file and is removed from the block content.
    """
    blocks: list[CodeBlock] = []
    for match in _FENCE_RE.finditer(response or ""):
        info = match.group(1).strip().split()
        language = ""
        path: str | None = None
        for token in info:
            if path is None and _PATH_HINT_RE.match(token):
                path = token
            elif not language:
                language = token.lower()
        content = match.group(2)

        lines = content.splitlines()
        if lines:
            comment = _FILE_COMMENT_RE.match(lines[0])
            if comment is not None:
                path = path or comment.group(1)
                content = "\n".join(lines[1:])
        if not content.strip():
            continue
        blocks.append(CodeBlock(language=language, content=content.strip("\n"), path=path))
    return blocks


def assign_blocks(
    blocks: Sequence[CodeBlock],
    targets: Sequence[str],
) -> list[tuple[str, CodeBlock]]:
    """Pair blocks with target files.

    Block ``i`` goes to ``targets[i]``. Blocks beyond the target list are kept
    only when they declare their own file name; the rest are dropped.
    """
    assignments: list[tuple[str, CodeBlock]] = []
    for index, block in enumerate(blocks):
        if index < len(targets):
            assignments.append((targets[index], block))
        elif block.path:
            assignments.append((_normalise_path(block.path), block))
    return assignments


def extract_explanation(response: str) -> str:
    """Return ``response`` with every fenced block removed."""
    return _FENCE_RE.sub("", response or "").strip()


def _normalise_path(path: str) -> str:
    cleaned = path.replace("\\", "/").strip()
    while cleaned.startswith("./"):
        cleaned = cleaned[2:]
    return cleaned


__all__ = ["CodeBlock", "assign_blocks", "extract_explanation", "parse_code_blocks"]
