"""Prompt templates and helpers shared by the repair engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Mapping, Sequence

CODE_BLOCK_INSTRUCTION = "Provide your response with code in markdown code blocks (```language\\ncode\\n```)."
ORDERED_OUTPUT_INSTRUCTION = (
    "Return one complete code block per file, following the output order listed above."
)

MODE_TEMPLATES: Mapping[str, str] = {
    "refactor": (
        "You are an expert software architect. Refactor the provided code according to the instructions.\n"
        "Return the complete refactored code in a markdown code block.\n\n"
        "Rules:\n"
        "- Preserve exact functionality\n"
        "- Follow best practices\n"
        "- Improve readability\n"
        "- Add comments where helpful"
    ),
    "fix": (
        "You are an expert software engineer. Fix the bugs in the provided code.\n"
        "Return the fixed code in a markdown code block.\n\n"
        "Rules:\n"
        "- Identify root causes\n"
        "- Make minimal targeted fixes\n"
        "- Preserve existing functionality\n"
        "- Add proper error handling"
    ),
    "generate": (
        "You are an expert software developer. Generate code according to the specifications.\n"
        "Return the generated code in a markdown code block.\n\n"
        "Rules:\n"
        "- Follow exact requirements\n"
        "- Use appropriate patterns\n"
        "- Write clean, maintainable code\n"
        "- Include error handling"
    ),
}

_LANGUAGES: Mapping[str, str] = {
    "go": "go",
    "py": "python",
    "js": "javascript",
    "ts": "typescript",
    "tsx": "typescript",
    "jsx": "javascript",
    "java": "java",
    "kt": "kotlin",
    "rs": "rust",
    "c": "c",
    "cpp": "cpp",
    "cs": "csharp",
    "rb": "ruby",
    "php": "php",
    "swift": "swift",
    "scala": "scala",
}


class PromptError(ValueError):
    """Raised when a prompt cannot be rendered from the supplied inputs."""


def detect_language(path: str) -> str:
    """Return the fence language for ``path`` based on its extension."""
    suffix = PurePosixPath(path.replace("\\", "/")).suffix.lower().lstrip(".")
    return _LANGUAGES.get(suffix, "")


def render_system_prompt(mode: str) -> str:
    """Return the system prompt for ``mode``, defaulting to the generate template."""
    return MODE_TEMPLATES.get(mode, MODE_TEMPLATES["generate"])


@dataclass(slots=True)
class PromptPackage:
    """System and user prompts ready to send to the generation service."""

    system_prompt: str
    user_prompt: str


@dataclass(slots=True)
class PromptBuilder:
    """Accumulates the instruction, constraints and file contents of one request."""

    mode: str = "generate"
    instruction: str = ""
    files: dict[str, str] = field(default_factory=dict)
    constraints: list[str] = field(default_factory=list)
    output_order: list[str] = field(default_factory=list)

    def add_file(self, path: str, content: str) -> "PromptBuilder":
        self.files[path] = content
        return self

    def expect_outputs(self, paths: Sequence[str]) -> "PromptBuilder":
        """Declare the file each returned code block is written to, in order."""
        self.output_order = list(paths)
        return self

    def add_constraint(self, constraint: str) -> "PromptBuilder":
        if constraint.strip():
            self.constraints.append(constraint.strip())
        return self

    def build(self) -> PromptPackage:
        if not self.instruction.strip() and not self.files:
            raise PromptError("A prompt needs an instruction or at least one file.")
        return PromptPackage(
            system_prompt=render_system_prompt(self.mode),
            user_prompt=self._render_user_prompt(),
        )

    def _render_user_prompt(self) -> str:
        sections: list[str] = []
        if self.instruction.strip():
            sections.append(f"## Task: {self.mode.title()}\n\n### Instruction:\n{self.instruction.strip()}\n")
        if self.constraints:
            body = "\n".join(f"- {item}" for item in self.constraints)
            sections.append(f"### Constraints:\n{body}\n")
        if self.files:
            blocks = ["### Files:"]
            for path in sorted(self.files):
                language = detect_language(path)
                blocks.append(f"\n--- FILE: {path} ---\n```{language}\n{self.files[path]}\n```")
            sections.append("\n".join(blocks) + "\n")
        if self.output_order:
            body = "\n".join(f"{index}. {path}" for index, path in enumerate(self.output_order, start=1))
            sections.append(f"### Output order:\n{body}\n")
            sections.append(f"{CODE_BLOCK_INSTRUCTION} {ORDERED_OUTPUT_INSTRUCTION}")
        else:
            sections.append(CODE_BLOCK_INSTRUCTION)
        return "\n".join(sections)


def render_issue_guidance(lines: Sequence[str]) -> str:
    """Format issue descriptions as a bullet list appended to fix instructions."""
    body = "\n".join(f"- {line.strip()}" for line in lines if line.strip())
    if not body:
        return ""
    return f"Resolve the following diagnostics:\n{body}"


__all__ = [
    "CODE_BLOCK_INSTRUCTION",
    "MODE_TEMPLATES",
    "ORDERED_OUTPUT_INSTRUCTION",
    "PromptBuilder",
    "PromptError",
    "PromptPackage",
    "detect_language",
    "render_issue_guidance",
    "render_system_prompt",
]
