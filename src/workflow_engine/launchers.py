from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from workflow_engine.config import AgentConfig


class AgentLauncher(ABC):
    """Turns a task prompt into the argv of a non-interactive agent run."""

    name: str = "agent"
    accepts_input: bool = True

    def __init__(self, binary: str) -> None:
        self.binary = binary

    @abstractmethod
    def build_command(self, prompt: str, extra_args: list[str] | None = None) -> list[str]:
        """Return the full argv, executable first."""

    def render_output(self, line: str) -> str:
        """Map one raw output line to display text. Empty means skip."""
        return line


def _extract_content(event: dict[str, Any]) -> str:
    content = event.get("content")
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict):
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return "".join(parts)

    delta = event.get("delta")
    if isinstance(delta, str):
        return delta

    message = event.get("message")
    if isinstance(message, str):
        return message
    if isinstance(message, dict):
        return _extract_content(message)

    result = event.get("result")
    if isinstance(result, str):
        return result
    return ""


def _render_json_line(line: str) -> str:
    stripped = line.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return line
    try:
        event = json.loads(stripped)
    except json.JSONDecodeError:
        return line
    if not isinstance(event, dict):
        return line
    return _extract_content(event)


class ClaudeCodeLauncher(AgentLauncher):
    name = "claude"
    # A piped stdin is read to EOF as extra prompt context.
    accepts_input = False

    def __init__(self, binary: str = "claude") -> None:
        super().__init__(binary)

    def build_command(self, prompt: str, extra_args: list[str] | None = None) -> list[str]:
        return [
            self.binary,
            "-p",
            prompt,
            "--output-format",
            "stream-json",
            "--verbose",
            *(extra_args or []),
        ]

    def render_output(self, line: str) -> str:
        return _render_json_line(line)


class CodexLauncher(AgentLauncher):
    name = "codex"
    accepts_input = False

    def __init__(self, binary: str = "codex") -> None:
        super().__init__(binary)

    def build_command(self, prompt: str, extra_args: list[str] | None = None) -> list[str]:
        return [self.binary, "exec", "--json", *(extra_args or []), prompt]

    def render_output(self, line: str) -> str:
        return _render_json_line(line)


def build_launcher(config: AgentConfig) -> AgentLauncher:
    executable = config.executable.strip()
    if config.kind == "codex":
        return CodexLauncher(executable or "codex")
    if config.kind == "claude":
        return ClaudeCodeLauncher(executable or "claude")
    raise ValueError(f"Unsupported agent kind: {config.kind}")
