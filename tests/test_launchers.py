import json

import pytest

from workflow_engine.config import AgentConfig
from workflow_engine.launchers import ClaudeCodeLauncher, CodexLauncher, build_launcher


def test_claude_build_command_shape() -> None:
    launcher = ClaudeCodeLauncher(binary="claude")

    command = launcher.build_command("Work on Task 1", ["--model", "sonnet"])

    assert command[:3] == ["claude", "-p", "Work on Task 1"]
    assert "--output-format" in command
    assert "stream-json" in command
    assert command[-2:] == ["--model", "sonnet"]


def test_codex_build_command_puts_prompt_last() -> None:
    launcher = CodexLauncher(binary="codex")

    command = launcher.build_command("Work on Task 2", ["--full-auto"])

    assert command == ["codex", "exec", "--json", "--full-auto", "Work on Task 2"]


def test_agent_launchers_do_not_take_stdin() -> None:
    assert ClaudeCodeLauncher().accepts_input is False
    assert CodexLauncher().accepts_input is False


def test_stream_json_lines_render_to_text() -> None:
    launcher = ClaudeCodeLauncher()
    assistant = json.dumps(
        {
            "type": "assistant",
            "message": {"content": [{"type": "text", "text": "Editing "}, {"type": "text", "text": "files"}]},
        }
    )

    assert launcher.render_output(assistant) == "Editing files"
    assert launcher.render_output(json.dumps({"type": "result", "result": "done"})) == "done"
    assert launcher.render_output(json.dumps({"type": "system", "subtype": "init"})) == ""
    assert launcher.render_output("plain text") == "plain text"
    assert launcher.render_output("{not json}") == "{not json}"


def test_build_launcher_respects_kind_and_executable() -> None:
    claude = build_launcher(AgentConfig())
    codex = build_launcher(AgentConfig(kind="codex", executable="/usr/local/bin/codex"))

    assert isinstance(claude, ClaudeCodeLauncher)
    assert claude.binary == "claude"
    assert isinstance(codex, CodexLauncher)
    assert codex.binary == "/usr/local/bin/codex"


def test_build_launcher_rejects_unknown_kind() -> None:
    with pytest.raises(ValueError):
        build_launcher(AgentConfig(kind="gemini"))  # type: ignore[arg-type]
