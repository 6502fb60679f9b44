import json
import subprocess
import sys
from pathlib import Path

from click.testing import CliRunner

from workflow_engine.cli import cli
from workflow_engine.config import EngineConfig, load_config
from workflow_engine.launchers import AgentLauncher


class ScriptLauncher(AgentLauncher):
    name = "script"

    def __init__(self, script: str) -> None:
        super().__init__(sys.executable)
        self.script = script

    def build_command(self, prompt: str, extra_args: list[str] | None = None) -> list[str]:
        return [self.binary, "-c", self.script, prompt, *(extra_args or [])]


ECHO_PROMPT = "import sys; print(sys.argv[1].splitlines()[0])"


def _init_git_repo(repo_path: Path) -> None:
    subprocess.run(["git", "init"], cwd=repo_path, check=True, text=True, capture_output=True)
    subprocess.run(
        ["git", "config", "user.email", "test@example.com"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    subprocess.run(
        ["git", "config", "user.name", "Test User"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )
    (repo_path / "README.md").write_text("seed\n", encoding="utf-8")
    subprocess.run(
        ["git", "add", "README.md"], cwd=repo_path, check=True, text=True, capture_output=True
    )
    subprocess.run(
        ["git", "commit", "-m", "seed"],
        cwd=repo_path,
        check=True,
        text=True,
        capture_output=True,
    )


def _use_script(monkeypatch, script: str) -> None:
    def _build(config: EngineConfig) -> AgentLauncher:
        _ = config
        return ScriptLauncher(script)

    monkeypatch.setattr("workflow_engine.cli._build_launcher", _build)


def test_cli_full_lifecycle_commands(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_script(monkeypatch, ECHO_PROMPT)
    runner = CliRunner()

    init_result = runner.invoke(cli, ["init", "--agent", "codex"])
    assert init_result.exit_code == 0
    assert load_config(repo / ".taskmaster" / "engine.toml").agent.kind == "codex"
    assert "Worktrees:" in init_result.output

    run_result = runner.invoke(cli, ["run", "42", "--title", "Add parser"])
    assert run_result.exit_code == 0, run_result.output
    assert "[42] Work on Task 42: Add parser" in run_result.output
    assert "task=42 completed" in run_result.output

    list_result = runner.invoke(cli, ["list"])
    assert list_result.exit_code == 0
    assert "No workflows found." in list_result.output

    list_all = runner.invoke(cli, ["list", "--all", "--json"])
    assert list_all.exit_code == 0
    listed = json.loads(list_all.output)
    assert [item["taskId"] for item in listed] == ["42"]

    status_result = runner.invoke(cli, ["status", "42"])
    assert status_result.exit_code == 0
    assert '"status": "completed"' in status_result.output

    worktrees_result = runner.invoke(cli, ["worktrees"])
    assert worktrees_result.exit_code == 0
    assert "42 task/42-" in worktrees_result.output

    prune_result = runner.invoke(cli, ["prune", "--hours", "0"])
    assert prune_result.exit_code == 0
    assert "Pruned 1" in prune_result.output

    cleanup_result = runner.invoke(cli, ["cleanup"])
    assert cleanup_result.exit_code == 0
    assert "Removed: 1" in cleanup_result.output
    assert not (tmp_path / "repo-worktrees" / "task-42").exists()


def test_run_reads_tasks_file(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    tasks_file = repo / ".taskmaster" / "tasks" / "tasks.json"
    tasks_file.parent.mkdir(parents=True)
    tasks_file.write_text(
        json.dumps(
            {
                "master": {
                    "tasks": [
                        {
                            "id": 3,
                            "title": "Build API",
                            "description": "Expose endpoints",
                            "subtasks": [{"id": 1, "title": "Routing", "description": "Add routes"}],
                        }
                    ]
                }
            }
        ),
        encoding="utf-8",
    )
    monkeypatch.chdir(repo)
    _use_script(monkeypatch, ECHO_PROMPT)
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "3", "3.1", "--quiet"])

    assert result.exit_code == 0, result.output
    assert "task=3 completed" in result.output
    assert "task=3.1 completed" in result.output
    assert "Work on Task" not in result.output

    missing = runner.invoke(cli, ["run", "99"])
    assert missing.exit_code != 0
    assert "Task 99 not found" in missing.output


def test_run_reports_failed_workflows(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_script(monkeypatch, "import sys; sys.exit(2)")
    runner = CliRunner()

    result = runner.invoke(cli, ["run", "8", "--title", "Broken", "--cleanup"])

    assert result.exit_code != 0
    assert "task=8 failed" in result.output
    assert "did not complete" in result.output
    assert not (tmp_path / "repo-worktrees" / "task-8").exists()


def test_run_refuses_more_tasks_than_slots(tmp_path: Path, monkeypatch) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    _init_git_repo(repo)
    monkeypatch.chdir(repo)
    _use_script(monkeypatch, ECHO_PROMPT)
    runner = CliRunner()
    assert runner.invoke(cli, ["init"]).exit_code == 0
    config_path = repo / ".taskmaster" / "engine.toml"
    config_path.write_text(
        config_path.read_text(encoding="utf-8").replace("max_concurrent = 5", "max_concurrent = 1"),
        encoding="utf-8",
    )
    tasks_file = repo / ".taskmaster" / "tasks" / "tasks.json"
    tasks_file.parent.mkdir(parents=True)
    tasks_file.write_text(
        json.dumps({"tasks": [{"id": 1, "title": "One"}, {"id": 2, "title": "Two"}]}),
        encoding="utf-8",
    )

    result = runner.invoke(cli, ["run", "1", "2"])

    assert result.exit_code != 0
    assert "1 of 1 slots available" in result.output
    assert not (tmp_path / "repo-worktrees").exists()


def test_status_of_unknown_workflow_fails(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    result = CliRunner().invoke(cli, ["status", "wf-missing"])

    assert result.exit_code != 0
    assert "Workflow not found" in result.output
