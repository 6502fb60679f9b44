from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentKind = Literal["claude", "codex"]

DEFAULT_CONFIG_PATH = Path(".taskmaster") / "engine.toml"


@dataclass(slots=True)
class EngineSection:
    max_concurrent: int = 5
    default_timeout_minutes: float = 60.0
    debug: bool = False


@dataclass(slots=True)
class WorkspaceConfig:
    base_dir: str = ""
    branch_prefix: str = "task/"
    start_point: str = ""
    cleanup_on_exit: bool = False
    cleanup_on_shutdown: bool = True


@dataclass(slots=True)
class AgentConfig:
    kind: AgentKind = "claude"
    executable: str = ""
    extra_args: list[str] = field(default_factory=list)
    grace_seconds: float = 5.0


@dataclass(slots=True)
class StateConfig:
    file: str = ".taskmaster/workflows.json"
    retention_hours: float = 24.0


@dataclass(slots=True)
class EngineConfig:
    engine: EngineSection = field(default_factory=EngineSection)
    workspace: WorkspaceConfig = field(default_factory=WorkspaceConfig)
    agent: AgentConfig = field(default_factory=AgentConfig)
    state: StateConfig = field(default_factory=StateConfig)

    @classmethod
    def default(cls) -> EngineConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> EngineConfig:
        return cls(
            engine=EngineSection(**data.get("engine", {})),
            workspace=WorkspaceConfig(**data.get("workspace", {})),
            agent=AgentConfig(**data.get("agent", {})),
            state=StateConfig(**data.get("state", {})),
        )

    def to_dict(self) -> dict:
        return {
            "engine": {
                "max_concurrent": self.engine.max_concurrent,
                "default_timeout_minutes": self.engine.default_timeout_minutes,
                "debug": self.engine.debug,
            },
            "workspace": {
                "base_dir": self.workspace.base_dir,
                "branch_prefix": self.workspace.branch_prefix,
                "start_point": self.workspace.start_point,
                "cleanup_on_exit": self.workspace.cleanup_on_exit,
                "cleanup_on_shutdown": self.workspace.cleanup_on_shutdown,
            },
            "agent": {
                "kind": self.agent.kind,
                "executable": self.agent.executable,
                "extra_args": list(self.agent.extra_args),
                "grace_seconds": self.agent.grace_seconds,
            },
            "state": {
                "file": self.state.file,
                "retention_hours": self.state.retention_hours,
            },
        }

    def worktree_base_dir(self, project_root: Path) -> Path:
        """Resolved worktree base; defaults to a sibling ``<project>-worktrees``."""
        project_root = project_root.resolve()
        raw = self.workspace.base_dir.strip()
        if not raw:
            return project_root.parent / f"{project_root.name}-worktrees"
        base = Path(raw).expanduser()
        if not base.is_absolute():
            base = project_root / base
        return base.resolve()

    def state_file(self, project_root: Path) -> Path:
        path = Path(self.state.file)
        if not path.is_absolute():
            path = project_root.resolve() / path
        return path


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        if not rendered:
            return "0.0"
        return rendered if "." in rendered else f"{rendered}.0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: EngineConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("engine", "workspace", "agent", "state"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> EngineConfig:
    if not path.exists():
        return EngineConfig.default()
    return EngineConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: EngineConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
