from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Literal

BackendName = Literal["claude"]
WorkflowMode = Literal["auto", "workflow", "direct"]
WORKFLOW_MODES = ("auto", "workflow", "direct")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")
DEFAULT_CONFIG_FILE = "conductor.toml"


@dataclass(slots=True)
class WorkflowConfig:
    max_iterations: int = 15
    max_parallel_tasks: int = 8
    mode: WorkflowMode = "auto"

    def __post_init__(self) -> None:
        self.max_iterations = max(1, int(self.max_iterations))
        self.max_parallel_tasks = max(1, int(self.max_parallel_tasks))
        if self.mode not in WORKFLOW_MODES:
            raise ValueError(f"Unsupported workflow mode: {self.mode}")


@dataclass(slots=True)
class BackendConfig:
    name: BackendName = "claude"
    binary: str = "claude"
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


@dataclass(slots=True)
class AgentsConfig:
    planner_model: str = ""
    reflector_model: str = ""
    subagent_model: str = ""


@dataclass(slots=True)
class StateConfig:
    root_dir: str = ".conductor"
    persist: bool = True


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"

    def __post_init__(self) -> None:
        self.level = str(self.level).upper()
        if self.level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log level: {self.level}")

    @property
    def numeric_level(self) -> int:
        return logging.getLevelName(self.level)


@dataclass(slots=True)
class ConductorConfig:
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> ConductorConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ConductorConfig:
        return cls(
            workflow=WorkflowConfig(**data.get("workflow", {})),
            backend=BackendConfig(**data.get("backend", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            state=StateConfig(**data.get("state", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "workflow": asdict(self.workflow),
            "backend": asdict(self.backend),
            "agents": asdict(self.agents),
            "state": asdict(self.state),
            "logging": asdict(self.logging),
        }

    def state_root(self, base: Path) -> Path:
        root = Path(self.state.root_dir)
        if not root.is_absolute():
            root = base / root
        return root


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return repr(value)
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: ConductorConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ("workflow", "backend", "agents", "state", "logging"):
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ConductorConfig:
    if not path.exists():
        return ConductorConfig.default()
    return ConductorConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: ConductorConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
