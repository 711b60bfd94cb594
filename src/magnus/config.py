from __future__ import annotations

import json
import logging
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

logger = logging.getLogger(__name__)

ProviderName = Literal["claude", "opencode"]
PlanReviewMode = Literal["ask", "always", "never"]

KNOWN_PROVIDERS = ("claude", "opencode")
USER_CONFIG_PATH = Path("~/.config/magnus/config.toml")
PROJECT_CONFIG_NAME = "magnus.toml"


class ConfigError(ValueError):
    """Raised when a configuration payload is structurally or semantically invalid."""


@dataclass(slots=True)
class BackendConfig:
    providers: list[str] = field(default_factory=lambda: ["claude", "opencode"])
    max_retries: int = 1
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 900.0


@dataclass(slots=True)
class AgentsConfig:
    default_model: str = "anthropic/claude-sonnet-4-5"
    models: dict[str, str] = field(default_factory=dict)
    disabled: list[str] = field(default_factory=list)
    prompt_dir: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    max_iterations: int = 3
    quorum: int = 2
    plan_reviewers: int = 3
    code_reviewers: int = 3
    task_timeout_seconds: float = 900.0
    required_roles: list[str] = field(default_factory=lambda: ["planner"])
    plan_review: PlanReviewMode = "ask"


@dataclass(slots=True)
class MonitorConfig:
    poll_interval_seconds: float = 5.0
    min_poll_interval_seconds: float = 2.0
    stable_observations: int = 2
    idle_fallback_polls: int = 3
    deadline_seconds: float = 1800.0


@dataclass(slots=True)
class BackgroundConfig:
    enabled: bool = True
    max_concurrent: int = 2


@dataclass(slots=True)
class SkillsConfig:
    enabled: bool = True
    content_dir: str = "content"
    include_metadata: bool = True


@dataclass(slots=True)
class StateConfig:
    directory: str = ".magnus/sessions"
    artifacts_directory: str = ".magnus/artifacts"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    file: str = ""


_SECTIONS: dict[str, type] = {
    "backend": BackendConfig,
    "agents": AgentsConfig,
    "workflow": WorkflowConfig,
    "monitor": MonitorConfig,
    "background": BackgroundConfig,
    "skills": SkillsConfig,
    "state": StateConfig,
    "logging": LoggingConfig,
}


@dataclass(slots=True)
class MagnusConfig:
    backend: BackendConfig = field(default_factory=BackendConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    background: BackgroundConfig = field(default_factory=BackgroundConfig)
    skills: SkillsConfig = field(default_factory=SkillsConfig)
    state: StateConfig = field(default_factory=StateConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> MagnusConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MagnusConfig:
        unknown = sorted(set(data) - set(_SECTIONS))
        if unknown:
            raise ConfigError(f"Unknown configuration sections: {', '.join(unknown)}")
        sections: dict[str, Any] = {}
        for name, section_type in _SECTIONS.items():
            payload = data.get(name, {})
            if not isinstance(payload, dict):
                raise ConfigError(f"Section [{name}] must be a table.")
            try:
                sections[name] = section_type(**payload)
            except TypeError as exc:
                raise ConfigError(f"Invalid keys in section [{name}]: {exc}") from exc
        return cls(**sections)

    def to_dict(self) -> dict[str, dict[str, Any]]:
        data: dict[str, dict[str, Any]] = {}
        for name in _SECTIONS:
            section = getattr(self, name)
            values: dict[str, Any] = {}
            for item in fields(section):
                value = getattr(section, item.name)
                if isinstance(value, list):
                    value = list(value)
                elif isinstance(value, dict):
                    value = dict(value)
                values[item.name] = value
            data[name] = values
        return data

    def validate(self) -> None:
        problems: list[str] = []
        if not self.backend.providers:
            problems.append("backend.providers must list at least one provider")
        unknown = [name for name in self.backend.providers if name not in KNOWN_PROVIDERS]
        if unknown:
            problems.append(f"backend.providers has unknown entries: {unknown}")
        if self.backend.max_retries < 0:
            problems.append("backend.max_retries must be >= 0")
        if self.backend.timeout_seconds <= 0:
            problems.append("backend.timeout_seconds must be > 0")
        if self.workflow.max_iterations < 1:
            problems.append("workflow.max_iterations must be >= 1")
        if self.workflow.quorum < 1:
            problems.append("workflow.quorum must be >= 1")
        if self.workflow.plan_reviewers < 1 or self.workflow.code_reviewers < 1:
            problems.append("workflow reviewer counts must be >= 1")
        if self.workflow.task_timeout_seconds <= 0:
            problems.append("workflow.task_timeout_seconds must be > 0")
        if self.workflow.plan_review not in ("ask", "always", "never"):
            problems.append("workflow.plan_review must be one of ask, always, never")
        if self.monitor.stable_observations < 2:
            problems.append("monitor.stable_observations must be >= 2")
        if self.monitor.poll_interval_seconds <= 0 or self.monitor.deadline_seconds <= 0:
            problems.append("monitor intervals and deadline must be > 0")
        if self.monitor.min_poll_interval_seconds < 0:
            problems.append("monitor.min_poll_interval_seconds must be >= 0")
        if self.background.max_concurrent < 1:
            problems.append("background.max_concurrent must be >= 1")
        if problems:
            raise ConfigError("; ".join(problems))


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    if isinstance(value, dict):
        items = ", ".join(
            f"{json.dumps(str(key))} = {_toml_value(item)}" for key, item in value.items()
        )
        return "{ " + items + " }" if items else "{}"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: MagnusConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in _SECTIONS:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def _read_toml(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        return tomllib.loads(path.read_text(encoding="utf-8"))
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return None


def merge_layers(*layers: dict[str, Any] | None) -> dict[str, Any]:
    """Merge config layers section by section; later layers win."""
    merged: dict[str, Any] = {}
    for layer in layers:
        if not layer:
            continue
        for section, values in layer.items():
            if isinstance(values, dict) and isinstance(merged.get(section), dict):
                merged[section] = {**merged[section], **values}
            else:
                merged[section] = values
    return merged


def load_config(path: Path) -> MagnusConfig:
    data = _read_toml(path)
    if data is None:
        return MagnusConfig.default()
    config = MagnusConfig.from_dict(data)
    config.validate()
    return config


def load_layered_config(project_dir: Path, user_path: Path | None = None) -> MagnusConfig:
    user_file = (user_path or USER_CONFIG_PATH).expanduser()
    project_file = project_dir / PROJECT_CONFIG_NAME
    merged = merge_layers(
        MagnusConfig.default().to_dict(),
        _read_toml(user_file),
        _read_toml(project_file),
    )
    try:
        config = MagnusConfig.from_dict(merged)
        config.validate()
    except ConfigError as exc:
        logger.warning("Config validation failed, falling back to defaults: %s", exc)
        return MagnusConfig.default()
    return config


def save_config(path: Path, config: MagnusConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
