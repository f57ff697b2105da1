from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

LogFormat = Literal["console", "json"]


@dataclass(slots=True)
class PathsConfig:
    projects_dir: str = "codev/projects"
    plans_dir: str = "codev/plans"
    protocols_dir: str = "codev/protocols"


@dataclass(slots=True)
class WorkflowConfig:
    default_protocol: str = "spider"
    max_iterations: int = 7
    check_timeout_seconds: float = 0.0


@dataclass(slots=True)
class ConsultationConfig:
    reviewers: list[str] = field(default_factory=lambda: ["gemini", "codex", "claude"])
    timeout_seconds: float = 300.0
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    codex_model: str = ""
    gemini_binary: str = "gemini"
    commands: dict[str, str] = field(default_factory=dict)


@dataclass(slots=True)
class LoggingConfig:
    level: str = "WARNING"
    format: LogFormat = "console"


@dataclass(slots=True)
class PorchConfig:
    paths: PathsConfig = field(default_factory=PathsConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    consultation: ConsultationConfig = field(default_factory=ConsultationConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> PorchConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> PorchConfig:
        return cls(
            paths=PathsConfig(**data.get("paths", {})),
            workflow=WorkflowConfig(**data.get("workflow", {})),
            consultation=ConsultationConfig(**data.get("consultation", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "paths": {
                "projects_dir": self.paths.projects_dir,
                "plans_dir": self.paths.plans_dir,
                "protocols_dir": self.paths.protocols_dir,
            },
            "workflow": {
                "default_protocol": self.workflow.default_protocol,
                "max_iterations": self.workflow.max_iterations,
                "check_timeout_seconds": self.workflow.check_timeout_seconds,
            },
            "consultation": {
                "reviewers": list(self.consultation.reviewers),
                "timeout_seconds": self.consultation.timeout_seconds,
                "claude_binary": self.consultation.claude_binary,
                "codex_binary": self.consultation.codex_binary,
                "codex_model": self.consultation.codex_model,
                "gemini_binary": self.consultation.gemini_binary,
                "commands": dict(self.consultation.commands),
            },
            "logging": {
                "level": self.logging.level,
                "format": self.logging.format,
            },
        }

    @property
    def check_timeout(self) -> float | None:
        timeout = float(self.workflow.check_timeout_seconds)
        return timeout if timeout > 0 else None


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


def dumps_toml(config: PorchConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["paths", "workflow", "consultation", "logging"]
    for section in section_order:
        tables: dict[str, dict] = {}
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            if isinstance(value, dict):
                tables[key] = value
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
        for key, table in tables.items():
            if not table:
                continue
            lines.append(f"[{section}.{key}]")
            for name, value in table.items():
                lines.append(f"{json.dumps(str(name))} = {_toml_value(value)}")
            lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> PorchConfig:
    if not path.exists():
        return PorchConfig.default()
    return PorchConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: PorchConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
