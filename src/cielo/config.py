from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

Priority = Literal["critical", "high", "medium", "low"]
RiskLevel = Literal["low", "medium", "high"]
GateProfile = Literal["fast", "full"]

CONFIG_FILENAME = "cielo.toml"


@dataclass(slots=True)
class CoordinationConfig:
    coord_dir: str = ".coord"
    lock_timeout_seconds: float = 3.0


@dataclass(slots=True)
class LeasesConfig:
    default_ttl_minutes: int = 60
    expiring_soon_minutes: int = 10


@dataclass(slots=True)
class TasksConfig:
    branch_prefix: str = "feat/"
    branch_slug_length: int = 30
    default_priority: Priority = "medium"


@dataclass(slots=True)
class QueueConfig:
    default_risk: RiskLevel = "low"
    default_gates: GateProfile = "fast"
    default_rollback: str = "git revert"


@dataclass(slots=True)
class PolicyConfig:
    rules_file: str = "policies.json"


@dataclass(slots=True)
class BoardConfig:
    history_limit: int = 100
    scope_breadth_limit: int = 10
    cost_threshold: float = 100.0


@dataclass(slots=True)
class AuditConfig:
    enabled: bool = True
    events_file: str = "events.jsonl"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"
    verbose: int | None = None
    file: str | None = None


@dataclass(slots=True)
class CieloConfig:
    coordination: CoordinationConfig = field(default_factory=CoordinationConfig)
    leases: LeasesConfig = field(default_factory=LeasesConfig)
    tasks: TasksConfig = field(default_factory=TasksConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)
    policy: PolicyConfig = field(default_factory=PolicyConfig)
    board: BoardConfig = field(default_factory=BoardConfig)
    audit: AuditConfig = field(default_factory=AuditConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> CieloConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> CieloConfig:
        return cls(
            coordination=CoordinationConfig(**data.get("coordination", {})),
            leases=LeasesConfig(**data.get("leases", {})),
            tasks=TasksConfig(**data.get("tasks", {})),
            queue=QueueConfig(**data.get("queue", {})),
            policy=PolicyConfig(**data.get("policy", {})),
            board=BoardConfig(**data.get("board", {})),
            audit=AuditConfig(**data.get("audit", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )

    def to_dict(self) -> dict:
        return {
            "coordination": {
                "coord_dir": self.coordination.coord_dir,
                "lock_timeout_seconds": self.coordination.lock_timeout_seconds,
            },
            "leases": {
                "default_ttl_minutes": self.leases.default_ttl_minutes,
                "expiring_soon_minutes": self.leases.expiring_soon_minutes,
            },
            "tasks": {
                "branch_prefix": self.tasks.branch_prefix,
                "branch_slug_length": self.tasks.branch_slug_length,
                "default_priority": self.tasks.default_priority,
            },
            "queue": {
                "default_risk": self.queue.default_risk,
                "default_gates": self.queue.default_gates,
                "default_rollback": self.queue.default_rollback,
            },
            "policy": {
                "rules_file": self.policy.rules_file,
            },
            "board": {
                "history_limit": self.board.history_limit,
                "scope_breadth_limit": self.board.scope_breadth_limit,
                "cost_threshold": self.board.cost_threshold,
            },
            "audit": {
                "enabled": self.audit.enabled,
                "events_file": self.audit.events_file,
            },
            "logging": {
                "level": self.logging.level,
                "verbose": self.logging.verbose,
                "file": self.logging.file,
            },
        }


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: CieloConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = [
        "coordination",
        "leases",
        "tasks",
        "queue",
        "policy",
        "board",
        "audit",
        "logging",
    ]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            # TOML has no null; unset optionals are simply omitted
            if value is None:
                continue
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> CieloConfig:
    if not path.exists():
        return CieloConfig.default()
    return CieloConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))


def save_config(path: Path, config: CieloConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
