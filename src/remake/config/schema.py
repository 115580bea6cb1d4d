from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

TargetKind = Literal["expr", "cmd"]
BackendName = Literal["thread", "process"]
BACKEND_NAMES: set[str] = {"thread", "process"}


@dataclass(slots=True)
class TargetSpec:
    name: str
    expr: str | None = None
    cmd: list[str] | None = None
    depends_on: list[str] = field(default_factory=list)
    inputs: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    cwd: str | None = None
    env: dict[str, str] | None = None
    timeout_sec: float | None = None
    retries: int = 0
    retry_backoff_sec: list[float] = field(default_factory=list)
    group: str | None = None

    @property
    def kind(self) -> TargetKind:
        return "expr" if self.expr is not None else "cmd"


@dataclass(slots=True)
class EngineSettings:
    max_parallel: int = 4
    backend: BackendName = "thread"
    cache_dir: str | None = None
    fail_fast: bool = False
    default_timeout_sec: float | None = None
    default_retries: int = 0


@dataclass(slots=True)
class PlanSpec:
    goal: str | None
    targets: list[TargetSpec]
    functions: list[str] = field(default_factory=list)
    settings: EngineSettings = field(default_factory=EngineSettings)
    base_dir: str | None = None

    def target(self, name: str) -> TargetSpec:
        for target in self.targets:
            if target.name == name:
                return target
        raise KeyError(name)
