# errors.py
from __future__ import annotations

from dataclasses import dataclass, field


class JobgraphError(Exception):
    """Base exception for jobgraph."""


@dataclass
class ConfigurationError(JobgraphError):
    """
    Raised before any instance starts: unresolved needs, dependency
    cycles, malformed matrices, invalid pipeline documents.
    """
    message: str
    details: dict = field(default_factory=dict)

    def __str__(self) -> str:
        lines = [f"ConfigurationError: {self.message}"]
        for k, v in self.details.items():
            lines.append(f"{k}={v}")
        return "\n".join(lines)


@dataclass
class ConditionEvaluationError(JobgraphError):
    expression: str
    reason: str

    def __str__(self) -> str:
        return f"cannot evaluate {self.expression!r}: {self.reason}"


@dataclass
class StepFailure(JobgraphError):
    job: str
    step: str
    reason: str
    exit_code: int | None = None

    def __str__(self) -> str:
        code = f" (exit={self.exit_code})" if self.exit_code is not None else ""
        return f"[{self.job}] step '{self.step}' failed{code}: {self.reason}"


class StepTimeout(StepFailure):
    """A step or instance ran past its deadline."""


@dataclass
class ArtifactConflict(JobgraphError):
    run_id: str
    name: str
    producer: str | None = None

    def __str__(self) -> str:
        owner = f" by {self.producer}" if self.producer else ""
        return f"artifact '{self.name}' already sealed in run {self.run_id}{owner}"


@dataclass
class ArtifactNotFound(JobgraphError):
    run_id: str
    name: str

    def __str__(self) -> str:
        return f"artifact '{self.name}' not found in run {self.run_id}"


class CancellationRequested(JobgraphError):
    """Raised inside a worker when its instance or run was cancelled."""


@dataclass
class InvalidTransition(JobgraphError):
    key: str
    current: str
    requested: str

    def __str__(self) -> str:
        return f"{self.key}: illegal status change {self.current} -> {self.requested}"
