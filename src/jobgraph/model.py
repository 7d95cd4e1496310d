# model.py
from __future__ import annotations

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from fnmatch import fnmatch
from typing import Any, Dict, List, Optional


class Status(str, Enum):
    """Lifecycle of a single job instance."""
    PENDING = "pending"
    BLOCKED = "blocked"        # pending, waiting on dependencies
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL


TERMINAL = frozenset({Status.SUCCEEDED, Status.FAILED, Status.SKIPPED, Status.CANCELLED})


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class EventKind(str, Enum):
    PUSH = "push"
    PULL_REQUEST = "pull_request"


def short_ref(ref: str | None) -> str | None:
    """refs/heads/main -> main; anything else is returned unchanged."""
    if ref is None:
        return None
    for prefix in ("refs/heads/", "refs/tags/"):
        if ref.startswith(prefix):
            return ref[len(prefix):]
    return ref


@dataclass(frozen=True)
class RunContext:
    """Immutable snapshot of the trigger event."""
    event: EventKind
    ref: str
    base_ref: str | None = None
    head_ref: str | None = None
    sha: str | None = None

    def __post_init__(self) -> None:
        # accept plain strings from CLI / HTTP callers
        object.__setattr__(self, "event", EventKind(self.event))

    @classmethod
    def push(cls, ref: str, sha: str | None = None) -> RunContext:
        return cls(event=EventKind.PUSH, ref=ref, sha=sha)

    @classmethod
    def pull_request(
        cls,
        base_ref: str,
        head_ref: str | None = None,
        sha: str | None = None,
    ) -> RunContext:
        ref = head_ref or f"refs/pull/{base_ref}/merge"
        return cls(event=EventKind.PULL_REQUEST, ref=ref, base_ref=base_ref, head_ref=head_ref, sha=sha)

    @property
    def branch(self) -> str | None:
        return short_ref(self.ref)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "event": self.event.value,
            "ref": self.ref,
            "branch": self.branch,
            "base_ref": self.base_ref,
            "head_ref": self.head_ref,
            "sha": self.sha,
        }


@dataclass(frozen=True)
class Step:
    """
    One action inside a job: either a command body (`run`) or a named
    external action (`uses` + `inputs`).
    """
    name: str
    run: str | None = None
    uses: str | None = None
    inputs: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    cwd: str | None = None
    condition: str | None = None      # `if:`; None means "previous steps succeeded"
    timeout: float | None = None      # seconds
    continue_on_error: bool = False
    id: str | None = None

    def __post_init__(self) -> None:
        if (self.run is None) == (self.uses is None):
            raise ValueError(f"step {self.name!r} needs exactly one of run/uses")

    @property
    def kind(self) -> str:
        return "command" if self.run is not None else "action"


@dataclass(frozen=True)
class MatrixSpec:
    """Named axes plus explicit include/exclude entries."""
    axes: Dict[str, List[Any]] = field(default_factory=dict)
    include: List[Dict[str, Any]] = field(default_factory=list)
    exclude: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def empty(self) -> bool:
        return not self.axes and not self.include


@dataclass
class JobTemplate:
    """
    A declared job: steps + dependencies + matrix + execution policy.
    Immutable once a Run has started from it.
    """
    name: str
    steps: list[Step]
    needs: list[str] = field(default_factory=list)
    condition: str | None = None
    matrix: MatrixSpec | None = None
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = True
    max_parallel: int | None = None
    timeout: float | None = None
    needs_policy: str = "all"          # "all" | "matching"

    @property
    def axis_names(self) -> list[str]:
        if self.matrix is None:
            return []
        names = list(self.matrix.axes)
        for entry in self.matrix.include:
            for k in entry:
                if k not in names:
                    names.append(k)
        return names


@dataclass(frozen=True)
class TriggerRule:
    """Event kind + optional branch globs (base branch for pull requests)."""
    event: EventKind
    branches: Optional[List[str]] = None

    def matches(self, ctx: RunContext) -> bool:
        if ctx.event != self.event:
            return False
        if not self.branches:
            return True
        branch = short_ref(ctx.base_ref) if ctx.event == EventKind.PULL_REQUEST else ctx.branch
        if branch is None:
            return False
        return any(fnmatch(branch, pattern) for pattern in self.branches)


@dataclass
class Pipeline:
    name: str
    jobs: list[JobTemplate]
    triggers: list[TriggerRule] = field(default_factory=list)
    env: Dict[str, str] = field(default_factory=dict)
    fail_fast: bool = False
    timeout: float | None = None

    def accepts(self, ctx: RunContext) -> bool:
        # no trigger rules -> manual pipeline, accepts everything
        if not self.triggers:
            return True
        return any(rule.matches(ctx) for rule in self.triggers)

    def job(self, name: str) -> JobTemplate:
        for j in self.jobs:
            if j.name == name:
                return j
        raise KeyError(name)


@dataclass
class StepResult:
    name: str
    status: Status
    exit_code: int | None = None
    outputs: Dict[str, str] = field(default_factory=dict)
    reason: str | None = None
    tolerated: bool = False           # failed, but continue_on_error was set

    @property
    def outcome(self) -> Status:
        """What later conditions observe."""
        return Status.SUCCEEDED if self.tolerated else self.status


@dataclass
class JobInstance:
    """One schedulable unit: a template at one matrix point."""
    key: str
    template: str
    assignment: Dict[str, Any] = field(default_factory=dict)
    status: Status = Status.PENDING
    reason: str | None = None
    produced: list[str] = field(default_factory=list)
    consumed: list[str] = field(default_factory=list)
    steps: list[StepResult] = field(default_factory=list)
    started_at: float | None = None
    finished_at: float | None = None

    def as_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "template": self.template,
            "matrix": dict(self.assignment),
            "status": self.status.value,
            "reason": self.reason,
            "produced": list(self.produced),
            "consumed": list(self.consumed),
            "steps": [
                {"name": s.name, "status": s.status.value, "exit_code": s.exit_code, "reason": s.reason}
                for s in self.steps
            ],
        }


@dataclass(frozen=True)
class StatusEvent:
    run_id: str
    key: str | None                  # None for run-level transitions
    old: str
    new: str
    reason: str | None = None
    at: float = field(default_factory=time.time)


@dataclass
class Run:
    pipeline: str
    context: RunContext
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.PENDING
    instances: Dict[str, JobInstance] = field(default_factory=dict)
    events: list[StatusEvent] = field(default_factory=list)
    error: str | None = None
    created_at: float = field(default_factory=time.time)
    finished_at: float | None = None

    @property
    def terminal(self) -> bool:
        return self.status not in (RunStatus.PENDING, RunStatus.RUNNING)

    def results(self) -> Dict[str, str]:
        return {key: inst.status.value for key, inst in self.instances.items()}

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pipeline": self.pipeline,
            "context": self.context.as_dict(),
            "status": self.status.value,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
            "jobs": [inst.as_dict() for inst in self.instances.values()],
        }
