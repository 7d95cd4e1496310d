# src/jobgraph/dsl.py
from __future__ import annotations

from dataclasses import replace
from typing import Any, Dict, Iterable, List, Optional

from .model import EventKind, JobTemplate, MatrixSpec, Pipeline, Step, TriggerRule


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    env: Optional[Dict[str, str]] = None,
    condition: str | None = None,
    timeout: float | None = None,
    continue_on_error: bool = False,
    id: str | None = None,
) -> Step:
    """Create a shell step."""
    return Step(
        name=name,
        run=cmd,
        cwd=cwd,
        env={k: str(v) for k, v in (env or {}).items()},
        condition=condition,
        timeout=timeout,
        continue_on_error=continue_on_error,
        id=id,
    )


def uses(
    action: str,
    name: str | None = None,
    *,
    condition: str | None = None,
    timeout: float | None = None,
    continue_on_error: bool = False,
    env: Optional[Dict[str, str]] = None,
    id: str | None = None,
    inputs: Optional[Dict[str, Any]] = None,
) -> Step:
    """Create an external action step: uses("upload-artifact", inputs={"name": "report", "path": "out"})."""
    return Step(
        name=name or action,
        uses=action,
        inputs={k: str(v) for k, v in (inputs or {}).items()},
        env={k: str(v) for k, v in (env or {}).items()},
        condition=condition,
        timeout=timeout,
        continue_on_error=continue_on_error,
        id=id,
    )


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(
    axes: Optional[Dict[str, Iterable[Any]]] = None,
    *,
    include: Optional[List[Dict[str, Any]]] = None,
    exclude: Optional[List[Dict[str, Any]]] = None,
    **kw_axes: Iterable[Any],
) -> MatrixSpec:
    """
    Example:
        matrix(os=["ubuntu-latest", "macos-latest"], version=["stable", "1.73"],
               exclude=[{"os": "macos-latest", "version": "1.73"}])
    """
    merged: Dict[str, List[Any]] = {}
    for k, v in (axes or {}).items():
        merged[k] = list(v)
    for k, v in kw_axes.items():
        merged[k] = list(v)
    return MatrixSpec(axes=merged, include=list(include or []), exclude=list(exclude or []))


# ---------------------------------------------------------------------
# Functional Job helper
# ---------------------------------------------------------------------

def job(
    name: str,
    *steps: Step,  # allow: job("x", sh(...), sh(...))
    steps_list: Optional[List[Step]] = None,
    needs: Optional[List[str] | str] = None,
    condition: str | None = None,
    matrix: MatrixSpec | None = None,
    env: Optional[Dict[str, str]] = None,
    fail_fast: bool = True,
    max_parallel: int | None = None,
    timeout: float | None = None,
    needs_policy: str = "all",
    cwd: str | None = None,  # default cwd applied to steps missing cwd
) -> JobTemplate:
    steps_final: List[Step] = []
    if steps_list:
        steps_final.extend(list(steps_list))
    steps_final.extend(list(steps))

    if not steps_final:
        raise ValueError(f"job({name!r}) must have at least one step")

    if cwd is not None:
        steps_final = [s if s.cwd is not None else replace(s, cwd=cwd) for s in steps_final]

    if isinstance(needs, str):
        needs = [needs]

    return JobTemplate(
        name=name,
        steps=steps_final,
        needs=list(needs or []),
        condition=condition,
        matrix=matrix,
        env={k: str(v) for k, v in (env or {}).items()},
        fail_fast=fail_fast,
        max_parallel=max_parallel,
        timeout=timeout,
        needs_policy=needs_policy,
    )


# ---------------------------------------------------------------------
# Builder API
# ---------------------------------------------------------------------

class JobBuilder:
    def __init__(self, name: str):
        self.name = name
        self._needs: list[str] = []
        self._steps: list[Step] = []
        self._env: dict[str, str] = {}
        self._condition: str | None = None
        self._matrix: MatrixSpec | None = None
        self._fail_fast = True
        self._max_parallel: int | None = None
        self._timeout: float | None = None

    def depends_on(self, *job_names: str):
        self._needs.extend(job_names)
        return self

    def when(self, condition: str):
        self._condition = condition
        return self

    def define_step(self, name: str, run: str, cwd: str | None = None, **kw):
        self._steps.append(sh(name, run, cwd=cwd, **kw))
        return self

    def use_action(self, action: str, label: str | None = None, **inputs):
        self._steps.append(uses(action, label, inputs=inputs))
        return self

    def with_env(self, **env):
        # values are always strings in a process environment
        self._env.update({k: str(v) for k, v in env.items()})
        return self

    def with_matrix(self, spec: MatrixSpec | None = None, **axes):
        self._matrix = spec if spec is not None else matrix(**axes)
        return self

    def strategy(self, *, fail_fast: bool = True, max_parallel: int | None = None):
        self._fail_fast = fail_fast
        self._max_parallel = max_parallel
        return self

    def timeout_after(self, seconds: float):
        self._timeout = seconds
        return self

    def build(self) -> JobTemplate:
        if not self._steps:
            raise ValueError(f"Job '{self.name}' has no steps")
        return JobTemplate(
            name=self.name,
            steps=list(self._steps),
            needs=list(self._needs),
            condition=self._condition,
            matrix=self._matrix,
            env=dict(self._env),
            fail_fast=self._fail_fast,
            max_parallel=self._max_parallel,
            timeout=self._timeout,
        )


def build(name: str) -> JobBuilder:
    """Convenience: build('test').define_step(...).build()"""
    return JobBuilder(name)


# ---------------------------------------------------------------------
# Triggers + pipeline
# ---------------------------------------------------------------------

def on_push(*branches: str) -> TriggerRule:
    return TriggerRule(EventKind.PUSH, list(branches) or None)


def on_pull_request(*branches: str) -> TriggerRule:
    return TriggerRule(EventKind.PULL_REQUEST, list(branches) or None)


def pipeline(
    name: str,
    *jobs: JobTemplate,
    on: Optional[List[TriggerRule]] = None,
    env: Optional[Dict[str, str]] = None,
    fail_fast: bool = False,
    timeout: float | None = None,
) -> Pipeline:
    """
    Workflow definition helper:

        def pipeline_def():
            return pipeline("ci", job(...), job(...), on=[on_push("main"), on_pull_request()])
    """
    return Pipeline(
        name=name,
        jobs=list(jobs),
        triggers=list(on or []),
        env={k: str(v) for k, v in (env or {}).items()},
        fail_fast=fail_fast,
        timeout=timeout,
    )
