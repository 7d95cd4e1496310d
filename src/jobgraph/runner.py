# runner.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from .actions import ActionCall, ActionRegistry, ActionResult, ShellInvoker, default_registry
from .artifacts import ArtifactBroker
from .errors import ConditionEvaluationError, StepFailure, StepTimeout
from .expressions import Scope, check, interpolate
from .model import JobInstance, JobTemplate, Status, Step, StepResult
from .ui.console import get_console

logger = logging.getLogger(__name__)


class CancelToken:
    """A cancellation flag plus why it was raised (cancelled, timeout, fail-fast)."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: str | None = None

    def set(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    @property
    def event(self) -> threading.Event:
        return self._event


@dataclass
class Execution:
    """One instance handed to a worker."""
    run_id: str
    instance: JobInstance
    template: JobTemplate
    scope: Scope
    workdir: Path
    env: Dict[str, str] = field(default_factory=dict)
    cancel: CancelToken = field(default_factory=CancelToken)
    deadline: float | None = None        # time.monotonic() based


@dataclass
class Outcome:
    key: str
    status: Status
    reason: str | None = None
    steps: List[StepResult] = field(default_factory=list)
    produced: List[str] = field(default_factory=list)
    consumed: List[str] = field(default_factory=list)


def matrix_env(assignment: Dict) -> Dict[str, str]:
    return {f"MATRIX_{str(k).upper().replace('-', '_')}": str(v) for k, v in assignment.items()}


class StepRunner:
    """
    Executes a job instance's steps strictly in order on the calling thread.

    Default-guarded steps stop running after the first failure; steps whose
    condition calls always()/failure()/cancelled() still get evaluated and
    may run.
    """

    def __init__(
        self,
        *,
        broker: ArtifactBroker | None = None,
        actions: ActionRegistry | None = None,
        shell: ShellInvoker | None = None,
    ):
        self.broker = broker if broker is not None else ArtifactBroker()
        self.actions = actions if actions is not None else default_registry()
        self.shell = shell if shell is not None else ShellInvoker()

    def run(self, ex: Execution) -> Outcome:
        console = get_console()
        key = ex.instance.key
        results: List[StepResult] = []
        produced: List[str] = []
        consumed: List[str] = []
        timed_out = False

        for step in ex.template.steps:
            observed = [r.outcome for r in results if r.status != Status.SKIPPED]
            if timed_out:
                observed.append(Status.FAILED)
            scope = ex.scope.with_statuses(observed, cancelled=ex.cancel.is_set())
            step_env = {**ex.env, **{k: interpolate(v, scope) for k, v in step.env.items()}}
            scope = Scope(scope.context, scope.matrix, step_env, scope.statuses, scope.cancelled)

            try:
                should_run = check(step.condition, scope)
            except ConditionEvaluationError as e:
                logger.warning("[%s] step '%s' skipped: %s", key, step.name, e)
                results.append(StepResult(step.name, Status.SKIPPED, reason=f"condition error: {e.reason}"))
                continue
            if not should_run:
                results.append(StepResult(step.name, Status.SKIPPED, reason="condition false"))
                continue

            timeout = step.timeout
            if ex.deadline is not None:
                remaining = ex.deadline - time.monotonic()
                if remaining <= 0:
                    timed_out = True
                    results.append(StepResult(step.name, Status.FAILED, reason="timeout"))
                    continue
                timeout = remaining if timeout is None else min(timeout, remaining)

            console.print_step(key, step.name)
            res = self._invoke(ex, step, scope, step_env, timeout, produced, consumed)
            if res.ok:
                results.append(StepResult(step.name, Status.SUCCEEDED, 0, res.outputs))
                continue

            if res.reason == "cancelled":
                results.append(StepResult(step.name, Status.CANCELLED, res.exit_status, res.outputs, "cancelled"))
                continue

            reason = res.reason or f"exit status {res.exit_status}"
            if res.reason == "timeout":
                timed_out = True
            failure = (StepTimeout if res.reason == "timeout" else StepFailure)(key, step.name, reason, res.exit_status)
            logger.info("%s%s", failure, " (continuing)" if step.continue_on_error else "")
            results.append(StepResult(
                step.name,
                Status.FAILED,
                res.exit_status,
                res.outputs,
                reason,
                tolerated=step.continue_on_error,
            ))
            console.print_failure(f"{key} / {step.name}", res.log or reason, exit_code=res.exit_status)

        if timed_out:
            return Outcome(key, Status.FAILED, "timeout", results, produced, consumed)
        # a failure recorded before cancellation still decides the outcome
        failed = [r for r in results if r.status == Status.FAILED and not r.tolerated]
        if failed:
            return Outcome(key, Status.FAILED, f"step '{failed[0].name}' failed: {failed[0].reason}",
                           results, produced, consumed)
        if ex.cancel.is_set():
            return Outcome(key, Status.CANCELLED, ex.cancel.reason, results, produced, consumed)
        return Outcome(key, Status.SUCCEEDED, None, results, produced, consumed)

    def _invoke(
        self,
        ex: Execution,
        step: Step,
        scope: Scope,
        env: Dict[str, str],
        timeout: Optional[float],
        produced: List[str],
        consumed: List[str],
    ) -> ActionResult:
        workdir = ex.workdir
        if step.cwd:
            workdir = (ex.workdir / interpolate(step.cwd, scope)).resolve()

        if step.run is not None:
            command = interpolate(step.run, scope)
            return self.shell.invoke(command, env, workdir, timeout=timeout, cancel=ex.cancel.event)

        call = ActionCall(
            action_id=step.uses,
            inputs={k: interpolate(str(v), scope) for k, v in step.inputs.items()},
            env=env,
            workdir=workdir,
            run_id=ex.run_id,
            instance_key=ex.instance.key,
            broker=self.broker,
            cancel=ex.cancel.event,
        )
        try:
            return self.actions.invoke(call, timeout=timeout)
        finally:
            produced.extend(call.produced)
            consumed.extend(call.consumed)
