# scheduler.py
from __future__ import annotations

import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from pathlib import Path
from typing import Callable, Dict, Optional, Set

from .dag import InstanceGraph
from .errors import ConditionEvaluationError
from .expressions import Scope, check, interpolate, uses_status_functions
from .model import Pipeline, Run, RunStatus, Status
from .runner import CancelToken, Execution, Outcome, StepRunner, matrix_env

logger = logging.getLogger(__name__)

_POLL_SECONDS = 0.1


def default_workers() -> int:
    c = os.cpu_count() or 2
    return max(1, c - 1)


class Scheduler:
    """
    Walks the instance graph and dispatches ready instances to a worker pool.

    Only this thread applies terminal statuses, so status propagation is
    serialized: a dependent is dispatched strictly after its dependency's
    outcome (and the artifacts sealed while producing it) has been applied.
    """

    def __init__(
        self,
        run: Run,
        pipeline: Pipeline,
        graph: InstanceGraph,
        runner: StepRunner,
        *,
        max_workers: int | None = None,
        fail_fast: bool | None = None,
        timeout: float | None = None,
        workdir: str | Path = ".",
        clock: Callable[[], float] = time.monotonic,
    ):
        self.run = run
        self.pipeline = pipeline
        self.graph = graph
        self.runner = runner
        self.max_workers = max_workers or default_workers()
        self.fail_fast = pipeline.fail_fast if fail_fast is None else fail_fast
        self.timeout = pipeline.timeout if timeout is None else timeout
        self.workdir = Path(workdir).resolve()
        self.clock = clock

        self.cancel_token = CancelToken()
        self._tokens: Dict[str, CancelToken] = {}
        self._running_per_template: Dict[str, int] = {}
        self._halted: Set[str] = set()
        self._stop_dispatch = False
        self._cancel_handled = False

    # ------------------------------------------------------------------
    # Scopes / environment
    # ------------------------------------------------------------------

    def _base_env(self, key: str) -> Dict[str, str]:
        inst = self.graph.instance(key)
        job = self.graph.template_of(key)
        scope = Scope(self.run.context, inst.assignment, dict(self.pipeline.env))
        env = {k: interpolate(str(v), scope) for k, v in self.pipeline.env.items()}
        scope = Scope(self.run.context, inst.assignment, env)
        env.update({k: interpolate(str(v), scope) for k, v in job.env.items()})
        env.update(matrix_env(inst.assignment))
        return env

    def _scope(self, key: str, env: Dict[str, str] | None = None) -> Scope:
        inst = self.graph.instance(key)
        return Scope(self.run.context, inst.assignment, env if env is not None else self._base_env(key))

    def _condition_holds(self, key: str) -> tuple[bool, str | None]:
        job = self.graph.template_of(key)
        deps = self.graph.dependencies(key)
        scope = self._scope(key).with_statuses(self.graph.statuses(deps))
        try:
            return check(job.condition, scope), "condition false"
        except ConditionEvaluationError as e:
            logger.warning("job %s skipped: %s", key, e)
            return False, f"condition error: {e.reason}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def prepare(self) -> Dict[str, str]:
        """
        Skip instances whose condition only looks at the trigger context
        and is false. Returns key -> reason for everything skipped.
        """
        skipped: Dict[str, str] = {}
        for key in self.graph.keys:
            job = self.graph.template_of(key)
            if not job.condition or uses_status_functions(job.condition):
                continue
            try:
                ok = check(job.condition, self._scope(key))
                reason = "condition false"
            except ConditionEvaluationError as e:
                logger.warning("job %s skipped: %s", key, e)
                ok, reason = False, f"condition error: {e.reason}"
            if not ok:
                self.graph.transition(key, Status.SKIPPED, reason)
                skipped[key] = reason
        skipped.update(self._settle())
        return skipped

    def cancel(self, reason: str = "cancelled") -> None:
        """Thread-safe: request cancellation of the whole run."""
        self.cancel_token.set(reason)

    def execute(self) -> RunStatus:
        deadline = None if self.timeout is None else self.clock() + self.timeout
        in_flight: Dict[Future, str] = {}

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            while True:
                if self.cancel_token.is_set() and not self._cancel_handled:
                    self._cancel_all(self.cancel_token.reason or "cancelled")
                if deadline is not None and self.clock() >= deadline and not self._cancel_handled:
                    logger.warning("run %s timed out after %ss", self.run.id, self.timeout)
                    self.cancel_token.set("timeout")
                    self._cancel_all("timeout")

                self._settle()
                if not self._stop_dispatch:
                    self._dispatch(pool, in_flight)

                if not in_flight:
                    if not self.graph.waiting():
                        break
                    # nothing running and nothing can start: only possible after a halt
                    for key in self.graph.waiting():
                        self._cancel_waiting(key, "unschedulable")
                    break

                wait_for = _POLL_SECONDS
                if deadline is not None:
                    wait_for = max(0.0, min(wait_for, deadline - self.clock()))
                done, _ = wait(list(in_flight), timeout=wait_for, return_when=FIRST_COMPLETED)
                for fut in done:
                    key = in_flight.pop(fut)
                    try:
                        outcome = fut.result()
                    except Exception as e:
                        logger.exception("worker for %s crashed", key)
                        outcome = Outcome(key, Status.FAILED, f"internal error: {e}")
                    self._complete(key, outcome)

        return self.final_status()

    def final_status(self) -> RunStatus:
        statuses = [i.status for i in self.graph.instances]
        if self.cancel_token.reason == "timeout" or Status.FAILED in statuses:
            return RunStatus.FAILED
        if self.cancel_token.is_set() or Status.CANCELLED in statuses:
            return RunStatus.CANCELLED
        return RunStatus.SUCCEEDED

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _settle(self) -> Dict[str, str]:
        """Skip everything whose dependencies can no longer succeed (cascading)."""
        skipped: Dict[str, str] = {}
        while True:
            doomed = self.graph.unsatisfiable()
            if not doomed:
                return skipped
            for key, dep in doomed.items():
                reason = f"dependency {dep} {self.graph.status(dep).value}"
                self.graph.transition(key, Status.SKIPPED, reason)
                skipped[key] = reason

    def _dispatch(self, pool: ThreadPoolExecutor, in_flight: Dict[Future, str]) -> None:
        for key in self.graph.ready():
            if len(in_flight) >= self.max_workers:
                return
            job = self.graph.template_of(key)
            if job.name in self._halted:
                self._cancel_waiting(key, "fail-fast")
                continue
            if job.max_parallel and self._running_per_template.get(job.name, 0) >= job.max_parallel:
                continue

            if self.graph.status(key) == Status.BLOCKED:
                self.graph.transition(key, Status.PENDING, "dependencies satisfied")
            ok, reason = self._condition_holds(key)
            if not ok:
                self.graph.transition(key, Status.SKIPPED, reason)
                continue

            env = self._base_env(key)
            inst = self.graph.instance(key)
            token = CancelToken()
            self._tokens[key] = token
            ex = Execution(
                run_id=self.run.id,
                instance=inst,
                template=job,
                scope=self._scope(key, env),
                workdir=self.workdir,
                env=env,
                cancel=token,
                deadline=None if job.timeout is None else time.monotonic() + job.timeout,
            )
            inst.started_at = time.time()
            self.graph.transition(key, Status.RUNNING)
            self._running_per_template[job.name] = self._running_per_template.get(job.name, 0) + 1
            in_flight[pool.submit(self.runner.run, ex)] = key

    def _complete(self, key: str, outcome: Outcome) -> None:
        job = self.graph.template_of(key)
        inst = self.graph.instance(key)
        token = self._tokens.pop(key, None)
        self._running_per_template[job.name] -= 1

        status, reason = outcome.status, outcome.reason
        if token is not None and token.is_set() and status != Status.FAILED:
            if token.reason == "timeout":
                status, reason = Status.FAILED, "timeout"
            else:
                status, reason = Status.CANCELLED, token.reason

        inst.steps = outcome.steps
        inst.produced = list(outcome.produced)
        inst.consumed = list(outcome.consumed)
        inst.finished_at = time.time()
        self.graph.transition(key, status, reason)

        if status != Status.FAILED:
            return
        if job.fail_fast and len(self.graph.by_template[job.name]) > 1:
            self._halt_template(job.name, key)
        if self.fail_fast and not self._stop_dispatch:
            logger.info("run %s: fail-fast after %s", self.run.id, key)
            self._stop_dispatch = True
            for other in self.graph.waiting():
                self._cancel_waiting(other, f"fail-fast: {key} failed")

    def _halt_template(self, template: str, failed_key: str) -> None:
        """Template fail-fast: cancel every other waiting or running sibling."""
        self._halted.add(template)
        for sib in self.graph.siblings(failed_key):
            st = self.graph.status(sib)
            if st in (Status.PENDING, Status.BLOCKED):
                self._cancel_waiting(sib, f"fail-fast: {failed_key} failed")
            elif st == Status.RUNNING and sib in self._tokens:
                self._tokens[sib].set(f"fail-fast: {failed_key} failed")

    def _cancel_waiting(self, key: str, reason: str) -> None:
        if self.graph.status(key) in (Status.PENDING, Status.BLOCKED):
            self.graph.transition(key, Status.CANCELLED, reason)

    def _cancel_all(self, reason: str) -> None:
        self._cancel_handled = True
        self._stop_dispatch = True
        for key in self.graph.waiting():
            self._cancel_waiting(key, "run timeout" if reason == "timeout" else reason)
        for token in self._tokens.values():
            token.set(reason)
