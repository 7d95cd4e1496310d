# engine.py
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .actions import ActionRegistry, ShellInvoker
from .artifacts import ArtifactBroker, MemoryArtifactStore, RedisArtifactStore
from .config import Settings
from .dag import InstanceGraph
from .errors import ConfigurationError
from .model import Pipeline, Run, RunContext, RunStatus, Status, StatusEvent
from .runner import StepRunner
from .scheduler import Scheduler

logger = logging.getLogger(__name__)

Observer = Callable[[StatusEvent], None]


@dataclass
class Plan:
    run: Run
    levels: List[List[str]] = field(default_factory=list)
    skipped: Dict[str, str] = field(default_factory=dict)


class Engine:
    """
    Trigger ingestion and run lifecycle.

        engine = Engine()
        run = engine.trigger(pipeline, RunContext.push("refs/heads/main"))
        engine.execute(run)
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        broker: ArtifactBroker | None = None,
        actions: ActionRegistry | None = None,
        shell: ShellInvoker | None = None,
        observers: Optional[List[Observer]] = None,
    ):
        self.settings = settings if settings is not None else Settings.from_env()
        if broker is None:
            if self.settings.redis_url:
                store = RedisArtifactStore.from_url(
                    self.settings.redis_url, ttl_seconds=int(self.settings.artifact_retention)
                )
            else:
                store = MemoryArtifactStore()
            broker = ArtifactBroker(store, retention_seconds=self.settings.artifact_retention)
        self.broker = broker
        self.runner = StepRunner(broker=broker, actions=actions, shell=shell)
        self.observers: List[Observer] = list(observers or [])
        self.runs: Dict[str, Run] = {}
        self._schedulers: Dict[str, Scheduler] = {}
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Status surface
    # ------------------------------------------------------------------

    def add_observer(self, observer: Observer) -> None:
        self.observers.append(observer)

    def _emit(self, event: StatusEvent) -> None:
        for obs in self.observers:
            try:
                obs(event)
            except Exception:
                # a broken reporter must not take the run down
                logger.exception("status observer failed")

    def _record(self, run: Run, key: str | None, old: str, new: str, reason: str | None) -> None:
        event = StatusEvent(run.id, key, old, new, reason)
        with self._lock:
            run.events.append(event)
        self._emit(event)

    def _set_run_status(self, run: Run, status: RunStatus, reason: str | None = None) -> None:
        old = run.status
        run.status = status
        self._record(run, None, old.value, status.value, reason)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def trigger(
        self,
        pipeline: Pipeline,
        context: RunContext,
        *,
        max_workers: int | None = None,
        fail_fast: bool | None = None,
        timeout: float | None = None,
        workdir: str | None = None,
    ) -> Optional[Run]:
        """
        Create a Run for an incoming event. Returns None when no trigger rule
        matches. Configuration errors produce a Run that is already failed
        and never executes a step.
        """
        if not pipeline.accepts(context):
            logger.info("pipeline %s ignores %s on %s", pipeline.name, context.event.value, context.ref)
            return None

        run = Run(pipeline=pipeline.name, context=context)
        with self._lock:
            self.runs[run.id] = run

        def on_transition(key: str, old: Status, new: Status, reason: str | None) -> None:
            self._record(run, key, old.value, new.value, reason)

        try:
            graph = InstanceGraph(pipeline.jobs, listener=on_transition)
        except ConfigurationError as e:
            self._fail_configuration(run, e)
            return run

        run.instances = {inst.key: inst for inst in graph.instances}
        try:
            graph.validate()
        except ConfigurationError as e:
            for inst in graph.instances:
                inst.status = Status.BLOCKED
                inst.reason = "invalid: dependency cycle"
            self._fail_configuration(run, e)
            return run

        if fail_fast is None:
            fail_fast = pipeline.fail_fast or self.settings.fail_fast
        if timeout is None:
            timeout = pipeline.timeout if pipeline.timeout is not None else self.settings.run_timeout

        self._schedulers[run.id] = Scheduler(
            run,
            pipeline,
            graph,
            self.runner,
            max_workers=max_workers or self.settings.max_workers,
            fail_fast=fail_fast,
            timeout=timeout,
            workdir=workdir or self.settings.workdir,
        )
        return run

    def _fail_configuration(self, run: Run, error: ConfigurationError) -> None:
        logger.error("run %s rejected: %s", run.id, error)
        run.error = str(error)
        run.finished_at = time.time()
        self._set_run_status(run, RunStatus.FAILED, error.message)

    def plan(self, pipeline: Pipeline, context: RunContext) -> Optional[Plan]:
        """Expand, build and pre-skip without executing anything."""
        run = self.trigger(pipeline, context)
        if run is None:
            return None
        with self._lock:
            scheduler = self._schedulers.pop(run.id, None)
            self.runs.pop(run.id, None)
        if scheduler is None:
            return Plan(run)
        return Plan(run, scheduler.graph.levels(), scheduler.prepare())

    def execute(self, run: Run) -> Run:
        """Run to completion on the calling thread."""
        # claimed under the lock so a concurrent cancel() sees either PENDING or RUNNING
        with self._lock:
            if run.terminal:
                return run
            scheduler = self._schedulers.get(run.id)
            if scheduler is None:
                raise KeyError(f"run {run.id} has no scheduler")
            self._set_run_status(run, RunStatus.RUNNING)

        try:
            scheduler.prepare()
            status = scheduler.execute()
        finally:
            run.finished_at = time.time()
            self.broker.mark_finished(run.id, run.finished_at)
            with self._lock:
                self._schedulers.pop(run.id, None)
        self._set_run_status(run, status, scheduler.cancel_token.reason)
        return run

    def run(self, pipeline: Pipeline, context: RunContext, **kwargs) -> Optional[Run]:
        """trigger() + execute()."""
        run = self.trigger(pipeline, context, **kwargs)
        if run is not None:
            self.execute(run)
        return run

    def cancel(self, run_id: str) -> bool:
        """
        Cancel a run: waiting instances become cancelled, running workers are
        signalled. Returns False when the run is unknown or already finished.
        """
        with self._lock:
            run = self.runs.get(run_id)
            scheduler = self._schedulers.get(run_id)
            if run is None or run.terminal or scheduler is None:
                return False
            if run.status == RunStatus.RUNNING:
                # the scheduler thread settles the instances and the run
                scheduler.cancel()
                return True
            # never started, and execute() cannot claim it while the lock is held
            scheduler.cancel()
            for key in scheduler.graph.waiting():
                scheduler.graph.transition(key, Status.CANCELLED, "cancelled")
            self._schedulers.pop(run_id, None)
            run.finished_at = time.time()
            self.broker.mark_finished(run_id, run.finished_at)
            self._set_run_status(run, RunStatus.CANCELLED, "cancelled")
            return True

    def get_run(self, run_id: str) -> Run:
        with self._lock:
            return self.runs[run_id]

    def collect_garbage(self, now: float | None = None) -> List[str]:
        """
        Drop artifacts and run records whose retention window has elapsed.
        Returns the collected run ids.
        """
        now = self.broker.clock() if now is None else now
        collected = set(self.broker.collect_expired(now))
        with self._lock:
            for run_id, run in list(self.runs.items()):
                if not run.terminal or run.finished_at is None:
                    continue
                if now - run.finished_at >= self.broker.retention_seconds:
                    del self.runs[run_id]
                    collected.add(run_id)
        for run_id in collected:
            logger.info("collected run %s", run_id)
        return sorted(collected)
