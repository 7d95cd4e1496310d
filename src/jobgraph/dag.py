# dag.py
from __future__ import annotations

import threading
from collections import deque
from typing import Callable, Dict, Iterable, List, Optional

from .errors import ConfigurationError, InvalidTransition
from .expressions import is_always_run
from .matrix import expand_job
from .model import JobInstance, JobTemplate, Status

Listener = Callable[[str, Status, Status, Optional[str]], None]

# pending -> running -> {succeeded | failed | cancelled}; skipped only before running.
_ALLOWED = {
    Status.BLOCKED: {Status.PENDING, Status.SKIPPED, Status.CANCELLED},
    Status.PENDING: {Status.RUNNING, Status.SKIPPED, Status.CANCELLED},
    Status.RUNNING: {Status.SUCCEEDED, Status.FAILED, Status.CANCELLED},
}

NEEDS_POLICIES = ("all", "matching")


def _agree(a: dict, b: dict) -> bool:
    return all(a[k] == b[k] for k in a.keys() & b.keys())


class InstanceGraph:
    """
    Arena of job instances indexed by position; edges are index lists.

    A -> B means "B needs A". Status updates go through `transition()`,
    which is atomic and monotonic, so several workers finishing at once
    never lose an update.
    """

    def __init__(self, jobs: List[JobTemplate], *, listener: Listener | None = None):
        names = [j.name for j in jobs]
        if len(set(names)) != len(names):
            dupes = sorted({n for n in names if names.count(n) > 1})
            raise ConfigurationError("duplicate job names", {"jobs": dupes})

        self.templates: Dict[str, JobTemplate] = {j.name: j for j in jobs}
        self.instances: List[JobInstance] = []
        self.index: Dict[str, int] = {}
        self.by_template: Dict[str, List[int]] = {}
        self.deps: List[List[int]] = []
        self.dependents: List[List[int]] = []
        self.always_run: List[bool] = []
        self._lock = threading.RLock()
        self._listener = listener

        for job in jobs:
            if job.needs_policy not in NEEDS_POLICIES:
                raise ConfigurationError(
                    f"unknown needs_policy {job.needs_policy!r}",
                    {"job": job.name, "allowed": list(NEEDS_POLICIES)},
                )
            for need in job.needs:
                if need not in self.templates:
                    raise ConfigurationError(
                        f"job '{job.name}' needs missing job '{need}'",
                        {"known_jobs": sorted(self.templates)},
                    )
            idxs = []
            for key, assignment in expand_job(job):
                i = len(self.instances)
                initial = Status.BLOCKED if job.needs else Status.PENDING
                self.instances.append(JobInstance(key=key, template=job.name, assignment=assignment, status=initial))
                self.index[key] = i
                self.deps.append([])
                self.dependents.append([])
                self.always_run.append(is_always_run(job.condition))
                idxs.append(i)
            self.by_template[job.name] = idxs

        for job in jobs:
            for i in self.by_template[job.name]:
                for need in dict.fromkeys(job.needs):
                    for j in self.by_template[need]:
                        if job.needs_policy == "matching" and not _agree(
                            self.instances[i].assignment, self.instances[j].assignment
                        ):
                            continue
                        self.deps[i].append(j)
                        self.dependents[j].append(i)

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        return len(self.instances)

    @property
    def keys(self) -> List[str]:
        return [inst.key for inst in self.instances]

    def instance(self, key: str) -> JobInstance:
        return self.instances[self.index[key]]

    def template_of(self, key: str) -> JobTemplate:
        return self.templates[self.instance(key).template]

    def dependencies(self, key: str) -> List[str]:
        return [self.instances[j].key for j in self.deps[self.index[key]]]

    def dependents_of(self, key: str) -> List[str]:
        return [self.instances[j].key for j in self.dependents[self.index[key]]]

    def siblings(self, key: str) -> List[str]:
        inst = self.instance(key)
        return [self.instances[i].key for i in self.by_template[inst.template] if self.instances[i].key != key]

    def levels(self) -> List[List[str]]:
        """
        Topological "stages"; everything in one stage can run in parallel.
        Raises ConfigurationError when the graph has a cycle.
        """
        indeg = [len(d) for d in self.deps]
        q = deque(i for i, d in enumerate(indeg) if d == 0)
        levels: List[List[str]] = []
        processed = 0

        while q:
            level: List[str] = []
            for _ in range(len(q)):
                i = q.popleft()
                level.append(self.instances[i].key)
                processed += 1
                for child in self.dependents[i]:
                    indeg[child] -= 1
                    if indeg[child] == 0:
                        q.append(child)
            levels.append(level)

        if processed != len(self.instances):
            stuck = [self.instances[i].key for i, d in enumerate(indeg) if d > 0]
            cycle = sorted({self.instances[self.index[k]].template for k in stuck})
            raise ConfigurationError("dependency cycle", {"jobs": cycle})
        return levels

    def validate(self) -> None:
        self.levels()

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self, key: str) -> Status:
        with self._lock:
            return self.instance(key).status

    def statuses(self, keys: Iterable[str]) -> List[Status]:
        with self._lock:
            return [self.instance(k).status for k in keys]

    def transition(self, key: str, new: Status, reason: str | None = None) -> Status:
        """Atomically move `key` to `new`; returns the previous status."""
        with self._lock:
            inst = self.instance(key)
            old = inst.status
            if new not in _ALLOWED.get(old, ()):
                raise InvalidTransition(key, old.value, new.value)
            inst.status = new
            if reason is not None:
                inst.reason = reason
            if self._listener is not None:
                self._listener(key, old, new, reason)
            return old

    def ready(self) -> List[str]:
        """
        Waiting instances whose dependencies all succeeded, or, for
        always-run instances, all reached any terminal state.
        """
        out: List[str] = []
        with self._lock:
            for i, inst in enumerate(self.instances):
                if inst.status not in (Status.PENDING, Status.BLOCKED):
                    continue
                dep_status = [self.instances[j].status for j in self.deps[i]]
                if all(s == Status.SUCCEEDED for s in dep_status):
                    out.append(inst.key)
                elif self.always_run[i] and all(s.terminal for s in dep_status):
                    out.append(inst.key)
        return out

    def unsatisfiable(self) -> Dict[str, str]:
        """Waiting instances that can never start: key -> blocking dependency."""
        out: Dict[str, str] = {}
        with self._lock:
            for i, inst in enumerate(self.instances):
                if inst.status not in (Status.PENDING, Status.BLOCKED) or self.always_run[i]:
                    continue
                for j in self.deps[i]:
                    dep = self.instances[j]
                    if dep.status.terminal and dep.status != Status.SUCCEEDED:
                        out[inst.key] = dep.key
                        break
        return out

    def waiting(self) -> List[str]:
        with self._lock:
            return [i.key for i in self.instances if i.status in (Status.PENDING, Status.BLOCKED)]

    def all_terminal(self) -> bool:
        with self._lock:
            return all(i.status.terminal for i in self.instances)
