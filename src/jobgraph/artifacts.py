# artifacts.py
"""
Run-scoped artifact storage.

An artifact is sealed on first write: a second write under the same name
in the same run is rejected with ArtifactConflict. The only coordination
needed is an atomic "claim this name once" check, which each store
provides (a lock-guarded dict in memory, SET NX in Redis).
"""
from __future__ import annotations

import hashlib
import json
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Protocol

from .errors import ArtifactConflict, ArtifactNotFound

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class Artifact:
    run_id: str
    name: str
    payload: bytes
    producer: str
    digest: str
    metadata: Dict[str, str] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    @property
    def size(self) -> int:
        return len(self.payload)

    def describe(self) -> dict:
        return {
            "name": self.name,
            "producer": self.producer,
            "digest": self.digest,
            "size": self.size,
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


def _sha256(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class ArtifactStore(Protocol):
    def put(self, artifact: Artifact) -> None: ...
    def get(self, run_id: str, name: str) -> Artifact: ...
    def list(self, run_id: str) -> List[Artifact]: ...
    def delete_run(self, run_id: str) -> None: ...


class MemoryArtifactStore:
    """Process-local store; the default backend."""

    def __init__(self):
        self._lock = threading.Lock()
        self._runs: Dict[str, Dict[str, Artifact]] = {}

    def put(self, artifact: Artifact) -> None:
        with self._lock:
            run = self._runs.setdefault(artifact.run_id, {})
            existing = run.get(artifact.name)
            if existing is not None:
                raise ArtifactConflict(artifact.run_id, artifact.name, existing.producer)
            run[artifact.name] = artifact

    def get(self, run_id: str, name: str) -> Artifact:
        with self._lock:
            art = self._runs.get(run_id, {}).get(name)
        if art is None:
            raise ArtifactNotFound(run_id, name)
        return art

    def list(self, run_id: str) -> List[Artifact]:
        with self._lock:
            return list(self._runs.get(run_id, {}).values())

    def delete_run(self, run_id: str) -> None:
        with self._lock:
            self._runs.pop(run_id, None)


class RedisArtifactStore:
    """
    Redis backend. Keys:
      jobgraph:artifact:<run>:<name>:meta   (claimed with SET NX)
      jobgraph:artifact:<run>:<name>:data
      jobgraph:artifacts:<run>              (set of names)
    Retention is delegated to key TTLs.
    """

    def __init__(self, client, *, ttl_seconds: int = DEFAULT_RETENTION_SECONDS, prefix: str = "jobgraph"):
        self.r = client
        self.ttl = int(ttl_seconds)
        self.prefix = prefix

    @classmethod
    def from_url(cls, url: str, **kwargs) -> RedisArtifactStore:
        import redis

        return cls(redis.Redis.from_url(url), **kwargs)

    def _key(self, run_id: str, name: str, part: str) -> str:
        return f"{self.prefix}:artifact:{run_id}:{name}:{part}"

    def _index(self, run_id: str) -> str:
        return f"{self.prefix}:artifacts:{run_id}"

    def put(self, artifact: Artifact) -> None:
        meta = json.dumps({
            "producer": artifact.producer,
            "digest": artifact.digest,
            "metadata": artifact.metadata,
            "created_at": artifact.created_at,
        })
        claimed = self.r.set(self._key(artifact.run_id, artifact.name, "meta"), meta, nx=True, ex=self.ttl)
        if not claimed:
            raise ArtifactConflict(artifact.run_id, artifact.name)
        self.r.set(self._key(artifact.run_id, artifact.name, "data"), artifact.payload, ex=self.ttl)
        self.r.sadd(self._index(artifact.run_id), artifact.name)
        self.r.expire(self._index(artifact.run_id), self.ttl)

    def get(self, run_id: str, name: str) -> Artifact:
        meta = self.r.get(self._key(run_id, name, "meta"))
        data = self.r.get(self._key(run_id, name, "data"))
        # meta without data: claimed but not sealed yet
        if meta is None or data is None:
            raise ArtifactNotFound(run_id, name)
        m = json.loads(meta)
        return Artifact(
            run_id=run_id,
            name=name,
            payload=bytes(data),
            producer=m["producer"],
            digest=m["digest"],
            metadata=m.get("metadata") or {},
            created_at=m.get("created_at", 0.0),
        )

    def list(self, run_id: str) -> List[Artifact]:
        out = []
        for raw in sorted(self.r.smembers(self._index(run_id)) or []):
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            try:
                out.append(self.get(run_id, name))
            except ArtifactNotFound:
                continue
        return out

    def delete_run(self, run_id: str) -> None:
        names = self.r.smembers(self._index(run_id)) or []
        keys = [self._index(run_id)]
        for raw in names:
            name = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            keys += [self._key(run_id, name, "meta"), self._key(run_id, name, "data")]
        self.r.delete(*keys)


class ArtifactBroker:
    """put/get plus the publish/fetch surface, with run retention."""

    def __init__(
        self,
        store: ArtifactStore | None = None,
        *,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store if store is not None else MemoryArtifactStore()
        self.retention_seconds = retention_seconds
        self.clock = clock
        self._finished: Dict[str, float] = {}
        self._lock = threading.Lock()

    def put(
        self,
        run_id: str,
        name: str,
        payload: bytes,
        producer: str,
        metadata: Optional[Dict[str, str]] = None,
    ) -> Artifact:
        if isinstance(payload, str):
            payload = payload.encode("utf-8")
        artifact = Artifact(
            run_id=run_id,
            name=name,
            payload=bytes(payload),
            producer=producer,
            digest=_sha256(payload),
            metadata=dict(metadata or {}),
            created_at=self.clock(),
        )
        self.store.put(artifact)
        logger.debug("sealed artifact %s/%s (%d bytes) from %s", run_id, name, artifact.size, producer)
        return artifact

    def get(self, run_id: str, name: str) -> Artifact:
        return self.store.get(run_id, name)

    def publish(self, run_id: str, job_instance_key: str, artifact_name: str, payload: bytes, **kw) -> Artifact:
        return self.put(run_id, artifact_name, payload, job_instance_key, **kw)

    def fetch(self, run_id: str, artifact_name: str) -> Artifact:
        return self.get(run_id, artifact_name)

    def list(self, run_id: str) -> List[Artifact]:
        return sorted(self.store.list(run_id), key=lambda a: a.name)

    def mark_finished(self, run_id: str, at: float | None = None) -> None:
        with self._lock:
            self._finished[run_id] = self.clock() if at is None else at

    def collect_expired(self, now: float | None = None) -> List[str]:
        """Drop artifacts of runs whose retention window has elapsed."""
        now = self.clock() if now is None else now
        with self._lock:
            expired = [rid for rid, t in self._finished.items() if now - t >= self.retention_seconds]
            for rid in expired:
                del self._finished[rid]
        for rid in expired:
            self.store.delete_run(rid)
            logger.info("collected artifacts of run %s", rid)
        return expired
