from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

from .artifacts import DEFAULT_RETENTION_SECONDS


def _flag(value: str | None, default: bool) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _float(value: str | None) -> Optional[float]:
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass(frozen=True)
class Settings:
    max_workers: Optional[int] = None        # None -> cpu_count - 1
    fail_fast: bool = False
    run_timeout: Optional[float] = None
    artifact_retention: float = DEFAULT_RETENTION_SECONDS
    redis_url: Optional[str] = None
    workdir: str = "."
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ
        workers = env.get("JOBGRAPH_MAX_WORKERS")
        return cls(
            max_workers=int(workers) if workers else None,
            fail_fast=_flag(env.get("JOBGRAPH_FAIL_FAST"), False),
            run_timeout=_float(env.get("JOBGRAPH_RUN_TIMEOUT")),
            artifact_retention=_float(env.get("JOBGRAPH_ARTIFACT_RETENTION")) or DEFAULT_RETENTION_SECONDS,
            redis_url=env.get("JOBGRAPH_REDIS_URL") or None,
            workdir=env.get("JOBGRAPH_WORKDIR", "."),
            log_level=env.get("JOBGRAPH_LOG_LEVEL", "WARNING").upper(),
        )
