# loader.py
from __future__ import annotations

import json
import runpy
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .model import EventKind, JobTemplate, MatrixSpec, Pipeline, Step, TriggerRule

DOCUMENT_SUFFIXES = (".yml", ".yaml", ".json")


# ----------------------------------------------------------------------
# Document schema
# ----------------------------------------------------------------------

class _Doc(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class StepDoc(_Doc):
    name: Optional[str] = None
    id: Optional[str] = None
    run: Optional[str] = None
    uses: Optional[str] = None
    with_: Dict[str, Any] = Field(default_factory=dict, alias="with")
    env: Dict[str, Any] = Field(default_factory=dict)
    working_directory: Optional[str] = Field(None, alias="working-directory")
    if_: Optional[str] = Field(None, alias="if")
    timeout: Optional[float] = None
    continue_on_error: bool = Field(False, alias="continue-on-error")

    @model_validator(mode="after")
    def _one_kind(self) -> StepDoc:
        if (self.run is None) == (self.uses is None):
            raise ValueError("a step needs exactly one of 'run' or 'uses'")
        return self


class StrategyDoc(_Doc):
    fail_fast: Optional[bool] = Field(None, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel")
    matrix: Optional[Dict[str, Any]] = None


class JobDoc(_Doc):
    name: Optional[str] = None
    if_: Optional[str] = Field(None, alias="if")
    needs: Union[str, List[str]] = Field(default_factory=list)
    needs_policy: Literal["all", "matching"] = Field("all", alias="needs-policy")
    env: Dict[str, Any] = Field(default_factory=dict)
    matrix: Optional[Dict[str, Any]] = None
    strategy: Optional[StrategyDoc] = None
    fail_fast: Optional[bool] = Field(None, alias="fail-fast")
    max_parallel: Optional[int] = Field(None, alias="max-parallel")
    timeout: Optional[float] = None
    timeout_minutes: Optional[float] = Field(None, alias="timeout-minutes")
    # runner selection belongs to the external executor; accepted, not interpreted
    runs_on: Optional[Any] = Field(None, alias="runs-on")
    steps: List[StepDoc] = Field(min_length=1)

    @field_validator("needs")
    @classmethod
    def _listify(cls, v):
        return [v] if isinstance(v, str) else v


class TriggerDoc(_Doc):
    branches: Optional[List[str]] = None


class PipelineDoc(_Doc):
    name: str = "pipeline"
    on: Union[str, List[str], Dict[str, Optional[TriggerDoc]], None] = None
    env: Dict[str, Any] = Field(default_factory=dict)
    fail_fast: bool = Field(False, alias="fail-fast")
    timeout: Optional[float] = None
    jobs: Dict[str, JobDoc]


# ----------------------------------------------------------------------
# Conversion
# ----------------------------------------------------------------------

def _str_env(env: Dict[str, Any]) -> Dict[str, str]:
    return {k: "" if v is None else str(v) for k, v in env.items()}


def _matrix(raw: Optional[Dict[str, Any]], job: str) -> Optional[MatrixSpec]:
    if not raw:
        return None
    axes: Dict[str, List[Any]] = {}
    include = raw.get("include") or []
    exclude = raw.get("exclude") or []
    for key, values in raw.items():
        if key in ("include", "exclude"):
            continue
        if not isinstance(values, list):
            raise ConfigurationError(f"matrix axis '{key}' must be a list", {"job": job})
        axes[key] = values
    for label, entries in (("include", include), ("exclude", exclude)):
        if not isinstance(entries, list) or not all(isinstance(e, dict) for e in entries):
            raise ConfigurationError(f"matrix {label} must be a list of mappings", {"job": job})
    return MatrixSpec(axes=axes, include=include, exclude=exclude)


def _triggers(on) -> List[TriggerRule]:
    if on is None:
        return []
    if isinstance(on, str):
        on = [on]
    if isinstance(on, list):
        on = {name: None for name in on}
    rules = []
    for name, doc in on.items():
        try:
            kind = EventKind(name)
        except ValueError:
            raise ConfigurationError(f"unsupported trigger event '{name}'", {"supported": [e.value for e in EventKind]})
        rules.append(TriggerRule(kind, doc.branches if doc else None))
    return rules


def _step(doc: StepDoc, idx: int) -> Step:
    name = doc.name or doc.id or (doc.uses if doc.uses else f"step {idx + 1}")
    return Step(
        name=name,
        run=doc.run,
        uses=doc.uses,
        inputs=_str_env(doc.with_),
        env=_str_env(doc.env),
        cwd=doc.working_directory,
        condition=doc.if_,
        timeout=doc.timeout,
        continue_on_error=doc.continue_on_error,
        id=doc.id,
    )


def _job(key: str, doc: JobDoc) -> JobTemplate:
    strategy = doc.strategy or StrategyDoc()
    if doc.matrix and strategy.matrix:
        raise ConfigurationError("matrix declared twice (job and strategy)", {"job": key})
    fail_fast = doc.fail_fast if doc.fail_fast is not None else strategy.fail_fast
    timeout = doc.timeout
    if timeout is None and doc.timeout_minutes is not None:
        timeout = doc.timeout_minutes * 60
    return JobTemplate(
        name=key,
        steps=[_step(s, i) for i, s in enumerate(doc.steps)],
        needs=list(doc.needs),
        condition=doc.if_,
        matrix=_matrix(doc.matrix or strategy.matrix, key),
        env=_str_env(doc.env),
        fail_fast=True if fail_fast is None else fail_fast,
        max_parallel=doc.max_parallel or strategy.max_parallel,
        timeout=timeout,
        needs_policy=doc.needs_policy,
    )


def parse_document(raw: Dict[str, Any]) -> Pipeline:
    """Validate a decoded pipeline document and build a Pipeline."""
    if not isinstance(raw, dict):
        raise ConfigurationError("pipeline document must be a mapping")
    raw = dict(raw)
    # YAML 1.1 reads a bare `on:` key as boolean True
    if True in raw:
        raw["on"] = raw.pop(True)
    try:
        doc = PipelineDoc.model_validate(raw)
    except ValidationError as e:
        errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError("invalid pipeline document", {"errors": errors}) from e

    return Pipeline(
        name=doc.name,
        jobs=[_job(key, j) for key, j in doc.jobs.items()],
        triggers=_triggers(doc.on),
        env=_str_env(doc.env),
        fail_fast=doc.fail_fast,
        timeout=doc.timeout,
    )


def load_document(path: str | Path) -> Pipeline:
    p = Path(path)
    text = p.read_text(encoding="utf-8")
    try:
        raw = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"cannot parse {p.name}", {"error": str(e)}) from e
    return parse_document(raw)


# ----------------------------------------------------------------------
# Python workflow files
# ----------------------------------------------------------------------

def load_workflow(path: str | Path) -> Pipeline:
    """
    Load a pipeline from a python file path.

    The file must define either:
      - build_pipeline() -> Pipeline
      - PIPELINE = Pipeline(...)
    """
    wf_path = Path(path).expanduser().resolve()
    module_name = f"jobgraph_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    result = None
    if "build_pipeline" in globals_dict and callable(globals_dict["build_pipeline"]):
        result = globals_dict["build_pipeline"]()
    elif "PIPELINE" in globals_dict:
        result = globals_dict["PIPELINE"]

    if not isinstance(result, Pipeline):
        raise ConfigurationError(
            "workflow must define build_pipeline() -> Pipeline or PIPELINE = Pipeline(...)",
            {"file": str(wf_path)},
        )
    return result


def load_pipeline(path: str | Path) -> Pipeline:
    """Dispatch on suffix: .py workflow file or YAML/JSON document."""
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    if p.suffix == ".py":
        return load_workflow(p)
    if p.suffix in DOCUMENT_SUFFIXES:
        return load_document(p)
    raise ConfigurationError(f"unsupported pipeline file type: {p.name}", {"supported": [".py", *DOCUMENT_SUFFIXES]})
