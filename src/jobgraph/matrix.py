# matrix.py
from __future__ import annotations

from itertools import product
from typing import Any, Dict, List

from .errors import ConfigurationError
from .model import JobTemplate, MatrixSpec

Assignment = Dict[str, Any]


def _matches(assignment: Assignment, entry: Assignment) -> bool:
    """Every axis named in `entry` must agree exactly."""
    return all(k in assignment and assignment[k] == v for k, v in entry.items())


def expand(spec: MatrixSpec | None, *, job: str = "<job>") -> List[Assignment]:
    """
    Turn a matrix declaration into an ordered list of assignments.

      1. cross-product in axis-declaration order
      2. drop assignments matching any exclude entry
      3. append include entries not already present

    No matrix (or an empty one) yields a single empty assignment.
    """
    if spec is None or spec.empty:
        return [{}]

    for axis, values in spec.axes.items():
        if not values:
            raise ConfigurationError(f"matrix axis '{axis}' has no values", {"job": job})

    for entry in spec.exclude:
        unknown = sorted(k for k in entry if k not in spec.axes)
        if not entry or unknown:
            raise ConfigurationError(
                "malformed matrix exclude",
                {"job": job, "entry": entry, "unknown_axes": unknown},
            )

    names = list(spec.axes)
    out: List[Assignment] = []
    if names:
        for combo in product(*(spec.axes[n] for n in names)):
            a = dict(zip(names, combo))
            if any(_matches(a, ex) for ex in spec.exclude):
                continue
            out.append(a)

    for entry in spec.include:
        if not entry:
            raise ConfigurationError("empty matrix include entry", {"job": job})
        if entry not in out:
            out.append(dict(entry))

    if not out:
        raise ConfigurationError("matrix expands to zero instances", {"job": job})
    return out


def instance_key(template: str, assignment: Assignment, axes: List[str] | None = None) -> str:
    """
    `tests` for an unmatrixed job, `tests (ubuntu-latest, s3, stable)` otherwise.
    Values follow axis-declaration order; include-only axes render as k=v.
    """
    if not assignment:
        return template
    axes = axes or []
    parts = [str(assignment[a]) for a in axes if a in assignment]
    parts += [f"{k}={v}" for k, v in assignment.items() if k not in axes]
    return f"{template} ({', '.join(parts)})"


def expand_job(job: JobTemplate) -> List[tuple[str, Assignment]]:
    """(key, assignment) pairs for one template, in deterministic order."""
    declared = list(job.matrix.axes) if job.matrix else []
    pairs = [(instance_key(job.name, a, declared), a) for a in expand(job.matrix, job=job.name)]
    keys = [k for k, _ in pairs]
    if len(set(keys)) != len(keys):
        dupes = sorted({k for k in keys if keys.count(k) > 1})
        raise ConfigurationError("matrix produces duplicate instance keys", {"job": job.name, "keys": dupes})
    return pairs
