# src/matrixci/dsl.py
"""
Python builders for pipeline definitions.

Every helper produces the same document fragments a YAML file would contain,
and pipeline() runs them through the loader, so a definition built here is
validated exactly like one read from disk.

    from matrixci.dsl import pipeline, job, uses, sh, matrix, on_push

    PIPELINE = pipeline(
        "ci",
        job(
            "lint",
            uses("actions/checkout@v2"),
            sh("Check formatting", "cargo fmt -- --check", if_="matrix.features.check_formatting"),
            name="Lint ${{ matrix.features.name }}",
            matrix=matrix(features=[{"name": "all features", "check_formatting": True}, {"name": "no_std"}]),
        ),
        on=[on_push("master"), "pull_request"],
    )
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from .errors import SchemaError
from .loader import parse_pipeline
from .model import PipelineDefinition


# ---------------------------------------------------------------------
# Step helpers
# ---------------------------------------------------------------------

def _step(
    name: Optional[str],
    *,
    id: Optional[str],
    if_: Union[str, bool, None],
    env: Optional[Dict[str, Any]],
) -> Dict[str, Any]:
    raw: Dict[str, Any] = {}
    if name is not None:
        raw["name"] = name
    if id is not None:
        raw["id"] = id
    if if_ is not None:
        raw["if"] = if_
    if env:
        raw["env"] = dict(env)
    return raw


def uses(
    action: str,
    name: Optional[str] = None,
    *,
    with_: Optional[Dict[str, Any]] = None,
    id: Optional[str] = None,
    if_: Union[str, bool, None] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """A step that invokes an action, e.g. uses("actions/checkout@v2")."""
    raw = _step(name, id=id, if_=if_, env=env)
    raw["uses"] = action
    if with_:
        raw["with"] = dict(with_)
    return raw


def sh(
    name: str,
    cmd: str,
    *,
    cwd: str | None = None,
    id: Optional[str] = None,
    if_: Union[str, bool, None] = None,
    env: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Create a shell step."""
    raw = _step(name, id=id, if_=if_, env=env)
    raw["run"] = cmd
    if cwd is not None:
        raw["working-directory"] = cwd
    return raw


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def matrix(**axes: Iterable[Any]) -> Dict[str, List[Any]]:
    """Axes in keyword order; the first axis varies slowest."""
    return {axis: list(values) for axis, values in axes.items()}


# ---------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------

@dataclass
class JobSpec:
    key: str
    body: Dict[str, Any] = field(default_factory=dict)


def job(
    key: str,
    *steps: Dict[str, Any],
    name: Optional[str] = None,
    matrix: Optional[Dict[str, List[Any]]] = None,
    if_: Union[str, bool, None] = None,
    needs: Optional[List[str]] = None,
    env: Optional[Dict[str, Any]] = None,
    runs_on: Optional[str] = None,
) -> JobSpec:
    body: Dict[str, Any] = {"steps": list(steps)}
    if name is not None:
        body["name"] = name
    if matrix:
        body["strategy"] = {"matrix": matrix}
    if if_ is not None:
        body["if"] = if_
    if needs:
        body["needs"] = list(needs)
    if env:
        body["env"] = dict(env)
    if runs_on is not None:
        body["runs-on"] = runs_on
    return JobSpec(key, body)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _trigger(event: str, branches: Iterable[str], ignore: Optional[List[str]], paths: Optional[List[str]]) -> Dict[str, Any]:
    filters: Dict[str, Any] = {}
    branches = list(branches)
    if branches:
        filters["branches"] = branches
    if ignore:
        filters["branches-ignore"] = list(ignore)
    if paths:
        filters["paths"] = list(paths)
    return {event: filters or None}


def on_push(*branches: str, branches_ignore: Optional[List[str]] = None, paths: Optional[List[str]] = None) -> Dict[str, Any]:
    return _trigger("push", branches, branches_ignore, paths)


def on_pull_request(*branches: str, branches_ignore: Optional[List[str]] = None, paths: Optional[List[str]] = None) -> Dict[str, Any]:
    return _trigger("pull_request", branches, branches_ignore, paths)


# ---------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------

def pipeline(
    name: str,
    *jobs: JobSpec,
    on: Union[str, Dict[str, Any], List[Union[str, Dict[str, Any]]], None] = None,
    env: Optional[Dict[str, Any]] = None,
) -> PipelineDefinition:
    document: Dict[str, Any] = {"name": name, "jobs": {}}

    if on is not None:
        triggers: Dict[str, Any] = {}
        for t in on if isinstance(on, list) else [on]:
            if isinstance(t, str):
                triggers[t] = None
            else:
                triggers.update(t)
        document["on"] = triggers
    if env:
        document["env"] = dict(env)

    for spec in jobs:
        if spec.key in document["jobs"]:
            raise SchemaError(f"duplicate job name '{spec.key}'", "jobs")
        document["jobs"][spec.key] = spec.body

    return parse_pipeline(document)
