# loader.py
"""
Definition Loader: pipeline document -> validated PipelineDefinition.

Pure: validates structure and references, never resolves values, evaluates
guards or touches secrets.
"""
from __future__ import annotations

import logging
import re
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

import yaml

from .dag import build_dag, topo_levels
from .errors import SchemaError
from .expr import NAMESPACES, Expr, Ref, Template, parse_expression, parse_template, to_text
from .model import (
    JobDefinition,
    MatrixSpec,
    PipelineDefinition,
    StepDefinition,
    Trigger,
    Variant,
)

logger = logging.getLogger(__name__)

_ID_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_-]*$")
_SCALARS = (str, int, float, bool)


class _UniqueKeyLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys instead of keeping the last one."""

    def construct_mapping(self, node, deep=False):
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise SchemaError(f"duplicate key {key!r} (line {key_node.start_mark.line + 1})")
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


# ---------------------------------------------------------------------
# Entry points
# ---------------------------------------------------------------------

def load_pipeline(path: str | Path) -> PipelineDefinition:
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(f"Pipeline file not found: {p}")
    return loads_pipeline(p.read_text(encoding="utf-8"), name=p.stem)


def loads_pipeline(text: str, name: Optional[str] = None) -> PipelineDefinition:
    try:
        document = yaml.load(text, Loader=_UniqueKeyLoader)
    except yaml.YAMLError as e:
        raise SchemaError(f"invalid YAML: {e}") from e
    return parse_pipeline(document, name=name)


def parse_pipeline(document: Any, name: Optional[str] = None) -> PipelineDefinition:
    if not isinstance(document, Mapping):
        raise SchemaError("pipeline document must be a mapping")

    # YAML 1.1 reads the bare key `on` as boolean True
    raw_on = document.get("on", document.get(True))
    triggers = _parse_triggers(raw_on)
    env = _parse_env(document.get("env"), "env")

    raw_jobs = document.get("jobs")
    if not isinstance(raw_jobs, Mapping) or not raw_jobs:
        raise SchemaError("at least one job is required", "jobs")

    jobs: Dict[str, JobDefinition] = {}
    for key, raw in raw_jobs.items():
        jobs[str(key)] = _parse_job(key, raw, env)

    adj, indeg = build_dag(jobs)
    topo_levels(adj, indeg)

    pipeline_name = document.get("name") or name or "pipeline"
    logger.debug("loaded pipeline %r with jobs %s", pipeline_name, sorted(jobs))
    return PipelineDefinition(
        name=str(pipeline_name),
        triggers=triggers,
        env=MappingProxyType(env),
        jobs=MappingProxyType(jobs),
    )


# ---------------------------------------------------------------------
# Triggers / env
# ---------------------------------------------------------------------

def _str_tuple(value: Any, path: str) -> Optional[Tuple[str, ...]]:
    if value is None:
        return None
    if isinstance(value, str):
        return (value,)
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return tuple(value)
    raise SchemaError("expected a string or a list of strings", path)


def _parse_triggers(raw: Any) -> Tuple[Trigger, ...]:
    if raw is None:
        return ()
    if isinstance(raw, str):
        return (Trigger(raw),)
    if isinstance(raw, list):
        if not all(isinstance(e, str) for e in raw):
            raise SchemaError("trigger list must contain event names", "on")
        return tuple(Trigger(e) for e in raw)
    if isinstance(raw, Mapping):
        triggers: List[Trigger] = []
        for event, filters in raw.items():
            path = f"on.{event}"
            if filters is None:
                triggers.append(Trigger(str(event)))
                continue
            if not isinstance(filters, Mapping):
                raise SchemaError("trigger filters must be a mapping", path)
            triggers.append(
                Trigger(
                    event=str(event),
                    branches=_str_tuple(filters.get("branches"), f"{path}.branches"),
                    branches_ignore=_str_tuple(filters.get("branches-ignore"), f"{path}.branches-ignore"),
                    paths=_str_tuple(filters.get("paths"), f"{path}.paths"),
                )
            )
        return tuple(triggers)
    raise SchemaError("expected an event name, a list or a mapping", "on")


def _parse_env(raw: Any, path: str) -> Dict[str, str]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise SchemaError("env must be a mapping", path)
    env: Dict[str, str] = {}
    for k, v in raw.items():
        if not isinstance(v, _SCALARS):
            raise SchemaError("env values must be scalars", f"{path}.{k}")
        text = to_text(v)
        if "${{" in text:
            raise SchemaError("expressions are only allowed in step env", f"{path}.{k}")
        env[str(k)] = text
    return env


# ---------------------------------------------------------------------
# Matrix
# ---------------------------------------------------------------------

def _parse_matrix(raw: Any, path: str) -> Optional[MatrixSpec]:
    if raw is None:
        return None
    if not isinstance(raw, Mapping) or not raw:
        raise SchemaError("matrix must be a non-empty mapping of axis -> list", path)

    axes: Dict[str, Tuple[Variant, ...]] = {}
    for axis, values in raw.items():
        axis_path = f"{path}.{axis}"
        if axis in ("include", "exclude"):
            raise SchemaError(f"matrix '{axis}' is not supported", axis_path)
        if not isinstance(axis, str) or not _ID_RE.match(axis):
            raise SchemaError(f"invalid axis name {axis!r}", axis_path)
        if not isinstance(values, list) or not values:
            raise SchemaError("axis must be a non-empty list of variants", axis_path)

        records = [isinstance(v, Mapping) for v in values]
        if any(records) and not all(records):
            raise SchemaError("axis mixes records and plain values", axis_path)

        variants: List[Variant] = []
        for i, v in enumerate(values):
            if isinstance(v, Mapping):
                if not all(isinstance(k, str) for k in v):
                    raise SchemaError("variant field names must be strings", f"{axis_path}[{i}]")
                variants.append(Variant(axis, MappingProxyType(dict(v))))
            elif v is None or isinstance(v, _SCALARS):
                variants.append(Variant(axis, v))
            else:
                raise SchemaError("variant must be a record or a scalar", f"{axis_path}[{i}]")
        axes[axis] = tuple(variants)

    return MatrixSpec(MappingProxyType(axes))


# ---------------------------------------------------------------------
# Jobs / steps
# ---------------------------------------------------------------------

def _expr(value: Any, path: str) -> Expr:
    try:
        return parse_expression(value)
    except SchemaError as e:
        raise SchemaError(e.message, path) from e


def _template(value: Any, path: str) -> Template:
    if value is not None and not isinstance(value, _SCALARS):
        raise SchemaError("expected a scalar value", path)
    try:
        return parse_template(value)
    except SchemaError as e:
        raise SchemaError(e.message, path) from e


def _templates(raw: Any, path: str) -> Dict[str, Template]:
    if raw is None:
        return {}
    if not isinstance(raw, Mapping):
        raise SchemaError("expected a mapping", path)
    return {str(k): _template(v, f"{path}.{k}") for k, v in raw.items()}


def _parse_step(raw: Any, path: str, index: int) -> StepDefinition:
    if not isinstance(raw, Mapping):
        raise SchemaError("step must be a mapping", path)

    uses, run = raw.get("uses"), raw.get("run")
    if (uses is None) == (run is None):
        raise SchemaError("step needs exactly one of 'uses' or 'run'", path)
    if uses is not None and (not isinstance(uses, str) or not uses.strip()):
        raise SchemaError("'uses' must be a non-empty action reference", f"{path}.uses")
    if run is not None and not isinstance(run, str):
        raise SchemaError("'run' must be a string", f"{path}.run")

    step_id = raw.get("id")
    if step_id is not None and (not isinstance(step_id, str) or not _ID_RE.match(step_id)):
        raise SchemaError(f"invalid step id {step_id!r}", f"{path}.id")

    name = raw.get("name")
    if name is None:
        # a default name is shown as written, never evaluated
        label = uses if uses is not None else run.strip().splitlines()[0] if run.strip() else "run"
        step_name = Template(label, (label,))
    else:
        step_name = _template(name, f"{path}.name")

    guard = raw.get("if")
    workdir = raw.get("working-directory")
    if workdir is not None and not isinstance(workdir, str):
        raise SchemaError("working-directory must be a string", f"{path}.working-directory")

    return StepDefinition(
        index=index,
        name=step_name,
        id=step_id,
        uses=uses.strip() if uses is not None else None,
        run=_template(run, f"{path}.run") if run is not None else None,
        params=MappingProxyType(_templates(raw.get("with"), f"{path}.with")),
        env=MappingProxyType(_templates(raw.get("env"), f"{path}.env")),
        guard=_expr(guard, f"{path}.if") if guard is not None else None,
        working_directory=workdir,
    )


def _parse_job(key: Any, raw: Any, pipeline_env: Mapping[str, str]) -> JobDefinition:
    path = f"jobs.{key}"
    if not isinstance(key, str) or not _ID_RE.match(key):
        raise SchemaError(f"invalid job name {key!r}", path)
    if not isinstance(raw, Mapping):
        raise SchemaError("job must be a mapping", path)

    raw_steps = raw.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise SchemaError("job must have at least one step", f"{path}.steps")
    steps = tuple(_parse_step(s, f"{path}.steps[{i}]", i) for i, s in enumerate(raw_steps))

    seen_ids: Dict[str, int] = {}
    for s in steps:
        if s.id is None:
            continue
        if s.id in seen_ids:
            raise SchemaError(f"duplicate step id '{s.id}'", f"{path}.steps[{s.index}].id")
        seen_ids[s.id] = s.index

    strategy = raw.get("strategy")
    if strategy is not None and not isinstance(strategy, Mapping):
        raise SchemaError("strategy must be a mapping", f"{path}.strategy")
    raw_matrix = (strategy or {}).get("matrix", raw.get("matrix"))

    needs = _str_tuple(raw.get("needs"), f"{path}.needs") or ()
    runs_on = raw.get("runs-on")
    if isinstance(runs_on, list):
        runs_on = ",".join(str(r) for r in runs_on)

    name = raw.get("name", key)
    if not isinstance(name, str):
        raise SchemaError("job name must be a string", f"{path}.name")

    guard = raw.get("if")
    job = JobDefinition(
        key=key,
        name=_template(name, f"{path}.name"),
        steps=steps,
        matrix=_parse_matrix(raw_matrix, f"{path}.strategy.matrix"),
        guard=_expr(guard, f"{path}.if") if guard is not None else None,
        env=MappingProxyType(_parse_env(raw.get("env"), f"{path}.env")),
        needs=needs,
        runs_on=str(runs_on) if runs_on is not None else None,
    )
    _check_references(job, pipeline_env)
    return job


# ---------------------------------------------------------------------
# Reference checking
# ---------------------------------------------------------------------

class _Scope:
    def __init__(
        self,
        path: str,
        axes: Mapping[str, Any],
        env: set,
        step_ids: set,
        allow_steps: bool,
        allow_secrets: bool,
    ):
        self.path = path
        self.axes = axes
        self.env = env
        self.step_ids = step_ids
        self.allow_steps = allow_steps
        self.allow_secrets = allow_secrets

    def check(self, ref: Ref) -> None:
        where = self.path
        if ref.namespace not in NAMESPACES:
            raise SchemaError(f"unknown context '{ref.namespace}' in '{ref}'", where)
        if not ref.path:
            raise SchemaError(f"'{ref}' must name a value", where)

        if ref.namespace == "matrix":
            if ref.path[0] not in self.axes:
                raise SchemaError(f"'{ref}': job has no matrix axis '{ref.path[0]}'", where)
        elif ref.namespace == "env":
            if len(ref.path) != 1 or ref.path[0] not in self.env:
                raise SchemaError(f"'{ref}' is not declared in any env block", where)
        elif ref.namespace == "steps":
            if not self.allow_steps:
                raise SchemaError(f"'{ref}': step outputs are not available here", where)
            step_id = ref.path[0]
            if step_id not in self.step_ids:
                raise SchemaError(f"'{ref}': no earlier step with id '{step_id}'", where)
            if len(ref.path) < 2 or ref.path[1] not in ("outputs", "outcome"):
                raise SchemaError(f"'{ref}': expected steps.<id>.outputs.<name> or steps.<id>.outcome", where)
            if ref.path[1] == "outputs" and len(ref.path) != 3:
                raise SchemaError(f"'{ref}': expected steps.<id>.outputs.<name>", where)
        elif ref.namespace == "secrets":
            if not self.allow_secrets:
                raise SchemaError(f"'{ref}': secrets can only be tested with isSet() here", where)
            if len(ref.path) != 1:
                raise SchemaError(f"'{ref}' must be secrets.<NAME>", where)

    def check_expr(self, expr: Expr) -> None:
        for ref in expr.refs():
            self.check(ref)

    def check_template(self, template: Template) -> None:
        for ref in template.refs():
            self.check(ref)
        for e in template.expressions():
            if not isinstance(e, Ref) and any(r.namespace == "secrets" for r in e.refs()):
                raise SchemaError(
                    f"'{e}': a secret can only be substituted as is (test it with isSet())",
                    self.path,
                )


def _check_references(job: JobDefinition, pipeline_env: Mapping[str, str]) -> None:
    path = f"jobs.{job.key}"
    axes = job.matrix.axes if job.matrix else {}
    env = set(pipeline_env) | set(job.env)

    def scope(where: str, *, steps: set, allow_steps: bool, allow_secrets: bool, extra_env=()) -> _Scope:
        return _Scope(where, axes, env | set(extra_env), steps, allow_steps, allow_secrets)

    scope(f"{path}.name", steps=set(), allow_steps=False, allow_secrets=False).check_template(job.name)
    if job.guard is not None:
        scope(f"{path}.if", steps=set(), allow_steps=False, allow_secrets=False).check_expr(job.guard)

    earlier: set = set()
    for step in job.steps:
        sp = f"{path}.steps[{step.index}]"
        own_env = set(step.env)
        scope(f"{sp}.name", steps=earlier, allow_steps=True, allow_secrets=False,
              extra_env=own_env).check_template(step.name)
        if step.guard is not None:
            scope(f"{sp}.if", steps=earlier, allow_steps=True, allow_secrets=False,
                  extra_env=own_env).check_expr(step.guard)
        for k, t in step.env.items():
            scope(f"{sp}.env.{k}", steps=earlier, allow_steps=True, allow_secrets=True).check_template(t)
        for k, t in step.params.items():
            scope(f"{sp}.with.{k}", steps=earlier, allow_steps=True, allow_secrets=True,
                  extra_env=own_env).check_template(t)
        if step.run is not None:
            scope(f"{sp}.run", steps=earlier, allow_steps=True, allow_secrets=True,
                  extra_env=own_env).check_template(step.run)
        if step.id:
            earlier = earlier | {step.id}
