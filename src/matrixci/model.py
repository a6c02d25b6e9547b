# model.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Tuple

if TYPE_CHECKING:
    from .errors import GuardSkip, MatrixCIError
    from .expr import Expr, Template


# Step / job statuses
SUCCESS = "success"
FAILURE = "failure"
SKIPPED = "skipped"      # job level: every step guarded off, job guard false, or upstream failed
CANCELLED = "cancelled"


class _Undefined:
    """Value of a reference to something that does not exist (falsy, renders empty)."""

    _instance: Optional["_Undefined"] = None

    def __new__(cls) -> "_Undefined":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __str__(self) -> str:
        return ""


UNDEFINED = _Undefined()


# ---------------------------------------------------------------------
# Definition side (parsed once per triggering event)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class Trigger:
    """One entry of the `on:` block: event kind plus optional filters."""
    event: str
    branches: Optional[Tuple[str, ...]] = None
    branches_ignore: Optional[Tuple[str, ...]] = None
    paths: Optional[Tuple[str, ...]] = None


@dataclass(frozen=True)
class TriggerEvent:
    """The event that caused this run."""
    event: str
    branch: Optional[str] = None
    changed_files: Tuple[str, ...] = ()


@dataclass(frozen=True)
class Variant:
    """
    One entry of one matrix axis.

    `value` is either a mapping (a record whose fields may be absent) or a
    plain scalar such as "stable".
    """
    axis: str
    value: Any

    @property
    def is_record(self) -> bool:
        return isinstance(self.value, Mapping)

    def get(self, name: str) -> Any:
        if self.is_record:
            return self.value.get(name, UNDEFINED)
        return UNDEFINED

    def describe(self) -> str:
        if self.is_record:
            name = self.value.get("name")
            if name is not None:
                return str(name)
            return ",".join(f"{k}={v}" for k, v in self.value.items())
        return str(self.value)


@dataclass(frozen=True)
class MatrixSpec:
    """Ordered mapping axis name -> variants (declaration order is expansion order)."""
    axes: Mapping[str, Tuple[Variant, ...]]

    def size(self) -> int:
        n = 1
        for variants in self.axes.values():
            n *= len(variants)
        return n


@dataclass(frozen=True)
class StepDefinition:
    """
    A single step inside a job.

    Exactly one of `uses` (an action reference) or `run` (a script for the
    built-in shell action) is set.
    """
    index: int
    name: "Template"
    id: Optional[str] = None
    uses: Optional[str] = None
    run: Optional["Template"] = None
    params: Mapping[str, "Template"] = field(default_factory=dict)
    env: Mapping[str, "Template"] = field(default_factory=dict)
    guard: Optional["Expr"] = None
    working_directory: Optional[str] = None

    @property
    def action(self) -> str:
        return self.uses if self.uses is not None else "run"


@dataclass(frozen=True)
class JobDefinition:
    """
    A CI job: ordered steps, optional matrix, optional guard.

    `key` is the job id in the document; `name` is the display-name template.
    `needs` are the only ordering edges between jobs.
    """
    key: str
    name: "Template"
    steps: Tuple[StepDefinition, ...]
    matrix: Optional[MatrixSpec] = None
    guard: Optional["Expr"] = None
    env: Mapping[str, str] = field(default_factory=dict)
    needs: Tuple[str, ...] = ()
    runs_on: Optional[str] = None


@dataclass(frozen=True)
class PipelineDefinition:
    name: str
    triggers: Tuple[Trigger, ...]
    env: Mapping[str, str]
    jobs: Mapping[str, JobDefinition]


# ---------------------------------------------------------------------
# Run side (derived fresh each run)
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class JobInstance:
    """One job definition bound to exactly one matrix combination."""
    job: JobDefinition
    binding: Mapping[str, Variant]
    index: int
    env: Mapping[str, str]
    display_name: str

    @property
    def key(self) -> str:
        return self.job.key

    @property
    def id(self) -> str:
        return f"{self.job.key}#{self.index}"

    @property
    def label(self) -> str:
        """Job key plus its matrix binding, e.g. "test[rust=stable, features=no_std]"."""
        if not self.binding:
            return self.job.key
        parts = ", ".join(f"{axis}={v.describe()}" for axis, v in self.binding.items())
        return f"{self.job.key}[{parts}]"


@dataclass
class StepRecord:
    step: StepDefinition
    name: str
    status: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    error: Optional["MatrixCIError"] = None
    skip: Optional["GuardSkip"] = None


@dataclass
class JobResult:
    instance: JobInstance
    status: str
    steps: List[StepRecord] = field(default_factory=list)
    error: Optional["MatrixCIError"] = None
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status in (SUCCESS, SKIPPED)

    @property
    def outputs(self) -> Dict[str, Dict[str, Any]]:
        return {r.step.id: dict(r.outputs) for r in self.steps if r.step.id and r.status == SUCCESS}

    def executed(self) -> List[StepRecord]:
        return [r for r in self.steps if r.status != SKIPPED]


@dataclass
class PipelineResult:
    results: List[JobResult] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Success iff every non-skipped instance succeeded."""
        return all(r.ok for r in self.results)

    def failures(self) -> List[JobResult]:
        return [r for r in self.results if not r.ok]

    def for_job(self, key: str) -> List[JobResult]:
        return [r for r in self.results if r.instance.key == key]
