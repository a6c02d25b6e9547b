# engine.py
from __future__ import annotations

import logging
from fnmatch import fnmatch
from typing import Any, Iterable, List, Optional, Tuple, Union

from .conditions import ResolutionContext, evaluate_guard, render, render_mapping
from .errors import GuardSkip, ResolutionError, StepFailure
from .executors import BoundStep, CancelToken, StepExecutor, StepOutcome
from .expr import to_text
from .matrix import expand_job
from .model import (
    CANCELLED,
    FAILURE,
    SKIPPED,
    SUCCESS,
    JobInstance,
    JobResult,
    PipelineDefinition,
    StepDefinition,
    StepRecord,
    Trigger,
    TriggerEvent,
)
from .secrets import MappingSecretProvider, SecretProvider, SecretRef, SecretText
from .ui.console import get_console

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------
# Triggers
# ---------------------------------------------------------------------

def _matches_any(value: str, patterns: Iterable[str]) -> bool:
    return any(fnmatch(value, p) for p in patterns)


def trigger_matches(trigger: Trigger, event: TriggerEvent) -> bool:
    if trigger.event != event.event:
        return False
    if trigger.branches is not None:
        if event.branch is None or not _matches_any(event.branch, trigger.branches):
            return False
    if trigger.branches_ignore is not None and event.branch is not None:
        if _matches_any(event.branch, trigger.branches_ignore):
            return False
    if trigger.paths is not None:
        if not any(_matches_any(f, trigger.paths) for f in event.changed_files):
            return False
    return True


def is_triggered(definition: PipelineDefinition, event: TriggerEvent) -> bool:
    """A definition without triggers runs for every event."""
    if not definition.triggers:
        return True
    return any(trigger_matches(t, event) for t in definition.triggers)


# ---------------------------------------------------------------------
# evaluate()
# ---------------------------------------------------------------------

def evaluate(
    definition: PipelineDefinition,
    event: TriggerEvent,
    secrets: Optional[SecretProvider] = None,
) -> Tuple[JobInstance, ...]:
    """
    Compute the runnable job instances for one triggering event.

    Jobs are expanded in sorted key order and each job's matrix in declared
    axis order, so the same definition and event always give the same tuple.
    The provider is accepted for symmetry with run(); expansion never reads it.
    """
    if not is_triggered(definition, event):
        logger.debug("pipeline %r not triggered by %s", definition.name, event)
        return ()

    instances: List[JobInstance] = []
    for key in sorted(definition.jobs):
        instances.extend(expand_job(definition.jobs[key], definition.env))
    logger.debug("pipeline %r expanded to %d instance(s)", definition.name, len(instances))
    return tuple(instances)


# ---------------------------------------------------------------------
# run()
# ---------------------------------------------------------------------

def _command(value: Any) -> Union[str, SecretRef, SecretText]:
    if isinstance(value, (SecretRef, SecretText)):
        return value
    return to_text(value)


def _bind_step(
    instance: JobInstance,
    step: StepDefinition,
    name: str,
    ctx: ResolutionContext,
    secrets: SecretProvider,
) -> BoundStep:
    return BoundStep(
        instance=instance.label,
        step=step,
        name=name,
        params=render_mapping(step.params, ctx),
        env={**instance.env, **render_mapping(step.env, ctx)},
        run=_command(render(step.run, ctx)) if step.run is not None else None,
        secrets=secrets,
    )


def run(
    instance: JobInstance,
    executor: StepExecutor,
    secrets: Optional[SecretProvider] = None,
    *,
    cancel: Optional[CancelToken] = None,
) -> JobResult:
    """
    Execute one instance: steps strictly in order, guard-false steps skipped,
    first failure aborts the remaining steps of this instance only.
    """
    secrets = secrets if secrets is not None else MappingSecretProvider()
    console = get_console()
    label = instance.label
    job = instance.job
    ctx = ResolutionContext(instance.binding, instance.env, secrets)

    try:
        job_enabled = job.guard is None or evaluate_guard(job.guard, ctx)
    except ResolutionError as e:
        console.print_failure(label, str(e))
        return JobResult(instance, FAILURE, error=e, reason=str(e))
    if not job_enabled:
        skip = GuardSkip(label, str(job.guard))
        console.print_job_skipped(label, f"if: {job.guard}")
        return JobResult(instance, SKIPPED, reason=str(skip))

    console.print_job_start(label)
    records: List[StepRecord] = []

    for step in job.steps:
        if cancel is not None and cancel.is_set():
            logger.debug("[%s] cancelled before step %d", label, step.index)
            return JobResult(instance, CANCELLED, records, reason="run cancelled")

        name = step.name.source if isinstance(step.name.source, str) else f"step {step.index}"
        try:
            # the guard sees the step's own env; nothing is bound before it passes
            step_ctx = ctx.with_env(render_mapping(step.env, ctx))
            name = to_text(step.name.render(step_ctx))
            if step.guard is not None and not evaluate_guard(step.guard, step_ctx):
                skip = GuardSkip(name, str(step.guard))
                console.print_step_skipped(label, name, f"if: {step.guard}")
                records.append(StepRecord(step, name, SKIPPED, skip=skip))
                ctx.record_step(step.id, SKIPPED, {})
                continue
            bound = _bind_step(instance, step, name, step_ctx, secrets)
        except ResolutionError as e:
            console.print_failure(label, str(e), step=name)
            records.append(StepRecord(step, name, FAILURE, error=e))
            return JobResult(instance, FAILURE, records, error=e, reason=f"{name}: {e}")

        console.print_step(label, name)
        try:
            outcome = executor.execute(bound, cancel)
        except Exception as e:  # a crashing collaborator is a failed step
            logger.debug("[%s] executor raised", label, exc_info=True)
            outcome = StepOutcome.failure(f"{type(e).__name__}: {e}")

        if outcome.status != SUCCESS:
            failure = StepFailure(label, name, outcome.message or "step failed", dict(outcome.outputs))
            console.print_failure(label, failure.message, step=name)
            records.append(StepRecord(step, name, FAILURE, dict(outcome.outputs), error=failure))
            ctx.record_step(step.id, FAILURE, outcome.outputs)
            return JobResult(instance, FAILURE, records, error=failure, reason=str(failure))

        records.append(StepRecord(step, name, SUCCESS, dict(outcome.outputs)))
        ctx.record_step(step.id, SUCCESS, outcome.outputs)

    if records and all(r.status == SKIPPED for r in records):
        return JobResult(instance, SKIPPED, records, reason="every step was guarded off")
    return JobResult(instance, SUCCESS, records)
