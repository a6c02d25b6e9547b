# scheduler.py
from __future__ import annotations

import logging
import os
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence, Set

from .dag import build_dag
from .engine import evaluate, run
from .executors import CancelToken, StepExecutor
from .model import CANCELLED, FAILURE, SKIPPED, JobInstance, JobResult, PipelineDefinition, PipelineResult, TriggerEvent
from .secrets import SecretProvider

logger = logging.getLogger(__name__)


def schedule(
    instances: Sequence[JobInstance],
    definition: PipelineDefinition,
    executor: StepExecutor,
    secrets: Optional[SecretProvider] = None,
    *,
    max_workers: Optional[int] = None,
    fail_fast: bool = False,
    cancel: Optional[CancelToken] = None,
) -> PipelineResult:
    """
    Run instances concurrently, honouring only explicit `needs` edges.

    - every instance of a job is submitted once all instances of the jobs it
      needs have finished ok (success or skipped);
    - when a needed job did not finish ok its dependents are recorded skipped;
    - a failure never touches sibling instances unless fail_fast=True, which
      stops submitting new instances (they are recorded cancelled);
    - results are reported in the order of `instances`, not completion order.
    """
    adj, indeg = build_dag(definition.jobs)
    indeg = dict(indeg)

    by_job: Dict[str, List[JobInstance]] = {key: [] for key in definition.jobs}
    for inst in instances:
        by_job[inst.key].append(inst)

    results: Dict[str, JobResult] = {}
    remaining: Dict[str, int] = {key: len(v) for key, v in by_job.items()}
    job_ok: Dict[str, bool] = {key: True for key in definition.jobs}
    ready: List[str] = sorted(key for key, d in indeg.items() if d == 0)
    blocked: Set[str] = set()
    failed = False

    if max_workers is None:
        c = os.cpu_count() or 2
        max_workers = max(1, c - 1)

    def stopped() -> bool:
        return (fail_fast and failed) or (cancel is not None and cancel.is_set())

    def finish_job(key: str) -> None:
        # unlock dependents, or mark them skipped when this job did not end ok
        for nxt in sorted(adj[key]):
            if not job_ok[key]:
                block(nxt, f"needs '{key}' which did not succeed")
            indeg[nxt] -= 1
            if indeg[nxt] == 0 and nxt not in blocked:
                ready.append(nxt)

    def block(key: str, reason: str) -> None:
        if key in blocked:
            return
        blocked.add(key)
        job_ok[key] = False
        for inst in by_job[key]:
            results[inst.id] = JobResult(inst, SKIPPED, reason=reason)
        for nxt in adj[key]:
            block(nxt, f"needs '{key}' which did not succeed")

    in_flight: Dict[Future, JobInstance] = {}

    with ThreadPoolExecutor(max_workers=max_workers) as pool:
        while ready or in_flight:
            # schedule all currently ready
            while ready and not stopped():
                key = ready.pop(0)
                if not by_job[key]:
                    finish_job(key)
                    continue
                for inst in by_job[key]:
                    fut = pool.submit(run, inst, executor, secrets, cancel=cancel)
                    in_flight[fut] = inst

            if not in_flight:
                break

            done, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
            for fut in done:
                inst = in_flight.pop(fut)
                try:
                    result = fut.result()
                except Exception as e:
                    logger.debug("instance %s crashed", inst.label, exc_info=True)
                    result = JobResult(inst, FAILURE, reason=f"{type(e).__name__}: {e}")
                results[inst.id] = result
                if not result.ok:
                    failed = True
                    job_ok[inst.key] = False
                remaining[inst.key] -= 1
                if remaining[inst.key] == 0:
                    finish_job(inst.key)

    for inst in instances:
        if inst.id not in results:
            results[inst.id] = JobResult(inst, CANCELLED, reason="not started")

    return PipelineResult([results[inst.id] for inst in instances])


def run_pipeline(
    definition: PipelineDefinition,
    event: TriggerEvent,
    executor: StepExecutor,
    secrets: Optional[SecretProvider] = None,
    *,
    max_workers: Optional[int] = None,
    fail_fast: bool = False,
    cancel: Optional[CancelToken] = None,
) -> PipelineResult:
    """evaluate() + schedule() in one call."""
    instances = evaluate(definition, event, secrets)
    return schedule(
        instances,
        definition,
        executor,
        secrets,
        max_workers=max_workers,
        fail_fast=fail_fast,
        cancel=cancel,
    )
