# matrix.py
from __future__ import annotations

import itertools
from typing import List, Mapping, Optional, Tuple

from .conditions import ResolutionContext
from .expr import to_text
from .model import JobDefinition, JobInstance, Variant


def combinations(job: JobDefinition) -> List[Tuple[Tuple[str, Variant], ...]]:
    """
    Cartesian product of the job's axes in declared order (first axis varies
    slowest). No matrix -> a single empty combination. Duplicate variants are
    kept: they become independent instances.
    """
    if job.matrix is None or not job.matrix.axes:
        return [()]
    axes = list(job.matrix.axes.items())
    names = [name for name, _ in axes]
    return [tuple(zip(names, combo)) for combo in itertools.product(*(variants for _, variants in axes))]


def expand_job(job: JobDefinition, env: Optional[Mapping[str, str]] = None) -> List[JobInstance]:
    merged_env = {**(env or {}), **job.env}
    instances: List[JobInstance] = []
    for index, combo in enumerate(combinations(job)):
        binding = dict(combo)
        # names never see secrets; absent fields render empty
        ctx = ResolutionContext(binding, merged_env)
        display_name = to_text(job.name.render(ctx))
        instances.append(
            JobInstance(
                job=job,
                binding=binding,
                index=index,
                env=dict(merged_env),
                display_name=display_name,
            )
        )
    return instances
