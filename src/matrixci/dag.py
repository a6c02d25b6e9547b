# dag.py
from __future__ import annotations

from collections import deque
from typing import Dict, List, Mapping, Set, Tuple

from .errors import SchemaError
from .model import JobDefinition


def build_dag(jobs: Mapping[str, JobDefinition]) -> Tuple[Dict[str, Set[str]], Dict[str, int]]:
    """
    Build the job graph from explicit `needs` edges only.

    Returns (adj, indeg) where adj maps a job to the jobs that need it.
    Declaration order never contributes an edge.
    """
    adj: Dict[str, Set[str]] = {key: set() for key in jobs}
    indeg: Dict[str, int] = {key: 0 for key in jobs}

    for key, job in jobs.items():
        for need in job.needs:
            if need not in jobs:
                raise SchemaError(
                    f"needs unknown job '{need}'. Known jobs: {sorted(jobs)}",
                    f"jobs.{key}.needs",
                )
            if need == key:
                raise SchemaError("job cannot need itself", f"jobs.{key}.needs")
            if key not in adj[need]:
                adj[need].add(key)
                indeg[key] += 1

    return adj, indeg


def topo_levels(adj: Mapping[str, Set[str]], indeg: Mapping[str, int]) -> List[List[str]]:
    """
    Convert the DAG into topological levels. Jobs in one level are independent.
    """
    indeg = dict(indeg)  # copy (we mutate it)
    q = deque(sorted(n for n, d in indeg.items() if d == 0))

    levels: List[List[str]] = []
    processed = 0

    while q:
        level: List[str] = []
        for _ in range(len(q)):
            node = q.popleft()
            level.append(node)
            processed += 1
            for child in sorted(adj.get(node, set())):
                indeg[child] -= 1
                if indeg[child] == 0:
                    q.append(child)
        levels.append(level)

    if processed != len(indeg):
        remaining = sorted(n for n, d in indeg.items() if d > 0)
        raise SchemaError(f"job dependencies form a cycle. Stuck jobs: {remaining}", "jobs")

    return levels
