# workflow.py
from __future__ import annotations

import runpy
from pathlib import Path
from typing import List

from .loader import load_pipeline
from .model import PipelineDefinition

YAML_SUFFIXES = (".yml", ".yaml")


def find_workflow_files(root: str | Path = ".") -> List[Path]:
    """
    Find workflow files under `root`:
      .github/workflows/*.yml|*.yaml, matrixci.yml|.yaml, *_workflow.py
    """
    base = Path(root)
    found: List[Path] = []
    workflows_dir = base / ".github" / "workflows"
    if workflows_dir.is_dir():
        for suffix in YAML_SUFFIXES:
            found.extend(workflows_dir.glob(f"*{suffix}"))
    for suffix in YAML_SUFFIXES:
        candidate = base / f"matrixci{suffix}"
        if candidate.exists():
            found.append(candidate)
    found.extend(base.glob("*_workflow.py"))
    return sorted(found)


def load_workflow(path: str | Path) -> PipelineDefinition:
    """
    Load a pipeline from a YAML document or from a Python file.

    A Python file must define either:
      - workflow() -> PipelineDefinition
      - PIPELINE = PipelineDefinition(...)   (usually built with matrixci.dsl)
    """
    wf_path = Path(path).expanduser().resolve()
    if not wf_path.exists():
        raise FileNotFoundError(f"Workflow file not found: {wf_path}")
    if wf_path.suffix in YAML_SUFFIXES:
        return load_pipeline(wf_path)
    if wf_path.suffix != ".py":
        raise ValueError(f"Workflow must be a .yml, .yaml or .py file, got: {wf_path.name}")

    module_name = f"matrixci_workflow_{wf_path.stem}"
    globals_dict = runpy.run_path(str(wf_path), run_name=module_name)

    definition = None
    if "workflow" in globals_dict and callable(globals_dict["workflow"]):
        definition = globals_dict["workflow"]()
    elif "PIPELINE" in globals_dict:
        definition = globals_dict["PIPELINE"]

    if not isinstance(definition, PipelineDefinition):
        raise TypeError(
            "Workflow must return/define a PipelineDefinition. "
            "Define workflow() -> PipelineDefinition or PIPELINE = pipeline(...)."
        )
    return definition
