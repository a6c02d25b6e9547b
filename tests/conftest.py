from __future__ import annotations

import threading
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from matrixci.executors import BoundStep, CancelToken, StepExecutor, StepOutcome
from matrixci.loader import load_pipeline
from matrixci.ui.console import Console, set_console

FIXTURES = Path(__file__).parent / "fixtures"


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield


@pytest.fixture
def reference_path() -> Path:
    return FIXTURES / "main.yml"


@pytest.fixture
def reference(reference_path):
    return load_pipeline(reference_path)


class ScriptedExecutor(StepExecutor):
    """
    Returns scripted outcomes keyed by step name (default: success) and
    records (instance, step name, params) for every call.
    """

    def __init__(self, outcomes: Optional[Dict[str, StepOutcome]] = None, raises: Optional[Dict[str, Exception]] = None):
        self.outcomes = outcomes or {}
        self.raises = raises or {}
        self.calls: List[BoundStep] = []
        self._lock = threading.Lock()

    def execute(self, step: BoundStep, cancel: Optional[CancelToken] = None) -> StepOutcome:
        with self._lock:
            self.calls.append(step)
        if step.name in self.raises:
            raise self.raises[step.name]
        return self.outcomes.get(step.name, StepOutcome.success())

    def names(self, instance: Optional[str] = None) -> List[str]:
        with self._lock:
            return [c.name for c in self.calls if instance is None or c.instance == instance]


@pytest.fixture
def scripted():
    return ScriptedExecutor
