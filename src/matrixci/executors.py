# executors.py
"""
Step Executor boundary.

The engine drives steps through `StepExecutor.execute()` and never performs
an action itself. The concrete executors below are collaborators used by the
CLI and the tests.
"""
from __future__ import annotations

import os
import re
import subprocess
import tempfile
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .model import FAILURE, SUCCESS, StepDefinition
from .secrets import MASK, SecretProvider, SecretRef, SecretText


class CancelToken:
    """Run-wide cancellation flag. Once set, no new step is issued in any instance."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


@dataclass(frozen=True)
class StepOutcome:
    """What an executor returns for one step."""
    status: str
    outputs: Dict[str, Any] = field(default_factory=dict)
    message: Optional[str] = None

    @classmethod
    def success(cls, **outputs: Any) -> "StepOutcome":
        return cls(SUCCESS, dict(outputs))

    @classmethod
    def failure(cls, message: str, **outputs: Any) -> "StepOutcome":
        return cls(FAILURE, dict(outputs), message)


@dataclass(frozen=True)
class BoundStep:
    """
    A step with its guard already true and every template substituted.

    Secret parameters stay `SecretRef` / `SecretText` placeholders; call `reveal()` at the
    last moment, inside the action.
    """
    instance: str
    step: StepDefinition
    name: str
    params: Mapping[str, Any]
    env: Mapping[str, Any]
    run: Union[str, SecretRef, SecretText, None] = None
    secrets: Optional[SecretProvider] = field(default=None, repr=False, compare=False)

    @property
    def action(self) -> str:
        return self.step.action

    def reveal(self, value: Any) -> Any:
        if isinstance(value, SecretRef):
            return self.secrets.reveal(value.name) if self.secrets is not None else ""
        if isinstance(value, SecretText):
            return value.reveal(self.secrets) if self.secrets is not None else str(value)
        return value

    def revealed_params(self) -> Dict[str, Any]:
        return {k: self.reveal(v) for k, v in self.params.items()}

    def revealed_env(self) -> Dict[str, str]:
        return {k: "" if v is None else str(self.reveal(v)) for k, v in self.env.items()}

    def revealed_run(self) -> Optional[str]:
        return None if self.run is None else str(self.reveal(self.run))

    def secret_values(self) -> List[str]:
        refs: List[SecretRef] = []
        for v in [*self.params.values(), *self.env.values(), self.run]:
            if isinstance(v, SecretRef):
                refs.append(v)
            elif isinstance(v, SecretText):
                refs.extend(v.refs())
        values = {self.reveal(r) for r in refs}
        # longest first, so a value containing another is masked whole
        return sorted((v for v in values if v), key=len, reverse=True)

    def mask(self, text: str) -> str:
        for value in self.secret_values():
            text = text.replace(value, MASK)
        return text


class StepExecutor(ABC):
    @abstractmethod
    def execute(self, step: BoundStep, cancel: Optional[CancelToken] = None) -> StepOutcome:
        """Perform the step's action. Blocks until the action has finished."""


# ---------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------

@dataclass(frozen=True)
class ExecutedStep:
    instance: str
    name: str
    action: str
    params: Dict[str, Any]


class DryRunExecutor(StepExecutor):
    """Records every call and reports success. Thread-safe."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.calls: List[ExecutedStep] = []

    def execute(self, step: BoundStep, cancel: Optional[CancelToken] = None) -> StepOutcome:
        with self._lock:
            self.calls.append(ExecutedStep(step.instance, step.name, step.action, dict(step.params)))
        return StepOutcome.success()

    def calls_for(self, instance: str) -> List[ExecutedStep]:
        with self._lock:
            return [c for c in self.calls if c.instance == instance]


# ---------------------------------------------------------------------
# Action registry
# ---------------------------------------------------------------------

ActionHandler = Callable[[BoundStep], Union[StepOutcome, Mapping[str, Any], None]]


def action_name(reference: str) -> str:
    """'actions/checkout@v2' -> 'actions/checkout'"""
    return reference.split("@", 1)[0]


class ActionExecutor(StepExecutor):
    """
    Dispatches `uses:` steps to registered handlers, keyed by the action
    reference without its version. A handler returns a StepOutcome, a mapping
    of outputs (success), or None (success, no outputs).
    """

    def __init__(self, actions: Optional[Mapping[str, ActionHandler]] = None):
        self._actions: Dict[str, ActionHandler] = dict(actions or {})

    def register(self, name: str) -> Callable[[ActionHandler], ActionHandler]:
        def deco(fn: ActionHandler) -> ActionHandler:
            self._actions[name] = fn
            return fn
        return deco

    def handles(self, step: BoundStep) -> bool:
        return action_name(step.action) in self._actions

    def execute(self, step: BoundStep, cancel: Optional[CancelToken] = None) -> StepOutcome:
        handler = self._actions.get(action_name(step.action))
        if handler is None:
            return StepOutcome.failure(f"no handler registered for action '{step.action}'")
        result = handler(step)
        if isinstance(result, StepOutcome):
            return result
        return StepOutcome.success(**dict(result or {}))


# ---------------------------------------------------------------------
# Shell
# ---------------------------------------------------------------------

_SET_OUTPUT_RE = re.compile(r"^::set-output name=([^:]+)::(.*)$")

OUTPUT_FILE_ENV = "MATRIXCI_OUTPUT"


def parse_outputs(stdout: str, output_file: Optional[Path] = None) -> Dict[str, str]:
    """Outputs from `::set-output name=x::v` lines and `x=v` lines in the output file."""
    outputs: Dict[str, str] = {}
    for line in stdout.splitlines():
        m = _SET_OUTPUT_RE.match(line.strip())
        if m:
            outputs[m.group(1)] = m.group(2)
    if output_file is not None and output_file.exists():
        for line in output_file.read_text(encoding="utf-8").splitlines():
            if "=" in line:
                k, v = line.split("=", 1)
                outputs[k.strip()] = v
    return outputs


class ShellExecutor(StepExecutor):
    """
    Runs `run:` steps with the system shell. `uses:` steps go to `fallback`
    (or fail when there is none).

    Args:
        workdir: base directory; a step's working-directory is relative to it
        fallback: executor for `uses:` steps
        timeout: per-step timeout in seconds
    """

    def __init__(
        self,
        workdir: str | Path = ".",
        fallback: Optional[StepExecutor] = None,
        timeout: Optional[float] = None,
    ):
        self.workdir = Path(workdir).resolve()
        self.fallback = fallback
        self.timeout = timeout

    def execute(self, step: BoundStep, cancel: Optional[CancelToken] = None) -> StepOutcome:
        if step.run is None:
            if self.fallback is None:
                return StepOutcome.failure(f"no executor for action '{step.action}'")
            return self.fallback.execute(step, cancel)

        cwd = (self.workdir / (step.step.working_directory or ".")).resolve()
        if not cwd.exists():
            return StepOutcome.failure(f"working directory not found: {cwd}")

        with tempfile.TemporaryDirectory(prefix="matrixci-") as tmp:
            output_file = Path(tmp) / "outputs"
            env = os.environ.copy()
            env.update(step.revealed_env())
            env[OUTPUT_FILE_ENV] = str(output_file)

            try:
                proc = subprocess.run(
                    step.revealed_run(),
                    shell=True,
                    cwd=str(cwd),
                    env=env,
                    text=True,
                    capture_output=True,
                    timeout=self.timeout,
                )
            except subprocess.TimeoutExpired:
                return StepOutcome.failure(f"timed out after {self.timeout}s")

            # outputs never carry a secret value
            outputs = {k: step.mask(v) for k, v in parse_outputs(proc.stdout, output_file).items()}

        if proc.returncode != 0:
            tail = step.mask((proc.stderr or proc.stdout)[-4000:].strip())
            message = f"exit code {proc.returncode}"
            if tail:
                message = f"{message}: {tail}"
            return StepOutcome(FAILURE, outputs, message)
        return StepOutcome(SUCCESS, outputs)
