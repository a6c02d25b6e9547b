# errors.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict


class MatrixCIError(Exception):
    """Base class for every error raised by the engine."""


class SchemaError(MatrixCIError):
    """
    Malformed pipeline definition.

    Raised at load time, before any instance exists. `path` points at the
    offending node, e.g. "jobs.lint.steps[2].if".
    """

    def __init__(self, message: str, path: str | None = None):
        self.message = message
        self.path = path
        super().__init__(f"{path}: {message}" if path else message)


class ResolutionError(MatrixCIError):
    """A non-secret reference could not be resolved for one instance."""

    def __init__(self, reference: str, message: str | None = None):
        self.reference = reference
        self.message = message or f"reference '{reference}' is undefined"
        super().__init__(self.message)


@dataclass
class StepFailure(MatrixCIError):
    """
    The step executor reported failure (or raised).

    Fatal to the owning instance only.
    """
    job: str
    step: str
    message: str
    outputs: Dict[str, Any] = field(default_factory=dict)

    def __str__(self) -> str:
        return f"[{self.job}] step '{self.step}' failed: {self.message}"


@dataclass
class GuardSkip:
    """Not an error: a guard evaluated false. Recorded on the step/job result."""
    target: str
    expression: str

    def __str__(self) -> str:
        return f"{self.target} skipped (if: {self.expression})"
