# conditions.py
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

from .errors import ResolutionError
from .expr import Expr, Ref, Template, truthy
from .model import UNDEFINED, Variant
from .secrets import SecretProvider, SecretRef

logger = logging.getLogger(__name__)


class ResolutionContext:
    """
    Everything a reference can resolve against, for one instance:

      matrix.<axis>[.<field>...]   -> the instance's binding
      env.<NAME>                   -> pipeline env < job env < step env
      steps.<id>.outputs.<name>    -> outputs of earlier steps of this instance
      steps.<id>.outcome           -> "success" / "failure" / "skipped"
      secrets.<NAME>               -> SecretRef placeholder (never the value)

    Private to its instance; only the secret provider is shared.
    """

    def __init__(
        self,
        binding: Mapping[str, Variant],
        env: Mapping[str, Any],
        secrets: Optional[SecretProvider] = None,
    ):
        self.binding = dict(binding)
        self.env = dict(env)
        self._secrets = secrets
        self._steps: Dict[str, Dict[str, Any]] = {}

    def with_env(self, extra: Mapping[str, Any]) -> "ResolutionContext":
        if not extra:
            return self
        child = ResolutionContext(self.binding, {**self.env, **extra}, self._secrets)
        child._steps = self._steps
        return child

    def record_step(self, step_id: Optional[str], outcome: str, outputs: Mapping[str, Any]) -> None:
        if step_id:
            self._steps[step_id] = {"outcome": outcome, "outputs": dict(outputs)}

    def secret_is_set(self, name: str) -> bool:
        if self._secrets is None:
            return False
        return self._secrets.is_set(name)

    def lookup(self, ref: Ref) -> Any:
        """
        Value of a reference, or UNDEFINED when the instance simply does not
        carry it (absent variant field, output of a skipped step). Raises
        ResolutionError for references that can never resolve here.
        """
        if ref.namespace == "matrix":
            return self._lookup_matrix(ref)
        if ref.namespace == "env" and len(ref.path) == 1:
            if ref.path[0] not in self.env:
                raise ResolutionError(str(ref), f"'{ref}' is not declared in any env block")
            return self.env[ref.path[0]]
        if ref.namespace == "steps" and ref.path:
            return _walk(self._steps, ref.path)
        if ref.namespace == "secrets" and len(ref.path) == 1:
            return SecretRef(ref.path[0])
        raise ResolutionError(str(ref), f"cannot resolve '{ref}'")

    def _lookup_matrix(self, ref: Ref) -> Any:
        path = ref.path
        if not path or path[0] not in self.binding:
            raise ResolutionError(str(ref), f"'{ref}': instance has no such matrix axis")
        variant = self.binding[path[0]]
        if len(path) == 1:
            return variant.value
        value = variant.get(path[1])
        return _walk(value, path[2:]) if len(path) > 2 else value


def _walk(value: Any, path: tuple[str, ...]) -> Any:
    for key in path:
        if isinstance(value, Mapping) and key in value:
            value = value[key]
        else:
            return UNDEFINED
    return value


def evaluate_guard(expr: Expr, ctx: ResolutionContext) -> bool:
    """
    Boolean value of a job/step guard.

    References to fields absent on the current variant are falsy, never an
    error. Only a reference that can never resolve raises ResolutionError.
    The result is only ever a bool, so a secret cannot leak through it.
    """
    result = truthy(expr.evaluate(ctx))
    logger.debug("guard %s -> %s", expr, result)
    return result


def render(template: Template, ctx: ResolutionContext) -> Any:
    """Absent variant fields render empty; see Template.render."""
    return template.render(ctx)


def render_mapping(templates: Mapping[str, Template], ctx: ResolutionContext) -> Dict[str, Any]:
    return {name: render(t, ctx) for name, t in templates.items()}
