# secrets.py
"""
Secret providers.

The engine only ever asks a provider whether a secret is set. Values are
revealed exclusively by step executors, when they hand a parameter to the
action that needs it.
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Tuple, Union

from dotenv import dotenv_values

MASK = "***"


@dataclass(frozen=True)
class SecretRef:
    """Placeholder substituted for `${{ secrets.NAME }}`. Never carries the value."""
    name: str

    def __str__(self) -> str:
        return MASK

    def __repr__(self) -> str:
        return f"SecretRef({self.name!r})"


@dataclass(frozen=True)
class SecretText:
    """
    Text with one or more secrets embedded, e.g. `echo '${{ secrets.T }}'`.
    Renders with every secret masked; `reveal()` is for step executors only.
    """
    parts: Tuple[Union[str, SecretRef], ...]

    def refs(self) -> List[SecretRef]:
        return [p for p in self.parts if isinstance(p, SecretRef)]

    def reveal(self, provider: "SecretProvider") -> str:
        return "".join(provider.reveal(p.name) if isinstance(p, SecretRef) else p for p in self.parts)

    def __str__(self) -> str:
        return "".join(str(p) for p in self.parts)

    def __repr__(self) -> str:
        return f"SecretText({str(self)!r})"


class SecretProvider(ABC):
    """Read-only source of secret values shared by every instance of a run."""

    @abstractmethod
    def is_set(self, name: str) -> bool:
        """True iff the secret exists and is non-empty (see empty_is_unset)."""

    @abstractmethod
    def reveal(self, name: str) -> str:
        """Return the value, or "" when unset. For step executors only."""

    def __repr__(self) -> str:
        return f"<{type(self).__name__}>"


class MappingSecretProvider(SecretProvider):
    """
    Immutable in-memory provider.

    Args:
        values: name -> value; copied on construction
        empty_is_unset: treat "" the same as an absent secret for isSet()
    """

    def __init__(self, values: Optional[Mapping[str, str]] = None, *, empty_is_unset: bool = True):
        self._values = MappingProxyType({k: str(v) for k, v in (values or {}).items() if v is not None})
        self.empty_is_unset = empty_is_unset

    def is_set(self, name: str) -> bool:
        value = self._values.get(name)
        if value is None:
            return False
        if self.empty_is_unset and value == "":
            return False
        return True

    def reveal(self, name: str) -> str:
        return self._values.get(name, "")

    def names(self) -> list[str]:
        return sorted(self._values)


class EnvSecretProvider(MappingSecretProvider):
    """Snapshot of an allow-list of environment variables."""

    def __init__(
        self,
        names: Iterable[str],
        environ: Optional[Mapping[str, str]] = None,
        *,
        empty_is_unset: bool = True,
    ):
        environ = os.environ if environ is None else environ
        super().__init__({n: environ[n] for n in names if n in environ}, empty_is_unset=empty_is_unset)


class DotenvSecretProvider(MappingSecretProvider):
    """Secrets read from a .env file (python-dotenv syntax)."""

    def __init__(self, path: str | Path, *, empty_is_unset: bool = True):
        path = Path(path).expanduser()
        if not path.exists():
            raise FileNotFoundError(f"Secrets file not found: {path}")
        super().__init__(dotenv_values(path), empty_is_unset=empty_is_unset)


class ChainSecretProvider(SecretProvider):
    """First provider that has the secret wins."""

    def __init__(self, *providers: SecretProvider):
        self.providers = providers

    def is_set(self, name: str) -> bool:
        return any(p.is_set(name) for p in self.providers)

    def reveal(self, name: str) -> str:
        for p in self.providers:
            if p.is_set(name):
                return p.reveal(name)
        return ""
