"""
Layered environment lookup for the facilitator settings.

Sources are the process environment (or an explicit ``base`` mapping), an
optional ``.env`` file and caller overrides. :class:`FacilitatorEnvironment`
wraps the merged mapping with the typed getters that
:class:`x402_facilitator.core.config.FacilitatorConfig` reads through.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Mapping, MutableMapping, Optional, Tuple

_TRUE = frozenset(("1", "true", "yes", "on"))
_FALSE = frozenset(("0", "false", "no", "off", ""))
_EXPORT = "export "


class EnvironmentValueError(ValueError):
    """A variable is set but cannot be read as the requested type."""


def _parse_line(line: str) -> Optional[Tuple[str, str]]:
    line = line.strip()
    if line.startswith(_EXPORT):
        line = line[len(_EXPORT) :].lstrip()
    if not line or line.startswith("#"):
        return None
    name, sep, value = line.partition("=")
    name = name.strip()
    if not sep or not name:
        return None
    value = value.strip()
    if len(value) >= 2 and value[0] == value[-1] and value[0] in "'\"":
        value = value[1:-1]
    return name, value


def read_env_file(path: str | Path) -> Dict[str, str]:
    """Parse ``KEY=VALUE`` lines from ``path``; a missing file reads as empty."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except FileNotFoundError:
        return {}
    pairs = (_parse_line(line) for line in text.splitlines())
    return dict(pair for pair in pairs if pair is not None)


def load_env_file(
    path: str = ".env",
    *,
    environ: Optional[MutableMapping[str, str]] = None,
) -> int:
    """
    Copy variables from ``path`` into ``environ`` (default :data:`os.environ`).

    Keys that are already set are left alone. Returns how many were added.
    """
    target: MutableMapping[str, str] = os.environ if environ is None else environ
    added = 0
    for name, value in read_env_file(path).items():
        if name not in target:
            target[name] = value
            added += 1
    return added


@dataclass(frozen=True)
class FacilitatorEnvironment:
    variables: Mapping[str, str]

    def get(self, key: str, default: Optional[str] = None) -> Optional[str]:
        return self.variables.get(key, default)

    def _raw(self, key: str) -> Optional[str]:
        value = self.variables.get(key)
        if value is None or not value.strip():
            return None
        return value.strip()

    def get_str(self, key: str, default: str) -> str:
        value = self._raw(key)
        return default if value is None else value

    def get_int(self, key: str, default: int) -> int:
        value = self._raw(key)
        if value is None:
            return default
        try:
            return int(value)
        except ValueError as exc:
            raise EnvironmentValueError(f"{key} must be an integer, got '{value}'") from exc

    def get_float(self, key: str, default: float) -> float:
        value = self._raw(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError as exc:
            raise EnvironmentValueError(f"{key} must be a number, got '{value}'") from exc

    def get_bool(self, key: str, default: bool) -> bool:
        raw = self.variables.get(key)
        if raw is None:
            return default
        lowered = raw.strip().lower()
        if lowered in _TRUE:
            return True
        if lowered in _FALSE:
            return False
        raise EnvironmentValueError(f"{key} must be a boolean, got '{raw}'")


def build_environment(
    *,
    env_file: Optional[str] = ".env",
    base: Optional[Mapping[str, str]] = None,
    overrides: Optional[Mapping[str, str]] = None,
) -> FacilitatorEnvironment:
    """
    Merge the configuration sources; later layers win.

    Precedence, lowest first: ``env_file`` (skipped when ``None``), ``base``
    (:data:`os.environ` when ``None``), ``overrides``.
    """
    merged: Dict[str, str] = {}
    if env_file is not None:
        merged.update(read_env_file(env_file))
    merged.update(os.environ if base is None else base)
    merged.update(overrides or {})
    return FacilitatorEnvironment(variables=merged)
