from __future__ import annotations

import os
from pathlib import Path
from typing import Dict, Iterable, Optional


def load_env(path: Optional[Path] = None) -> None:
    """
    Load key=value pairs from .env files into os.environ.

    ``.env`` never overrides variables that are already set. ``.env.local`` (only
    consulted when no explicit path is given) may override ``.env`` values but
    never the variables exported by the shell.
    """
    shell_keys = frozenset(os.environ)
    env_path = path or _default_env_path()
    _apply(read_env_file(env_path), protected=os.environ.keys())

    if path is None:
        _apply(read_env_file(env_path.with_name(".env.local")), protected=shell_keys)


def read_env_file(env_path: Path) -> Dict[str, str]:
    if not env_path.exists():
        return {}
    values: Dict[str, str] = {}
    for raw_line in env_path.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        if line.startswith("export "):
            line = line[len("export "):]
        key, value = line.split("=", 1)
        key = key.strip()
        if key:
            values[key] = _strip_quotes(value.strip())
    return values


def _apply(values: Dict[str, str], *, protected: Iterable[str]) -> None:
    blocked = set(protected)
    for key, value in values.items():
        if key in blocked:
            continue
        os.environ[key] = value


def _default_env_path() -> Path:
    return Path(__file__).resolve().parents[2] / ".env"


def _strip_quotes(value: str) -> str:
    if len(value) >= 2 and value[0] == value[-1] and value[0] in {'"', "'"}:
        return value[1:-1]
    return value


__all__ = ["load_env", "read_env_file"]
