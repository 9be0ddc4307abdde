"""Utilities for locating the environment file."""
from __future__ import annotations

import os
from pathlib import Path
from typing import Iterator


def _iter_env_files() -> Iterator[Path]:
    """Yield probable `.env` files ordered by proximity to the project."""

    seen: set[Path] = set()

    def walk(start: Path) -> Iterator[Path]:
        cursor = start if start.is_dir() else start.parent

        while True:
            env_path = cursor / ".env"
            if env_path not in seen:
                seen.add(env_path)
                if env_path.exists():
                    yield env_path

            if cursor.parent == cursor:
                break
            cursor = cursor.parent

    module_root = Path(__file__).resolve().parent
    cwd_root = Path.cwd()

    for candidate in (module_root, cwd_root):
        yield from walk(candidate)

    project_root = os.getenv("PROJECT_ROOT")
    if project_root:
        yield from walk(Path(project_root).expanduser().resolve())


def resolve_env_path() -> Path:
    """Return the `.env` file the configuration should be loaded from.

    ``ENV_PATH`` wins when set, even if the file does not exist yet, so that
    deployments and tests can point at an explicit location. Otherwise the
    nearest existing `.env` is used, falling back to the project root.
    """

    explicit = os.getenv("ENV_PATH")
    if explicit:
        return Path(explicit).expanduser()

    for env_path in _iter_env_files():
        return env_path

    return Path(__file__).resolve().parents[2] / ".env"


__all__ = ["resolve_env_path"]
