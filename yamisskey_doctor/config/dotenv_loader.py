"""
Explicit dotenv loader.

Rules:
- Load ``/config/.env`` (container mount) and ``.env`` without overriding
  variables that are already set.
- Load ``.env.local`` last, overriding (local convenience).

This must remain dependency-light and MUST NOT import the config models.
"""

from __future__ import annotations

from pathlib import Path
from typing import Iterable, List

from dotenv import load_dotenv

CONTAINER_ENV_FILE = Path("/config/.env")


def load_dotenv_files(*, root: Path | None = None, extra: Iterable[Path] = (CONTAINER_ENV_FILE,)) -> List[Path]:
    """
    Load dotenv files; returns the files that were actually read.
    """
    base = root or Path.cwd()
    loaded: List[Path] = []

    for path in [*extra, base / ".env"]:
        if path.exists():
            load_dotenv(dotenv_path=path, override=False)
            loaded.append(path)

    env_local_path = base / ".env.local"
    if env_local_path.exists():
        load_dotenv(dotenv_path=env_local_path, override=True)
        loaded.append(env_local_path)

    return loaded
