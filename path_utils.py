"""Filesystem locations for the tool manager (base dir, data dir, relative paths)."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional, Union

PathLike = Union[str, Path]

HOME_ENV = "TOOL_MANAGER_HOME"
DATA_DIR_ENV = "TOOL_MANAGER_DATA_DIR"


def _env_dir(name: str) -> Optional[Path]:
    raw = (os.environ.get(name) or "").strip()
    if not raw:
        return None
    return Path(os.path.expandvars(raw)).expanduser().resolve()


def get_base_dir() -> Path:
    """Directory relative config paths resolve against (TOOL_MANAGER_HOME or this checkout)."""
    return _env_dir(HOME_ENV) or Path(__file__).resolve().parent


def get_data_dir() -> Path:
    """Where feeds, images and the registry database live by default."""
    return _env_dir(DATA_DIR_ENV) or (get_base_dir() / "data")


def resolve_path(path_like: PathLike) -> Path:
    if path_like is None:
        raise ValueError("path_like must not be None")

    path = Path(os.path.expandvars(str(path_like))).expanduser()
    return path if path.is_absolute() else get_base_dir() / path


def ensure_directory(path_like: PathLike) -> Path:
    path = resolve_path(path_like)
    path.mkdir(parents=True, exist_ok=True)
    return path
